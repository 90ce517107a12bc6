"""Page renderers: fetch a URL and return the rendered HTML.

PlaywrightRenderer drives headless Chromium so JS-built pages are seen the way
AI crawlers with a browser see them. HttpRenderer is a plain requests fetch
for environments without a browser. Both retry once when the page looks like a
bot-protection wall and raise RenderBlockedError if it still does.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import requests
from bs4 import BeautifulSoup
from dotenv import load_dotenv
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

load_dotenv(dotenv_path=Path(__file__).resolve().parent / ".env")

log = logging.getLogger(__name__)

RENDER_TIMEOUT_SECONDS = float(os.getenv("RENDER_TIMEOUT_SECONDS", "45"))
MIN_VISIBLE_CHARS = 500

_REQUEST_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/124.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}

# Phrases that indicate a bot/Cloudflare interstitial rather than real content
BLOCK_SIGNALS = [
    "just a moment",
    "cf-browser-verification",
    "checking your browser",
    "ddos protection",
    "please wait while we check your browser",
]

# Marks <h1> elements hidden by computed style so the extractor can see it.
_MARK_HIDDEN_H1 = """
() => {
  for (const el of document.querySelectorAll('h1')) {
    const style = window.getComputedStyle(el);
    if (style.display === 'none' || style.visibility === 'hidden') {
      el.setAttribute('data-hidden-computed', 'true');
    }
  }
}
"""


@dataclass
class RenderResult:
    html: str
    final_url: str
    status: int


class RenderError(Exception):
    """The page could not be fetched at all."""


class RenderBlockedError(RenderError):
    """The page rendered, but only as a near-empty or bot-protection shell."""


class Renderer(Protocol):
    async def render(self, url: str, timeout: float = RENDER_TIMEOUT_SECONDS) -> RenderResult: ...


def visible_char_count(html: str) -> int:
    """Non-whitespace characters of visible body text."""
    soup = BeautifulSoup(html or "", "html.parser")
    for tag in soup.find_all(["script", "style", "noscript", "template"]):
        tag.decompose()
    text = (soup.body or soup).get_text()
    return sum(1 for ch in text if not ch.isspace())


def looks_blocked(html: str) -> bool:
    low = (html or "").lower()
    if any(signal in low for signal in BLOCK_SIGNALS):
        return True
    return visible_char_count(html) < MIN_VISIBLE_CHARS


class PlaywrightRenderer:
    """Headless Chromium renderer, one browser per render."""

    def __init__(self, settle_ms: int = 2000):
        self.settle_ms = settle_ms

    async def render(self, url: str, timeout: float = RENDER_TIMEOUT_SECONDS) -> RenderResult:
        timeout_ms = int(timeout * 1000)
        try:
            async with async_playwright() as pw:
                browser = await pw.chromium.launch(headless=True)
                try:
                    context = await browser.new_context(
                        user_agent=_REQUEST_HEADERS["User-Agent"],
                        viewport={"width": 1280, "height": 800},
                    )
                    page = await context.new_page()
                    response = await page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
                    await page.wait_for_timeout(self.settle_ms)
                    html = await page.content()

                    if looks_blocked(html):
                        log.warning("Render of %s looks blocked, reloading once", url)
                        response = await page.reload(wait_until="networkidle", timeout=timeout_ms) or response
                        await page.wait_for_timeout(self.settle_ms)
                        html = await page.content()
                        if looks_blocked(html):
                            log.warning("Render of %s still blocked after reload", url)
                            raise RenderBlockedError(f"{url} returned a near-empty or bot-protection page")

                    await page.evaluate(_MARK_HIDDEN_H1)
                    html = await page.content()
                    status = response.status if response is not None else 200
                    return RenderResult(html=html, final_url=page.url, status=status)
                finally:
                    await browser.close()
        except PlaywrightError as e:
            raise RenderError(f"Failed to render {url}: {e}") from e


class HttpRenderer:
    """Plain HTTP fetch. Sees server HTML only, no JS."""

    def _get(self, url: str, timeout: float) -> requests.Response:
        response = requests.get(url, timeout=timeout, headers=_REQUEST_HEADERS)
        response.raise_for_status()
        response.encoding = response.apparent_encoding or "utf-8"
        return response

    async def render(self, url: str, timeout: float = RENDER_TIMEOUT_SECONDS) -> RenderResult:
        try:
            response = await asyncio.to_thread(self._get, url, timeout)
            if looks_blocked(response.text):
                log.warning("Fetch of %s looks blocked, retrying once", url)
                response = await asyncio.to_thread(self._get, url, timeout)
                if looks_blocked(response.text):
                    raise RenderBlockedError(f"{url} returned a near-empty or bot-protection page")
        except requests.RequestException as e:
            raise RenderError(f"Failed to fetch {url}: {e}") from e
        return RenderResult(html=response.text, final_url=response.url, status=response.status_code)


def get_renderer(name: str | None = None) -> Renderer:
    name = (name or os.getenv("RENDERER", "playwright")).strip().lower()
    if name == "http":
        return HttpRenderer()
    return PlaywrightRenderer()
