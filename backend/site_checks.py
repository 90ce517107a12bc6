"""Site-level checks run beside page rendering.

robots.txt status and AI crawler access, sitemap discovery, and PageSpeed
Insights metrics (with estimated fallback when no API key is configured).
Every check degrades to a documented status instead of raising.
"""

import logging
import os
from pathlib import Path
from typing import Any, Optional, TypedDict
from urllib.parse import urljoin, urlparse
from urllib.robotparser import RobotFileParser

import requests
from dotenv import load_dotenv

load_dotenv(dotenv_path=Path(__file__).resolve().parent / ".env")

log = logging.getLogger(__name__)

PAGESPEED_API_URL = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"
PAGESPEED_API_KEY = os.getenv("PAGESPEED_API_KEY", "").strip()
PAGESPEED_TIMEOUT_SECONDS = float(os.getenv("PAGESPEED_TIMEOUT_SECONDS", "30"))
SITE_CHECK_TIMEOUT_SECONDS = float(os.getenv("SITE_CHECK_TIMEOUT_SECONDS", "8"))
MAX_OPPORTUNITIES = 5

AI_BOTS = [
    {"name": "GPTBot", "directive": "GPTBot", "docs": "https://openai.com/gptbot"},
    {"name": "ClaudeBot", "directive": "ClaudeBot", "docs": "https://www.anthropic.com"},
    {"name": "CCBot", "directive": "CCBot", "docs": "https://commoncrawl.org/ccbot"},
    {"name": "Google-Extended", "directive": "Google-Extended", "docs": "https://ai.google"},
]

_HEADERS = {"User-Agent": "Mozilla/5.0 (compatible; AIVisibilityChecker/1.0)"}


class RobotsCheck(TypedDict):
    url: str
    status: str
    text: str
    sitemaps: list[str]


class BotAccess(TypedDict):
    bot: str
    directive: str
    allowed_root: bool
    docs: str
    fix_lines: list[str]


class PerformanceMetrics(TypedDict):
    source: str
    performance_score: int
    fcp: float
    lcp: float
    fid: float
    cls: float
    speed_index: float
    total_blocking_time: float
    opportunities: list[dict]


class SiteChecks(TypedDict):
    robots: RobotsCheck
    ai_bots: list[BotAccess]
    sitemap_status: str
    sitemap_url: str
    performance: PerformanceMetrics


def origin_of(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


def check_robots(origin: str, timeout: float = SITE_CHECK_TIMEOUT_SECONDS) -> RobotsCheck:
    url = urljoin(origin + "/", "robots.txt")
    try:
        response = requests.get(url, timeout=timeout, headers=_HEADERS)
    except requests.RequestException as e:
        log.info("robots.txt fetch failed for %s: %s", url, e)
        return {"url": url, "status": "error", "text": "", "sitemaps": []}
    if response.status_code >= 500:
        return {"url": url, "status": "error", "text": "", "sitemaps": []}
    if response.status_code != 200:
        return {"url": url, "status": "not_found", "text": "", "sitemaps": []}
    text = response.text
    sitemaps = [
        line.split(":", 1)[1].strip()
        for line in text.splitlines()
        if line.strip().lower().startswith("sitemap:") and line.split(":", 1)[1].strip()
    ]
    return {"url": url, "status": "found", "text": text, "sitemaps": sitemaps}


def fixes_for(directive: str) -> list[str]:
    return [f"# Allow {directive} to access root", f"User-agent: {directive}", "Allow: /"]


def check_ai_bots(origin: str, robots: RobotsCheck) -> list[BotAccess]:
    """Root access per AI crawler under the site's robots.txt rules."""
    parser = RobotFileParser(robots["url"])
    parser.parse(robots["text"].splitlines())
    results: list[BotAccess] = []
    for bot in AI_BOTS:
        allowed = parser.can_fetch(bot["directive"], origin + "/")
        results.append(
            {
                "bot": bot["name"],
                "directive": bot["directive"],
                "allowed_root": allowed,
                "docs": bot["docs"],
                "fix_lines": [] if allowed else fixes_for(bot["directive"]),
            }
        )
    return results


def find_sitemap(origin: str, robots: RobotsCheck, timeout: float = SITE_CHECK_TIMEOUT_SECONDS) -> tuple[str, str]:
    """Return (status, url): robots.txt Sitemap: line first, else a /sitemap.xml request."""
    if robots["sitemaps"]:
        return "found", robots["sitemaps"][0]
    url = urljoin(origin + "/", "sitemap.xml")
    try:
        response = requests.get(url, timeout=timeout, headers=_HEADERS)
    except requests.RequestException:
        return "error", ""
    if response.status_code == 200 and "<" in response.text[:200]:
        return "found", url
    return "not_found", ""


def estimated_metrics(url: str) -> PerformanceMetrics:
    """Fallback metrics based on common platform patterns."""
    lowered = url.lower()
    base_score, base_load = 75, 2500
    if "wix.com" in lowered or "wixsite.com" in lowered:
        base_score, base_load = 60, 3500
    elif "wordpress.com" in lowered or "wp-content" in lowered:
        base_score, base_load = 65, 3000
    return {
        "source": "estimated",
        "performance_score": base_score,
        "fcp": base_load * 0.6,
        "lcp": float(base_load),
        "fid": 80.0,
        "cls": 0.1,
        "speed_index": base_load * 0.8,
        "total_blocking_time": 200.0,
        "opportunities": [
            {
                "id": "estimated-optimization",
                "title": "Image optimization opportunities detected",
                "description": "Estimated based on common website patterns",
            }
        ],
    }


def _psi_call(url: str, timeout: float) -> dict[str, Any]:
    r = requests.get(
        PAGESPEED_API_URL,
        params={"url": url, "strategy": "mobile", "category": "performance", "key": PAGESPEED_API_KEY},
        timeout=timeout,
    )
    r.raise_for_status()
    return r.json()


def get_pagespeed_metrics(url: str, timeout: float = PAGESPEED_TIMEOUT_SECONDS) -> Optional[PerformanceMetrics]:
    """Mobile PageSpeed Insights metrics, or None when unavailable."""
    if not PAGESPEED_API_KEY:
        return None
    try:
        data = _psi_call(url, timeout)
        lr = data.get("lighthouseResult", {})
        audits = lr.get("audits", {})
        score = lr.get("categories", {}).get("performance", {}).get("score")

        def metr(k: str) -> float:
            v = audits.get(k, {}).get("numericValue")
            return float(v) if isinstance(v, (int, float)) else 0.0

        opportunities = [
            {"id": audit_id, "title": audit.get("title", ""), "description": audit.get("description", "")}
            for audit_id, audit in audits.items()
            if isinstance(audit.get("score"), (int, float)) and audit["score"] < 1 and audit.get("details")
        ][:MAX_OPPORTUNITIES]
        return {
            "source": "pagespeed",
            "performance_score": int(round((score or 0) * 100)),
            "fcp": metr("first-contentful-paint"),
            "lcp": metr("largest-contentful-paint"),
            "fid": metr("max-potential-fid"),
            "cls": metr("cumulative-layout-shift"),
            "speed_index": metr("speed-index"),
            "total_blocking_time": metr("total-blocking-time"),
            "opportunities": opportunities,
        }
    except (requests.RequestException, ValueError, AttributeError) as e:
        log.info("PageSpeed unavailable for %s, using estimates: %s", url, e)
        return None


def run_site_checks(url: str) -> SiteChecks:
    """All site checks for one scan. Blocking; the orchestrator runs it in a thread."""
    origin = origin_of(url)
    robots = check_robots(origin)
    sitemap_status, sitemap_url = find_sitemap(origin, robots)
    performance = get_pagespeed_metrics(url)
    if performance is None:
        log.info("Using estimated performance metrics for %s", url)
        performance = estimated_metrics(url)
    return {
        "robots": robots,
        "ai_bots": check_ai_bots(origin, robots),
        "sitemap_status": sitemap_status,
        "sitemap_url": sitemap_url,
        "performance": performance,
    }


def signal_updates(checks: SiteChecks) -> dict:
    """Signal fields derived from site checks, for scraper.merge_signals.

    Load time and render-blocking count only come from real PageSpeed data;
    with estimates the HTML-derived values and neutral defaults stand.
    """
    perf = checks["performance"]
    updates: dict = {
        "robots_txt_status": checks["robots"]["status"],
        "sitemap_status": checks["sitemap_status"],
        "sitemap_url": checks["sitemap_url"],
        "performance_score": perf["performance_score"],
        "performance_source": perf["source"],
        "core_web_vitals": {"fcp": perf["fcp"], "lcp": perf["lcp"], "fid": perf["fid"], "cls": perf["cls"]},
    }
    if perf["source"] == "pagespeed" and perf["lcp"] > 0:
        updates["estimated_load_time"] = round(perf["lcp"] / 1000, 2)
        updates["render_blocking_resources"] = int(round(perf["total_blocking_time"] / 100))
    return updates
