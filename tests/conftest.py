import json
from datetime import datetime, timezone

import pytest

from database import SQLiteCreditLedger, SQLiteResultStore
from renderer import RenderBlockedError, RenderResult
from scan_service import ScanOrchestrator
from site_checks import estimated_metrics

RICH_PAGE = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>Acme Plumbing - Emergency Plumbers in Springfield</title>
  <meta name="description" content="Acme Plumbing offers 24/7 emergency plumbing, drain cleaning and water heater repair across Springfield with upfront pricing and licensed plumbers.">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <meta name="robots" content="index, follow">
  <link rel="canonical" href="https://acme.example/">
  <link rel="stylesheet" href="/css/site.css">
  <meta property="og:title" content="Acme Plumbing">
  <meta property="og:description" content="Emergency plumbers in Springfield">
  <meta property="og:image" content="https://acme.example/og.jpg">
  <meta property="og:type" content="website">
  <meta name="twitter:card" content="summary_large_image">
  <script type="application/ld+json">
  {
    "@context": "https://schema.org",
    "@type": "LocalBusiness",
    "name": "Acme Plumbing",
    "telephone": "+1 555 010 2030",
    "address": {"@type": "PostalAddress", "streetAddress": "1 Main St"},
    "logo": "https://acme.example/logo.png"
  }
  </script>
  <script type="application/ld+json">
  {"@context": "https://schema.org", "@type": "FAQPage", "mainEntity": []}
  </script>
</head>
<body>
  <header><nav><a href="/">Home</a> <a href="/services">Services</a></nav></header>
  <main>
    <h1>Emergency plumbers in Springfield</h1>
    <h2>Our services</h2>
    <p>We fix leaks fast. Our team is on call day and night.</p>
    <p>Call us for drain cleaning and water heater repair. We give a clear price before we start.</p>
    <img src="/img/van.webp" alt="Acme van" loading="lazy">
    <img src="/img/team.jpg" alt="Our team" loading="lazy">
    <a href="https://www.facebook.com/acmeplumbing">Facebook</a>
    <a href="https://partner.example.org/" rel="nofollow">Partner</a>
  </main>
  <footer>Contact info@acme.example</footer>
</body>
</html>
"""

BARE_PAGE = "<html><body></body></html>"

VALID_AI_REPLY = json.dumps(
    {
        "version": "1.0",
        "summary": "Acme has solid basics. Add FAQ answers and reviews to be quoted by assistants.",
        "prioritised_actions": [
            {"task": "Add FAQ entries to the FAQPage block", "impact": "High", "effort": "medium", "where": ["/"]},
            {"task": "Add AggregateRating markup", "impact": "med", "effort": "Low"},
        ],
        "schema_recommendations": [
            {
                "type": "Organization",
                "where": ["/"],
                "jsonld": {"@context": "https://schema.org", "@type": "Organization", "name": "Acme Plumbing"},
            }
        ],
    }
)


class FakeRenderer:
    def __init__(self, html: str = RICH_PAGE, blocked: bool = False, on_render=None):
        self.html = html
        self.blocked = blocked
        self.on_render = on_render
        self.calls: list[str] = []

    async def render(self, url: str, timeout: float = 45) -> RenderResult:
        self.calls.append(url)
        if self.on_render is not None:
            self.on_render(url)
        if self.blocked:
            raise RenderBlockedError(f"{url} returned a near-empty or bot-protection page")
        return RenderResult(html=self.html, final_url=url, status=200)


def fake_site_checks(url: str) -> dict:
    origin = url.split("/", 3)[:3]
    robots_url = "/".join(origin) + "/robots.txt"
    return {
        "robots": {"url": robots_url, "status": "found", "text": "User-agent: *\nAllow: /\n", "sitemaps": []},
        "ai_bots": [
            {"bot": "GPTBot", "directive": "GPTBot", "allowed_root": True, "docs": "", "fix_lines": []},
        ],
        "sitemap_status": "found",
        "sitemap_url": "/".join(origin) + "/sitemap.xml",
        "performance": estimated_metrics(url),
    }


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "visibility.db"


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def ledger(db_path, clock):
    return SQLiteCreditLedger(db_path, now=clock)


@pytest.fixture
def store(db_path):
    return SQLiteResultStore(db_path)


@pytest.fixture
def make_orchestrator(ledger, store):
    def _make(renderer=None, complete=None, **kwargs):
        return ScanOrchestrator(
            renderer=renderer or FakeRenderer(),
            ledger=ledger,
            store=store,
            complete=complete or (lambda prompt: VALID_AI_REPLY),
            site_checks=fake_site_checks,
            **kwargs,
        )

    return _make
