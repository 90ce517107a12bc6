"""Scan orchestration: URL in, stored ScanResult out.

queued -> rendering -> extracting -> scoring -> ai_generating -> complete | failed

Cancellation is honored only between stages and only before scoring starts.
Once scoring has begun the scan always completes and is stored, and credits
are consumed idempotently by run id.
"""

import asyncio
import hashlib
import logging
import os
import re
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from dotenv import load_dotenv

from ai_service import Completion, claude_complete, generate_recommendations
from models import ScanResult, SeoSignals
from recommendations import placeholder_recommendations
from renderer import RENDER_TIMEOUT_SECONDS, RenderBlockedError, RenderError, Renderer
from schema_types import build_schema_items
from scoring import area_notes, build_issue_list, build_quick_recommendations, compute_overall_score
from scraper import default_signals, extract_signals, merge_signals
from site_checks import SiteChecks, run_site_checks, signal_updates
from stores import CreditLedger, ResultStore

load_dotenv(dotenv_path=Path(__file__).resolve().parent / ".env")

log = logging.getLogger(__name__)

MAX_CONCURRENT_SCANS = int(os.getenv("MAX_CONCURRENT_SCANS", "5"))
SCAN_COST = int(os.getenv("SCAN_COST", "1"))
AI_TIMEOUT_SECONDS = float(os.getenv("AI_TIMEOUT_SECONDS", "60"))

FAILED_PLACEHOLDER_SCORE = 5
FAILED_REMEDIATION = [
    "We could not load this page the way AI crawlers would.",
    "Check that the URL is publicly reachable and not behind a login or bot protection.",
    "Allow AI crawlers (GPTBot, ClaudeBot, CCBot, Google-Extended) in robots.txt and your firewall.",
    "Run the scan again once the page loads for anonymous visitors.",
]

_HOST_PATTERN = re.compile(r"^(localhost|[a-z0-9-]+(\.[a-z0-9-]+)+)$", re.IGNORECASE)


class ScanStatus(str, Enum):
    QUEUED = "queued"
    RENDERING = "rendering"
    EXTRACTING = "extracting"
    SCORING = "scoring"
    AI_GENERATING = "ai_generating"
    COMPLETE = "complete"
    FAILED = "failed"


CANCELLABLE_STAGES = (ScanStatus.QUEUED, ScanStatus.RENDERING, ScanStatus.EXTRACTING, ScanStatus.SCORING)
FINISHED_STAGES = (ScanStatus.COMPLETE, ScanStatus.FAILED)


class ScanError(Exception):
    """Base class for user-visible scan failures."""


class InvalidURLError(ScanError):
    pass


class InsufficientCreditsError(ScanError):
    pass


class ScanRateLimitedError(ScanError):
    """Free email scan requested again inside the cooldown window."""


class TargetBlockedError(ScanError):
    pass


class ScanNotFoundError(ScanError):
    pass


class ScanCancelledError(ScanError):
    pass


@dataclass
class ScanJob:
    run_id: str
    url: str
    user_id: Optional[str] = None
    email_hash: Optional[str] = None
    payment: str = "credits"
    status: ScanStatus = ScanStatus.QUEUED
    cancelled: bool = False
    error: Optional[str] = None
    task: Optional[asyncio.Task] = None


def new_run_id() -> str:
    return f"scan_{uuid.uuid4().hex}"


def hash_email(email: str) -> str:
    return hashlib.sha256(email.strip().lower().encode("utf-8")).hexdigest()


def normalize_url(raw: str) -> str:
    """Add a missing scheme, lowercase the host and reject anything that is not a public-looking http(s) URL."""
    text = str(raw or "").strip()
    if not text:
        raise InvalidURLError("URL is required")
    if not re.match(r"^[a-z][a-z0-9+.-]*://", text, re.IGNORECASE):
        text = "https://" + text
    parsed = urlparse(text)
    if parsed.scheme.lower() not in ("http", "https"):
        raise InvalidURLError(f"Unsupported URL scheme: {parsed.scheme}")
    host = (parsed.hostname or "").lower()
    if not host or not _HOST_PATTERN.match(host):
        raise InvalidURLError(f"Invalid URL: {raw}")
    try:
        port = parsed.port
    except ValueError as e:
        raise InvalidURLError(f"Invalid port in URL: {raw}") from e
    netloc = host if port is None else f"{host}:{port}"
    return urlunparse((parsed.scheme.lower(), netloc, parsed.path or "/", "", parsed.query, ""))


def failed_result(job: ScanJob, error: str, remaining_credits: int = 0) -> ScanResult:
    """Minimal placeholder analysis for a scan that never produced page data."""
    return {
        "run_id": job.run_id,
        "url": job.url,
        "status": ScanStatus.FAILED.value,
        "cancelled": job.cancelled,
        "error": error,
        "cost": 0,
        "remaining_credits": remaining_credits,
        "analysis": {
            "url": job.url,
            "overall_score": FAILED_PLACEHOLDER_SCORE,
            "band": "red",
            "issues": [error],
            "quick_recommendations": list(FAILED_REMEDIATION),
        },
        "ai": placeholder_recommendations().model_dump(by_alias=True),
        "ai_status": "unavailable",
    }


class ScanOrchestrator:
    """Runs scans with a global concurrency cap. Collaborators are injected."""

    def __init__(
        self,
        renderer: Renderer,
        ledger: CreditLedger,
        store: ResultStore,
        complete: Completion = claude_complete,
        site_checks: Callable[[str], SiteChecks] = run_site_checks,
        max_concurrent: int = MAX_CONCURRENT_SCANS,
        scan_cost: int = SCAN_COST,
        render_timeout: float = RENDER_TIMEOUT_SECONDS,
        ai_timeout: float = AI_TIMEOUT_SECONDS,
    ):
        self.renderer = renderer
        self.ledger = ledger
        self.store = store
        self.complete = complete
        self.site_checks = site_checks
        self.scan_cost = scan_cost
        self.render_timeout = render_timeout
        self.ai_timeout = ai_timeout
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._jobs: dict[str, ScanJob] = {}

    # --- job lifecycle ---

    def create_job(self, url: str, user_id: Optional[str] = None, email: Optional[str] = None) -> ScanJob:
        """Validate the request and check eligibility. Nothing is charged yet."""
        job = ScanJob(run_id=new_run_id(), url=normalize_url(url), user_id=user_id)
        if user_id:
            if self.ledger.free_scan_available(user_id):
                job.payment = "free_scan"
            elif self.ledger.get_balance(user_id) >= self.scan_cost:
                job.payment = "credits"
            else:
                raise InsufficientCreditsError(
                    f"Insufficient credits. Required: {self.scan_cost}, "
                    f"Available: {self.ledger.get_balance(user_id)}"
                )
        elif email:
            job.email_hash = hash_email(email)
            job.payment = "email"
            if not self.ledger.use_email_scan(job.email_hash, job.run_id):
                raise ScanRateLimitedError("A free scan was just run for this email. Please wait a few minutes.")
        else:
            raise InsufficientCreditsError("A user account or email is required to scan")
        self._jobs[job.run_id] = job
        log.info("Scan %s queued for %s (%s)", job.run_id, job.url, job.payment)
        return job

    async def run_scan(self, url: str, user_id: Optional[str] = None, email: Optional[str] = None) -> ScanResult:
        """Create a job and run it to completion."""
        job = self.create_job(url, user_id=user_id, email=email)
        return await self.execute(job)

    def start_scan(self, url: str, user_id: Optional[str] = None, email: Optional[str] = None) -> ScanJob:
        """Create a job and run it in the background. Must be called inside a running loop."""
        job = self.create_job(url, user_id=user_id, email=email)
        job.task = asyncio.get_running_loop().create_task(self.execute(job))
        return job

    def cancel(self, run_id: str) -> dict:
        """Request cancellation. Finished scans are returned unchanged."""
        job = self._jobs.get(run_id)
        if job is not None and job.status not in FINISHED_STAGES:
            job.cancelled = True
            log.info("Scan %s cancellation requested at %s", run_id, job.status.value)
        return self.get_status(run_id)

    def get_status(self, run_id: str) -> dict:
        job = self._jobs.get(run_id)
        if job is not None:
            return {"run_id": run_id, "status": job.status.value, "cancelled": job.cancelled,
                    "error": job.error, "result": None}
        stored = self.store.get(run_id)
        if stored is None:
            raise ScanNotFoundError(run_id)
        return {
            "run_id": run_id,
            "status": stored.get("status", ScanStatus.COMPLETE.value),
            "cancelled": bool(stored.get("cancelled")),
            "error": stored.get("error"),
            "result": stored,
        }

    def _advance(self, job: ScanJob, status: ScanStatus) -> None:
        if job.cancelled and job.status in CANCELLABLE_STAGES and status in CANCELLABLE_STAGES:
            raise ScanCancelledError("Scan cancelled")
        log.info("Scan %s: %s -> %s", job.run_id, job.status.value, status.value)
        job.status = status

    def _finish(self, job: ScanJob, result: ScanResult) -> ScanResult:
        job.status = ScanStatus(result["status"])
        job.error = result.get("error")
        self.store.put(job.run_id, dict(result))
        self._jobs.pop(job.run_id, None)
        return result

    # --- pipeline ---

    async def _site_checks(self, url: str) -> Optional[SiteChecks]:
        try:
            return await asyncio.to_thread(self.site_checks, url)
        except Exception:
            log.exception("Site checks failed for %s", url)
            return None

    async def _render_and_check(self, job: ScanJob):
        checks_task = asyncio.create_task(self._site_checks(job.url))
        try:
            # goto plus one reload
            rendered = await asyncio.wait_for(self.renderer.render(job.url, self.render_timeout), self.render_timeout * 2)
        except RenderBlockedError as e:
            checks_task.cancel()
            raise TargetBlockedError(str(e)) from e
        except BaseException:
            checks_task.cancel()
            raise
        return rendered, await checks_task

    def _extract(self, html: str, final_url: str, checks: Optional[SiteChecks]) -> SeoSignals:
        try:
            signals = extract_signals(html, final_url)
        except Exception:
            log.exception("Extraction failed for %s, using defaults", final_url)
            signals = default_signals(final_url)
        if checks is not None:
            signals = merge_signals(signals, signal_updates(checks))
        return signals

    async def _ai_recommendations(self, job: ScanJob, signals: SeoSignals, score: dict, issues: list[str]):
        try:
            recs = await asyncio.wait_for(
                asyncio.to_thread(generate_recommendations, signals, score, issues, self.complete),
                self.ai_timeout,
            )
        except asyncio.TimeoutError:
            log.warning("Scan %s: AI step timed out after %.0fs", job.run_id, self.ai_timeout)
            return placeholder_recommendations(), "unavailable"
        except Exception as e:
            log.warning("Scan %s: AI step failed, using placeholder: %s", job.run_id, e)
            return placeholder_recommendations(), "unavailable"
        if job.cancelled:
            log.info("Scan %s: cancelled during AI step, discarding AI result", job.run_id)
            return placeholder_recommendations(), "unavailable"
        return recs, "ok"

    def _charge(self, job: ScanJob) -> tuple[int, int]:
        """Consume payment for a finished scan. Returns (cost, remaining credits)."""
        if job.payment == "email" or not job.user_id:
            return 0, 0
        if job.payment == "free_scan" and self.ledger.use_free_scan(job.user_id, job.run_id):
            log.info("Scan %s used the monthly free scan for %s", job.run_id, job.user_id)
            return 0, self.ledger.get_balance(job.user_id)
        outcome = self.ledger.consume(job.user_id, job.run_id, self.scan_cost)
        if not outcome.success:
            log.warning("Scan %s: credits ran out before charging %s", job.run_id, job.user_id)
            return 0, outcome.remaining_balance
        log.info(
            "Scan %s consumed %d credit(s) from %s, remaining=%d idempotent=%s",
            job.run_id, self.scan_cost, job.user_id, outcome.remaining_balance, outcome.idempotent,
        )
        return self.scan_cost, outcome.remaining_balance

    def _fail(self, job: ScanJob, error: str) -> ScanResult:
        remaining = self.ledger.get_balance(job.user_id) if job.user_id else 0
        return self._finish(job, failed_result(job, error, remaining))

    async def execute(self, job: ScanJob) -> ScanResult:
        async with self._semaphore:
            try:
                return await self._execute(job)
            except ScanCancelledError:
                log.info("Scan %s cancelled before scoring", job.run_id)
                return self._fail(job, "Scan cancelled")
            except TargetBlockedError as e:
                log.warning("Scan %s: target blocked: %s", job.run_id, e)
                return self._fail(job, f"Target blocked: {e}")
            except (RenderError, asyncio.TimeoutError) as e:
                log.warning("Scan %s: render failed: %s", job.run_id, e)
                return self._fail(job, f"Could not load {job.url}")
            except Exception:
                log.exception("Scan %s failed unexpectedly", job.run_id)
                return self._fail(job, "Unexpected error while scanning")

    async def _execute(self, job: ScanJob) -> ScanResult:
        self._advance(job, ScanStatus.RENDERING)
        rendered, checks = await self._render_and_check(job)

        self._advance(job, ScanStatus.EXTRACTING)
        signals = self._extract(rendered.html, rendered.final_url or job.url, checks)

        self._advance(job, ScanStatus.SCORING)
        schema_items = build_schema_items(signals["json_ld"])
        score = compute_overall_score(schema_items, signals)
        issues = build_issue_list(signals)
        analysis = {
            "url": job.url,
            "final_url": rendered.final_url,
            "http_status": rendered.status,
            **score,
            "area_notes": area_notes(schema_items, signals),
            "issues": issues,
            "quick_recommendations": build_quick_recommendations(schema_items, signals),
            "schema_items": [
                {"types": item["types"], "errors": item["errors"], "warnings": item["warnings"]}
                for item in schema_items
            ],
            "signals": signals,
            "ai_bots": checks["ai_bots"] if checks else [],
            "robots_url": checks["robots"]["url"] if checks else "",
            "performance": checks["performance"] if checks else None,
        }

        self._advance(job, ScanStatus.AI_GENERATING)
        recs, ai_status = await self._ai_recommendations(job, signals, score, issues)

        cost, remaining = self._charge(job)
        result: ScanResult = {
            "run_id": job.run_id,
            "url": job.url,
            "status": ScanStatus.COMPLETE.value,
            "cancelled": job.cancelled,
            "error": None,
            "cost": cost,
            "remaining_credits": remaining,
            "analysis": analysis,
            "ai": recs.model_dump(by_alias=True),
            "ai_status": ai_status,
        }
        log.info("Scan %s complete: score=%d band=%s", job.run_id, score["overall_score"], score["band"])
        return self._finish(job, result)
