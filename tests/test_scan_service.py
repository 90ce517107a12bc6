import asyncio
import time

import pytest

from recommendations import PLACEHOLDER_SUMMARY
from scan_service import (
    FAILED_PLACEHOLDER_SCORE,
    InsufficientCreditsError,
    InvalidURLError,
    ScanNotFoundError,
    ScanRateLimitedError,
    ScanStatus,
    hash_email,
    normalize_url,
)

from conftest import BARE_PAGE, VALID_AI_REPLY, FakeRenderer


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("acme.example", "https://acme.example/"),
        ("  HTTP://Acme.Example/about?x=1#top ", "http://acme.example/about?x=1"),
        ("https://localhost:8080", "https://localhost:8080/"),
    ],
)
def test_normalize_url(raw, expected):
    assert normalize_url(raw) == expected


@pytest.mark.parametrize("raw", ["", "ftp://acme.example/", "not a url", "https://", "javascript:alert(1)"])
def test_normalize_url_rejects(raw):
    with pytest.raises(InvalidURLError):
        normalize_url(raw)


def test_hash_email_is_case_insensitive():
    assert hash_email(" Owner@Acme.Example ") == hash_email("owner@acme.example")
    assert len(hash_email("a@b.co")) == 64


def test_first_scan_uses_free_scan_then_credits(make_orchestrator, ledger, store):
    ledger.grant("u1", 3, "purchase")
    orchestrator = make_orchestrator()

    first = asyncio.run(orchestrator.run_scan("acme.example", user_id="u1"))
    assert first["status"] == "complete"
    assert first["cost"] == 0
    assert first["remaining_credits"] == 3

    second = asyncio.run(orchestrator.run_scan("acme.example", user_id="u1"))
    assert second["cost"] == 1
    assert second["remaining_credits"] == 2
    assert ledger.get_balance("u1") == 2
    assert store.get(second["run_id"]) == second


def test_result_shape(make_orchestrator, ledger):
    ledger.use_free_scan("u1", "earlier")
    ledger.grant("u1", 1, "purchase")
    result = asyncio.run(make_orchestrator().run_scan("https://acme.example/", user_id="u1"))
    analysis = result["analysis"]
    assert 0 <= analysis["overall_score"] <= 100
    assert analysis["band"] in ("red", "amber", "green")
    assert set(analysis["area_breakdown"]) == {"schema", "performance", "content", "images", "accessibility", "technical_seo"}
    assert len(analysis["quick_recommendations"]) == 4
    assert analysis["signals"]["robots_txt_status"] == "found"
    assert analysis["ai_bots"][0]["bot"] == "GPTBot"
    assert result["ai_status"] == "ok"
    assert result["ai"]["schema_recommendations"][0]["htmlCode"].startswith("<script")


def test_insufficient_credits_rejected_before_work(make_orchestrator, ledger):
    ledger.use_free_scan("u1", "earlier")
    renderer = FakeRenderer()
    orchestrator = make_orchestrator(renderer=renderer)
    with pytest.raises(InsufficientCreditsError):
        asyncio.run(orchestrator.run_scan("acme.example", user_id="u1"))
    assert renderer.calls == []


def test_invalid_url_rejected(make_orchestrator):
    with pytest.raises(InvalidURLError):
        asyncio.run(make_orchestrator().run_scan("ftp://acme.example", user_id="u1"))


def test_blocked_target_is_failed_and_not_charged(make_orchestrator, ledger, store):
    ledger.use_free_scan("u1", "earlier")
    ledger.grant("u1", 2, "purchase")
    result = asyncio.run(make_orchestrator(renderer=FakeRenderer(blocked=True)).run_scan("acme.example", user_id="u1"))
    assert result["status"] == ScanStatus.FAILED.value
    assert result["analysis"]["overall_score"] == FAILED_PLACEHOLDER_SCORE
    assert result["analysis"]["band"] == "red"
    assert result["error"].startswith("Target blocked")
    assert result["cost"] == 0
    assert result["remaining_credits"] == 2
    assert ledger.get_balance("u1") == 2
    assert store.get(result["run_id"])["status"] == "failed"


def test_ai_failure_falls_back_to_placeholder(make_orchestrator, ledger):
    ledger.use_free_scan("u1", "earlier")
    ledger.grant("u1", 1, "purchase")

    def broken(prompt):
        raise RuntimeError("model offline")

    result = asyncio.run(make_orchestrator(complete=broken).run_scan("acme.example", user_id="u1"))
    assert result["status"] == "complete"
    assert result["ai_status"] == "unavailable"
    assert result["ai"]["summary"] == PLACEHOLDER_SUMMARY
    assert result["cost"] == 1


def test_unparseable_ai_reply_falls_back(make_orchestrator, ledger):
    ledger.grant("u1", 1, "purchase")
    result = asyncio.run(make_orchestrator(complete=lambda prompt: "no json here").run_scan("acme.example", user_id="u1"))
    assert result["ai_status"] == "unavailable"
    assert result["analysis"]["overall_score"] >= 0


def test_ai_timeout_falls_back(make_orchestrator, ledger):
    ledger.grant("u1", 1, "purchase")

    def slow(prompt):
        time.sleep(0.5)
        return VALID_AI_REPLY

    result = asyncio.run(make_orchestrator(complete=slow, ai_timeout=0.05).run_scan("acme.example", user_id="u1"))
    assert result["status"] == "complete"
    assert result["ai_status"] == "unavailable"


def test_cancel_before_scoring_stores_failed_without_charge(make_orchestrator, ledger, store):
    ledger.use_free_scan("u1", "earlier")
    ledger.grant("u1", 2, "purchase")
    holder = {}

    def cancel_during_render(url):
        holder["orchestrator"].cancel(holder["job"].run_id)

    orchestrator = make_orchestrator(renderer=FakeRenderer(on_render=cancel_during_render))
    holder["orchestrator"] = orchestrator
    job = orchestrator.create_job("acme.example", user_id="u1")
    holder["job"] = job

    result = asyncio.run(orchestrator.execute(job))
    assert result["status"] == "failed"
    assert result["cancelled"] is True
    assert ledger.get_balance("u1") == 2
    assert store.get(job.run_id)["cancelled"] is True


def test_cancel_during_ai_still_completes_and_charges(make_orchestrator, ledger):
    ledger.use_free_scan("u1", "earlier")
    ledger.grant("u1", 2, "purchase")
    holder = {}

    def cancel_then_answer(prompt):
        holder["orchestrator"].cancel(holder["job"].run_id)
        return VALID_AI_REPLY

    orchestrator = make_orchestrator(complete=cancel_then_answer)
    holder["orchestrator"] = orchestrator
    job = orchestrator.create_job("acme.example", user_id="u1")
    holder["job"] = job

    result = asyncio.run(orchestrator.execute(job))
    assert result["status"] == "complete"
    assert result["cancelled"] is True
    assert result["ai_status"] == "unavailable"
    assert result["cost"] == 1
    assert ledger.get_balance("u1") == 1


def test_email_scan_is_free_and_rate_limited(make_orchestrator):
    orchestrator = make_orchestrator()
    result = asyncio.run(orchestrator.run_scan("acme.example", email="owner@acme.example"))
    assert result["status"] == "complete"
    assert result["cost"] == 0
    with pytest.raises(ScanRateLimitedError):
        asyncio.run(orchestrator.run_scan("acme.example", email="OWNER@acme.example"))


def test_status_lookup(make_orchestrator, ledger):
    ledger.grant("u1", 1, "purchase")
    orchestrator = make_orchestrator(renderer=FakeRenderer(html=BARE_PAGE))
    job = orchestrator.create_job("acme.example", user_id="u1")
    assert orchestrator.get_status(job.run_id)["status"] == "queued"

    asyncio.run(orchestrator.execute(job))
    status = orchestrator.get_status(job.run_id)
    assert status["status"] == "complete"
    assert status["result"]["analysis"]["band"] == "red"

    with pytest.raises(ScanNotFoundError):
        orchestrator.get_status("scan_missing")


def test_start_scan_runs_in_background(make_orchestrator, ledger):
    ledger.grant("u1", 1, "purchase")
    orchestrator = make_orchestrator()

    async def start_and_wait():
        job = orchestrator.start_scan("acme.example", user_id="u1")
        assert job.task is not None
        return await job.task

    result = asyncio.run(start_and_wait())
    assert result["status"] == "complete"


def test_concurrency_cap(make_orchestrator, ledger):
    ledger.grant("u1", 5, "purchase")
    state = {"active": 0, "peak": 0}

    class SlowRenderer(FakeRenderer):
        async def render(self, url, timeout=45):
            state["active"] += 1
            state["peak"] = max(state["peak"], state["active"])
            await asyncio.sleep(0.02)
            state["active"] -= 1
            return await super().render(url, timeout)

    orchestrator = make_orchestrator(renderer=SlowRenderer(), max_concurrent=2)

    async def run_many():
        jobs = [orchestrator.create_job("acme.example", user_id="u1") for _ in range(4)]
        return await asyncio.gather(*(orchestrator.execute(job) for job in jobs))

    results = asyncio.run(run_many())
    assert [r["status"] for r in results] == ["complete"] * 4
    assert state["peak"] == 2
