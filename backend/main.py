"""AI Visibility Checker API – FastAPI app and scan endpoints."""

import hmac
import logging
import os
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from database import DB_PATH, SQLiteCreditLedger, SQLiteResultStore, init_db
from renderer import get_renderer
from scan_service import (
    InsufficientCreditsError,
    InvalidURLError,
    ScanError,
    ScanNotFoundError,
    ScanOrchestrator,
    ScanRateLimitedError,
)
from schemas import (
    CancelResponse,
    CreditsResponse,
    GrantRequest,
    GrantResponse,
    ScanRequest,
    ScanStartResponse,
    ScanStatusResponse,
)
from stores import MemoryResultStore

load_dotenv(dotenv_path=Path(__file__).resolve().parent / ".env")

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
log = logging.getLogger(__name__)

app = FastAPI(
    title="AI Visibility Checker API",
    description="Scores how visible a web page is to AI assistants and answer engines",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def startup() -> None:
    init_db()


@lru_cache(maxsize=1)
def get_orchestrator() -> ScanOrchestrator:
    """Process-wide orchestrator. Tests override this dependency."""
    store = MemoryResultStore() if os.getenv("RESULT_STORE", "sqlite").lower() == "memory" else SQLiteResultStore(DB_PATH)
    return ScanOrchestrator(
        renderer=get_renderer(),
        ledger=SQLiteCreditLedger(DB_PATH),
        store=store,
    )


def _http_error(exc: ScanError) -> HTTPException:
    if isinstance(exc, InvalidURLError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, InsufficientCreditsError):
        return HTTPException(status_code=402, detail=str(exc))
    if isinstance(exc, ScanNotFoundError):
        return HTTPException(status_code=404, detail="Scan not found")
    if isinstance(exc, ScanRateLimitedError):
        return HTTPException(status_code=429, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


@app.post("/scan")
async def scan(body: ScanRequest, orchestrator: ScanOrchestrator = Depends(get_orchestrator)) -> dict:
    """
    Pipeline: render -> extract -> score -> AI recommendations -> charge -> store.
    Waits for the scan and returns the full result.
    """
    try:
        return await orchestrator.run_scan(body.url, user_id=body.user_id, email=body.email)
    except ScanError as e:
        raise _http_error(e) from e


@app.post("/scan/start", response_model=ScanStartResponse)
async def start_scan(
    body: ScanRequest, orchestrator: ScanOrchestrator = Depends(get_orchestrator)
) -> ScanStartResponse:
    """Queue a scan in the background; poll GET /scan/{run_id} for progress."""
    try:
        job = orchestrator.start_scan(body.url, user_id=body.user_id, email=body.email)
    except ScanError as e:
        raise _http_error(e) from e
    return ScanStartResponse(run_id=job.run_id, status=job.status.value)


@app.get("/scan/{run_id}", response_model=ScanStatusResponse)
def get_scan(run_id: str, orchestrator: ScanOrchestrator = Depends(get_orchestrator)) -> ScanStatusResponse:
    try:
        return ScanStatusResponse(**orchestrator.get_status(run_id))
    except ScanError as e:
        raise _http_error(e) from e


@app.post("/scan/{run_id}/cancel", response_model=CancelResponse)
def cancel_scan(run_id: str, orchestrator: ScanOrchestrator = Depends(get_orchestrator)) -> CancelResponse:
    try:
        status = orchestrator.cancel(run_id)
    except ScanError as e:
        raise _http_error(e) from e
    return CancelResponse(run_id=run_id, cancelled=status["cancelled"], status=status["status"])


@app.get("/credits/{user_id}", response_model=CreditsResponse)
def get_credits(user_id: str, orchestrator: ScanOrchestrator = Depends(get_orchestrator)) -> CreditsResponse:
    ledger = orchestrator.ledger
    return CreditsResponse(
        user_id=user_id,
        balance=ledger.get_balance(user_id),
        free_scan_available=ledger.free_scan_available(user_id),
    )


def require_admin(x_admin_token: str | None = Header(default=None)) -> None:
    """Grants need ADMIN_TOKEN. With no token configured the route is closed."""
    expected = os.getenv("ADMIN_TOKEN", "")
    if not expected or not x_admin_token or not hmac.compare_digest(x_admin_token.encode(), expected.encode()):
        raise HTTPException(status_code=403, detail="Admin token required")


@app.post("/credits/{user_id}/grant", response_model=GrantResponse, dependencies=[Depends(require_admin)])
def grant_credits(
    user_id: str, body: GrantRequest, orchestrator: ScanOrchestrator = Depends(get_orchestrator)
) -> GrantResponse:
    """Add credits to a user's ledger. Repeating the same ext_ref is a no-op."""
    expires_at = None
    if body.expires_in_days:
        expires_at = datetime.now(timezone.utc) + timedelta(days=body.expires_in_days)
    outcome = orchestrator.ledger.grant(
        user_id, body.amount, body.reason, expires_at=expires_at, ext_ref=body.ext_ref
    )
    log.info("Granted %d credit(s) to %s, balance=%d", body.amount, user_id, outcome.new_balance)
    return GrantResponse(success=outcome.success, new_balance=outcome.new_balance, idempotent=outcome.idempotent)


@app.get("/health")
def health() -> dict:
    """Health check for deployment."""
    return {"status": "ok"}
