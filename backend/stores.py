"""Storage interfaces used by the scan orchestrator.

ResultStore holds finished (or failed) scan results by run id. CreditLedger is
the billing collaborator: the orchestrator only asks for balances and
idempotent consume/grant, never computes balances itself.
"""

import os
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Protocol

from dotenv import load_dotenv

load_dotenv(dotenv_path=Path(__file__).resolve().parent / ".env")

RESULT_TTL_SECONDS = float(os.getenv("RESULT_TTL_SECONDS", "3600"))


@dataclass(frozen=True)
class ConsumeResult:
    success: bool
    remaining_balance: int
    idempotent: bool = False


@dataclass(frozen=True)
class GrantResult:
    success: bool
    new_balance: int
    idempotent: bool = False


class ResultStore(Protocol):
    def put(self, run_id: str, value: dict) -> None: ...

    def get(self, run_id: str) -> Optional[dict]: ...

    def delete(self, run_id: str) -> None: ...


class CreditLedger(Protocol):
    def get_balance(self, user_id: str) -> int: ...

    def consume(self, user_id: str, job_id: str, amount: int = 1) -> ConsumeResult: ...

    def grant(
        self,
        user_id: str,
        amount: int,
        reason: str,
        expires_at: Optional[datetime] = None,
        ext_ref: Optional[str] = None,
    ) -> GrantResult: ...

    def free_scan_available(self, user_id: str) -> bool: ...

    def use_free_scan(self, user_id: str, job_id: str) -> bool: ...

    def use_email_scan(self, email_hash: str, job_id: str) -> bool: ...


class MemoryResultStore:
    """In-process result store with TTL eviction on access."""

    def __init__(self, ttl_seconds: float = RESULT_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._items: dict[str, tuple[float, dict]] = {}
        self._lock = threading.Lock()

    def _evict(self) -> None:
        now = self._clock()
        expired = [key for key, (expires, _) in self._items.items() if expires <= now]
        for key in expired:
            del self._items[key]

    def put(self, run_id: str, value: dict) -> None:
        with self._lock:
            self._evict()
            self._items[run_id] = (self._clock() + self.ttl_seconds, value)

    def get(self, run_id: str) -> Optional[dict]:
        with self._lock:
            self._evict()
            entry = self._items.get(run_id)
            return entry[1] if entry else None

    def delete(self, run_id: str) -> None:
        with self._lock:
            self._items.pop(run_id, None)

    def __len__(self) -> int:
        with self._lock:
            self._evict()
            return len(self._items)
