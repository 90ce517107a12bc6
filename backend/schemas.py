"""Pydantic schemas for API request/response and the AI recommendation contract."""

import re
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

Level = Literal["high", "med", "low"]


class ScanRequest(BaseModel):
    """Request body for POST /scan and POST /scan/start.

    Either a registered user id (credit-gated) or an email (free scan) is required.
    """

    url: str
    user_id: Optional[str] = None
    email: Optional[str] = None

    @field_validator("url", mode="before")
    @classmethod
    def normalize_url(cls, value: object) -> str:
        return str(value or "").strip()

    @field_validator("user_id", mode="before")
    @classmethod
    def normalize_user_id(cls, value: object) -> Optional[str]:
        text = str(value or "").strip()
        return text or None

    @field_validator("email", mode="before")
    @classmethod
    def validate_email(cls, value: object) -> Optional[str]:
        normalized = str(value or "").strip().lower()
        if not normalized:
            return None
        if not EMAIL_PATTERN.match(normalized):
            raise ValueError("Invalid email format")
        return normalized

    @model_validator(mode="after")
    def require_identity(self) -> "ScanRequest":
        if not self.url:
            raise ValueError("URL is required")
        if not self.user_id and not self.email:
            raise ValueError("Either user_id or email is required")
        return self


class ScanStartResponse(BaseModel):
    """Response for POST /scan/start."""

    run_id: str
    status: str


class ScanStatusResponse(BaseModel):
    """Progress of a scan, with the result once it is complete."""

    run_id: str
    status: str
    cancelled: bool = False
    error: Optional[str] = None
    result: Optional[dict] = None


class CancelResponse(BaseModel):
    run_id: str
    cancelled: bool
    status: str


class CreditsResponse(BaseModel):
    """Response for GET /credits/{user_id}."""

    user_id: str
    balance: int
    free_scan_available: bool


class GrantRequest(BaseModel):
    """Request body for POST /credits/{user_id}/grant."""

    amount: int = Field(gt=0)
    reason: str = "grant"
    ext_ref: Optional[str] = None
    expires_in_days: Optional[int] = Field(default=None, gt=0)


class GrantResponse(BaseModel):
    success: bool
    new_balance: int
    idempotent: bool


# --- AI recommendation contract (version 1.0) ---


class Action(BaseModel):
    """One prioritised action. Levels must already be canonical."""

    task: str
    impact: Level
    effort: Level
    where: Optional[list[str]] = None


class SchemaBlock(BaseModel):
    """A recommended JSON-LD block, with ready-to-paste markup."""

    model_config = ConfigDict(populate_by_name=True)

    type: str
    where: list[str]
    jsonld: dict
    html_code: Optional[str] = Field(default=None, alias="htmlCode")


class AIRecommendations(BaseModel):
    version: Literal["1.0"]
    summary: str = Field(max_length=1000)
    prioritised_actions: list[Action]
    schema_recommendations: list[SchemaBlock]
    notes: Optional[list[str]] = None
