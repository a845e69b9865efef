"""
API Request Validation.

Uses Pydantic for request payload and query string validation.
Out-of-range values are rejected, never clamped, and JSON body
numbers and booleans must arrive as such: "7" or "yes" is an error.
"""

from typing import Dict, List, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
    ValidationInfo,
)

from invoice_followup.config import settings
from invoice_followup.infrastructure.firestore import JobKind, JobStatus


def _document_id(v: Optional[str], field_name: str) -> Optional[str]:
    """Validate a Firestore document id."""
    if v is None:
        return v
    v = v.strip()
    if not v:
        raise ValueError(f"{field_name} cannot be empty or whitespace")
    if "/" in v or "\\" in v:
        raise ValueError(f"{field_name} cannot contain path separators")
    return v


class CreateJobRequest(BaseModel):
    """Request body for POST /jobs."""

    model_config = ConfigDict(extra="forbid")

    type: JobKind = Field(..., description="payment_reminder, follow_up or check_in")
    invoice_id: Optional[str] = Field(default=None, max_length=255)
    client_id: Optional[str] = Field(default=None, max_length=255)
    template_id: Optional[str] = Field(default=None, max_length=100)
    days_from_now: int = Field(
        default=settings.reminders.default_followup_days,
        ge=settings.reminders.min_followup_days,
        le=settings.reminders.max_followup_days,
        strict=True,
    )
    strategy_id: str = Field(
        default=settings.reminders.default_strategy_id,
        min_length=1,
        max_length=100,
    )
    variables: Optional[Dict[str, str]] = Field(
        default=None,
        description="Extra template variables for follow-ups",
    )

    @field_validator("invoice_id", "client_id")
    @classmethod
    def validate_ids(cls, v: Optional[str], info: ValidationInfo) -> Optional[str]:
        return _document_id(v, info.field_name)

    @model_validator(mode="after")
    def require_subject(self) -> "CreateJobRequest":
        """A payment reminder needs an invoice, anything else a client."""
        if self.type == JobKind.PAYMENT_REMINDER and not self.invoice_id:
            raise ValueError("invoice_id is required for payment_reminder jobs")
        if self.type != JobKind.PAYMENT_REMINDER and not self.client_id:
            raise ValueError("client_id is required for follow_up and check_in jobs")
        return self


class ListJobsRequest(BaseModel):
    """Query string for GET /jobs."""

    limit: int = Field(
        default=settings.trigger.default_list_limit,
        ge=1,
        le=settings.trigger.max_list_limit,
    )


class EngagementRequest(BaseModel):
    """Query string for GET /clients/<id>/engagement."""

    days: int = Field(default=30, ge=1, le=365)


class PauseFollowupsRequest(BaseModel):
    """Request body for POST /followups/pause."""

    client_id: str = Field(..., min_length=1, max_length=255)
    pause: bool = Field(default=True, strict=True, description="False resumes paused jobs")

    @field_validator("client_id")
    @classmethod
    def validate_client_id(cls, v: str) -> str:
        return _document_id(v, "client_id")


class CleanupJobsRequest(BaseModel):
    """Request body for POST /jobs/cleanup."""

    owner_id: str = Field(..., min_length=1, max_length=255)
    statuses: Optional[List[JobStatus]] = Field(
        default=None,
        min_length=1,
        description="Only delete jobs in these statuses",
    )

    @field_validator("owner_id")
    @classmethod
    def validate_owner_id(cls, v: str) -> str:
        return _document_id(v, "owner_id")
