"""Pydantic request/response models for the API."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, field_validator

PriorityLevel = Literal["high", "medium", "low"]

# Fields whose change on an accepted task is reported as a mid-task edit.
TRACKED_EDIT_FIELDS: tuple[str, ...] = (
    "title",
    "location",
    "duration",
    "gold",
    "description",
    "skills",
    "tags",
    "priority_level",
    "deadline",
)


def _validate_deadline(value: str | None) -> str | None:
    if value is None:
        return None
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        msg = "deadline must be an ISO 8601 timestamp"
        raise ValueError(msg) from exc
    return value


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    model_config = ConfigDict(extra="forbid")
    status: Literal["ok"]
    uptime_seconds: float
    started_at: str
    total_tasks: int
    tasks_by_status: dict[str, int]


class ErrorResponse(BaseModel):
    """Standard error response model."""

    model_config = ConfigDict(extra="forbid")
    error: str
    message: str
    details: dict[str, object]


class TaskDraft(BaseModel):
    """Body of POST /tasks."""

    model_config = ConfigDict(extra="forbid")
    title: str = Field(min_length=1)
    location: str | None = None
    duration: str | None = None
    description: str | None = None
    skills: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    banner_url: str | None = None
    is_featured: StrictBool = False
    gold: StrictInt = Field(ge=0)
    priority_level: PriorityLevel = "medium"
    deadline: str | None = None

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, value: str) -> str:
        if not value.strip():
            msg = "title must not be blank"
            raise ValueError(msg)
        return value.strip()

    @field_validator("deadline")
    @classmethod
    def _deadline_iso(cls, value: str | None) -> str | None:
        return _validate_deadline(value)


class TaskEdit(BaseModel):
    """
    Body of PATCH /tasks/{task_id}.

    Every field is optional and only the fields present in the body are
    applied. Anything outside this allow-list is rejected.
    """

    model_config = ConfigDict(extra="forbid")
    title: str | None = Field(default=None, min_length=1)
    location: str | None = None
    duration: str | None = None
    gold: StrictInt | None = Field(default=None, ge=0)
    description: str | None = None
    priority_level: PriorityLevel | None = None
    skills: list[str] | None = None
    tags: list[str] | None = None
    banner_url: str | None = None
    is_featured: StrictBool | None = None
    deadline: str | None = None

    @field_validator("deadline")
    @classmethod
    def _deadline_iso(cls, value: str | None) -> str | None:
        return _validate_deadline(value)

    def changes(self) -> dict[str, object]:
        """The fields explicitly present in the request body."""
        return {name: getattr(self, name) for name in self.model_fields_set}


class ApplicationCreate(BaseModel):
    """Body of POST /tasks/{task_id}/applications."""

    model_config = ConfigDict(extra="forbid")
    message: str | None = None


class SubmissionReport(BaseModel):
    """Body of POST /tasks/{task_id}/submission."""

    model_config = ConfigDict(extra="forbid")
    proof_url: str | None = None
    time_taken_hours: float | None = Field(default=None, ge=0)
    notes: str | None = None


class RejectionRequest(BaseModel):
    """Body of POST /tasks/{task_id}/submission/reject."""

    model_config = ConfigDict(extra="forbid")
    reason: str


class DisputeResolution(BaseModel):
    """Body of POST /disputes/{task_id}/resolve."""

    model_config = ConfigDict(extra="forbid")
    winner: Literal["student", "employer"]
    reason: str | None = None


class AnomalyAction(BaseModel):
    """Body of anomaly resolve/dismiss/investigate actions."""

    model_config = ConfigDict(extra="forbid")
    notes: str | None = None


class CompanyNameChange(BaseModel):
    """Body of PUT /employers/me/company-name."""

    model_config = ConfigDict(extra="forbid")
    company_name: str = Field(min_length=1)


class AuditRequest(BaseModel):
    """Body of POST /admin/audit and POST /admin/audit/{student_id}."""

    model_config = ConfigDict(extra="forbid")
    run_id: str | None = None
