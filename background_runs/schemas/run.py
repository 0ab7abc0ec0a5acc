"""Run-related Pydantic schemas."""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from background_runs.services.state_machine import PatchRequest


class RunCreate(BaseModel):
    """Schema for creating a new run."""

    model_config = ConfigDict(populate_by_name=True)

    project_id: str = Field(min_length=1, alias="projectId")
    run_type: str = Field(min_length=1, alias="runType")
    input: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[str] = Field(default=None, alias="idempotencyKey")
    max_attempts: int = Field(default=3, ge=1, le=10, alias="maxAttempts")
    retryable: bool = True

    @field_validator("idempotency_key")
    @classmethod
    def validate_idempotency_key(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        if not 8 <= len(value) <= 128:
            raise ValueError("idempotencyKey must be 8-128 characters")
        return value


class RunPatch(PatchRequest):
    """PATCH body for a run. At least one field must be present."""

    retry_after_seconds: Optional[int] = Field(default=None, ge=1, le=3600, alias="retryAfterSeconds")

    @model_validator(mode="after")
    def require_any_field(self) -> "RunPatch":
        if not self.model_fields_set:
            raise ValueError("At least one update field is required.")
        return self


class RunResponse(BaseModel):
    """A run as returned to callers."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    project_id: str
    user_id: str
    run_type: str
    status: str
    input: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("run_metadata", "metadata"),
    )
    output: Optional[Dict[str, Any]] = None
    idempotency_key: Optional[str] = None
    retryable: bool
    attempt_count: int
    max_attempts: int
    cancel_requested: bool
    progress: int
    error_message: Optional[str] = None
    last_heartbeat_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class RunEnvelope(BaseModel):
    """Response wrapping a single run."""

    success: bool = True
    deduplicated: bool = False
    run: RunResponse


class RunListResponse(BaseModel):
    success: bool = True
    runs: List[RunResponse]
