"""
Core data models for the Guardline emergency protocol engine.

Templates describe *what* a response checklist looks like; executions
record *how* a specific alert was actually worked.  Executions reference
steps only by their integer ``order`` so that later template edits never
rewrite execution history.

All timestamps are timezone-aware UTC.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from guardline.errors import ActorValidationError


def utcnow() -> datetime:
    """Default clock used by every component."""
    return datetime.now(timezone.utc)


def validate_actor(actor_id: Optional[str]) -> str:
    """Return the stripped actor id, or raise ``ActorValidationError``."""
    if not isinstance(actor_id, str) or not actor_id.strip():
        raise ActorValidationError(actor_id)
    return actor_id.strip()


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class AlertType(str, enum.Enum):
    """Alert types with a built-in default protocol.

    Templates and alerts store ``alert_type`` as a plain string so that
    organizations can configure custom types; these are the known ones.
    """

    PANIC = "panic"
    MEDICAL = "medical"
    FIRE = "fire"
    SECURITY_BREACH = "security_breach"
    GENERAL = "general"


class ExecutionStatus(str, enum.Enum):
    """Lifecycle states for a protocol execution.

    * ``IN_PROGRESS`` -- responder is working the checklist.
    * ``ESCALATED``   -- raised to higher authority; steps may still be
      completed.
    * ``CLOSED``      -- terminal.  No transition leaves this state.
    """

    IN_PROGRESS = "in_progress"
    ESCALATED = "escalated"
    CLOSED = "closed"


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

class ProtocolStep(BaseModel):
    """A single checklist step inside a protocol template."""

    order: int = Field(
        ...,
        ge=1,
        description="Position in the checklist (1..N, assigned by the template store).",
    )
    title: str = Field(..., description="Step title shown to the responder.")
    title_ar: str = Field(default="", description="Arabic title.")
    description: Optional[str] = Field(default=None)
    description_ar: Optional[str] = Field(default=None)
    is_required: bool = Field(
        default=True,
        description="Whether the step must be completed before closure.",
    )
    photo_required: bool = Field(
        default=False,
        description="Whether the step expects photo evidence.",
    )


class ProtocolTemplate(BaseModel):
    """A configured response checklist for one alert type in one organization.

    Several templates may exist per alert type (versions).  Which one is
    used for a new execution is decided by the ``TemplateStore``.
    """

    template_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    org_id: str = Field(
        ...,
        min_length=1,
        description="Organization that owns this template (multi-tenant key).",
    )
    alert_type: str = Field(..., min_length=1)
    name: str = Field(..., description="Protocol display name.")
    name_ar: str = Field(default="")
    steps: list[ProtocolStep] = Field(default_factory=list)
    sla_minutes: int = Field(
        default=10,
        gt=0,
        description="Target time from execution start to closure, in minutes.",
    )
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = Field(default=None)
    deleted_at: Optional[datetime] = Field(
        default=None,
        description="Soft-delete marker. Deleted templates are hidden from listings.",
    )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def step(self, order: int) -> Optional[ProtocolStep]:
        for s in self.steps:
            if s.order == order:
                return s
        return None

    def required_steps(self) -> list[ProtocolStep]:
        return [s for s in self.steps if s.is_required]


# ---------------------------------------------------------------------------
# Alerts (owned by the alert collaborator)
# ---------------------------------------------------------------------------

class Alert(BaseModel):
    """A triggered emergency alert.

    Created by the alert-ingestion subsystem.  The engine only reads it,
    and writes the resolution fields as part of closing an execution.
    """

    alert_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    org_id: str = Field(..., min_length=1)
    alert_type: str = Field(..., min_length=1)
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = Field(default=None)
    resolved_by: Optional[str] = Field(default=None)
    resolution_notes: Optional[str] = Field(default=None)

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None


# ---------------------------------------------------------------------------
# Executions
# ---------------------------------------------------------------------------

class StepCompletion(BaseModel):
    """Record that a checklist step was performed, by whom and when."""

    step_order: int = Field(..., ge=1)
    completed_at: datetime = Field(default_factory=utcnow)
    completed_by: str = Field(..., min_length=1)
    notes: Optional[str] = Field(default=None)
    evidence_ref: Optional[str] = Field(
        default=None,
        description="Opaque reference to evidence held by the storage collaborator.",
    )


class ProtocolExecution(BaseModel):
    """One enactment of a protocol against a specific alert.

    ``template_id`` is the template in force when the execution started;
    ``None`` means the default catalog for ``alert_type`` applies.
    """

    execution_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    org_id: str = Field(..., min_length=1)
    alert_id: str = Field(..., min_length=1)
    alert_type: str = Field(..., min_length=1)
    template_id: Optional[str] = Field(default=None)
    status: ExecutionStatus = Field(default=ExecutionStatus.IN_PROGRESS)
    started_at: datetime = Field(default_factory=utcnow)
    started_by: str = Field(..., min_length=1)
    completed_at: Optional[datetime] = Field(default=None)
    completed_by: Optional[str] = Field(default=None)
    escalation_reason: Optional[str] = Field(default=None)
    escalated_at: Optional[datetime] = Field(default=None)
    escalated_by: Optional[str] = Field(default=None)
    escalated_to: Optional[str] = Field(default=None)
    steps_completed: list[StepCompletion] = Field(default_factory=list)
    closure_notes: Optional[str] = Field(default=None)

    @field_validator("steps_completed")
    @classmethod
    def one_completion_per_step(cls, v: list[StepCompletion]) -> list[StepCompletion]:
        orders = [c.step_order for c in v]
        if len(orders) != len(set(orders)):
            raise ValueError("steps_completed must hold at most one record per step_order")
        return v

    @property
    def is_closed(self) -> bool:
        return self.status == ExecutionStatus.CLOSED

    def completion_for(self, step_order: int) -> Optional[StepCompletion]:
        for c in self.steps_completed:
            if c.step_order == step_order:
                return c
        return None
