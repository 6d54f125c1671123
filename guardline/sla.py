"""
SLA Tracker -- derived, read-only overdue status.

An execution's SLA is measured from ``started_at``.  The target comes
from, in order:

1. the ``sla_minutes`` of the template the execution started with,
2. the organization's ``default_sla_minutes`` override, when set,
3. the default catalog's SLA for the execution's alert type (fire 2,
   medical 3, panic 5, security breach 5, general and custom types 10).

Nothing here is persisted and nothing runs on a timer: every value is
recomputed from the execution on read.  A closed execution is never
overdue, however late it was closed.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

from pydantic import BaseModel

from guardline.catalog import default_protocol_for
from guardline.config import SettingsRegistry
from guardline.execution import ProtocolExecutionEngine
from guardline.models import ProtocolExecution, ProtocolTemplate, utcnow


def sla_minutes_for(
    execution: ProtocolExecution,
    template: Optional[ProtocolTemplate] = None,
    default_sla_minutes: Optional[int] = None,
) -> int:
    if template is not None:
        return template.sla_minutes
    if default_sla_minutes is not None:
        return default_sla_minutes
    return default_protocol_for(execution.alert_type).sla_minutes


def sla_deadline(
    execution: ProtocolExecution,
    template: Optional[ProtocolTemplate] = None,
    default_sla_minutes: Optional[int] = None,
) -> datetime:
    return execution.started_at + timedelta(
        minutes=sla_minutes_for(execution, template, default_sla_minutes)
    )


def overdue(
    execution: ProtocolExecution,
    template: Optional[ProtocolTemplate] = None,
    now: Optional[datetime] = None,
    default_sla_minutes: Optional[int] = None,
) -> bool:
    """True iff the execution is not closed and ``now`` is past the deadline."""
    if execution.is_closed:
        return False
    now = now or utcnow()
    return now > sla_deadline(execution, template, default_sla_minutes)


def time_remaining(
    execution: ProtocolExecution,
    template: Optional[ProtocolTemplate] = None,
    now: Optional[datetime] = None,
    default_sla_minutes: Optional[int] = None,
) -> Optional[timedelta]:
    """Time left until breach; negative once breached, ``None`` once closed."""
    if execution.is_closed:
        return None
    now = now or utcnow()
    return sla_deadline(execution, template, default_sla_minutes) - now


class SlaStatus(BaseModel):
    """Snapshot of an execution's SLA position at ``evaluated_at``."""

    execution_id: str
    sla_minutes: int
    deadline: datetime
    evaluated_at: datetime
    overdue: bool
    seconds_remaining: Optional[float] = None


def sla_status(
    execution: ProtocolExecution,
    template: Optional[ProtocolTemplate] = None,
    now: Optional[datetime] = None,
    default_sla_minutes: Optional[int] = None,
) -> SlaStatus:
    now = now or utcnow()
    remaining = time_remaining(execution, template, now, default_sla_minutes)
    return SlaStatus(
        execution_id=execution.execution_id,
        sla_minutes=sla_minutes_for(execution, template, default_sla_minutes),
        deadline=sla_deadline(execution, template, default_sla_minutes),
        evaluated_at=now,
        overdue=overdue(execution, template, now, default_sla_minutes),
        seconds_remaining=remaining.total_seconds() if remaining is not None else None,
    )


class SlaTracker:
    """Resolves each execution's template and settings, then applies the SLA rules."""

    def __init__(
        self,
        engine: ProtocolExecutionEngine,
        settings: Optional[SettingsRegistry] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._engine = engine
        self._settings = settings or SettingsRegistry()
        self._clock = clock or engine.clock

    def _inputs(
        self, execution: ProtocolExecution
    ) -> tuple[Optional[ProtocolTemplate], Optional[int]]:
        template = self._engine.effective_template(execution)
        default = self._settings.get_or_default(execution.org_id).default_sla_minutes
        return template, default

    def overdue(self, execution: ProtocolExecution) -> bool:
        template, default = self._inputs(execution)
        return overdue(execution, template, self._clock(), default)

    def status(self, execution: ProtocolExecution) -> SlaStatus:
        template, default = self._inputs(execution)
        return sla_status(execution, template, self._clock(), default)

    def overdue_executions(self, org_id: str) -> list[ProtocolExecution]:
        """Open executions of ``org_id`` that have breached their SLA."""
        return [e for e in self._engine.list_executions(org_id) if self.overdue(e)]
