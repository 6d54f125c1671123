"""
Execution Report Generator.

Builds a structured summary of a protocol execution for supervisors and
post-incident review: the checklist with completion details, and a
chronological timeline of start, step completions, escalation and
closure.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from guardline.models import ProtocolExecution, ProtocolStep
from guardline.sla import SlaStatus


class ExecutionReport:
    """A serializable execution summary."""

    def __init__(
        self,
        execution_id: str,
        alert_id: str,
        org_id: str,
        status: str,
        template_id: Optional[str],
        checklist: list[dict[str, Any]],
        timeline: list[dict[str, str]],
        sla: Optional[dict[str, Any]],
        generated_at: str,
    ) -> None:
        self.execution_id = execution_id
        self.alert_id = alert_id
        self.org_id = org_id
        self.status = status
        self.template_id = template_id
        self.checklist = checklist
        self.timeline = timeline
        self.sla = sla
        self.generated_at = generated_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "report_type": "Protocol Execution Report",
            "execution_id": self.execution_id,
            "alert_id": self.alert_id,
            "org_id": self.org_id,
            "status": self.status,
            "template_id": self.template_id,
            "checklist": self.checklist,
            "timeline": self.timeline,
            "sla": self.sla,
            "generated_at": self.generated_at,
        }

    def __repr__(self) -> str:
        return f"ExecutionReport(execution_id={self.execution_id}, status={self.status})"


def generate_execution_report(
    execution: ProtocolExecution,
    steps: list[ProtocolStep],
    sla_status: Optional[SlaStatus] = None,
) -> ExecutionReport:
    """Summarize ``execution`` against its effective ``steps``."""
    return ExecutionReport(
        execution_id=execution.execution_id,
        alert_id=execution.alert_id,
        org_id=execution.org_id,
        status=execution.status.value,
        template_id=execution.template_id,
        checklist=_build_checklist(execution, steps),
        timeline=_build_timeline(execution, steps),
        sla=sla_status.model_dump(mode="json") if sla_status else None,
        generated_at=datetime.now(timezone.utc).isoformat(),
    )


def _build_checklist(
    execution: ProtocolExecution, steps: list[ProtocolStep]
) -> list[dict[str, Any]]:
    rows = []
    for step in steps:
        completion = execution.completion_for(step.order)
        rows.append({
            "order": step.order,
            "title": step.title,
            "is_required": step.is_required,
            "photo_required": step.photo_required,
            "completed": completion is not None,
            "completed_at": completion.completed_at.isoformat() if completion else None,
            "completed_by": completion.completed_by if completion else None,
            "evidence_ref": completion.evidence_ref if completion else None,
        })
    return rows


def _build_timeline(
    execution: ProtocolExecution, steps: list[ProtocolStep]
) -> list[dict[str, str]]:
    """Chronological list of events; ties keep insertion order."""
    titles = {s.order: s.title for s in steps}
    events: list[tuple[datetime, dict[str, str]]] = [
        (execution.started_at, {
            "event": "started",
            "timestamp": execution.started_at.isoformat(),
            "actor": execution.started_by,
            "description": "Protocol execution started.",
        }),
    ]
    for completion in execution.steps_completed:
        title = titles.get(completion.step_order, "(step no longer in template)")
        events.append((completion.completed_at, {
            "event": "step_completed",
            "timestamp": completion.completed_at.isoformat(),
            "actor": completion.completed_by,
            "description": f"Step {completion.step_order} completed: {title}",
        }))
    if execution.escalated_at:
        events.append((execution.escalated_at, {
            "event": "escalated",
            "timestamp": execution.escalated_at.isoformat(),
            "actor": execution.escalated_by or "",
            "description": f"Escalated. Reason: {execution.escalation_reason}",
        }))
    if execution.completed_at:
        events.append((execution.completed_at, {
            "event": "closed",
            "timestamp": execution.completed_at.isoformat(),
            "actor": execution.completed_by or "",
            "description": f"Closed. Notes: {execution.closure_notes or ''}",
        }))

    events.sort(key=lambda pair: pair[0])
    return [event for _, event in events]
