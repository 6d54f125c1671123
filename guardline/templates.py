"""
Protocol Template Store -- configured response checklists per organization.

Administrators author templates ahead of time, independent of any alert.
The store owns three invariants:

* step orders are always ``1..N`` in list position; whatever ``order``
  values the caller sends are overwritten,
* deletes are soft, so executions keep resolving their historical
  template,
* templates are scoped by ``org_id``.

Which template a new execution uses is answered by
``get_active_template()``: the most recently created active template for
the alert type.  Organizations that want a hard guarantee of a single
active template per type turn on ``enforce_single_active`` in their
``EngineSettings``; the store then rejects a second active template with
``TemplateConflictError``.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Iterable, Optional, Union

from guardline.audit import AuditEventType, AuditLog
from guardline.catalog import DEFAULT_PROTOCOL_TEMPLATES
from guardline.config import SettingsRegistry
from guardline.errors import (
    TemplateConflictError,
    TemplateNotFoundError,
    TemplateValidationError,
)
from guardline.models import ProtocolStep, ProtocolTemplate, utcnow, validate_actor

logger = logging.getLogger(__name__)

StepInput = Union[ProtocolStep, dict[str, Any]]

_UPDATABLE_FIELDS = {"name", "name_ar", "alert_type", "sla_minutes", "is_active", "steps"}


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------

def normalize_steps(steps: Iterable[StepInput]) -> list[ProtocolStep]:
    """Validate step input and renumber it ``1..N`` by position.

    Raises:
        TemplateValidationError: On an empty list or a blank title.
    """
    normalized: list[ProtocolStep] = []
    for position, raw in enumerate(steps, start=1):
        data = raw.model_dump() if isinstance(raw, ProtocolStep) else dict(raw)
        title = (data.get("title") or "").strip()
        if not title:
            raise TemplateValidationError(
                field=f"steps[{position - 1}].title",
                message=f"Step {position} must have a non-empty title.",
            )
        data["title"] = title
        data["order"] = position
        normalized.append(ProtocolStep(**data))

    if not normalized:
        raise TemplateValidationError(
            field="steps",
            message="A protocol template needs at least one step.",
        )
    return normalized


def _validate_name(name: Optional[str]) -> str:
    if name is None or not name.strip():
        raise TemplateValidationError(
            field="name",
            message="Protocol name must not be empty.",
        )
    return name.strip()


def _validate_alert_type(alert_type: Optional[str]) -> str:
    if alert_type is None or not alert_type.strip():
        raise TemplateValidationError(
            field="alert_type",
            message="Alert type must not be empty.",
        )
    return alert_type.strip()


def _validate_sla(sla_minutes: Any) -> int:
    if not isinstance(sla_minutes, int) or isinstance(sla_minutes, bool) or sla_minutes <= 0:
        raise TemplateValidationError(
            field="sla_minutes",
            message=f"sla_minutes must be a positive integer, got {sla_minutes!r}.",
        )
    return sla_minutes


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class TemplateStore:
    """In-memory, multi-tenant store of ``ProtocolTemplate`` objects.

    Every returned template is a deep copy; changes go through
    ``update_template()``.
    """

    def __init__(
        self,
        audit_log: AuditLog,
        settings: Optional[SettingsRegistry] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._audit_log = audit_log
        self._settings = settings or SettingsRegistry()
        self._clock = clock
        self._templates: dict[str, ProtocolTemplate] = {}
        self._insertion: dict[str, int] = {}
        self._lock = threading.RLock()

    # -- helpers --

    def _recency(self, template: ProtocolTemplate) -> tuple[datetime, int]:
        # creation order breaks ties between identical timestamps
        return (template.created_at, self._insertion[template.template_id])

    def _require(self, template_id: str, include_deleted: bool = False) -> ProtocolTemplate:
        template = self._templates.get(template_id)
        if template is None or (template.is_deleted and not include_deleted):
            raise TemplateNotFoundError(template_id)
        return template

    def _check_single_active(
        self, org_id: str, alert_type: str, exclude_id: Optional[str] = None
    ) -> None:
        """Raise if single-active enforcement is on and a sibling is active."""
        if not self._settings.get_or_default(org_id).enforce_single_active:
            return
        for other in self._templates.values():
            if (
                other.template_id != exclude_id
                and other.org_id == org_id
                and other.alert_type == alert_type
                and other.is_active
                and not other.is_deleted
            ):
                raise TemplateConflictError(org_id, alert_type, other.template_id)

    # -- queries --

    def list_templates(
        self, org_id: str, alert_type: Optional[str] = None
    ) -> list[ProtocolTemplate]:
        """Non-deleted templates, by alert type then newest first."""
        with self._lock:
            matches = [
                t for t in self._templates.values()
                if t.org_id == org_id
                and not t.is_deleted
                and (alert_type is None or t.alert_type == alert_type)
            ]
            # two stable sorts: newest-first, then alert_type ascending
            matches.sort(key=self._recency, reverse=True)
            matches.sort(key=lambda t: t.alert_type)
            return [t.model_copy(deep=True) for t in matches]

    def get_template(self, template_id: str, include_deleted: bool = False) -> ProtocolTemplate:
        """Fetch one template.

        Raises:
            TemplateNotFoundError: If unknown, or soft-deleted and
                ``include_deleted`` is false.
        """
        with self._lock:
            return self._require(template_id, include_deleted).model_copy(deep=True)

    def get_active_template(self, org_id: str, alert_type: str) -> Optional[ProtocolTemplate]:
        """The most recently created active template for the type, if any."""
        with self._lock:
            active = [
                t for t in self._templates.values()
                if t.org_id == org_id
                and t.alert_type == alert_type
                and t.is_active
                and not t.is_deleted
            ]
            if not active:
                return None
            return max(active, key=self._recency).model_copy(deep=True)

    # -- mutations --

    def _build(
        self,
        org_id: str,
        alert_type: str,
        name: str,
        steps: Iterable[StepInput],
        name_ar: str,
        sla_minutes: int,
        is_active: bool,
    ) -> ProtocolTemplate:
        """Validate input into an unsaved template."""
        return ProtocolTemplate(
            org_id=org_id,
            alert_type=_validate_alert_type(alert_type),
            name=_validate_name(name),
            name_ar=name_ar,
            steps=normalize_steps(steps),
            sla_minutes=_validate_sla(sla_minutes),
            is_active=is_active,
        )

    def _insert(self, template: ProtocolTemplate) -> None:
        # caller holds self._lock
        self._templates[template.template_id] = template
        self._insertion[template.template_id] = len(self._insertion)

    def _record_created(self, template: ProtocolTemplate, actor_id: str) -> None:
        self._audit_log.record(
            AuditEventType.TEMPLATE_CREATED,
            org_id=template.org_id,
            actor_id=actor_id,
            target_entity=template.template_id,
            metadata={
                "alert_type": template.alert_type,
                "step_count": len(template.steps),
                "sla_minutes": template.sla_minutes,
                "is_active": template.is_active,
            },
        )
        logger.info(
            "Created template %s (%s, %d steps) for org %s",
            template.template_id, template.alert_type, len(template.steps), template.org_id,
        )

    def create_template(
        self,
        org_id: str,
        alert_type: str,
        name: str,
        steps: Iterable[StepInput],
        name_ar: str = "",
        sla_minutes: int = 10,
        is_active: bool = True,
        actor_id: str = "SYSTEM",
    ) -> ProtocolTemplate:
        """Create a template; step orders are assigned from list position.

        Raises:
            ActorValidationError: Empty ``actor_id``.
            TemplateValidationError: Empty name, no steps, or a blank step title.
            TemplateConflictError: Single-active enforcement is on and
                another template for the type is active.
        """
        actor_id = validate_actor(actor_id)
        template = self._build(
            org_id, alert_type, name, steps, name_ar, sla_minutes, is_active
        )

        with self._lock:
            if is_active:
                self._check_single_active(org_id, template.alert_type)
            template.created_at = self._clock()
            self._insert(template)

        self._record_created(template, actor_id)
        return template.model_copy(deep=True)

    def update_template(
        self, template_id: str, actor_id: str = "SYSTEM", **fields: Any
    ) -> ProtocolTemplate:
        """Update selected fields.  ``steps`` is a full replacement.

        Toggling ``is_active`` never touches sibling templates.

        Raises:
            ActorValidationError: Empty ``actor_id``.
            TemplateNotFoundError: Unknown or deleted template.
            TemplateValidationError: Unknown field or invalid value.
            TemplateConflictError: Single-active enforcement violated.
        """
        actor_id = validate_actor(actor_id)
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise TemplateValidationError(
                field=sorted(unknown)[0],
                message=f"Cannot update field(s): {sorted(unknown)}.",
            )

        # Validate everything before touching stored state
        changes: dict[str, Any] = {}
        if "name" in fields:
            changes["name"] = _validate_name(fields["name"])
        if "name_ar" in fields:
            changes["name_ar"] = fields["name_ar"] or ""
        if "alert_type" in fields:
            changes["alert_type"] = _validate_alert_type(fields["alert_type"])
        if "sla_minutes" in fields:
            changes["sla_minutes"] = _validate_sla(fields["sla_minutes"])
        if "is_active" in fields:
            changes["is_active"] = bool(fields["is_active"])
        if "steps" in fields:
            changes["steps"] = normalize_steps(fields["steps"])

        with self._lock:
            current = self._require(template_id)
            will_be_active = changes.get("is_active", current.is_active)
            target_type = changes.get("alert_type", current.alert_type)
            if will_be_active:
                self._check_single_active(current.org_id, target_type, exclude_id=template_id)

            changes["updated_at"] = self._clock()
            updated = current.model_copy(update=changes, deep=True)
            self._templates[template_id] = updated

        self._audit_log.record(
            AuditEventType.TEMPLATE_UPDATED,
            org_id=updated.org_id,
            actor_id=actor_id,
            target_entity=template_id,
            metadata={"fields": sorted(fields)},
        )
        logger.info("Updated template %s fields=%s", template_id, sorted(fields))
        return updated.model_copy(deep=True)

    def delete_template(self, template_id: str, actor_id: str = "SYSTEM") -> None:
        """Soft-delete a template.  Executions keep their reference to it."""
        actor_id = validate_actor(actor_id)
        with self._lock:
            template = self._require(template_id)
            template.deleted_at = self._clock()
            org_id = template.org_id

        self._audit_log.record(
            AuditEventType.TEMPLATE_DELETED,
            org_id=org_id,
            actor_id=actor_id,
            target_entity=template_id,
        )
        logger.info("Soft-deleted template %s", template_id)

    def seed_defaults(self, org_id: str, actor_id: str = "SYSTEM") -> list[ProtocolTemplate]:
        """Create one active template per alert type from the default catalog.

        All or nothing: every template is validated and checked against
        single-active enforcement before any is stored.

        Not idempotent: calling it twice creates a second set.  Callers are
        expected to check ``list_templates()`` first.

        Raises:
            ActorValidationError: Empty ``actor_id``.
            TemplateConflictError: Single-active enforcement is on and a
                template for one of the catalog types is already active.
        """
        actor_id = validate_actor(actor_id)
        pending = [
            self._build(
                org_id,
                alert_type,
                default.name,
                default.steps,
                default.name_ar,
                default.sla_minutes,
                True,
            )
            for alert_type, default in DEFAULT_PROTOCOL_TEMPLATES.items()
        ]

        with self._lock:
            for template in pending:
                self._check_single_active(org_id, template.alert_type)
            now = self._clock()
            for template in pending:
                template.created_at = now
                self._insert(template)

        for template in pending:
            self._record_created(template, actor_id)
        self._audit_log.record(
            AuditEventType.TEMPLATES_SEEDED,
            org_id=org_id,
            actor_id=actor_id,
            metadata={"alert_types": [t.alert_type for t in pending]},
        )
        return [t.model_copy(deep=True) for t in pending]
