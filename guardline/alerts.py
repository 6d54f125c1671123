"""
Alert collaborator interface.

Alerts are created and owned by the alert-ingestion subsystem.  The engine
reads ``{alert_id, org_id, alert_type, created_at}`` and writes the
resolution fields only while closing an execution.  ``reopen_alert`` is
the compensating action used when the execution side of a closure has to
be undone.

``InMemoryAlertStore`` is the reference implementation used by tests and
the walkthrough script.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Optional, Protocol

from guardline.errors import AlertNotFoundError
from guardline.models import Alert

logger = logging.getLogger(__name__)


class AlertGateway(Protocol):
    """What the engine needs from the alert collaborator."""

    def get_alert(self, alert_id: str) -> Alert:
        ...

    def resolve_alert(
        self,
        alert_id: str,
        resolved_at: datetime,
        resolved_by: str,
        resolution_notes: Optional[str],
    ) -> Alert:
        ...

    def reopen_alert(self, alert_id: str) -> Alert:
        ...


class InMemoryAlertStore:
    """Thread-safe dict-backed ``AlertGateway``."""

    def __init__(self) -> None:
        self._alerts: dict[str, Alert] = {}
        self._lock = threading.Lock()

    def add(self, alert: Alert) -> Alert:
        with self._lock:
            self._alerts[alert.alert_id] = alert.model_copy(deep=True)
        return alert

    def get_alert(self, alert_id: str) -> Alert:
        with self._lock:
            if alert_id not in self._alerts:
                raise AlertNotFoundError(alert_id)
            return self._alerts[alert_id].model_copy(deep=True)

    def resolve_alert(
        self,
        alert_id: str,
        resolved_at: datetime,
        resolved_by: str,
        resolution_notes: Optional[str],
    ) -> Alert:
        with self._lock:
            if alert_id not in self._alerts:
                raise AlertNotFoundError(alert_id)
            alert = self._alerts[alert_id]
            alert.resolved_at = resolved_at
            alert.resolved_by = resolved_by
            alert.resolution_notes = resolution_notes
            logger.info("Alert %s resolved by %s", alert_id, resolved_by)
            return alert.model_copy(deep=True)

    def reopen_alert(self, alert_id: str) -> Alert:
        with self._lock:
            if alert_id not in self._alerts:
                raise AlertNotFoundError(alert_id)
            alert = self._alerts[alert_id]
            alert.resolved_at = None
            alert.resolved_by = None
            alert.resolution_notes = None
            logger.warning("Alert %s reopened", alert_id)
            return alert.model_copy(deep=True)

    def __len__(self) -> int:
        return len(self._alerts)
