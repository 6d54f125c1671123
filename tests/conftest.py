"""Shared fixtures: a controllable clock and a fully wired engine."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from guardline.alerts import InMemoryAlertStore
from guardline.audit import AuditLog
from guardline.closure import ClosureGate
from guardline.config import EngineSettings, SettingsRegistry
from guardline.escalation import EscalationManager
from guardline.execution import ProtocolExecutionEngine
from guardline.models import Alert
from guardline.sla import SlaTracker
from guardline.templates import TemplateStore

T0 = datetime(2024, 5, 1, 8, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, moment: datetime) -> None:
        self.now = moment


class Stack:
    """Every component wired to one audit log, settings registry and clock."""

    def __init__(self, clock: FakeClock, settings: Optional[list[EngineSettings]] = None) -> None:
        self.clock = clock
        self.audit_log = AuditLog()
        self.settings = SettingsRegistry()
        for s in settings or []:
            self.settings.register(s)
        self.alerts = InMemoryAlertStore()
        self.templates = TemplateStore(self.audit_log, self.settings, clock=clock)
        self.engine = ProtocolExecutionEngine(self.templates, self.audit_log, clock=clock)
        self.escalation = EscalationManager(self.engine, self.audit_log)
        self.closure = ClosureGate(self.engine, self.alerts, self.audit_log, self.settings)
        self.sla = SlaTracker(self.engine, self.settings)

    def new_alert(self, alert_type: str = "panic", org_id: str = "org_a") -> Alert:
        return self.alerts.add(Alert(org_id=org_id, alert_type=alert_type, created_at=self.clock()))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def stack(clock: FakeClock) -> Stack:
    return Stack(clock)


@pytest.fixture
def make_stack(clock: FakeClock):
    def _make(*settings: EngineSettings) -> Stack:
        return Stack(clock, list(settings))
    return _make
