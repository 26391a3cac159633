"""
test_resolution.py — Unit tests for manual alert resolution.

Tests cover:
    - resolve / ignore set state, note, resolver and timestamp
    - Empty notes are rejected before any lookup
    - Closed alerts cannot be closed again
    - Unknown alert ids
    - Audit entries and outbound events
    - Ignored alerts staying suppressed across recomputes
"""

import sys
from datetime import date
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from governance.alerts import AlertEngine, AlertThresholds, ProjectMetrics
from governance.audit import AuditFilters, AuditLog
from governance.errors import InvalidTransitionError, NotFoundError, ValidationError
from governance.events import EventPublisher
from governance.models import EstadoAlerta, PrioridadAlerta
from governance.resolution import ResolutionTracker
from governance.store import VersionedStore

AS_OF = date(2024, 6, 30)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def setup():
    """Engine + tracker sharing one store, with a single active alert."""
    store = VersionedStore()
    audit = AuditLog()
    events = EventPublisher()
    engine = AlertEngine(store, audit, AlertThresholds(), events)
    tracker = ResolutionTracker(store, audit, events)
    engine.recompute(
        ProjectMetrics(
            proyecto_id="PRJ-001",
            proyecto_nombre="Residencial Las Palmas",
            tesoreria_actual=40_000.0,
            tesoreria_necesaria=100_000.0,
        ),
        AS_OF,
    )
    alert_id = engine.active_alerts()[0].id
    return engine, tracker, audit, events, alert_id


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

class TestResolve:
    def test_resolve_sets_fields(self, setup):
        engine, tracker, _, _, alert_id = setup
        alert = tracker.resolve(alert_id, "  Aporte de capital recibido ", "USR-7", "Ana Ruiz")
        assert alert.estado == EstadoAlerta.RESUELTA
        assert alert.nota_resolucion == "Aporte de capital recibido"
        assert alert.resuelta_por == "USR-7"
        assert alert.fecha_resolucion is not None
        assert alert.resolucion_automatica is False
        assert engine.active_alerts() == []

    def test_ignore_sets_ignorada(self, setup):
        _, tracker, _, _, alert_id = setup
        alert = tracker.ignore(alert_id, "Déficit cubierto por línea de crédito", "USR-7")
        assert alert.estado == EstadoAlerta.IGNORADA

    @pytest.mark.parametrize("note", ["", "   ", None])
    def test_empty_note_rejected(self, setup, note):
        engine, tracker, audit, _, alert_id = setup
        before = len(audit)
        with pytest.raises(ValidationError):
            tracker.resolve(alert_id, note, "USR-7")
        assert engine.get(alert_id).is_active
        assert len(audit) == before

    def test_empty_note_checked_before_lookup(self, setup):
        _, tracker, _, _, _ = setup
        with pytest.raises(ValidationError):
            tracker.resolve("ALR-MISSING", "", "USR-7")

    def test_unknown_alert_raises_not_found(self, setup):
        _, tracker, _, _, _ = setup
        with pytest.raises(NotFoundError):
            tracker.resolve("ALR-MISSING", "nota", "USR-7")

    def test_already_resolved_cannot_be_closed_again(self, setup):
        _, tracker, _, _, alert_id = setup
        tracker.resolve(alert_id, "Resuelto", "USR-7")
        with pytest.raises(InvalidTransitionError):
            tracker.ignore(alert_id, "Otra nota", "USR-8")

    def test_auto_resolved_alert_cannot_be_resolved(self, setup):
        engine, tracker, _, _, alert_id = setup
        engine.recompute(
            ProjectMetrics("PRJ-001", "Residencial Las Palmas", 150_000.0, 100_000.0),
            AS_OF,
        )
        with pytest.raises(InvalidTransitionError):
            tracker.resolve(alert_id, "Tarde", "USR-7")


class TestResolutionTrail:
    def test_audit_entry_written(self, setup):
        _, tracker, audit, _, alert_id = setup
        tracker.resolve(alert_id, "Aporte recibido", "USR-7", "Ana Ruiz")
        history = audit.entity_history("alert", alert_id)
        assert [e.action for e in history] == ["alert_resolved", "alert_raised"]
        latest = history[0]
        assert latest.user_id == "USR-7"
        assert latest.project_id == "PRJ-001"
        assert latest.changes[0].old_value == "activa"
        assert latest.changes[0].new_value == "resuelta"

    def test_ignore_audited_as_ignored(self, setup):
        _, tracker, audit, _, alert_id = setup
        tracker.ignore(alert_id, "Sin acción", "USR-7")
        assert audit.entity_history("alert", alert_id)[0].action == "alert_ignored"

    def test_event_published(self, setup):
        _, tracker, _, events, alert_id = setup
        received = []
        events.subscribe("alert.resolved", received.append)
        tracker.resolve(alert_id, "Aporte recibido", "USR-7")
        assert len(received) == 1
        assert received[0].entity_id == alert_id
        assert received[0].new_state == "resuelta"

    def test_failing_subscriber_does_not_fail_resolution(self, setup):
        engine, tracker, _, events, alert_id = setup

        def _boom(event):
            raise RuntimeError("downstream unavailable")

        events.subscribe("*", _boom)
        alert = tracker.resolve(alert_id, "Aporte recibido", "USR-7")
        assert alert.estado == EstadoAlerta.RESUELTA
        assert engine.get(alert_id).estado == EstadoAlerta.RESUELTA


# ---------------------------------------------------------------------------
# Ignored alerts and later recomputes
# ---------------------------------------------------------------------------

def _metrics(actual: float) -> ProjectMetrics:
    return ProjectMetrics(
        proyecto_id="PRJ-001",
        proyecto_nombre="Residencial Las Palmas",
        tesoreria_actual=actual,
        tesoreria_necesaria=100_000.0,
    )


class TestIgnoredAlertSuppression:
    """Ignoring holds the key quiet while the condition persists."""

    def test_unchanged_condition_not_reraised(self, setup):
        engine, tracker, audit, _, alert_id = setup
        tracker.ignore(alert_id, "Déficit aceptado hasta el próximo desembolso", "USR-7")

        counts = engine.recompute(_metrics(40_000.0), AS_OF)

        assert counts["raised"] == 0
        assert counts["suppressed"] == 1
        assert engine.active_alerts() == []
        assert audit.query(AuditFilters(actions=["alert_raised"])).total == 1

    def test_lower_priority_still_suppressed(self, setup):
        engine, tracker, _, _, alert_id = setup
        tracker.ignore(alert_id, "Aceptado", "USR-7")
        counts = engine.recompute(_metrics(80_000.0), AS_OF)
        assert counts["suppressed"] == 1
        assert engine.active_alerts() == []

    def test_escalation_raises_new_alert(self):
        store = VersionedStore()
        audit = AuditLog()
        engine = AlertEngine(store, audit, AlertThresholds())
        tracker = ResolutionTracker(store, audit)
        engine.recompute(_metrics(80_000.0), AS_OF)
        ignored_id = engine.active_alerts()[0].id
        tracker.ignore(ignored_id, "Déficit menor", "USR-7")

        counts = engine.recompute(_metrics(30_000.0), AS_OF)

        assert counts["raised"] == 1
        active = engine.active_alerts()
        assert len(active) == 1
        assert active[0].id != ignored_id
        assert active[0].prioridad == PrioridadAlerta.CRITICA
        assert engine.get(ignored_id).supresion_activa is False

    def test_condition_clearing_lifts_suppression(self, setup):
        engine, tracker, audit, _, alert_id = setup
        tracker.ignore(alert_id, "Aceptado", "USR-7")

        engine.recompute(_metrics(150_000.0), AS_OF)
        ignored = engine.get(alert_id)
        assert ignored.estado == EstadoAlerta.IGNORADA
        assert ignored.supresion_activa is False
        assert audit.entity_history("alert", alert_id)[0].action == "alert_suppression_lifted"

        counts = engine.recompute(_metrics(40_000.0), AS_OF)
        assert counts["raised"] == 1
        assert len(engine.active_alerts()) == 1

    def test_resolved_alert_does_not_suppress(self, setup):
        engine, tracker, _, _, alert_id = setup
        tracker.resolve(alert_id, "Aporte comprometido", "USR-7")
        counts = engine.recompute(_metrics(40_000.0), AS_OF)
        assert counts["raised"] == 1
        assert engine.get(alert_id).supresion_activa is False
