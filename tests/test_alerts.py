"""
test_alerts.py — Unit tests for the financial alert engine.

Tests cover:
    - Priority bands for ratio-driven rules at boundary values
    - Day escalation for receivables and overdue payments
    - Each rule's trigger and non-trigger cases
    - Dedup: update in place, idempotent recompute, escalation
    - Auto-resolution when the condition clears
    - Display ordering and statistics
"""

import sys
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from governance.alerts import (
    AlertEngine,
    AlertThresholds,
    Invoice,
    PaymentObligation,
    PhaseCost,
    ProjectMetrics,
    evaluate_project,
    priority_for_days,
    priority_for_ratio,
    sort_alerts,
)
from governance.audit import AuditFilters, AuditLog
from governance.events import EventPublisher
from governance.models import (
    AlertaFinanciera,
    DatosBajoCapital,
    DatosSobrecosto,
    EstadoAlerta,
    PrioridadAlerta,
    TipoAlerta,
)
from governance.store import VersionedStore

AS_OF = date(2024, 6, 30)
T = AlertThresholds()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

def _make_metrics(**overrides) -> ProjectMetrics:
    """Healthy project: no rule fires."""
    base = {
        "proyecto_id": "PRJ-001",
        "proyecto_nombre": "Residencial Las Palmas",
        "tesoreria_actual": 150_000.0,
        "tesoreria_necesaria": 100_000.0,
        "fases": [PhaseCost(fase_numero=1, presupuesto=50_000.0, gasto_real=48_000.0)],
        "facturas": [],
        "pagos": [],
    }
    base.update(overrides)
    return ProjectMetrics(**base)


def _make_engine(events: EventPublisher = None) -> AlertEngine:
    return AlertEngine(VersionedStore(), AuditLog(), T, events=events)


def _only(candidates, tipo):
    matches = [c for c in candidates if c.tipo == tipo]
    assert len(matches) == 1
    return matches[0]


# ---------------------------------------------------------------------------
# Priority mapping
# ---------------------------------------------------------------------------

class TestPriorityForRatio:
    """Ratio bands: critica ≥ 0.50, alta ≥ 0.25, media ≥ 0.10, else baja."""

    def test_at_critica_boundary(self):
        assert priority_for_ratio(0.50, T) == PrioridadAlerta.CRITICA

    def test_just_below_critica(self):
        assert priority_for_ratio(0.4999, T) == PrioridadAlerta.ALTA

    def test_at_alta_boundary(self):
        assert priority_for_ratio(0.25, T) == PrioridadAlerta.ALTA

    def test_at_media_boundary(self):
        assert priority_for_ratio(0.10, T) == PrioridadAlerta.MEDIA

    def test_below_media_is_baja(self):
        assert priority_for_ratio(0.05, T) == PrioridadAlerta.BAJA


class TestPriorityForDays:
    """Day escalation: critica > 30, alta > 15, else media."""

    def test_thirty_days_is_alta(self):
        assert priority_for_days(30, T) == PrioridadAlerta.ALTA

    def test_thirty_one_days_is_critica(self):
        assert priority_for_days(31, T) == PrioridadAlerta.CRITICA

    def test_fifteen_days_is_media(self):
        assert priority_for_days(15, T) == PrioridadAlerta.MEDIA

    def test_sixteen_days_is_alta(self):
        assert priority_for_days(16, T) == PrioridadAlerta.ALTA


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

class TestRules:
    """evaluate_project produces one candidate per firing condition."""

    def test_healthy_project_has_no_alerts(self):
        assert evaluate_project(_make_metrics(), T, AS_OF) == []

    def test_bajo_capital_sixty_percent_shortfall_is_critica(self):
        m = _make_metrics(tesoreria_actual=40_000.0, tesoreria_necesaria=100_000.0)
        cand = _only(evaluate_project(m, T, AS_OF), TipoAlerta.BAJO_CAPITAL)
        assert cand.prioridad == PrioridadAlerta.CRITICA
        assert cand.datos.deficit == pytest.approx(60_000.0)
        assert cand.datos.porcentaje_deficit == pytest.approx(60.0)
        assert cand.fase_numero is None

    def test_bajo_capital_small_shortfall_is_baja(self):
        m = _make_metrics(tesoreria_actual=95_000.0, tesoreria_necesaria=100_000.0)
        cand = _only(evaluate_project(m, T, AS_OF), TipoAlerta.BAJO_CAPITAL)
        assert cand.prioridad == PrioridadAlerta.BAJA

    def test_sobrecosto_within_umbral_not_flagged(self):
        m = _make_metrics(fases=[PhaseCost(1, presupuesto=100_000.0, gasto_real=110_000.0)])
        assert evaluate_project(m, T, AS_OF) == []

    def test_sobrecosto_thirty_percent_is_alta(self):
        m = _make_metrics(fases=[PhaseCost(2, presupuesto=100_000.0, gasto_real=130_000.0)])
        cand = _only(evaluate_project(m, T, AS_OF), TipoAlerta.SOBRECOSTO)
        assert cand.prioridad == PrioridadAlerta.ALTA
        assert cand.fase_numero == 2
        assert cand.datos.variacion_porcentaje == pytest.approx(30.0)

    def test_sobrecosto_one_alert_per_phase(self):
        m = _make_metrics(fases=[
            PhaseCost(1, presupuesto=100.0, gasto_real=200.0),
            PhaseCost(2, presupuesto=100.0, gasto_real=120.0),
        ])
        cands = [c for c in evaluate_project(m, T, AS_OF) if c.tipo == TipoAlerta.SOBRECOSTO]
        assert {c.fase_numero: c.prioridad for c in cands} == {
            1: PrioridadAlerta.CRITICA,
            2: PrioridadAlerta.MEDIA,
        }

    def test_cobro_pendiente_past_expected_date(self):
        inv = Invoice("FAC-1", "FV-0001", 25_000.0, fecha_cobro_esperada=AS_OF - timedelta(days=20), fase_numero=1)
        cand = _only(evaluate_project(_make_metrics(facturas=[inv]), T, AS_OF), TipoAlerta.COBRO_PENDIENTE)
        assert cand.factura_id == "FAC-1"
        assert cand.datos.dias_pendientes == 20
        assert cand.prioridad == PrioridadAlerta.ALTA

    def test_cobro_pendiente_for_completed_phase(self):
        fases = [PhaseCost(1, presupuesto=50_000.0, gasto_real=48_000.0, progreso=100.0)]
        inv = Invoice("FAC-1", "FV-0001", 25_000.0, fecha_cobro_esperada=AS_OF + timedelta(days=10), fase_numero=1)
        cand = _only(evaluate_project(_make_metrics(fases=fases, facturas=[inv]), T, AS_OF),
                     TipoAlerta.COBRO_PENDIENTE)
        assert cand.prioridad == PrioridadAlerta.MEDIA

    def test_collected_invoice_not_flagged(self):
        inv = Invoice("FAC-1", "FV-0001", 25_000.0, fecha_cobro_esperada=AS_OF - timedelta(days=40), cobrada=True)
        assert evaluate_project(_make_metrics(facturas=[inv]), T, AS_OF) == []

    def test_pago_vencido_escalates_beyond_threshold(self):
        pago = PaymentObligation("PAG-1", "Aceros SA", 8_000.0, fecha_vencimiento=AS_OF - timedelta(days=45))
        cand = _only(evaluate_project(_make_metrics(pagos=[pago]), T, AS_OF), TipoAlerta.PAGO_VENCIDO)
        assert cand.prioridad == PrioridadAlerta.CRITICA
        assert cand.datos.dias_vencidos == 45

    def test_pago_not_yet_due_not_flagged(self):
        pago = PaymentObligation("PAG-1", "Aceros SA", 8_000.0, fecha_vencimiento=AS_OF)
        assert evaluate_project(_make_metrics(pagos=[pago]), T, AS_OF) == []

    def test_pagos_sharing_phase_aggregate(self):
        pagos = [
            PaymentObligation("PAG-1", "Aceros SA", 1_000.0, AS_OF - timedelta(days=5), fase_numero=3),
            PaymentObligation("PAG-2", "Cementos SA", 2_000.0, AS_OF - timedelta(days=20), fase_numero=3),
        ]
        cand = _only(evaluate_project(_make_metrics(pagos=pagos), T, AS_OF), TipoAlerta.PAGO_VENCIDO)
        assert cand.datos.pagos_vencidos == 2
        assert cand.datos.monto_pago == pytest.approx(3_000.0)
        assert cand.datos.dias_vencidos == 20
        assert cand.prioridad == PrioridadAlerta.ALTA

    def test_datetime_as_of_accepted(self):
        pago = PaymentObligation("PAG-1", "Aceros SA", 1_000.0, AS_OF - timedelta(days=5))
        as_of = datetime(2024, 6, 30, 12, 0, tzinfo=timezone.utc)
        cand = _only(evaluate_project(_make_metrics(pagos=[pago]), T, as_of), TipoAlerta.PAGO_VENCIDO)
        assert cand.datos.dias_vencidos == 5


class TestThresholdsFromConfig:
    def test_overrides_applied(self):
        t = AlertThresholds.from_config({"priority_bands": {"critica": 0.8}, "dias_critico": 60})
        assert t.critica == 0.8
        assert t.alta == 0.25
        assert t.dias_critico == 60


# ---------------------------------------------------------------------------
# Recompute: dedup and auto-resolution
# ---------------------------------------------------------------------------

class TestRecompute:
    """AlertEngine.recompute reconciles candidates with stored alerts."""

    def test_raise_then_idempotent(self):
        engine = _make_engine()
        m = _make_metrics(tesoreria_actual=40_000.0)
        first = engine.recompute(m, AS_OF)
        alert = engine.active_alerts()[0]

        second = engine.recompute(m, AS_OF)

        assert first["raised"] == 1
        assert second == {
            "raised": 0,
            "updated": 0,
            "escalated": 0,
            "unchanged": 1,
            "suppressed": 0,
            "auto_resolved": 0,
        }
        again = engine.active_alerts()[0]
        assert again.id == alert.id
        assert again.updated_at == alert.updated_at
        assert again.version == alert.version

    def test_changed_payload_updates_in_place(self):
        engine = _make_engine()
        engine.recompute(_make_metrics(tesoreria_actual=40_000.0), AS_OF)
        original = engine.active_alerts()[0]

        counts = engine.recompute(_make_metrics(tesoreria_actual=45_000.0), AS_OF)

        assert counts["updated"] == 1
        active = engine.active_alerts()
        assert len(active) == 1
        assert active[0].id == original.id
        assert active[0].datos.deficit == pytest.approx(55_000.0)
        assert active[0].updated_at >= original.updated_at

    def test_priority_change_is_escalation(self):
        engine = _make_engine()
        engine.recompute(_make_metrics(tesoreria_actual=80_000.0), AS_OF)
        assert engine.active_alerts()[0].prioridad == PrioridadAlerta.MEDIA

        counts = engine.recompute(_make_metrics(tesoreria_actual=30_000.0), AS_OF)

        assert counts["escalated"] == 1
        assert engine.active_alerts()[0].prioridad == PrioridadAlerta.CRITICA
        escalations = engine.audit_log.query(AuditFilters(actions=["alert_escalated"]))
        assert escalations.total == 1

    def test_auto_resolve_when_condition_clears(self):
        engine = _make_engine()
        engine.recompute(_make_metrics(tesoreria_actual=40_000.0), AS_OF)
        alert_id = engine.active_alerts()[0].id

        counts = engine.recompute(_make_metrics(), AS_OF)

        assert counts["auto_resolved"] == 1
        assert engine.active_alerts() == []
        resolved = engine.get(alert_id)
        assert resolved.estado == EstadoAlerta.RESUELTA
        assert resolved.resolucion_automatica is True
        assert resolved.resuelta_por == "system"
        assert resolved.nota_resolucion == T.auto_resolve_note

    def test_new_alert_after_resolution_gets_new_id(self):
        engine = _make_engine()
        engine.recompute(_make_metrics(tesoreria_actual=40_000.0), AS_OF)
        first_id = engine.active_alerts()[0].id
        engine.recompute(_make_metrics(), AS_OF)
        engine.recompute(_make_metrics(tesoreria_actual=40_000.0), AS_OF)
        active = engine.active_alerts()
        assert len(active) == 1
        assert active[0].id != first_id

    def test_at_most_one_active_per_key(self):
        engine = _make_engine()
        m = _make_metrics(
            tesoreria_actual=40_000.0,
            fases=[PhaseCost(1, 100.0, 200.0), PhaseCost(2, 100.0, 150.0)],
        )
        for _ in range(3):
            engine.recompute(m, AS_OF)
        keys = [a.key for a in engine.active_alerts()]
        assert len(keys) == len(set(keys)) == 3

    def test_audit_and_events_for_raise(self):
        events = EventPublisher()
        seen = []
        events.subscribe("alert.raised", lambda e: seen.append(e.payload["tipo"]))
        engine = _make_engine(events)
        engine.recompute(_make_metrics(tesoreria_actual=40_000.0), AS_OF)
        assert seen == ["bajo_capital"]
        raised = engine.audit_log.query(AuditFilters(actions=["alert_raised"])).items[0]
        assert raised.severity == "critical"
        assert raised.project_id == "PRJ-001"

    def test_recompute_all_isolates_projects(self):
        engine = _make_engine()
        totals = engine.recompute_all(
            [
                _make_metrics(tesoreria_actual=40_000.0),
                _make_metrics(proyecto_id="PRJ-002", proyecto_nombre="Torre Norte"),
            ],
            AS_OF,
        )
        assert totals["projects"] == 2
        assert totals["raised"] == 1
        assert totals["failed"] == []
        assert engine.active_alerts("PRJ-002") == []


# ---------------------------------------------------------------------------
# Ordering and stats
# ---------------------------------------------------------------------------

def _make_alert(prioridad: PrioridadAlerta, updated_at: datetime, alert_id: str) -> AlertaFinanciera:
    return AlertaFinanciera(
        id=alert_id,
        tipo=TipoAlerta.SOBRECOSTO,
        prioridad=prioridad,
        proyecto_id="PRJ-001",
        proyecto_nombre="Residencial Las Palmas",
        titulo="Sobrecosto",
        mensaje="",
        accion_recomendada="",
        datos=DatosSobrecosto(100.0, 150.0, 50.0),
        updated_at=updated_at,
    )


class TestOrderingAndStats:
    """Priority descending, then most recently updated first."""

    def test_sort_alerts(self):
        t0 = datetime(2024, 6, 1, tzinfo=timezone.utc)
        alerts = [
            _make_alert(PrioridadAlerta.MEDIA, t0 + timedelta(hours=5), "A"),
            _make_alert(PrioridadAlerta.CRITICA, t0, "B"),
            _make_alert(PrioridadAlerta.CRITICA, t0 + timedelta(hours=1), "C"),
            _make_alert(PrioridadAlerta.BAJA, t0 + timedelta(hours=9), "D"),
        ]
        assert [a.id for a in sort_alerts(alerts)] == ["C", "B", "A", "D"]

    def test_payload_must_match_tipo(self):
        with pytest.raises(ValueError):
            AlertaFinanciera(
                tipo=TipoAlerta.SOBRECOSTO,
                prioridad=PrioridadAlerta.ALTA,
                proyecto_id="PRJ-001",
                proyecto_nombre="x",
                titulo="x",
                mensaje="x",
                accion_recomendada="x",
                datos=DatosBajoCapital(1.0, 2.0, 1.0, 50.0),
            )

    def test_alert_stats(self):
        engine = _make_engine()
        engine.recompute(
            _make_metrics(
                tesoreria_actual=40_000.0,
                fases=[PhaseCost(1, 100.0, 130.0)],
            ),
            AS_OF,
        )
        stats = engine.alert_stats()
        assert stats["total"] == 2
        assert stats["criticas"] == 1
        assert stats["altas"] == 1
        assert stats["por_tipo"]["bajo_capital"] == 1
        assert stats["por_tipo"]["pago_vencido"] == 0

    def test_empty_stats(self):
        stats = _make_engine().alert_stats()
        assert stats["total"] == 0
        assert stats["por_tipo"]["sobrecosto"] == 0
