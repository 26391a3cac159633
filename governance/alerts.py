"""
alerts.py — Financial Alert Engine.

Evaluates project financial metrics against configured thresholds and keeps
the set of active alerts in step with the result.

Rules:
    bajo_capital    — Treasury available is below treasury required.
                      Priority from shortfall / required.
    sobrecosto      — Per phase, actual cost > budget × (1 + umbral).
                      Priority from the variance ratio.
    cobro_pendiente — An uncollected invoice is past its expected collection
                      date, or its phase is reported 100 % complete.
                      Priority escalates with days pending.
    pago_vencido    — An unpaid supplier obligation is past its due date.
                      Priority escalates with days overdue.

Ratio bands (configurable):
    critica ≥ 0.50 | alta ≥ 0.25 | media ≥ 0.10 | baja otherwise

Day escalation (configurable):
    critica > dias_critico | alta > dias_alto | media otherwise

Evaluation is a pure function of (metrics, thresholds, as_of). Applying the
result is serialised per project: one active alert per
(tipo, proyecto_id, fase_numero), updated in place when its content changes,
left untouched when identical and auto-resolved when no longer triggered.
An ignored alert suppresses its key while the condition persists; a new
alert is raised only if the priority climbs above the ignored one, and the
suppression is lifted once the condition clears.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Any, Iterable, Optional

import pandas as pd

from governance.audit import AuditLog
from governance.errors import GovernanceError
from governance.events import EventPublisher
from governance.models import (
    PRIORITY_RANK,
    AlertaFinanciera,
    AuditChange,
    AuditLogEntry,
    AuditSeverity,
    DatosAlerta,
    DatosBajoCapital,
    DatosCobroPendiente,
    DatosPagoVencido,
    DatosSobrecosto,
    EstadoAlerta,
    PrioridadAlerta,
    TipoAlerta,
    utcnow,
)
from governance.store import VersionedStore

logger = logging.getLogger(__name__)

COLLECTION = "alert"
PROJECT_LOCK = "alert_project"
ENTITY_TYPE = "alert"

SYSTEM_USER = "system"

PRIORITY_TO_SEVERITY = {
    PrioridadAlerta.CRITICA: AuditSeverity.CRITICAL,
    PrioridadAlerta.ALTA: AuditSeverity.WARNING,
    PrioridadAlerta.MEDIA: AuditSeverity.INFO,
    PrioridadAlerta.BAJA: AuditSeverity.INFO,
}


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PhaseCost:
    fase_numero: int
    presupuesto: float
    gasto_real: float
    progreso: float = 0.0
    cost_code_id: Optional[str] = None


@dataclass(frozen=True)
class Invoice:
    id: str
    numero: str
    monto: float
    fecha_cobro_esperada: Optional[date] = None
    fecha_emision: Optional[date] = None
    fase_numero: Optional[int] = None
    cobrada: bool = False


@dataclass(frozen=True)
class PaymentObligation:
    id: str
    proveedor_nombre: str
    monto: float
    fecha_vencimiento: date
    fase_numero: Optional[int] = None
    pagado: bool = False


@dataclass
class ProjectMetrics:
    """Snapshot of one project's financial state, supplied by the caller."""

    proyecto_id: str
    proyecto_nombre: str
    tesoreria_actual: float = 0.0
    tesoreria_necesaria: float = 0.0
    fases: list[PhaseCost] = field(default_factory=list)
    facturas: list[Invoice] = field(default_factory=list)
    pagos: list[PaymentObligation] = field(default_factory=list)


@dataclass(frozen=True)
class AlertThresholds:
    critica: float = 0.50
    alta: float = 0.25
    media: float = 0.10
    sobrecosto_umbral_pct: float = 10.0
    dias_alto: int = 15
    dias_critico: int = 30
    auto_resolve_note: str = "Resuelta automáticamente: la condición ya no se cumple"

    @classmethod
    def from_config(cls, alerts_cfg: dict[str, Any]) -> "AlertThresholds":
        bands = alerts_cfg.get("priority_bands", {})
        defaults = cls()
        return cls(
            critica=float(bands.get("critica", defaults.critica)),
            alta=float(bands.get("alta", defaults.alta)),
            media=float(bands.get("media", defaults.media)),
            sobrecosto_umbral_pct=float(alerts_cfg.get("sobrecosto_umbral_pct", defaults.sobrecosto_umbral_pct)),
            dias_alto=int(alerts_cfg.get("dias_alto", defaults.dias_alto)),
            dias_critico=int(alerts_cfg.get("dias_critico", defaults.dias_critico)),
            auto_resolve_note=alerts_cfg.get("auto_resolve_note", defaults.auto_resolve_note),
        )


@dataclass(frozen=True)
class AlertCandidate:
    """An alert the current metrics call for, before dedup against the store."""

    tipo: TipoAlerta
    prioridad: PrioridadAlerta
    titulo: str
    mensaje: str
    accion_recomendada: str
    datos: DatosAlerta
    fase_numero: Optional[int] = None
    factura_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Priority mapping
# ---------------------------------------------------------------------------

def priority_for_ratio(ratio: float, thresholds: AlertThresholds) -> PrioridadAlerta:
    """Map a shortfall or variance ratio (0.3 = 30 %) to a priority."""
    if ratio >= thresholds.critica:
        return PrioridadAlerta.CRITICA
    elif ratio >= thresholds.alta:
        return PrioridadAlerta.ALTA
    elif ratio >= thresholds.media:
        return PrioridadAlerta.MEDIA
    else:
        return PrioridadAlerta.BAJA


def priority_for_days(days: int, thresholds: AlertThresholds) -> PrioridadAlerta:
    if days > thresholds.dias_critico:
        return PrioridadAlerta.CRITICA
    elif days > thresholds.dias_alto:
        return PrioridadAlerta.ALTA
    else:
        return PrioridadAlerta.MEDIA


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

def _rule_bajo_capital(m: ProjectMetrics, t: AlertThresholds) -> list[AlertCandidate]:
    if m.tesoreria_necesaria <= 0 or m.tesoreria_actual >= m.tesoreria_necesaria:
        return []

    deficit = round(m.tesoreria_necesaria - m.tesoreria_actual, 2)
    ratio = deficit / m.tesoreria_necesaria
    return [
        AlertCandidate(
            tipo=TipoAlerta.BAJO_CAPITAL,
            prioridad=priority_for_ratio(ratio, t),
            titulo="Tesorería insuficiente",
            mensaje=(
                f"La tesorería actual ({m.tesoreria_actual:,.2f}) no cubre las obligaciones "
                f"próximas ({m.tesoreria_necesaria:,.2f}); déficit de {deficit:,.2f} "
                f"({ratio:.1%})."
            ),
            accion_recomendada="Gestionar cobros pendientes o ajustar la planificación de fases",
            datos=DatosBajoCapital(
                tesoreria_actual=m.tesoreria_actual,
                tesoreria_necesaria=m.tesoreria_necesaria,
                deficit=deficit,
                porcentaje_deficit=round(ratio * 100, 1),
            ),
        )
    ]


def _rule_sobrecosto(m: ProjectMetrics, t: AlertThresholds) -> list[AlertCandidate]:
    candidates = []
    limit_factor = 1 + t.sobrecosto_umbral_pct / 100
    for fase in m.fases:
        if fase.presupuesto <= 0 or fase.gasto_real <= fase.presupuesto * limit_factor:
            continue
        variance = fase.gasto_real / fase.presupuesto - 1
        candidates.append(
            AlertCandidate(
                tipo=TipoAlerta.SOBRECOSTO,
                prioridad=priority_for_ratio(variance, t),
                fase_numero=fase.fase_numero,
                titulo=f"Sobrecosto en la fase {fase.fase_numero}",
                mensaje=(
                    f"El gasto real ({fase.gasto_real:,.2f}) supera el presupuesto "
                    f"({fase.presupuesto:,.2f}) en un {variance:.1%}."
                ),
                accion_recomendada="Revisar gastos de la fase y ajustar presupuesto o reducir costos",
                datos=DatosSobrecosto(
                    presupuesto_original=fase.presupuesto,
                    gasto_real=fase.gasto_real,
                    variacion_porcentaje=round(variance * 100, 1),
                    cost_code_id=fase.cost_code_id,
                ),
            )
        )
    return candidates


def _days_pending(invoice: Invoice, as_of: date) -> int:
    anchor = invoice.fecha_cobro_esperada or invoice.fecha_emision
    return max((as_of - anchor).days, 0) if anchor else 0


def _rule_cobro_pendiente(m: ProjectMetrics, t: AlertThresholds, as_of: date) -> list[AlertCandidate]:
    completed = {f.fase_numero for f in m.fases if f.progreso >= 100}

    by_phase: dict[Optional[int], list[tuple[Invoice, int]]] = {}
    for inv in m.facturas:
        if inv.cobrada:
            continue
        overdue = inv.fecha_cobro_esperada is not None and as_of > inv.fecha_cobro_esperada
        phase_done = inv.fase_numero is not None and inv.fase_numero in completed
        if overdue or phase_done:
            by_phase.setdefault(inv.fase_numero, []).append((inv, _days_pending(inv, as_of)))

    candidates = []
    for fase_numero, items in by_phase.items():
        # The oldest invoice drives priority and is the follow-up target
        items.sort(key=lambda pair: (-pair[1], pair[0].id))
        inv, days = items[0]
        mensaje = (
            f"La factura {inv.numero} ({inv.monto:,.2f}) lleva {days} días pendiente de cobro."
        )
        if len(items) > 1:
            mensaje += f" Hay {len(items) - 1} factura(s) adicional(es) pendiente(s) en la misma fase."
        candidates.append(
            AlertCandidate(
                tipo=TipoAlerta.COBRO_PENDIENTE,
                prioridad=priority_for_days(days, t),
                fase_numero=fase_numero,
                factura_id=inv.id,
                titulo=(
                    f"Cobro pendiente de la fase {fase_numero}"
                    if fase_numero is not None
                    else "Cobro pendiente"
                ),
                mensaje=mensaje,
                accion_recomendada="Enviar recordatorio de pago al cliente o generar la factura si no existe",
                datos=DatosCobroPendiente(
                    factura_id=inv.id,
                    factura_numero=inv.numero,
                    monto_factura=inv.monto,
                    dias_pendientes=days,
                    fecha_cobro_esperada=inv.fecha_cobro_esperada,
                ),
            )
        )
    return candidates


def _rule_pago_vencido(m: ProjectMetrics, t: AlertThresholds, as_of: date) -> list[AlertCandidate]:
    by_phase: dict[Optional[int], list[PaymentObligation]] = {}
    for pago in m.pagos:
        if not pago.pagado and as_of > pago.fecha_vencimiento:
            by_phase.setdefault(pago.fase_numero, []).append(pago)

    candidates = []
    for fase_numero, pagos in by_phase.items():
        pagos.sort(key=lambda p: (p.fecha_vencimiento, p.id))
        oldest = pagos[0]
        days = (as_of - oldest.fecha_vencimiento).days
        total = round(sum(p.monto for p in pagos), 2)
        suppliers = sorted({p.proveedor_nombre for p in pagos})
        proveedor = suppliers[0] if len(suppliers) == 1 else f"{len(suppliers)} proveedores"

        candidates.append(
            AlertCandidate(
                tipo=TipoAlerta.PAGO_VENCIDO,
                prioridad=priority_for_days(days, t),
                fase_numero=fase_numero,
                titulo="Pago a proveedor vencido",
                mensaje=(
                    f"{len(pagos)} pago(s) a {proveedor} por {total:,.2f} vencido(s); "
                    f"el más antiguo desde hace {days} días "
                    f"(vencimiento: {oldest.fecha_vencimiento.isoformat()})."
                ),
                accion_recomendada="Programar el pago o renegociar el vencimiento con el proveedor",
                datos=DatosPagoVencido(
                    proveedor_nombre=proveedor,
                    monto_pago=total,
                    fecha_vencimiento=oldest.fecha_vencimiento,
                    dias_vencidos=days,
                    pagos_vencidos=len(pagos),
                ),
            )
        )
    return candidates


def evaluate_project(
    metrics: ProjectMetrics,
    thresholds: AlertThresholds,
    as_of: date,
) -> list[AlertCandidate]:
    """Run every rule against one project's metrics.

    Args:
        metrics: Financial snapshot of the project.
        thresholds: Priority bands and day thresholds.
        as_of: Evaluation date used for all day counts.

    Returns:
        At most one candidate per (tipo, fase_numero).
    """
    if isinstance(as_of, datetime):
        as_of = as_of.date()
    candidates = (
        _rule_bajo_capital(metrics, thresholds)
        + _rule_sobrecosto(metrics, thresholds)
        + _rule_cobro_pendiente(metrics, thresholds, as_of)
        + _rule_pago_vencido(metrics, thresholds, as_of)
    )
    logger.debug(
        "Project %s evaluated: %d alert condition(s) as of %s",
        metrics.proyecto_id,
        len(candidates),
        as_of,
    )
    return candidates


def sort_alerts(alerts: Iterable[AlertaFinanciera]) -> list[AlertaFinanciera]:
    """Priority descending, then most recently updated first."""
    return sorted(
        alerts,
        key=lambda a: (PRIORITY_RANK[a.prioridad], a.updated_at),
        reverse=True,
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

_CONTENT_FIELDS = ("prioridad", "titulo", "mensaje", "accion_recomendada", "datos", "factura_id")


class AlertEngine:
    """Applies evaluated conditions to the stored alert set."""

    def __init__(
        self,
        store: VersionedStore,
        audit_log: AuditLog,
        thresholds: Optional[AlertThresholds] = None,
        events: Optional[EventPublisher] = None,
    ):
        self.store = store
        self.audit_log = audit_log
        self.thresholds = thresholds or AlertThresholds()
        self.events = events or EventPublisher()

    def _entry(
        self,
        alert: AlertaFinanciera,
        action: str,
        description: str,
        severity: Optional[AuditSeverity] = None,
        changes: Iterable[AuditChange] = (),
    ) -> AuditLogEntry:
        return AuditLogEntry(
            action=action,
            entity_type=ENTITY_TYPE,
            entity_id=alert.id,
            entity_name=alert.titulo,
            description=description,
            user_id=SYSTEM_USER,
            user_name="Sistema",
            severity=severity,
            project_id=alert.proyecto_id,
            changes=tuple(changes),
            tags=(alert.tipo.value,),
        )

    def _active_for_project(self, proyecto_id: str) -> dict:
        alerts = self.store.all(
            COLLECTION,
            lambda a: a.proyecto_id == proyecto_id and a.is_active,
        )
        return {a.key: a for a in alerts}

    def _suppressed_for_project(self, proyecto_id: str) -> dict:
        alerts = self.store.all(
            COLLECTION,
            lambda a: a.proyecto_id == proyecto_id and a.supresion_activa,
        )
        return {a.key: a for a in alerts}

    # ------------------------------------------------------------------
    # Recompute
    # ------------------------------------------------------------------

    def recompute(self, metrics: ProjectMetrics, as_of: Optional[date] = None) -> dict[str, int]:
        """Re-evaluate one project and reconcile its active alerts.

        Holds the project's alert lock for the whole apply step, so
        concurrent recomputes of the same project serialise.

        Returns:
            Counts: raised, updated, escalated, unchanged, suppressed,
            auto_resolved.

        Raises:
            LockTimeoutError: If another writer holds the project lock.
        """
        as_of = as_of or utcnow().date()
        counts = {
            "raised": 0,
            "updated": 0,
            "escalated": 0,
            "unchanged": 0,
            "suppressed": 0,
            "auto_resolved": 0,
        }
        outbound: list[tuple[str, AlertaFinanciera]] = []

        with self.store.locked(PROJECT_LOCK, metrics.proyecto_id):
            candidates = evaluate_project(metrics, self.thresholds, as_of)
            existing = self._active_for_project(metrics.proyecto_id)
            suppressed = self._suppressed_for_project(metrics.proyecto_id)
            seen = set()

            for cand in candidates:
                key = (cand.tipo, metrics.proyecto_id, cand.fase_numero)
                seen.add(key)
                current = existing.get(key)
                if current is None:
                    ignored = suppressed.get(key)
                    if ignored is not None:
                        if PRIORITY_RANK[cand.prioridad] <= PRIORITY_RANK[ignored.prioridad]:
                            counts["suppressed"] += 1
                            continue
                        self._lift_suppression(
                            ignored, "la prioridad superó la de la alerta ignorada"
                        )
                    outbound.append(("alert.raised", self._raise(metrics, cand)))
                    counts["raised"] += 1
                    continue

                if all(getattr(current, f) == getattr(cand, f) for f in _CONTENT_FIELDS):
                    counts["unchanged"] += 1
                    continue

                updated, escalated = self._update(current, cand, metrics)
                outbound.append(("alert.updated", updated))
                counts["escalated" if escalated else "updated"] += 1

            for key, current in existing.items():
                if key not in seen:
                    outbound.append(("alert.auto_resolved", self._auto_resolve(current)))
                    counts["auto_resolved"] += 1

            for key, ignored in suppressed.items():
                if key not in seen:
                    self._lift_suppression(ignored, "la condición ya no se cumple")

        for event_name, alert in outbound:
            self.events.publish(
                event_name,
                alert.id,
                alert.estado.value,
                proyecto_id=alert.proyecto_id,
                tipo=alert.tipo.value,
                prioridad=alert.prioridad.value,
            )

        if outbound:
            logger.info(
                "Alerts for %s — raised: %d | updated: %d | escalated: %d | auto-resolved: %d",
                metrics.proyecto_id,
                counts["raised"],
                counts["updated"],
                counts["escalated"],
                counts["auto_resolved"],
            )
        return counts

    def _raise(self, metrics: ProjectMetrics, cand: AlertCandidate) -> AlertaFinanciera:
        alert = AlertaFinanciera(
            tipo=cand.tipo,
            prioridad=cand.prioridad,
            proyecto_id=metrics.proyecto_id,
            proyecto_nombre=metrics.proyecto_nombre,
            fase_numero=cand.fase_numero,
            factura_id=cand.factura_id,
            titulo=cand.titulo,
            mensaje=cand.mensaje,
            accion_recomendada=cand.accion_recomendada,
            datos=cand.datos,
        )
        entry = self._entry(
            alert,
            "alert_raised",
            f"Alerta {cand.tipo.value} ({cand.prioridad.value}) generada: {cand.mensaje}",
            severity=PRIORITY_TO_SEVERITY[cand.prioridad],
        )
        return self.store.insert(
            COLLECTION,
            alert.id,
            alert,
            before_commit=lambda _: self.audit_log.record(entry),
        )

    def _update(
        self,
        current: AlertaFinanciera,
        cand: AlertCandidate,
        metrics: ProjectMetrics,
    ) -> tuple[AlertaFinanciera, bool]:
        escalated = current.prioridad != cand.prioridad
        new = replace(
            current,
            prioridad=cand.prioridad,
            proyecto_nombre=metrics.proyecto_nombre,
            titulo=cand.titulo,
            mensaje=cand.mensaje,
            accion_recomendada=cand.accion_recomendada,
            datos=cand.datos,
            factura_id=cand.factura_id,
            updated_at=utcnow(),
        )
        changes = [AuditChange("mensaje", current.mensaje, cand.mensaje)]
        if escalated:
            changes.insert(0, AuditChange("prioridad", current.prioridad.value, cand.prioridad.value))
            entry = self._entry(
                current,
                "alert_escalated",
                f"Prioridad de la alerta cambiada de {current.prioridad.value} a {cand.prioridad.value}",
                severity=PRIORITY_TO_SEVERITY[cand.prioridad],
                changes=changes,
            )
        else:
            entry = self._entry(current, "alert_updated", "Datos de la alerta actualizados", changes=changes)

        stored = self.store.update(
            COLLECTION,
            current.id,
            new,
            expected_version=current.version,
            before_commit=lambda _: self.audit_log.record(entry),
        )
        return stored, escalated

    def _auto_resolve(self, current: AlertaFinanciera) -> AlertaFinanciera:
        now = utcnow()
        note = self.thresholds.auto_resolve_note
        new = replace(
            current,
            estado=EstadoAlerta.RESUELTA,
            nota_resolucion=note,
            fecha_resolucion=now,
            resuelta_por=SYSTEM_USER,
            resolucion_automatica=True,
            updated_at=now,
        )
        entry = self._entry(
            current,
            "alert_auto_resolved",
            note,
            changes=[AuditChange("estado", current.estado.value, EstadoAlerta.RESUELTA.value)],
        )
        return self.store.update(
            COLLECTION,
            current.id,
            new,
            expected_version=current.version,
            before_commit=lambda _: self.audit_log.record(entry),
        )

    def _lift_suppression(self, ignored: AlertaFinanciera, reason: str) -> AlertaFinanciera:
        new = replace(ignored, supresion_activa=False)
        entry = self._entry(
            ignored,
            "alert_suppression_lifted",
            f"Supresión de la alerta ignorada levantada: {reason}",
            changes=[AuditChange("supresion_activa", True, False)],
        )
        return self.store.update(
            COLLECTION,
            ignored.id,
            new,
            expected_version=ignored.version,
            before_commit=lambda _: self.audit_log.record(entry),
        )

    def recompute_all(
        self,
        metrics_list: Iterable[ProjectMetrics],
        as_of: Optional[date] = None,
    ) -> dict[str, Any]:
        """Recompute every project; one failing project does not stop the rest."""
        totals = {
            "projects": 0,
            "raised": 0,
            "updated": 0,
            "escalated": 0,
            "unchanged": 0,
            "suppressed": 0,
            "auto_resolved": 0,
        }
        failed: list[str] = []
        for metrics in metrics_list:
            try:
                counts = self.recompute(metrics, as_of)
            except GovernanceError as exc:
                logger.error("Alert recompute failed for %s: %s", metrics.proyecto_id, exc, exc_info=True)
                failed.append(metrics.proyecto_id)
                continue
            totals["projects"] += 1
            for k, v in counts.items():
                totals[k] += v
        totals["failed"] = failed
        return totals

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, alert_id: str) -> AlertaFinanciera:
        return self.store.get(COLLECTION, alert_id)

    def all_alerts(self, proyecto_id: Optional[str] = None) -> list[AlertaFinanciera]:
        return self.store.all(
            COLLECTION,
            lambda a: proyecto_id is None or a.proyecto_id == proyecto_id,
        )

    def active_alerts(self, proyecto_id: Optional[str] = None) -> list[AlertaFinanciera]:
        alerts = self.store.all(
            COLLECTION,
            lambda a: a.is_active and (proyecto_id is None or a.proyecto_id == proyecto_id),
        )
        return sort_alerts(alerts)

    def alert_stats(self, proyecto_id: Optional[str] = None) -> dict[str, Any]:
        """Active-alert counts by priority and by tipo."""
        alerts = self.active_alerts(proyecto_id)
        df = pd.DataFrame(
            [{"prioridad": a.prioridad.value, "tipo": a.tipo.value} for a in alerts],
            columns=["prioridad", "tipo"],
        )
        by_priority = df.groupby("prioridad").size().to_dict() if not df.empty else {}
        by_type = df.groupby("tipo").size().to_dict() if not df.empty else {}
        return {
            "total": len(df),
            "criticas": int(by_priority.get(PrioridadAlerta.CRITICA.value, 0)),
            "altas": int(by_priority.get(PrioridadAlerta.ALTA.value, 0)),
            "medias": int(by_priority.get(PrioridadAlerta.MEDIA.value, 0)),
            "bajas": int(by_priority.get(PrioridadAlerta.BAJA.value, 0)),
            "por_tipo": {t.value: int(by_type.get(t.value, 0)) for t in TipoAlerta},
        }
