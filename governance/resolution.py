"""
resolution.py — Manual alert resolution and dismissal.

A person closes an active alert either as resolved (the underlying problem
was handled) or ignored (acknowledged, no action). Both require a note.
An ignored alert keeps its key suppressed: the engine does not raise it
again while the condition persists at the same or a lower priority.
Writes take the same per-project lock the alert engine uses, so a manual
close never interleaves with a recompute of that project.
"""

import logging
from dataclasses import replace
from typing import Optional

from governance.alerts import COLLECTION, ENTITY_TYPE, PROJECT_LOCK
from governance.audit import AuditLog
from governance.errors import InvalidTransitionError, ValidationError
from governance.events import EventPublisher
from governance.models import (
    AlertaFinanciera,
    AuditChange,
    AuditLogEntry,
    EstadoAlerta,
    utcnow,
)
from governance.store import VersionedStore

logger = logging.getLogger(__name__)


class ResolutionTracker:
    def __init__(
        self,
        store: VersionedStore,
        audit_log: AuditLog,
        events: Optional[EventPublisher] = None,
    ):
        self.store = store
        self.audit_log = audit_log
        self.events = events or EventPublisher()

    def resolve(
        self,
        alert_id: str,
        note: str,
        user_id: str,
        user_name: Optional[str] = None,
    ) -> AlertaFinanciera:
        """Mark an active alert as resolved.

        Raises:
            ValidationError: If the note is empty.
            NotFoundError: If the alert does not exist.
            InvalidTransitionError: If the alert is not active.
        """
        return self._close(alert_id, EstadoAlerta.RESUELTA, note, user_id, user_name)

    def ignore(
        self,
        alert_id: str,
        note: str,
        user_id: str,
        user_name: Optional[str] = None,
    ) -> AlertaFinanciera:
        """Dismiss an active alert; same rules as resolve()."""
        return self._close(alert_id, EstadoAlerta.IGNORADA, note, user_id, user_name)

    def _close(
        self,
        alert_id: str,
        estado: EstadoAlerta,
        note: str,
        user_id: str,
        user_name: Optional[str],
    ) -> AlertaFinanciera:
        if not note or not note.strip():
            raise ValidationError("A resolution note is required", entity_id=alert_id)
        note = note.strip()

        proyecto_id = self.store.get(COLLECTION, alert_id).proyecto_id
        with self.store.locked(PROJECT_LOCK, proyecto_id):
            current = self.store.get(COLLECTION, alert_id)
            if not current.is_active:
                raise InvalidTransitionError(
                    f"Alert {alert_id} is already {current.estado.value}",
                    entity_id=alert_id,
                )

            now = utcnow()
            new = replace(
                current,
                estado=estado,
                nota_resolucion=note,
                fecha_resolucion=now,
                resuelta_por=user_id,
                resolucion_automatica=False,
                supresion_activa=estado == EstadoAlerta.IGNORADA,
                updated_at=now,
            )
            action = "alert_resolved" if estado == EstadoAlerta.RESUELTA else "alert_ignored"
            entry = AuditLogEntry(
                action=action,
                entity_type=ENTITY_TYPE,
                entity_id=alert_id,
                entity_name=current.titulo,
                description=f"Alerta {current.tipo.value} {estado.value}: {note}",
                user_id=user_id,
                user_name=user_name or user_id,
                project_id=proyecto_id,
                changes=(AuditChange("estado", current.estado.value, estado.value),),
                tags=(current.tipo.value,),
            )
            stored = self.store.update(
                COLLECTION,
                alert_id,
                new,
                expected_version=current.version,
                before_commit=lambda _: self.audit_log.record(entry),
            )

        logger.info("Alert %s %s by %s", alert_id, estado.value, user_id)
        self.events.publish(
            f"alert.{'resolved' if estado == EstadoAlerta.RESUELTA else 'ignored'}",
            alert_id,
            estado.value,
            proyecto_id=proyecto_id,
            resuelta_por=user_id,
        )
        return stored
