"""
audit.py — Append-Only Audit Log.

Every classification, approval, rejection, payment and alert state change
is recorded here. Entries are frozen dataclasses held in an in-memory list
and, when a journal path is configured, appended to a JSON-lines file that
is flushed and fsynced before record() returns. There is no update,
delete or retention-purge operation.

Severity defaults (when the caller does not set one):
    critical — expense_approved, expense_paid, payment_recorded, budget_updated
    warning  — expense_rejected, alert_escalated, cost_code_deactivated
    info     — everything else
"""

import io
import json
import logging
import os
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import pandas as pd

from governance.errors import ValidationError
from governance.models import (
    AuditChange,
    AuditLogEntry,
    AuditSeverity,
    FinancialImpact,
    Page,
)

logger = logging.getLogger(__name__)

CRITICAL_ACTIONS = {
    "expense_approved",
    "expense_paid",
    "payment_recorded",
    "budget_updated",
}
WARNING_ACTIONS = {
    "expense_rejected",
    "alert_escalated",
    "cost_code_deactivated",
}

EXPORT_FORMATS = ("csv", "json", "xlsx")

EXPORT_COLUMNS = [
    "id", "timestamp", "severity", "action", "entity_type", "entity_id",
    "entity_name", "user_id", "user_name", "project_id", "description",
    "financial_impact", "changes",
]


def severity_for_action(action: str) -> AuditSeverity:
    if action in CRITICAL_ACTIONS:
        return AuditSeverity.CRITICAL
    if action in WARNING_ACTIONS:
        return AuditSeverity.WARNING
    return AuditSeverity.INFO


@dataclass
class AuditFilters:
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    project_id: Optional[str] = None
    user_id: Optional[str] = None
    actions: Optional[list[str]] = None
    severity: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    search: Optional[str] = None
    tags: Optional[list[str]] = None

    def __post_init__(self):
        # Entry timestamps are UTC-aware; naive bounds are taken as UTC
        if self.start is not None and self.start.tzinfo is None:
            self.start = self.start.replace(tzinfo=timezone.utc)
        if self.end is not None and self.end.tzinfo is None:
            self.end = self.end.replace(tzinfo=timezone.utc)

    def matches(self, entry: AuditLogEntry) -> bool:
        if self.entity_type and entry.entity_type != self.entity_type:
            return False
        if self.entity_id and entry.entity_id != self.entity_id:
            return False
        if self.project_id and entry.project_id != self.project_id:
            return False
        if self.user_id and entry.user_id != self.user_id:
            return False
        if self.actions and entry.action not in self.actions:
            return False
        if self.severity and entry.severity != self.severity:
            return False
        if self.start and entry.timestamp < self.start:
            return False
        if self.end and entry.timestamp > self.end:
            return False
        if self.tags and not set(self.tags) & set(entry.tags):
            return False
        if self.search:
            needle = self.search.lower()
            haystack = (entry.description, entry.user_name, entry.entity_name or "")
            if not any(needle in h.lower() for h in haystack):
                return False
        return True


def _entry_from_dict(data: dict[str, Any]) -> AuditLogEntry:
    impact = data.get("financial_impact")
    return AuditLogEntry(
        id=data["id"],
        timestamp=datetime.fromisoformat(data["timestamp"]),
        action=data["action"],
        entity_type=data["entity_type"],
        entity_id=data["entity_id"],
        entity_name=data.get("entity_name"),
        description=data.get("description", ""),
        user_id=data.get("user_id", "system"),
        user_name=data.get("user_name", "System"),
        severity=AuditSeverity(data["severity"]) if data.get("severity") else None,
        project_id=data.get("project_id"),
        financial_impact=FinancialImpact(**impact) if impact else None,
        changes=tuple(AuditChange(**c) for c in data.get("changes") or ()),
        tags=tuple(data.get("tags") or ()),
    )


class AuditLog:
    """Append-only ledger of governance events."""

    def __init__(self, journal_path: Optional[str] = None):
        self._entries: list[AuditLogEntry] = []
        self._lock = threading.Lock()
        self.journal_path = Path(journal_path) if journal_path else None
        if self.journal_path is not None:
            self.journal_path.parent.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_journal(cls, journal_path: str) -> "AuditLog":
        """Rebuild the in-memory ledger by replaying an existing journal."""
        log = cls(journal_path)
        path = Path(journal_path)
        if path.exists():
            with open(path, "r", encoding="utf-8") as fh:
                for line in fh:
                    if line.strip():
                        log._entries.append(_entry_from_dict(json.loads(line)))
            logger.info("Replayed %d audit entries from %s", len(log._entries), path)
        return log

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def record(self, entry: AuditLogEntry) -> AuditLogEntry:
        """Append one entry; durable on return when a journal is configured.

        Raises:
            ValidationError: If `action` or `entity_type` is missing.
        """
        if not entry.action or not entry.entity_type:
            raise ValidationError("Audit entry requires both action and entity_type")
        if entry.severity is None:
            entry = replace(entry, severity=severity_for_action(entry.action))

        with self._lock:
            if self.journal_path is not None:
                with open(self.journal_path, "a", encoding="utf-8") as fh:
                    fh.write(json.dumps(entry.to_dict(), ensure_ascii=False) + "\n")
                    fh.flush()
                    os.fsync(fh.fileno())
            self._entries.append(entry)

        logger.debug(
            "[AUDIT] %s %s:%s by %s (%s)",
            entry.action,
            entry.entity_type,
            entry.entity_id,
            entry.user_name,
            entry.severity.value,
        )
        return entry

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def _filtered(self, filters: Optional[AuditFilters]) -> list[AuditLogEntry]:
        with self._lock:
            indexed = list(enumerate(self._entries))
        if filters is not None:
            indexed = [(i, e) for i, e in indexed if filters.matches(e)]
        # Newest first; insertion order breaks timestamp ties
        indexed.sort(key=lambda pair: (pair[1].timestamp, pair[0]), reverse=True)
        return [e for _, e in indexed]

    def query(
        self,
        filters: Optional[AuditFilters] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Page:
        """Return one page of matching entries ordered by timestamp descending."""
        if page < 1 or page_size < 1:
            raise ValidationError("page and page_size must be positive")
        matched = self._filtered(filters)
        start = (page - 1) * page_size
        return Page(
            items=matched[start:start + page_size],
            total=len(matched),
            page=page,
            page_size=page_size,
        )

    def entity_history(self, entity_type: str, entity_id: str) -> list[AuditLogEntry]:
        return self._filtered(AuditFilters(entity_type=entity_type, entity_id=entity_id))

    def recent(self, limit: int = 10) -> list[AuditLogEntry]:
        return self._filtered(None)[:limit]

    def critical_events(self, limit: int = 20) -> list[AuditLogEntry]:
        return self._filtered(AuditFilters(severity=AuditSeverity.CRITICAL.value))[:limit]

    def to_dataframe(self, filters: Optional[AuditFilters] = None) -> pd.DataFrame:
        records = [e.to_record() for e in self._filtered(filters)]
        return pd.DataFrame(records, columns=EXPORT_COLUMNS)

    def stats(self) -> dict[str, Any]:
        """Aggregate counts by action, entity type, severity and user."""
        df = self.to_dataframe()
        if df.empty:
            return {
                "total_entries": 0,
                "by_action": {},
                "by_entity_type": {},
                "by_severity": {},
                "by_user": {},
                "financial": {"total": 0, "total_amount": 0.0, "by_entity_type": {}},
            }

        financial = df[df["financial_impact"].notna()]
        return {
            "total_entries": len(df),
            "by_action": df.groupby("action").size().to_dict(),
            "by_entity_type": df.groupby("entity_type").size().to_dict(),
            "by_severity": df.groupby("severity").size().to_dict(),
            "by_user": df.groupby("user_id").size().to_dict(),
            "financial": {
                "total": len(financial),
                "total_amount": round(float(financial["financial_impact"].sum()), 2),
                "by_entity_type": (
                    financial.groupby("entity_type")["financial_impact"]
                    .sum()
                    .round(2)
                    .to_dict()
                ),
            },
        }

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def export(self, fmt: str, filters: Optional[AuditFilters] = None) -> str | bytes:
        """Serialise the filtered entries as a flat table.

        Args:
            fmt: One of 'csv', 'json' (returned as str) or 'xlsx' (bytes).
            filters: Optional filters applied before export.

        Raises:
            ValidationError: On an unsupported format.
        """
        fmt = fmt.lower()
        if fmt not in EXPORT_FORMATS:
            raise ValidationError(f"Unsupported export format '{fmt}'; expected one of {EXPORT_FORMATS}")

        df = self.to_dataframe(filters)
        logger.info("Exporting %d audit entries as %s", len(df), fmt)

        if fmt == "csv":
            return df.to_csv(index=False)
        if fmt == "json":
            return json.dumps(
                df.astype(object).where(df.notna(), None).to_dict(orient="records"),
                indent=2,
                ensure_ascii=False,
            )

        from governance.reporter import build_audit_workbook

        buffer = io.BytesIO()
        build_audit_workbook(df).save(buffer)
        return buffer.getvalue()
