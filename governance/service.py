"""
service.py — GovernanceService façade.

Wires the catalog, classification engine, approval workflow, alert engine,
resolution tracker and audit log over one shared store and event publisher,
and exposes the operations external callers use:

    classify, submit, approve, reject, bulk_approve, bulk_reject,
    reclassify, record_payment, pending_expenses,
    recompute_alerts, active_alerts, resolve_alert, ignore_alert,
    audit_query, audit_export
"""

import logging
from datetime import date
from pathlib import Path
from typing import Any, Iterable, Optional, Union

from governance.alerts import AlertEngine, AlertThresholds, ProjectMetrics
from governance.audit import AuditFilters, AuditLog
from governance.catalog import CostCodeCatalog, load_catalog
from governance.classifier import ClassificationEngine
from governance.config import merge_config
from governance.events import EventPublisher
from governance.models import AlertaFinanciera, BulkItemResult, Expense, Page, Project
from governance.notifier import WebhookNotifier
from governance.reporter import generate_report
from governance.resolution import ResolutionTracker
from governance.store import VersionedStore
from governance.workflow import ApprovalWorkflow

logger = logging.getLogger(__name__)

FiltersArg = Union[AuditFilters, dict[str, Any], None]


def _as_filters(filters: FiltersArg) -> Optional[AuditFilters]:
    if filters is None or isinstance(filters, AuditFilters):
        return filters
    return AuditFilters(**filters)


class GovernanceService:
    def __init__(
        self,
        catalog: CostCodeCatalog,
        projects: Iterable[Project] = (),
        cfg: Optional[dict[str, Any]] = None,
        audit_log: Optional[AuditLog] = None,
        notifier: Optional[WebhookNotifier] = None,
    ):
        self.cfg = cfg or merge_config()
        self.catalog = catalog
        self.store = VersionedStore(lock_timeout=self.cfg["store"]["lock_timeout_seconds"])
        if audit_log is None:
            journal = self.cfg["paths"].get("audit_journal")
            audit_log = AuditLog.from_journal(journal) if journal else AuditLog()
        self.audit_log = audit_log
        self.events = EventPublisher()
        self.engine = ClassificationEngine(
            self.cfg["classification"], currency=self.cfg["project"]["currency"]
        )
        self.workflow = ApprovalWorkflow(
            self.store,
            self.audit_log,
            catalog,
            self.engine,
            projects=projects,
            events=self.events,
            require_review_cleared=self.cfg["workflow"]["require_review_cleared"],
        )
        self.alerts = AlertEngine(
            self.store,
            self.audit_log,
            AlertThresholds.from_config(self.cfg["alerts"]),
            events=self.events,
        )
        self.resolutions = ResolutionTracker(self.store, self.audit_log, events=self.events)
        self.notifier = notifier or WebhookNotifier.from_config(self.cfg)

    @classmethod
    def from_config(cls, cfg: dict[str, Any], projects: Iterable[Project] = ()) -> "GovernanceService":
        """Build a service from merged config: seed catalog and audit journal.

        Raises:
            FileNotFoundError: If the catalog seed is missing.
            CatalogIntegrityError: If the seed violates catalog rules.
        """
        return cls(load_catalog(cfg["paths"]["catalog_seed"]), projects=projects, cfg=cfg)

    def register_project(self, project: Project) -> None:
        self.workflow.register_project(project)

    # ------------------------------------------------------------------
    # Expenses
    # ------------------------------------------------------------------

    def classify(self, expense: Expense, actor_id: str = "system", actor_name: Optional[str] = None) -> Expense:
        """Classify and store an incoming expense."""
        return self.workflow.create(expense, actor_id, actor_name)

    def submit(self, expense_id: str, actor_id: str) -> Expense:
        return self.workflow.submit(expense_id, actor_id)

    def approve(self, expense_id: str, approver_id: str, approver_name: Optional[str] = None) -> Expense:
        return self.workflow.approve(expense_id, approver_id, approver_name)

    def reject(
        self,
        expense_id: str,
        rejector_id: str,
        reason: str,
        rejector_name: Optional[str] = None,
    ) -> Expense:
        return self.workflow.reject(expense_id, rejector_id, reason, rejector_name)

    def bulk_approve(self, expense_ids: list[str], approver_id: str) -> list[BulkItemResult]:
        return self.workflow.bulk_approve(expense_ids, approver_id)

    def bulk_reject(self, expense_ids: list[str], rejector_id: str, reason: str) -> list[BulkItemResult]:
        return self.workflow.bulk_reject(expense_ids, rejector_id, reason)

    def reclassify(self, expense_id: str, actor_id: str, **references: Any) -> Expense:
        return self.workflow.reclassify(expense_id, actor_id, **references)

    def record_payment(self, expense_id: str, amount: float, actor_id: str) -> Expense:
        return self.workflow.record_payment(expense_id, amount, actor_id)

    def get_expense(self, expense_id: str) -> Expense:
        return self.workflow.get(expense_id)

    def pending_expenses(
        self,
        is_auto_created: Optional[bool] = None,
        needs_review: Optional[bool] = None,
        project_id: Optional[str] = None,
    ) -> list[Expense]:
        return self.workflow.pending_expenses(is_auto_created, needs_review, project_id)

    def expense_stats(self) -> dict[str, Any]:
        return self.workflow.stats()

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def recompute_alerts(
        self,
        metrics: Iterable[ProjectMetrics],
        as_of: Optional[date] = None,
    ) -> dict[str, Any]:
        return self.alerts.recompute_all(metrics, as_of)

    def active_alerts(self, proyecto_id: Optional[str] = None) -> list[AlertaFinanciera]:
        return self.alerts.active_alerts(proyecto_id)

    def alert_stats(self, proyecto_id: Optional[str] = None) -> dict[str, Any]:
        return self.alerts.alert_stats(proyecto_id)

    def resolve_alert(self, alert_id: str, note: str, user_id: str) -> AlertaFinanciera:
        return self.resolutions.resolve(alert_id, note, user_id)

    def ignore_alert(self, alert_id: str, note: str, user_id: str) -> AlertaFinanciera:
        return self.resolutions.ignore(alert_id, note, user_id)

    def notify_critical(self) -> bool:
        return self.notifier.notify_critical(self.active_alerts())

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def audit_query(self, filters: FiltersArg = None, page: int = 1, page_size: int = 50) -> Page:
        return self.audit_log.query(_as_filters(filters), page, page_size)

    def audit_export(self, fmt: str, filters: FiltersArg = None) -> Union[str, bytes]:
        return self.audit_log.export(fmt, _as_filters(filters))

    def audit_stats(self) -> dict[str, Any]:
        return self.audit_log.stats()

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def generate_report(self) -> Path:
        return generate_report(
            self.active_alerts(),
            self.audit_log.to_dataframe(),
            self.alert_stats(),
            self.expense_stats(),
            self.cfg,
        )
