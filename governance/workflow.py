"""
workflow.py — Expense Approval Workflow.

State machine (per expense):

    draft ──submit──▶ pending_review ──approve──▶ approved (terminal*)
      │                     │
      └──────approve────────┤
      └──────reject─────────┴──reject───▶ rejected (terminal)

    * approved expenses still accept reclassify() and record_payment().

Every transition follows read → validate → versioned update. The audit
entry is appended inside the store's commit hook, so a transition that
loses a concurrent race leaves no audit trace and the winner's entry is
durable before its caller sees success.

`needs_review` is advisory by default: approval is allowed while it is set
unless `require_review_cleared` is enabled. Only reclassify() clears it.
"""

import logging
from dataclasses import replace
from typing import Any, Iterable, Optional

import pandas as pd

from governance.audit import AuditLog
from governance.catalog import CostCodeCatalog
from governance.classifier import ClassificationEngine
from governance.errors import (
    GovernanceError,
    InvalidTransitionError,
    ValidationError,
)
from governance.events import EventPublisher
from governance.models import (
    AuditChange,
    AuditLogEntry,
    BulkItemResult,
    Expense,
    ExpenseStatus,
    FinancialImpact,
    Page,
    PaymentStatus,
    Project,
    utcnow,
)
from governance.store import VersionedStore

logger = logging.getLogger(__name__)

COLLECTION = "expense"
ENTITY_TYPE = "expense"

# Tolerance for float rounding when comparing payment totals
_CENT = 0.005


class ApprovalWorkflow:
    """Owns expense records and every transition applied to them."""

    def __init__(
        self,
        store: VersionedStore,
        audit_log: AuditLog,
        catalog: CostCodeCatalog,
        engine: ClassificationEngine,
        projects: Iterable[Project] = (),
        events: Optional[EventPublisher] = None,
        require_review_cleared: bool = False,
    ):
        self.store = store
        self.audit_log = audit_log
        self.catalog = catalog
        self.engine = engine
        self.projects: dict[str, Project] = {p.id: p for p in projects}
        self.events = events or EventPublisher()
        self.require_review_cleared = require_review_cleared

    def register_project(self, project: Project) -> None:
        self.projects[project.id] = project

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _entry(
        self,
        expense: Expense,
        action: str,
        description: str,
        actor_id: str,
        actor_name: Optional[str],
        changes: Iterable[AuditChange] = (),
        financial_amount: Optional[float] = None,
    ) -> AuditLogEntry:
        return AuditLogEntry(
            action=action,
            entity_type=ENTITY_TYPE,
            entity_id=expense.id,
            entity_name=expense.display_name,
            description=description,
            user_id=actor_id,
            user_name=actor_name or actor_id,
            project_id=expense.project_id,
            financial_impact=(
                FinancialImpact(amount=financial_amount, currency=expense.currency)
                if financial_amount is not None
                else None
            ),
            changes=tuple(changes),
        )

    def _commit(self, current: Expense, new: Expense, entry: AuditLogEntry) -> Expense:
        return self.store.update(
            COLLECTION,
            current.id,
            new,
            expected_version=current.version,
            before_commit=lambda _: self.audit_log.record(entry),
        )

    def _publish(self, event_name: str, expense: Expense, **payload: Any) -> None:
        self.events.publish(
            event_name,
            expense.id,
            expense.status.value,
            project_id=expense.project_id,
            **payload,
        )

    @staticmethod
    def _guard_not_terminal(expense: Expense, operation: str) -> None:
        if expense.is_terminal:
            raise InvalidTransitionError(
                f"Cannot {operation} expense {expense.id}: already {expense.status.value}",
                entity_id=expense.id,
            )

    @staticmethod
    def _require_references(expense: Expense) -> None:
        missing = [
            name
            for name in ("project_id", "cost_code_id", "supplier_id")
            if not getattr(expense, name)
        ]
        if missing:
            raise ValidationError(
                f"Expense {expense.id} is missing mandatory references: {', '.join(missing)}",
                entity_id=expense.id,
            )

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    def create(
        self,
        expense: Expense,
        actor_id: str = "system",
        actor_name: Optional[str] = None,
        fallback_project: Optional[Project] = None,
    ) -> Expense:
        """Classify an incoming expense and store it as a new record."""
        result = self.engine.classify(
            expense, self.catalog, self.projects.values(), fallback_project
        )
        classified = result.expense

        description = f"Expense {classified.display_name} created"
        if result.reasons:
            description += f" (classified with defaults: {', '.join(result.reasons)})"
        entry = self._entry(
            classified,
            "expense_created",
            description,
            actor_id,
            actor_name,
            changes=result.changes,
        )
        stored = self.store.insert(
            COLLECTION,
            classified.id,
            classified,
            before_commit=lambda _: self.audit_log.record(entry),
        )
        self._publish(
            "expense.created",
            stored,
            needs_review=stored.needs_review,
            reasons=list(result.reasons),
        )
        return stored

    def get(self, expense_id: str) -> Expense:
        return self.store.get(COLLECTION, expense_id)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def submit(self, expense_id: str, actor_id: str, actor_name: Optional[str] = None) -> Expense:
        current = self.get(expense_id)
        if current.status != ExpenseStatus.DRAFT:
            raise InvalidTransitionError(
                f"Only draft expenses can be submitted; {expense_id} is {current.status.value}",
                entity_id=expense_id,
            )
        now = utcnow()
        new = replace(
            current,
            status=ExpenseStatus.PENDING_REVIEW,
            submitted_by=actor_id,
            submitted_at=now,
            updated_at=now,
        )
        entry = self._entry(
            current,
            "expense_submitted",
            f"Expense {current.display_name} submitted for review",
            actor_id,
            actor_name,
            changes=[AuditChange("status", current.status.value, new.status.value)],
        )
        stored = self._commit(current, new, entry)
        self._publish("expense.submitted", stored)
        return stored

    def approve(self, expense_id: str, approver_id: str, approver_name: Optional[str] = None) -> Expense:
        """Approve a draft or pending expense.

        Raises:
            NotFoundError: Unknown expense id.
            InvalidTransitionError: Expense is already approved or rejected.
            ValidationError: A mandatory reference is missing, or the
                review gate is enabled and the expense still needs review.
            ConflictError: Another writer changed the expense meanwhile.
        """
        current = self.get(expense_id)
        self._guard_not_terminal(current, "approve")
        self._require_references(current)
        if self.require_review_cleared and current.needs_review:
            raise ValidationError(
                f"Expense {expense_id} needs classification review before approval",
                entity_id=expense_id,
            )

        now = utcnow()
        new = replace(
            current,
            status=ExpenseStatus.APPROVED,
            approved_by=approver_id,
            approved_at=now,
            updated_at=now,
        )
        entry = self._entry(
            current,
            "expense_approved",
            f"Expense {current.display_name} approved for {current.total_amount:,.2f} {current.currency}",
            approver_id,
            approver_name,
            changes=[AuditChange("status", current.status.value, new.status.value)],
            financial_amount=current.total_amount,
        )
        stored = self._commit(current, new, entry)
        logger.info("Expense %s approved by %s", expense_id, approver_id)
        self._publish("expense.approved", stored, amount=stored.total_amount)
        return stored

    def reject(
        self,
        expense_id: str,
        rejector_id: str,
        reason: str,
        rejector_name: Optional[str] = None,
    ) -> Expense:
        """Reject a draft or pending expense with a mandatory reason."""
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required", entity_id=expense_id)
        reason = reason.strip()

        current = self.get(expense_id)
        self._guard_not_terminal(current, "reject")

        now = utcnow()
        new = replace(
            current,
            status=ExpenseStatus.REJECTED,
            rejection_reason=reason,
            rejected_by=rejector_id,
            rejected_at=now,
            updated_at=now,
        )
        entry = self._entry(
            current,
            "expense_rejected",
            f"Expense {current.display_name} rejected: {reason}",
            rejector_id,
            rejector_name,
            changes=[
                AuditChange("status", current.status.value, new.status.value),
                AuditChange("rejection_reason", None, reason),
            ],
        )
        stored = self._commit(current, new, entry)
        logger.info("Expense %s rejected by %s: %s", expense_id, rejector_id, reason)
        self._publish("expense.rejected", stored, reason=reason)
        return stored

    # ------------------------------------------------------------------
    # Bulk operations
    # ------------------------------------------------------------------

    def _bulk(self, expense_ids: list[str], operation, label: str) -> list[BulkItemResult]:
        results: list[BulkItemResult] = []
        for expense_id in expense_ids:
            try:
                operation(expense_id)
                results.append(BulkItemResult(expense_id=expense_id, ok=True))
            except GovernanceError as exc:
                results.append(
                    BulkItemResult(
                        expense_id=expense_id,
                        ok=False,
                        error=exc.message,
                        error_type=type(exc).__name__,
                    )
                )
        succeeded = sum(1 for r in results if r.ok)
        logger.info("Bulk %s: %d/%d succeeded", label, succeeded, len(results))
        return results

    def bulk_approve(
        self,
        expense_ids: list[str],
        approver_id: str,
        approver_name: Optional[str] = None,
    ) -> list[BulkItemResult]:
        """Approve each id independently; failures are reported, not raised."""
        return self._bulk(
            expense_ids,
            lambda eid: self.approve(eid, approver_id, approver_name),
            "approve",
        )

    def bulk_reject(
        self,
        expense_ids: list[str],
        rejector_id: str,
        reason: str,
        rejector_name: Optional[str] = None,
    ) -> list[BulkItemResult]:
        return self._bulk(
            expense_ids,
            lambda eid: self.reject(eid, rejector_id, reason, rejector_name),
            "reject",
        )

    # ------------------------------------------------------------------
    # Reclassification
    # ------------------------------------------------------------------

    def reclassify(
        self,
        expense_id: str,
        actor_id: str,
        project_id: Optional[str] = None,
        cost_code_id: Optional[str] = None,
        supplier_id: Optional[str] = None,
        supplier_name: Optional[str] = None,
        actor_name: Optional[str] = None,
    ) -> Expense:
        """Correct references and clear `needs_review`.

        Omitted arguments keep the current value, but the resulting
        references must all be real: a known project, an active cost code
        and a supplier other than the classification sentinel.

        Raises:
            InvalidTransitionError: Expense is rejected.
            ValidationError: A resulting reference is unknown or a sentinel.
        """
        current = self.get(expense_id)
        if current.status == ExpenseStatus.REJECTED:
            raise InvalidTransitionError(
                f"Rejected expense {expense_id} cannot be reclassified",
                entity_id=expense_id,
            )

        target_project = project_id or current.project_id
        target_code = cost_code_id or current.cost_code_id
        target_supplier = supplier_id or current.supplier_id

        if target_project not in self.projects:
            raise ValidationError(f"Unknown project '{target_project}'", entity_id=expense_id)
        if not self.catalog.is_valid(target_code):
            raise ValidationError(
                f"Cost code '{target_code}' is unknown or inactive", entity_id=expense_id
            )
        if not target_supplier or target_supplier == self.engine.sentinel_supplier_id:
            raise ValidationError(
                f"Expense {expense_id} needs a real supplier before review can be cleared",
                entity_id=expense_id,
            )

        updates: dict[str, Any] = {
            "project_id": target_project,
            "project_name": self.projects[target_project].name,
            "cost_code_id": target_code,
            "supplier_id": target_supplier,
        }
        if supplier_name:
            updates["supplier_name"] = supplier_name

        changes = [
            AuditChange(name, getattr(current, name), value)
            for name, value in updates.items()
            if getattr(current, name) != value
        ]
        if current.needs_review:
            changes.append(AuditChange("needs_review", True, False))

        new = replace(
            current,
            needs_review=False,
            classification_reasons=(),
            updated_at=utcnow(),
            **updates,
        )
        entry = self._entry(
            new,
            "expense_classified",
            f"Expense {current.display_name} reclassified",
            actor_id,
            actor_name,
            changes=changes,
        )
        stored = self._commit(current, new, entry)
        self._publish("expense.reclassified", stored, changed=[c.field for c in changes])
        return stored

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def record_payment(
        self,
        expense_id: str,
        amount: float,
        actor_id: str,
        actor_name: Optional[str] = None,
    ) -> Expense:
        """Record a (partial) payment against an approved expense."""
        if amount is None or amount <= 0:
            raise ValidationError("Payment amount must be positive", entity_id=expense_id)

        current = self.get(expense_id)
        if current.status != ExpenseStatus.APPROVED:
            raise InvalidTransitionError(
                f"Only approved expenses can be paid; {expense_id} is {current.status.value}",
                entity_id=expense_id,
            )

        paid = round(current.paid_amount + amount, 2)
        if paid > current.total_amount + _CENT:
            raise ValidationError(
                f"Payment of {amount:,.2f} exceeds outstanding balance "
                f"{current.total_amount - current.paid_amount:,.2f}",
                entity_id=expense_id,
            )
        payment_status = (
            PaymentStatus.PAID if paid >= current.total_amount - _CENT else PaymentStatus.PARTIAL
        )

        new = replace(current, paid_amount=paid, payment_status=payment_status, updated_at=utcnow())
        entry = self._entry(
            current,
            "expense_paid",
            f"Payment of {amount:,.2f} {current.currency} recorded on {current.display_name}",
            actor_id,
            actor_name,
            changes=[
                AuditChange("paid_amount", current.paid_amount, paid),
                AuditChange("payment_status", current.payment_status.value, payment_status.value),
            ],
            financial_amount=amount,
        )
        stored = self._commit(current, new, entry)
        self._publish("expense.paid", stored, amount=amount, payment_status=payment_status.value)
        return stored

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def pending_expenses(
        self,
        is_auto_created: Optional[bool] = None,
        needs_review: Optional[bool] = None,
        project_id: Optional[str] = None,
    ) -> list[Expense]:
        """Non-terminal expenses matching the filters, newest first."""

        def matches(e: Expense) -> bool:
            if e.is_terminal:
                return False
            if is_auto_created is not None and e.is_auto_created != is_auto_created:
                return False
            if needs_review is not None and e.needs_review != needs_review:
                return False
            if project_id and e.project_id != project_id:
                return False
            return True

        pending = self.store.all(COLLECTION, matches)
        pending.sort(key=lambda e: e.created_at, reverse=True)
        return pending

    def query_expenses(
        self,
        status: Optional[str] = None,
        project_id: Optional[str] = None,
        needs_review: Optional[bool] = None,
        search: Optional[str] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Page:
        if page < 1 or page_size < 1:
            raise ValidationError("page and page_size must be positive")

        def matches(e: Expense) -> bool:
            if status and e.status != status:
                return False
            if project_id and e.project_id != project_id:
                return False
            if needs_review is not None and e.needs_review != needs_review:
                return False
            if search:
                needle = search.lower()
                text = " ".join(
                    filter(None, (e.description, e.invoice_number, e.supplier_name))
                ).lower()
                if needle not in text:
                    return False
            return True

        matched = sorted(self.store.all(COLLECTION, matches), key=lambda e: e.created_at, reverse=True)
        start = (page - 1) * page_size
        return Page(items=matched[start:start + page_size], total=len(matched), page=page, page_size=page_size)

    def stats(self) -> dict[str, Any]:
        """Counts and totals per status for the approval queue overview."""
        expenses = self.store.all(COLLECTION)
        if not expenses:
            return {
                "total": 0,
                "by_status": {},
                "needing_review": 0,
                "auto_created": 0,
                "total_amount": 0.0,
                "approved_amount": 0.0,
                "paid_amount": 0.0,
            }

        df = pd.DataFrame(
            [
                {
                    "status": e.status.value,
                    "total_amount": e.total_amount or 0.0,
                    "paid_amount": e.paid_amount,
                    "needs_review": e.needs_review,
                    "is_auto_created": e.is_auto_created,
                }
                for e in expenses
            ]
        )
        approved = df[df["status"] == ExpenseStatus.APPROVED.value]
        return {
            "total": len(df),
            "by_status": df.groupby("status").size().to_dict(),
            "needing_review": int(df["needs_review"].sum()),
            "auto_created": int(df["is_auto_created"].sum()),
            "total_amount": round(float(df["total_amount"].sum()), 2),
            "approved_amount": round(float(approved["total_amount"].sum()), 2),
            "paid_amount": round(float(df["paid_amount"].sum()), 2),
        }
