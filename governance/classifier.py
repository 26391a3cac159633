"""
classifier.py — Expense Classification Engine.

The single place where default-then-flag rules live. An expense that
arrives with every mandatory reference present and valid passes through;
otherwise each missing or invalid reference is replaced with a default and
the record is flagged `needs_review` so a person verifies it later.

Defaults:
    cost_code_id  — the catalog's single is_default code
    project_id    — caller-supplied fallback, else the first known project,
                    else the NEEDS_CLASSIFICATION sentinel
    supplier_id   — the NEEDS_CLASSIFICATION sentinel

Reason codes (recorded on the expense and returned to the caller):
    no_project, invalid_project, no_cost_code, invalid_cost_code, no_supplier

Per-record problems never raise. Only a catalog that does not have exactly
one default code raises, because no expense can be classified against it.
"""

import logging
from dataclasses import dataclass, replace
from typing import Any, Iterable, Optional

from governance.catalog import CostCodeCatalog
from governance.errors import CatalogIntegrityError
from governance.models import (
    AuditChange,
    Expense,
    ExpenseStatus,
    PaymentStatus,
    Project,
    utcnow,
)

logger = logging.getLogger(__name__)

NO_PROJECT = "no_project"
INVALID_PROJECT = "invalid_project"
NO_COST_CODE = "no_cost_code"
INVALID_COST_CODE = "invalid_cost_code"
NO_SUPPLIER = "no_supplier"


@dataclass(frozen=True)
class ClassificationResult:
    expense: Expense
    reasons: tuple[str, ...] = ()
    changes: tuple[AuditChange, ...] = ()

    @property
    def was_defaulted(self) -> bool:
        return bool(self.reasons)


class ClassificationEngine:
    """Assigns project, cost-code and supplier references to expenses."""

    def __init__(self, classification_cfg: Optional[dict[str, Any]] = None, currency: str = "USD"):
        cfg = classification_cfg or {}
        self.sentinel_project = Project(
            id=cfg.get("needs_classification_project_id", "NEEDS_CLASSIFICATION"),
            name=cfg.get("needs_classification_project_name", "Needs Classification"),
        )
        self.sentinel_supplier_id = cfg.get("needs_classification_supplier_id", "NEEDS_CLASSIFICATION")
        self.sentinel_supplier_name = cfg.get("needs_classification_supplier_name", "Needs Classification")
        self.currency = currency

    @staticmethod
    def _check_catalog(catalog: CostCodeCatalog):
        defaults = [c for c in catalog if c.is_default]
        if len(defaults) != 1:
            raise CatalogIntegrityError(
                f"Cannot classify: catalog has {len(defaults)} default cost codes, expected 1"
            )
        return defaults[0]

    def _fill_bookkeeping(self, expense: Expense) -> Expense:
        """Default absent status/payment/currency/total fields."""
        amount = expense.amount
        total = expense.total_amount
        if total is None:
            amount = amount if amount is not None else 0.0
            total = round(amount + (expense.tax_amount or 0.0), 2)
        elif amount is None:
            amount = round(total - (expense.tax_amount or 0.0), 2)
        return replace(
            expense,
            amount=amount,
            total_amount=total,
            status=expense.status or ExpenseStatus.DRAFT,
            payment_status=expense.payment_status or PaymentStatus.UNPAID,
            currency=expense.currency or self.currency,
        )

    def classify(
        self,
        expense: Expense,
        catalog: CostCodeCatalog,
        projects: Iterable[Project] = (),
        fallback_project: Optional[Project] = None,
    ) -> ClassificationResult:
        """Classify one expense against the catalog and known projects.

        Args:
            expense: Incoming expense; not mutated.
            catalog: Active cost-code catalog.
            projects: Projects an expense may legitimately reference.
            fallback_project: Project to assign when the reference is
                missing or invalid. Defaults to the first known project.

        Returns:
            ClassificationResult with the classified copy, reason codes and
            the field-level changes that were applied.

        Raises:
            CatalogIntegrityError: If the catalog does not have exactly one
                default code.
        """
        default_code = self._check_catalog(catalog)
        projects = list(projects)
        known = {p.id: p for p in projects}

        classified = self._fill_bookkeeping(expense)

        project_ok = bool(expense.project_id) and expense.project_id in known
        cost_code_ok = catalog.is_valid(expense.cost_code_id)
        supplier_ok = bool(expense.supplier_id)

        if project_ok and cost_code_ok and supplier_ok:
            if not expense.project_name:
                classified = replace(classified, project_name=known[expense.project_id].name)
            return ClassificationResult(expense=classified)

        reasons: list[str] = []
        changes: list[AuditChange] = []
        updates: dict[str, Any] = {}

        if not project_ok:
            reasons.append(INVALID_PROJECT if expense.project_id else NO_PROJECT)
            target = fallback_project or (projects[0] if projects else self.sentinel_project)
            updates["project_id"] = target.id
            updates["project_name"] = target.name
            changes.append(AuditChange("project_id", expense.project_id, target.id))
        elif not expense.project_name:
            updates["project_name"] = known[expense.project_id].name

        if not cost_code_ok:
            reasons.append(INVALID_COST_CODE if expense.cost_code_id else NO_COST_CODE)
            updates["cost_code_id"] = default_code.id
            changes.append(AuditChange("cost_code_id", expense.cost_code_id, default_code.id))

        if not supplier_ok:
            reasons.append(NO_SUPPLIER)
            updates["supplier_id"] = self.sentinel_supplier_id
            updates["supplier_name"] = expense.supplier_name or self.sentinel_supplier_name
            changes.append(AuditChange("supplier_id", expense.supplier_id, self.sentinel_supplier_id))

        if not expense.needs_review:
            changes.append(AuditChange("needs_review", False, True))

        classified = replace(
            classified,
            needs_review=True,
            classification_reasons=tuple(reasons),
            updated_at=utcnow(),
            **updates,
        )

        logger.info(
            "Expense %s auto-classified with defaults: %s",
            expense.id,
            ", ".join(reasons),
        )
        return ClassificationResult(expense=classified, reasons=tuple(reasons), changes=tuple(changes))

    def classify_batch(
        self,
        expenses: Iterable[Expense],
        catalog: CostCodeCatalog,
        projects: Iterable[Project] = (),
        fallback_project: Optional[Project] = None,
    ) -> tuple[list[ClassificationResult], dict[str, Any]]:
        """Classify many expenses and summarise how many need review.

        Returns:
            Tuple of:
                results  — one ClassificationResult per input, in order
                summary  — counts: classified, needing_review, by_reason
        """
        projects = list(projects)
        results = [self.classify(e, catalog, projects, fallback_project) for e in expenses]

        by_reason: dict[str, int] = {}
        for r in results:
            for reason in r.reasons:
                by_reason[reason] = by_reason.get(reason, 0) + 1

        summary = {
            "classified": len(results),
            "needing_review": sum(1 for r in results if r.expense.needs_review),
            "by_reason": by_reason,
        }
        if summary["needing_review"]:
            logger.warning(
                "%d of %d expenses need manual classification review",
                summary["needing_review"],
                summary["classified"],
            )
        return results, summary
