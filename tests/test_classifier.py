"""
test_classifier.py — Unit tests for the expense classification engine.

Tests cover:
    - Pass-through of fully referenced expenses
    - Default-then-flag for each missing / invalid reference
    - Reason codes and recorded field changes
    - Bookkeeping defaults (status, payment status, currency, total)
    - Catalog integrity failure is the only raised error
    - Batch summary counts
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from governance.catalog import CostCodeCatalog
from governance.classifier import (
    INVALID_COST_CODE,
    INVALID_PROJECT,
    NO_COST_CODE,
    NO_PROJECT,
    NO_SUPPLIER,
    ClassificationEngine,
)
from governance.errors import CatalogIntegrityError
from governance.models import CostCode, CostType, Expense, ExpenseStatus, PaymentStatus, Project


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

PROJECTS = [Project("PRJ-001", "Residencial Las Palmas"), Project("PRJ-002", "Torre Norte")]


def _make_catalog() -> CostCodeCatalog:
    return CostCodeCatalog.from_records([
        {"code": "00.00.00", "name": "Gastos Generales", "division": "00 - General",
         "category": "00.00 - Sin Clasificar", "type": "other", "unit": "global", "is_default": True},
        {"code": "02.01.01", "name": "Zapatas", "division": "02 - Cimentación",
         "category": "02.01 - Cimentación Superficial", "type": "material", "unit": "m³"},
        {"code": "02.01.02", "name": "Vigas", "division": "02 - Cimentación",
         "category": "02.01 - Cimentación Superficial", "type": "material", "unit": "m³",
         "is_active": False},
    ])


def _make_expense(**overrides) -> Expense:
    """Return a fully referenced expense with sensible defaults."""
    base = {
        "id": "EXP-00001",
        "project_id": "PRJ-001",
        "cost_code_id": "CC-02.01.01",
        "supplier_id": "SUP-001",
        "supplier_name": "Cementos del Pacífico",
        "amount": 1000.0,
        "tax_amount": 180.0,
        "description": "Concreto para zapatas",
    }
    base.update(overrides)
    return Expense(**base)


# ---------------------------------------------------------------------------
# Single-record classification
# ---------------------------------------------------------------------------

class TestClassify:
    """ClassificationEngine.classify default-then-flag rules."""

    def setup_method(self):
        self.engine = ClassificationEngine()
        self.catalog = _make_catalog()

    def test_fully_referenced_passes_through(self):
        result = self.engine.classify(_make_expense(), self.catalog, PROJECTS)
        assert not result.was_defaulted
        assert result.expense.needs_review is False
        assert result.expense.cost_code_id == "CC-02.01.01"
        assert result.expense.project_name == "Residencial Las Palmas"

    def test_pass_through_keeps_provided_needs_review(self):
        result = self.engine.classify(_make_expense(needs_review=True), self.catalog, PROJECTS)
        assert result.reasons == ()
        assert result.expense.needs_review is True

    def test_missing_cost_code_gets_default_and_flag(self):
        result = self.engine.classify(_make_expense(cost_code_id=None), self.catalog, PROJECTS)
        assert result.expense.cost_code_id == "CC-00.00.00"
        assert result.expense.needs_review is True
        assert result.reasons == (NO_COST_CODE,)

    def test_unknown_cost_code_is_invalid(self):
        result = self.engine.classify(_make_expense(cost_code_id="CC-99.99.99"), self.catalog, PROJECTS)
        assert result.expense.cost_code_id == "CC-00.00.00"
        assert result.reasons == (INVALID_COST_CODE,)

    def test_inactive_cost_code_is_invalid(self):
        result = self.engine.classify(_make_expense(cost_code_id="CC-02.01.02"), self.catalog, PROJECTS)
        assert result.reasons == (INVALID_COST_CODE,)

    def test_missing_project_uses_first_project(self):
        result = self.engine.classify(_make_expense(project_id=None), self.catalog, PROJECTS)
        assert result.expense.project_id == "PRJ-001"
        assert result.reasons == (NO_PROJECT,)

    def test_missing_project_uses_caller_fallback(self):
        result = self.engine.classify(
            _make_expense(project_id=None), self.catalog, PROJECTS, fallback_project=PROJECTS[1]
        )
        assert result.expense.project_id == "PRJ-002"
        assert result.expense.project_name == "Torre Norte"

    def test_missing_project_without_projects_uses_sentinel(self):
        result = self.engine.classify(_make_expense(project_id=None), self.catalog, [])
        assert result.expense.project_id == "NEEDS_CLASSIFICATION"

    def test_unknown_project_is_invalid(self):
        result = self.engine.classify(_make_expense(project_id="PRJ-404"), self.catalog, PROJECTS)
        assert result.reasons == (INVALID_PROJECT,)
        assert result.expense.project_id == "PRJ-001"

    def test_missing_supplier_uses_sentinel(self):
        result = self.engine.classify(_make_expense(supplier_id=None), self.catalog, PROJECTS)
        assert result.expense.supplier_id == "NEEDS_CLASSIFICATION"
        assert result.reasons == (NO_SUPPLIER,)

    def test_all_missing_records_every_reason(self):
        expense = _make_expense(project_id=None, cost_code_id=None, supplier_id=None)
        result = self.engine.classify(expense, self.catalog, PROJECTS)
        assert result.reasons == (NO_PROJECT, NO_COST_CODE, NO_SUPPLIER)
        changed = {c.field for c in result.changes}
        assert changed == {"project_id", "cost_code_id", "supplier_id", "needs_review"}
        assert result.expense.classification_reasons == result.reasons

    def test_input_expense_not_mutated(self):
        expense = _make_expense(cost_code_id=None)
        self.engine.classify(expense, self.catalog, PROJECTS)
        assert expense.cost_code_id is None
        assert expense.needs_review is False

    def test_bookkeeping_defaults(self):
        result = self.engine.classify(_make_expense(cost_code_id=None), self.catalog, PROJECTS)
        e = result.expense
        assert e.status == ExpenseStatus.DRAFT
        assert e.payment_status == PaymentStatus.UNPAID
        assert e.currency == "USD"
        assert e.total_amount == pytest.approx(1180.0)

    def test_amount_derived_from_total(self):
        result = self.engine.classify(
            _make_expense(amount=None, total_amount=1180.0), self.catalog, PROJECTS
        )
        assert result.expense.amount == pytest.approx(1000.0)

    def test_ocr_provenance_carried_through(self):
        expense = _make_expense(cost_code_id=None, ocr_confidence=0.71, ocr_data={"raw": "x"})
        result = self.engine.classify(expense, self.catalog, PROJECTS)
        assert result.expense.ocr_confidence == 0.71
        assert result.expense.ocr_data == {"raw": "x"}

    def test_configured_sentinels(self):
        engine = ClassificationEngine({"needs_classification_supplier_id": "SUP-UNKNOWN"})
        result = engine.classify(_make_expense(supplier_id=None), self.catalog, PROJECTS)
        assert result.expense.supplier_id == "SUP-UNKNOWN"


class TestCatalogIntegrityAtClassification:
    """A catalog without exactly one default cannot classify anything."""

    def test_catalog_losing_default_raises(self):
        catalog = _make_catalog()
        # Simulate corruption after load
        default = catalog.default_code
        catalog._codes[default.id] = CostCode(
            id=default.id, code=default.code, name=default.name, division=default.division,
            category=default.category, type=CostType.OTHER, unit=default.unit, is_default=False,
        )
        with pytest.raises(CatalogIntegrityError):
            ClassificationEngine().classify(_make_expense(), catalog, PROJECTS)


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------

class TestClassifyBatch:
    """classify_batch returns per-record results and summary counts."""

    def test_summary_counts(self):
        expenses = [
            _make_expense(id="EXP-1"),
            _make_expense(id="EXP-2", cost_code_id=None),
            _make_expense(id="EXP-3", cost_code_id=None, supplier_id=None),
        ]
        results, summary = ClassificationEngine().classify_batch(expenses, _make_catalog(), PROJECTS)
        assert [r.expense.id for r in results] == ["EXP-1", "EXP-2", "EXP-3"]
        assert summary["classified"] == 3
        assert summary["needing_review"] == 2
        assert summary["by_reason"] == {NO_COST_CODE: 2, NO_SUPPLIER: 1}
