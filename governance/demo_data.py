"""
demo_data.py — Synthetic governance dataset for demo and smoke runs.

Builds a seeded set of construction projects, incoming expense records and
per-project financial metrics. A controlled share of expenses arrives with
missing or invalid references so the classification engine has defaults to
apply, and project metrics are skewed so every alert rule fires somewhere.

Everything is drawn from one numpy Generator seeded from config, so two runs
with the same seed produce identical data.
"""

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any

import numpy as np

from governance.alerts import Invoice, PaymentObligation, PhaseCost, ProjectMetrics
from governance.catalog import CostCodeCatalog
from governance.models import Expense, Project

logger = logging.getLogger(__name__)

PROJECT_NAMES = [
    "Residencial Las Palmas",
    "Torre Empresarial Norte",
    "Centro Comercial del Sur",
    "Escuela Municipal 14",
    "Puente Río Verde",
]

SUPPLIERS = [
    ("SUP-001", "Cementos del Pacífico"),
    ("SUP-002", "Aceros Industriales SA"),
    ("SUP-003", "Maquinaria Andina"),
    ("SUP-004", "Instalaciones Eléctricas Pro"),
    ("SUP-005", "Ferretería Central"),
]

# Share of expenses arriving with each kind of reference problem
MISSING_PROJECT_RATE = 0.10
MISSING_CODE_RATE = 0.15
INVALID_CODE_RATE = 0.05
MISSING_SUPPLIER_RATE = 0.10

TAX_RATE = 0.18


@dataclass
class DemoDataset:
    projects: list[Project]
    expenses: list[Expense]
    metrics: list[ProjectMetrics]


def _build_projects(n: int) -> list[Project]:
    return [
        Project(id=f"PRJ-{i + 1:03d}", name=PROJECT_NAMES[i % len(PROJECT_NAMES)])
        for i in range(n)
    ]


def _build_expenses(
    n: int,
    projects: list[Project],
    catalog: CostCodeCatalog,
    rng: np.random.Generator,
    as_of: date,
) -> list[Expense]:
    codes = [c for c in catalog if c.is_active and not c.is_default]
    expenses = []
    for i in range(n):
        project = projects[int(rng.integers(0, len(projects)))]
        code = codes[int(rng.integers(0, len(codes)))]
        supplier_id, supplier_name = SUPPLIERS[int(rng.integers(0, len(SUPPLIERS)))]
        amount = round(float(rng.lognormal(mean=8.0, sigma=0.8)), 2)

        roll = rng.random(4)
        expense = Expense(
            id=f"EXP-{i + 1:05d}",
            project_id=None if roll[0] < MISSING_PROJECT_RATE else project.id,
            cost_code_id=(
                None if roll[1] < MISSING_CODE_RATE
                else "CC-99.99.99" if roll[1] < MISSING_CODE_RATE + INVALID_CODE_RATE
                else code.id
            ),
            supplier_id=None if roll[2] < MISSING_SUPPLIER_RATE else supplier_id,
            supplier_name=supplier_name,
            amount=amount,
            tax_amount=round(amount * TAX_RATE, 2),
            description=f"{code.name} — {supplier_name}",
            invoice_number=f"F-{as_of.year}-{i + 1:04d}",
            invoice_date=as_of - timedelta(days=int(rng.integers(0, 60))),
            is_auto_created=bool(roll[3] < 0.4),
            ocr_confidence=round(float(rng.uniform(0.6, 0.99)), 2) if roll[3] < 0.4 else None,
        )
        expenses.append(expense)
    return expenses


def _build_metrics(
    projects: list[Project],
    rng: np.random.Generator,
    as_of: date,
) -> list[ProjectMetrics]:
    metrics = []
    for idx, project in enumerate(projects):
        necesaria = round(float(rng.uniform(80_000, 250_000)), 2)
        # Alternate healthy and short treasury so bajo_capital fires on some projects
        factor = float(rng.uniform(0.3, 0.95)) if idx % 2 == 0 else float(rng.uniform(1.05, 1.6))

        fases = []
        for fase in range(1, 4):
            presupuesto = round(float(rng.uniform(40_000, 120_000)), 2)
            overrun = float(rng.uniform(1.15, 1.8)) if rng.random() < 0.35 else float(rng.uniform(0.6, 1.05))
            fases.append(
                PhaseCost(
                    fase_numero=fase,
                    presupuesto=presupuesto,
                    gasto_real=round(presupuesto * overrun, 2),
                    progreso=100.0 if fase == 1 else round(float(rng.uniform(0, 90)), 1),
                )
            )

        facturas = [
            Invoice(
                id=f"FAC-{project.id}-{n}",
                numero=f"FV-{idx + 1:02d}{n:02d}",
                monto=round(float(rng.uniform(10_000, 60_000)), 2),
                fecha_emision=as_of - timedelta(days=int(rng.integers(20, 90))),
                fecha_cobro_esperada=as_of - timedelta(days=int(rng.integers(-10, 45))),
                fase_numero=n,
                cobrada=bool(rng.random() < 0.4),
            )
            for n in range(1, 3)
        ]

        pagos = [
            PaymentObligation(
                id=f"PAG-{project.id}-{n}",
                proveedor_nombre=SUPPLIERS[int(rng.integers(0, len(SUPPLIERS)))][1],
                monto=round(float(rng.uniform(2_000, 25_000)), 2),
                fecha_vencimiento=as_of - timedelta(days=int(rng.integers(-15, 40))),
                fase_numero=int(rng.integers(1, 4)),
                pagado=bool(rng.random() < 0.3),
            )
            for n in range(1, 4)
        ]

        metrics.append(
            ProjectMetrics(
                proyecto_id=project.id,
                proyecto_nombre=project.name,
                tesoreria_actual=round(necesaria * factor, 2),
                tesoreria_necesaria=necesaria,
                fases=fases,
                facturas=facturas,
                pagos=pagos,
            )
        )
    return metrics


def generate_demo_dataset(
    cfg: dict[str, Any],
    catalog: CostCodeCatalog,
    as_of: date,
) -> DemoDataset:
    """Build the seeded demo dataset.

    Args:
        cfg: Merged configuration (reads the `demo` section).
        catalog: Catalog the expenses reference.
        as_of: Reference date for invoice and due dates.

    Returns:
        DemoDataset of projects, raw expenses and project metrics.
    """
    demo_cfg = cfg["demo"]
    rng = np.random.default_rng(demo_cfg["seed"])

    projects = _build_projects(demo_cfg["projects"])
    expenses = _build_expenses(demo_cfg["expenses"], projects, catalog, rng, as_of)
    metrics = _build_metrics(projects, rng, as_of)

    logger.info(
        "Demo dataset generated: %d projects | %d expenses | seed %d",
        len(projects),
        len(expenses),
        demo_cfg["seed"],
    )
    return DemoDataset(projects=projects, expenses=expenses, metrics=metrics)
