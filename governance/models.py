"""
models.py — Domain model for the financial governance core.

Entities:
    CostCode          — catalog entry used to bucket expenses for job costing
    Expense           — a cost record moving through classification + approval
    AlertaFinanciera  — a project-level financial alert; `datos` is a tagged
                        union with one payload dataclass per alert `tipo`
    AuditLogEntry     — immutable ledger record of a state transition

Status enums mix in `str` so stored values compare equal to their wire
strings ("draft", "critica", ...).
"""

import enum
import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import date, datetime, timezone
from typing import Any, ClassVar, Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    """Generate a short prefixed identifier, e.g. 'EXP-1A2B3C4D'."""
    return f"{prefix}-{uuid.uuid4().hex[:8].upper()}"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class CostType(str, enum.Enum):
    LABOR = "labor"
    MATERIAL = "material"
    EQUIPMENT = "equipment"
    SUBCONTRACT = "subcontract"
    OTHER = "other"


class ExpenseStatus(str, enum.Enum):
    DRAFT = "draft"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    REJECTED = "rejected"


TERMINAL_EXPENSE_STATUSES = frozenset({ExpenseStatus.APPROVED, ExpenseStatus.REJECTED})


class PaymentStatus(str, enum.Enum):
    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"


class TipoAlerta(str, enum.Enum):
    COBRO_PENDIENTE = "cobro_pendiente"
    BAJO_CAPITAL = "bajo_capital"
    SOBRECOSTO = "sobrecosto"
    PAGO_VENCIDO = "pago_vencido"


class PrioridadAlerta(str, enum.Enum):
    BAJA = "baja"
    MEDIA = "media"
    ALTA = "alta"
    CRITICA = "critica"

    @property
    def rank(self) -> int:
        return PRIORITY_RANK[self]


# Ordering for sort/comparison (higher = more severe)
PRIORITY_RANK = {
    PrioridadAlerta.CRITICA: 4,
    PrioridadAlerta.ALTA: 3,
    PrioridadAlerta.MEDIA: 2,
    PrioridadAlerta.BAJA: 1,
}


class EstadoAlerta(str, enum.Enum):
    ACTIVA = "activa"
    RESUELTA = "resuelta"
    IGNORADA = "ignorada"


class AuditSeverity(str, enum.Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


# ---------------------------------------------------------------------------
# Cost codes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CostCode:
    id: str
    code: str
    name: str
    division: str
    category: str
    type: CostType
    unit: str
    description: str = ""
    subcategory: Optional[str] = None
    is_active: bool = True
    is_default: bool = False
    tags: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Projects (reference only; owned by the project-management collaborator)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Project:
    id: str
    name: str


# ---------------------------------------------------------------------------
# Expenses
# ---------------------------------------------------------------------------

@dataclass
class Expense:
    id: str = field(default_factory=lambda: new_id("EXP"))
    project_id: Optional[str] = None
    project_name: Optional[str] = None
    cost_code_id: Optional[str] = None
    supplier_id: Optional[str] = None
    supplier_name: Optional[str] = None

    amount: Optional[float] = None
    tax_amount: float = 0.0
    total_amount: Optional[float] = None
    currency: Optional[str] = None

    description: str = ""
    invoice_number: Optional[str] = None
    invoice_date: Optional[date] = None

    status: Optional[ExpenseStatus] = None
    payment_status: Optional[PaymentStatus] = None
    paid_amount: float = 0.0

    is_auto_created: bool = False
    needs_review: bool = False
    classification_reasons: tuple[str, ...] = ()
    rejection_reason: Optional[str] = None

    submitted_by: Optional[str] = None
    submitted_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    # Provenance from the ingestion/OCR collaborator; never used to classify
    ocr_confidence: Optional[float] = None
    ocr_data: Optional[dict[str, Any]] = None

    version: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Expense":
        """Build an Expense from an ingestion record, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known and v is not None}
        if "status" in kwargs:
            kwargs["status"] = ExpenseStatus(kwargs["status"])
        if "payment_status" in kwargs:
            kwargs["payment_status"] = PaymentStatus(kwargs["payment_status"])
        if isinstance(kwargs.get("invoice_date"), str):
            kwargs["invoice_date"] = date.fromisoformat(kwargs["invoice_date"][:10])
        if "classification_reasons" in kwargs:
            kwargs["classification_reasons"] = tuple(kwargs["classification_reasons"])
        return cls(**kwargs)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXPENSE_STATUSES

    @property
    def display_name(self) -> str:
        return self.invoice_number or self.description or self.id

    def to_dict(self) -> dict[str, Any]:
        return _jsonable(asdict(self))


# ---------------------------------------------------------------------------
# Alerts: tagged union payloads
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DatosBajoCapital:
    tipo: ClassVar[TipoAlerta] = TipoAlerta.BAJO_CAPITAL
    tesoreria_actual: float
    tesoreria_necesaria: float
    deficit: float
    porcentaje_deficit: float


@dataclass(frozen=True)
class DatosSobrecosto:
    tipo: ClassVar[TipoAlerta] = TipoAlerta.SOBRECOSTO
    presupuesto_original: float
    gasto_real: float
    variacion_porcentaje: float
    cost_code_id: Optional[str] = None


@dataclass(frozen=True)
class DatosCobroPendiente:
    tipo: ClassVar[TipoAlerta] = TipoAlerta.COBRO_PENDIENTE
    factura_id: str
    factura_numero: str
    monto_factura: float
    dias_pendientes: int
    fecha_cobro_esperada: Optional[date] = None


@dataclass(frozen=True)
class DatosPagoVencido:
    tipo: ClassVar[TipoAlerta] = TipoAlerta.PAGO_VENCIDO
    proveedor_nombre: str
    monto_pago: float
    fecha_vencimiento: date
    dias_vencidos: int
    pagos_vencidos: int = 1


DatosAlerta = Union[DatosBajoCapital, DatosSobrecosto, DatosCobroPendiente, DatosPagoVencido]

AlertKey = tuple[TipoAlerta, str, Optional[int]]


@dataclass
class AlertaFinanciera:
    tipo: TipoAlerta
    prioridad: PrioridadAlerta
    proyecto_id: str
    proyecto_nombre: str
    titulo: str
    mensaje: str
    accion_recomendada: str
    datos: DatosAlerta
    id: str = field(default_factory=lambda: new_id("ALR"))
    fase_numero: Optional[int] = None
    factura_id: Optional[str] = None
    estado: EstadoAlerta = EstadoAlerta.ACTIVA
    nota_resolucion: Optional[str] = None
    fecha_resolucion: Optional[datetime] = None
    resuelta_por: Optional[str] = None
    resolucion_automatica: bool = False
    # Set on ignore; blocks re-raising the same key until the condition clears
    supresion_activa: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    version: int = 0

    def __post_init__(self):
        if self.datos.tipo != self.tipo:
            raise ValueError(
                f"Payload {type(self.datos).__name__} does not match alert tipo '{self.tipo.value}'"
            )

    @property
    def key(self) -> AlertKey:
        return (self.tipo, self.proyecto_id, self.fase_numero)

    @property
    def is_active(self) -> bool:
        return self.estado == EstadoAlerta.ACTIVA

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["datos"] = {"tipo": self.tipo.value, **asdict(self.datos)}
        return _jsonable(data)


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AuditChange:
    field: str
    old_value: Any
    new_value: Any


@dataclass(frozen=True)
class FinancialImpact:
    amount: float
    currency: Optional[str] = None


@dataclass(frozen=True)
class AuditLogEntry:
    action: str
    entity_type: str
    entity_id: str
    description: str
    user_id: str = "system"
    user_name: str = "System"
    entity_name: Optional[str] = None
    severity: Optional[AuditSeverity] = None
    project_id: Optional[str] = None
    financial_impact: Optional[FinancialImpact] = None
    changes: tuple[AuditChange, ...] = ()
    tags: tuple[str, ...] = ()
    id: str = field(default_factory=lambda: new_id("AUDIT"))
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return _jsonable(asdict(self))

    def to_record(self) -> dict[str, Any]:
        """Flatten into a single tabular row for CSV / Excel export."""
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "severity": _enum_value(self.severity),
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "entity_name": self.entity_name or "",
            "user_id": self.user_id,
            "user_name": self.user_name,
            "project_id": self.project_id or "",
            "description": self.description,
            "financial_impact": (
                self.financial_impact.amount if self.financial_impact else None
            ),
            "changes": "; ".join(
                f"{c.field}: {c.old_value} -> {c.new_value}" for c in self.changes
            ),
        }


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BulkItemResult:
    expense_id: str
    ok: bool
    error: Optional[str] = None
    error_type: Optional[str] = None


@dataclass
class Page:
    items: list
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return (self.total + self.page_size - 1) // self.page_size


# ---------------------------------------------------------------------------
# Serialisation helpers
# ---------------------------------------------------------------------------

def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, enum.Enum) else value


def _jsonable(value: Any) -> Any:
    """Convert enums / dates / tuples into JSON-friendly primitives."""
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value
