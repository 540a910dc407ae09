"""
Record schema for everything the engine persists.

Every business object is one generically shaped ``Record`` (tenant id,
semantic type tag, amount, timestamps) plus an ``attributes`` bag. The bag
is a tagged union on ``kind``: known fields are typed and validated, unknown
keys are kept as extras so new sub-flows can add data without a schema
change.
"""

from datetime import date, datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Set, Tuple, Union
from uuid import uuid4

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator

from p2p_workflow.errors import InvalidTransitionError
from p2p_workflow.utils import to_naive_utc, utcnow


UtcDateTime = Annotated[datetime, AfterValidator(to_naive_utc)]

PoApprovalStatus = Literal["pending_approval", "approved", "rejected"]
PoStatus = Literal["draft", "sent_to_supplier"]
MatchStatus = Literal["matched", "variance", "duplicate_suspected"]
InvoiceApprovalStatus = Literal["pending", "approved"]
InvoicePaymentStatus = Literal["unpaid", "paid"]
PaymentStatus = Literal["scheduled", "processing", "completed", "failed"]
AnomalyType = Literal["duplicate_po", "maverick_spending", "unusual_payment_amount"]

ACTIVE_PAYMENT_STATUSES = ("scheduled", "processing", "completed")


class _Attributes(BaseModel):
    model_config = ConfigDict(extra="allow")


class PurchaseOrderAttributes(_Attributes):
    kind: Literal["purchase_order"] = "purchase_order"
    supplier_id: Optional[str] = None
    requester_id: Optional[str] = None
    approval_status: PoApprovalStatus = "pending_approval"
    po_status: PoStatus = "draft"
    approval_level: Optional[str] = None
    approver_id: Optional[str] = None
    contract_reference: Optional[str] = None
    ordered_quantity: Optional[float] = Field(default=None, ge=0.0)
    received_quantity: float = Field(default=0.0, ge=0.0)
    receipt_status: Literal["not_received", "partially_received", "received"] = "not_received"
    submitted_at: Optional[UtcDateTime] = None
    approved_at: Optional[UtcDateTime] = None
    approved_by: Optional[str] = None
    sent_at: Optional[UtcDateTime] = None


class CommitmentAttributes(_Attributes):
    kind: Literal["commitment"] = "commitment"
    po_id: str
    supplier_id: Optional[str] = None
    status: Literal["open"] = "open"


class GoodsReceiptAttributes(_Attributes):
    kind: Literal["goods_receipt"] = "goods_receipt"
    po_id: str
    quantity_received: float = Field(default=0.0, ge=0.0)
    unit_price: Optional[float] = Field(default=None, ge=0.0)
    item_id: Optional[str] = None
    warehouse_id: Optional[str] = None
    update_inventory: bool = False
    processed_at: Optional[UtcDateTime] = None


class InventoryMovementAttributes(_Attributes):
    kind: Literal["inventory_movement"] = "inventory_movement"
    grn_id: str
    po_id: Optional[str] = None
    item_id: Optional[str] = None
    warehouse_id: Optional[str] = None
    quantity: float = Field(default=0.0, ge=0.0)
    movement_type: str = "goods_receipt"


class AccrualAttributes(_Attributes):
    kind: Literal["accrual"] = "accrual"
    po_id: str
    grn_id: str
    supplier_id: Optional[str] = None


class InvoiceAttributes(_Attributes):
    kind: Literal["invoice"] = "invoice"
    po_id: Optional[str] = None
    supplier_id: Optional[str] = None
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    payment_terms: Optional[str] = None
    quantity: Optional[float] = Field(default=None, ge=0.0)
    match_status: Optional[MatchStatus] = None
    match_detail: Dict[str, Any] = Field(default_factory=dict)
    duplicate_check: bool = False
    approval_status: InvoiceApprovalStatus = "pending"
    approved_at: Optional[UtcDateTime] = None
    approved_by: Optional[str] = None
    approval_method: Optional[str] = None
    payment_status: InvoicePaymentStatus = "unpaid"
    payment_id: Optional[str] = None
    paid_at: Optional[UtcDateTime] = None


class PaymentScheduleAttributes(_Attributes):
    kind: Literal["payment_schedule"] = "payment_schedule"
    invoice_id: str
    scheduled_date: Optional[date] = None
    status: Literal["scheduled"] = "scheduled"


class PaymentAttributes(_Attributes):
    kind: Literal["payment"] = "payment"
    invoice_id: str
    invoice_amount: float = Field(ge=0.0)
    supplier_id: Optional[str] = None
    batch_id: Optional[str] = None
    payment_status: PaymentStatus = "scheduled"
    payment_method: Optional[str] = None
    payment_date: Optional[date] = None
    discount_amount: float = Field(default=0.0, ge=0.0)
    discount_reason: Optional[str] = None
    bank_reference: Optional[str] = None
    failure_reason: Optional[str] = None
    attempt: int = Field(default=1, ge=1)
    retry_of: Optional[str] = None
    executed_at: Optional[UtcDateTime] = None
    needs_reconciliation: bool = False
    reconciliation_reason: Optional[str] = None


class PaymentBatchAttributes(_Attributes):
    kind: Literal["payment_batch"] = "payment_batch"
    run_type: str = "scheduled"
    payment_date: date
    status: Literal["running", "completed"] = "running"
    summary: Dict[str, Any] = Field(default_factory=dict)


class AccrualClearingAttributes(_Attributes):
    kind: Literal["accrual_clearing"] = "accrual_clearing"
    invoice_id: str
    payment_id: str
    po_id: Optional[str] = None
    accrual_ids: List[str] = Field(default_factory=list)
    discount_taken: float = Field(default=0.0, ge=0.0)


class WorkflowExceptionAttributes(_Attributes):
    kind: Literal["workflow_exception"] = "workflow_exception"
    exception_type: str = "matching_variance"
    invoice_id: str
    detail: Dict[str, Any] = Field(default_factory=dict)
    requires_approval: bool = True
    status: Literal["open", "resolved"] = "open"


class AlertAttributes(_Attributes):
    kind: Literal["alert"] = "alert"
    alert_type: str = "duplicate_suspected"
    invoice_id: str
    detail: Dict[str, Any] = Field(default_factory=dict)


class AnomalyAttributes(_Attributes):
    kind: Literal["anomaly"] = "anomaly"
    anomaly_type: AnomalyType
    confidence: float = Field(ge=0.0, le=1.0)
    entity_table: str
    entity_id: str
    description: str = ""
    detail: Dict[str, Any] = Field(default_factory=dict)
    fingerprint: Optional[str] = None


class ApprovalRequestAttributes(_Attributes):
    kind: Literal["approval_request"] = "approval_request"
    relationship_type: Literal["approval_request"] = "approval_request"
    from_entity_id: str
    to_entity_id: str
    approval_level: str
    due_by: UtcDateTime
    status: Literal["pending"] = "pending"


RecordAttributes = Annotated[
    Union[
        PurchaseOrderAttributes,
        CommitmentAttributes,
        GoodsReceiptAttributes,
        InventoryMovementAttributes,
        AccrualAttributes,
        InvoiceAttributes,
        PaymentScheduleAttributes,
        PaymentAttributes,
        PaymentBatchAttributes,
        AccrualClearingAttributes,
        WorkflowExceptionAttributes,
        AlertAttributes,
        AnomalyAttributes,
        ApprovalRequestAttributes,
    ],
    Field(discriminator="kind"),
]

TABLE_FOR_KIND: Dict[str, str] = {
    "purchase_order": "purchase_orders",
    "commitment": "commitments",
    "goods_receipt": "goods_receipts",
    "inventory_movement": "inventory_movements",
    "accrual": "accruals",
    "invoice": "invoices",
    "payment_schedule": "payment_schedules",
    "payment": "payments",
    "payment_batch": "payment_batches",
    "accrual_clearing": "accrual_clearings",
    "workflow_exception": "workflow_exceptions",
    "alert": "alerts",
    "anomaly": "anomalies",
    "approval_request": "relationships",
}

SMART_CODES: Dict[str, str] = {
    kind: f"P2P.{kind.upper()}.v1" for kind in TABLE_FOR_KIND
}


class Record(BaseModel):
    """A tenant-scoped persisted record."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    organization_id: str = Field(min_length=1)
    smart_code: Optional[str] = None
    transaction_code: Optional[str] = None
    total_amount: float = Field(default=0.0, ge=0.0)
    idempotency_key: Optional[str] = None
    created_at: UtcDateTime = Field(default_factory=utcnow)
    updated_at: Optional[UtcDateTime] = None
    attributes: RecordAttributes

    @model_validator(mode="before")
    @classmethod
    def _lift_kind(cls, data: Any) -> Any:
        # Seed files may put ``kind`` next to the attributes instead of inside them
        if isinstance(data, dict) and "kind" in data:
            data = dict(data)
            kind = data.pop("kind")
            attributes = dict(data.get("attributes") or {})
            attributes.setdefault("kind", kind)
            data["attributes"] = attributes
        return data

    @model_validator(mode="after")
    def _check_record(self) -> "Record":
        if self.smart_code is None:
            self.smart_code = SMART_CODES[self.kind]
        if isinstance(self.attributes, PaymentAttributes):
            if self.total_amount > self.attributes.invoice_amount + 1e-9:
                raise ValueError(
                    f"payment amount {self.total_amount} exceeds invoice amount "
                    f"{self.attributes.invoice_amount}"
                )
            if self.attributes.discount_amount > self.attributes.invoice_amount + 1e-9:
                raise ValueError("discount exceeds invoice amount")
        return self

    @property
    def kind(self) -> str:
        return self.attributes.kind

    @property
    def table(self) -> str:
        return TABLE_FOR_KIND[self.kind]

    @property
    def number(self) -> str:
        """Human-facing document number, falling back to the id."""
        return self.transaction_code or self.id

    def attr(self, name: str, default: Any = None) -> Any:
        """Read a typed or extra attribute."""
        return getattr(self.attributes, name, default)

    def field_value(self, name: str) -> Any:
        """Read a top-level field or, failing that, an attribute."""
        if name in Record.model_fields:
            return getattr(self, name)
        return self.attr(name)


def new_record(
    kind: str,
    organization_id: str,
    total_amount: float = 0.0,
    transaction_code: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    **attributes: Any,
) -> Record:
    """Build a record of the given kind; attribute keywords go into the bag."""
    return Record.model_validate({
        "organization_id": organization_id,
        "total_amount": total_amount,
        "transaction_code": transaction_code,
        "idempotency_key": idempotency_key,
        "attributes": {"kind": kind, **attributes},
    })


# Forward-only lifecycles: (kind, field) -> {current: allowed next values}
LIFECYCLES: Dict[Tuple[str, str], Dict[Optional[str], Set[str]]] = {
    ("purchase_order", "approval_status"): {"pending_approval": {"approved", "rejected"}},
    ("purchase_order", "po_status"): {"draft": {"sent_to_supplier"}},
    ("invoice", "approval_status"): {"pending": {"approved"}},
    ("invoice", "payment_status"): {"unpaid": {"paid"}},
    ("invoice", "match_status"): {None: {"matched", "variance", "duplicate_suspected"}},
    ("payment", "payment_status"): {
        "scheduled": {"processing", "failed"},
        "processing": {"completed", "failed"},
    },
}


def check_transition(kind: str, field: str, current: Any, new: Any) -> None:
    """Raise InvalidTransitionError unless moving ``field`` from current to new is forward."""
    if current == new:
        return
    rules = LIFECYCLES.get((kind, field))
    if rules is None:
        return
    if new not in rules.get(current, set()):
        raise InvalidTransitionError(
            f"{kind}.{field} cannot move from '{current}' to '{new}'"
        )


def lifecycle_fields(kind: str) -> List[str]:
    return [field for (k, field) in LIFECYCLES if k == kind]
