"""
Result schemas returned by each stage handler.
"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


class SideEffectFailure(BaseModel):
    """A non-critical side effect that failed while the primary transition succeeded."""
    side_effect: str  # commitment, inventory, notification, clearing
    entity_id: str
    error: str


class POProcessingResult(BaseModel):
    po_number: str
    status: str  # pending_approval, sent_to_supplier, rejected
    next_action: str  # await_approval, await_goods_receipt, none
    approval_status: str
    po_status: str
    approval_level: Optional[str] = None
    approval_request_id: Optional[str] = None
    due_by: Optional[datetime] = None
    commitment_id: Optional[str] = None
    auto_approved: bool = False
    partial_failures: List[SideEffectFailure] = Field(default_factory=list)


class GRNProcessingResult(BaseModel):
    grn_number: str
    quantity_received: float
    accrual_created: bool
    accrual_id: Optional[str] = None
    accrual_amount: float = 0.0
    inventory_updated: bool = False
    po_updated: bool = False
    partial_failures: List[SideEffectFailure] = Field(default_factory=list)


class InvoiceProcessingResult(BaseModel):
    invoice_number: str
    match_status: str
    payment_eligible: bool
    exceptions: List[Dict[str, Any]] = Field(default_factory=list)
    alerts: List[Dict[str, Any]] = Field(default_factory=list)
    payment_schedule_id: Optional[str] = None


class PaymentExecutionResult(BaseModel):
    success: bool
    payment_id: str
    payment_reference: Optional[str] = None
    status: str
    error: Optional[str] = None
    invoice_id: Optional[str] = None
    amount: float = 0.0
    discount_amount: float = 0.0
    clearing_id: Optional[str] = None
    partial_failures: List[SideEffectFailure] = Field(default_factory=list)


class BatchItemFailure(BaseModel):
    invoice_id: str
    error: str


class BatchRunResult(BaseModel):
    batch_id: str
    run_type: str
    payment_date: date
    invoices_processed: int = 0
    payments_created: int = 0
    payments_completed: int = 0
    payments_failed: int = 0
    # Money actually settled: completed payments only
    total_amount: float = 0.0
    total_discount: float = 0.0
    payments: List[PaymentExecutionResult] = Field(default_factory=list)
    failures: List[BatchItemFailure] = Field(default_factory=list)
    replayed: bool = False


class AnomalyFinding(BaseModel):
    type: str  # duplicate_po, maverick_spending, unusual_payment_amount
    confidence: float = Field(ge=0.0, le=1.0)
    confidence_level: str
    guidance: str = ""
    entity_table: str
    entity_id: str
    description: str
    detail: Dict[str, Any] = Field(default_factory=dict)
    fingerprint: str
    anomaly_id: Optional[str] = None


class AnomalyReport(BaseModel):
    period_days: int
    transactions_analyzed: int
    anomalies_detected: int
    anomalies_recorded: int
    anomalies: List[AnomalyFinding] = Field(default_factory=list)
    summary_by_type: Dict[str, int] = Field(default_factory=dict)
    summary_by_confidence: Dict[str, int] = Field(default_factory=dict)
    recommendations: List[str] = Field(default_factory=list)
