"""
Schemas for persisted records, dispatch envelopes and stage results.
"""

from p2p_workflow.schemas.records import Record, new_record, check_transition, TABLE_FOR_KIND
from p2p_workflow.schemas.requests import DispatchRequest, DispatchResponse
from p2p_workflow.schemas.results import (
    AnomalyFinding,
    AnomalyReport,
    BatchRunResult,
    GRNProcessingResult,
    InvoiceProcessingResult,
    PaymentExecutionResult,
    POProcessingResult,
    SideEffectFailure,
)

__all__ = [
    "Record",
    "new_record",
    "check_transition",
    "TABLE_FOR_KIND",
    "DispatchRequest",
    "DispatchResponse",
    "AnomalyFinding",
    "AnomalyReport",
    "BatchRunResult",
    "GRNProcessingResult",
    "InvoiceProcessingResult",
    "PaymentExecutionResult",
    "POProcessingResult",
    "SideEffectFailure",
]
