"""
Stage handlers for the procure-to-pay workflow.
"""

from p2p_workflow.stages.approval import ApprovalRouter
from p2p_workflow.stages.receiving import ReceivingProcessor
from p2p_workflow.stages.matching import InvoiceMatchingEngine
from p2p_workflow.stages.execution import PaymentExecutor
from p2p_workflow.stages.scheduling import PaymentBatchRunner
from p2p_workflow.stages.anomalies import AnomalyDetector

__all__ = [
    "ApprovalRouter",
    "ReceivingProcessor",
    "InvoiceMatchingEngine",
    "PaymentExecutor",
    "PaymentBatchRunner",
    "AnomalyDetector",
]
