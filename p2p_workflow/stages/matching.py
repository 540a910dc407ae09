"""
Invoice Matching Engine
Acts on an invoice's three-way match classification: approve and schedule
matched invoices, raise exceptions for variances, alert on suspected
duplicates.
"""

import re
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Tuple

from rapidfuzz import fuzz

from p2p_workflow.errors import ConcurrentModificationError
from p2p_workflow.schemas.records import Record, new_record
from p2p_workflow.schemas.results import InvoiceProcessingResult
from p2p_workflow.stages.base import StageHandler
from p2p_workflow.stages.receiving import received_value
from p2p_workflow.terms import parse_payment_terms
from p2p_workflow.utils import calculate_percentage_variance, round_money, utcnow
from p2p_workflow.utils.confidence import combine_confidence_scores
from p2p_workflow.utils.logging import log_stage_action, setup_logging


logger = setup_logging(__name__)


def normalize_invoice_number(number: str) -> str:
    return re.sub(r"[^A-Z0-9]", "", (number or "").upper())


def scheduled_payment_date(invoice: Record) -> Optional[date]:
    """Due date, else invoice date plus the net days of its terms."""
    if invoice.attr("due_date"):
        return invoice.attr("due_date")
    terms = parse_payment_terms(invoice.attr("payment_terms"))
    if invoice.attr("invoice_date") and terms.net_days is not None:
        return invoice.attr("invoice_date") + timedelta(days=terms.net_days)
    return invoice.attr("invoice_date")


class ThreeWayMatcher:
    """
    Classifies an invoice against its purchase order and goods receipts.

    Used only when an invoice arrives without an upstream classification.
    """

    def __init__(self, store, config):
        self.store = store
        self.config = config

    async def find_duplicate(self, invoice: Record, organization_id: str) -> Optional[Dict[str, Any]]:
        """Another invoice from the same supplier with the same amount and a near-identical number."""
        supplier_id = invoice.attr("supplier_id")
        if not supplier_id:
            return None

        candidates = await self.store.query("invoices", {"supplier_id": supplier_id}, organization_id)
        number = normalize_invoice_number(invoice.number)
        for other in candidates:
            if other.id == invoice.id:
                continue
            if round_money(other.total_amount) != round_money(invoice.total_amount):
                continue
            similarity = fuzz.ratio(number, normalize_invoice_number(other.number))
            if similarity >= self.config.DUPLICATE_INVOICE_SIMILARITY:
                return {
                    "duplicate_of": other.id,
                    "duplicate_number": other.number,
                    "number_similarity": round(similarity / 100.0, 3),
                    "confidence": round(combine_confidence_scores(
                        [similarity / 100.0, 1.0], weights=[0.7, 0.3]
                    ), 3),
                }
        return None

    async def classify(self, invoice: Record, organization_id: str) -> Tuple[str, Dict[str, Any]]:
        duplicate = await self.find_duplicate(invoice, organization_id)
        if duplicate:
            return "duplicate_suspected", duplicate

        po_id = invoice.attr("po_id")
        if not po_id:
            return "variance", {"reason": "invoice has no purchase order reference"}

        po = await self.store.get("purchase_orders", po_id, organization_id)
        if po is None:
            return "variance", {"reason": f"purchase order {po_id} not found"}

        receipts = await self.store.query("goods_receipts", {"po_id": po.id}, organization_id)
        detail: Dict[str, Any] = {
            "po_amount": po.total_amount,
            "invoice_amount": invoice.total_amount,
            "receipts": len(receipts),
        }
        if not receipts:
            detail["reason"] = "no goods received against purchase order"
            return "variance", detail

        received_amount = round_money(sum(received_value(r) for r in receipts))
        received_quantity = sum(r.attr("quantity_received", 0.0) for r in receipts)
        po_variance = calculate_percentage_variance(invoice.total_amount, po.total_amount)
        receipt_variance = calculate_percentage_variance(invoice.total_amount, received_amount)
        detail.update({
            "received_amount": received_amount,
            "po_amount_variance": round(po_variance, 4),
            "received_amount_variance": round(receipt_variance, 4),
        })

        reasons = []
        if po_variance > self.config.MATCH_AMOUNT_TOLERANCE:
            reasons.append(f"amount differs from PO by {po_variance:.1%}")
        if receipt_variance > self.config.MATCH_AMOUNT_TOLERANCE:
            reasons.append(f"amount differs from received value by {receipt_variance:.1%}")

        quantity = invoice.attr("quantity")
        if quantity is not None:
            quantity_variance = calculate_percentage_variance(quantity, received_quantity)
            detail["quantity_variance"] = round(quantity_variance, 4)
            if quantity_variance > self.config.MATCH_QUANTITY_TOLERANCE:
                reasons.append(f"quantity {quantity} vs received {received_quantity}")

        if reasons:
            detail["reason"] = "; ".join(reasons)
            return "variance", detail
        return "matched", detail


class InvoiceMatchingEngine(StageHandler):
    stage_name = "matching"

    def __init__(self, store, notifier=None, config=None):
        super().__init__(store, notifier, config)
        self.matcher = ThreeWayMatcher(self.store, self.config)

    async def process_invoice(
        self,
        invoice_id: str,
        organization_id: str,
        metadata: Optional[Dict] = None,
    ) -> InvoiceProcessingResult:
        invoice = await self._load("invoices", invoice_id, organization_id, "invoice")

        if invoice.attr("match_status") is None:
            invoice = await self._classify(invoice, organization_id)
        match_status = invoice.attr("match_status")

        exceptions: List[Dict[str, Any]] = []
        alerts: List[Dict[str, Any]] = []
        schedule_id = None
        payment_eligible = False

        if match_status == "matched":
            invoice = await self._approve(invoice, organization_id)
            schedule = await self._schedule(invoice, organization_id)
            schedule_id = schedule.id
            payment_eligible = invoice.attr("payment_status") == "unpaid"
        elif match_status == "variance":
            exception = await self._raise_variance(invoice, organization_id)
            exceptions.append({
                "exception_id": exception.id,
                "type": exception.attr("exception_type"),
                "requires_approval": exception.attr("requires_approval"),
                "detail": exception.attr("detail"),
            })

        if match_status == "duplicate_suspected" or invoice.attr("duplicate_check"):
            alert = await self._raise_duplicate_alert(invoice, organization_id)
            alerts.append({
                "alert_id": alert.id,
                "type": alert.attr("alert_type"),
                "detail": alert.attr("detail"),
            })

        return InvoiceProcessingResult(
            invoice_number=invoice.number,
            match_status=match_status,
            payment_eligible=payment_eligible,
            exceptions=exceptions,
            alerts=alerts,
            payment_schedule_id=schedule_id,
        )

    async def _classify(self, invoice: Record, organization_id: str) -> Record:
        match_status, detail = await self.matcher.classify(invoice, organization_id)
        log_stage_action(logger, self.stage_name, "classified", {
            "invoice_id": invoice.id,
            "match_status": match_status,
        })
        try:
            return await self.store.update(
                "invoices",
                invoice.id,
                {"attributes": {"match_status": match_status, "match_detail": detail}},
                organization_id,
                expected={"match_status": None},
            )
        except ConcurrentModificationError:
            return await self._load("invoices", invoice.id, organization_id, "invoice")

    async def _approve(self, invoice: Record, organization_id: str) -> Record:
        if invoice.attr("approval_status") == "approved":
            return invoice
        try:
            invoice = await self.store.update(
                "invoices",
                invoice.id,
                {"attributes": {
                    "approval_status": "approved",
                    "approved_at": utcnow(),
                    "approved_by": "system",
                    "approval_method": "automatic_match",
                }},
                organization_id,
                expected={"approval_status": "pending"},
            )
            log_stage_action(logger, self.stage_name, "auto_approved", {"invoice_id": invoice.id})
        except ConcurrentModificationError:
            invoice = await self._load("invoices", invoice.id, organization_id, "invoice")
        return invoice

    async def _schedule(self, invoice: Record, organization_id: str) -> Record:
        schedule, created = await self._insert_once(new_record(
            "payment_schedule",
            organization_id,
            total_amount=invoice.total_amount,
            idempotency_key=f"schedule:{invoice.id}",
            invoice_id=invoice.id,
            scheduled_date=scheduled_payment_date(invoice),
        ))
        if created:
            log_stage_action(logger, self.stage_name, "payment_scheduled", {
                "invoice_id": invoice.id,
                "scheduled_date": schedule.attr("scheduled_date"),
                "amount": schedule.total_amount,
            })
        return schedule

    async def _raise_variance(self, invoice: Record, organization_id: str) -> Record:
        exception, created = await self._insert_once(new_record(
            "workflow_exception",
            organization_id,
            total_amount=invoice.total_amount,
            idempotency_key=f"exception:matching_variance:{invoice.id}",
            exception_type="matching_variance",
            invoice_id=invoice.id,
            detail=invoice.attr("match_detail") or {},
            requires_approval=True,
        ))
        if created:
            await self._notify("matching_variance", invoice.id, {
                "invoice_number": invoice.number,
                "exception_id": exception.id,
            })
            log_stage_action(logger, self.stage_name, "variance_exception", {
                "invoice_id": invoice.id,
                "exception_id": exception.id,
            })
        return exception

    async def _raise_duplicate_alert(self, invoice: Record, organization_id: str) -> Record:
        alert, created = await self._insert_once(new_record(
            "alert",
            organization_id,
            total_amount=invoice.total_amount,
            idempotency_key=f"alert:duplicate_suspected:{invoice.id}",
            alert_type="duplicate_suspected",
            invoice_id=invoice.id,
            detail=invoice.attr("match_detail") or {},
        ))
        if created:
            logger.warning(f"Invoice {invoice.number} flagged as a suspected duplicate")
        return alert
