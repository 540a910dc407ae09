"""
Payment Gateway Adapter stage
Executes one payment against the settlement gateway and books the outcome:
payment status, invoice paid flag and the accrual clearing entry.

Failures are terminal for that payment. There is no internal retry; a
re-dispatch of a failed payment creates a fresh attempt, priced for its own
payment date. Outcomes the books cannot trust (a success without a bank
reference, or a payment stuck in processing) are held for reconciliation
and never sent to the gateway again.
"""

from typing import Dict, List, Optional, Tuple

from p2p_workflow.errors import ConcurrentModificationError, InvalidTransitionError
from p2p_workflow.gateway import PaymentGateway, SimulatedPaymentGateway, execute_with_timeout
from p2p_workflow.schemas.records import ACTIVE_PAYMENT_STATUSES, Record, new_record
from p2p_workflow.schemas.results import PaymentExecutionResult, SideEffectFailure
from p2p_workflow.stages.base import StageHandler
from p2p_workflow.terms import compute_discount, parse_payment_date, parse_payment_terms
from p2p_workflow.utils import utcnow
from p2p_workflow.utils.logging import log_stage_action, setup_logging


logger = setup_logging(__name__)


def check_payment_gate(invoice: Record) -> None:
    """Only matched, approved invoices may have money moved against them."""
    if invoice.attr("match_status") != "matched" or invoice.attr("approval_status") != "approved":
        raise InvalidTransitionError(
            f"invoice {invoice.number} is not payable "
            f"(match_status={invoice.attr('match_status')}, approval_status={invoice.attr('approval_status')})",
            invoice.id,
        )


def status_result(payment: Record, error: Optional[str] = None) -> PaymentExecutionResult:
    status = payment.attr("payment_status")
    if error is None and status == "failed":
        error = payment.attr("failure_reason")
    return PaymentExecutionResult(
        success=status == "completed",
        payment_id=payment.id,
        payment_reference=payment.attr("bank_reference"),
        status=status,
        error=error,
        invoice_id=payment.attr("invoice_id"),
        amount=payment.total_amount,
        discount_amount=payment.attr("discount_amount", 0.0),
    )


class PaymentExecutor(StageHandler):
    stage_name = "payment_execution"

    def __init__(self, store, gateway: Optional[PaymentGateway] = None, notifier=None, config=None):
        super().__init__(store, notifier, config)
        self.gateway = gateway or SimulatedPaymentGateway()

    async def process_payment(
        self,
        payment_id: str,
        organization_id: str,
        metadata: Optional[Dict] = None,
    ) -> PaymentExecutionResult:
        payment = await self._load("payments", payment_id, organization_id, "payment")
        status = payment.attr("payment_status")

        if status == "completed":
            # Finish any bookkeeping an earlier run could not; never settle twice
            invoice = await self._load("invoices", payment.attr("invoice_id"), organization_id, "invoice")
            failures: List[SideEffectFailure] = []
            clearing = await self._settle(payment, invoice, organization_id, failures)
            result = status_result(payment)
            result.clearing_id = clearing.id if clearing else None
            result.partial_failures = failures
            return result

        if status == "processing":
            # The gateway is never called again here; only an operator can settle the outcome
            if not payment.attr("needs_reconciliation") and self._is_stale(payment):
                payment = await self._hold_for_reconciliation(
                    payment,
                    f"no gateway outcome after {self.config.STALE_PROCESSING_SECONDS}s",
                    organization_id,
                    [],
                )
            if payment.attr("needs_reconciliation"):
                return status_result(
                    payment, error=f"payment {payment.id} awaits reconciliation: {payment.attr('reconciliation_reason')}"
                )
            return status_result(payment, error=f"payment {payment.id} is already processing")

        if status == "failed":
            return await self._retry(payment, organization_id, metadata or {})

        return await self.execute(payment, organization_id)

    async def next_attempt(self, invoice_id: str, organization_id: str) -> Tuple[int, Optional[str]]:
        """Attempt number for a new payment and the failed attempt it retries, if any."""
        previous = await self.store.query("payments", {"invoice_id": invoice_id}, organization_id)
        failed = [p for p in previous if p.attr("payment_status") == "failed"]
        attempt = max([p.attr("attempt", 1) for p in previous] or [0]) + 1
        return attempt, (failed[-1].id if failed else None)

    async def execute(self, payment: Record, organization_id: str) -> PaymentExecutionResult:
        """Move a scheduled payment through the gateway to a terminal state."""
        invoice = await self._load("invoices", payment.attr("invoice_id"), organization_id, "invoice")
        check_payment_gate(invoice)

        if invoice.attr("payment_status") == "paid" and invoice.attr("payment_id") != payment.id:
            payment = await self.store.update(
                "payments",
                payment.id,
                {"attributes": {
                    "payment_status": "failed",
                    "failure_reason": f"invoice already paid by {invoice.attr('payment_id')}",
                }},
                organization_id,
                expected={"payment_status": "scheduled"},
            )
            return status_result(payment)

        try:
            payment = await self.store.update(
                "payments",
                payment.id,
                {"attributes": {"payment_status": "processing"}},
                organization_id,
                expected={"payment_status": "scheduled"},
            )
        except ConcurrentModificationError:
            current = await self._load("payments", payment.id, organization_id, "payment")
            logger.info(f"Payment {payment.id} already taken by another worker ({current.attr('payment_status')})")
            return status_result(current)

        outcome = await execute_with_timeout(self.gateway, payment, self.config.GATEWAY_TIMEOUT_SECONDS)
        failures: List[SideEffectFailure] = []

        if outcome.needs_reconciliation:
            payment = await self._hold_for_reconciliation(payment, outcome.error, organization_id, failures)
            result = status_result(payment, error=outcome.error)
            result.partial_failures = failures
            return result

        if not outcome.success:
            payment = await self.store.update(
                "payments",
                payment.id,
                {"attributes": {
                    "payment_status": "failed",
                    "failure_reason": outcome.error,
                    "executed_at": utcnow(),
                }},
                organization_id,
                expected={"payment_status": "processing"},
            )
            await self._notify("payment_failed", payment.id, {
                "invoice_id": invoice.id,
                "amount": payment.total_amount,
                "reason": outcome.error,
            }, failures)
            log_stage_action(logger, self.stage_name, "payment_failed", {
                "payment_id": payment.id,
                "invoice_id": invoice.id,
                "reason": outcome.error,
            })
            result = status_result(payment)
            result.partial_failures = failures
            return result

        payment = await self.store.update(
            "payments",
            payment.id,
            {"attributes": {
                "payment_status": "completed",
                "bank_reference": outcome.reference,
                "executed_at": utcnow(),
            }},
            organization_id,
            expected={"payment_status": "processing"},
        )
        log_stage_action(logger, self.stage_name, "payment_completed", {
            "payment_id": payment.id,
            "invoice_id": invoice.id,
            "amount": payment.total_amount,
            "reference": outcome.reference,
        })

        clearing = await self._settle(payment, invoice, organization_id, failures)
        await self._notify("payment_completed", payment.id, {
            "invoice_id": invoice.id,
            "amount": payment.total_amount,
            "reference": outcome.reference,
        }, failures)

        result = status_result(payment)
        result.clearing_id = clearing.id if clearing else None
        result.partial_failures = failures
        return result

    def _is_stale(self, payment: Record) -> bool:
        since = payment.updated_at or payment.created_at
        return (utcnow() - since).total_seconds() > self.config.STALE_PROCESSING_SECONDS

    async def _hold_for_reconciliation(
        self,
        payment: Record,
        reason: str,
        organization_id: str,
        failures: List[SideEffectFailure],
    ) -> Record:
        """
        Park a processing payment for an operator.

        It stays ``processing``, so it still counts as the invoice's active
        payment: no batch selects the invoice and no retry is created.
        """
        payment = await self.store.update(
            "payments",
            payment.id,
            {"attributes": {"needs_reconciliation": True, "reconciliation_reason": reason}},
            organization_id,
            expected={"payment_status": "processing"},
        )
        logger.error(f"Payment {payment.id} needs reconciliation: {reason}")
        await self._notify("payment_needs_reconciliation", payment.id, {
            "invoice_id": payment.attr("invoice_id"),
            "amount": payment.total_amount,
            "reason": reason,
        }, failures)
        return payment

    async def _retry(self, failed: Record, organization_id: str, metadata: Dict) -> PaymentExecutionResult:
        """Execute a fresh attempt, priced for its own payment date."""
        invoice = await self._load("invoices", failed.attr("invoice_id"), organization_id, "invoice")
        check_payment_gate(invoice)
        payment_date = parse_payment_date(metadata.get("payment_date"))

        active = await self.store.query(
            "payments",
            {"invoice_id": invoice.id, "payment_status": list(ACTIVE_PAYMENT_STATUSES)},
            organization_id,
        )
        if active:
            latest = active[-1]
            return status_result(
                failed,
                error=f"invoice {invoice.number} already has payment {latest.id} ({latest.attr('payment_status')})",
            )

        terms = parse_payment_terms(invoice.attr("payment_terms"))
        decision = compute_discount(invoice.total_amount, terms, invoice.attr("invoice_date"), payment_date)

        attempt, _ = await self.next_attempt(invoice.id, organization_id)
        retry = await self.store.insert("payments", new_record(
            "payment",
            organization_id,
            total_amount=decision.net_amount,
            idempotency_key=f"payment:{invoice.id}:{attempt}",
            invoice_id=invoice.id,
            invoice_amount=invoice.total_amount,
            supplier_id=failed.attr("supplier_id"),
            payment_method=failed.attr("payment_method"),
            payment_date=payment_date,
            discount_amount=decision.discount,
            discount_reason=decision.reason,
            attempt=attempt,
            retry_of=failed.id,
        ))
        logger.info(
            f"Retrying failed payment {failed.id} as attempt {attempt} ({retry.id}) "
            f"for {decision.net_amount:.2f} on {payment_date}"
        )
        return await self.execute(retry, organization_id)

    async def _settle(
        self,
        payment: Record,
        invoice: Record,
        organization_id: str,
        failures: List[SideEffectFailure],
    ) -> Optional[Record]:
        """Mark the invoice paid and clear its accruals; both steps are idempotent."""
        if invoice.attr("payment_status") != "paid":
            await self._side_effect(
                "invoice_update",
                invoice.id,
                lambda: self.store.update(
                    "invoices",
                    invoice.id,
                    {"attributes": {
                        "payment_status": "paid",
                        "payment_id": payment.id,
                        "paid_at": utcnow(),
                    }},
                    organization_id,
                ),
                failures,
            )

        return await self._side_effect(
            "clearing", payment.id, lambda: self._clear_accruals(payment, invoice, organization_id), failures
        )

    async def _clear_accruals(self, payment: Record, invoice: Record, organization_id: str) -> Record:
        po_id = invoice.attr("po_id")
        accruals = []
        if po_id:
            accruals = await self.store.query("accruals", {"po_id": po_id}, organization_id)

        clearing, created = await self._insert_once(new_record(
            "accrual_clearing",
            organization_id,
            total_amount=invoice.total_amount,
            idempotency_key=f"clearing:{payment.id}",
            invoice_id=invoice.id,
            payment_id=payment.id,
            po_id=po_id,
            accrual_ids=[a.id for a in accruals],
            discount_taken=payment.attr("discount_amount", 0.0),
        ))
        if created:
            log_stage_action(logger, self.stage_name, "accrual_cleared", {
                "payment_id": payment.id,
                "invoice_id": invoice.id,
                "accrual_ids": clearing.attr("accrual_ids"),
                "cleared_amount": clearing.total_amount,
            })
        return clearing
