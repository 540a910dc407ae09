"""
Payment Scheduler & Batch Runner
Selects payable invoices for a run date, applies early-payment discounts,
creates Payment records and executes them with bounded concurrency.
"""

import asyncio
from datetime import date
from typing import Any, Dict, List, Optional

from p2p_workflow.errors import P2PError, RequestValidationError
from p2p_workflow.schemas.records import ACTIVE_PAYMENT_STATUSES, Record, new_record
from p2p_workflow.schemas.results import BatchItemFailure, BatchRunResult, PaymentExecutionResult
from p2p_workflow.stages.base import StageHandler
from p2p_workflow.stages.execution import PaymentExecutor
from p2p_workflow.terms import compute_discount, discount_window_open, parse_payment_date, parse_payment_terms
from p2p_workflow.utils import round_money
from p2p_workflow.utils.logging import log_stage_action, setup_logging


logger = setup_logging(__name__)


def is_due(invoice: Record, payment_date: date) -> bool:
    """
    Due on or before the run date, or still inside its discount window.

    Invoices without a due date are due on receipt.
    """
    due_date = invoice.attr("due_date")
    if due_date is None or due_date <= payment_date:
        return True
    terms = parse_payment_terms(invoice.attr("payment_terms"))
    return discount_window_open(terms, invoice.attr("invoice_date"), payment_date)


class PaymentBatchRunner(StageHandler):
    stage_name = "payment_batch"

    def __init__(self, store, executor: PaymentExecutor, notifier=None, config=None):
        super().__init__(store, notifier, config)
        self.executor = executor

    async def eligible_invoices(self, organization_id: str, payment_date: date) -> List[Record]:
        """Approved, matched, unpaid invoices with no live payment that are due for this run."""
        invoices = await self.store.query(
            "invoices",
            {"approval_status": "approved", "match_status": "matched", "payment_status": "unpaid"},
            organization_id,
        )
        active = await self.store.query(
            "payments", {"payment_status": list(ACTIVE_PAYMENT_STATUSES)}, organization_id
        )
        paying = {p.attr("invoice_id") for p in active}
        return [inv for inv in invoices if inv.id not in paying and is_due(inv, payment_date)]

    async def run_payment_batch(
        self,
        organization_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> BatchRunResult:
        metadata = metadata or {}
        run_type = metadata.get("run_type") or "scheduled"
        payment_date = parse_payment_date(metadata.get("payment_date"))
        payment_method = metadata.get("payment_method") or self.config.DEFAULT_PAYMENT_METHOD
        batch_key = metadata.get("batch_id") or idempotency_key
        concurrency = metadata.get("concurrency")
        try:
            concurrency = int(self.config.BATCH_CONCURRENCY if concurrency is None else concurrency)
        except (TypeError, ValueError):
            raise RequestValidationError(f"concurrency '{metadata.get('concurrency')}' is not an integer")
        if concurrency <= 0:
            raise RequestValidationError("concurrency must be positive")

        batch = await self._open_batch(organization_id, run_type, payment_date, batch_key)
        if batch.attr("status") == "completed":
            logger.info(f"Batch {batch.id} already completed; returning stored summary")
            replay = BatchRunResult.model_validate(batch.attr("summary"))
            replay.replayed = True
            return replay

        invoices = await self.eligible_invoices(organization_id, payment_date)
        log_stage_action(logger, self.stage_name, "batch_started", {
            "batch_id": batch.id,
            "run_type": run_type,
            "payment_date": payment_date,
            "eligible_invoices": len(invoices),
            "concurrency": concurrency,
        })

        semaphore = asyncio.Semaphore(concurrency)

        async def run_one(invoice: Record) -> PaymentExecutionResult:
            async with semaphore:
                return await self._pay_invoice(invoice, batch, payment_date, payment_method, organization_id)

        outcomes = await asyncio.gather(*(run_one(inv) for inv in invoices), return_exceptions=True)

        result = BatchRunResult(
            batch_id=batch.id,
            run_type=run_type,
            payment_date=payment_date,
            invoices_processed=len(invoices),
        )
        for invoice, outcome in zip(invoices, outcomes):
            if isinstance(outcome, BaseException):
                error = outcome.message if isinstance(outcome, P2PError) else (str(outcome) or type(outcome).__name__)
                logger.error(f"Batch {batch.id}: invoice {invoice.id} failed: {error}")
                result.failures.append(BatchItemFailure(invoice_id=invoice.id, error=error))
                continue
            result.payments.append(outcome)
            result.payments_created += 1
            if outcome.status == "completed":
                result.payments_completed += 1
                result.total_amount = round_money(result.total_amount + outcome.amount)
            elif outcome.status == "failed":
                result.payments_failed += 1

        result.total_discount = round_money(
            sum(p.discount_amount for p in result.payments if p.status == "completed")
        )

        await self.store.update(
            "payment_batches",
            batch.id,
            {
                "total_amount": result.total_amount,
                "attributes": {
                    "status": "completed",
                    "summary": result.model_dump(mode="json", exclude={"replayed"}),
                },
            },
            organization_id,
        )
        log_stage_action(logger, self.stage_name, "batch_completed", {
            "batch_id": batch.id,
            "invoices_processed": result.invoices_processed,
            "payments_created": result.payments_created,
            "payments_failed": result.payments_failed,
            "item_failures": len(result.failures),
            "total_amount": result.total_amount,
        })
        return result

    async def _open_batch(
        self,
        organization_id: str,
        run_type: str,
        payment_date: date,
        batch_key: Optional[str],
    ) -> Record:
        """Create the batch record; a known batch key resumes or replays the earlier run."""
        batch, created = await self._insert_once(new_record(
            "payment_batch",
            organization_id,
            transaction_code=f"BATCH-{payment_date.isoformat()}",
            idempotency_key=f"batch:{batch_key}" if batch_key else None,
            run_type=run_type,
            payment_date=payment_date,
        ))
        if not created and batch.attr("status") == "running":
            logger.warning(f"Resuming interrupted batch {batch.id}")
        return batch

    async def _pay_invoice(
        self,
        invoice: Record,
        batch: Record,
        payment_date: date,
        payment_method: str,
        organization_id: str,
    ) -> PaymentExecutionResult:
        """Create then execute one invoice's payment; the two steps never interleave for an invoice."""
        terms = parse_payment_terms(invoice.attr("payment_terms"))
        if not terms.parsed:
            logger.warning(f"Invoice {invoice.number}: {terms.reason}; paying full amount")
        decision = compute_discount(invoice.total_amount, terms, invoice.attr("invoice_date"), payment_date)

        attempt, retry_of = await self.executor.next_attempt(invoice.id, organization_id)
        payment = await self.store.insert("payments", new_record(
            "payment",
            organization_id,
            total_amount=decision.net_amount,
            idempotency_key=f"payment:{invoice.id}:{attempt}",
            invoice_id=invoice.id,
            invoice_amount=invoice.total_amount,
            supplier_id=invoice.attr("supplier_id"),
            batch_id=batch.id,
            payment_method=payment_method,
            payment_date=payment_date,
            discount_amount=decision.discount,
            discount_reason=decision.reason,
            attempt=attempt,
            retry_of=retry_of,
        ))
        return await self.executor.execute(payment, organization_id)
