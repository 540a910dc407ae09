"""
Tests for payment batches (run_payment_batch) and execution (process_payment).
"""

from datetime import date, timedelta

import pytest

from p2p_workflow.errors import InvalidTransitionError, NotFoundError, RequestValidationError
from p2p_workflow.gateway import (
    MISSING_REFERENCE_REASON,
    GatewayResult,
    SimulatedPaymentGateway,
    execute_with_timeout,
)
from p2p_workflow.stages import PaymentBatchRunner, PaymentExecutor


ORG = "org-a"
OTHER_ORG = "org-b"
INVOICE_DATE = date(2026, 3, 1)


def run_date(days: int) -> str:
    return (INVOICE_DATE + timedelta(days=days)).isoformat()


class ReferenceLessGateway(SimulatedPaymentGateway):
    """Confirms settlement but loses the bank reference."""

    async def execute(self, payment):
        self.calls.append(payment.id)
        return GatewayResult(success=True, reference=None)


@pytest.fixture
def approved_invoice(seed_invoice):
    """Seed a matched, approved invoice ready for payment."""

    def _seed(invoice_id="INV-1", amount=10000.0, **kwargs):
        kwargs.setdefault("match_status", "matched")
        kwargs.setdefault("approval_status", "approved")
        return seed_invoice(invoice_id, amount=amount, **kwargs)

    return _seed


class TestBatchAmounts:

    @pytest.mark.asyncio
    async def test_discount_taken_on_day_5(self, batch_runner, store, approved_invoice):
        approved_invoice("INV-1")

        result = await batch_runner.run_payment_batch(ORG, {"payment_date": run_date(5)})

        payments = await store.query("payments", {"invoice_id": "INV-1"}, ORG)
        assert len(payments) == 1
        assert payments[0].total_amount == 9800.0
        assert payments[0].attr("discount_amount") == 200.0
        assert result.payments_created == 1
        assert result.total_amount == 9800.0
        assert result.total_discount == 200.0

    @pytest.mark.asyncio
    async def test_full_amount_on_day_20(self, batch_runner, store, approved_invoice):
        approved_invoice("INV-1", due_date=INVOICE_DATE + timedelta(days=15))

        await batch_runner.run_payment_batch(ORG, {"payment_date": run_date(20)})

        payments = await store.query("payments", {"invoice_id": "INV-1"}, ORG)
        assert payments[0].total_amount == 10000.0
        assert payments[0].attr("discount_amount") == 0.0

    @pytest.mark.asyncio
    async def test_invoice_not_yet_due_is_skipped(self, batch_runner, store, approved_invoice):
        approved_invoice("INV-1", terms="net 30")
        result = await batch_runner.run_payment_batch(ORG, {"payment_date": run_date(20)})
        assert result.invoices_processed == 0
        assert store.count("payments") == 0


class TestBatchEligibility:

    @pytest.mark.asyncio
    async def test_variance_invoice_never_paid(self, batch_runner, store, seed_invoice):
        seed_invoice("INV-1", match_status="variance", due_date=INVOICE_DATE)
        seed_invoice("INV-2", match_status="variance", approval_status="approved", due_date=INVOICE_DATE)

        for _ in range(3):
            result = await batch_runner.run_payment_batch(ORG, {"payment_date": run_date(40)})
            assert result.payments_created == 0

        assert store.count("payments") == 0

    @pytest.mark.asyncio
    async def test_unapproved_invoice_never_paid(self, batch_runner, store, seed_invoice):
        seed_invoice("INV-1", match_status="matched", due_date=INVOICE_DATE)
        await batch_runner.run_payment_batch(ORG, {"payment_date": run_date(40)})
        assert store.count("payments") == 0

    @pytest.mark.asyncio
    async def test_paid_invoice_not_paid_again(self, batch_runner, store, approved_invoice):
        approved_invoice("INV-1")
        await batch_runner.run_payment_batch(ORG, {"payment_date": run_date(5)})
        second = await batch_runner.run_payment_batch(ORG, {"payment_date": run_date(6)})
        assert second.payments_created == 0
        assert store.count("payments") == 1

    @pytest.mark.asyncio
    async def test_other_tenants_invoices_ignored(self, batch_runner, store, approved_invoice):
        approved_invoice("INV-1", org=OTHER_ORG)
        result = await batch_runner.run_payment_batch(ORG, {"payment_date": run_date(5)})
        assert result.invoices_processed == 0
        assert store.count("payments") == 0


class TestBatchResilience:

    @pytest.mark.asyncio
    async def test_corrupt_terms_do_not_abort_batch(self, batch_runner, store, approved_invoice):
        for i in range(9):
            approved_invoice(f"INV-{i}", amount=1000.0)
        approved_invoice("INV-BAD", amount=1000.0, terms="2%% ten-ish net ??", due_date=INVOICE_DATE)

        result = await batch_runner.run_payment_batch(ORG, {"payment_date": run_date(5)})

        assert result.invoices_processed == 10
        assert result.payments_created == 10
        assert store.count("payments") == 10
        bad = await store.query("payments", {"invoice_id": "INV-BAD"}, ORG)
        assert bad[0].total_amount == 1000.0
        good = await store.query("payments", {"invoice_id": "INV-0"}, ORG)
        assert good[0].total_amount == 980.0

    @pytest.mark.asyncio
    async def test_gateway_failure_is_per_invoice(self, store, notifier, config, approved_invoice):
        gateway = SimulatedPaymentGateway(fail_ids={"INV-2"})
        executor = PaymentExecutor(store, gateway=gateway, notifier=notifier, config=config)
        runner = PaymentBatchRunner(store, executor, notifier, config)
        for i in range(1, 4):
            approved_invoice(f"INV-{i}", amount=100.0)

        result = await runner.run_payment_batch(ORG, {"payment_date": run_date(5)})

        assert result.payments_created == 3
        assert result.payments_completed == 2
        assert result.payments_failed == 1
        assert result.total_amount == 196.0
        assert result.total_discount == 4.0
        failed = await store.query("payments", {"invoice_id": "INV-2"}, ORG)
        assert failed[0].attr("payment_status") == "failed"
        invoice = await store.get("invoices", "INV-2", ORG)
        assert invoice.attr("payment_status") == "unpaid"
        assert len(notifier.of_kind("payment_failed")) == 1

    @pytest.mark.asyncio
    async def test_rerun_retries_failed_payment(self, store, notifier, config, approved_invoice):
        gateway = SimulatedPaymentGateway(fail_ids={"INV-1"})
        executor = PaymentExecutor(store, gateway=gateway, notifier=notifier, config=config)
        runner = PaymentBatchRunner(store, executor, notifier, config)
        approved_invoice("INV-1")

        await runner.run_payment_batch(ORG, {"payment_date": run_date(5)})
        gateway.fail_ids.clear()
        result = await runner.run_payment_batch(ORG, {"payment_date": run_date(6)})

        assert result.payments_completed == 1
        payments = await store.query("payments", {"invoice_id": "INV-1"}, ORG)
        assert [p.attr("payment_status") for p in payments] == ["failed", "completed"]
        assert payments[1].attr("attempt") == 2
        assert payments[1].attr("retry_of") == payments[0].id

    @pytest.mark.asyncio
    async def test_bounded_concurrency_pays_everything(self, batch_runner, store, approved_invoice):
        for i in range(6):
            approved_invoice(f"INV-{i}", amount=50.0)
        result = await batch_runner.run_payment_batch(ORG, {"payment_date": run_date(5), "concurrency": 2})
        assert result.payments_completed == 6
        assert result.failures == []

    @pytest.mark.asyncio
    async def test_batch_replay_returns_stored_summary(self, batch_runner, store, approved_invoice):
        approved_invoice("INV-1")
        first = await batch_runner.run_payment_batch(ORG, {"payment_date": run_date(5), "batch_id": "RUN-1"})
        approved_invoice("INV-2")
        replay = await batch_runner.run_payment_batch(ORG, {"payment_date": run_date(5), "batch_id": "RUN-1"})

        assert replay.replayed
        assert replay.batch_id == first.batch_id
        assert replay.payments_created == 1
        assert store.count("payments") == 1
        assert store.count("payment_batches") == 1

    @pytest.mark.asyncio
    async def test_invalid_batch_metadata(self, batch_runner):
        with pytest.raises(RequestValidationError):
            await batch_runner.run_payment_batch(ORG, {"payment_date": "next tuesday"})
        with pytest.raises(RequestValidationError):
            await batch_runner.run_payment_batch(ORG, {"concurrency": 0})


class TestPaymentExecution:

    @pytest.mark.asyncio
    async def test_completed_payment_is_terminal(self, batch_runner, executor, gateway, store, approved_invoice):
        approved_invoice("INV-1")
        result = await batch_runner.run_payment_batch(ORG, {"payment_date": run_date(5)})
        payment_id = result.payments[0].payment_id

        again = await executor.process_payment(payment_id, ORG)

        assert again.success
        assert again.status == "completed"
        assert again.payment_reference == result.payments[0].payment_reference
        assert len(gateway.calls) == 1
        with pytest.raises(InvalidTransitionError):
            await store.update("payments", payment_id, {"attributes": {"payment_status": "scheduled"}}, ORG)
        payment = await store.get("payments", payment_id, ORG)
        assert payment.attr("payment_status") == "completed"

    @pytest.mark.asyncio
    async def test_success_marks_invoice_paid_and_clears_accruals(
        self, batch_runner, store, seed_po, approved_invoice
    ):
        seed_po("PO-1", approval_status="approved")
        store.seed({
            "id": "ACR-1", "organization_id": ORG, "total_amount": 10000.0,
            "kind": "accrual", "attributes": {"po_id": "PO-1", "grn_id": "GRN-1"},
        })
        approved_invoice("INV-1", po_id="PO-1")

        result = await batch_runner.run_payment_batch(ORG, {"payment_date": run_date(5)})
        outcome = result.payments[0]

        invoice = await store.get("invoices", "INV-1", ORG)
        assert invoice.attr("payment_status") == "paid"
        assert invoice.attr("payment_id") == outcome.payment_id
        clearing = await store.get("accrual_clearings", outcome.clearing_id, ORG)
        assert clearing.attr("accrual_ids") == ["ACR-1"]
        assert clearing.total_amount == 10000.0
        assert clearing.attr("discount_taken") == 200.0

    @pytest.mark.asyncio
    async def test_gateway_timeout_fails_payment(self, store, notifier, config, approved_invoice, seed_payment):
        config.GATEWAY_TIMEOUT_SECONDS = 0.05
        executor = PaymentExecutor(store, gateway=SimulatedPaymentGateway(latency=0.5), notifier=notifier, config=config)
        approved_invoice("INV-1")
        seed_payment("PAY-1", 9800.0, status="scheduled", invoice_id="INV-1", invoice_amount=10000.0)

        result = await executor.process_payment("PAY-1", ORG)

        assert not result.success
        assert result.status == "failed"
        assert result.error == "gateway timeout"
        payment = await store.get("payments", "PAY-1", ORG)
        assert payment.attr("failure_reason") == "gateway timeout"

    @pytest.mark.asyncio
    async def test_redispatching_failed_payment_creates_new_attempt(
        self, store, notifier, config, approved_invoice, seed_payment
    ):
        gateway = SimulatedPaymentGateway(fail_ids={"PAY-1"})
        executor = PaymentExecutor(store, gateway=gateway, notifier=notifier, config=config)
        approved_invoice("INV-1")
        seed_payment("PAY-1", 10000.0, status="scheduled", invoice_id="INV-1")

        failed = await executor.process_payment("PAY-1", ORG)
        assert failed.status == "failed"

        retried = await executor.process_payment("PAY-1", ORG)

        assert retried.success
        assert retried.payment_id != "PAY-1"
        new_payment = await store.get("payments", retried.payment_id, ORG)
        assert new_payment.attr("retry_of") == "PAY-1"
        original = await store.get("payments", "PAY-1", ORG)
        assert original.attr("payment_status") == "failed"

    @pytest.mark.asyncio
    async def test_payment_for_unapproved_invoice_rejected(self, executor, gateway, seed_invoice, seed_payment):
        seed_invoice("INV-1", match_status="variance")
        seed_payment("PAY-1", 100.0, status="scheduled", invoice_id="INV-1")

        with pytest.raises(InvalidTransitionError):
            await executor.process_payment("PAY-1", ORG)
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_processing_payment_not_executed_twice(self, executor, gateway, approved_invoice, seed_payment):
        approved_invoice("INV-1")
        seed_payment("PAY-1", 100.0, status="processing", invoice_id="INV-1")

        result = await executor.process_payment("PAY-1", ORG)

        assert not result.success
        assert result.status == "processing"
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_unknown_payment(self, executor):
        with pytest.raises(NotFoundError):
            await executor.process_payment("PAY-404", ORG)

    @pytest.mark.asyncio
    async def test_other_tenants_payment(self, executor, gateway, approved_invoice, seed_payment):
        approved_invoice("INV-1", org=OTHER_ORG)
        seed_payment("PAY-1", 100.0, org=OTHER_ORG, status="scheduled", invoice_id="INV-1")
        with pytest.raises(NotFoundError):
            await executor.process_payment("PAY-1", ORG)
        assert gateway.calls == []


class TestRetryPricing:

    @pytest.fixture
    def failing_setup(self, store, notifier, config, approved_invoice):
        gateway = SimulatedPaymentGateway(fail_ids={"INV-1"})
        executor = PaymentExecutor(store, gateway=gateway, notifier=notifier, config=config)
        runner = PaymentBatchRunner(store, executor, notifier, config)
        approved_invoice("INV-1")
        return gateway, executor, runner

    @pytest.mark.asyncio
    async def test_retry_after_window_pays_full_amount(self, store, failing_setup):
        gateway, executor, runner = failing_setup
        batch = await runner.run_payment_batch(ORG, {"payment_date": run_date(5)})
        failed_id = batch.payments[0].payment_id
        assert batch.payments[0].amount == 9800.0
        gateway.fail_ids.clear()

        retried = await executor.process_payment(failed_id, ORG, {"payment_date": run_date(40)})

        assert retried.success
        assert retried.amount == 10000.0
        assert retried.discount_amount == 0.0
        payment = await store.get("payments", retried.payment_id, ORG)
        assert payment.attr("payment_date") == INVOICE_DATE + timedelta(days=40)
        assert payment.attr("retry_of") == failed_id

    @pytest.mark.asyncio
    async def test_retry_without_date_is_priced_today(self, failing_setup):
        gateway, executor, runner = failing_setup
        batch = await runner.run_payment_batch(ORG, {"payment_date": run_date(5)})
        gateway.fail_ids.clear()

        # The invoice date is long past, so today is outside the discount window
        retried = await executor.process_payment(batch.payments[0].payment_id, ORG)

        assert retried.amount == 10000.0
        assert retried.discount_amount == 0.0

    @pytest.mark.asyncio
    async def test_retry_inside_window_keeps_discount(self, failing_setup):
        gateway, executor, runner = failing_setup
        batch = await runner.run_payment_batch(ORG, {"payment_date": run_date(5)})
        gateway.fail_ids.clear()

        retried = await executor.process_payment(batch.payments[0].payment_id, ORG, {"payment_date": run_date(7)})

        assert retried.amount == 9800.0
        assert retried.discount_amount == 200.0


class TestReconciliationHold:

    @pytest.mark.asyncio
    async def test_success_without_reference_is_not_paid_twice(self, store, notifier, config, approved_invoice):
        gateway = ReferenceLessGateway()
        executor = PaymentExecutor(store, gateway=gateway, notifier=notifier, config=config)
        runner = PaymentBatchRunner(store, executor, notifier, config)
        approved_invoice("INV-1")

        first = await runner.run_payment_batch(ORG, {"payment_date": run_date(5)})
        second = await runner.run_payment_batch(ORG, {"payment_date": run_date(5)})

        assert len(gateway.calls) == 1
        assert first.payments[0].status == "processing"
        assert first.payments_failed == 0
        assert first.total_amount == 0.0
        assert second.payments_created == 0

        payments = await store.query("payments", {"invoice_id": "INV-1"}, ORG)
        assert len(payments) == 1
        assert payments[0].attr("needs_reconciliation")
        assert "without a reference" in payments[0].attr("reconciliation_reason")
        assert len(notifier.of_kind("payment_needs_reconciliation")) == 1

        again = await executor.process_payment(payments[0].id, ORG)
        assert not again.success
        assert "awaits reconciliation" in again.error
        assert len(gateway.calls) == 1

    @pytest.mark.asyncio
    async def test_stale_processing_payment_flagged(self, executor, gateway, store, notifier, approved_invoice,
                                                    seed_payment, now):
        approved_invoice("INV-1")
        seed_payment("PAY-1", 100.0, status="processing", invoice_id="INV-1", created_at=now - timedelta(hours=2))

        result = await executor.process_payment("PAY-1", ORG)

        assert result.status == "processing"
        assert "awaits reconciliation" in result.error
        assert gateway.calls == []
        payment = await store.get("payments", "PAY-1", ORG)
        assert payment.attr("needs_reconciliation")
        assert len(notifier.of_kind("payment_needs_reconciliation")) == 1


@pytest.mark.asyncio
async def test_reference_less_success_needs_reconciliation(seed_payment):
    payment = seed_payment("PAY-1", 100.0, status="processing")
    outcome = await execute_with_timeout(ReferenceLessGateway(), payment, timeout=1.0)
    assert not outcome.success
    assert outcome.needs_reconciliation
    assert outcome.error == MISSING_REFERENCE_REASON
