"""
Shared fixtures for the workflow engine tests.
"""

import os

os.environ.setdefault("ENV", "test")

from datetime import date, datetime, timedelta

import pytest

from p2p_workflow.config import TestConfig
from p2p_workflow.gateway import SimulatedPaymentGateway
from p2p_workflow.main import build_dispatcher
from p2p_workflow.notifications import LoggingNotificationSink
from p2p_workflow.stages import (
    AnomalyDetector,
    ApprovalRouter,
    InvoiceMatchingEngine,
    PaymentBatchRunner,
    PaymentExecutor,
    ReceivingProcessor,
)
from p2p_workflow.store import InMemoryRecordStore
from p2p_workflow.utils import utcnow


ORG = "org-a"
OTHER_ORG = "org-b"
INVOICE_DATE = date(2026, 3, 1)


@pytest.fixture
def config():
    settings = TestConfig()
    settings.STRICT_SIDE_EFFECTS = set()
    return settings


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def notifier():
    return LoggingNotificationSink()


@pytest.fixture
def gateway():
    return SimulatedPaymentGateway()


@pytest.fixture
def router(store, notifier, config):
    return ApprovalRouter(store, notifier, config)


@pytest.fixture
def receiving(store, notifier, config):
    return ReceivingProcessor(store, notifier, config)


@pytest.fixture
def matching(store, notifier, config):
    return InvoiceMatchingEngine(store, notifier, config)


@pytest.fixture
def executor(store, gateway, notifier, config):
    return PaymentExecutor(store, gateway=gateway, notifier=notifier, config=config)


@pytest.fixture
def batch_runner(store, executor, notifier, config):
    return PaymentBatchRunner(store, executor, notifier, config)


@pytest.fixture
def detector(store, notifier, config):
    return AnomalyDetector(store, notifier, config)


@pytest.fixture
def dispatcher(store, gateway, notifier, config):
    return build_dispatcher(config=config, store=store, gateway=gateway, notifier=notifier)


@pytest.fixture
def seed_po(store):
    """Seed a purchase order; extra keywords become attributes."""

    def _seed(po_id="PO-1", amount=10000.0, org=ORG, created_at=None, **attributes):
        attributes.setdefault("supplier_id", "SUP-1")
        attributes.setdefault("requester_id", "USR-1")
        record = {
            "id": po_id,
            "organization_id": org,
            "transaction_code": po_id,
            "total_amount": amount,
            "kind": "purchase_order",
            "attributes": attributes,
        }
        if created_at is not None:
            record["created_at"] = created_at
        return store.seed(record)

    return _seed


@pytest.fixture
def seed_grn(store):
    def _seed(grn_id="GRN-1", po_id="PO-1", amount=10000.0, quantity=100.0, org=ORG, **attributes):
        return store.seed({
            "id": grn_id,
            "organization_id": org,
            "transaction_code": grn_id,
            "total_amount": amount,
            "kind": "goods_receipt",
            "attributes": {"po_id": po_id, "quantity_received": quantity, **attributes},
        })

    return _seed


@pytest.fixture
def seed_invoice(store):
    def _seed(
        invoice_id="INV-1",
        amount=10000.0,
        org=ORG,
        po_id="PO-1",
        terms="2/10 net 30",
        invoice_date=INVOICE_DATE,
        due_date=None,
        **attributes,
    ):
        if due_date is None:
            due_date = invoice_date + timedelta(days=30)
        attributes.setdefault("supplier_id", "SUP-1")
        return store.seed({
            "id": invoice_id,
            "organization_id": org,
            "transaction_code": invoice_id,
            "total_amount": amount,
            "kind": "invoice",
            "attributes": {
                "po_id": po_id,
                "payment_terms": terms,
                "invoice_date": invoice_date,
                "due_date": due_date,
                **attributes,
            },
        })

    return _seed


@pytest.fixture
def seed_payment(store):
    def _seed(payment_id, amount, org=ORG, status="completed", created_at=None, invoice_id="INV-X", **attributes):
        record = {
            "id": payment_id,
            "organization_id": org,
            "total_amount": amount,
            "kind": "payment",
            "attributes": {
                "invoice_id": invoice_id,
                "invoice_amount": amount,
                "payment_status": status,
                **attributes,
            },
        }
        if created_at is not None:
            record["created_at"] = created_at
        return store.seed(record)

    return _seed


@pytest.fixture
def now() -> datetime:
    return utcnow()
