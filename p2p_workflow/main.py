"""
Main entry point for the procure-to-pay workflow engine.
Assembles the components and offers a small CLI for one-off dispatches.
"""

import asyncio
import json
from typing import Any, Dict, Optional

from p2p_workflow.config import Config, get_config
from p2p_workflow.dispatcher import WorkflowDispatcher
from p2p_workflow.gateway import PaymentGateway, SimulatedPaymentGateway
from p2p_workflow.notifications import LoggingNotificationSink, NotificationSink
from p2p_workflow.stages import (
    AnomalyDetector,
    ApprovalRouter,
    InvoiceMatchingEngine,
    PaymentBatchRunner,
    PaymentExecutor,
    ReceivingProcessor,
)
from p2p_workflow.store import InMemoryRecordStore, RecordStore
from p2p_workflow.utils import dict_to_json_string
from p2p_workflow.utils.logging import setup_logging


logger = setup_logging(__name__)


def build_dispatcher(
    config: Optional[Config] = None,
    store: Optional[RecordStore] = None,
    gateway: Optional[PaymentGateway] = None,
    notifier: Optional[NotificationSink] = None,
) -> WorkflowDispatcher:
    """
    Wire every stage to the same store, gateway and notification sink.

    Args:
        config: Settings; defaults to get_config()
        store: Record store; defaults to a fresh in-memory store
        gateway: Settlement gateway; defaults to the simulated gateway
        notifier: Notification sink; defaults to the logging sink

    Returns:
        A ready WorkflowDispatcher
    """
    config = config or get_config()
    store = store if store is not None else InMemoryRecordStore()
    gateway = gateway or SimulatedPaymentGateway()
    notifier = notifier or LoggingNotificationSink()

    executor = PaymentExecutor(store, gateway=gateway, notifier=notifier, config=config)
    dispatcher = WorkflowDispatcher(
        approval=ApprovalRouter(store, notifier, config),
        receiving=ReceivingProcessor(store, notifier, config),
        matching=InvoiceMatchingEngine(store, notifier, config),
        executor=executor,
        batch_runner=PaymentBatchRunner(store, executor, notifier, config),
        anomalies=AnomalyDetector(store, notifier, config),
        config=config,
    )
    logger.info(f"Dispatcher ready with {type(store).__name__} and {type(gateway).__name__}")
    return dispatcher


def load_records_from_file(path: str, store: InMemoryRecordStore) -> int:
    """Seed a store from a JSON list of records (each with a ``kind``)."""
    with open(path, "r") as f:
        data = json.load(f)

    if isinstance(data, dict):
        data = data.get("records", [])

    for record in data:
        store.seed(record)

    logger.info(f"Loaded {len(data)} records from {path}")
    return len(data)


async def dispatch(
    request: Dict[str, Any],
    dispatcher: Optional[WorkflowDispatcher] = None,
) -> Dict[str, Any]:
    """Dispatch one request and return the flattened response payload."""
    dispatcher = dispatcher or build_dispatcher()
    return await dispatcher.dispatch_payload(request)


if __name__ == "__main__":
    import sys

    if len(sys.argv) > 1:
        with open(sys.argv[1], "r") as f:
            request = json.load(f)

        store = InMemoryRecordStore()
        if len(sys.argv) > 2:
            load_records_from_file(sys.argv[2], store)

        payload = asyncio.run(dispatch(request, build_dispatcher(store=store)))
        print(dict_to_json_string(payload))
        sys.exit(0 if payload.get("success") else 1)
    else:
        print("Usage: python -m p2p_workflow.main <request.json> [records.json]")
