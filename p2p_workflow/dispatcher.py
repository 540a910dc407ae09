"""
Workflow Dispatcher
Validates an inbound action request, guards against concurrent duplicates
and routes it through the dispatch graph. Holds no business logic.
"""

import time
from typing import Any, Dict, Hashable, Optional, Union

from pydantic import ValidationError

from p2p_workflow.config import Config, get_config
from p2p_workflow.errors import InFlightConflictError, P2PError
from p2p_workflow.graph import build_dispatch_graph
from p2p_workflow.schemas.requests import DispatchRequest, DispatchResponse
from p2p_workflow.stages import (
    AnomalyDetector,
    ApprovalRouter,
    InvoiceMatchingEngine,
    PaymentBatchRunner,
    PaymentExecutor,
    ReceivingProcessor,
)
from p2p_workflow.state import DispatchState
from p2p_workflow.utils.logging import setup_logging


logger = setup_logging(__name__)


class InFlightRegistry:
    """
    Short-lived markers for requests currently being processed.

    Markers expire after ``ttl_seconds`` so a crashed request cannot block
    its key forever.
    """

    def __init__(self, ttl_seconds: float):
        self.ttl_seconds = ttl_seconds
        self._expires: Dict[Hashable, float] = {}

    def _purge(self, now: float) -> None:
        for key in [k for k, expiry in self._expires.items() if expiry <= now]:
            del self._expires[key]

    def claim(self, key: Hashable) -> bool:
        now = time.monotonic()
        self._purge(now)
        if key in self._expires:
            return False
        self._expires[key] = now + self.ttl_seconds
        return True

    def release(self, key: Hashable) -> None:
        self._expires.pop(key, None)

    def __contains__(self, key: Hashable) -> bool:
        self._purge(time.monotonic())
        return key in self._expires

    def __len__(self) -> int:
        self._purge(time.monotonic())
        return len(self._expires)


def format_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ()))
        message = item.get("msg", "invalid value")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts)


def error_response(action: Optional[str], error: P2PError) -> DispatchResponse:
    return DispatchResponse(
        success=False,
        status_code=error.status_code,
        action=action,
        error=error.message,
        error_type=error.error_type,
    )


class WorkflowDispatcher:
    """Routes dispatch requests to the stage handlers."""

    def __init__(
        self,
        approval: ApprovalRouter,
        receiving: ReceivingProcessor,
        matching: InvoiceMatchingEngine,
        executor: PaymentExecutor,
        batch_runner: PaymentBatchRunner,
        anomalies: AnomalyDetector,
        config: Optional[Config] = None,
    ):
        self.config = config or get_config()
        self.handlers = {
            "process_po": lambda s: approval.process_po(s.transaction_id, s.organization_id, s.metadata),
            "process_grn": lambda s: receiving.process_grn(s.transaction_id, s.organization_id, s.metadata),
            "process_invoice": lambda s: matching.process_invoice(s.transaction_id, s.organization_id, s.metadata),
            "process_payment": lambda s: executor.process_payment(s.transaction_id, s.organization_id, s.metadata),
            "run_payment_batch": lambda s: batch_runner.run_payment_batch(
                s.organization_id, s.metadata, s.idempotency_key
            ),
            "check_anomalies": lambda s: anomalies.check_anomalies(s.organization_id, s.metadata),
        }
        self.graph = build_dispatch_graph(self.handlers)
        self.in_flight = InFlightRegistry(self.config.IN_FLIGHT_TTL_SECONDS)

    async def dispatch(self, request: Union[DispatchRequest, Dict[str, Any]]) -> DispatchResponse:
        """
        Handle one request.

        Always returns a DispatchResponse; no exception escapes.
        """
        raw_action = request.get("action") if isinstance(request, dict) else getattr(request, "action", None)
        action = raw_action if isinstance(raw_action, str) else None

        try:
            if not isinstance(request, DispatchRequest):
                request = DispatchRequest.model_validate(request)
        except ValidationError as e:
            message = format_validation_error(e)
            logger.warning(f"Rejected malformed dispatch request: {message}")
            return DispatchResponse(
                success=False,
                status_code=400,
                action=action,
                error=message,
                error_type="validation_error",
            )

        key = request.in_flight_key()
        if not self.in_flight.claim(key):
            logger.warning(f"Duplicate in-flight request rejected: {key}")
            return error_response(request.action, InFlightConflictError(
                f"{request.action} for '{key[2]}' is already in progress", request.transaction_id
            ))

        try:
            state = DispatchState(**request.model_dump())
            final = await self.graph.ainvoke(
                state, config={"recursion_limit": self.config.GRAPH_RECURSION_LIMIT}
            )
            final_state = DispatchState.model_validate(final) if isinstance(final, dict) else final
        except P2PError as e:
            return error_response(request.action, e)
        except Exception as e:
            logger.exception(f"Dispatch of {request.action} crashed: {e}")
            return DispatchResponse(
                success=False,
                status_code=500,
                action=request.action,
                error=str(e) or type(e).__name__,
                error_type="internal_error",
            )
        finally:
            self.in_flight.release(key)

        if final_state.success is None:
            return DispatchResponse(
                success=False,
                status_code=500,
                action=request.action,
                error=f"no stage handled {request.action}",
                error_type="internal_error",
            )

        logger.debug(final_state.get_audit_trail())
        return DispatchResponse(
            success=final_state.success,
            status_code=final_state.status_code,
            action=request.action,
            error=final_state.error,
            error_type=final_state.error_type,
            data=final_state.result,
        )

    async def dispatch_payload(self, request: Union[DispatchRequest, Dict[str, Any]]) -> Dict[str, Any]:
        """Dispatch and flatten into the wire shape."""
        response = await self.dispatch(request)
        return response.as_payload()
