"""
Payment gateway adapter.

The engine never settles money itself; it calls ``PaymentGateway.execute``
and records the outcome. Every call goes through ``execute_with_timeout`` so
a hung gateway turns into a failed payment instead of a stuck one.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Iterable, Optional
from uuid import uuid4

from pydantic import BaseModel

from p2p_workflow.errors import GatewayFailure
from p2p_workflow.schemas.records import Record
from p2p_workflow.utils.logging import setup_logging


logger = setup_logging(__name__)

GATEWAY_TIMEOUT_REASON = "gateway timeout"
MISSING_REFERENCE_REASON = "gateway reported success without a reference"


class GatewayResult(BaseModel):
    """Outcome of one settlement call."""
    success: bool
    reference: Optional[str] = None
    error: Optional[str] = None
    # Settled by the gateway but not bookable; the payment stays processing
    needs_reconciliation: bool = False


class PaymentGateway(ABC):
    """External settlement system."""

    @abstractmethod
    async def execute(self, payment: Record) -> GatewayResult:
        """Settle a payment. May raise GatewayFailure or any I/O error."""


class SimulatedPaymentGateway(PaymentGateway):
    """
    Stand-in gateway for development and tests.

    Succeeds with a ``BANK-...`` reference unless the payment or its invoice
    is listed in ``fail_ids``. ``latency`` seconds are awaited before the
    answer, which lets tests drive the timeout path.
    """

    def __init__(
        self,
        latency: float = 0.0,
        fail_ids: Optional[Iterable[str]] = None,
        reference_prefix: str = "BANK",
    ):
        self.latency = latency
        self.fail_ids = set(fail_ids or [])
        self.reference_prefix = reference_prefix
        self.calls = []

    async def execute(self, payment: Record) -> GatewayResult:
        self.calls.append(payment.id)
        if self.latency:
            await asyncio.sleep(self.latency)

        invoice_id = payment.attr("invoice_id")
        if payment.id in self.fail_ids or invoice_id in self.fail_ids:
            raise GatewayFailure(f"settlement rejected for payment {payment.id}", payment.id)

        reference = f"{self.reference_prefix}-{uuid4().hex[:12].upper()}"
        return GatewayResult(success=True, reference=reference)


async def execute_with_timeout(
    gateway: PaymentGateway,
    payment: Record,
    timeout: float,
) -> GatewayResult:
    """
    Call the gateway with a deadline.

    Never raises for gateway problems: timeouts and exceptions come back as
    an unsuccessful GatewayResult carrying the reason. A success without a
    reference is flagged ``needs_reconciliation`` and is never a failure.
    """
    try:
        result = await asyncio.wait_for(gateway.execute(payment), timeout=timeout)
    except asyncio.TimeoutError:
        logger.error(f"Gateway timed out after {timeout}s for payment {payment.id}")
        return GatewayResult(success=False, error=GATEWAY_TIMEOUT_REASON)
    except GatewayFailure as e:
        logger.error(f"Gateway rejected payment {payment.id}: {e.message}")
        return GatewayResult(success=False, error=e.message)
    except Exception as e:
        logger.error(f"Gateway error for payment {payment.id}: {e}")
        return GatewayResult(success=False, error=str(e) or type(e).__name__)

    if not result.success and not result.error:
        result = GatewayResult(success=False, error="gateway reported failure")
    if result.success and not result.reference:
        logger.error(f"Gateway confirmed payment {payment.id} without a reference")
        result = GatewayResult(success=False, needs_reconciliation=True, error=MISSING_REFERENCE_REASON)
    return result
