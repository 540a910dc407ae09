"""
Payment terms parsing and early-payment discount calculation.

Terms strings look like ``"2/10 net 30"`` (2% off if paid within 10 days,
otherwise due in 30) or plain ``"net 30"``. Anything else parses to a
no-discount result instead of raising, so one bad terms string can never
stop a payment run.
"""

import re
from datetime import date
from typing import Any, Optional

from pydantic import BaseModel

from p2p_workflow.errors import RequestValidationError
from p2p_workflow.utils import round_money, utcnow


_DISCOUNT_TERMS = re.compile(
    r"^\s*(?P<percent>\d+(?:\.\d+)?)\s*%?\s*/\s*(?P<days>\d+)\s*,?\s*net\s*(?P<net>\d+)\s*$",
    re.IGNORECASE,
)
_NET_TERMS = re.compile(r"^\s*net\s*(?P<net>\d+)\s*$", re.IGNORECASE)


class PaymentTerms(BaseModel):
    """Structured payment terms."""
    raw: Optional[str] = None
    percent: float = 0.0
    discount_days: int = 0
    net_days: Optional[int] = None
    parsed: bool = False
    reason: str = ""

    @property
    def discount_available(self) -> bool:
        return self.parsed and self.percent > 0


class DiscountDecision(BaseModel):
    """Outcome of applying terms to an amount on a payment date."""
    discount: float
    net_amount: float
    elapsed_days: Optional[int] = None
    applied: bool
    reason: str


def parse_payment_terms(raw: Optional[str]) -> PaymentTerms:
    """
    Parse a payment terms string.

    Args:
        raw: Terms such as "2/10 net 30" or "net 45"

    Returns:
        PaymentTerms; ``parsed`` is False for empty or malformed input
    """
    if raw is None or not str(raw).strip():
        return PaymentTerms(raw=raw, reason="no payment terms")

    text = str(raw)
    match = _DISCOUNT_TERMS.match(text)
    if match:
        percent = float(match.group("percent"))
        if percent >= 100:
            return PaymentTerms(raw=text, reason=f"discount percent {percent} out of range")
        return PaymentTerms(
            raw=text,
            percent=percent,
            discount_days=int(match.group("days")),
            net_days=int(match.group("net")),
            parsed=True,
            reason="discount terms",
        )

    match = _NET_TERMS.match(text)
    if match:
        return PaymentTerms(
            raw=text,
            net_days=int(match.group("net")),
            parsed=True,
            reason="net terms without discount",
        )

    return PaymentTerms(raw=text, reason=f"unrecognized payment terms '{text}'")


def parse_payment_date(value: Any) -> date:
    """Run date from request metadata; today when absent."""
    if value is None or value == "":
        return utcnow().date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise RequestValidationError(f"payment_date '{value}' is not an ISO date")


def discount_window_open(terms: PaymentTerms, invoice_date: Optional[date], payment_date: date) -> bool:
    """True when paying on ``payment_date`` still earns the early-payment discount."""
    if not terms.discount_available or invoice_date is None:
        return False
    elapsed = (payment_date - invoice_date).days
    return 0 <= elapsed <= terms.discount_days


def compute_discount(
    amount: float,
    terms: PaymentTerms,
    invoice_date: Optional[date],
    payment_date: date,
) -> DiscountDecision:
    """Apply early-payment terms to an invoice amount."""
    amount = round_money(amount)
    elapsed = (payment_date - invoice_date).days if invoice_date else None

    if not terms.discount_available:
        return DiscountDecision(
            discount=0.0, net_amount=amount, elapsed_days=elapsed, applied=False,
            reason=terms.reason or "no discount terms",
        )

    if invoice_date is None:
        return DiscountDecision(
            discount=0.0, net_amount=amount, elapsed_days=None, applied=False,
            reason="invoice date unknown",
        )

    if not discount_window_open(terms, invoice_date, payment_date):
        return DiscountDecision(
            discount=0.0, net_amount=amount, elapsed_days=elapsed, applied=False,
            reason=f"paid after {elapsed} days, discount window is {terms.discount_days} days",
        )

    discount = min(amount, round_money(amount * terms.percent / 100))
    return DiscountDecision(
        discount=discount,
        net_amount=round_money(amount - discount),
        elapsed_days=elapsed,
        applied=True,
        reason=f"{terms.percent:g}% early-payment discount, paid after {elapsed} days",
    )
