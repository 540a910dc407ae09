"""
Dispatch request and response envelopes.
"""

from typing import Any, Dict, Literal, Optional
from pydantic import BaseModel, Field, field_validator, model_validator


Action = Literal[
    "process_po",
    "process_grn",
    "process_invoice",
    "process_payment",
    "run_payment_batch",
    "check_anomalies",
]

ACTIONS_REQUIRING_TRANSACTION = {
    "process_po",
    "process_grn",
    "process_invoice",
    "process_payment",
}


class DispatchRequest(BaseModel):
    """A single inbound action request."""
    organization_id: str
    action: Action
    transaction_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[str] = None

    @field_validator("organization_id")
    @classmethod
    def _organization_required(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("organization_id is required")
        return value

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_default(cls, value: Any) -> Any:
        return {} if value is None else value

    @model_validator(mode="after")
    def _transaction_required(self) -> "DispatchRequest":
        if self.transaction_id is not None:
            self.transaction_id = self.transaction_id.strip() or None
        if self.action in ACTIONS_REQUIRING_TRANSACTION and not self.transaction_id:
            raise ValueError(f"transaction_id is required for {self.action}")
        return self

    def in_flight_key(self) -> tuple:
        return (
            self.organization_id,
            self.action,
            self.transaction_id or self.idempotency_key or "",
        )


class DispatchResponse(BaseModel):
    """Normalized dispatch result."""
    success: bool
    status_code: int = 200
    action: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    def as_payload(self) -> Dict[str, Any]:
        """Flatten into the ``{success, ...result}`` wire shape."""
        payload: Dict[str, Any] = dict(self.data)
        payload["success"] = self.success
        payload["status_code"] = self.status_code
        if self.action:
            payload["action"] = self.action
        if self.error is not None:
            payload["error"] = self.error
        if self.error_type is not None:
            payload["error_type"] = self.error_type
        return payload
