"""
Error taxonomy for the workflow engine.

Technical errors carry an HTTP-equivalent status code so the dispatcher can
turn any of them into a structured response. Business exceptions (matching
variance, suspected duplicates) are not errors; they are workflow records.
"""

from typing import Optional


class P2PError(Exception):
    """Base class for engine errors."""

    status_code: int = 500
    error_type: str = "internal_error"

    def __init__(self, message: str, entity_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.entity_id = entity_id


class RequestValidationError(P2PError):
    """Malformed request or missing required field."""

    status_code = 400
    error_type = "validation_error"


class NotFoundError(P2PError):
    """Referenced entity does not exist for the requesting tenant."""

    status_code = 404
    error_type = "not_found"

    def __init__(self, table: str, entity_id: str):
        super().__init__(f"{table} record '{entity_id}' not found", entity_id)
        self.table = table


class InvalidTransitionError(P2PError):
    """A write would move a record backwards or skip a workflow gate."""

    status_code = 409
    error_type = "invalid_transition"


class ConcurrentModificationError(P2PError):
    """Compare-and-set update lost against a concurrent writer."""

    status_code = 409
    error_type = "concurrent_modification"


class InFlightConflictError(P2PError):
    """An identical request is already being processed."""

    status_code = 409
    error_type = "in_flight"


class DuplicateRecordError(P2PError):
    """An insert reused an idempotency key that already exists."""

    status_code = 409
    error_type = "duplicate_record"

    def __init__(self, table: str, idempotency_key: str, existing_id: str):
        super().__init__(
            f"{table} already holds a record for key '{idempotency_key}'", existing_id
        )
        self.table = table
        self.idempotency_key = idempotency_key
        self.existing_id = existing_id


class PartialFailureError(P2PError):
    """A side effect configured as strict failed."""

    status_code = 500
    error_type = "partial_failure"

    def __init__(self, side_effect: str, entity_id: str, error: str):
        super().__init__(f"{side_effect} failed for {entity_id}: {error}", entity_id)
        self.side_effect = side_effect
        self.error = error


class GatewayFailure(P2PError):
    """External payment execution failed or timed out."""

    status_code = 502
    error_type = "gateway_failure"
