"""
Record store interface.

The store is the only shared mutable resource. Every call is scoped by
tenant; implementations must never return or modify another tenant's
records.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from p2p_workflow.errors import RequestValidationError
from p2p_workflow.schemas.records import Record, check_transition, lifecycle_fields
from p2p_workflow.utils import utcnow


IMMUTABLE_FIELDS = ("id", "organization_id", "created_at", "idempotency_key")


class RecordStore(ABC):
    """Async tenant-scoped CRUD plus filtered queries."""

    @abstractmethod
    async def get(self, table: str, record_id: str, organization_id: str) -> Optional[Record]:
        """Return the record, or None when it is missing or owned by another tenant."""

    @abstractmethod
    async def query(
        self,
        table: str,
        filters: Dict[str, Any],
        organization_id: str,
    ) -> List[Record]:
        """
        Return the tenant's records matching all filters.

        Filter keys address top-level record fields or attribute fields. A
        list, tuple or set value matches by membership, anything else by
        equality.
        """

    @abstractmethod
    async def insert(self, table: str, record: Record) -> Record:
        """
        Insert a record.

        Raises:
            DuplicateRecordError: the record's idempotency key already exists
                for this tenant and table.
        """

    @abstractmethod
    async def update(
        self,
        table: str,
        record_id: str,
        patch: Dict[str, Any],
        organization_id: str,
        expected: Optional[Dict[str, Any]] = None,
    ) -> Record:
        """
        Apply a patch and return the updated record.

        ``patch`` holds top-level fields and an optional ``attributes`` dict
        merged into the bag. ``expected`` makes the write conditional on the
        named fields currently holding the given values.

        Raises:
            NotFoundError: missing record or another tenant's record.
            InvalidTransitionError: a lifecycle field would move backwards.
            ConcurrentModificationError: ``expected`` did not hold.
        """


def matches_filters(record: Record, filters: Dict[str, Any]) -> bool:
    for key, expected in filters.items():
        value = record.field_value(key)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


def apply_patch(record: Record, patch: Dict[str, Any]) -> Record:
    """
    Return a new, fully re-validated record with the patch applied.

    Lifecycle fields are checked for forward-only movement before anything
    is written.
    """
    data = record.model_dump()
    attribute_patch = dict(patch.get("attributes") or {})

    for key, value in patch.items():
        if key == "attributes":
            continue
        if key in IMMUTABLE_FIELDS:
            raise RequestValidationError(f"{key} cannot be changed", record.id)
        if key not in Record.model_fields:
            raise RequestValidationError(f"unknown record field '{key}'", record.id)
        data[key] = value

    if attribute_patch.get("kind", record.kind) != record.kind:
        raise RequestValidationError("record kind cannot be changed", record.id)

    for field in lifecycle_fields(record.kind):
        if field in attribute_patch:
            check_transition(record.kind, field, record.attr(field), attribute_patch[field])

    data["attributes"].update(attribute_patch)
    data["updated_at"] = utcnow()

    try:
        return Record.model_validate(data)
    except ValidationError as e:
        raise RequestValidationError(
            f"invalid update for {record.table} '{record.id}': {e}", record.id
        )
