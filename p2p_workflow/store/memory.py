"""
In-memory record store.

Used by tests, the CLI and the default API wiring. Enforces the same
contract a database-backed store must: tenant isolation, unique
idempotency keys, forward-only lifecycles and compare-and-set updates.
"""

from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from p2p_workflow.errors import (
    ConcurrentModificationError,
    DuplicateRecordError,
    NotFoundError,
    RequestValidationError,
)
from p2p_workflow.schemas.records import Record, TABLE_FOR_KIND
from p2p_workflow.store.base import RecordStore, apply_patch, matches_filters
from p2p_workflow.utils.logging import setup_logging


logger = setup_logging(__name__)

KNOWN_TABLES = set(TABLE_FOR_KIND.values())


class InMemoryRecordStore(RecordStore):
    """Dictionary-backed store; every returned record is a copy."""

    def __init__(self):
        self._tables: Dict[str, Dict[str, Record]] = defaultdict(dict)
        self._keys: Dict[Tuple[str, str, str], str] = {}

    def _check_table(self, table: str, record: Record) -> None:
        if table not in KNOWN_TABLES:
            raise RequestValidationError(f"unknown table '{table}'")
        if record.table != table:
            raise RequestValidationError(
                f"{record.kind} records belong in '{record.table}', not '{table}'", record.id
            )

    def _put(self, table: str, record: Any) -> Record:
        if not isinstance(record, Record):
            try:
                record = Record.model_validate(record)
            except ValidationError as e:
                raise RequestValidationError(f"invalid {table} record: {e}")

        self._check_table(table, record)

        if record.id in self._tables[table]:
            raise RequestValidationError(f"{table} record '{record.id}' already exists", record.id)

        if record.idempotency_key:
            key = (record.organization_id, table, record.idempotency_key)
            existing_id = self._keys.get(key)
            if existing_id is not None:
                raise DuplicateRecordError(table, record.idempotency_key, existing_id)
            self._keys[key] = record.id

        stored = record.model_copy(deep=True)
        self._tables[table][stored.id] = stored
        return stored.model_copy(deep=True)

    def seed(self, record: Any) -> Record:
        """Synchronously load a fixture record (dict or Record) into its table."""
        if not isinstance(record, Record):
            try:
                record = Record.model_validate(record)
            except ValidationError as e:
                raise RequestValidationError(f"invalid seed record: {e}")
        return self._put(record.table, record)

    async def get(self, table: str, record_id: str, organization_id: str) -> Optional[Record]:
        record = self._tables[table].get(record_id)
        if record is None:
            return None
        if record.organization_id != organization_id:
            logger.warning(
                f"Blocked cross-tenant read of {table}/{record_id} by organization {organization_id}"
            )
            return None
        return record.model_copy(deep=True)

    async def query(
        self,
        table: str,
        filters: Dict[str, Any],
        organization_id: str,
    ) -> List[Record]:
        results = [
            record.model_copy(deep=True)
            for record in self._tables[table].values()
            if record.organization_id == organization_id and matches_filters(record, filters or {})
        ]
        results.sort(key=lambda r: r.created_at)
        return results

    async def insert(self, table: str, record: Record) -> Record:
        if not getattr(record, "organization_id", None):
            raise RequestValidationError("organization_id is required on insert")
        return self._put(table, record)

    async def update(
        self,
        table: str,
        record_id: str,
        patch: Dict[str, Any],
        organization_id: str,
        expected: Optional[Dict[str, Any]] = None,
    ) -> Record:
        current = self._tables[table].get(record_id)
        if current is None or current.organization_id != organization_id:
            if current is not None:
                logger.warning(
                    f"Blocked cross-tenant write of {table}/{record_id} by organization {organization_id}"
                )
            raise NotFoundError(table, record_id)

        for field, value in (expected or {}).items():
            actual = current.field_value(field)
            if actual != value:
                raise ConcurrentModificationError(
                    f"{table} '{record_id}' has {field}='{actual}', expected '{value}'", record_id
                )

        updated = apply_patch(current, patch)
        self._tables[table][record_id] = updated
        return updated.model_copy(deep=True)

    def count(self, table: str, organization_id: Optional[str] = None) -> int:
        return sum(
            1 for record in self._tables[table].values()
            if organization_id is None or record.organization_id == organization_id
        )
