"""
Shared plumbing for stage handlers.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from p2p_workflow.config import Config, get_config
from p2p_workflow.errors import DuplicateRecordError, NotFoundError, PartialFailureError
from p2p_workflow.notifications import LoggingNotificationSink, NotificationSink
from p2p_workflow.schemas.records import Record
from p2p_workflow.schemas.results import SideEffectFailure
from p2p_workflow.store.base import RecordStore
from p2p_workflow.utils.logging import log_partial_failure, setup_logging


logger = setup_logging(__name__)


class StageHandler:
    """
    Base class for the workflow stages.

    Collaborators are injected; nothing here keeps state between calls
    apart from those collaborators.
    """

    stage_name = "stage"

    def __init__(
        self,
        store: RecordStore,
        notifier: Optional[NotificationSink] = None,
        config: Optional[Config] = None,
    ):
        self.store = store
        self.notifier = notifier or LoggingNotificationSink()
        self.config = config or get_config()

    async def _load(
        self,
        table: str,
        record_id: Optional[str],
        organization_id: str,
        kind: Optional[str] = None,
    ) -> Record:
        """Fetch a tenant's record or raise NotFoundError."""
        if not record_id:
            raise NotFoundError(table, str(record_id))
        record = await self.store.get(table, record_id, organization_id)
        if record is None or (kind is not None and record.kind != kind):
            raise NotFoundError(table, record_id)
        return record

    async def _insert_once(self, record: Record) -> Tuple[Record, bool]:
        """
        Insert a record guarded by its idempotency key.

        Returns the stored record and whether this call created it.
        """
        try:
            return await self.store.insert(record.table, record), True
        except DuplicateRecordError as e:
            existing = await self.store.get(e.table, e.existing_id, record.organization_id)
            if existing is None:
                raise
            logger.debug(f"Reusing {e.table}/{existing.id} for key '{e.idempotency_key}'")
            return existing, False

    async def _side_effect(
        self,
        side_effect: str,
        entity_id: str,
        operation: Callable[[], Awaitable[Any]],
        failures: List[SideEffectFailure],
    ) -> Any:
        """
        Run a non-critical write.

        A failure is logged and appended to ``failures`` so the caller can
        surface it, unless the side effect is configured strict, in which
        case PartialFailureError fails the whole call.
        """
        try:
            return await operation()
        except Exception as e:
            error = getattr(e, "message", None) or str(e) or type(e).__name__
            if self.config.is_strict(side_effect):
                raise PartialFailureError(side_effect, entity_id, error) from e
            log_partial_failure(logger, self.stage_name, side_effect, entity_id, error)
            failures.append(SideEffectFailure(side_effect=side_effect, entity_id=entity_id, error=error))
            return None

    async def _notify(
        self,
        kind: str,
        entity_id: str,
        payload: Dict[str, Any],
        failures: Optional[List[SideEffectFailure]] = None,
    ) -> None:
        """Emit a notification intent; never fails the caller."""
        try:
            await self.notifier.notify(kind, entity_id, payload)
        except Exception as e:
            error = str(e) or type(e).__name__
            log_partial_failure(logger, self.stage_name, "notification", entity_id, error)
            if failures is not None:
                failures.append(SideEffectFailure(side_effect="notification", entity_id=entity_id, error=error))
