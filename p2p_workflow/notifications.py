"""
Notification intents.

Stages only announce that something should be communicated; delivery
belongs to whatever sink is injected.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List

from p2p_workflow.utils import utcnow
from p2p_workflow.utils.logging import setup_logging


logger = setup_logging(__name__)


class NotificationSink(ABC):
    """Receives fire-and-forget notification intents."""

    @abstractmethod
    async def notify(self, kind: str, entity_id: str, payload: Dict[str, Any]) -> None:
        ...


class LoggingNotificationSink(NotificationSink):
    """Logs each intent and keeps it in ``sent`` for inspection."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    async def notify(self, kind: str, entity_id: str, payload: Dict[str, Any]) -> None:
        intent = {
            "kind": kind,
            "entity_id": entity_id,
            "payload": dict(payload or {}),
            "at": utcnow(),
        }
        self.sent.append(intent)
        logger.info(f"Notification intent {kind} for {entity_id}")

    def of_kind(self, kind: str) -> List[Dict[str, Any]]:
        return [intent for intent in self.sent if intent["kind"] == kind]
