"""
Record store adapters.
"""

from p2p_workflow.store.base import RecordStore
from p2p_workflow.store.memory import InMemoryRecordStore

__all__ = ["RecordStore", "InMemoryRecordStore"]
