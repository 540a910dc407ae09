"""
State carried through the dispatch graph.
Each node reads the request fields and writes its outcome back.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime

from p2p_workflow.utils import utcnow


class AuditEntry(BaseModel):
    """A single entry in the dispatch audit trail."""
    timestamp: datetime
    node: str
    message: str


class DispatchState(BaseModel):
    """
    Shared state for one dispatch.

    The admission node checks the request, the routing edge picks a stage
    node, and the stage node fills in the outcome fields.
    """

    # Request
    organization_id: str
    action: str
    transaction_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[str] = None

    # Outcome
    success: Optional[bool] = None
    status_code: int = 200
    result: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    error_type: Optional[str] = None

    audit_log: List[AuditEntry] = Field(default_factory=list)

    def add_audit(self, node: str, message: str) -> None:
        """Add an entry to the audit trail."""
        self.audit_log.append(AuditEntry(timestamp=utcnow(), node=node, message=message))

    def get_audit_trail(self) -> str:
        if not self.audit_log:
            return "No audit entries."
        return "\n".join(f"[{entry.node}] {entry.message}" for entry in self.audit_log)
