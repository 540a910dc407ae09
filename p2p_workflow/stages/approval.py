"""
Approval Router
Decides whether a purchase order needs human approval, routes it to the
right approver, and dispatches approved orders to the supplier.
"""

from datetime import timedelta
from typing import Dict, List, Optional

from p2p_workflow.errors import ConcurrentModificationError
from p2p_workflow.schemas.records import Record, new_record
from p2p_workflow.schemas.results import POProcessingResult, SideEffectFailure
from p2p_workflow.stages.base import StageHandler
from p2p_workflow.utils import utcnow
from p2p_workflow.utils.logging import log_stage_action, setup_logging


logger = setup_logging(__name__)


class ApprovalRouter(StageHandler):
    stage_name = "approval"

    async def process_po(
        self,
        po_id: str,
        organization_id: str,
        metadata: Optional[Dict] = None,
    ) -> POProcessingResult:
        """
        Advance a purchase order as far as its approval state allows.

        pending_approval: route to an approver (or auto-approve small orders).
        approved: send to supplier and reserve budget with a Commitment.
        rejected: nothing to do beyond telling the requester.
        """
        po = await self._load("purchase_orders", po_id, organization_id, "purchase_order")
        failures: List[SideEffectFailure] = []
        auto_approved = False

        if po.attr("approval_status") == "pending_approval":
            if po.total_amount <= self.config.AUTO_APPROVE_LIMIT:
                po = await self._auto_approve(po, organization_id)
                auto_approved = po.attr("approved_by") == "system"
            else:
                return await self._route_for_approval(po, organization_id, failures)

        if po.attr("approval_status") == "rejected":
            await self._notify("po_rejected", po.id, {
                "po_number": po.number,
                "requester_id": po.attr("requester_id"),
            }, failures)
            log_stage_action(logger, self.stage_name, "po_rejected", {"po_id": po.id})
            return POProcessingResult(
                po_number=po.number,
                status="rejected",
                next_action="none",
                approval_status="rejected",
                po_status=po.attr("po_status"),
                approval_level=po.attr("approval_level"),
                partial_failures=failures,
            )

        return await self._send_to_supplier(po, organization_id, failures, auto_approved)

    async def _auto_approve(self, po: Record, organization_id: str) -> Record:
        try:
            po = await self.store.update(
                "purchase_orders",
                po.id,
                {"attributes": {
                    "approval_status": "approved",
                    "approved_at": utcnow(),
                    "approved_by": "system",
                }},
                organization_id,
                expected={"approval_status": "pending_approval"},
            )
            log_stage_action(logger, self.stage_name, "auto_approved", {
                "po_id": po.id,
                "amount": po.total_amount,
                "limit": self.config.AUTO_APPROVE_LIMIT,
            })
        except ConcurrentModificationError:
            # Someone decided first; act on their decision
            po = await self._load("purchase_orders", po.id, organization_id, "purchase_order")
        return po

    async def _route_for_approval(
        self,
        po: Record,
        organization_id: str,
        failures: List[SideEffectFailure],
    ) -> POProcessingResult:
        level = po.attr("approval_level") or self.config.approval_level_for(po.total_amount)
        approver_id = po.attr("approver_id") or self.config.DEFAULT_APPROVERS.get(level, "unassigned")
        submitted_at = po.attr("submitted_at") or po.created_at
        due_by = submitted_at + timedelta(hours=self.config.APPROVAL_DUE_HOURS)

        request, created = await self._insert_once(new_record(
            "approval_request",
            organization_id,
            idempotency_key=f"approval_request:{po.id}",
            from_entity_id=po.id,
            to_entity_id=approver_id,
            approval_level=level,
            due_by=due_by,
        ))

        if po.attr("approval_level") is None:
            po = await self.store.update(
                "purchase_orders", po.id, {"attributes": {"approval_level": level}}, organization_id
            )

        if created:
            await self._notify("approval_requested", po.id, {
                "po_number": po.number,
                "approver_id": approver_id,
                "approval_level": level,
                "amount": po.total_amount,
                "due_by": request.attr("due_by"),
            }, failures)
            log_stage_action(logger, self.stage_name, "approval_requested", {
                "po_id": po.id,
                "approval_level": level,
                "approver_id": approver_id,
            })
        else:
            logger.info(f"PO {po.number} already awaiting {level} approval")

        return POProcessingResult(
            po_number=po.number,
            status="pending_approval",
            next_action="await_approval",
            approval_status="pending_approval",
            po_status=po.attr("po_status"),
            approval_level=level,
            approval_request_id=request.id,
            due_by=request.attr("due_by"),
            partial_failures=failures,
        )

    async def _send_to_supplier(
        self,
        po: Record,
        organization_id: str,
        failures: List[SideEffectFailure],
        auto_approved: bool,
    ) -> POProcessingResult:
        newly_sent = False
        if po.attr("po_status") == "draft":
            try:
                po = await self.store.update(
                    "purchase_orders",
                    po.id,
                    {"attributes": {"po_status": "sent_to_supplier", "sent_at": utcnow()}},
                    organization_id,
                    expected={"po_status": "draft"},
                )
                newly_sent = True
            except ConcurrentModificationError:
                po = await self._load("purchase_orders", po.id, organization_id, "purchase_order")

        # Runs on every dispatch so a commitment that failed earlier is created on retry
        commitment = await self._side_effect(
            "commitment", po.id, lambda: self._ensure_commitment(po, organization_id), failures
        )

        if newly_sent:
            await self._notify("po_sent_to_supplier", po.id, {
                "po_number": po.number,
                "supplier_id": po.attr("supplier_id"),
                "amount": po.total_amount,
            }, failures)
            log_stage_action(logger, self.stage_name, "sent_to_supplier", {
                "po_id": po.id,
                "commitment_id": commitment.id if commitment else None,
            })

        return POProcessingResult(
            po_number=po.number,
            status="sent_to_supplier",
            next_action="await_goods_receipt",
            approval_status=po.attr("approval_status"),
            po_status=po.attr("po_status"),
            approval_level=po.attr("approval_level"),
            commitment_id=commitment.id if commitment else None,
            auto_approved=auto_approved,
            partial_failures=failures,
        )

    async def _ensure_commitment(self, po: Record, organization_id: str) -> Record:
        commitment, created = await self._insert_once(new_record(
            "commitment",
            organization_id,
            total_amount=po.total_amount,
            transaction_code=f"CMT-{po.number}",
            idempotency_key=f"commitment:{po.id}",
            po_id=po.id,
            supplier_id=po.attr("supplier_id"),
        ))
        if created:
            logger.info(f"Commitment {commitment.id} reserves {po.total_amount:.2f} for PO {po.number}")
        return commitment
