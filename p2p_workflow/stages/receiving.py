"""
Receiving & Accrual Processor
Books goods receipts: optional inventory movement, one liability accrual per
receipt, and the received quantity on the parent purchase order.
"""

from typing import Dict, List, Optional

from p2p_workflow.schemas.records import Record, new_record
from p2p_workflow.schemas.results import GRNProcessingResult, SideEffectFailure
from p2p_workflow.stages.base import StageHandler
from p2p_workflow.utils import round_money, utcnow
from p2p_workflow.utils.logging import log_stage_action, setup_logging


logger = setup_logging(__name__)


def received_value(grn: Record) -> float:
    """GRN value: its own amount, else quantity times unit price."""
    if grn.total_amount:
        return round_money(grn.total_amount)
    unit_price = grn.attr("unit_price") or 0.0
    return round_money(grn.attr("quantity_received", 0.0) * unit_price)


class ReceivingProcessor(StageHandler):
    stage_name = "receiving"

    async def process_grn(
        self,
        grn_id: str,
        organization_id: str,
        metadata: Optional[Dict] = None,
    ) -> GRNProcessingResult:
        grn = await self._load("goods_receipts", grn_id, organization_id, "goods_receipt")
        po = await self._load("purchase_orders", grn.attr("po_id"), organization_id, "purchase_order")
        failures: List[SideEffectFailure] = []

        if po.attr("po_status") != "sent_to_supplier":
            logger.warning(f"GRN {grn.number} received against PO {po.number} in status {po.attr('po_status')}")

        inventory_updated = False
        if grn.attr("update_inventory"):
            created = await self._side_effect(
                "inventory", grn.id, lambda: self._record_inventory(grn, po, organization_id), failures
            )
            inventory_updated = bool(created)

        value = received_value(grn)
        accrual, accrual_created = await self._insert_once(new_record(
            "accrual",
            organization_id,
            total_amount=value,
            transaction_code=f"ACR-{grn.number}",
            idempotency_key=f"accrual:{grn.id}",
            po_id=po.id,
            grn_id=grn.id,
            supplier_id=po.attr("supplier_id"),
        ))

        if grn.attr("processed_at") is None:
            grn = await self.store.update(
                "goods_receipts", grn.id, {"attributes": {"processed_at": utcnow()}}, organization_id
            )
        po_updated = await self._update_po_receipt(po, organization_id)

        if accrual_created:
            log_stage_action(logger, self.stage_name, "accrual_created", {
                "grn_id": grn.id,
                "po_id": po.id,
                "accrual_id": accrual.id,
                "amount": accrual.total_amount,
            })
        else:
            logger.info(f"GRN {grn.number} already accrued as {accrual.id}; nothing re-booked")

        return GRNProcessingResult(
            grn_number=grn.number,
            quantity_received=grn.attr("quantity_received", 0.0),
            accrual_created=accrual_created,
            accrual_id=accrual.id,
            accrual_amount=accrual.total_amount,
            inventory_updated=inventory_updated,
            po_updated=po_updated,
            partial_failures=failures,
        )

    async def _record_inventory(self, grn: Record, po: Record, organization_id: str) -> bool:
        """Write the stock movement; the key is GRN id plus movement type."""
        movement_type = "goods_receipt"
        _, created = await self._insert_once(new_record(
            "inventory_movement",
            organization_id,
            idempotency_key=f"{grn.id}:{movement_type}",
            grn_id=grn.id,
            po_id=po.id,
            item_id=grn.attr("item_id"),
            warehouse_id=grn.attr("warehouse_id"),
            quantity=grn.attr("quantity_received", 0.0),
            movement_type=movement_type,
        ))
        return created

    async def _update_po_receipt(self, po: Record, organization_id: str) -> bool:
        """
        Recompute the PO's received quantity from its processed receipts.

        Summing instead of incrementing keeps reprocessing from double counting.
        """
        receipts = await self.store.query("goods_receipts", {"po_id": po.id}, organization_id)
        received = sum(
            r.attr("quantity_received", 0.0) for r in receipts if r.attr("processed_at") is not None
        )
        ordered = po.attr("ordered_quantity")
        if received <= 0:
            status = "not_received"
        elif ordered is None or received >= ordered:
            status = "received"
        else:
            status = "partially_received"

        if received == po.attr("received_quantity") and status == po.attr("receipt_status"):
            return False

        await self.store.update(
            "purchase_orders",
            po.id,
            {"attributes": {"received_quantity": received, "receipt_status": status}},
            organization_id,
        )
        return True
