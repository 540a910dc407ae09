"""
Anomaly Detector
Scans recent purchase orders and payments for duplicate orders, off-contract
spend and payment outliers. Writes only Anomaly records.
"""

from collections import defaultdict
from datetime import datetime, timedelta
from statistics import mean
from typing import Any, Dict, List, Optional

from p2p_workflow.errors import RequestValidationError
from p2p_workflow.schemas.records import Record, new_record
from p2p_workflow.schemas.results import AnomalyFinding, AnomalyReport
from p2p_workflow.stages.base import StageHandler
from p2p_workflow.utils import round_money, safe_divide, to_naive_utc, utcnow
from p2p_workflow.utils.confidence import clamp_confidence, interpret_confidence
from p2p_workflow.utils.logging import log_anomaly, log_stage_action, setup_logging


logger = setup_logging(__name__)

DUPLICATE_PO_CONFIDENCE = 0.9
MAVERICK_CONFIDENCE = 0.85
OUTLIER_CONFIDENCE = 0.8

RECOMMENDATIONS = {
    "duplicate_po": "Review suspected duplicate purchase orders and cancel redundant ones before goods are received",
    "maverick_spending": "Establish contracts for suppliers exceeding the maverick spend threshold",
    "unusual_payment_amount": "Verify unusually large payments against their invoices and approvals",
}


def parse_as_of(value: Any) -> datetime:
    if value is None or value == "":
        return utcnow()
    if isinstance(value, datetime):
        return to_naive_utc(value)
    try:
        return to_naive_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        raise RequestValidationError(f"as_of '{value}' is not an ISO timestamp")


def make_finding(
    anomaly_type: str,
    confidence: float,
    entity: Record,
    description: str,
    detail: Dict[str, Any],
    fingerprint: str,
) -> AnomalyFinding:
    confidence = clamp_confidence(confidence)
    level, guidance = interpret_confidence(confidence)
    return AnomalyFinding(
        type=anomaly_type,
        confidence=confidence,
        confidence_level=level,
        guidance=guidance,
        entity_table=entity.table,
        entity_id=entity.id,
        description=description,
        detail=detail,
        fingerprint=fingerprint,
    )


def find_duplicate_pos(pos: List[Record], window_seconds: float) -> List[AnomalyFinding]:
    """
    Group orders by supplier and amount, then chain creation times.

    Orders join a cluster while each is within ``window_seconds`` of the
    previous one; any cluster of two or more is one finding.
    """
    groups: Dict[tuple, List[Record]] = defaultdict(list)
    for po in pos:
        groups[(po.attr("supplier_id"), round_money(po.total_amount))].append(po)

    findings = []
    for (supplier_id, amount), members in groups.items():
        members.sort(key=lambda po: po.created_at)
        clusters: List[List[Record]] = []
        for po in members:
            if clusters and (po.created_at - clusters[-1][-1].created_at).total_seconds() <= window_seconds:
                clusters[-1].append(po)
            else:
                clusters.append([po])

        for cluster in clusters:
            if len(cluster) < 2:
                continue
            first = cluster[0]
            span = (cluster[-1].created_at - first.created_at).total_seconds()
            findings.append(make_finding(
                "duplicate_po",
                DUPLICATE_PO_CONFIDENCE,
                first,
                f"{len(cluster)} purchase orders for {amount:.2f} from supplier {supplier_id} within {span:.0f}s",
                {
                    "supplier_id": supplier_id,
                    "amount": amount,
                    "po_ids": [po.id for po in cluster],
                    "po_numbers": [po.number for po in cluster],
                    "count": len(cluster),
                    "span_seconds": span,
                },
                f"duplicate_po:{first.id}",
            ))
    return findings


def find_maverick_spend(pos: List[Record], threshold: float) -> List[AnomalyFinding]:
    findings = []
    for po in pos:
        if po.total_amount > threshold and not po.attr("contract_reference"):
            findings.append(make_finding(
                "maverick_spending",
                MAVERICK_CONFIDENCE,
                po,
                f"PO {po.number} for {po.total_amount:.2f} has no contract reference",
                {
                    "supplier_id": po.attr("supplier_id"),
                    "amount": po.total_amount,
                    "threshold": threshold,
                },
                f"maverick_spending:{po.id}",
            ))
    return findings


def find_payment_outliers(
    recent: List[Record],
    trailing: List[Record],
    factor: float,
    trailing_days: int,
) -> List[AnomalyFinding]:
    """Payments in the window above ``factor`` times the trailing average of the other payments."""
    findings = []
    for payment in recent:
        others = [p.total_amount for p in trailing if p.id != payment.id]
        if not others:
            continue
        average = mean(others)
        if average <= 0:
            continue
        variance_factor = safe_divide(payment.total_amount, average)
        if variance_factor > factor:
            findings.append(make_finding(
                "unusual_payment_amount",
                OUTLIER_CONFIDENCE,
                payment,
                f"Payment {payment.id} of {payment.total_amount:.2f} is {variance_factor:.1f}x "
                f"the {trailing_days}-day average of {average:.2f}",
                {
                    "amount": payment.total_amount,
                    "trailing_average": round_money(average),
                    "variance_factor": round(variance_factor, 2),
                    "invoice_id": payment.attr("invoice_id"),
                },
                f"unusual_payment_amount:{payment.id}",
            ))
    return findings


class AnomalyDetector(StageHandler):
    stage_name = "anomalies"

    async def check_anomalies(
        self,
        organization_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AnomalyReport:
        metadata = metadata or {}
        period_days = metadata.get("check_period_days")
        try:
            period_days = int(self.config.ANOMALY_PERIOD_DAYS if period_days is None else period_days)
        except (TypeError, ValueError):
            raise RequestValidationError(
                f"check_period_days '{metadata.get('check_period_days')}' is not an integer"
            )
        if period_days <= 0:
            raise RequestValidationError("check_period_days must be positive")

        as_of = parse_as_of(metadata.get("as_of"))
        since = as_of - timedelta(days=period_days)
        trailing_since = as_of - timedelta(days=self.config.OUTLIER_TRAILING_DAYS)

        def within(record: Record, start: datetime) -> bool:
            return start <= record.created_at <= as_of

        pos = [po for po in await self.store.query("purchase_orders", {}, organization_id) if within(po, since)]
        payments = [
            p for p in await self.store.query("payments", {}, organization_id)
            if p.attr("payment_status") != "failed"
        ]
        recent_payments = [p for p in payments if within(p, since)]
        trailing_payments = [p for p in payments if within(p, trailing_since)]

        findings = (
            find_duplicate_pos(pos, self.config.DUPLICATE_PO_WINDOW_SECONDS)
            + find_maverick_spend(pos, self.config.MAVERICK_THRESHOLD)
            + find_payment_outliers(
                recent_payments,
                trailing_payments,
                self.config.OUTLIER_FACTOR,
                self.config.OUTLIER_TRAILING_DAYS,
            )
        )

        recorded = 0
        for finding in findings:
            anomaly, created = await self._insert_once(new_record(
                "anomaly",
                organization_id,
                idempotency_key=f"anomaly:{finding.fingerprint}",
                anomaly_type=finding.type,
                confidence=finding.confidence,
                entity_table=finding.entity_table,
                entity_id=finding.entity_id,
                description=finding.description,
                detail=finding.detail,
                fingerprint=finding.fingerprint,
            ))
            finding.anomaly_id = anomaly.id
            if created:
                recorded += 1
                log_anomaly(logger, finding.type, finding.entity_id, finding.confidence, finding.description)

        summary_by_type: Dict[str, int] = defaultdict(int)
        summary_by_confidence: Dict[str, int] = defaultdict(int)
        for finding in findings:
            summary_by_type[finding.type] += 1
            summary_by_confidence[finding.confidence_level] += 1

        recommendations = [RECOMMENDATIONS[t] for t in RECOMMENDATIONS if t in summary_by_type]
        if not recommendations:
            recommendations.append("No anomalies detected; continue routine monitoring")

        log_stage_action(logger, self.stage_name, "check_completed", {
            "period_days": period_days,
            "anomalies_detected": len(findings),
            "anomalies_recorded": recorded,
        })

        return AnomalyReport(
            period_days=period_days,
            transactions_analyzed=len(pos) + len(recent_payments),
            anomalies_detected=len(findings),
            anomalies_recorded=recorded,
            anomalies=findings,
            summary_by_type=dict(summary_by_type),
            summary_by_confidence=dict(summary_by_confidence),
            recommendations=recommendations,
        )
