"""
Tests for the anomaly detector (check_anomalies).
"""

from datetime import timedelta

import pytest

from p2p_workflow.errors import RequestValidationError


ORG = "org-a"
OTHER_ORG = "org-b"


class TestDuplicatePurchaseOrders:

    @pytest.mark.asyncio
    async def test_three_pos_within_a_minute_give_one_finding(self, detector, seed_po, now):
        base = now - timedelta(hours=1)
        for i, offset in enumerate((0, 20, 55)):
            seed_po(f"PO-{i}", amount=2000.0, created_at=base + timedelta(seconds=offset))

        report = await detector.check_anomalies(ORG, {})

        duplicates = [a for a in report.anomalies if a.type == "duplicate_po"]
        assert len(duplicates) == 1
        assert duplicates[0].confidence == 0.9
        assert duplicates[0].confidence_level == "HIGH"
        assert "investigate" in duplicates[0].guidance.lower()
        assert duplicates[0].detail["count"] == 3
        assert sorted(duplicates[0].detail["po_ids"]) == ["PO-0", "PO-1", "PO-2"]

    @pytest.mark.asyncio
    async def test_pos_far_apart_are_not_duplicates(self, detector, seed_po, now):
        seed_po("PO-0", amount=2000.0, created_at=now - timedelta(hours=3))
        seed_po("PO-1", amount=2000.0, created_at=now - timedelta(hours=1))
        report = await detector.check_anomalies(ORG, {})
        assert report.summary_by_type.get("duplicate_po", 0) == 0

    @pytest.mark.asyncio
    async def test_different_suppliers_are_not_duplicates(self, detector, seed_po, now):
        seed_po("PO-0", amount=2000.0, supplier_id="SUP-1", created_at=now - timedelta(seconds=30))
        seed_po("PO-1", amount=2000.0, supplier_id="SUP-2", created_at=now - timedelta(seconds=20))
        report = await detector.check_anomalies(ORG, {})
        assert report.anomalies_detected == 0


class TestMaverickSpend:

    @pytest.mark.asyncio
    async def test_large_po_without_contract_flagged(self, detector, seed_po):
        seed_po("PO-1", amount=7500.0)
        seed_po("PO-2", amount=7500.0, supplier_id="SUP-2", contract_reference="CTR-9")
        seed_po("PO-3", amount=4000.0, supplier_id="SUP-3")

        report = await detector.check_anomalies(ORG, {})

        maverick = [a for a in report.anomalies if a.type == "maverick_spending"]
        assert [a.entity_id for a in maverick] == ["PO-1"]
        assert maverick[0].confidence == 0.85
        assert any("contract" in r.lower() for r in report.recommendations)


class TestPaymentOutliers:

    @pytest.mark.asyncio
    async def test_payment_above_three_times_average(self, detector, seed_payment, now):
        for i in range(3):
            seed_payment(f"PAY-{i}", 100.0, created_at=now - timedelta(days=40 + i))
        seed_payment("PAY-BIG", 1000.0, created_at=now - timedelta(days=1))

        report = await detector.check_anomalies(ORG, {})

        outliers = [a for a in report.anomalies if a.type == "unusual_payment_amount"]
        assert len(outliers) == 1
        assert outliers[0].entity_id == "PAY-BIG"
        assert outliers[0].confidence == 0.8
        assert outliers[0].guidance == "Likely issue, review within the current cycle"
        assert outliers[0].detail["variance_factor"] == 10.0

    @pytest.mark.asyncio
    async def test_failed_payments_excluded_from_average(self, detector, seed_payment, now):
        seed_payment("PAY-0", 300.0, created_at=now - timedelta(days=10))
        seed_payment("PAY-1", 0.0, status="failed", created_at=now - timedelta(days=9))
        seed_payment("PAY-2", 800.0, created_at=now - timedelta(days=1))
        report = await detector.check_anomalies(ORG, {})
        assert report.summary_by_type.get("unusual_payment_amount", 0) == 0

    @pytest.mark.asyncio
    async def test_no_history_no_outlier(self, detector, seed_payment):
        seed_payment("PAY-1", 50000.0)
        report = await detector.check_anomalies(ORG, {})
        assert report.anomalies_detected == 0


class TestDetectorBehaviour:

    @pytest.mark.asyncio
    async def test_findings_persisted_once(self, detector, store, seed_po):
        seed_po("PO-1", amount=9000.0)

        first = await detector.check_anomalies(ORG, {})
        second = await detector.check_anomalies(ORG, {})

        assert first.anomalies_recorded == 1
        assert second.anomalies_detected == 1
        assert second.anomalies_recorded == 0
        assert second.anomalies[0].anomaly_id == first.anomalies[0].anomaly_id
        assert store.count("anomalies") == 1

    @pytest.mark.asyncio
    async def test_never_mutates_transactions(self, detector, store, seed_po, now):
        for i in range(2):
            seed_po(f"PO-{i}", amount=9000.0, created_at=now - timedelta(seconds=10 * i))
        before = [po.model_dump() for po in await store.query("purchase_orders", {}, ORG)]

        await detector.check_anomalies(ORG, {})

        after = [po.model_dump() for po in await store.query("purchase_orders", {}, ORG)]
        assert before == after

    @pytest.mark.asyncio
    async def test_lookback_window(self, detector, seed_po, now):
        seed_po("PO-OLD", amount=9000.0, created_at=now - timedelta(days=45))
        assert (await detector.check_anomalies(ORG, {})).anomalies_detected == 0
        assert (await detector.check_anomalies(ORG, {"check_period_days": 60})).anomalies_detected == 1

    @pytest.mark.asyncio
    async def test_other_tenants_not_scanned(self, detector, store, seed_po):
        seed_po("PO-1", amount=9000.0, org=OTHER_ORG)
        report = await detector.check_anomalies(ORG, {})
        assert report.transactions_analyzed == 0
        assert store.count("anomalies") == 0

    @pytest.mark.asyncio
    async def test_summaries_and_clean_report(self, detector, seed_po):
        clean = await detector.check_anomalies(ORG, {})
        assert clean.anomalies == []
        assert clean.period_days == 30
        assert clean.recommendations == ["No anomalies detected; continue routine monitoring"]

        seed_po("PO-1", amount=9000.0)
        report = await detector.check_anomalies(ORG, {})
        assert report.summary_by_type == {"maverick_spending": 1}
        assert report.summary_by_confidence == {"MEDIUM": 1}

    @pytest.mark.asyncio
    async def test_invalid_period(self, detector):
        with pytest.raises(RequestValidationError):
            await detector.check_anomalies(ORG, {"check_period_days": 0})
        with pytest.raises(RequestValidationError):
            await detector.check_anomalies(ORG, {"as_of": "yesterday"})
