"""
Decision Engine Tests
=====================
Pacing bands and boundaries, budget health, ROI trend, anomalies,
escrow violations, insights and the merged report.
"""

from datetime import timedelta

import pytest

from escrow_vault.decision_engine import (
    AlertSeverity,
    AlertType,
    CampaignSignal,
    DecisionEngine,
    PacingStatus,
    analyze_budget_health,
    analyze_pacing,
    analyze_roi_trend,
    detect_anomalies,
    detect_escrow_violations,
    generate_insights,
)
from escrow_vault.funding_ledger import CampaignFundingRecord
from escrow_vault.policy_engine import PolicyEngine

from conftest import END, NOW, SAMPLE_SNAPSHOT, dashboard_campaign


def _signal(percent_used=50, **overrides):
    return CampaignSignal.from_dict(dashboard_campaign(percent_used, **overrides))


# ── Pacing ───────────────────────────────────────────────────────

class TestPacing:

    def test_on_track(self):
        result = analyze_pacing(_signal(50), NOW)
        assert result.status == PacingStatus.ON_TRACK
        assert result.time_percent == 50.0
        assert result.alert is None

    @pytest.mark.parametrize("used,status,severity", [
        (60, PacingStatus.ON_TRACK, None),
        (60.01, PacingStatus.OVERSPENDING, AlertSeverity.WARNING),
        (75, PacingStatus.OVERSPENDING, AlertSeverity.WARNING),
        (75.01, PacingStatus.OVERSPENDING, AlertSeverity.CRITICAL),
        (40, PacingStatus.ON_TRACK, None),
        (39.99, PacingStatus.UNDERSPENDING, AlertSeverity.INFO),
        (25, PacingStatus.UNDERSPENDING, AlertSeverity.INFO),
        (24.99, PacingStatus.UNDERSPENDING, AlertSeverity.WARNING),
    ])
    def test_boundaries(self, used, status, severity):
        result = analyze_pacing(_signal(used), NOW)
        assert result.status == status
        if severity is None:
            assert result.alert is None
        else:
            assert result.alert.severity == severity

    def test_eighty_percent_spent_is_critical(self):
        result = analyze_pacing(_signal(80), NOW)
        assert result.alert.alert_type == AlertType.PACING_OVERSPEND
        assert result.alert.severity == AlertSeverity.CRITICAL
        assert result.alert.title == "Spring Launch overspending"
        assert result.alert.message == "30% ahead of schedule"
        assert result.alert.metric == pytest.approx(30.0)

    def test_underspend_message(self):
        result = analyze_pacing(_signal(10), NOW)
        assert result.alert.message == "40% behind schedule"

    def test_time_clamped_after_end(self):
        result = analyze_pacing(_signal(100), NOW + timedelta(days=30))
        assert result.time_percent == 100.0
        assert result.status == PacingStatus.ON_TRACK

    def test_time_clamped_before_start(self):
        result = analyze_pacing(_signal(0), NOW - timedelta(days=30))
        assert result.time_percent == 0.0

    @pytest.mark.parametrize("overrides", [
        {"startDate": None},
        {"endDate": None},
        {"budget": None},
        {"startDate": "not-a-date"},
        {"startDate": END},
    ])
    def test_missing_data_is_unknown(self, overrides):
        result = analyze_pacing(_signal(90, **overrides), NOW)
        assert result.status == PacingStatus.UNKNOWN
        assert result.alert is None

    def test_custom_bands(self):
        result = analyze_pacing(_signal(56), NOW, on_track_band=5, severe_band=8)
        assert result.status == PacingStatus.OVERSPENDING
        assert result.alert.severity == AlertSeverity.WARNING


# ── Budget health ────────────────────────────────────────────────

class TestBudgetHealth:

    def _campaigns(self, *percents):
        return [
            CampaignSignal(f"c{i}", f"Camp {i}", "Active", budget_total=5000, percent_used=p)
            for i, p in enumerate(percents)
        ]

    def test_low_balance_warning(self):
        health = analyze_budget_health(self._campaigns(10, 10), 1500, NOW)
        assert len(health.alerts) == 1
        assert health.alerts[0].severity == AlertSeverity.WARNING
        assert health.alerts[0].title == "Low available balance"
        assert health.alerts[0].metric == pytest.approx(15.0)

    def test_low_balance_critical(self):
        health = analyze_budget_health(self._campaigns(10, 10), 500, NOW)
        assert health.alerts[0].severity == AlertSeverity.CRITICAL

    def test_healthy_balance(self):
        health = analyze_budget_health(self._campaigns(10, 10), 5000, NOW)
        assert health.alerts == []
        assert health.health_score == 50.0

    def test_depleted_and_low(self):
        health = analyze_budget_health(self._campaigns(100, 95, 89), 10000, NOW)
        types = [(a.alert_type, a.severity, a.campaign_id) for a in health.alerts]
        assert types == [
            (AlertType.BUDGET_DEPLETED, AlertSeverity.CRITICAL, "c0"),
            (AlertType.BUDGET_LOW, AlertSeverity.WARNING, "c1"),
        ]
        assert health.alerts[1].message == "5% budget remaining"

    def test_score_capped_and_zero(self):
        assert analyze_budget_health(self._campaigns(0), 99999, NOW).health_score == 100.0
        assert analyze_budget_health(self._campaigns(0), 0, NOW).health_score == 0.0

    def test_no_commitments(self):
        health = analyze_budget_health([], 0, NOW)
        assert health.alerts == []
        assert health.committed == 0


# ── ROI ──────────────────────────────────────────────────────────

class TestRoiTrend:

    def _m(self, value):
        return {"overallROI": {"value": value}}

    def test_declining(self):
        trend = analyze_roi_trend(self._m(2.0), self._m(3.0), NOW)
        assert trend.trend == "down"
        assert trend.alert.alert_type == AlertType.ROI_DECLINING
        assert trend.alert.severity == AlertSeverity.WARNING
        assert trend.alert.message == "Down 33% from previous period"

    def test_improving(self):
        trend = analyze_roi_trend(self._m(4.0), self._m(3.0), NOW)
        assert trend.trend == "up"
        assert trend.alert.severity == AlertSeverity.SUCCESS

    def test_small_change_no_alert(self):
        trend = analyze_roi_trend(self._m(3.3), self._m(3.0), NOW)
        assert trend.alert is None

    def test_no_previous_is_stable(self):
        trend = analyze_roi_trend(self._m(3.0), None, NOW)
        assert trend.trend == "stable"
        assert trend.change_percent == 0
        assert trend.alert is None

    def test_zero_previous_guarded(self):
        trend = analyze_roi_trend(self._m(2.0), self._m(0), NOW)
        assert trend.change_percent == 0
        assert trend.alert is None

    def test_no_metrics(self):
        assert analyze_roi_trend(None, None, NOW).current == 0.0


# ── Anomalies ────────────────────────────────────────────────────

class TestAnomalies:

    def test_no_creators(self):
        alerts = detect_anomalies([_signal(50, creatorCount=0)], NOW)
        assert len(alerts) == 1
        assert alerts[0].alert_type == AlertType.CREATOR_INACTIVE
        assert alerts[0].title == "Spring Launch has no creators"

    def test_at_risk_reason_verbatim(self):
        alerts = detect_anomalies([_signal(50, isAtRisk=True, riskReason="Creator missed deadline")], NOW)
        assert alerts[0].alert_type == AlertType.CAMPAIGN_AT_RISK
        assert alerts[0].severity == AlertSeverity.CRITICAL
        assert alerts[0].message == "Creator missed deadline"

    def test_at_risk_default_reason(self):
        alerts = detect_anomalies([_signal(50, isAtRisk=True)], NOW)
        assert alerts[0].message == "Campaign requires attention"

    def test_pacing_only_for_active(self):
        assert detect_anomalies([_signal(90, status="Paused")], NOW) == []
        assert len(detect_anomalies([_signal(90)], NOW)) == 1

    def test_escrow_violation(self):
        record = CampaignFundingRecord("c9", "Over", 500, funded_amount=200, released_amount=300)
        alerts = detect_escrow_violations([record], NOW)
        assert alerts[0].alert_type == AlertType.RELEASE_EXCEEDS_ESCROW
        assert alerts[0].severity == AlertSeverity.CRITICAL
        assert alerts[0].metric == 100

    def test_no_violation(self):
        record = CampaignFundingRecord("c9", "Fine", 500, funded_amount=300, released_amount=300)
        assert detect_escrow_violations([record], NOW) == []


# ── Insights ─────────────────────────────────────────────────────

class TestInsights:

    def test_batch_review(self):
        insights = generate_insights([], roi=0, available=0, pending_approvals=7, now=NOW)
        assert insights[0].title == "7 content awaiting review"
        assert insights[0].message == "Consider batch reviewing to unblock creators"
        assert insights[0].action_route == "/brand/approvals"

    def test_small_queue(self):
        insights = generate_insights([], roi=0, available=0, pending_approvals=3, now=NOW)
        assert insights[0].message == "Review to maintain campaign momentum"

    def test_all_four_in_priority_order(self):
        campaigns = [_signal(10), _signal(20, id="c2")]
        insights = generate_insights(campaigns, roi=3.5, available=25000, pending_approvals=1, now=NOW)
        assert [i.insight_type for i in insights] == ["action", "success", "optimization", "opportunity"]
        assert insights[1].title == "Exceptional 3.5x ROAS"
        assert insights[2].title == "2 campaigns underspending"
        assert insights[2].campaign_ids == ["c1", "c2"]
        assert insights[3].title == "$25,000 available"

    def test_single_underspender_wording(self):
        insights = generate_insights([_signal(10)], roi=0, available=0, pending_approvals=0, now=NOW)
        assert insights[0].title == "1 campaign underspending"

    def test_nothing_to_say(self):
        assert generate_insights([_signal(50)], roi=3.0, available=10000, pending_approvals=0, now=NOW) == []


# ── Engine ───────────────────────────────────────────────────────

class TestDecisionEngine:

    def setup_method(self):
        self.engine = DecisionEngine(PolicyEngine())

    def _evaluate(self, **kwargs):
        data = {
            "metrics": SAMPLE_SNAPSHOT["metrics"],
            "campaigns": SAMPLE_SNAPSHOT["campaigns"],
            "vault": SAMPLE_SNAPSHOT["vault"],
            "approvals": SAMPLE_SNAPSHOT["approvals"],
            "previous_metrics": SAMPLE_SNAPSHOT["previous_metrics"],
            "now": NOW,
        }
        data.update(kwargs)
        return self.engine.evaluate(**data)

    def test_sorted_by_severity_stable(self):
        records = [CampaignFundingRecord.from_dict(c) for c in SAMPLE_SNAPSHOT["campaigns"]]
        report = self._evaluate(funding_records=records)
        assert [(a.alert_type, a.campaign_id) for a in report.alerts] == [
            (AlertType.PACING_OVERSPEND, "c1"),
            (AlertType.CAMPAIGN_AT_RISK, "c2"),
            (AlertType.RELEASE_EXCEEDS_ESCROW, "c2"),
            (AlertType.ROI_DECLINING, None),
            (AlertType.CREATOR_INACTIVE, "c2"),
        ]
        assert report.critical_count == 3
        assert report.warning_count == 2
        assert report.has_urgent_items

    def test_pacing_alert_appears_once(self):
        report = self._evaluate()
        pacing = [a for a in report.alerts if a.alert_type == AlertType.PACING_OVERSPEND]
        assert len(pacing) == 1

    def test_insights(self):
        report = self._evaluate()
        assert [i.priority for i in report.insights] == [1]

    def test_malformed_campaign_does_not_suppress_others(self):
        campaigns = [
            {"id": "bad", "budget": {"total": "lots"}},
            {"title": "no id"},
            dashboard_campaign(80),
        ]
        report = self._evaluate(campaigns=campaigns, previous_metrics=None)
        assert report.skipped_campaigns == ["bad", "?"]
        assert [a.alert_type for a in report.alerts] == [AlertType.PACING_OVERSPEND]

    def test_alert_id_format(self):
        report = self._evaluate(campaigns=[dashboard_campaign(80)], previous_metrics=None)
        millis = int(NOW.timestamp() * 1000)
        assert report.alerts[0].alert_id == f"pacing_overspend-c1-{millis}"

    def test_global_alert_id(self):
        report = self._evaluate(campaigns=[])
        assert report.alerts[0].alert_id.startswith("roi_declining-global-")

    def test_empty_inputs(self):
        report = DecisionEngine().evaluate(now=NOW)
        assert report.alerts == []
        assert report.insights == []
        assert not report.has_urgent_items

    def test_to_dict_and_summary(self):
        report = self._evaluate()
        d = report.to_dict()
        assert d["critical_count"] == report.critical_count
        assert d["roi"]["trend"] == "down"
        assert d["alerts"][0]["severity"] == "critical"
        assert "DECISION ENGINE" in report.summary()

    def test_policy_thresholds_applied(self):
        engine = DecisionEngine(PolicyEngine.from_dict({"pacing": {"on_track_band": 40, "severe_band": 50}}))
        report = engine.evaluate(campaigns=[dashboard_campaign(80)], vault={"available": 1000}, now=NOW)
        assert report.alerts == []
