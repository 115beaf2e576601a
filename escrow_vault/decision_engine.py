"""
Decision Engine
===============
Stateless alert and insight synthesis for the brand dashboard.

Inputs (one refresh cycle):
  metrics           performance metrics (overallROI.value)
  campaigns         campaign list with dates, budget usage, creators, risk flags
  vault             vault summary (available balance)
  approvals         approval queue (totalPending)
  previous_metrics  previous-period metrics for the ROI trend
  funding_records   optional escrow funding records (release violations)

Sub-analyses:
  1. Pacing         budget spent % vs time elapsed %
  2. Budget health  available vs committed, per-campaign depletion
  3. ROI trend      current vs previous period
  4. Anomalies      pacing, active campaigns without creators, at-risk flags
  5. Escrow         releases exceeding escrow
  6. Insights       review queue, high ROAS, underspenders, idle balance

Alerts are merged and stably sorted Critical -> Warning -> Info -> Success.
Nothing here is persisted; every call recomputes from its inputs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional

from escrow_vault.funding_ledger import CampaignFundingRecord
from escrow_vault.policy_engine import PolicyEngine
from escrow_vault.transaction_ledger import parse_timestamp
from escrow_vault._icons import SEVERITY_ICONS


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class AlertSeverity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"
    SUCCESS = "success"


SEVERITY_ORDER = {
    AlertSeverity.CRITICAL: 0,
    AlertSeverity.WARNING: 1,
    AlertSeverity.INFO: 2,
    AlertSeverity.SUCCESS: 3,
}


class AlertType(str, Enum):
    PACING_UNDERSPEND = "pacing_underspend"
    PACING_OVERSPEND = "pacing_overspend"
    BUDGET_LOW = "budget_low"
    BUDGET_DEPLETED = "budget_depleted"
    CAMPAIGN_AT_RISK = "campaign_at_risk"
    ROI_DECLINING = "roi_declining"
    ROI_IMPROVING = "roi_improving"
    CREATOR_INACTIVE = "creator_inactive"
    RELEASE_EXCEEDS_ESCROW = "release_exceeds_escrow"


class PacingStatus(str, Enum):
    ON_TRACK = "On Track"
    OVERSPENDING = "Overspending"
    UNDERSPENDING = "Underspending"
    UNKNOWN = "Unknown"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

@dataclass
class Alert:
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    timestamp: datetime
    campaign_id: Optional[str] = None
    metric: Optional[float] = None

    @property
    def alert_id(self) -> str:
        """Display key: type-campaign-millis. Not a dedup key across refreshes."""
        millis = int(self.timestamp.timestamp() * 1000)
        return f"{self.alert_type.value}-{self.campaign_id or 'global'}-{millis}"

    @property
    def icon(self) -> str:
        return SEVERITY_ICONS.get(self.severity.value, "[?]")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.alert_id,
            "type": self.alert_type.value,
            "severity": self.severity.value,
            "title": self.title,
            "message": self.message,
            "campaign_id": self.campaign_id,
            "metric": self.metric,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class Insight:
    insight_type: str  # action, success, optimization, opportunity
    priority: int
    title: str
    message: str
    action_label: Optional[str] = None
    action_route: Optional[str] = None
    campaign_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "type": self.insight_type,
            "priority": self.priority,
            "title": self.title,
            "message": self.message,
        }
        if self.action_route:
            d["action"] = {"label": self.action_label, "route": self.action_route}
        if self.campaign_ids:
            d["campaign_ids"] = list(self.campaign_ids)
        return d


@dataclass
class CampaignSignal:
    """The slice of a campaign the decision engine reads."""
    campaign_id: str
    title: str
    status: str = ""
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    budget_total: Optional[float] = None
    percent_used: Optional[float] = None
    creator_count: int = 0
    is_at_risk: bool = False
    risk_reason: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == "Active"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CampaignSignal":
        """
        Raises KeyError/TypeError/ValueError on malformed numbers or a
        missing id. Unparseable dates are dropped so pacing reads Unknown.
        """
        budget = data.get("budget")
        if budget is not None and not isinstance(budget, dict):
            raise TypeError(f"Campaign budget must be a mapping, got {type(budget).__name__}")
        budget = budget or {}

        total = budget.get("total")
        used = budget.get("percentUsed", budget.get("percent_used"))
        creators = data.get("creatorCount", data.get("creator_count")) or 0

        return cls(
            campaign_id=str(data["id"]),
            title=data.get("title") or data.get("name") or str(data["id"]),
            status=data.get("status") or "",
            start_date=_optional_timestamp(data.get("startDate", data.get("start_date"))),
            end_date=_optional_timestamp(data.get("endDate", data.get("end_date"))),
            budget_total=float(total) if total is not None else None,
            percent_used=float(used) if used is not None else None,
            creator_count=int(creators),
            is_at_risk=bool(data.get("isAtRisk", data.get("is_at_risk", False))),
            risk_reason=data.get("riskReason", data.get("risk_reason")),
        )


def _optional_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return parse_timestamp(value)
    except (TypeError, ValueError):
        return None


@dataclass
class PacingResult:
    status: PacingStatus
    budget_percent: float = 0.0
    time_percent: float = 0.0
    pacing_diff: float = 0.0
    alert: Optional[Alert] = None


@dataclass
class BudgetHealth:
    available: float
    committed: float
    health_score: float
    alerts: list[Alert] = field(default_factory=list)


@dataclass
class RoiTrend:
    current: float
    previous: float
    change: float
    change_percent: float
    trend: str  # up, down, stable
    alert: Optional[Alert] = None


# ---------------------------------------------------------------------------
# Sub-analyses
# ---------------------------------------------------------------------------

def analyze_pacing(
    campaign: CampaignSignal,
    now: datetime,
    on_track_band: float = 10,
    severe_band: float = 25,
) -> PacingResult:
    """
    pacing_diff = budget spent % - time elapsed %

      |diff| <= on_track_band     On Track, no alert
      diff > on_track_band        Overspending (Critical above severe_band)
      diff < -on_track_band       Underspending (Warning below -severe_band)
    """
    if (
        campaign.start_date is None
        or campaign.end_date is None
        or campaign.percent_used is None
    ):
        return PacingResult(PacingStatus.UNKNOWN)

    total = (campaign.end_date - campaign.start_date).total_seconds()
    if total <= 0:
        return PacingResult(PacingStatus.UNKNOWN)

    elapsed = (now - campaign.start_date).total_seconds()
    time_percent = max(0.0, min(100.0, elapsed / total * 100))
    budget_percent = campaign.percent_used
    diff = budget_percent - time_percent

    if abs(diff) <= on_track_band:
        return PacingResult(PacingStatus.ON_TRACK, budget_percent, time_percent, diff)

    if diff > on_track_band:
        severity = AlertSeverity.CRITICAL if diff > severe_band else AlertSeverity.WARNING
        alert = Alert(
            alert_type=AlertType.PACING_OVERSPEND,
            severity=severity,
            title=f"{campaign.title} overspending",
            message=f"{diff:.0f}% ahead of schedule",
            timestamp=now,
            campaign_id=campaign.campaign_id,
            metric=diff,
        )
        return PacingResult(PacingStatus.OVERSPENDING, budget_percent, time_percent, diff, alert)

    severity = AlertSeverity.WARNING if diff < -severe_band else AlertSeverity.INFO
    alert = Alert(
        alert_type=AlertType.PACING_UNDERSPEND,
        severity=severity,
        title=f"{campaign.title} underspending",
        message=f"{abs(diff):.0f}% behind schedule",
        timestamp=now,
        campaign_id=campaign.campaign_id,
        metric=diff,
    )
    return PacingResult(PacingStatus.UNDERSPENDING, budget_percent, time_percent, diff, alert)


def analyze_budget_health(
    campaigns: Iterable[CampaignSignal],
    available: float,
    now: datetime,
    low_balance_ratio: float = 0.20,
    critical_balance_ratio: float = 0.10,
    campaign_low_percent: float = 90,
    campaign_depleted_percent: float = 100,
) -> BudgetHealth:
    campaigns = list(campaigns)
    alerts: list[Alert] = []
    committed = sum(c.budget_total or 0.0 for c in campaigns)

    if committed > 0 and available < committed * low_balance_ratio:
        severity = (
            AlertSeverity.CRITICAL
            if available < committed * critical_balance_ratio
            else AlertSeverity.WARNING
        )
        alerts.append(Alert(
            alert_type=AlertType.BUDGET_LOW,
            severity=severity,
            title="Low available balance",
            message=f"Only ${available:,.2f} available for ${committed:,.2f} committed",
            timestamp=now,
            metric=available / committed * 100,
        ))

    for c in campaigns:
        used = c.percent_used or 0.0
        if used >= campaign_depleted_percent:
            alerts.append(Alert(
                alert_type=AlertType.BUDGET_DEPLETED,
                severity=AlertSeverity.CRITICAL,
                title=f"{c.title} budget depleted",
                message="Campaign has used 100% of allocated budget",
                timestamp=now,
                campaign_id=c.campaign_id,
                metric=used,
            ))
        elif used >= campaign_low_percent:
            alerts.append(Alert(
                alert_type=AlertType.BUDGET_LOW,
                severity=AlertSeverity.WARNING,
                title=f"{c.title} budget low",
                message=f"{100 - used:.0f}% budget remaining",
                timestamp=now,
                campaign_id=c.campaign_id,
                metric=used,
            ))

    if available > 0 and committed > 0:
        score = min(100.0, available / committed * 100)
    elif available > 0:
        score = 100.0
    else:
        score = 0.0

    return BudgetHealth(available=available, committed=committed, health_score=score, alerts=alerts)


def _roi_value(metrics: dict[str, Any] | None) -> Optional[float]:
    if not metrics:
        return None
    roi = metrics.get("overallROI", metrics.get("overall_roi"))
    if isinstance(roi, dict):
        roi = roi.get("value")
    return float(roi) if roi is not None else None


def analyze_roi_trend(
    metrics: dict[str, Any] | None,
    previous_metrics: dict[str, Any] | None,
    now: datetime,
    trend_change_percent: float = 20,
) -> RoiTrend:
    """Without a previous period the trend is flat and no alert is raised."""
    current = _roi_value(metrics) or 0.0
    previous = _roi_value(previous_metrics)
    if previous is None:
        previous = current

    change = current - previous
    change_percent = change / previous * 100 if previous != 0 else 0.0

    alert = None
    if change_percent <= -trend_change_percent:
        alert = Alert(
            alert_type=AlertType.ROI_DECLINING,
            severity=AlertSeverity.WARNING,
            title="ROI declining significantly",
            message=f"Down {abs(change_percent):.0f}% from previous period",
            timestamp=now,
            metric=change_percent,
        )
    elif change_percent >= trend_change_percent:
        alert = Alert(
            alert_type=AlertType.ROI_IMPROVING,
            severity=AlertSeverity.SUCCESS,
            title="ROI improving",
            message=f"Up {change_percent:.0f}% from previous period",
            timestamp=now,
            metric=change_percent,
        )

    trend = "up" if change > 0 else "down" if change < 0 else "stable"
    return RoiTrend(current, previous, change, change_percent, trend, alert)


def detect_anomalies(
    campaigns: Iterable[CampaignSignal],
    now: datetime,
    on_track_band: float = 10,
    severe_band: float = 25,
) -> list[Alert]:
    alerts: list[Alert] = []
    for c in campaigns:
        if c.is_active:
            pacing = analyze_pacing(c, now, on_track_band, severe_band)
            if pacing.alert:
                alerts.append(pacing.alert)

        if c.is_active and c.creator_count == 0:
            alerts.append(Alert(
                alert_type=AlertType.CREATOR_INACTIVE,
                severity=AlertSeverity.WARNING,
                title=f"{c.title} has no creators",
                message="Active campaign without assigned creators",
                timestamp=now,
                campaign_id=c.campaign_id,
            ))

        if c.is_at_risk:
            alerts.append(Alert(
                alert_type=AlertType.CAMPAIGN_AT_RISK,
                severity=AlertSeverity.CRITICAL,
                title=f"{c.title} at risk",
                message=c.risk_reason or "Campaign requires attention",
                timestamp=now,
                campaign_id=c.campaign_id,
            ))
    return alerts


def detect_escrow_violations(
    records: Iterable[CampaignFundingRecord],
    now: datetime,
) -> list[Alert]:
    alerts = []
    for r in records:
        if not r.has_violation:
            continue
        alerts.append(Alert(
            alert_type=AlertType.RELEASE_EXCEEDS_ESCROW,
            severity=AlertSeverity.CRITICAL,
            title=f"{r.name} release exceeds escrow",
            message=r.health.detail,
            timestamp=now,
            campaign_id=r.campaign_id,
            metric=r.released_amount - r.funded_amount,
        ))
    return alerts


def generate_insights(
    campaigns: Iterable[CampaignSignal],
    roi: float,
    available: float,
    pending_approvals: int,
    now: datetime,
    on_track_band: float = 10,
    severe_band: float = 25,
    scale_up_roi: float = 3.0,
    opportunity_balance: float = 10_000,
    batch_review_threshold: int = 5,
) -> list[Insight]:
    insights: list[Insight] = []

    if pending_approvals > 0:
        insights.append(Insight(
            insight_type="action",
            priority=1,
            title=f"{pending_approvals} content awaiting review",
            message=(
                "Consider batch reviewing to unblock creators"
                if pending_approvals > batch_review_threshold
                else "Review to maintain campaign momentum"
            ),
            action_label="Review Now",
            action_route="/brand/approvals",
        ))

    if roi > scale_up_roi:
        insights.append(Insight(
            insight_type="success",
            priority=2,
            title=f"Exceptional {roi:.1f}x ROAS",
            message="Consider scaling top-performing campaigns",
            action_label="View Performance",
            action_route="/brand/analytics",
        ))

    underspending = [
        c.campaign_id for c in campaigns
        if c.is_active
        and analyze_pacing(c, now, on_track_band, severe_band).status == PacingStatus.UNDERSPENDING
    ]
    if underspending:
        plural = "s" if len(underspending) > 1 else ""
        insights.append(Insight(
            insight_type="optimization",
            priority=3,
            title=f"{len(underspending)} campaign{plural} underspending",
            message="Reallocate budget to maximize reach",
            campaign_ids=underspending,
        ))

    if available > opportunity_balance:
        insights.append(Insight(
            insight_type="opportunity",
            priority=4,
            title=f"${available:,.0f} available",
            message="Launch new campaigns to grow your creator network",
            action_label="Create Campaign",
            action_route="/brand/campaigns/new",
        ))

    return sorted(insights, key=lambda i: i.priority)


def sort_alerts(alerts: Iterable[Alert]) -> list[Alert]:
    """Severity order, discovery order within a tier."""
    return sorted(alerts, key=lambda a: SEVERITY_ORDER[a.severity])


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

@dataclass
class DecisionReport:
    alerts: list[Alert]
    insights: list[Insight]
    budget_health: BudgetHealth
    roi_trend: RoiTrend
    skipped_campaigns: list[str] = field(default_factory=list)
    evaluated_at: Optional[datetime] = None

    @property
    def critical_count(self) -> int:
        return sum(1 for a in self.alerts if a.severity == AlertSeverity.CRITICAL)

    @property
    def warning_count(self) -> int:
        return sum(1 for a in self.alerts if a.severity == AlertSeverity.WARNING)

    @property
    def has_urgent_items(self) -> bool:
        return self.critical_count > 0

    def summary(self) -> str:
        lines = [
            "=" * 60,
            "DECISION ENGINE",
            "=" * 60,
            f"Alerts:         {len(self.alerts)} "
            f"({self.critical_count} critical, {self.warning_count} warning)",
            f"Budget Health:  {self.budget_health.health_score:.0f}/100",
            f"ROI Trend:      {self.roi_trend.trend} ({self.roi_trend.change_percent:+.1f}%)",
            "",
        ]
        if self.alerts:
            lines.append("--- ALERTS ---")
            for a in self.alerts:
                lines.append(f"  {a.icon} {a.title}: {a.message}")
        if self.insights:
            lines.append("")
            lines.append("--- INSIGHTS ---")
            for i in self.insights:
                lines.append(f"  {i.priority}. {i.title} - {i.message}")
        if self.skipped_campaigns:
            lines.append("")
            lines.append(f"Skipped malformed campaigns: {', '.join(self.skipped_campaigns)}")
        lines.append("=" * 60)
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "alerts": [a.to_dict() for a in self.alerts],
            "insights": [i.to_dict() for i in self.insights],
            "critical_count": self.critical_count,
            "warning_count": self.warning_count,
            "has_urgent_items": self.has_urgent_items,
            "budget_health": {
                "available": self.budget_health.available,
                "committed": self.budget_health.committed,
                "health_score": self.budget_health.health_score,
            },
            "roi": {
                "current": self.roi_trend.current,
                "previous": self.roi_trend.previous,
                "change_percent": self.roi_trend.change_percent,
                "trend": self.roi_trend.trend,
            },
            "skipped_campaigns": list(self.skipped_campaigns),
        }


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class DecisionEngine:
    """
    Runs every sub-analysis over one refresh cycle of data.

    Thresholds come from the policy when one is given, otherwise the
    built-in defaults apply.
    """

    def __init__(self, policy=None) -> None:
        self.policy = policy

    def _thresholds(self) -> dict[str, Any]:
        policy = self.policy or PolicyEngine.from_dict({})
        return {
            **policy.pacing,
            **policy.budget_health,
            **policy.roi,
            **policy.insights,
        }

    def evaluate(
        self,
        metrics: dict[str, Any] | None = None,
        campaigns: Iterable[dict[str, Any]] | None = None,
        vault: dict[str, Any] | None = None,
        approvals: dict[str, Any] | None = None,
        previous_metrics: dict[str, Any] | None = None,
        funding_records: Iterable[CampaignFundingRecord] | None = None,
        now: datetime | None = None,
    ) -> DecisionReport:
        now = parse_timestamp(now) if now else datetime.now(timezone.utc)
        t = self._thresholds()

        signals: list[CampaignSignal] = []
        skipped: list[str] = []
        for raw in campaigns or []:
            try:
                signals.append(CampaignSignal.from_dict(raw))
            except (KeyError, TypeError, ValueError, AttributeError):
                skipped.append(str(raw.get("id", "?")) if isinstance(raw, dict) else "?")

        vault = vault or {}
        approvals = approvals or {}
        available = float(vault.get("available") or 0.0)
        pending_approvals = int(approvals.get("totalPending", approvals.get("total_pending")) or 0)

        budget = analyze_budget_health(
            signals,
            available,
            now,
            low_balance_ratio=t["low_balance_ratio"],
            critical_balance_ratio=t["critical_balance_ratio"],
            campaign_low_percent=t["campaign_low_percent"],
            campaign_depleted_percent=t["campaign_depleted_percent"],
        )
        roi = analyze_roi_trend(
            metrics, previous_metrics, now,
            trend_change_percent=t["trend_change_percent"],
        )
        anomalies = detect_anomalies(signals, now, t["on_track_band"], t["severe_band"])
        violations = detect_escrow_violations(funding_records or [], now)

        merged = list(budget.alerts)
        if roi.alert:
            merged.append(roi.alert)
        merged.extend(anomalies)
        merged.extend(violations)

        insights = generate_insights(
            signals,
            roi=roi.current,
            available=available,
            pending_approvals=pending_approvals,
            now=now,
            on_track_band=t["on_track_band"],
            severe_band=t["severe_band"],
            scale_up_roi=t["scale_up_roi"],
            opportunity_balance=t["opportunity_balance"],
            batch_review_threshold=t["batch_review_threshold"],
        )

        return DecisionReport(
            alerts=sort_alerts(merged),
            insights=insights,
            budget_health=budget,
            roi_trend=roi,
            skipped_campaigns=skipped,
            evaluated_at=now,
        )
