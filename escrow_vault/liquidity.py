"""
Vault Liquidity Model
=====================
Rolls the brand's whole vault up into a solvency signal:

  coverage = available balance / pending releases

Coverage is a tagged value, not a bare number, so that "nothing is
owed" and "nothing is known yet" can never be read as zero coverage:

  MEASURED(ratio)   pending releases > 0
  NO_OBLIGATIONS    pending releases == 0, there is vault data
  NO_DATA           no campaigns and no money anywhere

Liquidity state:

  risk     pending releases exceed the available balance (shortfall)
  watch    covered, but the ratio is below the watch threshold
  healthy  everything else, including NO_OBLIGATIONS and NO_DATA
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Optional

from escrow_vault.fee_calculator import round2
from escrow_vault.funding_ledger import CampaignFundingRecord, CampaignStatus
from escrow_vault.transaction_ledger import TransactionLedger
from escrow_vault._icons import LIQUIDITY_ICONS


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_WATCH_RATIO = 1.2
INVARIANT_TOLERANCE = 0.01


class LiquidityState(str, Enum):
    HEALTHY = "healthy"
    WATCH = "watch"
    RISK = "risk"


class CoverageKind(str, Enum):
    MEASURED = "measured"
    NO_OBLIGATIONS = "no_obligations"
    NO_DATA = "no_data"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CoverageRatio:
    kind: CoverageKind
    value: Optional[float] = None

    @classmethod
    def measured(cls, available: float, pending: float) -> "CoverageRatio":
        return cls(CoverageKind.MEASURED, available / pending)

    @property
    def numeric(self) -> Optional[float]:
        """Ratio as a number: infinite when nothing is owed, None without data."""
        if self.kind == CoverageKind.MEASURED:
            return self.value
        if self.kind == CoverageKind.NO_OBLIGATIONS:
            return float("inf")
        return None

    def display(self) -> str:
        if self.kind == CoverageKind.MEASURED:
            return f"{self.value:.2f}x"
        if self.kind == CoverageKind.NO_OBLIGATIONS:
            return "No obligations"
        return "N/A"

    def __str__(self) -> str:
        return self.display()


@dataclass
class VaultSnapshot:
    """Brand-level balances. Pending releases are a subset of allocated funds."""
    total_balance: float = 0.0
    available_balance: float = 0.0
    allocated_funds: float = 0.0
    pending_releases: float = 0.0
    campaign_count: Optional[int] = None
    watch_threshold: Optional[float] = None
    trend_percent: float = 0.0
    last_updated: Optional[str] = None

    @property
    def has_data(self) -> bool:
        if self.campaign_count:
            return True
        return any(
            v for v in (
                self.total_balance,
                self.available_balance,
                self.allocated_funds,
                self.pending_releases,
            )
        )

    def validate(self) -> list[str]:
        """Check the vault invariants. Returns a list of issues."""
        issues = []
        expected = self.available_balance + self.allocated_funds
        if abs(self.total_balance - expected) > INVARIANT_TOLERANCE:
            issues.append(
                f"Total balance ${self.total_balance:,.2f} != available "
                f"${self.available_balance:,.2f} + allocated ${self.allocated_funds:,.2f}"
            )
        if self.pending_releases - self.allocated_funds > INVARIANT_TOLERANCE:
            issues.append(
                f"Pending releases ${self.pending_releases:,.2f} exceed allocated "
                f"funds ${self.allocated_funds:,.2f}"
            )
        for name in ("total_balance", "available_balance", "allocated_funds", "pending_releases"):
            if getattr(self, name) < 0:
                issues.append(f"{name} is negative")
        return issues

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_balance": self.total_balance,
            "available": self.available_balance,
            "locked": self.allocated_funds,
            "pending": self.pending_releases,
            "trend_percent": self.trend_percent,
            "last_updated": self.last_updated,
        }

    @classmethod
    def from_summary(cls, data: dict[str, Any] | None) -> "VaultSnapshot":
        """Build from a vault-summary payload (camelCase or snake_case)."""
        data = data or {}

        def num(*keys: str) -> float:
            for k in keys:
                if data.get(k) is not None:
                    return float(data[k])
            return 0.0

        threshold = data.get("watchThreshold", data.get("watch_threshold"))
        count = data.get("campaignCount", data.get("campaign_count"))
        return cls(
            total_balance=num("totalBalance", "total_balance"),
            available_balance=num("available", "availableBalance", "available_balance"),
            allocated_funds=num("locked", "allocatedFunds", "allocated_funds"),
            pending_releases=num("pending", "pendingReleases", "pending_releases"),
            campaign_count=int(count) if count is not None else None,
            watch_threshold=float(threshold) if threshold is not None else None,
            trend_percent=num("trendPercent", "trend_percent"),
            last_updated=data.get("lastUpdated", data.get("last_updated")),
        )


def pending_release_for(record: CampaignFundingRecord) -> float:
    """
    Near-term obligation of one campaign: for Active campaigns, the
    pending milestone amount capped by the locked balance, or the whole
    locked balance when no milestones are known.
    """
    if record.status != CampaignStatus.ACTIVE:
        return 0.0
    locked = max(0.0, record.locked_balance)
    if record.milestones:
        return round2(min(locked, record.upcoming_release_amount))
    return round2(locked)


def trend_percent(history: list[float]) -> float:
    """Change between the last two points of a balance history, 1 dp."""
    if len(history) < 2:
        return 0.0
    prev, curr = history[-2], history[-1]
    if prev <= 0:
        return 0.0
    return round((curr - prev) / prev * 100, 1)


def build_vault_snapshot(
    total_balance: float,
    records: Iterable[CampaignFundingRecord],
    ledger: TransactionLedger | None = None,
    now: datetime | None = None,
    watch_threshold: float | None = None,
) -> VaultSnapshot:
    """Derive allocated, pending and available balances from funding records."""
    records = list(records)
    allocated = round2(sum(max(0.0, r.locked_balance) for r in records))
    pending = round2(sum(pending_release_for(r) for r in records))
    available = round2(max(0.0, total_balance - allocated))
    trend = trend_percent(ledger.balance_history(now=now)) if ledger is not None else 0.0

    return VaultSnapshot(
        total_balance=round2(total_balance),
        available_balance=available,
        allocated_funds=allocated,
        pending_releases=pending,
        campaign_count=len(records),
        watch_threshold=watch_threshold,
        trend_percent=trend,
        last_updated=(now or datetime.now()).isoformat(),
    )


@dataclass
class LiquidityReport:
    coverage: CoverageRatio
    state: LiquidityState
    explanation: str
    shortfall: float
    available_balance: float
    pending_releases: float
    watch_threshold: float

    @property
    def icon(self) -> str:
        return LIQUIDITY_ICONS.get(self.state.value, "[?]")

    @property
    def coverage_ratio(self) -> Optional[float]:
        return self.coverage.numeric

    def summary(self) -> str:
        lines = [
            "=" * 50,
            "VAULT LIQUIDITY",
            "=" * 50,
            f"State:            {self.icon} {self.state.value.upper()}",
            f"Coverage Ratio:   {self.coverage.display()}",
            f"Available:        ${self.available_balance:,.2f}",
            f"Pending Releases: ${self.pending_releases:,.2f}",
        ]
        if self.shortfall > 0:
            lines.append(f"Shortfall:        ${self.shortfall:,.2f}")
        lines.append("")
        lines.append(self.explanation)
        lines.append("=" * 50)
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        ratio = self.coverage.numeric
        return {
            "coverage_kind": self.coverage.kind.value,
            "coverage_ratio": None if ratio is None or ratio == float("inf") else ratio,
            "coverage_display": self.coverage.display(),
            "liquidity_state": self.state.value,
            "explanation": self.explanation,
            "shortfall": self.shortfall,
            "available": self.available_balance,
            "pending": self.pending_releases,
            "watch_threshold": self.watch_threshold,
        }


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------

class VaultLiquidityModel:
    """Evaluates coverage and liquidity state for a vault snapshot."""

    def __init__(self, watch_threshold: float = DEFAULT_WATCH_RATIO) -> None:
        self.watch_threshold = watch_threshold

    @classmethod
    def from_policy(cls, policy) -> "VaultLiquidityModel":
        return cls(watch_threshold=policy.watch_coverage_ratio)

    def evaluate(self, snapshot: VaultSnapshot | None) -> LiquidityReport:
        snapshot = snapshot or VaultSnapshot(campaign_count=0)
        threshold = (
            snapshot.watch_threshold
            if snapshot.watch_threshold is not None
            else self.watch_threshold
        )
        available = snapshot.available_balance
        pending = snapshot.pending_releases

        if not snapshot.has_data:
            return LiquidityReport(
                coverage=CoverageRatio(CoverageKind.NO_DATA),
                state=LiquidityState.HEALTHY,
                explanation="No liquidity data yet. Fund a campaign to see liquidity health metrics.",
                shortfall=0.0,
                available_balance=available,
                pending_releases=pending,
                watch_threshold=threshold,
            )

        if pending <= 0:
            return LiquidityReport(
                coverage=CoverageRatio(CoverageKind.NO_OBLIGATIONS),
                state=LiquidityState.HEALTHY,
                explanation=(
                    f"No upcoming releases scheduled. ${available:,.2f} available "
                    f"with no pending obligations."
                ),
                shortfall=0.0,
                available_balance=available,
                pending_releases=0.0,
                watch_threshold=threshold,
            )

        coverage = CoverageRatio.measured(available, pending)
        shortfall = round2(max(0.0, pending - available))

        if pending > available:
            state = LiquidityState.RISK
            explanation = (
                f"Coverage ratio is {coverage.display()}. Shortfall of ${shortfall:,.2f}: "
                f"pending releases of ${pending:,.2f} exceed available funds of "
                f"${available:,.2f}. Immediate funding recommended."
            )
        elif coverage.value < threshold:
            state = LiquidityState.WATCH
            explanation = (
                f"Coverage ratio is {coverage.display()}, below the {threshold:.2f}x "
                f"watch threshold. Consider adding funds to maintain healthy reserves."
            )
        else:
            state = LiquidityState.HEALTHY
            explanation = (
                f"Available funds cover upcoming releases with a "
                f"{coverage.display()} coverage buffer."
            )

        return LiquidityReport(
            coverage=coverage,
            state=state,
            explanation=explanation,
            shortfall=shortfall,
            available_balance=available,
            pending_releases=pending,
            watch_threshold=threshold,
        )
