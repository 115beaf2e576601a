"""
Campaign Funding Ledger
=======================
Tracks how much of each campaign's required escrow has been locked
and how much has been paid out to creators:

  target budget + platform fee + processing fee = total required
  funded   -> cumulative amount locked in the campaign escrow
  released -> cumulative amount paid out on milestones

Two views are derived from the counters:

  Funding state   UNFUNDED -> PARTIAL -> FUNDED   (progress bar)
  Health          Fully Funded | Underfunded | Funding Gap |
                  Release Exceeds Escrow | N/A     (ops view)

Funding may overshoot the requirement; it is recorded, not refused.
A release larger than the locked balance is a consistency violation:
it is recorded in the transaction log and surfaced as a danger
health status, never silently clamped or rejected.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Optional

from escrow_vault.errors import ErrorCode, LedgerError, ValidationError
from escrow_vault.fee_calculator import (
    DEFAULT_SCHEDULE,
    AllocationRequirement,
    FeeSchedule,
    compute_requirement,
    round2,
)
from escrow_vault.transaction_ledger import (
    TransactionEntry,
    TransactionLedger,
    TransactionType,
)
from escrow_vault._icons import HEALTH_ICONS


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class CampaignStatus(str, Enum):
    DRAFT = "Draft"
    ACTIVE = "Active"
    PAUSED = "Paused"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


class FundingState(str, Enum):
    UNFUNDED = "UNFUNDED"
    PARTIAL = "PARTIAL"
    FUNDED = "FUNDED"


class MilestoneStatus(str, Enum):
    PENDING = "Pending"
    RELEASED = "Released"


RELEASE_EXCEEDS_ESCROW = "Release Exceeds Escrow"


# ---------------------------------------------------------------------------
# Pure derivations
# ---------------------------------------------------------------------------

def funding_state(funded_amount: float, total_required: float) -> FundingState:
    if funded_amount <= 0:
        return FundingState.UNFUNDED
    if funded_amount >= total_required:
        return FundingState.FUNDED
    return FundingState.PARTIAL


def funding_progress(funded_amount: float, total_required: float) -> float:
    """Percent of the requirement funded, capped at 100. Zero requirement -> 0."""
    if total_required <= 0:
        return 0.0
    return min(100.0, funded_amount / total_required * 100.0)


@dataclass(frozen=True)
class HealthStatus:
    label: str
    level: str  # healthy, watch, danger, neutral
    detail: str = ""

    @property
    def icon(self) -> str:
        return HEALTH_ICONS.get(self.level, "[?]")

    @property
    def is_violation(self) -> bool:
        return self.label == RELEASE_EXCEEDS_ESCROW

    def __str__(self) -> str:
        return f"{self.icon} {self.label}"


def classify_health(target_budget: float, funded_amount: float, released_amount: float) -> HealthStatus:
    """
    Campaign-local funding health, measured against the creator-facing
    budget rather than the fee-inclusive requirement.
    """
    if not target_budget:
        return HealthStatus("N/A", "neutral", "No target budget set")

    balance = funded_amount - released_amount
    funded_ratio = funded_amount / target_budget
    pct = round(funded_ratio * 100)

    if balance < 0:
        return HealthStatus(
            RELEASE_EXCEEDS_ESCROW, "danger",
            f"Released funds exceed current escrow by ${abs(balance):,.2f}",
        )
    if funded_ratio >= 1:
        return HealthStatus("Fully Funded", "healthy", f"Campaign is fully funded ({pct}%)")
    if funded_ratio >= 0.5:
        return HealthStatus(
            "Underfunded", "watch",
            f"Funding gap: ${target_budget - funded_amount:,.2f} remaining ({pct}% funded)",
        )
    return HealthStatus(
        "Funding Gap", "danger",
        f"Only {pct}% funded, ${target_budget - funded_amount:,.2f} gap",
    )


# ---------------------------------------------------------------------------
# Milestones
# ---------------------------------------------------------------------------

@dataclass
class Milestone:
    name: str
    amount: float
    status: MilestoneStatus = MilestoneStatus.PENDING
    milestone_id: Optional[str] = None
    date: Optional[str] = None

    @property
    def key(self) -> str:
        return self.milestone_id or self.name

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.milestone_id,
            "name": self.name,
            "amount": self.amount,
            "status": self.status.value,
            "date": self.date,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Milestone":
        raw_status = str(data.get("status", "")).lower()
        status = (
            MilestoneStatus.RELEASED
            if raw_status in ("released", "completed")
            else MilestoneStatus.PENDING
        )
        return cls(
            name=data.get("name") or "Milestone",
            amount=float(data.get("amount") or 0.0),
            status=status,
            milestone_id=data.get("id"),
            date=data.get("date"),
        )


def extract_milestones(collaborations: Iterable[dict[str, Any]]) -> list[Milestone]:
    """
    Flatten creator collaborations into milestones.

    A collaboration stores milestones either as a {name: status} mapping,
    in which case its agreed price is split evenly across them, or as a
    list of {name, status, amount, date} dicts.
    """
    milestones: list[Milestone] = []
    for collab in collaborations or []:
        ms = collab.get("milestones")
        if not ms:
            continue
        if isinstance(ms, dict):
            price = float(collab.get("agreedPrice") or collab.get("agreed_price") or 0.0)
            per_milestone = round2(price / max(len(ms), 1)) if price else 0.0
            for name, status in ms.items():
                released = isinstance(status, str) and status.lower() == "completed"
                milestones.append(Milestone(
                    name=name,
                    amount=per_milestone,
                    status=MilestoneStatus.RELEASED if released else MilestoneStatus.PENDING,
                ))
        elif isinstance(ms, list):
            milestones.extend(Milestone.from_dict(item) for item in ms)
    return milestones


# ---------------------------------------------------------------------------
# Funding record
# ---------------------------------------------------------------------------

@dataclass
class CampaignFundingRecord:
    """Escrow funding counters for one campaign."""
    campaign_id: str
    name: str
    target_budget: float = 0.0
    funded_amount: float = 0.0
    released_amount: float = 0.0
    status: CampaignStatus = CampaignStatus.DRAFT
    minimum_funding: float = 0.0
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    milestones: list[Milestone] = field(default_factory=list)
    schedule: FeeSchedule = field(default=DEFAULT_SCHEDULE, repr=False)

    @property
    def requirement(self) -> AllocationRequirement:
        return compute_requirement(self.target_budget, self.schedule)

    @property
    def platform_fee(self) -> float:
        return self.requirement.platform_fee

    @property
    def processing_fee(self) -> float:
        return self.requirement.processing_fee

    @property
    def total_required(self) -> float:
        return self.requirement.total_required

    @property
    def remaining_needed(self) -> float:
        return round2(max(0.0, self.total_required - self.funded_amount))

    @property
    def locked_balance(self) -> float:
        return round2(self.funded_amount - self.released_amount)

    @property
    def funding_state(self) -> FundingState:
        return funding_state(self.funded_amount, self.total_required)

    @property
    def progress_percent(self) -> float:
        return funding_progress(self.funded_amount, self.total_required)

    @property
    def health(self) -> HealthStatus:
        return classify_health(self.target_budget, self.funded_amount, self.released_amount)

    @property
    def has_violation(self) -> bool:
        return self.released_amount > self.funded_amount

    @property
    def is_overfunded(self) -> bool:
        return self.funded_amount > self.total_required

    @property
    def upcoming_release_amount(self) -> float:
        return round2(sum(m.amount for m in self.milestones if m.status == MilestoneStatus.PENDING))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.campaign_id,
            "name": self.name,
            "status": self.status.value,
            "target_budget": self.target_budget,
            "funded_amount": self.funded_amount,
            "released_amount": self.released_amount,
            "remaining_needed": self.remaining_needed,
            "locked_balance": self.locked_balance,
            "funding_state": self.funding_state.value,
            "progress_percent": round(self.progress_percent, 1),
            "health": self.health.label,
            "health_level": self.health.level,
            "upcoming_release_amount": self.upcoming_release_amount,
            "allocation_breakdown": self.requirement.to_dict(),
            "milestones": [m.to_dict() for m in self.milestones],
        }

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        schedule: FeeSchedule = DEFAULT_SCHEDULE,
    ) -> "CampaignFundingRecord":
        """Build from a campaigns-for-funding payload (camelCase or snake_case)."""
        def pick(*keys: str, default: Any = None) -> Any:
            for k in keys:
                if data.get(k) is not None:
                    return data[k]
            return default

        raw_ms = data.get("milestones") or []
        if data.get("collaborations"):
            milestones = extract_milestones(data["collaborations"])
        else:
            milestones = [Milestone.from_dict(m) for m in raw_ms]

        return cls(
            campaign_id=str(pick("id", "campaign_id")),
            name=pick("name", "title", default=""),
            target_budget=float(pick("targetBudget", "target_budget", default=0.0)),
            funded_amount=float(pick("fundedAmount", "funded_amount", default=0.0)),
            released_amount=float(pick("releasedAmount", "released_amount", default=0.0)),
            status=CampaignStatus(pick("status", default="Draft")),
            minimum_funding=float(pick("minimumFunding", "minimum_funding", default=0.0)),
            start_date=pick("startDate", "start_date"),
            end_date=pick("endDate", "end_date"),
            milestones=milestones,
            schedule=schedule,
        )


@dataclass
class AllocationPlan:
    """How much to move into a campaign and whether the vault can cover it."""
    campaign_id: str
    total_required: float
    already_funded: float
    remaining_needed: float
    available_balance: float
    shortfall: float

    @property
    def can_cover(self) -> bool:
        return self.shortfall <= 0

    @property
    def minimum_deposit(self) -> float:
        """Top-up to pre-fill when the vault is short."""
        return self.shortfall

    def to_dict(self) -> dict[str, Any]:
        return {
            "campaign_id": self.campaign_id,
            "total_required": self.total_required,
            "already_funded": self.already_funded,
            "remaining_needed": self.remaining_needed,
            "available_balance": self.available_balance,
            "shortfall": self.shortfall,
            "can_cover": self.can_cover,
        }


def plan_allocation(record: CampaignFundingRecord, available_balance: float) -> AllocationPlan:
    remaining = record.remaining_needed
    return AllocationPlan(
        campaign_id=record.campaign_id,
        total_required=record.total_required,
        already_funded=record.funded_amount,
        remaining_needed=remaining,
        available_balance=available_balance,
        shortfall=round2(max(0.0, remaining - available_balance)),
    )


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

@dataclass
class FundingEvent:
    """Result of a fund or release operation."""
    entry: TransactionEntry
    record: CampaignFundingRecord
    overfunded: bool = False
    violation: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry": self.entry.to_dict(),
            "campaign": self.record.to_dict(),
            "overfunded": self.overfunded,
            "violation": self.violation,
        }


class CampaignFundingLedger:
    """
    Per-campaign funding counters backed by the append-only transaction log.

    Every fund/release appends a ledger entry and, when an audit logger
    is attached, writes an audit record.
    """

    def __init__(
        self,
        schedule: FeeSchedule = DEFAULT_SCHEDULE,
        transactions: TransactionLedger | None = None,
        audit: Any = None,
        policy_version: str | None = None,
    ) -> None:
        self.schedule = schedule
        self.transactions = transactions if transactions is not None else TransactionLedger()
        self.audit = audit
        self.policy_version = policy_version
        self._records: dict[str, CampaignFundingRecord] = {}

    # --- Registry ---

    @property
    def records(self) -> list[CampaignFundingRecord]:
        return list(self._records.values())

    def get(self, campaign_id: str) -> CampaignFundingRecord:
        record = self._records.get(str(campaign_id))
        if record is None:
            raise LedgerError(
                f"Campaign '{campaign_id}' not found in funding ledger",
                code=ErrorCode.NOT_FOUND,
            )
        return record

    def add_campaign(
        self,
        campaign_id: str,
        name: str,
        target_budget: float,
        status: CampaignStatus = CampaignStatus.DRAFT,
        minimum_funding: float = 0.0,
        milestones: list[Milestone] | None = None,
    ) -> CampaignFundingRecord:
        """Register a newly drafted campaign with nothing funded."""
        if target_budget < 0:
            raise ValidationError("Target budget cannot be negative.", field="target_budget")
        if str(campaign_id) in self._records:
            raise LedgerError(f"Campaign '{campaign_id}' already registered")
        record = CampaignFundingRecord(
            campaign_id=str(campaign_id),
            name=name,
            target_budget=float(target_budget),
            status=CampaignStatus(status),
            minimum_funding=minimum_funding,
            milestones=list(milestones or []),
            schedule=self.schedule,
        )
        self._records[record.campaign_id] = record
        return record

    def load(self, campaigns: Iterable[dict[str, Any]]) -> None:
        """Load records from a campaigns-for-funding payload."""
        for data in campaigns:
            record = CampaignFundingRecord.from_dict(data, self.schedule)
            self._records[record.campaign_id] = record

    # --- Mutations ---

    def fund(
        self,
        campaign_id: str,
        amount: float,
        idempotency_key: str | None = None,
        when: datetime | None = None,
    ) -> FundingEvent:
        """Lock `amount` into the campaign escrow. Overfunding is recorded, not refused."""
        _require_positive(amount)
        record = self.get(campaign_id)

        record.funded_amount = round2(record.funded_amount + amount)
        entry = self.transactions.record(
            TransactionType.FUNDING,
            amount,
            campaign_id=record.campaign_id,
            campaign_name=record.name,
            description=f"Escrow funding: ${amount:,.2f} for \"{record.name}\"",
            idempotency_key=idempotency_key,
            when=when,
        )
        event = FundingEvent(entry=entry, record=record, overfunded=record.is_overfunded)
        self._audit("fund", record, amount, entry, idempotency_key, overfunded=event.overfunded)
        return event

    def release(
        self,
        campaign_id: str,
        amount: float,
        milestone_id: str | None = None,
        idempotency_key: str | None = None,
        when: datetime | None = None,
    ) -> FundingEvent:
        """
        Pay out a milestone. Releasing more than is locked is recorded and
        flagged as a violation; releasing the same milestone twice is refused.
        """
        _require_positive(amount)
        record = self.get(campaign_id)

        if milestone_id and (
            self.transactions.has_released_milestone(record.campaign_id, milestone_id)
            or any(
                m.key == milestone_id and m.status == MilestoneStatus.RELEASED
                for m in record.milestones
            )
        ):
            raise LedgerError(
                f"Milestone '{milestone_id}' of campaign '{record.campaign_id}' "
                f"has already been released.",
                code=ErrorCode.DUPLICATE_RELEASE,
            )

        record.released_amount = round2(record.released_amount + amount)
        for m in record.milestones:
            if milestone_id and m.key == milestone_id:
                m.status = MilestoneStatus.RELEASED

        entry = self.transactions.record(
            TransactionType.RELEASE,
            amount,
            campaign_id=record.campaign_id,
            campaign_name=record.name,
            description=f"Milestone release: ${amount:,.2f} from \"{record.name}\"",
            milestone_id=milestone_id,
            idempotency_key=idempotency_key,
            when=when,
        )
        event = FundingEvent(entry=entry, record=record, violation=record.has_violation)
        self._audit("release", record, amount, entry, idempotency_key, violation=event.violation)
        return event

    def _audit(self, operation, record, amount, entry, idempotency_key, **flags) -> None:
        if self.audit is None:
            return
        self.audit.log_action(
            operation=operation,
            campaign_id=record.campaign_id,
            amount=amount,
            outcome="recorded",
            idempotency_key=idempotency_key,
            ledger_entry_id=entry.entry_id,
            flags=flags,
            snapshot=record.to_dict(),
            policy_version=self.policy_version,
        )

    # --- Reconciliation ---

    def reconcile(self) -> list[str]:
        """Compare each record's counters with totals rebuilt from the transaction log."""
        issues = []
        for r in self.records:
            totals = self.transactions.campaign_totals(r.campaign_id)
            if abs(totals["funded"] - r.funded_amount) > 0.01:
                issues.append(
                    f"{r.name}: funded counter ${r.funded_amount:,.2f} "
                    f"!= ledger ${totals['funded']:,.2f}"
                )
            if abs(totals["released"] - r.released_amount) > 0.01:
                issues.append(
                    f"{r.name}: released counter ${r.released_amount:,.2f} "
                    f"!= ledger ${totals['released']:,.2f}"
                )
        return issues

    def validate(self) -> list[str]:
        """Consistency issues across all campaigns."""
        issues = []
        for r in self.records:
            if r.has_violation:
                issues.append(
                    f"{r.name}: released (${r.released_amount:,.2f}) exceeds "
                    f"funded (${r.funded_amount:,.2f})"
                )
            if r.is_overfunded:
                issues.append(
                    f"{r.name}: funded (${r.funded_amount:,.2f}) exceeds "
                    f"required (${r.total_required:,.2f})"
                )
        return issues

    # --- Reporting ---

    @property
    def total_funded(self) -> float:
        return round2(sum(r.funded_amount for r in self.records))

    @property
    def total_released(self) -> float:
        return round2(sum(r.released_amount for r in self.records))

    @property
    def total_locked(self) -> float:
        return round2(sum(r.locked_balance for r in self.records))

    def summary(self) -> str:
        lines = [
            "=" * 60,
            "CAMPAIGN FUNDING LEDGER",
            "=" * 60,
            f"Campaigns:       {len(self.records)}",
            f"Total Funded:    ${self.total_funded:,.2f}",
            f"Total Released:  ${self.total_released:,.2f}",
            f"Total Locked:    ${self.total_locked:,.2f}",
            "",
            "--- CAMPAIGNS ---",
        ]
        for r in self.records:
            lines.append(
                f"  {r.health.icon} {r.name} [{r.funding_state.value}] "
                f"${r.funded_amount:,.2f} / ${r.total_required:,.2f} "
                f"({r.progress_percent:.1f}%) - {r.health.label}"
            )
        issues = self.validate()
        if issues:
            lines.append(f"\n--- ISSUES ({len(issues)}) ---")
            for issue in issues:
                lines.append(f"  [!] {issue}")
        lines.append("=" * 60)
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_funded": self.total_funded,
            "total_released": self.total_released,
            "total_locked": self.total_locked,
            "campaigns": [r.to_dict() for r in self.records],
            "issues": self.validate(),
        }


def _require_positive(amount: float) -> None:
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise ValidationError(f"Amount must be a number, got {amount!r}.", field="amount")
    if not math.isfinite(amount):
        raise ValidationError(f"Amount must be a finite number, got {amount!r}.", field="amount")
    if not amount > 0:
        raise ValidationError(
            "Amount must be a positive number.",
            code=ErrorCode.AMOUNT_NOT_POSITIVE,
            field="amount",
        )
