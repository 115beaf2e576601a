"""
Fee Calculator
==============
Single source of truth for platform and processing fees.

Deposit checkout and campaign allocation both charge:

  platform_fee   = round2(amount x platform_fee_percent / 100)
  processing_fee = round2(amount x processing_fee_percent / 100)

Rounding is round-half-up to the cent, done in Decimal so that
0.005 ties are not lost to binary floating point. The percentages
come from a FeeSchedule, normally built from policy.yaml, and the
same schedule object is threaded through every call site.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from escrow_vault.errors import ErrorCode, ValidationError


CENT = Decimal("0.01")


def _dec(value: float | int | str | Decimal) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round2(value: float | int | str | Decimal) -> float:
    """Round half-up to 2 decimal places."""
    return float(_dec(value).quantize(CENT, rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class FeeSchedule:
    """Fee percentages applied on top of a base amount."""
    platform_fee_percent: float = 5.0
    processing_fee_percent: float = 2.9

    @property
    def total_percent(self) -> float:
        return float(_dec(self.platform_fee_percent) + _dec(self.processing_fee_percent))

    def platform_fee(self, amount: float) -> float:
        return round2(_dec(amount) * _dec(self.platform_fee_percent) / 100)

    def processing_fee(self, amount: float) -> float:
        return round2(_dec(amount) * _dec(self.processing_fee_percent) / 100)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "FeeSchedule":
        data = data or {}
        return cls(
            platform_fee_percent=float(data.get("platform_fee_percent", 5.0)),
            processing_fee_percent=float(data.get("processing_fee_percent", 2.9)),
        )


DEFAULT_SCHEDULE = FeeSchedule()


@dataclass(frozen=True)
class FeeBreakdown:
    """Fees charged on a deposit or allocation."""
    base_amount: float
    platform_fee: float
    processing_fee: float
    total_charge: float
    platform_fee_percent: float
    processing_fee_percent: float

    def to_dict(self) -> dict[str, float]:
        return {
            "amount": self.base_amount,
            "platform_fee": self.platform_fee,
            "processing_fee": self.processing_fee,
            "total_charge": self.total_charge,
            "platform_fee_percent": self.platform_fee_percent,
            "processing_fee_percent": self.processing_fee_percent,
        }


@dataclass(frozen=True)
class AllocationRequirement:
    """What a campaign must lock in escrow: budget plus all fees."""
    target_budget: float
    platform_fee: float
    processing_fee: float
    total_required: float
    platform_fee_percent: float
    processing_fee_percent: float

    def to_dict(self) -> dict[str, float]:
        return {
            "target_budget": self.target_budget,
            "platform_fee_percent": self.platform_fee_percent,
            "processing_fee_percent": self.processing_fee_percent,
            "platform_fee": self.platform_fee,
            "processing_fee": self.processing_fee,
            "total_required": self.total_required,
        }


def compute_fees(base_amount: float, schedule: FeeSchedule = DEFAULT_SCHEDULE) -> FeeBreakdown:
    """
    Compute the fees and total charge for a positive base amount.

    Raises ValidationError when the amount is not a positive number.
    """
    if isinstance(base_amount, bool) or not isinstance(base_amount, (int, float, Decimal)):
        raise ValidationError(
            f"Amount must be a number, got {base_amount!r}.",
            code=ErrorCode.VALIDATION_ERROR,
            field="amount",
        )
    if not _dec(base_amount).is_finite():
        raise ValidationError(
            f"Amount must be a finite number, got {base_amount!r}.",
            field="amount",
        )
    if not base_amount > 0:
        raise ValidationError(
            "Amount must be a positive number.",
            code=ErrorCode.AMOUNT_NOT_POSITIVE,
            field="amount",
        )

    platform_fee = schedule.platform_fee(base_amount)
    processing_fee = schedule.processing_fee(base_amount)
    total = _dec(base_amount) + _dec(platform_fee) + _dec(processing_fee)

    return FeeBreakdown(
        base_amount=float(base_amount),
        platform_fee=platform_fee,
        processing_fee=processing_fee,
        total_charge=float(total),
        platform_fee_percent=schedule.platform_fee_percent,
        processing_fee_percent=schedule.processing_fee_percent,
    )


def compute_requirement(
    target_budget: float | None,
    schedule: FeeSchedule = DEFAULT_SCHEDULE,
) -> AllocationRequirement:
    """
    Total escrow a campaign needs: target budget plus platform and
    processing fees, each rounded, total rounded.

    A missing or negative budget is treated as zero.
    """
    budget = float(target_budget or 0.0)
    if budget < 0:
        budget = 0.0

    platform_fee = schedule.platform_fee(budget)
    processing_fee = schedule.processing_fee(budget)
    total_required = round2(_dec(budget) + _dec(platform_fee) + _dec(processing_fee))

    return AllocationRequirement(
        target_budget=budget,
        platform_fee=platform_fee,
        processing_fee=processing_fee,
        total_required=total_required,
        platform_fee_percent=schedule.platform_fee_percent,
        processing_fee_percent=schedule.processing_fee_percent,
    )
