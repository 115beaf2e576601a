"""
Vault Service
=============
User-initiated vault actions against the payment backend:

  deposit(amount, method)          -> redirect URL or completed credit
  withdraw(amount)                 -> debit of the available balance
  allocate(campaign_id, amount)    -> available balance -> campaign escrow
  release(campaign_id, amount)     -> milestone payout from campaign escrow

Every action follows the same flow:

  1. Validate (positive, under the ceiling, above a campaign minimum)
  2. Fast-fail on insufficient available balance
  3. Attach an idempotency key (caller-supplied or uuid4)
  4. Call the gateway once, never retried
  5. Apply the result to the local view and write an audit record

Errors never escape as exceptions: each action returns an ActionResult
carrying the message, the error code and whether a manual retry makes
sense. The local balance check is for fast feedback only; the backend
re-validates every request.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Optional, Protocol

from escrow_vault.audit_logger import AuditLogger
from escrow_vault.decision_engine import DecisionEngine, DecisionReport
from escrow_vault.errors import (
    ErrorCode,
    GatewayError,
    InsufficientFundsError,
    ValidationError,
    VaultError,
)
from escrow_vault.fee_calculator import compute_fees, round2
from escrow_vault.funding_ledger import CampaignFundingLedger
from escrow_vault.liquidity import (
    LiquidityReport,
    VaultLiquidityModel,
    VaultSnapshot,
    build_vault_snapshot,
)
from escrow_vault.policy_engine import PolicyEngine


# ---------------------------------------------------------------------------
# Gateway contract
# ---------------------------------------------------------------------------

class PaymentGateway(Protocol):
    """
    The authoritative backend. Implementations raise GatewayError on
    network or service failure, or return a payload with status "error".
    """

    def deposit(self, amount: float, method: str, idempotency_key: str) -> dict[str, Any]:
        ...

    def withdraw(self, amount: float, idempotency_key: str) -> dict[str, Any]:
        ...

    def allocate(self, campaign_id: str, amount: float, idempotency_key: str) -> dict[str, Any]:
        ...


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class ActionResult:
    ok: bool
    message: str
    operation: str
    idempotency_key: Optional[str] = None
    code: Optional[ErrorCode] = None
    error_field: Optional[str] = None
    retryable: bool = False
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def redirect_url(self) -> Optional[str]:
        return self.data.get("redirect_url")

    @classmethod
    def failure(cls, operation: str, error: VaultError, idempotency_key: str | None = None) -> "ActionResult":
        return cls(
            ok=False,
            message=error.message,
            operation=operation,
            idempotency_key=idempotency_key,
            code=error.code,
            error_field=error.field,
            retryable=error.retryable,
            data=dict(error.details),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "operation": self.operation,
            "message": self.message,
            "idempotency_key": self.idempotency_key,
            "code": self.code.value if self.code else None,
            "field": self.error_field,
            "retryable": self.retryable,
            "data": self.data,
        }


def validate_amount(amount: Any, ceiling: float, minimum: float = 0.0) -> float:
    """Reject non-numbers, non-positive amounts, amounts above the ceiling or below a minimum."""
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
    if amount > ceiling:
        raise ValidationError(
            f"Amount ${amount:,.2f} exceeds the maximum of ${ceiling:,.2f}.",
            code=ErrorCode.AMOUNT_ABOVE_CEILING,
            field="amount",
            details={"ceiling": ceiling},
        )
    if minimum and amount < minimum:
        raise ValidationError(
            f"Amount ${amount:,.2f} is below the campaign minimum of ${minimum:,.2f}.",
            code=ErrorCode.AMOUNT_BELOW_MINIMUM,
            field="amount",
            details={"minimum": minimum},
        )
    return float(amount)


def _checked(response: dict[str, Any] | None, operation: str) -> dict[str, Any]:
    response = response or {}
    if str(response.get("status", "")).lower() in ("error", "failed"):
        raise GatewayError(
            response.get("message") or f"{operation.capitalize()} failed. Please try again.",
            details={"response": response},
        )
    return response


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class VaultService:
    """
    Client-side vault for one brand: validates actions, calls the
    gateway and keeps the local view of balances current.
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        policy: PolicyEngine | None = None,
        funding_ledger: CampaignFundingLedger | None = None,
        audit: AuditLogger | None = None,
        available_balance: float = 0.0,
    ) -> None:
        self.gateway = gateway
        self.policy = policy or PolicyEngine()
        self.schedule = self.policy.fee_schedule()
        self.audit = audit if self.policy.should_audit() else None
        self.ledger = funding_ledger or CampaignFundingLedger(schedule=self.schedule)
        if self.ledger.audit is None:
            self.ledger.audit = self.audit
        if self.ledger.policy_version is None:
            self.ledger.policy_version = self.policy.version
        self.available_balance = round2(available_balance)
        self._results: dict[str, ActionResult] = {}

    # --- Actions ---

    def deposit(
        self,
        amount: float,
        method: str = "card",
        idempotency_key: str | None = None,
    ) -> ActionResult:
        """A response with a URL is a redirect; the caller sends the user there."""
        def action(key: str) -> ActionResult:
            value = validate_amount(amount, self.policy.max_transaction_amount)
            fees = compute_fees(value, self.schedule)
            response = _checked(self.gateway.deposit(value, method, key), "deposit")
            # {status, data: {url?, transactionId?, ...}}; a bare payload is accepted too
            payload = response.get("data") or response
            data: dict[str, Any] = {"fees": fees.to_dict()}

            if payload.get("url"):
                data["redirect_url"] = payload["url"]
                message = f"Redirecting to checkout for ${fees.total_charge:,.2f}"
            else:
                self.available_balance = round2(self.available_balance + value)
                data["transaction_id"] = payload.get("transactionId")
                data["available_balance"] = self.available_balance
                message = f"Deposited ${value:,.2f}"

            self._log("deposit", "completed", key, amount=value, fees=fees.to_dict(),
                      extra={"method": method, "redirect": bool(payload.get("url"))})
            return ActionResult(True, message, "deposit", key, data=data)

        return self._run("deposit", idempotency_key, action, amount=amount)

    def withdraw(self, amount: float, idempotency_key: str | None = None) -> ActionResult:
        def action(key: str) -> ActionResult:
            value = validate_amount(amount, self.policy.max_transaction_amount)
            if value > self.available_balance:
                raise InsufficientFundsError(value, self.available_balance)
            _checked(self.gateway.withdraw(value, key), "withdraw")
            self.available_balance = round2(self.available_balance - value)
            self._log("withdraw", "completed", key, amount=value)
            return ActionResult(
                True, f"Withdrew ${value:,.2f}", "withdraw", key,
                data={"available_balance": self.available_balance},
            )

        return self._run("withdraw", idempotency_key, action, amount=amount)

    def allocate(
        self,
        campaign_id: str,
        amount: float,
        idempotency_key: str | None = None,
    ) -> ActionResult:
        def action(key: str) -> ActionResult:
            record = self.ledger.get(campaign_id)
            value = validate_amount(
                amount, self.policy.max_transaction_amount, record.minimum_funding,
            )
            if value > self.available_balance:
                raise InsufficientFundsError(value, self.available_balance)
            _checked(self.gateway.allocate(record.campaign_id, value, key), "allocate")

            event = self.ledger.fund(record.campaign_id, value, idempotency_key=key)
            self.available_balance = round2(self.available_balance - value)
            self._log(
                "allocate", "completed", key,
                campaign_id=record.campaign_id,
                amount=value,
                fees=record.requirement.to_dict(),
                ledger_entry_id=event.entry.entry_id,
                flags={"overfunded": event.overfunded},
            )
            message = f"Allocated ${value:,.2f} to \"{record.name}\""
            if event.overfunded:
                message += " (funded beyond the requirement)"
            return ActionResult(True, message, "allocate", key, data={
                "campaign": record.to_dict(),
                "available_balance": self.available_balance,
                "overfunded": event.overfunded,
            })

        return self._run("allocate", idempotency_key, action, campaign_id=campaign_id, amount=amount)

    def release(
        self,
        campaign_id: str,
        amount: float,
        milestone_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> ActionResult:
        """An over-release succeeds and is flagged; it is never refused."""
        def action(key: str) -> ActionResult:
            value = validate_amount(amount, self.policy.max_transaction_amount)
            event = self.ledger.release(campaign_id, value, milestone_id=milestone_id, idempotency_key=key)
            record = event.record
            message = f"Released ${value:,.2f} from \"{record.name}\""
            if event.violation:
                message += f" - {record.health.label}: {record.health.detail}"
            return ActionResult(True, message, "release", key, data={
                "campaign": record.to_dict(),
                "violation": event.violation,
            })

        return self._run("release", idempotency_key, action, campaign_id=campaign_id, amount=amount)

    def _run(
        self,
        operation: str,
        idempotency_key: str | None,
        action: Callable[[str], ActionResult],
        campaign_id: str | None = None,
        amount: Any = None,
    ) -> ActionResult:
        """Attach a key, replay a finished key, convert VaultError to a result."""
        if idempotency_key and idempotency_key in self._results:
            return self._results[idempotency_key]

        key = idempotency_key or str(uuid.uuid4())
        try:
            result = action(key)
        except VaultError as e:
            self._log(
                operation, "rejected", key,
                campaign_id=campaign_id,
                amount=amount if isinstance(amount, (int, float)) else None,
                error=e.to_dict(),
            )
            return ActionResult.failure(operation, e, key)

        self._results[key] = result
        return result

    def _log(self, operation: str, outcome: str, key: str, **kwargs: Any) -> None:
        if self.audit is None:
            return
        self.audit.log_action(
            operation=operation,
            outcome=outcome,
            idempotency_key=key,
            policy_version=self.policy.version,
            **kwargs,
        )

    # --- Read side ---

    def snapshot(self, now: datetime | None = None) -> VaultSnapshot:
        allocated = sum(max(0.0, r.locked_balance) for r in self.ledger.records)
        return build_vault_snapshot(
            self.available_balance + allocated,
            self.ledger.records,
            ledger=self.ledger.transactions,
            now=now,
        )

    def liquidity(self, now: datetime | None = None) -> LiquidityReport:
        return VaultLiquidityModel.from_policy(self.policy).evaluate(self.snapshot(now))

    def refresh(
        self,
        metrics: dict[str, Any] | None = None,
        campaigns: Iterable[dict[str, Any]] | None = None,
        approvals: dict[str, Any] | None = None,
        previous_metrics: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> DecisionReport:
        """One decision-engine cycle over the current local vault state."""
        return DecisionEngine(self.policy).evaluate(
            metrics=metrics,
            campaigns=campaigns,
            vault=self.snapshot(now).to_dict(),
            approvals=approvals,
            previous_metrics=previous_metrics,
            funding_records=self.ledger.records,
            now=now,
        )
