"""
Policy Engine
==============
Loads the vault operating policy and hands out the thresholds the
analysis modules use.

  Fee schedule      -> fee_calculator
  Amount limits     -> vault_service validation
  Liquidity         -> liquidity model watch band
  Pacing / budget / ROI / insights -> decision engine
  Panels            -> dashboard panel registry (static data)

A missing policy file falls back to built-in defaults so the engine
can run on a bare checkout.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from escrow_vault.fee_calculator import FeeSchedule


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

POLICY_PATH = Path(__file__).resolve().parent / "policy.yaml"

DEFAULT_ROLE_HIERARCHY = ["viewer", "editor", "admin", "finance"]

DEFAULTS: dict[str, dict[str, Any]] = {
    "amount_limits": {"max_transaction_amount": 10_000_000},
    "liquidity": {"watch_coverage_ratio": 1.2},
    "pacing": {"on_track_band": 10, "severe_band": 25},
    "budget_health": {
        "low_balance_ratio": 0.20,
        "critical_balance_ratio": 0.10,
        "campaign_low_percent": 90,
        "campaign_depleted_percent": 100,
    },
    "roi": {"trend_change_percent": 20, "scale_up_roi": 3.0},
    "insights": {"opportunity_balance": 10_000, "batch_review_threshold": 5},
    "audit": {"audit_every_action": True},
}


# ---------------------------------------------------------------------------
# Policy Engine
# ---------------------------------------------------------------------------

class PolicyEngine:
    """
    Loads and provides access to the vault operating policy.
    """

    def __init__(self, policy_path: Path | None = None) -> None:
        self._path = Path(policy_path) if policy_path else POLICY_PATH
        self._policy: dict[str, Any] = {}
        self._load()

    def _load(self) -> None:
        if self._path.exists():
            with open(self._path, "r", encoding="utf-8") as f:
                self._policy = yaml.safe_load(f) or {}
        else:
            self._policy = {}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PolicyEngine":
        """Build a policy from an in-memory mapping (no file access)."""
        engine = cls.__new__(cls)
        engine._path = Path("<memory>")
        engine._policy = dict(data)
        return engine

    # --- Core accessors ---

    @property
    def raw(self) -> dict[str, Any]:
        return self._policy

    @property
    def version(self) -> str:
        return self._policy.get("policy_version", "0.0.0")

    def _section(self, key: str) -> dict[str, Any]:
        merged = dict(DEFAULTS.get(key, {}))
        merged.update(self._policy.get(key) or {})
        return merged

    def value(self, section: str, key: str) -> Any:
        return self._section(section).get(key)

    # --- Section accessors ---

    def fee_schedule(self) -> FeeSchedule:
        return FeeSchedule.from_dict(self._policy.get("fee_schedule"))

    @property
    def max_transaction_amount(self) -> float:
        return float(self.value("amount_limits", "max_transaction_amount"))

    @property
    def watch_coverage_ratio(self) -> float:
        return float(self.value("liquidity", "watch_coverage_ratio"))

    @property
    def pacing(self) -> dict[str, Any]:
        return self._section("pacing")

    @property
    def budget_health(self) -> dict[str, Any]:
        return self._section("budget_health")

    @property
    def roi(self) -> dict[str, Any]:
        return self._section("roi")

    @property
    def insights(self) -> dict[str, Any]:
        return self._section("insights")

    def should_audit(self) -> bool:
        """Returns True if every mutating action should be audit-logged."""
        return bool(self.value("audit", "audit_every_action"))

    # --- Panel registry ---

    @property
    def role_hierarchy(self) -> list[str]:
        return list(self._policy.get("role_hierarchy") or DEFAULT_ROLE_HIERARCHY)

    def _role_index(self, role: str) -> int:
        try:
            return self.role_hierarchy.index(role)
        except ValueError:
            return -1

    def panels(self) -> list[dict[str, Any]]:
        return [dict(p) for p in self._policy.get("panels") or []]

    def panels_for_role(self, role: str) -> list[dict[str, Any]]:
        """Enabled panels the role may see, ordered by priority."""
        user_idx = self._role_index(role)
        visible = [
            p for p in self.panels()
            if p.get("enabled", True)
            and 0 <= self._role_index(p.get("min_role", "viewer")) <= user_idx
        ]
        return sorted(visible, key=lambda p: p.get("priority", 50))

    def panels_by_row(self, role: str) -> dict[int, list[dict[str, Any]]]:
        rows: dict[int, list[dict[str, Any]]] = {}
        for panel in self.panels_for_role(role):
            rows.setdefault(int(panel.get("row", 4)), []).append(panel)
        return rows

    def can_view_panel(self, panel_id: str, role: str) -> bool:
        return any(p.get("id") == panel_id for p in self.panels_for_role(role))

    # --- Summary ---

    def summary(self) -> str:
        """Human-readable policy summary."""
        fees = self.fee_schedule()
        bh = self.budget_health
        lines = [
            f"Policy Version: {self.version}",
            f"Last Reviewed:  {self._policy.get('last_reviewed', 'N/A')}",
            f"Approved By:    {self._policy.get('approved_by', 'N/A')}",
            "",
            "Fee Schedule:",
            f"  Platform Fee ...............  {fees.platform_fee_percent}%",
            f"  Processing Fee .............  {fees.processing_fee_percent}%",
            "",
            "Thresholds:",
            f"  Max Transaction ............  ${self.max_transaction_amount:,.0f}",
            f"  Watch Coverage Ratio .......  {self.watch_coverage_ratio:.2f}x",
            f"  Pacing On-Track Band .......  +/-{self.pacing['on_track_band']}%",
            f"  Pacing Severe Band .........  +/-{self.pacing['severe_band']}%",
            f"  Low Balance ................  <{bh['low_balance_ratio'] * 100:.0f}% of committed",
            f"  Critical Balance ...........  <{bh['critical_balance_ratio'] * 100:.0f}% of committed",
            f"  ROI Trend Change ...........  +/-{self.roi['trend_change_percent']}%",
            "",
            f"Audit Every Action:           {self.should_audit()}",
            f"Panels Registered:            {len(self.panels())}",
        ]
        return "\n".join(lines)
