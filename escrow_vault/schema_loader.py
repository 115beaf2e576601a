"""
Schema Loader - Loads and validates vault snapshot files.

A snapshot is one refresh cycle of the feeds the engine consumes,
stored as JSON or YAML:

  vault             GetVaultSummary payload
  campaigns         GetCampaignsForFunding payload (+ dashboard fields)
  transactions      GetTransactions payload (entries only)
  metrics           GetPerformanceMetrics payload
  previous_metrics  previous-period metrics
  approvals         GetApprovalQueue payload

This module is the structured input gate for the CLI. Nothing enters
the engine from disk without passing through here.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

ROOT_DIR = Path(__file__).resolve().parent.parent


SNAPSHOT_SECTIONS = ("vault", "campaigns", "transactions", "metrics", "previous_metrics", "approvals")

# Each list item must carry these keys
REQUIRED_ITEM_KEYS: dict[str, list[str]] = {
    "campaigns": ["id"],
    "transactions": ["id", "date", "type", "amount"],
}


def _load_file(path: Path) -> Any:
    """Load a JSON or YAML file (chosen by extension)."""
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        if path.suffix.lower() == ".json":
            data = json.load(f)
        else:
            data = yaml.safe_load(f)
    if data is None:
        raise ValueError(f"Empty snapshot file: {path}")
    return data


# ---------------------------------------------------------------------------
# Snapshot Loading
# ---------------------------------------------------------------------------

def load_snapshot(path: str | Path) -> dict[str, Any]:
    """
    Load and structurally validate a snapshot file.

    Returns a dict with every section present (missing sections are
    empty). Raises ValueError on unknown sections or items missing
    required keys.
    """
    path = Path(path)
    raw = _load_file(path)
    if not isinstance(raw, dict):
        raise ValueError(f"Snapshot {path.name} must be a mapping at the top level.")

    unknown = [k for k in raw if k not in SNAPSHOT_SECTIONS]
    if unknown:
        raise ValueError(
            f"Snapshot {path.name} has unknown sections: {', '.join(unknown)}. "
            f"Allowed: {', '.join(SNAPSHOT_SECTIONS)}"
        )

    snapshot: dict[str, Any] = {
        "vault": raw.get("vault") or {},
        "campaigns": raw.get("campaigns") or [],
        "transactions": raw.get("transactions") or [],
        "metrics": raw.get("metrics") or {},
        "previous_metrics": raw.get("previous_metrics"),
        "approvals": raw.get("approvals") or {},
    }

    for section in ("vault", "metrics", "approvals"):
        if not isinstance(snapshot[section], dict):
            raise ValueError(f"Snapshot section '{section}' must be a mapping.")

    # --- Enforce list sections and their required keys ---
    for section, required in REQUIRED_ITEM_KEYS.items():
        items = snapshot[section]
        if not isinstance(items, list):
            raise ValueError(f"Snapshot section '{section}' must be a list.")
        for idx, item in enumerate(items):
            if not isinstance(item, dict):
                raise ValueError(f"{section}[{idx}] must be a mapping.")
            missing = [k for k in required if item.get(k) in (None, "")]
            if missing:
                raise ValueError(
                    f"{section}[{idx}] missing required fields: " + ", ".join(missing)
                )

    return snapshot
