"""
Audit Logger
=============
Writes a provable trail for every money movement.

Each mutating action (fund, release, deposit, withdraw, allocate)
produces a timestamped JSON file in logs/ containing:
  - Operation, campaign id and amount
  - Fee breakdown (deposits and allocations)
  - Idempotency key and ledger entry id
  - Outcome and violation flags
  - Campaign snapshot hash
  - Policy version applied
  - Git commit hash (if available)

This is not debug logging. It is the record a reconciliation is run
against, and every record carries a SHA-256 hash for tamper detection.
"""

from __future__ import annotations

import hashlib
import json
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from escrow_vault.schema_loader import ROOT_DIR


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

LOGS_DIR = ROOT_DIR / "logs"
AUDIT_VERSION = "1.0"


# ---------------------------------------------------------------------------
# Audit Logger
# ---------------------------------------------------------------------------

class AuditLogger:
    """
    Writes structured audit records for every vault mutation.
    """

    def __init__(self, logs_dir: Path | None = None) -> None:
        self._logs_dir = Path(logs_dir) if logs_dir else LOGS_DIR
        self._logs_dir.mkdir(parents=True, exist_ok=True)
        self._seq = 0

    @property
    def logs_dir(self) -> Path:
        return self._logs_dir

    def log_action(
        self,
        *,
        operation: str,
        outcome: str,
        campaign_id: str | None = None,
        amount: float | None = None,
        fees: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
        ledger_entry_id: str | None = None,
        flags: dict[str, bool] | None = None,
        snapshot: dict[str, Any] | None = None,
        policy_version: str | None = None,
        error: dict[str, Any] | None = None,
        extra: dict[str, Any] | None = None,
    ) -> Path:
        """
        Write a single audit record.

        Returns:
            Path to the written audit log file.
        """
        now = datetime.now(timezone.utc)
        timestamp = now.strftime("%Y-%m-%dT%H-%M-%S-%f")
        self._seq += 1

        record: dict[str, Any] = {
            "audit_version": AUDIT_VERSION,
            "timestamp_utc": now.isoformat(),
            "operation": operation,
            "outcome": outcome,
            "git_commit": self._git_commit(),
        }

        if campaign_id is not None:
            record["campaign_id"] = campaign_id
        if amount is not None:
            record["amount"] = amount
        if fees is not None:
            record["fees"] = fees
        if idempotency_key:
            record["idempotency_key"] = idempotency_key
        if ledger_entry_id:
            record["ledger_entry_id"] = ledger_entry_id

        # Violations and overfunding are recorded, never refused
        if flags:
            record["flags"] = {k: bool(v) for k, v in flags.items()}

        if snapshot is not None:
            record["campaign_snapshot"] = snapshot
            record["snapshot_hash"] = self._hash_dict(snapshot)

        if policy_version:
            record["policy_version"] = policy_version
        if error is not None:
            record["error"] = error
        if extra:
            record["extra"] = extra

        record["record_hash"] = self._hash_dict(record)

        op_slug = operation.replace(" ", "_").replace("-", "_").lower()
        filepath = self._logs_dir / f"{timestamp}_{self._seq:04d}_{op_slug}.json"

        with open(filepath, "w", encoding="utf-8") as f:
            json.dump(record, f, indent=2, default=str, ensure_ascii=False)

        return filepath

    # --- Reading back ---

    def read_records(self, operation: str | None = None) -> list[dict[str, Any]]:
        """All records in write order, optionally limited to one operation."""
        records = []
        for path in sorted(self._logs_dir.glob("*.json")):
            with open(path, "r", encoding="utf-8") as f:
                record = json.load(f)
            if operation and record.get("operation") != operation:
                continue
            records.append(record)
        return records

    @classmethod
    def verify_record(cls, record: dict[str, Any]) -> bool:
        """True when the stored record_hash matches the record contents."""
        body = {k: v for k, v in record.items() if k != "record_hash"}
        return record.get("record_hash") == cls._hash_dict(body)

    # --- Helpers ---

    @staticmethod
    def _hash_dict(d: dict[str, Any]) -> str:
        """SHA256 hash of a dictionary for tamper detection."""
        canonical = json.dumps(d, sort_keys=True, default=str)
        return hashlib.sha256(canonical.encode()).hexdigest()

    @staticmethod
    def _git_commit() -> str | None:
        """Get current git commit hash, or None if not in a repo."""
        try:
            result = subprocess.run(
                ["git", "rev-parse", "--short", "HEAD"],
                capture_output=True,
                text=True,
                timeout=5,
                cwd=str(ROOT_DIR),
            )
        except (OSError, subprocess.SubprocessError):
            return None
        if result.returncode == 0:
            return result.stdout.strip()
        return None
