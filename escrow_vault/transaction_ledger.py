"""
Transaction Ledger
==================
Append-only log of escrow money movements:

  Funding     -> credit (money locked into a campaign escrow)
  Release     -> debit  (milestone paid out to a creator)
  Adjustment  -> signed correction, shown as a credit when positive

Entries are ordered by date. A Pending entry may be settled once to
Completed or Failed; after that it is immutable. Nothing is ever
deleted.

Views over the ledger (type filter, free-text search, sortable
columns, pagination) are computed on demand, and the CSV export
serializes exactly the filtered view the caller is looking at.
"""

from __future__ import annotations

import bisect
import csv
import io
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from math import ceil
from pathlib import Path
from typing import Any, Iterable, Optional

from escrow_vault.errors import ErrorCode, LedgerError


class TransactionType(str, Enum):
    FUNDING = "Funding"
    RELEASE = "Release"
    ADJUSTMENT = "Adjustment"


class TransactionStatus(str, Enum):
    PENDING = "Pending"
    COMPLETED = "Completed"
    FAILED = "Failed"


CSV_HEADERS = ["Date", "Campaign", "Type", "Status", "Amount"]
SORT_COLUMNS = ("date", "amount")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO8601 string (a trailing Z is accepted) into aware UTC."""
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if not value:
        raise ValueError("Missing timestamp")
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return _as_utc(datetime.fromisoformat(text))


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TransactionEntry:
    """Single ledger entry. Frozen: settling produces a replacement."""
    entry_id: str
    date: datetime
    type: TransactionType
    status: TransactionStatus
    amount: float
    campaign_id: Optional[str] = None
    campaign_name: str = ""
    description: str = ""
    milestone_id: Optional[str] = None
    idempotency_key: Optional[str] = None

    @property
    def is_settled(self) -> bool:
        return self.status != TransactionStatus.PENDING

    @property
    def signed_amount(self) -> float:
        """Effect on the escrow balance: credits positive, releases negative."""
        if self.type == TransactionType.RELEASE:
            return -abs(self.amount)
        if self.type == TransactionType.FUNDING:
            return abs(self.amount)
        return self.amount

    @property
    def display_sign(self) -> str:
        if self.type == TransactionType.RELEASE:
            return "-"
        if self.type == TransactionType.FUNDING:
            return "+"
        return "+" if self.amount > 0 else ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.entry_id,
            "date": self.date.isoformat(),
            "campaign_id": self.campaign_id,
            "campaign_name": self.campaign_name,
            "type": self.type.value,
            "status": self.status.value,
            "amount": self.amount,
            "signed_amount": self.signed_amount,
            "description": self.description,
            "milestone_id": self.milestone_id,
            "idempotency_key": self.idempotency_key,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TransactionEntry":
        return cls(
            entry_id=str(data.get("id") or data.get("entry_id") or uuid.uuid4().hex),
            date=parse_timestamp(data.get("date")),
            type=TransactionType(data.get("type", "Funding")),
            status=TransactionStatus(data.get("status", "Completed")),
            amount=float(data.get("amount", 0.0)),
            campaign_id=data.get("campaign_id", data.get("campaignId")),
            campaign_name=data.get("campaign_name", data.get("campaignName")) or "",
            description=data.get("description") or "",
            milestone_id=data.get("milestone_id", data.get("milestoneId")),
            idempotency_key=data.get("idempotency_key"),
        )


@dataclass
class LedgerRow:
    """An entry as shown in a view, with the running balance at that point."""
    entry: TransactionEntry
    running_balance: float

    def to_dict(self) -> dict[str, Any]:
        d = self.entry.to_dict()
        d["running_balance"] = self.running_balance
        return d


@dataclass
class Pagination:
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        if self.limit <= 0:
            return 0
        return ceil(self.total / self.limit)

    def to_dict(self) -> dict[str, int]:
        return {
            "page": self.page,
            "limit": self.limit,
            "total": self.total,
            "total_pages": self.total_pages,
        }


@dataclass
class LedgerPage:
    rows: list[LedgerRow]
    pagination: Pagination

    def to_dict(self) -> dict[str, Any]:
        return {
            "transactions": [r.to_dict() for r in self.rows],
            "pagination": self.pagination.to_dict(),
        }


@dataclass
class LedgerQuery:
    """
    Filter/sort/page state for a ledger view.

    Selecting the column that is already sorted flips its direction;
    selecting a new column starts it descending.
    """
    type_filter: str = "all"
    search: str = ""
    sort_by: str = "date"
    sort_order: str = "desc"
    page: int = 1
    limit: int = 20

    def __post_init__(self) -> None:
        if self.sort_by not in SORT_COLUMNS:
            raise ValueError(f"Unsupported sort column '{self.sort_by}'. Valid: {SORT_COLUMNS}")
        if self.sort_order not in ("asc", "desc"):
            raise ValueError(f"Unsupported sort order '{self.sort_order}'")
        if self.page < 1 or self.limit < 1:
            raise ValueError("page and limit must be >= 1")

    def toggle_sort(self, column: str) -> "LedgerQuery":
        if column not in SORT_COLUMNS:
            raise ValueError(f"Unsupported sort column '{column}'. Valid: {SORT_COLUMNS}")
        if column == self.sort_by:
            order = "asc" if self.sort_order == "desc" else "desc"
        else:
            order = "desc"
        return replace(self, sort_by=column, sort_order=order, page=1)

    def with_filter(self, type_filter: str) -> "LedgerQuery":
        return replace(self, type_filter=type_filter or "all", page=1)

    def with_search(self, search: str) -> "LedgerQuery":
        return replace(self, search=search or "", page=1)


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

@dataclass
class TransactionLedger:
    """Append-only, date-ordered escrow ledger."""
    entries: list[TransactionEntry] = field(default_factory=list)
    _counter: int = field(default=0, repr=False)

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    def get(self, entry_id: str) -> Optional[TransactionEntry]:
        for e in self.entries:
            if e.entry_id == entry_id:
                return e
        return None

    def _next_id(self) -> str:
        while True:
            self._counter += 1
            entry_id = f"TX-{self._counter:05d}"
            if self.get(entry_id) is None:
                return entry_id

    def append(self, entry: TransactionEntry) -> TransactionEntry:
        """Insert keeping date order; entries with equal dates keep arrival order."""
        if self.get(entry.entry_id) is not None:
            raise LedgerError(f"Duplicate ledger entry id '{entry.entry_id}'")
        keys = [e.date for e in self.entries]
        idx = bisect.bisect_right(keys, entry.date)
        self.entries.insert(idx, entry)
        return entry

    def record(
        self,
        tx_type: TransactionType,
        amount: float,
        campaign_id: Optional[str] = None,
        campaign_name: str = "",
        status: TransactionStatus = TransactionStatus.COMPLETED,
        description: str = "",
        milestone_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        when: Optional[datetime] = None,
    ) -> TransactionEntry:
        """Create and append a new entry."""
        entry = TransactionEntry(
            entry_id=self._next_id(),
            date=_as_utc(when) if when else _utcnow(),
            type=TransactionType(tx_type),
            status=TransactionStatus(status),
            amount=float(amount),
            campaign_id=campaign_id,
            campaign_name=campaign_name,
            description=description,
            milestone_id=milestone_id,
            idempotency_key=idempotency_key,
        )
        return self.append(entry)

    def settle(self, entry_id: str, status: TransactionStatus) -> TransactionEntry:
        """Move a Pending entry to Completed or Failed. Settled entries are final."""
        status = TransactionStatus(status)
        if status == TransactionStatus.PENDING:
            raise LedgerError("An entry can only be settled to Completed or Failed")
        for idx, e in enumerate(self.entries):
            if e.entry_id != entry_id:
                continue
            if e.is_settled:
                raise LedgerError(
                    f"Entry {entry_id} is already {e.status.value} and cannot change",
                    code=ErrorCode.ENTRY_SETTLED,
                )
            settled = replace(e, status=status)
            self.entries[idx] = settled
            return settled
        raise LedgerError(f"Ledger entry '{entry_id}' not found", code=ErrorCode.NOT_FOUND)

    def has_released_milestone(self, campaign_id: str, milestone_id: str) -> bool:
        return any(
            e.campaign_id == campaign_id
            and e.milestone_id == milestone_id
            and e.type == TransactionType.RELEASE
            and e.status == TransactionStatus.COMPLETED
            for e in self.entries
        )

    # --- Balances ---

    def completed(self) -> list[TransactionEntry]:
        return [e for e in self.entries if e.status == TransactionStatus.COMPLETED]

    @property
    def balance(self) -> float:
        return round(sum(e.signed_amount for e in self.completed()), 2)

    def campaign_totals(self, campaign_id: str) -> dict[str, float]:
        """Funded and released totals for a campaign, reconstructed from the log."""
        funded = released = 0.0
        for e in self.completed():
            if e.campaign_id != campaign_id:
                continue
            if e.type == TransactionType.RELEASE:
                released += abs(e.amount)
            else:
                funded += e.signed_amount
        return {"funded": round(funded, 2), "released": round(released, 2)}

    def running_balances(self) -> dict[str, float]:
        """Running balance after each entry, over completed entries in date order."""
        running = 0.0
        out: dict[str, float] = {}
        for e in self.entries:
            if e.status == TransactionStatus.COMPLETED:
                running += e.signed_amount
            out[e.entry_id] = round(running, 2)
        return out

    def balance_history(self, days: int = 7, now: Optional[datetime] = None) -> list[float]:
        """End-of-day balance for each of the last `days` days, oldest first."""
        now = _as_utc(now) if now else _utcnow()
        history = []
        completed = self.completed()
        for offset in range(days - 1, -1, -1):
            day = (now - timedelta(days=offset)).date()
            day_end = datetime.combine(day, time.max, tzinfo=timezone.utc)
            history.append(round(sum(e.signed_amount for e in completed if e.date <= day_end), 2))
        return history

    # --- Views ---

    def filter(self, type_filter: str = "all", search: str = "") -> list[TransactionEntry]:
        result: Iterable[TransactionEntry] = self.entries
        if type_filter and type_filter != "all":
            wanted = TransactionType(type_filter)
            result = [e for e in result if e.type == wanted]
        needle = (search or "").strip().lower()
        if needle:
            result = [
                e for e in result
                if needle in (e.campaign_name or "").lower()
                or needle in (e.description or "").lower()
            ]
        return list(result)

    def view(self, query: LedgerQuery) -> list[LedgerRow]:
        """Filtered and sorted rows (all pages)."""
        rows = self.filter(query.type_filter, query.search)
        key = (lambda e: e.date) if query.sort_by == "date" else (lambda e: e.amount)
        # sorted() is stable in both directions
        rows = sorted(rows, key=key, reverse=(query.sort_order == "desc"))
        balances = self.running_balances()
        return [LedgerRow(entry=e, running_balance=balances[e.entry_id]) for e in rows]

    def page(self, query: LedgerQuery) -> LedgerPage:
        rows = self.view(query)
        start = (query.page - 1) * query.limit
        return LedgerPage(
            rows=rows[start:start + query.limit],
            pagination=Pagination(page=query.page, limit=query.limit, total=len(rows)),
        )

    # --- Export ---

    def to_csv(self, query: Optional[LedgerQuery] = None) -> str:
        """Serialize the filtered view to CSV text."""
        rows = self.view(query or LedgerQuery())
        return rows_to_csv(r.entry for r in rows)

    def export_csv(self, path: str | Path, query: Optional[LedgerQuery] = None) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.to_csv(query), encoding="utf-8", newline="")
        return path

    def to_dict(self) -> dict[str, Any]:
        return {
            "balance": self.balance,
            "entries": [e.to_dict() for e in self.entries],
        }

    @classmethod
    def from_entries(cls, entries: Iterable[dict[str, Any]]) -> "TransactionLedger":
        ledger = cls()
        for data in entries:
            ledger.append(TransactionEntry.from_dict(data))
        ledger._counter = len(ledger.entries)
        return ledger


def rows_to_csv(entries: Iterable[TransactionEntry]) -> str:
    """Header row, then one fully quoted row per entry with a plain numeric amount."""
    buf = io.StringIO()
    buf.write(",".join(CSV_HEADERS) + "\n")
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
    for e in entries:
        writer.writerow([
            e.date.isoformat(),
            e.campaign_name or "",
            e.type.value,
            e.status.value,
            f"{e.amount:.2f}",
        ])
    return buf.getvalue()
