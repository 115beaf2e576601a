"""
Transaction Ledger Tests
========================
Append-only ordering, settlement, views and CSV export.
"""

import csv
import io
from datetime import datetime, timedelta, timezone

import pytest

from escrow_vault.errors import ErrorCode, LedgerError
from escrow_vault.transaction_ledger import (
    CSV_HEADERS,
    LedgerQuery,
    TransactionLedger,
    TransactionStatus,
    TransactionType,
    parse_timestamp,
)


BASE = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def _ledger():
    ledger = TransactionLedger()
    ledger.record(TransactionType.FUNDING, 1000, "c1", "Spring Launch", when=BASE)
    ledger.record(TransactionType.RELEASE, 250, "c1", "Spring Launch", when=BASE + timedelta(days=1))
    ledger.record(TransactionType.FUNDING, 400, "c2", "Summer Promo", when=BASE + timedelta(days=2))
    ledger.record(TransactionType.ADJUSTMENT, -20, "c2", "Summer Promo", when=BASE + timedelta(days=3))
    ledger.record(TransactionType.RELEASE, 100, "c2", "Summer Promo", when=BASE + timedelta(days=4))
    return ledger


class TestAppendOnly:

    def test_ids_sequential(self):
        ledger = _ledger()
        assert [e.entry_id for e in ledger] == ["TX-00001", "TX-00002", "TX-00003", "TX-00004", "TX-00005"]

    def test_out_of_order_insert_keeps_date_order(self):
        ledger = _ledger()
        ledger.record(TransactionType.FUNDING, 5, "c3", "Late", when=BASE - timedelta(days=1))
        dates = [e.date for e in ledger]
        assert dates == sorted(dates)
        assert ledger.entries[0].campaign_name == "Late"

    def test_duplicate_id_rejected(self):
        ledger = _ledger()
        with pytest.raises(LedgerError, match="Duplicate"):
            ledger.append(ledger.entries[0])

    def test_ids_skip_loaded_entries(self):
        ledger = TransactionLedger.from_entries([
            {"id": "TX-00002", "date": "2026-01-01T00:00:00Z", "type": "Funding", "amount": 10},
        ])
        entry = ledger.record(TransactionType.FUNDING, 5)
        assert entry.entry_id == "TX-00003"


class TestSettlement:

    def test_pending_settles_once(self):
        ledger = TransactionLedger()
        entry = ledger.record(TransactionType.FUNDING, 100, status=TransactionStatus.PENDING, when=BASE)
        assert ledger.balance == 0

        settled = ledger.settle(entry.entry_id, TransactionStatus.COMPLETED)
        assert settled.status == TransactionStatus.COMPLETED
        assert ledger.balance == 100

        with pytest.raises(LedgerError) as exc:
            ledger.settle(entry.entry_id, TransactionStatus.FAILED)
        assert exc.value.code == ErrorCode.ENTRY_SETTLED

    def test_settle_to_pending_rejected(self):
        ledger = TransactionLedger()
        entry = ledger.record(TransactionType.FUNDING, 100, status=TransactionStatus.PENDING)
        with pytest.raises(LedgerError):
            ledger.settle(entry.entry_id, TransactionStatus.PENDING)

    def test_settle_unknown(self):
        with pytest.raises(LedgerError) as exc:
            TransactionLedger().settle("TX-99999", TransactionStatus.COMPLETED)
        assert exc.value.code == ErrorCode.NOT_FOUND


class TestBalances:

    def test_signs(self):
        ledger = _ledger()
        signs = [e.display_sign for e in ledger]
        assert signs == ["+", "-", "+", "", "-"]
        assert [e.signed_amount for e in ledger] == [1000, -250, 400, -20, -100]

    def test_balance(self):
        assert _ledger().balance == 1030.00

    def test_running_balances(self):
        balances = _ledger().running_balances()
        assert balances == {
            "TX-00001": 1000.0,
            "TX-00002": 750.0,
            "TX-00003": 1150.0,
            "TX-00004": 1130.0,
            "TX-00005": 1030.0,
        }

    def test_campaign_totals(self):
        totals = _ledger().campaign_totals("c2")
        assert totals == {"funded": 380.0, "released": 100.0}

    def test_balance_history(self):
        history = _ledger().balance_history(days=7, now=BASE + timedelta(days=4))
        assert len(history) == 7
        assert history[:2] == [0.0, 0.0]
        assert history[-5:] == [1000.0, 750.0, 1150.0, 1130.0, 1030.0]


class TestViews:

    def test_filter_by_type(self):
        rows = _ledger().filter("Release")
        assert len(rows) == 2
        assert all(e.type == TransactionType.RELEASE for e in rows)

    def test_search_case_insensitive(self):
        rows = _ledger().filter(search="summer")
        assert {e.campaign_id for e in rows} == {"c2"}

    def test_default_sort_newest_first(self):
        rows = _ledger().view(LedgerQuery())
        assert rows[0].entry.entry_id == "TX-00005"

    def test_sort_by_amount_ascending(self):
        rows = _ledger().view(LedgerQuery(sort_by="amount", sort_order="asc"))
        assert [r.entry.amount for r in rows] == [-20, 100, 250, 400, 1000]

    def test_sort_stable_for_equal_amounts(self):
        ledger = TransactionLedger()
        for i in range(3):
            ledger.record(TransactionType.FUNDING, 50, campaign_name=f"n{i}", when=BASE + timedelta(hours=i))
        for order in ("asc", "desc"):
            rows = ledger.view(LedgerQuery(sort_by="amount", sort_order=order))
            assert [r.entry.campaign_name for r in rows] == ["n0", "n1", "n2"]

    def test_toggle_sort(self):
        q = LedgerQuery(page=3)
        q = q.toggle_sort("amount")
        assert (q.sort_by, q.sort_order, q.page) == ("amount", "desc", 1)
        q = q.toggle_sort("amount")
        assert q.sort_order == "asc"
        q = q.toggle_sort("date")
        assert (q.sort_by, q.sort_order) == ("date", "desc")

    def test_invalid_query(self):
        with pytest.raises(ValueError):
            LedgerQuery(sort_by="campaign")
        with pytest.raises(ValueError):
            LedgerQuery(page=0)

    def test_pagination(self):
        ledger = TransactionLedger()
        for i in range(25):
            ledger.record(TransactionType.FUNDING, i + 1, when=BASE + timedelta(minutes=i))
        page = ledger.page(LedgerQuery(page=3, limit=10))
        assert len(page.rows) == 5
        assert page.pagination.total == 25
        assert page.pagination.total_pages == 3

    def test_running_balance_in_rows(self):
        rows = _ledger().view(LedgerQuery(type_filter="Release", sort_order="asc"))
        assert [r.running_balance for r in rows] == [750.0, 1030.0]


class TestCsvExport:

    def test_release_filter_only_release_rows(self):
        text = _ledger().to_csv(LedgerQuery(type_filter="Release"))
        lines = text.splitlines()
        assert lines[0] == "Date,Campaign,Type,Status,Amount"
        rows = list(csv.reader(io.StringIO(text)))[1:]
        assert len(rows) == 2
        assert all(r[2] == "Release" for r in rows)

    def test_amount_plain_numeric(self):
        text = _ledger().to_csv(LedgerQuery(type_filter="Release"))
        assert "$" not in text
        rows = list(csv.reader(io.StringIO(text)))[1:]
        assert {r[4] for r in rows} == {"250.00", "100.00"}

    def test_fields_quoted_and_iso_dates(self):
        text = _ledger().to_csv(LedgerQuery(search="spring", sort_order="asc"))
        first = text.splitlines()[1]
        assert first.startswith('"2026-01-01T12:00:00+00:00","Spring Launch"')

    def test_export_reflects_search(self, tmp_path):
        path = _ledger().export_csv(tmp_path / "out" / "ledger.csv", LedgerQuery(search="Summer"))
        rows = list(csv.reader(io.StringIO(path.read_text(encoding="utf-8"))))
        assert rows[0] == CSV_HEADERS
        assert len(rows) == 4
        assert all(r[1] == "Summer Promo" for r in rows[1:])


class TestParsing:

    def test_parse_z_suffix(self):
        assert parse_timestamp("2026-01-01T00:00:00Z") == datetime(2026, 1, 1, tzinfo=timezone.utc)

    def test_parse_missing(self):
        with pytest.raises(ValueError):
            parse_timestamp(None)

    def test_from_entries_camel_case(self):
        ledger = TransactionLedger.from_entries([{
            "id": "a", "date": "2026-01-01T00:00:00Z", "type": "Release",
            "status": "Pending", "amount": 10, "campaignId": "c1", "campaignName": "X",
        }])
        entry = ledger.get("a")
        assert entry.campaign_id == "c1"
        assert entry.status == TransactionStatus.PENDING
