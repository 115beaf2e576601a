"""Tests for the operator CLI."""

import csv
import io
import json

import pytest
from click.testing import CliRunner

from escrow_vault.cli import main
from escrow_vault.funding_ledger import RELEASE_EXCEEDS_ESCROW


@pytest.fixture
def runner():
    return CliRunner()


def _json(result):
    assert result.exit_code == 0, result.output
    return json.loads(result.output)


class TestFeesCommand:

    def test_breakdown(self, runner):
        result = runner.invoke(main, ["fees", "100"])
        assert result.exit_code == 0
        assert "107.90" in result.output

    def test_zero_rejected(self, runner):
        result = runner.invoke(main, ["fees", "0"])
        assert result.exit_code == 1
        assert "positive" in result.output

    def test_infinite_rejected(self, runner):
        result = runner.invoke(main, ["fees", "inf"])
        assert result.exit_code == 1
        assert "finite" in result.output


class TestSnapshotCommands:

    def test_liquidity_json(self, runner, snapshot_file):
        data = _json(runner.invoke(main, ["liquidity", str(snapshot_file), "--json"]))
        assert data["liquidity_state"] == "risk"
        assert data["shortfall"] == 300.0
        assert data["vault_issues"] == []

    def test_liquidity_panel(self, runner, snapshot_file):
        result = runner.invoke(main, ["liquidity", str(snapshot_file)])
        assert result.exit_code == 0
        assert "VAULT LIQUIDITY" in result.output

    def test_alerts_json(self, runner, snapshot_file):
        data = _json(runner.invoke(
            main, ["alerts", str(snapshot_file), "--now", "2026-01-06T00:00:00Z", "--json"],
        ))
        assert data["critical_count"] == 3
        assert data["alerts"][0]["type"] == "pacing_overspend"

    def test_alerts_bad_now(self, runner, snapshot_file):
        result = runner.invoke(main, ["alerts", str(snapshot_file), "--now", "yesterday"])
        assert result.exit_code == 1

    def test_campaigns_json(self, runner, snapshot_file):
        data = _json(runner.invoke(main, ["campaigns", str(snapshot_file), "--json"]))
        assert [c["id"] for c in data] == ["c1", "c2"]
        assert data[0]["allocation_plan"]["remaining_needed"] == 479.0
        assert data[1]["health"] == RELEASE_EXCEEDS_ESCROW

    def test_campaigns_table(self, runner, snapshot_file):
        result = runner.invoke(main, ["campaigns", str(snapshot_file)])
        assert result.exit_code == 0
        assert "Campaign Funding" in result.output

    def test_ledger_export_release_only(self, runner, snapshot_file, tmp_path):
        out = tmp_path / "release.csv"
        result = runner.invoke(main, [
            "ledger", str(snapshot_file), "--type", "Release", "--export", str(out),
        ])
        assert result.exit_code == 0
        rows = list(csv.reader(io.StringIO(out.read_text(encoding="utf-8"))))
        assert rows[0] == ["Date", "Campaign", "Type", "Status", "Amount"]
        assert rows[1:] == [["2026-01-04T10:00:00+00:00", "Summer Promo", "Release", "Completed", "300.00"]]

    def test_ledger_table(self, runner, snapshot_file):
        result = runner.invoke(main, ["ledger", str(snapshot_file), "--search", "spring"])
        assert result.exit_code == 0
        assert "2 matching entries" in result.output

    def test_bad_snapshot_exits(self, runner, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"wallets": []}), encoding="utf-8")
        result = runner.invoke(main, ["liquidity", str(path)])
        assert result.exit_code == 1
        assert "Snapshot load failed" in result.output


class TestPolicyCommands:

    def test_policy(self, runner):
        result = runner.invoke(main, ["policy"])
        assert result.exit_code == 0
        assert "VAULT POLICY v1.0.0" in result.output

    def test_panels_finance(self, runner):
        result = runner.invoke(main, ["panels", "--role", "finance"])
        assert result.exit_code == 0
        assert "Escrow Vault" in result.output

    def test_panels_unknown_role(self, runner):
        result = runner.invoke(main, ["panels", "--role", "guest"])
        assert result.exit_code == 1
