"""
Escrow Vault - CLI Interface
============================
Operator console for the escrow capital allocation engine.

Commands:
  fees       - Fee breakdown for a deposit or allocation amount
  campaigns  - Campaign funding state, progress and health
  liquidity  - Vault coverage ratio and liquidity state
  alerts     - Decision engine alerts and insights
  ledger     - Filter, sort, page and export the transaction ledger
  policy     - Display the vault operating policy
  panels     - Dashboard panels visible to a role

Every command except fees/policy/panels reads a snapshot file (JSON or
YAML) holding the feeds the engine consumes.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from escrow_vault.decision_engine import DecisionEngine
from escrow_vault.errors import VaultError
from escrow_vault.fee_calculator import compute_fees
from escrow_vault.funding_ledger import CampaignFundingRecord, plan_allocation
from escrow_vault.liquidity import (
    LiquidityState,
    VaultLiquidityModel,
    VaultSnapshot,
    build_vault_snapshot,
)
from escrow_vault.policy_engine import PolicyEngine
from escrow_vault.schema_loader import load_snapshot
from escrow_vault.transaction_ledger import LedgerQuery, TransactionLedger, parse_timestamp
from escrow_vault._icons import ICON_CHECK, ICON_CROSS, ICON_WARN

console = Console()

STATE_STYLES = {
    LiquidityState.HEALTHY: "green",
    LiquidityState.WATCH: "yellow",
    LiquidityState.RISK: "red",
}

HEALTH_STYLES = {
    "healthy": "green",
    "watch": "yellow",
    "danger": "red",
    "neutral": "dim",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _policy(ctx: click.Context) -> PolicyEngine:
    return ctx.obj["policy"]


def _load(path: str) -> dict[str, Any]:
    try:
        return load_snapshot(path)
    except (ValueError, FileNotFoundError) as e:
        console.print(f"[red]{ICON_CROSS} Snapshot load failed:[/red] {e}")
        sys.exit(1)


def _funding_records(snapshot: dict[str, Any], policy: PolicyEngine) -> list[CampaignFundingRecord]:
    """Campaigns that carry escrow funding fields."""
    schedule = policy.fee_schedule()
    records = []
    for c in snapshot["campaigns"]:
        if "targetBudget" not in c and "target_budget" not in c:
            continue
        try:
            records.append(CampaignFundingRecord.from_dict(c, schedule))
        except (ValueError, TypeError) as e:
            console.print(f"[red]{ICON_CROSS} Campaign {c.get('id')} load failed:[/red] {e}")
            sys.exit(1)
    return records


def _vault_snapshot(snapshot: dict[str, Any], records: list[CampaignFundingRecord]) -> VaultSnapshot:
    """Use the vault summary when one is given, otherwise derive it from the records."""
    if snapshot["vault"]:
        vault = VaultSnapshot.from_summary(snapshot["vault"])
        if vault.campaign_count is None:
            vault.campaign_count = len(snapshot["campaigns"])
        return vault
    allocated = sum(max(0.0, r.locked_balance) for r in records)
    return build_vault_snapshot(allocated, records)


def _print_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


# ---------------------------------------------------------------------------
# CLI Group
# ---------------------------------------------------------------------------

@click.group()
@click.version_option("1.0.0", prog_name="Escrow Vault")
@click.option("--policy", "policy_path", default=None, type=click.Path(exists=True),
              help="Path to a policy YAML file (defaults to the bundled policy).")
@click.pass_context
def main(ctx: click.Context, policy_path: str | None):
    """Escrow Vault - Capital Allocation & Liquidity Intelligence"""
    ctx.ensure_object(dict)
    ctx.obj["policy"] = PolicyEngine(Path(policy_path) if policy_path else None)


# ---------------------------------------------------------------------------
# fees
# ---------------------------------------------------------------------------

@main.command("fees")
@click.argument("amount", type=float)
@click.pass_context
def fees_cmd(ctx: click.Context, amount: float):
    """Show platform and processing fees for an amount."""
    policy = _policy(ctx)
    try:
        breakdown = compute_fees(amount, policy.fee_schedule())
    except VaultError as e:
        console.print(f"[red]{ICON_CROSS} {e.message}[/red]")
        sys.exit(1)

    table = Table(title="Fee Breakdown")
    table.add_column("Item", style="cyan")
    table.add_column("Amount", justify="right")
    table.add_row("Amount", f"${breakdown.base_amount:,.2f}")
    table.add_row(f"Platform Fee ({breakdown.platform_fee_percent}%)", f"${breakdown.platform_fee:,.2f}")
    table.add_row(f"Processing Fee ({breakdown.processing_fee_percent}%)", f"${breakdown.processing_fee:,.2f}")
    table.add_row("[bold]Total Charge[/bold]", f"[bold]${breakdown.total_charge:,.2f}[/bold]")
    console.print(table)


# ---------------------------------------------------------------------------
# campaigns
# ---------------------------------------------------------------------------

@main.command("campaigns")
@click.argument("snapshot", type=click.Path(exists=True))
@click.option("--available", default=None, type=float,
              help="Vault available balance for allocation planning.")
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of a table.")
@click.pass_context
def campaigns_cmd(ctx: click.Context, snapshot: str, available: float | None, as_json: bool):
    """Campaign funding state, progress and health."""
    data = _load(snapshot)
    records = _funding_records(data, _policy(ctx))
    if available is None:
        available = float(data["vault"].get("available") or 0.0)

    if as_json:
        _print_json([
            {**r.to_dict(), "allocation_plan": plan_allocation(r, available).to_dict()}
            for r in records
        ])
        return

    if not records:
        console.print(f"{ICON_WARN} No campaigns with funding data in snapshot.")
        return

    table = Table(title="Campaign Funding")
    table.add_column("Campaign", style="cyan")
    table.add_column("State", style="yellow")
    table.add_column("Funded", justify="right")
    table.add_column("Required", justify="right")
    table.add_column("Progress", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_column("Shortfall", justify="right")
    table.add_column("Health")

    for r in records:
        plan = plan_allocation(r, available)
        style = HEALTH_STYLES.get(r.health.level, "white")
        table.add_row(
            r.name,
            r.funding_state.value,
            f"${r.funded_amount:,.2f}",
            f"${r.total_required:,.2f}",
            f"{r.progress_percent:.1f}%",
            f"${r.remaining_needed:,.2f}",
            f"${plan.shortfall:,.2f}" if plan.shortfall else "-",
            f"[{style}]{r.health}[/{style}]",
        )
    console.print(table)


# ---------------------------------------------------------------------------
# liquidity
# ---------------------------------------------------------------------------

@main.command("liquidity")
@click.argument("snapshot", type=click.Path(exists=True))
@click.option("--json", "as_json", is_flag=True)
@click.pass_context
def liquidity_cmd(ctx: click.Context, snapshot: str, as_json: bool):
    """Vault coverage ratio and liquidity state."""
    policy = _policy(ctx)
    data = _load(snapshot)
    vault = _vault_snapshot(data, _funding_records(data, policy))
    report = VaultLiquidityModel.from_policy(policy).evaluate(vault)

    if as_json:
        _print_json({**report.to_dict(), "vault_issues": vault.validate()})
        return

    console.print(Panel(
        report.summary(),
        title="VAULT LIQUIDITY",
        border_style=STATE_STYLES.get(report.state, "white"),
    ))
    for issue in vault.validate():
        console.print(f"  {ICON_WARN} {issue}", style="yellow")


# ---------------------------------------------------------------------------
# alerts
# ---------------------------------------------------------------------------

@main.command("alerts")
@click.argument("snapshot", type=click.Path(exists=True))
@click.option("--now", default=None, help="Evaluation time (ISO8601), defaults to now.")
@click.option("--json", "as_json", is_flag=True)
@click.pass_context
def alerts_cmd(ctx: click.Context, snapshot: str, now: str | None, as_json: bool):
    """Decision engine alerts and insights."""
    policy = _policy(ctx)
    data = _load(snapshot)
    try:
        when = parse_timestamp(now) if now else None
    except ValueError as e:
        console.print(f"[red]{ICON_CROSS} Invalid --now:[/red] {e}")
        sys.exit(1)

    report = DecisionEngine(policy).evaluate(
        metrics=data["metrics"],
        campaigns=data["campaigns"],
        vault=data["vault"],
        approvals=data["approvals"],
        previous_metrics=data["previous_metrics"],
        funding_records=_funding_records(data, policy),
        now=when,
    )

    if as_json:
        _print_json(report.to_dict())
        return

    style = "red" if report.has_urgent_items else "yellow" if report.warning_count else "green"
    console.print(Panel(report.summary(), title="DECISION ENGINE", border_style=style))


# ---------------------------------------------------------------------------
# ledger
# ---------------------------------------------------------------------------

@main.command("ledger")
@click.argument("snapshot", type=click.Path(exists=True))
@click.option("--type", "type_filter", default="all",
              type=click.Choice(["all", "Funding", "Release", "Adjustment"]))
@click.option("--search", default="", help="Search campaign name or description.")
@click.option("--sort", "sort_by", default="date", type=click.Choice(["date", "amount"]))
@click.option("--order", "sort_order", default="desc", type=click.Choice(["asc", "desc"]))
@click.option("--page", default=1, type=int)
@click.option("--limit", default=20, type=int)
@click.option("--export", "export_path", default=None, type=click.Path(),
              help="Write the filtered view (all pages) to CSV.")
def ledger_cmd(snapshot, type_filter, search, sort_by, sort_order, page, limit, export_path):
    """Filter, sort, page and export the transaction ledger."""
    data = _load(snapshot)
    try:
        ledger = TransactionLedger.from_entries(data["transactions"])
        query = LedgerQuery(
            type_filter=type_filter,
            search=search,
            sort_by=sort_by,
            sort_order=sort_order,
            page=page,
            limit=limit,
        )
    except ValueError as e:
        console.print(f"[red]{ICON_CROSS} Ledger load failed:[/red] {e}")
        sys.exit(1)

    if export_path:
        path = ledger.export_csv(export_path, query)
        console.print(f"{ICON_CHECK} Exported {len(ledger.view(query))} rows: {path}")
        return

    result = ledger.page(query)
    table = Table(title=f"Transactions (page {result.pagination.page}/{result.pagination.total_pages})")
    table.add_column("ID", style="dim")
    table.add_column("Date")
    table.add_column("Campaign", style="cyan")
    table.add_column("Type", style="yellow")
    table.add_column("Status")
    table.add_column("Amount", justify="right")
    table.add_column("Balance", justify="right", style="dim")

    for row in result.rows:
        e = row.entry
        colour = "red" if e.display_sign == "-" else "green"
        table.add_row(
            e.entry_id,
            e.date.strftime("%Y-%m-%d %H:%M"),
            e.campaign_name or "-",
            e.type.value,
            e.status.value,
            f"[{colour}]{e.display_sign}${abs(e.amount):,.2f}[/{colour}]",
            f"${row.running_balance:,.2f}",
        )
    console.print(table)
    console.print(f"{result.pagination.total} matching entries", style="dim")


# ---------------------------------------------------------------------------
# policy
# ---------------------------------------------------------------------------

@main.command("policy")
@click.pass_context
def policy_cmd(ctx: click.Context):
    """Display the vault operating policy."""
    policy = _policy(ctx)
    console.print()
    console.print(Panel(
        policy.summary(),
        title=f"VAULT POLICY v{policy.version}",
        border_style="blue",
    ))


# ---------------------------------------------------------------------------
# panels
# ---------------------------------------------------------------------------

@main.command("panels")
@click.option("--role", "-r", default="viewer", help="Viewer role (viewer, editor, admin, finance).")
@click.pass_context
def panels_cmd(ctx: click.Context, role: str):
    """List dashboard panels visible to a role."""
    policy = _policy(ctx)
    if role not in policy.role_hierarchy:
        console.print(
            f"[red]{ICON_CROSS} Unknown role '{role}'.[/red] "
            f"Known: {', '.join(policy.role_hierarchy)}"
        )
        sys.exit(1)

    table = Table(title=f"Panels for '{role}'")
    table.add_column("Row", justify="right")
    table.add_column("Priority", justify="right")
    table.add_column("Panel", style="cyan")
    table.add_column("Category", style="yellow")
    table.add_column("Min Role", style="dim")

    for row, panels in sorted(policy.panels_by_row(role).items()):
        for p in panels:
            table.add_row(
                str(row),
                str(p.get("priority", "")),
                p.get("name", p.get("id", "")),
                p.get("category", ""),
                p.get("min_role", "viewer"),
            )
    console.print(table)


if __name__ == "__main__":
    main()
