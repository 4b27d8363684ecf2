#!/usr/bin/env python3
"""
View stored claims and analytics from the database.

Usage:
    python view_claims.py                        # List all claims
    python view_claims.py CLM-xxx                # View specific claim details
    python view_claims.py --status pending       # Filter by status
    python view_claims.py --department Sales     # Filter by department
    python view_claims.py --stats                # Department/category/budget analytics
    python view_claims.py --fraud                # Flagged claims, riskiest first
    python view_claims.py --export               # Dump all claims as JSON
"""

import argparse
import asyncio
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from dotenv import load_dotenv

load_dotenv()

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from src.claims import Claim, ClaimNotFoundError
from src.engine import ClaimsEngine, build_engine
from src.storage.sqlite_adapter import SQLitePersistenceAdapter, export_documents
from src.utils.config import get_settings

console = Console()

STATUS_STYLES = {
    "approved": "green",
    "rejected": "red",
    "pending": "yellow",
    "draft": "dim",
}


def styled_status(status: str) -> str:
    style = STATUS_STYLES.get(status)
    return f"[{style}]{status}[/{style}]" if style else status


def truncate(text: str, max_len: int = 40) -> str:
    """Truncate text with ellipsis."""
    if not text:
        return ""
    text = str(text)
    if len(text) > max_len:
        return text[:max_len - 3] + "..."
    return text


def money(value) -> str:
    return f"{value:,.2f}"


def make_claims_table(claims: list, limit: int) -> Table:
    """Create summary table with key claim info."""
    table = Table(title="📋 Claims", box=box.ROUNDED, header_style="bold cyan")
    table.add_column("Claim ID", style="bold")
    table.add_column("Submitted", style="dim")
    table.add_column("Status")
    table.add_column("Employee")
    table.add_column("Department")
    table.add_column("Category")
    table.add_column("Amount", justify="right")
    table.add_column("Risk", justify="right")
    table.add_column("Flags")

    for claim in claims[:limit]:
        risk = str(claim.risk_score)
        if claim.is_flagged:
            risk = f"[red]{risk}[/red]"
        table.add_row(
            claim.id,
            claim.submitted_at.strftime("%Y-%m-%d %H:%M"),
            styled_status(claim.status.value),
            truncate(claim.employee_name or claim.employee_id, 20),
            truncate(claim.department, 15),
            truncate(claim.category, 22),
            f"{claim.currency} {money(claim.amount)}",
            risk,
            truncate(", ".join(claim.flags), 40),
        )
    return table


def print_claim_detail(claim: Claim):
    """Print detailed view of a single claim."""
    lines = [
        f"[bold]Status:[/bold]      {styled_status(claim.status.value)}",
        f"[bold]Employee:[/bold]    {claim.employee_name} ({claim.employee_id}), {claim.department}",
        f"[bold]Amount:[/bold]      {claim.currency} {money(claim.amount)} (tax {money(claim.tax_amount)})",
        f"[bold]Category:[/bold]    {claim.category}",
        f"[bold]Vendor:[/bold]      {claim.vendor or '-'}",
        f"[bold]Description:[/bold] {claim.description}",
        f"[bold]Expense date:[/bold] {claim.expense_date.isoformat()}",
        f"[bold]Submitted:[/bold]   {claim.submitted_at:%Y-%m-%d %H:%M}",
        f"[bold]Risk:[/bold]        {claim.risk_score} {'(flagged)' if claim.is_flagged else ''}",
    ]
    if claim.flags:
        lines.append(f"[bold]Flags:[/bold]       {', '.join(claim.flags)}")
    if claim.reviewer_id:
        lines.append(f"[bold]Reviewer:[/bold]    {claim.reviewer_name or claim.reviewer_id}")
    if claim.reviewer_comment:
        lines.append(f"[bold]Comment:[/bold]     {claim.reviewer_comment}")
    for attachment in claim.attachments:
        lines.append(f"[bold]Receipt:[/bold]     {attachment.filename} ({attachment.size} bytes)")

    console.print(Panel("\n".join(lines), title=f"Claim {claim.id}", box=box.ROUNDED))

    if claim.approval_history:
        history = Table(title="Approval history", box=box.SIMPLE)
        history.add_column("When", style="dim")
        history.add_column("Actor")
        history.add_column("Role")
        history.add_column("Action")
        history.add_column("Reason")
        for event in claim.approval_history:
            history.add_row(
                f"{event.timestamp:%Y-%m-%d %H:%M}",
                event.actor_name or event.actor_id,
                event.actor_role.value,
                event.action.value,
                event.reason or "",
            )
        console.print(history)


def print_stats(engine: ClaimsEngine):
    """Print department, category, budget and approval analytics."""
    analytics = engine.analytics
    overview = analytics.overview()
    console.print(
        Panel(
            f"Claims: {overview.total_claims}   Total: {money(overview.total_amount)}   "
            f"Average: {money(overview.average_claim_amount)}   Flagged: {overview.flagged_count}",
            title="📊 Overview",
        )
    )

    departments = Table(title="Departments", box=box.ROUNDED, header_style="bold cyan")
    for column in ("Department", "Claims", "Employees", "Total", "Approved", "Pending", "Rejected", "Flagged", "Budget"):
        departments.add_column(column, justify="left" if column == "Department" else "right")
    for row in analytics.department_summary():
        budget = analytics.budget_utilization(row.department)
        departments.add_row(
            row.department,
            str(row.claim_count),
            str(row.employee_count),
            money(row.total_amount),
            money(row.approved_amount),
            money(row.pending_amount),
            money(row.rejected_amount),
            str(row.flagged_count),
            f"{budget.utilization_rate:.1f}% ({budget.status})",
        )
    console.print(departments)

    categories = Table(title="Categories", box=box.ROUNDED, header_style="bold cyan")
    for column in ("Category", "Claims", "Total", "Average", "Highest", "Owner"):
        categories.add_column(column)
    for row in analytics.category_summary():
        categories.add_row(
            row.category,
            str(row.claim_count),
            money(row.total_amount),
            money(row.average_claim_amount),
            money(row.highest_claim_amount),
            row.highest_claim_owner,
        )
    console.print(categories)

    stats = analytics.approval_statistics()
    console.print(
        f"Approved: {stats.approved_count}  Rejected: {stats.rejected_count}  "
        f"Pending: {stats.pending_count}  Avg. approval time: {stats.average_approval_days} days"
    )


def print_fraud(engine: ClaimsEngine, min_score: int):
    table = Table(title="🚩 Flagged claims", box=box.ROUNDED, header_style="bold red")
    for column in ("Claim ID", "Employee", "Amount", "Score", "Level", "Flags"):
        table.add_column(column)
    for case in engine.analytics.fraud_overview(min_score):
        table.add_row(
            case.claim_id,
            case.employee_name or case.employee_id,
            money(case.amount),
            str(case.risk_score),
            case.risk_level,
            ", ".join(case.flags),
        )
    console.print(table)


def main():
    parser = argparse.ArgumentParser(description="View stored claims")
    parser.add_argument("claim_id", nargs="?", help="Specific claim ID to view")
    parser.add_argument("--status", help="Filter by status")
    parser.add_argument("--department", help="Filter by department")
    parser.add_argument("--stats", action="store_true", help="Show analytics")
    parser.add_argument("--fraud", action="store_true", help="Show flagged claims")
    parser.add_argument("--min-score", type=int, default=0, help="Minimum risk score for --fraud")
    parser.add_argument("--export", action="store_true", help="Export all claims as JSON")
    parser.add_argument("--limit", type=int, default=50, help="Max claims to list")
    args = parser.parse_args()

    settings = get_settings()
    adapter = SQLitePersistenceAdapter(settings.database_path)

    if args.export:
        print(export_documents(adapter))
        return

    engine = build_engine(settings, adapter=adapter)
    result = asyncio.run(engine.start())
    if result.stale:
        console.print(f"[yellow]⚠ Showing cached data: {result.error}[/yellow]")

    if args.claim_id:
        try:
            print_claim_detail(engine.store.require(args.claim_id))
        except ClaimNotFoundError as e:
            console.print(f"[red]{e.message}[/red]")
            sys.exit(1)
        return

    if args.stats:
        print_stats(engine)
        return

    if args.fraud:
        print_fraud(engine, args.min_score)
        return

    claims = engine.store.list_by_filter(department=args.department, status=args.status)
    claims.sort(key=lambda c: (c.submitted_at, c.id), reverse=True)
    if not claims:
        console.print("\nNo claims found.")
        return
    console.print(make_claims_table(claims, args.limit))
    console.print(f"Total: {len(claims)} claim(s)")


if __name__ == "__main__":
    main()
