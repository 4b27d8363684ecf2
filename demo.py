#!/usr/bin/env python3
"""
Expense Claims Engine - Demo Script

Walks one full claim cycle:
1. Submit claims (including a duplicate and a high amount)
2. Watch the mounted views pick the changes up
3. Approve, reject and escalate from the approval queue
4. Print department, budget and fraud analytics

Run with: python demo.py

Claims are saved to the configured database (default data/claims.db).
View saved claims with: python view_claims.py
"""

import asyncio
import os
import sys
from datetime import date, timedelta

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

# Load environment variables
from dotenv import load_dotenv
load_dotenv()

from src.claims import ClaimsError, User
from src.claims.schema import Role
from src.engine import build_engine
from src.storage.sqlite_adapter import SQLitePersistenceAdapter
from src.utils.config import get_settings


USERS = [
    User(id="EMP-001", name="Thandi Nkosi", email="thandi@example.com", department="Sales"),
    User(id="EMP-002", name="Pieter van Wyk", email="pieter@example.com", department="Operations"),
    User(id="EMP-003", name="Ayesha Patel", email="ayesha@example.com", department="Finance"),
    User(id="MGR-001", name="Sipho Dlamini", email="sipho@example.com", role=Role.MANAGER, department="Sales"),
    User(id="HR-001", name="Lerato Mokoena", email="lerato@example.com", role=Role.HR, department="Human Resources"),
]


def print_header(title: str):
    """Print a formatted section header."""
    print("\n" + "=" * 70)
    print(f"  {title}")
    print("=" * 70)


def print_subheader(title: str):
    """Print a formatted subsection header."""
    print(f"\n--- {title} ---")


def print_claim_summary(claim):
    """Print a short claim summary."""
    print(f"\n{'─' * 50}")
    print(f"  {claim.id}  [{claim.status.value}]")
    print(f"  {claim.employee_name} ({claim.department})")
    print(f"  {claim.category}: {claim.currency} {claim.amount:,.2f} (tax {claim.tax_amount:,.2f})")
    print(f"  Risk score: {claim.risk_score}{' FLAGGED' if claim.is_flagged else ''}")
    if claim.flags:
        print(f"  Flags: {', '.join(claim.flags)}")


async def run_demo():
    settings = get_settings()
    adapter = SQLitePersistenceAdapter(settings.database_path)
    for user in USERS:
        adapter.save_user(user)

    engine = build_engine(settings, adapter=adapter)
    await engine.start()

    print_header("EXPENSE CLAIMS ENGINE DEMO")
    print(f"Database: {settings.database_path}")
    print(f"Existing claims: {len(engine.store)}")

    # Views stay current through the event bus
    queue_view = engine.approval_queue(Role.MANAGER)
    hr_view = engine.hr_analytics()
    await queue_view.mount()
    await hr_view.mount()

    # =========================================================================
    print_header("1. SUBMITTING CLAIMS")
    # =========================================================================

    expense_day = date.today() - timedelta(days=3)
    submissions = [
        ("EMP-001", "450.00", "Fuel & Vehicle", "Fuel for client visits in Durban"),
        ("EMP-001", "450.00", "Fuel & Vehicle", "Fuel for client visits in Durban"),
        ("EMP-002", "1200.00", "Accommodation", "Two nights at conference hotel"),
        ("EMP-002", "180.00", "Meals & Entertainment", "Team lunch after site inspection"),
        ("EMP-003", "95.50", "Office Supplies", "Printer paper and toner"),
        ("EMP-003", "4800.00", "Accommodation", "Executive suite for board offsite"),
    ]

    claims = []
    for employee_id, amount, category, description in submissions:
        receipt = await engine.attach_receipt(
            f"receipt for {description}".encode(),
            "receipt.txt",
            owner_id=employee_id,
            content_type="text/plain",
        )
        submission = await engine.submit({
            "employee_id": employee_id,
            "amount": amount,
            "category": category,
            "description": description,
            "expense_date": expense_day,
            "attachments": [receipt],
        })
        claims.append(submission.claim)
        print_claim_summary(submission.claim)

    await engine.bus.drain()

    print_subheader("Manager approval queue")
    print(f"  {len(queue_view.state.data)} claim(s) waiting (stale: {queue_view.state.stale})")

    # =========================================================================
    print_header("2. DECISIONS")
    # =========================================================================

    approve_me, duplicate, hotel, lunch, paper, suite = claims
    await engine.workflow.approve(approve_me.id, Role.MANAGER, "MGR-001", "Sipho Dlamini")
    print(f"✅ Approved {approve_me.id}")

    await engine.workflow.reject(duplicate.id, Role.MANAGER, "Duplicate of an earlier fuel claim", "MGR-001", "Sipho Dlamini")
    print(f"❌ Rejected {duplicate.id}")

    await engine.workflow.escalate(suite.id, Role.MANAGER, "Above manager approval limit", "MGR-001", "Sipho Dlamini")
    print(f"⬆️  Escalated {suite.id} to HR")

    try:
        await engine.workflow.approve(approve_me.id, Role.MANAGER, "MGR-001")
    except ClaimsError as e:
        print(f"⚠ Second approval refused: {e.message}")

    results = await engine.workflow.bulk_approve([hotel.id, lunch.id, paper.id], Role.HR, "HR-001", "Lerato Mokoena")
    print(f"✅ Bulk approved {sum(r.success for r in results)} of {len(results)} claims")

    await engine.bus.drain()

    # =========================================================================
    print_header("3. ANALYTICS")
    # =========================================================================

    print_subheader("Departments")
    for row in hr_view.state.data["departments"]:
        budget = engine.analytics.budget_utilization(row.department)
        print(
            f"  {row.department:<16} total {row.total_amount:>10,.2f}  "
            f"approved {row.approved_amount:>10,.2f}  budget {budget.utilization_rate:.2f}% ({budget.status})"
        )

    print_subheader("Flagged claims")
    for case in engine.analytics.fraud_overview():
        print(f"  {case.claim_id}  score {case.risk_score:>3} ({case.risk_level})  {', '.join(case.flags)}")

    stats = engine.analytics.approval_statistics()
    print_subheader("Approvals")
    print(f"  Approved: {stats.approved_count}  Rejected: {stats.rejected_count}  Pending: {stats.pending_count}")

    queue_view.unmount()
    hr_view.unmount()

    print_header("DEMO COMPLETE")
    print("View saved claims with: python view_claims.py --stats")


def main():
    asyncio.run(run_demo())


if __name__ == "__main__":
    main()
