"""
SQLite-based persistence adapter.

Stores claims and the user directory in a local SQLite database.
No external database setup required - just works. Each claim is kept as a
JSON document next to indexed columns for the common filters; queries run
in a worker thread so the event loop is never blocked.
"""

import asyncio
import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import List, Optional

from ..claims.errors import ClaimNotFoundError
from ..claims.schema import Claim, ClaimStatus, User, apply_patch
from .persistence import ClaimFilter, PersistenceAdapter

logger = logging.getLogger(__name__)

# Database file location
DEFAULT_DB_PATH = Path(__file__).parent.parent.parent / "data" / "claims.db"


class SQLitePersistenceAdapter(PersistenceAdapter):
    """
    SQLite-backed claim and user storage.

    Usage:
        adapter = SQLitePersistenceAdapter(Path("data/claims.db"))

        # Used through the ClaimStore
        store = ClaimStore(adapter, bus)
        await store.refresh()

        # Seed the user directory
        adapter.save_user(User(id="EMP-1", name="Thandi Nkosi", department="Sales"))
    """

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize the adapter and create tables if needed."""
        self.db_path = Path(db_path or DEFAULT_DB_PATH)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        """Create tables if they don't exist."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS claims (
                    claim_id TEXT PRIMARY KEY,
                    submitted_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    employee_id TEXT NOT NULL,
                    department TEXT NOT NULL DEFAULT 'Unknown',
                    category TEXT NOT NULL,

                    -- Full claim document (JSON)
                    document TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    email TEXT,
                    role TEXT NOT NULL DEFAULT 'employee',
                    department TEXT NOT NULL DEFAULT 'Unknown'
                )
            """)

            # Create indexes for common queries
            conn.execute("CREATE INDEX IF NOT EXISTS idx_claims_status ON claims(status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_claims_employee ON claims(employee_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_claims_department ON claims(department)")
            conn.commit()

    @contextmanager
    def _get_connection(self):
        """Get a database connection."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    # =========================================================================
    # Synchronous operations (run in a worker thread)
    # =========================================================================

    def _row_to_claim(self, row: sqlite3.Row) -> Claim:
        """Convert a database row to a Claim."""
        return Claim.model_validate_json(row["document"])

    def _write_claim(self, conn: sqlite3.Connection, claim: Claim, insert: bool) -> None:
        document = claim.model_dump_json(exclude={"is_flagged"})
        values = (
            claim.submitted_at.isoformat(),
            claim.updated_at.isoformat(),
            claim.status.value,
            claim.employee_id,
            claim.department,
            claim.category,
            document,
            claim.id,
        )
        if insert:
            conn.execute("""
                INSERT INTO claims (
                    submitted_at, updated_at, status, employee_id,
                    department, category, document, claim_id
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, values)
        else:
            conn.execute("""
                UPDATE claims SET
                    submitted_at = ?, updated_at = ?, status = ?, employee_id = ?,
                    department = ?, category = ?, document = ?
                WHERE claim_id = ?
            """, values)

    def list_all(self, claim_filter: Optional[ClaimFilter] = None) -> List[Claim]:
        """List claims with optional filtering."""
        claim_filter = claim_filter or ClaimFilter()
        query = "SELECT * FROM claims WHERE 1=1"
        params = []

        if claim_filter.employee_id:
            query += " AND employee_id = ?"
            params.append(claim_filter.employee_id)

        if claim_filter.department:
            query += " AND department = ?"
            params.append(claim_filter.department)

        if claim_filter.status:
            query += " AND status = ?"
            params.append(ClaimStatus(claim_filter.status).value)

        if claim_filter.category:
            query += " AND category = ?"
            params.append(claim_filter.category)

        query += " ORDER BY submitted_at DESC"

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
            return [self._row_to_claim(row) for row in rows]

    def insert(self, claim: Claim) -> Claim:
        with self._get_connection() as conn:
            self._write_claim(conn, claim, insert=True)
            conn.commit()
        return claim

    def patch(self, claim_id: str, patch: dict) -> Claim:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM claims WHERE claim_id = ?",
                (claim_id,)
            ).fetchone()
            if row is None:
                raise ClaimNotFoundError(claim_id)
            updated = apply_patch(self._row_to_claim(row), patch)
            self._write_claim(conn, updated, insert=False)
            conn.commit()
        return updated

    def delete(self, claim_id: str) -> bool:
        """Delete a claim."""
        with self._get_connection() as conn:
            result = conn.execute(
                "DELETE FROM claims WHERE claim_id = ?",
                (claim_id,)
            )
            conn.commit()
            return result.rowcount > 0

    def save_user(self, user: User) -> None:
        """Insert or replace a user directory entry."""
        with self._get_connection() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO users (user_id, name, email, role, department)
                VALUES (?, ?, ?, ?, ?)
            """, (user.id, user.name, user.email, user.role.value, user.department))
            conn.commit()

    def list_users(self) -> List[User]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY name").fetchall()
            return [
                User(
                    id=row["user_id"],
                    name=row["name"],
                    email=row["email"],
                    role=row["role"],
                    department=row["department"],
                )
                for row in rows
            ]

    # =========================================================================
    # PersistenceAdapter interface
    # =========================================================================

    async def fetch_claims(self, claim_filter: Optional[ClaimFilter] = None) -> List[Claim]:
        return await asyncio.to_thread(self.list_all, claim_filter)

    async def create_claim(self, claim: Claim) -> Claim:
        logger.info(f"💾 Saving claim {claim.id} to database: {self.db_path.resolve()}")
        return await asyncio.to_thread(self.insert, claim)

    async def update_claim(self, claim_id: str, patch: dict) -> Claim:
        return await asyncio.to_thread(self.patch, claim_id, patch)

    async def delete_claim(self, claim_id: str) -> None:
        deleted = await asyncio.to_thread(self.delete, claim_id)
        if not deleted:
            logger.warning(f"Delete requested for unknown claim {claim_id}")

    async def fetch_users(self) -> List[User]:
        return await asyncio.to_thread(self.list_users)


def export_documents(adapter: SQLitePersistenceAdapter) -> str:
    """Dump every stored claim as a JSON array."""
    return json.dumps(
        [claim.model_dump(mode="json") for claim in adapter.list_all()],
        indent=2,
    )
