"""
SQLite item and grant store for access-sync.

This module manages the SQLite database that stores:
- Experiences with their category memberships
- The denormalized access-set, one row per (experience, user)
- Grants (the normalized share table)
- Plain and color categories

The access-set is a relation table rather than a JSON column so that
union and remove map onto INSERT OR IGNORE and DELETE; no writer ever
reads the whole set back to splice it.

Invariants:
    - All batch writes are atomic (single transaction)
    - Union on a missing experience is a no-op, never an insert
    - Queries never take more than max_predicate_values scope IDs
    - Lock and I/O failures surface as TransientStoreError

How to change safely:
    - Schema migrations must be backward compatible
    - Keep access-set writes set-algebraic (no read-modify-write)
    - Test with large category fan-out before production

Table schema:
    experiences:
        - experience_id TEXT PRIMARY KEY
        - owner TEXT
        - primary_category TEXT NULL
        - color_category TEXT NULL
        - created_at INTEGER (Unix ms)
        - INDEX on (owner, primary_category), (owner, color_category),
          (created_at, experience_id)

    experience_categories:
        - experience_id TEXT
        - category_id TEXT
        - PRIMARY KEY (experience_id, category_id)

    experience_access:
        - experience_id TEXT
        - user_id TEXT
        - PRIMARY KEY (experience_id, user_id)
        - INDEX on (user_id, experience_id)

    grants:
        - grant_id TEXT PRIMARY KEY
        - owner, scope, scope_id, grantee, access_level TEXT
        - created_at INTEGER
        - INDEX on (owner, scope, scope_id, grantee)

    categories:
        - owner, kind, category_id TEXT, name TEXT
        - PRIMARY KEY (owner, kind, category_id)
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
import uuid
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ..errors import TransientStoreError
from .base import (
    AccessLevel,
    AccessMutation,
    Category,
    CategoryKind,
    Cursor,
    Experience,
    Grant,
    GrantScope,
    MutationOp,
    WriteBatch,
    check_predicate_values,
    check_single_predicate,
)

logger = logging.getLogger(__name__)


class SqliteStore:
    """SQLite implementation of both ItemStore and GrantStore.

    Thread safety:
        Each database connection is created per-operation.
        SQLite handles concurrent access via WAL mode.

    Example:
        >>> store = SqliteStore("/var/lib/access-sync")
        >>> await store.initialize()
        >>> await store.put_experience(Experience("e1", owner="u1", primary_category="catA"))
        >>> batch = store.batch()
        >>> batch.union_access("e1", "u2")
        >>> await batch.commit()
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        db_filename: str = "access.db",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -64000,
        max_batch_size: int = 450,
        max_predicate_values: int = 30,
    ) -> None:
        """Initialize the store.

        Args:
            data_dir: Directory for the SQLite database file
            db_filename: Database file name
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
            max_batch_size: Maximum mutations per atomic batch
            max_predicate_values: Maximum scope IDs per grant query
        """
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / db_filename
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages
        self.max_batch_size = max_batch_size
        self.max_predicate_values = max_predicate_values
        self._lock = asyncio.Lock()

    @contextmanager
    def _get_connection(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Open a configured connection for one operation.

        Args:
            operation: Operation name for error context

        Yields:
            SQLite connection

        Raises:
            TransientStoreError: If the database cannot be opened or is locked
        """
        self.data_dir.mkdir(parents=True, exist_ok=True)

        try:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
        except sqlite3.OperationalError as e:
            raise TransientStoreError(f"Store unavailable: {e}", operation=operation) from e

        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")

            yield conn
        except sqlite3.OperationalError as e:
            raise TransientStoreError(f"Store operation failed: {e}", operation=operation) from e
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS experiences (
                experience_id TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                primary_category TEXT,
                color_category TEXT,
                created_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_experiences_primary
                ON experiences(owner, primary_category);
            CREATE INDEX IF NOT EXISTS idx_experiences_color
                ON experiences(owner, color_category);
            CREATE INDEX IF NOT EXISTS idx_experiences_cursor
                ON experiences(created_at, experience_id);

            CREATE TABLE IF NOT EXISTS experience_categories (
                experience_id TEXT NOT NULL,
                category_id TEXT NOT NULL,
                PRIMARY KEY (experience_id, category_id)
            );

            CREATE INDEX IF NOT EXISTS idx_experience_categories_category
                ON experience_categories(category_id, experience_id);

            -- Denormalized access-set
            CREATE TABLE IF NOT EXISTS experience_access (
                experience_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                PRIMARY KEY (experience_id, user_id)
            );

            CREATE INDEX IF NOT EXISTS idx_experience_access_user
                ON experience_access(user_id, experience_id);

            CREATE TABLE IF NOT EXISTS grants (
                grant_id TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                scope TEXT NOT NULL,
                scope_id TEXT NOT NULL,
                grantee TEXT NOT NULL,
                access_level TEXT NOT NULL DEFAULT 'view',
                created_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_grants_target
                ON grants(owner, scope, scope_id, grantee);

            CREATE TABLE IF NOT EXISTS categories (
                owner TEXT NOT NULL,
                kind TEXT NOT NULL,
                category_id TEXT NOT NULL,
                name TEXT NOT NULL DEFAULT '',
                PRIMARY KEY (owner, kind, category_id)
            );

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def initialize(self) -> None:
        """Create the database file and schema if they don't exist."""
        async with self._lock:
            with self._get_connection("initialize") as conn:
                self._create_schema(conn)
        logger.info(f"Initialized access store: {self.db_path}")

    # Experiences

    async def get_experience(self, experience_id: str) -> Experience | None:
        with self._get_connection("get_experience") as conn:
            cursor = conn.execute(
                "SELECT * FROM experiences WHERE experience_id = ?",
                (experience_id,),
            )
            row = cursor.fetchone()
            if not row:
                return None
            return self._load_experiences(conn, [row])[0]

    async def put_experience(self, experience: Experience) -> None:
        """Create or overwrite an experience, its memberships and access-set."""
        created_at = experience.created_at or int(time.time() * 1000)

        with self._get_connection("put_experience") as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO experiences
                    (experience_id, owner, primary_category, color_category, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        experience.experience_id,
                        experience.owner,
                        experience.primary_category,
                        experience.color_category,
                        created_at,
                    ),
                )
                conn.execute(
                    "DELETE FROM experience_categories WHERE experience_id = ?",
                    (experience.experience_id,),
                )
                conn.executemany(
                    "INSERT INTO experience_categories (experience_id, category_id) VALUES (?, ?)",
                    [(experience.experience_id, c) for c in sorted(experience.secondary_categories)],
                )
                self._replace_access(conn, experience.experience_id, experience.access_set)
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        logger.debug(
            "Stored experience",
            extra={"experience_id": experience.experience_id, "owner": experience.owner},
        )

    async def find_experiences(
        self,
        owner: str,
        *,
        primary_category: str | None = None,
        secondary_category: str | None = None,
        color_category: str | None = None,
    ) -> list[Experience]:
        name, value = check_single_predicate(
            primary_category=primary_category,
            secondary_category=secondary_category,
            color_category=color_category,
        )

        if name == "secondary_category":
            query = """
                SELECT e.* FROM experiences e
                JOIN experience_categories c ON c.experience_id = e.experience_id
                WHERE e.owner = ? AND c.category_id = ?
            """
        else:
            query = f"SELECT e.* FROM experiences e WHERE e.owner = ? AND e.{name} = ?"

        with self._get_connection("find_experiences") as conn:
            rows = conn.execute(query + " ORDER BY e.experience_id", (owner, value)).fetchall()
            return self._load_experiences(conn, rows)

    async def page_experiences(self, after: Cursor | None, limit: int) -> list[Experience]:
        query = "SELECT * FROM experiences"
        params: list[Any] = []
        if after is not None:
            query += " WHERE (created_at > ?) OR (created_at = ? AND experience_id > ?)"
            params.extend([after.created_at, after.created_at, after.experience_id])
        query += " ORDER BY created_at, experience_id LIMIT ?"
        params.append(limit)

        with self._get_connection("page_experiences") as conn:
            rows = conn.execute(query, params).fetchall()
            return self._load_experiences(conn, rows)

    async def experiences_shared_with(self, user_id: str, limit: int = 100) -> list[Experience]:
        with self._get_connection("experiences_shared_with") as conn:
            rows = conn.execute(
                """
                SELECT e.* FROM experiences e
                JOIN experience_access a ON a.experience_id = e.experience_id
                WHERE a.user_id = ?
                ORDER BY e.created_at DESC, e.experience_id
                LIMIT ?
                """,
                (user_id, limit),
            ).fetchall()
            return self._load_experiences(conn, rows)

    def _load_experiences(
        self, conn: sqlite3.Connection, rows: list[sqlite3.Row]
    ) -> list[Experience]:
        """Attach secondary categories and access-sets to experience rows."""
        if not rows:
            return []

        ids = [row["experience_id"] for row in rows]
        placeholders = ",".join("?" for _ in ids)

        secondary: dict[str, set[str]] = {i: set() for i in ids}
        for row in conn.execute(
            f"SELECT experience_id, category_id FROM experience_categories "
            f"WHERE experience_id IN ({placeholders})",
            ids,
        ):
            secondary[row["experience_id"]].add(row["category_id"])

        access: dict[str, set[str]] = {i: set() for i in ids}
        for row in conn.execute(
            f"SELECT experience_id, user_id FROM experience_access "
            f"WHERE experience_id IN ({placeholders})",
            ids,
        ):
            access[row["experience_id"]].add(row["user_id"])

        return [
            Experience(
                experience_id=row["experience_id"],
                owner=row["owner"],
                primary_category=row["primary_category"],
                secondary_categories=frozenset(secondary[row["experience_id"]]),
                color_category=row["color_category"],
                access_set=frozenset(access[row["experience_id"]]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    # Categories

    async def put_category(self, category: Category) -> None:
        with self._get_connection("put_category") as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO categories (owner, kind, category_id, name)
                VALUES (?, ?, ?, ?)
                """,
                (category.owner, category.kind.value, category.category_id, category.name),
            )

    async def category_exists(self, owner: str, category_id: str, kind: CategoryKind) -> bool:
        with self._get_connection("category_exists") as conn:
            cursor = conn.execute(
                "SELECT 1 FROM categories WHERE owner = ? AND kind = ? AND category_id = ?",
                (owner, kind.value, category_id),
            )
            return cursor.fetchone() is not None

    # Access-set writes

    def batch(self) -> WriteBatch:
        return WriteBatch(self._commit_mutations, self.max_batch_size)

    async def _commit_mutations(self, mutations: list[AccessMutation]) -> None:
        """Apply a batch of access-set mutations in one transaction."""
        with self._get_connection("commit_batch") as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                for mutation in mutations:
                    if mutation.op == MutationOp.UNION:
                        for user_id in mutation.user_ids:
                            conn.execute(
                                """
                                INSERT OR IGNORE INTO experience_access (experience_id, user_id)
                                SELECT experience_id, ? FROM experiences WHERE experience_id = ?
                                """,
                                (user_id, mutation.experience_id),
                            )
                    elif mutation.op == MutationOp.REMOVE:
                        conn.executemany(
                            "DELETE FROM experience_access WHERE experience_id = ? AND user_id = ?",
                            [(mutation.experience_id, u) for u in mutation.user_ids],
                        )
                    else:
                        self._replace_access(conn, mutation.experience_id, mutation.user_ids)
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        logger.debug("Committed access batch", extra={"mutations": len(mutations)})

    def _replace_access(
        self, conn: sqlite3.Connection, experience_id: str, user_ids: frozenset[str]
    ) -> None:
        conn.execute("DELETE FROM experience_access WHERE experience_id = ?", (experience_id,))
        conn.executemany(
            """
            INSERT OR IGNORE INTO experience_access (experience_id, user_id)
            SELECT experience_id, ? FROM experiences WHERE experience_id = ?
            """,
            [(u, experience_id) for u in sorted(user_ids)],
        )

    # Grants

    async def put_grant(self, grant: Grant) -> None:
        grant_id = grant.grant_id or str(uuid.uuid4())
        created_at = grant.created_at or int(time.time() * 1000)

        with self._get_connection("put_grant") as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO grants
                (grant_id, owner, scope, scope_id, grantee, access_level, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    grant_id,
                    grant.owner,
                    grant.scope.value,
                    grant.scope_id,
                    grant.grantee,
                    grant.access_level.value,
                    created_at,
                ),
            )

    async def get_grant(self, grant_id: str) -> Grant | None:
        with self._get_connection("get_grant") as conn:
            row = conn.execute("SELECT * FROM grants WHERE grant_id = ?", (grant_id,)).fetchone()
            return self._row_to_grant(row) if row else None

    async def delete_grant(self, grant_id: str) -> Grant | None:
        with self._get_connection("delete_grant") as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT * FROM grants WHERE grant_id = ?", (grant_id,)
                ).fetchone()
                if row:
                    conn.execute("DELETE FROM grants WHERE grant_id = ?", (grant_id,))
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
            return self._row_to_grant(row) if row else None

    async def query_grants(
        self,
        owner: str,
        scope: GrantScope,
        scope_ids: Sequence[str],
        grantee: str | None = None,
    ) -> list[Grant]:
        check_predicate_values(scope_ids, self.max_predicate_values)
        if not scope_ids:
            return []

        placeholders = ",".join("?" for _ in scope_ids)
        query = (
            f"SELECT * FROM grants WHERE owner = ? AND scope = ? AND scope_id IN ({placeholders})"
        )
        params: list[Any] = [owner, scope.value, *scope_ids]
        if grantee is not None:
            query += " AND grantee = ?"
            params.append(grantee)

        with self._get_connection("query_grants") as conn:
            return [self._row_to_grant(row) for row in conn.execute(query, params).fetchall()]

    def _row_to_grant(self, row: sqlite3.Row) -> Grant:
        return Grant(
            grant_id=row["grant_id"],
            owner=row["owner"],
            scope=GrantScope(row["scope"]),
            scope_id=row["scope_id"],
            grantee=row["grantee"],
            access_level=AccessLevel(row["access_level"]),
            created_at=row["created_at"],
        )

    async def get_stats(self) -> dict[str, int]:
        """Get row counts for diagnostics."""
        with self._get_connection("get_stats") as conn:
            stats = {}
            for table in ("experiences", "experience_access", "grants", "categories"):
                stats[table] = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            return stats
