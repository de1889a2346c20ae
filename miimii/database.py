"""
Database Layer for MiiMii
=========================
One persistence path for the whole agent. Uses PostgreSQL when the URL
says so and SQLite otherwise, behind a small repository API:

    find_one / find_all / create / update / delete / count

Filters are plain maps. A key may carry an operator suffix:
``created_at__lt``, ``status__in``, ``amount__gte``, ``status__ne``.
"""

import re
import sqlite3
import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")
_OPERATORS = {
    "eq": "=",
    "ne": "!=",
    "lt": "<",
    "lte": "<=",
    "gt": ">",
    "gte": ">=",
}

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        phone TEXT UNIQUE NOT NULL,
        display_name TEXT,
        first_name TEXT,
        last_name TEXT,
        date_of_birth TEXT,
        kyc_status TEXT NOT NULL DEFAULT 'unverified',
        onboarding_step TEXT NOT NULL DEFAULT 'initial',
        kyc_data TEXT,
        pin_hash TEXT,
        pin_failures INTEGER NOT NULL DEFAULT 0,
        pin_locked_until TEXT,
        pin_failed_at TEXT,
        conversation TEXT,
        disabled INTEGER NOT NULL DEFAULT 0,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS wallets (
        user_id TEXT PRIMARY KEY,
        available TEXT NOT NULL DEFAULT '0.00',
        pending TEXT NOT NULL DEFAULT '0.00',
        daily_spent TEXT NOT NULL DEFAULT '0.00',
        daily_spent_date TEXT,
        daily_limit TEXT NOT NULL,
        state TEXT NOT NULL DEFAULT 'provisioning',
        account_number TEXT,
        bank_name TEXT,
        account_name TEXT,
        bank_code TEXT,
        provisioning_attempts INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS transactions (
        id TEXT PRIMARY KEY,
        reference TEXT UNIQUE NOT NULL,
        user_id TEXT NOT NULL,
        type TEXT NOT NULL,
        category TEXT NOT NULL,
        amount TEXT NOT NULL,
        fee TEXT NOT NULL,
        total_amount TEXT NOT NULL,
        status TEXT NOT NULL,
        description TEXT,
        provider_reference TEXT,
        metadata TEXT,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_transactions_status ON transactions (status, updated_at)",
    "CREATE INDEX IF NOT EXISTS idx_transactions_user ON transactions (user_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS holds (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        amount TEXT NOT NULL,
        reference TEXT UNIQUE NOT NULL,
        status TEXT NOT NULL,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS kv_store (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        expires_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS data_plans (
        id INTEGER PRIMARY KEY,
        network TEXT NOT NULL,
        plan_type TEXT NOT NULL,
        data_size TEXT NOT NULL,
        validity TEXT NOT NULL,
        selling_price TEXT NOT NULL,
        network_code INTEGER NOT NULL,
        api_plan_id INTEGER NOT NULL,
        active INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notifications (
        message_id TEXT PRIMARY KEY,
        phone TEXT NOT NULL,
        kind TEXT NOT NULL,
        status TEXT NOT NULL,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS activity_logs (
        id TEXT PRIMARY KEY,
        user_id TEXT,
        action TEXT NOT NULL,
        details TEXT,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS processed_messages (
        message_id TEXT PRIMARY KEY,
        received_at TEXT
    )
    """,
]


class DatabaseError(Exception):
    pass


class Repository:
    """Query helpers bound to one open connection."""

    def __init__(self, conn, use_postgres: bool):
        self.conn = conn
        self.use_postgres = use_postgres

    def _cursor(self):
        if self.use_postgres:
            from psycopg2.extras import RealDictCursor
            return self.conn.cursor(cursor_factory=RealDictCursor)
        return self.conn.cursor()

    def execute(self, query: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        # Convert ? placeholders to %s for PostgreSQL
        if self.use_postgres:
            query = query.replace("?", "%s")
        cursor = self._cursor()
        try:
            cursor.execute(query, tuple(params))
            if cursor.description is None:
                return []
            return [dict(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def execute_count(self, query: str, params: Sequence[Any] = ()) -> int:
        if self.use_postgres:
            query = query.replace("?", "%s")
        cursor = self._cursor()
        try:
            cursor.execute(query, tuple(params))
            return cursor.rowcount
        finally:
            cursor.close()

    def find_one(self, table: str, filters: Dict[str, Any] = None,
                 order_by: str = None, for_update: bool = False) -> Optional[Dict[str, Any]]:
        rows = self.find_all(table, filters, order_by=order_by, limit=1, for_update=for_update)
        return rows[0] if rows else None

    def find_all(self, table: str, filters: Dict[str, Any] = None, order_by: str = None,
                 limit: int = None, offset: int = None, for_update: bool = False) -> List[Dict[str, Any]]:
        where, params = _where(filters)
        query = f"SELECT * FROM {_name(table)}{where}"
        if order_by:
            query += f" ORDER BY {_order(order_by)}"
        if limit is not None:
            query += f" LIMIT {int(limit)}"
        if offset:
            query += f" OFFSET {int(offset)}"
        if for_update and self.use_postgres:
            # SQLite already holds the write lock from BEGIN IMMEDIATE.
            query += " FOR UPDATE"
        return self.execute(query, params)

    def create(self, table: str, values: Dict[str, Any]) -> Dict[str, Any]:
        columns = [_name(column) for column in values]
        placeholders = ", ".join("?" for _ in columns)
        query = f"INSERT INTO {_name(table)} ({', '.join(columns)}) VALUES ({placeholders})"
        self.execute_count(query, list(values.values()))
        return dict(values)

    def update(self, table: str, filters: Dict[str, Any], values: Dict[str, Any]) -> int:
        if not values:
            return 0
        assignments = ", ".join(f"{_name(column)} = ?" for column in values)
        where, params = _where(filters)
        query = f"UPDATE {_name(table)} SET {assignments}{where}"
        return self.execute_count(query, list(values.values()) + params)

    def delete(self, table: str, filters: Dict[str, Any]) -> int:
        where, params = _where(filters)
        return self.execute_count(f"DELETE FROM {_name(table)}{where}", params)

    def count(self, table: str, filters: Dict[str, Any] = None) -> int:
        where, params = _where(filters)
        rows = self.execute(f"SELECT COUNT(*) AS n FROM {_name(table)}{where}", params)
        return int(rows[0]["n"]) if rows else 0


class Database:
    """
    Unified database that works with both PostgreSQL and SQLite.
    Every call outside transaction() uses its own short-lived connection
    and commits on success.
    """

    def __init__(self, url: str = "sqlite:///miimii.db"):
        self.url = url
        self.use_postgres = url.startswith(("postgres://", "postgresql://"))
        self._pool = None
        self._pool_lock = threading.Lock()

        if self.use_postgres:
            self._init_postgres_pool()
        else:
            self.db_path = url[len("sqlite:///"):] if url.startswith("sqlite:///") else url

    def _init_postgres_pool(self):
        import psycopg2.pool

        db_url = self.url
        if db_url.startswith("postgres://"):
            db_url = db_url.replace("postgres://", "postgresql://", 1)
        with self._pool_lock:
            if self._pool is None:
                self._pool = psycopg2.pool.ThreadedConnectionPool(minconn=2, maxconn=20, dsn=db_url)
                logger.info("PostgreSQL connection pool initialized")

    @contextmanager
    def get_connection(self):
        if self.use_postgres:
            conn = self._pool.getconn()
            try:
                yield conn
            finally:
                self._pool.putconn(conn)
        else:
            conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
            conn.row_factory = sqlite3.Row
            try:
                yield conn
            finally:
                conn.close()

    @contextmanager
    def transaction(self) -> Iterator[Repository]:
        """A repository whose writes commit together or not at all."""
        with self.get_connection() as conn:
            if not self.use_postgres:
                # Take the write lock up front so concurrent wallet updates queue here.
                conn.execute("BEGIN IMMEDIATE")
            repo = Repository(conn, self.use_postgres)
            try:
                yield repo
            except BaseException:
                conn.rollback()
                raise
            else:
                conn.commit()

    def init_schema(self):
        with self.transaction() as repo:
            for statement in SCHEMA:
                repo.execute_count(statement)
        logger.info(f"Database schema ready ({'postgres' if self.use_postgres else 'sqlite'})")

    def ping(self) -> bool:
        try:
            with self.get_connection() as conn:
                Repository(conn, self.use_postgres).execute("SELECT 1 AS ok")
            return True
        except Exception as e:
            logger.error(f"Database ping failed: {e}")
            return False

    # Single-statement helpers, each in its own transaction.

    def find_one(self, table: str, filters: Dict[str, Any] = None, order_by: str = None):
        with self.transaction() as repo:
            return repo.find_one(table, filters, order_by)

    def find_all(self, table: str, filters: Dict[str, Any] = None, order_by: str = None,
                 limit: int = None, offset: int = None):
        with self.transaction() as repo:
            return repo.find_all(table, filters, order_by, limit, offset)

    def create(self, table: str, values: Dict[str, Any]):
        with self.transaction() as repo:
            return repo.create(table, values)

    def update(self, table: str, filters: Dict[str, Any], values: Dict[str, Any]) -> int:
        with self.transaction() as repo:
            return repo.update(table, filters, values)

    def delete(self, table: str, filters: Dict[str, Any]) -> int:
        with self.transaction() as repo:
            return repo.delete(table, filters)

    def count(self, table: str, filters: Dict[str, Any] = None) -> int:
        with self.transaction() as repo:
            return repo.count(table, filters)

    def close(self):
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None


def is_unique_violation(error: Exception) -> bool:
    if isinstance(error, sqlite3.IntegrityError):
        return True
    return type(error).__name__ in ("UniqueViolation", "IntegrityError")


def _name(identifier: str) -> str:
    if not _IDENTIFIER.match(identifier):
        raise DatabaseError(f"Invalid identifier: {identifier!r}")
    return identifier


def _order(order_by: str) -> str:
    parts = []
    for item in order_by.split(","):
        tokens = item.split()
        column = _name(tokens[0])
        direction = tokens[1].upper() if len(tokens) > 1 else "ASC"
        if direction not in ("ASC", "DESC"):
            raise DatabaseError(f"Invalid sort direction: {direction!r}")
        parts.append(f"{column} {direction}")
    return ", ".join(parts)


def _where(filters: Optional[Dict[str, Any]]) -> Tuple[str, List[Any]]:
    if not filters:
        return "", []
    clauses = []
    params: List[Any] = []
    for key, value in filters.items():
        column, _, op = key.partition("__")
        column = _name(column)
        op = op or "eq"
        if op == "in":
            values = list(value)
            if not values:
                clauses.append("1 = 0")
                continue
            clauses.append(f"{column} IN ({', '.join('?' for _ in values)})")
            params.extend(values)
        elif value is None and op in ("eq", "ne"):
            clauses.append(f"{column} IS {'NOT ' if op == 'ne' else ''}NULL")
        elif op in _OPERATORS:
            clauses.append(f"{column} {_OPERATORS[op]} ?")
            params.append(value)
        else:
            raise DatabaseError(f"Unknown filter operator: {op!r}")
    return " WHERE " + " AND ".join(clauses), params
