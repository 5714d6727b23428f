"""
SQLite Persistence Gateway - Instance, Assignment and Log Storage
==================================================================

The session core only talks to the store through five generic operations
(find_one / find_all / insert / update / delete). Typed helpers for
instances, assignments and contact modes are built on top of them, so any
backend that implements the five primitives gets the helpers for free.
"""

import re
import sqlite3
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from ...domain.models import ClientAssignment, ConversationMode

logger = logging.getLogger(__name__)

DATABASE_FILE = "support_panel.db"

TABLES = frozenset({
    "instances",
    "assignments",
    "conversation_logs",
    "follow_ups",
    "contact_modes",
})

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class PersistenceError(Exception):
    """Raised for invalid gateway usage (unknown table or column)."""
    pass


def _now() -> str:
    return datetime.now().isoformat()


def _to_db(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    return value


def parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


class PersistenceGateway(ABC):
    """
    Narrow store interface consumed by the session core.

    Implement the five primitives to add a new backend.
    """

    @abstractmethod
    def find_one(self, table: str, where: str, params: Sequence = ()) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def find_all(
        self,
        table: str,
        where: Optional[str] = None,
        params: Sequence = (),
        order_by: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def insert(self, table: str, data: Dict[str, Any]) -> Optional[int]:
        ...

    @abstractmethod
    def update(self, table: str, data: Dict[str, Any], where: str, params: Sequence = ()) -> int:
        ...

    @abstractmethod
    def delete(self, table: str, where: str, params: Sequence = ()) -> int:
        ...

    # ── Instances ──────────────────────────────────────────────────

    def get_instance_row(self, agent_id: int) -> Optional[Dict[str, Any]]:
        return self.find_one("instances", "agent_id = ?", (agent_id,))

    def save_instance_state(self, agent_id: int, **fields) -> None:
        """Insert or update the durable state of one agent's instance."""
        fields["updated_at"] = _now()
        if self.get_instance_row(agent_id):
            self.update("instances", fields, "agent_id = ?", (agent_id,))
        else:
            self.insert("instances", {"agent_id": agent_id, **fields})

    # ── Assignments ────────────────────────────────────────────────

    def get_assignment(self, contact_id: str) -> Optional[ClientAssignment]:
        row = self.find_one("assignments", "contact_id = ?", (contact_id,))
        return self._row_to_assignment(row) if row else None

    def create_assignment(self, assignment: ClientAssignment) -> Optional[int]:
        return self.insert("assignments", {
            "contact_id": assignment.contact_id,
            "agent_id": assignment.agent_id,
            "is_group": assignment.is_group,
            "group_name": assignment.group_name,
            "last_message_at": assignment.last_message_at or datetime.now(),
        })

    def touch_assignment(self, contact_id: str, when: Optional[datetime] = None) -> None:
        self.update(
            "assignments",
            {"last_message_at": when or datetime.now()},
            "contact_id = ?",
            (contact_id,),
        )

    def get_assignments_for_agent(self, agent_id: int) -> List[ClientAssignment]:
        rows = self.find_all(
            "assignments", "agent_id = ?", (agent_id,), order_by="last_message_at DESC"
        )
        return [self._row_to_assignment(row) for row in rows]

    def _row_to_assignment(self, row: Dict[str, Any]) -> ClientAssignment:
        return ClientAssignment(
            id=row.get("id"),
            contact_id=row["contact_id"],
            agent_id=row["agent_id"],
            is_group=bool(row.get("is_group")),
            group_name=row.get("group_name"),
            last_message_at=parse_timestamp(row.get("last_message_at")),
        )

    # ── Contact modes ──────────────────────────────────────────────

    def get_contact_mode(self, contact_id: str) -> ConversationMode:
        row = self.find_one("contact_modes", "contact_id = ?", (contact_id,))
        return ConversationMode.parse(row["mode"]) if row else ConversationMode.AI

    def set_contact_mode(self, contact_id: str, mode: ConversationMode, activated_by: str = "system") -> None:
        data = {"mode": mode, "activated_by": activated_by, "updated_at": _now()}
        if self.find_one("contact_modes", "contact_id = ?", (contact_id,)):
            self.update("contact_modes", data, "contact_id = ?", (contact_id,))
        else:
            self.insert("contact_modes", {"contact_id": contact_id, **data})


class Database(PersistenceGateway):
    """
    SQLite database for the support panel.

    Usage:
        db = Database()
        db.init()

        db.save_instance_state(7, status="qr_ready", qr_payload="2@abc...")
        assignment = db.get_assignment("5551234")
    """

    def __init__(self, db_path: str = DATABASE_FILE):
        self.db_path = str(db_path)

    @contextmanager
    def _get_connection(self):
        """Get database connection with context manager."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def init(self):
        """Initialize database tables."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS instances (
                    agent_id INTEGER PRIMARY KEY,
                    display_name TEXT DEFAULT '',
                    status TEXT DEFAULT 'disconnected',
                    qr_payload TEXT,
                    phone_number TEXT,
                    last_qr_at TIMESTAMP,
                    last_connected_at TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            self._migrate_instances_table(conn)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS assignments (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    contact_id TEXT UNIQUE NOT NULL,
                    agent_id INTEGER NOT NULL,
                    is_group INTEGER DEFAULT 0,
                    group_name TEXT,
                    last_message_at TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS conversation_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TIMESTAMP NOT NULL,
                    role TEXT NOT NULL,
                    message TEXT DEFAULT '',
                    contact_id TEXT NOT NULL,
                    display_name TEXT,
                    is_group INTEGER DEFAULT 0,
                    agent_id INTEGER,
                    message_id TEXT,
                    status TEXT
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_logs_message_id ON conversation_logs (message_id)"
            )

            conn.execute("""
                CREATE TABLE IF NOT EXISTS follow_ups (
                    contact_id TEXT PRIMARY KEY,
                    chat_id TEXT NOT NULL,
                    attempts INTEGER DEFAULT 0,
                    next_follow_up TIMESTAMP,
                    started_at TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS contact_modes (
                    contact_id TEXT PRIMARY KEY,
                    mode TEXT NOT NULL DEFAULT 'ai',
                    activated_by TEXT DEFAULT 'system',
                    updated_at TIMESTAMP
                )
            """)

            logger.info(f"Database initialized: {self.db_path}")

    def _migrate_instances_table(self, conn):
        """Add missing columns to an existing instances table."""
        existing = {row[1] for row in conn.execute("PRAGMA table_info(instances)").fetchall()}

        migrations = {
            "display_name": "ALTER TABLE instances ADD COLUMN display_name TEXT DEFAULT ''",
            "qr_payload": "ALTER TABLE instances ADD COLUMN qr_payload TEXT",
            "phone_number": "ALTER TABLE instances ADD COLUMN phone_number TEXT",
            "last_qr_at": "ALTER TABLE instances ADD COLUMN last_qr_at TIMESTAMP",
            "last_connected_at": "ALTER TABLE instances ADD COLUMN last_connected_at TIMESTAMP",
            "updated_at": "ALTER TABLE instances ADD COLUMN updated_at TIMESTAMP",
        }

        for col, sql in migrations.items():
            if col not in existing:
                try:
                    conn.execute(sql)
                    logger.info(f"Migrated: added '{col}' column to instances")
                except sqlite3.OperationalError:
                    pass

    # ── Generic gateway ────────────────────────────────────────────

    def _check(self, table: str, columns: Sequence[str] = ()) -> None:
        if table not in TABLES:
            raise PersistenceError(f"Unknown table: {table}")
        for column in columns:
            if not _IDENTIFIER.match(column):
                raise PersistenceError(f"Invalid column name: {column}")

    def find_one(self, table: str, where: str, params: Sequence = ()) -> Optional[Dict[str, Any]]:
        self._check(table)
        with self._get_connection() as conn:
            row = conn.execute(
                f"SELECT * FROM {table} WHERE {where} LIMIT 1", tuple(params)
            ).fetchone()
            return dict(row) if row else None

    def find_all(
        self,
        table: str,
        where: Optional[str] = None,
        params: Sequence = (),
        order_by: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        self._check(table)
        sql = f"SELECT * FROM {table}"
        if where:
            sql += f" WHERE {where}"
        if order_by:
            sql += f" ORDER BY {order_by}"
        with self._get_connection() as conn:
            return [dict(row) for row in conn.execute(sql, tuple(params)).fetchall()]

    def insert(self, table: str, data: Dict[str, Any]) -> Optional[int]:
        self._check(table, data.keys())
        columns = ", ".join(data.keys())
        placeholders = ", ".join("?" for _ in data)
        with self._get_connection() as conn:
            cursor = conn.execute(
                f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
                [_to_db(v) for v in data.values()],
            )
            return cursor.lastrowid

    def update(self, table: str, data: Dict[str, Any], where: str, params: Sequence = ()) -> int:
        if not data:
            return 0
        self._check(table, data.keys())
        set_clause = ", ".join(f"{k} = ?" for k in data.keys())
        values = [_to_db(v) for v in data.values()] + list(params)
        with self._get_connection() as conn:
            cursor = conn.execute(f"UPDATE {table} SET {set_clause} WHERE {where}", values)
            return cursor.rowcount

    def delete(self, table: str, where: str, params: Sequence = ()) -> int:
        self._check(table)
        with self._get_connection() as conn:
            cursor = conn.execute(f"DELETE FROM {table} WHERE {where}", tuple(params))
            return cursor.rowcount


# Quick init helper
def init_database(db_path: str = DATABASE_FILE) -> Database:
    """Create the database file and tables if needed."""
    db = Database(db_path)
    db.init()
    return db
