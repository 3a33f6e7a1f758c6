"""
SQLite storage for rowaudit.

This module provides persistent storage for the audit log and the relation
registry. Audited tables and audit tables live in the same database file, so
a log entry is written on the same connection and inside the same
transaction as the mutation it describes.

Design Principles:
    - Append-only: logged_actions rejects UPDATE and DELETE at the SQL level
    - Atomic: entries commit or roll back with the audited mutation
    - Ordered: event ids come from AUTOINCREMENT and are never reused

Tables:
    - logged_actions: One row per audited event
    - logged_relations: Identifying columns per relation, for replay
    - audited_relations: Capture settings per relation
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Generator

from rowaudit.errors import (
    EventNotFoundError,
    StorageConnectionError,
    StorageReadError,
    StorageWriteError,
)
from rowaudit.schema import (
    Action,
    Attachment,
    CaptureMode,
    EventFilter,
    LogEntry,
    RelationIdentity,
    RelationKind,
    split_relation,
)

# Schema version for migrations
SCHEMA_VERSION = 1

# SQL for creating tables
CREATE_TABLES_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Audited events
CREATE TABLE IF NOT EXISTS logged_actions (
    event_id INTEGER PRIMARY KEY AUTOINCREMENT,
    schema_name TEXT NOT NULL COLLATE NOCASE,
    table_name TEXT NOT NULL COLLATE NOCASE,
    relation_id INTEGER NOT NULL,
    row_id TEXT,
    action_tstamp_stm TEXT NOT NULL,
    client_query TEXT NOT NULL,
    action TEXT NOT NULL CHECK (action IN ('I', 'D', 'U', 'T')),
    row_data TEXT,
    changed_fields TEXT,
    statement_only INTEGER NOT NULL
);

CREATE TRIGGER IF NOT EXISTS logged_actions_no_update
BEFORE UPDATE ON logged_actions
BEGIN
    SELECT RAISE(ABORT, 'logged_actions is append-only');
END;

CREATE TRIGGER IF NOT EXISTS logged_actions_no_delete
BEFORE DELETE ON logged_actions
BEGIN
    SELECT RAISE(ABORT, 'logged_actions is append-only');
END;

-- Identifying columns, used to build replay selectors.
-- Relation names compare like SQLite identifiers, ignoring ASCII case.
CREATE TABLE IF NOT EXISTS logged_relations (
    relation_name TEXT NOT NULL COLLATE NOCASE,
    uid_column TEXT NOT NULL,
    position INTEGER NOT NULL,
    PRIMARY KEY (relation_name, uid_column)
);

-- Capture settings per relation
CREATE TABLE IF NOT EXISTS audited_relations (
    relation_id INTEGER PRIMARY KEY AUTOINCREMENT,
    relation_name TEXT NOT NULL UNIQUE COLLATE NOCASE,
    kind TEXT NOT NULL,
    mode TEXT NOT NULL,
    log_query_text INTEGER NOT NULL,
    excluded_columns TEXT NOT NULL,
    active INTEGER NOT NULL DEFAULT 1,
    attached_at TEXT NOT NULL
);

-- Indexes for common queries
CREATE INDEX IF NOT EXISTS idx_logged_actions_relid ON logged_actions(relation_id);
CREATE INDEX IF NOT EXISTS idx_logged_actions_tstamp ON logged_actions(action_tstamp_stm);
CREATE INDEX IF NOT EXISTS idx_logged_actions_action ON logged_actions(action);
CREATE INDEX IF NOT EXISTS idx_logged_actions_table_row
    ON logged_actions(table_name, row_id, action_tstamp_stm);
"""


def now_iso() -> str:
    """Get current UTC time in ISO format."""
    return to_iso(datetime.now(UTC))


def to_iso(value: datetime) -> str:
    """Format a timestamp as sortable UTC ISO text."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _dump_map(row_map: dict[str, Any] | None) -> str | None:
    return json.dumps(row_map) if row_map is not None else None


def _load_map(text: str | None) -> dict[str, Any] | None:
    return json.loads(text) if text is not None else None


class AuditDB:
    """
    SQLite database for rowaudit storage.

    Usage:
        db = AuditDB("rowaudit.db")
        with db.transaction():
            entry = db.append(entry)
        db.get(entry.event_id)
        db.close()

    Or use as context manager:
        with AuditDB("rowaudit.db") as db:
            ...

    Each instance owns one connection. Concurrent writers should open one
    AuditDB each; SQLite serializes their transactions.
    """

    def __init__(self, db_path: str | Path, timeout: float = 30.0) -> None:
        """
        Initialize the database connection.

        Args:
            db_path: Path to the SQLite database file, or ":memory:".
                     Will be created if it doesn't exist.
            timeout: Seconds to wait for another writer's lock
        """
        self.db_path = Path(db_path) if str(db_path) != ":memory:" else db_path
        self.timeout = timeout
        self._conn: sqlite3.Connection | None = None
        self._depth = 0
        self._connect()
        self._init_schema()

    def _connect(self) -> None:
        """Establish database connection."""
        try:
            # Autocommit mode; transactions are opened explicitly.
            self._conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
                isolation_level=None,
                timeout=self.timeout,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
        except sqlite3.Error as e:
            raise StorageConnectionError(
                db_path=str(self.db_path),
                operation="connect",
                message=f"Failed to connect to database: {e}",
            ) from e

    def _init_schema(self) -> None:
        """Initialize database schema if needed."""
        try:
            self._conn.executescript(CREATE_TABLES_SQL).close()

            cursor = self._conn.execute(
                "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
            )
            if cursor.fetchone() is None:
                self._conn.execute(
                    "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (SCHEMA_VERSION, now_iso()),
                )
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="init_schema",
                underlying_error=str(e),
            ) from e

    @property
    def connection(self) -> sqlite3.Connection:
        """The underlying connection, shared with the host adapter."""
        if self._conn is None:
            raise StorageConnectionError(
                db_path=str(self.db_path),
                operation="connection",
                message="Database is closed",
            )
        return self._conn

    @property
    def in_transaction(self) -> bool:
        """Whether a transaction opened by transaction() is active."""
        return self._depth > 0

    @contextmanager
    def transaction(self) -> Generator[None, None, None]:
        """
        Context manager for database transactions.

        Re-entrant: only the outermost block begins, commits or rolls back.
        An exception anywhere inside rolls back the whole transaction.
        """
        if self._depth:
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
            return

        conn = self.connection
        conn.execute("BEGIN IMMEDIATE")
        self._depth = 1
        try:
            yield
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            self._depth = 0

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "AuditDB":
        """Enter context manager."""
        return self

    def __exit__(self, *args: Any) -> None:
        """Exit context manager."""
        self.close()

    # =========================================================================
    # Audit Log Operations
    # =========================================================================

    def append(self, entry: LogEntry) -> LogEntry:
        """
        Append an entry to the audit log.

        Joins the caller's transaction when one is active, so the entry is
        discarded if that transaction rolls back.

        Args:
            entry: Entry without an event_id

        Returns:
            The stored entry, with its event_id assigned

        Raises:
            ValueError: If the entry was already appended
            StorageWriteError: If the insert fails
        """
        if entry.event_id is not None:
            msg = f"Entry already has event_id {entry.event_id}"
            raise ValueError(msg)

        try:
            with self.transaction():
                cursor = self.connection.execute(
                    """
                    INSERT INTO logged_actions (
                        schema_name, table_name, relation_id, row_id,
                        action_tstamp_stm, client_query, action,
                        row_data, changed_fields, statement_only
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry.schema_name,
                        entry.table_name,
                        entry.relation_id,
                        entry.row_id,
                        to_iso(entry.timestamp),
                        entry.client_query,
                        entry.action.value,
                        _dump_map(entry.row_data),
                        _dump_map(entry.changed_fields),
                        int(entry.statement_only),
                    ),
                )
                event_id = cursor.lastrowid
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="append",
                underlying_error=str(e),
            ) from e

        return entry.model_copy(update={"event_id": event_id})

    def get(self, event_id: int) -> LogEntry:
        """
        Get an entry by event id.

        Raises:
            EventNotFoundError: If no entry has this id
        """
        try:
            cursor = self.connection.execute(
                "SELECT * FROM logged_actions WHERE event_id = ?",
                (event_id,),
            )
            row = cursor.fetchone()
        except sqlite3.Error as e:
            raise StorageReadError(
                operation="get",
                underlying_error=str(e),
            ) from e

        if row is None:
            raise EventNotFoundError(event_id=event_id)
        return self._row_to_entry(row)

    def query(self, event_filter: EventFilter | None = None) -> list[LogEntry]:
        """
        List entries matching a filter, ordered by event id.

        Args:
            event_filter: Criteria to apply; all entries when None

        Returns:
            Matching entries
        """
        event_filter = event_filter or EventFilter()
        where, params = self._filter_clause(event_filter)
        order = "DESC" if event_filter.descending else "ASC"
        sql = f"SELECT * FROM logged_actions{where} ORDER BY event_id {order}"
        if event_filter.limit is not None:
            sql += " LIMIT ?"
            params.append(event_filter.limit)

        try:
            cursor = self.connection.execute(sql, params)
            return [self._row_to_entry(row) for row in cursor]
        except sqlite3.Error as e:
            raise StorageReadError(
                operation="query",
                underlying_error=str(e),
            ) from e

    def count(self, event_filter: EventFilter | None = None) -> int:
        """Count entries matching a filter. The limit is ignored."""
        where, params = self._filter_clause(event_filter or EventFilter())
        try:
            cursor = self.connection.execute(
                f"SELECT COUNT(*) FROM logged_actions{where}",
                params,
            )
            return cursor.fetchone()[0]
        except sqlite3.Error as e:
            raise StorageReadError(
                operation="count",
                underlying_error=str(e),
            ) from e

    @staticmethod
    def _filter_clause(event_filter: EventFilter) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []

        if event_filter.relation is not None:
            schema_name, table_name = split_relation(event_filter.relation)
            clauses.append("schema_name = ? AND table_name = ?")
            params.extend([schema_name, table_name])

        if event_filter.relation_id is not None:
            clauses.append("relation_id = ?")
            params.append(event_filter.relation_id)

        if event_filter.action is not None:
            clauses.append("action = ?")
            params.append(event_filter.action.value)

        if event_filter.row_id is not None:
            clauses.append("row_id = ?")
            params.append(event_filter.row_id)

        if event_filter.statement_only is not None:
            clauses.append("statement_only = ?")
            params.append(int(event_filter.statement_only))

        if event_filter.since is not None:
            clauses.append("action_tstamp_stm >= ?")
            params.append(to_iso(event_filter.since))

        if event_filter.until is not None:
            clauses.append("action_tstamp_stm < ?")
            params.append(to_iso(event_filter.until))

        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> LogEntry:
        return LogEntry(
            event_id=row["event_id"],
            schema_name=row["schema_name"],
            table_name=row["table_name"],
            relation_id=row["relation_id"],
            row_id=row["row_id"],
            timestamp=datetime.fromisoformat(row["action_tstamp_stm"]),
            client_query=row["client_query"],
            action=Action(row["action"]),
            row_data=_load_map(row["row_data"]),
            changed_fields=_load_map(row["changed_fields"]),
            statement_only=bool(row["statement_only"]),
        )

    # =========================================================================
    # Relation Operations
    # =========================================================================

    def save_attachment(
        self,
        relation_name: str,
        kind: RelationKind,
        mode: CaptureMode,
        log_query_text: bool,
        excluded_columns: frozenset[str],
    ) -> int:
        """
        Insert or reactivate the capture settings of a relation.

        The relation_id of an existing row is kept.

        Returns:
            The relation_id
        """
        excluded_json = json.dumps(sorted(excluded_columns))
        try:
            with self.transaction():
                cursor = self.connection.execute(
                    "SELECT relation_id FROM audited_relations WHERE relation_name = ?",
                    (relation_name,),
                )
                row = cursor.fetchone()
                if row is None:
                    cursor = self.connection.execute(
                        """
                        INSERT INTO audited_relations (
                            relation_name, kind, mode, log_query_text,
                            excluded_columns, active, attached_at
                        ) VALUES (?, ?, ?, ?, ?, 1, ?)
                        """,
                        (
                            relation_name,
                            kind.value,
                            mode.value,
                            int(log_query_text),
                            excluded_json,
                            now_iso(),
                        ),
                    )
                    return cursor.lastrowid

                self.connection.execute(
                    """
                    UPDATE audited_relations
                    SET kind = ?, mode = ?, log_query_text = ?,
                        excluded_columns = ?, active = 1, attached_at = ?
                    WHERE relation_id = ?
                    """,
                    (
                        kind.value,
                        mode.value,
                        int(log_query_text),
                        excluded_json,
                        now_iso(),
                        row["relation_id"],
                    ),
                )
                return row["relation_id"]
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="save_attachment",
                underlying_error=str(e),
            ) from e

    def deactivate_attachment(self, relation_name: str) -> bool:
        """
        Clear the active flag of a relation.

        Returns:
            False if the relation was never attached
        """
        try:
            with self.transaction():
                cursor = self.connection.execute(
                    "UPDATE audited_relations SET active = 0 WHERE relation_name = ?",
                    (relation_name,),
                )
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="deactivate_attachment",
                underlying_error=str(e),
            ) from e

    def get_attachment(self, relation_name: str) -> Attachment | None:
        """Get the capture settings of a relation, active or not."""
        try:
            cursor = self.connection.execute(
                "SELECT * FROM audited_relations WHERE relation_name = ?",
                (relation_name,),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return self._row_to_attachment(row)
        except sqlite3.Error as e:
            raise StorageReadError(
                operation="get_attachment",
                underlying_error=str(e),
            ) from e

    def get_attachment_by_id(self, relation_id: int) -> Attachment | None:
        """Get the capture settings of a relation by its stable id."""
        try:
            row = self.connection.execute(
                "SELECT * FROM audited_relations WHERE relation_id = ?",
                (relation_id,),
            ).fetchone()
            return self._row_to_attachment(row) if row else None
        except sqlite3.Error as e:
            raise StorageReadError(
                operation="get_attachment_by_id",
                underlying_error=str(e),
            ) from e

    def rename_relation(self, old_name: str, new_name: str) -> bool:
        """
        Move a relation's settings and identity to a new name.

        The relation_id is kept. Logged entries keep the name they were
        captured under.

        Returns:
            False if the old name was never attached
        """
        try:
            with self.transaction():
                cursor = self.connection.execute(
                    "UPDATE audited_relations SET relation_name = ? WHERE relation_name = ?",
                    (new_name, old_name),
                )
                if cursor.rowcount == 0:
                    return False
                self.connection.execute(
                    "UPDATE logged_relations SET relation_name = ? WHERE relation_name = ?",
                    (new_name, old_name),
                )
                return True
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="rename_relation",
                underlying_error=str(e),
            ) from e

    def list_attachments(self, include_inactive: bool = False) -> list[Attachment]:
        """List relation settings, ordered by relation name."""
        sql = "SELECT * FROM audited_relations"
        if not include_inactive:
            sql += " WHERE active = 1"
        sql += " ORDER BY relation_name"
        try:
            rows = self.connection.execute(sql).fetchall()
            return [self._row_to_attachment(row) for row in rows]
        except sqlite3.Error as e:
            raise StorageReadError(
                operation="list_attachments",
                underlying_error=str(e),
            ) from e

    def save_identity(self, relation_name: str, columns: list[str] | tuple[str, ...]) -> None:
        """Replace the identifying columns stored for a relation."""
        try:
            with self.transaction():
                self.connection.execute(
                    "DELETE FROM logged_relations WHERE relation_name = ?",
                    (relation_name,),
                )
                self.connection.executemany(
                    """
                    INSERT INTO logged_relations (relation_name, uid_column, position)
                    VALUES (?, ?, ?)
                    """,
                    [(relation_name, column, i) for i, column in enumerate(columns)],
                )
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="save_identity",
                underlying_error=str(e),
            ) from e

    def load_identity(self, relation_name: str) -> list[RelationIdentity]:
        """Get the identifying columns of a relation, in order."""
        try:
            cursor = self.connection.execute(
                """
                SELECT relation_name, uid_column FROM logged_relations
                WHERE relation_name = ?
                ORDER BY position
                """,
                (relation_name,),
            )
            return [
                RelationIdentity(
                    relation_name=row["relation_name"],
                    identifying_column=row["uid_column"],
                )
                for row in cursor
            ]
        except sqlite3.Error as e:
            raise StorageReadError(
                operation="load_identity",
                underlying_error=str(e),
            ) from e

    def _row_to_attachment(self, row: sqlite3.Row) -> Attachment:
        identity = self.load_identity(row["relation_name"])
        return Attachment(
            relation_id=row["relation_id"],
            relation_name=row["relation_name"],
            kind=RelationKind(row["kind"]),
            mode=CaptureMode(row["mode"]),
            log_query_text=bool(row["log_query_text"]),
            excluded_columns=frozenset(json.loads(row["excluded_columns"])),
            identity_columns=tuple(i.identifying_column for i in identity),
            active=bool(row["active"]),
            attached_at=datetime.fromisoformat(row["attached_at"]),
        )
