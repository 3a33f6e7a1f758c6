"""
SQLite host adapter.

Runs mutations on the audit database's own connection so that a log
entry and the change it describes commit or roll back together. After
each statement the adapter reports the affected rows to the capture
wiring, still inside the transaction.

Rows are read back with RETURNING, which needs SQLite 3.35 or newer.
Updates are applied row by row, keyed on rowid, so every old row is paired
with its new version even when the update changes the primary key.
WITHOUT ROWID tables are therefore not supported for updates.
"""

import logging
import sqlite3
from datetime import UTC, datetime
from typing import Any

from rowaudit.diff import RowMap
from rowaudit.host.base import HostStore, Mutation
from rowaudit.schema import DEFAULT_SCHEMA, Action, RelationKind, qualify, split_relation
from rowaudit.store import AuditDB
from rowaudit.triggers import AuditTriggers, StatementEvent

logger = logging.getLogger(__name__)

ROWID_ALIAS = "__rowaudit_rowid__"


def quote_identifier(name: str) -> str:
    """Quote an SQL identifier."""
    return '"' + name.replace('"', '""') + '"'


class SQLiteHost(HostStore):
    """
    Host store backed by the audit database connection.

    Usage:
        host = SQLiteHost(db)
        host.triggers = AuditTriggers(registry, hook)
        host.insert("accounts", {"id": 1, "name": "a"})
        host.update("accounts", {"name": "b"}, where={"id": 1})

    Attributes:
        db: Audit database whose connection runs the mutations
        triggers: Capture wiring; mutations are not audited when None
    """

    def __init__(
        self,
        db: AuditDB,
        triggers: AuditTriggers | None = None,
        default_schema: str = DEFAULT_SCHEMA,
    ) -> None:
        self.db = db
        self.triggers = triggers
        self.default_schema = default_schema
        self._last_statement_at: datetime | None = None

    # =========================================================================
    # Catalog
    # =========================================================================

    def _split(self, relation: str) -> tuple[str, str]:
        return split_relation(relation, self.default_schema)

    def qualify(self, relation: str) -> str:
        """Qualify a relation name with the default schema."""
        return qualify(relation, self.default_schema)

    def _quoted(self, relation: str) -> str:
        schema_name, table_name = self._split(relation)
        return f"{quote_identifier(schema_name)}.{quote_identifier(table_name)}"

    def _catalog_entry(self, relation: str) -> sqlite3.Row | None:
        """Find a relation in sqlite_master, ignoring case as SQLite does."""
        schema_name, table_name = self._split(relation)
        schemas = [row["name"] for row in self.db.connection.execute("PRAGMA database_list")]
        schema_name = next((s for s in schemas if s.lower() == schema_name.lower()), schema_name)
        try:
            return self.db.connection.execute(
                "SELECT ? AS schema_name, name, type "
                f"FROM {quote_identifier(schema_name)}.sqlite_master "
                "WHERE name = ? COLLATE NOCASE AND type IN ('table', 'view')",
                (schema_name, table_name),
            ).fetchone()
        except sqlite3.OperationalError:
            # Unknown schema name
            return None

    def resolve(self, relation: str) -> str | None:
        """Return the relation's name as sqlite_master spells it."""
        row = self._catalog_entry(relation)
        return f"{row['schema_name']}.{row['name']}" if row else None

    def relation_kind(self, relation: str) -> RelationKind | None:
        """Look the relation up in sqlite_master."""
        row = self._catalog_entry(relation)
        return RelationKind(row["type"]) if row else None

    def primary_key_columns(self, relation: str) -> list[str]:
        """Read the primary key from PRAGMA table_info, in key order."""
        schema_name, table_name = self._split(relation)
        rows = self.db.connection.execute(
            f"PRAGMA {quote_identifier(schema_name)}.table_info({quote_identifier(table_name)})"
        ).fetchall()
        keyed = sorted((row["pk"], row["name"]) for row in rows if row["pk"] > 0)
        return [name for _, name in keyed]

    def columns(self, relation: str) -> list[str]:
        """Column names of a relation, in declaration order."""
        schema_name, table_name = self._split(relation)
        rows = self.db.connection.execute(
            f"PRAGMA {quote_identifier(schema_name)}.table_info({quote_identifier(table_name)})"
        ).fetchall()
        return [row["name"] for row in rows]

    # =========================================================================
    # Rendering
    # =========================================================================

    @staticmethod
    def _where(where: RowMap) -> tuple[str, list[Any]]:
        if not where:
            return "", []
        clauses = []
        params: list[Any] = []
        for column, value in where.items():
            if value is None:
                clauses.append(f"{quote_identifier(column)} IS NULL")
            else:
                clauses.append(f"{quote_identifier(column)} = ?")
                params.append(value)
        return " WHERE " + " AND ".join(clauses), params

    def render(self, mutation: Mutation) -> tuple[str, list[Any]]:
        """Render a mutation as parameterized SQL."""
        target = self._quoted(mutation.relation)

        if mutation.action == Action.INSERT:
            if not mutation.values:
                return f"INSERT INTO {target} DEFAULT VALUES", []
            columns = ", ".join(quote_identifier(c) for c in mutation.values)
            marks = ", ".join("?" for _ in mutation.values)
            return (
                f"INSERT INTO {target} ({columns}) VALUES ({marks})",
                list(mutation.values.values()),
            )

        if mutation.action == Action.UPDATE:
            assignments = ", ".join(f"{quote_identifier(c)} = ?" for c in mutation.values)
            where, where_params = self._where(mutation.where)
            return (
                f"UPDATE {target} SET {assignments}{where}",
                list(mutation.values.values()) + where_params,
            )

        if mutation.action == Action.DELETE:
            where, where_params = self._where(mutation.where)
            return f"DELETE FROM {target}{where}", where_params

        # SQLite has no TRUNCATE; an unqualified DELETE is its equivalent.
        return f"DELETE FROM {target}", []

    # =========================================================================
    # Mutations
    # =========================================================================

    def insert(self, relation: str, row: RowMap, query_text: str | None = None) -> int:
        """Insert one row."""
        return self.execute(Mutation(Action.INSERT, relation, values=row, query_text=query_text))

    def update(
        self,
        relation: str,
        values: RowMap,
        where: RowMap | None = None,
        query_text: str | None = None,
    ) -> int:
        """Update the rows matching every pair in where."""
        return self.execute(
            Mutation(Action.UPDATE, relation, values=values, where=where or {}, query_text=query_text)
        )

    def delete(self, relation: str, where: RowMap | None = None, query_text: str | None = None) -> int:
        """Delete the rows matching every pair in where."""
        return self.execute(
            Mutation(Action.DELETE, relation, where=where or {}, query_text=query_text)
        )

    def truncate(self, relation: str, query_text: str | None = None) -> int:
        """Remove every row without firing row-level hooks."""
        return self.execute(Mutation(Action.TRUNCATE, relation, query_text=query_text))

    def rename(self, relation: str, new_name: str) -> str:
        """
        Rename a table and carry its audit registration over.

        The audit registration keeps its relation_id, so entries logged
        under the old name and the new name belong to one relation.

        Args:
            relation: Current name, optionally schema-qualified
            new_name: New bare name; SQLite cannot move a table between schemas

        Returns:
            The new qualified name

        Raises:
            ValueError: If new_name names another schema
            sqlite3.Error: Propagated unchanged from ALTER TABLE
        """
        old = self.resolve(relation) or self.qualify(relation)
        schema_name, _ = self._split(old)
        new_schema, new_table = split_relation(new_name, schema_name)
        if new_schema.lower() != schema_name.lower():
            msg = f"Cannot move {old} to schema {new_schema}"
            raise ValueError(msg)

        with self.db.transaction():
            self.db.connection.execute(
                f"ALTER TABLE {self._quoted(old)} RENAME TO {quote_identifier(new_table)}"
            )
            new = self.resolve(f"{schema_name}.{new_table}") or f"{schema_name}.{new_table}"
            logger.debug("Renamed %s to %s", old, new)
            if self.triggers is not None:
                self.triggers.renamed(old, new)
        return new

    def transaction(self):
        """Group several mutations into one transaction."""
        return self.db.transaction()

    def execute(self, mutation: Mutation) -> int:
        """
        Run a mutation and its capture hooks in one transaction.

        Returns:
            Number of rows affected

        Raises:
            sqlite3.Error: Propagated unchanged from the mutation itself
        """
        sql, params = self.render(mutation)
        relation = self.resolve(mutation.relation) or self.qualify(mutation.relation)
        query_text = mutation.query_text if mutation.query_text is not None else sql
        conn = self.db.connection

        with self.db.transaction():
            started_at = self._statement_timestamp()
            old_rows: list[dict[str, Any]] = []
            new_rows: list[dict[str, Any]] = []

            if mutation.action == Action.INSERT:
                new_rows = [dict(r) for r in conn.execute(f"{sql} RETURNING *", params).fetchall()]
                affected = len(new_rows)
            elif mutation.action == Action.DELETE:
                old_rows = [dict(r) for r in conn.execute(f"{sql} RETURNING *", params).fetchall()]
                affected = len(old_rows)
            elif mutation.action == Action.UPDATE:
                old_rows, new_rows = self._update_rows(mutation)
                affected = len(old_rows)
            else:
                affected = conn.execute(sql, params).rowcount

            logger.debug("%s on %s affected %d rows", mutation.action.name, relation, affected)

            if self.triggers is not None:
                self.triggers.fire(
                    StatementEvent(
                        action=mutation.action,
                        relation=relation,
                        old_rows=old_rows,
                        new_rows=new_rows,
                        query_text=query_text,
                        timestamp=started_at,
                    )
                )

        return affected

    def _update_rows(self, mutation: Mutation) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        conn = self.db.connection
        target = self._quoted(mutation.relation)
        where, where_params = self._where(mutation.where)
        selected = conn.execute(
            f"SELECT rowid AS {ROWID_ALIAS}, * FROM {target}{where}",
            where_params,
        ).fetchall()

        assignments = ", ".join(f"{quote_identifier(c)} = ?" for c in mutation.values)
        values = list(mutation.values.values())
        old_rows = []
        new_rows = []
        for row in selected:
            old = dict(row)
            rowid = old.pop(ROWID_ALIAS)
            updated = conn.execute(
                f"UPDATE {target} SET {assignments} WHERE rowid = ? RETURNING *",
                values + [rowid],
            ).fetchall()
            old_rows.append(old)
            new_rows.append(dict(updated[0]))
        return old_rows, new_rows

    def _statement_timestamp(self) -> datetime:
        now = datetime.now(UTC)
        if self._last_statement_at is not None and now < self._last_statement_at:
            now = self._last_statement_at
        self._last_statement_at = now
        return now
