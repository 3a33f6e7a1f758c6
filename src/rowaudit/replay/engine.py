"""
Replay Engine for rowaudit.

The ReplayEngine turns a stored log entry back into a mutation and runs it
against the host store:

    - INSERT: insert every row_data pair, NULLs as SQL NULL
    - DELETE: delete where every identifying column equals its row_data value
    - UPDATE: set every changed_fields pair, selecting on the old row's identity
    - TRUNCATE / statement-level: nothing to reconstruct, ReplayUnsupportedError

Design Principles:
    - No dry run: the mutation is executed directly
    - No recovery: store errors (constraint violations, missing tables)
      propagate unchanged
    - Audited: the replayed mutation goes through the host's capture wiring
      like any other

Known limitation:
    An update that changed an identifying column is replayed with the
    identity recorded before the change. If the row's identity has changed
    again since, the selector matches nothing or another row. Replays are
    not isolated from concurrent writers.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from rowaudit.errors import MissingIdentityValueError, ReplayUnsupportedError
from rowaudit.host.base import HostStore, Mutation
from rowaudit.registry import RelationRegistry
from rowaudit.schema import Action, LogEntry
from rowaudit.store import AuditDB

logger = logging.getLogger(__name__)


@dataclass
class ReplayResult:
    """
    Result of replaying one event.

    Attributes:
        event_id: ID of the replayed event
        action: Kind of mutation that was executed
        relation: Schema-qualified relation name
        sql: Statement text sent to the host
        params: Parameters bound to the statement
        rows_affected: Rows the host reported as changed
    """

    event_id: int
    action: Action
    relation: str
    sql: str
    params: list[Any] = field(default_factory=list)
    rows_affected: int = 0

    @property
    def success(self) -> bool:
        """Whether the replayed mutation changed at least one row."""
        return self.rows_affected > 0


def build_mutation(
    entry: LogEntry, identity: Sequence[str], relation: str | None = None
) -> Mutation:
    """
    Reconstruct the mutation that produced a log entry.

    Args:
        entry: A stored log entry
        identity: Identifying columns of the entry's relation, in order
        relation: Current name of the relation; the name logged with the
                  entry when None

    Returns:
        The equivalent mutation

    Raises:
        ReplayUnsupportedError: For truncates and statement-level entries
        MissingIdentityValueError: If row_data lacks an identifying value
    """
    event_id = entry.event_id or 0
    if entry.statement_only or entry.action == Action.TRUNCATE:
        raise ReplayUnsupportedError(event_id=event_id, action=entry.action.value)

    relation = relation or entry.relation_name
    row_data = entry.row_data or {}
    if entry.action == Action.INSERT:
        return Mutation(Action.INSERT, relation, values=dict(row_data))

    where = {}
    for column in identity:
        value = row_data.get(column)
        if value is None:
            raise MissingIdentityValueError(event_id=event_id, column=column)
        where[column] = value

    if entry.action == Action.DELETE:
        return Mutation(Action.DELETE, relation, where=where)

    return Mutation(
        Action.UPDATE,
        relation,
        values=dict(entry.changed_fields or {}),
        where=where,
    )


class ReplayEngine:
    """
    Engine for replaying logged events.

    Usage:
        engine = ReplayEngine(db, registry, host)
        result = engine.replay(42)
        print(f"{result.sql} -> {result.rows_affected} rows")

    Attributes:
        db: Audit database to read entries from
        registry: Registry supplying identifying columns
        host: Host store that executes the mutation
    """

    def __init__(self, db: AuditDB, registry: RelationRegistry, host: HostStore) -> None:
        self.db = db
        self.registry = registry
        self.host = host

    def replay(self, event_id: int) -> ReplayResult:
        """
        Replay one event against the host store.

        Raises:
            EventNotFoundError: If the event does not exist
            RelationNotAttachedError: If no identity is stored for the relation
            ReplayError: If the entry cannot be reconstructed
            sqlite3.Error: Or whatever the host raises, unchanged
        """
        entry = self.db.get(event_id)
        # Follow renames through the stable relation id.
        relation = self.registry.relation_name_of(entry.relation_id) or entry.relation_name
        identity = self.registry.identity_of(relation)
        mutation = build_mutation(entry, identity, relation)
        sql, params = self.host.render(mutation)

        rows_affected = self.host.execute(mutation)
        logger.info(
            "Replayed event %s (%s on %s): %d rows",
            event_id,
            entry.action.name,
            relation,
            rows_affected,
        )

        return ReplayResult(
            event_id=event_id,
            action=entry.action,
            relation=relation,
            sql=sql,
            params=params,
            rows_affected=rows_affected,
        )
