"""
Capture wiring for rowaudit.

Attaching a relation decides which hook invocations its mutations fire:

    mode            kind    row-level hooks   statement-level hooks
    row_level       table   I, U, D           T
    row_level       view    I, U, D           -
    statement_only  any     -                 I, U, D, T

Statement-level hooks fire once per statement, even when no row was
affected. Host adapters report each statement through AuditTriggers.fire()
and this module turns it into CaptureContext calls.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from rowaudit.capture import CaptureContext, CaptureHook
from rowaudit.schema import Action, Attachment, CaptureMode, Granularity, LogEntry, RelationKind

if TYPE_CHECKING:
    from rowaudit.registry import RelationRegistry

ROW_ACTIONS = (Action.INSERT, Action.UPDATE, Action.DELETE)


@dataclass(frozen=True)
class StatementEvent:
    """
    One executed statement, as reported by a host adapter.

    Attributes:
        action: Kind of statement
        relation: Relation name, optionally schema-qualified
        old_rows: Rows before the statement, in the order they were affected
        new_rows: Rows after the statement; for updates, paired with old_rows
        query_text: Text of the statement
        timestamp: Statement timestamp
    """

    action: Action
    relation: str
    old_rows: list[Mapping[str, Any]] = field(default_factory=list)
    new_rows: list[Mapping[str, Any]] = field(default_factory=list)
    query_text: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


def wiring_for(attachment: Attachment) -> frozenset[tuple[Action, Granularity]]:
    """Return the (action, granularity) pairs an attachment fires."""
    if attachment.mode == CaptureMode.STATEMENT_ONLY:
        return frozenset((action, Granularity.STATEMENT) for action in Action)

    wiring = {(action, Granularity.ROW) for action in ROW_ACTIONS}
    if attachment.kind == RelationKind.TABLE:
        wiring.add((Action.TRUNCATE, Granularity.STATEMENT))
    return frozenset(wiring)


class AuditTriggers:
    """
    Dispatches executed statements to the capture hook.

    Usage:
        triggers = AuditTriggers(registry, hook)
        entries = triggers.fire(StatementEvent(Action.INSERT, "main.t", new_rows=[row]))
    """

    def __init__(self, registry: "RelationRegistry", hook: CaptureHook) -> None:
        self.registry = registry
        self.hook = hook

    def fire(self, event: StatementEvent) -> list[LogEntry]:
        """
        Run every hook the relation's wiring installs for this statement.

        Returns:
            Entries written, in order; empty when the relation is not audited
        """
        attachment = self.registry.get_attachment(event.relation)
        if attachment is None:
            return []

        wiring = wiring_for(attachment)
        contexts: list[CaptureContext] = []

        if (event.action, Granularity.ROW) in wiring:
            contexts.extend(self._row_contexts(event, attachment))

        if (event.action, Granularity.STATEMENT) in wiring:
            # Best effort: the last row the statement produced, if any.
            representative = None
            if event.action in (Action.INSERT, Action.UPDATE) and event.new_rows:
                representative = event.new_rows[-1]
            contexts.append(
                CaptureContext(
                    action=event.action,
                    granularity=Granularity.STATEMENT,
                    attachment=attachment,
                    new_row=representative,
                    query_text=event.query_text,
                    timestamp=event.timestamp,
                )
            )

        entries = []
        for context in contexts:
            entry = self.hook.capture(context)
            if entry is not None:
                entries.append(entry)
        return entries

    def renamed(self, old: str, new: str) -> Attachment | None:
        """
        Follow a relation to its new name.

        Returns:
            The moved attachment; None when the relation was never attached
        """
        if self.registry.db.get_attachment(old) is None:
            return None
        return self.registry.rename(old, new)

    @staticmethod
    def _row_contexts(event: StatementEvent, attachment: Attachment) -> list[CaptureContext]:
        if event.action == Action.INSERT:
            pairs = [(None, new) for new in event.new_rows]
        elif event.action == Action.DELETE:
            pairs = [(old, None) for old in event.old_rows]
        else:
            pairs = list(zip(event.old_rows, event.new_rows, strict=True))

        return [
            CaptureContext(
                action=event.action,
                granularity=Granularity.ROW,
                attachment=attachment,
                old_row=old,
                new_row=new,
                query_text=event.query_text,
                timestamp=event.timestamp,
            )
            for old, new in pairs
        ]
