"""
Capture hook for rowaudit.

The hook is what a host store calls after each audited row or statement.
It turns the old and new rows into a LogEntry and appends it to the audit
log on the host's connection, inside the host's transaction.

Behavior by (action, granularity):
    - INSERT, row: row_data is the new row
    - DELETE, row: row_data is the old row
    - UPDATE, row: row_data is the old row, changed_fields the delta;
      nothing is written when the delta is empty after exclusions
    - any action, statement: no row values; row_id is best effort
    - anything else: UsageError, which aborts the host transaction
"""

import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from rowaudit.diff import diff, is_empty, snapshot, to_scalar
from rowaudit.errors import ERROR_USAGE_MISSING_ROW, UsageError
from rowaudit.schema import Action, Attachment, CaptureMode, Granularity, LogEntry
from rowaudit.store import AuditDB

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CaptureContext:
    """
    Everything the hook receives for one invocation.

    Attributes:
        action: Kind of mutation that ran
        granularity: Whether this call covers one row or one statement
        attachment: Relation identity and capture settings
        old_row: Row before the mutation (update, delete)
        new_row: Row after the mutation (insert, update), or a
            representative row for statement-level calls
        query_text: Text of the statement being executed
        timestamp: Statement timestamp
    """

    action: Action
    granularity: Granularity
    attachment: Attachment
    old_row: Mapping[str, Any] | None = None
    new_row: Mapping[str, Any] | None = None
    query_text: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


def identifying_value(row: Mapping[str, Any] | None, columns: Sequence[str]) -> str | None:
    """
    Render the identifying value of a row as text.

    A single column gives its value; a composite identity gives a JSON
    array. None when the row or any identifying value is missing.
    """
    if row is None or not columns:
        return None
    values = []
    for column in columns:
        value = to_scalar(row.get(column))
        if value is None:
            return None
        values.append(value)
    if len(values) == 1:
        return str(values[0])
    return json.dumps(values)


class CaptureHook:
    """
    Builds log entries and appends them to the audit log.

    Usage:
        hook = CaptureHook(db)
        entry = hook.capture(context)  # None when an update was suppressed
    """

    def __init__(self, db: AuditDB) -> None:
        self.db = db

    def capture(self, context: CaptureContext) -> LogEntry | None:
        """
        Record one hook invocation.

        Returns:
            The stored entry, or None for a suppressed no-op update

        Raises:
            UsageError: For an unhandled (action, granularity) combination
        """
        entry = self.build_entry(context)
        if entry is None:
            logger.debug(
                "Suppressed update on %s: no change outside excluded columns",
                context.attachment.relation_name,
            )
            return None

        stored = self.db.append(entry)
        logger.debug(
            "Captured event %s: %s %s on %s",
            stored.event_id,
            context.granularity.value,
            context.action.name,
            context.attachment.relation_name,
        )
        return stored

    def build_entry(self, context: CaptureContext) -> LogEntry | None:
        """Build the entry for an invocation without writing it."""
        attachment = context.attachment
        excluded = attachment.excluded_columns
        identity = attachment.identity_columns
        base = {
            "schema_name": attachment.schema_name,
            "table_name": attachment.table_name,
            "relation_id": attachment.relation_id,
            "timestamp": context.timestamp,
            "client_query": context.query_text if attachment.log_query_text else "",
            "action": context.action,
        }

        if context.granularity == Granularity.ROW:
            if attachment.mode == CaptureMode.STATEMENT_ONLY:
                raise UsageError(
                    action=context.action.value,
                    granularity=context.granularity.value,
                    relation=attachment.relation_name,
                    message=f"{attachment.relation_name} is wired for statement-level capture only",
                )

            if context.action == Action.INSERT:
                new = self._require_row(context, context.new_row, "new")
                return LogEntry(
                    **base,
                    row_id=identifying_value(new, identity),
                    row_data=snapshot(new, excluded),
                )

            if context.action == Action.DELETE:
                old = self._require_row(context, context.old_row, "old")
                return LogEntry(
                    **base,
                    row_id=identifying_value(old, identity),
                    row_data=snapshot(old, excluded),
                )

            if context.action == Action.UPDATE:
                old = self._require_row(context, context.old_row, "old")
                new = self._require_row(context, context.new_row, "new")
                row_data = snapshot(old, excluded)
                changed_fields = diff(row_data, snapshot(new, excluded))
                if is_empty(changed_fields):
                    return None
                return LogEntry(
                    **base,
                    row_id=identifying_value(new, identity),
                    row_data=row_data,
                    changed_fields=changed_fields,
                )

        elif context.granularity == Granularity.STATEMENT:
            if context.action in (Action.INSERT, Action.UPDATE, Action.DELETE, Action.TRUNCATE):
                # row_id here comes from whichever row the host last saw and
                # does not identify the statement's full effect.
                return LogEntry(
                    **base,
                    row_id=identifying_value(context.new_row, identity),
                    statement_only=True,
                )

        raise UsageError(
            action=context.action.value,
            granularity=context.granularity.value,
            relation=attachment.relation_name,
        )

    @staticmethod
    def _require_row(
        context: CaptureContext,
        row: Mapping[str, Any] | None,
        which: str,
    ) -> Mapping[str, Any]:
        if row is None:
            raise UsageError(
                action=context.action.value,
                granularity=context.granularity.value,
                relation=context.attachment.relation_name,
                code=ERROR_USAGE_MISSING_ROW,
                message=(
                    f"Row-level {context.action.name} on "
                    f"{context.attachment.relation_name} invoked without the {which} row"
                ),
            )
        return row
