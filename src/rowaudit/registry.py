"""
Relation registry for rowaudit.

The registry records, per audited relation, which columns identify a row
and how the relation is wired for capture. Identity outlives detachment:
a detached relation stops producing entries, but its history stays
replayable.

Usage:
    registry = RelationRegistry(db, host)
    registry.attach("main.accounts", excluded_columns={"updated_at"})
    registry.attach_view("main.active_accounts", identifying_columns=["id"])
    registry.identity_of("main.accounts")  # ("id",)
    registry.rename("accounts", "accts")  # after ALTER TABLE outside rowaudit
"""

import logging
from collections.abc import Iterable

from rowaudit.errors import ConfigurationError, RelationNotAttachedError, RelationNotFoundError
from rowaudit.host.base import HostStore
from rowaudit.schema import Attachment, CaptureMode, RelationKind, qualify
from rowaudit.store import AuditDB

logger = logging.getLogger(__name__)


class RelationRegistry:
    """
    Durable record of audited relations.

    Attach and detach are administrative calls and are expected to be
    serialized by the caller. Lookups may run concurrently with capture.

    Attributes:
        db: Audit database holding the registry tables
        catalog: Host store used to resolve relations and primary keys
    """

    def __init__(self, db: AuditDB, catalog: HostStore) -> None:
        self.db = db
        self.catalog = catalog

    def qualify(self, relation: str) -> str:
        """Qualify a relation name with the host's default schema."""
        return qualify(relation, self.catalog.default_schema)

    def resolve(self, relation: str) -> str:
        """
        Return the name a relation is registered under.

        Names the host knows take its catalog spelling. Names it does not
        know, such as dropped relations, are only qualified.
        """
        return self.catalog.resolve(relation) or self.qualify(relation)

    def attach(
        self,
        relation: str,
        mode: CaptureMode = CaptureMode.ROW_LEVEL,
        log_query_text: bool = True,
        excluded_columns: Iterable[str] = (),
    ) -> Attachment:
        """
        Register a table for capture, identified by its primary key.

        Re-attaching replaces the capture settings and keeps the relation id.

        Args:
            relation: Table name, optionally schema-qualified
            mode: Row-level or statement-only capture
            log_query_text: Whether entries record the statement text
            excluded_columns: Columns left out of snapshots and diffs

        Returns:
            The stored attachment

        Raises:
            RelationNotFoundError: If the host does not know the relation
            ConfigurationError: If the relation has no primary key
        """
        name = self.resolve(relation)
        kind = self.catalog.relation_kind(name)
        if kind is None:
            raise RelationNotFoundError(relation=name)

        columns = self.catalog.primary_key_columns(name)
        if not columns:
            raise ConfigurationError(relation=name)

        return self._store(name, kind, mode, log_query_text, excluded_columns, columns)

    def attach_view(
        self,
        relation: str,
        log_query_text: bool = True,
        excluded_columns: Iterable[str] = (),
        identifying_columns: Iterable[str] = (),
    ) -> Attachment:
        """
        Register a relation with explicitly supplied identifying columns.

        Views have no primary key, so the caller names the columns that
        locate a row. Capture is always row-level. Attaching again with the
        same columns stores nothing new.

        Raises:
            RelationNotFoundError: If the host does not know the relation
            ConfigurationError: If no identifying column is given, or one
                is not a column of the relation
        """
        name = self.resolve(relation)
        columns = list(dict.fromkeys(identifying_columns))
        if not columns:
            raise ConfigurationError(
                relation=name,
                message=f"No identifying columns supplied for {name}",
                suggestion="Pass at least one column that uniquely locates a row",
            )

        kind = self.catalog.relation_kind(name)
        if kind is None:
            raise RelationNotFoundError(relation=name)

        known = set(self.catalog.columns(name))
        unknown = [c for c in columns if c not in known]
        if unknown:
            raise ConfigurationError(
                relation=name,
                message=f"{name} has no column {', '.join(unknown)}",
                suggestion="Identifying columns must be columns of the relation",
            )

        return self._store(
            name, kind, CaptureMode.ROW_LEVEL, log_query_text, excluded_columns, columns
        )

    def _store(
        self,
        name: str,
        kind: RelationKind,
        mode: CaptureMode,
        log_query_text: bool,
        excluded_columns: Iterable[str],
        columns: list[str],
    ) -> Attachment:
        excluded = frozenset(excluded_columns)
        hidden = [c for c in columns if c in excluded]
        if hidden:
            logger.warning(
                "Identifying columns %s of %s are excluded; updates and deletes "
                "of this relation cannot be replayed",
                hidden,
                name,
            )

        with self.db.transaction():
            self.db.save_attachment(name, kind, mode, log_query_text, excluded)
            current = [i.identifying_column for i in self.db.load_identity(name)]
            if current != columns:
                self.db.save_identity(name, columns)

        attachment = self.db.get_attachment(name)
        logger.info(
            "Attached %s (%s, %s) identified by %s",
            name,
            kind.value,
            mode.value,
            ", ".join(columns),
        )
        return attachment

    def detach(self, relation: str) -> None:
        """
        Stop capturing a relation.

        Stored identity and log entries are kept.

        Raises:
            RelationNotAttachedError: If the relation was never attached
        """
        name = self.resolve(relation)
        if not self.db.deactivate_attachment(name):
            raise RelationNotAttachedError(relation=name)
        logger.info("Detached %s", name)

    def identity_of(self, relation: str) -> tuple[str, ...]:
        """
        Return the identifying columns of a relation, in order.

        Raises:
            RelationNotAttachedError: If the relation was never attached
        """
        name = self.resolve(relation)
        identity = self.db.load_identity(name)
        if not identity:
            raise RelationNotAttachedError(relation=name)
        return tuple(i.identifying_column for i in identity)

    def get_attachment(self, relation: str) -> Attachment | None:
        """Return the capture settings of a relation if capture is active."""
        attachment = self.db.get_attachment(self.resolve(relation))
        if attachment is None or not attachment.active:
            return None
        return attachment

    def list_attachments(self, include_inactive: bool = False) -> list[Attachment]:
        """List audited relations."""
        return self.db.list_attachments(include_inactive=include_inactive)

    def relation_name_of(self, relation_id: int) -> str | None:
        """Return the name a relation is currently registered under."""
        attachment = self.db.get_attachment_by_id(relation_id)
        return attachment.relation_name if attachment else None

    def rename(self, relation: str, new_name: str) -> Attachment:
        """
        Record that an attached relation now lives under another name.

        SQLiteHost.rename() calls this itself. Call it directly after
        renaming a relation outside rowaudit. The relation_id, settings and
        identity move to the new name; logged entries keep the old one.

        Raises:
            RelationNotAttachedError: If the old name was never attached
            RelationNotFoundError: If the host does not know the new name
            ConfigurationError: If the new name is already attached
        """
        old = self.resolve(relation)
        new = self.catalog.resolve(new_name)
        if new is None:
            raise RelationNotFoundError(relation=self.qualify(new_name))

        attachment = self.db.get_attachment(old)
        if attachment is None:
            raise RelationNotAttachedError(relation=old)

        existing = self.db.get_attachment(new)
        if existing is not None and existing.relation_id != attachment.relation_id:
            raise ConfigurationError(
                relation=new,
                message=f"{new} is already registered as relation {existing.relation_id}",
                suggestion="Rename to a name that has no audit registration",
            )

        self.db.rename_relation(attachment.relation_name, new)
        logger.info(
            "Renamed %s to %s (relation %s)", attachment.relation_name, new, attachment.relation_id
        )
        return self.db.get_attachment(new)

    def missing(self) -> list[Attachment]:
        """
        List active attachments whose relation the host no longer knows.

        A relation renamed or dropped outside rowaudit stops producing
        entries. Renames are recorded with rename().
        """
        return [
            a for a in self.db.list_attachments()
            if self.catalog.resolve(a.relation_name) is None
        ]
