"""
Schema definitions for rowaudit.

This module defines the Pydantic models used throughout rowaudit:
- LogEntry: One immutable audit record
- RelationIdentity / Attachment: What the registry stores per relation
- EventFilter: Read-only queries over the audit log
- AuditConfig / RelationConfig: Declarative attachment file

Design Decisions:
    - Log entries are frozen and validate their own invariants
    - Enum values match what is persisted in the audit tables
    - Relation names are always stored schema-qualified
"""

from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from rowaudit.diff import Scalar

DEFAULT_SCHEMA = "main"


# =============================================================================
# Enums
# =============================================================================


class Action(str, Enum):
    """Kind of mutation recorded by a log entry."""

    INSERT = "I"
    DELETE = "D"
    UPDATE = "U"
    TRUNCATE = "T"


class Granularity(str, Enum):
    """Whether the hook fired once per row or once per statement."""

    ROW = "row"
    STATEMENT = "statement"


class CaptureMode(str, Enum):
    """
    How a table is wired for capture.

    ROW_LEVEL records one entry per affected row for inserts, updates and
    deletes, plus a statement-level entry for truncates. STATEMENT_ONLY
    records one entry per statement and never logs row values.
    """

    ROW_LEVEL = "row_level"
    STATEMENT_ONLY = "statement_only"


class RelationKind(str, Enum):
    """Type of an audited relation."""

    TABLE = "table"
    VIEW = "view"


# =============================================================================
# Relation Names
# =============================================================================


def split_relation(name: str, default_schema: str = DEFAULT_SCHEMA) -> tuple[str, str]:
    """Split "schema.table" into its parts, qualifying bare names."""
    name = name.strip()
    if not name:
        msg = "Relation name must not be empty"
        raise ValueError(msg)
    schema, sep, table = name.partition(".")
    if not sep:
        return default_schema, schema
    if not schema or not table or "." in table:
        msg = f"Invalid relation name: {name}"
        raise ValueError(msg)
    return schema, table


def qualify(name: str, default_schema: str = DEFAULT_SCHEMA) -> str:
    """Return the schema-qualified form of a relation name."""
    schema, table = split_relation(name, default_schema)
    return f"{schema}.{table}"


# =============================================================================
# Log Entries
# =============================================================================


class LogEntry(BaseModel):
    """
    A single audited event.

    For INSERT, row_data is the new row. For DELETE and UPDATE it is the old
    row. changed_fields holds the new values of an UPDATE that differ from
    row_data. Statement-level entries carry neither map.

    Attributes:
        event_id: Store-wide increasing id, None until appended
        schema_name: Schema of the audited relation at capture time
        table_name: Name of the audited relation at capture time
        relation_id: Registry id of the relation, stable across renames
        row_id: Best-effort identifying value of the affected row
        timestamp: Statement timestamp of the captured mutation
        client_query: Statement text, empty when query logging is off
        action: Kind of mutation
        row_data: Row snapshot, or None for statement-level entries
        changed_fields: Update delta, or None
        statement_only: Whether the entry came from a statement-level hook
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    event_id: int | None = Field(default=None, description="Event id", ge=1)
    schema_name: str = Field(..., description="Schema of the audited relation", min_length=1)
    table_name: str = Field(..., description="Name of the audited relation", min_length=1)
    relation_id: int = Field(..., description="Registry id of the relation")
    row_id: str | None = Field(default=None, description="Identifying value of the row")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="Statement timestamp",
    )
    client_query: str = Field(default="", description="Statement text")
    action: Action = Field(..., description="Kind of mutation")
    row_data: dict[str, Scalar] | None = Field(default=None, description="Row snapshot")
    changed_fields: dict[str, Scalar] | None = Field(
        default=None,
        description="New values changed by an update",
    )
    statement_only: bool = Field(default=False, description="Statement-level entry")

    @model_validator(mode="after")
    def check_granularity(self) -> "LogEntry":
        """Reject entries that mix row-level and statement-level fields."""
        if self.statement_only:
            if self.row_data is not None or self.changed_fields is not None:
                msg = "Statement-level entries carry no row_data or changed_fields"
                raise ValueError(msg)
            return self

        if self.action == Action.TRUNCATE:
            msg = "Truncate is only recorded at statement level"
            raise ValueError(msg)
        if self.row_data is None:
            msg = "Row-level entries require row_data"
            raise ValueError(msg)
        if self.action == Action.UPDATE:
            if not self.changed_fields:
                msg = "Row-level updates require a non-empty changed_fields"
                raise ValueError(msg)
        elif self.changed_fields is not None:
            msg = "changed_fields is only set for updates"
            raise ValueError(msg)
        return self

    @property
    def relation_name(self) -> str:
        """Schema-qualified relation name."""
        return f"{self.schema_name}.{self.table_name}"


# =============================================================================
# Registry Models
# =============================================================================


class RelationIdentity(BaseModel):
    """One identifying column of an audited relation."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    relation_name: str = Field(..., description="Schema-qualified relation name")
    identifying_column: str = Field(..., description="Column used to locate a row", min_length=1)


class Attachment(BaseModel):
    """
    Capture settings of an audited relation.

    Attributes:
        relation_id: Registry id, kept across detach and re-attach
        relation_name: Schema-qualified relation name
        kind: Table or view
        mode: Row-level or statement-only capture
        log_query_text: Whether to record the statement text
        excluded_columns: Columns left out of snapshots and diffs
        identity_columns: Identifying columns, in order
        active: Whether capture is currently wired
        attached_at: When the relation was last attached
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    relation_id: int = Field(..., description="Registry id")
    relation_name: str = Field(..., description="Schema-qualified relation name")
    kind: RelationKind = Field(default=RelationKind.TABLE, description="Relation type")
    mode: CaptureMode = Field(default=CaptureMode.ROW_LEVEL, description="Capture mode")
    log_query_text: bool = Field(default=True, description="Record statement text")
    excluded_columns: frozenset[str] = Field(
        default_factory=frozenset,
        description="Columns left out of snapshots",
    )
    identity_columns: tuple[str, ...] = Field(
        default_factory=tuple,
        description="Identifying columns, in order",
    )
    active: bool = Field(default=True, description="Capture wired")
    attached_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the relation was last attached",
    )

    @property
    def schema_name(self) -> str:
        """Schema part of the relation name."""
        return split_relation(self.relation_name)[0]

    @property
    def table_name(self) -> str:
        """Table part of the relation name."""
        return split_relation(self.relation_name)[1]


# =============================================================================
# Queries
# =============================================================================


class EventFilter(BaseModel):
    """
    Filter for reading the audit log.

    All criteria are optional and combined with AND.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    relation: str | None = Field(default=None, description="Relation name")
    relation_id: int | None = Field(default=None, description="Registry id")
    action: Action | None = Field(default=None, description="Kind of mutation")
    row_id: str | None = Field(default=None, description="Identifying value")
    statement_only: bool | None = Field(default=None, description="Entry granularity")
    since: datetime | None = Field(default=None, description="Inclusive lower bound")
    until: datetime | None = Field(default=None, description="Exclusive upper bound")
    limit: int | None = Field(default=None, description="Maximum entries", gt=0)
    descending: bool = Field(default=False, description="Newest first")

    @field_validator("relation")
    @classmethod
    def qualify_relation(cls, v: str | None) -> str | None:
        """Store relation names schema-qualified."""
        return qualify(v) if v is not None else None


# =============================================================================
# Configuration
# =============================================================================


class RelationConfig(BaseModel):
    """
    One relation entry of an attachment file.

    Tables take their identity from the primary key. Views must list
    identifying_columns.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., description="Relation name, optionally schema-qualified", min_length=1)
    view: bool = Field(default=False, description="Attach as a view")
    mode: CaptureMode = Field(default=CaptureMode.ROW_LEVEL, description="Capture mode")
    log_query_text: bool = Field(default=True, description="Record statement text")
    excluded_columns: list[str] = Field(default_factory=list, description="Ignored columns")
    identifying_columns: list[str] = Field(
        default_factory=list,
        description="Explicit identity, required for views",
    )


class AuditConfig(BaseModel):
    """A declarative set of relations to attach."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    relations: list[RelationConfig] = Field(
        default_factory=list,
        description="Relations to attach",
    )


# =============================================================================
# YAML Loading Helpers
# =============================================================================


def load_config(path: Path | str) -> AuditConfig:
    """
    Load an attachment file.

    Args:
        path: Path to the YAML file

    Returns:
        Validated AuditConfig object

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValidationError: If the YAML doesn't match the schema
    """
    path = Path(path)
    with path.open() as f:
        data = yaml.safe_load(f)

    return AuditConfig.model_validate(data or {})


def load_config_from_string(content: str) -> AuditConfig:
    """Load an attachment file from a YAML string."""
    data = yaml.safe_load(content)
    return AuditConfig.model_validate(data or {})
