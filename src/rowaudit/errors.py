"""
Exception hierarchy for rowaudit.

All rowaudit exceptions inherit from RowAuditError, allowing callers to catch
all rowaudit-specific exceptions with a single except clause.

Exception Categories:
    - ConfigurationError: A relation cannot be attached for auditing
    - UsageError: The capture hook was invoked in a way it does not handle
    - NotFoundError: A registry or log lookup missed
    - ReplayError: A log entry cannot be turned back into a mutation
    - StorageError: Audit database operation failed

Lookup misses also subclass the builtin LookupError so callers that only
know the standard hierarchy can still catch them.

Errors raised by the host store while executing a replayed mutation are
never wrapped; they reach the caller as the host raised them.
"""

from dataclasses import dataclass, field
from typing import Any


# =============================================================================
# Error Codes
# =============================================================================

# Configuration errors: 1xxx
ERROR_CONFIG_NO_IDENTITY = 1001
ERROR_CONFIG_RELATION_NOT_FOUND = 1002

# Usage errors: 2xxx
ERROR_USAGE_UNHANDLED_CASE = 2001
ERROR_USAGE_MISSING_ROW = 2002

# Lookup errors: 3xxx
ERROR_LOOKUP_RELATION_NOT_ATTACHED = 3001
ERROR_LOOKUP_EVENT_NOT_FOUND = 3002

# Replay errors: 4xxx
ERROR_REPLAY_UNSUPPORTED = 4001
ERROR_REPLAY_MISSING_IDENTITY = 4002

# Storage errors: 5xxx
ERROR_STORAGE_CONNECTION = 5001
ERROR_STORAGE_WRITE = 5002
ERROR_STORAGE_READ = 5003


# =============================================================================
# Base Exception
# =============================================================================


@dataclass
class RowAuditError(Exception):
    """
    Base exception for all rowaudit errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code for programmatic handling
        suggestion: Optional hint for how to resolve the error
        context: Optional dict with additional debugging info
    """

    message: str = ""
    code: int = 0
    suggestion: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        """Format error for display."""
        parts = [f"[E{self.code}] {self.message}"]
        if self.suggestion:
            parts.append(f"\nSuggestion: {self.suggestion}")
        return "".join(parts)

    def __repr__(self) -> str:
        """Format error for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code}, "
            f"context={self.context!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "suggestion": self.suggestion,
            "context": self.context,
        }


# =============================================================================
# Configuration Errors
# =============================================================================


@dataclass
class ConfigurationError(RowAuditError):
    """
    Raised when a relation cannot be attached for auditing.

    The relation is left unaudited: no identity and no wiring are stored.

    Attributes:
        relation: Qualified name of the relation being attached
    """

    relation: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"No identifying column for relation {self.relation}"
        if self.code == 0:
            self.code = ERROR_CONFIG_NO_IDENTITY
        if not self.suggestion:
            self.suggestion = (
                "Add a primary key to the table, or attach it as a view "
                "with explicit identifying columns"
            )
        self.context["relation"] = self.relation


@dataclass
class RelationNotFoundError(ConfigurationError):
    """Raised when the host does not know the relation being attached."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Relation does not exist: {self.relation}"
        if self.code == 0:
            self.code = ERROR_CONFIG_RELATION_NOT_FOUND
        if not self.suggestion:
            self.suggestion = "Check the schema and table name spelling"
        super().__post_init__()


# =============================================================================
# Usage Errors
# =============================================================================


@dataclass
class UsageError(RowAuditError):
    """
    Raised when the capture hook is invoked for a case it does not handle.

    This is an integration bug in the host wiring. It must abort the
    triggering transaction instead of writing a malformed entry.

    Attributes:
        action: The action code the hook was invoked with
        granularity: The granularity the hook was invoked with
        relation: Qualified name of the audited relation
    """

    action: str = ""
    granularity: str = ""
    relation: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = (
                f"Capture hook invoked for unhandled case: "
                f"{self.action}, {self.granularity}"
            )
        if self.code == 0:
            self.code = ERROR_USAGE_UNHANDLED_CASE
        self.context.update({
            "action": self.action,
            "granularity": self.granularity,
            "relation": self.relation,
        })


# =============================================================================
# Lookup Errors
# =============================================================================


@dataclass
class NotFoundError(RowAuditError, LookupError):
    """Base class for lookups against the registry or the audit log."""


@dataclass
class RelationNotAttachedError(NotFoundError):
    """Raised when a relation was never attached for auditing."""

    relation: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Relation is not attached for auditing: {self.relation}"
        if self.code == 0:
            self.code = ERROR_LOOKUP_RELATION_NOT_ATTACHED
        self.context["relation"] = self.relation


@dataclass
class EventNotFoundError(NotFoundError):
    """Raised when an event id is absent from the audit log."""

    event_id: int = 0

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Event not found: {self.event_id}"
        if self.code == 0:
            self.code = ERROR_LOOKUP_EVENT_NOT_FOUND
        self.context["event_id"] = self.event_id


# =============================================================================
# Replay Errors
# =============================================================================


@dataclass
class ReplayError(RowAuditError):
    """
    Base class for replay errors.

    These are raised before anything is sent to the host store and are
    never retried.

    Attributes:
        event_id: ID of the event being replayed
    """

    event_id: int = 0

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.context["event_id"] = self.event_id


@dataclass
class ReplayUnsupportedError(ReplayError):
    """Raised when replaying a truncate or statement-level entry."""

    action: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = (
                f"Event {self.event_id} has no row to reconstruct "
                f"(action {self.action}, statement level)"
            )
        if self.code == 0:
            self.code = ERROR_REPLAY_UNSUPPORTED
        super().__post_init__()
        self.context["action"] = self.action


@dataclass
class MissingIdentityValueError(ReplayError):
    """Raised when an identifying column has no value in the logged row."""

    column: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = (
                f"Event {self.event_id} has no value for identifying column {self.column}"
            )
        if self.code == 0:
            self.code = ERROR_REPLAY_MISSING_IDENTITY
        if not self.suggestion:
            self.suggestion = "Identifying columns must not be in excluded_columns"
        super().__post_init__()
        self.context["column"] = self.column


# =============================================================================
# Storage Errors
# =============================================================================


@dataclass
class StorageError(RowAuditError):
    """
    Base class for audit database errors.

    Attributes:
        operation: The operation that failed (e.g., "append", "query")
    """

    operation: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.context["operation"] = self.operation


@dataclass
class StorageConnectionError(StorageError):
    """Raised when the audit database cannot be opened."""

    db_path: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Failed to connect to database: {self.db_path}"
        if self.code == 0:
            self.code = ERROR_STORAGE_CONNECTION
        if not self.suggestion:
            self.suggestion = "Check that the database path is valid and writable"
        super().__post_init__()
        self.context["db_path"] = self.db_path


@dataclass
class StorageWriteError(StorageError):
    """Raised when a write to the audit tables fails."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Database write failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_WRITE
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class StorageReadError(StorageError):
    """Raised when a read from the audit tables fails."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Database read failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_READ
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error
