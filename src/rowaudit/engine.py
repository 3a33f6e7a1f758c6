"""
Audit Engine for rowaudit.

The AuditEngine wires the components together over one SQLite database:
- AuditDB: Audit log and registry tables
- SQLiteHost: Runs mutations on the audited tables
- RelationRegistry: Attach/detach and identity lookup
- CaptureHook + AuditTriggers: Turn executed statements into log entries
- ReplayEngine: Turn log entries back into mutations

Capture Flow:
    1. host.insert/update/delete/truncate runs inside a transaction
    2. The host reports the statement to AuditTriggers
    3. AuditTriggers calls CaptureHook once per row and/or per statement
    4. CaptureHook diffs the rows and appends the entry on the same connection
    5. The transaction commits or rolls back data and log together
"""

import logging
from pathlib import Path
from typing import Any

from rowaudit.capture import CaptureHook
from rowaudit.host import SQLiteHost
from rowaudit.registry import RelationRegistry
from rowaudit.replay import ReplayEngine, ReplayResult
from rowaudit.schema import Attachment, AuditConfig, EventFilter, LogEntry
from rowaudit.store import AuditDB
from rowaudit.triggers import AuditTriggers

logger = logging.getLogger(__name__)


class AuditEngine:
    """
    Main entry point for rowaudit.

    Usage:
        with AuditEngine("app.db") as engine:
            engine.registry.attach("accounts")
            engine.host.insert("accounts", {"id": 1, "name": "a"})
            for entry in engine.events():
                print(entry.event_id, entry.action)

    Attributes:
        db: Audit database, shared by every component
        host: SQLite host running audited mutations
        registry: Relation registry
        hook: Capture hook
        triggers: Capture wiring used by the host
        replayer: Replay engine
    """

    def __init__(self, db_path: str | Path = "rowaudit.db") -> None:
        """
        Initialize the engine.

        Args:
            db_path: Path to the SQLite database holding both the audited
                     tables and the audit tables
        """
        self.db = AuditDB(db_path)
        self.host = SQLiteHost(self.db)
        self.registry = RelationRegistry(self.db, self.host)
        self.hook = CaptureHook(self.db)
        self.triggers = AuditTriggers(self.registry, self.hook)
        self.host.triggers = self.triggers
        self.replayer = ReplayEngine(self.db, self.registry, self.host)

    def close(self) -> None:
        """Close database connection."""
        self.db.close()

    def __enter__(self) -> "AuditEngine":
        """Enter context manager."""
        return self

    def __exit__(self, *args: Any) -> None:
        """Exit context manager."""
        self.close()

    def apply_config(self, config: AuditConfig) -> list[Attachment]:
        """
        Attach every relation listed in a config.

        All relations are attached in one transaction; the first failure
        leaves none of them attached.

        Returns:
            The stored attachments, in config order
        """
        attachments = []
        with self.db.transaction():
            for relation in config.relations:
                if relation.view:
                    attachment = self.registry.attach_view(
                        relation.name,
                        log_query_text=relation.log_query_text,
                        excluded_columns=relation.excluded_columns,
                        identifying_columns=relation.identifying_columns,
                    )
                else:
                    attachment = self.registry.attach(
                        relation.name,
                        mode=relation.mode,
                        log_query_text=relation.log_query_text,
                        excluded_columns=relation.excluded_columns,
                    )
                attachments.append(attachment)
        logger.info("Applied config with %d relations", len(attachments))
        return attachments

    def get_event(self, event_id: int) -> LogEntry:
        """Get one log entry."""
        return self.db.get(event_id)

    def events(self, event_filter: EventFilter | None = None) -> list[LogEntry]:
        """List log entries."""
        return self.db.query(event_filter)

    def replay(self, event_id: int) -> ReplayResult:
        """Replay one log entry."""
        return self.replayer.replay(event_id)
