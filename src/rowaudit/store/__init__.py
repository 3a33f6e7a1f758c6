"""
Storage module for rowaudit.

This module provides SQLite-based persistence for the audit log and the
relation registry.

Tables:
    - logged_actions: Immutable log entries, keyed by event_id
    - logged_relations: (relation_name, uid_column) identity pairs
    - audited_relations: Capture settings and active flag per relation

Design principles:
    - Append-only: Historical data is never modified
    - Atomic: Entries share the transaction of the audited mutation
    - Self-contained: Single .db file holds data, history and identity
"""

from rowaudit.store.db import AuditDB, now_iso, to_iso

__all__ = [
    "AuditDB",
    "now_iso",
    "to_iso",
]
