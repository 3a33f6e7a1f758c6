"""
Replay module for rowaudit.

This module reconstructs the mutation behind a logged event and executes it
against the host store.

How it works:
    1. Load the entry from the audit log
    2. Look up the relation's identifying columns in the registry
    3. Build the insert, update or delete the entry describes
    4. Execute it through the host, which audits it like any other mutation

Example:
    from rowaudit.engine import AuditEngine

    with AuditEngine("rowaudit.db") as engine:
        result = engine.replay(42)
        print(f"{result.sql}: {result.rows_affected} rows")
"""

from rowaudit.replay.engine import ReplayEngine, ReplayResult, build_mutation

__all__ = [
    "ReplayEngine",
    "ReplayResult",
    "build_mutation",
]
