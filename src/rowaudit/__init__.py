"""
rowaudit - Row-level change capture and replay for SQLite tables.

rowaudit records every insert, update, delete and truncate on attached
relations in an append-only audit log, and can turn a logged event back
into the mutation that produced it.
It provides:
- Field-level diffs of updated rows, with per-relation column exclusions
- Audit entries written in the same transaction as the change
- A registry of identifying columns that outlives detachment
- Replay of logged inserts, updates and deletes

Example usage:
    $ rowaudit attach accounts --exclude updated_at --db app.db
    $ rowaudit events --relation accounts --db app.db
    $ rowaudit replay 42 --db app.db
"""

__version__ = "0.1.0"
__author__ = "rowaudit Contributors"

__all__ = [
    "__version__",
    "__author__",
]
