"""
Host store adapters for rowaudit.

A host store owns the audited tables. It executes mutations, reports
relation metadata to the registry, and calls the capture wiring after each
row or statement inside the mutating transaction.
"""

from rowaudit.host.base import HostStore, Mutation
from rowaudit.host.sqlite import SQLiteHost, quote_identifier

__all__ = [
    "HostStore",
    "Mutation",
    "SQLiteHost",
    "quote_identifier",
]
