"""
Pytest configuration and fixtures for rowaudit tests.

This module provides shared fixtures used across unit and integration tests.
"""

import tempfile
from pathlib import Path
from typing import Generator

import pytest

from rowaudit.engine import AuditEngine
from rowaudit.store import AuditDB

ACCOUNTS_DDL = """
CREATE TABLE accounts (
    id INTEGER PRIMARY KEY,
    name TEXT,
    balance INTEGER,
    updated_at TEXT
)
"""

MEMBERS_DDL = """
CREATE TABLE members (
    org TEXT NOT NULL,
    login TEXT NOT NULL,
    role TEXT,
    PRIMARY KEY (org, login)
)
"""


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def temp_db_path(temp_dir: Path) -> Path:
    """Path of a database file that does not exist yet."""
    return temp_dir / "audit.db"


@pytest.fixture
def db(temp_db_path: Path) -> Generator[AuditDB, None, None]:
    """An audit database with no user tables."""
    database = AuditDB(temp_db_path)
    yield database
    database.close()


@pytest.fixture
def engine(temp_db_path: Path) -> Generator[AuditEngine, None, None]:
    """An engine over a database holding the accounts and members tables."""
    audit_engine = AuditEngine(temp_db_path)
    conn = audit_engine.db.connection
    conn.execute(ACCOUNTS_DDL)
    conn.execute(MEMBERS_DDL)
    conn.execute("CREATE TABLE notes (body TEXT)")
    conn.execute("CREATE VIEW rich_accounts AS SELECT id, name, balance FROM accounts WHERE balance > 100")
    yield audit_engine
    audit_engine.close()


@pytest.fixture
def sample_config_yaml() -> str:
    """Return an attachment file covering a table and a view."""
    return """
relations:
  - name: accounts
    excluded_columns: [updated_at]
  - name: main.members
    mode: statement_only
    log_query_text: false
  - name: rich_accounts
    view: true
    identifying_columns: [id]
"""
