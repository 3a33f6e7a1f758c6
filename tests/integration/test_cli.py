"""
Integration tests for the command-line interface.

Tests cover:
- Version and missing databases
- attach, attach-view, detach, rename, apply and relations
- events and show-event, including JSON output
- replay and error reporting
"""

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from rowaudit import __version__
from rowaudit.cli import app
from rowaudit.engine import AuditEngine
from rowaudit.errors import StorageReadError
from rowaudit.registry import RelationRegistry

runner = CliRunner()


def invoke(db_path: Path, *args: str):
    return runner.invoke(app, [*args, "--db", str(db_path)])


@pytest.fixture
def audited(engine: AuditEngine) -> AuditEngine:
    """Engine with a few logged events on accounts."""
    engine.registry.attach("accounts", excluded_columns=["updated_at"])
    engine.host.insert("accounts", {"id": 1, "name": "a", "balance": 10})
    engine.host.update("accounts", {"name": "b"}, where={"id": 1})
    engine.host.insert("accounts", {"id": 2, "name": "c", "balance": 20})
    return engine


# =============================================================================
# General
# =============================================================================


class TestGeneral:
    """Version and database selection."""

    def test_version(self) -> None:
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_missing_database(self, temp_dir: Path) -> None:
        result = invoke(temp_dir / "missing.db", "relations")
        assert result.exit_code == 1
        assert "Database not found" in result.stdout

    def test_database_from_environment(self, audited: AuditEngine, temp_db_path: Path) -> None:
        result = runner.invoke(
            app,
            ["relations", "--json"],
            env={"ROWAUDIT_DB": str(temp_db_path)},
        )
        assert result.exit_code == 0
        assert [r["relation_name"] for r in json.loads(result.stdout)] == ["main.accounts"]


# =============================================================================
# Registration Commands
# =============================================================================


class TestAttachCommands:
    """Tests for attach, attach-view, detach and apply."""

    def test_attach(self, engine: AuditEngine, temp_db_path: Path) -> None:
        result = invoke(temp_db_path, "attach", "accounts", "-x", "updated_at", "--no-query-text")

        assert result.exit_code == 0
        assert "Attached" in result.stdout
        attachment = engine.registry.get_attachment("accounts")
        assert attachment.excluded_columns == frozenset({"updated_at"})
        assert attachment.log_query_text is False

    def test_attach_statement_only(self, engine: AuditEngine, temp_db_path: Path) -> None:
        result = invoke(temp_db_path, "attach", "members", "--statement-only")

        assert result.exit_code == 0
        assert engine.registry.get_attachment("members").mode.value == "statement_only"

    def test_attach_without_primary_key(self, engine: AuditEngine, temp_db_path: Path) -> None:
        result = invoke(temp_db_path, "attach", "notes")

        assert result.exit_code == 1
        assert "[E1001]" in result.stdout
        assert engine.registry.get_attachment("notes") is None

    def test_attach_missing_relation(self, engine: AuditEngine, temp_db_path: Path) -> None:
        result = invoke(temp_db_path, "attach", "missing")
        assert result.exit_code == 1
        assert "[E1002]" in result.stdout

    def test_attach_view(self, engine: AuditEngine, temp_db_path: Path) -> None:
        result = invoke(temp_db_path, "attach-view", "rich_accounts", "--uid", "id")

        assert result.exit_code == 0
        assert engine.registry.identity_of("rich_accounts") == ("id",)

    def test_detach(self, audited: AuditEngine, temp_db_path: Path) -> None:
        result = invoke(temp_db_path, "detach", "accounts")

        assert result.exit_code == 0
        assert audited.registry.get_attachment("accounts") is None

    def test_detach_unknown(self, engine: AuditEngine, temp_db_path: Path) -> None:
        result = invoke(temp_db_path, "detach", "accounts")
        assert result.exit_code == 1
        assert "[E3001]" in result.stdout

    def test_apply(
        self, engine: AuditEngine, temp_db_path: Path, temp_dir: Path, sample_config_yaml: str
    ) -> None:
        config_path = temp_dir / "audit.yaml"
        config_path.write_text(sample_config_yaml)

        result = invoke(temp_db_path, "apply", str(config_path))

        assert result.exit_code == 0
        names = [a.relation_name for a in engine.registry.list_attachments()]
        assert names == ["main.accounts", "main.members", "main.rich_accounts"]

    def test_apply_invalid_config(self, engine: AuditEngine, temp_db_path: Path, temp_dir: Path) -> None:
        config_path = temp_dir / "audit.yaml"
        config_path.write_text("relations:\n  - table: accounts\n")

        result = invoke(temp_db_path, "apply", str(config_path))

        assert result.exit_code == 1
        assert "Error loading config" in result.stdout

    def test_relations_table(self, audited: AuditEngine, temp_db_path: Path) -> None:
        result = invoke(temp_db_path, "relations")
        assert result.exit_code == 0
        assert "accounts" in result.stdout

    def test_relations_empty(self, engine: AuditEngine, temp_db_path: Path) -> None:
        result = invoke(temp_db_path, "relations")
        assert result.exit_code == 0
        assert "No audited relations" in result.stdout

    def test_relations_include_detached(self, audited: AuditEngine, temp_db_path: Path) -> None:
        audited.registry.detach("accounts")

        active = json.loads(invoke(temp_db_path, "relations", "--json").stdout)
        everything = json.loads(invoke(temp_db_path, "relations", "--all", "--json").stdout)

        assert active == []
        assert len(everything) == 1
        assert everything[0]["active"] is False
        assert everything[0]["identity_columns"] == ["id"]

    def test_relations_storage_error(
        self, audited: AuditEngine, temp_db_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def broken(self, include_inactive: bool = False):
            raise StorageReadError(operation="list_attachments", underlying_error="disk I/O error")

        monkeypatch.setattr(RelationRegistry, "list_attachments", broken)
        result = invoke(temp_db_path, "relations", "--json")

        assert result.exit_code == 1
        data = json.loads(result.stdout)
        assert data["error"] is True
        assert data["error_type"] == "StorageReadError"

    def test_relations_flags_missing_relation(self, audited: AuditEngine, temp_db_path: Path) -> None:
        audited.db.connection.execute("DROP VIEW rich_accounts")
        audited.db.connection.execute("ALTER TABLE accounts RENAME TO accts")

        data = json.loads(invoke(temp_db_path, "relations", "--json").stdout)
        table = invoke(temp_db_path, "relations")

        assert data[0]["missing"] is True
        assert "no longer exists" in table.stdout

    def test_rename(self, audited: AuditEngine, temp_db_path: Path) -> None:
        audited.db.connection.execute("DROP VIEW rich_accounts")
        audited.db.connection.execute("ALTER TABLE accounts RENAME TO accts")

        result = invoke(temp_db_path, "rename", "accounts", "accts")

        assert result.exit_code == 0
        assert "main.accts" in result.stdout
        assert audited.registry.get_attachment("accts") is not None

    def test_rename_unknown(self, engine: AuditEngine, temp_db_path: Path) -> None:
        result = invoke(temp_db_path, "rename", "accounts", "members")
        assert result.exit_code == 1
        assert "[E3001]" in result.stdout


# =============================================================================
# Audit Log Commands
# =============================================================================


class TestEventsCommand:
    """Tests for events and show-event."""

    def test_events_json_newest_first(self, audited: AuditEngine, temp_db_path: Path) -> None:
        result = invoke(temp_db_path, "events", "--json")

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert [e["action"] for e in data] == ["insert", "update", "insert"]
        assert data[1]["changed_fields"] == {"name": "b"}
        assert data[0]["event_id"] > data[2]["event_id"]

    @pytest.mark.parametrize("action", ["update", "U", "Update"])
    def test_events_filter_action(self, audited: AuditEngine, temp_db_path: Path, action: str) -> None:
        result = invoke(temp_db_path, "events", "--action", action, "--json")

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert len(data) == 1
        assert data[0]["row_data"] == {"id": 1, "name": "a", "balance": 10}

    def test_events_filter_row_and_limit(self, audited: AuditEngine, temp_db_path: Path) -> None:
        by_row = json.loads(invoke(temp_db_path, "events", "--row-id", "2", "--json").stdout)
        limited = json.loads(invoke(temp_db_path, "events", "-n", "1", "--json").stdout)

        assert [e["row_id"] for e in by_row] == ["2"]
        assert len(limited) == 1

    def test_events_filter_time(self, audited: AuditEngine, temp_db_path: Path) -> None:
        future = json.loads(invoke(temp_db_path, "events", "--since", "2999-01-01", "--json").stdout)
        past = json.loads(invoke(temp_db_path, "events", "--until", "2000-01-01", "--json").stdout)
        recent = json.loads(invoke(temp_db_path, "events", "--since", "2000-01-01", "--json").stdout)

        assert future == []
        assert past == []
        assert len(recent) == 3

    def test_events_filter_relation(self, audited: AuditEngine, temp_db_path: Path) -> None:
        result = invoke(temp_db_path, "events", "--relation", "members", "--json")
        assert json.loads(result.stdout) == []

    def test_events_unknown_action(self, audited: AuditEngine, temp_db_path: Path) -> None:
        result = invoke(temp_db_path, "events", "--action", "upsert")
        assert result.exit_code == 2

    @pytest.mark.parametrize("args", [["--relation", ""], ["--relation", "a.b.c"], ["-n", "0"]])
    def test_events_invalid_filter(
        self, audited: AuditEngine, temp_db_path: Path, args: list[str]
    ) -> None:
        result = invoke(temp_db_path, "events", *args, "--json")

        assert result.exit_code == 1
        data = json.loads(result.stdout)
        assert data["error"] is True
        assert data["message"].startswith("Invalid")

    def test_events_table(self, audited: AuditEngine, temp_db_path: Path) -> None:
        result = invoke(temp_db_path, "events")
        assert result.exit_code == 0
        assert "update" in result.stdout

    def test_events_empty(self, engine: AuditEngine, temp_db_path: Path) -> None:
        result = invoke(temp_db_path, "events")
        assert result.exit_code == 0
        assert "No events found" in result.stdout

    def test_show_event_json(self, audited: AuditEngine, temp_db_path: Path) -> None:
        event_id = audited.events()[1].event_id
        result = invoke(temp_db_path, "show-event", str(event_id), "--json")

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["event_id"] == event_id
        assert data["action"] == "update"
        assert data["schema_name"] == "main"
        assert data["table_name"] == "accounts"
        assert data["statement_only"] is False

    def test_show_event_table(self, audited: AuditEngine, temp_db_path: Path) -> None:
        event_id = audited.events()[1].event_id
        result = invoke(temp_db_path, "show-event", str(event_id))

        assert result.exit_code == 0
        assert f"Event {event_id}" in result.stdout
        assert "New value" in result.stdout

    def test_show_event_missing(self, audited: AuditEngine, temp_db_path: Path) -> None:
        result = invoke(temp_db_path, "show-event", "999")
        assert result.exit_code == 1
        assert "[E3002]" in result.stdout

    def test_show_event_missing_json(self, audited: AuditEngine, temp_db_path: Path) -> None:
        result = invoke(temp_db_path, "show-event", "999", "--json")

        assert result.exit_code == 1
        data = json.loads(result.stdout)
        assert data["error"] is True
        assert data["code"] == 3002
        assert data["error_type"] == "EventNotFoundError"


# =============================================================================
# Replay Command
# =============================================================================


class TestReplayCommand:
    """Tests for replay."""

    def test_replay_json(self, audited: AuditEngine, temp_db_path: Path) -> None:
        update = audited.events()[1]
        audited.db.connection.execute("UPDATE accounts SET name = 'a' WHERE id = 1")

        result = invoke(temp_db_path, "replay", str(update.event_id), "--json")

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["success"] is True
        assert data["rows_affected"] == 1
        assert data["action"] == "update"
        assert data["params"] == ["b", 1]
        name = audited.db.connection.execute("SELECT name FROM accounts WHERE id = 1").fetchone()[0]
        assert name == "b"

    def test_replay_text(self, audited: AuditEngine, temp_db_path: Path) -> None:
        update = audited.events()[1]
        result = invoke(temp_db_path, "replay", str(update.event_id))

        # The row already holds the new value, so the update still matches it.
        assert result.exit_code == 0
        assert "Replayed event" in result.stdout

    def test_replay_no_rows_exits_nonzero(self, audited: AuditEngine, temp_db_path: Path) -> None:
        update = audited.events()[1]
        audited.db.connection.execute("DELETE FROM accounts")

        result = invoke(temp_db_path, "replay", str(update.event_id), "--json")

        assert result.exit_code == 1
        assert json.loads(result.stdout)["rows_affected"] == 0

    def test_replay_truncate(self, audited: AuditEngine, temp_db_path: Path) -> None:
        audited.host.truncate("accounts")
        truncate_id = audited.events()[-1].event_id

        result = invoke(temp_db_path, "replay", str(truncate_id))

        assert result.exit_code == 1
        assert "[E4001]" in result.stdout

    def test_replay_store_error_json(self, audited: AuditEngine, temp_db_path: Path) -> None:
        insert_id = audited.events()[0].event_id

        result = invoke(temp_db_path, "replay", str(insert_id), "--json")

        assert result.exit_code == 1
        data = json.loads(result.stdout)
        assert data["error"] is True
        assert data["error_type"] == "IntegrityError"
