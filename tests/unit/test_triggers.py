"""
Unit tests for capture wiring.

Tests cover:
- Which hooks each attachment installs
- Dispatch of statements to the capture hook
- Unaudited and detached relations
"""

import pytest

from rowaudit.engine import AuditEngine
from rowaudit.schema import Action, Attachment, CaptureMode, Granularity, RelationKind
from rowaudit.triggers import StatementEvent, wiring_for


def attachment(kind: RelationKind, mode: CaptureMode) -> Attachment:
    return Attachment(relation_id=1, relation_name="main.t", kind=kind, mode=mode)


class TestWiring:
    """Tests for wiring_for()."""

    def test_row_level_table(self) -> None:
        wiring = wiring_for(attachment(RelationKind.TABLE, CaptureMode.ROW_LEVEL))
        assert wiring == {
            (Action.INSERT, Granularity.ROW),
            (Action.UPDATE, Granularity.ROW),
            (Action.DELETE, Granularity.ROW),
            (Action.TRUNCATE, Granularity.STATEMENT),
        }

    def test_row_level_view(self) -> None:
        wiring = wiring_for(attachment(RelationKind.VIEW, CaptureMode.ROW_LEVEL))
        assert wiring == {
            (Action.INSERT, Granularity.ROW),
            (Action.UPDATE, Granularity.ROW),
            (Action.DELETE, Granularity.ROW),
        }

    def test_statement_only(self) -> None:
        wiring = wiring_for(attachment(RelationKind.TABLE, CaptureMode.STATEMENT_ONLY))
        assert wiring == {(action, Granularity.STATEMENT) for action in Action}


class TestFire:
    """Tests for AuditTriggers.fire()."""

    def test_unaudited_relation(self, engine: AuditEngine) -> None:
        entries = engine.triggers.fire(
            StatementEvent(Action.INSERT, "accounts", new_rows=[{"id": 1}])
        )
        assert entries == []
        assert engine.db.count() == 0

    def test_row_level_insert_per_row(self, engine: AuditEngine) -> None:
        engine.registry.attach("accounts")
        entries = engine.triggers.fire(
            StatementEvent(
                Action.INSERT,
                "accounts",
                new_rows=[{"id": 1, "name": "a"}, {"id": 2, "name": "b"}],
                query_text="INSERT ...",
            )
        )

        assert [e.row_id for e in entries] == ["1", "2"]
        assert all(not e.statement_only for e in entries)
        assert entries[0].timestamp == entries[1].timestamp

    def test_update_pairs_rows(self, engine: AuditEngine) -> None:
        engine.registry.attach("accounts")
        entries = engine.triggers.fire(
            StatementEvent(
                Action.UPDATE,
                "accounts",
                old_rows=[{"id": 1, "name": "a"}, {"id": 2, "name": "b"}],
                new_rows=[{"id": 1, "name": "a"}, {"id": 2, "name": "c"}],
            )
        )

        # The first row did not change and is suppressed.
        assert len(entries) == 1
        assert entries[0].row_data == {"id": 2, "name": "b"}
        assert entries[0].changed_fields == {"name": "c"}

    def test_update_with_unpaired_rows(self, engine: AuditEngine) -> None:
        engine.registry.attach("accounts")
        with pytest.raises(ValueError):
            engine.triggers.fire(
                StatementEvent(
                    Action.UPDATE,
                    "accounts",
                    old_rows=[{"id": 1}],
                    new_rows=[],
                )
            )

    def test_truncate_on_row_level_table(self, engine: AuditEngine) -> None:
        engine.registry.attach("accounts")
        entries = engine.triggers.fire(StatementEvent(Action.TRUNCATE, "accounts"))

        assert len(entries) == 1
        assert entries[0].statement_only is True
        assert entries[0].action == Action.TRUNCATE

    def test_truncate_on_view_not_logged(self, engine: AuditEngine) -> None:
        engine.registry.attach_view("rich_accounts", identifying_columns=["id"])
        assert engine.triggers.fire(StatementEvent(Action.TRUNCATE, "rich_accounts")) == []

    def test_view_row_level(self, engine: AuditEngine) -> None:
        engine.registry.attach_view("rich_accounts", identifying_columns=["id"])
        entries = engine.triggers.fire(
            StatementEvent(Action.DELETE, "rich_accounts", old_rows=[{"id": 3, "name": "c", "balance": 500}])
        )

        assert len(entries) == 1
        assert entries[0].table_name == "rich_accounts"
        assert entries[0].row_id == "3"

    def test_statement_only_one_entry(self, engine: AuditEngine) -> None:
        engine.registry.attach("accounts", mode=CaptureMode.STATEMENT_ONLY)
        entries = engine.triggers.fire(
            StatementEvent(
                Action.INSERT,
                "accounts",
                new_rows=[{"id": 1}, {"id": 2}, {"id": 3}],
            )
        )

        assert len(entries) == 1
        assert entries[0].statement_only is True
        assert entries[0].row_id == "3"

    def test_statement_only_zero_rows(self, engine: AuditEngine) -> None:
        """Statement-level hooks fire even when no row was affected."""
        engine.registry.attach("accounts", mode=CaptureMode.STATEMENT_ONLY)
        entries = engine.triggers.fire(StatementEvent(Action.DELETE, "accounts"))

        assert len(entries) == 1
        assert entries[0].row_id is None

    def test_detached_relation_not_logged(self, engine: AuditEngine) -> None:
        engine.registry.attach("accounts")
        engine.registry.detach("accounts")
        entries = engine.triggers.fire(
            StatementEvent(Action.INSERT, "accounts", new_rows=[{"id": 1}])
        )
        assert entries == []
