"""
Unit tests for mutation reconstruction.

Tests cover:
- Insert, update and delete reconstruction
- Composite identity selectors
- Unsupported and incomplete entries
- ReplayResult
"""

import pytest

from rowaudit.errors import MissingIdentityValueError, ReplayUnsupportedError
from rowaudit.replay import ReplayResult, build_mutation
from rowaudit.schema import Action, LogEntry


def make_entry(action: Action, **overrides) -> LogEntry:
    fields = {
        "event_id": 11,
        "schema_name": "main",
        "table_name": "accounts",
        "relation_id": 1,
        "action": action,
        "row_data": {"id": 1, "name": "a", "note": None},
    }
    if action == Action.UPDATE:
        fields["changed_fields"] = {"name": "b"}
    fields.update(overrides)
    return LogEntry(**fields)


class TestBuildMutation:
    """Tests for build_mutation()."""

    def test_insert_uses_all_values(self) -> None:
        mutation = build_mutation(make_entry(Action.INSERT), ("id",))

        assert mutation.action == Action.INSERT
        assert mutation.relation == "main.accounts"
        assert mutation.values == {"id": 1, "name": "a", "note": None}
        assert mutation.where == {}

    def test_delete_selects_on_identity(self) -> None:
        mutation = build_mutation(make_entry(Action.DELETE), ("id",))

        assert mutation.action == Action.DELETE
        assert mutation.where == {"id": 1}
        assert mutation.values == {}

    def test_update_sets_changed_fields(self) -> None:
        mutation = build_mutation(make_entry(Action.UPDATE), ("id",))

        assert mutation.action == Action.UPDATE
        assert mutation.values == {"name": "b"}
        assert mutation.where == {"id": 1}

    def test_update_of_identity_selects_old_value(self) -> None:
        entry = make_entry(Action.UPDATE, changed_fields={"id": 2})
        mutation = build_mutation(entry, ("id",))

        assert mutation.values == {"id": 2}
        assert mutation.where == {"id": 1}

    def test_composite_identity(self) -> None:
        entry = make_entry(
            Action.DELETE,
            table_name="members",
            row_data={"org": "acme", "login": "bo", "role": None},
        )
        mutation = build_mutation(entry, ("org", "login"))
        assert mutation.where == {"org": "acme", "login": "bo"}

    def test_truncate_unsupported(self) -> None:
        entry = make_entry(Action.TRUNCATE, row_data=None, statement_only=True)
        with pytest.raises(ReplayUnsupportedError) as exc_info:
            build_mutation(entry, ("id",))
        assert exc_info.value.event_id == 11

    @pytest.mark.parametrize("action", [Action.INSERT, Action.UPDATE, Action.DELETE])
    def test_statement_level_unsupported(self, action: Action) -> None:
        entry = make_entry(action, row_data=None, changed_fields=None, statement_only=True)
        with pytest.raises(ReplayUnsupportedError):
            build_mutation(entry, ("id",))

    def test_missing_identity_column(self) -> None:
        entry = make_entry(Action.DELETE, row_data={"name": "a"})
        with pytest.raises(MissingIdentityValueError) as exc_info:
            build_mutation(entry, ("id",))
        assert exc_info.value.column == "id"

    def test_null_identity_value(self) -> None:
        entry = make_entry(Action.UPDATE, row_data={"id": None, "name": "a"})
        with pytest.raises(MissingIdentityValueError):
            build_mutation(entry, ("id",))

    def test_insert_ignores_identity(self) -> None:
        """Inserts carry the full row and need no selector."""
        entry = make_entry(Action.INSERT, row_data={"name": "a"})
        assert build_mutation(entry, ("id",)).values == {"name": "a"}


class TestReplayResult:
    """Tests for ReplayResult."""

    def test_success(self) -> None:
        result = ReplayResult(event_id=1, action=Action.DELETE, relation="main.a", sql="", rows_affected=1)
        assert result.success

    def test_no_rows(self) -> None:
        result = ReplayResult(event_id=1, action=Action.DELETE, relation="main.a", sql="")
        assert not result.success
        assert result.params == []
