"""
Base classes for the host store interface.

rowaudit does not own the tables it audits. A host store runs the actual
mutations, reports relation metadata, and invokes the capture hook
synchronously inside its mutation path. This module defines what the rest
of rowaudit needs from such a host:

- Mutation: A single insert, update, delete or truncate with equality selectors
- HostStore: Abstract base class every host adapter implements

Contract for adapters:
    - Hooks run after the row or statement effects are visible, never before
    - Hooks run inside the same transaction as the mutation
    - An exception from a hook aborts that transaction
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from rowaudit.diff import RowMap
from rowaudit.schema import DEFAULT_SCHEMA, Action, RelationKind


@dataclass(frozen=True)
class Mutation:
    """
    A mutating statement against one relation.

    Attributes:
        action: Kind of statement
        relation: Relation name, optionally schema-qualified
        values: Column values to insert, or to set on update
        where: Equality selector; every pair must match (empty = all rows)
        query_text: Statement text to record; the rendered SQL when None
    """

    action: Action
    relation: str
    values: RowMap = field(default_factory=dict)
    where: RowMap = field(default_factory=dict)
    query_text: str | None = None

    def __post_init__(self) -> None:
        """Validate field combinations."""
        if self.action == Action.UPDATE and not self.values:
            msg = "Update requires at least one value to set"
            raise ValueError(msg)
        if self.action in (Action.INSERT, Action.TRUNCATE) and self.where:
            msg = f"{self.action.name.title()} takes no selector"
            raise ValueError(msg)
        if self.action in (Action.DELETE, Action.TRUNCATE) and self.values:
            msg = f"{self.action.name.title()} takes no values"
            raise ValueError(msg)


class HostStore(ABC):
    """
    Abstract base class for host store adapters.

    Attributes:
        default_schema: Schema used to qualify bare relation names
    """

    default_schema: str = DEFAULT_SCHEMA

    @abstractmethod
    def resolve(self, relation: str) -> str | None:
        """
        Return the catalog spelling of a relation as "schema.name".

        Hosts whose names are case-insensitive map every spelling to the
        one stored in their catalog. Returns None if the relation is unknown.
        """

    @abstractmethod
    def relation_kind(self, relation: str) -> RelationKind | None:
        """Return whether the relation is a table or a view, None if unknown."""

    @abstractmethod
    def primary_key_columns(self, relation: str) -> list[str]:
        """Return the primary key columns of a relation in key order."""

    @abstractmethod
    def columns(self, relation: str) -> list[str]:
        """Return the column names of a relation in declaration order."""

    @abstractmethod
    def render(self, mutation: Mutation) -> tuple[str, list[Any]]:
        """Render a mutation into statement text and bound parameters."""

    @abstractmethod
    def execute(self, mutation: Mutation) -> int:
        """
        Run a mutation and fire the capture wiring for it.

        Errors raised by the underlying store propagate unchanged.

        Returns:
            Number of rows affected
        """
