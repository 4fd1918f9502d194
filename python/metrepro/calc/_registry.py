"""Variable registry: named variables scoped to document nodes."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING

from metrepro.calc._parser import Definition, is_valid_name
from metrepro.calc._values import (
    CalcError,
    Dimension,
    DuplicateNameError,
    ErrorKind,
    InvalidEditError,
    NotFoundError,
)

if TYPE_CHECKING:
    from metrepro._document import Document

logger = logging.getLogger(__name__)


def variable_key(scope_id: str, name: str) -> str:
    """Canonical id of a variable: ``<scope_id>/<name>``."""
    return f"{scope_id}/{name}"


@dataclass
class Variable:
    scope_id: str
    name: str
    kind: Dimension
    definition: Definition

    @property
    def key(self) -> str:
        return variable_key(self.scope_id, self.name)


class VariableRegistry:
    """Stores variables per scope node and resolves names by ancestor walk.

    A lookup from a scope checks that node first, then each parent up to the
    project root; the nearest declaration shadows the outer ones.  The project
    node is the global scope.
    """

    __slots__ = ("_document", "_scopes")

    def __init__(self, document: Document) -> None:
        self._document = document
        # scope node id -> name -> variable
        self._scopes: dict[str, dict[str, Variable]] = {}

    def declare(
        self,
        scope_id: str,
        name: str,
        kind: Dimension | str,
        definition: Definition,
    ) -> Variable:
        self._document.node(scope_id)
        if not is_valid_name(name):
            raise InvalidEditError(f"Invalid variable name {name!r}", name)
        scope = self._scopes.setdefault(scope_id, {})
        if name in scope:
            raise DuplicateNameError(
                f"Variable {name!r} already exists in {scope_id!r}", variable_key(scope_id, name)
            )
        var = Variable(scope_id, name, Dimension.parse(kind), definition)
        scope[name] = var
        logger.debug("Declared %s (%s)", var.key, var.kind.value)
        return var

    def get(self, scope_id: str, name: str) -> Variable:
        var = self._scopes.get(scope_id, {}).get(name)
        if var is None:
            key = variable_key(scope_id, name)
            raise NotFoundError(f"Variable {key!r} does not exist", key)
        return var

    def get_by_key(self, key: str) -> Variable:
        scope_id, sep, name = key.rpartition("/")
        if not sep:
            raise NotFoundError(f"Variable {key!r} does not exist", key)
        return self.get(scope_id, name)

    def resolve(self, from_scope_id: str, name: str) -> Variable | CalcError:
        """Nearest declaration of *name* on the scope chain, or a NotFound error."""
        if from_scope_id in self._document.nodes:
            for scope_id in self._document.ancestors(from_scope_id):
                var = self._scopes.get(scope_id, {}).get(name)
                if var is not None:
                    return var
        return CalcError(ErrorKind.NOT_FOUND, name, f"Unknown variable {name!r}")

    def rename(self, scope_id: str, name: str, new_name: str) -> Variable:
        var = self.get(scope_id, name)
        if new_name == name:
            return var
        if not is_valid_name(new_name):
            raise InvalidEditError(f"Invalid variable name {new_name!r}", new_name)
        scope = self._scopes[scope_id]
        if new_name in scope:
            raise DuplicateNameError(
                f"Variable {new_name!r} already exists in {scope_id!r}",
                variable_key(scope_id, new_name),
            )
        # Rebuild to keep the declaration order
        self._scopes[scope_id] = {(new_name if k == name else k): v for k, v in scope.items()}
        var.name = new_name
        return var

    def remove(self, scope_id: str, name: str) -> Variable:
        var = self.get(scope_id, name)
        del self._scopes[scope_id][name]
        if not self._scopes[scope_id]:
            del self._scopes[scope_id]
        return var

    def position(self, scope_id: str, name: str) -> int:
        """Index of *name* in the declaration order of *scope_id*."""
        self.get(scope_id, name)
        return list(self._scopes[scope_id]).index(name)

    def restore(self, var: Variable, position: int | None = None) -> None:
        """Put back a variable removed by ``remove`` or ``drop_scopes``.

        With *position*, the variable goes back to that index of its scope's
        declaration order instead of the end.
        """
        scope = self._scopes.setdefault(var.scope_id, {})
        if position is None or position >= len(scope):
            scope[var.name] = var
            return
        items = list(scope.items())
        items.insert(position, (var.name, var))
        self._scopes[var.scope_id] = dict(items)

    def drop_scopes(self, scope_ids: list[str]) -> list[Variable]:
        """Remove every variable declared in *scope_ids* (subtree deletion)."""
        dropped: list[Variable] = []
        for scope_id in scope_ids:
            dropped.extend(self._scopes.pop(scope_id, {}).values())
        return dropped

    def in_scope(self, scope_id: str) -> list[Variable]:
        """Variables declared directly on *scope_id*, in declaration order."""
        return list(self._scopes.get(scope_id, {}).values())

    def __iter__(self) -> Iterator[Variable]:
        for scope in self._scopes.values():
            yield from scope.values()

    def __contains__(self, key: str) -> bool:
        scope_id, _, name = key.rpartition("/")
        return name in self._scopes.get(scope_id, {})

    def __len__(self) -> int:
        return sum(len(scope) for scope in self._scopes.values())
