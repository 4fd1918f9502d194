"""Edit commands accepted by the recalculation scheduler.

Every mutation of the document goes through one of these; a definition is
anything ``parse_definition`` accepts (None/blank, a number, a formula).
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Union

from metrepro.calc._values import Dimension

RawDefinition = Union[str, float, int, None]


@dataclass(frozen=True)
class SetDefinition:
    """New definition for a row field (``#r1.L``) or a variable (``P1/A``)."""

    target_id: str
    definition: RawDefinition


@dataclass(frozen=True)
class DeclareVariable:
    scope_id: str
    name: str
    kind: Dimension | str
    definition: RawDefinition = None


@dataclass(frozen=True)
class RenameVariable:
    scope_id: str
    name: str
    new_name: str


@dataclass(frozen=True)
class RemoveVariable:
    scope_id: str
    name: str


@dataclass(frozen=True)
class AddNode:
    parent_id: str
    node_type: str
    name: str = ""
    node_id: str | None = None
    position: int | None = None


@dataclass(frozen=True)
class RemoveNode:
    node_id: str


@dataclass(frozen=True)
class MoveNode:
    node_id: str
    new_parent_id: str
    position: int | None = None


@dataclass(frozen=True)
class AddRow:
    poste_id: str
    row_id: str | None = None
    position: int | None = None
    designation: str = ""
    unit: str | None = None
    fields: Mapping[str, RawDefinition] = field(default_factory=dict)


@dataclass(frozen=True)
class RemoveRow:
    row_id: str


@dataclass(frozen=True)
class MoveRow:
    row_id: str
    position: int


Edit = Union[
    SetDefinition,
    DeclareVariable,
    RenameVariable,
    RemoveVariable,
    AddNode,
    RemoveNode,
    MoveNode,
    AddRow,
    RemoveRow,
    MoveRow,
]
