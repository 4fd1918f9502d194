"""Engine protocol and edit outcome dataclasses."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, Union, runtime_checkable

from metrepro.calc._edits import Edit, RawDefinition
from metrepro.calc._values import CalcError, ComputedValue, Dimension, EditError


@dataclass(frozen=True)
class ValueDelta:
    """A single owner's value change from recalculation."""

    id: str  # "#row.F" or "scope/name"
    old_value: ComputedValue
    new_value: ComputedValue


@dataclass(frozen=True)
class Committed:
    """An accepted edit and everything it recomputed."""

    edit: Edit | None
    values: dict[str, ComputedValue]  # every owner evaluated in this pass
    totals: dict[str, dict[Dimension, ComputedValue]]  # node id -> totals recomputed
    deltas: tuple[ValueDelta, ...] = ()  # owners whose value actually changed
    removed: tuple[str, ...] = ()  # owner ids that no longer exist
    max_chain_depth: int = 0

    @property
    def accepted(self) -> bool:
        return True


@dataclass(frozen=True)
class Rejected:
    """A refused edit; the document is exactly as it was before."""

    edit: Edit | None
    error: EditError

    @property
    def accepted(self) -> bool:
        return False

    @property
    def reason(self) -> CalcError:
        return self.error.error


@dataclass(frozen=True)
class Queued:
    """Edit submitted while another one was being processed."""

    edit: Edit
    position: int = field(default=0)

    @property
    def accepted(self) -> bool:
        return False


EditOutcome = Union[Committed, Rejected, Queued]


@runtime_checkable
class MetreEngine(Protocol):
    """What the UI, persistence and import/export layers call."""

    def load_document(self, serialized: Any) -> None:
        """Replace the whole document and recalculate everything."""
        ...

    def request_edit(self, target_id: str, new_definition: RawDefinition) -> EditOutcome:
        """Set a row field or variable definition."""
        ...

    def get_computed(self, id: str) -> ComputedValue:
        """Last committed value of a row field or variable."""
        ...

    def serialize_document(self) -> dict[str, Any]:
        """Structure and definitions, without computed values."""
        ...
