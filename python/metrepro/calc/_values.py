"""Computed values, typed errors and the edit-boundary exceptions."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Dimension(str, Enum):
    """Quantity dimension of a row field or variable."""

    L = "L"
    S = "S"
    V = "V"

    @property
    def power(self) -> int:
        """Physical dimension: metres to the power 1, 2 or 3."""
        return _POWERS[self]

    @classmethod
    def parse(cls, value: str | Dimension) -> Dimension:
        if isinstance(value, Dimension):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValueError(f"Unknown dimension {value!r} (expected L, S or V)") from None


_POWERS = {Dimension.L: 1, Dimension.S: 2, Dimension.V: 3}
FIELDS: tuple[Dimension, ...] = (Dimension.L, Dimension.S, Dimension.V)


class ErrorKind(str, Enum):
    PARSE = "ParseError"
    DUPLICATE_NAME = "DuplicateName"
    NOT_FOUND = "NotFound"
    CYCLIC_DEPENDENCY = "CyclicDependency"
    DIVISION_BY_ZERO = "DivisionByZero"
    INVALID_ARGUMENT = "InvalidArgument"
    KIND_MISMATCH = "KindMismatch"
    PARTIAL_FAILURE = "PartialFailure"
    INVALID_EDIT = "InvalidEdit"


@dataclass(frozen=True)
class CalcError:
    """Error value that propagates through formula chains.

    ``reference`` names what failed (a variable name, a cell address, the
    members of a cycle) so the user can find the definition to fix.
    """

    kind: ErrorKind
    reference: str | None = None
    message: str = ""

    @property
    def tag(self) -> str:
        if self.reference:
            return f"#{self.kind.value}({self.reference})"
        return f"#{self.kind.value}"

    def __str__(self) -> str:
        return f"{self.tag}: {self.message}" if self.message else self.tag


@dataclass(frozen=True)
class ComputedValue:
    """Result of evaluating a row field, a variable or an aggregate total.

    Four shapes: empty (nothing defined), ok (``value`` set), failed
    (``error`` set, no value) and partial (aggregates only: the sum of the
    successes plus a ``PartialFailure`` error).
    """

    value: float | None = None
    kind: Dimension | None = None
    error: CalcError | None = None
    warnings: tuple[CalcError, ...] = field(default=())

    @property
    def is_empty(self) -> bool:
        return self.value is None and self.error is None

    @property
    def is_failed(self) -> bool:
        return self.error is not None and self.value is None

    @property
    def is_partial(self) -> bool:
        return self.error is not None and self.error.kind is ErrorKind.PARTIAL_FAILURE

    @property
    def ok(self) -> bool:
        return self.value is not None and self.error is None

    @classmethod
    def empty(cls, kind: Dimension | None = None) -> ComputedValue:
        return cls(kind=kind)

    @classmethod
    def failed(cls, error: CalcError, kind: Dimension | None = None) -> ComputedValue:
        return cls(kind=kind, error=error)


EMPTY = ComputedValue()


# ---------------------------------------------------------------------------
# Edit-boundary exceptions: raised while validating an edit, never stored
# ---------------------------------------------------------------------------


class EditError(Exception):
    """An edit that cannot be applied.  Carries the CalcError shown to the user."""

    kind: ErrorKind = ErrorKind.INVALID_EDIT

    def __init__(self, message: str, reference: str | None = None) -> None:
        super().__init__(message)
        self.error = CalcError(self.kind, reference, message)

    @property
    def reference(self) -> str | None:
        return self.error.reference


class ParseFailure(EditError):
    kind = ErrorKind.PARSE

    def __init__(self, message: str, reference: str | None = None, offset: int = 0) -> None:
        super().__init__(message, reference)
        self.offset = offset


class DuplicateNameError(EditError):
    kind = ErrorKind.DUPLICATE_NAME


class NotFoundError(EditError):
    kind = ErrorKind.NOT_FOUND


class CyclicDependencyError(EditError):
    kind = ErrorKind.CYCLIC_DEPENDENCY

    def __init__(self, members: list[str]) -> None:
        self.members = list(members)
        super().__init__(
            "Circular reference: " + " -> ".join(self.members + self.members[:1]),
            ", ".join(self.members),
        )


class InvalidEditError(EditError):
    kind = ErrorKind.INVALID_EDIT
