"""Evaluator: walks a parsed formula and produces a ComputedValue.

Variable names resolve through the VariableRegistry (scope chain), cell
addresses by direct lookup in the document.  Evaluation is left to right and
the first failure wins: a failed operand short-circuits the rest of the
expression and is returned unchanged, so a ``NotFound`` three formulas up the
chain still names the reference that is actually missing.

Alongside each number the evaluator tracks its physical dimension (metres to
the power 0..3) to flag ``KindMismatch`` warnings; these never block a result.
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Callable, Union

from metrepro.calc._functions import FUNCTION_DIMENSIONS, FunctionRegistry
from metrepro.calc._parser import (
    Binary,
    Call,
    CellRef,
    Definition,
    Expression,
    Node,
    Number,
    RangeRef,
    Unary,
    VarRef,
    cell_key,
    parse_cell_key,
)
from metrepro.calc._registry import VariableRegistry
from metrepro.calc._values import (
    CalcError,
    ComputedValue,
    Dimension,
    ErrorKind,
    NotFoundError,
)

if TYPE_CHECKING:
    from metrepro._document import Document

logger = logging.getLogger(__name__)

ValueLookup = Callable[[str], ComputedValue]

# A partial result: number or error, plus the dimension (None = unknown)
_Result = tuple[Union[float, CalcError], Union[int, None]]


def _kind_name(power: int) -> str:
    for dim in Dimension:
        if dim.power == power:
            return dim.value
    return f"m^{power}"


def _describe(node: Node) -> str | None:
    if isinstance(node, VarRef):
        return node.name
    if isinstance(node, CellRef):
        return node.key
    return None


class Evaluator:
    """Evaluates expressions against the document, registry and current values.

    *lookup* returns the current ComputedValue of an owner id; the scheduler
    points it at its staging area during a recalculation pass.
    """

    def __init__(
        self,
        document: Document,
        registry: VariableRegistry,
        lookup: ValueLookup,
        functions: FunctionRegistry | None = None,
    ) -> None:
        self._document = document
        self._registry = registry
        self._lookup = lookup
        self._functions = functions or FunctionRegistry()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def evaluate(
        self,
        expression: Expression,
        scope_id: str,
        expected: Dimension | None = None,
        owner: str | None = None,
    ) -> ComputedValue:
        """Evaluate *expression* as seen from *scope_id*."""
        warnings: list[CalcError] = []
        value, dim = self._eval(expression.root, scope_id, warnings)
        if isinstance(value, CalcError):
            return ComputedValue(kind=expected, error=value, warnings=tuple(warnings))
        if expected is not None and dim not in (None, 0, expected.power):
            warnings.append(CalcError(
                ErrorKind.KIND_MISMATCH,
                owner,
                f"Result is {_kind_name(dim)} where {expected.value} is expected",
            ))
        return ComputedValue(
            value=value,
            kind=expected,
            warnings=tuple(dict.fromkeys(warnings)),
        )

    def evaluate_definition(
        self,
        definition: Definition,
        scope_id: str,
        expected: Dimension | None = None,
        owner: str | None = None,
    ) -> ComputedValue:
        if definition.expression is not None:
            return self.evaluate(definition.expression, scope_id, expected, owner)
        if definition.literal is not None:
            return ComputedValue(value=definition.literal, kind=expected)
        return ComputedValue.empty(expected)

    def evaluate_owner(self, owner_id: str) -> ComputedValue | None:
        """Evaluate a row field or variable by id; None if it no longer exists."""
        cell = parse_cell_key(owner_id)
        if cell is not None:
            row_id, field = cell
            row = self._document.rows.get(row_id)
            if row is None:
                return None
            return self.evaluate_definition(row.definition(field), row.poste_id, field, owner_id)
        try:
            var = self._registry.get_by_key(owner_id)
        except NotFoundError:
            return None
        return self.evaluate_definition(var.definition, var.scope_id, var.kind, owner_id)

    def dependencies(self, expression: Expression | None, scope_id: str) -> set[str]:
        """Owner ids *expression* reads when evaluated from *scope_id*.

        Only existing owners are returned: unknown names and missing rows give
        no edge (they evaluate to NotFound, and the scheduler re-derives the
        reads when the missing name or row appears).
        """
        reads: set[str] = set()
        if expression is None:
            return reads
        for name in expression.names:
            var = self._registry.resolve(scope_id, name)
            if not isinstance(var, CalcError):
                reads.add(var.key)
        for ref in expression.cells:
            if ref.row_id in self._document.rows:
                reads.add(ref.key)
        for rng in expression.ranges:
            rows = self._document.rows_between(rng.start.row_id, rng.end.row_id)
            for row in rows or ():
                reads.add(cell_key(row.id, rng.field))
        return reads

    # ------------------------------------------------------------------
    # Tree walk
    # ------------------------------------------------------------------

    def _read(self, owner_id: str) -> float | CalcError:
        current = self._lookup(owner_id)
        if current.error is not None and current.value is None:
            return current.error
        return 0.0 if current.value is None else current.value

    def _eval(self, node: Node, scope_id: str, warnings: list[CalcError]) -> _Result:
        if isinstance(node, Number):
            return node.value, 0

        if isinstance(node, VarRef):
            var = self._registry.resolve(scope_id, node.name)
            if isinstance(var, CalcError):
                return var, None
            return self._read(var.key), var.kind.power

        if isinstance(node, CellRef):
            if node.row_id not in self._document.rows:
                return CalcError(ErrorKind.NOT_FOUND, node.key, f"Row {node.row_id!r} does not exist"), None
            return self._read(node.key), node.field.power

        if isinstance(node, Unary):
            value, dim = self._eval(node.operand, scope_id, warnings)
            if isinstance(value, CalcError):
                return value, None
            return (-value if node.op == "-" else value), dim

        if isinstance(node, Binary):
            return self._binary(node, scope_id, warnings)

        if isinstance(node, Call):
            return self._call(node, scope_id, warnings)

        if isinstance(node, RangeRef):
            # The parser only allows ranges as function arguments
            raise TypeError(f"Range {node} outside of a function call")

        raise TypeError(f"Unknown expression node {node!r}")

    def _binary(self, node: Binary, scope_id: str, warnings: list[CalcError]) -> _Result:
        left, ld = self._eval(node.left, scope_id, warnings)
        if isinstance(left, CalcError):
            return left, None
        right, rd = self._eval(node.right, scope_id, warnings)
        if isinstance(right, CalcError):
            return right, None

        op = node.op
        if op in ("+", "-"):
            dim = self._combine_same([ld, rd], node, warnings)
            return self._finite(left + right if op == "+" else left - right, node), dim
        if op == "*":
            dim = None if ld is None or rd is None else ld + rd
            return self._finite(left * right, node), dim
        if op == "/":
            if right == 0:
                return CalcError(
                    ErrorKind.DIVISION_BY_ZERO,
                    _describe(node.right),
                    f"Division by zero at offset {node.offset}",
                ), None
            dim = None if ld is None or rd is None else ld - rd
            return self._finite(left / right, node), dim
        if op == "^":
            if left == 0 and right < 0:
                return CalcError(
                    ErrorKind.DIVISION_BY_ZERO, _describe(node.left), "Zero raised to a negative power"
                ), None
            if left < 0 and not float(right).is_integer():
                return CalcError(
                    ErrorKind.INVALID_ARGUMENT,
                    _describe(node.left),
                    "Negative base with a fractional exponent",
                ), None
            try:
                result = left ** right
            except OverflowError:
                result = math.inf
            dim = None
            if ld is not None and isinstance(node.right, Number) and right.is_integer():
                dim = ld * int(right)
            return self._finite(result, node), dim
        raise TypeError(f"Unknown operator {op!r}")

    def _call(self, node: Call, scope_id: str, warnings: list[CalcError]) -> _Result:
        args: list[float | list[float | None]] = []
        dims: list[int | None] = []
        for arg in node.args:
            if isinstance(arg, RangeRef):
                values = self._range(arg)
                if isinstance(values, CalcError):
                    return values, None
                args.append(values)
                dims.append(arg.field.power)
                continue
            value, dim = self._eval(arg, scope_id, warnings)
            if isinstance(value, CalcError):
                return value, None
            args.append(value)
            dims.append(dim)

        func = self._functions.get(node.name)
        if func is None:
            return CalcError(ErrorKind.NOT_FOUND, node.name, f"Unknown function {node.name}"), None
        try:
            result = func(args)
        except (ValueError, ArithmeticError) as e:
            logger.debug("Error evaluating %s: %s", node.name, e)
            return CalcError(ErrorKind.INVALID_ARGUMENT, node.name, str(e)), None

        rule = FUNCTION_DIMENSIONS.get(node.name, "none")
        dim: int | None
        if rule == "same":
            dim = self._combine_same(dims, node, warnings)
        elif rule == "first":
            dim = dims[0] if dims else 0
        elif rule == "sqrt":
            dim = dims[0] // 2 if dims[0] is not None and dims[0] % 2 == 0 else None
        elif rule == "power":
            exponent = node.args[1]
            dim = None
            if dims[0] is not None and isinstance(exponent, Number) and exponent.value.is_integer():
                dim = dims[0] * int(exponent.value)
        else:
            dim = 0
        return self._finite(result, node), dim

    def _range(self, rng: RangeRef) -> list[float | None] | CalcError:
        rows = self._document.rows_between(rng.start.row_id, rng.end.row_id)
        if rows is None:
            return CalcError(
                ErrorKind.NOT_FOUND,
                str(rng),
                "Range ends must be existing rows of the same poste",
            )
        values: list[float | None] = []
        for row in rows:
            current = self._lookup(cell_key(row.id, rng.field))
            if current.error is not None and current.value is None:
                return current.error
            values.append(current.value)
        return values

    @staticmethod
    def _combine_same(dims: list[int | None], node: Node, warnings: list[CalcError]) -> int | None:
        """Dimension of a sum-like combination; dimensionless terms adapt."""
        if any(d is None for d in dims):
            return None
        known = {d for d in dims if d}
        if len(known) > 1:
            kinds = ", ".join(_kind_name(d) for d in sorted(known))  # type: ignore[arg-type]
            warnings.append(CalcError(
                ErrorKind.KIND_MISMATCH, None, f"Mixing {kinds} at offset {node.offset}",
            ))
            return None
        return known.pop() if known else 0

    @staticmethod
    def _finite(value: float, node: Node) -> float | CalcError:
        if isinstance(value, complex) or not math.isfinite(value):
            return CalcError(
                ErrorKind.INVALID_ARGUMENT, None, f"Result is not a finite number at offset {node.offset}",
            )
        return float(value)
