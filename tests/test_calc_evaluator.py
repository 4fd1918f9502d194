"""Tests for metrepro.calc Evaluator."""

from __future__ import annotations

import pytest

from metrepro._document import Document
from metrepro.calc._evaluator import Evaluator
from metrepro.calc._parser import Expression, parse, parse_definition
from metrepro.calc._registry import VariableRegistry
from metrepro.calc._values import EMPTY, CalcError, ComputedValue, Dimension, ErrorKind


class _Env:
    """A poste P1 under the project with rows r1..r3 and a value map."""

    def __init__(self) -> None:
        self.doc = Document()
        self.doc.add_node("project", "poste", "Murs", "P1")
        self.doc.add_node("project", "poste", "Dalles", "P2")
        for rid in ("r1", "r2", "r3"):
            self.doc.add_row("P1", rid)
        self.doc.add_row("P2", "q1")
        self.registry = VariableRegistry(self.doc)
        self.values: dict[str, ComputedValue] = {}
        self.ev = Evaluator(self.doc, self.registry, lambda k: self.values.get(k, EMPTY))

    def var(self, name: str, value: float | None, kind: str = "L", scope: str = "P1") -> None:
        var = self.registry.declare(scope, name, kind, parse_definition(value))
        self.values[var.key] = ComputedValue(value=value, kind=var.kind)

    def run(self, text: str, expected: Dimension | None = None, scope: str = "P1") -> ComputedValue:
        expr = parse(text)
        assert isinstance(expr, Expression), expr
        return self.ev.evaluate(expr, scope, expected, owner="#r9.L")


@pytest.fixture
def env() -> _Env:
    return _Env()


class TestArithmetic:
    def test_literal_expression(self, env: _Env) -> None:
        assert env.run("1 + 2 * 3").value == 7.0

    def test_variables(self, env: _Env) -> None:
        env.var("A", 2.0)
        assert env.run("A * 3").value == 6.0

    def test_cell_reference(self, env: _Env) -> None:
        env.values["#r2.L"] = ComputedValue(value=4.0, kind=Dimension.L)
        assert env.run("#r2.L + 1").value == 5.0

    def test_empty_reads_as_zero(self, env: _Env) -> None:
        assert env.run("#r2.L + 1").value == 1.0

    def test_power_and_unary(self, env: _Env) -> None:
        assert env.run("-2 ^ 2").value == -4.0
        assert env.run("2 ^ -1").value == 0.5

    def test_no_internal_rounding(self, env: _Env) -> None:
        assert env.run("1 / 3").value == 1 / 3

    def test_functions(self, env: _Env) -> None:
        assert env.run("ROUND(2.345; 2) + SQRT(9)").value == pytest.approx(5.35)


class TestErrors:
    def test_unknown_variable(self, env: _Env) -> None:
        cv = env.run("Z + 1")
        assert cv.is_failed
        assert cv.error.kind is ErrorKind.NOT_FOUND
        assert cv.error.reference == "Z"

    def test_missing_row(self, env: _Env) -> None:
        cv = env.run("#gone.L * 2")
        assert cv.error.kind is ErrorKind.NOT_FOUND
        assert cv.error.reference == "#gone.L"

    def test_division_by_zero(self, env: _Env) -> None:
        env.var("A", 0.0)
        cv = env.run("10 / A")
        assert cv.error.kind is ErrorKind.DIVISION_BY_ZERO
        assert cv.error.reference == "A"

    def test_failure_propagates_unchanged(self, env: _Env) -> None:
        failure = CalcError(ErrorKind.NOT_FOUND, "Q", "Unknown variable 'Q'")
        env.values["#r1.L"] = ComputedValue.failed(failure, Dimension.L)
        cv = env.run("#r1.L + 1")
        assert cv.error is failure

    def test_first_failure_wins(self, env: _Env) -> None:
        cv = env.run("X + 1 / 0")
        assert cv.error.reference == "X"

    def test_function_domain_error(self, env: _Env) -> None:
        cv = env.run("SQRT(-4)")
        assert cv.error.kind is ErrorKind.INVALID_ARGUMENT

    def test_negative_base_fractional_exponent(self, env: _Env) -> None:
        assert env.run("(-8) ^ 0.5").error.kind is ErrorKind.INVALID_ARGUMENT

    def test_overflow(self, env: _Env) -> None:
        assert env.run("10 ^ 400").error.kind is ErrorKind.INVALID_ARGUMENT


class TestRanges:
    def test_sum_of_range(self, env: _Env) -> None:
        env.values["#r1.L"] = ComputedValue(value=1.0)
        env.values["#r3.L"] = ComputedValue(value=3.0)
        assert env.run("SUM(#r1.L:#r3.L)").value == 4.0

    def test_reversed_range(self, env: _Env) -> None:
        env.values["#r2.L"] = ComputedValue(value=2.0)
        assert env.run("MAX(#r3.L:#r1.L)").value == 2.0

    def test_range_across_postes(self, env: _Env) -> None:
        cv = env.run("SUM(#r1.L:#q1.L)")
        assert cv.error.kind is ErrorKind.NOT_FOUND
        assert cv.error.reference == "#r1.L:#q1.L"

    def test_range_with_failed_member(self, env: _Env) -> None:
        failure = CalcError(ErrorKind.DIVISION_BY_ZERO, None, "x")
        env.values["#r2.L"] = ComputedValue.failed(failure)
        assert env.run("SUM(#r1.L:#r3.L)").error is failure


class TestKinds:
    def test_matching_kind_has_no_warning(self, env: _Env) -> None:
        env.var("A", 2.0, "L")
        env.var("B", 3.0, "L")
        cv = env.run("A * B", Dimension.S)
        assert cv.value == 6.0
        assert cv.warnings == ()

    def test_mismatch_is_a_warning(self, env: _Env) -> None:
        env.var("A", 2.0, "L")
        cv = env.run("A * A * A", Dimension.S)
        assert cv.value == 8.0
        assert cv.ok
        assert [w.kind for w in cv.warnings] == [ErrorKind.KIND_MISMATCH]

    def test_adding_different_kinds(self, env: _Env) -> None:
        env.var("A", 2.0, "L")
        env.var("B", 3.0, "S")
        cv = env.run("A + B", Dimension.L)
        assert cv.value == 5.0
        assert any("Mixing" in w.message for w in cv.warnings)

    def test_literals_are_dimensionless(self, env: _Env) -> None:
        env.var("A", 2.0, "S")
        assert env.run("A * 2", Dimension.S).warnings == ()
        assert env.run("12", Dimension.V).warnings == ()

    def test_sqrt_halves(self, env: _Env) -> None:
        env.var("A", 16.0, "S")
        assert env.run("SQRT(A)", Dimension.L).warnings == ()


class TestDependencies:
    def test_reads_existing_owners_only(self, env: _Env) -> None:
        env.var("A", 1.0)
        expr = parse("A + Z + #r1.L + #gone.S")
        assert env.ev.dependencies(expr, "P1") == {"P1/A", "#r1.L"}

    def test_range_expands_to_rows(self, env: _Env) -> None:
        expr = parse("SUM(#r1.S:#r3.S)")
        assert env.ev.dependencies(expr, "P1") == {"#r1.S", "#r2.S", "#r3.S"}

    def test_resolution_depends_on_scope(self, env: _Env) -> None:
        env.var("A", 1.0, scope="P2")
        assert env.ev.dependencies(parse("A"), "P1") == set()
        assert env.ev.dependencies(parse("A"), "P2") == {"P2/A"}

    def test_evaluate_owner(self, env: _Env) -> None:
        env.doc.rows["r1"].fields[Dimension.L] = parse_definition("2 * 3")
        assert env.ev.evaluate_owner("#r1.L").value == 6.0
        assert env.ev.evaluate_owner("#r1.S").is_empty
        assert env.ev.evaluate_owner("#gone.L") is None
        assert env.ev.evaluate_owner("P1/nope") is None
