"""Integration tests for metrepro.Project: load, edit, serialize, undo."""

from __future__ import annotations

import copy
from typing import Any

import pytest
from pydantic import ValidationError

from metrepro import (
    AddRow,
    Committed,
    DeclareVariable,
    Dimension,
    EditError,
    ErrorKind,
    MetreEngine,
    MoveNode,
    Project,
    Rejected,
    RemoveRow,
    RemoveVariable,
    RenameVariable,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _document() -> dict[str, Any]:
    """project (H = 2.5) > Gros oeuvre > Murs (r1, r2), Dalles (r3)."""
    return {
        "version": 1,
        "project": {
            "id": "project",
            "type": "project",
            "name": "Villa",
            "variables": [{"name": "H", "kind": "L", "definition": "2.5"}],
            "children": [
                {
                    "id": "F1",
                    "type": "folder",
                    "name": "Gros oeuvre",
                    "children": [
                        {
                            "id": "P1",
                            "type": "poste",
                            "name": "Murs",
                            "variables": [{"name": "ep", "kind": "L", "definition": 0.2}],
                            "rows": [
                                {"id": "r1", "designation": "Mur nord", "unit": "M²",
                                 "L": 4, "S": "#r1.L * H", "V": "#r1.S * ep"},
                                {"id": "r2", "designation": "Mur sud", "unit": "M²",
                                 "L": "3,5", "S": "#r2.L * H"},
                            ],
                        },
                        {
                            "id": "P2",
                            "type": "poste",
                            "name": "Dalles",
                            "rows": [{"id": "r3", "S": "SUM(#r3.L:#r3.L) + 12", "L": 1}],
                        },
                    ],
                }
            ],
        },
    }


@pytest.fixture
def project() -> Project:
    p = Project()
    p.load_document(_document())
    return p


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


class TestLoad:
    def test_full_recalculation(self, project: Project) -> None:
        assert project.get_computed("#r1.S").value == 10.0
        assert project.get_computed("#r1.V").value == pytest.approx(2.0)
        assert project.get_computed("#r2.L").value == 3.5
        assert project.get_computed("#r3.S").value == 13.0
        assert project.get_total("P1", "S").value == 18.75
        assert project.get_total("F1", Dimension.S).value == 31.75
        assert project.get_total("project", "L").value == 8.5

    def test_satisfies_engine_protocol(self, project: Project) -> None:
        assert isinstance(project, MetreEngine)

    def test_unknown_id_is_empty(self, project: Project) -> None:
        assert project.get_computed("#zz.L").is_empty

    def test_malformed_tree(self, project: Project) -> None:
        bad = _document()
        bad["project"]["children"][0]["rows"] = [{"id": "x"}]
        with pytest.raises(ValidationError):
            project.load_document(bad)

    def test_bad_id(self) -> None:
        bad = _document()
        bad["project"]["children"][0]["id"] = "F 1"
        with pytest.raises(ValidationError):
            Project().load_document(bad)

    def test_cycle_rejects_load_and_keeps_document(self, project: Project) -> None:
        bad = _document()
        rows = bad["project"]["children"][0]["children"][0]["rows"]
        rows[0]["L"] = "#r2.L"
        rows[1]["L"] = "#r1.L"
        with pytest.raises(EditError) as exc_info:
            project.load_document(bad)
        assert exc_info.value.error.kind is ErrorKind.CYCLIC_DEPENDENCY
        assert project.get_computed("#r1.S").value == 10.0

    def test_duplicate_row_id(self) -> None:
        bad = _document()
        bad["project"]["children"][0]["children"][1]["rows"][0]["id"] = "r1"
        with pytest.raises(EditError) as exc_info:
            Project().load_document(bad)
        assert exc_info.value.error.kind is ErrorKind.DUPLICATE_NAME

    def test_parse_error(self) -> None:
        bad = _document()
        bad["project"]["variables"][0]["definition"] = "2 *"
        with pytest.raises(EditError) as exc_info:
            Project().load_document(bad)
        assert exc_info.value.error.kind is ErrorKind.PARSE
        assert exc_info.value.reference == "project/H"


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


class TestSerialize:
    def test_roundtrip(self, project: Project) -> None:
        data = project.serialize_document()
        other = Project()
        other.load_document(data)
        assert other.serialize_document() == data
        for owner in ("#r1.S", "#r1.V", "#r2.S", "#r3.S", "project/H", "P1/ep"):
            assert other.get_computed(owner) == project.get_computed(owner)

    def test_definitions_not_values(self, project: Project) -> None:
        data = project.serialize_document()
        murs = data["project"]["children"][0]["children"][0]
        assert murs["rows"][0]["S"] == "#r1.L * H"
        assert murs["rows"][0]["L"] == 4.0
        assert murs["rows"][1]["V"] is None
        assert murs["rows"][0]["unit"] == "M²"
        assert data["project"]["variables"] == [{"name": "H", "kind": "L", "definition": 2.5}]

    def test_order_is_preserved(self, project: Project) -> None:
        project.submit(AddRow("P1", "r0", position=0, fields={"L": 1}))
        data = project.serialize_document()
        murs = data["project"]["children"][0]["children"][0]
        assert [r["id"] for r in murs["rows"]] == ["r0", "r1", "r2"]


# ---------------------------------------------------------------------------
# Edits
# ---------------------------------------------------------------------------


class TestEdits:
    def test_scenario_a(self) -> None:
        p = Project()
        p.load_document({"project": {"id": "project", "type": "project"}})
        p.submit(DeclareVariable("project", "A", "L", "2"))
        p.submit(DeclareVariable("project", "B", "L", "A * 3"))
        assert p.get_computed("project/B").value == 6.0
        assert isinstance(p.request_edit("project/A", "5"), Committed)
        assert p.get_computed("project/B").value == 15.0

    def test_scenario_b(self) -> None:
        p = Project()
        p.load_document({"project": {"id": "project", "type": "project", "children": [
            {"id": "P", "type": "poste", "rows": [
                {"id": "r1", "L": "#r2.L + 1"}, {"id": "r2", "L": 4},
            ]},
        ]}})
        assert p.get_computed("#r1.L").value == 5.0
        p.submit(RemoveRow("r2"))
        assert p.get_computed("#r1.L").error.kind is ErrorKind.NOT_FOUND

    def test_scenario_c(self, project: Project) -> None:
        outcome = project.submit(DeclareVariable("P1", "X", "L", "X + 1"))
        assert isinstance(outcome, Rejected)
        assert outcome.reason.kind is ErrorKind.CYCLIC_DEPENDENCY
        assert "P1/X" not in project.scheduler.registry

    def test_atomic_rejection(self, project: Project) -> None:
        before = project.serialize_document()
        ids = project.scheduler.owner_ids()
        values = {i: project.get_computed(i) for i in ids}
        outcome = project.request_edit("project/H", "#r1.S")
        assert isinstance(outcome, Rejected)
        assert {i: project.get_computed(i) for i in ids} == values
        assert project.serialize_document() == before

    def test_non_finite_literal_rejected(self, project: Project) -> None:
        before = project.serialize_document()
        outcome = project.request_edit("#r1.L", "1e400")
        assert isinstance(outcome, Rejected)
        assert outcome.reason.kind is ErrorKind.PARSE
        assert project.get_total("project", "L").value == 8.5
        assert project.serialize_document() == before

    def test_aggregation_law(self, project: Project) -> None:
        for dim in Dimension:
            folder = project.get_total("F1", dim)
            children = [project.get_total(c, dim) for c in ("P1", "P2")]
            expected = sum(c.value for c in children if c.value is not None)
            if folder.value is not None:
                assert folder.value == pytest.approx(expected)

    def test_listener(self, project: Project) -> None:
        seen = []
        project.subscribe(seen.append)
        project.request_edit("#r1.L", 5)
        assert len(seen) == 1
        assert {d.id for d in seen[0].deltas} >= {"#r1.L", "#r1.S", "#r1.V"}


# ---------------------------------------------------------------------------
# Cycles closed by name resolution changes
# ---------------------------------------------------------------------------


def _state(p: Project) -> tuple[Any, ...]:
    """Everything a rejected edit must leave untouched."""
    nodes = sorted(p.document.nodes)
    return (
        p.serialize_document(),
        {i: p.get_computed(i) for i in p.scheduler.owner_ids()},
        {n: p.totals(n) for n in nodes},
        {n: [v.name for v in p.scheduler.registry.in_scope(n)] for n in nodes},
    )


def _assert_cycle_rejected(p: Project, outcome: Any, member: str) -> None:
    assert isinstance(outcome, Rejected), outcome
    assert outcome.reason.kind is ErrorKind.CYCLIC_DEPENDENCY
    assert member in outcome.error.members
    assert not p.can_undo


class TestResolutionCycles:
    def test_remove_variable_unshadows_outer_cycle(self) -> None:
        p = Project()
        p.load_document({"project": {
            "id": "project", "type": "project",
            "variables": [{"name": "B", "definition": "#r1.L"}],
            "children": [{
                "id": "P", "type": "poste",
                "variables": [{"name": "B", "definition": 3}, {"name": "C", "definition": 4}],
                "rows": [{"id": "r1", "L": "B"}],
            }],
        }})
        assert p.get_computed("#r1.L").value == 3.0
        assert p.get_computed("project/B").value == 3.0
        before = _state(p)

        _assert_cycle_rejected(p, p.submit(RemoveVariable("P", "B")), "project/B")

        assert _state(p) == before
        assert [v.name for v in p.scheduler.registry.in_scope("P")] == ["B", "C"]
        assert p.scheduler.graph.reads("#r1.L") == {"P/B"}

    def test_rename_onto_a_name_it_reads(self) -> None:
        p = Project()
        p.load_document({"project": {
            "id": "project", "type": "project",
            "variables": [{"name": "B", "definition": 2}],
            "children": [{
                "id": "P", "type": "poste",
                "variables": [{"name": "A", "definition": "B + 1"}, {"name": "D", "definition": 1}],
                "rows": [{"id": "r1", "L": "A * 2"}],
            }],
        }})
        assert p.get_computed("P/A").value == 3.0
        assert p.get_computed("#r1.L").value == 6.0
        before = _state(p)

        _assert_cycle_rejected(p, p.submit(RenameVariable("P", "A", "B")), "P/B")

        assert _state(p) == before
        assert "P/A" in p.scheduler.registry
        assert "P/B" not in p.scheduler.registry
        assert p.scheduler.graph.reads("P/A") == {"project/B"}

    def test_move_node_under_a_scope_that_closes_a_cycle(self) -> None:
        p = Project()
        p.load_document({"project": {
            "id": "project", "type": "project",
            "children": [
                {"id": "F1", "type": "folder",
                 "variables": [{"name": "H", "definition": 3}],
                 "children": [{"id": "P2", "type": "poste", "rows": [{"id": "r1", "L": "H"}]}]},
                {"id": "F2", "type": "folder",
                 "variables": [{"name": "H", "definition": "#r1.L"}]},
            ],
        }})
        assert p.get_computed("F2/H").value == 3.0
        before = _state(p)

        _assert_cycle_rejected(p, p.submit(MoveNode("P2", "F2")), "F2/H")

        assert _state(p) == before
        assert p.document.nodes["P2"].parent_id == "F1"
        assert p.document.nodes["F1"].children == ["P2"]
        assert p.get_total("F1", "L").value == 3.0
        assert p.get_total("F2", "L").is_empty


# ---------------------------------------------------------------------------
# Undo / redo
# ---------------------------------------------------------------------------


class TestUndo:
    def test_undo_redo(self, project: Project) -> None:
        original = project.serialize_document()
        project.request_edit("#r1.L", 8)
        assert project.get_computed("#r1.S").value == 20.0
        assert project.undo()
        assert project.get_computed("#r1.S").value == 10.0
        assert project.serialize_document() == original
        assert project.can_redo
        assert project.redo()
        assert project.get_computed("#r1.S").value == 20.0

    def test_nothing_to_undo(self, project: Project) -> None:
        assert not project.can_undo
        assert not project.undo()
        assert not project.redo()

    def test_rejected_edits_are_not_recorded(self, project: Project) -> None:
        project.request_edit("#r1.L", "1 +")
        assert not project.can_undo

    def test_new_edit_clears_redo(self, project: Project) -> None:
        project.request_edit("#r1.L", 8)
        project.undo()
        project.request_edit("#r1.L", 9)
        assert not project.can_redo

    def test_history_is_bounded(self) -> None:
        p = Project({"advanced": {"max_undo_steps": 2}})
        p.load_document(_document())
        for value in (5, 6, 7):
            p.request_edit("#r1.L", value)
        assert p.undo()
        assert p.undo()
        assert not p.undo()
        assert p.get_computed("#r1.L").value == 5.0

    def test_load_clears_history(self, project: Project) -> None:
        project.request_edit("#r1.L", 8)
        project.load_document(copy.deepcopy(_document()))
        assert not project.can_undo


# ---------------------------------------------------------------------------
# Display
# ---------------------------------------------------------------------------


class TestDisplay:
    def test_rounded_for_display_only(self, project: Project) -> None:
        project.request_edit("#r1.L", "10 / 3")
        assert project.display("#r1.L") == "3.33"
        assert project.get_computed("#r1.L").value == 10 / 3

    def test_decimal_comma(self) -> None:
        p = Project({"format": {"decimal_places": 3, "decimal_separator": ","}})
        p.load_document(_document())
        assert p.display("#r2.L") == "3,500"

    def test_error_tag(self, project: Project) -> None:
        project.request_edit("#r1.L", "Z")
        assert project.display("#r1.L") == "#NotFound(Z)"
        assert project.display("#zz.L") == ""

    def test_partial_total(self, project: Project) -> None:
        project.request_edit("#r3.L", "1 / 0")
        assert project.display_total("F1", "L") == "7.50 #PartialFailure(P2)"

    def test_units(self, project: Project) -> None:
        assert "M²" in project.units
