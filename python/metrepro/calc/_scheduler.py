"""Recalculation scheduler: validates, applies and propagates edits.

Each edit runs through ``Idle -> Validating -> Propagating -> Committed ->
Idle`` or ``Validating -> Rejected -> Idle``:

1. *Validating*: new definitions are parsed, the structural change is applied
   tentatively (each step records its undo), the reads of every impacted
   owner are re-derived and checked for cycles against the committed graph.
   Any :class:`EditError` rolls the tentative change back.
2. *Propagating*: the new edges are committed, the affected closure is
   evaluated in topological order into a staging dict, totals are recomputed
   upward from every touched poste.
3. *Committed*: staged values and totals are swapped in as new dicts.

Edits are processed strictly in submission order.  An edit submitted while
another is in flight (from a listener) is queued and reported as Queued.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Callable

from metrepro.calc._aggregation import AggregationTree
from metrepro.calc._edits import (
    AddNode,
    AddRow,
    DeclareVariable,
    Edit,
    MoveNode,
    MoveRow,
    RawDefinition,
    RemoveNode,
    RemoveRow,
    RemoveVariable,
    RenameVariable,
    SetDefinition,
)
from metrepro.calc._evaluator import Evaluator
from metrepro.calc._graph import DependencyGraph
from metrepro.calc._parser import Definition, ParseError, parse_cell_key, parse_definition
from metrepro.calc._protocol import Committed, EditOutcome, Queued, Rejected, ValueDelta
from metrepro.calc._registry import VariableRegistry, variable_key
from metrepro.calc._values import (
    EMPTY,
    ComputedValue,
    CyclicDependencyError,
    Dimension,
    EditError,
    InvalidEditError,
    NotFoundError,
)

if TYPE_CHECKING:
    from metrepro._document import Document

logger = logging.getLogger(__name__)

Listener = Callable[[EditOutcome], None]


class RecalcState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    PROPAGATING = "propagating"
    COMMITTED = "committed"
    REJECTED = "rejected"


@dataclass
class _Plan:
    """What a validated edit changes."""

    changed: set[str] = field(default_factory=set)  # owners to re-evaluate
    rederive: set[str] = field(default_factory=set)  # owners whose reads may change
    removed: set[str] = field(default_factory=set)  # owners that disappear
    touched_nodes: set[str] = field(default_factory=set)  # totals to refresh upward
    removed_nodes: set[str] = field(default_factory=set)
    undo: list[Callable[[], None]] = field(default_factory=list)


def _definition(raw: RawDefinition | Definition, target: str) -> Definition:
    result = parse_definition(raw)
    if isinstance(result, ParseError):
        raise result.to_exception(target)
    return result


def _values_differ(a: ComputedValue, b: ComputedValue, tolerance: float) -> bool:
    if a.error != b.error or a.warnings != b.warnings:
        return True
    if a.value is None or b.value is None:
        return a.value is not b.value
    return abs(a.value - b.value) > tolerance


class RecalcScheduler:
    """Owns the registry, graph, evaluator and totals of one document.

    All mutation funnels through :meth:`submit`; ``values`` and
    ``aggregation.totals`` are replaced wholesale on commit, never patched.
    """

    def __init__(self, document: Document, tolerance: float = 1e-10) -> None:
        self.document = document
        self.registry = VariableRegistry(document)
        self.graph = DependencyGraph()
        self.values: dict[str, ComputedValue] = {}
        self.evaluator = Evaluator(document, self.registry, self._current)
        self.aggregation = AggregationTree(document, self._current)
        self.state = RecalcState.IDLE
        self.tolerance = tolerance
        self._staging: dict[str, ComputedValue] | None = None
        self._queue: deque[tuple[int, Edit]] = deque()
        self._tickets = 0
        self._draining = False
        self._listeners: list[Listener] = []
        # reference tokens ("name:A", "row:r1", "poste:P1") -> owners using them
        self._readers_by_token: dict[str, set[str]] = {}
        self._tokens: dict[str, set[str]] = {}

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def _current(self, owner_id: str) -> ComputedValue:
        if self._staging is not None and owner_id in self._staging:
            return self._staging[owner_id]
        return self.values.get(owner_id, EMPTY)

    def get_computed(self, owner_id: str) -> ComputedValue:
        return self.values.get(owner_id, EMPTY)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call *listener* with every outcome; returns an unsubscribe function."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Edit queue
    # ------------------------------------------------------------------

    def submit(self, edit: Edit) -> EditOutcome:
        self._tickets += 1
        ticket = self._tickets
        self._queue.append((ticket, edit))
        if self._draining:
            logger.debug("Queued %r behind the edit in flight", edit)
            return Queued(edit, len(self._queue))

        outcome: EditOutcome | None = None
        self._draining = True
        try:
            while self._queue:
                current_ticket, current = self._queue.popleft()
                result = self._process(current)
                if current_ticket == ticket:
                    outcome = result
                for listener in list(self._listeners):
                    listener(result)
        finally:
            self._draining = False
        assert outcome is not None
        return outcome

    def request_edit(self, target_id: str, new_definition: RawDefinition) -> EditOutcome:
        return self.submit(SetDefinition(target_id, new_definition))

    def _process(self, edit: Edit) -> EditOutcome:
        self.state = RecalcState.VALIDATING
        plan = _Plan()
        try:
            self._plan(edit, plan)
            proposals, tokens = self._proposals(plan.rederive - plan.removed)
            for owner in plan.removed:
                proposals[owner] = set()
            cycle = self.graph.find_cycle(proposals)
            if cycle is not None:
                raise CyclicDependencyError(cycle)
        except EditError as exc:
            for step in reversed(plan.undo):
                step()
            self.state = RecalcState.REJECTED
            logger.warning("Rejected %r: %s", edit, exc)
            self.state = RecalcState.IDLE
            return Rejected(edit, exc)

        self.state = RecalcState.PROPAGATING
        committed = self._propagate(edit, plan, proposals, tokens)
        self.state = RecalcState.COMMITTED
        logger.debug(
            "Committed %r: %d value(s), %d total(s)",
            edit, len(committed.values), len(committed.totals),
        )
        self.state = RecalcState.IDLE
        return committed

    # ------------------------------------------------------------------
    # Validation: tentative structural change + impacted owners
    # ------------------------------------------------------------------

    def _plan(self, edit: Edit, plan: _Plan) -> None:
        if isinstance(edit, SetDefinition):
            self._plan_set_definition(edit, plan)
        elif isinstance(edit, DeclareVariable):
            self._plan_declare(edit, plan)
        elif isinstance(edit, RenameVariable):
            self._plan_rename(edit, plan)
        elif isinstance(edit, RemoveVariable):
            self._plan_remove_variable(edit, plan)
        elif isinstance(edit, AddNode):
            self._plan_add_node(edit, plan)
        elif isinstance(edit, RemoveNode):
            self._plan_remove_node(edit, plan)
        elif isinstance(edit, MoveNode):
            self._plan_move_node(edit, plan)
        elif isinstance(edit, AddRow):
            self._plan_add_row(edit, plan)
        elif isinstance(edit, RemoveRow):
            self._plan_remove_row(edit, plan)
        elif isinstance(edit, MoveRow):
            self._plan_move_row(edit, plan)
        else:
            raise InvalidEditError(f"Unsupported edit {edit!r}")

    def _impact(self, plan: _Plan, owners: Iterable[str]) -> None:
        owners = set(owners)
        plan.rederive |= owners
        plan.changed |= owners

    def _readers(self, *tokens: str) -> set[str]:
        found: set[str] = set()
        for token in tokens:
            found |= self._readers_by_token.get(token, set())
        return found

    def _plan_set_definition(self, edit: SetDefinition, plan: _Plan) -> None:
        target = edit.target_id
        definition = _definition(edit.definition, target)
        cell = parse_cell_key(target)
        if cell is not None:
            row_id, dim = cell
            row = self.document.row(row_id)
            old = row.definition(dim)
            row.fields[dim] = definition
            plan.undo.append(lambda: row.fields.__setitem__(dim, old))
            plan.touched_nodes.add(row.poste_id)
        elif "/" in target:
            var = self.registry.get_by_key(target)
            old = var.definition
            var.definition = definition
            plan.undo.append(lambda: setattr(var, "definition", old))
        else:
            raise InvalidEditError(f"{target!r} is neither a row field nor a variable", target)
        self._impact(plan, {target})

    def _plan_declare(self, edit: DeclareVariable, plan: _Plan) -> None:
        definition = _definition(edit.definition, variable_key(edit.scope_id, edit.name))
        try:
            kind = Dimension.parse(edit.kind)
        except ValueError as exc:
            raise InvalidEditError(str(exc), edit.name) from None
        var = self.registry.declare(edit.scope_id, edit.name, kind, definition)
        plan.undo.append(lambda: self.registry.remove(var.scope_id, var.name))
        self._impact(plan, {var.key} | self._readers(f"name:{var.name}"))

    def _plan_rename(self, edit: RenameVariable, plan: _Plan) -> None:
        old_key = variable_key(edit.scope_id, edit.name)
        var = self.registry.rename(edit.scope_id, edit.name, edit.new_name)
        if var.key == old_key:
            return
        plan.undo.append(lambda: self.registry.rename(var.scope_id, edit.new_name, edit.name))
        plan.removed.add(old_key)
        self._impact(
            plan,
            {var.key} | self._readers(f"name:{edit.name}", f"name:{edit.new_name}") - {old_key},
        )

    def _plan_remove_variable(self, edit: RemoveVariable, plan: _Plan) -> None:
        position = self.registry.position(edit.scope_id, edit.name)
        var = self.registry.remove(edit.scope_id, edit.name)
        plan.undo.append(lambda: self.registry.restore(var, position))
        plan.removed.add(var.key)
        self._impact(plan, self._readers(f"name:{var.name}") - {var.key})

    def _plan_add_node(self, edit: AddNode, plan: _Plan) -> None:
        try:
            node = self.document.add_node(
                edit.parent_id, edit.node_type, edit.name, edit.node_id, edit.position
            )
        except ValueError as exc:
            raise InvalidEditError(str(exc), edit.node_id) from None
        plan.undo.append(lambda: self.document.remove_subtree(node.id))
        plan.touched_nodes.add(node.id)

    def _plan_remove_node(self, edit: RemoveNode, plan: _Plan) -> None:
        detached = self.document.remove_subtree(edit.node_id)
        plan.undo.append(lambda: self.document.restore_subtree(detached))
        dropped = self.registry.drop_scopes(list(detached.nodes))

        def restore_variables() -> None:
            for var in dropped:
                self.registry.restore(var)

        plan.undo.append(restore_variables)
        tokens: list[str] = [f"name:{var.name}" for var in dropped]
        for row in detached.rows.values():
            plan.removed.update(row.keys())
            tokens.append(f"row:{row.id}")
        tokens.extend(f"poste:{nid}" for nid in detached.nodes)
        plan.removed.update(var.key for var in dropped)
        plan.removed_nodes.update(detached.nodes)
        plan.touched_nodes.add(detached.parent_id)
        self._impact(plan, self._readers(*tokens) - plan.removed)

    def _plan_move_node(self, edit: MoveNode, plan: _Plan) -> None:
        old_parent, old_index = self.document.move_node(
            edit.node_id, edit.new_parent_id, edit.position
        )
        plan.undo.append(lambda: self.document.move_node(edit.node_id, old_parent, old_index))
        # Scope chains below the moved node changed: re-resolve their names
        owners: set[str] = set()
        for nid in self.document.subtree(edit.node_id):
            node = self.document.nodes[nid]
            for rid in node.rows:
                owners.update(self.document.rows[rid].keys())
            owners.update(var.key for var in self.registry.in_scope(nid))
        self._impact(plan, {o for o in owners if self._tokens.get(o)})
        plan.touched_nodes.update({old_parent, edit.node_id})

    def _plan_add_row(self, edit: AddRow, plan: _Plan) -> None:
        fields: dict[Dimension, Definition] = {}
        for name, raw in edit.fields.items():
            try:
                dim = Dimension.parse(name)
            except ValueError as exc:
                raise InvalidEditError(str(exc), edit.row_id) from None
            fields[dim] = _definition(raw, f"#{edit.row_id}.{dim.value}")
        row = self.document.add_row(
            edit.poste_id, edit.row_id, edit.position, edit.designation, edit.unit, fields
        )
        plan.undo.append(lambda: self.document.remove_row(row.id))
        plan.touched_nodes.add(row.poste_id)
        self._impact(plan, set(row.keys()) | self._readers(f"row:{row.id}", f"poste:{row.poste_id}"))

    def _plan_remove_row(self, edit: RemoveRow, plan: _Plan) -> None:
        row, index = self.document.remove_row(edit.row_id)
        plan.undo.append(lambda: self.document.restore_row(row, index))
        plan.removed.update(row.keys())
        plan.touched_nodes.add(row.poste_id)
        self._impact(plan, self._readers(f"row:{row.id}", f"poste:{row.poste_id}") - plan.removed)

    def _plan_move_row(self, edit: MoveRow, plan: _Plan) -> None:
        row = self.document.row(edit.row_id)
        old_index = self.document.move_row(edit.row_id, edit.position)
        plan.undo.append(lambda: self.document.move_row(row.id, old_index))
        self._impact(plan, self._readers(f"poste:{row.poste_id}"))

    # ------------------------------------------------------------------
    # Edge derivation
    # ------------------------------------------------------------------

    def _source(self, owner_id: str) -> tuple[Definition, str] | None:
        """Definition and scope node of an owner, None if it does not exist."""
        cell = parse_cell_key(owner_id)
        if cell is not None:
            row = self.document.rows.get(cell[0])
            return None if row is None else (row.definition(cell[1]), row.poste_id)
        try:
            var = self.registry.get_by_key(owner_id)
        except NotFoundError:
            return None
        return var.definition, var.scope_id

    def _proposals(self, owners: Iterable[str]) -> tuple[dict[str, set[str]], dict[str, set[str]]]:
        proposals: dict[str, set[str]] = {}
        tokens: dict[str, set[str]] = {}
        for owner in owners:
            source = self._source(owner)
            if source is None:
                continue
            definition, scope_id = source
            expr = definition.expression
            proposals[owner] = self.evaluator.dependencies(expr, scope_id)
            owner_tokens: set[str] = set()
            if expr is not None:
                owner_tokens.update(f"name:{n}" for n in expr.names)
                owner_tokens.update(f"row:{ref.row_id}" for ref in expr.cells)
                for rng in expr.ranges:
                    owner_tokens.add(f"row:{rng.start.row_id}")
                    owner_tokens.add(f"row:{rng.end.row_id}")
                    start = self.document.rows.get(rng.start.row_id)
                    if start is not None:
                        owner_tokens.add(f"poste:{start.poste_id}")
            tokens[owner] = owner_tokens
        return proposals, tokens

    def _index(self, owner: str, tokens: set[str]) -> None:
        self._unindex(owner)
        if tokens:
            self._tokens[owner] = tokens
        for token in tokens:
            self._readers_by_token.setdefault(token, set()).add(owner)

    def _unindex(self, owner: str) -> None:
        for token in self._tokens.pop(owner, set()):
            readers = self._readers_by_token.get(token)
            if readers is not None:
                readers.discard(owner)
                if not readers:
                    del self._readers_by_token[token]

    # ------------------------------------------------------------------
    # Propagation + commit
    # ------------------------------------------------------------------

    def _propagate(
        self,
        edit: Edit | None,
        plan: _Plan,
        proposals: dict[str, set[str]],
        tokens: dict[str, set[str]],
    ) -> Committed:
        roots = set(plan.changed)
        for owner in sorted(plan.removed):
            if owner in self.graph.owners:
                roots |= self.graph.remove_owner(owner)
            self._unindex(owner)
        for owner, reads in proposals.items():
            if owner in plan.removed:
                continue
            self.graph.record_edges(owner, reads)
            self._index(owner, tokens.get(owner, set()))
        roots -= plan.removed

        order = self.graph.affected_closure(roots)
        self._staging = {}
        try:
            for owner in order:
                value = self.evaluator.evaluate_owner(owner)
                if value is not None:
                    self._staging[owner] = value
            touched = set(plan.touched_nodes)
            for owner in self._staging:
                cell = parse_cell_key(owner)
                if cell is not None:
                    touched.add(self.document.rows[cell[0]].poste_id)
            totals = self.aggregation.recompute_upward(touched)
            staged = self._staging
        finally:
            self._staging = None

        deltas = tuple(
            ValueDelta(owner, self.values.get(owner, EMPTY), value)
            for owner, value in staged.items()
            if _values_differ(self.values.get(owner, EMPTY), value, self.tolerance)
        )
        new_values = dict(self.values)
        for owner in plan.removed:
            new_values.pop(owner, None)
        new_values.update(staged)
        self.values = new_values
        self.aggregation.commit(totals, plan.removed_nodes)

        return Committed(
            edit=edit,
            values=staged,
            totals=totals,
            deltas=deltas,
            removed=tuple(sorted(plan.removed)),
            max_chain_depth=self.graph.max_depth(roots & self.graph.owners),
        )

    def recalculate_all(self) -> Committed:
        """Derive every edge and evaluate every owner ("everything changed").

        Used once after a document is loaded; raises CyclicDependencyError
        without touching the graph if the loaded definitions contain a cycle.
        """
        owners: list[str] = []
        for row in self.document.rows.values():
            owners.extend(row.keys())
        owners.extend(var.key for var in self.registry)
        proposals, tokens = self._proposals(owners)
        cycle = self.graph.find_cycle(proposals)
        if cycle is not None:
            raise CyclicDependencyError(cycle)

        self.state = RecalcState.PROPAGATING
        for owner, reads in proposals.items():
            self.graph.record_edges(owner, reads)
            self._index(owner, tokens[owner])

        self._staging = {}
        try:
            for owner in self.graph.topological_order():
                value = self.evaluator.evaluate_owner(owner)
                if value is not None:
                    self._staging[owner] = value
            totals = self.aggregation.recompute_all()
            staged = self._staging
        finally:
            self._staging = None
        self.values = dict(staged)
        self.aggregation.commit(totals, replace=True)
        self.state = RecalcState.IDLE
        logger.debug("Full recalculation: %d owner(s), %d node(s)", len(staged), len(totals))
        return Committed(edit=None, values=staged, totals=totals)

    def owner_ids(self) -> list[str]:
        """Every row field and variable id, sorted."""
        return sorted(self.graph.owners)
