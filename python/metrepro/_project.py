"""Project: the document instance seen by the UI and persistence layers."""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Callable

from metrepro._document import Document
from metrepro._schema import SCHEMA_VERSION, DocumentModel, NodeModel
from metrepro._settings import Settings, load_settings
from metrepro._utils import format_number
from metrepro.calc._edits import Edit, RawDefinition, SetDefinition
from metrepro.calc._parser import Definition, ParseError, parse_definition
from metrepro.calc._protocol import Committed, EditOutcome
from metrepro.calc._scheduler import RecalcScheduler
from metrepro.calc._values import FIELDS, ComputedValue, Dimension, EditError

logger = logging.getLogger(__name__)

Listener = Callable[[EditOutcome], None]


def _definition(raw: RawDefinition, reference: str) -> Definition:
    result = parse_definition(raw)
    if isinstance(result, ParseError):
        raise result.to_exception(reference)
    return result


def _build(model: DocumentModel) -> RecalcScheduler:
    """Build and fully recalculate a fresh document from *model*.

    Raises EditError (parse error, duplicate id or name, cycle); nothing is
    shared with the current document, so a failure leaves it untouched.
    """
    root = model.project
    scheduler = RecalcScheduler(Document(root.id, root.name))
    document, registry = scheduler.document, scheduler.registry

    pending: list[tuple[NodeModel, str | None]] = [(root, None)]
    while pending:
        node, parent_id = pending.pop()
        if parent_id is not None:
            document.add_node(parent_id, node.type, node.name, node.id)
        for var in node.variables:
            registry.declare(
                node.id, var.name, var.kind, _definition(var.definition, f"{node.id}/{var.name}")
            )
        for row in node.rows:
            fields = {
                dim: _definition(getattr(row, dim.value), f"#{row.id}.{dim.value}")
                for dim in FIELDS
            }
            document.add_row(node.id, row.id, None, row.designation, row.unit, fields)
        pending.extend((child, node.id) for child in reversed(node.children))

    scheduler.recalculate_all()
    return scheduler


class Project:
    """One open métré document with its recalculation engine.

    Usage::

        project = Project()
        project.load_document({"project": {"id": "project", "type": "project",
                                           "children": [...]}})
        outcome = project.request_edit("#r1.L", "A * 2")
        if outcome.accepted:
            print(project.display("#r1.L"))
    """

    def __init__(self, settings: Settings | dict[str, Any] | None = None) -> None:
        if isinstance(settings, Settings):
            self.settings = settings
        else:
            self.settings = load_settings(settings)
        if self.settings.advanced.enable_debug:
            logging.getLogger("metrepro").setLevel(logging.DEBUG)
        self._listeners: list[Listener] = []
        self._undo: deque[dict[str, Any]] = deque()
        self._redo: list[dict[str, Any]] = []
        self._restoring = False
        self._install(RecalcScheduler(Document()))
        self._snapshot = self.serialize_document()

    def _install(self, scheduler: RecalcScheduler) -> None:
        self._scheduler = scheduler
        scheduler.subscribe(self._on_outcome)

    @property
    def document(self) -> Document:
        return self._scheduler.document

    @property
    def scheduler(self) -> RecalcScheduler:
        return self._scheduler

    # ------------------------------------------------------------------
    # Loading and serialization
    # ------------------------------------------------------------------

    def load_document(self, serialized: DocumentModel | dict[str, Any]) -> None:
        """Replace the whole document and recalculate everything.

        Raises pydantic ``ValidationError`` for a malformed tree and
        ``EditError`` for invalid content; the current document stays in
        place in both cases.  Clears the undo history.
        """
        self._load(serialized)
        self._undo.clear()
        self._redo.clear()

    def _load(self, serialized: DocumentModel | dict[str, Any]) -> None:
        if isinstance(serialized, DocumentModel):
            model = serialized
        else:
            model = DocumentModel.model_validate(serialized)
        try:
            scheduler = _build(model)
        except EditError as exc:
            logger.warning("Rejected document load: %s", exc)
            raise
        self._install(scheduler)
        self._snapshot = self.serialize_document()
        logger.debug(
            "Loaded document %r: %d node(s), %d row(s)",
            model.project.id, len(scheduler.document.nodes), len(scheduler.document.rows),
        )

    def serialize_document(self) -> dict[str, Any]:
        """Structure and definitions as plain data; loadable by ``load_document``."""
        document = self.document
        registry = self._scheduler.registry
        out: dict[str, dict[str, Any]] = {}
        for node_id in document.subtree(document.root_id):
            node = document.nodes[node_id]
            entry: dict[str, Any] = {
                "id": node.id,
                "type": node.type.value,
                "name": node.name,
                "variables": [
                    {"name": v.name, "kind": v.kind.value, "definition": v.definition.serialize()}
                    for v in registry.in_scope(node.id)
                ],
            }
            if node.is_poste:
                entry["rows"] = []
                for rid in node.rows:
                    row = document.rows[rid]
                    data: dict[str, Any] = {
                        "id": row.id,
                        "designation": row.designation,
                        "unit": row.unit,
                    }
                    for dim in FIELDS:
                        data[dim.value] = row.definition(dim).serialize()
                    entry["rows"].append(data)
            else:
                entry["children"] = []
            out[node_id] = entry
            if node.parent_id is not None:
                out[node.parent_id]["children"].append(entry)
        return {"version": SCHEMA_VERSION, "project": out[document.root_id]}

    # ------------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------------

    def submit(self, edit: Edit) -> EditOutcome:
        return self._scheduler.submit(edit)

    def request_edit(self, target_id: str, new_definition: RawDefinition) -> EditOutcome:
        """Set a row field (``#r1.L``) or variable (``P1/A``) definition."""
        return self.submit(SetDefinition(target_id, new_definition))

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call *listener* with every edit outcome; returns an unsubscribe function."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _on_outcome(self, outcome: EditOutcome) -> None:
        if isinstance(outcome, Committed) and not self._restoring:
            self._record_history()
        for listener in list(self._listeners):
            listener(outcome)

    # ------------------------------------------------------------------
    # Undo / redo
    # ------------------------------------------------------------------

    def _record_history(self) -> None:
        limit = self.settings.advanced.max_undo_steps
        if limit > 0:
            self._undo.append(self._snapshot)
            while len(self._undo) > limit:
                self._undo.popleft()
        self._redo.clear()
        self._snapshot = self.serialize_document()

    @property
    def can_undo(self) -> bool:
        return bool(self._undo)

    @property
    def can_redo(self) -> bool:
        return bool(self._redo)

    def undo(self) -> bool:
        """Restore the state before the last committed edit."""
        if not self._undo:
            return False
        self._redo.append(self._snapshot)
        self._restore(self._undo.pop())
        return True

    def redo(self) -> bool:
        if not self._redo:
            return False
        self._undo.append(self._snapshot)
        self._restore(self._redo.pop())
        return True

    def _restore(self, snapshot: dict[str, Any]) -> None:
        self._restoring = True
        try:
            self._load(snapshot)
        finally:
            self._restoring = False

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def get_computed(self, id: str) -> ComputedValue:
        """Last committed value of ``#row.F`` or ``scope/name``; empty if unknown."""
        return self._scheduler.get_computed(id)

    def get_total(self, node_id: str, dimension: Dimension | str) -> ComputedValue:
        return self._scheduler.aggregation.total(node_id, Dimension.parse(dimension))

    def totals(self, node_id: str) -> dict[Dimension, ComputedValue]:
        return {dim: self.get_total(node_id, dim) for dim in FIELDS}

    def format_value(self, cv: ComputedValue) -> str:
        """Display text: the rounded number, the error tag, or both when partial."""
        fmt = self.settings.format
        text = format_number(cv.value, fmt.decimal_places, fmt.decimal_separator)
        if cv.error is None:
            return text
        if cv.value is None:
            return cv.error.tag
        return f"{text} {cv.error.tag}"

    def display(self, id: str) -> str:
        return self.format_value(self.get_computed(id))

    def display_total(self, node_id: str, dimension: Dimension | str) -> str:
        return self.format_value(self.get_total(node_id, dimension))

    @property
    def units(self) -> list[str]:
        return list(self.settings.units.custom_units)
