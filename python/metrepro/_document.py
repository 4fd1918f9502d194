"""Document arena: the folder/poste tree and the rows of each poste table.

Nodes live in one ``dict`` keyed by id; a node knows its parent by id and
owns the ordered ids of its children (project/folder) or rows (poste).
Variables are kept by the VariableRegistry, scoped to node ids.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum

from metrepro._utils import generate_id, is_valid_id
from metrepro.calc._parser import EMPTY_DEFINITION, Definition, cell_key
from metrepro.calc._values import (
    FIELDS,
    Dimension,
    DuplicateNameError,
    InvalidEditError,
    NotFoundError,
)


class NodeType(str, Enum):
    PROJECT = "project"
    FOLDER = "folder"
    POSTE = "poste"


@dataclass
class Node:
    id: str
    type: NodeType
    name: str = ""
    parent_id: str | None = None
    children: list[str] = field(default_factory=list)
    rows: list[str] = field(default_factory=list)

    @property
    def is_poste(self) -> bool:
        return self.type is NodeType.POSTE


@dataclass
class Row:
    id: str
    poste_id: str
    designation: str = ""
    unit: str | None = None
    fields: dict[Dimension, Definition] = field(default_factory=dict)

    def definition(self, dim: Dimension) -> Definition:
        return self.fields.get(dim, EMPTY_DEFINITION)

    def keys(self) -> list[str]:
        return [cell_key(self.id, dim) for dim in FIELDS]


@dataclass
class DetachedSubtree:
    """A removed subtree, kept so the removal can be rolled back."""

    root_id: str
    parent_id: str
    index: int
    nodes: dict[str, Node]
    rows: dict[str, Row]


class Document:
    """The single document instance: project root, folders, postes and rows."""

    def __init__(self, root_id: str = "project", name: str = "") -> None:
        if not is_valid_id(root_id):
            raise InvalidEditError(f"Invalid node id {root_id!r}", root_id)
        self.root_id = root_id
        self.nodes: dict[str, Node] = {root_id: Node(root_id, NodeType.PROJECT, name)}
        self.rows: dict[str, Row] = {}

    @property
    def root(self) -> Node:
        return self.nodes[self.root_id]

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def node(self, node_id: str) -> Node:
        try:
            return self.nodes[node_id]
        except KeyError:
            raise NotFoundError(f"Node {node_id!r} does not exist", node_id) from None

    def row(self, row_id: str) -> Row:
        try:
            return self.rows[row_id]
        except KeyError:
            raise NotFoundError(f"Row {row_id!r} does not exist", row_id) from None

    def poste(self, node_id: str) -> Node:
        node = self.node(node_id)
        if not node.is_poste:
            raise InvalidEditError(f"Node {node_id!r} is not a poste", node_id)
        return node

    def ancestors(self, node_id: str) -> Iterator[str]:
        """Yield *node_id* then each parent up to the project root."""
        current: str | None = node_id
        while current is not None:
            yield current
            current = self.nodes[current].parent_id

    def depth(self, node_id: str) -> int:
        return sum(1 for _ in self.ancestors(node_id)) - 1

    def subtree(self, node_id: str) -> list[str]:
        """Node ids of the subtree rooted at *node_id*, pre-order."""
        order: list[str] = []
        stack = [node_id]
        while stack:
            current = stack.pop()
            order.append(current)
            stack.extend(reversed(self.nodes[current].children))
        return order

    def postorder(self, node_id: str | None = None) -> list[str]:
        """Children before parents, siblings in table order."""
        return list(reversed(self._reverse_preorder(node_id or self.root_id)))

    def _reverse_preorder(self, node_id: str) -> list[str]:
        order: list[str] = []
        stack = [node_id]
        while stack:
            current = stack.pop()
            order.append(current)
            stack.extend(self.nodes[current].children)
        return order

    def rows_between(self, start_row_id: str, end_row_id: str) -> list[Row] | None:
        """Rows from *start* to *end* inclusive, in table order, or None.

        None when either row is missing or they belong to different postes.
        The ends may be given in either order.
        """
        start = self.rows.get(start_row_id)
        end = self.rows.get(end_row_id)
        if start is None or end is None or start.poste_id != end.poste_id:
            return None
        order = self.nodes[start.poste_id].rows
        i, j = order.index(start.id), order.index(end.id)
        if i > j:
            i, j = j, i
        return [self.rows[r] for r in order[i : j + 1]]

    # ------------------------------------------------------------------
    # Structure edits (called by the scheduler only)
    # ------------------------------------------------------------------

    def add_node(
        self,
        parent_id: str,
        node_type: NodeType | str,
        name: str = "",
        node_id: str | None = None,
        position: int | None = None,
    ) -> Node:
        node_type = NodeType(node_type)
        if node_type is NodeType.PROJECT:
            raise InvalidEditError("A document has exactly one project node", node_id)
        parent = self.node(parent_id)
        if parent.is_poste:
            raise InvalidEditError(f"Poste {parent_id!r} cannot contain nodes", parent_id)
        node_id = node_id or generate_id()
        self._check_new_id(node_id)
        node = Node(node_id, node_type, name, parent_id)
        self.nodes[node_id] = node
        _insert(parent.children, node_id, position)
        return node

    def remove_subtree(self, node_id: str) -> DetachedSubtree:
        if node_id == self.root_id:
            raise InvalidEditError("The project node cannot be removed", node_id)
        node = self.node(node_id)
        assert node.parent_id is not None
        parent = self.nodes[node.parent_id]
        index = parent.children.index(node_id)
        parent.children.pop(index)
        nodes: dict[str, Node] = {}
        rows: dict[str, Row] = {}
        for nid in self.subtree(node_id):
            removed = self.nodes.pop(nid)
            nodes[nid] = removed
            for rid in removed.rows:
                rows[rid] = self.rows.pop(rid)
        return DetachedSubtree(node_id, parent.id, index, nodes, rows)

    def restore_subtree(self, detached: DetachedSubtree) -> None:
        self.nodes.update(detached.nodes)
        self.rows.update(detached.rows)
        self.nodes[detached.parent_id].children.insert(detached.index, detached.root_id)

    def move_node(self, node_id: str, new_parent_id: str, position: int | None = None) -> tuple[str, int]:
        """Re-parent a node; returns ``(old_parent_id, old_index)``."""
        if node_id == self.root_id:
            raise InvalidEditError("The project node cannot be moved", node_id)
        node = self.node(node_id)
        new_parent = self.node(new_parent_id)
        if new_parent.is_poste:
            raise InvalidEditError(f"Poste {new_parent_id!r} cannot contain nodes", new_parent_id)
        if node_id in self.ancestors(new_parent_id):
            raise InvalidEditError(f"Cannot move {node_id!r} into its own subtree", node_id)
        assert node.parent_id is not None
        old_parent = self.nodes[node.parent_id]
        old_index = old_parent.children.index(node_id)
        old_parent.children.pop(old_index)
        _insert(new_parent.children, node_id, position)
        node.parent_id = new_parent_id
        return old_parent.id, old_index

    def add_row(
        self,
        poste_id: str,
        row_id: str | None = None,
        position: int | None = None,
        designation: str = "",
        unit: str | None = None,
        fields: dict[Dimension, Definition] | None = None,
    ) -> Row:
        poste = self.poste(poste_id)
        row_id = row_id or generate_id("row")
        if not is_valid_id(row_id):
            raise InvalidEditError(f"Invalid row id {row_id!r}", row_id)
        if row_id in self.rows:
            raise DuplicateNameError(f"Row {row_id!r} already exists", row_id)
        row = Row(row_id, poste_id, designation, unit, dict(fields or {}))
        self.rows[row_id] = row
        _insert(poste.rows, row_id, position)
        return row

    def remove_row(self, row_id: str) -> tuple[Row, int]:
        row = self.row(row_id)
        order = self.nodes[row.poste_id].rows
        index = order.index(row_id)
        order.pop(index)
        del self.rows[row_id]
        return row, index

    def restore_row(self, row: Row, index: int) -> None:
        self.rows[row.id] = row
        self.nodes[row.poste_id].rows.insert(index, row.id)

    def move_row(self, row_id: str, position: int) -> int:
        row = self.row(row_id)
        order = self.nodes[row.poste_id].rows
        old_index = order.index(row_id)
        order.pop(old_index)
        _insert(order, row_id, position)
        return old_index

    def _check_new_id(self, node_id: str) -> None:
        if not is_valid_id(node_id):
            raise InvalidEditError(f"Invalid node id {node_id!r}", node_id)
        if node_id in self.nodes:
            raise DuplicateNameError(f"Node {node_id!r} already exists", node_id)

    def __repr__(self) -> str:
        return f"<Document root={self.root_id!r} nodes={len(self.nodes)} rows={len(self.rows)}>"


def _insert(items: list[str], item: str, position: int | None) -> None:
    if position is None or position >= len(items):
        items.append(item)
    else:
        items.insert(max(position, 0), item)
