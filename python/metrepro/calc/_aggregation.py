"""Aggregation tree: L/S/V totals rolled up from poste rows to the project."""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING

from metrepro.calc._parser import cell_key
from metrepro.calc._values import FIELDS, CalcError, ComputedValue, Dimension, ErrorKind

if TYPE_CHECKING:
    from metrepro._document import Document
    from metrepro.calc._evaluator import ValueLookup

logger = logging.getLogger(__name__)

Totals = dict[Dimension, ComputedValue]


def combine(contributions: Iterable[tuple[str, ComputedValue]], dim: Dimension) -> ComputedValue:
    """Sum contributions of one dimension.

    Empty contributions are ignored.  If every remaining one failed the total
    fails with the first failure; a mix gives the sum of the successes tagged
    ``PartialFailure``, naming the failing sources.  A partial contribution
    counts as a success for its value but keeps the total partial.
    """
    successes: list[float] = []
    failures: list[tuple[str, CalcError]] = []
    incomplete: list[str] = []
    for source, cv in contributions:
        if cv.is_empty:
            continue
        if cv.is_partial:
            assert cv.value is not None
            successes.append(cv.value)
            incomplete.append(source)
        elif cv.is_failed:
            assert cv.error is not None
            failures.append((source, cv.error))
        elif cv.value is not None:
            successes.append(cv.value)

    if not successes and not failures:
        return ComputedValue.empty(dim)
    if not successes:
        return ComputedValue.failed(failures[0][1], dim)
    total = math.fsum(successes)
    if not failures and not incomplete:
        return ComputedValue(value=total, kind=dim)
    failing = [source for source, _ in failures] + incomplete
    return ComputedValue(
        value=total,
        kind=dim,
        error=CalcError(
            ErrorKind.PARTIAL_FAILURE,
            ", ".join(failing),
            f"{len(failing)} of {len(successes) + len(failures)} contributions incomplete",
        ),
    )


class AggregationTree:
    """Owns the committed totals of every node.

    Recalculation writes into a staging dict (``recompute_upward`` /
    ``recompute_all``) and ``commit`` swaps it in, so readers of ``totals``
    only ever see a complete pass.
    """

    def __init__(self, document: Document, lookup: ValueLookup) -> None:
        self._document = document
        self._lookup = lookup
        self.totals: dict[str, Totals] = {}

    def total(self, node_id: str, dim: Dimension) -> ComputedValue:
        return self.totals.get(node_id, {}).get(dim, ComputedValue.empty(dim))

    def recompute_totals(self, node_id: str, staged: Mapping[str, Totals] | None = None) -> Totals:
        """Totals of one node from its rows (poste) or its children's totals.

        Children totals are read from *staged* first, then from the committed
        totals; callers must have recomputed the children of this pass.
        """
        node = self._document.nodes[node_id]
        staged = staged or {}
        result: Totals = {}
        for dim in FIELDS:
            if node.is_poste:
                parts = [
                    (cell_key(rid, dim), self._lookup(cell_key(rid, dim))) for rid in node.rows
                ]
            else:
                parts = []
                for child in node.children:
                    child_totals = staged.get(child) or self.totals.get(child) or {}
                    parts.append((child, child_totals.get(dim, ComputedValue.empty(dim))))
            result[dim] = combine(parts, dim)
        return result

    def recompute_upward(self, node_ids: Iterable[str]) -> dict[str, Totals]:
        """Recompute *node_ids* and all their ancestors, deepest first."""
        pending: set[str] = set()
        for node_id in node_ids:
            if node_id in self._document.nodes:
                pending.update(self._document.ancestors(node_id))
        worklist = sorted(pending, key=lambda nid: (-self._document.depth(nid), nid))
        staged: dict[str, Totals] = {}
        for node_id in worklist:
            staged[node_id] = self.recompute_totals(node_id, staged)
        logger.debug("Recomputed totals of %d node(s)", len(staged))
        return staged

    def recompute_all(self) -> dict[str, Totals]:
        staged: dict[str, Totals] = {}
        for node_id in self._document.postorder():
            staged[node_id] = self.recompute_totals(node_id, staged)
        return staged

    def commit(self, staged: Mapping[str, Totals], removed: Iterable[str] = (), replace: bool = False) -> None:
        base = {} if replace else dict(self.totals)
        for node_id in removed:
            base.pop(node_id, None)
        base.update(staged)
        self.totals = base
