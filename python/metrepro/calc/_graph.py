"""Dependency graph between row fields and variables, with topological ordering."""

from __future__ import annotations

import heapq
from collections import deque
from collections.abc import Iterable, Mapping


class DependencyGraph:
    """Tracks "A reads B" edges between owners (row fields and variables).

    Ids are the canonical ``#row.F`` / ``scope/name`` strings.  Ordering ties
    are broken by ascending id so every recalculation runs in the same order.
    """

    __slots__ = ("dependencies", "dependents", "owners")

    def __init__(self) -> None:
        # owner -> set of ids it reads from
        self.dependencies: dict[str, set[str]] = {}
        # id -> set of owners that read from it (reverse edges)
        self.dependents: dict[str, set[str]] = {}
        # every id that is evaluated (row fields, variables)
        self.owners: set[str] = set()

    def record_edges(self, owner_id: str, read_ids: Iterable[str]) -> None:
        """Replace all outgoing edges of *owner_id*."""
        for old in self.dependencies.get(owner_id, set()):
            readers = self.dependents.get(old)
            if readers is not None:
                readers.discard(owner_id)
                if not readers:
                    del self.dependents[old]

        reads = set(read_ids)
        self.owners.add(owner_id)
        self.dependencies[owner_id] = reads
        for ref in reads:
            self.dependents.setdefault(ref, set()).add(owner_id)

    def remove_owner(self, owner_id: str) -> set[str]:
        """Drop *owner_id* with its outgoing and incoming edges.

        Returns the owners that were reading it.
        """
        self.record_edges(owner_id, ())
        del self.dependencies[owner_id]
        self.owners.discard(owner_id)
        readers = self.dependents.pop(owner_id, set())
        for reader in readers:
            self.dependencies[reader].discard(owner_id)
        return readers

    def reads(self, owner_id: str) -> set[str]:
        return set(self.dependencies.get(owner_id, ()))

    def readers(self, ref_id: str) -> set[str]:
        return set(self.dependents.get(ref_id, ()))

    # ------------------------------------------------------------------
    # Cycle detection (no mutation)
    # ------------------------------------------------------------------

    def cycle_check(self, owner_id: str, proposed_read_ids: Iterable[str]) -> bool:
        """True when giving *owner_id* these reads would close a cycle."""
        return self.find_cycle({owner_id: set(proposed_read_ids)}) is not None

    def find_cycle(self, proposals: Mapping[str, Iterable[str]]) -> list[str] | None:
        """Check several edge replacements at once against the current graph.

        Returns the members of one cycle in path order (``[a, b]`` for
        ``a -> b -> a``, ``[x]`` for a self-read), or None.  The committed
        graph is acyclic, so any new cycle passes through a proposal owner;
        the search starts from those only.
        """
        overlay = {owner: sorted(set(reads)) for owner, reads in proposals.items()}

        def reads_of(node: str) -> list[str]:
            if node in overlay:
                return overlay[node]
            return sorted(self.dependencies.get(node, ()))

        done: set[str] = set()
        for start in sorted(overlay):
            if start in done:
                continue
            # Iterative DFS; ``path`` mirrors the stack for cycle extraction
            path: list[str] = [start]
            on_path: set[str] = {start}
            stack = [iter(reads_of(start))]
            while stack:
                nxt = next(stack[-1], None)
                if nxt is None:
                    stack.pop()
                    finished = path.pop()
                    on_path.discard(finished)
                    done.add(finished)
                    continue
                if nxt in on_path:
                    return path[path.index(nxt) :]
                if nxt in done:
                    continue
                path.append(nxt)
                on_path.add(nxt)
                stack.append(iter(reads_of(nxt)))
        return None

    # ------------------------------------------------------------------
    # Ordering
    # ------------------------------------------------------------------

    def _kahn(self, nodes: set[str]) -> list[str]:
        """Order *nodes* so each comes after everything it reads within *nodes*."""
        in_degree: dict[str, int] = {}
        for node in nodes:
            in_degree[node] = len(self.dependencies.get(node, set()) & nodes)

        heap = [node for node, deg in in_degree.items() if deg == 0]
        heapq.heapify(heap)

        order: list[str] = []
        while heap:
            node = heapq.heappop(heap)
            order.append(node)
            for dep in self.dependents.get(node, ()):
                if dep in nodes:
                    in_degree[dep] -= 1
                    if in_degree[dep] == 0:
                        heapq.heappush(heap, dep)

        if len(order) != len(nodes):
            missing = sorted(nodes - set(order))
            raise ValueError(f"Circular reference detected involving: {missing}")
        return order

    def topological_order(self) -> list[str]:
        """Every owner in evaluation order (Kahn's algorithm).

        Raises ValueError if a circular reference is present.
        """
        return self._kahn(set(self.owners))

    def affected_closure(self, changed_ids: Iterable[str]) -> list[str]:
        """Changed owners plus every owner transitively reading them, in order."""
        changed = set(changed_ids)
        affected: set[str] = {c for c in changed if c in self.owners}
        queue: deque[str] = deque(changed)
        visited: set[str] = set(changed)

        while queue:
            ref = queue.popleft()
            for dep in self.dependents.get(ref, ()):
                if dep not in visited:
                    visited.add(dep)
                    queue.append(dep)
                    affected.add(dep)

        return self._kahn(affected)

    def max_depth(self, roots: set[str]) -> int:
        """Longest dependency chain from *roots* through their readers."""
        if not roots:
            return 0

        depth: dict[str, int] = {r: 0 for r in roots}
        for node in self.affected_closure(roots):
            if node in roots:
                continue
            depth[node] = 1 + max(
                (depth[r] for r in self.dependencies.get(node, ()) if r in depth),
                default=0,
            )
        return max(depth.values())
