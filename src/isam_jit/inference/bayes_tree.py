# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""
Clique tree (Bayes tree) stored as an arena of clique records.

Each clique holds a `GaussianConditional` p(δ_F | δ_S) over its frontal
variables F given its separator S. Cliques refer to each other through
integer handles into the arena, never through object references:

    Clique.parent    handle of the parent clique (None for a root)
    Clique.children  handles of the child cliques

Removing a clique invalidates its handle; whoever removes it is responsible
for re-parenting or removing its children in the same pass (see
`isam2.affected`). The tree may be a forest when the factor graph has
several connected components, so roots are kept as a list.

Every clique also carries the *cached boundary factor*: the HessianFactor on
its separator left over when its frontals were eliminated together with
everything below it. When the clique later becomes an orphan, this cache is
what stands in for the whole subtree during re-elimination.

Invariants (checked by `check_invariants`)
------------------------------------------
- frontal sets of all cliques partition the variables in the tree;
- separator variables come later in the elimination order than the
  frontals and are all variables of the parent clique;
- parent/child links agree and contain no cycles.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

from isam_jit.errors import StructuralInconsistencyError
from isam_jit.linear.gaussian import GaussianConditional, HessianFactor, SequentialElimination


@dataclass
class Clique:
    handle: int
    conditional: GaussianConditional
    parent: Optional[int] = None
    children: List[int] = field(default_factory=list)
    cached_factor: Optional[HessianFactor] = None
    cache_valid: bool = False

    @property
    def frontals(self):
        return self.conditional.frontals

    @property
    def separator(self):
        return self.conditional.parents

    def set_cached_factor(self, factor: Optional[HessianFactor]) -> None:
        self.cached_factor = factor
        self.cache_valid = True

    def invalidate_cache(self) -> None:
        """
        Drop the cached boundary factor so the next update recomputes it.

        ``ISAM2.update`` never needs this: a clique that survives an update
        has no marked variable in its subtree, and every factor touching a
        relinearized variable has all of its variables marked, so the factors
        a surviving clique summarizes keep their linearization point.
        """
        self.cached_factor = None
        self.cache_valid = False


class BayesTree:
    """Arena of cliques indexed by integer handle."""

    def __init__(self) -> None:
        self._cliques: Dict[int, Clique] = {}
        self._clique_of: Dict[int, int] = {}
        self._next_handle = 0
        self.roots: List[int] = []

    # ------------------------------------------------------------------
    # Arena access
    # ------------------------------------------------------------------

    def __getitem__(self, handle: int) -> Clique:
        try:
            return self._cliques[handle]
        except KeyError:
            raise KeyError(f"Clique handle {handle} is not live") from None

    def __contains__(self, handle: object) -> bool:
        return handle in self._cliques

    def __len__(self) -> int:
        return len(self._cliques)

    def handles(self) -> List[int]:
        return list(self._cliques)

    def clique_of(self, j: int) -> Optional[int]:
        """Handle of the clique holding variable index ``j`` as a frontal."""
        return self._clique_of.get(j)

    # ------------------------------------------------------------------
    # Structural edits
    # ------------------------------------------------------------------

    def add_clique(self, conditional: GaussianConditional, parent: Optional[int] = None) -> int:
        handle = self._next_handle
        self._next_handle += 1
        self._cliques[handle] = Clique(handle=handle, conditional=conditional)
        for j in conditional.frontals:
            if j in self._clique_of:
                raise StructuralInconsistencyError(
                    f"Variable index {j} is already frontal in clique {self._clique_of[j]}"
                )
            self._clique_of[j] = handle
        self.attach(handle, parent)
        return handle

    def attach(self, handle: int, parent: Optional[int]) -> None:
        clique = self[handle]
        clique.parent = parent
        if parent is None:
            self.roots.append(handle)
        else:
            self[parent].children.append(handle)

    def remove_clique(self, handle: int) -> Clique:
        """
        Delete a clique from the arena and return its record.

        Links from the parent and from the children are left for the caller
        to rewire in the same pass.
        """
        clique = self._cliques.pop(handle)
        for j in clique.frontals:
            del self._clique_of[j]
        return clique

    def merge_into(self, handle: int, conditional: GaussianConditional) -> None:
        """Prepend a single-variable conditional to the clique as an extra frontal."""
        clique = self[handle]
        clique.conditional = clique.conditional.prepend(conditional)
        for j in conditional.frontals:
            self._clique_of[j] = handle

    def insert_eliminated(self, elim: SequentialElimination) -> List[int]:
        """
        Assemble conditionals from a sequential elimination into new cliques.

        Conditionals are visited last-eliminated first. A conditional whose
        parents are exactly the variables of its parent clique is merged into
        that clique; otherwise it starts a new child clique. The parent
        clique is the one holding the earliest-eliminated parent variable.
        New cliques receive the remainder of their last frontal as cached
        boundary factor. Returns the handles of all cliques created.
        """
        position = {j: p for p, j in enumerate(elim.order)}
        created: List[int] = []
        for j in reversed(elim.order):
            conditional = elim.conditionals[j]
            if not conditional.parents:
                handle = self.add_clique(conditional)
            else:
                first = min(conditional.parents, key=position.__getitem__)
                parent = self.clique_of(first)
                if parent is None:
                    raise StructuralInconsistencyError(
                        f"Parent variable {first} of {j} was not eliminated in this pass"
                    )
                if set(conditional.parents) == set(self[parent].conditional.keys):
                    self.merge_into(parent, conditional)
                    continue
                handle = self.add_clique(conditional, parent)
            self[handle].set_cached_factor(elim.remainders[j])
            created.append(handle)
        return created

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    def subtree(self, handle: int) -> Iterator[int]:
        """Pre-order traversal of the subtree rooted at ``handle``."""
        stack = [handle]
        while stack:
            h = stack.pop()
            yield h
            stack.extend(reversed(self[h].children))

    def __iter__(self) -> Iterator[int]:
        for root in list(self.roots):
            yield from self.subtree(root)

    def nnz(self, handles=None) -> int:
        if handles is None:
            handles = self._cliques
        return sum(self[h].conditional.nnz() for h in handles)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def check_invariants(self) -> None:
        seen_cliques = set()
        seen_vars = set()
        for root in self.roots:
            if self[root].parent is not None:
                raise StructuralInconsistencyError(f"Root clique {root} has parent {self[root].parent}")
            for h in self.subtree(root):
                if h in seen_cliques:
                    raise StructuralInconsistencyError(f"Clique {h} reached twice")
                seen_cliques.add(h)
                clique = self[h]
                for j in clique.frontals:
                    if j in seen_vars:
                        raise StructuralInconsistencyError(f"Variable index {j} is frontal twice")
                    seen_vars.add(j)
                if clique.separator and min(clique.separator) <= max(clique.frontals):
                    raise StructuralInconsistencyError(
                        f"Clique {h}: separator {clique.separator} not after frontals {clique.frontals}"
                    )
                for c in clique.children:
                    if self[c].parent != h:
                        raise StructuralInconsistencyError(f"Clique {c} does not point back to parent {h}")
                if clique.parent is not None:
                    parent_keys = set(self[clique.parent].conditional.keys)
                    if not set(clique.separator) <= parent_keys:
                        raise StructuralInconsistencyError(
                            f"Clique {h}: separator {clique.separator} not covered by parent {clique.parent}"
                        )
                elif clique.separator:
                    raise StructuralInconsistencyError(f"Root clique {h} has separator {clique.separator}")
        if seen_cliques != set(self._cliques):
            raise StructuralInconsistencyError(
                f"Unreachable cliques: {sorted(set(self._cliques) - seen_cliques)}"
            )
        if seen_vars != set(self._clique_of):
            raise StructuralInconsistencyError("Variable -> clique map out of sync with tree")
