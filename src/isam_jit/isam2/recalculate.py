# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""
Re-elimination of the affected region.

Given the region removed from the tree (see `isam2.affected`), this module
rebuilds it:

1. Linearize, at the current linearization point, every stored nonlinear
   factor whose variables are all affected. Factors that also touch an
   orphan's variables are already summarized by that orphan's cached
   boundary factor, so they are left alone.
2. Add the cached boundary factor of every orphan, recomputing it first if
   the orphan's cache has been invalidated.
3. Eliminate everything in index order (new variables come last) and insert
   the resulting conditionals into the tree as a new top.
4. Reattach each orphan under the clique that holds its first separator
   variable.

The cost is proportional to the size of the affected region, not the size
of the graph.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Set, Tuple

from loguru import logger

from isam_jit.core.factor_graph import NonlinearFactorGraph
from isam_jit.core.ordering import Ordering
from isam_jit.core.types import Values
from isam_jit.core.variable_index import VariableIndex
from isam_jit.errors import StructuralInconsistencyError
from isam_jit.inference.bayes_tree import BayesTree
from isam_jit.linear.gaussian import HessianFactor, combine, eliminate, eliminate_sequential

from .affected import AffectedRegion


@dataclass
class RecalculateOutcome:
    rebuilt: Set[int] = field(default_factory=set)   # handles of cliques created this call
    roots: List[int] = field(default_factory=list)   # rebuilt roots, where back-substitution starts
    n_factors: int = 0                               # linearized nonlinear factors
    nnz_top: int = 0


class Recalculator:
    """Rebuilds the top of the clique tree from stored factors and orphan caches."""

    def __init__(
        self,
        tree: BayesTree,
        graph: NonlinearFactorGraph,
        ordering: Ordering,
        variable_index: VariableIndex,
        factor_indices: Sequence[Tuple[int, ...]],
    ) -> None:
        self.tree = tree
        self.graph = graph
        self.ordering = ordering
        self.variable_index = variable_index
        self.factor_indices = factor_indices

    def affected_factors(self, keys: Set[int]) -> List[int]:
        """Positions of stored factors whose variables all lie in ``keys``."""
        candidates = self.variable_index.factors_touching(keys)
        return sorted(p for p in candidates if keys.issuperset(self.factor_indices[p]))

    def boundary_factor(self, handle: int, theta: Values) -> Optional[HessianFactor]:
        """
        Cached boundary factor of a clique, recomputed when the cache is stale.

        A clique absorbs the stored factors whose earliest variable is one of
        its frontals; together with its children's boundary factors they are
        eliminated over the frontals, and the remainder on the separator is
        the boundary factor.
        """
        clique = self.tree[handle]
        if clique.cache_valid:
            return clique.cached_factor

        frontals = set(clique.frontals)
        positions = sorted(
            p
            for p in self.variable_index.factors_touching(frontals)
            if min(self.factor_indices[p]) in frontals
        )
        parts = list(self.graph.linearize(theta, self.ordering, positions))
        for child in clique.children:
            cached = self.boundary_factor(child, theta)
            if cached is not None:
                parts.append(cached)

        keys = clique.frontals + clique.separator
        joint = combine(parts, keys, self.variable_index.dims)
        _, remainder = eliminate(joint, len(clique.frontals))
        logger.debug("Recomputed boundary factor of clique {} from {} factors", handle, len(parts))
        clique.set_cached_factor(remainder)
        return remainder

    def __call__(self, region: AffectedRegion, theta: Values) -> RecalculateOutcome:
        outcome = RecalculateOutcome()
        if not region.keys:
            return outcome

        positions = self.affected_factors(region.keys)
        factors = list(self.graph.linearize(theta, self.ordering, positions))
        outcome.n_factors = len(positions)

        for o in region.orphans:
            cached = self.boundary_factor(o, theta)
            if cached is None:
                raise StructuralInconsistencyError(f"Orphan clique {o} has no separator to reattach on")
            factors.append(cached)

        order = sorted(region.keys)
        elim = eliminate_sequential(factors, order, self.variable_index.dims)
        created = self.tree.insert_eliminated(elim)
        outcome.rebuilt = set(created)
        outcome.roots = [h for h in created if self.tree[h].parent is None]
        outcome.nnz_top = self.tree.nnz(created)

        for o in region.orphans:
            separator = self.tree[o].separator
            parent = self.tree.clique_of(min(separator))
            if parent is None:
                raise StructuralInconsistencyError(
                    f"Separator variable {min(separator)} of orphan clique {o} is missing from the rebuilt region"
                )
            self.tree.attach(o, parent)

        logger.debug(
            "Re-eliminated {} variables from {} factors and {} orphan summaries into {} cliques",
            len(order),
            len(positions),
            len(region.orphans),
            len(created),
        )
        return outcome
