# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""
Affected-region search: which part of the clique tree an update invalidates.

A change to a variable can alter every conditional on the path from its
clique to the root, because each of those cliques is conditioned (through
separators) on what lies above it. So starting from the clique of every
marked variable we walk up to the root and remove each clique met on the
way. The remaining children of removed cliques become *orphans*: their
subtrees are detached with their conditionals and cached boundary factors
untouched, to be reattached once the top is rebuilt.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Iterable, List, Set

from loguru import logger

from isam_jit.errors import StructuralInconsistencyError
from isam_jit.inference.bayes_tree import BayesTree, Clique


@dataclass
class AffectedRegion:
    keys: Set[int] = field(default_factory=set)        # variable indices to re-eliminate
    orphans: List[int] = field(default_factory=list)   # detached subtree roots (clique handles)
    removed: List[Clique] = field(default_factory=list)


def remove_top(tree: BayesTree, indices: Iterable[int]) -> AffectedRegion:
    """
    Remove every clique on the path from each index's clique to its root.

    Returns the removed clique records and the handles of the orphaned
    children, which are left detached (no parent, not in the root list).
    """
    doomed: Set[int] = set()
    for j in sorted(indices):
        h = tree.clique_of(j)
        if h is None:
            raise StructuralInconsistencyError(f"Variable index {j} has no clique in the tree")
        while h is not None and h not in doomed:
            doomed.add(h)
            h = tree[h].parent

    region = AffectedRegion()
    orphans: Set[int] = set()
    for h in doomed:
        for c in tree[h].children:
            if c not in doomed:
                orphans.add(c)
    for o in sorted(orphans):
        tree[o].parent = None
        region.orphans.append(o)

    tree.roots = [r for r in tree.roots if r not in doomed]
    for h in sorted(doomed):
        clique = tree.remove_clique(h)
        region.removed.append(clique)
        region.keys.update(clique.frontals)
    return region


def find_affected_region(tree: BayesTree, marked: Iterable[int], new_indices: Iterable[int]) -> AffectedRegion:
    """
    Remove the top of ``tree`` invalidated by ``marked`` and return the region.

    Newly introduced indices have no clique yet; they join the affected keys
    directly.
    """
    new_indices = set(new_indices)
    existing = set(marked) - new_indices
    region = remove_top(tree, existing)
    region.keys.update(new_indices)
    logger.debug(
        "Affected region: {} marked existing, {} new, {} cliques removed, {} orphans",
        len(existing),
        len(new_indices),
        len(region.removed),
        len(region.orphans),
    )
    return region
