# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""
Threshold-gated back-substitution ("wildfire" propagation).

After the top of the tree is rebuilt, the delta of its frontal variables is
recomputed from the new conditionals, root first. Below the rebuilt region
the conditionals are unchanged, so a clique there only needs recomputing
when one of its separator variables moved by at least the threshold. A
branch whose frontals all moved less than that is left with its stale delta.

With a threshold of 0 every clique reached is recomputed, which is the
ordinary full back-substitution used by `ISAM2.calculate_best_estimate`.
"""

from __future__ import annotations
from typing import Iterable, Set

import jax.numpy as jnp

from isam_jit.inference.bayes_tree import BayesTree
from isam_jit.linear.delta import PermutedDelta


def wildfire(
    tree: BayesTree,
    roots: Iterable[int],
    delta: PermutedDelta,
    threshold: float,
    rebuilt: Set[int],
) -> int:
    """
    Back-substitute into ``delta`` starting at ``roots``.

    Returns the number of variables whose delta was recomputed.
    """
    changed: Set[int] = set()
    count = 0
    stack = list(reversed(list(roots)))
    while stack:
        h = stack.pop()
        clique = tree[h]
        is_rebuilt = h in rebuilt
        if not is_rebuilt and not any(k in changed for k in clique.separator):
            continue

        solved = clique.conditional.solve({k: delta[k] for k in clique.separator})
        any_changed = False
        for k, value in solved.items():
            diff = float(jnp.max(jnp.abs(value - delta[k]))) if value.shape[0] else 0.0
            delta[k] = value
            if diff >= threshold:
                changed.add(k)
                any_changed = True
        count += len(solved)

        if is_rebuilt or any_changed:
            stack.extend(reversed(clique.children))
    return count


def back_substitute(tree: BayesTree, delta: PermutedDelta) -> int:
    """Full back-substitution over every clique of the tree."""
    return wildfire(tree, tree.roots, delta, 0.0, set(tree.handles()))
