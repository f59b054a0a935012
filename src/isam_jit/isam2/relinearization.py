# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""
Selection of variables to relinearize.

The policy owns the update-call counter. Every call increments it first; a
call is *eligible* when the counter is a multiple of ``relinearize_skip`` or
relinearization is forced, and relinearization is enabled at all. On an
eligible call every existing variable whose delta exceeds the threshold in
infinity norm is selected (a threshold <= 0 selects all of them). Variables
introduced by the current call have no delta yet and are never selected.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable, Sequence, Set

from loguru import logger

from isam_jit.core.variable_index import VariableIndex
from isam_jit.linear.delta import PermutedDelta

from .params import ISAM2Params


@dataclass
class RelinearizationPolicy:
    params: ISAM2Params
    update_count: int = 0

    def tick(self, force: bool = False) -> bool:
        """Advance the call counter and report whether this call may relinearize."""
        self.update_count += 1
        if not self.params.enable_relinearization:
            return False
        return force or self.update_count % self.params.relinearize_skip == 0

    def select(self, delta: PermutedDelta, n_existing: int) -> Set[int]:
        threshold = self.params.relinearize_threshold
        if threshold <= 0.0:
            return set(range(n_existing))
        return {j for j in range(n_existing) if delta.max_abs(j) > threshold}

    def __call__(self, delta: PermutedDelta, n_existing: int, force: bool = False) -> Set[int]:
        if not self.tick(force):
            return set()
        selected = self.select(delta, n_existing)
        logger.debug(
            "Relinearization round {}: {} of {} variables above threshold {}",
            self.update_count,
            len(selected),
            n_existing,
            self.params.relinearize_threshold,
        )
        return selected


def expand_involved(
    selected: Iterable[int],
    variable_index: VariableIndex,
    factor_indices: Sequence[Sequence[int]],
) -> Set[int]:
    """
    Add every variable that shares a factor with a selected variable.

    ``factor_indices[p]`` holds the variable indices of the stored factor at
    position ``p``.
    """
    selected = set(selected)
    involved = set(selected)
    for position in variable_index.factors_touching(selected):
        involved.update(factor_indices[position])
    return involved
