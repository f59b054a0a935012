# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""
Variable index: variable index -> positions of the factors that involve it.

The index is grown incrementally as factors arrive; since factors are never
removed, each list is append-only and stays sorted by factor position. It
also records the tangent dimension of every variable, which the delta store
and the elimination primitive need.
"""

from __future__ import annotations
from typing import Iterable, List, Sequence, Set

from .types import FactorId, Index


class VariableIndex:
    """Per-variable lists of involved factor positions."""

    def __init__(self) -> None:
        self._factors: List[List[FactorId]] = []
        self.dims: List[int] = []
        self.n_factors = 0

    def add_variable(self, dim: int) -> Index:
        self._factors.append([])
        self.dims.append(int(dim))
        return Index(len(self._factors) - 1)

    def augment(self, factor_indices: Sequence[Sequence[int]], start: int) -> None:
        """
        Register factors whose positions start at ``start``.

        ``factor_indices[i]`` holds the variable indices of the factor stored
        at position ``start + i``.
        """
        if start != self.n_factors:
            raise ValueError(f"Factors must be appended in order: expected position {self.n_factors}, got {start}")
        for offset, indices in enumerate(factor_indices):
            fid = FactorId(start + offset)
            for j in indices:
                if j >= len(self._factors):
                    raise ValueError(f"Factor {fid} references unknown variable index {j}")
                self._factors[j].append(fid)
        self.n_factors += len(factor_indices)

    def factors_of(self, j: int) -> List[FactorId]:
        return self._factors[j]

    def factors_touching(self, indices: Iterable[int]) -> Set[FactorId]:
        out: Set[FactorId] = set()
        for j in indices:
            out.update(self._factors[j])
        return out

    def __len__(self) -> int:
        return len(self._factors)
