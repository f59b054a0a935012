# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""
Permuted storage for the linear delta.

The delta holds, for every variable index, the tangent-space correction not
yet folded into the linearization point. Vectors live in a growable list of
physical slots and are reached through a logical-index -> slot permutation,
so adding variables appends a slot and reordering rewrites only the
permutation; no vector is ever moved.
"""

from __future__ import annotations
from typing import Iterator, List, Sequence

import jax.numpy as jnp


class PermutedDelta:
    """Per-variable delta vectors behind a logical -> physical permutation."""

    def __init__(self) -> None:
        self._slots: List[jnp.ndarray] = []
        self._perm: List[int] = []

    def push_back(self, dim: int) -> int:
        """Create a zero slot for a new variable and return its logical index."""
        self._slots.append(jnp.zeros((int(dim),)))
        self._perm.append(len(self._slots) - 1)
        return len(self._perm) - 1

    def permute(self, permutation: Sequence[int]) -> None:
        """
        Reorder logical indices without moving data.

        After the call, logical index ``i`` refers to what logical index
        ``permutation[i]`` referred to before.
        """
        if sorted(permutation) != list(range(len(self._perm))):
            raise ValueError(f"Not a permutation of {len(self._perm)} indices: {list(permutation)}")
        self._perm = [self._perm[p] for p in permutation]

    def slot(self, j: int) -> int:
        return self._perm[j]

    def dim(self, j: int) -> int:
        return int(self._slots[self._perm[j]].shape[0])

    def copy(self) -> "PermutedDelta":
        out = PermutedDelta()
        out._slots = list(self._slots)
        out._perm = list(self._perm)
        return out

    def max_abs(self, j: int) -> float:
        v = self[j]
        if v.shape[0] == 0:
            return 0.0
        return float(jnp.max(jnp.abs(v)))

    def __getitem__(self, j: int) -> jnp.ndarray:
        return self._slots[self._perm[j]]

    def __setitem__(self, j: int, value) -> None:
        value = jnp.asarray(value)
        slot = self._perm[j]
        if value.shape != self._slots[slot].shape:
            raise ValueError(f"Delta for index {j} must have shape {self._slots[slot].shape}, got {value.shape}")
        self._slots[slot] = value

    def __len__(self) -> int:
        return len(self._perm)

    def __iter__(self) -> Iterator[jnp.ndarray]:
        for j in range(len(self)):
            yield self[j]
