# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""
Elimination ordering: variable key <-> dense integer index.

Indices are handed out in arrival order and are never reassigned, so the
index of a variable is also its position in the elimination order. New
variables therefore always land at the end of the order.
"""

from __future__ import annotations
from typing import Dict, Iterable, Iterator, List

from .types import Index, Key


class Ordering:
    """Append-only bijection between variable keys and indices."""

    def __init__(self, keys: Iterable[Key] = ()) -> None:
        self._index_of: Dict[Key, Index] = {}
        self._keys: List[Key] = []
        for key in keys:
            self.push_back(key)

    def push_back(self, key: Key) -> Index:
        if key in self._index_of:
            raise ValueError(f"Variable {key!r} is already ordered at index {self._index_of[key]}")
        j = Index(len(self._keys))
        self._index_of[key] = j
        self._keys.append(key)
        return j

    def key(self, j: int) -> Key:
        return self._keys[j]

    def indices(self, keys: Iterable[Key]) -> List[Index]:
        return [self._index_of[k] for k in keys]

    def __getitem__(self, key: Key) -> Index:
        return self._index_of[key]

    def __contains__(self, key: object) -> bool:
        return key in self._index_of

    def __len__(self) -> int:
        return len(self._keys)

    def __iter__(self) -> Iterator[Key]:
        return iter(self._keys)

    def __repr__(self) -> str:
        return "Ordering(" + ", ".join(f"{k!r}:{j}" for j, k in enumerate(self._keys)) + ")"
