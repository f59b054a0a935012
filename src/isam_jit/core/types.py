# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""
Core typed data structures for ISAM-JIT.

This module defines the lightweight containers shared by the nonlinear
factor store, the elimination machinery and the incremental solver. As in
the rest of the engine, these types only hold structure and values; all
numerical work happens in `linear.gaussian` and `core.factor_graph`.

Classes
-------
NonlinearFactor
    A constraint between one or more variables. A factor contains:
    - type: String key selecting a registered residual function
    - keys: Ordered tuple of variable keys used by the residual
    - params: Dictionary passed to the residual (measurements, weights, ...)

Values
    Mapping from variable key to its value (a 1-D JAX array) together with
    the variable type, which selects the manifold used for retraction.

Notes
-----
Variable *keys* are opaque hashables chosen by the caller (integers or
strings such as ``"x1"``). Variable *indices* are dense integers assigned by
:class:`core.ordering.Ordering` when a key first appears; they double as the
elimination order.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Hashable, Iterator, NewType, Tuple

import jax.numpy as jnp

Key = Hashable
Index = NewType("Index", int)
FactorId = NewType("FactorId", int)


def _as_vector(value) -> jnp.ndarray:
    return jnp.atleast_1d(jnp.asarray(value, dtype=jnp.result_type(float)))


@dataclass(frozen=True)
class NonlinearFactor:
    """Immutable nonlinear constraint over a fixed set of variable keys."""
    type: str          # e.g. "prior", "odom", "odom_se3_geodesic"
    keys: Tuple[Key, ...]
    params: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self) -> None:
        if len(self.keys) == 0:
            raise ValueError(f"Factor of type '{self.type}' must involve at least one variable")
        if len(set(self.keys)) != len(self.keys):
            raise ValueError(f"Factor of type '{self.type}' repeats a variable: {self.keys}")


class Values:
    """
    Variable values keyed by variable key.

    Every entry stores a flat JAX array and a variable type string. The type
    is looked up in `slam.manifold.TYPE_TO_MANIFOLD` to decide how a tangent
    update is applied ("pose_se3" -> SE(3) retraction, anything else ->
    vector addition).
    """

    def __init__(self) -> None:
        self._values: Dict[Key, jnp.ndarray] = {}
        self._types: Dict[Key, str] = {}

    def insert(self, key: Key, value, var_type: str = "euclidean") -> None:
        if key in self._values:
            raise ValueError(f"Variable {key!r} already has a value")
        self._values[key] = _as_vector(value)
        self._types[key] = var_type

    def update(self, key: Key, value) -> None:
        """Overwrite the value of an existing variable, keeping its type."""
        if key not in self._values:
            raise KeyError(key)
        self._values[key] = _as_vector(value)

    def var_type(self, key: Key) -> str:
        return self._types[key]

    def dim(self, key: Key) -> int:
        return int(self._values[key].shape[0])

    def copy(self) -> "Values":
        out = Values()
        out._values = dict(self._values)
        out._types = dict(self._types)
        return out

    def keys(self):
        return self._values.keys()

    def items(self):
        return self._values.items()

    def __getitem__(self, key: Key) -> jnp.ndarray:
        return self._values[key]

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __iter__(self) -> Iterator[Key]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        body = ", ".join(f"{k!r}: {v.tolist()}" for k, v in self._values.items())
        return f"Values({{{body}}})"
