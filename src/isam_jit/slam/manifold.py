# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""
Manifold utilities: composing a linearization point with a tangent update.

The incremental solver never touches variable values directly; it keeps a
linearization point ``theta`` and a tangent-space correction ``delta`` per
variable and asks this module to combine them:

    value = retract(theta, delta)

Variable types map to a manifold model through `TYPE_TO_MANIFOLD`:

    • "se3"        -> `core.math3d.se3_retract_left` on 6-vector poses
    • "euclidean"  -> plain vector addition

Unknown variable types fall back to Euclidean. To support another manifold,
add an entry to `TYPE_TO_MANIFOLD` and a branch to :func:`retract`; the
linearization in `core.factor_graph` differentiates through this function,
so the new branch must be written in `jax.numpy`.
"""

from __future__ import annotations

from typing import Dict, Mapping

import jax.numpy as jnp

from isam_jit.core.math3d import se3_retract_left
from isam_jit.core.types import Key, Values

TYPE_TO_MANIFOLD: Dict[str, str] = {
    "pose_se3": "se3",
    "euclidean": "euclidean",
    "pose1d": "euclidean",
    "landmark3d": "euclidean",
    "point2": "euclidean",
}


def get_manifold_for_var_type(var_type: str) -> str:
    return TYPE_TO_MANIFOLD.get(var_type, "euclidean")


def retract(manifold: str, value: jnp.ndarray, delta: jnp.ndarray) -> jnp.ndarray:
    """Apply the tangent update ``delta`` to ``value`` on ``manifold``."""
    if manifold == "se3":
        return se3_retract_left(value, delta)
    return value + delta


def retract_values(values: Values, deltas: Mapping[Key, jnp.ndarray]) -> Values:
    """
    Return a copy of ``values`` with ``deltas[key]`` applied to each listed key.

    Keys absent from ``deltas`` are copied unchanged.
    """
    out = values.copy()
    for key, d in deltas.items():
        manifold = get_manifold_for_var_type(values.var_type(key))
        out.update(key, retract(manifold, values[key], d))
    return out
