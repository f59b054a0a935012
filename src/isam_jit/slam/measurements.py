# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""
Residual models (measurement factors) for ISAM-JIT.

Each function implements a residual

    r(x; params) ∈ ℝᵏ

where ``x`` is the concatenation of the values of the factor's variables in
the order of ``factor.keys``. Factor types are bound to residuals with
`NonlinearFactorGraph.register_residual`, and the graph linearizes them by
differentiating with `jax.jacfwd`, so every residual here must be written in
`jax.numpy`.

Families
--------
1. Priors and Euclidean factors
    • `prior_residual`          r = x − target
    • `odom_residual`           r = (x_j − x_i) − measurement
    • `range_residual`          r = ‖p_j − p_i‖ − range   (nonlinear)

2. SE(3) factors on 6-vector poses
    • `odom_se3_geodesic_residual`
          r = relative_pose_se3(T_i, T_j) − measurement
    • `pose_landmark_relative_residual`
          landmark expressed in the pose frame minus the measurement

Weighting
---------
All residuals go through `_apply_weight`, so ``params["weight"]`` may be a
scalar information weight or a per-component square-root-information
vector. `sigma_to_weight` converts standard deviations to the scalar form.
"""

from __future__ import annotations
from typing import Dict

import jax.numpy as jnp

from isam_jit.core.math3d import pose_vec_to_rt, relative_pose_se3, so3_exp


def _apply_weight(residual: jnp.ndarray, params: dict, key: str = "weight") -> jnp.ndarray:
    """
    Optional weighting of residuals.

    If params[key] is:
      - missing: no change
      - scalar:  r' = sqrt(w) * r          (scalar weight)
      - vector:  r' = w * r                (per-component sqrt-info)
    """
    w = params.get(key, None)
    if w is None:
        return residual

    w = jnp.asarray(w)
    if w.ndim == 0:
        return jnp.sqrt(w) * residual
    return w * residual


def sigma_to_weight(sigma):
    """Standard deviation(s) -> information weight ``1 / sigma^2``."""
    s = jnp.asarray(sigma)
    return 1.0 / (s * s)


def prior_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    Prior on a single variable of any dimension:
        residual = x - target
    """
    r = x - jnp.asarray(params["target"])
    return _apply_weight(r, params)


def odom_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    Euclidean relative measurement between two equally sized variables:

        x = [x_i, x_j]
        residual = (x_j - x_i) - measurement
    """
    dim = x.shape[0] // 2
    r = (x[dim:] - x[:dim]) - jnp.asarray(params["measurement"])
    return _apply_weight(r, params)


def range_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    Distance between two points of equal dimension:

        residual = ||p_j - p_i|| - range

    Nonlinear in both points; its linearization changes as the points move,
    which makes it the usual test case for relinearization.
    """
    dim = x.shape[0] // 2
    diff = x[dim:] - x[:dim]
    dist = jnp.sqrt(jnp.sum(diff * diff) + 1e-12)
    r = jnp.reshape(dist - params["range"], (1,))
    return _apply_weight(r, params)


def odom_se3_geodesic_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    SE(3) relative pose constraint between two 6-vector poses:

        residual = relative_pose_se3(pose_i, pose_j) - measurement
    """
    assert x.shape[0] == 12, "odom_se3_geodesic_residual expects two 6D poses stacked."
    r = relative_pose_se3(x[:6], x[6:]) - jnp.asarray(params["measurement"])
    return _apply_weight(r, params)


def pose_landmark_relative_residual(x: jnp.ndarray, params: dict) -> jnp.ndarray:
    """
    Landmark position observed in the frame of a pose.

    x = [pose(6), landmark(3)]

        t, w = pose
        residual = so3_exp(w)^T (landmark - t) - measurement
    """
    t, w = pose_vec_to_rt(x[:6])
    r = so3_exp(w).T @ (x[6:9] - t) - jnp.asarray(params["measurement"])
    return _apply_weight(r, params)
