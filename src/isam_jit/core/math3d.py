# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""
SO(3) / SE(3) helpers for 6-vector poses.

Poses are stored as ``[tx, ty, tz, wx, wy, wz]`` (translation followed by an
axis-angle rotation vector). Only what the manifold retraction and the SE(3)
measurement models need lives here:

    hat / vee          R^3 <-> so(3)
    so3_exp / so3_log  rotation vector <-> rotation matrix
    relative_pose_se3  a^-1 * b in 6-vector form
    se3_retract_left   Exp(delta) * pose in 6-vector form

Everything is written with `jax.numpy` and `jax.lax.cond` small-angle
branches so it can be differentiated by `jax.jacfwd` during linearization.
"""

from __future__ import annotations

import jax
import jax.numpy as jnp

_SMALL_ANGLE = 1e-5


def pose_vec_to_rt(v: jnp.ndarray) -> tuple[jnp.ndarray, jnp.ndarray]:
    """Split a 6D pose vector into (translation, rotation vector)."""
    v = jnp.asarray(v)
    return v[0:3], v[3:6]


def hat(v: jnp.ndarray) -> jnp.ndarray:
    """so(3) hat operator: R^3 -> 3x3 skew-symmetric matrix."""
    x, y, z = v[0], v[1], v[2]
    zero = jnp.zeros_like(x)
    return jnp.array(
        [
            [zero, -z, y],
            [z, zero, -x],
            [-y, x, zero],
        ]
    )


def vee(W: jnp.ndarray) -> jnp.ndarray:
    """Inverse of :func:`hat`, using the antisymmetric part of ``W``."""
    return 0.5 * jnp.array([W[2, 1] - W[1, 2], W[0, 2] - W[2, 0], W[1, 0] - W[0, 1]])


def so3_exp(w: jnp.ndarray) -> jnp.ndarray:
    """Rodrigues' formula with a first-order fallback near zero."""
    w = jnp.asarray(w)
    theta = jnp.linalg.norm(w)
    I = jnp.eye(3, dtype=w.dtype)

    def small(_):
        return I + hat(w)

    def general(_):
        K = hat(w / theta)
        return I + jnp.sin(theta) * K + (1.0 - jnp.cos(theta)) * (K @ K)

    return jax.lax.cond(theta < _SMALL_ANGLE, small, general, operand=None)


def so3_log(R: jnp.ndarray) -> jnp.ndarray:
    """Rotation matrix -> rotation vector, clamping the trace into range."""
    R = jnp.asarray(R)
    cos_theta = jnp.clip((jnp.trace(R) - 1.0) / 2.0, -1.0, 1.0)
    theta = jnp.arccos(cos_theta)

    def small(_):
        return vee(R - jnp.eye(3, dtype=R.dtype))

    def general(_):
        return theta / (2.0 * jnp.sin(theta) + 1e-12) * 2.0 * vee(R)

    return jax.lax.cond(theta < _SMALL_ANGLE, small, general, operand=None)


def relative_pose_se3(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    """
    Pose of ``b`` expressed in the frame of ``a``:

        t_rel = R_a^T (t_b - t_a)
        w_rel = log(R_a^T R_b)
    """
    ta, wa = pose_vec_to_rt(a)
    tb, wb = pose_vec_to_rt(b)
    Ra = so3_exp(wa)
    Rb = so3_exp(wb)
    return jnp.concatenate([Ra.T @ (tb - ta), so3_log(Ra.T @ Rb)])


def se3_retract_left(pose: jnp.ndarray, delta: jnp.ndarray) -> jnp.ndarray:
    """
    Left-multiplicative update ``Exp(delta) * pose``.

    The rotation part of ``delta`` rotates both the orientation and the
    translation of ``pose``; the translation part is added afterwards.
    """
    t, w = pose_vec_to_rt(pose)
    dt, dw = pose_vec_to_rt(delta)
    R_d = so3_exp(dw)
    R_new = R_d @ so3_exp(w)
    return jnp.concatenate([R_d @ t + dt, so3_log(R_new)])


def se3_identity() -> jnp.ndarray:
    return jnp.zeros(6)
