# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""
Linear (Gaussian) factors, conditionals and the elimination primitive.

Everything here works on variable *indices* (see `core.ordering`) and on the
tangent-space correction ``δ`` of each variable.

Factor forms
------------
JacobianFactor
    Whitened linearization of a nonlinear factor:
        error(δ) = ½ ‖ Σ_k A_k δ_k − b ‖²
    with ``b = −r(θ)`` so that ``δ = 0`` reproduces the nonlinear residual.

HessianFactor
    Information (quadratic) form over a set of variables:
        error(δ) = ½ δᵀ Λ δ − ηᵀ δ + const
    This is the form used for the boundary summary a clique passes to its
    parent, and for the joint factor that is eliminated.

GaussianConditional
    Upper-triangular square-root form of p(δ_F | δ_P):
        R δ_F + S δ_P = d
    Back-substitution solves for δ_F given the parents.

Elimination
-----------
`eliminate` factors the frontal block of a joint `HessianFactor` with a
Cholesky decomposition:

    Λ_FF = Rᵀ R,   d = R⁻ᵀ η_F,   S = R⁻ᵀ Λ_FP
    Λ'   = Λ_PP − Sᵀ S,   η' = η_P − Sᵀ d         (remainder on P)

`eliminate_sequential` applies it one variable at a time in a given order,
which is how the incremental solver rebuilds the top of its clique tree.
A pivot that is not positive definite raises
`IndeterminantLinearSystemError`; there is no local recovery.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import jax.numpy as jnp
from jax.scipy.linalg import solve_triangular

from isam_jit.errors import IndeterminantLinearSystemError


def _offsets(keys: Sequence[int], dims: Sequence[int]) -> Dict[int, Tuple[int, int]]:
    out: Dict[int, Tuple[int, int]] = {}
    start = 0
    for k, d in zip(keys, dims):
        out[k] = (start, d)
        start += d
    return out


@dataclass
class JacobianFactor:
    keys: Tuple[int, ...]
    blocks: Tuple[jnp.ndarray, ...]   # A_k, shape (m, dim_k)
    b: jnp.ndarray                    # (m,)

    @property
    def dims(self) -> Tuple[int, ...]:
        return tuple(int(A.shape[1]) for A in self.blocks)

    def to_hessian(self) -> "HessianFactor":
        A = jnp.concatenate(self.blocks, axis=1)
        return HessianFactor(
            keys=tuple(self.keys),
            dims=self.dims,
            info=A.T @ A,
            eta=A.T @ self.b,
        )


@dataclass
class HessianFactor:
    keys: Tuple[int, ...]
    dims: Tuple[int, ...]
    info: jnp.ndarray   # Λ
    eta: jnp.ndarray    # η


def combine(
    factors: Iterable,
    keys: Sequence[int],
    dims: Mapping[int, int],
) -> HessianFactor:
    """
    Sum Jacobian/Hessian factors into one HessianFactor laid out over ``keys``.

    ``keys`` must cover every variable of every factor; its order fixes the
    block layout (frontal variables first when the result is eliminated).
    """
    key_dims = tuple(int(dims[k]) for k in keys)
    layout = _offsets(keys, key_dims)
    n = sum(key_dims)
    info = jnp.zeros((n, n))
    eta = jnp.zeros((n,))

    for f in factors:
        h = f.to_hessian() if isinstance(f, JacobianFactor) else f
        local = _offsets(h.keys, h.dims)
        for ki in h.keys:
            gi, di = layout[ki]
            li, _ = local[ki]
            eta = eta.at[gi:gi + di].add(h.eta[li:li + di])
            for kj in h.keys:
                gj, dj = layout[kj]
                lj, _ = local[kj]
                info = info.at[gi:gi + di, gj:gj + dj].add(h.info[li:li + di, lj:lj + dj])

    return HessianFactor(keys=tuple(keys), dims=key_dims, info=info, eta=eta)


@dataclass
class GaussianConditional:
    frontals: Tuple[int, ...]
    parents: Tuple[int, ...]
    frontal_dims: Tuple[int, ...]
    parent_dims: Tuple[int, ...]
    R: jnp.ndarray   # (nF, nF) upper triangular
    S: jnp.ndarray   # (nF, nP)
    d: jnp.ndarray   # (nF,)

    @property
    def keys(self) -> Tuple[int, ...]:
        return self.frontals + self.parents

    def nnz(self) -> int:
        """Structural non-zeros of R (upper triangle) and S."""
        nf = int(self.R.shape[0])
        return nf * (nf + 1) // 2 + int(self.S.size)

    def solve(self, parent_values: Mapping[int, jnp.ndarray]) -> Dict[int, jnp.ndarray]:
        """Back-substitute ``R δ_F = d − S δ_P`` and split per frontal variable."""
        rhs = self.d
        if self.parents:
            x_p = jnp.concatenate([parent_values[k] for k in self.parents])
            rhs = rhs - self.S @ x_p
        x_f = solve_triangular(self.R, rhs, lower=False)
        out: Dict[int, jnp.ndarray] = {}
        for k, (start, dim) in _offsets(self.frontals, self.frontal_dims).items():
            out[k] = x_f[start:start + dim]
        return out

    def prepend(self, child: "GaussianConditional") -> "GaussianConditional":
        """
        Merge a conditional eliminated just before this one into a single
        multi-frontal conditional.

        ``child`` must be conditioned on exactly the variables of ``self``
        (its frontals and parents); the result has frontals
        ``child.frontals + self.frontals`` and parents ``self.parents``.
        """
        if set(child.parents) != set(self.keys):
            raise ValueError(
                f"Cannot merge conditional on {child.frontals} with parents {child.parents} "
                f"into clique over {self.keys}"
            )
        child_cols = _offsets(child.parents, child.parent_dims)

        def gather(keys: Sequence[int]) -> jnp.ndarray:
            cols = [child.S[:, child_cols[k][0]:child_cols[k][0] + child_cols[k][1]] for k in keys]
            if not cols:
                return jnp.zeros((child.S.shape[0], 0))
            return jnp.concatenate(cols, axis=1)

        top_R = jnp.concatenate([child.R, gather(self.frontals)], axis=1)
        bottom_R = jnp.concatenate([jnp.zeros((self.R.shape[0], child.R.shape[1])), self.R], axis=1)
        return GaussianConditional(
            frontals=child.frontals + self.frontals,
            parents=self.parents,
            frontal_dims=child.frontal_dims + self.frontal_dims,
            parent_dims=self.parent_dims,
            R=jnp.concatenate([top_R, bottom_R], axis=0),
            S=jnp.concatenate([gather(self.parents), self.S], axis=0),
            d=jnp.concatenate([child.d, self.d]),
        )


def eliminate(
    joint: HessianFactor,
    n_frontals: int,
) -> Tuple[GaussianConditional, Optional[HessianFactor]]:
    """
    Eliminate the first ``n_frontals`` variables of ``joint``.

    Returns the conditional on those variables and the remainder factor on
    the rest (``None`` when nothing remains).
    """
    frontals = joint.keys[:n_frontals]
    parents = joint.keys[n_frontals:]
    f_dims = joint.dims[:n_frontals]
    p_dims = joint.dims[n_frontals:]
    nf = sum(f_dims)

    L_ff = joint.info[:nf, :nf]
    L_fp = joint.info[:nf, nf:]
    L = jnp.linalg.cholesky(L_ff)
    if not bool(jnp.all(jnp.isfinite(L))) or not bool(jnp.all(jnp.diag(L) > 0.0)):
        raise IndeterminantLinearSystemError(int(frontals[0]))
    R = L.T

    d = solve_triangular(L, joint.eta[:nf], lower=True)
    S = solve_triangular(L, L_fp, lower=True) if parents else jnp.zeros((nf, 0), dtype=R.dtype)
    conditional = GaussianConditional(
        frontals=tuple(frontals),
        parents=tuple(parents),
        frontal_dims=tuple(f_dims),
        parent_dims=tuple(p_dims),
        R=R,
        S=S,
        d=d,
    )
    if not parents:
        return conditional, None

    remainder = HessianFactor(
        keys=tuple(parents),
        dims=tuple(p_dims),
        info=joint.info[nf:, nf:] - S.T @ S,
        eta=joint.eta[nf:] - S.T @ d,
    )
    return conditional, remainder


@dataclass
class SequentialElimination:
    """Output of :func:`eliminate_sequential`, keyed by eliminated variable."""
    order: List[int]
    conditionals: Dict[int, GaussianConditional]
    remainders: Dict[int, Optional[HessianFactor]]


def eliminate_sequential(
    factors: Sequence,
    order: Sequence[int],
    dims: Mapping[int, int],
) -> SequentialElimination:
    """
    Eliminate ``order`` one variable at a time.

    Every factor must only involve variables listed in ``order``. Each step
    gathers the factors touching the variable, eliminates it, and pushes
    the remainder back into the working set.
    """
    position = {j: p for p, j in enumerate(order)}
    pending: Dict[int, object] = {}
    touching: Dict[int, set] = {j: set() for j in order}
    next_id = 0

    def add(f) -> None:
        nonlocal next_id
        for k in f.keys:
            if k not in touching:
                raise ValueError(f"Factor on {f.keys} involves variable {k} outside the elimination set")
            touching[k].add(next_id)
        pending[next_id] = f
        next_id += 1

    for f in factors:
        add(f)

    conditionals: Dict[int, GaussianConditional] = {}
    remainders: Dict[int, Optional[HessianFactor]] = {}
    for j in order:
        ids = sorted(touching[j])
        if not ids:
            raise IndeterminantLinearSystemError(int(j), f"Variable index {j} is not constrained by any factor")
        involved = [pending.pop(i) for i in ids]
        for f in involved:
            for k in f.keys:
                touching[k].difference_update(ids)

        joint_keys = sorted({k for f in involved for k in f.keys}, key=position.__getitem__)
        joint = combine(involved, joint_keys, dims)
        conditional, remainder = eliminate(joint, 1)
        conditionals[j] = conditional
        remainders[j] = remainder
        if remainder is not None:
            add(remainder)

    return SequentialElimination(order=list(order), conditionals=conditionals, remainders=remainders)
