# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""
Nonlinear factor graph: the permanent store of every constraint.

The incremental solver keeps every nonlinear factor it has ever received in
a `NonlinearFactorGraph`, because a factor has to be linearized again
whenever one of its variables is relinearized. The graph stores:

    - Factors, append-only; a factor's position is its `FactorId`
    - Registered residual functions, by factor type

Residual functions follow the signature used throughout the engine:

    r = residual_fn(x, params)

with ``x`` the concatenation of the factor's variable values (in the order
of ``factor.keys``). The error of a factor is ``½‖r‖²``.

Linearization
-------------
`linearize_factor` differentiates the residual with respect to a tangent
perturbation of each variable, composed through `slam.manifold.retract`:

    J_k = ∂ r(retract(θ, δ)) / ∂ δ_k  at δ = 0

using `jax.jacfwd`, and returns a `JacobianFactor` over ordering indices
with ``b = −r(θ)``. SE(3) poses are therefore linearized in their tangent
space while Euclidean variables reduce to the ordinary Jacobian.

Primary Methods
---------------
add(factor) / add_factor(type, keys, params)
    Append a factor and return its `FactorId`.

register_residual(type, fn)
    Bind a factor type to its residual function.

push_back(graph)
    Append all factors of another graph and merge its residual registry.

error(values)
    Total nonlinear error ``½ Σ ‖r_i‖²``.

linearize(values, ordering, positions)
    Linearize the selected factors around ``values``.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

import jax
import jax.numpy as jnp

from isam_jit.linear.gaussian import JacobianFactor
from isam_jit.slam.manifold import get_manifold_for_var_type, retract

from .ordering import Ordering
from .types import FactorId, Key, NonlinearFactor, Values


# Type aliases for clarity
ResidualFn = Callable[[jnp.ndarray, Dict[str, Any]], jnp.ndarray]


@dataclass
class NonlinearFactorGraph:
    """
    Append-only list of nonlinear factors plus the residual registry.

    - factors: position -> NonlinearFactor
    - residual_fns: mapping factor.type -> callable that computes residuals
    """
    factors: List[NonlinearFactor] = field(default_factory=list)
    residual_fns: Dict[str, ResidualFn] = field(default_factory=dict)

    def add(self, factor: NonlinearFactor) -> FactorId:
        self.factors.append(factor)
        return FactorId(len(self.factors) - 1)

    def add_factor(self, f_type: str, keys: Iterable[Key], params: Optional[Dict] = None) -> FactorId:
        return self.add(NonlinearFactor(type=f_type, keys=tuple(keys), params=dict(params or {})))

    def register_residual(self, factor_type: str, fn: ResidualFn) -> None:
        self.residual_fns[factor_type] = fn

    def push_back(self, other: "NonlinearFactorGraph") -> List[FactorId]:
        for f_type, fn in other.residual_fns.items():
            existing = self.residual_fns.get(f_type)
            if existing is not None and existing is not fn:
                raise ValueError(f"Factor type '{f_type}' is already bound to a different residual fn")
            self.residual_fns[f_type] = fn
        return [self.add(f) for f in other.factors]

    def keys(self) -> List[Key]:
        """Variable keys in order of first appearance."""
        seen: Dict[Key, None] = {}
        for f in self.factors:
            for k in f.keys:
                seen.setdefault(k, None)
        return list(seen)

    # --- Evaluation ---

    def residual_fn(self, factor: NonlinearFactor) -> ResidualFn:
        fn = self.residual_fns.get(factor.type, None)
        if fn is None:
            raise ValueError(f"No residual fn registered for factor type '{factor.type}'")
        return fn

    def residual(self, factor: NonlinearFactor, values: Values) -> jnp.ndarray:
        stacked = jnp.concatenate([values[k] for k in factor.keys])
        return jnp.reshape(self.residual_fn(factor)(stacked, factor.params), (-1,))

    def factor_error(self, factor: NonlinearFactor, values: Values) -> float:
        r = self.residual(factor, values)
        return 0.5 * float(jnp.sum(r ** 2))

    def error(self, values: Values) -> float:
        return sum(self.factor_error(f, values) for f in self.factors)

    # --- Linearization ---

    def linearize_factor(
        self,
        factor: NonlinearFactor,
        values: Values,
        ordering: Ordering,
    ) -> JacobianFactor:
        fn = self.residual_fn(factor)
        points = tuple(values[k] for k in factor.keys)
        manifolds = tuple(get_manifold_for_var_type(values.var_type(k)) for k in factor.keys)
        params = factor.params

        def local(deltas: Tuple[jnp.ndarray, ...]) -> jnp.ndarray:
            moved = [retract(m, x, d) for m, x, d in zip(manifolds, points, deltas)]
            return jnp.reshape(fn(jnp.concatenate(moved), params), (-1,))

        zeros = tuple(jnp.zeros_like(x) for x in points)
        r = local(zeros)
        blocks = jax.jacfwd(local)(zeros)
        return JacobianFactor(
            keys=tuple(int(ordering[k]) for k in factor.keys),
            blocks=tuple(blocks),
            b=-r,
        )

    def linearize(
        self,
        values: Values,
        ordering: Ordering,
        positions: Optional[Iterable[int]] = None,
    ) -> List[JacobianFactor]:
        """Linearize the factors at ``positions`` (all factors when omitted)."""
        if positions is None:
            positions = range(len(self.factors))
        return [self.linearize_factor(self.factors[i], values, ordering) for i in positions]

    def __getitem__(self, i: int) -> NonlinearFactor:
        return self.factors[i]

    def __len__(self) -> int:
        return len(self.factors)

    def __iter__(self) -> Iterator[NonlinearFactor]:
        return iter(self.factors)
