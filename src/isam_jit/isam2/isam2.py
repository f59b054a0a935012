# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""
Incremental smoothing and mapping (iSAM2) engine.

`ISAM2` keeps the solution of a growing nonlinear least-squares problem up
to date one batch of factors at a time. Its persistent state is

    - the nonlinear factor store (every factor ever added)
    - the ordering (variable key -> index, also the elimination order)
    - the variable index (index -> positions of the factors touching it)
    - the linearization point ``theta`` and the per-variable ``delta``
    - the clique tree holding the factorized linear system

Each `update` runs the same synchronous sequence:

    AcceptInput    validate the input, then extend ordering, theta, delta
                   and the variable index with the new factors and variables
    SelectMarked   fold the delta of every variable above the threshold into
                   theta, then mark them, their factor neighbours and every
                   variable of a new factor
    FindAffected   remove every clique on the path from a marked clique to
                   its root; keep the detached subtrees as orphans
    Recalculate    relinearize and re-eliminate the removed region, reuse the
                   orphans' cached boundary factors, reattach the orphans
    Propagate      wildfire back-substitution from the rebuilt roots

Usage errors are detected before any state is touched. Numerical failures
during elimination propagate unchanged and leave the engine in an
unspecified state.

Example
-------
    isam = ISAM2(ISAM2Params(relinearize_skip=1))
    graph = NonlinearFactorGraph()
    graph.add_factor("prior", ["x0"], {"target": jnp.zeros(1)})
    values = Values()
    values.insert("x0", jnp.array([0.3]))
    result = isam.update(graph, values)
    estimate = isam.calculate_estimate("x0")
"""

from __future__ import annotations
from typing import Dict, List, Optional, Set, Tuple

import jax.numpy as jnp
from loguru import logger

from isam_jit.core.factor_graph import NonlinearFactorGraph, ResidualFn
from isam_jit.core.ordering import Ordering
from isam_jit.core.types import Key, Values
from isam_jit.core.variable_index import VariableIndex
from isam_jit.errors import ISAM2UsageError
from isam_jit.inference.bayes_tree import BayesTree
from isam_jit.linear.delta import PermutedDelta
from isam_jit.slam.manifold import get_manifold_for_var_type, retract, retract_values
from isam_jit.slam.measurements import (
    odom_residual,
    odom_se3_geodesic_residual,
    pose_landmark_relative_residual,
    prior_residual,
    range_residual,
)

from .affected import find_affected_region
from .params import ISAM2Params, ISAM2Result
from .recalculate import Recalculator
from .relinearization import RelinearizationPolicy, expand_involved
from .wildfire import back_substitute, wildfire


DEFAULT_RESIDUALS: Dict[str, ResidualFn] = {
    "prior": prior_residual,
    "odom": odom_residual,
    "range": range_residual,
    "odom_se3_geodesic": odom_se3_geodesic_residual,
    "pose_landmark": pose_landmark_relative_residual,
}


class ISAM2:
    """Incremental nonlinear least-squares solver over a clique tree."""

    def __init__(self, params: Optional[ISAM2Params] = None) -> None:
        self.params = params if params is not None else ISAM2Params()
        self._factors = NonlinearFactorGraph(residual_fns=dict(DEFAULT_RESIDUALS))
        self._ordering = Ordering()
        self._variable_index = VariableIndex()
        self._factor_indices: List[Tuple[int, ...]] = []
        self._theta = Values()
        self._delta = PermutedDelta()
        self._tree = BayesTree()
        self._policy = RelinearizationPolicy(self.params)
        self._recalculate = Recalculator(
            self._tree, self._factors, self._ordering, self._variable_index, self._factor_indices
        )

        self.lastAffectedVariableCount = 0
        self.lastAffectedFactorCount = 0
        self.lastAffectedCliqueCount = 0
        self.lastAffectedMarkedCount = 0
        self.lastBacksubVariableCount = 0
        self.lastNnzTop = 0

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def _validate(self, new_factors: NonlinearFactorGraph, new_values: Values) -> List[Key]:
        """Check the update contract and return the new keys in order of first use."""
        for f_type, fn in new_factors.residual_fns.items():
            existing = self._factors.residual_fns.get(f_type)
            if existing is not None and existing is not fn:
                raise ISAM2UsageError(f"Factor type '{f_type}' is already bound to a different residual fn")
        for factor in new_factors:
            if factor.type not in self._factors.residual_fns and factor.type not in new_factors.residual_fns:
                raise ISAM2UsageError(f"No residual fn registered for factor type '{factor.type}'")

        new_keys = [k for k in new_factors.keys() if k not in self._ordering]
        for key in new_keys:
            if key not in new_values:
                raise ISAM2UsageError(f"New variable {key!r} has no initial value")
        used = set(new_keys)
        for key in new_values:
            if key in self._ordering:
                raise ISAM2UsageError(f"Initial value supplied for existing variable {key!r}")
            if key not in used:
                raise ISAM2UsageError(f"Initial value supplied for {key!r}, which no new factor uses")
        return new_keys

    def _accept(self, new_factors: NonlinearFactorGraph, new_values: Values, new_keys: List[Key]) -> Set[int]:
        new_indices: Set[int] = set()
        for key in new_keys:
            dim = new_values.dim(key)
            j = self._ordering.push_back(key)
            self._theta.insert(key, new_values[key], new_values.var_type(key))
            self._delta.push_back(dim)
            self._variable_index.add_variable(dim)
            new_indices.add(j)

        start = len(self._factors)
        self._factors.push_back(new_factors)
        added = [tuple(self._ordering.indices(f.keys)) for f in new_factors]
        self._factor_indices.extend(added)
        self._variable_index.augment(added, start)
        return new_indices

    def _relinearize(self, n_existing: int, force: bool) -> Set[int]:
        """
        Fold the selected deltas into theta and return the variables to mark.

        Only variables whose delta crossed the threshold move. Their factor
        neighbours are marked as well, so every factor touching a moved
        variable is re-linearized inside the affected region and none stays
        summarized in an orphan's boundary factor.
        """
        selected = self._policy(self._delta, n_existing, force)
        if not selected:
            return set()
        for j in sorted(selected):
            key = self._ordering.key(j)
            manifold = get_manifold_for_var_type(self._theta.var_type(key))
            self._theta.update(key, retract(manifold, self._theta[key], self._delta[j]))
            self._delta[j] = jnp.zeros_like(self._delta[j])
        involved = expand_involved(selected, self._variable_index, self._factor_indices)
        return {j for j in involved if j < n_existing}

    def update(
        self,
        new_factors: Optional[NonlinearFactorGraph] = None,
        new_values: Optional[Values] = None,
        force_relinearize: bool = False,
    ) -> ISAM2Result:
        """
        Add factors and variables, then bring the estimate up to date.

        Args:
            new_factors: nonlinear factors to add (may be empty)
            new_values: initial values for exactly the variables that
                ``new_factors`` introduces
            force_relinearize: consider relinearization on this call even if
                the skip count says otherwise

        Returns:
            ISAM2Result with the relinearized and re-eliminated counts and,
            when ``evaluate_nonlinear_error`` is set, the nonlinear error
            before and after the update.
        """
        new_factors = new_factors if new_factors is not None else NonlinearFactorGraph()
        new_values = new_values if new_values is not None else Values()
        new_keys = self._validate(new_factors, new_values)

        result = ISAM2Result()
        n_existing = len(self._ordering)
        new_indices = self._accept(new_factors, new_values, new_keys)
        logger.debug("Accepted {} factors and {} new variables", len(new_factors), len(new_keys))

        if self.params.evaluate_nonlinear_error:
            result.error_before = self._factors.error(self.calculate_estimate())

        relinearized = self._relinearize(n_existing, force_relinearize)
        marked = set(relinearized)
        for f in new_factors:
            marked.update(self._ordering.indices(f.keys))
        result.variables_relinearized = len(relinearized)

        region = find_affected_region(self._tree, marked, new_indices)
        outcome = self._recalculate(region, self._theta)
        result.variables_reeliminated = len(region.keys)

        self.lastBacksubVariableCount = wildfire(
            self._tree, outcome.roots, self._delta, self.params.wildfire_threshold, outcome.rebuilt
        )
        self.lastAffectedVariableCount = len(region.keys)
        self.lastAffectedFactorCount = outcome.n_factors
        self.lastAffectedCliqueCount = len(region.removed)
        self.lastAffectedMarkedCount = len(marked)
        self.lastNnzTop = outcome.nnz_top

        if self.params.evaluate_nonlinear_error:
            result.error_after = self._factors.error(self.calculate_estimate())

        logger.info(
            "iSAM2 update: {} relinearized, {} re-eliminated, {} back-substituted, {} cliques in tree",
            result.variables_relinearized,
            result.variables_reeliminated,
            self.lastBacksubVariableCount,
            len(self._tree),
        )
        return result

    # ------------------------------------------------------------------
    # Estimates
    # ------------------------------------------------------------------

    def calculate_estimate(self, key: Optional[Key] = None):
        """
        Current estimate ``retract(theta, delta)``.

        With ``key`` only that variable is returned (as an array); otherwise
        a `Values` holding every variable.
        """
        if key is not None:
            j = self._ordering[key]
            manifold = get_manifold_for_var_type(self._theta.var_type(key))
            return retract(manifold, self._theta[key], self._delta[j])
        deltas = {k: self._delta[j] for j, k in enumerate(self._ordering)}
        return retract_values(self._theta, deltas)

    def calculate_best_estimate(self) -> Values:
        """Estimate after a full back-substitution, ignoring the wildfire threshold."""
        delta = self._delta.copy()
        back_substitute(self._tree, delta)
        deltas = {k: delta[j] for j, k in enumerate(self._ordering)}
        return retract_values(self._theta, deltas)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def register_residual(self, factor_type: str, fn: ResidualFn) -> None:
        self._factors.register_residual(factor_type, fn)

    def get_linearization_point(self) -> Values:
        return self._theta

    def get_delta(self) -> PermutedDelta:
        return self._delta

    def get_factors_unsafe(self) -> NonlinearFactorGraph:
        return self._factors

    def get_ordering(self) -> Ordering:
        return self._ordering

    @property
    def bayes_tree(self) -> BayesTree:
        return self._tree

    @property
    def update_count(self) -> int:
        return self._policy.update_count
