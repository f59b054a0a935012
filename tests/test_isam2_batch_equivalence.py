from __future__ import annotations

import jax.numpy as jnp
import numpy as np
import pytest

from isam_jit import ISAM2, ISAM2Params, NonlinearFactorGraph, Values
from isam_jit.optimization.solvers import GNConfig, batch_optimize
from isam_jit.slam.measurements import odom_residual, odom_se3_geodesic_residual, prior_residual, range_residual


def _register(fg):
    fg.register_residual("prior", prior_residual)
    fg.register_residual("odom", odom_residual)
    fg.register_residual("range", range_residual)
    fg.register_residual("odom_se3_geodesic", odom_se3_geodesic_residual)
    return fg


def test_batch_optimize_solves_tiny_slam():
    """
    Two 1D variables: prior p0 = 0, odom p1 − p0 = 1.
    Optimum: p0 = 0, p1 = 1.
    """
    fg = _register(NonlinearFactorGraph())
    fg.add_factor("prior", ["p0"], {"target": jnp.array([0.0])})
    fg.add_factor("odom", ["p0", "p1"], {"measurement": jnp.array([1.0])})
    values = Values()
    values.insert("p0", jnp.array([0.3]))
    values.insert("p1", jnp.array([-0.4]))

    out = batch_optimize(fg, values, GNConfig(damping=0.0, max_step_norm=10.0))
    assert float(out["p0"][0]) == pytest.approx(0.0, abs=1e-9)
    assert float(out["p1"][0]) == pytest.approx(1.0, abs=1e-9)
    assert float(values["p1"][0]) == pytest.approx(-0.4)


def test_gn_config_validation():
    with pytest.raises(ValueError):
        GNConfig(max_iters=0)
    with pytest.raises(ValueError):
        GNConfig(damping=-1.0)


def test_incremental_range_problem_matches_batch_after_forced_relinearization():
    """
    Points a, b, c in the plane:
      - prior on a at the origin, odometry a -> b of (1, 0)
      - ranges |c - a| = √2 and |c - b| = 1 added in a second update

    c starts near (1, 1). Forcing relinearization of every variable
    (threshold 0) turns each extra update into a Gauss-Newton step on the
    whole graph, so the incremental estimate converges to the batch one.
    """
    isam = ISAM2(ISAM2Params(relinearize_threshold=0.0, wildfire_threshold=0.0))

    first = NonlinearFactorGraph()
    first.add_factor("prior", ["a"], {"target": jnp.zeros(2)})
    first.add_factor("odom", ["a", "b"], {"measurement": jnp.array([1.0, 0.0])})
    init = Values()
    init.insert("a", jnp.array([0.1, -0.1]), "point2")
    init.insert("b", jnp.array([0.9, 0.2]), "point2")
    isam.update(first, init)

    second = NonlinearFactorGraph()
    second.add_factor("range", ["a", "c"], {"range": jnp.sqrt(2.0)})
    second.add_factor("range", ["b", "c"], {"range": 1.0})
    init_c = Values()
    init_c.insert("c", jnp.array([1.2, 0.9]), "point2")
    isam.update(second, init_c)

    for _ in range(8):
        result = isam.update(NonlinearFactorGraph(), Values(), force_relinearize=True)
        assert result.variables_relinearized == 3

    all_values = init.copy()
    all_values.insert("c", init_c["c"], "point2")
    batch = batch_optimize(isam.get_factors_unsafe(), all_values, GNConfig(damping=0.0, max_step_norm=10.0))

    best = isam.calculate_best_estimate()
    for key, truth in [("a", [0.0, 0.0]), ("b", [1.0, 0.0]), ("c", [1.0, 1.0])]:
        np.testing.assert_allclose(np.asarray(best[key]), np.asarray(batch[key]), atol=1e-6)
        np.testing.assert_allclose(np.asarray(best[key]), truth, atol=1e-6)


def test_incremental_se3_chain_matches_batch():
    """
    SE(3) pose chain built one pose per update: prior at identity and +1 m
    geodesic odometry along x. After a forced relinearization round the
    incremental estimate equals the batch Gauss-Newton solution.
    """
    isam = ISAM2(ISAM2Params(relinearize_threshold=0.0, wildfire_threshold=0.0, relinearize_skip=100))
    meas = jnp.array([1.0, 0.0, 0.0, 0.0, 0.0, 0.0])
    all_values = Values()

    first = NonlinearFactorGraph()
    first.add_factor("prior", [0], {"target": jnp.zeros(6)})
    v0 = Values()
    v0.insert(0, jnp.array([0.05, -0.02, 0.01, 0.01, -0.01, 0.02]), "pose_se3")
    all_values.insert(0, v0[0], "pose_se3")
    isam.update(first, v0)

    for i in range(1, 5):
        fg = NonlinearFactorGraph()
        fg.add_factor("odom_se3_geodesic", [i - 1, i], {"measurement": meas})
        vi = Values()
        vi.insert(i, jnp.array([i + 0.1, 0.05 * i, 0.0, 0.0, 0.02, -0.01]), "pose_se3")
        all_values.insert(i, vi[i], "pose_se3")
        isam.update(fg, vi)

    for _ in range(6):
        isam.update(NonlinearFactorGraph(), Values(), force_relinearize=True)

    batch = batch_optimize(isam.get_factors_unsafe(), all_values, GNConfig(damping=0.0, max_step_norm=10.0))
    best = isam.calculate_best_estimate()
    for i in range(5):
        np.testing.assert_allclose(np.asarray(best[i]), np.asarray(batch[i]), atol=1e-6)
        np.testing.assert_allclose(np.asarray(best[i][:3]), [float(i), 0.0, 0.0], atol=1e-6)
