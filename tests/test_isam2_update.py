from __future__ import annotations

import jax.numpy as jnp
import numpy as np
import pytest

from isam_jit import (
    ISAM2,
    ISAM2Params,
    ISAM2UsageError,
    IndeterminantLinearSystemError,
    NonlinearFactorGraph,
    Values,
)


def _graph(*factors):
    """Each factor is (type, keys, params)."""
    fg = NonlinearFactorGraph()
    for f_type, keys, params in factors:
        fg.add_factor(f_type, keys, params)
    return fg


def _values(**init):
    values = Values()
    for key, value in init.items():
        values.insert(key, jnp.atleast_1d(jnp.asarray(value, dtype=float)))
    return values


def _int_values(init):
    values = Values()
    for key, value in init.items():
        values.insert(key, jnp.array([value]))
    return values


def _prior(key, target):
    return ("prior", [key], {"target": jnp.array([target])})


def _odom(a, b, z):
    return ("odom", [a, b], {"measurement": jnp.array([z])})


def test_single_variable_with_prior():
    """
    Start empty; add x1 with one unary factor wanting x1 = 2 and initial
    value 0.5. Nothing is relinearized (x1 is new), one variable is
    re-eliminated and the estimate moves to the prior's target.
    """
    isam = ISAM2(ISAM2Params(evaluate_nonlinear_error=True))
    result = isam.update(_graph(_prior("x1", 2.0)), _values(x1=0.5))

    assert result.variables_relinearized == 0
    assert result.variables_reeliminated == 1
    assert float(isam.calculate_estimate("x1")[0]) == pytest.approx(2.0, abs=1e-9)
    assert result.error_before == pytest.approx(0.5 * 1.5 ** 2)
    assert result.error_after == pytest.approx(0.0, abs=1e-12)
    assert float(isam.get_linearization_point()["x1"][0]) == pytest.approx(0.5)
    assert float(isam.get_delta()[0][0]) == pytest.approx(1.5, abs=1e-9)
    assert isam.lastNnzTop == 1


def test_error_is_not_evaluated_by_default():
    isam = ISAM2()
    result = isam.update(_graph(_prior("x", 0.0)), _values(x=1.0))
    assert result.error_before is None
    assert result.error_after is None


def _chain_isam(params=None):
    """
    x1 --odom-- x2, with a prior on x1, then x3 joined to x2 by odometry.
    Afterwards the tree is {x2, x3} at the root with {x1 | x2} below it.
    """
    isam = ISAM2(params or ISAM2Params())
    isam.update(_graph(_prior("x1", 0.0), _odom("x1", "x2", 1.0)), _values(x1=0.1, x2=0.8))
    isam.update(_graph(_odom("x2", "x3", 1.0)), _values(x3=2.3))
    return isam


def test_chain_update_on_x3_keeps_the_x1_clique():
    """
    A new prior on x3 only invalidates the root clique. The clique holding
    x1 is detached as an orphan, reused through its cached boundary factor,
    and reattached without being re-eliminated.
    """
    isam = _chain_isam()
    tree = isam.bayes_tree
    j1 = isam.get_ordering()["x1"]
    x1_clique = tree.clique_of(j1)
    assert tree[x1_clique].frontals == (j1,)

    result = isam.update(_graph(_prior("x3", 2.5)), Values())

    assert result.variables_reeliminated == 2
    assert isam.lastAffectedCliqueCount == 1
    assert isam.lastAffectedVariableCount == 2
    assert isam.lastAffectedMarkedCount == 1
    assert isam.lastAffectedFactorCount == 2
    assert tree.clique_of(j1) == x1_clique
    assert tree[x1_clique].parent == tree.clique_of(isam.get_ordering()["x2"])
    tree.check_invariants()

    # prior x1=0, odom +1, odom +1, prior x3=2.5: least squares solution
    A = np.array([[1, 0, 0], [-1, 1, 0], [0, -1, 1], [0, 0, 1]], dtype=float)
    b = np.array([0.0, 1.0, 1.0, 2.5])
    expected = np.linalg.lstsq(A, b, rcond=None)[0]
    best = isam.calculate_best_estimate()
    for key, value in zip(["x1", "x2", "x3"], expected):
        assert float(best[key][0]) == pytest.approx(value, abs=1e-9)


def test_invalidated_orphan_cache_is_recomputed():
    """Dropping the orphan's cached factor gives the same answer as reusing it."""
    reused = _chain_isam()
    recomputed = _chain_isam()
    tree = recomputed.bayes_tree
    tree[tree.clique_of(0)].invalidate_cache()

    reused.update(_graph(_prior("x3", 2.5)), Values())
    recomputed.update(_graph(_prior("x3", 2.5)), Values())

    assert tree[tree.clique_of(0)].cache_valid
    a = reused.calculate_best_estimate()
    b = recomputed.calculate_best_estimate()
    for key in ["x1", "x2", "x3"]:
        assert float(a[key][0]) == pytest.approx(float(b[key][0]), abs=1e-9)


def test_noop_update_changes_nothing():
    isam = _chain_isam(ISAM2Params(enable_relinearization=False))
    theta_before = {k: np.asarray(v) for k, v in isam.get_linearization_point().items()}
    delta_before = [np.asarray(d) for d in isam.get_delta()]
    n_cliques = len(isam.bayes_tree)

    result = isam.update(NonlinearFactorGraph(), Values())

    assert result.variables_relinearized == 0
    assert result.variables_reeliminated == 0
    assert isam.lastBacksubVariableCount == 0
    assert len(isam.bayes_tree) == n_cliques
    for k, v in isam.get_linearization_point().items():
        np.testing.assert_array_equal(np.asarray(v), theta_before[k])
    for d, before in zip(isam.get_delta(), delta_before):
        np.testing.assert_array_equal(np.asarray(d), before)


def test_leaf_update_leaves_sibling_cliques_alone():
    """
    Four leaves tied to a hub; each leaf has its own prior so the leaves are
    ordered (and eliminated) before the hub. A new prior on leaf l0 must
    only remove l0's clique and the root, leaving l1 and l2 untouched.
    """
    leaves = ["l0", "l1", "l2", "l3"]
    factors = [_prior(l, float(i)) for i, l in enumerate(leaves)]
    factors += [_odom(l, "h", 1.0) for l in leaves]
    isam = ISAM2(ISAM2Params(enable_relinearization=False))
    isam.update(_graph(*factors), _values(l0=0.0, l1=1.0, l2=2.0, l3=3.0, h=1.0))

    tree = isam.bayes_tree
    ordering = isam.get_ordering()
    untouched = [tree.clique_of(ordering[l]) for l in ("l1", "l2")]
    assert len(tree) == 4

    result = isam.update(_graph(_prior("l0", 0.5)), Values())

    assert isam.lastAffectedCliqueCount == 2
    assert result.variables_reeliminated == 3
    assert [tree.clique_of(ordering[l]) for l in ("l1", "l2")] == untouched
    tree.check_invariants()


def test_relinearize_skip_gates_relinearization():
    """
    relinearize_skip=3; every call adds another prior on x with a growing
    target, so x's delta keeps exceeding the threshold. Relinearization
    only happens on the third call and on the forced fifth call.
    """
    isam = ISAM2(ISAM2Params(relinearize_skip=3, relinearize_threshold=0.01))
    counts = [isam.update(_graph(_prior("x", 0.0)), _values(x=0.0)).variables_relinearized]
    for k in range(1, 5):
        result = isam.update(_graph(_prior("x", float(k))), Values(), force_relinearize=(k == 4))
        counts.append(result.variables_relinearized)

    assert counts == [0, 0, 1, 0, 1]
    assert isam.update_count == 5
    # the average of targets 0..4
    assert float(isam.calculate_estimate("x")[0]) == pytest.approx(2.0, abs=1e-9)


def test_relinearization_folds_delta_into_theta():
    isam = ISAM2(ISAM2Params(relinearize_skip=1, relinearize_threshold=0.01))
    isam.update(_graph(_prior("x", 1.0)), _values(x=0.0))
    isam.update(_graph(_prior("y", 0.0), _odom("x", "y", 1.0)), _values(y=0.0))

    # x had delta 1.0 when the second call started: folded into theta
    assert float(isam.get_linearization_point()["x"][0]) == pytest.approx(1.0, abs=1e-9)


def test_larger_relinearize_threshold_never_relinearizes_more():
    def run(threshold):
        isam = ISAM2(ISAM2Params(relinearize_skip=1, relinearize_threshold=threshold))
        counts = [isam.update(_graph(_prior("x", 0.0)), _values(x=0.0)).variables_relinearized]
        for k in range(1, 4):
            counts.append(isam.update(_graph(_prior("x", float(k))), Values()).variables_relinearized)
        return counts

    low, high = run(0.01), run(100.0)
    assert all(h <= l for h, l in zip(high, low))
    assert sum(high) == 0


def test_larger_wildfire_threshold_never_backsubstitutes_more():
    """Same update sequence on a 10-pose chain under three wildfire thresholds."""

    def run(threshold):
        isam = ISAM2(ISAM2Params(wildfire_threshold=threshold, enable_relinearization=False))
        isam.update(_graph(_prior(0, 0.0)), _int_values({0: 0.0}))
        counts = []
        for i in range(1, 10):
            isam.update(_graph(_odom(i - 1, i, 1.0)), _int_values({i: float(i) + 0.3}))
            counts.append(isam.lastBacksubVariableCount)
        isam.update(_graph(_prior(9, 8.0)), Values())
        counts.append(isam.lastBacksubVariableCount)
        return counts

    full, mid, lazy = run(0.0), run(1e-3), run(1e6)
    for f, m, z in zip(full, mid, lazy):
        assert f >= m >= z
    assert full[-1] == 10


def test_missing_initial_value_is_rejected_before_mutation():
    isam = _chain_isam()
    n_factors = len(isam.get_factors_unsafe())
    with pytest.raises(ISAM2UsageError):
        isam.update(_graph(_odom("x3", "x4", 1.0)), Values())
    assert len(isam.get_factors_unsafe()) == n_factors
    assert "x4" not in isam.get_ordering()
    assert isam.update_count == 2


def test_initial_value_for_existing_variable_is_rejected():
    isam = _chain_isam()
    with pytest.raises(ISAM2UsageError):
        isam.update(_graph(_prior("x1", 0.0)), _values(x1=0.0))


def test_initial_value_for_unused_variable_is_rejected():
    isam = ISAM2()
    with pytest.raises(ISAM2UsageError):
        isam.update(_graph(_prior("a", 0.0)), _values(a=0.0, b=1.0))
    assert len(isam.get_ordering()) == 0


def test_unknown_factor_type_is_a_usage_error():
    isam = ISAM2()
    with pytest.raises(ISAM2UsageError):
        isam.update(_graph(("mystery", ["a"], {})), _values(a=0.0))


def test_custom_residual_registration():
    """A scaled prior r = 2 (x − t) registered under a new type."""
    isam = ISAM2()
    isam.register_residual("scaled_prior", lambda x, p: 2.0 * (x - p["target"]))
    isam.update(_graph(("scaled_prior", ["a"], {"target": jnp.array([3.0])})), _values(a=0.0))
    assert float(isam.calculate_estimate("a")[0]) == pytest.approx(3.0, abs=1e-9)


def test_underconstrained_new_variables_raise():
    isam = ISAM2()
    with pytest.raises(IndeterminantLinearSystemError):
        isam.update(_graph(_odom("a", "b", 1.0)), _values(a=0.0, b=0.0))


def test_calculate_estimate_returns_all_variables():
    isam = _chain_isam()
    estimate = isam.calculate_estimate()
    assert set(estimate.keys()) == {"x1", "x2", "x3"}
    assert float(estimate["x3"][0]) == pytest.approx(2.0, abs=1e-6)


def _random_linear_chain(seed, n_steps=25):
    """
    1D chain with random odometry, loop closures and extra priors, grown one
    variable per update. Returns the list of per-step factor tuples.
    """
    rng = np.random.RandomState(seed)
    steps = [([_prior(0, 0.0)], {0: rng.normal(0.0, 0.5)})]
    guess = {0: steps[0][1][0]}
    for i in range(1, n_steps):
        factors = [_odom(i - 1, i, 1.0 + rng.normal(0.0, 0.3))]
        if i > 2 and rng.rand() < 0.4:
            j = int(rng.randint(0, i - 1))
            factors.append(_odom(j, i, (i - j) + rng.normal(0.0, 0.3)))
        if rng.rand() < 0.3:
            j = int(rng.randint(0, i))
            factors.append(_prior(j, j + rng.normal(0.0, 0.3)))
        guess[i] = guess[i - 1] + 1.0 + rng.normal(0.0, 0.5)
        steps.append((factors, {i: guess[i]}))
    return steps


def _least_squares(factors, n):
    rows, rhs = [], []
    for f_type, keys, params in factors:
        row = np.zeros(n)
        if f_type == "prior":
            row[keys[0]] = 1.0
            rhs.append(float(params["target"][0]))
        else:
            row[keys[0]], row[keys[1]] = -1.0, 1.0
            rhs.append(float(params["measurement"][0]))
        rows.append(row)
    return np.linalg.lstsq(np.array(rows), np.array(rhs), rcond=None)[0]


def test_partial_relinearization_matches_least_squares_every_step():
    """
    On a linear problem relinearizing must not change the solution. With a
    positive threshold only some variables move, and the untouched subtrees
    are reused through their boundary factors; every step must still agree
    with a batch least-squares solve.
    """
    partial_rounds = 0
    for seed in range(8):
        isam = ISAM2(ISAM2Params(relinearize_skip=1, relinearize_threshold=0.05, wildfire_threshold=0.0))
        all_factors = []
        for step, (factors, init) in enumerate(_random_linear_chain(seed)):
            n_cliques = len(isam.bayes_tree)
            result = isam.update(_graph(*factors), _int_values(init))
            isam.bayes_tree.check_invariants()
            if result.variables_relinearized and isam.lastAffectedCliqueCount < n_cliques:
                partial_rounds += 1

            all_factors.extend(factors)
            expected = _least_squares(all_factors, step + 1)
            estimate = isam.calculate_estimate()
            for key, value in enumerate(expected):
                assert float(estimate[key][0]) == pytest.approx(value, abs=1e-6), (seed, step, key)

    assert partial_rounds > 0


def test_relinearization_moves_only_variables_above_threshold():
    """
    Chain x0 - x1 - x2 with x2 initialized at 3.0 and a prior pulling x1 to
    1.6. The solution is (0.2, 1.4, 2.4), so the deltas are (0.2, 0.4, -0.6)
    and only x2 crosses 0.5. Its neighbour x1 is marked and counted but keeps
    its linearization point and delta.
    """
    isam = ISAM2(ISAM2Params(relinearize_skip=1, relinearize_threshold=0.5, wildfire_threshold=0.0))
    isam.update(_graph(_prior(0, 0.0), _odom(0, 1, 1.0)), _int_values({0: 0.0, 1: 1.0}))
    isam.update(_graph(_odom(1, 2, 1.0), _prior(1, 1.6)), _int_values({2: 3.0}))
    assert float(isam.get_delta()[1][0]) == pytest.approx(0.4, abs=1e-9)
    assert float(isam.get_delta()[2][0]) == pytest.approx(-0.6, abs=1e-9)

    result = isam.update(NonlinearFactorGraph(), Values())

    assert result.variables_relinearized == 2
    assert float(isam.get_linearization_point()[1][0]) == pytest.approx(1.0)
    assert float(isam.get_delta()[1][0]) == pytest.approx(0.4, abs=1e-9)
    assert float(isam.get_linearization_point()[2][0]) == pytest.approx(2.4, abs=1e-9)
    assert float(isam.get_delta()[2][0]) == pytest.approx(0.0, abs=1e-9)
    estimate = isam.calculate_estimate()
    for key, value in enumerate([0.2, 1.4, 2.4]):
        assert float(estimate[key][0]) == pytest.approx(value, abs=1e-9)
    isam.bayes_tree.check_invariants()
