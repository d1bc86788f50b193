import numpy as np
import pytest
from forestvar import (ConfigurationError, Ensemble, UndefinedPredictionWarning,
                       collect_predictions, resolve_block_design, train_ensemble, var_u)


def _friedman(n=80, seed=0):
    rng = np.random.default_rng(seed)
    X = rng.uniform(size=(n, 5))
    y = (10 * np.sin(np.pi * X[:, 0] * X[:, 1]) + 20 * (X[:, 2] - 0.5) ** 2
         + 10 * X[:, 3] + 5 * X[:, 4] + rng.normal(size=n))
    return X, y


def _ustat_ensemble(n_blocks=10, block_size=20, seed=0):
    X, y = _friedman()
    ens = train_ensemble(X, y, mode="ustat", n_blocks=n_blocks, block_size=block_size,
                         random_state=seed)
    return X, ens


def _stub_ensemble(n_blocks, block_size, n_train=10, subsample_size=3):
    """An ensemble shell carrying only the block design, for hand-made matrices."""
    n_estimators = n_blocks * block_size
    return Ensemble(trees=(None,) * n_estimators,
                    inbag=np.zeros((n_estimators, n_train), dtype=np.int32),
                    mode="ustat", task="regression", subsample_size=subsample_size,
                    n_features=1, design=resolve_block_design(n_blocks=n_blocks,
                                                              block_size=block_size))


def test_hand_computed_components():
    ens = _stub_ensemble(n_blocks=2, block_size=2, n_train=10, subsample_size=3)
    T = np.array([[1.0], [3.0], [5.0], [7.0]])
    res = var_u(T, ens, separate=True)
    # block means 2 and 6: S = 8; within variance 2 per block, noise 2 / 2 = 1
    # zeta_1 = 7, zeta_k = 9
    assert res.estimate[0] == pytest.approx(4.0)
    assert res.sampling[0] == pytest.approx(9 / 10 * 7)
    assert res.internal[0] == pytest.approx(9 / 4)
    assert res.variance[0] == pytest.approx(6.3 + 2.25)


def test_negative_sampling_component_is_clipped():
    ens = _stub_ensemble(n_blocks=2, block_size=4)
    # identical block means, so the between-block spread is zero while the
    # within-block correction is positive
    T = np.array([0.0, 2.0, 0.0, 2.0, 2.0, 0.0, 2.0, 0.0]).reshape(-1, 1)
    res = var_u(T, ens, separate=True)
    assert res.sampling[0] == 0.0
    assert res.internal[0] == pytest.approx((-1 / 3 + 4 / 3) / 8)
    assert res.variance[0] == pytest.approx(0.125)
    cov = var_u(T, ens, covariance=True)
    assert cov.covariance[0, 0] == pytest.approx(0.125)


def test_constant_predictions_have_zero_variance():
    ens = _stub_ensemble(n_blocks=3, block_size=2)
    res = var_u(np.full((6, 4), 5.0), ens)
    np.testing.assert_array_equal(res.variance, np.zeros(4))
    np.testing.assert_array_equal(res.estimate, np.full(4, 5.0))


def test_covariance_diagonal_equals_variance():
    X, ens = _ustat_ensemble()
    matrix = collect_predictions(ens, X[:25])
    plain = var_u(matrix, ens, separate=True)
    full = var_u(matrix, ens, covariance=True, separate=True)
    np.testing.assert_array_equal(np.diag(full.covariance), full.variance)
    np.testing.assert_allclose(full.variance, plain.variance, rtol=1e-10, atol=1e-12)
    np.testing.assert_allclose(full.sampling, plain.sampling, rtol=1e-10, atol=1e-12)
    np.testing.assert_allclose(full.covariance, full.covariance.T)
    np.testing.assert_allclose(full.sampling_covariance + full.internal_covariance,
                               full.covariance)


def test_covariance_diagonal_equals_variance_out_of_bag():
    X, ens = _ustat_ensemble(seed=3)
    matrix = collect_predictions(ens, X, oob=True)
    plain = var_u(matrix, ens)
    full = var_u(matrix, ens, covariance=True, n_jobs=2)
    np.testing.assert_allclose(np.diag(full.covariance), plain.variance, rtol=1e-10, atol=1e-12)


def test_variances_non_negative_and_components_add_up():
    X, ens = _ustat_ensemble(seed=1)
    res = var_u(collect_predictions(ens, X, oob=True), ens, separate=True)
    assert not np.isnan(res.variance).any()
    assert np.all(res.variance >= 0)
    assert np.all(res.sampling >= 0)
    assert np.all(res.internal >= 0)
    np.testing.assert_allclose(res.sampling + res.internal, res.variance)


def test_fully_missing_target_is_undefined():
    ens = _stub_ensemble(n_blocks=2, block_size=2)
    T = np.array([[1.0, np.nan], [3.0, np.nan], [5.0, np.nan], [7.0, np.nan]])
    with pytest.warns(UndefinedPredictionWarning):
        res = var_u(T, ens)
    assert np.isnan(res.variance[1])
    assert np.isnan(res.estimate[1])
    assert res.variance[0] > 0


def test_requires_ustat_ensemble():
    X, y = _friedman(n=30)
    ens = train_ensemble(X, y, mode="infjack", n_estimators=10, random_state=0)
    with pytest.raises(ConfigurationError):
        var_u(collect_predictions(ens, X), ens)


def test_matrix_rows_must_match_trees():
    ens = _stub_ensemble(n_blocks=2, block_size=2)
    with pytest.raises(ConfigurationError):
        var_u(np.zeros((5, 3)), ens)
