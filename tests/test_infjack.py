import numpy as np
import pytest
from forestvar import (ConfigurationError, DataError, Ensemble, collect_predictions,
                       train_ensemble, var_ij)
from forestvar.infjack import calibrate_eb


def _friedman(n=60, seed=0):
    rng = np.random.default_rng(seed)
    X = rng.uniform(size=(n, 5))
    y = (10 * np.sin(np.pi * X[:, 0] * X[:, 1]) + 20 * (X[:, 2] - 0.5) ** 2
         + 10 * X[:, 3] + 5 * X[:, 4] + rng.normal(size=n))
    return X, y


@pytest.fixture(scope="module")
def bootstrap_forest():
    X, y = _friedman()
    ens = train_ensemble(X, y, mode="infjack", n_estimators=200, random_state=0)
    return X, ens


def test_hand_computed_variance():
    ens = Ensemble(trees=(None, None), inbag=np.array([[2, 0], [0, 2]]),
                   mode="infjack", task="regression", subsample_size=2, n_features=1)
    res = var_ij(np.array([[1.0], [3.0]]), ens)
    # raw sum of squared covariances is 2, the Monte Carlo correction 1
    assert res.estimate[0] == pytest.approx(2.0)
    assert res.variance[0] == pytest.approx(1.0)


def test_variances_defined_and_non_negative(bootstrap_forest):
    X, ens = bootstrap_forest
    res = var_ij(collect_predictions(ens, X[:30]), ens)
    assert res.method == "infjack"
    assert len(res) == 30
    assert not np.isnan(res.variance).any()
    assert np.all(res.variance >= 0)


def test_covariance_diagonal_equals_variance(bootstrap_forest):
    X, ens = bootstrap_forest
    matrix = collect_predictions(ens, X[:15])
    plain = var_ij(matrix, ens)
    full = var_ij(matrix, ens, covariance=True)
    np.testing.assert_allclose(np.diag(full.covariance), plain.variance, rtol=1e-10, atol=1e-12)
    np.testing.assert_allclose(full.covariance, full.covariance.T, atol=1e-12)


def test_calibration(bootstrap_forest):
    X, ens = bootstrap_forest
    matrix = collect_predictions(ens, X)
    res = var_ij(matrix, ens, covariance=True, calibrate=True, random_state=0)
    assert np.all(np.isfinite(res.variance))
    assert np.all(res.variance >= 0)
    np.testing.assert_array_equal(np.diag(res.covariance), res.variance)


def test_calibration_is_reproducible(bootstrap_forest):
    X, ens = bootstrap_forest
    matrix = collect_predictions(ens, X[:20])
    a = var_ij(matrix, ens, calibrate=True, random_state=4).variance
    b = var_ij(matrix, ens, calibrate=True, random_state=4).variance
    np.testing.assert_array_equal(a, b)


def test_calibration_without_noise_only_clips():
    v = np.array([-0.5, 0.2, 1.5])
    np.testing.assert_array_equal(calibrate_eb(v, 0.0), [0.0, 0.2, 1.5])


def test_calibration_ratio_must_exceed_one(bootstrap_forest):
    X, ens = bootstrap_forest
    with pytest.raises(ConfigurationError):
        var_ij(collect_predictions(ens, X[:5]), ens, calibrate=True, calibration_ratio=1)


def test_requires_infjack_ensemble():
    X, y = _friedman(n=40)
    ens = train_ensemble(X, y, mode="ustat", n_blocks=2, block_size=3, random_state=0)
    with pytest.raises(ConfigurationError):
        var_ij(collect_predictions(ens, X), ens)


def test_rejects_out_of_bag_and_missing_predictions(bootstrap_forest):
    X, ens = bootstrap_forest
    with pytest.raises(ConfigurationError):
        var_ij(collect_predictions(ens, X, oob=True), ens)
    T = collect_predictions(ens, X[:4]).values.copy()
    T[3, 1] = np.nan
    with pytest.raises(DataError):
        var_ij(T, ens)
    with pytest.raises(ConfigurationError):
        var_ij(T[:10], ens)


def test_classification_uses_probabilities():
    rng = np.random.default_rng(2)
    X = rng.uniform(size=(60, 3))
    y = (X[:, 0] + 0.4 * rng.normal(size=60) > 0.5).astype(int)
    ens = train_ensemble(X, y, mode="infjack", task="classification",
                         n_estimators=100, random_state=0)
    matrix = collect_predictions(ens, X[:10])
    res = var_ij(matrix, ens)
    np.testing.assert_allclose(res.estimate, matrix.probabilities.mean(axis=0))
    assert np.all((res.estimate >= 0) & (res.estimate <= 1))
    assert np.all(np.isfinite(res.variance))
