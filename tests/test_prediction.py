import numpy as np
import pytest
from forestvar import (ConfigurationError, DataError, PredictionMatrix, UndefinedPredictionWarning,
                       aggregate, collect_predictions, train_ensemble)


def _regression_data(n=40, p=3, seed=0):
    rng = np.random.default_rng(seed)
    X = rng.uniform(size=(n, p))
    y = 3 * X[:, 0] - 2 * X[:, 1] + rng.normal(scale=0.2, size=n)
    return X, y


def _reconstruct_oob(full: np.ndarray, inbag: np.ndarray) -> np.ndarray:
    out = np.full(full.shape[1], np.nan)
    for i in range(full.shape[1]):
        trees = np.flatnonzero(inbag[:, i] == 0)
        if trees.size:
            out[i] = full[trees, i].mean()
    return out


@pytest.mark.parametrize("mode, params", [
    ("ustat", dict(n_blocks=5, block_size=4, subsample_size=0.5)),
    ("infjack", dict(n_estimators=30)),
])
def test_oob_mean_matches_inbag_reconstruction(mode, params):
    X, y = _regression_data()
    ens = train_ensemble(X, y, mode=mode, random_state=0, **params)
    full = collect_predictions(ens, X).values
    oob = collect_predictions(ens, X, oob=True)
    assert oob.oob
    assert oob.shape == (ens.n_estimators, X.shape[0])
    np.testing.assert_array_equal(oob.counts, (ens.inbag == 0).sum(axis=0))
    res = aggregate(oob)
    np.testing.assert_allclose(res.prediction, _reconstruct_oob(full, ens.inbag), equal_nan=True)


def test_all_trees_matrix_is_complete():
    X, y = _regression_data()
    ens = train_ensemble(X, y, mode="ustat", n_blocks=3, block_size=4, random_state=1)
    matrix = collect_predictions(ens, X[:7])
    assert matrix.shape == (12, 7)
    assert matrix.mask.all()
    np.testing.assert_allclose(aggregate(matrix).prediction, matrix.values.mean(axis=0))


def test_parallel_collection_matches_serial():
    X, y = _regression_data()
    ens = train_ensemble(X, y, mode="infjack", n_estimators=16, random_state=2)
    serial = collect_predictions(ens, X, n_jobs=1).values
    threaded = collect_predictions(ens, X, n_jobs=4).values
    np.testing.assert_array_equal(serial, threaded)


def test_oob_requires_training_rows():
    X, y = _regression_data()
    ens = train_ensemble(X, y, mode="infjack", n_estimators=5, random_state=0)
    with pytest.raises(ConfigurationError):
        collect_predictions(ens, X[:10], oob=True)
    with pytest.raises(DataError):
        collect_predictions(ens, X[:, :2])


def test_undefined_prediction_warns():
    matrix = PredictionMatrix(values=np.array([[1.0, np.nan], [3.0, np.nan]]), oob=True)
    with pytest.warns(UndefinedPredictionWarning):
        res = aggregate(matrix)
    assert res.prediction[0] == 2.0
    assert np.isnan(res.prediction[1])
    np.testing.assert_array_equal(res.n_trees, [2, 0])


def test_classification_probabilities_and_labels():
    rng = np.random.default_rng(5)
    X = rng.uniform(size=(50, 2))
    y = np.where(X[:, 0] > 0.5, "yes", "no")
    ens = train_ensemble(X, y, mode="ustat", task="classification",
                         n_blocks=4, block_size=5, subsample_size=20, random_state=0)
    assert list(ens.classes) == ["no", "yes"]
    matrix = collect_predictions(ens, X)
    assert matrix.probabilities is not None
    assert set(np.unique(matrix.values)) <= {0.0, 1.0}
    np.testing.assert_array_equal(matrix.values, (matrix.probabilities > 0.5).astype(float))
    res = aggregate(matrix, ens.classes, individual_trees=True)
    assert res.matrix is matrix
    np.testing.assert_allclose(res.proba.sum(axis=1), 1.0)
    np.testing.assert_allclose(res.prediction, matrix.probabilities.mean(axis=0))
    assert set(res.label) <= {"no", "yes"}
    assert list(res.to_frame().columns) == ["prediction", "n_trees", "label"]
