"""Per-tree prediction matrices and their aggregation."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional
from warnings import warn

import numpy as np
from joblib import Parallel, delayed

from .ensemble import Ensemble, check_features
from .exceptions import ConfigurationError, DataError, UndefinedPredictionWarning
from .results import PredictionResult

__all__ = ["PredictionMatrix", "collect_predictions", "aggregate"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PredictionMatrix:
    """
    Raw predictions of every tree for every target observation.

    ``values[t, i]`` is tree ``t``'s prediction for target ``i``, or ``NaN``
    when the tree does not contribute (its bag contained the row and
    out-of-bag mode was requested).  For classification ``values`` holds the
    0/1 vote of each tree and ``probabilities`` the positive-class
    probability it was derived from.
    """

    values: np.ndarray
    oob: bool = False
    probabilities: Optional[np.ndarray] = None

    @property
    def shape(self):
        return self.values.shape

    @property
    def estimates(self) -> np.ndarray:
        """The matrix the variance estimators consume."""
        return self.values if self.probabilities is None else self.probabilities

    @property
    def mask(self) -> np.ndarray:
        return ~np.isnan(self.values)

    @property
    def counts(self) -> np.ndarray:
        return self.mask.sum(axis=0)


def collect_predictions(ensemble: Ensemble, X, *, oob: bool = False,
                        n_jobs: Optional[int] = None) -> PredictionMatrix:
    """
    Evaluate every tree of ``ensemble`` on ``X``.

    Parameters
    ----------
    ensemble : Ensemble
    X : array-like of shape (n_target, n_features)
    oob : bool, default=False
        Keep only out-of-bag contributions.  ``X`` must then be the training
        matrix, row for row.
    n_jobs : int, optional
        Threads used to evaluate trees.

    Returns
    -------
    PredictionMatrix
        Shape ``(n_estimators, n_target)``.
    """
    X = check_features(X)
    if X.shape[1] != ensemble.n_features:
        raise DataError(f"X has {X.shape[1]} columns, the ensemble expects {ensemble.n_features}")
    if oob and X.shape[0] != ensemble.n_train:
        raise ConfigurationError(
            "out-of-bag predictions need the training matrix as target "
            f"({ensemble.n_train} rows), got {X.shape[0]} rows")

    rows = Parallel(n_jobs=n_jobs, backend="threading")(
        delayed(tree.predict)(X) for tree in ensemble.trees)
    raw = np.vstack(rows)
    if oob:
        raw = np.where(ensemble.oob_mask, raw, np.nan)
    logger.debug("Collected %s prediction matrix (oob=%s)", raw.shape, oob)

    if ensemble.is_classifier:
        votes = np.where(np.isnan(raw), np.nan, (raw > 0.5).astype(float))
        return PredictionMatrix(values=votes, oob=oob, probabilities=raw)
    return PredictionMatrix(values=raw, oob=oob)


def aggregate(matrix: PredictionMatrix, classes=None, *,
              individual_trees: bool = False) -> PredictionResult:
    """
    Average the contributing trees of each target observation.

    Observations without any contributing tree get ``NaN`` and trigger a
    single :class:`UndefinedPredictionWarning`.
    """
    est = matrix.estimates
    counts = matrix.counts
    sums = np.nansum(est, axis=0)
    prediction = np.full(est.shape[1], np.nan)
    np.divide(sums, counts, out=prediction, where=counts > 0)

    undefined = counts == 0
    if undefined.any():
        warn(f"{int(undefined.sum())} observation(s) have no contributing trees; "
             "their predictions are NaN", UndefinedPredictionWarning, stacklevel=2)

    proba = None
    label = None
    if classes is not None:
        proba = np.column_stack([1.0 - prediction, prediction])
        label = np.asarray(classes)[(prediction > 0.5).astype(int)]
        if undefined.any():
            label = label.astype(object)
            label[undefined] = None
    return PredictionResult(prediction=prediction, n_trees=counts, proba=proba, label=label,
                            matrix=matrix if individual_trees else None)
