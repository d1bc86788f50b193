# -*- coding: utf-8 -*-
"""
forestvar.forest
================

Estimator-style entry point tying the pieces together.  ``VarianceForest``
trains an :class:`~forestvar.ensemble.Ensemble`, eagerly computes its
out-of-bag predictions, and exposes prediction and both variance estimators
on the training set (all trees or out-of-bag) or on new data.
"""

from __future__ import annotations
from typing import Optional
import numpy as np
from sklearn.base import BaseEstimator

from .ensemble import train_ensemble, check_features
from .exceptions import ConfigurationError
from .infjack import var_ij
from .prediction import aggregate, collect_predictions
from .results import PredictionResult, VarianceResult
from .ustat import var_u


class VarianceForest(BaseEstimator):
    """
    Random forest with prediction-variance estimates.

    Parameters
    ----------
    mode : {"ustat", "infjack"}, default="ustat"
        ``"ustat"`` builds blocked, pivot-sharing subsamples and supports
        :meth:`var_u`; ``"infjack"`` builds bootstrap samples and supports
        :meth:`var_ij`.
    n_estimators : int, optional
        Number of trees (``ntree``).
    n_blocks : int, optional
        Number of blocks, each with its own pivot (``"ustat"`` only).
    block_size : int, optional
        Trees per block (``"ustat"`` only).  Two of ``n_estimators``,
        ``n_blocks`` and ``block_size`` are required in ``"ustat"`` mode.
    subsample_size : int or float, optional
        Rows per subsample; defaults to ``round(sqrt(n_train))``.
    pivot_size : int, default=1
        Rows shared by all trees of a block.
    task : {"regression", "classification"}, default="regression"
        Classification is binary only.
    criterion : {"mse", "gini"}, optional
        Split criterion; defaults by task.
    max_features : int, float, str or None, default="auto"
        Candidate features per node; ``"auto"`` is ``p / 3`` for regression
        and ``sqrt(p)`` for classification.
    min_samples_leaf : int, optional
        Minimum leaf weight; 5 for regression and 1 for classification.
    max_depth : int, optional
        Depth cap for each tree.
    n_jobs : int, optional
        Threads for fitting, prediction and covariance accumulation.  Tree
        growing is pure Python and gains less from threads than prediction
        and the numpy covariance work do.
    random_state : int or None
        Seed for bags and trees.
    verbose : int, default=0
        Forwarded to joblib.

    Attributes
    ----------
    ensemble_ : Ensemble
        Trained trees and in-bag counts.
    oob_matrix_ : PredictionMatrix
        Out-of-bag per-tree predictions on the training set.
    oob_prediction_ : ndarray of shape (n_train,)
        Out-of-bag point predictions (``NaN`` where no tree is out-of-bag).
    oob_proba_ : ndarray of shape (n_train, 2)
        Out-of-bag class probabilities (classification only).
    classes_ : ndarray or None
        Class labels (classification only).
    """

    def __init__(
        self,
        *,
        mode: str = "ustat",
        n_estimators: Optional[int] = None,
        n_blocks: Optional[int] = None,
        block_size: Optional[int] = None,
        subsample_size=None,
        pivot_size: int = 1,
        task: str = "regression",
        criterion: Optional[str] = None,
        max_features="auto",
        min_samples_leaf: Optional[int] = None,
        max_depth: Optional[int] = None,
        n_jobs: Optional[int] = None,
        random_state: Optional[int] = None,
        verbose: int = 0,
    ):
        self.mode = mode
        self.n_estimators = n_estimators
        self.n_blocks = n_blocks
        self.block_size = block_size
        self.subsample_size = subsample_size
        self.pivot_size = pivot_size
        self.task = task
        self.criterion = criterion
        self.max_features = max_features
        self.min_samples_leaf = min_samples_leaf
        self.max_depth = max_depth
        self.n_jobs = n_jobs
        self.random_state = random_state
        self.verbose = verbose

    def fit(self, X, y):
        X = check_features(X)
        self.ensemble_ = train_ensemble(
            X, y,
            mode=self.mode,
            n_estimators=self.n_estimators,
            n_blocks=self.n_blocks,
            block_size=self.block_size,
            subsample_size=self.subsample_size,
            pivot_size=self.pivot_size,
            task=self.task,
            criterion=self.criterion,
            max_features=self.max_features,
            min_samples_leaf=self.min_samples_leaf,
            max_depth=self.max_depth,
            n_jobs=self.n_jobs,
            random_state=self.random_state,
            verbose=self.verbose,
        )
        self.X_train_ = X
        self.classes_ = self.ensemble_.classes
        self.oob_matrix_ = collect_predictions(self.ensemble_, X, oob=True, n_jobs=self.n_jobs)
        oob = aggregate(self.oob_matrix_, self.classes_)
        self.oob_prediction_ = oob.prediction
        if self.classes_ is not None:
            self.oob_proba_ = oob.proba
        return self

    def _check_fitted(self):
        if getattr(self, "ensemble_", None) is None:
            raise ValueError("Estimator not fitted. Call fit(...) first.")

    def _matrix(self, X, oob: bool):
        if X is None:
            if oob:
                return self.oob_matrix_
            return collect_predictions(self.ensemble_, self.X_train_, n_jobs=self.n_jobs)
        if oob:
            raise ConfigurationError("oob=True only applies to the training set (X=None)")
        return collect_predictions(self.ensemble_, X, n_jobs=self.n_jobs)

    def predict(self, X, individual_trees: bool = False) -> PredictionResult:
        """
        Aggregate all trees on ``X``.

        Returns a :class:`PredictionResult`; with ``individual_trees=True`` it
        also carries the per-tree :class:`PredictionMatrix`.
        """
        self._check_fitted()
        matrix = collect_predictions(self.ensemble_, X, n_jobs=self.n_jobs)
        return aggregate(matrix, self.classes_, individual_trees=individual_trees)

    def predict_proba(self, X) -> np.ndarray:
        self._check_fitted()
        if self.classes_ is None:
            raise ConfigurationError("predict_proba is only available for task='classification'")
        return self.predict(X).proba

    def var_u(self, X=None, *, oob: bool = False, covariance: bool = False,
              separate: bool = False) -> VarianceResult:
        """U-statistics variance on ``X`` (training set when ``None``)."""
        self._check_fitted()
        return var_u(self._matrix(X, oob), self.ensemble_, covariance=covariance,
                     separate=separate, n_jobs=self.n_jobs)

    def var_ij(self, X=None, *, covariance: bool = False, calibrate: bool = False) -> VarianceResult:
        """Infinitesimal-jackknife variance on ``X`` (training set when ``None``)."""
        self._check_fitted()
        return var_ij(self._matrix(X, False), self.ensemble_, covariance=covariance,
                      calibrate=calibrate, random_state=self.random_state)


def forest(X, y, mode: str = "ustat", **params) -> VarianceForest:
    """Train a :class:`VarianceForest` and return it with its out-of-bag predictions."""
    return VarianceForest(mode=mode, **params).fit(X, y)


def predict(model: VarianceForest, X, individual_trees: bool = False) -> PredictionResult:
    """Aggregate predictions of a trained forest on ``X``."""
    return model.predict(X, individual_trees=individual_trees)
