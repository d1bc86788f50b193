"""Terminal result tables returned by prediction and the variance estimators."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd
from scipy.stats import norm


@dataclass(frozen=True)
class VarianceResult:
    """
    Point estimates and variances for a set of target observations.

    Attributes
    ----------
    estimate : ndarray of shape (n_target,)
        Mean over contributing trees.
    variance : ndarray of shape (n_target,)
        Estimated variance of ``estimate``; ``NaN`` where undefined.
    covariance : ndarray of shape (n_target, n_target) or None
        Full covariance matrix when requested.  Its diagonal is ``variance``.
    sampling, internal : ndarray of shape (n_target,) or None
        Components of ``variance`` (``separate=True`` with ``var_u``):
        variability from the finite training sample and Monte Carlo noise
        from the finite number of trees.
    sampling_covariance, internal_covariance : ndarray or None
        Matrix versions of the components when both ``separate`` and
        ``covariance`` were requested.
    method : str
        ``"ustat"`` or ``"infjack"``.
    """

    estimate: np.ndarray
    variance: np.ndarray
    method: str
    covariance: Optional[np.ndarray] = None
    sampling: Optional[np.ndarray] = None
    internal: Optional[np.ndarray] = None
    sampling_covariance: Optional[np.ndarray] = None
    internal_covariance: Optional[np.ndarray] = None

    def __len__(self) -> int:
        return self.estimate.shape[0]

    @property
    def std(self) -> np.ndarray:
        return np.sqrt(self.variance)

    def to_frame(self) -> pd.DataFrame:
        """One row per target observation, ready for tabular display."""
        cols = {"estimate": self.estimate, "variance": self.variance}
        if self.sampling is not None:
            cols["sampling"] = self.sampling
            cols["internal"] = self.internal
        return pd.DataFrame(cols)

    def confidence_interval(self, alpha: float = 0.05) -> pd.DataFrame:
        """Normal-theory ``1 - alpha`` intervals around ``estimate``."""
        if not 0.0 < alpha < 1.0:
            raise ValueError("alpha must be in (0, 1)")
        z = norm.ppf(1.0 - alpha / 2.0)
        half = z * self.std
        return pd.DataFrame({"estimate": self.estimate,
                             "lower": self.estimate - half,
                             "upper": self.estimate + half})


@dataclass(frozen=True)
class PredictionResult:
    """
    Aggregated ensemble predictions.

    Attributes
    ----------
    prediction : ndarray of shape (n_target,)
        Mean response, or mean positive-class probability for classification.
    proba : ndarray of shape (n_target, 2) or None
        Per-class mean probability (classification only).
    label : ndarray of shape (n_target,) or None
        Majority class (classification only).
    n_trees : ndarray of shape (n_target,)
        Number of contributing trees.
    matrix : PredictionMatrix or None
        Per-tree predictions when ``individual_trees=True``.
    """

    prediction: np.ndarray
    n_trees: np.ndarray
    proba: Optional[np.ndarray] = None
    label: Optional[np.ndarray] = None
    matrix: Optional[object] = None

    def __len__(self) -> int:
        return self.prediction.shape[0]

    def to_frame(self) -> pd.DataFrame:
        cols = {"prediction": self.prediction, "n_trees": self.n_trees}
        if self.label is not None:
            cols["label"] = self.label
        return pd.DataFrame(cols)
