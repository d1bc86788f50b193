"""
Infinitesimal-jackknife variance for bootstrapped (``infjack``) ensembles.

For target ``x`` the raw estimate is::

    V_IJ(x) = sum_i Cov_t(N_ti, T_t(x))**2

where ``N_ti`` is the number of times tree ``t`` drew training row ``i`` and
``T_t(x)`` the tree's prediction.  With ``B`` trees this estimate carries a
Monte Carlo upward bias of about ``n * v_N * Var_t(T_t(x)) / B`` (``v_N`` is
the variance of the in-bag counts, close to 1 under the bootstrap), which is
subtracted.  Negative results are clipped to zero.

Optionally the bias-corrected estimates are shrunk by empirical Bayes: a
prior on the true variances is fitted by deconvolving the estimates with
their Monte Carlo noise, and each estimate is replaced by its posterior mean.
"""
from __future__ import annotations

import logging
from typing import Tuple

import numpy as np
from scipy.optimize import minimize
from scipy.signal import fftconvolve
from scipy.stats import norm
from sklearn.utils import check_random_state

from .ensemble import Ensemble
from .exceptions import ConfigurationError, DataError
from .prediction import PredictionMatrix
from .results import VarianceResult

__all__ = ["var_ij", "calibrate_eb", "gfit"]

logger = logging.getLogger(__name__)


def _ij_variance(T: np.ndarray, inbag: np.ndarray, covariance: bool) -> np.ndarray:
    """Bias-corrected (unclipped) IJ variance, or covariance matrix."""
    n_trees, n_train = inbag.shape
    inbag = inbag.astype(float)
    D = T - T.mean(axis=0)
    C = (inbag - inbag.mean(axis=0)).T @ D / n_trees
    n_var = float(inbag.var(axis=0).mean())
    correction = n_train * n_var / n_trees ** 2
    if covariance:
        return C.T @ C - correction * (D.T @ D)
    return (C ** 2).sum(axis=0) - correction * (D ** 2).sum(axis=0)


def gfit(X, sigma: float, p: int = 5, nbin: int = 200,
         unif_fraction: float = 0.1) -> Tuple[np.ndarray, np.ndarray]:
    """
    Fit an empirical-Bayes prior to noisy variance estimates.

    The prior lives on a grid over the positive half-line with log-density
    a degree-``p`` polynomial (no constant term), mixed with a uniform
    component of weight ``unif_fraction``.  Observations are modelled as
    prior draws plus ``N(0, sigma**2)`` noise.

    Parameters
    ----------
    X : array-like of shape (n,)
        Noisy estimates.
    sigma : float
        Noise standard deviation.
    p : int, default=5
        Degree of the log-polynomial.
    nbin : int, default=200
        Grid size.
    unif_fraction : float, default=0.1
        Weight of the uniform component.

    Returns
    -------
    xvals : ndarray of shape (nbin,)
        Grid.
    g : ndarray of shape (nbin,)
        Prior probability of each grid point.
    """
    X = np.asarray(X, dtype=float)
    sd = float(np.std(X, ddof=1))
    min_x = min(X.min() - 2 * sd, 0.0)
    max_x = max(X.max() + 2 * sd, sd)
    xvals = np.linspace(min_x, max_x, nbin)
    binw = (max_x - min_x) / (nbin - 1)

    # kernel centred so that fftconvolve(..., mode="same") aligns index offsets
    offsets = (np.arange(nbin) - (nbin - 1) // 2) * binw
    noise_kernel = norm.pdf(offsets / sigma) * binw / sigma

    positive = (xvals > 0).astype(float)
    basis = np.column_stack([xvals ** e * positive for e in range(1, p + 1)])
    uniform = positive / positive.sum()

    def _prior(eta):
        g_raw = np.exp(basis @ eta) * positive
        total = g_raw.sum()
        if not np.isfinite(total) or total <= 100 * np.finfo(float).tiny:
            return None
        return (1 - unif_fraction) * g_raw / total + unif_fraction * uniform

    def neg_loglik(eta):
        g = _prior(eta)
        if g is None:
            return 1000 * (X.size + np.sum(eta ** 2))
        f = fftconvolve(g, noise_kernel, mode="same")
        return np.sum(np.interp(X, xvals, -np.log(np.maximum(f, 1e-7))))

    eta_hat = minimize(neg_loglik, np.full(p, -1.0)).x
    g = _prior(eta_hat)
    if g is None:
        g = uniform
    return xvals, g


def _gbayes(x0: float, xvals: np.ndarray, g: np.ndarray, sigma: float) -> float:
    post = norm.pdf((xvals - x0) / sigma) * g
    total = post.sum()
    if total <= 0:
        return max(float(x0), 0.0)
    return float(np.sum(post * xvals) / total)


def calibrate_eb(variances, sigma2: float) -> np.ndarray:
    """
    Empirical-Bayes calibration of noisy variance estimates.

    Each estimate is replaced by its posterior mean under the prior fitted by
    :func:`gfit`.  With 200 or more estimates the posterior is evaluated on
    every second percentile and linearly interpolated.  When ``sigma2`` is
    not positive or all estimates coincide the estimates are only clipped at
    zero.
    """
    variances = np.asarray(variances, dtype=float)
    if not np.isfinite(sigma2) or sigma2 <= 0 or variances.min() == variances.max():
        return np.maximum(variances, 0.0)
    sigma = float(np.sqrt(sigma2))
    xvals, g = gfit(variances, sigma)
    if variances.size >= 200:
        grid = np.percentile(variances, np.arange(0, 102, 2))
        calib = np.array([_gbayes(x, xvals, g, sigma) for x in grid])
        return np.interp(variances, grid, calib)
    return np.array([_gbayes(x, xvals, g, sigma) for x in variances])


def var_ij(matrix, ensemble: Ensemble, *, covariance: bool = False, calibrate: bool = False,
           calibration_ratio: float = 2, random_state=None) -> VarianceResult:
    """
    Infinitesimal-jackknife variance of the averaged ensemble prediction.

    Parameters
    ----------
    matrix : PredictionMatrix or ndarray of shape (n_estimators, n_target)
        Predictions of every tree (not out-of-bag).  For classification the
        positive-class probabilities are used.
    ensemble : Ensemble
        A ``mode="infjack"`` ensemble; its in-bag counts are the resampling
        weights.
    covariance : bool, default=False
        Also return the full covariance matrix.  Its diagonal is the
        returned variance, calibrated when ``calibrate=True``.
    calibrate : bool, default=False
        Apply empirical-Bayes calibration (:func:`calibrate_eb`).
    calibration_ratio : float, default=2
        The Monte Carlo noise level used by the calibration is measured by
        re-estimating on ``ceil(n_estimators / calibration_ratio)`` trees.
    random_state : int, RandomState or None
        Seed for the calibration tree subset.

    Returns
    -------
    VarianceResult
    """
    if ensemble.mode != "infjack":
        raise ConfigurationError("var_ij needs an ensemble trained with mode='infjack'")
    if isinstance(matrix, PredictionMatrix):
        if matrix.oob:
            raise ConfigurationError("var_ij needs predictions from every tree, not out-of-bag ones")
        T = matrix.estimates
    else:
        T = np.asarray(matrix, dtype=float)
    if T.ndim != 2 or T.shape[0] != ensemble.n_estimators:
        raise ConfigurationError(
            f"prediction matrix must have shape ({ensemble.n_estimators}, n_target), got {T.shape}")
    if not np.all(np.isfinite(T)):
        raise DataError("prediction matrix contains NaN; var_ij needs every tree's prediction")

    inbag = ensemble.inbag
    n_trees = T.shape[0]
    estimate = T.mean(axis=0)

    raw = _ij_variance(T, inbag, covariance)
    raw_var = np.diag(raw).copy() if covariance else raw
    n_clipped = int(np.sum(raw_var < 0))
    variance = np.maximum(raw_var, 0.0)

    if calibrate:
        if calibration_ratio <= 1:
            raise ConfigurationError("calibration_ratio must be greater than 1")
        n_sub = int(np.ceil(n_trees / calibration_ratio))
        if n_sub >= n_trees:
            raise ConfigurationError(f"too few trees ({n_trees}) to calibrate")
        rs = check_random_state(random_state)
        sub = rs.choice(n_trees, n_sub, replace=False)
        sub_var = _ij_variance(T[sub], inbag[sub], False)
        delta = n_sub / n_trees
        sigma2 = ((delta ** 2 + (1 - delta) ** 2) / (2 * (1 - delta) ** 2)
                  * float(np.mean((sub_var - raw_var) ** 2)))
        logger.debug("IJ calibration on %d/%d trees, sigma2=%.3g", n_sub, n_trees, sigma2)
        variance = calibrate_eb(raw_var, sigma2)

    cov = None
    if covariance:
        cov = raw
        cov[np.diag_indices_from(cov)] = variance

    logger.debug("var_ij on %s matrix: %d variance(s) clipped at zero", T.shape, n_clipped)
    return VarianceResult(estimate=estimate, variance=variance, method="infjack", covariance=cov)
