"""
Incomplete U-statistics variance for subsampled (``ustat``) ensembles.

Trees come in blocks that share a pivot subsample.  Within a block the trees
differ only through the rest of their subsample and their own randomness, so
the spread of a block around its mean measures single-tree noise, while the
spread of the block means measures how much the prediction moves with the
shared data.  With ``n`` training rows, subsample size ``k`` and ``c`` trees
contributing to a target::

    zeta_1   = Var(block means) - mean_b Var_within_b / L_b
    zeta_k   = zeta_1 + mean_b Var_within_b
    sampling = k**2 / n * zeta_1
    internal = zeta_k / c

``variance = sampling + internal``.  The same quantities are computed
pairwise for the covariance matrix.  Entries that are ``NaN`` in the input
(out-of-bag mode) are left out of every mean, block by block.

The correction ``- mean_b Var_within_b / L_b`` removes the within-block noise
carried by the block means and can push ``sampling`` below zero on small
ensembles.  Negative sampling variances are clipped to zero, which trades the
unbiasedness of the raw estimator for a valid variance.
"""
from __future__ import annotations

import logging
from typing import Optional
from warnings import warn

import numpy as np
from joblib import Parallel, delayed, effective_n_jobs

from .ensemble import Ensemble
from .exceptions import ConfigurationError, DataError, UndefinedPredictionWarning
from .prediction import PredictionMatrix
from .results import VarianceResult

__all__ = ["var_u"]

logger = logging.getLogger(__name__)


def _estimates_matrix(matrix, ensemble: Ensemble) -> np.ndarray:
    if isinstance(matrix, PredictionMatrix):
        T = matrix.estimates
    else:
        T = np.asarray(matrix, dtype=float)
    if T.ndim != 2:
        raise DataError("prediction matrix must be 2-D (n_estimators, n_target)")
    if T.shape[0] != ensemble.n_estimators:
        raise ConfigurationError(
            f"prediction matrix has {T.shape[0]} rows but the ensemble has "
            f"{ensemble.n_estimators} trees")
    return T


def _safe_div(a, b, where) -> np.ndarray:
    out = np.full(np.broadcast(a, b).shape, np.nan)
    np.divide(a, b, out=out, where=where)
    return out


def _block_cov_sums(Zb: np.ndarray, Mb: np.ndarray):
    """Sum the within-block covariances (and their noise on block means) over a chunk of blocks."""
    m = Zb.shape[2]
    w_sum = np.zeros((m, m))
    e_sum = np.zeros((m, m))
    n_valid = np.zeros((m, m))
    for Z, M in zip(Zb, Mb):
        N = M.T @ M
        valid = N >= 2
        within = _safe_div(Z.T @ Z, N - 1.0, valid)
        w_sum += np.where(valid, within, 0.0)
        e_sum += np.where(valid, _safe_div(within, N, valid), 0.0)
        n_valid += valid
    return w_sum, e_sum, n_valid


def var_u(matrix, ensemble: Ensemble, *, covariance: bool = False, separate: bool = False,
          n_jobs: Optional[int] = None) -> VarianceResult:
    """
    U-statistics variance of the averaged ensemble prediction.

    Parameters
    ----------
    matrix : PredictionMatrix or ndarray of shape (n_estimators, n_target)
        Per-tree predictions.  For classification the positive-class
        probabilities are used.
    ensemble : Ensemble
        A ``mode="ustat"`` ensemble; its block design defines the blocks.
    covariance : bool, default=False
        Also return the full ``(n_target, n_target)`` covariance matrix.
    separate : bool, default=False
        Also return the ``sampling`` and ``internal`` components.
    n_jobs : int, optional
        Threads used for the pairwise block accumulation.

    Returns
    -------
    VarianceResult
    """
    if ensemble.mode != "ustat" or ensemble.design is None:
        raise ConfigurationError("var_u needs an ensemble trained with mode='ustat'")
    T = _estimates_matrix(matrix, ensemble)
    design = ensemble.design
    n_blocks, block_size = design.n_blocks, design.block_size
    n_target = T.shape[1]
    scale = ensemble.subsample_size ** 2 / ensemble.n_train

    mask = ~np.isnan(T)
    Tz = np.where(mask, T, 0.0)
    counts = mask.sum(axis=0)
    estimate = _safe_div(Tz.sum(axis=0), counts, counts > 0)

    # block moments: (n_blocks, block_size, n_target)
    Tb = Tz.reshape(n_blocks, block_size, n_target)
    Mb = mask.reshape(n_blocks, block_size, n_target)
    cb = Mb.sum(axis=1)
    means = _safe_div(Tb.sum(axis=1), cb, cb > 0)
    Zb = np.where(Mb, Tb - means[:, None, :], 0.0)

    vb = cb > 0
    nb = vb.sum(axis=0)
    grand = _safe_div(np.where(vb, means, 0.0).sum(axis=0), nb, nb > 0)
    D = np.where(vb, means - grand, 0.0)

    if covariance:
        Mf = Mb.astype(float)
        n_chunks = min(n_blocks, effective_n_jobs(n_jobs))
        chunks = np.array_split(np.arange(n_blocks), n_chunks)
        parts = Parallel(n_jobs=n_jobs, backend="threading")(
            delayed(_block_cov_sums)(Zb[c], Mf[c]) for c in chunks)
        w_sum = sum(p[0] for p in parts)
        e_sum = sum(p[1] for p in parts)
        n_valid = sum(p[2] for p in parts)

        vbf = vb.astype(float)
        P = vbf.T @ vbf
        S = _safe_div(D.T @ D, P - 1.0, P >= 2)
        W = _safe_div(w_sum, n_valid, n_valid > 0)
        E = _safe_div(e_sum, n_valid, n_valid > 0)

        maskf = mask.astype(float)
        N_all = maskf.T @ maskf
        pair = np.outer(counts, counts).astype(float)
        zeta_1 = S - E
        sampling_cov = scale * zeta_1
        internal_cov = _safe_div((zeta_1 + W) * N_all, pair, pair > 0)

        diag = np.diag_indices(n_target)
        n_clipped = int(np.sum(sampling_cov[diag] < 0))
        sampling_cov[diag] = np.maximum(sampling_cov[diag], 0.0)
        cov = sampling_cov + internal_cov
        variance = cov[diag].copy()
        sampling = sampling_cov[diag].copy()
        internal = internal_cov[diag].copy()
    else:
        valid = cb >= 2
        within = _safe_div((Zb ** 2).sum(axis=1), cb - 1.0, valid)
        noise = _safe_div(within, cb, valid)
        n_valid = valid.sum(axis=0)
        W = _safe_div(np.where(valid, within, 0.0).sum(axis=0), n_valid, n_valid > 0)
        E = _safe_div(np.where(valid, noise, 0.0).sum(axis=0), n_valid, n_valid > 0)
        S = _safe_div((D ** 2).sum(axis=0), nb - 1.0, nb >= 2)

        zeta_1 = S - E
        raw_sampling = scale * zeta_1
        n_clipped = int(np.sum(raw_sampling < 0))
        sampling = np.maximum(raw_sampling, 0.0)
        internal = _safe_div(zeta_1 + W, counts, counts > 0)
        variance = sampling + internal
        cov = sampling_cov = internal_cov = None

    logger.debug("var_u on %s matrix: %d sampling variance(s) clipped at zero", T.shape, n_clipped)
    n_undefined = int(np.isnan(variance).sum())
    if n_undefined:
        warn(f"{n_undefined} observation(s) lack enough contributing trees or blocks; "
             "their variance is NaN", UndefinedPredictionWarning, stacklevel=2)

    return VarianceResult(
        estimate=estimate,
        variance=variance,
        method="ustat",
        covariance=cov,
        sampling=sampling if separate else None,
        internal=internal if separate else None,
        sampling_covariance=sampling_cov if (separate and covariance) else None,
        internal_covariance=internal_cov if (separate and covariance) else None,
    )
