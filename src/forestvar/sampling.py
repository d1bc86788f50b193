"""Per-tree bag generation.

Bags are drawn up front, before any tree is fitted, from a single random
stream.  Each bag is returned as a row of in-bag counts so that the same
matrix serves out-of-bag masking and the infinitesimal jackknife.
"""
from __future__ import annotations

import numbers
from typing import Tuple

import numpy as np
from sklearn.utils import check_random_state

from .design import BlockDesign
from .exceptions import ConfigurationError


def resolve_subsample_size(n_samples: int, subsample_size=None) -> int:
    """
    Number of rows drawn without replacement for each subsampled tree.

    Parameters
    ----------
    n_samples : int
        Number of training rows.
    subsample_size : int, float or None
        - if None, ``round(sqrt(n_samples))``;
        - if int, the exact number of rows;
        - if float, a fraction of ``n_samples`` in ``(0, 1]``.

    Returns
    -------
    int
    """
    if subsample_size is None:
        return max(1, int(round(np.sqrt(n_samples))))

    if isinstance(subsample_size, numbers.Integral) and not isinstance(subsample_size, bool):
        if not (1 <= subsample_size <= n_samples):
            msg = "`subsample_size` must be in range 1 to {} but got value {}"
            raise ConfigurationError(msg.format(n_samples, subsample_size))
        return int(subsample_size)

    if isinstance(subsample_size, numbers.Real):
        if not (0 < subsample_size <= 1):
            msg = "`subsample_size` must be in range (0, 1] but got value {}"
            raise ConfigurationError(msg.format(subsample_size))
        return max(1, int(round(n_samples * subsample_size)))

    msg = "`subsample_size` should be int or float, but got type '{}'"
    raise ConfigurationError(msg.format(type(subsample_size)))


def draw_bootstrap(n_samples: int, n_estimators: int, random_state=None) -> np.ndarray:
    """In-bag counts of shape ``(n_estimators, n_samples)`` for bootstrap bags."""
    rs = check_random_state(random_state)
    inbag = np.empty((n_estimators, n_samples), dtype=np.int32)
    for t in range(n_estimators):
        inbag[t] = np.bincount(rs.randint(0, n_samples, n_samples), minlength=n_samples)
    return inbag


def draw_subsamples(n_samples: int, subsample_size: int, design: BlockDesign,
                    pivot_size: int = 1, random_state=None) -> Tuple[np.ndarray, np.ndarray]:
    """
    Pivot-sharing subsamples for a blocked ensemble.

    Every block draws a fresh pivot of ``pivot_size`` rows.  Each tree in the
    block then takes the pivot plus ``subsample_size - pivot_size`` further
    distinct rows from the remainder, so any two trees of a block share at
    least the pivot.

    Returns
    -------
    inbag : ndarray of shape (n_estimators, n_samples)
        0/1 membership.
    pivots : ndarray of shape (n_blocks, pivot_size)
        Row indices of each block's pivot.
    """
    if not (1 <= pivot_size < subsample_size):
        raise ConfigurationError(
            f"pivot_size must be in [1, subsample_size), got pivot_size={pivot_size}, "
            f"subsample_size={subsample_size}")
    if subsample_size > n_samples:
        raise ConfigurationError(
            f"subsample_size={subsample_size} exceeds the {n_samples} training rows")

    rs = check_random_state(random_state)
    n_rest = subsample_size - pivot_size
    inbag = np.zeros((design.n_estimators, n_samples), dtype=np.int32)
    pivots = np.empty((design.n_blocks, pivot_size), dtype=np.intp)
    all_rows = np.arange(n_samples)
    for b, sl in enumerate(design.slices()):
        pivot = rs.choice(n_samples, pivot_size, replace=False)
        pivots[b] = np.sort(pivot)
        rest = np.setdiff1d(all_rows, pivot, assume_unique=True)
        for t in range(sl.start, sl.stop):
            inbag[t, pivot] = 1
            inbag[t, rest[rs.choice(rest.size, n_rest, replace=False)]] = 1
    return inbag, pivots
