"""Ensemble construction under subsample (``ustat``) or bootstrap (``infjack``) bags."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Tuple

import numpy as np
from joblib import Parallel, delayed
from sklearn.utils import check_random_state

from .design import Block, BlockDesign, resolve_block_design
from .exceptions import ConfigurationError, DataError
from .sampling import draw_bootstrap, draw_subsamples, resolve_subsample_size
from .tree import DecisionTree

__all__ = ["Ensemble", "train_ensemble", "check_features"]

logger = logging.getLogger(__name__)

MAX_INT = np.iinfo(np.int32).max

MODES = {"ustat": "subsample", "infjack": "bootstrap"}
TASKS = ("regression", "classification")


def _isnan_scalar(v: Any) -> bool:
    if v is None:
        return True
    try:
        return bool(np.isnan(v))
    except (TypeError, ValueError):
        return False


def check_features(X) -> np.ndarray:
    """Return ``X`` as a finite 2-D float array or raise :class:`DataError`."""
    try:
        X = np.asarray(X, dtype=float)
    except (TypeError, ValueError) as e:
        raise DataError("X must be numeric; encode categorical predictors as numbers") from e
    if X.ndim != 2:
        raise DataError(f"X must be a 2-D array, got {X.ndim} dimension(s)")
    if not np.all(np.isfinite(X)):
        raise DataError("X contains NaN or infinite values")
    return X


def _check_response(y, n: int, task: str):
    y = np.asarray(y)
    if y.ndim != 1 or y.shape[0] != n:
        raise DataError(f"y must be 1-D with {n} entries to match X")
    if any(_isnan_scalar(v) for v in y):
        raise DataError("y contains missing values")

    if task == "regression":
        try:
            y = y.astype(float)
        except (TypeError, ValueError) as e:
            raise DataError("regression response must be numeric") from e
        if not np.all(np.isfinite(y)):
            raise DataError("y contains infinite values")
        return y, None

    classes = np.unique(y)
    if classes.size > 2:
        raise ConfigurationError(
            f"only binary classification is supported; y has {classes.size} classes")
    if classes.size < 2:
        raise ConfigurationError("classification needs two classes in y")
    return (y == classes[1]).astype(float), classes


@dataclass(frozen=True)
class Ensemble:
    """
    A trained, read-only tree ensemble.

    Attributes
    ----------
    trees : tuple of DecisionTree
        Trees in construction order.
    inbag : ndarray of shape (n_estimators, n_train)
        In-bag counts (0/1 for subsamples, multiplicities for bootstrap).
        The array is not writeable.
    mode : {"ustat", "infjack"}
        Sampling discipline the ensemble was built under.
    task : {"regression", "classification"}
    subsample_size : int
        Rows per bag (``n_train`` under bootstrap).
    design : BlockDesign or None
        Block partition of the trees (``ustat`` only).
    pivots : ndarray of shape (n_blocks, pivot_size) or None
        Rows shared by every tree of a block (``ustat`` only).
    classes : ndarray of shape (2,) or None
        Original labels; ``classes[1]`` is the positive class.
    """

    trees: Tuple[DecisionTree, ...]
    inbag: np.ndarray
    mode: str
    task: str
    subsample_size: int
    n_features: int
    design: Optional[BlockDesign] = None
    pivots: Optional[np.ndarray] = None
    classes: Optional[np.ndarray] = None

    @property
    def n_estimators(self) -> int:
        return len(self.trees)

    @property
    def n_train(self) -> int:
        return self.inbag.shape[1]

    @property
    def sampling(self) -> str:
        return MODES[self.mode]

    @property
    def is_classifier(self) -> bool:
        return self.task == "classification"

    @property
    def oob_mask(self) -> np.ndarray:
        return self.inbag == 0

    def block_table(self) -> Tuple[Block, ...]:
        if self.design is None:
            raise ConfigurationError("block structure only exists for mode='ustat' ensembles")
        return self.design.table(self.pivots)


def _fit_tree(X, y, counts, params, seed):
    return DecisionTree(random_state=seed, **params).fit(X, y, sample_weight=counts)


def train_ensemble(X, y, *,
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
                   random_state=None,
                   verbose: int = 0) -> Ensemble:
    """
    Grow ``n_estimators`` trees, each on its own resampled bag.

    Parameters
    ----------
    X : array-like of shape (n_train, n_features)
        Numeric features.
    y : array-like of shape (n_train,)
        Continuous response, or binary labels when ``task="classification"``.
    mode : {"ustat", "infjack"}, default="ustat"
        ``"ustat"`` draws pivot-sharing subsamples without replacement;
        ``"infjack"`` draws bootstrap samples of size ``n_train``.
    n_estimators, n_blocks, block_size : int, optional
        For ``"ustat"`` two of the three are required and
        ``n_estimators = n_blocks * block_size``.  For ``"infjack"`` only
        ``n_estimators`` is accepted.
    subsample_size : int or float, optional
        Bag size for ``"ustat"``; defaults to ``round(sqrt(n_train))``.
    pivot_size : int, default=1
        Rows shared by all trees of a block.
    task : {"regression", "classification"}, default="regression"
    criterion : {"mse", "gini"}, optional
        Defaults to ``"mse"`` for regression and ``"gini"`` for classification.
    max_features : int, float, str or None, default="auto"
        Candidate features per node; ``"auto"`` is ``p / 3`` for regression
        and ``sqrt(p)`` for classification.
    min_samples_leaf : int, optional
        Defaults to 5 for regression and 1 for classification.
    max_depth : int, optional
    n_jobs : int, optional
        Number of threads used to fit trees.  Tree growing is pure Python and
        holds the GIL for most of its work, so extra threads mainly overlap
        the numpy sorting and prefix sums; the result does not depend on
        ``n_jobs``.
    random_state : int, RandomState or None
    verbose : int, default=0
        Forwarded to :class:`joblib.Parallel`.

    Returns
    -------
    Ensemble
    """
    if mode not in MODES:
        raise ConfigurationError(f"mode must be one of {sorted(MODES)}, got {mode!r}")
    if task not in TASKS:
        raise ConfigurationError(f"task must be one of {TASKS}, got {task!r}")

    X = check_features(X)
    n_train, n_features = X.shape
    y_coded, classes = _check_response(y, n_train, task)

    classification = task == "classification"
    if criterion is None:
        criterion = "gini" if classification else "mse"
    if max_features == "auto":
        max_features = "sqrt" if classification else "third"
    if min_samples_leaf is None:
        min_samples_leaf = 1 if classification else 5
    tree_params = dict(criterion=criterion, max_features=max_features,
                       min_samples_leaf=min_samples_leaf, max_depth=max_depth)

    random_state = check_random_state(random_state)
    bag_seed = random_state.randint(MAX_INT)

    design = None
    pivots = None
    if mode == "infjack":
        if n_blocks is not None or block_size is not None:
            raise ConfigurationError("n_blocks and block_size only apply to mode='ustat'")
        if subsample_size is not None:
            raise ConfigurationError("subsample_size only applies to mode='ustat'; "
                                     "bootstrap bags always have n_train draws")
        if n_estimators is None or n_estimators < 1:
            raise ConfigurationError("mode='infjack' needs a positive n_estimators")
        n_estimators = int(n_estimators)
        k = n_train
        inbag = draw_bootstrap(n_train, n_estimators, random_state=bag_seed)
        logger.info("Fitting %d bootstrap trees on %d rows", n_estimators, n_train)
    else:
        design = resolve_block_design(n_estimators, n_blocks, block_size)
        n_estimators = design.n_estimators
        k = resolve_subsample_size(n_train, subsample_size)
        inbag, pivots = draw_subsamples(n_train, k, design, pivot_size=pivot_size,
                                        random_state=bag_seed)
        pivots.setflags(write=False)
        logger.info("Fitting %d subsampled trees on %d rows: %d blocks of %d, "
                    "subsample_size=%d, pivot_size=%d",
                    n_estimators, n_train, design.n_blocks, design.block_size, k, pivot_size)

    tree_seeds = random_state.randint(MAX_INT, size=n_estimators)

    # Bags are fixed before the parallel loop; each task only reads X, y and its own row.
    trees = Parallel(n_jobs=n_jobs, verbose=verbose, backend="threading")(
        delayed(_fit_tree)(X, y_coded, inbag[t], tree_params, tree_seeds[t])
        for t in range(n_estimators))

    inbag.setflags(write=False)
    ensemble = Ensemble(trees=tuple(trees), inbag=inbag, mode=mode, task=task,
                        subsample_size=k, n_features=n_features, design=design,
                        pivots=pivots, classes=classes)
    logger.debug("Built %d %s trees, mean leaves per tree %.1f",
                 ensemble.n_estimators, ensemble.sampling,
                 float(np.mean([t.n_leaves_ for t in trees])))
    return ensemble
