# -*- coding: utf-8 -*-
"""
forestvar.tree
==============

CART-style binary decision tree used as the base learner of every ensemble.

The tree is grown greedily on a weighted subset of the training rows.  Bags
are passed in as ``sample_weight`` (in-bag counts), so rows with zero weight
never influence a split and bootstrap multiplicities act as replicated rows.
Two split criteria are available:

``"mse"``
    Weighted sum of squared errors, ``sum w (y - mean)^2``.
``"gini"``
    Weighted Gini impurity for labels coded 0/1.  For binary labels this is
    ``2 * sum w p (1 - p)``, i.e. exactly twice the MSE criterion on the same
    0/1 response, so both criteria order candidate splits identically.

Leaves store the weighted mean response; for a 0/1 response that mean is the
probability of the positive class.
"""

# -----------------------------------------------------------------------------

from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional
import numbers
import numpy as np
from sklearn.base import BaseEstimator
from sklearn.utils import check_random_state

from .exceptions import ConfigurationError, DataError

CRITERIA = ("mse", "gini")

# ----------------------------- Helpers -----------------------------

def _wsse(sw, sy, sy2):
    # SSE = sum w*y^2 - (sum w*y)^2 / (sum w); works on scalars and prefix-sum arrays
    return sy2 - sy * sy / sw

def _wgini(sw, sy, sy2):
    # 0/1 labels: sum_k w p_k (1 - p_k) over two classes = 2 (sy - sy^2 / sw),
    # and sy2 == sy there, so this is twice the SSE of the same sums
    return 2.0 * _wsse(sw, sy, sy2)

_CRITERION_FUNCS = {"mse": _wsse, "gini": _wgini}


def _check_binary_coded(y: np.ndarray) -> None:
    if not np.all((y == 0.0) | (y == 1.0)):
        raise DataError("criterion='gini' expects a response coded as 0/1")


def node_impurity(y, criterion: str = "mse", sample_weight=None) -> float:
    """
    Per-unit-weight impurity of a single node.

    Parameters
    ----------
    y : array-like of shape (n_samples,)
        Node response.  Must be coded 0/1 for ``criterion="gini"``.
    criterion : {"mse", "gini"}, default="mse"
        ``"mse"`` gives the weighted variance of ``y``; ``"gini"`` gives the
        binary Gini index ``2 p (1 - p)``.
    sample_weight : array-like of shape (n_samples,), optional
        Observation weights; defaults to ones.

    Returns
    -------
    float
        The impurity.  On a 0/1 response the Gini value is exactly twice the
        MSE value.
    """
    if criterion not in _CRITERION_FUNCS:
        raise ConfigurationError(f"criterion must be one of {CRITERIA}, got {criterion!r}")
    y = np.asarray(y, dtype=float)
    w = np.ones_like(y) if sample_weight is None else np.asarray(sample_weight, dtype=float)
    if criterion == "gini":
        _check_binary_coded(y)
    sw = float(w.sum())
    if sw <= 0.0:
        return 0.0
    total = _CRITERION_FUNCS[criterion](sw, float((w * y).sum()), float((w * y * y).sum()))
    return float(total / sw)

# ----------------------------- Node -----------------------------

@dataclass
class TreeNode:
    is_leaf: bool
    value: float
    weight: float
    impurity: float
    feature_index: Optional[int] = None
    threshold: Optional[float] = None
    left: Optional['TreeNode'] = None
    right: Optional['TreeNode'] = None

    @property
    def n_leaves(self) -> int:
        if self.is_leaf:
            return 1
        return self.left.n_leaves + self.right.n_leaves

    @property
    def depth(self) -> int:
        if self.is_leaf:
            return 0
        return 1 + max(self.left.depth, self.right.depth)

# ----------------------------- Tree -----------------------------

class DecisionTree(BaseEstimator):
    r"""
    DecisionTree(criterion="mse", max_depth=None, min_samples_split=2,
                 min_samples_leaf=1, max_features=None, random_state=None)

    A binary regression / probability tree with a scikit-learn–style API.

    **Core behavior**

    - **Split criterion**: weighted **SSE reduction** (``"mse"``) or weighted
      binary **Gini reduction** (``"gini"``).  Thresholds are evaluated at
      midpoints between distinct sorted values of each candidate feature.
    - **Bags**: ``sample_weight`` holds in-bag counts.  Rows with zero weight
      are ignored; counts greater than one act as replicated rows.
    - **Pre-pruning**: ``min_samples_split`` and ``min_samples_leaf`` are
      enforced on effective (summed) weight; ``max_depth`` caps depth.
    - **Feature subsampling**: ``max_features`` candidate features are drawn
      afresh at every node, as in a random forest.

    Parameters
    ----------
    criterion : {"mse", "gini"}, default="mse"
        Split criterion.  ``"gini"`` requires a 0/1-coded response.
    max_depth : int, optional
        Maximum depth of the tree; unbounded when ``None``.
    min_samples_split : int, default=2
        Minimum effective weight at a node to allow splitting.
    min_samples_leaf : int, default=1
        Minimum effective weight required in each child after the split.
    max_features : int, float, {"sqrt", "third"} or None, default=None
        Number of candidate features per node.  ``None`` uses all features,
        a float is a fraction of them, ``"sqrt"`` and ``"third"`` give
        ``sqrt(p)`` and ``p / 3`` (at least one).
    random_state : int, optional
        Seed for the per-node feature draws.

    Attributes
    ----------
    tree_ : TreeNode
        Root of the trained tree.
    n_features_ : int
        Number of columns seen during fit.
    max_features_ : int
        Resolved number of candidate features per node.
    n_leaves_ : int
        Number of leaves.
    depth_ : int
        Depth of the deepest leaf.
    """

    def __init__(self,
                 criterion: str = "mse",
                 max_depth: Optional[int] = None,
                 min_samples_split: int = 2,
                 min_samples_leaf: int = 1,
                 max_features=None,
                 random_state: Optional[int] = None):
        self.criterion = criterion
        self.max_depth = max_depth
        self.min_samples_split = min_samples_split
        self.min_samples_leaf = min_samples_leaf
        self.max_features = max_features
        self.random_state = random_state

        self.tree_: Optional[TreeNode] = None

    # ----------------------------- Public API -----------------------------

    def fit(self, X, y, sample_weight: Optional[np.ndarray] = None):
        X = np.asarray(X, dtype=float)
        y = np.asarray(y, dtype=float)
        if X.ndim != 2:
            raise DataError("X must be a 2-D array")
        n, m = X.shape
        if y.shape != (n,):
            raise DataError("y must be 1-D with the same length as X")
        if not (np.all(np.isfinite(X)) and np.all(np.isfinite(y))):
            raise DataError("X and y must not contain NaN or infinite values")
        if sample_weight is None:
            w = np.ones(n, dtype=float)
        else:
            w = np.asarray(sample_weight, dtype=float)
            if w.shape != (n,):
                raise DataError("sample_weight must have same length as y")
            if np.any(w < 0) or not np.all(np.isfinite(w)):
                raise DataError("sample_weight must be finite and non-negative")

        if self.criterion not in _CRITERION_FUNCS:
            raise ConfigurationError(f"criterion must be one of {CRITERIA}, got {self.criterion!r}")
        if self.criterion == "gini":
            _check_binary_coded(y)
        if self.min_samples_leaf <= 0:
            raise ConfigurationError("min_samples_leaf must be positive")
        if self.max_depth is not None and self.max_depth < 0:
            raise ConfigurationError("max_depth must be non-negative or None")

        rows = np.flatnonzero(w > 0)
        if rows.size == 0:
            raise DataError("sample_weight selects no rows")

        self.n_features_ = m
        self.max_features_ = self._resolve_max_features(m)
        self._rng = check_random_state(self.random_state)
        self._impurity = _CRITERION_FUNCS[self.criterion]

        self.tree_ = self._build_tree(X, y, w, rows, depth=0)
        self.n_leaves_ = self.tree_.n_leaves
        self.depth_ = self.tree_.depth
        return self

    def predict(self, X):
        if self.tree_ is None:
            raise ValueError("Estimator not fitted. Call fit(...) first.")
        X = np.asarray(X, dtype=float)
        if X.ndim != 2 or X.shape[1] != self.n_features_:
            raise DataError(f"X must be 2-D with {self.n_features_} columns")
        out = np.empty(X.shape[0], dtype=float)
        self._route(self.tree_, X, np.arange(X.shape[0]), out)
        return out

    def export_rules(self, feature_names: Optional[List[str]] = None) -> List[str]:
        """
        Export all decision rules in the fitted tree.

        Each rule describes a path from the root to a leaf and reports the
        leaf value along with its effective weight.

        Parameters
        ----------
        feature_names : list[str], optional
            Names for the input features; ``X[j]`` is used when omitted.

        Returns
        -------
        list[str]
            Rule strings of the form
            ``"<antecedent> => value=<prediction> (N=<weight>)"``.
        """
        if self.tree_ is None:
            raise ValueError("Estimator not fitted. Call fit(...) first.")
        rules: List[str] = []
        self._collect_rules(self.tree_, [], rules, feature_names)
        return rules

    # ----------------------------- Growing -----------------------------

    def _resolve_max_features(self, m: int) -> int:
        mf = self.max_features
        if mf is None:
            return m
        if mf == "sqrt":
            return max(1, int(np.sqrt(m)))
        if mf == "third":
            return max(1, m // 3)
        if isinstance(mf, numbers.Integral) and not isinstance(mf, bool):
            if not 1 <= mf <= m:
                raise ConfigurationError(f"max_features must be in [1, {m}], got {mf}")
            return int(mf)
        if isinstance(mf, numbers.Real) and 0.0 < mf <= 1.0:
            return max(1, int(mf * m))
        raise ConfigurationError(f"invalid max_features: {mf!r}")

    def _build_tree(self, X: np.ndarray, y: np.ndarray, w: np.ndarray,
                    rows: np.ndarray, depth: int) -> TreeNode:
        ww = w[rows]
        yy = y[rows]
        sw = float(ww.sum())
        value = float((ww * yy).sum()) / sw
        # split sums are taken on the response centred at the node mean
        yc = yy - value
        parent = float(self._impurity(sw, float((ww * yc).sum()), float((ww * yc * yc).sum())))
        node = TreeNode(is_leaf=True, value=value, weight=sw, impurity=parent / sw)

        if sw < self.min_samples_split:
            return node
        if self.max_depth is not None and depth >= self.max_depth:
            return node
        if np.all(yy == yy[0]):
            return node

        best = self._best_split(X, rows, yc, ww, parent)
        if best is None:
            return node
        j, thr = best

        go_left = X[rows, j] <= thr
        if go_left.all() or not go_left.any():
            return node
        node.is_leaf = False
        node.feature_index = j
        node.threshold = thr
        node.left = self._build_tree(X, y, w, rows[go_left], depth + 1)
        node.right = self._build_tree(X, y, w, rows[~go_left], depth + 1)
        return node

    def _best_split(self, X: np.ndarray, rows: np.ndarray, yr: np.ndarray, wr: np.ndarray,
                    parent: float):
        m = self.n_features_
        if self.max_features_ < m:
            features = np.sort(self._rng.choice(m, self.max_features_, replace=False))
        else:
            features = np.arange(m)

        msl = float(self.min_samples_leaf)
        best = None
        best_gain = 0.0
        for j in features:
            col = X[rows, j]
            order = np.argsort(col, kind="mergesort")
            v = col[order]
            wk = wr[order]
            yk = yr[order]

            # prefix sums
            sw = np.cumsum(wk)
            sy = np.cumsum(wk * yk)
            sy2 = np.cumsum(wk * yk * yk)
            SW = sw[-1]; SY = sy[-1]; SY2 = sy2[-1]

            # candidates at boundaries where value changes
            b = np.nonzero(v[:-1] != v[1:])[0]
            if b.size == 0:
                continue
            swL = sw[b]
            swR = SW - swL
            ok = (swL >= msl) & (swR >= msl)
            if not ok.any():
                continue
            b = b[ok]
            swL = swL[ok]; swR = swR[ok]
            syL = sy[b];   syR = SY - syL
            sy2L = sy2[b]; sy2R = SY2 - sy2L

            gain = parent - (self._impurity(swL, syL, sy2L) + self._impurity(swR, syR, sy2R))
            i = int(np.argmax(gain))
            if gain[i] > best_gain:
                best_gain = float(gain[i])
                lo, hi = v[b[i]], v[b[i] + 1]
                thr = 0.5 * (lo + hi)
                # adjacent floats: the midpoint rounds onto the upper value
                if thr >= hi:
                    thr = lo
                best = (int(j), float(thr))
        return best

    # ----------------------------- Prediction -----------------------------

    def _route(self, node: TreeNode, X: np.ndarray, idx: np.ndarray, out: np.ndarray) -> None:
        if node.is_leaf:
            out[idx] = node.value
            return
        go_left = X[idx, node.feature_index] <= node.threshold
        left = idx[go_left]
        right = idx[~go_left]
        if left.size:
            self._route(node.left, X, left, out)
        if right.size:
            self._route(node.right, X, right, out)

    def _collect_rules(self, node: TreeNode, parts: List[str], rules: List[str], fn=None):
        if node.is_leaf:
            antecedent = " AND ".join(parts) if parts else "<root>"
            rules.append(f"{antecedent} => value={node.value:.6g} (N={node.weight:.2f})")
            return
        name = (fn[node.feature_index] if (fn is not None and node.feature_index < len(fn))
                else f"X[{node.feature_index}]")
        self._collect_rules(node.left, parts + [f"{name} <= {node.threshold:.6g}"], rules, fn)
        self._collect_rules(node.right, parts + [f"{name} > {node.threshold:.6g}"], rules, fn)
