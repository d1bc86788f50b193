# forestvar/__init__.py
"""
forestvar: variance estimates for random-forest predictions.

Exports:
    - VarianceForest, forest, predict
    - train_ensemble, Ensemble
    - collect_predictions, PredictionMatrix
    - var_u (incomplete U-statistics), var_ij (infinitesimal jackknife)
    - DecisionTree
"""
from .design import BlockDesign, resolve_block_design
from .ensemble import Ensemble, train_ensemble
from .exceptions import ConfigurationError, DataError, UndefinedPredictionWarning
from .forest import VarianceForest, forest, predict
from .infjack import var_ij
from .prediction import PredictionMatrix, aggregate, collect_predictions
from .results import PredictionResult, VarianceResult
from .tree import DecisionTree
from .ustat import var_u

__all__ = [
    "BlockDesign",
    "ConfigurationError",
    "DataError",
    "DecisionTree",
    "Ensemble",
    "PredictionMatrix",
    "PredictionResult",
    "UndefinedPredictionWarning",
    "VarianceForest",
    "VarianceResult",
    "aggregate",
    "collect_predictions",
    "forest",
    "predict",
    "resolve_block_design",
    "train_ensemble",
    "var_ij",
    "var_u",
]
__version__ = "0.1.0"
