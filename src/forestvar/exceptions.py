"""Exception and warning types raised by forestvar."""


class ConfigurationError(ValueError):
    """Sampling or estimator parameters that cannot be honoured.

    Raised when the ``(n_estimators, n_blocks, block_size)`` triple does not
    form an exact partition, when a mode or criterion is unknown, when the
    target is multi-class, or when a variance estimator is applied to an
    ensemble built under the wrong sampling discipline.
    """


class DataError(ValueError):
    """Non-finite, missing or mis-shaped training or target data."""


class UndefinedPredictionWarning(UserWarning):
    """An observation received no contributing trees.

    The affected prediction or variance is reported as ``NaN``.
    """
