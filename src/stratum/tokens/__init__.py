"""Token estimation."""

from stratum.tokens.estimator import TokenEstimator

__all__ = ["TokenEstimator"]
