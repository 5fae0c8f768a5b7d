"""Building profile estimates."""

from cmmcalc.estimator.profiles import BuildingProfileEstimator

__all__ = ["BuildingProfileEstimator"]
