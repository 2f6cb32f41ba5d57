from .distance import MEAN_EARTH_RADIUS_METERS, haversine_meters
from .policy import (
    DEFAULT_POLICY,
    EligibilityPolicy,
    enforce_eligibility,
    evaluate_eligibility,
)

__all__ = [
    "DEFAULT_POLICY",
    "EligibilityPolicy",
    "MEAN_EARTH_RADIUS_METERS",
    "enforce_eligibility",
    "evaluate_eligibility",
    "haversine_meters",
]
