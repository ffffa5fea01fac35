"""Feature gating utilities backed by subscription state."""
from .enforcement import FeatureAccess, FeatureDecision, evaluate_feature
from .exceptions import FeatureGateError

__all__ = [
    "FeatureAccess",
    "FeatureDecision",
    "FeatureGateError",
    "evaluate_feature",
]
