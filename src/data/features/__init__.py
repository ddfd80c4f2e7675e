"""Feature builders and the ordered feature registries."""

from .differential import BT_FEATURES, DIFFERENTIAL_FEATURES, build_differential_features
from .registry import FeatureExtractor, FeatureRegistry, feature_hash, safe_float
from .team_game import FEATURES, TEAM_FEATURES, build_features

__all__ = [
    "BT_FEATURES",
    "DIFFERENTIAL_FEATURES",
    "FEATURES",
    "FeatureExtractor",
    "FeatureRegistry",
    "TEAM_FEATURES",
    "build_differential_features",
    "build_features",
    "feature_hash",
    "safe_float",
]
