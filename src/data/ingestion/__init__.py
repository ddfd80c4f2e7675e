"""Raw season tables and artifact schema checks."""

from .providers import (
    HttpCsvSource,
    InMemorySource,
    LocalCsvSource,
    ProviderResult,
    SeasonData,
    SeasonDataHub,
)
from .validators import (
    assert_valid,
    validate_bt_features_payload,
    validate_diagnostics_payload,
    validate_model_payload,
    validate_predictions_payload,
)

__all__ = [
    "HttpCsvSource",
    "InMemorySource",
    "LocalCsvSource",
    "ProviderResult",
    "SeasonData",
    "SeasonDataHub",
    "assert_valid",
    "validate_bt_features_payload",
    "validate_diagnostics_payload",
    "validate_model_payload",
    "validate_predictions_payload",
]
