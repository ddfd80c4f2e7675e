"""Persistent training state, replay markers and concurrency limits."""

from .limiter import AsyncLimiter
from .state import (
    BOOTSTRAP_KEYS,
    CURRENT_BOOTSTRAP_REVISION,
    HYBRID_KEY,
    MODEL_KEY,
    TrainingStateStore,
    load_training_state,
    mark_bootstrap_completed,
    record_bootstrap_chunk,
    record_latest_run,
    refresh_training_state_from_artifacts,
    save_training_state,
    should_run_historical_bootstrap,
)
from .status import StatusMarkers

__all__ = [
    "AsyncLimiter",
    "BOOTSTRAP_KEYS",
    "CURRENT_BOOTSTRAP_REVISION",
    "HYBRID_KEY",
    "MODEL_KEY",
    "StatusMarkers",
    "TrainingStateStore",
    "load_training_state",
    "mark_bootstrap_completed",
    "record_bootstrap_chunk",
    "record_latest_run",
    "refresh_training_state_from_artifacts",
    "save_training_state",
    "should_run_historical_bootstrap",
]
