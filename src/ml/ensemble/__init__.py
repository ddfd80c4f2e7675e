"""Out-of-fold stacking and blend-weight search."""

from .stacking import (
    MODEL_ORDER,
    StackResult,
    choose_fold_count,
    clamp_weights,
    enumerate_weights,
    fit_stack,
    grid_search_weights,
    kfold_indices,
)

__all__ = [
    "MODEL_ORDER",
    "StackResult",
    "choose_fold_count",
    "clamp_weights",
    "enumerate_weights",
    "fit_stack",
    "grid_search_weights",
    "kfold_indices",
]
