"""Warm starts from previously persisted models."""

from __future__ import annotations

import logging
from typing import Dict, Optional, Sequence, Tuple

import numpy as np

from ..temporal import is_before
from ..training.status import StatusMarkers
from .artifacts import ArtifactStore

logger = logging.getLogger(__name__)


def load_logistic_warm_start(
    store: ArtifactStore,
    season: int,
    week: int,
    features: Sequence[str],
) -> Optional[Tuple[np.ndarray, float]]:
    """
    Initial logistic weights from the latest model artifact before ``(season, week)``.

    Weights are matched by feature name; features the previous model did
    not have start at 0.

    Returns:
        ``(weights, bias)`` in ``features`` order, or ``None`` when no prior model exists
    """
    previous = store.latest_before("model", season, week)
    if previous is None:
        return None
    payload = store.load("model", *previous)
    logistic = ((payload or {}).get("models") or {}).get("logistic") or {}
    names = logistic.get("features") or []
    weights = logistic.get("weights") or []
    if not names or len(names) != len(weights):
        return None
    by_name = dict(zip(names, weights))
    init = np.array([float(by_name.get(name, 0.0)) for name in features], dtype=float)
    init = np.where(np.isfinite(init), init, 0.0)
    bias = float(logistic.get("bias", 0.0))
    logger.debug("Logistic warm start from model %s W%02d (%d shared features)",
                 previous[0], previous[1], sum(1 for n in features if n in by_name))
    return init, bias if np.isfinite(bias) else 0.0


def load_ann_warm_start(
    markers: StatusMarkers,
    store: ArtifactStore,
    season: int,
    week: int,
    features: Sequence[str],
) -> Optional[Dict]:
    """
    The checkpointed ANN committee, else the latest prior model's, when features match.

    A checkpoint saved at or after ``(season, week)`` is ignored so that a
    replay never starts from weights that have seen the target week.
    """
    candidates = []
    checkpoint = markers.load_ann_checkpoint()
    if checkpoint is not None:
        artifact, saved_at = checkpoint
        if is_before((season, week), saved_at):
            candidates.append(artifact)
        else:
            logger.debug("ANN checkpoint from %s W%02d is not before %s W%02d; ignoring",
                         saved_at[0], saved_at[1], season, week)
    previous = store.latest_before("model", season, week)
    if previous is not None:
        ann = (((store.load("model", *previous) or {}).get("models")) or {}).get("ann")
        if ann:
            candidates.append(ann)
    for artifact in candidates:
        if list(artifact.get("features") or []) == list(features) and artifact.get("committees"):
            return artifact
    return None
