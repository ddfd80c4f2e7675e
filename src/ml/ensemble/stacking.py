"""
Out-of-fold stacking for the four base learners.

Blend weights are chosen by exhaustive search over a quantised simplex,
minimising log-loss of the out-of-fold (OOF) blend, then clamped when the
training history is short and finally paired with a recalibration fit on
the OOF blend.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from ..calibration.calibration import LogitLinearCalibrator, log_loss

logger = logging.getLogger(__name__)

MODEL_ORDER = ("logistic", "tree", "bt", "ann")
UNIFORM_WEIGHTS = {name: 0.25 for name in MODEL_ORDER}


def kfold_indices(n: int, k: int) -> List[np.ndarray]:
    """Round-robin folds: row ``i`` belongs to fold ``i % k``."""
    if n <= 1:
        return [np.arange(n)]
    k = max(1, min(int(k), n))
    rows = np.arange(n)
    return [rows[rows % k == f] for f in range(k)]


def choose_fold_count(n: int, cap: int = 5) -> int:
    return max(1, min(5, int(cap), max(2, n // 6)))


def _step_count(step: float) -> int:
    return max(1, int(round(1.0 / float(step))))


def enumerate_weights(step: float = 0.05) -> Iterable[Dict[str, float]]:
    """
    Every simplex point over (logistic, tree, bt, ann) at the given step.

    Nested order is logistic, then tree, then bt; ann takes the remainder.
    Integer step counts keep every point summing to exactly 1.
    """
    steps = _step_count(step)
    for a in range(steps + 1):
        for b in range(steps + 1 - a):
            for c in range(steps + 1 - a - b):
                d = steps - a - b - c
                yield {
                    "logistic": a / steps,
                    "tree": b / steps,
                    "bt": c / steps,
                    "ann": d / steps,
                }


def blend(predictions: Mapping[str, np.ndarray], weights: Mapping[str, float]) -> np.ndarray:
    total = None
    for name in MODEL_ORDER:
        w = float(weights.get(name, 0.0))
        if name not in predictions:
            continue
        term = w * np.asarray(predictions[name], dtype=float)
        total = term if total is None else total + term
    if total is None:
        return np.zeros(0)
    return np.clip(total, 0.0, 1.0)


def grid_search_weights(
    oof: Mapping[str, Sequence[float]],
    labels: Sequence[float],
    step: float = 0.05,
    active: Optional[Sequence[str]] = None,
) -> Tuple[Dict[str, float], float]:
    """
    Minimise OOF log-loss over the weight grid.

    Args:
        oof: Model name -> OOF probabilities (missing models count as 0.5)
        labels: 0/1 outcomes
        step: Grid resolution
        active: When given, only points with zero weight outside these models are scored

    Returns:
        Tuple of (best weights, best log-loss); ties keep the first point found
    """
    y = np.asarray(labels, dtype=float)
    preds = {
        name: np.asarray(oof.get(name, np.full(len(y), 0.5)), dtype=float)
        for name in MODEL_ORDER
    }
    allowed = set(active) if active is not None else set(MODEL_ORDER)
    best, best_loss = dict(UNIFORM_WEIGHTS), float("inf")
    for weights in enumerate_weights(step):
        if any(weights[name] > 0 for name in MODEL_ORDER if name not in allowed):
            continue
        loss = log_loss(blend(preds, weights), y)
        if loss < best_loss:
            best, best_loss = weights, loss
    return best, best_loss


def clamp_weights(weights: Mapping[str, float], weeks: int) -> Dict[str, float]:
    """Halve ANN under 4 training weeks, scale logistic by 0.8 under 3, then renormalise."""
    out = {name: max(0.0, float(weights.get(name, 0.0))) for name in MODEL_ORDER}
    if weeks < 4:
        out["ann"] *= 0.5
    if weeks < 3:
        out["logistic"] *= 0.8
    total = sum(out.values())
    if total <= 0 or not np.isfinite(total):
        return dict(UNIFORM_WEIGHTS)
    return {name: value / total for name, value in out.items()}


def normalise_weights(source: Optional[Mapping]) -> Optional[Dict[str, float]]:
    """Positive finite weights rescaled to sum to 1, or ``None`` if nothing usable."""
    if not isinstance(source, Mapping):
        return None
    weights = {}
    for name in MODEL_ORDER:
        try:
            value = float(source.get(name, 0.0))
        except (TypeError, ValueError):
            value = 0.0
        weights[name] = value if np.isfinite(value) and value > 0 else 0.0
    total = sum(weights.values())
    if total <= 0:
        return None
    return {name: value / total for name, value in weights.items()}


FoldFitter = Callable[[np.ndarray, np.ndarray], np.ndarray]


def out_of_fold(
    fitters: Mapping[str, FoldFitter],
    n: int,
    folds: Sequence[np.ndarray],
) -> Dict[str, np.ndarray]:
    """
    OOF predictions for each model.

    ``fitters[name](train_idx, test_idx)`` fits a fresh learner on the
    training indices and returns probabilities for the test indices. Rows a
    fold cannot score (empty training side) stay at 0.5.
    """
    oof = {name: np.full(n, 0.5) for name in fitters}
    all_rows = np.arange(n)
    for test_idx in folds:
        train_idx = np.setdiff1d(all_rows, test_idx)
        if not len(train_idx) or not len(test_idx):
            continue
        for name, fitter in fitters.items():
            probs = np.asarray(fitter(train_idx, test_idx), dtype=float)
            oof[name][test_idx] = np.where(np.isfinite(probs), probs, 0.5)
    return oof


@dataclass
class StackResult:
    weights: Dict[str, float]
    raw_weights: Dict[str, float]
    oof_logloss: float
    calibrator: LogitLinearCalibrator
    oof_blend: np.ndarray
    oof_calibrated: np.ndarray
    folds: int = 0
    oof_variance: Dict[str, float] = field(default_factory=dict)


def fit_stack(
    oof: Mapping[str, np.ndarray],
    labels: Sequence[float],
    weeks: int,
    step: float = 0.05,
    folds: int = 0,
) -> StackResult:
    """Grid search, clamp and recalibrate on the OOF predictions."""
    y = np.asarray(labels, dtype=float)
    if not len(y):
        calibrator = LogitLinearCalibrator()
        return StackResult(
            weights=clamp_weights(UNIFORM_WEIGHTS, weeks),
            raw_weights=dict(UNIFORM_WEIGHTS),
            oof_logloss=float("nan"),
            calibrator=calibrator,
            oof_blend=np.zeros(0),
            oof_calibrated=np.zeros(0),
            folds=folds,
        )
    raw, loss = grid_search_weights(oof, y, step)
    weights = clamp_weights(raw, weeks)
    blended = blend(oof, weights)
    calibrator = LogitLinearCalibrator().fit(blended, y)
    logger.debug("Blend weights %s (raw %s), OOF log-loss %.4f", weights, raw, loss)
    return StackResult(
        weights=weights,
        raw_weights=raw,
        oof_logloss=loss,
        calibrator=calibrator,
        oof_blend=blended,
        oof_calibrated=calibrator.transform(blended),
        folds=folds,
        oof_variance={name: float(np.var(oof[name])) for name in MODEL_ORDER if name in oof},
    )
