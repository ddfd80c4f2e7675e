"""
Hybrid recalibration (``hybrid_v2``).

A second pass over already-trained weeks: re-derive blend weights from the
previous week's diagnostics, damp the ANN when its predictions have
collapsed, refit the recalibration on recent outcomes and write a
``forecast_hybrid_v2`` next to the original forecast.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd

from ..config import HybridConfig
from ..errors import MissingArtifactError
from ..ml.calibration.calibration import LogitLinearCalibrator
from ..ml.ensemble.stacking import MODEL_ORDER, UNIFORM_WEIGHTS, blend, normalise_weights
from ..predictors.base import safe_prob
from ..training.state import HYBRID_KEY, TrainingStateStore, utc_now
from .artifacts import ArtifactStore

logger = logging.getLogger(__name__)

HISTORY_COLUMNS = [
    "season", "week", "beta", "intercept", "method", "n_samples",
    "w_logistic", "w_tree", "w_bt", "w_ann", "weight_source", "ann_variance", "recorded_at",
]


@dataclass
class HybridResult:
    season: int
    week: int
    weights: Dict[str, float]
    calibration: Dict
    weight_source: str
    reused: bool = False
    n_games: int = 0


def derive_blend_weights(
    store: ArtifactStore,
    season: int,
    week: int,
    model: Optional[Mapping] = None,
) -> Tuple[Dict[str, float], str]:
    """Previous week's diagnostics weights, else the model's ensemble weights, else uniform."""
    previous = store.latest_before("diagnostics", season, week)
    if previous is not None:
        diagnostics = store.load("diagnostics", *previous) or {}
        weights = normalise_weights(diagnostics.get("blend_weights"))
        if weights:
            return weights, "previous_diagnostics"
    weights = normalise_weights(((model or {}).get("ensemble") or {}).get("weights"))
    if weights:
        return weights, "model"
    return dict(UNIFORM_WEIGHTS), "uniform"


def apply_diversity_guard(
    weights: Mapping[str, float],
    ann_variance: Optional[float],
    threshold: float = 0.01,
    cut: float = 0.4,
) -> Dict[str, float]:
    """
    Move ``cut`` of the ANN weight to the other learners when ANN predictions
    barely vary. The result is non-negative and sums to 1.
    """
    out = normalise_weights(weights) or dict(UNIFORM_WEIGHTS)
    if ann_variance is None or not np.isfinite(ann_variance) or ann_variance >= threshold:
        return out
    moved = out["ann"] * cut
    out["ann"] -= moved
    others = [name for name in MODEL_ORDER if name != "ann"]
    for name in others:
        out[name] += moved / len(others)
    total = sum(out.values())
    return {name: max(0.0, value) / total for name, value in out.items()}


def collect_calibration_samples(
    store: ArtifactStore,
    season: int,
    week: int,
    window: int = 5,
    weights: Optional[Mapping[str, float]] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    ``(p, y)`` pairs from the outcomes of the ``window`` weeks before the target.

    With ``weights`` the per-model probabilities are re-blended; otherwise
    the stored forecast probability is used.
    """
    earlier = [c for c in store.weeks("outcomes") if c < (int(season), int(week))]
    earlier = earlier[-int(window):] if window > 0 else []
    xs: List[float] = []
    ys: List[float] = []
    for coord in earlier:
        outcomes = store.load("outcomes", *coord) or {}
        for game in outcomes.get("games", []):
            actual = game.get("actual")
            if actual not in (0, 1):
                continue
            probs = game.get("probs") or {}
            if weights and all(probs.get(name) is not None for name in MODEL_ORDER):
                p = float(blend({k: np.array([probs[k]]) for k in MODEL_ORDER}, weights)[0])
            elif game.get("prob") is not None:
                p = float(game["prob"])
            else:
                continue
            xs.append(p)
            ys.append(float(actual))
    return np.array(xs, dtype=float), np.array(ys, dtype=float)


def fit_hybrid_calibration(x, y) -> LogitLinearCalibrator:
    """Logit-target OLS with ``beta >= 0``; no samples leaves beta 1, intercept 0."""
    x = np.asarray(x, dtype=float)
    if not len(x):
        return LogitLinearCalibrator()
    return LogitLinearCalibrator().fit(x, y)


def _ann_variance(store: ArtifactStore, season: int, week: int) -> Optional[float]:
    """Out-of-fold ANN variance, else the committee's variance on the target week."""
    diagnostics = store.load("diagnostics", season, week) or {}
    value = (diagnostics.get("oof_variance") or {}).get("ann")
    if value is None:
        value = (diagnostics.get("ann") or {}).get("prediction_variance")
    return None if value is None else float(value)


def append_calibration_history(store: ArtifactStore, result: HybridResult, ann_variance: Optional[float]) -> None:
    path = store.calibration_history_path(result.season)
    row = {
        "season": result.season,
        "week": result.week,
        "beta": result.calibration.get("beta"),
        "intercept": result.calibration.get("intercept"),
        "method": result.calibration.get("method"),
        "n_samples": result.calibration.get("n_samples", 0),
        **{f"w_{name}": result.weights.get(name) for name in MODEL_ORDER},
        "weight_source": result.weight_source,
        "ann_variance": ann_variance,
        "recorded_at": utc_now(),
    }
    frame = pd.DataFrame([row], columns=HISTORY_COLUMNS)
    if path.exists():
        history = pd.read_csv(path)
        history = history[~((history["season"] == result.season) & (history["week"] == result.week))]
        frame = pd.concat([history, frame], ignore_index=True)
    frame = frame.sort_values(["season", "week"]).reset_index(drop=True)
    path.parent.mkdir(parents=True, exist_ok=True)
    frame.to_csv(path, index=False)


def run_hybrid_recalibration(
    store: ArtifactStore,
    state_store: Optional[TrainingStateStore],
    season: int,
    week: int,
    config: Optional[HybridConfig] = None,
    force: bool = False,
    save_state: bool = True,
) -> HybridResult:
    """
    Recalibrate one week.

    Raises:
        MissingArtifactError: when the week's model or predictions file is absent
    """
    config = config or HybridConfig()
    force = force or config.force
    model = store.load("model", season, week)
    if model is None:
        raise MissingArtifactError(store.weekly_path("model", season, week), "model")
    predictions = store.load("predictions", season, week)
    if predictions is None:
        raise MissingArtifactError(store.weekly_path("predictions", season, week), "predictions")

    ensemble = model.setdefault("ensemble", {})
    cached = ensemble.get("hybrid_v2")
    ann_variance = _ann_variance(store, season, week)
    if cached and not force:
        weights = normalise_weights(cached.get("weights")) or dict(UNIFORM_WEIGHTS)
        calibrator = LogitLinearCalibrator.from_dict(cached.get("calibration"))
        source, reused = cached.get("weight_source", "cached"), True
    else:
        weights, source = derive_blend_weights(store, season, week, model)
        weights = apply_diversity_guard(weights, ann_variance, config.variance_threshold, config.ann_cut)
        x, y = collect_calibration_samples(store, season, week, config.window, weights)
        calibrator = fit_hybrid_calibration(x, y)
        reused = False

    games = predictions.get("games", [])
    for game in games:
        probs = game.get("probs") or {}
        pre = float(safe_prob(blend({k: np.array([probs.get(k, 0.5)]) for k in MODEL_ORDER}, weights))[0])
        post = float(safe_prob(calibrator.transform([pre]))[0])
        game["forecast_hybrid_v2"] = {"home_win_prob": post, "pre": pre}

    calibration = calibrator.to_dict()
    ensemble["hybrid_v2"] = {
        "weights": weights,
        "calibration": calibration,
        "weight_source": source,
        "ann_variance": ann_variance,
        "fitted_at": (cached or {}).get("fitted_at") if reused else utc_now(),
    }
    store.save("predictions", season, week, predictions)
    store.save("model", season, week, model)

    result = HybridResult(season, week, weights, calibration, source, reused=reused, n_games=len(games))
    append_calibration_history(store, result, ann_variance)
    if state_store is not None:
        state_store.record_latest_run(HYBRID_KEY, season, week)
        if save_state:
            state_store.save()
    logger.info(
        "hybrid_v2 %s W%02d: beta=%.3f intercept=%.3f (%s weights%s)",
        season, week, calibration["beta"], calibration["intercept"], source, ", cached" if reused else "",
    )
    return result


def run_hybrid_bootstrap(
    store: ArtifactStore,
    state_store: TrainingStateStore,
    config: Optional[HybridConfig] = None,
    force: bool = False,
) -> List[HybridResult]:
    """Recalibrate every week that has both a model and predictions, then mark coverage."""
    predicted = set(store.weeks("predictions"))
    targets = [c for c in store.weeks("model") if c in predicted]
    results = [
        run_hybrid_recalibration(store, state_store, s, w, config, force=force, save_state=False)
        for s, w in targets
    ]
    coverage: Dict[int, List[int]] = {}
    for s, w in targets:
        coverage.setdefault(s, []).append(w)
    if coverage:
        state_store.mark_completed(
            HYBRID_KEY, seasons=[{"season": s, "weeks": w} for s, w in sorted(coverage.items())]
        )
        last = max(coverage)
        state_store.record_latest_run(
            HYBRID_KEY, last, max(coverage[last]),
            by_season={str(s): max(w) for s, w in coverage.items()},
        )
    state_store.save()
    return results
