"""
Grid search for ANN and Bradley-Terry hyperparameters.

Provides:
- tune_ann: epochs x dropout grid scored by fold-averaged log-loss
- tune_bt: learning rate x L2 grid for the paired-comparison model
- load_model_params / save_model_params: ``model_params.json`` persistence
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence

import numpy as np

from ...data.features.differential import DIFFERENTIAL_FEATURES
from ...predictors.ann import AnnCommittee
from ...predictors.bradley_terry import BradleyTerryLearner
from ..calibration.calibration import log_loss
from ..ensemble.stacking import choose_fold_count, kfold_indices

logger = logging.getLogger(__name__)

PARAMS_FILENAME = "model_params.json"

ANN_EPOCH_GRID = [100, 200, 300, 400, 500]
ANN_DROPOUT_GRID = [0.2, 0.35, 0.5]
BT_LR_GRID = [1e-3, 2.5e-3, 5e-3, 1e-2]
BT_L2_GRID = [1e-5, 5e-5, 1e-4, 1e-3]


@dataclass
class CVResult:
    """Fold-averaged score for one grid point."""

    params: Dict
    log_loss: float


@dataclass
class TuningResult:
    """Result of one grid search."""

    best_params: Dict
    best_score: float
    cv_results: List[CVResult] = field(default_factory=list)
    n_trials: int = 0
    timed_out: bool = False

    def to_dict(self) -> Dict:
        return {
            "best_params": dict(self.best_params),
            "best_score": self.best_score if np.isfinite(self.best_score) else None,
            "n_trials": self.n_trials,
            "timed_out": self.timed_out,
            "trials": [
                {**asdict(r), "log_loss": r.log_loss if np.isfinite(r.log_loss) else None}
                for r in self.cv_results
            ],
        }


def cross_validated_logloss(
    n: int,
    labels: np.ndarray,
    fit_predict: Callable[[np.ndarray, np.ndarray], np.ndarray],
    k: int = 3,
) -> float:
    """Average held-out log-loss over round-robin folds."""
    folds = kfold_indices(n, choose_fold_count(n, cap=k))
    rows = np.arange(n)
    scores = []
    for test_idx in folds:
        train_idx = np.setdiff1d(rows, test_idx)
        if not len(train_idx) or not len(test_idx):
            continue
        probs = fit_predict(train_idx, test_idx)
        scores.append(log_loss(probs, labels[test_idx]))
    return float(np.mean(scores)) if scores else float("inf")


def grid_search(
    grid: Sequence[Dict],
    score: Callable[[Dict], float],
    time_limit: Optional[float] = None,
    defaults: Optional[Dict] = None,
) -> TuningResult:
    """
    Score each grid point in order, keeping the first best.

    Args:
        grid: Parameter dicts to evaluate
        score: Callable returning a loss for a parameter dict
        time_limit: Wall-clock budget in seconds; remaining points are skipped once exceeded
        defaults: Returned when no point could be scored

    Returns:
        TuningResult
    """
    started = time.monotonic()
    result = TuningResult(best_params=dict(defaults or {}), best_score=float("inf"))
    for params in grid:
        if time_limit and time.monotonic() - started > time_limit:
            result.timed_out = True
            logger.info("Hyperparameter search stopped after %d trials (time limit)", result.n_trials)
            break
        loss = score(params)
        result.n_trials += 1
        result.cv_results.append(CVResult(params=dict(params), log_loss=float(loss)))
        if np.isfinite(loss) and loss < result.best_score:
            result.best_params, result.best_score = dict(params), float(loss)
    return result


def tune_ann(
    X: np.ndarray,
    y: np.ndarray,
    features: Sequence[str],
    base_params: Optional[Mapping] = None,
    time_limit: Optional[float] = 20.0,
    k: int = 3,
) -> TuningResult:
    """Search ANN ``max_epochs`` x ``dropout``."""
    base = dict(base_params or {})
    base.setdefault("seeds", 1)
    y = np.asarray(y, dtype=float)
    grid = [{"max_epochs": e, "dropout": d} for e in ANN_EPOCH_GRID for d in ANN_DROPOUT_GRID]

    def score(params: Dict) -> float:
        def fit_predict(train_idx, test_idx):
            model = AnnCommittee(features=features, **{**base, **params})
            return model.fit(X[train_idx], y[train_idx]).predict_proba(X[test_idx])

        return cross_validated_logloss(len(y), y, fit_predict, k)

    defaults = {"max_epochs": base.get("max_epochs", 250), "dropout": base.get("dropout", 0.3)}
    return grid_search(grid, score, time_limit, defaults)


def tune_bt(
    rows: Sequence[Mapping],
    base_params: Optional[Mapping] = None,
    time_limit: Optional[float] = 20.0,
    k: int = 3,
) -> TuningResult:
    """Search Bradley-Terry ``learning_rate`` x ``l2`` over labelled differential rows."""
    labelled = [r for r in rows if r.get("label_win") in (0, 1)]
    X = DIFFERENTIAL_FEATURES.vectorize(labelled)
    y = np.array([r["label_win"] for r in labelled], dtype=float)
    base = dict(base_params or {})
    grid = [{"learning_rate": lr, "l2": l2} for lr in BT_LR_GRID for l2 in BT_L2_GRID]

    def score(params: Dict) -> float:
        def fit_predict(train_idx, test_idx):
            model = BradleyTerryLearner(**{**base, **params})
            return model.fit(X[train_idx], y[train_idx]).predict_proba(X[test_idx])

        return cross_validated_logloss(len(y), y, fit_predict, k)

    defaults = {"learning_rate": base.get("learning_rate", 5e-3), "l2": base.get("l2", 1e-4)}
    return grid_search(grid, score, time_limit, defaults)


def params_path(artifacts_dir) -> Path:
    return Path(artifacts_dir) / PARAMS_FILENAME


def load_model_params(artifacts_dir) -> Dict:
    path = params_path(artifacts_dir)
    if not path.exists():
        return {}
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unreadable %s: %s", path, exc)
        return {}
    return payload if isinstance(payload, dict) else {}


def save_model_params(artifacts_dir, updates: Mapping[str, TuningResult], season: int, week: int) -> Dict:
    """Merge tuned parameters into ``model_params.json`` and return the new payload."""
    payload = load_model_params(artifacts_dir)
    for name, result in updates.items():
        payload[name] = {**result.to_dict(), "season": int(season), "week": int(week)}
    path = params_path(artifacts_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    logger.info("Saved tuned hyperparameters to %s", path)
    return payload
