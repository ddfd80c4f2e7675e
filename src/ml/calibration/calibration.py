"""
Probability metrics and post-hoc recalibration for blended forecasts.

Ensures predicted probabilities are well-calibrated:
- A 70% home-win forecast should come true ~70% of the time
- Recalibration is ``sigmoid(beta * p + intercept)`` with ``beta >= 0``,
  so the mapping never reverses the order of the blended probabilities
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import numpy as np
from scipy.special import expit, logit
from scipy.stats import rankdata
from sklearn.calibration import calibration_curve

logger = logging.getLogger(__name__)

EPS = 1e-7
TARGET_CLIP = (0.05, 0.95)


@dataclass
class CalibrationMetrics:
    """Metrics for evaluating probability calibration."""

    brier_score: float  # Mean squared error of probabilities
    log_loss: float  # Log loss (cross-entropy)
    expected_calibration_error: float  # ECE
    max_calibration_error: float  # MCE
    accuracy: float  # Classification accuracy
    auc: float

    # Calibration curve data
    prob_true: np.ndarray  # Observed frequency per bin
    prob_pred: np.ndarray  # Mean predicted probability per bin

    def to_dict(self) -> Dict:
        return {
            "brier": float(self.brier_score),
            "logloss": float(self.log_loss),
            "ece": float(self.expected_calibration_error),
            "mce": float(self.max_calibration_error),
            "accuracy": float(self.accuracy),
            "auc": float(self.auc),
        }

    def __str__(self) -> str:
        return (
            f"Calibration Metrics:\n"
            f"  Brier Score: {self.brier_score:.4f}\n"
            f"  Log Loss: {self.log_loss:.4f}\n"
            f"  ECE: {self.expected_calibration_error:.4f}\n"
            f"  MCE: {self.max_calibration_error:.4f}\n"
            f"  Accuracy: {self.accuracy:.4f}\n"
            f"  AUC: {self.auc:.4f}"
        )


def _arrays(predictions, outcomes):
    p = np.asarray(predictions, dtype=float).ravel()
    p = np.clip(np.where(np.isfinite(p), p, 0.5), 0.0, 1.0)
    y = np.asarray(outcomes, dtype=float).ravel()
    return p, y


def log_loss(predictions, outcomes) -> float:
    p, y = _arrays(predictions, outcomes)
    if not len(p):
        return float("nan")
    p = np.clip(p, EPS, 1 - EPS)
    return float(-np.mean(y * np.log(p) + (1 - y) * np.log(1 - p)))


def brier(predictions, outcomes) -> float:
    """
    Brier Score = (1/N) * sum((predicted - actual)^2)

    Lower is better. Perfect = 0, coin flip = 0.25
    """
    p, y = _arrays(predictions, outcomes)
    if not len(p):
        return float("nan")
    return float(np.mean((p - y) ** 2))


def accuracy(predictions, outcomes) -> float:
    p, y = _arrays(predictions, outcomes)
    if not len(p):
        return float("nan")
    return float(np.mean((p >= 0.5).astype(float) == y))


def auc_roc(predictions, outcomes) -> float:
    """Rank-sum (Mann-Whitney) AUC; 0.5 when only one class is present."""
    p, y = _arrays(predictions, outcomes)
    n_pos = int((y == 1).sum())
    n_neg = int((y == 0).sum())
    if n_pos == 0 or n_neg == 0:
        return 0.5
    ranks = rankdata(p)
    return float((ranks[y == 1].sum() - n_pos * (n_pos + 1) / 2.0) / (n_pos * n_neg))


def calibration_bins(predictions, outcomes, n_bins: int = 10) -> List[Dict]:
    """Uniform-width reliability bins; empty bins are dropped."""
    p, y = _arrays(predictions, outcomes)
    edges = np.linspace(0.0, 1.0, n_bins + 1)
    idx = np.clip(np.digitize(p, edges) - 1, 0, n_bins - 1)
    bins = []
    for i in range(n_bins):
        mask = idx == i
        count = int(mask.sum())
        if not count:
            continue
        bins.append({
            "bin": i,
            "lower": float(edges[i]),
            "upper": float(edges[i + 1]),
            "count": count,
            "mean_pred": float(p[mask].mean()),
            "empirical": float(y[mask].mean()),
        })
    return bins


def calculate_calibration_metrics(predictions, outcomes, n_bins: int = 10) -> CalibrationMetrics:
    """
    Calculate comprehensive calibration metrics.

    Args:
        predictions: Predicted probabilities
        outcomes: Actual outcomes (0 or 1)
        n_bins: Number of bins for calibration curve

    Returns:
        CalibrationMetrics object
    """
    p, y = _arrays(predictions, outcomes)
    if not len(p):
        nan = float("nan")
        return CalibrationMetrics(nan, nan, nan, nan, nan, 0.5, np.zeros(0), np.zeros(0))

    prob_true, prob_pred = calibration_curve(y, p, n_bins=n_bins, strategy="uniform")

    ece = 0.0
    mce = 0.0
    for b in calibration_bins(p, y, n_bins):
        gap = abs(b["mean_pred"] - b["empirical"])
        ece += (b["count"] / len(p)) * gap
        mce = max(mce, gap)

    return CalibrationMetrics(
        brier_score=brier(p, y),
        log_loss=log_loss(p, y),
        expected_calibration_error=ece,
        max_calibration_error=mce,
        accuracy=accuracy(p, y),
        auc=auc_roc(p, y),
        prob_true=prob_true,
        prob_pred=prob_pred,
    )


def metric_block(predictions, outcomes) -> Dict[str, float]:
    """The metric dict stored in diagnostics for one model."""
    p, y = _arrays(predictions, outcomes)
    return {
        "logloss": log_loss(p, y),
        "brier": brier(p, y),
        "auc": auc_roc(p, y),
        "accuracy": accuracy(p, y),
        "n": int(len(p)),
    }


class LogitLinearCalibrator:
    """
    Recalibration ``sigmoid(beta * p + intercept)``.

    Fitted in closed form by least squares of ``logit(clip(y, 0.05, 0.95))``
    on ``p``. ``beta`` is clamped to be non-negative so the mapping is
    non-decreasing in ``p``. Degenerate inputs (fewer than three samples, a
    single class, or constant predictions) leave an identity mapping flagged
    ``method == "identity"`` with ``beta = 1`` and ``intercept = 0``.
    """

    def __init__(self, beta: float = 1.0, intercept: float = 0.0, method: str = "identity"):
        self.beta = float(beta)
        self.intercept = float(intercept)
        self.method = method
        self.n_samples = 0

    def fit(self, predictions, outcomes) -> "LogitLinearCalibrator":
        p, y = _arrays(predictions, outcomes)
        self.n_samples = int(len(p))
        if len(p) < 3 or len(np.unique(y)) < 2 or float(np.var(p)) <= 1e-12:
            self.beta, self.intercept, self.method = 1.0, 0.0, "identity"
            return self

        target = logit(np.clip(y, *TARGET_CLIP))
        beta, intercept = ols_fit(p, target)
        if beta < 0:
            logger.debug("Recalibration slope %.4f clamped to 0", beta)
            beta, intercept = 0.0, float(np.mean(target))
        self.beta, self.intercept, self.method = beta, intercept, "logit_linear"
        return self

    def transform(self, predictions) -> np.ndarray:
        p, _ = _arrays(predictions, [])
        if self.method == "identity":
            return p
        return np.clip(expit(self.beta * p + self.intercept), 0.0, 1.0)

    def fit_transform(self, predictions, outcomes) -> np.ndarray:
        return self.fit(predictions, outcomes).transform(predictions)

    def to_dict(self) -> Dict:
        return {
            "method": self.method,
            "beta": self.beta,
            "intercept": self.intercept,
            "n_samples": self.n_samples,
        }

    @classmethod
    def from_dict(cls, payload: Optional[Dict]) -> "LogitLinearCalibrator":
        payload = payload or {}
        calibrator = cls(
            beta=payload.get("beta", 1.0),
            intercept=payload.get("intercept", 0.0),
            method=payload.get("method", "identity"),
        )
        calibrator.n_samples = int(payload.get("n_samples", 0))
        return calibrator


def ols_fit(x, y):
    """Closed-form simple regression ``y ~ beta * x + intercept``; non-finite results become 0."""
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    mx, my = x.mean(), y.mean()
    variance = float(((x - mx) ** 2).sum())
    beta = 0.0 if variance == 0 else float(((x - mx) * (y - my)).sum() / variance)
    if not np.isfinite(beta):
        beta = 0.0
    intercept = float(my - beta * mx)
    if not np.isfinite(intercept):
        intercept = 0.0
    return beta, intercept


def hash_calibration_meta(meta: Dict) -> str:
    """Stable sha256 of the calibration parameters, recorded in diagnostics."""
    blob = json.dumps(meta, sort_keys=True, separators=(",", ":"), default=float)
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()
