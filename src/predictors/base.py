"""Base learner interface shared by the four win-probability models."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np
from scipy.special import expit


def sigmoid(z):
    """Numerically stable logistic function."""
    return expit(np.clip(z, -500.0, 500.0))


def safe_prob(values) -> np.ndarray:
    """Replace NaN with 0.5 and clip to [0, 1]."""
    arr = np.asarray(values, dtype=float)
    arr = np.where(np.isfinite(arr), arr, 0.5)
    return np.clip(arr, 0.0, 1.0)


def finite_or_zero(values) -> np.ndarray:
    arr = np.asarray(values, dtype=float)
    return np.where(np.isfinite(arr), arr, 0.0)


@dataclass
class Standardizer:
    """Column-wise z-score scaler; zero-variance columns keep a unit std."""

    mean: List[float] = field(default_factory=list)
    std: List[float] = field(default_factory=list)

    @classmethod
    def fit(cls, X: np.ndarray) -> "Standardizer":
        X = np.asarray(X, dtype=float)
        if X.ndim != 2 or X.shape[0] == 0:
            width = X.shape[1] if X.ndim == 2 else 0
            return cls(mean=[0.0] * width, std=[1.0] * width)
        mean = X.mean(axis=0)
        std = X.std(axis=0)
        std = np.where((std > 1e-12) & np.isfinite(std), std, 1.0)
        return cls(mean=mean.tolist(), std=std.tolist())

    def transform(self, X: np.ndarray) -> np.ndarray:
        X = np.asarray(X, dtype=float)
        if not self.mean:
            return X.copy()
        return (X - np.asarray(self.mean)) / np.asarray(self.std)

    def to_dict(self) -> Dict[str, List[float]]:
        return {"mean": list(self.mean), "std": list(self.std)}

    @classmethod
    def from_dict(cls, payload: Optional[Dict]) -> "Standardizer":
        payload = payload or {}
        return cls(mean=list(payload.get("mean", [])), std=list(payload.get("std", [])))


class BaseLearner(ABC):
    """Abstract base class for every learner in the ensemble."""

    name: str = "base"

    def __init__(self, features: Optional[Sequence[str]] = None):
        self.features: List[str] = list(features or [])

    @abstractmethod
    def fit(self, X: np.ndarray, y: np.ndarray) -> "BaseLearner":
        """
        Fit the learner.

        Args:
            X: Feature matrix, columns in ``self.features`` order
            y: 0/1 labels

        Returns:
            self
        """

    @abstractmethod
    def predict_proba(self, X: np.ndarray) -> np.ndarray:
        """Probability that the home team wins, one value per row."""

    @abstractmethod
    def to_artifact(self) -> Dict:
        """JSON-serialisable parameters, including the feature order."""

    @classmethod
    @abstractmethod
    def from_artifact(cls, artifact: Dict) -> "BaseLearner":
        """Rebuild a fitted learner from :meth:`to_artifact` output."""
