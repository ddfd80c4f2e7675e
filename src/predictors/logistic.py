"""L2-regularised logistic regression trained by gradient descent."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence

import numpy as np

from .base import BaseLearner, Standardizer, finite_or_zero, safe_prob, sigmoid

logger = logging.getLogger(__name__)


class LogisticLearner(BaseLearner):
    """
    Logistic regression over standardised features.

    Full-batch gradient descent by default, mini-batch when ``batch_size``
    is smaller than the training set. Non-finite coordinates are reset to 0
    after every step.
    """

    name = "logistic"

    def __init__(
        self,
        features: Optional[Sequence[str]] = None,
        steps: int = 3500,
        learning_rate: float = 4e-3,
        l2: float = 2e-4,
        batch_size: Optional[int] = None,
        seed: int = 0,
        init_weights: Optional[Sequence[float]] = None,
        init_bias: float = 0.0,
    ):
        super().__init__(features)
        self.steps = int(steps)
        self.learning_rate = float(learning_rate)
        self.l2 = float(l2)
        self.batch_size = batch_size
        self.seed = seed
        self.init_weights = None if init_weights is None else np.asarray(init_weights, dtype=float)
        self.init_bias = float(init_bias)
        self.weights: Optional[np.ndarray] = None
        self.bias: float = 0.0
        self.scaler = Standardizer()

    def fit(self, X: np.ndarray, y: np.ndarray) -> "LogisticLearner":
        X = np.asarray(X, dtype=float)
        y = np.asarray(y, dtype=float).ravel()
        n = X.shape[0]
        d = X.shape[1] if X.ndim == 2 else len(self.features)
        self.scaler = Standardizer.fit(X) if n else Standardizer(mean=[0.0] * d, std=[1.0] * d)

        w = np.zeros(d)
        b = 0.0
        if self.init_weights is not None and self.init_weights.shape == (d,):
            w = finite_or_zero(self.init_weights).copy()
            b = self.init_bias if np.isfinite(self.init_bias) else 0.0

        if n == 0:
            self.weights, self.bias = w, b
            return self

        Xs = self.scaler.transform(X)
        rng = np.random.default_rng(self.seed)
        batch = self.batch_size if self.batch_size and self.batch_size < n else None
        for _ in range(self.steps):
            if batch:
                idx = rng.choice(n, size=batch, replace=False)
                Xb, yb = Xs[idx], y[idx]
            else:
                Xb, yb = Xs, y
            err = sigmoid(Xb @ w + b) - yb
            grad_w = Xb.T @ err / len(yb) + self.l2 * w
            grad_b = float(err.mean())
            w = finite_or_zero(w - self.learning_rate * grad_w)
            b = b - self.learning_rate * grad_b
            if not np.isfinite(b):
                b = 0.0

        self.weights, self.bias = w, float(b)
        return self

    def decision_function(self, X: np.ndarray) -> np.ndarray:
        X = np.asarray(X, dtype=float)
        if self.weights is None:
            return np.zeros(X.shape[0])
        return self.scaler.transform(X) @ self.weights + self.bias

    def predict_proba(self, X: np.ndarray) -> np.ndarray:
        return safe_prob(sigmoid(self.decision_function(X)))

    def contributions(self, x: Sequence[float]) -> Dict[str, float]:
        """Per-feature ``w_j * z_j`` for one standardised row."""
        if self.weights is None:
            return {name: 0.0 for name in self.features}
        z = self.scaler.transform(np.asarray(x, dtype=float).reshape(1, -1))[0]
        values = finite_or_zero(self.weights * z)
        return {name: float(v) for name, v in zip(self.features, values)}

    def to_artifact(self) -> Dict:
        weights: List[float] = [] if self.weights is None else [float(v) for v in self.weights]
        return {
            "type": self.name,
            "features": list(self.features),
            "weights": weights,
            "bias": float(self.bias),
            "scaler": self.scaler.to_dict(),
            "hyperparams": {
                "steps": self.steps,
                "learning_rate": self.learning_rate,
                "l2": self.l2,
                "batch_size": self.batch_size,
            },
        }

    @classmethod
    def from_artifact(cls, artifact: Dict) -> "LogisticLearner":
        hyper = artifact.get("hyperparams") or {}
        learner = cls(
            features=artifact.get("features"),
            steps=hyper.get("steps", 3500),
            learning_rate=hyper.get("learning_rate", 4e-3),
            l2=hyper.get("l2", 2e-4),
            batch_size=hyper.get("batch_size"),
        )
        weights = artifact.get("weights") or []
        learner.weights = np.asarray(weights, dtype=float) if weights else None
        learner.bias = float(artifact.get("bias", 0.0))
        learner.scaler = Standardizer.from_dict(artifact.get("scaler"))
        return learner


def train(X: np.ndarray, y: np.ndarray, features: Sequence[str], **kwargs) -> Dict:
    return LogisticLearner(features=features, **kwargs).fit(X, y).to_artifact()


def predict(artifact: Dict, X: np.ndarray) -> np.ndarray:
    return LogisticLearner.from_artifact(artifact).predict_proba(X)
