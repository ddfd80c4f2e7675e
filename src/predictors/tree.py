"""Decision tree with Laplace-smoothed leaf win rates."""

from __future__ import annotations

import logging
import math
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from sklearn.tree import DecisionTreeClassifier

from .base import BaseLearner, safe_prob

logger = logging.getLogger(__name__)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def choose_tree_params(n: int) -> Dict[str, int]:
    """Depth and minimum split size scaled to the training size."""
    depth = min(6, max(3, int(math.floor(2 + math.log2(max(16, n))))))
    min_samples = min(32, max(8, int(math.floor(max(8.0, n / 18.0)))))
    return {"max_depth": depth, "min_samples": min_samples}


def laplace_alpha(n: int) -> int:
    """Smoothing strength: stronger for small training sets."""
    weeks = min(8, max(2, _round_half_up(n / 32.0)))
    return max(2, _round_half_up(10 - 2 * weeks))


class TreeLearner(BaseLearner):
    """
    Gini decision tree grown by scikit-learn.

    Leaf probabilities are ``(n1 + alpha) / (n0 + n1 + 2 * alpha)`` from the
    training rows that land in each leaf, so sparse leaves never emit 0 or 1.
    The fitted structure is copied into plain arrays for serialisation and
    inference.
    """

    name = "tree"

    def __init__(
        self,
        features: Optional[Sequence[str]] = None,
        max_depth: Optional[int] = None,
        min_samples: Optional[int] = None,
        alpha: Optional[float] = None,
        seed: int = 0,
    ):
        super().__init__(features)
        self.max_depth = max_depth
        self.min_samples = min_samples
        self.alpha = alpha
        self.seed = seed
        self.children_left: List[int] = [-1]
        self.children_right: List[int] = [-1]
        self.feature_index: List[int] = [-2]
        self.threshold: List[float] = [0.0]
        self.leaf_counts: Dict[int, Tuple[int, int]] = {}

    def fit(self, X: np.ndarray, y: np.ndarray) -> "TreeLearner":
        X = np.asarray(X, dtype=float)
        y = np.asarray(y, dtype=int).ravel()
        n = X.shape[0]
        params = choose_tree_params(n)
        self.max_depth = self.max_depth or params["max_depth"]
        self.min_samples = self.min_samples or params["min_samples"]
        if self.alpha is None:
            self.alpha = float(laplace_alpha(n))

        if n == 0:
            self.children_left, self.children_right = [-1], [-1]
            self.feature_index, self.threshold = [-2], [0.0]
            self.leaf_counts = {0: (0, 0)}
            return self

        model = DecisionTreeClassifier(
            criterion="gini",
            max_depth=self.max_depth,
            min_samples_split=max(2, int(self.min_samples)),
            random_state=self.seed,
        )
        model.fit(X, y)
        structure = model.tree_
        self.children_left = [int(v) for v in structure.children_left]
        self.children_right = [int(v) for v in structure.children_right]
        self.feature_index = [int(v) for v in structure.feature]
        self.threshold = [float(v) for v in structure.threshold]

        counts: Dict[int, List[int]] = {}
        for leaf, label in zip(self.apply(X), y):
            bucket = counts.setdefault(int(leaf), [0, 0])
            bucket[1 if label == 1 else 0] += 1
        self.leaf_counts = {leaf: (c[0], c[1]) for leaf, c in counts.items()}
        return self

    def _descend(self, x: np.ndarray) -> Tuple[int, str]:
        node, path = 0, []
        while self.children_left[node] != -1:
            if x[self.feature_index[node]] <= self.threshold[node]:
                node = self.children_left[node]
                path.append("L")
            else:
                node = self.children_right[node]
                path.append("R")
        return node, "".join(path)

    def apply(self, X: np.ndarray) -> np.ndarray:
        # scikit-learn compares in float32; mirror that so training rows land in their own leaves.
        X = np.asarray(X, dtype=np.float32)
        return np.array([self._descend(row)[0] for row in X], dtype=int)

    def leaf_path(self, x: Sequence[float]) -> str:
        return self._descend(np.asarray(x, dtype=np.float32))[1]

    def leaf_probability(self, leaf: int) -> float:
        counts = self.leaf_counts.get(int(leaf))
        if counts is None:
            return 0.5
        n0, n1 = counts
        alpha = float(self.alpha or 0.0)
        total = n0 + n1 + 2 * alpha
        if total <= 0:
            return 0.5
        return (n1 + alpha) / total

    def predict_proba(self, X: np.ndarray) -> np.ndarray:
        X = np.asarray(X, dtype=float)
        if X.shape[0] == 0:
            return np.zeros(0)
        return safe_prob([self.leaf_probability(leaf) for leaf in self.apply(X)])

    def to_artifact(self) -> Dict:
        return {
            "type": self.name,
            "features": list(self.features),
            "params": {"max_depth": self.max_depth, "min_samples": self.min_samples},
            "alpha": self.alpha,
            "nodes": {
                "children_left": list(self.children_left),
                "children_right": list(self.children_right),
                "feature": list(self.feature_index),
                "threshold": list(self.threshold),
            },
            "leaf_counts": {str(leaf): list(c) for leaf, c in self.leaf_counts.items()},
        }

    @classmethod
    def from_artifact(cls, artifact: Dict) -> "TreeLearner":
        params = artifact.get("params") or {}
        learner = cls(
            features=artifact.get("features"),
            max_depth=params.get("max_depth"),
            min_samples=params.get("min_samples"),
            alpha=artifact.get("alpha"),
        )
        nodes = artifact.get("nodes") or {}
        learner.children_left = [int(v) for v in nodes.get("children_left", [-1])]
        learner.children_right = [int(v) for v in nodes.get("children_right", [-1])]
        learner.feature_index = [int(v) for v in nodes.get("feature", [-2])]
        learner.threshold = [float(v) for v in nodes.get("threshold", [0.0])]
        learner.leaf_counts = {
            int(leaf): (int(c[0]), int(c[1]))
            for leaf, c in (artifact.get("leaf_counts") or {}).items()
        }
        return learner


def train(X: np.ndarray, y: np.ndarray, features: Sequence[str], **kwargs) -> Dict:
    return TreeLearner(features=features, **kwargs).fit(X, y).to_artifact()


def predict(artifact: Dict, X: np.ndarray) -> np.ndarray:
    return TreeLearner.from_artifact(artifact).predict_proba(X)
