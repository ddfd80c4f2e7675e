"""
Bradley-Terry paired-comparison learner with weighted bootstrap resampling.

The point estimate is a logistic regression over home-minus-away
differentials. At inference each game is also re-scored ``B`` times with
synthetic differentials built by resampling both teams' recent actual stat
lines, weighted by similarity to the opponent's current profile and by
recency. The draws give a mean probability and a 90% interval.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np

from ..data.features.differential import BT_FEATURES, DIFFERENTIAL_FEATURES, RESAMPLED_FEATURES
from ..data.features.registry import safe_float
from ..data.features.team_stats import HISTORY_FIELDS
from .base import safe_prob
from .logistic import LogisticLearner

logger = logging.getLogger(__name__)

MAX_BOOTSTRAP = 500
WEEKS_PER_SEASON = 18
MAX_HISTORY = 64


def _week_index(season: int, week: int) -> int:
    return int(season) * WEEKS_PER_SEASON + int(week)


def build_team_history(rows: Sequence[Mapping]) -> Dict[str, List[Dict]]:
    """Team -> chronological list of actual stat lines from completed games."""
    history: Dict[str, List[Dict]] = {}
    ordered = sorted(rows, key=lambda r: (int(r["season"]), int(r["week"])))
    for row in ordered:
        if row.get("label_win") not in (0, 1):
            continue
        for team_key, actual_key in (("home_team", "home_actual"), ("away_team", "away_actual")):
            team, actual = row.get(team_key), row.get(actual_key)
            if not team or not actual:
                continue
            entry = {f: safe_float(actual.get(f)) for f in HISTORY_FIELDS}
            entry["index"] = _week_index(row["season"], row["week"])
            history.setdefault(team, []).append(entry)
    return history


def kernel_weights(
    history: Sequence[Mapping],
    opponent_context: Mapping,
    scale: np.ndarray,
    now: int,
    bandwidth: float = 1.0,
    half_life: float = 24.0,
) -> np.ndarray:
    """Gaussian similarity to the opponent's profile times a half-life recency decay."""
    values = np.array([[h[f] for f in HISTORY_FIELDS] for h in history], dtype=float)
    target = np.array([safe_float(opponent_context.get(f)) for f in HISTORY_FIELDS])
    dist2 = (((values - target) / scale) ** 2).sum(axis=1)
    ages = np.maximum(0, now - np.array([h["index"] for h in history], dtype=float))
    weights = np.exp(-dist2 / (2.0 * bandwidth ** 2)) * 0.5 ** (ages / half_life)
    total = weights.sum()
    if not np.isfinite(total) or total <= 0:
        return np.full(len(history), 1.0 / len(history))
    return weights / total


class BradleyTerryLearner(LogisticLearner):
    name = "bt"

    def __init__(
        self,
        features: Optional[Sequence[str]] = None,
        steps: int = 2000,
        learning_rate: float = 5e-3,
        l2: float = 1e-4,
        **kwargs,
    ):
        super().__init__(
            features=features or BT_FEATURES,
            steps=steps,
            learning_rate=learning_rate,
            l2=l2,
            **kwargs,
        )

    def fit_rows(self, rows: Sequence[Mapping]) -> "BradleyTerryLearner":
        labelled = [r for r in rows if r.get("label_win") in (0, 1)]
        X = DIFFERENTIAL_FEATURES.vectorize(labelled, self.features)
        y = np.array([r["label_win"] for r in labelled], dtype=float)
        return self.fit(X, y)

    def predict_deterministic(self, rows: Sequence[Mapping]) -> np.ndarray:
        return self.predict_proba(DIFFERENTIAL_FEATURES.vectorize(rows, self.features))

    def predict_with_bootstrap(
        self,
        rows: Sequence[Mapping],
        history_rows: Sequence[Mapping],
        bootstrap: int = MAX_BOOTSTRAP,
        block: int = 5,
        seed: int = 17,
        bandwidth: float = 1.0,
        half_life: float = 24.0,
    ) -> List[Dict]:
        """
        Bootstrap-augmented predictions for each game.

        Args:
            rows: Differential rows to score
            history_rows: Differential rows strictly before the target, source of stat lines
            bootstrap: Requested draw count (capped at 500)
            block: Observations averaged per team per draw
            seed: Seed for the resampling generator

        Returns:
            One dict per row with prob, ci90, base_prob and bootstrap_samples
        """
        draws = max(1, min(MAX_BOOTSTRAP, int(bootstrap)))
        block = max(1, int(block))
        rng = np.random.default_rng(seed)
        history = build_team_history(history_rows)
        all_lines = np.array(
            [[h[f] for f in HISTORY_FIELDS] for lines in history.values() for h in lines],
            dtype=float,
        )
        scale = all_lines.std(axis=0) if len(all_lines) > 1 else np.ones(len(HISTORY_FIELDS))
        scale = np.where(scale > 1e-9, scale, 1.0)
        base_probs = self.predict_deterministic(rows)
        resampled = [
            (j, HISTORY_FIELDS.index(RESAMPLED_FEATURES[name]))
            for j, name in enumerate(self.features)
            if name in RESAMPLED_FEATURES
        ]

        out = []
        for row, base_prob in zip(rows, base_probs):
            base_prob = float(base_prob)
            home_hist = history.get(row.get("home_team"), [])[-MAX_HISTORY:]
            away_hist = history.get(row.get("away_team"), [])[-MAX_HISTORY:]
            if not home_hist or not away_hist:
                probs = np.full(draws, base_prob)
            else:
                now = _week_index(row["season"], row["week"])
                home_avg = self._resample(
                    home_hist, row.get("away_context") or {}, scale, now, draws, block, rng, bandwidth, half_life
                )
                away_avg = self._resample(
                    away_hist, row.get("home_context") or {}, scale, now, draws, block, rng, bandwidth, half_life
                )
                base_vec = DIFFERENTIAL_FEATURES.vectorize([row], self.features)[0]
                synthetic = np.tile(base_vec, (draws, 1))
                for j, stat_col in resampled:
                    synthetic[:, j] = home_avg[:, stat_col] - away_avg[:, stat_col]
                probs = safe_prob(self.predict_proba(synthetic))
            lo, hi = np.percentile(probs, [5, 95])
            out.append({
                "game_id": row.get("game_id"),
                "prob": float(probs.mean()),
                "ci90": [float(lo), float(hi)],
                "base_prob": base_prob,
                "bootstrap_samples": int(len(probs)),
                "features": DIFFERENTIAL_FEATURES.as_dict(row, self.features),
            })
        return out

    @staticmethod
    def _resample(history, opponent_context, scale, now, draws, block, rng, bandwidth, half_life) -> np.ndarray:
        weights = kernel_weights(history, opponent_context, scale, now, bandwidth, half_life)
        values = np.array([[h[f] for f in HISTORY_FIELDS] for h in history], dtype=float)
        picks = rng.choice(len(history), size=(draws, block), replace=True, p=weights)
        return values[picks].mean(axis=1)

    @classmethod
    def from_artifact(cls, artifact: Dict) -> "BradleyTerryLearner":
        hyper = artifact.get("hyperparams") or {}
        learner = cls(
            features=artifact.get("features"),
            steps=hyper.get("steps", 2000),
            learning_rate=hyper.get("learning_rate", 5e-3),
            l2=hyper.get("l2", 1e-4),
        )
        base = LogisticLearner.from_artifact(artifact)
        learner.weights, learner.bias, learner.scaler = base.weights, base.bias, base.scaler
        return learner


def train(rows: Sequence[Mapping], **kwargs) -> Dict:
    return BradleyTerryLearner(**kwargs).fit_rows(rows).to_artifact()


def predict(artifact: Dict, rows: Sequence[Mapping]) -> np.ndarray:
    return BradleyTerryLearner.from_artifact(artifact).predict_deterministic(rows)
