"""Human-readable explanations attached to weekly forecasts."""

from __future__ import annotations

import logging
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np

from ..data.features.team_stats import HISTORY_FIELDS
from ..predictors.ann import AnnCommittee
from ..predictors.bradley_terry import BradleyTerryLearner
from ..predictors.logistic import LogisticLearner
from ..predictors.tree import TreeLearner

logger = logging.getLogger(__name__)

_LABELS = {
    "diff_total_yards": "total yards",
    "diff_penalty_yards": "penalty yards",
    "diff_turnovers": "turnovers",
    "diff_possession_seconds": "time of possession",
    "diff_r_ratio": "run ratio",
    "diff_power_rating": "power rating",
    "diff_injury_load": "injury load",
}

# Lower is better for these; a positive differential favours the away team.
_LOWER_IS_BETTER = {"diff_penalty_yards", "diff_turnovers", "diff_injury_load"}


def _top(values: Mapping[str, float], n: int) -> List[Dict]:
    ranked = sorted(values.items(), key=lambda kv: abs(kv[1]), reverse=True)
    return [{"feature": name, "value": float(v)} for name, v in ranked[:n]]


def league_profile(diff_rows: Sequence[Mapping], features: Sequence[str]) -> Dict[str, Dict[str, float]]:
    """Means and spreads of the differentials and team contexts over training rows."""
    profile: Dict[str, Dict[str, float]] = {"diff_mean": {}, "diff_std": {}, "context_mean": {}}
    for name in features:
        values = np.array([(r.get("features") or {}).get(name, 0.0) for r in diff_rows], dtype=float)
        profile["diff_mean"][name] = float(values.mean()) if len(values) else 0.0
        std = float(values.std()) if len(values) > 1 else 0.0
        profile["diff_std"][name] = std if std > 1e-9 else 1.0
    for stat in HISTORY_FIELDS:
        values = [
            float((r.get(side) or {}).get(stat, 0.0))
            for r in diff_rows
            for side in ("home_context", "away_context")
        ]
        profile["context_mean"][stat] = float(np.mean(values)) if values else 0.0
    return profile


def narrative(row: Mapping, prob: float, profile: Mapping[str, Mapping[str, float]]) -> str:
    """One-paragraph summary: favourite, top three differentials and trend notes."""
    home, away = row.get("home_team"), row.get("away_team")
    features = row.get("features") or {}
    means, stds = profile.get("diff_mean", {}), profile.get("diff_std", {})
    scores = {
        name: (float(value) - means.get(name, 0.0)) / stds.get(name, 1.0)
        for name, value in features.items()
    }
    favourite, underdog = (home, away) if prob >= 0.5 else (away, home)
    share = prob if prob >= 0.5 else 1.0 - prob
    parts = [f"{favourite} favoured over {underdog} at {share:.0%}."]

    edges = []
    for item in _top(scores, 3):
        name = item["feature"]
        raw = float(features.get(name, 0.0))
        home_better = raw < 0 if name in _LOWER_IS_BETTER else raw > 0
        side = home if home_better else away
        edges.append(f"{side} edge in {_LABELS.get(name, name)} ({raw:+.1f})")
    if edges:
        parts.append("Key differentials: " + "; ".join(edges) + ".")

    league = profile.get("context_mean", {})
    notes = []
    for team, ctx_key in ((home, "home_context"), (away, "away_context")):
        ctx = row.get(ctx_key) or {}
        yards, mean_yards = ctx.get("total_yards"), league.get("total_yards")
        if yards is not None and mean_yards:
            if yards > 1.1 * mean_yards:
                notes.append(f"{team} offense trending above league average")
            elif yards < 0.9 * mean_yards:
                notes.append(f"{team} offense trending below league average")
        turnovers, mean_to = ctx.get("turnovers"), league.get("turnovers")
        if turnovers is not None and mean_to and turnovers > 1.25 * mean_to:
            notes.append(f"{team} turning the ball over more than the league")
    if notes:
        parts.append("Trends: " + "; ".join(notes) + ".")
    return " ".join(parts)


def top_drivers(
    logistic: LogisticLearner,
    tree: TreeLearner,
    bt: BradleyTerryLearner,
    ann: AnnCommittee,
    team_x: Sequence[float],
    diff_x: Sequence[float],
) -> Dict:
    """Largest contributors per learner for one game."""
    drivers: Dict = {"logistic": _top(logistic.contributions(team_x), 3)}

    team_x = np.asarray(team_x, dtype=float)
    drivers["tree"] = {
        "leaf_path": tree.leaf_path(team_x),
        "leaf_prob": float(tree.predict_proba(team_x.reshape(1, -1))[0]),
    }
    drivers["bt"] = _top(bt.contributions(diff_x), 2)
    gradient = ann.input_gradient(team_x)
    drivers["ann"] = _top({name: float(g) for name, g in zip(ann.features, gradient)}, 2)
    return drivers


def pca_summary(X: np.ndarray, features: Sequence[str], n_components: int = 3) -> Dict:
    """Principal components of the standardised training matrix via SVD."""
    X = np.asarray(X, dtype=float)
    if X.ndim != 2 or X.shape[0] < 2 or X.shape[1] == 0:
        return {"n_rows": int(X.shape[0]) if X.ndim else 0, "components": []}
    std = X.std(axis=0)
    Z = (X - X.mean(axis=0)) / np.where(std > 1e-9, std, 1.0)
    _, singular, vt = np.linalg.svd(Z, full_matrices=False)
    variance = singular ** 2
    total = variance.sum()
    ratios = variance / total if total > 0 else np.zeros_like(variance)
    components = []
    for i in range(min(n_components, len(singular))):
        loadings = {name: float(v) for name, v in zip(features, vt[i])}
        components.append({
            "component": i + 1,
            "explained_variance_ratio": float(ratios[i]),
            "top_loadings": _top(loadings, 3),
        })
    return {"n_rows": int(X.shape[0]), "components": components}


def error_notes(
    X: np.ndarray,
    labels: Sequence[float],
    probs: Sequence[float],
    features: Sequence[str],
    mask: Optional[np.ndarray] = None,
    n: int = 3,
) -> Dict:
    """
    Features most associated with misclassified games.

    Args:
        X: Training matrix
        labels: 0/1 outcomes
        probs: Out-of-fold blended probabilities
        features: Column names of ``X``
        mask: Rows to inspect (the latest training week); all rows when omitted

    Returns:
        Dict with the misclassified count and the ``n`` features whose mean
        absolute z-score is highest among misclassified rows
    """
    X = np.asarray(X, dtype=float)
    y = np.asarray(labels, dtype=float)
    p = np.asarray(probs, dtype=float)
    if mask is None:
        mask = np.ones(len(y), dtype=bool)
    wrong = mask & ((p >= 0.5).astype(float) != y)
    if not len(y) or not wrong.any():
        return {"rows": int(mask.sum()), "misclassified": 0, "features": []}
    std = X.std(axis=0)
    Z = (X - X.mean(axis=0)) / np.where(std > 1e-9, std, 1.0)
    scores = {name: float(np.abs(Z[wrong, j]).mean()) for j, name in enumerate(features)}
    return {
        "rows": int(mask.sum()),
        "misclassified": int(wrong.sum()),
        "features": _top(scores, n),
    }
