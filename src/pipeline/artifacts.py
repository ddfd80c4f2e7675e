"""
Artifact naming, JSON persistence and season rollups.

Every weekly artifact is ``{kind}_{season}_W{week:02d}.json`` in the
artifacts directory; season rollups are ``{kind}_{season}.json``.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Union

import numpy as np

from ..data.ingestion.validators import VALIDATORS, assert_valid
from ..ml.calibration.calibration import metric_block
from ..temporal import week_stamp
from ..training.state import utc_now

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

WEEKLY_KINDS = ("predictions", "model", "diagnostics", "bt_features", "outcomes", "metrics")
REQUIRED_KINDS = ("predictions", "model", "diagnostics", "bt_features")
SEASON_KINDS = ("metrics", "season_index", "season_summary")

STATUS_FINAL = "final"
STATUS_PARTIAL = "partial"
STATUS_PENDING = "pending"

_WEEKLY_PATTERN = re.compile(r"^(?P<kind>[a-z_]+?)_(?P<season>\d{4})_W(?P<week>\d{2})\.json$")


class _NumpyEncoder(json.JSONEncoder):
    def default(self, o):
        if isinstance(o, np.integer):
            return int(o)
        if isinstance(o, np.floating):
            value = float(o)
            return value if np.isfinite(value) else None
        if isinstance(o, np.ndarray):
            return o.tolist()
        return super().default(o)


def sanitize(value):
    """Replace non-finite floats with ``None`` so artifacts stay strict JSON."""
    if isinstance(value, dict):
        return {k: sanitize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [sanitize(v) for v in value]
    if isinstance(value, (float, np.floating)):
        return float(value) if np.isfinite(value) else None
    return value


def write_json(path: PathLike, payload: Dict) -> Path:
    """Write ``payload`` atomically (temp file + replace)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.stem}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(sanitize(payload), fh, indent=2, cls=_NumpyEncoder, allow_nan=False)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise
    return path


def read_json(path: PathLike) -> Optional[Dict]:
    path = Path(path)
    if not path.exists():
        return None
    try:
        with open(path, "r", encoding="utf-8") as fh:
            payload = json.load(fh)
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unreadable artifact %s: %s", path, exc)
        return None
    return payload if isinstance(payload, dict) else None


class ArtifactStore:
    """File layout of one artifacts directory."""

    def __init__(self, root: PathLike):
        self.root = Path(root)

    def weekly_path(self, kind: str, season: int, week: int) -> Path:
        return self.root / f"{kind}_{week_stamp(season, week)}.json"

    def season_path(self, kind: str, season: int) -> Path:
        return self.root / f"{kind}_{int(season)}.json"

    def calibration_history_path(self, season: int) -> Path:
        return self.root / f"calibration_history_{int(season)}.csv"

    def load(self, kind: str, season: int, week: int) -> Optional[Dict]:
        return read_json(self.weekly_path(kind, season, week))

    def save(self, kind: str, season: int, week: int, payload: Dict, validate: bool = True) -> Path:
        if validate and kind in VALIDATORS:
            assert_valid(kind, payload)
        return write_json(self.weekly_path(kind, season, week), payload)

    def has_week(self, season: int, week: int) -> bool:
        """True when the full required artifact set for the week is on disk."""
        return all(self.weekly_path(kind, season, week).exists() for kind in REQUIRED_KINDS)

    def weeks(self, kind: str, season: Optional[int] = None) -> List[tuple]:
        """Sorted ``(season, week)`` pairs with a ``kind`` artifact."""
        if not self.root.is_dir():
            return []
        found = []
        for entry in self.root.iterdir():
            match = _WEEKLY_PATTERN.match(entry.name)
            if not match or match.group("kind") != kind:
                continue
            coord = (int(match.group("season")), int(match.group("week")))
            if season is None or coord[0] == int(season):
                found.append(coord)
        return sorted(found)

    def latest_before(self, kind: str, season: int, week: int) -> Optional[tuple]:
        earlier = [c for c in self.weeks(kind) if c < (int(season), int(week))]
        return earlier[-1] if earlier else None


# ----------------------------------------------------------------------
# Outcomes and rollups
# ----------------------------------------------------------------------


def _status(n_games: int, n_scored: int) -> str:
    if n_games and n_scored == n_games:
        return STATUS_FINAL
    if n_scored:
        return STATUS_PARTIAL
    return STATUS_PENDING


def build_outcomes(predictions: Dict) -> Dict:
    """Per-game forecast vs. result for one week."""
    games = []
    for game in predictions.get("games", []):
        actual = (game.get("actual") or {}).get("home_win")
        games.append({
            "game_id": game.get("game_id"),
            "home_team": game.get("home_team"),
            "away_team": game.get("away_team"),
            "prob": (game.get("forecast") or {}).get("home_win_prob"),
            "probs": dict(game.get("probs") or {}),
            "actual": actual if actual in (0, 1) else None,
        })
    n_scored = sum(1 for g in games if g["actual"] is not None)
    return {
        "season": predictions.get("season"),
        "week": predictions.get("week"),
        "status": _status(len(games), n_scored),
        "n_games": len(games),
        "n_scored": n_scored,
        "games": games,
        "generated_at": utc_now(),
    }


def _scored_metrics(games: List[Dict]) -> Optional[Dict]:
    scored = [g for g in games if g.get("actual") in (0, 1) and g.get("prob") is not None]
    if not scored:
        return None
    y = [g["actual"] for g in scored]
    out = {"forecast": metric_block([g["prob"] for g in scored], y)}
    for name in ("logistic", "tree", "bt", "ann", "blended"):
        probs = [g.get("probs", {}).get(name) for g in scored]
        if all(p is not None for p in probs):
            out[name] = metric_block(probs, y)
    return out


def build_week_metrics(outcomes: Dict) -> Dict:
    return {
        "season": outcomes.get("season"),
        "week": outcomes.get("week"),
        "status": outcomes.get("status"),
        "n_games": outcomes.get("n_games", 0),
        "n_scored": outcomes.get("n_scored", 0),
        "metrics": _scored_metrics(outcomes.get("games", [])),
    }


def update_historical_artifacts(store: ArtifactStore, season: int) -> Dict:
    """
    Refresh outcomes/metrics for every predicted week of ``season`` and
    rewrite the season rollups.

    Returns:
        The ``season_summary`` payload
    """
    index_weeks = []
    all_games: List[Dict] = []
    for _, week in store.weeks("predictions", season):
        predictions = store.load("predictions", season, week)
        if predictions is None:
            continue
        outcomes = build_outcomes(predictions)
        write_json(store.weekly_path("outcomes", season, week), outcomes)
        write_json(store.weekly_path("metrics", season, week), build_week_metrics(outcomes))
        all_games.extend(outcomes["games"])
        index_weeks.append({
            "week": week,
            "status": outcomes["status"],
            "n_games": outcomes["n_games"],
            "n_scored": outcomes["n_scored"],
            "artifacts": {
                kind: store.weekly_path(kind, season, week).name
                for kind in WEEKLY_KINDS
                if store.weekly_path(kind, season, week).exists()
            },
        })

    n_scored = sum(1 for g in all_games if g["actual"] is not None)
    season_metrics = {
        "season": int(season),
        "status": _status(len(all_games), n_scored),
        "n_games": len(all_games),
        "n_scored": n_scored,
        "metrics": _scored_metrics(all_games),
        "weeks": [{"week": w["week"], "status": w["status"]} for w in index_weeks],
        "generated_at": utc_now(),
    }
    write_json(store.season_path("metrics", season), season_metrics)
    write_json(store.season_path("season_index", season), {
        "season": int(season),
        "weeks": index_weeks,
        "generated_at": utc_now(),
    })

    forecast = (season_metrics["metrics"] or {}).get("forecast") or {}
    summary = {
        "season": int(season),
        "weeks_predicted": len(index_weeks),
        "weeks_final": sum(1 for w in index_weeks if w["status"] == STATUS_FINAL),
        "last_week": index_weeks[-1]["week"] if index_weeks else None,
        "n_games": len(all_games),
        "n_scored": n_scored,
        "accuracy": forecast.get("accuracy"),
        "logloss": forecast.get("logloss"),
        "brier": forecast.get("brier"),
        "generated_at": utc_now(),
    }
    write_json(store.season_path("season_summary", season), summary)
    logger.info("Season %s rollups updated (%d weeks, %d scored games)", season, len(index_weeks), n_scored)
    return summary
