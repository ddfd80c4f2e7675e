"""Shared helpers for turning raw schedule / team-week tables into stat snapshots."""

from __future__ import annotations

import logging
import re
from typing import Dict, Iterable, List, Mapping, Optional

import pandas as pd

from .registry import safe_float

logger = logging.getLogger(__name__)

SNAPSHOT_FIELDS = (
    "total_yards",
    "pass_yards",
    "rush_yards",
    "first_downs",
    "penalty_yards",
    "turnovers",
    "possession_seconds",
    "sacks",
)

# Stats resampled by the Bradley-Terry bootstrap.
HISTORY_FIELDS = ("total_yards", "penalty_yards", "turnovers", "possession_seconds", "r_ratio")

DEFAULT_ELO = 1500.0
ELO_K = 20.0

_CLOCK = re.compile(r"^(\d+):(\d{1,2})(?::(\d{1,2}))?$")


def to_records(table) -> List[Dict]:
    """Accept a DataFrame, a list of dicts or ``None`` and return plain dict records."""
    if table is None:
        return []
    if isinstance(table, pd.DataFrame):
        if table.empty:
            return []
        frame = table.astype(object).where(pd.notna(table), None)
        return frame.to_dict(orient="records")
    return [dict(row) for row in table]


def first_present(row: Mapping, *keys, default=None):
    for key in keys:
        value = row.get(key)
        if value is not None and value == value:
            return value
    return default


def team_code(row: Mapping) -> Optional[str]:
    value = first_present(row, "team", "team_abbr", "team_code")
    return str(value) if value is not None else None


def is_regular_season(value) -> bool:
    if value is None:
        return True
    text = str(value).strip().upper()
    return text == "" or text.startswith("REG")


def parse_possession(value) -> float:
    """Convert ``"MM:SS"``, ``"H:MM:SS"`` or raw seconds into seconds."""
    if value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return safe_float(value)
    text = str(value).strip()
    if not text:
        return 0.0
    if text.isdigit():
        return float(text)
    match = _CLOCK.match(text)
    if not match:
        return 0.0
    a, b, c = match.groups()
    if c is None:
        return int(a) * 60.0 + int(b)
    return int(a) * 3600.0 + int(b) * 60.0 + int(c)


def stat_snapshot(row: Optional[Mapping]) -> Dict[str, float]:
    """One team's actual box-score line for a single week."""
    row = row or {}
    passing = safe_float(first_present(row, "passing_yards", "pass_yards", "pass_yds"))
    rushing = safe_float(first_present(row, "rushing_yards", "rush_yards", "rush_yds"))
    total = safe_float(
        first_present(row, "total_yards", "total_yards_gained", "total_yds"),
        passing + rushing,
    )
    turnovers = first_present(row, "turnovers", "turnover", "turnovers_total")
    if turnovers is None:
        turnovers = safe_float(first_present(row, "interceptions", "passing_interceptions", default=0)) + safe_float(
            first_present(row, "fumbles_lost", "rushing_fumbles_lost", default=0)
        )
    return {
        "total_yards": total,
        "pass_yards": passing,
        "rush_yards": rushing,
        "first_downs": safe_float(first_present(row, "first_downs", "off_1st_down", "first_down")),
        "penalty_yards": safe_float(first_present(row, "penalty_yards", "penalties_yards")),
        "turnovers": safe_float(turnovers),
        "possession_seconds": parse_possession(
            first_present(row, "possession_time", "time_of_possession", "possession_seconds")
        ),
        "sacks": safe_float(first_present(row, "sacks", "sack_total", "qb_sacked")),
    }


def with_ratio(stats: Mapping[str, float]) -> Dict[str, float]:
    """Attach the pass share of total yards as ``r_ratio``."""
    out = dict(stats)
    total = safe_float(out.get("total_yards"))
    out["r_ratio"] = safe_float(out.get("pass_yards")) / total if total else 0.0
    return out


def final_scores(game: Mapping):
    home = first_present(game, "home_score", "home_points", "home_pts")
    away = first_present(game, "away_score", "away_points", "away_pts")
    try:
        return float(home), float(away)
    except (TypeError, ValueError):
        return None


def home_win_label(game: Mapping) -> Optional[int]:
    """1/0 from the home team's perspective, ``None`` for unplayed or tied games."""
    scores = final_scores(game)
    if scores is None:
        return None
    home, away = scores
    if home != home or away != away or home == away:
        return None
    return 1 if home > away else 0


def make_game_id(season: int, week: int, home: str, away: str) -> str:
    return f"{int(season)}-W{int(week):02d}-{home}-{away}"


def regular_season_games(schedules, season: int) -> List[Dict]:
    """Regular-season games for ``season`` ordered by week, then kickoff date."""
    games = []
    for game in to_records(schedules):
        if int(safe_float(game.get("season"), -1)) != int(season):
            continue
        if not is_regular_season(game.get("season_type", game.get("game_type"))):
            continue
        if not game.get("home_team") or not game.get("away_team"):
            continue
        week = int(safe_float(game.get("week"), 0))
        if week < 1:
            continue
        game["week"] = week
        game["game_date"] = str(game["game_date"])[:10] if game.get("game_date") else None
        games.append(game)
    games.sort(key=lambda g: (g["week"], g.get("game_date") or ""))
    return games


def index_team_weeks(team_weekly, season: int) -> Dict[tuple, Dict]:
    """``(team, week) -> raw row`` for one season."""
    index = {}
    for row in to_records(team_weekly):
        if int(safe_float(row.get("season"), -1)) != int(season):
            continue
        team = team_code(row)
        if team is None:
            continue
        index[(team, int(safe_float(row.get("week"), 0)))] = row
    return index


def seed_elo(prev_team_weekly) -> Dict[str, float]:
    """Preseason rating nudged by last season's win total."""
    wins: Dict[str, float] = {}
    for row in to_records(prev_team_weekly):
        team = team_code(row)
        if team is None:
            continue
        result = first_present(row, "win", "wins")
        wins[team] = wins.get(team, 0.0) + safe_float(result)
    return {team: 1450.0 + 5.0 * total for team, total in wins.items()}


def schedule_power(game: Mapping, home: bool) -> Optional[float]:
    keys = ("elo1_pre", "home_elo", "elo_home") if home else ("elo2_pre", "away_elo", "elo_away")
    value = first_present(game, *keys)
    if value is None:
        return None
    return safe_float(value, DEFAULT_ELO)


class EloTracker:
    """Running Elo ratings updated once per completed game."""

    def __init__(self, seeds: Optional[Mapping[str, float]] = None, k: float = ELO_K):
        self.ratings: Dict[str, float] = dict(seeds or {})
        self.k = k

    def rating(self, team: str) -> float:
        return self.ratings.get(team, DEFAULT_ELO)

    def update(self, home: str, away: str, home_won: Optional[int]) -> None:
        if home_won is None:
            return
        h, a = self.rating(home), self.rating(away)
        expected = 1.0 / (1.0 + 10 ** (-(h - a) / 400.0))
        delta = self.k * (home_won - expected)
        self.ratings[home] = h + delta
        self.ratings[away] = a - delta


_STATUS_WEIGHTS = (
    ("out", 1.0),
    ("injured reserve", 1.0),
    ("susp", 1.0),
    ("doubt", 0.5),
    ("question", 0.25),
)
_KEY_POSITIONS = {"QB": 2.0, "RB": 1.25, "WR": 1.25, "TE": 1.25}


def _status_weight(status) -> float:
    text = str(status or "").lower()
    if not text:
        return 0.0
    for token, weight in _STATUS_WEIGHTS:
        if token in text:
            return weight
    return 0.0


def injury_loads(injuries, season: int) -> Dict[tuple, float]:
    """``(team, week) -> weighted count`` of unavailable players."""
    loads: Dict[tuple, float] = {}
    for row in to_records(injuries):
        if int(safe_float(row.get("season"), -1)) != int(season):
            continue
        team = team_code(row)
        if team is None:
            continue
        status = first_present(row, "report_status", "status", "game_status")
        weight = _status_weight(status)
        if not weight:
            continue
        position = str(row.get("position") or "").upper()
        key = (team, int(safe_float(row.get("week"), 0)))
        loads[key] = loads.get(key, 0.0) + weight * _KEY_POSITIONS.get(position, 1.0)
    return loads


def average(snapshots: Iterable[Mapping[str, float]], fields=SNAPSHOT_FIELDS) -> Dict[str, float]:
    snapshots = list(snapshots)
    if not snapshots:
        return {f: 0.0 for f in fields}
    return {f: sum(safe_float(s.get(f)) for s in snapshots) / len(snapshots) for f in fields}
