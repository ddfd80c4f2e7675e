"""
Team-game feature rows.

One row per team per scheduled regular-season game carrying season-to-date
offensive/defensive aggregates, opponent differentials, rest, a running Elo
rating, injury load and "similar opponent at the same venue" aggregates.
Aggregates for week W are computed from weeks strictly before W, so a row
never sees its own game's box score.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Dict, List, Optional

import numpy as np

from ...config import INJURY_DATA_MIN_SEASON
from .registry import FeatureRegistry, safe_float
from .team_stats import (
    EloTracker,
    home_win_label,
    index_team_weeks,
    injury_loads,
    regular_season_games,
    schedule_power,
    seed_elo,
    stat_snapshot,
)

logger = logging.getLogger(__name__)

_S2D_STATS = ("first_downs", "total_yards", "rush_yards", "pass_yards", "turnovers")
_S2D_NAMES = {
    "first_downs": "1st_down",
    "total_yards": "total_yds",
    "rush_yards": "rush_yds",
    "pass_yards": "pass_yds",
    "turnovers": "turnovers",
}

TEAM_FEATURES = FeatureRegistry("team_game")
for _side in ("off", "def"):
    for _stat in _S2D_STATS:
        TEAM_FEATURES.register(f"{_side}_{_S2D_NAMES[_stat]}_s2d", group="season_to_date")
# Training uses home rows only, so the venue flag stays a row field rather than a feature.
for _name in ("wins_s2d", "losses_s2d"):
    TEAM_FEATURES.register(_name, group="context")
for _name in ("sim_winrate_same_loc_s2d", "sim_pointdiff_same_loc_s2d", "sim_count_same_loc_s2d"):
    TEAM_FEATURES.register(_name, group="similar_opponent")
for _name in (
    "off_total_yds_s2d_minus_opp",
    "def_total_yds_s2d_minus_opp",
    "off_turnovers_s2d_minus_opp",
    "def_turnovers_s2d_minus_opp",
):
    TEAM_FEATURES.register(_name, group="opponent_diff")
for _name in ("elo_pre", "elo_diff", "rest_days", "rest_diff", "injury_load", "injury_load_diff"):
    TEAM_FEATURES.register(_name, group="context")

FEATURES = TEAM_FEATURES.names()


def _days_between(previous: Optional[str], current: Optional[str]) -> int:
    if not previous or not current:
        return 0
    try:
        return (date.fromisoformat(current) - date.fromisoformat(previous)).days
    except ValueError:
        return 0


class _SeasonTotals:
    """Cumulative per-game sums for one team."""

    def __init__(self):
        self.games = 0
        self.wins = 0
        self.losses = 0
        self.offense = {stat: 0.0 for stat in _S2D_STATS}
        self.defense = {stat: 0.0 for stat in _S2D_STATS}

    def per_game(self) -> Dict[str, float]:
        games = max(1, self.games)
        out = {}
        for stat in _S2D_STATS:
            label = _S2D_NAMES[stat]
            out[f"off_{label}_s2d"] = self.offense[stat] / games
            out[f"def_{label}_s2d"] = self.defense[stat] / games
        out["wins_s2d"] = float(self.wins)
        out["losses_s2d"] = float(self.losses)
        return out

    def add(self, own: Dict[str, float], allowed: Dict[str, float], won: Optional[int]) -> None:
        self.games += 1
        for stat in _S2D_STATS:
            self.offense[stat] += own.get(stat, 0.0)
            self.defense[stat] += allowed.get(stat, 0.0)
        if won == 1:
            self.wins += 1
        elif won == 0:
            self.losses += 1


def _profile_distance(a: Dict, b: Dict) -> float:
    return (
        abs(safe_float(a.get("off_total_yds_s2d")) - safe_float(b.get("off_total_yds_s2d")))
        + abs(safe_float(a.get("def_total_yds_s2d")) - safe_float(b.get("def_total_yds_s2d")))
        + 50 * abs(safe_float(a.get("off_turnovers_s2d")) - safe_float(b.get("off_turnovers_s2d")))
        + 50 * abs(safe_float(a.get("def_turnovers_s2d")) - safe_float(b.get("def_turnovers_s2d")))
    )


def similar_opponent_aggregates(completed: List[Dict], team: str, home: int, candidate: Dict) -> Dict[str, float]:
    """Win rate and yardage-margin proxy in past games at the same venue with a similar profile."""
    pool = [r for r in completed if r["team"] == team and r["home"] == home and r.get("win") in (0, 1)]
    if not pool:
        return {"winrate": 0.0, "pointdiff": 0.0, "count": 0.0}
    distances = np.array([_profile_distance(r, candidate) for r in pool])
    band = max(50.0, float(np.sort(distances)[len(distances) // 2]) * 1.5)
    selected = [r for r, d in zip(pool, distances) if d <= band] or pool[:5]
    winrate = sum(r["win"] for r in selected) / len(selected)
    pointdiff = sum(
        safe_float(r.get("off_total_yds_s2d_minus_opp")) - safe_float(r.get("def_total_yds_s2d_minus_opp"))
        for r in selected
    ) / len(selected)
    return {"winrate": winrate, "pointdiff": pointdiff, "count": float(len(selected))}


def build_features(
    schedules,
    team_weekly,
    season: int,
    prev_team_weekly=None,
    injuries=None,
) -> List[Dict]:
    """
    Build team-game rows for one season.

    Args:
        schedules: Schedule table (DataFrame or records) with scores when final
        team_weekly: Per-team, per-week box-score table
        season: Season to build
        prev_team_weekly: Previous season's team-week table, seeds Elo
        injuries: Injury report table; ignored before injury coverage begins

    Returns:
        List of dict rows, two per game (home then away), chronological
    """
    games = regular_season_games(schedules, season)
    weekly = index_team_weeks(team_weekly, season)
    if season < INJURY_DATA_MIN_SEASON:
        loads: Dict[tuple, float] = {}
    else:
        loads = injury_loads(injuries, season)

    elo = EloTracker(seed_elo(prev_team_weekly))
    totals: Dict[str, _SeasonTotals] = {}
    last_played: Dict[str, Optional[str]] = {}
    completed: List[Dict] = []
    rows: List[Dict] = []

    weeks = sorted({g["week"] for g in games})
    for week in weeks:
        week_games = [g for g in games if g["week"] == week]
        week_results = []
        for game in week_games:
            home, away = str(game["home_team"]), str(game["away_team"])
            label = home_win_label(game)
            h_tot = totals.setdefault(home, _SeasonTotals()).per_game()
            a_tot = totals.setdefault(away, _SeasonTotals()).per_game()
            h_elo = schedule_power(game, True)
            a_elo = schedule_power(game, False)
            h_elo = elo.rating(home) if h_elo is None else h_elo
            a_elo = elo.rating(away) if a_elo is None else a_elo
            h_rest = _days_between(last_played.get(home), game.get("game_date"))
            a_rest = _days_between(last_played.get(away), game.get("game_date"))
            h_inj = loads.get((home, week), 0.0)
            a_inj = loads.get((away, week), 0.0)

            for team, opp, is_home, me, op in (
                (home, away, 1, h_tot, a_tot),
                (away, home, 0, a_tot, h_tot),
            ):
                agg = similar_opponent_aggregates(completed, team, is_home, me)
                sign = 1.0 if is_home else -1.0
                row = {
                    "season": int(season),
                    "week": week,
                    "team": team,
                    "opponent": opp,
                    "home": is_home,
                    "game_date": game.get("game_date"),
                    **me,
                    "sim_winrate_same_loc_s2d": agg["winrate"],
                    "sim_pointdiff_same_loc_s2d": agg["pointdiff"],
                    "sim_count_same_loc_s2d": agg["count"],
                    "off_total_yds_s2d_minus_opp": me["off_total_yds_s2d"] - op["off_total_yds_s2d"],
                    "def_total_yds_s2d_minus_opp": me["def_total_yds_s2d"] - op["def_total_yds_s2d"],
                    "off_turnovers_s2d_minus_opp": me["off_turnovers_s2d"] - op["off_turnovers_s2d"],
                    "def_turnovers_s2d_minus_opp": me["def_turnovers_s2d"] - op["def_turnovers_s2d"],
                    "elo_pre": h_elo if is_home else a_elo,
                    "elo_diff": sign * (h_elo - a_elo),
                    "rest_days": float(h_rest if is_home else a_rest),
                    "rest_diff": sign * float(h_rest - a_rest),
                    "injury_load": h_inj if is_home else a_inj,
                    "injury_load_diff": sign * (h_inj - a_inj),
                    "win": None if label is None else (label if is_home else 1 - label),
                }
                rows.append(row)
            week_results.append((game, home, away, label))

        # Fold the week's results in only after every row for the week exists.
        for game, home, away, label in week_results:
            h_stats = stat_snapshot(weekly.get((home, week)))
            a_stats = stat_snapshot(weekly.get((away, week)))
            if label is not None:
                totals[home].add(h_stats, a_stats, label)
                totals[away].add(a_stats, h_stats, 1 - label)
                elo.update(home, away, label)
            if game.get("game_date"):
                last_played[home] = game["game_date"]
                last_played[away] = game["game_date"]
        completed.extend(r for r in rows if r["week"] == week and r["win"] in (0, 1))

    logger.debug("Built %d team-game rows for season %s", len(rows), season)
    return rows
