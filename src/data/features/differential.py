"""
Game-differential rows for the Bradley-Terry learner.

One row per game from the home team's perspective. Rolling per-game
averages are blended with the previous season's averages early in the
season; each row also carries both teams' actual stat lines for the week,
which later serve as bootstrap history.
"""

from __future__ import annotations

import logging
from typing import Dict, List

from ...config import INJURY_DATA_MIN_SEASON
from .registry import FeatureRegistry, nested
from .team_stats import (
    EloTracker,
    SNAPSHOT_FIELDS,
    average,
    home_win_label,
    index_team_weeks,
    injury_loads,
    make_game_id,
    regular_season_games,
    schedule_power,
    seed_elo,
    stat_snapshot,
    team_code,
    to_records,
    with_ratio,
)

logger = logging.getLogger(__name__)

# Differentials rebuilt from resampled history during the bootstrap.
RESAMPLED_FEATURES = {
    "diff_total_yards": "total_yards",
    "diff_penalty_yards": "penalty_yards",
    "diff_turnovers": "turnovers",
    "diff_possession_seconds": "possession_seconds",
    "diff_r_ratio": "r_ratio",
}

DIFFERENTIAL_FEATURES = FeatureRegistry("game_differential")
for _name in RESAMPLED_FEATURES:
    DIFFERENTIAL_FEATURES.register(_name, nested("features", _name), group="rolling")
DIFFERENTIAL_FEATURES.register("diff_power_rating", nested("features", "diff_power_rating"), group="rating")
DIFFERENTIAL_FEATURES.register("diff_injury_load", nested("features", "diff_injury_load"), group="availability")

BT_FEATURES = DIFFERENTIAL_FEATURES.names()


def previous_season_averages(prev_team_weekly) -> Dict[str, Dict[str, float]]:
    by_team: Dict[str, List[Dict[str, float]]] = {}
    for row in to_records(prev_team_weekly):
        team = team_code(row)
        if team is None:
            continue
        by_team.setdefault(team, []).append(stat_snapshot(row))
    return {team: with_ratio(average(lines)) for team, lines in by_team.items()}


def blend_with_previous(current: Dict[str, float], previous: Dict[str, float], week: int) -> Dict[str, float]:
    """Weight last season's averages at 0.8 in week 1, fading by 0.2 per week."""
    prev_weight = max(0.0, 0.8 - 0.2 * (week - 1))
    cur_weight = 1.0 - prev_weight
    blended = {
        field: prev_weight * previous.get(field, 0.0) + cur_weight * current.get(field, 0.0)
        for field in SNAPSHOT_FIELDS
    }
    return with_ratio(blended)


def build_differential_features(
    schedules,
    team_weekly,
    season: int,
    prev_team_weekly=None,
    injuries=None,
) -> List[Dict]:
    """
    Build one home-perspective differential row per regular-season game.

    Args:
        schedules: Schedule table with scores when final
        team_weekly: Per-team, per-week box-score table
        season: Season to build
        prev_team_weekly: Previous season's table for early-season blending
        injuries: Injury report table; ignored before injury coverage begins

    Returns:
        List of GameDifferentialRow dicts in chronological order
    """
    games = regular_season_games(schedules, season)
    weekly = index_team_weeks(team_weekly, season)
    previous = previous_season_averages(prev_team_weekly)
    loads = {} if season < INJURY_DATA_MIN_SEASON else injury_loads(injuries, season)
    elo = EloTracker(seed_elo(prev_team_weekly))
    history: Dict[str, List[Dict[str, float]]] = {}
    empty = with_ratio({field: 0.0 for field in SNAPSHOT_FIELDS})
    out: List[Dict] = []

    for week in sorted({g["week"] for g in games}):
        pending = []
        for game in (g for g in games if g["week"] == week):
            home, away = str(game["home_team"]), str(game["away_team"])
            h_ctx = blend_with_previous(average(history.get(home, [])), previous.get(home, empty), week)
            a_ctx = blend_with_previous(average(history.get(away, [])), previous.get(away, empty), week)
            h_power = schedule_power(game, True)
            a_power = schedule_power(game, False)
            h_ctx["power_rating"] = elo.rating(home) if h_power is None else h_power
            a_ctx["power_rating"] = elo.rating(away) if a_power is None else a_power
            h_ctx["injury_load"] = loads.get((home, week), 0.0)
            a_ctx["injury_load"] = loads.get((away, week), 0.0)

            features = {
                name: h_ctx[stat] - a_ctx[stat] for name, stat in RESAMPLED_FEATURES.items()
            }
            features["diff_power_rating"] = h_ctx["power_rating"] - a_ctx["power_rating"]
            features["diff_injury_load"] = h_ctx["injury_load"] - a_ctx["injury_load"]

            h_actual = with_ratio(stat_snapshot(weekly.get((home, week))))
            a_actual = with_ratio(stat_snapshot(weekly.get((away, week))))
            label = home_win_label(game)
            out.append({
                "season": int(season),
                "week": week,
                "game_id": make_game_id(season, week, home, away),
                "home_team": home,
                "away_team": away,
                "features": {name: features[name] for name in BT_FEATURES},
                "label_win": label,
                "home_context": h_ctx,
                "away_context": a_ctx,
                "home_actual": h_actual,
                "away_actual": a_actual,
            })
            pending.append((home, away, label, h_actual, a_actual))

        for home, away, label, h_actual, a_actual in pending:
            if label is None:
                continue
            history.setdefault(home, []).append(h_actual)
            history.setdefault(away, []).append(a_actual)
            elo.update(home, away, label)

    logger.debug("Built %d differential rows for season %s", len(out), season)
    return out
