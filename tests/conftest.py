"""Shared fixtures: a small synthetic league served through an in-memory data hub."""

import numpy as np
import pandas as pd
import pytest

from src.config import AnnConfig, BradleyTerryConfig, ConcurrencyConfig, LogisticConfig, TrainerConfig
from src.data.ingestion.providers import InMemorySource, SeasonDataHub

TEAMS = ("ARI", "BAL", "CHI", "DAL")
STRENGTH = {"ARI": 3.0, "BAL": 1.0, "CHI": 2.0, "DAL": 0.0}
PAIRINGS = (
    (("ARI", "BAL"), ("CHI", "DAL")),
    (("BAL", "CHI"), ("DAL", "ARI")),
    (("CHI", "ARI"), ("BAL", "DAL")),
)


def build_season_tables(season, weeks=4, unplayed_from=None, seed=0):
    """
    Schedules and team-week box scores for a four-team round robin.

    Weeks at or after ``unplayed_from`` have no scores and no box scores.
    """
    rng = np.random.RandomState(seed + season)
    schedules, weekly = [], []
    for week in range(1, weeks + 1):
        cycle = (week - 1) // len(PAIRINGS)
        for home, away in PAIRINGS[(week - 1) % len(PAIRINGS)]:
            if cycle % 2:
                home, away = away, home
            played = unplayed_from is None or week < unplayed_from
            home_pts = int(17 + 3 * STRENGTH[home] + 2 + rng.randint(0, 5))
            away_pts = int(17 + 3 * STRENGTH[away] + rng.randint(0, 5))
            if home_pts == away_pts:
                home_pts += 1
            schedules.append({
                "season": season,
                "week": week,
                "season_type": "REG",
                "game_date": f"{season}-09-{7 * week:02d}",
                "home_team": home,
                "away_team": away,
                "home_score": home_pts if played else None,
                "away_score": away_pts if played else None,
            })
            if not played:
                continue
            for team, won in ((home, home_pts > away_pts), (away, away_pts > home_pts)):
                weekly.append({
                    "season": season,
                    "week": week,
                    "team": team,
                    "passing_yards": 220 + 25 * STRENGTH[team] + rng.randint(-30, 31),
                    "rushing_yards": 100 + 10 * STRENGTH[team] + rng.randint(-20, 21),
                    "first_downs": 16 + int(STRENGTH[team]) + rng.randint(0, 4),
                    "penalty_yards": 40 + rng.randint(0, 30),
                    "turnovers": rng.randint(0, 3),
                    "possession_time": f"{28 + rng.randint(0, 5)}:{rng.randint(0, 60):02d}",
                    "sacks": rng.randint(0, 4),
                    "win": int(won),
                })
    return pd.DataFrame(schedules), pd.DataFrame(weekly)


@pytest.fixture
def season_tables():
    return build_season_tables


@pytest.fixture
def make_hub():
    """Factory: ``make_hub({2020: {}, 2021: {"unplayed_from": 3}})``."""

    def _make(seasons):
        tables = {}
        for season, kwargs in seasons.items():
            schedules, weekly = build_season_tables(season, **(kwargs or {}))
            tables[("schedules", season)] = schedules
            tables[("team_weekly", season)] = weekly
        return SeasonDataHub([InMemorySource(tables)])

    return _make


@pytest.fixture
def fast_config(tmp_path):
    """Factory for a configuration small enough to train many weeks quickly."""

    def _make(**overrides):
        base = dict(
            artifacts_dir=str(tmp_path / "artifacts"),
            min_season=2020,
            min_train_season=2020,
            tune_hyperparams=False,
            weight_step=0.25,
            kfold=2,
            logistic=LogisticConfig(steps=60, cv_steps=30),
            ann=AnnConfig(
                seeds=1,
                max_epochs=3,
                patience=2,
                full_patience=2,
                cv_seeds=1,
                time_limit=10.0,
                cv_time_limit=5.0,
            ),
            bt=BradleyTerryConfig(steps=60, bootstrap=25),
            concurrency=ConcurrencyConfig(max_workers=2, data_fetch=2, week_tasks=1),
        )
        base.update(overrides)
        return TrainerConfig(**base)

    return _make
