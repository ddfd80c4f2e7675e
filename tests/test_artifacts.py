"""Tests for artifact persistence, season rollups and forecast explanations."""

import json

import numpy as np
import pytest

from src.errors import ArtifactValidationError
from src.pipeline.artifacts import (
    STATUS_FINAL,
    STATUS_PARTIAL,
    STATUS_PENDING,
    ArtifactStore,
    build_outcomes,
    read_json,
    update_historical_artifacts,
    write_json,
)
from src.pipeline.explain import error_notes, league_profile, narrative, pca_summary


def _game(game_id, prob, home_win):
    return {
        "game_id": game_id,
        "home_team": "ARI",
        "away_team": "BAL",
        "probs": {"logistic": 0.6, "tree": 0.5, "bt": 0.55, "ann": 0.5, "blended": prob},
        "forecast": {"home_win_prob": prob},
        "actual": {"home_win": home_win},
    }


# ---------------------------------------------------------------------------
# JSON persistence
# ---------------------------------------------------------------------------


class TestJson:
    def test_non_finite_values_become_null(self, tmp_path):
        path = write_json(tmp_path / "nested" / "out.json", {
            "a": float("nan"),
            "b": [np.float64(np.inf), np.int64(3)],
            "c": np.array([1.5, 2.0]),
        })
        payload = json.loads(path.read_text())
        assert payload == {"a": None, "b": [None, 3], "c": [1.5, 2.0]}
        assert [p.name for p in path.parent.iterdir()] == ["out.json"]

    def test_read_json_tolerates_missing_and_corrupt(self, tmp_path):
        assert read_json(tmp_path / "missing.json") is None
        (tmp_path / "bad.json").write_text("{", encoding="utf-8")
        assert read_json(tmp_path / "bad.json") is None
        (tmp_path / "list.json").write_text("[1, 2]", encoding="utf-8")
        assert read_json(tmp_path / "list.json") is None


class TestArtifactStore:
    def test_weeks_are_sorted_and_filtered(self, tmp_path):
        store = ArtifactStore(tmp_path)
        for season, week in ((2021, 2), (2020, 10), (2020, 3)):
            write_json(store.weekly_path("predictions", season, week), {})
        write_json(store.weekly_path("model", 2019, 1), {})
        (tmp_path / "predictions_2020.json").write_text("{}")

        assert store.weeks("predictions") == [(2020, 3), (2020, 10), (2021, 2)]
        assert store.weeks("predictions", season=2020) == [(2020, 3), (2020, 10)]
        assert store.latest_before("predictions", 2021, 1) == (2020, 10)
        assert store.latest_before("predictions", 2020, 3) is None
        assert ArtifactStore(tmp_path / "absent").weeks("model") == []

    def test_has_week_needs_every_required_kind(self, tmp_path):
        store = ArtifactStore(tmp_path)
        for kind in ("predictions", "model", "diagnostics"):
            write_json(store.weekly_path(kind, 2020, 1), {})
        assert not store.has_week(2020, 1)
        write_json(store.weekly_path("bt_features", 2020, 1), {})
        assert store.has_week(2020, 1)

    def test_save_validates_known_kinds(self, tmp_path):
        store = ArtifactStore(tmp_path)
        with pytest.raises(ArtifactValidationError):
            store.save("predictions", 2020, 1, {"season": 2020, "week": 1})
        assert not store.weekly_path("predictions", 2020, 1).exists()

        store.save("predictions", 2020, 1, {"season": 2020, "week": 1}, validate=False)
        store.save("outcomes", 2020, 1, {"anything": True})
        assert store.load("outcomes", 2020, 1) == {"anything": True}

    def test_paths(self, tmp_path):
        store = ArtifactStore(tmp_path)
        assert store.weekly_path("model", 2020, 4).name == "model_2020_W04.json"
        assert store.season_path("season_summary", 2020).name == "season_summary_2020.json"
        assert store.calibration_history_path(2020).name == "calibration_history_2020.csv"


# ---------------------------------------------------------------------------
# Outcomes and rollups
# ---------------------------------------------------------------------------


class TestOutcomes:
    @pytest.mark.parametrize("labels, status", [
        ((1, 0), STATUS_FINAL),
        ((1, None), STATUS_PARTIAL),
        ((None, None), STATUS_PENDING),
    ])
    def test_status(self, labels, status):
        predictions = {
            "season": 2020,
            "week": 1,
            "games": [_game(f"g{i}", 0.6, label) for i, label in enumerate(labels)],
        }
        outcomes = build_outcomes(predictions)
        assert outcomes["status"] == status
        assert outcomes["n_games"] == 2
        assert outcomes["games"][0]["prob"] == 0.6

    def test_empty_week_is_pending(self):
        assert build_outcomes({"season": 2020, "week": 1, "games": []})["status"] == STATUS_PENDING


def test_season_rollups(tmp_path):
    store = ArtifactStore(tmp_path)
    write_json(store.weekly_path("predictions", 2020, 1),
               {"season": 2020, "week": 1, "games": [_game("a", 0.7, 1), _game("b", 0.4, 1)]})
    write_json(store.weekly_path("predictions", 2020, 2),
               {"season": 2020, "week": 2, "games": [_game("c", 0.6, None)]})

    summary = update_historical_artifacts(store, 2020)

    assert summary["weeks_predicted"] == 2
    assert summary["weeks_final"] == 1
    assert summary["last_week"] == 2
    assert summary["n_scored"] == 2
    assert summary["accuracy"] == pytest.approx(0.5)
    assert store.load("outcomes", 2020, 2)["status"] == STATUS_PENDING

    week_metrics = store.load("metrics", 2020, 1)
    assert week_metrics["metrics"]["forecast"]["n"] == 2
    assert "logistic" in week_metrics["metrics"]
    assert store.load("metrics", 2020, 2)["metrics"] is None

    index = read_json(store.season_path("season_index", 2020))
    assert [w["week"] for w in index["weeks"]] == [1, 2]
    assert "outcomes" in index["weeks"][0]["artifacts"]
    season_metrics = read_json(store.season_path("metrics", 2020))
    assert season_metrics["status"] == STATUS_PARTIAL


# ---------------------------------------------------------------------------
# Explanations
# ---------------------------------------------------------------------------


class TestExplain:
    def test_narrative_names_favourite_and_edges(self):
        row = {
            "home_team": "ARI",
            "away_team": "BAL",
            "features": {"diff_total_yards": 80.0, "diff_turnovers": 1.5},
            "home_context": {"total_yards": 400.0, "turnovers": 1.0},
            "away_context": {"total_yards": 300.0, "turnovers": 3.0},
        }
        profile = league_profile([row], ["diff_total_yards", "diff_turnovers"])

        text = narrative(row, 0.3, profile)

        assert text.startswith("BAL favoured over ARI at 70%.")
        assert "ARI edge in total yards (+80.0)" in text
        assert "BAL edge in turnovers (+1.5)" in text
        assert "BAL turning the ball over more than the league" in text

    def test_league_profile_of_nothing(self):
        profile = league_profile([], ["diff_total_yards"])
        assert profile["diff_mean"]["diff_total_yards"] == 0.0
        assert profile["diff_std"]["diff_total_yards"] == 1.0

    def test_pca_summary(self):
        X = np.random.RandomState(0).normal(size=(20, 4))
        summary = pca_summary(X, ["a", "b", "c", "d"])
        ratios = [c["explained_variance_ratio"] for c in summary["components"]]
        assert len(ratios) == 3
        assert ratios == sorted(ratios, reverse=True)
        assert sum(ratios) <= 1.0 + 1e-9
        assert pca_summary(X[:1], ["a", "b", "c", "d"])["components"] == []

    def test_error_notes(self):
        X = np.array([[0.0, 1.0], [0.0, -1.0], [5.0, 0.0], [-5.0, 0.0]])
        y = np.array([1.0, 0.0, 1.0, 0.0])
        p = np.array([0.9, 0.1, 0.2, 0.8])

        notes = error_notes(X, y, p, ["a", "b"])
        assert notes["misclassified"] == 2
        assert notes["features"][0]["feature"] == "a"

        masked = error_notes(X, y, p, ["a", "b"], mask=np.array([True, True, False, False]))
        assert masked == {"rows": 2, "misclassified": 0, "features": []}
