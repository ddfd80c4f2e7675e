"""Unit tests for weekly artifact validators."""

import pytest

from src.data.ingestion.validators import (
    assert_valid,
    validate_bt_features_payload,
    validate_diagnostics_payload,
    validate_model_payload,
    validate_predictions_payload,
)
from src.errors import ArtifactValidationError

WEIGHTS = {"logistic": 0.4, "tree": 0.1, "bt": 0.3, "ann": 0.2}
PROBS = {"logistic": 0.6, "tree": 0.55, "bt": 0.62, "ann": 0.58, "blended": 0.6}


def _game(**overrides):
    game = {
        "game_id": "2020-W01-ARI-BAL",
        "home_team": "ARI",
        "away_team": "BAL",
        "probs": dict(PROBS),
        "blend_weights": dict(WEIGHTS),
        "ci": {"bt90": [0.5, 0.7]},
        "forecast": {"home_win_prob": 0.6},
    }
    game.update(overrides)
    return game


def _model():
    return {
        "season": 2020,
        "week": 1,
        "feature_hash": "abc",
        "features": ["a"],
        "models": {name: {"features": ["a"], "weights": [0.1]} for name in ("logistic", "tree", "bt", "ann")},
        "ensemble": {"weights": dict(WEIGHTS), "calibration": {"beta": 1.0, "intercept": 0.0}},
    }


def test_predictions_ok():
    assert validate_predictions_payload({"season": 2020, "week": 1, "games": [_game()]}) == []


def test_predictions_missing_field():
    game = _game()
    del game["forecast"]
    errors = validate_predictions_payload({"season": 2020, "week": 1, "games": [game]})
    assert errors
    assert "missing fields" in errors[0]


def test_predictions_rejects_bad_probability_and_interval():
    games = [
        _game(probs={**PROBS, "ann": 1.2}),
        _game(ci={"bt90": [0.8, 0.4]}),
    ]
    errors = validate_predictions_payload({"season": 2020, "week": 1, "games": games})
    assert any("probs.ann" in e for e in errors)
    assert any("low bound exceeds high" in e for e in errors)


def test_predictions_weights_must_sum_to_one():
    game = _game(blend_weights={**WEIGHTS, "ann": 0.3})
    errors = validate_predictions_payload({"season": 2020, "week": 1, "games": [game]})
    assert any("must sum to 1" in e for e in errors)


def test_coordinate_checked():
    errors = validate_predictions_payload({"season": "2020", "week": 0, "games": []})
    assert len(errors) == 2


def test_model_ok_and_negative_beta():
    assert validate_model_payload(_model()) == []
    model = _model()
    model["ensemble"]["calibration"]["beta"] = -0.5
    assert any("beta" in e for e in validate_model_payload(model))


def test_model_missing_learner():
    model = _model()
    del model["models"]["bt"]
    assert "models.bt missing" in validate_model_payload(model)


def test_diagnostics():
    payload = {
        "season": 2020,
        "week": 2,
        "metrics": {name: {} for name in ("logistic", "tree", "bt", "ann", "ensemble")},
        "blend_weights": dict(WEIGHTS),
        "calibration_bins": [],
        "n_train_rows": 2,
    }
    assert validate_diagnostics_payload(payload) == []
    payload["n_train_rows"] = -1
    assert validate_diagnostics_payload(payload)


def test_bt_features():
    payload = {
        "season": 2020,
        "week": 2,
        "features": ["diff_total_yards"],
        "games": [{"game_id": "g", "prob": 0.5, "base_prob": 0.5, "bootstrap_samples": 10}],
    }
    assert validate_bt_features_payload(payload) == []
    payload["games"][0]["bootstrap_samples"] = 0
    assert validate_bt_features_payload(payload)


def test_assert_valid_raises_with_errors():
    with pytest.raises(ArtifactValidationError) as excinfo:
        assert_valid("model", {"season": 2020, "week": 1})
    assert excinfo.value.kind == "model"
    assert excinfo.value.errors
