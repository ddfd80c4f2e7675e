"""Schema validators for weekly training artifacts."""

from __future__ import annotations

import math
from typing import Callable, Dict, List, Optional

from ...errors import ArtifactValidationError

MODEL_NAMES = ("logistic", "tree", "bt", "ann")


def _to_float(value) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _is_prob(value) -> bool:
    number = _to_float(value)
    return number is not None and 0.0 <= number <= 1.0


def _check_coordinate(payload: Dict, errors: List[str]) -> None:
    season = payload.get("season")
    week = payload.get("week")
    if not isinstance(season, int) or isinstance(season, bool):
        errors.append("'season' must be an integer")
    if not isinstance(week, int) or isinstance(week, bool) or week < 1:
        errors.append("'week' must be an integer >= 1")


def _check_weights(weights, label: str, errors: List[str]) -> None:
    if not isinstance(weights, dict):
        errors.append(f"{label} must be an object")
        return
    values = []
    for name in MODEL_NAMES:
        value = _to_float(weights.get(name))
        if value is None or value < 0:
            errors.append(f"{label}.{name} must be a non-negative number")
            return
        values.append(value)
    if abs(sum(values) - 1.0) > 1e-6:
        errors.append(f"{label} must sum to 1 (got {sum(values):.6f})")


def validate_predictions_payload(payload: Dict) -> List[str]:
    errors: List[str] = []
    if not isinstance(payload, dict):
        return ["predictions payload must be an object"]
    _check_coordinate(payload, errors)
    games = payload.get("games")
    if not isinstance(games, list):
        return errors + ["predictions payload must include a 'games' list"]

    for idx, game in enumerate(games):
        if not isinstance(game, dict):
            errors.append(f"games[{idx}] must be an object")
            continue
        missing = [k for k in ("game_id", "home_team", "away_team", "probs", "forecast") if k not in game]
        if missing:
            errors.append(f"games[{idx}] missing fields: {', '.join(missing)}")
            continue
        probs = game.get("probs") or {}
        for name in MODEL_NAMES + ("blended",):
            if not _is_prob(probs.get(name)):
                errors.append(f"games[{idx}].probs.{name} must be a probability")
        forecast = game.get("forecast") or {}
        if not _is_prob(forecast.get("home_win_prob")):
            errors.append(f"games[{idx}].forecast.home_win_prob must be a probability")
        ci = (game.get("ci") or {}).get("bt90")
        if ci is not None:
            if not isinstance(ci, list) or len(ci) != 2 or not all(_is_prob(v) for v in ci):
                errors.append(f"games[{idx}].ci.bt90 must be a [low, high] probability pair")
            elif float(ci[0]) > float(ci[1]):
                errors.append(f"games[{idx}].ci.bt90 low bound exceeds high bound")
        if "blend_weights" in game:
            _check_weights(game["blend_weights"], f"games[{idx}].blend_weights", errors)
    return errors


def validate_model_payload(payload: Dict) -> List[str]:
    errors: List[str] = []
    if not isinstance(payload, dict):
        return ["model payload must be an object"]
    _check_coordinate(payload, errors)
    if not isinstance(payload.get("feature_hash"), str) or not payload.get("feature_hash"):
        errors.append("'feature_hash' must be a non-empty string")
    features = payload.get("features")
    if not isinstance(features, list) or not all(isinstance(f, str) for f in features):
        errors.append("'features' must be a list of names")

    models = payload.get("models")
    if not isinstance(models, dict):
        errors.append("'models' must be an object")
    else:
        for name in MODEL_NAMES:
            artifact = models.get(name)
            if not isinstance(artifact, dict):
                errors.append(f"models.{name} missing")
                continue
            if not isinstance(artifact.get("features"), list):
                errors.append(f"models.{name}.features must be a list")
        logistic = models.get("logistic") or {}
        if isinstance(logistic.get("weights"), list) and isinstance(logistic.get("features"), list):
            if logistic["weights"] and len(logistic["weights"]) != len(logistic["features"]):
                errors.append("models.logistic weights and features differ in length")

    ensemble = payload.get("ensemble")
    if not isinstance(ensemble, dict):
        errors.append("'ensemble' must be an object")
    else:
        _check_weights(ensemble.get("weights"), "ensemble.weights", errors)
        calibration = ensemble.get("calibration") or {}
        beta = _to_float(calibration.get("beta"))
        if beta is None or beta < 0:
            errors.append("ensemble.calibration.beta must be a non-negative number")
        if _to_float(calibration.get("intercept")) is None:
            errors.append("ensemble.calibration.intercept must be a number")
    return errors


def validate_diagnostics_payload(payload: Dict) -> List[str]:
    errors: List[str] = []
    if not isinstance(payload, dict):
        return ["diagnostics payload must be an object"]
    _check_coordinate(payload, errors)
    metrics = payload.get("metrics")
    if not isinstance(metrics, dict):
        errors.append("'metrics' must be an object")
    else:
        for name in MODEL_NAMES + ("ensemble",):
            if not isinstance(metrics.get(name), dict):
                errors.append(f"metrics.{name} missing")
    _check_weights(payload.get("blend_weights"), "blend_weights", errors)
    if not isinstance(payload.get("calibration_bins"), list):
        errors.append("'calibration_bins' must be a list")
    n_train = payload.get("n_train_rows")
    if not isinstance(n_train, int) or n_train < 0:
        errors.append("'n_train_rows' must be a non-negative integer")
    return errors


def validate_bt_features_payload(payload: Dict) -> List[str]:
    errors: List[str] = []
    if not isinstance(payload, dict):
        return ["bt_features payload must be an object"]
    _check_coordinate(payload, errors)
    if not isinstance(payload.get("features"), list):
        errors.append("'features' must be a list of names")
    games = payload.get("games")
    if not isinstance(games, list):
        return errors + ["bt_features payload must include a 'games' list"]
    for idx, game in enumerate(games):
        if not isinstance(game, dict) or "game_id" not in game:
            errors.append(f"games[{idx}] must be an object with 'game_id'")
            continue
        if not _is_prob(game.get("prob")) or not _is_prob(game.get("base_prob")):
            errors.append(f"games[{idx}] prob/base_prob must be probabilities")
        samples = game.get("bootstrap_samples")
        if not isinstance(samples, int) or samples < 1:
            errors.append(f"games[{idx}].bootstrap_samples must be a positive integer")
    return errors


VALIDATORS: Dict[str, Callable[[Dict], List[str]]] = {
    "predictions": validate_predictions_payload,
    "model": validate_model_payload,
    "diagnostics": validate_diagnostics_payload,
    "bt_features": validate_bt_features_payload,
}


def assert_valid(kind: str, payload: Dict) -> None:
    """Raise :class:`ArtifactValidationError` when ``payload`` fails the ``kind`` checks."""
    errors = VALIDATORS[kind](payload)
    if errors:
        raise ArtifactValidationError(kind, errors)
