"""
Weekly Training Orchestrator.

For a target (season, week): build feature rows, split strictly by time,
produce out-of-fold predictions for the four learners, search blend
weights, recalibrate, refit every learner on the full training set and
score the target week's games.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from ..config import TrainerConfig
from ..data.features.differential import BT_FEATURES, DIFFERENTIAL_FEATURES, build_differential_features
from ..data.features.registry import feature_hash
from ..data.features.team_game import TEAM_FEATURES, build_features
from ..data.features.team_stats import make_game_id
from ..data.ingestion.providers import SeasonData
from ..ml.calibration.calibration import calibration_bins, hash_calibration_meta, metric_block
from ..ml.ensemble.stacking import (
    MODEL_ORDER,
    StackResult,
    blend,
    choose_fold_count,
    fit_stack,
    kfold_indices,
    out_of_fold,
)
from ..ml.optimization.hyperparameter_tuning import load_model_params, save_model_params, tune_ann, tune_bt
from ..predictors.ann import AnnCommittee
from ..predictors.base import safe_prob
from ..predictors.bradley_terry import BradleyTerryLearner
from ..predictors.logistic import LogisticLearner
from ..predictors.tree import TreeLearner
from ..temporal import coordinate, is_before, sort_chronologically, split_train_test
from ..training.state import utc_now
from .artifacts import ArtifactStore
from .explain import error_notes, league_profile, narrative, pca_summary, top_drivers
from .warm_start import load_logistic_warm_start

logger = logging.getLogger(__name__)

MIN_TUNING_ROWS = 60


@dataclass
class TrainingResult:
    season: int
    week: int
    skipped: bool = False
    feature_hash: str = ""
    n_train: int = 0
    n_test: int = 0
    predictions: Optional[Dict] = None
    model: Optional[Dict] = None
    diagnostics: Optional[Dict] = None
    bt_features: Optional[Dict] = None
    ann_artifact: Optional[Dict] = None
    paths: List[Path] = field(default_factory=list)


@dataclass
class SeasonRows:
    """Feature rows built for one season, reused across its weeks."""

    season: int
    team_rows: List[Dict] = field(default_factory=list)
    diff_rows: List[Dict] = field(default_factory=list)


def build_season_rows(data: SeasonData) -> SeasonRows:
    kwargs = dict(prev_team_weekly=data.prev_team_weekly, injuries=data.injuries)
    return SeasonRows(
        season=data.season,
        team_rows=build_features(data.schedules, data.team_weekly, data.season, **kwargs),
        diff_rows=build_differential_features(data.schedules, data.team_weekly, data.season, **kwargs),
    )


def _home_game_id(row: Mapping) -> str:
    return make_game_id(row["season"], row["week"], row["team"], row["opponent"])


def pair_rows(home_rows: Sequence[Mapping], diff_by_id: Mapping[str, Dict]) -> Tuple[List[Dict], List[Dict]]:
    """Join home team-game rows to their differential rows by ``game_id``."""
    teams, diffs = [], []
    for row in home_rows:
        diff = diff_by_id.get(_home_game_id(row))
        if diff is None:
            continue
        teams.append(row)
        diffs.append(diff)
    return teams, diffs


def _params_up_to(stored: Mapping, season: int) -> Dict:
    """Stored tuning entries recorded for ``season`` or an earlier one."""
    kept = {}
    for name, entry in stored.items():
        try:
            tuned_season = int(entry["season"])
        except (KeyError, TypeError, ValueError):
            continue
        if tuned_season <= int(season):
            kept[name] = entry
        else:
            logger.debug("Skipping %s params tuned for season %s", name, tuned_season)
    return kept


class WeeklyTrainer:
    """Trains one (season, week) and assembles its artifact payloads."""

    def __init__(self, config: TrainerConfig, store: Optional[ArtifactStore] = None):
        self.config = config
        self.store = store or ArtifactStore(config.artifacts_dir)
        self.features = TEAM_FEATURES.names()
        self.bt_features = list(BT_FEATURES)

    # ------------------------------------------------------------------
    # Rows and split
    # ------------------------------------------------------------------

    def _in_training_window(self, season: int, target_season: int) -> bool:
        if season < self.config.min_train_season:
            return False
        limit = self.config.max_train_seasons
        return limit is None or season > target_season - limit

    def prepare(
        self,
        season: int,
        week: int,
        current: SeasonRows,
        historical: Optional[Sequence[SeasonRows]] = None,
    ):
        """Chronological training pairs and target-week pairs."""
        team_rows: List[Dict] = []
        diff_rows: List[Dict] = []
        for block in list(historical or []) + [current]:
            if block.season != current.season and not self._in_training_window(block.season, season):
                continue
            team_rows.extend(block.team_rows)
            diff_rows.extend(block.diff_rows)
        team_rows = sort_chronologically(team_rows)
        diff_rows = sort_chronologically(diff_rows)

        home_rows = [r for r in team_rows if int(r.get("home", 0)) == 1]
        train_home, test_home = split_train_test(home_rows, (season, week), label_key="win")
        diff_by_id = {r["game_id"]: r for r in diff_rows}
        train = pair_rows(train_home, diff_by_id)
        test = pair_rows(test_home, diff_by_id)
        history = [r for r in diff_rows if is_before((season, week), r)]
        return train, test, history

    # ------------------------------------------------------------------
    # Hyperparameters
    # ------------------------------------------------------------------

    def _hyperparams(self, X_team, y, train_diffs, season: int, week: int) -> Dict:
        cfg = self.config
        ann = {
            "seeds": cfg.ann.seeds,
            "max_epochs": cfg.ann.max_epochs,
            "patience": cfg.ann.full_patience,
            "learning_rate": cfg.ann.learning_rate,
            "batch_size": cfg.ann.batch_size,
            "l2": cfg.ann.l2,
            "dropout": cfg.ann.dropout,
            "architecture": cfg.ann.architecture,
        }
        bt = {"steps": cfg.bt.steps, "learning_rate": cfg.bt.learning_rate, "l2": cfg.bt.l2}
        logistic = {"steps": cfg.logistic.steps, "learning_rate": cfg.logistic.learning_rate, "l2": cfg.logistic.l2}
        source = "config"

        stored = _params_up_to(load_model_params(self.store.root), season)
        tuned_for_season = all(
            int((stored.get(name) or {}).get("season", -1)) == int(season) for name in ("ann", "bt")
        )
        if cfg.tune_hyperparams and not cfg.fast_mode and not tuned_for_season and len(y) >= MIN_TUNING_ROWS:
            ann_result = tune_ann(
                X_team, y, self.features,
                base_params={k: v for k, v in ann.items() if k != "seeds"},
                time_limit=cfg.ann.tuning_time_limit,
            )
            bt_result = tune_bt(train_diffs, base_params=bt, time_limit=cfg.ann.tuning_time_limit)
            stored = save_model_params(self.store.root, {"ann": ann_result, "bt": bt_result}, season, week)
            source = "tuned"
        elif stored:
            source = "model_params"

        if not cfg.fast_mode:
            ann.update((stored.get("ann") or {}).get("best_params") or {})
            bt.update((stored.get("bt") or {}).get("best_params") or {})
        return {"logistic": logistic, "tree": {}, "bt": bt, "ann": ann, "source": source}

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def _fold_fitters(self, X_team, X_diff, y, hyper: Dict) -> Dict:
        cfg = self.config

        def logistic(train_idx, test_idx):
            model = LogisticLearner(
                self.features,
                steps=cfg.logistic.cv_steps,
                learning_rate=hyper["logistic"]["learning_rate"],
                l2=hyper["logistic"]["l2"],
            )
            return model.fit(X_team[train_idx], y[train_idx]).predict_proba(X_team[test_idx])

        def tree(train_idx, test_idx):
            return TreeLearner(self.features).fit(X_team[train_idx], y[train_idx]).predict_proba(X_team[test_idx])

        def bt(train_idx, test_idx):
            model = BradleyTerryLearner(self.bt_features, **hyper["bt"])
            return model.fit(X_diff[train_idx], y[train_idx]).predict_proba(X_diff[test_idx])

        def ann(train_idx, test_idx):
            params = dict(hyper["ann"], seeds=cfg.ann.cv_seeds, patience=cfg.ann.patience)
            model = AnnCommittee(self.features, time_limit=cfg.ann.cv_time_limit, **params)
            return model.fit(X_team[train_idx], y[train_idx]).predict_proba(X_team[test_idx])

        return {"logistic": logistic, "tree": tree, "bt": bt, "ann": ann}

    def existing_hash(self, season: int, week: int) -> Optional[str]:
        model = self.store.load("model", season, week)
        return (model or {}).get("feature_hash")

    def run(
        self,
        season: int,
        week: int,
        data: Optional[SeasonData] = None,
        historical: Optional[Sequence[SeasonRows]] = None,
        ann_warm_start: Optional[Dict] = None,
        current: Optional[SeasonRows] = None,
        force: bool = False,
    ) -> TrainingResult:
        """
        Train the ensemble for ``(season, week)``.

        Args:
            season: Target season
            week: Target week
            data: Raw tables for the target season (ignored when ``current`` is given)
            historical: Feature rows from earlier seasons
            ann_warm_start: Previous ANN committee artifact to seed networks
            current: Pre-built rows for the target season
            force: Retrain even when the stored feature hash matches

        Returns:
            TrainingResult; ``skipped`` when the stored model already covers these inputs
        """
        if current is None:
            if data is None:
                raise ValueError("run() needs either raw season data or pre-built rows")
            current = build_season_rows(data)
        (train_teams, train_diffs), (test_teams, test_diffs), history = self.prepare(
            season, week, current, historical
        )
        digest = feature_hash(
            self.features + self.bt_features,
            {"train_count": len(train_teams), "test_count": len(test_teams)},
        )
        result = TrainingResult(
            season=season, week=week, feature_hash=digest,
            n_train=len(train_teams), n_test=len(test_teams),
        )
        if not force and self.existing_hash(season, week) == digest:
            logger.info("Season %s week %s unchanged (hash %s); skipping", season, week, digest[:10])
            result.skipped = True
            return result

        X_team = TEAM_FEATURES.vectorize(train_teams, self.features)
        X_diff = DIFFERENTIAL_FEATURES.vectorize(train_diffs, self.bt_features)
        y = np.array([r["win"] for r in train_teams], dtype=float)
        training_weeks = sorted({coordinate(r) for r in train_teams})
        hyper = self._hyperparams(X_team, y, train_diffs, season, week)

        # Out-of-fold stacking.
        n = len(y)
        k = choose_fold_count(n, cap=self.config.kfold)
        folds = kfold_indices(n, k)
        oof = out_of_fold(self._fold_fitters(X_team, X_diff, y, hyper), n, folds)
        stack = fit_stack(oof, y, len(training_weeks), self.config.weight_step, folds=len(folds))

        # Full fits.
        warm = load_logistic_warm_start(self.store, season, week, self.features)
        logistic = LogisticLearner(
            self.features,
            init_weights=warm[0] if warm else None,
            init_bias=warm[1] if warm else 0.0,
            **hyper["logistic"],
        ).fit(X_team, y)
        tree = TreeLearner(self.features).fit(X_team, y)
        bt = BradleyTerryLearner(self.bt_features, **hyper["bt"]).fit(X_diff, y)
        ann = AnnCommittee(
            self.features,
            time_limit=self.config.ann.time_limit,
            warm_start=ann_warm_start,
            **hyper["ann"],
        ).fit(X_team, y)

        X_test = TEAM_FEATURES.vectorize(test_teams, self.features)
        bt_boot = bt.predict_with_bootstrap(
            test_diffs,
            history,
            bootstrap=self.config.bt.bootstrap,
            block=self.config.bt.block,
            seed=self.config.bt.seed,
            bandwidth=self.config.bt.bandwidth,
            half_life=self.config.bt.half_life_weeks,
        )
        test_probs = {
            "logistic": logistic.predict_proba(X_test),
            "tree": tree.predict_proba(X_test),
            "bt": safe_prob([b["prob"] for b in bt_boot]),
            "ann": ann.predict_proba(X_test),
        }
        pre = safe_prob(blend(test_probs, stack.weights)) if len(test_teams) else np.zeros(0)
        post = safe_prob(stack.calibrator.transform(pre)) if len(pre) else np.zeros(0)

        profile = league_profile(train_diffs or test_diffs, self.bt_features)
        games = []
        for i, (team_row, diff_row) in enumerate(zip(test_teams, test_diffs)):
            probs = {name: float(test_probs[name][i]) for name in MODEL_ORDER}
            probs["blended"] = float(post[i])
            label = diff_row.get("label_win")
            games.append({
                "game_id": diff_row["game_id"],
                "season": season,
                "week": week,
                "home_team": diff_row["home_team"],
                "away_team": diff_row["away_team"],
                "probs": probs,
                "blend_weights": dict(stack.weights),
                "calibration": {"pre": float(pre[i]), "post": float(post[i])},
                "ci": {"bt90": list(bt_boot[i]["ci90"])},
                "natural_language": narrative(diff_row, float(post[i]), profile),
                "top_drivers": top_drivers(
                    logistic, tree, bt, ann,
                    X_test[i],
                    DIFFERENTIAL_FEATURES.vectorize([diff_row], self.bt_features)[0],
                ),
                "forecast": {
                    "home_win_prob": float(post[i]),
                    "pick": diff_row["home_team"] if post[i] >= 0.5 else diff_row["away_team"],
                },
                "actual": {"home_win": label if label in (0, 1) else None},
            })

        result.ann_artifact = ann.to_artifact()
        result.predictions = {
            "season": season,
            "week": week,
            "generated_at": utc_now(),
            "feature_hash": digest,
            "games": games,
        }
        result.bt_features = {
            "season": season,
            "week": week,
            "features": list(self.bt_features),
            "bootstrap": {
                "draws": min(500, int(self.config.bt.bootstrap)),
                "block": self.config.bt.block,
                "seed": self.config.bt.seed,
            },
            "games": bt_boot,
        }
        result.diagnostics = self._diagnostics(
            season, week, oof, y, stack, training_weeks, train_teams, X_team, ann, X_test, hyper
        )
        result.model = {
            "season": season,
            "week": week,
            "created_at": utc_now(),
            "feature_hash": digest,
            "features": list(self.features),
            "bt_features": list(self.bt_features),
            "models": {
                "logistic": logistic.to_artifact(),
                "tree": tree.to_artifact(),
                "bt": bt.to_artifact(),
                "ann": result.ann_artifact,
            },
            "ensemble": {
                "weights": dict(stack.weights),
                "raw_weights": dict(stack.raw_weights),
                "calibration": stack.calibrator.to_dict(),
                "folds": stack.folds,
            },
            "pca": pca_summary(X_team, self.features),
        }
        logger.info(
            "Trained season %s week %s: %d train rows, %d games, weights %s",
            season, week, len(y), len(games),
            {k: round(v, 3) for k, v in stack.weights.items()},
        )
        return result

    def _diagnostics(
        self,
        season: int,
        week: int,
        oof: Dict[str, np.ndarray],
        y: np.ndarray,
        stack: StackResult,
        training_weeks: List[tuple],
        train_teams: List[Dict],
        X_team: np.ndarray,
        ann: AnnCommittee,
        X_test: np.ndarray,
        hyper: Dict,
    ) -> Dict:
        metrics = {name: metric_block(oof.get(name, []), y) for name in MODEL_ORDER}
        metrics["ensemble"] = metric_block(stack.oof_calibrated, y)
        metrics["ensemble_uncalibrated"] = metric_block(stack.oof_blend, y)
        calibration = stack.calibrator.to_dict()
        latest = training_weeks[-1] if training_weeks else None
        mask = np.array([coordinate(r) == latest for r in train_teams], dtype=bool)
        ann_info = ann.summary()
        ann_info["prediction_variance"] = ann.prediction_variance(X_test)
        return {
            "season": season,
            "week": week,
            "generated_at": utc_now(),
            "metrics": metrics,
            "calibration_bins": calibration_bins(stack.oof_calibrated, y),
            "blend_weights": dict(stack.weights),
            "raw_weights": dict(stack.raw_weights),
            "calibration_beta": calibration["beta"],
            "calibration_intercept": calibration["intercept"],
            "calibration_method": calibration["method"],
            "calibration_hash": hash_calibration_meta(calibration),
            "n_train_rows": int(len(y)),
            "weeks_seen": len(training_weeks),
            "training_weeks": [[s, w] for s, w in training_weeks],
            "folds": stack.folds,
            "oof_logloss": stack.oof_logloss,
            "oof_variance": dict(stack.oof_variance),
            "ann": ann_info,
            "hyperparams": hyper,
            "error_notes": error_notes(X_team, y, stack.oof_blend, self.features, mask)
            if len(y) else {"rows": 0, "misclassified": 0, "features": []},
        }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def write_artifacts(self, result: TrainingResult) -> List[Path]:
        """Validate and persist the four weekly artifacts; nothing is written for skipped results."""
        if result.skipped:
            return []
        paths = []
        for kind in ("bt_features", "diagnostics", "predictions", "model"):
            paths.append(self.store.save(kind, result.season, result.week, getattr(result, kind)))
        result.paths = paths
        return paths
