"""Main CLI interface for the league win forecaster."""

import argparse
import logging
import os
import sys

from .config import TrainerConfig
from .errors import ForecasterError
from .pipeline.artifacts import ArtifactStore
from .pipeline.bootstrap import HistoricalBootstrapScheduler
from .pipeline.hybrid import run_hybrid_bootstrap, run_hybrid_recalibration
from .training.state import TrainingStateStore, refresh_training_state_from_artifacts

LOG_FORMAT = "[%(levelname)s] %(name)s: %(message)s"


def build_config(args) -> TrainerConfig:
    """Environment first, explicit CLI options on top."""
    overrides = {
        "season": getattr(args, "season", None),
        "week": getattr(args, "week", None),
        "artifacts_dir": getattr(args, "artifacts_dir", None),
        "data_root": getattr(args, "data_root", None),
        "data_base_url": getattr(args, "data_base_url", None),
        "batch_start": getattr(args, "start_season", None),
        "batch_end": getattr(args, "end_season", None),
        "batch_size": getattr(args, "batch_size", None),
    }
    if getattr(args, "force", False):
        overrides["force_historical"] = True
    if getattr(args, "fast", False):
        overrides["fast_mode"] = True
    if getattr(args, "no_tune", False):
        overrides["tune_hyperparams"] = False
    return TrainerConfig.from_env(**overrides)


def run_training(args):
    """Train the target week, bootstrapping history first when the state requires it."""
    config = build_config(args)
    scheduler = HistoricalBootstrapScheduler(config)
    report = scheduler.run()

    print(f"Mode: {report.mode}")
    if report.chunk:
        status = "complete" if report.chunk_complete else "partial"
        print(f"Chunk: {report.chunk[0]}-{report.chunk[1]} ({status})")
    print(f"Weeks trained: {len(report.trained)}")
    print(f"Weeks skipped: {len(report.skipped)}")
    if report.cached_seasons:
        print(f"Cached seasons skipped: {', '.join(str(s) for s in report.cached_seasons)}")
    return 0


def run_hybrid(args):
    """Recalibrate one week, or every trained week when no week is given."""
    config = build_config(args)
    store = ArtifactStore(config.artifacts_dir)
    state_store = TrainingStateStore(config.artifacts_dir)
    force = args.force or config.hybrid.force

    if config.season is not None and config.week is not None:
        result = run_hybrid_recalibration(
            store, state_store, config.season, config.week, config.hybrid, force=force
        )
        print(f"hybrid_v2 {result.season} W{result.week:02d}: {result.n_games} games")
        print(f"  weights ({result.weight_source}): "
              + ", ".join(f"{k}={v:.3f}" for k, v in result.weights.items()))
        print(f"  beta={result.calibration['beta']:.4f} intercept={result.calibration['intercept']:.4f}")
        return 0

    results = run_hybrid_bootstrap(store, state_store, config.hybrid, force=force)
    print(f"hybrid_v2 recalibrated {len(results)} weeks")
    return 0


def refresh_state(args):
    """Rebuild training_state.json coverage from the prediction artifacts on disk."""
    config = build_config(args)
    state_store = TrainingStateStore(config.artifacts_dir)
    refresh_training_state_from_artifacts(config.artifacts_dir, state_store.state)
    state_store.save()
    latest = state_store.latest_run() or {}
    print(f"Training state refreshed: latest {latest.get('season')} W{latest.get('week')}")
    return 0


def _add_common(parser):
    parser.add_argument("--artifacts-dir", default=None, help="Artifacts directory (env ARTIFACTS_DIR)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")


def _add_target(parser):
    parser.add_argument("--season", type=int, default=None, help="Target season (env SEASON)")
    parser.add_argument("--week", type=int, default=None, help="Target week (env WEEK)")


def _add_data(parser):
    parser.add_argument("--data-root", default=None, help="Directory of {table}_{season}.csv files")
    parser.add_argument("--data-base-url", default=None, help="Remote base URL for season CSV tables")
    parser.add_argument("--fast", action="store_true", help="Reduced budgets (same as CI_FAST=1)")
    parser.add_argument("--no-tune", action="store_true", help="Skip hyperparameter search")
    parser.add_argument("--force", action="store_true", help="Ignore markers and caches; retrain everything")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="League Win Forecaster - incremental ensemble trainer with resumable historical replay"
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    train_parser = subparsers.add_parser("train", help="Train the target week (bootstrapping history if needed)")
    _add_common(train_parser)
    _add_target(train_parser)
    _add_data(train_parser)

    bootstrap_parser = subparsers.add_parser("bootstrap", help="Replay one historical chunk")
    _add_common(bootstrap_parser)
    _add_target(bootstrap_parser)
    _add_data(bootstrap_parser)
    bootstrap_parser.add_argument("--start-season", type=int, default=None, help="Explicit window start (BATCH_START)")
    bootstrap_parser.add_argument("--end-season", type=int, default=None, help="Explicit window end (BATCH_END)")
    bootstrap_parser.add_argument("--batch-size", type=int, default=None, help="Seasons per chunk (1-3)")

    hybrid_parser = subparsers.add_parser("hybrid", help="Run hybrid_v2 recalibration")
    _add_common(hybrid_parser)
    _add_target(hybrid_parser)
    hybrid_parser.add_argument("--force", action="store_true", help="Refit even when cached parameters exist")

    refresh_parser = subparsers.add_parser("refresh-state", help="Rebuild training state from artifacts")
    _add_common(refresh_parser)

    args = parser.parse_args()
    if args.command is None:
        parser.print_help()
        return 1

    verbose = args.verbose or os.environ.get("TRAIN_TRACE") == "1"
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)

    handlers = {
        "train": run_training,
        "bootstrap": run_training,
        "hybrid": run_hybrid,
        "refresh-state": refresh_state,
    }
    try:
        return handlers[args.command](args)
    except ForecasterError as exc:
        print(f"Error: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
