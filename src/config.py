"""Trainer configuration: dataclass defaults with environment overrides."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field, replace
from typing import Dict, Mapping, Optional, Tuple

from .errors import ExplicitWindowInvalid

logger = logging.getLogger(__name__)

MIN_SEASON = 1999
INJURY_DATA_MIN_SEASON = 2009
TRACKING_DATA_MIN_SEASON = 2016
MAX_SEASONS_PER_CHUNK = 3

FORCE_HISTORICAL_KEYS = (
    "REWRITE_HISTORICAL",
    "OVERWRITE_HISTORICAL",
    "REBUILD_HISTORICAL",
    "REGENERATE_HISTORICAL",
    "REGEN_HISTORICAL",
    "FORCE_HISTORICAL_BOOTSTRAP",
)
FORCE_HYBRID_KEY = "FORCE_HYBRID_RECALIBRATION"

_FLAG_PATTERN = re.compile(r"^(1|true|yes|on)$", re.IGNORECASE)


def env_flag(name: str, environ: Optional[Mapping[str, str]] = None) -> bool:
    env = os.environ if environ is None else environ
    value = env.get(name)
    if value is None:
        return False
    return bool(_FLAG_PATTERN.match(str(value).strip()))


def force_historical_rewrite(environ: Optional[Mapping[str, str]] = None) -> bool:
    return any(env_flag(key, environ) for key in FORCE_HISTORICAL_KEYS)


def _parse_int(value) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _parse_float(value) -> Optional[float]:
    if value is None:
        return None
    try:
        parsed = float(str(value).strip())
    except (TypeError, ValueError):
        return None
    if parsed != parsed or parsed in (float("inf"), float("-inf")):
        return None
    return parsed


def validate_batch_window(start, end) -> Optional[Tuple[int, int]]:
    """
    Check an explicit ``(start, end)`` season window.

    Returns:
        ``None`` when neither bound is given, else ``(start, end)``

    Raises:
        ExplicitWindowInvalid: when only one bound is given, a bound is not an
            integer, or start is after end
    """
    if start is None and end is None:
        return None
    if start is None or end is None:
        raise ExplicitWindowInvalid(
            f"window needs both a start and an end season (got start={start!r}, end={end!r})"
        )
    parsed_start, parsed_end = _parse_int(start), _parse_int(end)
    if parsed_start is None or parsed_end is None:
        raise ExplicitWindowInvalid(f"window bounds must be integers (got {start!r}-{end!r})")
    if parsed_start > parsed_end:
        raise ExplicitWindowInvalid(f"window start {parsed_start} is after end {parsed_end}")
    return parsed_start, parsed_end


def strict_batch_bounds(environ: Optional[Mapping[str, str]] = None) -> Optional[Tuple[int, int]]:
    """
    ``(start, end)`` from BATCH_START/BATCH_END, or ``None`` when neither is set.

    Raises:
        ExplicitWindowInvalid: when the variables are set but do not form a window
    """
    env = os.environ if environ is None else environ
    start, end = env.get("BATCH_START"), env.get("BATCH_END")
    if start is not None and not str(start).strip():
        start = None
    if end is not None and not str(end).strip():
        end = None
    return validate_batch_window(start, end)


@dataclass
class LogisticConfig:
    steps: int = 3500
    cv_steps: int = 2500
    learning_rate: float = 4e-3
    l2: float = 2e-4
    batch_size: Optional[int] = None


@dataclass
class AnnConfig:
    """Neural committee knobs."""

    seeds: int = 5
    max_epochs: int = 250
    patience: int = 10
    full_patience: int = 12
    cv_seeds: int = 3
    learning_rate: float = 1e-2
    batch_size: int = 32
    l2: float = 1e-4
    dropout: float = 0.3
    architecture: str = "compact"
    time_limit: float = 70.0
    cv_time_limit: float = 25.0
    tuning_time_limit: float = 20.0

    def __post_init__(self):
        if self.architecture not in ("compact", "wide"):
            raise ValueError(f"Unknown ANN architecture: {self.architecture}")
        if not 0.0 <= self.dropout < 1.0:
            raise ValueError("dropout must be in [0, 1)")


@dataclass
class BradleyTerryConfig:
    steps: int = 2000
    learning_rate: float = 5e-3
    l2: float = 1e-4
    bootstrap: int = 500
    block: int = 5
    seed: int = 17
    half_life_weeks: float = 24.0
    bandwidth: float = 1.0


@dataclass
class ConcurrencyConfig:
    max_workers: int = 4
    data_fetch: int = 4
    week_tasks: int = 2

    def __post_init__(self):
        self.max_workers = max(1, int(self.max_workers))
        self.data_fetch = max(1, min(self.max_workers, int(self.data_fetch)))
        self.week_tasks = max(1, min(self.max_workers, int(self.week_tasks)))


@dataclass
class HybridConfig:
    window: int = 5
    variance_threshold: float = 0.01
    ann_cut: float = 0.4
    force: bool = False


@dataclass
class TrainerConfig:
    """Top-level configuration shared by the weekly trainer and the scheduler."""

    season: Optional[int] = None
    week: Optional[int] = None
    artifacts_dir: str = "artifacts"
    data_root: str = "data/raw"
    data_base_url: Optional[str] = None

    batch_start: Optional[int] = None
    batch_end: Optional[int] = None
    batch_size: int = MAX_SEASONS_PER_CHUNK
    min_season: int = MIN_SEASON
    min_train_season: int = MIN_SEASON
    max_train_seasons: Optional[int] = None

    fast_mode: bool = False
    force_historical: bool = False
    tune_hyperparams: bool = True
    trace: bool = False
    weight_step: float = 0.05
    kfold: int = 5

    logistic: LogisticConfig = field(default_factory=LogisticConfig)
    ann: AnnConfig = field(default_factory=AnnConfig)
    bt: BradleyTerryConfig = field(default_factory=BradleyTerryConfig)
    concurrency: ConcurrencyConfig = field(default_factory=ConcurrencyConfig)
    hybrid: HybridConfig = field(default_factory=HybridConfig)

    def __post_init__(self):
        if self.week is not None and self.week < 1:
            raise ValueError("week must be >= 1")
        self.batch_size = max(1, min(MAX_SEASONS_PER_CHUNK, int(self.batch_size)))
        if self.weight_step <= 0 or self.weight_step > 1:
            raise ValueError("weight_step must be in (0, 1]")
        window = validate_batch_window(self.batch_start, self.batch_end)
        if window is not None:
            self.batch_start, self.batch_end = window

    @property
    def strict_batch(self) -> bool:
        return self.explicit_window is not None

    @property
    def explicit_window(self) -> Optional[Tuple[int, int]]:
        if self.batch_start is None or self.batch_end is None:
            return None
        return self.batch_start, self.batch_end

    def with_fast_mode(self) -> "TrainerConfig":
        """Shrink search budgets for CI smoke runs."""
        ann = replace(
            self.ann,
            seeds=1,
            max_epochs=min(self.ann.max_epochs, 15),
            patience=3,
            full_patience=3,
            cv_seeds=1,
            time_limit=20.0,
            cv_time_limit=12.0,
        )
        logistic = replace(self.logistic, steps=1400, cv_steps=900, learning_rate=3e-3)
        bt = replace(self.bt, steps=min(self.bt.steps, 1200))
        concurrency = ConcurrencyConfig(
            max_workers=self.concurrency.max_workers,
            data_fetch=min(self.concurrency.data_fetch, 2),
            week_tasks=min(self.concurrency.week_tasks, 2),
        )
        return replace(
            self,
            fast_mode=True,
            tune_hyperparams=False,
            weight_step=max(self.weight_step, 0.15),
            kfold=min(self.kfold, 3),
            batch_size=min(self.batch_size, 2),
            ann=ann,
            logistic=logistic,
            bt=bt,
            concurrency=concurrency,
        )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "TrainerConfig":
        """
        Build a config from environment variables.

        Args:
            environ: Mapping to read (defaults to ``os.environ``)
            **overrides: Explicit values (e.g. CLI options) that win over the environment

        Returns:
            TrainerConfig
        """
        env = os.environ if environ is None else environ

        ann_kwargs: Dict = {}
        seeds = _parse_int(env.get("ANN_SEEDS"))
        if seeds is not None:
            ann_kwargs["seeds"] = max(1, seeds)
        epochs = _parse_int(env.get("ANN_MAX_EPOCHS"))
        if epochs is not None:
            ann_kwargs["max_epochs"] = max(1, epochs)
        dropout = _parse_float(env.get("ANN_DROPOUT"))
        if dropout is not None and 0.0 <= dropout < 1.0:
            ann_kwargs["dropout"] = dropout
        architecture = env.get("ANN_ARCHITECTURE")
        if architecture in ("compact", "wide"):
            ann_kwargs["architecture"] = architecture

        bt_kwargs: Dict = {}
        bt_lr = _parse_float(env.get("BT_LR"))
        if bt_lr is not None and bt_lr > 0:
            bt_kwargs["learning_rate"] = bt_lr
        bt_l2 = _parse_float(env.get("BT_L2"))
        if bt_l2 is not None and bt_l2 >= 0:
            bt_kwargs["l2"] = bt_l2
        bt_steps = _parse_int(env.get("BT_GD_STEPS"))
        if bt_steps is not None:
            bt_kwargs["steps"] = max(1, bt_steps)
        bt_draws = _parse_int(env.get("BT_B"))
        if bt_draws is not None:
            bt_kwargs["bootstrap"] = max(1, bt_draws)

        max_workers = _parse_int(env.get("MAX_WORKERS")) or ConcurrencyConfig.max_workers
        concurrency = ConcurrencyConfig(
            max_workers=max_workers,
            data_fetch=_parse_int(env.get("DATA_FETCH_CONCURRENCY")) or ConcurrencyConfig.data_fetch,
            week_tasks=_parse_int(env.get("WEEK_TASK_CONCURRENCY")) or ConcurrencyConfig.week_tasks,
        )

        kwargs: Dict = {
            "season": _parse_int(env.get("SEASON")),
            "week": _parse_int(env.get("WEEK")),
            "artifacts_dir": env.get("ARTIFACTS_DIR") or cls.artifacts_dir,
            "data_root": env.get("DATA_ROOT") or cls.data_root,
            "data_base_url": env.get("DATA_BASE_URL") or None,
            "batch_size": _parse_int(env.get("BATCH_SIZE")) or MAX_SEASONS_PER_CHUNK,
            "force_historical": force_historical_rewrite(env),
            "trace": env.get("TRAIN_TRACE") == "1",
            "ann": AnnConfig(**ann_kwargs),
            "bt": BradleyTerryConfig(**bt_kwargs),
            "concurrency": concurrency,
            "hybrid": HybridConfig(force=env_flag(FORCE_HYBRID_KEY, env)),
        }
        bounds = strict_batch_bounds(env)
        if bounds is not None:
            kwargs["batch_start"], kwargs["batch_end"] = bounds

        min_train = _parse_int(env.get("MIN_TRAIN_SEASON"))
        if min_train is not None:
            kwargs["min_train_season"] = max(MIN_SEASON, min_train)
        max_train = _parse_int(env.get("MAX_TRAIN_SEASONS"))
        if max_train is not None and max_train > 0:
            kwargs["max_train_seasons"] = max_train

        kwargs.update({k: v for k, v in overrides.items() if v is not None})
        if kwargs.get("week") is not None and kwargs["week"] < 1:
            logger.warning("WEEK=%s is below 1; clamping to week 1", kwargs["week"])
            kwargs["week"] = 1
        config = cls(**kwargs)
        if env.get("CI_FAST") == "1" or overrides.get("fast_mode"):
            config = config.with_fast_mode()
        return config
