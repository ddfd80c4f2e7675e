"""
Historical Bootstrap Scheduler.

Replays every historical (season, week) exactly once, in chunks of at
most three seasons. Progress is tracked three ways: week markers under
``.status/``, season and chunk caches under ``chunks/``, and the training
state record. Any of them lets an interrupted run resume where it stopped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from ..config import (
    INJURY_DATA_MIN_SEASON,
    MAX_SEASONS_PER_CHUNK,
    MIN_SEASON,
    TRACKING_DATA_MIN_SEASON,
    TrainerConfig,
)
from ..data.ingestion.providers import SeasonData, SeasonDataHub
from ..errors import BootstrapRevisionMismatch, ExplicitWindowInvalid
from ..training.limiter import AsyncLimiter
from ..training.state import MODEL_KEY, TrainingStateStore, assert_revision_current
from ..training.status import StatusMarkers
from .artifacts import ArtifactStore, update_historical_artifacts
from .warm_start import load_ann_warm_start
from .weekly import SeasonRows, WeeklyTrainer, build_season_rows

logger = logging.getLogger(__name__)


def chunk_season_list(seasons: Iterable[int], size: int = MAX_SEASONS_PER_CHUNK) -> List[List[int]]:
    """Split sorted unique seasons into consecutive chunks of ``size`` (clamped to 1..3)."""
    size = max(1, min(MAX_SEASONS_PER_CHUNK, int(size)))
    ordered = sorted({int(s) for s in seasons})
    return [ordered[i:i + size] for i in range(0, len(ordered), size)]


@dataclass
class ChunkSelection:
    start_season: int
    end_season: int
    seasons: List[int]
    explicit: bool = False
    reason: str = ""


def resolve_historical_chunk_selection(
    seasons: Sequence[int],
    chunk_size: int = MAX_SEASONS_PER_CHUNK,
    recorded_chunks: Optional[Set[Tuple[int, int]]] = None,
    explicit_window: Optional[Tuple[int, int]] = None,
    min_season: int = MIN_SEASON,
    max_season: Optional[int] = None,
) -> Optional[ChunkSelection]:
    """
    Pick the chunk to replay.

    Args:
        seasons: Seasons with data available
        chunk_size: Maximum seasons per chunk
        recorded_chunks: ``(start, end)`` spans already completed
        explicit_window: User-requested ``(start, end)``; validated strictly
        min_season: Earliest season allowed
        max_season: Latest season allowed

    Returns:
        ChunkSelection, or ``None`` when no seasons are available

    Raises:
        ExplicitWindowInvalid: when the explicit window cannot be trained
    """
    size = max(1, min(MAX_SEASONS_PER_CHUNK, int(chunk_size)))
    available = sorted({int(s) for s in seasons if int(s) >= min_season})

    if explicit_window is not None:
        start, end = int(explicit_window[0]), int(explicit_window[1])
        if start > end:
            raise ExplicitWindowInvalid(f"window start {start} is after end {end}")
        if start < min_season:
            raise ExplicitWindowInvalid(f"window start {start} is before the first season {min_season}")
        if max_season is not None and end > max_season:
            raise ExplicitWindowInvalid(f"window end {end} is beyond the last season {max_season}")
        if end - start + 1 > size:
            raise ExplicitWindowInvalid(f"window {start}-{end} spans more than {size} seasons")
        window = [s for s in available if start <= s <= end]
        if not window:
            raise ExplicitWindowInvalid(f"no seasons available in window {start}-{end}")
        missing = [s for s in range(start, end + 1) if s not in window]
        if missing:
            raise ExplicitWindowInvalid(f"window {start}-{end} is missing seasons {missing}")
        return ChunkSelection(start, end, window, explicit=True, reason="explicit window")

    chunks = chunk_season_list(available, size)
    if not chunks:
        return None
    recorded = recorded_chunks or set()
    for chunk in chunks:
        if (chunk[0], chunk[-1]) not in recorded:
            return ChunkSelection(chunk[0], chunk[-1], chunk, reason="first unrecorded chunk")
    last = chunks[-1]
    return ChunkSelection(last[0], last[-1], last, reason="all chunks recorded; refreshing last")


@dataclass
class BootstrapReport:
    mode: str
    chunk: Optional[Tuple[int, int]] = None
    trained: List[Tuple[int, int]] = field(default_factory=list)
    skipped: List[Tuple[int, int]] = field(default_factory=list)
    cached_seasons: List[int] = field(default_factory=list)
    chunk_complete: bool = False


class HistoricalBootstrapScheduler:
    """Drives weekly training across seasons with bounded concurrency."""

    def __init__(
        self,
        config: TrainerConfig,
        hub: Optional[SeasonDataHub] = None,
        store: Optional[ArtifactStore] = None,
        state_store: Optional[TrainingStateStore] = None,
        markers: Optional[StatusMarkers] = None,
        trainer: Optional[WeeklyTrainer] = None,
        key: str = MODEL_KEY,
    ):
        self.config = config
        self.hub = hub or SeasonDataHub.from_config(config)
        self.store = store or ArtifactStore(config.artifacts_dir)
        self.state_store = state_store or TrainingStateStore(config.artifacts_dir)
        self.markers = markers or StatusMarkers(config.artifacts_dir)
        self.trainer = trainer or WeeklyTrainer(config, self.store)
        self.key = key
        self.data_limiter = AsyncLimiter(
            config.concurrency.data_fetch, config.concurrency.max_workers, name="data"
        )
        self.week_limiter = AsyncLimiter(
            config.concurrency.week_tasks, config.concurrency.max_workers, name="weeks"
        )
        self._notified: Set[int] = set()
        self._rows: Dict[int, SeasonRows] = {}
        self._weeks: Dict[int, List[int]] = {}

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    @property
    def force(self) -> bool:
        return bool(self.config.force_historical)

    def max_season(self) -> int:
        if self.config.season is not None:
            return int(self.config.season)
        if self.config.batch_end is not None:
            return int(self.config.batch_end)
        return datetime.now(timezone.utc).year

    def needs_bootstrap(self) -> bool:
        try:
            assert_revision_current(self.state_store.state, self.key)
        except BootstrapRevisionMismatch as exc:
            logger.info("Re-bootstrapping: %s", exc)
            return True
        required = self.max_season() - 1 if self.config.week is not None else self.max_season()
        return self.state_store.should_run(
            self.key,
            min_season=self.config.min_season,
            required_through_season=required,
            force=self.force,
        )

    def notify_data_gaps(self, season: int) -> None:
        if season in self._notified:
            return
        self._notified.add(season)
        if season < INJURY_DATA_MIN_SEASON:
            logger.info("Season %s predates injury reports (%s); injury features are zero",
                        season, INJURY_DATA_MIN_SEASON)
        if season < TRACKING_DATA_MIN_SEASON:
            logger.info("Season %s predates tracking data (%s); tracking-derived inputs unavailable",
                        season, TRACKING_DATA_MIN_SEASON)

    def training_seasons(self, through: int) -> List[int]:
        """Seasons whose rows feed training for targets up to ``through``."""
        first = max(self.config.min_season, self.config.min_train_season)
        if self.config.max_train_seasons:
            first = max(first, through - self.config.max_train_seasons + 1)
        return list(range(first, through + 1))

    # ------------------------------------------------------------------
    # Data
    # ------------------------------------------------------------------

    async def _load(self, season: int) -> SeasonData:
        self.notify_data_gaps(season)
        return await self.data_limiter.run_blocking(self.hub.load_season, season)

    async def load_rows(self, seasons: Sequence[int]) -> None:
        pending = [s for s in seasons if s not in self._rows]
        loaded = await asyncio.gather(*(self._load(s) for s in pending))
        for data in loaded:
            self._rows[data.season] = build_season_rows(data)
            self._weeks[data.season] = data.weeks()

    def historical_rows(self, season: int) -> List[SeasonRows]:
        return [self._rows[s] for s in sorted(self._rows) if s < season]

    # ------------------------------------------------------------------
    # Weeks
    # ------------------------------------------------------------------

    def is_target(self, season: int, week: int) -> bool:
        return self.config.season == season and self.config.week == week

    async def _train_week(self, season: int, week: int, report: BootstrapReport) -> None:
        if self.markers.has_week(season, week) and not self.force:
            report.skipped.append((season, week))
            return
        if self.store.has_week(season, week) and not self.is_target(season, week) and not self.force:
            logger.debug("Artifacts for %s W%02d already present; marking", season, week)
            self.markers.mark_week(season, week)
            report.skipped.append((season, week))
            return

        warm = load_ann_warm_start(self.markers, self.store, season, week, self.trainer.features)
        result = self.trainer.run(
            season,
            week,
            current=self._rows[season],
            historical=self.historical_rows(season),
            ann_warm_start=warm,
            force=self.force,
        )
        if result.skipped:
            report.skipped.append((season, week))
        else:
            self.trainer.write_artifacts(result)
            if result.ann_artifact and result.ann_artifact.get("committees"):
                self.markers.save_ann_checkpoint(result.ann_artifact, season, week)
                logger.debug("ANN checkpoint saved after %s W%02d", season, week)
            report.trained.append((season, week))
        self.markers.mark_week(season, week)

    async def run_weeks(self, coords: Sequence[Tuple[int, int]], report: BootstrapReport) -> None:
        # Each task runs to completion once it holds the limiter, so weeks train in FIFO order.
        await asyncio.gather(*(
            self.week_limiter.run(self._train_week, season, week, report)
            for season, week in coords
        ))

    def season_weeks(self, season: int) -> List[int]:
        weeks = self._weeks.get(season, [])
        if self.config.season == season and self.config.week is not None:
            weeks = [w for w in weeks if w <= self.config.week]
        return weeks

    # ------------------------------------------------------------------
    # Modes
    # ------------------------------------------------------------------

    async def run_weekly(self) -> BootstrapReport:
        season, week = int(self.config.season), int(self.config.week)
        report = BootstrapReport(mode="weekly")
        await self.load_rows(self.training_seasons(season))
        if week not in self._weeks.get(season, []):
            logger.warning("Season %s has no scheduled week %s; nothing to train", season, week)
            return report
        await self.run_weeks([(season, week)], report)
        update_historical_artifacts(self.store, season)
        self.state_store.mark_completed(self.key, seasons=[{"season": season, "weeks": [week]}])
        self.state_store.record_latest_run(self.key, season, week)
        self.state_store.save()
        return report

    def select_chunk(self) -> Optional[ChunkSelection]:
        """The chunk to replay; an explicit window is validated against the season bounds."""
        return resolve_historical_chunk_selection(
            range(self.config.min_season, self.max_season() + 1),
            chunk_size=self.config.batch_size,
            recorded_chunks=set() if self.force else self.state_store.recorded_chunks(self.key),
            explicit_window=self.config.explicit_window,
            min_season=self.config.min_season,
            max_season=self.max_season(),
        )

    async def run_bootstrap(self) -> BootstrapReport:
        selection = self.select_chunk()
        if selection is None:
            logger.warning("No seasons available to bootstrap")
            return BootstrapReport(mode="noop")
        logger.info(
            "Bootstrapping chunk %s-%s (%s)",
            selection.start_season, selection.end_season, selection.reason,
        )
        report = BootstrapReport(mode="bootstrap", chunk=(selection.start_season, selection.end_season))
        await self.load_rows(self.training_seasons(selection.end_season))
        if selection.explicit:
            # Bounds were checked up front; now require data for every season in the window.
            selection = resolve_historical_chunk_selection(
                [s for s, weeks in self._weeks.items() if weeks],
                chunk_size=self.config.batch_size,
                explicit_window=self.config.explicit_window,
                min_season=self.config.min_season,
                max_season=self.max_season(),
            )

        covered: List[Dict] = []
        for season in selection.seasons:
            in_progress = self.config.season == season and self.config.week is not None
            cache = None if (self.force or in_progress) else self.markers.load_season_cache(season)
            if cache is not None:
                logger.info("Season %s already cached; skipping", season)
                report.cached_seasons.append(season)
                covered.append({"season": season, "weeks": cache.get("weeks", [])})
                continue
            weeks = self.season_weeks(season)
            if not weeks:
                logger.warning("Season %s has no scheduled games; skipping", season)
                continue
            await self.run_weeks([(season, w) for w in weeks], report)
            update_historical_artifacts(self.store, season)
            if not in_progress:
                self.markers.write_season_cache(season, weeks)
            covered.append({"season": season, "weeks": weeks})

        all_marked = all(
            self.markers.has_week(entry["season"], w)
            for entry in covered
            for w in entry["weeks"]
        ) and bool(covered)
        if all_marked:
            self.markers.write_chunk_cache(selection.start_season, selection.end_season, covered)
            self.state_store.record_chunk(self.key, selection.start_season, selection.end_season, covered)
            report.chunk_complete = True
        else:
            self.state_store.mark_completed(self.key, seasons=covered)

        by_season = {str(e["season"]): max(e["weeks"]) for e in covered if e["weeks"]}
        if by_season:
            last = max(covered, key=lambda e: e["season"])
            self.state_store.record_latest_run(
                self.key, last["season"], max(last["weeks"]), by_season=by_season
            )
        self.state_store.save()
        return report

    async def run_async(self) -> BootstrapReport:
        if self.config.explicit_window is not None:
            # An invalid window fails before any data is loaded.
            self.select_chunk()
        bootstrap = self.needs_bootstrap() or self.config.strict_batch
        if not bootstrap:
            if self.config.season is not None and self.config.week is not None:
                return await self.run_weekly()
            logger.info("Training state is current; nothing to do")
            return BootstrapReport(mode="noop")
        return await self.run_bootstrap()

    def run(self) -> BootstrapReport:
        return asyncio.run(self.run_async())
