"""
Training State Store.

``training_state.json`` is the only record that outlives a run. It holds,
per pipeline key, the bootstrap revision, the completed (season -> weeks)
coverage, the completed chunks and a "latest run" pointer. Coverage only
changes through :func:`mark_bootstrap_completed` and
:func:`record_latest_run`; both merge monotonically and stamp the current
revision and UTC time.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Set, Union

from ..config import MIN_SEASON, force_historical_rewrite
from ..errors import BootstrapRevisionMismatch, StateCorruption

logger = logging.getLogger(__name__)

CURRENT_BOOTSTRAP_REVISION = "2025-historical-bootstrap-v1"
SCHEMA_VERSION = 1
STATE_FILENAME = "training_state.json"

MODEL_KEY = "model_training"
HYBRID_KEY = "hybrid_v2"
BOOTSTRAP_KEYS = (MODEL_KEY, HYBRID_KEY)

_PREDICTIONS_PATTERN = re.compile(r"^predictions_(\d{4})_W(\d{1,2})\.json$")

PathLike = Union[str, Path]


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def empty_state() -> Dict:
    return {"schema_version": SCHEMA_VERSION, "bootstraps": {}, "latest_runs": {}}


def state_path(artifacts_dir: PathLike) -> Path:
    return Path(artifacts_dir) / STATE_FILENAME


def read_training_state(path: PathLike) -> Dict:
    """Strict reader: raises :class:`StateCorruption` on unreadable or malformed content."""
    try:
        with open(path, "r", encoding="utf-8") as fh:
            payload = json.load(fh)
    except json.JSONDecodeError as exc:
        raise StateCorruption(f"{path}: invalid JSON ({exc})") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise StateCorruption(f"{path}: unreadable ({exc})") from exc

    if not isinstance(payload, dict):
        raise StateCorruption(f"{path}: expected an object, got {type(payload).__name__}")
    for section in ("bootstraps", "latest_runs"):
        value = payload.get(section)
        if value is None:
            payload[section] = {}
        elif not isinstance(value, dict):
            raise StateCorruption(f"{path}: '{section}' must be an object")
    payload.setdefault("schema_version", SCHEMA_VERSION)
    return payload


def load_training_state(path: PathLike) -> Dict:
    """Load the state; a missing file is empty, a corrupt one is reset with a warning."""
    if not Path(path).exists():
        return empty_state()
    try:
        return read_training_state(path)
    except StateCorruption as exc:
        logger.warning("Training state corrupt, reinitialising: %s", exc)
        return empty_state()


def save_training_state(state: Mapping, path: PathLike) -> None:
    """Atomically replace ``path`` with the serialised state."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = dict(state) if isinstance(state, Mapping) else empty_state()
    fd, tmp = tempfile.mkstemp(prefix=".training_state.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2, sort_keys=True)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def _season_entries(seasons: Iterable) -> Dict[int, Set[int]]:
    """Normalise ``[1999, {"season": 2000, "weeks": [1, 2]}]`` into season -> weeks."""
    out: Dict[int, Set[int]] = {}
    for entry in seasons or []:
        if isinstance(entry, Mapping):
            season = entry.get("season")
            weeks = entry.get("weeks") or []
        else:
            season, weeks = entry, []
        try:
            season = int(season)
        except (TypeError, ValueError):
            continue
        bucket = out.setdefault(season, set())
        for week in weeks:
            try:
                bucket.add(int(week))
            except (TypeError, ValueError):
                continue
    return out


def _season_list(coverage: Mapping[int, Set[int]]) -> List[Dict]:
    return [{"season": s, "weeks": sorted(coverage[s])} for s in sorted(coverage)]


def covered_seasons(record: Optional[Mapping]) -> Set[int]:
    """Union of the record's ``seasons`` and every chunk's seasons."""
    if not isinstance(record, Mapping):
        return set()
    seasons = set(_season_entries(record.get("seasons")))
    for chunk in record.get("chunks") or []:
        if isinstance(chunk, Mapping):
            seasons.update(_season_entries(chunk.get("seasons")))
    return seasons


def revision_current(state: Mapping, key: str) -> bool:
    record = (state.get("bootstraps") or {}).get(key)
    return isinstance(record, Mapping) and record.get("revision") == CURRENT_BOOTSTRAP_REVISION


def assert_revision_current(state: Mapping, key: str) -> None:
    record = (state.get("bootstraps") or {}).get(key) or {}
    recorded = record.get("revision") if isinstance(record, Mapping) else None
    if recorded != CURRENT_BOOTSTRAP_REVISION:
        raise BootstrapRevisionMismatch(key, recorded, CURRENT_BOOTSTRAP_REVISION)


def should_run_historical_bootstrap(
    state: Mapping,
    key: str,
    min_season: Optional[int] = None,
    required_through_season: Optional[int] = None,
    force: Optional[bool] = None,
) -> bool:
    """
    Decide whether a historical replay is needed for ``key``.

    Args:
        state: Training state record
        key: Pipeline key (``model_training`` or ``hybrid_v2``)
        min_season: First season that must be covered (default ``MIN_SEASON``)
        required_through_season: Last season that must be covered; no gap check when omitted
        force: Override flag; read from the environment when ``None``

    Returns:
        True on force, revision mismatch, a coverage gap or a missing latest run
    """
    if force is None:
        force = force_historical_rewrite()
    if force:
        return True
    record = (state.get("bootstraps") or {}).get(key)
    if not isinstance(record, Mapping):
        return True
    if record.get("revision") != CURRENT_BOOTSTRAP_REVISION:
        return True
    if required_through_season is not None:
        start = MIN_SEASON if min_season is None else int(min_season)
        covered = covered_seasons(record)
        if any(season not in covered for season in range(start, int(required_through_season) + 1)):
            return True
    latest = (state.get("latest_runs") or {}).get(key)
    if not isinstance(latest, Mapping) or latest.get("season") is None:
        return True
    return False


def _current_record(state: Dict, key: str) -> Dict:
    bootstraps = state.setdefault("bootstraps", {})
    record = bootstraps.get(key)
    if not isinstance(record, Mapping):
        return {}
    if record.get("revision") != CURRENT_BOOTSTRAP_REVISION:
        logger.warning(
            "Discarding '%s' coverage recorded under revision %r",
            key,
            record.get("revision"),
        )
        return {}
    return dict(record)


def mark_bootstrap_completed(
    state: Dict,
    key: str,
    seasons: Iterable = (),
    chunks: Optional[Iterable[Mapping]] = None,
    **extra,
) -> Dict:
    """
    Merge completed coverage into ``state[bootstraps][key]``.

    Existing coverage is kept (weeks are unioned, chunks deduplicated by
    span); coverage recorded under another revision is dropped first.
    """
    record = _current_record(state, key)
    coverage = _season_entries(record.get("seasons"))
    for season, weeks in _season_entries(seasons).items():
        coverage.setdefault(season, set()).update(weeks)

    merged_chunks: Dict[tuple, Dict] = {}
    for chunk in list(record.get("chunks") or []) + list(chunks or []):
        if not isinstance(chunk, Mapping):
            continue
        span = (int(chunk["start_season"]), int(chunk["end_season"]))
        previous = merged_chunks.get(span, {})
        chunk_cov = _season_entries(previous.get("seasons"))
        for season, weeks in _season_entries(chunk.get("seasons")).items():
            chunk_cov.setdefault(season, set()).update(weeks)
            coverage.setdefault(season, set()).update(weeks)
        merged_chunks[span] = {
            "start_season": span[0],
            "end_season": span[1],
            "seasons": _season_list(chunk_cov),
            "completed_at": chunk.get("completed_at") or previous.get("completed_at") or utc_now(),
        }

    record.update(extra)
    record.update({
        "revision": CURRENT_BOOTSTRAP_REVISION,
        "completed_at": utc_now(),
        "seasons": _season_list(coverage),
        "chunks": [merged_chunks[span] for span in sorted(merged_chunks)],
    })
    state["bootstraps"][key] = record
    state.setdefault("schema_version", SCHEMA_VERSION)
    return state


def record_bootstrap_chunk(
    state: Dict,
    key: str,
    start_season: int,
    end_season: int,
    seasons: Iterable,
) -> Dict:
    seasons = list(seasons)
    chunk = {
        "start_season": int(start_season),
        "end_season": int(end_season),
        "seasons": seasons,
        "completed_at": utc_now(),
    }
    return mark_bootstrap_completed(state, key, seasons=seasons, chunks=[chunk])


def record_latest_run(
    state: Dict,
    key: str,
    season: int,
    week: int,
    by_season: Optional[Mapping] = None,
    **extra,
) -> Dict:
    """Advance the latest-run pointer; per-season week maxima never decrease."""
    runs = state.setdefault("latest_runs", {})
    previous = runs.get(key) if isinstance(runs.get(key), Mapping) else {}
    if previous.get("revision") not in (None, CURRENT_BOOTSTRAP_REVISION):
        previous = {}

    merged: Dict[str, int] = {}
    for source in (previous.get("by_season") or {}, by_season or {}, {str(season): week}):
        for s, w in source.items():
            try:
                merged[str(int(s))] = max(int(w), merged.get(str(int(s)), 0))
            except (TypeError, ValueError):
                continue

    coordinate = (int(season), int(week))
    if previous.get("season") is not None and previous.get("week") is not None:
        coordinate = max(coordinate, (int(previous["season"]), int(previous["week"])))

    record = dict(previous)
    record.update(extra)
    record.update({
        "season": coordinate[0],
        "week": coordinate[1],
        "timestamp": utc_now(),
        "revision": CURRENT_BOOTSTRAP_REVISION,
        "by_season": dict(sorted(merged.items())),
    })
    runs[key] = record
    state.setdefault("schema_version", SCHEMA_VERSION)
    return state


def discover_prediction_weeks(artifacts_dir: PathLike) -> Dict[int, List[int]]:
    root = Path(artifacts_dir)
    found: Dict[int, Set[int]] = {}
    if not root.is_dir():
        return {}
    for entry in root.iterdir():
        match = _PREDICTIONS_PATTERN.match(entry.name)
        if match and entry.is_file():
            found.setdefault(int(match.group(1)), set()).add(int(match.group(2)))
    return {season: sorted(weeks) for season, weeks in sorted(found.items())}


def refresh_training_state_from_artifacts(
    artifacts_dir: PathLike,
    state: Optional[Dict] = None,
    key: str = MODEL_KEY,
) -> Dict:
    """Rebuild coverage and the latest-run pointer from the predictions on disk."""
    state = state if state is not None else load_training_state(state_path(artifacts_dir))
    discovered = discover_prediction_weeks(artifacts_dir)
    if not discovered:
        logger.info("No prediction artifacts under %s; state unchanged", artifacts_dir)
        return state
    seasons = [{"season": s, "weeks": w} for s, w in discovered.items()]
    mark_bootstrap_completed(state, key, seasons=seasons, source="artifacts")
    last_season = max(discovered)
    record_latest_run(
        state,
        key,
        last_season,
        max(discovered[last_season]),
        by_season={str(s): max(w) for s, w in discovered.items()},
    )
    return state


class TrainingStateStore:
    """Owns the state path and the in-memory record passed through a run."""

    def __init__(self, artifacts_dir: PathLike, state: Optional[Dict] = None):
        self.artifacts_dir = Path(artifacts_dir)
        self.path = state_path(self.artifacts_dir)
        self.state = state if state is not None else load_training_state(self.path)

    def reload(self) -> Dict:
        self.state = load_training_state(self.path)
        return self.state

    def save(self) -> None:
        save_training_state(self.state, self.path)

    def should_run(self, key: str = MODEL_KEY, **kwargs) -> bool:
        return should_run_historical_bootstrap(self.state, key, **kwargs)

    def covered_seasons(self, key: str = MODEL_KEY) -> Set[int]:
        record = (self.state.get("bootstraps") or {}).get(key)
        if not revision_current(self.state, key):
            return set()
        return covered_seasons(record)

    def recorded_chunks(self, key: str = MODEL_KEY) -> Set[tuple]:
        if not revision_current(self.state, key):
            return set()
        record = self.state["bootstraps"][key]
        return {
            (int(c["start_season"]), int(c["end_season"]))
            for c in record.get("chunks") or []
            if isinstance(c, Mapping)
        }

    def latest_run(self, key: str = MODEL_KEY) -> Optional[Dict]:
        latest = (self.state.get("latest_runs") or {}).get(key)
        return dict(latest) if isinstance(latest, Mapping) else None

    def mark_completed(self, key: str, seasons: Iterable = (), chunks=None, **extra) -> Dict:
        return mark_bootstrap_completed(self.state, key, seasons=seasons, chunks=chunks, **extra)

    def record_chunk(self, key: str, start_season: int, end_season: int, seasons: Iterable) -> Dict:
        return record_bootstrap_chunk(self.state, key, start_season, end_season, seasons)

    def record_latest_run(self, key: str, season: int, week: int, by_season=None, **extra) -> Dict:
        return record_latest_run(self.state, key, season, week, by_season=by_season, **extra)
