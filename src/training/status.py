"""File markers used to make historical replay idempotent and resumable."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Union

from .state import CURRENT_BOOTSTRAP_REVISION, utc_now

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

STATUS_DIR = ".status"
CHUNK_DIR = "chunks"
CHECKPOINT_DIR = "checkpoints"
ANN_CHECKPOINT = "ann_committee.json"


def chunk_label(start: int, end: int) -> str:
    return f"{int(start)}-{int(end)}"


class StatusMarkers:
    """
    Week markers, season caches and chunk caches under one artifacts directory.

    Markers are written only after the corresponding artifacts are fully
    persisted, so an interrupted run resumes at the first unmarked week.
    """

    def __init__(self, artifacts_dir: PathLike):
        self.root = Path(artifacts_dir)

    # ------------------------------------------------------------------
    # Week markers
    # ------------------------------------------------------------------

    def week_marker(self, season: int, week: int) -> Path:
        return self.root / STATUS_DIR / f"{int(season)}-W{int(week):02d}.done"

    def has_week(self, season: int, week: int) -> bool:
        return self.week_marker(season, week).exists()

    def mark_week(self, season: int, week: int) -> Path:
        path = self.week_marker(season, week)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"{utc_now()}\n", encoding="utf-8")
        return path

    def marked_weeks(self, season: int) -> List[int]:
        folder = self.root / STATUS_DIR
        if not folder.is_dir():
            return []
        prefix = f"{int(season)}-W"
        weeks = []
        for entry in folder.glob(f"{prefix}*.done"):
            try:
                weeks.append(int(entry.stem[len(prefix):]))
            except ValueError:
                continue
        return sorted(weeks)

    # ------------------------------------------------------------------
    # Season and chunk caches
    # ------------------------------------------------------------------

    def _cache_paths(self, stem: str):
        folder = self.root / CHUNK_DIR
        return folder / f"{stem}.json", folder / f"{stem}.done"

    def _load_cache(self, stem: str, revision: Optional[str]) -> Optional[Dict]:
        meta, done = self._cache_paths(stem)
        if not meta.exists() or not done.exists():
            return None
        try:
            payload = json.loads(meta.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable cache %s: %s", meta, exc)
            return None
        if revision and payload.get("revision") != revision:
            return None
        return payload

    def _write_cache(self, stem: str, payload: Dict) -> Dict:
        meta, done = self._cache_paths(stem)
        meta.parent.mkdir(parents=True, exist_ok=True)
        record = {"revision": CURRENT_BOOTSTRAP_REVISION, "completed_at": utc_now(), **payload}
        meta.write_text(json.dumps(record, indent=2), encoding="utf-8")
        done.write_text(f"{record['completed_at']}\n", encoding="utf-8")
        return record

    def load_season_cache(self, season: int, revision: Optional[str] = CURRENT_BOOTSTRAP_REVISION) -> Optional[Dict]:
        return self._load_cache(f"season-{int(season)}", revision)

    def write_season_cache(self, season: int, weeks: Iterable[int], **extra) -> Dict:
        return self._write_cache(
            f"season-{int(season)}",
            {"season": int(season), "weeks": sorted(int(w) for w in weeks), **extra},
        )

    def load_chunk_cache(self, start: int, end: int, revision: Optional[str] = CURRENT_BOOTSTRAP_REVISION) -> Optional[Dict]:
        return self._load_cache(f"model_{chunk_label(start, end)}", revision)

    def write_chunk_cache(self, start: int, end: int, seasons: List[Dict], **extra) -> Dict:
        return self._write_cache(
            f"model_{chunk_label(start, end)}",
            {"label": chunk_label(start, end), "start_season": int(start), "end_season": int(end),
             "seasons": seasons, **extra},
        )

    # ------------------------------------------------------------------
    # ANN checkpoint
    # ------------------------------------------------------------------

    @property
    def ann_checkpoint_path(self) -> Path:
        return self.root / CHECKPOINT_DIR / ANN_CHECKPOINT

    def save_ann_checkpoint(self, artifact: Dict, season: int, week: int) -> Path:
        path = self.ann_checkpoint_path
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"season": int(season), "week": int(week), "saved_at": utc_now(), "model": artifact}
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(payload), encoding="utf-8")
        tmp.replace(path)
        return path

    def load_ann_checkpoint(self) -> Optional[Tuple[Dict, Tuple[int, int]]]:
        """``(artifact, (season, week))`` of the saved committee, or ``None``."""
        path = self.ann_checkpoint_path
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable ANN checkpoint %s: %s", path, exc)
            return None
        if not isinstance(payload, dict) or not isinstance(payload.get("model"), dict):
            return None
        try:
            saved_at = (int(payload["season"]), int(payload["week"]))
        except (KeyError, TypeError, ValueError):
            logger.warning("Ignoring ANN checkpoint %s without a season/week stamp", path)
            return None
        return payload["model"], saved_at
