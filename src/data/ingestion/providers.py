"""Season table sources with ordered fallback and graceful degradation."""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import pandas as pd
import requests

from ...config import INJURY_DATA_MIN_SEASON
from ...errors import DataSourceUnavailable

logger = logging.getLogger(__name__)

TABLES = ("schedules", "team_weekly", "injuries")


@dataclass
class ProviderResult:
    provider: str
    frame: pd.DataFrame

    @property
    def empty(self) -> bool:
        return self.frame is None or self.frame.empty


@dataclass
class SeasonData:
    """Raw tables for one season plus the previous season's team-week table."""

    season: int
    schedules: pd.DataFrame = field(default_factory=pd.DataFrame)
    team_weekly: pd.DataFrame = field(default_factory=pd.DataFrame)
    injuries: pd.DataFrame = field(default_factory=pd.DataFrame)
    prev_team_weekly: pd.DataFrame = field(default_factory=pd.DataFrame)
    providers: Dict[str, str] = field(default_factory=dict)

    def weeks(self) -> List[int]:
        if self.schedules.empty or "week" not in self.schedules.columns:
            return []
        frame = self.schedules
        if "season" in frame.columns:
            frame = frame[pd.to_numeric(frame["season"], errors="coerce") == self.season]
        weeks = pd.to_numeric(frame["week"], errors="coerce").dropna().astype(int)
        return sorted(w for w in weeks.unique().tolist() if w >= 1)


class LocalCsvSource:
    """Reads ``{root}/{table}_{season}.csv``."""

    name = "local_csv"

    def __init__(self, root):
        self.root = Path(root)

    def fetch(self, table: str, season: int) -> pd.DataFrame:
        path = self.root / f"{table}_{int(season)}.csv"
        if not path.exists():
            raise DataSourceUnavailable(table, season, f"{path} not found")
        try:
            return pd.read_csv(path)
        except (OSError, ValueError) as exc:
            raise DataSourceUnavailable(table, season, str(exc)) from exc


class HttpCsvSource:
    """Fetches ``{base_url}/{table}_{season}.csv`` over HTTP."""

    name = "http_csv"

    def __init__(self, base_url: str, timeout: float = 30.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def fetch(self, table: str, season: int) -> pd.DataFrame:
        url = f"{self.base_url}/{table}_{int(season)}.csv"
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as exc:
            raise DataSourceUnavailable(table, season, str(exc)) from exc
        if response.status_code != 200:
            raise DataSourceUnavailable(table, season, f"HTTP {response.status_code} for {url}")
        try:
            return pd.read_csv(io.StringIO(response.text))
        except ValueError as exc:
            raise DataSourceUnavailable(table, season, f"unparseable CSV: {exc}") from exc


class InMemorySource:
    """Serves pre-built tables keyed by ``(table, season)``."""

    name = "memory"

    def __init__(self, tables: Mapping[Tuple[str, int], object]):
        self.tables = dict(tables)

    def fetch(self, table: str, season: int) -> pd.DataFrame:
        value = self.tables.get((table, int(season)))
        if value is None:
            raise DataSourceUnavailable(table, season, "not loaded")
        if isinstance(value, pd.DataFrame):
            return value.copy()
        return pd.DataFrame(list(value))


class SeasonDataHub:
    """Best-effort season loader: first source that yields rows wins, else an empty frame."""

    def __init__(self, sources: Sequence):
        self.sources = list(sources)

    @classmethod
    def from_config(cls, config) -> "SeasonDataHub":
        sources: List = [LocalCsvSource(config.data_root)]
        if config.data_base_url:
            sources.append(HttpCsvSource(config.data_base_url))
        return cls(sources)

    def fetch(self, table: str, season: int) -> ProviderResult:
        reasons = []
        for source in self.sources:
            try:
                frame = source.fetch(table, season)
            except DataSourceUnavailable as exc:
                reasons.append(f"{source.name}: {exc.reason or exc}")
                continue
            if frame is not None and not frame.empty:
                return ProviderResult(source.name, frame)
            reasons.append(f"{source.name}: empty")
        logger.warning(
            "%s for season %s unavailable; continuing with empty table (%s)",
            table,
            season,
            "; ".join(reasons) or "no sources",
        )
        return ProviderResult("none", pd.DataFrame())

    def load_season(self, season: int) -> SeasonData:
        """Blocking load of every table a season needs."""
        data = SeasonData(season=int(season))
        for table in TABLES:
            if table == "injuries" and season < INJURY_DATA_MIN_SEASON:
                continue
            result = self.fetch(table, season)
            setattr(data, table, result.frame)
            data.providers[table] = result.provider
        previous = self.fetch("team_weekly", season - 1)
        data.prev_team_weekly = previous.frame
        data.providers["prev_team_weekly"] = previous.provider
        return data
