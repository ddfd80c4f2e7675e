"""Weekly training, historical bootstrap and hybrid recalibration."""

from .bootstrap import HistoricalBootstrapScheduler, chunk_season_list, resolve_historical_chunk_selection
from .hybrid import run_hybrid_bootstrap, run_hybrid_recalibration
from .weekly import TrainingResult, WeeklyTrainer

__all__ = [
    "HistoricalBootstrapScheduler",
    "TrainingResult",
    "WeeklyTrainer",
    "chunk_season_list",
    "resolve_historical_chunk_selection",
    "run_hybrid_bootstrap",
    "run_hybrid_recalibration",
]
