"""
Ordered registry of named feature extractors.

Feature vectors are always produced through a registry so the order used
at training time is the order persisted with every model artifact and the
order used at inference.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)

FEATURE_HASH_VERSION = 1


def safe_float(value, default: float = 0.0) -> float:
    """Coerce ``value`` to a finite float, falling back to ``default``."""
    if value is None:
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number) or math.isinf(number):
        return default
    return number


@dataclass(frozen=True)
class FeatureExtractor:
    """A named accessor that pulls one numeric value out of a feature row."""

    name: str
    extract: Callable[[Mapping], float]
    group: str = "team"
    description: str = ""

    def __call__(self, row: Mapping) -> float:
        return safe_float(self.extract(row))


def column(name: str) -> Callable[[Mapping], float]:
    """Extractor reading a top-level column."""
    return lambda row: row.get(name)


def nested(container: str, name: str) -> Callable[[Mapping], float]:
    """Extractor reading ``row[container][name]``."""

    def _extract(row: Mapping):
        values = row.get(container) or {}
        return values.get(name)

    return _extract


class FeatureRegistry:
    """Insertion-ordered collection of :class:`FeatureExtractor` objects."""

    def __init__(self, name: str):
        self.name = name
        self._extractors: "OrderedDict[str, FeatureExtractor]" = OrderedDict()

    def register(
        self,
        name: str,
        extract: Optional[Callable[[Mapping], float]] = None,
        group: str = "team",
        description: str = "",
    ) -> FeatureExtractor:
        if name in self._extractors:
            raise ValueError(f"Feature '{name}' already registered in {self.name}")
        extractor = FeatureExtractor(
            name=name,
            extract=extract or column(name),
            group=group,
            description=description,
        )
        self._extractors[name] = extractor
        return extractor

    def __contains__(self, name: str) -> bool:
        return name in self._extractors

    def __len__(self) -> int:
        return len(self._extractors)

    def __iter__(self):
        return iter(self._extractors.values())

    def names(self, group: Optional[str] = None) -> List[str]:
        return [
            e.name for e in self._extractors.values()
            if group is None or e.group == group
        ]

    def resolve(self, names: Optional[Sequence[str]] = None) -> List[FeatureExtractor]:
        """Resolve ``names`` (default: all) into extractors, preserving the given order."""
        if names is None:
            return list(self._extractors.values())
        missing = [n for n in names if n not in self._extractors]
        if missing:
            raise KeyError(f"Unknown features for {self.name}: {missing}")
        return [self._extractors[n] for n in names]

    def vectorize(self, rows: Iterable[Mapping], names: Optional[Sequence[str]] = None) -> np.ndarray:
        """Build an ``(n_rows, n_features)`` float matrix in registry order."""
        extractors = self.resolve(names)
        matrix = [[extractor(row) for extractor in extractors] for row in rows]
        if not matrix:
            return np.zeros((0, len(extractors)), dtype=float)
        return np.asarray(matrix, dtype=float)

    def as_dict(self, row: Mapping, names: Optional[Sequence[str]] = None) -> Dict[str, float]:
        return {e.name: e(row) for e in self.resolve(names)}


def feature_hash(features: Sequence[str], extra: Optional[Dict] = None) -> str:
    """SHA-1 over the feature list and row counts; identical inputs skip retraining."""
    payload = {
        "version": FEATURE_HASH_VERSION,
        "features": list(features),
        "extra": dict(extra or {}),
    }
    blob = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha1(blob.encode("utf-8")).hexdigest()
