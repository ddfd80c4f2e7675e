"""Season/week ordering helpers.

Every train/test split in the trainer goes through :func:`split_train_test`,
which only admits training rows strictly before the target coordinate.
"""

from __future__ import annotations

from typing import Any, Iterable, List, Optional, Sequence, Tuple

Coordinate = Tuple[int, int]


def coordinate(value: Any) -> Coordinate:
    """Return ``(season, week)`` for a dict, tuple or object with attributes."""
    if isinstance(value, dict):
        season, week = value.get("season"), value.get("week")
    elif isinstance(value, (tuple, list)) and len(value) >= 2:
        season, week = value[0], value[1]
    else:
        season, week = getattr(value, "season", None), getattr(value, "week", None)
    if season is None or week is None:
        raise ValueError(f"value has no season/week coordinate: {value!r}")
    return int(season), int(week)


def is_before(target: Any, row: Any) -> bool:
    """True iff ``row`` falls strictly before ``target`` in (season, week) order."""
    t_season, t_week = coordinate(target)
    r_season, r_week = coordinate(row)
    if r_season < t_season:
        return True
    return r_season == t_season and r_week < t_week


def is_target(target: Any, row: Any) -> bool:
    return coordinate(target) == coordinate(row)


def sort_chronologically(rows: Iterable[Any]) -> List[Any]:
    """Stable sort by (season, week); ties keep their input order."""
    return sorted(rows, key=coordinate)


def _has_label(row: Any, label_key: str) -> bool:
    value = row.get(label_key) if isinstance(row, dict) else getattr(row, label_key, None)
    return value in (0, 1)


def split_train_test(
    rows: Sequence[Any],
    target: Any,
    label_key: Optional[str] = None,
) -> Tuple[List[Any], List[Any]]:
    """
    Split rows into a leakage-free training set and the target week's test set.

    Args:
        rows: Rows carrying ``season`` and ``week``
        target: Target coordinate
        label_key: When given, training rows must also carry a 0/1 label

    Returns:
        Tuple of (train_rows, test_rows), both in chronological order
    """
    ordered = sort_chronologically(rows)
    train = [
        r for r in ordered
        if is_before(target, r) and (label_key is None or _has_label(r, label_key))
    ]
    test = [r for r in ordered if is_target(target, r)]
    return train, test


def week_stamp(season: int, week: int) -> str:
    return f"{int(season)}_W{int(week):02d}"
