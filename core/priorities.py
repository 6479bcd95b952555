"""Utility helpers for task priorities."""
from __future__ import annotations

from typing import Dict

# The remote service stores priority as 1 (normal) .. 4 (urgent); its clients
# display the scale inverted, so p1 is the most urgent.
PRIORITY_META: Dict[int, Dict[str, str]] = {
    1: {"label": "Normal", "short": "p4"},
    2: {"label": "Medium", "short": "p3"},
    3: {"label": "High", "short": "p2"},
    4: {"label": "Urgent", "short": "p1"},
}

DEFAULT_PRIORITY = 1


def normalize_priority(value: int | str | None) -> int:
    """Clamp external values to the supported priority range."""
    if value is None:
        return DEFAULT_PRIORITY
    try:
        ivalue = int(value)
    except (TypeError, ValueError):
        return DEFAULT_PRIORITY
    floor = min(PRIORITY_META.keys())
    ceil = max(PRIORITY_META.keys())
    return max(floor, min(ceil, ivalue))


def priority_label(value: int, *, short: bool = False) -> str:
    meta = PRIORITY_META.get(value, PRIORITY_META[DEFAULT_PRIORITY])
    return meta["short" if short else "label"]


__all__ = [
    "DEFAULT_PRIORITY",
    "PRIORITY_META",
    "normalize_priority",
    "priority_label",
]
