"""Attribute map helpers used when publishing."""

import time
from collections.abc import Mapping

ORIGINATED_AT = "OriginatedAt"


def merge_attributes(*attributes: Mapping[str, str] | None) -> dict[str, str]:
    """Merge attribute maps into a new dict.

    Later maps win on key collisions. ``None`` entries are skipped, and
    merging nothing yields an empty dict.
    """
    merged: dict[str, str] = {}
    for mapping in attributes:
        if mapping:
            merged.update(mapping)
    return merged


def stamp_originated_at(
    attributes: dict[str, str],
    now: float | None = None,
) -> dict[str, str]:
    """Set ``OriginatedAt`` to the current Unix time unless already present.

    Mutates and returns ``attributes``.
    """
    if ORIGINATED_AT not in attributes:
        seconds = time.time() if now is None else now
        attributes[ORIGINATED_AT] = str(int(seconds))
    return attributes
