"""Collapse raw business records that describe the same physical business."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable

from app.models.discovery import RawBusinessData

logger = logging.getLogger(__name__)

_NON_ALNUM = re.compile(r"[^a-z0-9]")


def _normalize(value: str | None) -> str:
    return _NON_ALNUM.sub("", (value or "").lower())


def dedupe_key(business: RawBusinessData) -> str:
    """Provider id when present, otherwise normalized ``name:city:state``."""
    provider_id = business.place_id or business.external_id
    if provider_id:
        return f"places:{_normalize(provider_id)}"
    return "name:{}:{}:{}".format(
        _normalize(business.name),
        _normalize(business.city),
        _normalize(business.state),
    )


def _is_empty(value: object) -> bool:
    return value is None or value == "" or value == [] or value == {}


def merge_businesses(primary: RawBusinessData, incoming: RawBusinessData) -> RawBusinessData:
    """Fill gaps in ``primary`` from ``incoming`` without overwriting present values.

    Rating and review count move together and are taken from ``incoming`` only
    when it has strictly more reviews; ties keep the first-seen pair.
    """
    updates: dict[str, object] = {}
    for field_name in RawBusinessData.model_fields:
        current = getattr(primary, field_name)
        candidate = getattr(incoming, field_name)
        if _is_empty(current) and not _is_empty(candidate):
            updates[field_name] = candidate

    if (incoming.review_count or 0) > (primary.review_count or 0):
        updates["review_count"] = incoming.review_count
        if incoming.rating is not None:
            updates["rating"] = incoming.rating

    if not updates:
        return primary
    return primary.model_copy(update=updates)


def dedupe(businesses: Iterable[RawBusinessData]) -> list[RawBusinessData]:
    """Return one merged record per dedup key, in first-seen key order."""
    merged: dict[str, RawBusinessData] = {}
    total = 0
    for business in businesses:
        total += 1
        key = dedupe_key(business)
        existing = merged.get(key)
        merged[key] = business if existing is None else merge_businesses(existing, business)

    logger.info(
        "discovery.dedupe.completed",
        extra={"input_count": total, "output_count": len(merged)},
    )
    return list(merged.values())
