"""
Collection reconciliation.

Merges cards pulled from another source (remote blob, spreadsheet) into the
current collection.

Matching, in order:
1. equal id
2. equal natural key, from a pluggable identity key function, when both
   cards produce one

A matched card takes the incoming card's explicitly supplied, non-empty
fields. Its id, created_at, status and is_dirty never change, so a merge
cannot move a card through the pipeline or hide unsaved work. Fields that
only mean something together with the status (error_message, error_kind,
pending_direction) stay with the local card as well.

merge(merge(A, B), B) == merge(A, B)
"""

import logging
from collections.abc import Callable, Hashable, Iterable
from typing import Any

from gradeforge.config import SYNTHETIC_EPOCH_MS
from gradeforge.models.card import Card
from gradeforge.models.collection import CardCollection

logger = logging.getLogger(__name__)

IdentityKey = Callable[[Card], Hashable | None]

# Fields owned by the local copy of a card
PROTECTED_FIELDS: frozenset[str] = frozenset(
    {
        "id",
        "created_at",
        "status",
        "is_dirty",
        "error_message",
        "error_kind",
        "pending_direction",
    }
)


def _normalize(value: str | None) -> str:
    return " ".join(value.lower().split()) if value else ""


def catalog_identity_key(card: Card) -> Hashable | None:
    """Name + year + card number. Needs at least a name."""
    name = _normalize(card.name)
    if not name:
        return None
    return ("catalog", name, _normalize(card.year), _normalize(card.card_number))


def image_identity_key(card: Card) -> Hashable | None:
    """Name + front photo. Needs both."""
    name = _normalize(card.name)
    if not name or not card.front_image:
        return None
    return ("image", name, card.front_image)


def default_identity_key(card: Card) -> Hashable | None:
    return catalog_identity_key(card)


def _overlay(existing: Card, incoming: Card) -> Card:
    changes: dict[str, Any] = {}
    for field in incoming.model_fields_set - PROTECTED_FIELDS:
        value = getattr(incoming, field)
        if value is None or value == "":
            continue
        if field == "sheet_synced":
            # Once a row is in the sheet it stays there
            value = existing.sheet_synced or value
        current = getattr(existing, field)
        if isinstance(value, str) and isinstance(current, str):
            # The sheet stores text upper-cased
            if value.casefold() == current.casefold():
                continue
        if current != value:
            changes[field] = value

    if not changes:
        return existing
    return existing.with_updates(**changes)


def merge_collections(
    primary: CardCollection,
    incoming: Iterable[Card],
    identity_key: IdentityKey = default_identity_key,
) -> CardCollection:
    """
    Merge `incoming` into `primary`.

    Args:
        primary: The current collection; its cards keep their identity
        incoming: Cards from another source
        identity_key: Natural key used when ids differ

    Returns:
        New collection ordered by created_at descending.
    """
    merged: dict[str, Card] = dict(primary.items())
    by_key: dict[Hashable, str] = {}
    for card in merged.values():
        key = identity_key(card)
        if key is not None:
            by_key.setdefault(key, card.id)

    matched = appended = 0
    for card in incoming:
        target_id: str | None = card.id if card.id in merged else None
        if target_id is None:
            key = identity_key(card)
            if key is not None:
                target_id = by_key.get(key)

        if target_id is None:
            merged[card.id] = card
            key = identity_key(card)
            if key is not None:
                by_key.setdefault(key, card.id)
            appended += 1
            continue

        merged[target_id] = _overlay(merged[target_id], card)
        matched += 1

    logger.info(
        "COLLECTIONS_MERGED",
        extra={"primary": len(primary), "matched": matched, "appended": appended},
    )

    result = CardCollection(merged.values())
    if result == primary:
        return primary
    return result


def assign_synthetic_timestamps(records: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """
    Give records without a timestamp one that preserves their source order.

    Row i gets SYNTHETIC_EPOCH_MS - i, so earlier rows sort first and every
    synthetic value sorts below a real epoch-millisecond timestamp.
    """
    stamped: list[dict[str, Any]] = []
    for index, record in enumerate(records):
        if record.get("timestamp"):
            stamped.append(record)
        else:
            stamped.append({**record, "timestamp": SYNTHETIC_EPOCH_MS - index})
    return stamped
