"""
Database CRUD operations for card snapshots.

Plain functions over a Session; callers own the transaction.
"""

import logging
from collections.abc import Iterable

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from gradeforge.models.card import Card, normalize_card_record
from gradeforge.models.db import CardSnapshotDB

logger = logging.getLogger(__name__)


def card_to_row(card: Card) -> CardSnapshotDB:
    return CardSnapshotDB(
        id=card.id,
        status=card.status.value,
        created_at=card.created_at,
        payload=card.to_record(),
    )


def row_to_card(row: CardSnapshotDB) -> Card | None:
    """Rebuild a card from its stored record; None if the record is unusable."""
    return normalize_card_record(row.payload, default_timestamp=row.created_at)


def load_cards(session: Session) -> list[Card]:
    """All stored cards, newest first. Unreadable rows are skipped."""
    result = session.execute(select(CardSnapshotDB).order_by(CardSnapshotDB.created_at.desc()))
    cards = []
    for row in result.scalars():
        card = row_to_card(row)
        if card is not None:
            cards.append(card)
    return cards


def get_card(session: Session, card_id: str) -> Card | None:
    row = session.get(CardSnapshotDB, card_id)
    return row_to_card(row) if row is not None else None


def upsert_cards(session: Session, cards: Iterable[Card]) -> int:
    """
    Insert or update cards by id.

    Returns the number of cards written.
    """
    count = 0
    for card in cards:
        row = session.get(CardSnapshotDB, card.id)
        if row is None:
            session.add(card_to_row(card))
        else:
            row.status = card.status.value
            row.created_at = card.created_at
            row.payload = card.to_record()
        count += 1
    session.flush()
    return count


def delete_cards(session: Session, card_ids: Iterable[str]) -> int:
    """Delete cards by id. Returns the number of rows removed."""
    ids = list(card_ids)
    if not ids:
        return 0
    result = session.execute(delete(CardSnapshotDB).where(CardSnapshotDB.id.in_(ids)))
    return result.rowcount or 0


def replace_all_cards(session: Session, cards: Iterable[Card]) -> int:
    """Replace the whole snapshot with `cards`."""
    session.execute(delete(CardSnapshotDB))
    rows = [card_to_row(card) for card in cards]
    session.add_all(rows)
    session.flush()
    return len(rows)
