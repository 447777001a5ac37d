"""
Card collection and the shared state that holds it.

CardCollection is immutable: every mutation returns a new collection, so a
stage completing late can apply its result against the *current* collection
instead of the snapshot it was dispatched from.

CollectionState is the only shared mutable resource in the pipeline. It
replaces the whole collection on each change and notifies subscribers
synchronously, in subscription order, after the replacement. A listener
that raises is logged and the remaining listeners still run.
"""

import logging
from collections.abc import Callable, Iterable, Iterator, Mapping

from gradeforge.models.card import AUTO_DISPATCH_STATES, Card

logger = logging.getLogger(__name__)


class CardCollection(Mapping[str, Card]):
    """Ordered, immutable mapping of card id to Card (newest first)."""

    __slots__ = ("_cards",)

    def __init__(self, cards: Iterable[Card] = ()):
        ordered = sorted(cards, key=lambda c: c.created_at, reverse=True)
        by_id: dict[str, Card] = {}
        for card in ordered:
            # First occurrence wins: one card per id
            by_id.setdefault(card.id, card)
        self._cards = by_id

    def __getitem__(self, card_id: str) -> Card:
        return self._cards[card_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._cards)

    def __len__(self) -> int:
        return len(self._cards)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CardCollection):
            return NotImplemented
        return list(self._cards.items()) == list(other._cards.items())

    def __hash__(self) -> int:
        return hash(tuple(self._cards))

    def __repr__(self) -> str:
        return f"<CardCollection(size={len(self)})>"

    def cards(self) -> list[Card]:
        """Cards ordered by created_at descending."""
        return list(self._cards.values())

    def with_card(self, card: Card) -> "CardCollection":
        """Insert or replace a card."""
        updated = dict(self._cards)
        updated[card.id] = card
        return CardCollection(updated.values())

    def without(self, card_id: str) -> "CardCollection":
        """Remove a card; unknown ids are ignored."""
        if card_id not in self._cards:
            return self
        return CardCollection(c for c in self._cards.values() if c.id != card_id)

    def replace_many(self, cards: Iterable[Card]) -> "CardCollection":
        """Replace existing cards by id; cards not already present are ignored."""
        updated = dict(self._cards)
        for card in cards:
            if card.id in updated:
                updated[card.id] = card
        return CardCollection(updated.values())

    def in_flight_candidates(self) -> list[Card]:
        """Cards whose status the scheduler dispatches automatically."""
        return [c for c in self._cards.values() if c.status in AUTO_DISPATCH_STATES]

    def has_pending_work(self) -> bool:
        return any(c.status in AUTO_DISPATCH_STATES for c in self._cards.values())

    def dirty_cards(self) -> list[Card]:
        return [c for c in self._cards.values() if c.is_dirty]


CollectionListener = Callable[[CardCollection], None]


class CollectionState:
    """
    Holder for the current collection.

    All changes go through `apply`, which takes a function of the current
    collection so concurrent completions never overwrite each other.
    """

    def __init__(self, initial: CardCollection | None = None):
        self._collection = initial if initial is not None else CardCollection()
        self._listeners: list[CollectionListener] = []

    @property
    def collection(self) -> CardCollection:
        return self._collection

    def subscribe(self, listener: CollectionListener) -> Callable[[], None]:
        """Register a listener; returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def apply(self, mutate: Callable[[CardCollection], CardCollection]) -> CardCollection:
        """Replace the collection with mutate(current) and notify listeners."""
        updated = mutate(self._collection)
        if updated is self._collection:
            return updated
        self._collection = updated
        for listener in list(self._listeners):
            try:
                listener(updated)
            except Exception:
                logger.exception("COLLECTION_LISTENER_FAILED", extra={"listener": repr(listener)})
        return updated

    def replace(self, collection: CardCollection) -> CardCollection:
        return self.apply(lambda _current: collection)
