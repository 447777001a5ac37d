"""
Persistence gateway.

Subscribes to the collection and keeps two copies of it:

- Local snapshot (SQLite): written synchronously on every change, only the
  cards that changed plus deletions.
- Remote blob: written after a quiet period, never while a card is in an
  auto-dispatch status, and only when content actually changed.

Remote failures are logged and swallowed; the dirty flags stay set and the
save is re-armed for the next quiet period. Dirty flags are cleared only for
cards whose saved version is still the current one.
"""

import hashlib
import json
import logging
from collections.abc import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from gradeforge.config import settings
from gradeforge.db.operations import delete_cards, load_cards, upsert_cards
from gradeforge.models.card import Card
from gradeforge.models.collection import CardCollection, CollectionState
from gradeforge.models.failure import KnownError
from gradeforge.services.debounce import Debouncer
from gradeforge.stores.base import RemoteCollectionStore

logger = logging.getLogger(__name__)


def collection_fingerprint(collection: CardCollection) -> str:
    """Content hash of a collection, ignoring is_dirty."""
    digest = hashlib.sha256()
    for card in collection.cards():
        record = card.to_record()
        record.pop("isDirty", None)
        digest.update(json.dumps(record, sort_keys=True).encode())
    return digest.hexdigest()


class LocalSnapshot:
    """Card snapshot in the local database."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def load(self) -> CardCollection:
        with self._session_factory() as session:
            cards = load_cards(session)
        logger.info("LOCAL_SNAPSHOT_LOADED", extra={"count": len(cards)})
        return CardCollection(cards)

    def write(self, previous: CardCollection, current: CardCollection) -> bool:
        """
        Persist the difference between two collections.

        Returns False (after logging) if the database rejected the write.
        """
        changed = [card for card in current.cards() if previous.get(card.id) is not card]
        removed = [card_id for card_id in previous if card_id not in current]
        if not changed and not removed:
            return True

        with self._session_factory() as session:
            try:
                upsert_cards(session, changed)
                delete_cards(session, removed)
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                logger.exception(
                    "LOCAL_SNAPSHOT_FAILED",
                    extra={"changed": len(changed), "removed": len(removed)},
                )
                return False
        return True


class PersistenceGateway:
    """
    Writes collection changes to the local snapshot and the remote store.

    Call `attach()` inside the event loop to start listening.
    """

    def __init__(
        self,
        state: CollectionState,
        local: LocalSnapshot | None = None,
        remote: RemoteCollectionStore | None = None,
        save_delay: float | None = None,
        remote_handle: str | None = None,
    ):
        self._state = state
        self._local = local
        self._remote = remote
        self.remote_handle = remote_handle
        self._persisted = state.collection
        self._unsubscribe: Callable[[], None] | None = None
        self._debouncer = Debouncer(
            self._save_remote,
            delay=save_delay if save_delay is not None else settings.remote_save_delay,
            fingerprint=self._fingerprint,
            name="remote save",
        )

    @property
    def has_remote(self) -> bool:
        return self._remote is not None

    @property
    def save_pending(self) -> bool:
        return self._debouncer.pending

    def attach(self) -> None:
        if self._unsubscribe is None:
            self._persisted = self._state.collection
            self._unsubscribe = self._state.subscribe(self._on_change)

    def set_remote(self, remote: RemoteCollectionStore | None, handle: str | None = None) -> None:
        self._remote = remote
        self.remote_handle = handle

    def mark_remote_current(self, collection: CardCollection) -> None:
        """Record that the remote store already holds this content."""
        self._debouncer.prime(collection_fingerprint(collection))

    def _fingerprint(self) -> str:
        return collection_fingerprint(self._state.collection)

    def _on_change(self, collection: CardCollection) -> None:
        if self._local is not None:
            if self._local.write(self._persisted, collection):
                self._persisted = collection
        else:
            self._persisted = collection

        if self._remote is not None:
            self._debouncer.trigger()

    async def flush(self) -> bool:
        """Save to the remote store now instead of waiting for the quiet period."""
        if self._remote is None:
            return False
        return await self._debouncer.run_now()

    async def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self._debouncer.close()

    async def _save_remote(self) -> bool:
        if self._remote is None:
            return False

        collection = self._state.collection
        if collection.has_pending_work():
            # Completion of the last stage changes the collection and re-triggers
            logger.info("REMOTE_SAVE_DEFERRED", extra={"reason": "pipeline busy"})
            return False

        cards = collection.cards()
        try:
            self.remote_handle = await self._remote.save(self.remote_handle, cards)
        except KnownError as e:
            logger.warning(
                "REMOTE_SAVE_FAILED",
                extra={"error": e.message, "dirty": len(collection.dirty_cards())},
            )
            self._debouncer.trigger()
            return False
        except Exception:
            logger.exception("REMOTE_SAVE_FAILED")
            self._debouncer.trigger()
            return False

        saved = {card.id: card for card in cards}
        self._state.apply(lambda current: _clear_saved_dirty(current, saved))
        logger.info("REMOTE_SAVE_COMPLETED", extra={"count": len(cards)})
        return True


def _clear_saved_dirty(current: CardCollection, saved: dict[str, Card]) -> CardCollection:
    cleaned = [
        card.with_updates(is_dirty=False)
        for card in current.dirty_cards()
        if saved.get(card.id) == card
    ]
    if not cleaned:
        return current
    return current.replace_many(cleaned)
