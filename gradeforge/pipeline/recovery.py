"""
Crash recovery.

A card found in an auto-dispatch status when a collection is loaded was in
flight when the previous process stopped. Its stage result is lost, so the
card is moved to GradingFailed for the user to retry or override instead of
being silently re-run.
"""

import logging
from dataclasses import dataclass

from gradeforge.models.card import AUTO_DISPATCH_STATES, CardStatus
from gradeforge.models.collection import CardCollection
from gradeforge.models.failure import FailureKind

logger = logging.getLogger(__name__)

RECOVERY_MESSAGE = (
    "Processing was interrupted before this card finished. "
    "Retry it or set the grade manually."
)


@dataclass(frozen=True, slots=True)
class RecoveryResult:
    collection: CardCollection
    recovered_ids: tuple[str, ...]

    @property
    def recovered(self) -> bool:
        return bool(self.recovered_ids)


def recover_interrupted(collection: CardCollection) -> RecoveryResult:
    """Fail every card left in an auto-dispatch status."""
    interrupted = [c for c in collection.cards() if c.status in AUTO_DISPATCH_STATES]
    if not interrupted:
        return RecoveryResult(collection=collection, recovered_ids=())

    recovered = [
        card.with_updates(
            status=CardStatus.GRADING_FAILED,
            error_message=RECOVERY_MESSAGE,
            error_kind=FailureKind.INTERRUPTED,
            pending_direction=None,
            is_dirty=True,
        )
        for card in interrupted
    ]
    ids = tuple(card.id for card in recovered)
    logger.warning("CARDS_RECOVERED", extra={"count": len(ids), "card_ids": list(ids)})
    return RecoveryResult(collection=collection.replace_many(recovered), recovered_ids=ids)
