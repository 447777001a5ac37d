"""
Card orchestrator.

The single entry point for everything outside the pipeline: intake, user
transitions, observation, and pulling in other sources. It owns the shared
CollectionState and wires the scheduler and persistence gateway to it.

Startup order matters:
1. load the local snapshot
2. recover interrupted cards (once)
3. start persisting changes
4. start the scheduler
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from gradeforge.config import settings
from gradeforge.db.database import init_db, session_factory
from gradeforge.models.card import Card, CardStatus, ChallengeDirection, new_card
from gradeforge.models.collection import CardCollection, CollectionListener, CollectionState
from gradeforge.models.failure import (
    CardNotFoundError,
    FailureKind,
    KnownError,
    SourceNotConfiguredError,
)
from gradeforge.pipeline.recovery import RecoveryResult, recover_interrupted
from gradeforge.pipeline.scheduler import InFlightSet, Scheduler
from gradeforge.pipeline.state_machine import (
    Accept,
    Challenge,
    ManualOverride,
    RequestValuation,
    Retry,
    UserEvent,
    apply_event,
)
from gradeforge.services.analysis_service import AnalysisService, ClaudeAnalysisService
from gradeforge.services.merger import (
    IdentityKey,
    catalog_identity_key,
    image_identity_key,
    merge_collections,
)
from gradeforge.services.persistence import LocalSnapshot, PersistenceGateway
from gradeforge.services.retry import RetryExecutor
from gradeforge.stores.base import RemoteCollectionStore, TabularSource, TokenHolder
from gradeforge.stores.drive import DriveCollectionStore
from gradeforge.stores.sheets import SheetsTabularSource

logger = logging.getLogger(__name__)

REMOTE_SOURCE = "remote collection store"
SHEET_SOURCE = "spreadsheet"


@dataclass(frozen=True, slots=True)
class PipelineStatus:
    """Snapshot of scheduler state for display."""

    paused: bool
    pause_reason: str | None
    in_flight: tuple[str, ...]
    concurrency_limit: int
    progress: dict[str, str] = field(default_factory=dict)
    remote_configured: bool = False
    sheet_configured: bool = False
    remote_save_pending: bool = False

    @property
    def credentials_required(self) -> bool:
        return self.paused


@dataclass(frozen=True, slots=True)
class SyncResult:
    """Outcome of pulling or pushing another source."""

    source: str
    fetched: int = 0
    written: int = 0
    total: int = 0
    recovered_ids: tuple[str, ...] = ()


class CardOrchestrator:
    """
    Facade over the card pipeline.

    Args:
        service: Analysis service used by every stage
        local: Local snapshot; None keeps the collection in memory only
        remote: Remote collection store; None disables remote saves
        sheet: Spreadsheet source for import/export
        token_holder: Shared Google token, updated by update_credentials
    """

    def __init__(
        self,
        service: AnalysisService,
        local: LocalSnapshot | None = None,
        remote: RemoteCollectionStore | None = None,
        sheet: TabularSource | None = None,
        token_holder: TokenHolder | None = None,
        executor: RetryExecutor | None = None,
        concurrency_limit: int | None = None,
        in_flight: InFlightSet | None = None,
        poll_interval: float | None = None,
        save_delay: float | None = None,
        state: CollectionState | None = None,
    ):
        self.service = service
        self.state = state or CollectionState()
        self._local = local
        self._remote = remote
        self._sheet = sheet
        self._token_holder = token_holder or TokenHolder()
        self.scheduler = Scheduler(
            self.state,
            service,
            executor=executor,
            concurrency_limit=concurrency_limit,
            in_flight=in_flight,
            poll_interval=poll_interval,
        )
        self.persistence = PersistenceGateway(
            self.state, local=local, remote=remote, save_delay=save_delay
        )
        self._started = False

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self, sync_remote: bool = False) -> RecoveryResult | None:
        """
        Load, recover, and begin processing. A second call does nothing.

        Args:
            sync_remote: Also pull and merge the remote collection before
                the first dispatch

        Returns:
            The recovery result of the first call, None afterwards.
        """
        if self._started:
            return None
        self._started = True

        if self._local is not None:
            self.state.replace(self._local.load())

        recovery = recover_interrupted(self.state.collection)
        self.persistence.attach()
        if recovery.recovered:
            self.state.replace(recovery.collection)

        if sync_remote and self._remote is not None:
            try:
                await self.refresh_from_remote()
            except KnownError as e:
                logger.warning("REMOTE_REFRESH_FAILED", extra={"error": e.message})

        self.scheduler.start()
        logger.info(
            "ORCHESTRATOR_STARTED",
            extra={"cards": len(self.state.collection), "recovered": len(recovery.recovered_ids)},
        )
        return recovery

    async def stop(self) -> None:
        """Stop dispatching, flush a pending remote save, and detach."""
        self.scheduler.stop()
        if self.persistence.save_pending:
            await self.persistence.flush()
        await self.persistence.close()

    async def wait_idle(self) -> None:
        await self.scheduler.wait_idle()

    # -------------------------------------------------------------------------
    # Observation
    # -------------------------------------------------------------------------

    def cards(self) -> list[Card]:
        return self.state.collection.cards()

    def get(self, card_id: str) -> Card:
        card = self.state.collection.get(card_id)
        if card is None:
            raise CardNotFoundError(card_id)
        return card

    def subscribe(self, listener: CollectionListener) -> Callable[[], None]:
        return self.state.subscribe(listener)

    def status(self) -> PipelineStatus:
        return PipelineStatus(
            paused=self.scheduler.paused,
            pause_reason=self.scheduler.pause_reason,
            in_flight=tuple(self.scheduler.in_flight),
            concurrency_limit=self.scheduler.concurrency_limit,
            progress={
                card_id: notice.message for card_id, notice in self.scheduler.progress().items()
            },
            remote_configured=self._remote is not None,
            sheet_configured=self._sheet is not None,
            remote_save_pending=self.persistence.save_pending,
        )

    # -------------------------------------------------------------------------
    # Intake and user transitions
    # -------------------------------------------------------------------------

    def submit(self, front_image: str, back_image: str, scanned_by: str | None = None) -> Card:
        """Add a new card; the scheduler picks it up for grading."""
        if not front_image or not back_image:
            raise KnownError(
                kind=FailureKind.INVALID_INPUT,
                message="Both a front and a back image are required.",
            )
        card = new_card(front_image, back_image, scanned_by=scanned_by)
        self.state.apply(lambda collection: collection.with_card(card))
        logger.info("CARD_SUBMITTED", extra={"card_id": card.id})
        return card

    def accept(self, card_id: str) -> Card:
        return self._transition(card_id, Accept())

    def challenge(self, card_id: str, direction: ChallengeDirection) -> Card:
        return self._transition(card_id, Challenge(direction=direction))

    def manual_override(self, card_id: str, grade: int, grade_name: str | None = None) -> Card:
        return self._transition(card_id, ManualOverride(grade=grade, grade_name=grade_name))

    def retry(self, card_id: str) -> Card:
        return self._transition(card_id, Retry())

    def request_valuation(self, card_id: str) -> Card:
        return self._transition(card_id, RequestValuation())

    def delete(self, card_id: str) -> None:
        """Remove a card in any status. A running stage's result is discarded."""
        if card_id not in self.state.collection:
            raise CardNotFoundError(card_id)
        self.state.apply(lambda collection: collection.without(card_id))
        logger.info("CARD_DELETED", extra={"card_id": card_id})

    def _transition(self, card_id: str, event: UserEvent) -> Card:
        updated: list[Card] = []

        def mutate(collection: CardCollection) -> CardCollection:
            card = collection.get(card_id)
            if card is None:
                raise CardNotFoundError(card_id)
            result = apply_event(card, event)
            updated.append(result)
            return collection.with_card(result)

        self.state.apply(mutate)
        card = updated[0]
        logger.info(
            "CARD_TRANSITION",
            extra={
                "card_id": card_id,
                "event": type(event).__name__,
                "status": card.status.value,
            },
        )
        return card

    # -------------------------------------------------------------------------
    # Other sources
    # -------------------------------------------------------------------------

    async def refresh_from_remote(self) -> SyncResult:
        """Pull the remote collection and merge it in (matched by id or photo)."""
        if self._remote is None:
            raise SourceNotConfiguredError(REMOTE_SOURCE)

        handle, cards = await self._remote.load()
        if handle is not None:
            self.persistence.remote_handle = handle

        incoming = recover_interrupted(CardCollection(cards))
        self.persistence.mark_remote_current(CardCollection(cards))
        total = self._merge(incoming.collection.cards(), image_identity_key)
        return SyncResult(
            source=REMOTE_SOURCE,
            fetched=len(cards),
            total=total,
            recovered_ids=incoming.recovered_ids,
        )

    async def import_from_sheet(self) -> SyncResult:
        """Pull spreadsheet rows and merge them in (matched by id or catalog key)."""
        if self._sheet is None:
            raise SourceNotConfiguredError(SHEET_SOURCE)

        cards = await self._sheet.fetch_rows()
        total = self._merge(cards, catalog_identity_key)
        return SyncResult(source=SHEET_SOURCE, fetched=len(cards), total=total)

    async def export_to_sheet(self) -> SyncResult:
        """Append reviewed cards not yet in the spreadsheet, then mark them synced."""
        if self._sheet is None:
            raise SourceNotConfiguredError(SHEET_SOURCE)

        pending = [
            card
            for card in self.state.collection.cards()
            if card.status is CardStatus.REVIEWED and not card.sheet_synced
        ]
        written = await self._sheet.append_rows(pending)
        if written:
            exported = {card.id for card in pending}

            def mark_synced(collection: CardCollection) -> CardCollection:
                return collection.replace_many(
                    card.with_updates(sheet_synced=True, is_dirty=True)
                    for card in collection.cards()
                    if card.id in exported
                )

            self.state.apply(mark_synced)
        logger.info("SHEET_EXPORTED", extra={"count": written})
        return SyncResult(source=SHEET_SOURCE, written=written, total=len(self.state.collection))

    async def flush(self) -> bool:
        """Save to the remote store now."""
        if not self.persistence.has_remote:
            raise SourceNotConfiguredError(REMOTE_SOURCE)
        return await self.persistence.flush()

    def _merge(self, cards: list[Card], identity_key: IdentityKey) -> int:
        merged = self.state.apply(
            lambda current: merge_collections(current, cards, identity_key=identity_key)
        )
        return len(merged)

    # -------------------------------------------------------------------------
    # Credentials
    # -------------------------------------------------------------------------

    def update_credentials(
        self,
        api_key: str | None = None,
        google_access_token: str | None = None,
        sheet_url: str | None = None,
    ) -> PipelineStatus:
        """
        Apply new credentials and resume a paused scheduler.

        A Google token also enables the default remote store when none was
        configured; a sheet URL replaces the spreadsheet source.
        """
        if api_key:
            set_api_key = getattr(self.service, "set_api_key", None)
            if set_api_key is None:
                raise KnownError(
                    kind=FailureKind.INVALID_INPUT,
                    message="This analysis service does not accept API keys.",
                )
            set_api_key(api_key)

        if google_access_token:
            self._token_holder.token = google_access_token
            if self._remote is None:
                self._remote = DriveCollectionStore(self._token_holder)
                self.persistence.set_remote(self._remote)

        if sheet_url:
            self._sheet = SheetsTabularSource(self._token_holder, sheet_url)

        logger.info(
            "CREDENTIALS_UPDATED",
            extra={
                "api_key": bool(api_key),
                "google_token": bool(google_access_token),
                "sheet_url": bool(sheet_url),
            },
        )
        self.scheduler.resume()
        return self.status()


def build_orchestrator() -> CardOrchestrator:
    """Assemble the production orchestrator from settings."""
    init_db()
    token_holder = TokenHolder(settings.google_access_token)

    remote: RemoteCollectionStore | None = None
    sheet: TabularSource | None = None
    if settings.google_access_token:
        remote = DriveCollectionStore(token_holder)
        if settings.sheet_url:
            sheet = SheetsTabularSource(token_holder, settings.sheet_url)

    return CardOrchestrator(
        service=ClaudeAnalysisService(),
        local=LocalSnapshot(session_factory),
        remote=remote,
        sheet=sheet,
        token_holder=token_holder,
    )
