"""
Job to reconcile the local snapshot with the remote collection.

Loads the local snapshot, recovers interrupted cards, merges the remote
collection (and optionally the spreadsheet) into it, then writes the result
back to both the local database and the remote store. No grading is done.
Can be run as a standalone script or called from a scheduler.
"""

import argparse
import asyncio
import logging

from gradeforge.config import settings
from gradeforge.db.database import init_db, session_factory
from gradeforge.db.operations import load_cards, replace_all_cards
from gradeforge.models.collection import CardCollection
from gradeforge.models.failure import KnownError
from gradeforge.pipeline.recovery import recover_interrupted
from gradeforge.services.merger import (
    catalog_identity_key,
    image_identity_key,
    merge_collections,
)
from gradeforge.stores.base import TokenHolder
from gradeforge.stores.drive import DriveCollectionStore
from gradeforge.stores.sheets import SheetsTabularSource

logger = logging.getLogger(__name__)


async def run_sync(import_sheet: bool = False, push_remote: bool = True) -> dict[str, int]:
    """
    Reconcile the local snapshot with the remote collection.

    Args:
        import_sheet: Also merge rows from the configured spreadsheet
        push_remote: Save the merged collection back to the remote store

    Returns:
        Counts of what was read and written
    """
    init_db()
    with session_factory() as session:
        local_cards = load_cards(session)
    logger.info("Loaded %d cards from the local snapshot", len(local_cards))

    recovery = recover_interrupted(CardCollection(local_cards))
    collection = recovery.collection
    results = {
        "local": len(local_cards),
        "recovered": len(recovery.recovered_ids),
        "remote": 0,
        "sheet": 0,
    }

    token_holder = TokenHolder(settings.google_access_token)
    remote = DriveCollectionStore(token_holder) if settings.google_access_token else None
    handle: str | None = None

    if remote is not None:
        try:
            handle, remote_cards = await remote.load()
            incoming = recover_interrupted(CardCollection(remote_cards)).collection
            collection = merge_collections(
                collection, incoming.cards(), identity_key=image_identity_key
            )
            results["remote"] = len(remote_cards)
            logger.info("Merged %d cards from the remote store", len(remote_cards))
        except KnownError as e:
            logger.error("Remote load failed: %s", e.message)
            push_remote = False
    else:
        logger.warning("No Google access token configured; skipping the remote store")

    if import_sheet:
        if settings.google_access_token and settings.sheet_url:
            sheet = SheetsTabularSource(token_holder, settings.sheet_url)
            try:
                rows = await sheet.fetch_rows()
                collection = merge_collections(
                    collection, rows, identity_key=catalog_identity_key
                )
                results["sheet"] = len(rows)
                logger.info("Merged %d rows from the spreadsheet", len(rows))
            except KnownError as e:
                logger.error("Spreadsheet import failed: %s", e.message)
        else:
            logger.warning("Spreadsheet not configured; skipping import")

    cards = collection.cards()
    with session_factory() as session:
        written = replace_all_cards(session, cards)
        session.commit()
    results["written"] = written
    logger.info("Wrote %d cards to the local snapshot", written)

    if remote is not None and push_remote:
        try:
            await remote.save(handle, cards)
            logger.info("Saved %d cards to the remote store", len(cards))
        except KnownError as e:
            logger.error("Remote save failed: %s", e.message)

    return results


def main() -> None:
    """CLI entry point for a collection sync."""
    parser = argparse.ArgumentParser(description="Reconcile the local and remote collections")
    parser.add_argument(
        "--import-sheet",
        action="store_true",
        help="also merge rows from the configured spreadsheet",
    )
    parser.add_argument(
        "--no-push",
        action="store_true",
        help="do not write the merged collection back to the remote store",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    asyncio.run(run_sync(import_sheet=args.import_sheet, push_remote=not args.no_push))


if __name__ == "__main__":
    main()
