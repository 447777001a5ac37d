"""
Sync API endpoints.

Pull the remote collection or spreadsheet into the local collection, push
reviewed cards to the spreadsheet, and force a remote save.
"""

from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from gradeforge.api.dependencies import get_orchestrator
from gradeforge.services.orchestrator import CardOrchestrator, SyncResult

router = APIRouter(prefix="/sync", tags=["sync"])

Orchestrator = Annotated[CardOrchestrator, Depends(get_orchestrator)]


class SyncResponse(BaseModel):
    """Response model for sync operations."""

    source: str
    fetched: int = 0
    written: int = 0
    total: int = 0
    recovered: list[str] = []

    @classmethod
    def from_result(cls, result: SyncResult) -> "SyncResponse":
        return cls(
            source=result.source,
            fetched=result.fetched,
            written=result.written,
            total=result.total,
            recovered=list(result.recovered_ids),
        )


class FlushResponse(BaseModel):
    """Response model for a forced remote save."""

    saved: bool
    message: str = ""


@router.post("/refresh", response_model=SyncResponse)
async def refresh_from_remote(orchestrator: Orchestrator) -> SyncResponse:
    """Merge the remote collection into the local one."""
    return SyncResponse.from_result(await orchestrator.refresh_from_remote())


@router.post("/import-sheet", response_model=SyncResponse)
async def import_sheet(orchestrator: Orchestrator) -> SyncResponse:
    """Merge spreadsheet rows into the collection."""
    return SyncResponse.from_result(await orchestrator.import_from_sheet())


@router.post("/export-sheet", response_model=SyncResponse)
async def export_sheet(orchestrator: Orchestrator) -> SyncResponse:
    """Append reviewed cards that are not in the spreadsheet yet."""
    return SyncResponse.from_result(await orchestrator.export_to_sheet())


@router.post("/flush", response_model=FlushResponse)
async def flush(orchestrator: Orchestrator) -> FlushResponse:
    """
    Save to the remote store now.

    Nothing is written while cards are still being processed or when the
    remote copy is already current.
    """
    saved = await orchestrator.flush()
    message = "Collection saved." if saved else "Nothing to save right now."
    return FlushResponse(saved=saved, message=message)
