"""
Pipeline API endpoints.

Scheduler status, retry progress, and credential updates.
"""

from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from gradeforge.api.dependencies import get_orchestrator
from gradeforge.services.orchestrator import CardOrchestrator, PipelineStatus

router = APIRouter(prefix="/pipeline", tags=["pipeline"])

Orchestrator = Annotated[CardOrchestrator, Depends(get_orchestrator)]


class PipelineStatusResponse(BaseModel):
    """Response model for scheduler state."""

    paused: bool
    pause_reason: str | None = None
    credentials_required: bool = False
    in_flight: list[str] = Field(default_factory=list)
    concurrency_limit: int
    progress: dict[str, str] = Field(
        default_factory=dict,
        description="Latest retry notice per card id, for cards waiting on the service",
    )
    remote_configured: bool = False
    sheet_configured: bool = False
    remote_save_pending: bool = False

    @classmethod
    def from_status(cls, pipeline: PipelineStatus) -> "PipelineStatusResponse":
        return cls(
            paused=pipeline.paused,
            pause_reason=pipeline.pause_reason,
            credentials_required=pipeline.credentials_required,
            in_flight=list(pipeline.in_flight),
            concurrency_limit=pipeline.concurrency_limit,
            progress=pipeline.progress,
            remote_configured=pipeline.remote_configured,
            sheet_configured=pipeline.sheet_configured,
            remote_save_pending=pipeline.remote_save_pending,
        )


class CredentialsRequest(BaseModel):
    """Request model for supplying credentials at runtime."""

    api_key: str | None = Field(default=None, description="Analysis service API key")
    google_access_token: str | None = Field(
        default=None,
        description="OAuth access token for the remote store and spreadsheet",
    )
    sheet_url: str | None = Field(default=None, description="URL of the spreadsheet to sync")


@router.get("/status", response_model=PipelineStatusResponse)
async def pipeline_status(orchestrator: Orchestrator) -> PipelineStatusResponse:
    return PipelineStatusResponse.from_status(orchestrator.status())


@router.post("/credentials", response_model=PipelineStatusResponse)
async def update_credentials(
    request: CredentialsRequest, orchestrator: Orchestrator
) -> PipelineStatusResponse:
    """
    Supply credentials.

    Resumes the scheduler if it was paused waiting for an API key.
    """
    pipeline = orchestrator.update_credentials(
        api_key=request.api_key,
        google_access_token=request.google_access_token,
        sheet_url=request.sheet_url,
    )
    return PipelineStatusResponse.from_status(pipeline)
