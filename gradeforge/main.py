import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from importlib.metadata import version as pkg_version

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from gradeforge.api import (
    cards_router,
    health_router,
    pipeline_router,
    sync_router,
)
from gradeforge.config import settings
from gradeforge.models.failure import KnownError, create_known_failure, create_unknown_failure
from gradeforge.services.orchestrator import build_orchestrator

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    orchestrator = build_orchestrator()
    await orchestrator.start(sync_remote=True)
    app.state.orchestrator = orchestrator
    yield
    await orchestrator.stop()


app = FastAPI(
    title=settings.app_name,
    version=pkg_version("gradeforge"),
    lifespan=lifespan,
)


@app.exception_handler(KnownError)
async def known_error_handler(_request: Request, exc: KnownError) -> JSONResponse:
    """Render KnownError through the failure envelope."""
    logger.info("KNOWN_FAILURE", extra={"kind": exc.kind.value, "status": exc.status_code})
    return JSONResponse(
        status_code=exc.status_code,
        content=create_known_failure(exc).model_dump(mode="json"),
    )


@app.exception_handler(Exception)
async def unknown_error_handler(_request: Request, exc: Exception) -> JSONResponse:
    """Anything unclassified gets the fixed unknown-failure envelope."""
    logger.error("UNKNOWN_FAILURE", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content=create_unknown_failure(exc).model_dump(mode="json"),
    )


app.include_router(cards_router)
app.include_router(health_router)
app.include_router(pipeline_router)
app.include_router(sync_router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Tighten in production
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)
