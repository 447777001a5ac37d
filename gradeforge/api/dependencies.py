"""Shared FastAPI dependencies."""

from fastapi import Request

from gradeforge.services.orchestrator import CardOrchestrator


def get_orchestrator(request: Request) -> CardOrchestrator:
    """
    The orchestrator created by the application lifespan.

    Tests override this dependency with their own instance.
    """
    orchestrator: CardOrchestrator = request.app.state.orchestrator
    return orchestrator
