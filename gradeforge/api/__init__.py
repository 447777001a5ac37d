from gradeforge.api.cards import router as cards_router
from gradeforge.api.health import router as health_router
from gradeforge.api.pipeline import router as pipeline_router
from gradeforge.api.sync import router as sync_router

__all__ = [
    "cards_router",
    "health_router",
    "pipeline_router",
    "sync_router",
]
