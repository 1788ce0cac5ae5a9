"""FastAPI API endpoints under /api.

Endpoint groups: health and connection check (settings), memory previews.
The orchestration core itself has no HTTP dependency; these routes only
expose it for tooling.
"""

from fastapi import APIRouter

from .memory import router as memory_router
from .settings import router as settings_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(memory_router)
