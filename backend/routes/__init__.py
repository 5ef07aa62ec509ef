"""FastAPI API endpoints under /api.

Endpoint groups: settings (health, connection check), chat (the stateless
director turn) and rooms (roster, message log, and sending a turn through
a stored room).
"""

from fastapi import APIRouter

from .chat import router as chat_router
from .rooms import router as rooms_router
from .settings import router as settings_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(chat_router)
router.include_router(rooms_router)
