from fastapi import APIRouter

from app.api.activity import router as activity_router
from app.api.config import router as config_router
from app.api.connections import router as connections_router
from app.api.conversations import router as conversations_router
from app.api.matches import router as matches_router
from app.api.notifications import router as notifications_router
from app.api.queue import router as queue_router
from app.api.reports import router as reports_router
from app.api.sessions import router as sessions_router

router = APIRouter()

router.include_router(config_router)
router.include_router(queue_router)
router.include_router(matches_router)
router.include_router(sessions_router)
router.include_router(conversations_router)
router.include_router(notifications_router)
router.include_router(reports_router)
router.include_router(connections_router)
router.include_router(activity_router)


@router.get("/", tags=["root"])
def read_root() -> dict[str, str]:
    return {"message": "Welcome to the Bella matchmaking API"}
