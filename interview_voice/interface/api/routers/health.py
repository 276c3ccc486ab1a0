from fastapi import APIRouter, Depends

from ....application.sessions import SessionManager
from ....core.config import Settings, get_settings
from ..dependencies import get_session_manager

router = APIRouter(tags=["health"])

@router.get("/health")
async def health_check(settings: Settings = Depends(get_settings),
                       manager: SessionManager = Depends(get_session_manager)):
    """Health check endpoint."""
    return {
        "status": "ok",
        "environment": settings.ENVIRONMENT,
        "app_name": settings.APP_NAME,
        "active_sessions": manager.active_count,
    }
