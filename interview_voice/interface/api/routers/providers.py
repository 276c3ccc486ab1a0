from fastapi import APIRouter, Depends

from ....application.sessions import SessionManager
from ..dependencies import get_session_manager
from ..schemas import ProvidersResponse

router = APIRouter(tags=["providers"])

@router.get("/providers", response_model=ProvidersResponse)
async def provider_status(manager: SessionManager = Depends(get_session_manager)):
    """Rate-limit window of every configured provider, per gateway."""
    return manager.provider_status()
