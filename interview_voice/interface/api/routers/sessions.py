from fastapi import APIRouter, Depends, HTTPException, status

from ....application.sessions import SessionManager
from ..dependencies import get_session_manager
from ..schemas import SessionsResponse, StopResponse

router = APIRouter(prefix="/sessions", tags=["sessions"])

@router.get("", response_model=SessionsResponse)
async def list_sessions(manager: SessionManager = Depends(get_session_manager)):
    sessions = manager.list_sessions()
    return {"active": len(sessions), "sessions": sessions}

@router.delete("/{session_id}", response_model=StopResponse)
async def stop_session(session_id: str, manager: SessionManager = Depends(get_session_manager)):
    """End a live session, e.g. when the candidate closes the page."""
    stopped = await manager.stop_session(session_id, reason="stopped_by_api")
    if not stopped:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Session {session_id} not found")
    return {"session_id": session_id, "stopped": True}
