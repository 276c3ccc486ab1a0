import asyncio

import structlog
from fastapi import WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError

from ....application.sessions import SessionManager
from ....core.config import Settings
from ....core.exceptions import RoomDisconnected
from ..room import WebSocketRoom
from ..schemas import JoinRequest

logger = structlog.get_logger(__name__)


async def interview_socket(websocket: WebSocket):
    """
    One interview per connection.

    The client sends a JSON ``join`` message, then streams PCM16 audio as
    binary messages. Interviewer audio comes back as binary messages and
    transcript/progress updates as JSON.
    """
    await websocket.accept()
    manager: SessionManager = websocket.app.state.session_manager
    settings: Settings = websocket.app.state.settings
    await websocket.send_json({"type": "connection_established"})

    try:
        join = JoinRequest.model_validate(await websocket.receive_json())
    except WebSocketDisconnect:
        return
    # KeyError: the first message was binary, not text
    except (ValidationError, ValueError, KeyError) as e:
        logger.warning("invalid_join", error=str(e))
        await websocket.send_json({"type": "error", "code": "invalid_join", "message": str(e)})
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    room = WebSocketRoom(websocket, sample_rate=join.sample_rate, participant=join.candidate_id,
                         playback_tail=settings.PLAYBACK_TAIL_SECONDS)
    orchestrator = manager.create_session(
        room,
        candidate_id=join.candidate_id,
        script=join.script,
        mode=join.mode,
        candidate_name=join.candidate_name,
    )
    reader = None
    closed = None
    reason = "socket_closed"
    try:
        await room.publish_data({
            "type": "session_started",
            "session_id": orchestrator.id,
            "progress": orchestrator.engine.progress(),
        })
        reader = asyncio.create_task(room.pump())
        await orchestrator.start()
        closed = asyncio.create_task(orchestrator.wait_closed())
        done, _ = await asyncio.wait({reader, closed}, return_when=asyncio.FIRST_COMPLETED)
        if reader in done:
            error = None if reader.cancelled() else reader.exception()
            if error is not None:
                logger.error("socket_reader_failed", session_id=orchestrator.id, error=repr(error))
                reason = "room_error"
            else:
                # The room already told the session why it closed
                await asyncio.wait({closed}, timeout=1.0)
    except RoomDisconnected:
        logger.info("socket_closed_before_start", session_id=orchestrator.id)
    finally:
        await orchestrator.stop(reason)
        for task in (reader, closed):
            if task is not None:
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        if room.connected:
            room.connected = False
            try:
                await websocket.close()
            except RuntimeError:
                # Already closed by the client
                pass
