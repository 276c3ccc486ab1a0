import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, Optional

import numpy as np
import structlog
from fastapi import WebSocket, WebSocketDisconnect

from ...core.exceptions import RoomDisconnected
from ...core.interfaces import Room, RoomEvent, RoomEventHandler, RoomEventKind
from ...processors.audio import resample, to_float32, to_pcm16

logger = structlog.get_logger(__name__)


class WebSocketRoom(Room):
    """
    A one-participant room over a browser WebSocket.

    Binary messages carry mono PCM16 audio at ``sample_rate`` in both
    directions; text messages carry JSON data messages. The client plays
    audio as it arrives, so publish_audio() waits out the clip (plus
    ``playback_tail``) before returning.
    """

    # Close codes of a client that hung up on purpose
    CLEAN_CLOSE_CODES = (1000, 1001)

    def __init__(self, websocket: WebSocket, sample_rate: int = 16000, participant: str = "candidate",
                 playback_tail: float = 0.0,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.websocket = websocket
        self.sample_rate = sample_rate
        self.participant = participant
        self.playback_tail = playback_tail
        self._sleep = sleep
        self.connected = True
        self._handler: Optional[RoomEventHandler] = None

    def subscribe(self, handler: RoomEventHandler) -> Callable[[], None]:
        self._handler = handler

        def unsubscribe() -> None:
            if self._handler is handler:
                self._handler = None

        return unsubscribe

    def dispatch(self, kind: RoomEventKind, samples: Optional[np.ndarray] = None,
                 data: Optional[Dict[str, Any]] = None) -> None:
        if self._handler is None:
            return
        self._handler(RoomEvent(kind=kind, participant=self.participant, samples=samples, data=data or {}))

    async def publish_audio(self, samples: np.ndarray, sample_rate: int) -> None:
        if not self.connected:
            raise RoomDisconnected("websocket closed")
        pcm = to_pcm16(resample(samples, sample_rate, self.sample_rate))
        try:
            await self.websocket.send_bytes(pcm)
        except (WebSocketDisconnect, RuntimeError) as e:
            self.connected = False
            raise RoomDisconnected(f"websocket closed while sending audio: {e}") from e
        await self._sleep(len(pcm) / 2 / self.sample_rate + self.playback_tail)

    async def publish_data(self, payload: Dict[str, Any]) -> None:
        if not self.connected:
            raise RoomDisconnected("websocket closed")
        try:
            await self.websocket.send_json(payload)
        except (WebSocketDisconnect, RuntimeError) as e:
            self.connected = False
            raise RoomDisconnected(f"websocket closed while sending data: {e}") from e

    async def pump(self) -> None:
        """Read client messages and turn them into room events until disconnect."""
        self.dispatch(RoomEventKind.PARTICIPANT_JOINED)
        while True:
            message = await self.websocket.receive()
            if message["type"] == "websocket.disconnect":
                self.connected = False
                code = message.get("code", 1000)
                logger.info("websocket_disconnected", code=code)
                if code in self.CLEAN_CLOSE_CODES:
                    self.dispatch(RoomEventKind.PARTICIPANT_LEFT)
                else:
                    self.dispatch(RoomEventKind.DISCONNECTED)
                return

            payload = message.get("bytes")
            if payload is not None:
                # An odd trailing byte cannot be a PCM16 sample
                usable = len(payload) - (len(payload) % 2)
                if usable:
                    self.dispatch(RoomEventKind.AUDIO_FRAME, samples=to_float32(payload[:usable]))
                continue

            text = message.get("text")
            if not text:
                continue
            try:
                data = json.loads(text)
            except ValueError:
                logger.warning("websocket_bad_json", size=len(text))
                continue
            if isinstance(data, dict):
                self.dispatch(RoomEventKind.DATA, data=data)
