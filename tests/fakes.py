# tests/fakes.py
"""Test doubles shared by the pipeline tests."""
import asyncio
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from interview_voice.core.exceptions import RoomDisconnected
from interview_voice.core.interfaces import Provider, Room, RoomEvent, RoomEventKind
from interview_voice.gateways.synthesis import SynthesizedAudio
from interview_voice.gateways.transcription import Transcript

FRAME_SIZE = 512
SAMPLE_RATE = 16000


def speech(frames: int = 1) -> np.ndarray:
    """A 440 Hz tone at half scale, loud enough for the energy detector."""
    t = np.arange(frames * FRAME_SIZE) / SAMPLE_RATE
    return (0.5 * np.sin(2 * np.pi * 440.0 * t)).astype(np.float32)


def silence(frames: int = 1) -> np.ndarray:
    return np.zeros(frames * FRAME_SIZE, dtype=np.float32)


class FakeProvider(Provider):
    """
    Scripted provider. ``errors`` are raised one per call (``None`` means
    succeed); once they run out every call returns ``result(payload)``.
    """

    def __init__(self, name: str, result: Callable[[Any], Any],
                 errors: Optional[List[Optional[Exception]]] = None,
                 gate: Optional[asyncio.Event] = None,
                 delay: float = 0.0):
        self.name = name
        self.result = result
        self.errors = list(errors or [])
        self.gate = gate
        self.delay = delay
        self.calls: List[Any] = []
        self.closed = False

    async def __call__(self, payload):
        self.calls.append(payload)
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error
        return self.result(payload)

    async def aclose(self) -> None:
        self.closed = True


class FakeRoom(Room):
    sample_rate = SAMPLE_RATE

    def __init__(self):
        self.handler = None
        self.audio: List[np.ndarray] = []
        self.data: List[Dict[str, Any]] = []
        self.disconnected = False
        # When set, publish_audio() "plays" until the event fires
        self.playback: Optional[asyncio.Event] = None

    def subscribe(self, handler):
        self.handler = handler

        def unsubscribe():
            self.handler = None

        return unsubscribe

    def emit(self, kind: RoomEventKind, **kwargs) -> None:
        if self.handler is not None:
            self.handler(RoomEvent(kind=kind, participant="candidate", **kwargs))

    def send_audio(self, samples: np.ndarray) -> None:
        self.emit(RoomEventKind.AUDIO_FRAME, samples=samples)

    def say(self, speech_frames: int = 10, silence_frames: int = 30) -> None:
        """One utterance followed by enough silence to end it."""
        self.send_audio(speech(speech_frames))
        self.send_audio(silence(silence_frames))

    async def publish_audio(self, samples, sample_rate):
        if self.disconnected:
            raise RoomDisconnected("fake room closed")
        self.audio.append(samples)
        if self.playback is not None:
            await self.playback.wait()

    async def publish_data(self, payload):
        if self.disconnected:
            raise RoomDisconnected("fake room closed")
        self.data.append(payload)

    def messages(self, role: Optional[str] = None) -> List[Dict[str, Any]]:
        return [d for d in self.data if d.get("type") == "message" and (role is None or d["role"] == role)]


class SleepRecorder:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def transcript_of(*answers: str) -> Callable[[Any], Transcript]:
    """Result factory returning the given answers in order, repeating the last one."""
    remaining = list(answers)

    def result(_payload):
        text = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        return Transcript(text=text, confidence=0.9)

    return result


def tone(_payload) -> SynthesizedAudio:
    return SynthesizedAudio(samples=np.zeros(1600, dtype=np.float32), sample_rate=SAMPLE_RATE)


class FakeWebSocket:
    """Just enough of a Starlette WebSocket for WebSocketRoom."""

    def __init__(self, incoming: Optional[List[Dict[str, Any]]] = None):
        self.incoming: List[Dict[str, Any]] = list(incoming or [])
        self.sent_bytes: List[bytes] = []
        self.sent_json: List[Dict[str, Any]] = []

    async def send_bytes(self, data: bytes) -> None:
        self.sent_bytes.append(data)

    async def send_json(self, payload: Dict[str, Any]) -> None:
        self.sent_json.append(payload)

    async def receive(self) -> Dict[str, Any]:
        if not self.incoming:
            return {"type": "websocket.disconnect", "code": 1000}
        return self.incoming.pop(0)


async def eventually(predicate: Callable[[], Any], attempts: int = 200) -> None:
    """Yield to the event loop until ``predicate`` holds."""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")
