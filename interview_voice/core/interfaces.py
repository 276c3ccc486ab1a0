from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Generic, Optional, TypeVar
import numpy as np

P = TypeVar("P")
R = TypeVar("R")


class SpeechModel(ABC):
    @abstractmethod
    def speech_probability(self, frame: np.ndarray) -> float:
        """Return the probability (0..1) that a float32 frame contains speech."""
        pass


class Provider(ABC, Generic[P, R]):
    """One external service behind a gateway (a transcriber or a synthesizer)."""

    name: str = "provider"

    @abstractmethod
    async def __call__(self, payload: P) -> R:
        """Run the operation once; raise ProviderError on failure."""
        pass

    async def aclose(self) -> None:
        """Release network clients or models held by the provider."""
        pass


class RoomEventKind(str, Enum):
    AUDIO_FRAME = "audio_frame"
    PARTICIPANT_JOINED = "participant_joined"
    PARTICIPANT_LEFT = "participant_left"
    DATA = "data"
    DISCONNECTED = "disconnected"


@dataclass
class RoomEvent:
    kind: RoomEventKind
    participant: Optional[str] = None
    samples: Optional[np.ndarray] = None
    data: Dict[str, Any] = field(default_factory=dict)


RoomEventHandler = Callable[[RoomEvent], None]


class Room(ABC):
    """The real-time audio room shared with the candidate's client."""

    sample_rate: int = 16000

    @abstractmethod
    def subscribe(self, handler: RoomEventHandler) -> Callable[[], None]:
        """Register the single event handler; returns an unsubscribe callable."""
        pass

    @abstractmethod
    async def publish_audio(self, samples: np.ndarray, sample_rate: int) -> None:
        """
        Play a float32 mono buffer into the room and return once playback has
        finished. Raises RoomDisconnected.
        """
        pass

    @abstractmethod
    async def publish_data(self, payload: Dict[str, Any]) -> None:
        """Send a JSON-serialisable data message to the room."""
        pass
