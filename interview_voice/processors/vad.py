from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

import numpy as np
import structlog
import torch

from ..core.config import Settings
from ..core.interfaces import SpeechModel
from .audio import rms, to_float32

logger = structlog.get_logger(__name__)


class VadEvent(str, Enum):
    SPEECH_START = "speech_start"
    SPEECH_END = "speech_end"


@dataclass(frozen=True)
class VadResult:
    speaking: bool
    probability: float
    event: Optional[VadEvent] = None


class SileroSpeechModel(SpeechModel):
    """
    Silero VAD exported as TorchScript.

    The model expects 512-sample frames at 16 kHz (256 at 8 kHz) and keeps
    its own recurrent state, which is cleared by reset().
    """

    def __init__(self, model_path: Path, sample_rate: int = 16000):
        self.sample_rate = sample_rate
        self.model = torch.jit.load(str(model_path), map_location="cpu")
        self.model.eval()
        logger.info("silero_vad_loaded", path=str(model_path))

    def speech_probability(self, frame: np.ndarray) -> float:
        with torch.no_grad():
            tensor = torch.from_numpy(np.ascontiguousarray(frame, dtype=np.float32))
            return float(self.model(tensor, self.sample_rate).item())

    def reset(self) -> None:
        if hasattr(self.model, "reset_states"):
            self.model.reset_states()


def load_speech_model(settings: Settings) -> Optional[SpeechModel]:
    """Load the configured speech model, or None so the detector uses energy."""
    if settings.VAD_MODEL_PATH is None:
        return None
    try:
        return SileroSpeechModel(settings.VAD_MODEL_PATH, settings.AUDIO_SAMPLE_RATE)
    except Exception as e:
        logger.warning("speech_model_unavailable", path=str(settings.VAD_MODEL_PATH), error=str(e))
        return None


class VoiceActivityDetector:
    """
    Frame-level speech/silence classifier with hysteresis.

    A frame is raw "speech" when its probability exceeds ``threshold``.
    Idle -> Speaking needs ``min_speech_frames`` consecutive speech frames;
    Speaking -> Idle needs ``min_silence_frames`` consecutive silent ones.
    """

    def __init__(self,
                 threshold: float = 0.5,
                 min_speech_frames: int = 3,
                 min_silence_frames: int = 25,
                 model: Optional[SpeechModel] = None):
        if min_speech_frames < 1 or min_silence_frames < 1:
            raise ValueError("hysteresis frame counts must be at least 1")
        self.threshold = threshold
        self.min_speech_frames = min_speech_frames
        self.min_silence_frames = min_silence_frames
        self.model = model
        self.speaking = False
        self.speech_frames = 0
        self.silence_frames = 0

    @classmethod
    def from_settings(cls, settings: Settings, model: Optional[SpeechModel] = None) -> "VoiceActivityDetector":
        return cls(
            threshold=settings.VAD_THRESHOLD,
            min_speech_frames=settings.VAD_MIN_SPEECH_FRAMES,
            min_silence_frames=settings.VAD_MIN_SILENCE_FRAMES,
            model=model,
        )

    @property
    def using_model(self) -> bool:
        return self.model is not None

    def speech_probability(self, frame: np.ndarray) -> float:
        if self.model is not None:
            try:
                return self.model.speech_probability(frame)
            except Exception as e:
                # Stay on the energy heuristic for the rest of the session.
                logger.warning("speech_model_failed_using_energy", error=str(e))
                self.model = None
        return self.energy_probability(frame)

    @staticmethod
    def energy_probability(frame: np.ndarray) -> float:
        return min(1.0, rms(frame) * 10.0)

    def process_frame(self, frame) -> VadResult:
        samples = to_float32(frame)
        probability = self.speech_probability(samples)

        if probability > self.threshold:
            self.speech_frames += 1
            self.silence_frames = 0
        else:
            self.silence_frames += 1
            self.speech_frames = 0

        event = None
        if not self.speaking and self.speech_frames >= self.min_speech_frames:
            self.speaking = True
            event = VadEvent.SPEECH_START
        elif self.speaking and self.silence_frames >= self.min_silence_frames:
            self.speaking = False
            event = VadEvent.SPEECH_END

        if event is not None:
            logger.debug("vad_transition", vad_event=event.value, probability=round(probability, 3))
        return VadResult(speaking=self.speaking, probability=probability, event=event)

    def reset(self) -> None:
        self.speaking = False
        self.speech_frames = 0
        self.silence_frames = 0
        reset_model = getattr(self.model, "reset", None)
        if callable(reset_model):
            reset_model()
