import io
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Optional

import numpy as np
import librosa
import soundfile as sf
import structlog

logger = structlog.get_logger(__name__)


def to_float32(samples) -> np.ndarray:
    """
    Normalise an incoming block of samples to mono float32 in [-1, 1].
    Accepts int16 PCM (array or raw bytes) and float arrays.
    """
    if isinstance(samples, (bytes, bytearray, memoryview)):
        samples = np.frombuffer(samples, dtype=np.int16)
    array = np.asarray(samples)
    if array.ndim > 1:
        array = array.mean(axis=-1)
    if array.dtype == np.int16:
        return array.astype(np.float32) / 32768.0
    return array.astype(np.float32, copy=False)


def to_pcm16(samples: np.ndarray) -> bytes:
    clipped = np.clip(samples, -1.0, 1.0)
    return (clipped * 32767.0).astype(np.int16).tobytes()


def rms(frame: np.ndarray) -> float:
    if frame.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(frame, dtype=np.float64))))


def resample(samples: np.ndarray, orig_sr: int, target_sr: int) -> np.ndarray:
    if orig_sr == target_sr or samples.size == 0:
        return samples.astype(np.float32, copy=False)
    return librosa.resample(samples.astype(np.float32), orig_sr=orig_sr, target_sr=target_sr)


class FrameBuffer:
    """Re-chunks arbitrarily sized sample blocks into fixed-size frames."""

    def __init__(self, frame_size: int):
        self.frame_size = frame_size
        self._pending = np.zeros(0, dtype=np.float32)

    def push(self, samples) -> List[np.ndarray]:
        data = to_float32(samples)
        if self._pending.size:
            data = np.concatenate([self._pending, data])
        count = data.size // self.frame_size
        frames = [
            data[i * self.frame_size:(i + 1) * self.frame_size]
            for i in range(count)
        ]
        self._pending = data[count * self.frame_size:].copy()
        return frames

    def reset(self) -> None:
        self._pending = np.zeros(0, dtype=np.float32)


@dataclass
class AudioSegment:
    """One utterance: the frames between a speech start and a speech end."""
    frames: List[np.ndarray]
    sample_rate: int
    started_at: float = field(default_factory=time.monotonic)
    ended_at: Optional[float] = None

    @property
    def samples(self) -> np.ndarray:
        if not self.frames:
            return np.zeros(0, dtype=np.float32)
        return np.concatenate(self.frames)

    @property
    def duration(self) -> float:
        return sum(f.size for f in self.frames) / float(self.sample_rate)

    def to_wav_bytes(self) -> bytes:
        """Encode the segment as a 16-bit mono WAV file for upload."""
        buffer = io.BytesIO()
        sf.write(buffer, self.samples, self.sample_rate, format="WAV", subtype="PCM_16")
        return buffer.getvalue()


class UtteranceBuffer:
    """
    Accumulates frames for the active utterance.

    While idle it keeps a short pre-roll so the frames that triggered the
    speech-start debounce are not lost from the segment.
    """

    def __init__(self, sample_rate: int, pre_speech_frames: int, max_seconds: float):
        self.sample_rate = sample_rate
        self.max_seconds = max_seconds
        self._pre_roll: Deque[np.ndarray] = deque(maxlen=max(pre_speech_frames, 1))
        self._use_pre_roll = pre_speech_frames > 0
        self._frames: List[np.ndarray] = []
        self._samples = 0
        self._active = False
        self._started_at = 0.0

    @property
    def active(self) -> bool:
        return self._active

    @property
    def duration(self) -> float:
        return self._samples / float(self.sample_rate)

    def idle(self, frame: np.ndarray) -> None:
        if self._use_pre_roll:
            self._pre_roll.append(frame)

    def begin(self) -> None:
        self._frames = list(self._pre_roll)
        self._samples = sum(f.size for f in self._frames)
        self._pre_roll.clear()
        self._active = True
        self._started_at = time.monotonic()

    def append(self, frame: np.ndarray) -> None:
        self._frames.append(frame)
        self._samples += frame.size

    def over_limit(self) -> bool:
        return self._active and self.duration >= self.max_seconds

    def finish(self) -> AudioSegment:
        segment = AudioSegment(
            frames=self._frames,
            sample_rate=self.sample_rate,
            started_at=self._started_at,
            ended_at=time.monotonic(),
        )
        logger.debug("utterance_finished", frames=len(self._frames), duration=round(segment.duration, 3))
        self.reset()
        return segment

    def reset(self) -> None:
        self._frames = []
        self._samples = 0
        self._active = False
        self._pre_roll.clear()
