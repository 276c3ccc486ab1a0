import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import httpx
import numpy as np
import openai
import soundfile as sf
import structlog

from ..core.config import Settings
from ..core.exceptions import ProviderError, SynthesisFailed
from ..core.interfaces import Provider
from ..processors.audio import resample, to_float32
from .base import ProviderEntry, ProviderGateway, error_from_httpx, error_from_openai

logger = structlog.get_logger(__name__)


@dataclass
class SynthesisRequest:
    text: str
    voice: Optional[str] = None


@dataclass
class SynthesizedAudio:
    samples: np.ndarray
    sample_rate: int
    provider: str = ""

    @property
    def duration(self) -> float:
        return self.samples.size / float(self.sample_rate)


class OpenAISpeechProvider(Provider[SynthesisRequest, SynthesizedAudio]):
    name = "openai_tts"
    # response_format="pcm" is 24 kHz signed 16-bit mono
    PCM_SAMPLE_RATE = 24000

    def __init__(self, api_key: str, base_url: Optional[str] = None,
                 model: str = "tts-1", voice: str = "nova"):
        self.model = model
        self.voice = voice
        self.client = openai.AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0)

    async def __call__(self, payload: SynthesisRequest) -> SynthesizedAudio:
        try:
            response = await self.client.audio.speech.create(
                model=self.model,
                voice=payload.voice or self.voice,
                input=payload.text,
                response_format="pcm",
                speed=1.0,
            )
        except openai.OpenAIError as e:
            raise error_from_openai(self.name, e) from e
        return SynthesizedAudio(samples=to_float32(response.content), sample_rate=self.PCM_SAMPLE_RATE)

    async def aclose(self) -> None:
        await self.client.close()


class ElevenLabsProvider(Provider[SynthesisRequest, SynthesizedAudio]):
    name = "elevenlabs"
    PCM_SAMPLE_RATE = 16000

    def __init__(self, api_key: str, voice_id: str, base_url: str = "https://api.elevenlabs.io",
                 model_id: str = "eleven_turbo_v2_5"):
        self.voice_id = voice_id
        self.model_id = model_id
        self.client = httpx.AsyncClient(
            base_url=base_url,
            headers={"xi-api-key": api_key, "Content-Type": "application/json"},
            timeout=30.0,
        )

    async def __call__(self, payload: SynthesisRequest) -> SynthesizedAudio:
        body = {
            "text": payload.text,
            "model_id": self.model_id,
            "voice_settings": {
                "stability": 0.6,
                "similarity_boost": 0.85,
                "style": 0.3,
                "use_speaker_boost": True,
            },
        }
        try:
            response = await self.client.post(
                f"/v1/text-to-speech/{payload.voice or self.voice_id}",
                params={"output_format": f"pcm_{self.PCM_SAMPLE_RATE}"},
                json=body,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise error_from_httpx(self.name, e) from e
        return SynthesizedAudio(samples=to_float32(response.content), sample_rate=self.PCM_SAMPLE_RATE)

    async def aclose(self) -> None:
        await self.client.aclose()


def phrase_key(text: str) -> str:
    """File stem under which a pre-rendered clip for ``text`` is stored."""
    return re.sub(r"[^a-z0-9]+", "_", text.lower()).strip("_")[:80]


class StockPhraseProvider(Provider[SynthesisRequest, SynthesizedAudio]):
    """
    Last-resort synthesis from pre-rendered WAV clips.

    A clip named after ``phrase_key(text)`` is played when present, otherwise
    the generic ``fallback.wav`` clip ("one moment please" or similar).
    """
    name = "stock_phrases"
    FALLBACK_KEY = "fallback"

    def __init__(self, directory: Path, sample_rate: int = 16000):
        self.directory = Path(directory)
        self.sample_rate = sample_rate
        self.clips: Dict[str, np.ndarray] = {}
        self._load()

    def _load(self) -> None:
        if not self.directory.is_dir():
            logger.warning("stock_phrase_dir_missing", directory=str(self.directory))
            return
        for path in sorted(self.directory.glob("*.wav")):
            try:
                data, rate = sf.read(str(path), dtype="float32", always_2d=False)
            except RuntimeError as e:
                logger.warning("stock_phrase_unreadable", path=str(path), error=str(e))
                continue
            if data.ndim > 1:
                data = data.mean(axis=1)
            self.clips[path.stem] = resample(data, rate, self.sample_rate)
        logger.info("stock_phrases_loaded", count=len(self.clips))

    async def __call__(self, payload: SynthesisRequest) -> SynthesizedAudio:
        clip = self.clips.get(phrase_key(payload.text))
        if clip is None:
            clip = self.clips.get(self.FALLBACK_KEY)
        if clip is None:
            raise ProviderError(self.name, "no pre-rendered clip available")
        return SynthesizedAudio(samples=clip, sample_rate=self.sample_rate)


class SynthesisGateway(ProviderGateway[SynthesisRequest, SynthesizedAudio]):
    operation = "synthesis"
    unavailable_error = SynthesisFailed

    async def synthesize(self, text: str, preferred: Optional[str] = None,
                         voice: Optional[str] = None) -> SynthesizedAudio:
        outcome = await self.execute(SynthesisRequest(text=text, voice=voice), preferred)
        audio = outcome.result
        audio.provider = outcome.provider_used
        return audio


def build_synthesis_gateway(settings: Settings) -> SynthesisGateway:
    """Register every synthesis provider that has credentials, best first."""
    window = settings.RATE_LIMIT_WINDOW_SECONDS
    entries: List[ProviderEntry] = []
    if settings.OPENAI_API_KEY:
        entries.append(ProviderEntry(
            OpenAISpeechProvider(settings.OPENAI_API_KEY, settings.OPENAI_BASE_URL,
                                 settings.TTS_MODEL, settings.TTS_VOICE),
            max_requests=settings.OPENAI_TTS_MAX_PER_WINDOW, priority=1, window_seconds=window,
        ))
    if settings.ELEVENLABS_API_KEY:
        entries.append(ProviderEntry(
            ElevenLabsProvider(settings.ELEVENLABS_API_KEY, settings.ELEVENLABS_VOICE_ID,
                               settings.ELEVENLABS_BASE_URL),
            max_requests=settings.ELEVENLABS_MAX_PER_WINDOW, priority=2, window_seconds=window,
        ))
    if settings.STOCK_PHRASES_DIR is not None:
        entries.append(ProviderEntry(
            StockPhraseProvider(settings.STOCK_PHRASES_DIR, settings.AUDIO_SAMPLE_RATE),
            max_requests=settings.STOCK_PHRASES_MAX_PER_WINDOW, priority=99, window_seconds=window,
        ))

    logger.info("synthesis_providers", providers=[e.name for e in entries])
    return SynthesisGateway(
        entries,
        max_attempts=settings.PROVIDER_MAX_ATTEMPTS,
        backoff_seconds=settings.PROVIDER_BACKOFF_SECONDS,
        max_backoff_seconds=settings.PROVIDER_MAX_BACKOFF_SECONDS,
        timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
    )
