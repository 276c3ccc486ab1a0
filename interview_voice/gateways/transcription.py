import asyncio
from dataclasses import dataclass
from typing import List, Optional

import httpx
import numpy as np
import openai
import structlog
import torch
from faster_whisper import WhisperModel

from ..core.config import Settings
from ..core.exceptions import ProviderError, TranscriptionEmpty
from ..core.interfaces import Provider
from ..processors.audio import AudioSegment, resample
from .base import ProviderEntry, ProviderGateway, error_from_httpx, error_from_openai

logger = structlog.get_logger(__name__)


@dataclass
class TranscriptionRequest:
    segment: AudioSegment
    language: str = "en"


@dataclass
class Transcript:
    text: str
    confidence: float = 0.0
    language: Optional[str] = None
    provider: str = ""


class OpenAIWhisperProvider(Provider[TranscriptionRequest, Transcript]):
    name = "whisper"

    def __init__(self, api_key: str, base_url: Optional[str] = None, model: str = "whisper-1"):
        self.model = model
        self.client = openai.AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0)

    async def __call__(self, payload: TranscriptionRequest) -> Transcript:
        wav = payload.segment.to_wav_bytes()
        try:
            response = await self.client.audio.transcriptions.create(
                model=self.model,
                file=("speech.wav", wav, "audio/wav"),
                language=payload.language,
                temperature=0.2,
                response_format="json",
            )
        except openai.OpenAIError as e:
            raise error_from_openai(self.name, e) from e
        # Whisper does not report a confidence score
        return Transcript(text=(response.text or "").strip(), confidence=0.95, language=payload.language)

    async def aclose(self) -> None:
        await self.client.close()


class DeepgramProvider(Provider[TranscriptionRequest, Transcript]):
    name = "deepgram"

    def __init__(self, api_key: str, base_url: str = "https://api.deepgram.com", model: str = "nova-2"):
        self.model = model
        self.client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Token {api_key}"},
            timeout=30.0,
        )

    async def __call__(self, payload: TranscriptionRequest) -> Transcript:
        params = {
            "model": self.model,
            "language": payload.language,
            "smart_format": "true",
            "punctuate": "true",
        }
        try:
            response = await self.client.post(
                "/v1/listen",
                params=params,
                headers={"Content-Type": "audio/wav"},
                content=payload.segment.to_wav_bytes(),
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise error_from_httpx(self.name, e) from e

        result = response.json()
        channels = result.get("results", {}).get("channels") or [{}]
        alternatives = channels[0].get("alternatives") or [{}]
        best = alternatives[0]
        return Transcript(
            text=(best.get("transcript") or "").strip(),
            confidence=float(best.get("confidence") or 0.0),
            language=channels[0].get("detected_language") or payload.language,
        )

    async def aclose(self) -> None:
        await self.client.aclose()


class LocalWhisperProvider(Provider[TranscriptionRequest, Transcript]):
    """
    Offline transcription with faster-whisper. Lower fidelity than the hosted
    providers but needs no network; the model is loaded on first use.
    """
    name = "local_whisper"

    def __init__(self, model_size: str = "tiny", device: Optional[str] = None):
        self.model_size = model_size
        if device is None:
            device = "cuda" if torch.cuda.is_available() else "cpu"
        self.device = device
        self.compute_type = "float16" if self.device == "cuda" else "int8"
        self._model: Optional[WhisperModel] = None

    def _load(self) -> WhisperModel:
        if self._model is None:
            logger.info("loading_local_whisper", model=self.model_size, device=self.device)
            self._model = WhisperModel(
                model_size_or_path=self.model_size,
                device=self.device,
                compute_type=self.compute_type,
            )
        return self._model

    def _transcribe(self, samples: np.ndarray, language: str) -> Transcript:
        model = self._load()
        segments, info = model.transcribe(samples, language=language, beam_size=5)
        text = " ".join(seg.text.strip() for seg in segments).strip()
        return Transcript(text=text, confidence=float(getattr(info, "language_probability", 0.0)),
                          language=getattr(info, "language", language))

    async def __call__(self, payload: TranscriptionRequest) -> Transcript:
        # faster-whisper expects 16 kHz float32 input
        samples = resample(payload.segment.samples, payload.segment.sample_rate, 16000)
        try:
            return await asyncio.to_thread(self._transcribe, samples, payload.language)
        except Exception as e:
            raise ProviderError(self.name, f"local transcription failed: {e}") from e


class TranscriptionGateway(ProviderGateway[TranscriptionRequest, Transcript]):
    operation = "transcription"

    def __init__(self, *args, language: str = "en", **kwargs):
        super().__init__(*args, **kwargs)
        self.language = language

    async def transcribe(self, segment: AudioSegment, preferred: Optional[str] = None) -> Transcript:
        outcome = await self.execute(TranscriptionRequest(segment, self.language), preferred)
        transcript = outcome.result
        transcript.provider = outcome.provider_used
        if not transcript.text.strip():
            raise TranscriptionEmpty(outcome.provider_used)
        return transcript


def build_transcription_gateway(settings: Settings) -> TranscriptionGateway:
    """Register every transcription provider that has credentials, best first."""
    window = settings.RATE_LIMIT_WINDOW_SECONDS
    entries: List[ProviderEntry] = []
    if settings.OPENAI_API_KEY:
        entries.append(ProviderEntry(
            OpenAIWhisperProvider(settings.OPENAI_API_KEY, settings.OPENAI_BASE_URL, settings.WHISPER_MODEL),
            max_requests=settings.WHISPER_MAX_PER_WINDOW, priority=1, window_seconds=window,
        ))
    if settings.DEEPGRAM_API_KEY:
        entries.append(ProviderEntry(
            DeepgramProvider(settings.DEEPGRAM_API_KEY, settings.DEEPGRAM_BASE_URL),
            max_requests=settings.DEEPGRAM_MAX_PER_WINDOW, priority=2, window_seconds=window,
        ))
    if settings.LOCAL_WHISPER_ENABLED:
        entries.append(ProviderEntry(
            LocalWhisperProvider(settings.LOCAL_WHISPER_MODEL),
            max_requests=settings.LOCAL_WHISPER_MAX_PER_WINDOW, priority=99, window_seconds=window,
        ))

    logger.info("transcription_providers", providers=[e.name for e in entries])
    return TranscriptionGateway(
        entries,
        language=settings.TRANSCRIPTION_LANGUAGE,
        max_attempts=settings.PROVIDER_MAX_ATTEMPTS,
        backoff_seconds=settings.PROVIDER_BACKOFF_SECONDS,
        max_backoff_seconds=settings.PROVIDER_MAX_BACKOFF_SECONDS,
        timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
    )
