from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx
import openai
import structlog

from ..core.config import Settings
from ..core.exceptions import ProviderError
from ..core.interfaces import Provider
from .base import ProviderEntry, ProviderGateway, error_from_httpx, error_from_openai

logger = structlog.get_logger(__name__)

ChatMessage = Dict[str, str]


@dataclass
class CompletionRequest:
    messages: List[ChatMessage] = field(default_factory=list)
    temperature: float = 0.7
    max_tokens: int = 150


class OpenAIChatProvider(Provider[CompletionRequest, str]):
    name = "openai_chat"

    def __init__(self, api_key: str, base_url: Optional[str] = None, model: str = "gpt-4o-mini"):
        self.model = model
        self.client = openai.AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0)

    async def __call__(self, payload: CompletionRequest) -> str:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=payload.messages,
                temperature=payload.temperature,
                max_tokens=payload.max_tokens,
            )
        except openai.OpenAIError as e:
            raise error_from_openai(self.name, e) from e
        text = (response.choices[0].message.content or "").strip() if response.choices else ""
        if not text:
            raise ProviderError(self.name, "empty completion")
        return text

    async def aclose(self) -> None:
        await self.client.close()


class OllamaChatProvider(Provider[CompletionRequest, str]):
    """A local model served by Ollama; slower, but free of quotas."""
    name = "ollama"

    def __init__(self, base_url: str, model: str = "llama3"):
        self.model = model
        self.client = httpx.AsyncClient(base_url=base_url, timeout=60.0)

    async def __call__(self, payload: CompletionRequest) -> str:
        body = {
            "model": self.model,
            "messages": payload.messages,
            "stream": False,
            "options": {"temperature": payload.temperature, "num_predict": payload.max_tokens},
        }
        try:
            response = await self.client.post("/api/chat", json=body)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise error_from_httpx(self.name, e) from e
        message = response.json().get("message") or {}
        text = (message.get("content") or "").strip()
        if not text:
            raise ProviderError(self.name, "empty completion")
        return text

    async def aclose(self) -> None:
        await self.client.aclose()


class DialogueGateway(ProviderGateway[CompletionRequest, str]):
    operation = "dialogue"

    def __init__(self, *args, max_tokens: int = 150, **kwargs):
        super().__init__(*args, **kwargs)
        self.max_tokens = max_tokens

    async def complete(self, messages: List[ChatMessage], preferred: Optional[str] = None) -> str:
        outcome = await self.execute(CompletionRequest(messages, max_tokens=self.max_tokens), preferred)
        return outcome.result


def build_dialogue_gateway(settings: Settings) -> Optional[DialogueGateway]:
    """
    Register every completion provider that is configured, best first.

    Returns None when none is, and the interviewer sticks to its stock
    phrasing.
    """
    if not settings.DIALOGUE_ENABLED:
        return None
    window = settings.RATE_LIMIT_WINDOW_SECONDS
    entries: List[ProviderEntry] = []
    if settings.OPENAI_API_KEY:
        entries.append(ProviderEntry(
            OpenAIChatProvider(settings.OPENAI_API_KEY, settings.OPENAI_BASE_URL, settings.AI_MODEL),
            max_requests=settings.CHAT_MAX_PER_WINDOW, priority=1, window_seconds=window,
        ))
    if settings.OLLAMA_BASE_URL:
        entries.append(ProviderEntry(
            OllamaChatProvider(settings.OLLAMA_BASE_URL, settings.OLLAMA_MODEL),
            max_requests=settings.OLLAMA_MAX_PER_WINDOW, priority=2, window_seconds=window,
        ))
    if not entries:
        logger.info("dialogue_providers", providers=[])
        return None

    logger.info("dialogue_providers", providers=[e.name for e in entries])
    return DialogueGateway(
        entries,
        max_tokens=settings.DIALOGUE_MAX_TOKENS,
        max_attempts=settings.PROVIDER_MAX_ATTEMPTS,
        backoff_seconds=settings.PROVIDER_BACKOFF_SECONDS,
        max_backoff_seconds=settings.PROVIDER_MAX_BACKOFF_SECONDS,
        timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
    )
