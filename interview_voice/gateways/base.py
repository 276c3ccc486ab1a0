"""
Rate-limited, retrying, failover-capable caller of ranked providers.

A gateway owns one rolling request window per provider. The window is global
to the gateway instance (every session sharing the gateway shares the
quota), because providers meter per API key, not per caller.
"""
import asyncio
import time
from dataclasses import dataclass, field, replace
from threading import Lock
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Sequence, Type

import httpx
import openai
import structlog

from ..core.exceptions import (
    ConfigurationError,
    ProviderError,
    ProviderRateLimited,
    ProviderUnavailable,
    RateLimited,
)
from ..core.interfaces import P, Provider, R

logger = structlog.get_logger(__name__)


@dataclass
class ProviderState:
    name: str
    max_requests: int
    window_seconds: float
    priority: int
    count: int = 0
    window_reset_at: float = 0.0

    def remaining(self) -> int:
        return max(0, self.max_requests - self.count)


@dataclass(frozen=True)
class ProviderOutcome:
    provider: str
    status: str  # "ok" | "rate_limited" | "failed"
    attempt: int = 0
    detail: str = ""
    transient: bool = False


@dataclass
class GatewayResult(Generic[R]):
    result: R
    provider_used: str
    outcomes: List[ProviderOutcome] = field(default_factory=list)


@dataclass
class ProviderEntry(Generic[P, R]):
    provider: Provider[P, R]
    max_requests: int
    priority: int
    window_seconds: float = 60.0

    @property
    def name(self) -> str:
        return self.provider.name


class RateLimiter:
    """Fixed-window request counter per provider, safe across sessions and threads."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._lock = Lock()
        self._states: Dict[str, ProviderState] = {}

    def register(self, name: str, max_requests: int, window_seconds: float, priority: int) -> None:
        if max_requests < 1:
            raise ConfigurationError(f"{name}: max requests per window must be positive")
        with self._lock:
            self._states[name] = ProviderState(
                name=name,
                max_requests=max_requests,
                window_seconds=window_seconds,
                priority=priority,
            )

    def _refresh(self, state: ProviderState, now: float) -> None:
        if now >= state.window_reset_at:
            state.count = 0
            state.window_reset_at = now + state.window_seconds

    def acquire(self, name: str) -> None:
        """Count one request against the window; raises RateLimited (without counting) at the cap."""
        with self._lock:
            state = self._states[name]
            now = self.clock()
            self._refresh(state, now)
            if state.count >= state.max_requests:
                raise RateLimited(name, retry_after=max(0.0, state.window_reset_at - now))
            state.count += 1

    def available(self, name: str) -> bool:
        with self._lock:
            state = self._states[name]
            self._refresh(state, self.clock())
            return state.count < state.max_requests

    def state(self, name: str) -> ProviderState:
        with self._lock:
            state = self._states[name]
            self._refresh(state, self.clock())
            return replace(state)

    def snapshot(self) -> List[ProviderState]:
        with self._lock:
            now = self.clock()
            for state in self._states.values():
                self._refresh(state, now)
            return [replace(s) for s in sorted(self._states.values(), key=lambda s: s.priority)]


_FAILED = object()


class ProviderGateway(Generic[P, R]):
    """
    Runs one operation against the best available provider.

    Providers are tried in priority order (a preferred provider under its
    limit goes first). A provider at its window cap is skipped without
    waiting. Transient errors are retried on the same provider with
    exponential backoff up to ``max_attempts`` (a provider's Retry-After
    stretches the wait; a wait longer than ``max_backoff_seconds`` fails
    over instead). Other errors fail over to the next provider immediately.
    When every provider is exhausted the gateway raises ``unavailable_error``.
    """

    operation = "provider"
    unavailable_error: Type[ProviderUnavailable] = ProviderUnavailable

    def __init__(self,
                 entries: Sequence[ProviderEntry[P, R]],
                 max_attempts: int = 3,
                 backoff_seconds: float = 1.0,
                 max_backoff_seconds: float = 30.0,
                 timeout_seconds: float = 15.0,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        if not entries:
            raise ConfigurationError(f"No {self.operation} providers configured")
        names = [e.name for e in entries]
        if len(set(names)) != len(names):
            raise ConfigurationError(f"Duplicate {self.operation} provider names: {names}")

        self.entries = sorted(entries, key=lambda e: e.priority)
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.timeout_seconds = timeout_seconds
        self._sleep = sleep
        self.limiter = RateLimiter(clock=clock)
        for entry in self.entries:
            self.limiter.register(entry.name, entry.max_requests, entry.window_seconds, entry.priority)

    @property
    def provider_names(self) -> List[str]:
        return [e.name for e in self.entries]

    def _candidates(self, preferred: Optional[str]) -> List[ProviderEntry[P, R]]:
        ordered = list(self.entries)
        if preferred is None:
            return ordered
        match = next((e for e in ordered if e.name == preferred), None)
        if match is None:
            logger.warning("preferred_provider_unknown", operation=self.operation, provider=preferred)
            return ordered
        if self.limiter.available(preferred):
            ordered.remove(match)
            ordered.insert(0, match)
        return ordered

    async def execute(self, payload: P, preferred: Optional[str] = None) -> GatewayResult[R]:
        outcomes: List[ProviderOutcome] = []
        for entry in self._candidates(preferred):
            result = await self._try_provider(entry, payload, outcomes)
            if result is not _FAILED:
                logger.info("provider_succeeded", operation=self.operation, provider=entry.name,
                            attempts=len(outcomes))
                return GatewayResult(result=result, provider_used=entry.name, outcomes=outcomes)

        logger.error("providers_exhausted", operation=self.operation,
                     outcomes=[f"{o.provider}:{o.status}" for o in outcomes])
        raise self.unavailable_error(self.operation, outcomes)

    async def _try_provider(self, entry: ProviderEntry[P, R], payload: P,
                            outcomes: List[ProviderOutcome]) -> Any:
        name = entry.name
        for attempt in range(1, self.max_attempts + 1):
            try:
                self.limiter.acquire(name)
            except RateLimited as limited:
                outcomes.append(ProviderOutcome(name, "rate_limited", attempt, detail=str(limited)))
                logger.info("provider_rate_limited", operation=self.operation, provider=name,
                            retry_after=round(limited.retry_after, 1))
                return _FAILED

            try:
                return_value = await asyncio.wait_for(entry.provider(payload), self.timeout_seconds)
            except asyncio.TimeoutError:
                error = ProviderError(name, f"timed out after {self.timeout_seconds}s", transient=True)
            except ProviderError as e:
                error = e
            except Exception as e:
                logger.exception("provider_unexpected_error", operation=self.operation, provider=name)
                error = ProviderError(name, repr(e))
            else:
                outcomes.append(ProviderOutcome(name, "ok", attempt))
                return return_value

            outcomes.append(ProviderOutcome(name, "failed", attempt, str(error), error.transient))
            logger.warning("provider_attempt_failed", operation=self.operation, provider=name,
                           attempt=attempt, max_attempts=self.max_attempts,
                           transient=error.transient, error=str(error))
            if not error.transient or attempt >= self.max_attempts:
                return _FAILED

            delay = self.backoff_seconds * (2 ** (attempt - 1))
            if isinstance(error, ProviderRateLimited) and error.retry_after:
                delay = max(delay, error.retry_after)
            if delay > self.max_backoff_seconds:
                logger.info("provider_backoff_too_long", operation=self.operation, provider=name,
                            delay=round(delay, 1), max_backoff=self.max_backoff_seconds)
                return _FAILED
            await self._sleep(delay)
        return _FAILED

    def status(self) -> List[Dict[str, Any]]:
        return [
            {
                "name": state.name,
                "priority": state.priority,
                "available": state.count < state.max_requests,
                "remaining": state.remaining(),
                "max_requests": state.max_requests,
                "resets_in": round(max(0.0, state.window_reset_at - self.limiter.clock()), 2),
            }
            for state in self.limiter.snapshot()
        ]

    async def aclose(self) -> None:
        for entry in self.entries:
            await entry.provider.aclose()


def error_from_response(provider: str, response: httpx.Response) -> ProviderError:
    """Map a failed HTTP response to a ProviderError."""
    if response.status_code == 429:
        retry_after = response.headers.get("retry-after")
        try:
            seconds = float(retry_after) if retry_after else None
        except ValueError:
            seconds = None
        return ProviderRateLimited(provider, retry_after=seconds)
    transient = response.status_code >= 500
    return ProviderError(provider, f"HTTP {response.status_code}: {response.text[:200]}", transient=transient)


def error_from_httpx(provider: str, error: httpx.HTTPError) -> ProviderError:
    if isinstance(error, httpx.HTTPStatusError):
        return error_from_response(provider, error.response)
    # Timeouts and dropped connections are worth another try.
    transient = isinstance(error, (httpx.TimeoutException, httpx.TransportError))
    return ProviderError(provider, f"{type(error).__name__}: {error}", transient=transient)


def error_from_openai(provider: str, error: openai.OpenAIError) -> ProviderError:
    if isinstance(error, openai.APIStatusError):
        return error_from_response(provider, error.response)
    # APITimeoutError is a connection error too
    if isinstance(error, openai.APIConnectionError):
        return ProviderError(provider, f"{type(error).__name__}: {error}", transient=True)
    return ProviderError(provider, f"{type(error).__name__}: {error}")
