from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from ..gateways.base import ProviderOutcome


class InterviewError(Exception):
    """Base class for every error raised by the voice interview pipeline."""


class ConfigurationError(InterviewError):
    """The pipeline cannot be wired, e.g. a gateway has no providers at all."""


class ProviderError(InterviewError):
    """A single provider call failed.

    ``transient`` errors (the provider's own rate-limit signal, timeouts,
    dropped connections) are retried on the same provider with backoff;
    anything else moves the gateway on to the next provider.
    """

    def __init__(self, provider: str, message: str, transient: bool = False):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.transient = transient


class ProviderRateLimited(ProviderError):
    """The provider answered with its own rate-limit signal (HTTP 429)."""

    def __init__(self, provider: str, retry_after: Optional[float] = None):
        super().__init__(provider, "rate limited by provider", transient=True)
        self.retry_after = retry_after


class RateLimited(InterviewError):
    """The local window for a provider is full; the gateway skips it."""

    def __init__(self, provider: str, retry_after: float):
        super().__init__(f"{provider}: rate limit window full, resets in {retry_after:.1f}s")
        self.provider = provider
        self.retry_after = retry_after


class ProviderUnavailable(InterviewError):
    """Every provider of a gateway was skipped or failed for one operation."""

    def __init__(self, operation: str, outcomes: Optional[List["ProviderOutcome"]] = None):
        self.operation = operation
        self.outcomes = list(outcomes or [])
        summary = ", ".join(f"{o.provider}={o.status}" for o in self.outcomes) or "no attempts"
        super().__init__(f"All {operation} providers failed ({summary})")


class SynthesisFailed(ProviderUnavailable):
    """No synthesis provider, stock phrases included, could render the text."""


class TranscriptionEmpty(InterviewError):
    """A provider answered but heard no intelligible speech."""

    def __init__(self, provider: str):
        super().__init__(f"{provider}: empty transcript")
        self.provider = provider


class SessionAlreadyProcessing(InterviewError):
    """A turn is already in flight for the session; the request is rejected."""

    def __init__(self, session_id: str, state: str):
        super().__init__(f"Session {session_id} is busy ({state})")
        self.session_id = session_id
        self.state = state


class RoomDisconnected(InterviewError):
    """The audio room went away; the session must be torn down."""
