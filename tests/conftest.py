# tests/conftest.py
import os
from typing import List, Optional

import pytest
from fastapi.testclient import TestClient

from interview_voice.core.config import Settings, get_settings
from interview_voice.gateways.base import ProviderEntry
from interview_voice.gateways.dialogue import DialogueGateway
from interview_voice.gateways.synthesis import SynthesisGateway
from interview_voice.gateways.transcription import TranscriptionGateway

from fakes import FakeClock, FakeProvider, FakeRoom, SleepRecorder, tone, transcript_of

@pytest.fixture
def test_env_vars():
    """Set up test environment variables."""
    os.environ["ENVIRONMENT"] = "testing"
    os.environ["DEBUG"] = "true"
    os.environ["APP_NAME"] = "Voice Interview Test"
    get_settings.cache_clear()
    yield
    # Clean up
    os.environ.pop("ENVIRONMENT", None)
    os.environ.pop("DEBUG", None)
    os.environ.pop("APP_NAME", None)
    get_settings.cache_clear()

@pytest.fixture
def settings(test_env_vars):
    """Get test settings."""
    return get_settings()

@pytest.fixture
def pipeline_settings():
    """Settings for pipeline tests: no local models, default VAD timing."""
    return Settings(
        ENVIRONMENT="testing",
        LOCAL_WHISPER_ENABLED=False,
        DIALOGUE_ENABLED=False,
        VAD_MODEL_PATH=None,
        STOCK_PHRASES_DIR=None,
    )

@pytest.fixture
def sleeper():
    return SleepRecorder()

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def room():
    return FakeRoom()

@pytest.fixture
def make_transcription(sleeper, clock):
    def factory(*providers: FakeProvider, caps: Optional[List[int]] = None, **kwargs) -> TranscriptionGateway:
        caps = caps or [50] * len(providers)
        entries = [
            ProviderEntry(p, max_requests=cap, priority=i + 1)
            for i, (p, cap) in enumerate(zip(providers, caps))
        ]
        return TranscriptionGateway(entries, sleep=sleeper, clock=clock, **kwargs)
    return factory

@pytest.fixture
def make_synthesis(sleeper, clock):
    def factory(*providers: FakeProvider, **kwargs) -> SynthesisGateway:
        entries = [ProviderEntry(p, max_requests=50, priority=i + 1) for i, p in enumerate(providers)]
        return SynthesisGateway(entries, sleep=sleeper, clock=clock, **kwargs)
    return factory

@pytest.fixture
def make_dialogue(sleeper, clock):
    def factory(*providers: FakeProvider, **kwargs) -> DialogueGateway:
        entries = [ProviderEntry(p, max_requests=50, priority=i + 1) for i, p in enumerate(providers)]
        return DialogueGateway(entries, sleep=sleeper, clock=clock, **kwargs)
    return factory

@pytest.fixture
def session_manager(pipeline_settings, make_transcription, make_synthesis):
    from interview_voice.application.sessions import SessionManager
    return SessionManager(
        pipeline_settings,
        transcription=make_transcription(FakeProvider("whisper", transcript_of("hello"))),
        synthesis=make_synthesis(FakeProvider("openai_tts", tone)),
        speech_model_factory=lambda: None,
    )

@pytest.fixture
def app(settings, session_manager):
    """Create test app instance."""
    from interview_voice.interface.api.main import create_app
    return create_app(manager=session_manager, settings=settings)

@pytest.fixture
def client(app):
    """Create test client."""
    with TestClient(app) as test_client:
        yield test_client
