from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from enum import Enum
from pathlib import Path
from typing import List

class EnvironmentType(str, Enum):
    DEVELOPMENT = "development"
    TESTING = "testing"
    PRODUCTION = "production"

class Settings(BaseSettings):
    # Basic Settings
    APP_NAME: str = "Voice Interview Agent"
    ENVIRONMENT: EnvironmentType = EnvironmentType.DEVELOPMENT
    DEBUG: bool = True
    API_PREFIX: str = "/api"
    WEBSOCKET_PATH: str = "/ws/interview"

    # Server Settings
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    LOG_LEVEL: str = "DEBUG"

    # Provider credentials
    OPENAI_API_KEY: str | None = None
    OPENAI_BASE_URL: str | None = None
    DEEPGRAM_API_KEY: str | None = None
    DEEPGRAM_BASE_URL: str = "https://api.deepgram.com"
    ELEVENLABS_API_KEY: str | None = None
    ELEVENLABS_BASE_URL: str = "https://api.elevenlabs.io"
    ELEVENLABS_VOICE_ID: str = "EXAVITQu4vr4xnSDxMaL"
    OLLAMA_BASE_URL: str | None = None

    # AI Settings
    DIALOGUE_ENABLED: bool = True
    AI_MODEL: str = "gpt-4o-mini"
    OLLAMA_MODEL: str = "llama3"
    DIALOGUE_CONTEXT_MESSAGES: int = 10
    DIALOGUE_MAX_TOKENS: int = 150

    # Speech models
    TRANSCRIPTION_LANGUAGE: str = "en"
    WHISPER_MODEL: str = "whisper-1"
    LOCAL_WHISPER_ENABLED: bool = True
    LOCAL_WHISPER_MODEL: str = "tiny"
    TTS_MODEL: str = "tts-1"
    TTS_VOICE: str = "nova"
    STOCK_PHRASES_DIR: Path | None = None

    # Rate limiting (requests per window, per provider API key)
    RATE_LIMIT_WINDOW_SECONDS: float = 60.0
    WHISPER_MAX_PER_WINDOW: int = 50
    DEEPGRAM_MAX_PER_WINDOW: int = 100
    LOCAL_WHISPER_MAX_PER_WINDOW: int = 20
    OPENAI_TTS_MAX_PER_WINDOW: int = 50
    ELEVENLABS_MAX_PER_WINDOW: int = 20
    STOCK_PHRASES_MAX_PER_WINDOW: int = 1000
    CHAT_MAX_PER_WINDOW: int = 50
    OLLAMA_MAX_PER_WINDOW: int = 30
    PROVIDER_MAX_ATTEMPTS: int = 3
    PROVIDER_BACKOFF_SECONDS: float = 1.0
    PROVIDER_MAX_BACKOFF_SECONDS: float = 30.0
    PROVIDER_TIMEOUT_SECONDS: float = 15.0

    # Audio Processing
    AUDIO_SAMPLE_RATE: int = 16000
    AUDIO_FRAME_SIZE: int = 512  # 32ms at 16kHz
    MAX_UTTERANCE_SECONDS: float = 30.0
    # Extra wait after a clip is sent, for client-side buffering
    PLAYBACK_TAIL_SECONDS: float = 0.2

    # Voice activity detection
    VAD_MODEL_PATH: Path | None = None
    VAD_THRESHOLD: float = 0.5
    VAD_MIN_SPEECH_FRAMES: int = 3
    VAD_MIN_SILENCE_FRAMES: int = 25
    VAD_PRE_SPEECH_PAD_FRAMES: int = 10

    # Answer quality heuristics
    MIN_ANSWER_WORDS: int = 10
    ANSWER_KEYWORDS: List[str] = [
        "implemented", "built", "designed", "created", "managed",
        "led", "migrated", "reduced", "improved", "launched",
        "delivered", "optimized", "automated", "shipped", "cut",
    ]

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra='ignore'
    )

@lru_cache
def get_settings() -> Settings:
    return Settings()
