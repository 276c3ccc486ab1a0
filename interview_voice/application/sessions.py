import asyncio
import random
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog

from ..core.config import Settings
from ..core.interfaces import Room, SpeechModel
from ..gateways.dialogue import DialogueGateway, build_dialogue_gateway
from ..gateways.synthesis import SynthesisGateway, build_synthesis_gateway
from ..gateways.transcription import TranscriptionGateway, build_transcription_gateway
from ..managers.interview import AnswerPolicy, DialogueEngine
from ..processors.vad import VoiceActivityDetector, load_speech_model
from .interview_session import InterviewMode, InterviewSession
from .orchestrator import CompletionCallback, SessionOrchestrator

logger = structlog.get_logger(__name__)


class SessionManager:
    """
    Registry of live interview sessions.

    All sessions share the same gateways, and with them the provider
    rate-limit windows. The completion gateway is optional. A session is removed as soon as it ends.
    """

    def __init__(self,
                 settings: Settings,
                 transcription: Optional[TranscriptionGateway] = None,
                 synthesis: Optional[SynthesisGateway] = None,
                 dialogue: Optional[DialogueGateway] = None,
                 speech_model_factory: Optional[Callable[[], Optional[SpeechModel]]] = None,
                 on_completed: Optional[CompletionCallback] = None,
                 rng: Optional[random.Random] = None):
        self.settings = settings
        self.transcription = transcription or build_transcription_gateway(settings)
        self.synthesis = synthesis or build_synthesis_gateway(settings)
        self.dialogue = dialogue or build_dialogue_gateway(settings)
        self.speech_model_factory = speech_model_factory or (lambda: load_speech_model(settings))
        self.on_completed = on_completed
        self.rng = rng or random.Random()
        self.policy = AnswerPolicy.from_settings(settings)
        self._lock = Lock()
        self._sessions: Dict[str, SessionOrchestrator] = {}

    def create_session(self,
                       room: Room,
                       candidate_id: str,
                       script: Sequence[str],
                       mode: InterviewMode = InterviewMode.MIXED,
                       candidate_name: Optional[str] = None) -> SessionOrchestrator:
        session = InterviewSession(
            candidate_id=candidate_id,
            script=list(script),
            mode=mode,
            candidate_name=candidate_name,
        )
        # The speech model keeps recurrent state, so each session gets its own.
        vad = VoiceActivityDetector.from_settings(self.settings, model=self.speech_model_factory())
        orchestrator = SessionOrchestrator(
            session=session,
            room=room,
            transcription=self.transcription,
            synthesis=self.synthesis,
            settings=self.settings,
            engine=DialogueEngine(
                session,
                self.policy,
                random.Random(self.rng.random()),
                dialogue=self.dialogue,
                context_messages=self.settings.DIALOGUE_CONTEXT_MESSAGES,
            ),
            vad=vad,
            on_completed=self.on_completed,
            on_ended=self._forget,
        )
        with self._lock:
            self._sessions[session.id] = orchestrator
        logger.info("session_registered", session_id=session.id, candidate_id=candidate_id,
                    mode=mode.value, active=self.active_count)
        return orchestrator

    def _forget(self, orchestrator: SessionOrchestrator) -> None:
        with self._lock:
            self._sessions.pop(orchestrator.id, None)
        logger.info("session_unregistered", session_id=orchestrator.id, reason=orchestrator.end_reason)

    def get(self, session_id: str) -> Optional[SessionOrchestrator]:
        with self._lock:
            return self._sessions.get(session_id)

    def list_sessions(self) -> List[Dict[str, Any]]:
        with self._lock:
            sessions = list(self._sessions.values())
        return [s.describe() for s in sessions]

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    async def stop_session(self, session_id: str, reason: str = "stopped") -> bool:
        orchestrator = self.get(session_id)
        if orchestrator is None:
            return False
        await orchestrator.stop(reason)
        return True

    def provider_status(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            "transcription": self.transcription.status(),
            "synthesis": self.synthesis.status(),
            "dialogue": self.dialogue.status() if self.dialogue is not None else [],
        }

    async def shutdown(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
        if sessions:
            await asyncio.gather(*(s.stop("shutdown") for s in sessions))
        await self.transcription.aclose()
        await self.synthesis.aclose()
        if self.dialogue is not None:
            await self.dialogue.aclose()
