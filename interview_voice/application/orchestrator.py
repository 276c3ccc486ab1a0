"""
Turn-taking state machine for one interview session.

    IDLE -> LISTENING -> TRANSCRIBING -> RESPONDING -> SPEAKING -> LISTENING ...
                                                                `-> COMPLETING -> ENDED

Audio is only consumed while LISTENING; everything the candidate says while
the interviewer is speaking or a turn is being processed is dropped (there
is no barge-in). A turn runs as a single task so that stop() can cancel it,
and after every await the turn checks that the session is still live before
it touches the room or the transcript. However the session ends, the
completion callback receives its report exactly once.
"""
import asyncio
import inspect
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

import numpy as np
import structlog

from ..core.config import Settings, get_settings
from ..core.exceptions import (
    ProviderUnavailable,
    RoomDisconnected,
    SessionAlreadyProcessing,
    SynthesisFailed,
    TranscriptionEmpty,
)
from ..core.interfaces import Room, RoomEvent, RoomEventKind
from ..core.logging import bind_session, unbind_session
from ..gateways.synthesis import SynthesisGateway
from ..gateways.transcription import TranscriptionGateway
from ..managers.interview import AnswerPolicy, DialogueEngine, Utterance
from ..processors.audio import AudioSegment, FrameBuffer, UtteranceBuffer, resample, to_float32
from ..processors.vad import VadEvent, VoiceActivityDetector
from .interview_session import InterviewSession, Role, SessionReport, SessionStatus, utcnow

logger = structlog.get_logger(__name__)

REPEAT_LINE = "I'm sorry, I didn't quite catch that. Could you please repeat your answer?"

CompletionCallback = Callable[[SessionReport], Union[None, Awaitable[None]]]


class TurnState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    TRANSCRIBING = "transcribing"
    RESPONDING = "responding"
    SPEAKING = "speaking"
    COMPLETING = "completing"
    ENDED = "ended"


class SessionOrchestrator:
    def __init__(self,
                 session: InterviewSession,
                 room: Room,
                 transcription: TranscriptionGateway,
                 synthesis: SynthesisGateway,
                 settings: Optional[Settings] = None,
                 engine: Optional[DialogueEngine] = None,
                 vad: Optional[VoiceActivityDetector] = None,
                 on_completed: Optional[CompletionCallback] = None,
                 on_ended: Optional[Callable[["SessionOrchestrator"], None]] = None):
        self.settings = settings or get_settings()
        self.session = session
        self.room = room
        self.transcription = transcription
        self.synthesis = synthesis
        self.engine = engine or DialogueEngine(session, AnswerPolicy.from_settings(self.settings))
        self.vad = vad or VoiceActivityDetector.from_settings(self.settings)
        self.on_completed = on_completed
        self.on_ended = on_ended

        self.sample_rate = self.settings.AUDIO_SAMPLE_RATE
        self.frame_buffer = FrameBuffer(self.settings.AUDIO_FRAME_SIZE)
        self.utterance = UtteranceBuffer(
            sample_rate=self.sample_rate,
            pre_speech_frames=self.settings.VAD_PRE_SPEECH_PAD_FRAMES,
            max_seconds=self.settings.MAX_UTTERANCE_SECONDS,
        )

        self.state = TurnState.IDLE
        self.state_history: List[TurnState] = [TurnState.IDLE]
        self.dropped_frames = 0
        self.end_reason: Optional[str] = None
        self.ended = asyncio.Event()
        self._stopped = False
        self._turn_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def id(self) -> str:
        return self.session.id

    @property
    def live(self) -> bool:
        return not self._stopped

    @property
    def busy(self) -> bool:
        return self._turn_task is not None and not self._turn_task.done()

    def _set_state(self, state: TurnState) -> None:
        if state == self.state:
            return
        logger.debug("turn_state", session_id=self.id, previous=self.state.value, state=state.value)
        self.state = state
        self.state_history.append(state)

    def _listen(self) -> None:
        self.vad.reset()
        self.frame_buffer.reset()
        self.utterance.reset()
        self._set_state(TurnState.LISTENING)
        # Tells the client it may speak (or type) again.
        self._spawn(self._publish_quietly({"type": "listening", "session_id": self.id}))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # Lifecycle

    async def start(self) -> None:
        """Join the room, speak the opening line and start listening."""
        if self.state != TurnState.IDLE:
            raise SessionAlreadyProcessing(self.id, self.state.value)
        bind_session(self.id, candidate_id=self.session.candidate_id)
        self._unsubscribe = self.room.subscribe(self.handle_event)
        self.session.status = SessionStatus.ACTIVE
        self.session.append(Role.SYSTEM, self.engine.system_prompt)
        logger.info("session_started", session_id=self.id, mode=self.session.mode.value,
                    questions=len(self.session.script), vad_model=self.vad.using_model)

        self._set_state(TurnState.RESPONDING)
        self._turn_task = asyncio.create_task(self._guarded(self._respond()))
        await self.wait_for_turn()

    async def wait_for_turn(self) -> None:
        """Wait until no turn is in flight (its errors are handled inside the task)."""
        while self.busy:
            await asyncio.wait({self._turn_task})

    async def wait_closed(self) -> None:
        await self.ended.wait()

    async def stop(self, reason: str = "stopped") -> None:
        """End the session from any state. Safe to call more than once."""
        if self._stopped:
            return
        self._stopped = True
        self.end_reason = reason
        logger.info("session_stopping", session_id=self.id, reason=reason, state=self.state.value)

        task = self._turn_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.wait({task})
        if self.session.ended_at is None:
            self.session.ended_at = utcnow()
        await self._deliver_report()
        self._release()

    async def _deliver_report(self) -> None:
        """Hand the transcript to the feedback side, whatever ended the session."""
        if self.on_completed is None:
            return
        report = self.session.report(end_reason=self.end_reason)
        try:
            result = self.on_completed(report)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("report_callback_failed", session_id=self.id, reason=self.end_reason)

    def _release(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.frame_buffer.reset()
        self.utterance.reset()
        self.vad.reset()
        self.session.status = SessionStatus.ENDED
        self._set_state(TurnState.ENDED)
        self.ended.set()
        logger.info("session_ended", session_id=self.id, reason=self.end_reason,
                    script_index=self.session.script_index, dropped_frames=self.dropped_frames)
        unbind_session()
        if self.on_ended is not None:
            self.on_ended(self)

    # Room events

    def handle_event(self, event: RoomEvent) -> None:
        if self._stopped:
            return
        if event.kind == RoomEventKind.AUDIO_FRAME:
            if event.samples is not None:
                self.push_audio(event.samples)
        elif event.kind == RoomEventKind.DATA:
            self._handle_data(event.data)
        elif event.kind == RoomEventKind.DISCONNECTED:
            self._spawn(self.stop("room_disconnected"))
        elif event.kind == RoomEventKind.PARTICIPANT_LEFT:
            self._spawn(self.stop("participant_left"))
        elif event.kind == RoomEventKind.PARTICIPANT_JOINED:
            logger.info("participant_joined", session_id=self.id, participant=event.participant)

    def _handle_data(self, data: Dict[str, Any]) -> None:
        kind = data.get("type")
        if kind == "candidate_text":
            text = str(data.get("text") or "").strip()
            if not text:
                return
            try:
                self.submit_text(text)
            except SessionAlreadyProcessing as e:
                logger.info("candidate_text_rejected", session_id=self.id, state=e.state)
                self._spawn(self._publish_quietly({"type": "error", "code": "session_busy", "message": str(e)}))
        elif kind == "stop":
            self._spawn(self.stop("candidate_stopped"))
        else:
            logger.debug("data_message_ignored", session_id=self.id, message_type=kind)

    def push_audio(self, samples) -> None:
        """Feed a block of room audio into the detector."""
        if self.state != TurnState.LISTENING:
            self.dropped_frames += 1
            return
        data = to_float32(samples)
        if self.room.sample_rate != self.sample_rate:
            data = resample(data, self.room.sample_rate, self.sample_rate)
        for frame in self.frame_buffer.push(data):
            if self.state != TurnState.LISTENING:
                self.dropped_frames += 1
                continue
            self._process_frame(frame)

    def _process_frame(self, frame: np.ndarray) -> None:
        result = self.vad.process_frame(frame)
        if result.event == VadEvent.SPEECH_START:
            self.utterance.begin()
            self.utterance.append(frame)
        elif self.utterance.active:
            self.utterance.append(frame)
        else:
            self.utterance.idle(frame)

        if not self.utterance.active:
            return
        if result.event == VadEvent.SPEECH_END or self.utterance.over_limit():
            if result.event != VadEvent.SPEECH_END:
                logger.info("utterance_truncated", session_id=self.id,
                            max_seconds=self.settings.MAX_UTTERANCE_SECONDS)
            segment = self.utterance.finish()
            self.vad.reset()
            self._begin_turn(segment=segment)

    def submit_text(self, text: str) -> asyncio.Task:
        """Run a turn on a typed answer; rejected unless the session is listening."""
        return self._begin_turn(text=text)

    def _begin_turn(self, segment: Optional[AudioSegment] = None,
                    text: Optional[str] = None) -> asyncio.Task:
        if self._stopped or self.busy or self.state != TurnState.LISTENING:
            raise SessionAlreadyProcessing(self.id, self.state.value)
        # The state flips before the task runs so that the next frame is dropped.
        if segment is not None:
            self._set_state(TurnState.TRANSCRIBING)
            coro = self._turn_from_audio(segment)
        else:
            self._set_state(TurnState.RESPONDING)
            coro = self._turn_from_text(text or "")
        self._turn_task = asyncio.create_task(self._guarded(coro))
        return self._turn_task

    # Turn steps

    async def _guarded(self, coro) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            logger.info("turn_cancelled", session_id=self.id, state=self.state.value)
            raise
        except RoomDisconnected:
            logger.warning("room_disconnected", session_id=self.id, state=self.state.value)
            await self.stop("room_disconnected")
        except Exception:
            logger.exception("turn_failed", session_id=self.id, state=self.state.value)
            await self.stop("error")

    async def _turn_from_audio(self, segment: AudioSegment) -> None:
        try:
            transcript = await self.transcription.transcribe(segment)
        except TranscriptionEmpty as e:
            if self.live:
                logger.info("transcript_empty", session_id=self.id, provider=e.provider)
                self._listen()
            return
        except ProviderUnavailable as e:
            if not self.live:
                return
            logger.warning("transcription_unavailable", session_id=self.id, error=str(e))
            self.session.append(Role.INTERVIEWER, REPEAT_LINE)
            await self._speak(REPEAT_LINE)
            if self.live:
                self._listen()
            return
        if not self.live:
            return

        logger.info("candidate_transcribed", session_id=self.id, provider=transcript.provider,
                    duration=round(segment.duration, 2), words=len(transcript.text.split()))
        self._set_state(TurnState.RESPONDING)
        await self._turn_from_text(transcript.text)

    async def _turn_from_text(self, text: str) -> None:
        self.session.append(Role.CANDIDATE, text)
        await self._publish({"type": "message", "role": Role.CANDIDATE.value, "text": text})
        if not self.live:
            return
        await self._respond()

    async def _respond(self) -> None:
        utterance: Utterance = await self.engine.respond(self.session.messages)
        if not self.live:
            return
        self.session.append(Role.INTERVIEWER, utterance.text)
        await self._speak(utterance.text)
        if not self.live:
            return
        if utterance.complete:
            await self._complete()
        else:
            self._listen()

    async def _speak(self, text: str) -> None:
        self._set_state(TurnState.SPEAKING)
        message = {
            "type": "message",
            "role": Role.INTERVIEWER.value,
            "text": text,
            "progress": self.engine.progress(),
        }
        try:
            audio = await self.synthesis.synthesize(text)
        except SynthesisFailed as e:
            if not self.live:
                return
            logger.error("synthesis_failed_sending_text", session_id=self.id, error=str(e))
            await self._publish({**message, "audio": False})
            return
        if not self.live:
            return

        await self._publish({**message, "audio": True, "provider": audio.provider})
        if not self.live:
            return
        await self.room.publish_audio(audio.samples, audio.sample_rate)

    async def _complete(self) -> None:
        self._set_state(TurnState.COMPLETING)
        self.session.status = SessionStatus.COMPLETING
        self.session.ended_at = utcnow()
        try:
            await self._publish({
                "type": "interview_complete",
                "session_id": self.id,
                "progress": self.engine.progress(),
            })
        except RoomDisconnected:
            logger.warning("completion_not_delivered", session_id=self.id)
        await self.stop("completed")

    async def _publish(self, payload: Dict[str, Any]) -> None:
        if self._stopped:
            return
        await self.room.publish_data(payload)

    async def _publish_quietly(self, payload: Dict[str, Any]) -> None:
        """Publish outside a turn; a lost room still ends the session."""
        try:
            await self._publish(payload)
        except RoomDisconnected:
            logger.warning("room_disconnected", session_id=self.id, state=self.state.value)
            await self.stop("room_disconnected")

    def describe(self) -> Dict[str, Any]:
        return {
            "session_id": self.id,
            "candidate_id": self.session.candidate_id,
            "mode": self.session.mode.value,
            "state": self.state.value,
            "status": self.session.status.value,
            "progress": self.engine.progress(),
            "dropped_frames": self.dropped_frames,
            "created_at": self.session.created_at.isoformat(),
        }
