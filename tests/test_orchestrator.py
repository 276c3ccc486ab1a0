# tests/test_orchestrator.py
import asyncio
import random

import pytest

from interview_voice.application.interview_session import InterviewMode, InterviewSession, Role
from interview_voice.application.orchestrator import REPEAT_LINE, SessionOrchestrator, TurnState
from interview_voice.core.config import Settings
from interview_voice.core.exceptions import ProviderError, SessionAlreadyProcessing
from interview_voice.core.interfaces import RoomEventKind
from interview_voice.interface.api.room import WebSocketRoom
from interview_voice.managers.interview import CLOSING_REMARK, FOLLOW_UPS, MODE_FOLLOW_UPS, AnswerPolicy, DialogueEngine

from fakes import FakeProvider, FakeRoom, FakeWebSocket, eventually, silence, speech, tone, transcript_of

QUESTION = "Tell me about a project you led."
GOOD_ANSWER = "I led a migration project, redesigned the pipeline, and cut latency by 40%."


@pytest.fixture
def make_orchestrator(pipeline_settings, room, make_transcription, make_synthesis):
    def factory(script=(QUESTION,), stt=None, tts=None, transcription=None, synthesis=None,
                target_room=None, on_completed=None, name="Ada", settings=None, dialogue=None):
        settings = settings or pipeline_settings
        transcription = transcription or make_transcription(stt or FakeProvider("whisper", transcript_of(GOOD_ANSWER)))
        synthesis = synthesis or make_synthesis(tts or FakeProvider("openai_tts", tone))
        session = InterviewSession(candidate_id=f"cand-{name}", script=list(script),
                                   mode=InterviewMode.BEHAVIORAL, candidate_name=name)
        engine = DialogueEngine(session, AnswerPolicy.from_settings(settings), random.Random(1), dialogue=dialogue)
        return SessionOrchestrator(session, target_room or room, transcription, synthesis,
                                   settings=settings, engine=engine, on_completed=on_completed)
    return factory


@pytest.mark.asyncio
async def test_start_speaks_opening_then_listens(make_orchestrator, room):
    tts = FakeProvider("openai_tts", tone)
    orchestrator = make_orchestrator(tts=tts)

    await orchestrator.start()

    assert orchestrator.state == TurnState.LISTENING
    assert orchestrator.state_history == [
        TurnState.IDLE, TurnState.RESPONDING, TurnState.SPEAKING, TurnState.LISTENING,
    ]
    opening = room.messages("interviewer")[0]
    assert "Ada" in opening["text"]
    assert opening["text"].endswith(QUESTION)
    assert opening["audio"] is True
    assert len(room.audio) == 1
    assert len(tts.calls) == 1
    assert orchestrator.session.messages[0].role == Role.SYSTEM

    with pytest.raises(SessionAlreadyProcessing):
        await orchestrator.start()
    await orchestrator.stop()

@pytest.mark.asyncio
async def test_single_question_interview_completes_in_one_turn(make_orchestrator, room):
    reports = []

    async def record(report):
        reports.append(report)

    stt = FakeProvider("whisper", transcript_of(GOOD_ANSWER))
    tts = FakeProvider("openai_tts", tone)
    orchestrator = make_orchestrator(stt=stt, tts=tts, on_completed=record)
    await orchestrator.start()

    room.say(speech_frames=10, silence_frames=30)
    assert orchestrator.state == TurnState.TRANSCRIBING
    await orchestrator.wait_for_turn()

    assert orchestrator.session.script_index == 1
    assert orchestrator.state_history[-6:] == [
        TurnState.LISTENING, TurnState.TRANSCRIBING, TurnState.RESPONDING,
        TurnState.SPEAKING, TurnState.COMPLETING, TurnState.ENDED,
    ]
    assert len(stt.calls) == 1
    assert len(tts.calls) == 2
    # Silence frames after the end of speech are dropped, not buffered
    assert orchestrator.dropped_frames == 5

    closing = room.messages("interviewer")[-1]
    assert closing["text"].endswith(CLOSING_REMARK)
    assert room.data[-1]["type"] == "interview_complete"
    assert orchestrator.end_reason == "completed"

    assert len(reports) == 1
    report = reports[0]
    assert report.session_id == orchestrator.session.id
    assert report.script_index == 1
    assert [m.role for m in report.messages] == [Role.SYSTEM, Role.INTERVIEWER, Role.CANDIDATE, Role.INTERVIEWER]
    assert report.ended_at is not None
    assert report.end_reason == "completed"
    assert report.completed is True
    assert room.handler is None

@pytest.mark.asyncio
async def test_weak_answer_gets_follow_up_and_keeps_listening(make_orchestrator, room):
    stt = FakeProvider("whisper", transcript_of("Yes.", GOOD_ANSWER))
    orchestrator = make_orchestrator(stt=stt)
    await orchestrator.start()

    room.say()
    await orchestrator.wait_for_turn()

    assert orchestrator.state == TurnState.LISTENING
    assert orchestrator.session.script_index == 0
    follow_up = room.messages("interviewer")[-1]["text"]
    assert follow_up in FOLLOW_UPS + MODE_FOLLOW_UPS[InterviewMode.BEHAVIORAL]

    room.say()
    await orchestrator.wait_for_turn()
    assert orchestrator.session.script_index == 1
    assert orchestrator.state == TurnState.ENDED

@pytest.mark.asyncio
async def test_frames_are_dropped_while_speaking(make_orchestrator, room):
    gate = asyncio.Event()
    stt = FakeProvider("whisper", transcript_of(GOOD_ANSWER))
    tts = FakeProvider("openai_tts", tone, gate=gate)
    orchestrator = make_orchestrator(stt=stt, tts=tts)

    starting = asyncio.create_task(orchestrator.start())
    await eventually(lambda: tts.calls)
    assert orchestrator.state == TurnState.SPEAKING

    room.say()
    assert orchestrator.dropped_frames == 2
    assert orchestrator.vad.speaking is False

    gate.set()
    await starting
    assert orchestrator.state == TurnState.LISTENING
    assert stt.calls == []
    await orchestrator.stop()

@pytest.mark.asyncio
async def test_stop_discards_in_flight_turn(make_orchestrator, room):
    reports = []
    gate = asyncio.Event()
    stt = FakeProvider("whisper", transcript_of(GOOD_ANSWER), gate=gate)
    tts = FakeProvider("openai_tts", tone)
    orchestrator = make_orchestrator(stt=stt, tts=tts, on_completed=reports.append)
    await orchestrator.start()

    room.say()
    await eventually(lambda: stt.calls)
    assert orchestrator.state == TurnState.TRANSCRIBING

    await orchestrator.stop("candidate_left")
    gate.set()
    await asyncio.sleep(0)

    assert orchestrator.state == TurnState.ENDED
    assert orchestrator.session.last_message(Role.CANDIDATE) is None
    assert orchestrator.session.script_index == 0
    assert len(tts.calls) == 1
    assert [r.end_reason for r in reports] == ["candidate_left"]
    assert reports[0].completed is False
    assert orchestrator.ended.is_set()

    await orchestrator.stop("again")
    assert orchestrator.end_reason == "candidate_left"
    assert orchestrator.state_history.count(TurnState.ENDED) == 1

@pytest.mark.asyncio
async def test_transcription_outage_asks_candidate_to_repeat(make_orchestrator, room):
    stt = FakeProvider("whisper", transcript_of(GOOD_ANSWER), errors=[ProviderError("whisper", "HTTP 400")])
    tts = FakeProvider("openai_tts", tone)
    orchestrator = make_orchestrator(stt=stt, tts=tts)
    await orchestrator.start()

    room.say()
    await orchestrator.wait_for_turn()

    assert orchestrator.state == TurnState.LISTENING
    assert room.messages("interviewer")[-1]["text"] == REPEAT_LINE
    assert tts.calls[-1].text == REPEAT_LINE
    assert orchestrator.session.script_index == 0

    room.say()
    await orchestrator.wait_for_turn()
    assert orchestrator.session.script_index == 1

@pytest.mark.asyncio
async def test_empty_transcript_returns_to_listening_silently(make_orchestrator, room):
    stt = FakeProvider("whisper", transcript_of("   "))
    tts = FakeProvider("openai_tts", tone)
    orchestrator = make_orchestrator(stt=stt, tts=tts)
    await orchestrator.start()

    room.say()
    await orchestrator.wait_for_turn()

    assert orchestrator.state == TurnState.LISTENING
    assert len(tts.calls) == 1
    assert orchestrator.session.last_message(Role.CANDIDATE) is None
    await orchestrator.stop()

@pytest.mark.asyncio
async def test_synthesis_failure_sends_text_only(make_orchestrator, room):
    tts = FakeProvider("openai_tts", tone, errors=[ProviderError("openai_tts", "HTTP 400")] * 5)
    orchestrator = make_orchestrator(tts=tts)
    await orchestrator.start()

    opening = room.messages("interviewer")[0]
    assert opening["audio"] is False
    assert room.audio == []
    assert orchestrator.state == TurnState.LISTENING
    await orchestrator.stop()

@pytest.mark.asyncio
async def test_typed_answer_skips_transcription(make_orchestrator, room):
    stt = FakeProvider("whisper", transcript_of(GOOD_ANSWER))
    orchestrator = make_orchestrator(stt=stt)
    await orchestrator.start()

    room.emit(RoomEventKind.DATA, data={"type": "candidate_text", "text": GOOD_ANSWER})
    await orchestrator.wait_for_turn()

    assert stt.calls == []
    assert orchestrator.session.script_index == 1
    assert room.messages("candidate")[0]["text"] == GOOD_ANSWER

@pytest.mark.asyncio
async def test_second_answer_rejected_while_turn_in_flight(make_orchestrator, room):
    gate = asyncio.Event()
    stt = FakeProvider("whisper", transcript_of(GOOD_ANSWER), gate=gate)
    orchestrator = make_orchestrator(stt=stt)
    await orchestrator.start()

    room.say()
    with pytest.raises(SessionAlreadyProcessing):
        orchestrator.submit_text("Another answer while the first is transcribed.")

    room.emit(RoomEventKind.DATA, data={"type": "candidate_text", "text": GOOD_ANSWER})
    await eventually(lambda: any(d.get("type") == "error" for d in room.data))
    assert [d["code"] for d in room.data if d.get("type") == "error"] == ["session_busy"]

    gate.set()
    await orchestrator.wait_for_turn()
    assert orchestrator.session.script_index == 1
    assert len(room.messages("candidate")) == 1

@pytest.mark.asyncio
async def test_room_disconnect_mid_turn_tears_down(make_orchestrator, room):
    orchestrator = make_orchestrator()
    await orchestrator.start()

    room.disconnected = True
    room.say()
    await orchestrator.wait_for_turn()

    assert orchestrator.state == TurnState.ENDED
    assert orchestrator.end_reason == "room_disconnected"

@pytest.mark.asyncio
async def test_disconnect_event_ends_session(make_orchestrator, room):
    orchestrator = make_orchestrator()
    await orchestrator.start()

    room.emit(RoomEventKind.DISCONNECTED)
    await asyncio.wait_for(orchestrator.wait_closed(), timeout=1)
    assert orchestrator.end_reason == "room_disconnected"

@pytest.mark.asyncio
async def test_stop_message_ends_session(make_orchestrator, room):
    orchestrator = make_orchestrator()
    await orchestrator.start()

    room.emit(RoomEventKind.DATA, data={"type": "stop"})
    await asyncio.wait_for(orchestrator.wait_closed(), timeout=1)
    assert orchestrator.end_reason == "candidate_stopped"

@pytest.mark.asyncio
async def test_long_utterance_is_cut_at_limit(make_orchestrator, room):
    settings = Settings(ENVIRONMENT="testing", LOCAL_WHISPER_ENABLED=False, MAX_UTTERANCE_SECONDS=0.5)
    stt = FakeProvider("whisper", transcript_of("Yes."))
    orchestrator = make_orchestrator(stt=stt, settings=settings)
    await orchestrator.start()

    room.send_audio(speech(40))
    assert orchestrator.state == TurnState.TRANSCRIBING
    await orchestrator.wait_for_turn()

    assert stt.calls[0].segment.duration == pytest.approx(16 * 512 / 16000)
    await orchestrator.stop()

@pytest.mark.asyncio
async def test_sessions_share_gateway_quota(make_orchestrator, make_transcription, make_synthesis, sleeper):
    a = FakeProvider("A", transcript_of(GOOD_ANSWER))
    b = FakeProvider("B", transcript_of(GOOD_ANSWER))
    transcription = make_transcription(a, b, caps=[1, 5])
    synthesis = make_synthesis(FakeProvider("openai_tts", tone))
    room_one, room_two = FakeRoom(), FakeRoom()
    first = make_orchestrator(transcription=transcription, synthesis=synthesis, target_room=room_one, name="Ada")
    second = make_orchestrator(transcription=transcription, synthesis=synthesis, target_room=room_two, name="Grace")

    await asyncio.gather(first.start(), second.start())
    assert "Ada" in room_one.messages("interviewer")[0]["text"]
    assert "Grace" in room_two.messages("interviewer")[0]["text"]

    room_one.say()
    room_two.say()
    await asyncio.gather(first.wait_for_turn(), second.wait_for_turn())

    assert len(a.calls) == 1
    assert len(b.calls) == 1
    assert sleeper.delays == []
    assert first.session.script_index == 1
    assert second.session.script_index == 1
    assert first.session.id != second.session.id
    assert transcription.limiter.state("A").remaining() == 0

@pytest.mark.asyncio
async def test_frames_are_dropped_until_playback_finishes(make_orchestrator, room):
    stt = FakeProvider("whisper", transcript_of(GOOD_ANSWER))
    orchestrator = make_orchestrator(stt=stt)
    room.playback = asyncio.Event()

    starting = asyncio.create_task(orchestrator.start())
    await eventually(lambda: room.audio)
    assert orchestrator.state == TurnState.SPEAKING

    # The candidate's microphone picks up the interviewer's own voice
    room.say()
    assert orchestrator.dropped_frames == 2
    assert not any(d.get("type") == "listening" for d in room.data)

    room.playback.set()
    await starting
    assert orchestrator.state == TurnState.LISTENING
    assert stt.calls == []
    await orchestrator.stop()

@pytest.mark.asyncio
async def test_websocket_room_holds_speaking_for_the_clip_duration(make_orchestrator):
    played = asyncio.Event()
    waits = []

    async def playback(seconds):
        waits.append(seconds)
        await played.wait()

    socket = FakeWebSocket()
    socket_room = WebSocketRoom(socket, sample_rate=16000, playback_tail=0.2, sleep=playback)
    stt = FakeProvider("whisper", transcript_of(GOOD_ANSWER))
    orchestrator = make_orchestrator(stt=stt, target_room=socket_room)

    starting = asyncio.create_task(orchestrator.start())
    await eventually(lambda: waits)
    assert orchestrator.state == TurnState.SPEAKING
    assert waits == [pytest.approx(1600 / 16000 + 0.2)]

    socket_room.dispatch(RoomEventKind.AUDIO_FRAME, samples=speech(10))
    socket_room.dispatch(RoomEventKind.AUDIO_FRAME, samples=silence(30))
    assert orchestrator.dropped_frames == 2

    played.set()
    await starting
    assert orchestrator.state == TurnState.LISTENING
    assert stt.calls == []
    assert len(socket.sent_bytes) == 1
    await orchestrator.stop()

@pytest.mark.asyncio
async def test_early_stop_still_delivers_report(make_orchestrator, room):
    reports = []
    script = (QUESTION, "How do you handle disagreements?", "Where do you want to grow?")
    orchestrator = make_orchestrator(script=script, on_completed=reports.append)
    await orchestrator.start()

    room.say()
    await orchestrator.wait_for_turn()
    assert orchestrator.session.script_index == 1

    room.emit(RoomEventKind.DATA, data={"type": "stop"})
    await asyncio.wait_for(orchestrator.wait_closed(), timeout=1)

    assert orchestrator.state == TurnState.ENDED
    assert len(reports) == 1
    report = reports[0]
    assert report.end_reason == "candidate_stopped"
    assert report.completed is False
    assert report.script_index == 1
    assert report.script_length == 3
    assert [m.role for m in report.messages] == [Role.SYSTEM, Role.INTERVIEWER, Role.CANDIDATE, Role.INTERVIEWER]
    assert report.to_dict()["end_reason"] == "candidate_stopped"

    await orchestrator.stop("again")
    assert len(reports) == 1

@pytest.mark.asyncio
async def test_failing_report_callback_still_ends_session(make_orchestrator, room):
    def broken(report):
        raise RuntimeError("feedback store down")

    orchestrator = make_orchestrator(on_completed=broken)
    await orchestrator.start()

    await orchestrator.stop("candidate_stopped")
    assert orchestrator.state == TurnState.ENDED
    assert orchestrator.ended.is_set()

@pytest.mark.asyncio
async def test_participant_left_ends_session(make_orchestrator, room):
    reports = []
    orchestrator = make_orchestrator(on_completed=reports.append)
    await orchestrator.start()

    room.emit(RoomEventKind.PARTICIPANT_LEFT)
    await asyncio.wait_for(orchestrator.wait_closed(), timeout=1)

    assert orchestrator.end_reason == "participant_left"
    assert [r.end_reason for r in reports] == ["participant_left"]
    assert room.handler is None

@pytest.mark.asyncio
async def test_completion_service_words_follow_up_and_acknowledgment(make_orchestrator, make_dialogue, room):
    replies = ["What part of that did you own?", "Cutting latency by 40% is a strong result."]
    chat = FakeProvider("openai_chat", lambda request: replies.pop(0))
    stt = FakeProvider("whisper", transcript_of("Yes.", GOOD_ANSWER))
    orchestrator = make_orchestrator(stt=stt, dialogue=make_dialogue(chat))
    await orchestrator.start()
    assert chat.calls == []

    room.say()
    await orchestrator.wait_for_turn()
    assert room.messages("interviewer")[-1]["text"] == "What part of that did you own?"
    assert orchestrator.session.script_index == 0
    request = chat.calls[0]
    assert request.messages[0]["role"] == "system"
    assert {"role": "user", "content": "Yes."} in request.messages

    room.say()
    await orchestrator.wait_for_turn()
    closing = room.messages("interviewer")[-1]["text"]
    assert closing == f"Cutting latency by 40% is a strong result. {CLOSING_REMARK}"
    assert orchestrator.session.script_index == 1
    assert orchestrator.end_reason == "completed"

@pytest.mark.asyncio
async def test_completion_outage_falls_back_to_stock_follow_up(make_orchestrator, make_dialogue, room):
    chat = FakeProvider("openai_chat", lambda request: "unused", errors=[ProviderError("openai_chat", "HTTP 401")])
    stt = FakeProvider("whisper", transcript_of("Yes."))
    orchestrator = make_orchestrator(stt=stt, dialogue=make_dialogue(chat))
    await orchestrator.start()

    room.say()
    await orchestrator.wait_for_turn()

    assert len(chat.calls) == 1
    assert room.messages("interviewer")[-1]["text"] in FOLLOW_UPS + MODE_FOLLOW_UPS[InterviewMode.BEHAVIORAL]
    assert orchestrator.state == TurnState.LISTENING
    await orchestrator.stop()
