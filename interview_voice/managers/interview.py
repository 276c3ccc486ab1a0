import random
import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, List, Optional, Sequence

import structlog

from ..application.interview_session import InterviewMode, InterviewSession, Message, Role
from ..core.config import Settings
from ..core.exceptions import ProviderUnavailable
from ..gateways.dialogue import ChatMessage, DialogueGateway

logger = structlog.get_logger(__name__)

SYSTEM_PROMPTS: Dict[InterviewMode, str] = {
    InterviewMode.TECHNICAL: (
        "You are conducting a technical interview. Ask clear, specific questions about "
        "programming concepts, system design, and problem-solving. Keep responses under "
        "30 seconds when spoken. Be professional but encouraging."
    ),
    InterviewMode.BEHAVIORAL: (
        "You are conducting a behavioral interview using the STAR method. Ask about past "
        "experiences, teamwork, and problem-solving situations. Keep responses "
        "conversational and under 30 seconds."
    ),
    InterviewMode.MIXED: (
        "You are conducting a comprehensive interview mixing technical and behavioral "
        "questions. Adapt your style to the question type and keep responses concise "
        "for voice interaction."
    ),
}

FOLLOW_UPS = [
    "Can you tell me more about your specific role in that?",
    "What challenges did you face and how did you overcome them?",
    "Can you walk me through your thought process?",
    "What would you do differently if you had to do it again?",
    "How did you measure the success of that?",
]

MODE_FOLLOW_UPS: Dict[InterviewMode, List[str]] = {
    InterviewMode.TECHNICAL: [
        "Could you go into the implementation details a bit more?",
        "What trade-offs did you consider in that design?",
    ],
    InterviewMode.BEHAVIORAL: [
        "What was the situation, and what action did you personally take?",
        "What was the result, and how did you know it worked?",
    ],
    InterviewMode.MIXED: [],
}

ACKNOWLEDGMENTS = [
    "That's a great example.",
    "I appreciate the detail in your response.",
    "That shows good problem-solving skills.",
    "Thank you for that insight.",
    "That's exactly the kind of thinking we're looking for.",
]

CLOSING_REMARK = (
    "Thank you for answering all the questions. "
    "We'll now conclude the interview and generate your feedback."
)

# Instructions appended after the transcript when a completion service words the reply.
FOLLOW_UP_INSTRUCTION = (
    "The candidate's last answer was short or lacked specifics. Ask exactly one brief "
    "follow-up question about that answer. Reply with the question only."
)
ACKNOWLEDGE_INSTRUCTION = (
    "The candidate gave a solid answer. Acknowledge it in one short, specific sentence. "
    "Do not ask a question and do not introduce the next topic."
)


class UtteranceKind(str, Enum):
    OPENING = "opening"
    FOLLOW_UP = "follow_up"
    ADVANCE = "advance"
    CLOSING = "closing"
    REPEAT = "repeat"


@dataclass(frozen=True)
class Utterance:
    text: str
    advanced: bool = False
    complete: bool = False
    kind: UtteranceKind = UtteranceKind.FOLLOW_UP


class AnswerPolicy:
    """
    Decides whether an answer is substantial enough to move on.

    Baseline heuristic: at least ``min_words`` words and some specific
    language, i.e. an action keyword or a concrete number.
    """

    NUMBER_PATTERN = re.compile(r"\d")

    def __init__(self, min_words: int = 10, keywords: Sequence[str] = ()):
        self.min_words = min_words
        self.keywords = [k.lower() for k in keywords if k.strip()]
        if self.keywords:
            alternatives = "|".join(re.escape(k) for k in self.keywords)
            self.keyword_pattern: Optional[re.Pattern] = re.compile(rf"\b(?:{alternatives})\b", re.IGNORECASE)
        else:
            self.keyword_pattern = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "AnswerPolicy":
        return cls(min_words=settings.MIN_ANSWER_WORDS, keywords=settings.ANSWER_KEYWORDS)

    def word_count(self, text: str) -> int:
        return len(text.split())

    def has_specifics(self, text: str) -> bool:
        if self.NUMBER_PATTERN.search(text):
            return True
        return bool(self.keyword_pattern and self.keyword_pattern.search(text))

    def needs_follow_up(self, text: str) -> bool:
        return self.word_count(text) < self.min_words or not self.has_specifics(text)


class DialogueEngine:
    """
    Chooses the interviewer's next line for one session.

    Two states: awaiting an answer to ``script[script_index]``, or complete
    once the index reaches the end of the script. Each answer either earns a
    follow-up (index unchanged) or an acknowledgment plus the next prompt
    (index + 1). Only the policy decides which; a completion service, when
    one is wired in, only words the follow-up or the acknowledgment.
    """

    def __init__(self,
                 session: InterviewSession,
                 policy: Optional[AnswerPolicy] = None,
                 rng: Optional[random.Random] = None,
                 dialogue: Optional[DialogueGateway] = None,
                 context_messages: int = 10):
        self.session = session
        self.policy = policy or AnswerPolicy()
        self.rng = rng or random.Random()
        self.dialogue = dialogue
        self.context_messages = context_messages

    @property
    def system_prompt(self) -> str:
        return SYSTEM_PROMPTS[self.session.mode]

    def opening(self) -> Utterance:
        name = self.session.candidate_name
        greeting = f"Hello {name}." if name else "Hello!"
        intro = f"{greeting} Welcome to your {self.session.mode.value} interview practice session."
        if self.session.script_complete:
            return Utterance(text=f"{intro} {CLOSING_REMARK}", complete=True, kind=UtteranceKind.CLOSING)
        return Utterance(
            text=f"{intro} Let's begin with our first question: {self.session.current_prompt}",
            kind=UtteranceKind.OPENING,
        )

    def _pending_answer(self, history: Sequence[Message]) -> Optional[Message]:
        """The candidate's answer to the last interviewer line, if any."""
        for message in reversed(history):
            if message.role == Role.CANDIDATE:
                return message
            if message.role == Role.INTERVIEWER:
                return None
        return None

    def _advance_text(self, acknowledgment: str) -> str:
        if self.session.script_complete:
            return f"{acknowledgment} {CLOSING_REMARK}"
        return f"{acknowledgment} Let's move on to the next question: {self.session.current_prompt}"

    def next_utterance(self, history: Optional[Sequence[Message]] = None) -> Utterance:
        if history is None:
            history = self.session.messages
        spoken = [m for m in history if m.role != Role.SYSTEM]

        if not any(m.role == Role.CANDIDATE for m in spoken):
            return self.opening()
        if self.session.script_complete:
            return Utterance(text=CLOSING_REMARK, complete=True, kind=UtteranceKind.CLOSING)

        answer = self._pending_answer(spoken)
        if answer is None:
            return Utterance(text=f"Let me repeat the question: {self.session.current_prompt}",
                             kind=UtteranceKind.REPEAT)

        if self.policy.needs_follow_up(answer.text):
            logger.debug("answer_needs_follow_up", words=self.policy.word_count(answer.text),
                         script_index=self.session.script_index)
            pool = FOLLOW_UPS + MODE_FOLLOW_UPS.get(self.session.mode, [])
            return Utterance(text=self.rng.choice(pool), kind=UtteranceKind.FOLLOW_UP)

        self.session.advance_script()
        logger.info("script_advanced", script_index=self.session.script_index,
                    script_length=len(self.session.script))
        return Utterance(
            text=self._advance_text(self.rng.choice(ACKNOWLEDGMENTS)),
            advanced=True,
            complete=self.session.script_complete,
            kind=UtteranceKind.ADVANCE,
        )

    def chat_messages(self, history: Sequence[Message], instruction: str) -> List[ChatMessage]:
        """System prompt, the recent transcript and one instruction, in chat format."""
        spoken = [m for m in history if m.role != Role.SYSTEM][-self.context_messages:]
        messages: List[ChatMessage] = [{"role": "system", "content": self.system_prompt}]
        for message in spoken:
            role = "user" if message.role == Role.CANDIDATE else "assistant"
            messages.append({"role": role, "content": message.text})
        messages.append({"role": "system", "content": instruction})
        return messages

    async def respond(self, history: Optional[Sequence[Message]] = None) -> Utterance:
        """next_utterance(), with follow-ups and acknowledgments worded by the completion service."""
        if history is None:
            history = self.session.messages
        utterance = self.next_utterance(history)
        if self.dialogue is None or utterance.kind not in (UtteranceKind.FOLLOW_UP, UtteranceKind.ADVANCE):
            return utterance

        follow_up = utterance.kind == UtteranceKind.FOLLOW_UP
        instruction = FOLLOW_UP_INSTRUCTION if follow_up else ACKNOWLEDGE_INSTRUCTION
        try:
            phrased = await self.dialogue.complete(self.chat_messages(history, instruction))
        except ProviderUnavailable as e:
            logger.warning("dialogue_unavailable_using_stock_phrase", kind=utterance.kind.value, error=str(e))
            return utterance
        if follow_up:
            return replace(utterance, text=phrased)
        return replace(utterance, text=self._advance_text(phrased))

    def progress(self) -> Dict[str, int]:
        total = len(self.session.script)
        current = self.session.script_index
        return {
            "current": current,
            "total": total,
            "percentage": round(current / total * 100) if total else 100,
        }
