import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    CANDIDATE = "candidate"
    INTERVIEWER = "interviewer"
    SYSTEM = "system"


class InterviewMode(str, Enum):
    TECHNICAL = "technical"
    BEHAVIORAL = "behavioral"
    MIXED = "mixed"


class SessionStatus(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    COMPLETING = "completing"
    ENDED = "ended"


@dataclass(frozen=True)
class Message:
    role: Role
    text: str
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role.value, "text": self.text, "timestamp": self.timestamp.isoformat()}


@dataclass
class InterviewSession:
    candidate_id: str
    script: List[str]
    mode: InterviewMode = InterviewMode.MIXED
    candidate_name: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    messages: List[Message] = field(default_factory=list)
    script_index: int = 0
    status: SessionStatus = SessionStatus.IDLE
    created_at: datetime = field(default_factory=utcnow)
    ended_at: datetime | None = None

    def append(self, role: Role, text: str) -> Message:
        timestamp = utcnow()
        # Keep history ordered even if the wall clock steps backwards.
        if self.messages and timestamp < self.messages[-1].timestamp:
            timestamp = self.messages[-1].timestamp
        message = Message(role=role, text=text, timestamp=timestamp)
        self.messages.append(message)
        return message

    def advance_script(self) -> int:
        if self.script_index >= len(self.script):
            raise ValueError(f"script index {self.script_index} already at the end of the script")
        self.script_index += 1
        return self.script_index

    @property
    def script_complete(self) -> bool:
        return self.script_index >= len(self.script)

    @property
    def current_prompt(self) -> Optional[str]:
        if self.script_complete:
            return None
        return self.script[self.script_index]

    def last_message(self, role: Role) -> Optional[Message]:
        for message in reversed(self.messages):
            if message.role == role:
                return message
        return None

    def report(self, end_reason: Optional[str] = None) -> "SessionReport":
        return SessionReport(
            session_id=self.id,
            candidate_id=self.candidate_id,
            mode=self.mode,
            messages=list(self.messages),
            script_index=self.script_index,
            script_length=len(self.script),
            created_at=self.created_at,
            ended_at=self.ended_at,
            end_reason=end_reason,
        )


@dataclass(frozen=True)
class SessionReport:
    """
    What the feedback generator receives once a session has ended, for any
    reason. ``end_reason`` is "completed" only when the whole script was
    covered.
    """
    session_id: str
    candidate_id: str
    mode: InterviewMode
    messages: List[Message]
    script_index: int
    script_length: int
    created_at: datetime
    ended_at: datetime | None = None
    end_reason: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.end_reason == "completed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "candidate_id": self.candidate_id,
            "mode": self.mode.value,
            "messages": [m.to_dict() for m in self.messages],
            "script_index": self.script_index,
            "script_length": self.script_length,
            "created_at": self.created_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "end_reason": self.end_reason,
        }
