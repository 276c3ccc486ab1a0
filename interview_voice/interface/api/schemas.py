from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from ...application.interview_session import InterviewMode


class JoinRequest(BaseModel):
    """First message a client sends on the interview socket."""
    type: Literal["join"] = "join"
    candidate_id: str = Field(min_length=1)
    candidate_name: Optional[str] = None
    mode: InterviewMode = InterviewMode.MIXED
    script: List[str] = Field(default_factory=list)
    sample_rate: int = Field(default=16000, gt=0)


class ProviderStatus(BaseModel):
    name: str
    priority: int
    available: bool
    remaining: int
    max_requests: int
    resets_in: float


class ProvidersResponse(BaseModel):
    transcription: List[ProviderStatus]
    synthesis: List[ProviderStatus]
    dialogue: List[ProviderStatus] = Field(default_factory=list)


class SessionsResponse(BaseModel):
    active: int
    sessions: List[Dict[str, Any]]


class StopResponse(BaseModel):
    session_id: str
    stopped: bool
