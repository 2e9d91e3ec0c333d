from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CallStatus(str, Enum):
    QUEUED = "queued"
    INITIATED = "initiated"
    RINGING = "ringing"
    IN_PROGRESS = "in-progress"
    ANSWERED = "answered"
    COMPLETED = "completed"
    BUSY = "busy"
    NO_ANSWER = "no-answer"
    FAILED = "failed"
    CANCELED = "canceled"


TERMINAL_STATUSES = frozenset({
    CallStatus.COMPLETED.value,
    CallStatus.BUSY.value,
    CallStatus.NO_ANSWER.value,
    CallStatus.FAILED.value,
    CallStatus.CANCELED.value,
})

ANSWERED_STATUSES = frozenset({CallStatus.ANSWERED.value, CallStatus.IN_PROGRESS.value})


class RecordingState(str, Enum):
    NO_RECORDING = "no-recording"
    MONO_ACTIVE = "mono-active"
    DUAL_PENDING = "dual-pending"
    DUAL_ACTIVE = "dual-active"
    SUPERSEDED = "superseded"
    FAILED = "failed"


class SpeakerRole(str, Enum):
    AGENT = "agent"
    CUSTOMER = "customer"
    UNKNOWN = "unknown"


class TranscriptProvenance(str, Enum):
    DIARIZED_SENTENCES = "diarized-sentences"
    DIARIZED_WORDS = "diarized-words"
    FLAT = "flat"


# Higher wins when two results for the same call race each other.
PROVENANCE_RANK = {
    TranscriptProvenance.FLAT.value: 1,
    TranscriptProvenance.DIARIZED_WORDS.value: 2,
    TranscriptProvenance.DIARIZED_SENTENCES.value: 3,
}


class TranscriptOutcome(str, Enum):
    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"
    SKIPPED = "skipped"


class ChannelRoleMap(BaseModel):
    agent_channel: int = 1
    customer_channel: int = 2

    @classmethod
    def for_agent_channel(cls, agent_channel: int) -> "ChannelRoleMap":
        agent = 2 if agent_channel == 2 else 1
        return cls(agent_channel=agent, customer_channel=1 if agent == 2 else 2)

    def role_for_channel(self, channel: Optional[int]) -> SpeakerRole:
        if channel == self.agent_channel:
            return SpeakerRole.AGENT
        if channel == self.customer_channel:
            return SpeakerRole.CUSTOMER
        return SpeakerRole.UNKNOWN


class Utterance(BaseModel):
    start_time_seconds: float = 0.0
    channel: Optional[int] = None
    speaker_role: SpeakerRole = SpeakerRole.UNKNOWN
    text: str
    confidence: Optional[float] = None


class ContractFacts(BaseModel):
    current_rate: str = ""
    rate_type: str = ""
    supplier: str = ""
    contract_end: str = ""
    usage_kwh: str = ""
    contract_length: str = ""


class Insight(BaseModel):
    summary: str = ""
    sentiment: str = "Neutral"
    sentiment_score: Optional[float] = None
    key_topics: List[str] = Field(default_factory=list)
    next_steps: List[str] = Field(default_factory=list)
    pain_points: List[str] = Field(default_factory=list)
    budget: Optional[str] = None
    timeline: Optional[str] = None
    decision_makers: List[str] = Field(default_factory=list)
    contract: ContractFacts = Field(default_factory=ContractFacts)
    disposition: Optional[str] = None
    flags: Dict[str, bool] = Field(default_factory=dict)
    entities: List[Any] = Field(default_factory=list)
    source: str = "heuristic"


# Normalized inbound callbacks, one per callback kind.

class CallStatusEvent(BaseModel):
    call_id: Optional[str] = None
    status: Optional[str] = None
    from_number: Optional[str] = None
    to_number: Optional[str] = None
    direction: Optional[str] = None
    duration_seconds: Optional[int] = None
    recording_url: Optional[str] = None
    parent_call_id: Optional[str] = None
    dial_call_id: Optional[str] = None


class DialStatusEvent(BaseModel):
    parent_call_id: Optional[str] = None
    child_call_id: Optional[str] = None
    dial_status: Optional[str] = None
    from_number: Optional[str] = None
    to_number: Optional[str] = None
    direction: Optional[str] = None


class RecordingStatusEvent(BaseModel):
    recording_id: Optional[str] = None
    call_id: Optional[str] = None
    status: Optional[str] = None
    channels: int = 1
    source: Optional[str] = None
    duration_seconds: Optional[int] = None
    url: Optional[str] = None


class TranscriptStatusEvent(BaseModel):
    transcript_id: Optional[str] = None
    service_id: Optional[str] = None
    status: Optional[str] = None
    call_id: Optional[str] = None
    recording_id: Optional[str] = None
    customer_key: Optional[str] = None


class OperatorResultEvent(BaseModel):
    call_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class TranscriptResult(BaseModel):
    outcome: TranscriptOutcome
    call_id: Optional[str] = None
    recording_id: Optional[str] = None
    transcript_id: Optional[str] = None
    provenance: Optional[TranscriptProvenance] = None
    utterances: List[Utterance] = Field(default_factory=list)
    insight: Optional[Insight] = None
    reason: Optional[str] = None


# Merge-store write endpoint and read models.

class CallUpsertRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    call_id: Optional[str] = None
    recording_id: Optional[str] = None
    transcript_id: Optional[str] = None


class CallRead(BaseModel):
    model_config = ConfigDict(extra="allow")

    call_id: str
    status: Optional[str] = None
    from_number: Optional[str] = None
    to_number: Optional[str] = None
    direction: Optional[str] = None
    duration_seconds: Optional[int] = None
    business_phone: Optional[str] = None
    counterparty_phone: Optional[str] = None
    recording_url: Optional[str] = None
    recording_state: Optional[str] = None
    transcript: Optional[str] = None
    transcript_provenance: Optional[str] = None
    utterances: Optional[List[Dict[str, Any]]] = None
    insight: Optional[Dict[str, Any]] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class CallListResponse(BaseModel):
    items: List[CallRead]
    total: int
    page: int
    page_size: int
