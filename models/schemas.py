"""
Core data models for the voice agent.
These are the universal types shared by the server, the pipeline and the client.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class TurnState(str, Enum):
    IDLE = "idle"
    GREETING = "greeting"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"
    INTERRUPTED = "interrupted"


class Speaker(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ServerEvent(str, Enum):
    """Message types the server sends to the client."""
    MODEL_CONFIRMED = "model_confirmed"
    AI_RESPONSE = "ai_response"
    STT_READY = "stt_ready"
    TRANSCRIPT = "transcript"
    USER_SPEECH_START = "user_speech_start"
    USER_SPEECH_END = "user_speech_end"
    AI_THINKING = "ai_thinking"
    AI_AUDIO_CHUNK = "ai_audio_chunk"
    AI_RESPONSE_COMPLETE = "ai_response_complete"
    STOP_PLAYBACK = "stop_playback"
    ERROR = "error"
    STOPPED = "stopped"
    RESET = "reset"


# ──────────────────────────────────────────────────────────────
#  Conversation data
# ──────────────────────────────────────────────────────────────

class HistoryEntry(BaseModel):
    role: Speaker
    content: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    def to_message(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class Capabilities(BaseModel):
    """Client capability descriptor, supplied once at session start."""
    is_mobile: bool = False


class Persona(BaseModel):
    """Persona selectors carried by the start message."""
    role: str = ""
    personality: str = ""
    word_limit: Optional[int] = None


class TranscriptEvent(BaseModel):
    text: str
    is_final: bool = False
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class AudioFragment(BaseModel):
    """One synthesized sentence, tagged with its position and generation epoch."""
    text: str
    audio: bytes = b""
    ordinal: int                              # 1-based, assigned at segmentation time
    is_first: bool = False
    is_final: bool = False
    epoch: int = 0


# ──────────────────────────────────────────────────────────────
#  Client → server messages
# ──────────────────────────────────────────────────────────────

class _ClientMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class StartMessage(_ClientMessage):
    type: Literal["start"]
    model: Optional[str] = None
    is_mobile: bool = Field(default=False, alias="isMobile")
    personality: str = ""
    role: str = ""
    word_limit: Optional[int] = Field(default=None, alias="wordLimit")

    @property
    def capabilities(self) -> Capabilities:
        return Capabilities(is_mobile=self.is_mobile)

    @property
    def persona(self) -> Persona:
        return Persona(role=self.role, personality=self.personality, word_limit=self.word_limit)


class AudioMessage(_ClientMessage):
    type: Literal["audio"]
    audio: str                                # base64 PCM16LE mono


class StopMessage(_ClientMessage):
    type: Literal["stop"]


class ResetMessage(_ClientMessage):
    type: Literal["reset"]


class UserSpeakingMessage(_ClientMessage):
    type: Literal["user_speaking"]


class PlaybackFinishedMessage(_ClientMessage):
    type: Literal["ai_finished_speaking"]


class UserFinishedMessage(_ClientMessage):
    type: Literal["user_finished_speaking"]


ClientMessage = Annotated[
    Union[
        StartMessage, AudioMessage, StopMessage, ResetMessage,
        UserSpeakingMessage, PlaybackFinishedMessage, UserFinishedMessage,
    ],
    Field(discriminator="type"),
]


# ──────────────────────────────────────────────────────────────
#  Session summary
# ──────────────────────────────────────────────────────────────

class SessionSummary(BaseModel):
    session_id: str
    message_count: int
    duration_s: float
    last_activity: datetime
    state: TurnState
    epoch: int


def new_session_id() -> str:
    return str(uuid.uuid4())


def make_event(event: ServerEvent, **payload: Any) -> dict[str, Any]:
    """Build a server → client message dict."""
    return {"type": event.value, **payload}
