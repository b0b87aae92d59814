"""
Core data models for the Lounge voice agent.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class SessionMode(str, Enum):
    """Join modes offered by the host's join command."""
    NORMAL = "normal"
    SILENT = "silent"             # no confirmation cues except `command`
    FREE = "free"                 # no trigger phrase required
    TRANSCRIBE = "transcribe"     # keep a transcript, handed back on leave


class Intent(str, Enum):
    STOP = "stop"
    RESET = "reset"
    LEAVE = "leave"
    SONG = "song"
    TIMER_SET = "timer_set"
    TIMER_CANCEL = "timer_cancel"
    TIMER_LIST = "timer_list"
    SEARCH = "search"
    CHAT = "chat"


class AlarmType(str, Enum):
    TIMER = "timer"
    ALARM = "alarm"


class ChunkStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    PLAYED = "played"


# ──────────────────────────────────────────────────────────────
#  Conversation
# ──────────────────────────────────────────────────────────────

class ChatMessage(BaseModel):
    role: str                                 # system | user | assistant
    content: str

    def to_api(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


class Transcription(BaseModel):
    text: str
    duration_seconds: Optional[float] = None  # not every STT backend reports it


class Utterance(BaseModel):
    """A transcribed capture, discarded once the routing decision is made."""
    user_id: str
    text: str
    duration_seconds: float


class RouteDecision(BaseModel):
    intent: Intent
    text: str                                 # trigger-stripped, casing as spoken
    normalized: str                           # lowercase, no punctuation; matching only


class TranscriptLine(BaseModel):
    user_id: str
    text: str
    timestamp: datetime = Field(default_factory=datetime.now)

    def render(self) -> str:
        return f"[{self.timestamp.strftime('%H:%M:%S')}] {self.user_id}: {self.text}"


# ──────────────────────────────────────────────────────────────
#  Timers
# ──────────────────────────────────────────────────────────────

class Alarm(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    expires_at_ms: int
    type: AlarmType = AlarmType.TIMER
    formatted_time: str
    duration_seconds: int = 0

    def describe(self, position: int) -> str:
        """Spoken form: '{type} {1-based position} set for {formatted time}'."""
        return f"{self.type.value} {position} set for {self.formatted_time}"


# ──────────────────────────────────────────────────────────────
#  Playback
# ──────────────────────────────────────────────────────────────

class ResponseChunk(BaseModel):
    index: int                                # 0-based, the only playback-order key
    text: str
    audio_path: Optional[str] = None
    status: ChunkStatus = ChunkStatus.PENDING

    @property
    def word_count(self) -> int:
        return len(self.text.split())
