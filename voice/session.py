"""
Voice Session — all per-channel state, passed explicitly to every component.

A session is created when the agent joins a channel and destroyed when it
leaves. Nothing here survives a leave or a process restart: chat history,
alarms and queued audio are dropped with the session.
"""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from models.schemas import (
    Alarm, ChatMessage, ResponseChunk, SessionMode, TranscriptLine,
)
from voice.turn_gate import Turn, TurnGate


@dataclass
class CaptureUnit:
    """One speaker's continuous listen loop."""
    user_id: str
    silence_timeout_ms: int
    raw_path: Optional[Path] = None
    encoded_path: Optional[Path] = None
    task: Optional[asyncio.Task] = None
    utterances: int = 0
    failures: int = 0
    stopped: bool = False


@dataclass
class PlaybackState:
    """Reply audio for the turn currently being spoken."""
    queue: dict[int, ResponseChunk] = field(default_factory=dict)
    next_to_play: int = 0
    retry_count: int = 0
    expected: int = 0
    turn: Optional[Turn] = None
    playing: bool = False
    task: Optional[asyncio.Task] = None
    synth_tasks: set[asyncio.Task] = field(default_factory=set)

    def reset(self) -> None:
        self.queue.clear()
        self.next_to_play = 0
        self.retry_count = 0
        self.expected = 0
        self.turn = None
        self.playing = False


class VoiceSession:

    def __init__(
        self,
        channel_id: str,
        silent_confirmation: bool = False,
        free_listen: bool = False,
        transcribe_log: bool = False,
        session_id: str = "",
    ):
        self.session_id = session_id or f"vs_{uuid.uuid4().hex[:10]}"
        self.channel_id = channel_id
        self.silent_confirmation = silent_confirmation
        self.free_listen = free_listen
        self.transcribe_log = transcribe_log
        self.created_at = datetime.now(timezone.utc)
        self.active = True

        self.turn_gate = TurnGate(self.session_id)
        self.chat_history: dict[str, list[ChatMessage]] = {}
        self.thread_history: dict[str, list[ChatMessage]] = {}
        self.alarms: list[Alarm] = []
        self.alarm_handles: dict[str, asyncio.TimerHandle] = {}
        self.playback = PlaybackState()
        self.capture_units: dict[str, CaptureUnit] = {}
        self.turn_tasks: set[asyncio.Task] = set()
        self.transcript: list[TranscriptLine] = []

    @classmethod
    def from_mode(cls, channel_id: str, mode: str = "") -> VoiceSession:
        """Build a session from the host's join-mode option."""
        try:
            parsed = SessionMode(mode) if mode else SessionMode.NORMAL
        except ValueError:
            parsed = SessionMode.NORMAL
        return cls(
            channel_id=channel_id,
            silent_confirmation=parsed == SessionMode.SILENT,
            free_listen=parsed == SessionMode.FREE,
            transcribe_log=parsed == SessionMode.TRANSCRIBE,
        )

    # ── History ───────────────────────────────────────────────

    def history_for(self, user_id: str) -> list[ChatMessage]:
        return list(self.chat_history.get(user_id, []))

    def reset_history(self, user_id: str) -> bool:
        return self.chat_history.pop(user_id, None) is not None

    # ── Transcript ────────────────────────────────────────────

    def log_transcript(self, user_id: str, text: str) -> None:
        if self.transcribe_log:
            self.transcript.append(TranscriptLine(user_id=user_id, text=text))

    def render_transcript(self) -> str:
        return "\n".join(line.render() for line in self.transcript)

    # ── Teardown ──────────────────────────────────────────────

    def clear(self) -> None:
        """Drop all per-session state. Timer handles must already be cancelled."""
        self.chat_history.clear()
        self.thread_history.clear()
        self.alarms.clear()
        self.alarm_handles.clear()
        self.playback.reset()
        self.capture_units.clear()
        self.transcript.clear()

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "channel_id": self.channel_id,
            "active": self.active,
            "silent_confirmation": self.silent_confirmation,
            "free_listen": self.free_listen,
            "transcribe_log": self.transcribe_log,
            "turn_gate": self.turn_gate.to_dict(),
            "speakers": sorted(self.capture_units),
            "alarms": len(self.alarms),
            "queued_chunks": len(self.playback.queue),
        }
