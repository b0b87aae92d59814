"""
Audio output path shared by reply playback and the timer subsystem.

Cue sounds are short fixed files (`understood`, `result`, `command`, `timer`,
`alarm`) played fire-and-forget. In silent mode every cue except `command`
is suppressed.
"""
from __future__ import annotations

import asyncio
import structlog
from enum import Enum
from pathlib import Path
from typing import Optional

from voice.providers import AudioPlayer
from voice.session import VoiceSession

logger = structlog.get_logger()


class CueSound(str, Enum):
    UNDERSTOOD = "understood"     # utterance accepted, turn started
    RESULT = "result"             # model answered, speech follows
    COMMAND = "command"           # control command executed
    TIMER = "timer"
    ALARM = "alarm"


class AudioOutput:

    def __init__(
        self,
        player: AudioPlayer,
        sounds_dir: str = "./sounds",
        speech_volume: float = 1.0,
        cue_volume: float = 0.6,
    ):
        self.player = player
        self.sounds_dir = Path(sounds_dir)
        self.speech_volume = speech_volume
        self.cue_volume = cue_volume
        self._background: set[asyncio.Task] = set()

    def cue_path(self, cue: CueSound) -> Path:
        return self.sounds_dir / f"{cue.value}.mp3"

    def is_suppressed(self, session: VoiceSession, cue: CueSound) -> bool:
        return session.silent_confirmation and cue != CueSound.COMMAND

    def play_cue(self, session: VoiceSession, cue: CueSound,
                 volume: Optional[float] = None) -> Optional[asyncio.Task]:
        """Start a cue without waiting for it. Returns the task, or None if skipped."""
        if self.is_suppressed(session, cue):
            return None
        path = self.cue_path(cue)
        if not path.exists():
            logger.error("cue_sound_missing", cue=cue.value, path=str(path))
            return None
        task = asyncio.create_task(
            self._play_cue(session, cue, path, self.cue_volume if volume is None else volume),
            name=f"cue:{cue.value}",
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _play_cue(self, session: VoiceSession, cue: CueSound, path: Path, volume: float) -> None:
        try:
            await self.player.play(session, str(path), volume)
            logger.debug("cue_played", cue=cue.value, session_id=session.session_id)
        except Exception as e:
            logger.error("cue_play_failed", cue=cue.value, error=str(e))

    async def play_speech(self, session: VoiceSession, path: str) -> None:
        """Play one reply chunk and wait for it to finish."""
        await self.player.play(session, path, self.speech_volume)

    async def stop(self, session: VoiceSession) -> None:
        try:
            await self.player.stop(session)
        except Exception as e:
            logger.warning("player_stop_failed", error=str(e))

    async def drain(self) -> None:
        """Wait for background cues, used on shutdown."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
