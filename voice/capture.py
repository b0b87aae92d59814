"""
Capture Session — continuous per-speaker listening.

Each speaker in the channel gets one CaptureUnit running an explicit loop:

  record until trailing silence → transcode → hand off → delete files → repeat

Speakers are independent tasks on the same event loop. A failure in any step
is logged and the loop goes round again; listening only stops when the
speaker's unit is stopped or the session ends. The hand-off callback covers
transcription and routing only; dispatched turns run on their own tasks so
the speaker is listened to again right away.
"""
from __future__ import annotations

import asyncio
import uuid
import structlog
from pathlib import Path
from typing import Awaitable, Callable, Optional

from voice.errors import CaptureError, ConversionError
from voice.providers import AudioReceiver
from voice.session import CaptureUnit, VoiceSession
from voice.transcoder import EncodedAudio, Transcoder

logger = structlog.get_logger()

UtteranceHandler = Callable[[VoiceSession, str, EncodedAudio], Awaitable[None]]


class CaptureManager:

    def __init__(
        self,
        receiver: AudioReceiver,
        transcoder: Transcoder,
        on_utterance: UtteranceHandler,
        recordings_dir: str = "./recordings",
        silence_timeout_ms: int = 1000,
        error_backoff_s: float = 0.5,
    ):
        self.receiver = receiver
        self.transcoder = transcoder
        self.on_utterance = on_utterance
        self.recordings_dir = Path(recordings_dir)
        self.silence_timeout_ms = silence_timeout_ms
        self.error_backoff_s = error_backoff_s

    # ── Lifecycle ─────────────────────────────────────────────

    def start_capture(self, session: VoiceSession, user_id: str) -> bool:
        """Start listening to `user_id`. False if already listening or session closed."""
        if not session.active:
            return False
        existing = session.capture_units.get(user_id)
        if existing is not None and existing.task is not None and not existing.task.done():
            return False

        self.recordings_dir.mkdir(parents=True, exist_ok=True)
        unit = CaptureUnit(user_id=user_id, silence_timeout_ms=self.silence_timeout_ms)
        session.capture_units[user_id] = unit
        unit.task = asyncio.create_task(
            self._listen_loop(session, unit), name=f"capture:{user_id}",
        )
        logger.info("capture_started", session_id=session.session_id, user_id=user_id)
        return True

    async def stop_capture(self, session: VoiceSession, user_id: str) -> bool:
        unit = session.capture_units.pop(user_id, None)
        if unit is None:
            return False
        await self._stop_unit(unit)
        logger.info("capture_stopped", session_id=session.session_id, user_id=user_id)
        return True

    async def stop_all(self, session: VoiceSession) -> None:
        units = list(session.capture_units.values())
        session.capture_units.clear()
        for unit in units:
            await self._stop_unit(unit)

    async def _stop_unit(self, unit: CaptureUnit) -> None:
        unit.stopped = True
        task = unit.task
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ── Listen loop ───────────────────────────────────────────

    async def _listen_loop(self, session: VoiceSession, unit: CaptureUnit) -> None:
        while session.active and not unit.stopped:
            ok = await self.capture_once(session, unit)
            if not ok and self.error_backoff_s > 0:
                await asyncio.sleep(self.error_backoff_s)

    async def capture_once(self, session: VoiceSession, unit: CaptureUnit) -> bool:
        """
        Record and hand off a single utterance. Returns False if the capture
        itself failed. Both temporary files are gone when this returns.
        """
        raw_path = self.recordings_dir / f"{unit.user_id}-{uuid.uuid4().hex[:8]}.pcm"
        unit.raw_path = raw_path
        unit.encoded_path = None
        encoded: Optional[EncodedAudio] = None
        try:
            try:
                await self.receiver.record(unit.user_id, raw_path, unit.silence_timeout_ms)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                raise CaptureError(str(e), user_id=unit.user_id) from e

            encoded = await self.transcoder.transcode(raw_path)
            unit.encoded_path = encoded.path
            unit.utterances += 1
            await self.on_utterance(session, unit.user_id, encoded)
            return True
        except CaptureError as e:
            unit.failures += 1
            logger.warning("capture_failed", session_id=session.session_id,
                           user_id=unit.user_id, error=str(e))
            return False
        except ConversionError as e:
            logger.warning("utterance_abandoned", session_id=session.session_id,
                           user_id=unit.user_id, error=str(e))
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("utterance_handler_error", session_id=session.session_id,
                         user_id=unit.user_id, error=str(e), exc_info=True)
            return True
        finally:
            self._cleanup(raw_path, encoded.path if encoded else raw_path.with_suffix(".mp3"))
            unit.raw_path = None
            unit.encoded_path = None

    @staticmethod
    def _cleanup(*paths: Path) -> None:
        for path in paths:
            try:
                Path(path).unlink(missing_ok=True)
            except OSError as e:
                logger.warning("capture_cleanup_failed", path=str(path), error=str(e))
