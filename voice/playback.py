"""
Playback Sequencer — plays reply chunks strictly in index order.

Chunks are synthesized concurrently and arrive in any order. One drain task
per session walks a `next_to_play` cursor over them:

- chunk present → play, delete its artifact, advance, reset the retry count
- chunk missing → wait `retry_delay_s` and look again, at most `max_retries`
  times; then abort the turn rather than skip ahead
- cursor reaches the announced chunk count → turn complete, gate released

The drain is a bounded loop (one iteration per chunk), never recursion.
"""
from __future__ import annotations

import asyncio
import structlog
from pathlib import Path
from typing import Optional

from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt, wait_fixed

from models.schemas import ChunkStatus, ResponseChunk
from voice.errors import SequencingTimeout
from voice.output import AudioOutput
from voice.session import VoiceSession
from voice.turn_gate import Turn

logger = structlog.get_logger()


class _ChunkPending(Exception):
    """The chunk at the cursor has not been submitted yet."""


class PlaybackSequencer:

    def __init__(self, output: AudioOutput, max_retries: int = 5, retry_delay_s: float = 1.0):
        self.output = output
        self.max_retries = max_retries
        self.retry_delay_s = retry_delay_s

    # ── Turn setup ────────────────────────────────────────────

    def begin(self, session: VoiceSession, turn: Turn, total: int) -> None:
        """Announce a reply of `total` chunks owned by `turn`."""
        state = session.playback
        current = asyncio.current_task()
        for task in (*state.synth_tasks, state.task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        state.synth_tasks.clear()
        state.task = None
        self._discard_queue(session)
        state.reset()
        state.turn = turn
        state.expected = total
        logger.info("playback_begin", session_id=session.session_id,
                    turn_id=turn.turn_id, chunks=total)

    def submit(self, session: VoiceSession, turn: Turn, chunk: ResponseChunk) -> bool:
        """Queue a synthesized chunk and make sure the drain task is running."""
        state = session.playback
        if state.turn is not turn or not session.turn_gate.is_current(turn):
            logger.info("chunk_discarded_stale", session_id=session.session_id,
                        turn_id=turn.turn_id, index=chunk.index)
            self._delete_artifact(chunk)
            return False

        chunk.status = ChunkStatus.READY
        state.queue[chunk.index] = chunk
        logger.debug("chunk_ready", session_id=session.session_id, index=chunk.index)

        if state.task is None or state.task.done():
            state.task = asyncio.create_task(
                self._drain(session, turn), name=f"playback:{session.session_id}",
            )
        return True

    # ── Drain loop ────────────────────────────────────────────

    async def _drain(self, session: VoiceSession, turn: Turn) -> None:
        state = session.playback
        for _ in range(max(state.expected, 0) + 1):
            if state.turn is not turn:
                return
            if state.next_to_play >= state.expected:
                self._finish(session, turn)
                return
            try:
                chunk = await self._await_chunk(session, turn)
            except SequencingTimeout as e:
                logger.error("playback_sequencing_timeout", session_id=session.session_id,
                             turn_id=turn.turn_id, index=e.index, attempts=e.attempts)
                await self.abort(session, turn, reason="sequencing_timeout")
                return
            if chunk is None:
                return

            state.playing = True
            try:
                await self.output.play_speech(session, chunk.audio_path)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("chunk_play_failed", session_id=session.session_id,
                             index=chunk.index, error=str(e))
            finally:
                state.playing = False
                self._delete_artifact(chunk)

            if state.turn is not turn:
                return
            chunk.status = ChunkStatus.PLAYED
            state.queue.pop(chunk.index, None)
            state.next_to_play += 1
            state.retry_count = 0
            logger.debug("chunk_played", session_id=session.session_id, index=chunk.index)

    async def _await_chunk(self, session: VoiceSession, turn: Turn) -> Optional[ResponseChunk]:
        state = session.playback
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_fixed(self.retry_delay_s),
            retry=retry_if_exception_type(_ChunkPending),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    if state.turn is not turn:
                        return None
                    chunk = state.queue.get(state.next_to_play)
                    if chunk is None:
                        state.retry_count = attempt.retry_state.attempt_number
                        raise _ChunkPending()
                    return chunk
        except RetryError:
            raise SequencingTimeout(state.next_to_play, self.max_retries)
        return None

    def _finish(self, session: VoiceSession, turn: Turn) -> None:
        state = session.playback
        logger.info("playback_finished", session_id=session.session_id,
                    turn_id=turn.turn_id, chunks=state.expected)
        state.reset()
        session.turn_gate.release(turn, reason="reply_played")

    # ── Abort ─────────────────────────────────────────────────

    async def abort(self, session: VoiceSession, turn: Optional[Turn] = None,
                    reason: str = "aborted") -> bool:
        """
        Stop the reply in progress: cancel synthesis and playback, delete
        queued artifacts, reset the cursor and release the gate. With `turn`
        given, only acts if that turn still owns playback or the gate.
        """
        state = session.playback
        if turn is not None and state.turn is not turn and not session.turn_gate.is_current(turn):
            return False

        current = asyncio.current_task()
        was_playing = state.playing
        for task in list(state.synth_tasks):
            if task is not current and not task.done():
                task.cancel()
        state.synth_tasks.clear()
        drain = state.task
        state.task = None
        if drain is not None and drain is not current and not drain.done():
            drain.cancel()

        self._discard_queue(session)
        state.reset()
        if was_playing:
            await self.output.stop(session)

        if turn is not None:
            session.turn_gate.release(turn, reason=reason)
        else:
            session.turn_gate.force_release(reason=reason)
        logger.info("playback_aborted", session_id=session.session_id, reason=reason)
        return True

    async def wait_idle(self, session: VoiceSession) -> None:
        """Wait for pending synthesis and playback of the current reply."""
        state = session.playback
        while True:
            pending = [t for t in (*state.synth_tasks, state.task) if t is not None and not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ── Helpers ───────────────────────────────────────────────

    def _discard_queue(self, session: VoiceSession) -> None:
        for chunk in session.playback.queue.values():
            self._delete_artifact(chunk)
        session.playback.queue.clear()

    @staticmethod
    def _delete_artifact(chunk: ResponseChunk) -> None:
        if not chunk.audio_path:
            return
        try:
            Path(chunk.audio_path).unlink(missing_ok=True)
        except OSError as e:
            logger.warning("chunk_artifact_delete_failed", path=chunk.audio_path, error=str(e))
