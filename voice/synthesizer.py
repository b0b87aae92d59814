"""
Response Synthesizer — reply text → ordered, independently synthesized chunks.

Chunking keeps each synthesis request short so the first audio is ready
quickly, and prefers to cut at the end of a sentence. Every chunk is sent to
TTS (and the optional voice converter) on its own task; they finish in any
order and the Playback Sequencer puts them back in line.
"""
from __future__ import annotations

import asyncio
import structlog
from pathlib import Path
from typing import Optional

from models.schemas import ResponseChunk
from voice.errors import GatewayError
from voice.playback import PlaybackSequencer
from voice.providers import SpeechSynthesizer, VoiceConverter
from voice.session import VoiceSession
from voice.turn_gate import Turn

logger = structlog.get_logger()

SENTENCE_ENDINGS = (".", "!", "?", ";", ":")
MAX_CHUNK_WORDS = 60


def split_into_chunks(text: str, max_words: int = MAX_CHUNK_WORDS) -> list[str]:
    """
    Split text into chunks of at most `max_words` words.

    While more than `max_words` words remain, a chunk ends after the last
    word inside the window that ends a sentence, or at exactly `max_words`
    if there is none. The remainder is taken whole. Asterisks are dropped
    so markdown emphasis isn't read out.
    """
    words = text.replace("*", "").split()
    max_words = max(1, max_words)
    chunks: list[str] = []
    start = 0
    while start < len(words):
        end = min(start + max_words, len(words))
        if end < len(words):
            last_stop = -1
            for j in range(start, end):
                if words[j].endswith(SENTENCE_ENDINGS):
                    last_stop = j
            if last_stop != -1:
                end = last_stop + 1
        chunks.append(" ".join(words[start:end]))
        start = end
    return chunks


class ResponseSynthesizer:

    def __init__(
        self,
        tts: SpeechSynthesizer,
        sequencer: PlaybackSequencer,
        output_dir: str = "./sounds/tts",
        max_chunk_words: int = MAX_CHUNK_WORDS,
        converter: Optional[VoiceConverter] = None,
    ):
        self.tts = tts
        self.sequencer = sequencer
        self.output_dir = Path(output_dir)
        self.max_chunk_words = max_chunk_words
        self.converter = converter

    async def synthesize(self, session: VoiceSession, text: str, turn: Turn) -> list[ResponseChunk]:
        """
        Start synthesis of `text` for `turn`. Returns the chunks handed to the
        sequencer, which from then on owns releasing the gate. An empty list
        means nothing will be spoken and the caller still owns the release.
        """
        pieces = split_into_chunks(text, self.max_chunk_words)
        if not pieces or not session.turn_gate.is_current(turn):
            return []

        self.output_dir.mkdir(parents=True, exist_ok=True)
        chunks = [ResponseChunk(index=i, text=piece) for i, piece in enumerate(pieces)]
        self.sequencer.begin(session, turn, len(chunks))

        state = session.playback
        for chunk in chunks:
            task = asyncio.create_task(
                self._render(session, turn, chunk),
                name=f"tts:{turn.turn_id}:{chunk.index}",
            )
            state.synth_tasks.add(task)
            task.add_done_callback(state.synth_tasks.discard)

        logger.info("synthesis_started", session_id=session.session_id,
                    turn_id=turn.turn_id, chunks=len(chunks),
                    words=sum(c.word_count for c in chunks))
        return chunks

    def artifact_path(self, session: VoiceSession, turn: Turn, index: int) -> Path:
        return self.output_dir / f"{session.session_id}-{turn.turn_id}-{index}.mp3"

    async def _render(self, session: VoiceSession, turn: Turn, chunk: ResponseChunk) -> None:
        path = self.artifact_path(session, turn, chunk.index)
        try:
            audio = await self.tts.synthesize(chunk.text)
            if self.converter is not None:
                audio = await self.converter.convert(audio)
            await asyncio.to_thread(path.write_bytes, audio)
        except asyncio.CancelledError:
            path.unlink(missing_ok=True)
            raise
        except Exception as e:
            logger.error("chunk_synthesis_failed", session_id=session.session_id,
                         turn_id=turn.turn_id, index=chunk.index, error=str(e),
                         exc_info=not isinstance(e, (GatewayError, OSError)))
            path.unlink(missing_ok=True)
            await self.sequencer.abort(session, turn, reason="synthesis_failed")
            return

        chunk.audio_path = str(path)
        self.sequencer.submit(session, turn, chunk)
