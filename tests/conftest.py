"""Shared test fixtures for the Lounge voice agent."""
import pytest
import asyncio
from pathlib import Path
from typing import Callable, Optional

from config.settings import Settings
from models.schemas import ChatMessage, Transcription
from voice.agent import VoiceAgent
from voice.errors import ConversionError, GatewayError
from voice.output import AudioOutput, CueSound
from voice.playback import PlaybackSequencer
from voice.providers import (
    AudioPlayer, AudioReceiver, ChatModel, SpeechSynthesizer, SpeechToText,
)
from voice.session import VoiceSession
from voice.transcoder import EncodedAudio, pcm_duration_seconds


# ══════════════════════════════════════════════════════════════
#  FAKE COLLABORATORS
# ══════════════════════════════════════════════════════════════

class FakePlayer(AudioPlayer):
    """Records every play request. `hold` keeps speech playing until set."""

    def __init__(self):
        self.plays: list[tuple[str, float]] = []
        self.stop_calls = 0
        self.playing = False
        self.hold: Optional[asyncio.Event] = None

    async def play(self, session, source, volume=1.0):
        self.plays.append((source, volume))
        if self.hold is not None and not source.endswith(tuple(f"{c.value}.mp3" for c in CueSound)):
            self.playing = True
            try:
                await self.hold.wait()
            finally:
                self.playing = False

    async def stop(self, session):
        self.stop_calls += 1

    @property
    def sources(self) -> list[str]:
        return [s for s, _ in self.plays]

    def cues(self) -> list[str]:
        return [Path(s).stem for s in self.sources if Path(s).parent.name == "sounds"]

    def speech(self) -> list[str]:
        return [s for s in self.sources if Path(s).parent.name == "tts"]


class FakeReceiver(AudioReceiver):
    """
    Plays back a script, one entry per `record` call: bytes are written to
    the sink, exceptions are raised. Once exhausted it blocks until cancelled.
    """

    def __init__(self, script=None):
        self.script = list(script or [])
        self.calls: list[str] = []

    async def record(self, user_id, sink, silence_timeout_ms):
        self.calls.append(user_id)
        if not self.script:
            await asyncio.Event().wait()
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        Path(sink).write_bytes(item)


class FakeTranscoder:
    """Writes a placeholder MP3 next to the capture, no ffmpeg involved."""

    def __init__(self, sample_rate: int = 48000, fail_on_empty: bool = True):
        self.sample_rate = sample_rate
        self.fail_on_empty = fail_on_empty
        self.calls: list[Path] = []

    async def transcode(self, raw_path):
        raw_path = Path(raw_path)
        self.calls.append(raw_path)
        size = raw_path.stat().st_size if raw_path.exists() else 0
        if size == 0 and self.fail_on_empty:
            raise ConversionError("empty capture")
        out = raw_path.with_suffix(".mp3")
        out.write_bytes(b"ID3")
        return EncodedAudio(path=out, duration_seconds=pcm_duration_seconds(size, self.sample_rate))


class FakeTranscriber(SpeechToText):

    def __init__(self, text: str = "", duration: Optional[float] = None):
        self.text = text
        self.duration = duration
        self.calls: list[EncodedAudio] = []
        self.error: Optional[Exception] = None

    async def transcribe(self, audio):
        self.calls.append(audio)
        if self.error is not None:
            raise self.error
        return Transcription(text=self.text, duration_seconds=self.duration)


class FakeChatModel(ChatModel):
    """Returns `reply`; with `gate` set, waits for it before answering."""

    def __init__(self, reply: str = "Paris is the capital of France."):
        self.reply = reply
        self.calls: list[list[ChatMessage]] = []
        self.gate: Optional[asyncio.Event] = None
        self.error: Optional[Exception] = None

    async def complete(self, messages):
        self.calls.append(list(messages))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.reply


class FakeTTS(SpeechSynthesizer):
    """Echoes the text as bytes. `delays` maps a text fragment to a sleep."""

    def __init__(self, delays: Optional[dict[str, float]] = None,
                 fail_on: Optional[Callable[[str], bool]] = None):
        self.delays = delays or {}
        self.fail_on = fail_on
        self.calls: list[str] = []

    async def synthesize(self, text):
        self.calls.append(text)
        for fragment, delay in self.delays.items():
            if fragment in text:
                await asyncio.sleep(delay)
        if self.fail_on is not None and self.fail_on(text):
            raise GatewayError("tts returned 500", service="tts", status_code=500)
        return text.encode()


# ══════════════════════════════════════════════════════════════
#  FIXTURES
# ══════════════════════════════════════════════════════════════

@pytest.fixture
def sounds_dir(tmp_path) -> Path:
    path = tmp_path / "sounds"
    path.mkdir()
    for cue in CueSound:
        (path / f"{cue.value}.mp3").write_bytes(b"ID3")
    return path


@pytest.fixture
def settings(tmp_path, sounds_dir) -> Settings:
    s = Settings()
    s.triggers.phrases = ["lounge"]
    s.capture.recordings_dir = str(tmp_path / "recordings")
    s.capture.error_backoff_s = 0.0
    s.tts.output_dir = str(sounds_dir / "tts")
    s.tts.max_chunk_words = 60
    s.playback.sounds_dir = str(sounds_dir)
    s.playback.max_retries = 3
    s.playback.retry_delay_s = 0.01
    s.llm.memory_size = 4
    return s


@pytest.fixture
def player() -> FakePlayer:
    return FakePlayer()


@pytest.fixture
def session() -> VoiceSession:
    return VoiceSession(channel_id="ch_lounge", session_id="vs_test")


@pytest.fixture
def output(player, sounds_dir) -> AudioOutput:
    return AudioOutput(player, sounds_dir=str(sounds_dir))


@pytest.fixture
def sequencer(output) -> PlaybackSequencer:
    return PlaybackSequencer(output, max_retries=3, retry_delay_s=0.01)


@pytest.fixture
def chat_model() -> FakeChatModel:
    return FakeChatModel()


@pytest.fixture
def tts() -> FakeTTS:
    return FakeTTS()


@pytest.fixture
def transcriber() -> FakeTranscriber:
    return FakeTranscriber(text="lounge what is the capital of France", duration=3.0)


@pytest.fixture
def agent(settings, player, transcriber, chat_model, tts) -> VoiceAgent:
    return VoiceAgent(
        settings=settings,
        receiver=FakeReceiver(),
        player=player,
        stt=transcriber,
        llm=chat_model,
        tts=tts,
        transcoder=FakeTranscoder(),
    )


@pytest.fixture
def eventually():
    """Poll a condition on the running loop instead of sleeping blindly."""
    async def _wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        deadline = asyncio.get_running_loop().time() + timeout
        while not predicate():
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.005)
    return _wait
