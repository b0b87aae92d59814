"""
Voice Agent — the voice-turn pipeline behind one group voice channel.

  capture → transcode → transcribe → route → [turn gate] → handler
          → synthesize → ordered playback → gate released

The hosting layer (channel join/leave, chat-platform commands) drives the
agent through a handful of hooks:

    agent = create_voice_agent(receiver=..., player=...)
    session = agent.open_session(channel_id, mode="silent", user_ids=members)
    agent.on_speaker_joined(session, user_id)
    reply = await agent.on_thread_message(session, thread_id, text)
    transcript = await agent.close_session()

The agent never joins or leaves a channel by itself; a spoken "leave"
command is forwarded to the host's `on_leave` callback.
"""
from __future__ import annotations

import asyncio
import inspect
import time
import structlog
from typing import Any, Awaitable, Callable, Optional, Sequence
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

from config.settings import Settings, get_settings
from models.schemas import ChatMessage, Intent, RouteDecision, Utterance
from voice.capture import CaptureManager
from voice.errors import GatewayError, SessionConflictError, TimerParseError
from voice.output import AudioOutput, CueSound
from voice.playback import PlaybackSequencer
from voice.providers import (
    AudioPlayer, AudioReceiver, ChatModel, ElevenLabsSynthesizer, HttpVoiceConverter,
    OpenAIChatModel, OpenAITranscriber, SEARCH_DISABLED_REPLY, SearchChatModel, SongPlayer,
    SpeechSynthesizer, SpeechToText, VoiceConverter,
)
from voice.router import IntentRouter, text_after
from voice.session import VoiceSession
from voice.synthesizer import ResponseSynthesizer
from voice.timers import TimerService
from voice.transcoder import EncodedAudio, Transcoder
from voice.turn_gate import Turn

logger = structlog.get_logger()

LeaveCallback = Callable[[VoiceSession], Any]
Handler = Callable[[VoiceSession, Turn, RouteDecision], Awaitable[Optional[str]]]

TIMER_PARSE_APOLOGY = "Sorry, I didn't catch how long to set that for."
SONG_UNAVAILABLE_REPLY = "Sorry, I can't play music right now."
SONG_MISSING_QUERY_REPLY = "Which song should I play?"

_SONG_FILLER = {"a", "the", "song", "music", "track", "some"}


class VoiceAgent:

    def __init__(
        self,
        settings: Settings,
        receiver: AudioReceiver,
        player: AudioPlayer,
        stt: SpeechToText,
        llm: ChatModel,
        tts: SpeechSynthesizer,
        search: Optional[ChatModel] = None,
        converter: Optional[VoiceConverter] = None,
        song_player: Optional[SongPlayer] = None,
        on_leave: Optional[LeaveCallback] = None,
        transcoder: Optional[Transcoder] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.stt = stt
        self.llm = llm
        self.search = search
        self.song_player = song_player
        self.on_leave = on_leave

        pb = settings.playback
        cap = settings.capture
        self.output = AudioOutput(player, pb.sounds_dir, pb.speech_volume, pb.cue_volume)
        self.sequencer = PlaybackSequencer(self.output, pb.max_retries, pb.retry_delay_s)
        self.synthesizer = ResponseSynthesizer(
            tts, self.sequencer,
            output_dir=settings.tts.output_dir,
            max_chunk_words=settings.tts.max_chunk_words,
            converter=converter,
        )
        self.timers = TimerService(self.output, clock, tz=ZoneInfo(settings.timezone))
        self.router = IntentRouter(settings.triggers.phrases, settings.triggers.ignore_phrases)
        self.capture = CaptureManager(
            receiver,
            transcoder or Transcoder(
                ffmpeg_path=cap.ffmpeg_path,
                input_sample_rate=cap.input_sample_rate,
                input_channels=cap.input_channels,
                output_sample_rate=cap.output_sample_rate,
                bitrate=cap.output_bitrate,
            ),
            self.on_utterance_ready,
            recordings_dir=cap.recordings_dir,
            silence_timeout_ms=cap.silence_timeout_ms,
            error_backoff_s=cap.error_backoff_s,
        )

        self.session: Optional[VoiceSession] = None
        self._background: set[asyncio.Task] = set()
        self._handlers: dict[Intent, Handler] = {
            Intent.CHAT: self._handle_chat,
            Intent.SEARCH: self._handle_search,
            Intent.RESET: self._handle_reset,
            Intent.LEAVE: self._handle_leave,
            Intent.SONG: self._handle_song,
            Intent.TIMER_SET: self._handle_timer_set,
            Intent.TIMER_CANCEL: self._handle_timer_cancel,
            Intent.TIMER_LIST: self._handle_timer_list,
        }

    # ══════════════════════════════════════════════════════════
    #  SESSION LIFECYCLE
    # ══════════════════════════════════════════════════════════

    def open_session(self, channel_id: str, mode: str = "",
                     user_ids: Sequence[str] = ()) -> VoiceSession:
        if self.session is not None and self.session.active:
            raise SessionConflictError(self.session.channel_id)
        session = VoiceSession.from_mode(channel_id, mode)
        self.session = session
        self.on_session_start(session, user_ids)
        return session

    def on_session_start(self, session: VoiceSession, user_ids: Sequence[str] = ()) -> None:
        logger.info("voice_session_started", session_id=session.session_id,
                    channel_id=session.channel_id, silent=session.silent_confirmation,
                    free_listen=session.free_listen, transcribe=session.transcribe_log)
        for user_id in user_ids:
            self.capture.start_capture(session, user_id)

    def on_speaker_joined(self, session: VoiceSession, user_id: str) -> bool:
        return self.capture.start_capture(session, user_id)

    async def on_session_end(self, session: VoiceSession) -> str:
        """Tear the session down. Returns the transcript in transcribe mode."""
        transcript = session.render_transcript() if session.transcribe_log else ""
        session.active = False
        await self.capture.stop_all(session)
        await self.sequencer.abort(session, reason="session_end")
        cancelled = self.timers.clear(session)
        session.clear()
        if self.session is session:
            self.session = None
        logger.info("voice_session_ended", session_id=session.session_id,
                    alarms_cancelled=cancelled)
        return transcript

    async def close_session(self) -> str:
        if self.session is None:
            return ""
        return await self.on_session_end(self.session)

    async def wait_until_idle(self, session: VoiceSession) -> None:
        """Wait for in-flight turns and their playback to settle."""
        while True:
            pending = [t for t in session.turn_tasks if not t.done()]
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            await self.sequencer.wait_idle(session)
            if not any(not t.done() for t in session.turn_tasks):
                return

    async def aclose(self) -> None:
        await self.close_session()
        await self.output.drain()
        for gateway in (self.stt, self.llm, self.search, self.synthesizer.tts,
                        self.synthesizer.converter):
            closer = getattr(gateway, "aclose", None)
            if closer is not None:
                await closer()

    # ══════════════════════════════════════════════════════════
    #  UTTERANCES
    # ══════════════════════════════════════════════════════════

    async def on_utterance_ready(self, session: VoiceSession, user_id: str,
                                 audio: EncodedAudio) -> Optional[Turn]:
        """Capture hand-off: transcribe one utterance and route it."""
        if not session.active:
            return None
        min_seconds = self.settings.capture.min_utterance_seconds
        if audio.duration_seconds < min_seconds:
            logger.info("utterance_too_short", user_id=user_id,
                        duration_s=round(audio.duration_seconds, 2))
            return None

        try:
            transcription = await self.stt.transcribe(audio)
        except GatewayError as e:
            logger.error("transcription_failed", user_id=user_id, error=str(e))
            return None

        text = transcription.text.strip()
        duration = transcription.duration_seconds or audio.duration_seconds
        logger.info("transcribed", session_id=session.session_id, user_id=user_id,
                    text=text, duration_s=round(duration, 2))
        if text:
            session.log_transcript(user_id, text)
        return await self.handle_utterance(
            session, Utterance(user_id=user_id, text=text, duration_seconds=duration),
        )

    async def handle_utterance(self, session: VoiceSession, utterance: Utterance) -> Optional[Turn]:
        """Route a transcribed utterance. Returns the granted turn, if any."""
        if utterance.duration_seconds < self.settings.capture.min_utterance_seconds:
            logger.info("utterance_too_short", user_id=utterance.user_id,
                        duration_s=round(utterance.duration_seconds, 2))
            return None
        if self.router.is_ignored(utterance.text):
            logger.info("utterance_ignored", user_id=utterance.user_id, text=utterance.text)
            return None

        decision = self.router.route(utterance.text, free_listen=session.free_listen)
        if decision is None:
            return None

        if decision.intent == Intent.STOP:
            await self.interrupt(session, utterance.user_id)
            return None

        turn = session.turn_gate.try_enter(utterance.user_id)
        if turn is None:
            logger.info("utterance_dropped_busy", session_id=session.session_id,
                        user_id=utterance.user_id, text=utterance.text)
            return None

        self.output.play_cue(session, CueSound.UNDERSTOOD)
        task = asyncio.create_task(
            self._run_turn(session, turn, decision), name=f"turn:{turn.turn_id}",
        )
        session.turn_tasks.add(task)
        task.add_done_callback(session.turn_tasks.discard)
        return turn

    async def interrupt(self, session: VoiceSession, user_id: str = "") -> None:
        """Barge-in: stop the reply in progress and free the gate."""
        logger.info("barge_in", session_id=session.session_id, user_id=user_id,
                    busy=session.turn_gate.busy)
        await self.sequencer.abort(session, reason="interrupted")
        if self.song_player is not None:
            try:
                await self.song_player.stop(session)
            except Exception as e:
                logger.warning("song_stop_failed", error=str(e))
        self.output.play_cue(session, CueSound.COMMAND)

    # ══════════════════════════════════════════════════════════
    #  TURN
    # ══════════════════════════════════════════════════════════

    async def _run_turn(self, session: VoiceSession, turn: Turn, decision: RouteDecision) -> None:
        handed_off = False
        reason = "no_reply"
        try:
            reply = await self._handlers[decision.intent](session, turn, decision)
            if reply and session.turn_gate.is_current(turn):
                chunks = await self.synthesizer.synthesize(session, reply, turn)
                handed_off = bool(chunks)
        except GatewayError as e:
            reason = "gateway_error"
            logger.error("turn_gateway_failed", session_id=session.session_id,
                         turn_id=turn.turn_id, intent=decision.intent.value,
                         service=e.service, error=str(e))
        except Exception as e:
            reason = "error"
            logger.error("turn_failed", session_id=session.session_id, turn_id=turn.turn_id,
                         intent=decision.intent.value, error=str(e), exc_info=True)
        finally:
            if not handed_off:
                session.turn_gate.release(turn, reason=reason)

    def _trim(self, messages: list[ChatMessage]) -> list[ChatMessage]:
        """Keep the system prompt plus the latest `memory_size` messages."""
        limit = max(self.settings.llm.memory_size, 1)
        system = [m for m in messages[:1] if m.role == "system"]
        rest = messages[len(system):]
        return system + rest[-limit:]

    def _with_prompt(self, history: list[ChatMessage], prompt: str) -> list[ChatMessage]:
        if history or not prompt:
            return history
        return [ChatMessage(role="system", content=prompt)]

    # ── Handlers ──────────────────────────────────────────────

    async def _handle_chat(self, session: VoiceSession, turn: Turn,
                           decision: RouteDecision) -> Optional[str]:
        history = self._with_prompt(session.history_for(turn.user_id),
                                    self.settings.llm.system_prompt)
        history = self._trim(history + [ChatMessage(role="user", content=decision.text)])

        reply = await self.llm.complete(history)
        if not session.turn_gate.is_current(turn):
            logger.info("reply_discarded_superseded", turn_id=turn.turn_id)
            return None
        if not reply:
            return None

        history.append(ChatMessage(role="assistant", content=reply))
        session.chat_history[turn.user_id] = self._trim(history)
        logger.info("llm_reply", session_id=session.session_id, user_id=turn.user_id,
                    turn_id=turn.turn_id, chars=len(reply))
        self.output.play_cue(session, CueSound.RESULT)
        return reply

    async def _handle_search(self, session: VoiceSession, turn: Turn,
                             decision: RouteDecision) -> Optional[str]:
        if self.search is None:
            return SEARCH_DISABLED_REPLY
        messages = [
            ChatMessage(role="system", content=self.settings.search.system_prompt),
            ChatMessage(role="user", content=decision.text),
        ]
        reply = await self.search.complete(messages)
        if not session.turn_gate.is_current(turn):
            return None
        self.output.play_cue(session, CueSound.RESULT)
        return reply

    async def _handle_reset(self, session: VoiceSession, turn: Turn,
                            decision: RouteDecision) -> Optional[str]:
        cleared = session.reset_history(turn.user_id)
        logger.info("history_reset", session_id=session.session_id,
                    user_id=turn.user_id, had_history=cleared)
        self.output.play_cue(session, CueSound.COMMAND)
        return None

    async def _handle_leave(self, session: VoiceSession, turn: Turn,
                            decision: RouteDecision) -> Optional[str]:
        self.output.play_cue(session, CueSound.COMMAND)
        if self.on_leave is None:
            logger.warning("leave_requested_without_host_callback", session_id=session.session_id)
            return None
        task = asyncio.create_task(self._request_leave(session), name="leave")
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return None

    async def _request_leave(self, session: VoiceSession) -> None:
        try:
            result = self.on_leave(session)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error("leave_callback_failed", session_id=session.session_id, error=str(e))

    async def _handle_song(self, session: VoiceSession, turn: Turn,
                           decision: RouteDecision) -> Optional[str]:
        if self.song_player is None:
            return SONG_UNAVAILABLE_REPLY
        words = text_after(decision.text, "play").split()
        while words and words[0].lower() in _SONG_FILLER:
            words.pop(0)
        query = " ".join(words).rstrip(".!?")
        if not query:
            return SONG_MISSING_QUERY_REPLY
        self.output.play_cue(session, CueSound.COMMAND)
        return await self.song_player.play(session, query) or None

    async def _handle_timer_set(self, session: VoiceSession, turn: Turn,
                                decision: RouteDecision) -> Optional[str]:
        try:
            alarm = self.timers.set_timer(session, decision.text)
        except TimerParseError as e:
            logger.info("timer_parse_failed", query=decision.text, error=str(e))
            return TIMER_PARSE_APOLOGY
        return self.timers.describe_set(alarm)

    async def _handle_timer_cancel(self, session: VoiceSession, turn: Turn,
                                   decision: RouteDecision) -> Optional[str]:
        return self.timers.cancel_timer(session, decision.text)

    async def _handle_timer_list(self, session: VoiceSession, turn: Turn,
                                 decision: RouteDecision) -> Optional[str]:
        return self.timers.list_timers(session)

    # ══════════════════════════════════════════════════════════
    #  TEXT THREADS
    # ══════════════════════════════════════════════════════════

    async def on_thread_message(self, session: VoiceSession, thread_id: str,
                                text: str) -> Optional[str]:
        """Text reply for a chat thread tied to the session. None while busy."""
        turn = session.turn_gate.try_enter(f"thread:{thread_id}")
        if turn is None:
            return None
        try:
            history = self._with_prompt(list(session.thread_history.get(thread_id, [])),
                                        self.settings.llm.system_prompt)
            history = self._trim(history + [ChatMessage(role="user", content=text)])
            reply = await self.llm.complete(history)
            if not session.turn_gate.is_current(turn) or not reply:
                return None
            history.append(ChatMessage(role="assistant", content=reply))
            session.thread_history[thread_id] = self._trim(history)
            return reply
        except GatewayError as e:
            logger.error("thread_reply_failed", thread_id=thread_id, error=str(e))
            return None
        finally:
            session.turn_gate.release(turn, reason="thread_reply")


def create_voice_agent(
    receiver: AudioReceiver,
    player: AudioPlayer,
    settings: Optional[Settings] = None,
    song_player: Optional[SongPlayer] = None,
    on_leave: Optional[LeaveCallback] = None,
) -> VoiceAgent:
    """Build an agent with the HTTP gateways described by the settings."""
    load_dotenv()
    settings = settings or get_settings()
    converter = (
        HttpVoiceConverter(settings.voice_conversion)
        if settings.voice_conversion.enabled and settings.voice_conversion.url else None
    )
    return VoiceAgent(
        settings=settings,
        receiver=receiver,
        player=player,
        stt=OpenAITranscriber(settings.stt),
        llm=OpenAIChatModel(settings.llm),
        tts=ElevenLabsSynthesizer(settings.tts),
        search=SearchChatModel(settings.search),
        converter=converter,
        song_player=song_player,
        on_leave=on_leave,
    )
