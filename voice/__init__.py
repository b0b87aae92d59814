"""
Voice Subsystem — spoken turns in a group voice channel.

Modules:
- session: Per-channel state (history, alarms, playback queue, capture units)
- turn_gate: Single-flight gate, at most one turn in flight per session
- capture: Per-speaker listen loops handing off finished utterances
- transcoder: Raw PCM → mono MP3 via ffmpeg, with duration
- router: Trigger gating and phrase-table intent classification
- timers: Spoken timers and alarms
- synthesizer: Sentence-aware chunking and concurrent TTS
- playback: Strictly ordered chunk playback with bounded waits
- providers: Capability interfaces and HTTP gateways (STT, LLM, search, TTS)
- agent: Wires the pipeline together and exposes the host hooks
"""
from voice.agent import VoiceAgent, create_voice_agent
from voice.capture import CaptureManager
from voice.errors import (
    VoiceError, CaptureError, ConversionError, GatewayError,
    TimerParseError, SequencingTimeout, SessionConflictError,
)
from voice.output import AudioOutput, CueSound
from voice.playback import PlaybackSequencer
from voice.providers import (
    AudioReceiver, AudioPlayer, SongPlayer, SpeechToText, ChatModel,
    SpeechSynthesizer, VoiceConverter,
    OpenAITranscriber, OpenAIChatModel, SearchChatModel,
    ElevenLabsSynthesizer, HttpVoiceConverter,
)
from voice.router import IntentRouter, INTENT_TABLE, normalize
from voice.session import VoiceSession, CaptureUnit, PlaybackState
from voice.synthesizer import ResponseSynthesizer, split_into_chunks
from voice.timers import TimerService, parse_duration
from voice.transcoder import Transcoder, EncodedAudio
from voice.turn_gate import TurnGate, Turn, GateState

__all__ = [
    "VoiceAgent", "create_voice_agent",
    "CaptureManager",
    "VoiceError", "CaptureError", "ConversionError", "GatewayError",
    "TimerParseError", "SequencingTimeout", "SessionConflictError",
    "AudioOutput", "CueSound",
    "PlaybackSequencer",
    "AudioReceiver", "AudioPlayer", "SongPlayer", "SpeechToText", "ChatModel",
    "SpeechSynthesizer", "VoiceConverter",
    "OpenAITranscriber", "OpenAIChatModel", "SearchChatModel",
    "ElevenLabsSynthesizer", "HttpVoiceConverter",
    "IntentRouter", "INTENT_TABLE", "normalize",
    "VoiceSession", "CaptureUnit", "PlaybackState",
    "ResponseSynthesizer", "split_into_chunks",
    "TimerService", "parse_duration",
    "Transcoder", "EncodedAudio",
    "TurnGate", "Turn", "GateState",
]
