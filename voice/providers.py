"""
Voice Providers — capability interfaces and HTTP gateways for the collaborators
the voice-turn pipeline depends on.

Capabilities (abstract):
- AudioReceiver:     transport side, records one speaker's utterance to a PCM file
- AudioPlayer:       transport side, plays a file into the voice channel
- SongPlayer:        optional music integration
- SpeechToText:      audio artifact → text + duration
- ChatModel:         ordered messages → reply text
- SpeechSynthesizer: text → audio bytes
- VoiceConverter:    audio bytes → audio bytes (optional post-process)

HTTP implementations (httpx):
- OpenAITranscriber:      Whisper transcription endpoint
- OpenAIChatModel:        chat completions
- SearchChatModel:        search-grounded chat completions (own endpoint + key)
- ElevenLabsSynthesizer:  text-to-speech
- HttpVoiceConverter:     raw-body voice conversion service

Every failure surfaces as GatewayError; nothing here retries.
"""
from __future__ import annotations

import abc
import asyncio
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

import httpx
import structlog

from config.settings import LLMConfig, SearchConfig, STTConfig, TTSConfig, VoiceConversionConfig
from models.schemas import ChatMessage, Transcription
from voice.errors import GatewayError

if TYPE_CHECKING:
    from voice.session import VoiceSession
    from voice.transcoder import EncodedAudio

logger = structlog.get_logger()


SEARCH_DISABLED_REPLY = "Web search is disabled."
SEARCH_NO_CREDENTIALS_REPLY = "Web search is not configured with credentials."


# ══════════════════════════════════════════════════════════════
#  TRANSPORT CAPABILITIES
# ══════════════════════════════════════════════════════════════

class AudioReceiver(abc.ABC):
    """Voice transport: per-speaker audio subscription."""

    @abc.abstractmethod
    async def record(self, user_id: str, sink: Path, silence_timeout_ms: int) -> None:
        """
        Subscribe to `user_id`, decode to s16le PCM and write it to `sink`.
        Returns once `silence_timeout_ms` of trailing silence closed the stream.
        """
        ...


class AudioPlayer(abc.ABC):
    """Voice transport: audio output into the channel."""

    @abc.abstractmethod
    async def play(self, session: VoiceSession, source: str, volume: float = 1.0) -> None:
        """Play a local audio file. Returns when playback finished."""
        ...

    @abc.abstractmethod
    async def stop(self, session: VoiceSession) -> None:
        ...


class SongPlayer(abc.ABC):

    @abc.abstractmethod
    async def play(self, session: VoiceSession, query: str) -> str:
        """Search and start a song. Returns a short spoken confirmation."""
        ...

    @abc.abstractmethod
    async def stop(self, session: VoiceSession) -> bool:
        ...


# ══════════════════════════════════════════════════════════════
#  MODEL CAPABILITIES
# ══════════════════════════════════════════════════════════════

class SpeechToText(abc.ABC):

    @abc.abstractmethod
    async def transcribe(self, audio: EncodedAudio) -> Transcription:
        ...


class ChatModel(abc.ABC):

    @abc.abstractmethod
    async def complete(self, messages: list[ChatMessage]) -> str:
        ...


class SpeechSynthesizer(abc.ABC):

    @abc.abstractmethod
    async def synthesize(self, text: str) -> bytes:
        ...


class VoiceConverter(abc.ABC):

    @abc.abstractmethod
    async def convert(self, audio: bytes) -> bytes:
        ...


# ══════════════════════════════════════════════════════════════
#  HTTP BASE
# ══════════════════════════════════════════════════════════════

class HttpGateway:
    """Lazily created AsyncClient plus uniform error mapping."""

    service = "gateway"

    def __init__(self, base_url: str, timeout_s: float = 30.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._client = client

    def _headers(self) -> dict[str, str]:
        return {}

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout_s, connect=10.0),
            )
        return self._client

    async def _post(self, url: str, **kwargs) -> httpx.Response:
        client = await self._get_client()
        headers = {**self._headers(), **kwargs.pop("headers", {})}
        try:
            response = await client.post(url, headers=headers, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as e:
            logger.error(f"{self.service}_http_error",
                         status=e.response.status_code, body=e.response.text[:200])
            raise GatewayError(
                f"{self.service} returned {e.response.status_code}",
                service=self.service, status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"{self.service}_request_failed", error=str(e))
            raise GatewayError(f"{self.service} request failed: {e}", service=self.service) from e

    async def aclose(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()


# ══════════════════════════════════════════════════════════════
#  IMPLEMENTATIONS
# ══════════════════════════════════════════════════════════════

class OpenAITranscriber(HttpGateway, SpeechToText):
    service = "stt"

    def __init__(self, config: STTConfig, client: Optional[httpx.AsyncClient] = None):
        super().__init__(config.base_url, config.timeout_s, client)
        self.config = config

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.config.api_key}"}

    async def transcribe(self, audio: EncodedAudio) -> Transcription:
        data = {"model": self.config.model, "response_format": "verbose_json"}
        if self.config.language:
            data["language"] = self.config.language
        try:
            content = await asyncio.to_thread(Path(audio.path).read_bytes)
        except OSError as e:
            raise GatewayError(f"cannot read {audio.path}: {e}", service=self.service) from e

        response = await self._post(
            "/audio/transcriptions",
            data=data,
            files={"file": (Path(audio.path).name, content, "audio/mpeg")},
        )
        body = self._json(response)
        text = str(body.get("text", "")).strip()
        duration = body.get("duration", audio.duration_seconds)
        return Transcription(text=text, duration_seconds=duration)

    def _json(self, response: httpx.Response) -> dict[str, Any]:
        try:
            return response.json()
        except ValueError as e:
            raise GatewayError("stt returned invalid JSON", service=self.service) from e


class OpenAIChatModel(HttpGateway, ChatModel):
    service = "llm"

    def __init__(self, config: LLMConfig, client: Optional[httpx.AsyncClient] = None):
        super().__init__(config.base_url, config.timeout_s, client)
        self.config = config

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.config.api_key}"}

    def _payload(self, messages: list[ChatMessage]) -> dict[str, Any]:
        return {
            "model": self.config.model,
            "messages": [m.to_api() for m in messages],
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
        }

    async def complete(self, messages: list[ChatMessage]) -> str:
        response = await self._post("/chat/completions", json=self._payload(messages))
        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise GatewayError(f"{self.service} returned an unexpected body",
                               service=self.service) from e
        return (content or "").strip()


class SearchChatModel(OpenAIChatModel):
    """Chat completions against a search-grounded model with its own key."""
    service = "search"

    def __init__(self, config: SearchConfig, client: Optional[httpx.AsyncClient] = None):
        HttpGateway.__init__(self, config.base_url, config.timeout_s, client)
        self.config = config

    def _payload(self, messages: list[ChatMessage]) -> dict[str, Any]:
        return {
            "model": self.config.model,
            "messages": [m.to_api() for m in messages],
        }

    async def complete(self, messages: list[ChatMessage]) -> str:
        if not self.config.enabled:
            logger.info("search_refused", reason="disabled")
            return SEARCH_DISABLED_REPLY
        if not self.config.api_key:
            logger.warning("search_refused", reason="missing_credentials")
            return SEARCH_NO_CREDENTIALS_REPLY
        return await super().complete(messages)


class ElevenLabsSynthesizer(HttpGateway, SpeechSynthesizer):
    service = "tts"

    def __init__(self, config: TTSConfig, client: Optional[httpx.AsyncClient] = None):
        super().__init__(config.base_url, config.timeout_s, client)
        self.config = config

    def _headers(self) -> dict[str, str]:
        return {"xi-api-key": self.config.api_key, "Accept": "audio/mpeg"}

    async def synthesize(self, text: str) -> bytes:
        response = await self._post(
            f"/text-to-speech/{self.config.voice_id}",
            json={"text": text, "model_id": self.config.model_id},
        )
        if not response.content:
            raise GatewayError("tts returned no audio", service=self.service)
        return response.content


class HttpVoiceConverter(HttpGateway, VoiceConverter):
    service = "voice_conversion"

    def __init__(self, config: VoiceConversionConfig, client: Optional[httpx.AsyncClient] = None):
        super().__init__(config.url, config.timeout_s, client)
        self.config = config

    async def convert(self, audio: bytes) -> bytes:
        response = await self._post(
            self.base_url, content=audio, headers={"Content-Type": "audio/mpeg"},
        )
        if not response.content:
            raise GatewayError("voice conversion returned no audio", service=self.service)
        return response.content
