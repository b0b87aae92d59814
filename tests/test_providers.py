"""Tests for the HTTP gateways, driven through httpx.MockTransport."""
import asyncio
import json
import httpx
import pytest
from unittest.mock import patch

from config.settings import LLMConfig, SearchConfig, STTConfig, TTSConfig, VoiceConversionConfig
from models.schemas import ChatMessage
from voice.errors import GatewayError
from voice.providers import (
    SEARCH_DISABLED_REPLY, SEARCH_NO_CREDENTIALS_REPLY,
    ElevenLabsSynthesizer, HttpVoiceConverter, OpenAIChatModel, OpenAITranscriber,
    SearchChatModel,
)
from voice.transcoder import EncodedAudio


def _client(handler, base_url) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=base_url)


def _completion(content):
    return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": content}}]})


MESSAGES = [
    ChatMessage(role="system", content="Be brief."),
    ChatMessage(role="user", content="What is the capital of France?"),
]


class TestOpenAIChatModel:

    @pytest.mark.asyncio
    async def test_complete(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return _completion("  Paris.  ")

        config = LLMConfig(api_key="sk-test", model="gpt-test")
        model = OpenAIChatModel(config, client=_client(handler, config.base_url))
        assert await model.complete(MESSAGES) == "Paris."

        assert seen["url"] == "https://api.openai.com/v1/chat/completions"
        assert seen["auth"] == "Bearer sk-test"
        assert seen["body"]["model"] == "gpt-test"
        assert seen["body"]["messages"][1] == {"role": "user", "content": "What is the capital of France?"}

    @pytest.mark.asyncio
    async def test_http_error_maps_to_gateway_error(self):
        config = LLMConfig()
        model = OpenAIChatModel(config, client=_client(lambda r: httpx.Response(500, text="boom"), config.base_url))
        with pytest.raises(GatewayError) as exc:
            await model.complete(MESSAGES)
        assert exc.value.service == "llm"
        assert exc.value.status_code == 500

    @pytest.mark.asyncio
    async def test_transport_error_maps_to_gateway_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        config = LLMConfig()
        model = OpenAIChatModel(config, client=_client(handler, config.base_url))
        with pytest.raises(GatewayError):
            await model.complete(MESSAGES)

    @pytest.mark.asyncio
    async def test_unexpected_body(self):
        config = LLMConfig()
        model = OpenAIChatModel(config, client=_client(lambda r: httpx.Response(200, json={}), config.base_url))
        with pytest.raises(GatewayError):
            await model.complete(MESSAGES)


class TestSearchChatModel:

    @pytest.mark.asyncio
    async def test_disabled_refuses_without_request(self):
        def handler(request):
            raise AssertionError("no request expected")

        config = SearchConfig(enabled=False, api_key="pplx")
        model = SearchChatModel(config, client=_client(handler, config.base_url))
        assert await model.complete(MESSAGES) == SEARCH_DISABLED_REPLY

    @pytest.mark.asyncio
    async def test_missing_key_refuses(self):
        config = SearchConfig(enabled=True, api_key="")
        model = SearchChatModel(config, client=_client(lambda r: _completion("x"), config.base_url))
        assert await model.complete(MESSAGES) == SEARCH_NO_CREDENTIALS_REPLY

    @pytest.mark.asyncio
    async def test_enabled(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            return _completion("Sunny, 24 degrees.")

        config = SearchConfig(enabled=True, api_key="pplx-key")
        model = SearchChatModel(config, client=_client(handler, config.base_url))
        assert await model.complete(MESSAGES) == "Sunny, 24 degrees."
        assert seen["url"] == "https://api.perplexity.ai/chat/completions"
        assert seen["auth"] == "Bearer pplx-key"


class TestOpenAITranscriber:

    @pytest.mark.asyncio
    async def test_transcribe(self, tmp_path):
        audio_path = tmp_path / "a.mp3"
        audio_path.write_bytes(b"ID3audio")
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = request.content
            return httpx.Response(200, json={"text": " lounge hello there ", "duration": 2.5})

        config = STTConfig(api_key="sk-test")
        stt = OpenAITranscriber(config, client=_client(handler, config.base_url))
        result = await stt.transcribe(EncodedAudio(path=audio_path, duration_seconds=2.4))

        assert result.text == "lounge hello there"
        assert result.duration_seconds == 2.5
        assert seen["url"].endswith("/audio/transcriptions")
        assert b"whisper-1" in seen["body"]
        assert b"ID3audio" in seen["body"]

    @pytest.mark.asyncio
    async def test_audio_read_off_event_loop(self, tmp_path):
        audio_path = tmp_path / "a.mp3"
        audio_path.write_bytes(b"ID3audio")
        config = STTConfig()
        stt = OpenAITranscriber(
            config, client=_client(lambda r: httpx.Response(200, json={"text": "hi"}), config.base_url),
        )
        with patch("voice.providers.asyncio.to_thread", wraps=asyncio.to_thread) as offload:
            await stt.transcribe(EncodedAudio(path=audio_path, duration_seconds=2.4))

        assert offload.called
        assert audio_path.read_bytes in [c.args[0] for c in offload.call_args_list]

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        config = STTConfig()
        stt = OpenAITranscriber(config, client=_client(lambda r: httpx.Response(200), config.base_url))
        with pytest.raises(GatewayError):
            await stt.transcribe(EncodedAudio(path=tmp_path / "gone.mp3", duration_seconds=3.0))


class TestElevenLabsSynthesizer:

    @pytest.mark.asyncio
    async def test_synthesize(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["key"] = request.headers["xi-api-key"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, content=b"ID3mp3")

        config = TTSConfig(api_key="el-key", voice_id="voice123")
        tts = ElevenLabsSynthesizer(config, client=_client(handler, config.base_url))
        assert await tts.synthesize("Hello there.") == b"ID3mp3"
        assert seen["url"] == "https://api.elevenlabs.io/v1/text-to-speech/voice123"
        assert seen["key"] == "el-key"
        assert seen["body"]["text"] == "Hello there."

    @pytest.mark.asyncio
    async def test_empty_audio(self):
        config = TTSConfig(voice_id="v")
        tts = ElevenLabsSynthesizer(config, client=_client(lambda r: httpx.Response(200), config.base_url))
        with pytest.raises(GatewayError):
            await tts.synthesize("Hello.")


class TestVoiceConverter:

    @pytest.mark.asyncio
    async def test_convert(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = request.content
            return httpx.Response(200, content=b"converted")

        config = VoiceConversionConfig(enabled=True, url="http://rvc.local:7865/convert")
        converter = HttpVoiceConverter(config, client=_client(handler, config.url))
        assert await converter.convert(b"original") == b"converted"
        assert seen["url"] == "http://rvc.local:7865/convert"
        assert seen["body"] == b"original"
