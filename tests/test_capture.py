"""Tests for per-speaker capture loops."""
import asyncio
import pytest
from pathlib import Path
from unittest.mock import AsyncMock

from voice.capture import CaptureManager
from voice.session import VoiceSession

from conftest import FakeReceiver, FakeTranscoder

ONE_SECOND = b"\x01\x00" * 48000


def _manager(receiver, tmp_path, on_utterance, transcoder=None):
    return CaptureManager(
        receiver,
        transcoder or FakeTranscoder(),
        on_utterance,
        recordings_dir=str(tmp_path / "recordings"),
        error_backoff_s=0.0,
    )


class TestCaptureManager:

    @pytest.mark.asyncio
    async def test_hands_off_encoded_utterance(self, session, tmp_path, eventually):
        on_utterance = AsyncMock()
        manager = _manager(FakeReceiver([ONE_SECOND * 3]), tmp_path, on_utterance)

        assert manager.start_capture(session, "alice") is True
        await eventually(lambda: on_utterance.await_count == 1)

        _, user_id, audio = on_utterance.await_args.args
        assert user_id == "alice"
        assert audio.duration_seconds == pytest.approx(3.0)
        assert audio.path.suffix == ".mp3"
        await manager.stop_all(session)

    @pytest.mark.asyncio
    async def test_files_exist_during_handoff_and_deleted_after(self, session, tmp_path, eventually):
        seen = []

        async def on_utterance(sess, user_id, audio):
            seen.append((audio.path.exists(), audio.path.with_suffix(".pcm").exists()))

        receiver = FakeReceiver([ONE_SECOND])
        manager = _manager(receiver, tmp_path, on_utterance)
        manager.start_capture(session, "alice")
        # second record call means the first utterance was cleaned up
        await eventually(lambda: len(receiver.calls) == 2)

        assert seen == [(True, True)]
        assert list((tmp_path / "recordings").iterdir()) == []
        await manager.stop_all(session)

    @pytest.mark.asyncio
    async def test_restarts_after_receiver_failure(self, session, tmp_path, eventually):
        on_utterance = AsyncMock()
        receiver = FakeReceiver([RuntimeError("opus decode failed"), ONE_SECOND * 2])
        manager = _manager(receiver, tmp_path, on_utterance)

        manager.start_capture(session, "alice")
        await eventually(lambda: on_utterance.await_count == 1)

        unit = session.capture_units["alice"]
        assert unit.failures == 1
        assert unit.utterances == 1
        assert receiver.calls[:2] == ["alice", "alice"]
        await manager.stop_all(session)

    @pytest.mark.asyncio
    async def test_conversion_failure_abandons_utterance(self, session, tmp_path, eventually):
        on_utterance = AsyncMock()
        receiver = FakeReceiver([b"", ONE_SECOND * 2])
        manager = _manager(receiver, tmp_path, on_utterance)

        manager.start_capture(session, "alice")
        await eventually(lambda: on_utterance.await_count == 1)
        assert len(receiver.calls) >= 2
        assert session.capture_units["alice"].failures == 0
        await manager.stop_all(session)

    @pytest.mark.asyncio
    async def test_handler_error_keeps_listening(self, session, tmp_path, eventually):
        on_utterance = AsyncMock(side_effect=[ValueError("boom"), None])
        manager = _manager(FakeReceiver([ONE_SECOND, ONE_SECOND]), tmp_path, on_utterance)

        manager.start_capture(session, "alice")
        await eventually(lambda: on_utterance.await_count == 2)
        await manager.stop_all(session)

    @pytest.mark.asyncio
    async def test_one_unit_per_speaker(self, session, tmp_path):
        manager = _manager(FakeReceiver(), tmp_path, AsyncMock())
        assert manager.start_capture(session, "alice") is True
        assert manager.start_capture(session, "alice") is False
        assert manager.start_capture(session, "bob") is True
        assert set(session.capture_units) == {"alice", "bob"}
        await manager.stop_all(session)

    @pytest.mark.asyncio
    async def test_stop_capture(self, session, tmp_path):
        manager = _manager(FakeReceiver(), tmp_path, AsyncMock())
        manager.start_capture(session, "alice")
        task = session.capture_units["alice"].task
        await asyncio.sleep(0)

        assert await manager.stop_capture(session, "alice") is True
        assert task.cancelled()
        assert "alice" not in session.capture_units
        assert await manager.stop_capture(session, "alice") is False

    @pytest.mark.asyncio
    async def test_inactive_session_does_not_capture(self, tmp_path):
        session = VoiceSession(channel_id="ch")
        session.active = False
        manager = _manager(FakeReceiver(), tmp_path, AsyncMock())
        assert manager.start_capture(session, "alice") is False
