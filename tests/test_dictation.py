"""Tests for live dictation."""

from __future__ import annotations

import asyncio
import json

import numpy as np
import pytest

from conftest import FakeInputStream
from config import DictationConfig
from connection import TransportError
from dictation import LiveDictation, extract_result, listen_url
from voice_capture import PermissionDenied


def _result(text: str, is_final: bool) -> str:
    return json.dumps({
        "type": "Results",
        "is_final": is_final,
        "channel": {"alternatives": [{"transcript": text}]},
    })


class TestExtractResult:

    def test_results_message(self):
        assert extract_result(json.loads(_result(" calm mind ", True))) == ("calm mind", True)

    def test_other_events_ignored(self):
        assert extract_result({"type": "Metadata", "request_id": "abc"}) is None
        assert extract_result({"type": "UtteranceEnd"}) is None


class TestListenUrl:

    def test_audio_parameters_follow_config(self):
        url = listen_url(DictationConfig(sample_rate=48000, language="hi"))

        assert url.startswith("wss://api.deepgram.com/v1/listen?")
        assert "sample_rate=48000" in url
        assert "sample_rate=16000" not in url
        assert "encoding=linear16" in url
        assert "channels=1" in url
        assert "language=hi" in url


class TestDraft:

    def test_interim_then_final(self):
        drafts = []
        dictation = LiveDictation(DictationConfig(), drafts.append, api_key="dg_test")

        dictation.handle_message(_result("I feel", False))
        dictation.handle_message(_result("I feel calm", True))
        dictation.handle_message(_result("today", False))

        assert drafts == ["I feel", "I feel calm", "I feel calm today"]
        assert dictation.draft == "I feel calm today"

    def test_non_json_and_metadata_ignored(self):
        drafts = []
        dictation = LiveDictation(DictationConfig(), drafts.append, api_key="dg_test")

        dictation.handle_message("not json")
        dictation.handle_message(json.dumps({"type": "Metadata"}))
        dictation.handle_message(json.dumps([1, 2]))

        assert drafts == []


class TestAvailability:

    def test_requires_api_key(self):
        dictation = LiveDictation(DictationConfig(), lambda _: None, api_key="", stream_factory=FakeInputStream)
        assert dictation.available is False

    def test_disabled_in_config(self):
        dictation = LiveDictation(
            DictationConfig(enabled=False), lambda _: None, api_key="dg_test", stream_factory=FakeInputStream
        )
        assert dictation.available is False

    @pytest.mark.asyncio
    async def test_start_when_unavailable(self):
        dictation = LiveDictation(DictationConfig(), lambda _: None, api_key="")
        with pytest.raises(PermissionDenied):
            await dictation.start()


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_streams_audio_and_updates_draft(self, connector, input_streams):
        connector.script(_result("Om shanti", True), hold_open=True)
        got_draft = asyncio.Event()
        drafts = []

        def on_draft(text):
            drafts.append(text)
            got_draft.set()

        dictation = LiveDictation(
            DictationConfig(), on_draft, api_key="dg_test", connector=connector, stream_factory=FakeInputStream
        )

        await dictation.start()
        assert dictation.active
        await asyncio.wait_for(got_draft.wait(), timeout=1.0)

        url, kwargs = connector.calls[0]
        assert url.startswith("wss://api.deepgram.com/v1/listen")
        assert "sample_rate=16000" in url
        assert kwargs["additional_headers"] == {"Authorization": "Token dg_test"}

        chunk = np.arange(4, dtype=np.int16).reshape(-1, 1)
        input_streams[0].callback(chunk, 4, None, None)
        sock = connector.sockets[0]
        for _ in range(100):
            if chunk.tobytes() in sock.sent:
                break
            await asyncio.sleep(0.001)
        assert chunk.tobytes() in sock.sent

        draft = await dictation.stop()

        assert draft == "Om shanti"
        assert drafts == ["Om shanti"]
        assert json.dumps({"type": "CloseStream"}) in sock.sent
        assert sock.closed
        assert input_streams[0].closed
        assert not dictation.active

    @pytest.mark.asyncio
    async def test_cancelled_stop_propagates_and_releases(self, connector, input_streams):
        connector.script(hold_open=True)
        dictation = LiveDictation(
            DictationConfig(), lambda _: None, api_key="dg_test", connector=connector, stream_factory=FakeInputStream
        )
        await dictation.start()

        stopping = asyncio.create_task(dictation.stop())
        await asyncio.sleep(0)
        stopping.cancel()

        with pytest.raises(asyncio.CancelledError):
            await stopping

        assert input_streams[0].closed
        assert not dictation.active

    @pytest.mark.asyncio
    async def test_unreachable_service_releases_microphone(self, connector, input_streams):
        connector.script(fail=OSError("Name or service not known"))
        dictation = LiveDictation(
            DictationConfig(), lambda _: None, api_key="dg_test", connector=connector, stream_factory=FakeInputStream
        )

        with pytest.raises(TransportError):
            await dictation.start()

        assert input_streams[0].closed
        assert not dictation.active
