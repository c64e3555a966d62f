"""
dictation.py — Zen Chat · Live Dictation
========================================
Fills the input box while the user speaks, independently of push-to-talk
recording.  Microphone audio is streamed to a Deepgram live-transcription
websocket; every result updates the running draft (finals + latest interim)
through `on_draft`.  Dictation never submits anything by itself.

Capability-gated: without PortAudio or without DEEPGRAM_API_KEY the object
reports `available == False` and the UI keeps to typed input.

Threading
---------
The sounddevice callback runs on the PortAudio thread and only hands raw
bytes to the event loop via `call_soon_threadsafe`.  The sender drains the
asyncio queue onto the socket; the receiver parses results.  Both run in a
single task so `stop()` tears everything down with one cancel.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode

import numpy as np
import websockets
from websockets.exceptions import WebSocketException

from config import DictationConfig
from connection import TransportError
from voice_capture import DEVICE_ERRORS, PermissionDenied, sd

log = logging.getLogger("zen_chat.dictation")

DraftCallback = Callable[[str], None]

AUDIO_QUEUE_MAX = 64   # ~5 s of 80 ms blocks; chunks arriving beyond this are dropped


def listen_url(cfg: DictationConfig) -> str:
    """Live URL whose audio parameters match the captured stream."""
    query = urlencode({
        "model": cfg.model,
        "language": cfg.language,
        "interim_results": "true",
        "smart_format": "true",
        "encoding": "linear16",
        "sample_rate": cfg.sample_rate,
        "channels": 1,
    })
    return f"{cfg.url}?{query}"


def extract_result(msg: dict) -> Optional[tuple[str, bool]]:
    """Pull (transcript, is_final) out of a Deepgram live message."""
    if msg.get("type", "Results") != "Results" or "channel" not in msg:
        return None
    alternatives = msg.get("channel", {}).get("alternatives") or [{}]
    transcript = (alternatives[0].get("transcript") or "").strip()
    return transcript, bool(msg.get("is_final"))


class LiveDictation:
    def __init__(
        self,
        cfg: DictationConfig,
        on_draft: DraftCallback,
        *,
        api_key: Optional[str] = None,
        connector: Optional[Callable[..., Awaitable[Any]]] = None,
        stream_factory: Optional[Callable[..., Any]] = None,
    ) -> None:
        self._cfg = cfg
        self._on_draft = on_draft
        self._api_key = api_key if api_key is not None else os.environ.get("DEEPGRAM_API_KEY", "")
        self._connector = connector or websockets.connect
        self._stream_factory = stream_factory
        self._stream: Any = None
        self._ws: Any = None
        self._task: Optional[asyncio.Task] = None
        self._queue: asyncio.Queue[bytes] = asyncio.Queue(maxsize=AUDIO_QUEUE_MAX)
        self._finals: list[str] = []
        self._interim = ""

    @property
    def available(self) -> bool:
        has_mic = self._stream_factory is not None or sd is not None
        return self._cfg.enabled and has_mic and bool(self._api_key)

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def draft(self) -> str:
        return " ".join([*self._finals, self._interim]).strip()

    # -- transcript handling ---------------------------------------------------

    def handle_message(self, raw: str | bytes) -> None:
        try:
            msg = json.loads(raw)
        except ValueError:
            log.debug("event=dictation_non_json len=%d", len(raw))
            return
        if not isinstance(msg, dict):
            return

        result = extract_result(msg)
        if result is None:
            log.debug("event=dictation_event type=%s", msg.get("type"))
            return

        transcript, is_final = result
        if is_final:
            if transcript:
                self._finals.append(transcript)
            self._interim = ""
        else:
            self._interim = transcript
        self._on_draft(self.draft)

    # -- lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        if self.active:
            return
        if not self.available:
            raise PermissionDenied("live dictation is not available")

        self._finals.clear()
        self._interim = ""
        self._queue = asyncio.Queue(maxsize=AUDIO_QUEUE_MAX)
        loop = asyncio.get_running_loop()

        def _enqueue(data: bytes) -> None:
            if self._queue.full():
                log.debug("event=dictation_audio_dropped")
                return
            self._queue.put_nowait(data)

        def _audio_callback(indata: np.ndarray, frames: int, time_info: Any, status: Any) -> None:
            if status:
                log.warning("event=dictation_mic_status status=%s", status)
            loop.call_soon_threadsafe(_enqueue, indata.tobytes())

        factory = self._stream_factory or sd.InputStream
        try:
            self._stream = factory(
                samplerate=self._cfg.sample_rate,
                channels=1,
                dtype="int16",
                blocksize=self._cfg.blocksize,
                callback=_audio_callback,
            )
            self._stream.start()
        except DEVICE_ERRORS as exc:
            self._release_stream()
            raise PermissionDenied(f"microphone unavailable: {exc}") from exc

        try:
            self._ws = await self._connector(
                listen_url(self._cfg),
                additional_headers={"Authorization": f"Token {self._api_key}"},
            )
        except (WebSocketException, OSError, asyncio.TimeoutError) as exc:
            self._release_stream()
            log.warning("event=dictation_connect_failed error=%s", exc)
            raise TransportError(f"dictation service unreachable: {exc}") from exc

        self._task = asyncio.create_task(self._run(), name="live_dictation")
        log.info("event=dictation_started")

    async def _run(self) -> None:
        ws = self._ws

        async def sender() -> None:
            while True:
                chunk = await self._queue.get()
                await ws.send(chunk)

        async def receiver() -> None:
            async for raw in ws:
                self.handle_message(raw)

        send_task = asyncio.create_task(sender())
        try:
            await receiver()
        except WebSocketException as exc:
            log.warning("event=dictation_socket_closed error=%s", exc)
        finally:
            send_task.cancel()
            try:
                await send_task
            except asyncio.CancelledError:
                if asyncio.current_task().cancelling():
                    raise
            except WebSocketException as exc:
                log.debug("event=dictation_send_failed error=%s", exc)
            finally:
                self._release_stream()

    async def stop(self) -> str:
        """Stop listening; returns the final draft."""
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.send(json.dumps({"type": "CloseStream"}))
                await ws.close()
            except (WebSocketException, OSError) as exc:
                log.debug("event=dictation_close_error error=%s", exc)

        task, self._task = self._task, None
        try:
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    if asyncio.current_task().cancelling():
                        raise
        finally:
            self._release_stream()
        log.info("event=dictation_stopped draft_len=%d", len(self.draft))
        return self.draft

    def _release_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except DEVICE_ERRORS as exc:
            log.debug("event=dictation_mic_close_error error=%s", exc)
