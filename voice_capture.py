"""
voice_capture.py — Zen Chat · Voice Capture Device
==================================================
Microphone recording for push-to-talk voice messages.

    start()  → opens the input stream, buffers int16 chunks   (IDLE → RECORDING)
    stop()   → finalizes one WAV clip, releases the device,    (RECORDING → IDLE)
               returns a VoiceTranscript from the transcriber

The device is always released on stop, even if finalization fails, so the
OS microphone indicator is never left on.  Audio arrives on the PortAudio
thread; the callback only copies into a lock-protected list.

Transcription of the recorded clip is pluggable:
  • PlaceholderTranscriber  — fixed "Voice message received" notice (default)
  • GroqTranscriber         — Groq Whisper on the recorded WAV
"""

from __future__ import annotations

import io
import logging
import os
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Protocol

import numpy as np
import soundfile as sf
from groq import AsyncGroq

from config import VoiceConfig

try:
    import sounddevice as sd
except OSError:  # PortAudio shared library not installed: no microphone capability
    sd = None

log = logging.getLogger("zen_chat.voice")

StreamFactory = Callable[..., Any]

DEVICE_ERRORS: tuple[type[BaseException], ...] = (OSError, ValueError, RuntimeError)
if sd is not None:
    DEVICE_ERRORS += (sd.PortAudioError,)


class RecordingState(Enum):
    IDLE      = "IDLE"
    RECORDING = "RECORDING"


class PermissionDenied(Exception):
    """The microphone is unavailable or access was refused."""


@dataclass(frozen=True)
class RecordedAudio:
    wav: bytes
    sample_rate: int
    frames: int

    @property
    def duration_sec(self) -> float:
        return self.frames / self.sample_rate if self.sample_rate else 0.0


@dataclass(frozen=True)
class VoiceTranscript:
    text: str
    audio: RecordedAudio
    placeholder: bool = False


# ---------------------------------------------------------------------------
# Transcribers
# ---------------------------------------------------------------------------

class Transcriber(Protocol):
    placeholder: bool

    async def transcribe(self, audio: RecordedAudio) -> str: ...


class PlaceholderTranscriber:
    """Ignores the audio and returns a fixed notice."""

    placeholder = True

    def __init__(self, text: str) -> None:
        self._text = text

    async def transcribe(self, audio: RecordedAudio) -> str:
        log.info("event=transcribe_placeholder duration_sec=%.2f", audio.duration_sec)
        return self._text


class GroqTranscriber:
    """Whisper transcription of the recorded clip via Groq."""

    placeholder = False

    def __init__(self, model: str, language: Optional[str] = None, client: Optional[AsyncGroq] = None) -> None:
        self._model = model
        self._language = language
        self._client = client

    def _get_client(self) -> AsyncGroq:
        if self._client is None:
            self._client = AsyncGroq(api_key=os.environ["GROQ_API_KEY"])
        return self._client

    async def transcribe(self, audio: RecordedAudio) -> str:
        kwargs: dict[str, Any] = {
            "file": ("voice.wav", audio.wav),
            "model": self._model,
            "temperature": 0.0,
        }
        if self._language:
            kwargs["language"] = self._language
        response = await self._get_client().audio.transcriptions.create(**kwargs)
        text = (response.text or "").strip()
        log.info(
            "event=transcribe_done model=%s duration_sec=%.2f transcript_len=%d",
            self._model, audio.duration_sec, len(text),
        )
        return text


def build_transcriber(cfg: VoiceConfig) -> Transcriber:
    if cfg.transcriber == "groq":
        if os.environ.get("GROQ_API_KEY"):
            return GroqTranscriber(cfg.groq_model, cfg.language)
        log.warning("event=transcriber_fallback reason=missing_groq_api_key using=placeholder")
    return PlaceholderTranscriber(cfg.placeholder_text)


# ---------------------------------------------------------------------------
# Device
# ---------------------------------------------------------------------------

class VoiceCaptureDevice:
    """Push-to-talk recorder around a sounddevice InputStream.

    `stream_factory` defaults to `sd.InputStream`; tests inject a fake with
    `start`, `stop` and `close`.
    """

    def __init__(
        self,
        cfg: VoiceConfig,
        *,
        transcriber: Optional[Transcriber] = None,
        stream_factory: Optional[StreamFactory] = None,
    ) -> None:
        self._cfg = cfg
        self._transcriber = transcriber or build_transcriber(cfg)
        self._stream_factory = stream_factory
        self._stream: Any = None
        self._chunks: list[np.ndarray] = []
        self._lock = threading.Lock()
        self.state = RecordingState.IDLE

    @property
    def available(self) -> bool:
        return self._stream_factory is not None or sd is not None

    @property
    def is_recording(self) -> bool:
        return self.state is RecordingState.RECORDING

    # -- PortAudio thread ------------------------------------------------------

    def _on_chunk(self, indata: np.ndarray, frames: int, time_info: Any, status: Any) -> None:
        if status:
            log.warning("event=mic_status status=%s", status)
        with self._lock:
            self._chunks.append(indata.copy())

    # -- lifecycle -------------------------------------------------------------

    def start(self) -> None:
        if self.state is RecordingState.RECORDING:
            raise RuntimeError("already recording")

        factory = self._stream_factory or (sd.InputStream if sd is not None else None)
        if factory is None:
            raise PermissionDenied("no audio input backend (PortAudio not found)")

        with self._lock:
            self._chunks = []

        stream = None
        try:
            stream = factory(
                samplerate=self._cfg.sample_rate,
                channels=self._cfg.channels,
                dtype="int16",
                blocksize=self._cfg.blocksize,
                device=self._cfg.device,
                callback=self._on_chunk,
            )
            stream.start()
        except DEVICE_ERRORS as exc:
            log.warning("event=mic_open_failed error=%s", exc)
            if stream is not None:
                self._close_stream(stream)
            raise PermissionDenied(f"microphone unavailable: {exc}") from exc

        self._stream = stream
        self.state = RecordingState.RECORDING
        log.info("event=recording_started sample_rate=%d channels=%d", self._cfg.sample_rate, self._cfg.channels)

    async def stop(self) -> VoiceTranscript:
        """Finalize the clip, release the device, transcribe."""
        if self.state is not RecordingState.RECORDING:
            raise RuntimeError("not recording")

        try:
            self._stream.stop()
            audio = self._finalize()
        finally:
            self.release()

        log.info("event=recording_finalized frames=%d duration_sec=%.2f", audio.frames, audio.duration_sec)
        text = await self._transcriber.transcribe(audio)
        return VoiceTranscript(text=text, audio=audio, placeholder=self._transcriber.placeholder)

    def release(self) -> None:
        """Stop and close the stream without finalizing.  Safe to call twice."""
        stream, self._stream = self._stream, None
        if stream is not None:
            self._close_stream(stream)
            log.info("event=mic_released")
        with self._lock:
            self._chunks = []
        self.state = RecordingState.IDLE

    @staticmethod
    def _close_stream(stream: Any) -> None:
        try:
            stream.stop()
        except DEVICE_ERRORS as exc:
            log.debug("event=mic_stop_error error=%s", exc)
        try:
            stream.close()
        except DEVICE_ERRORS as exc:
            log.debug("event=mic_close_error error=%s", exc)

    def _finalize(self) -> RecordedAudio:
        """Concatenate buffered chunks into one in-memory WAV."""
        with self._lock:
            chunks, self._chunks = self._chunks, []

        if chunks:
            samples = np.concatenate(chunks, axis=0)
        else:
            samples = np.zeros((0, self._cfg.channels), dtype=np.int16)

        buf = io.BytesIO()
        sf.write(buf, samples, self._cfg.sample_rate, format="WAV", subtype="PCM_16")
        return RecordedAudio(wav=buf.getvalue(), sample_rate=self._cfg.sample_rate, frames=len(samples))
