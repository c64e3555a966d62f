"""Shared fakes for the chat core tests.

Nothing here touches the network or a real microphone: the responder socket,
its connector and the PortAudio input stream are all replaced by in-memory
doubles that record what the code under test did to them.
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any, Optional

import pytest

PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from config import ChatEngineConfig  # noqa: E402
from connection import StreamingChatConnection  # noqa: E402
from dictation import LiveDictation  # noqa: E402
from session import ChatSessionController  # noqa: E402
from voice_capture import PlaceholderTranscriber, VoiceCaptureDevice  # noqa: E402


# ---------------------------------------------------------------------------
# Responder socket
# ---------------------------------------------------------------------------


class FakeSocket:
    """Stands in for a websockets ClientConnection.

    Yields the scripted frames, then either ends (peer closed with
    `close_code`), raises `error`, or stays open until `close()`.
    """

    def __init__(
        self,
        events: list,
        index: int,
        frames: tuple = (),
        *,
        close_code: Optional[int] = 1000,
        hold_open: bool = False,
        error: Optional[BaseException] = None,
    ) -> None:
        self.events = events
        self.index = index
        self.frames = list(frames)
        self.close_code = close_code
        self.close_reason = ""
        self.hold_open = hold_open
        self.error = error
        self.sent: list[Any] = []
        self.closed = False
        self._closed_event = asyncio.Event()

    async def send(self, data: Any) -> None:
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if not self.closed:
            self.events.append(("close", self.index))
        self.closed = True
        self._closed_event.set()

    def __aiter__(self):
        return self._frames()

    async def _frames(self):
        for frame in self.frames:
            if self.closed:
                return
            yield frame
        if self.error is not None:
            raise self.error
        if self.hold_open:
            await self._closed_event.wait()


class FakeConnector:
    """Async callable replacing `websockets.connect`.

    Each call consumes the next script queued with `script()`; unscripted
    calls get an empty socket that closes normally.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []
        self.sockets: list[FakeSocket] = []
        self.events: list[tuple[str, int]] = []
        self._scripts: list[dict] = []

    def script(self, *frames: Any, fail: Optional[BaseException] = None, **kwargs: Any) -> None:
        self._scripts.append({"frames": frames, "fail": fail, **kwargs})

    async def __call__(self, url: str, **kwargs: Any) -> FakeSocket:
        self.calls.append((url, kwargs))
        plan = self._scripts.pop(0) if self._scripts else {"frames": ()}
        fail = plan.pop("fail", None)
        if fail is not None:
            raise fail
        sock = FakeSocket(self.events, len(self.sockets), plan.pop("frames"), **plan)
        self.sockets.append(sock)
        self.events.append(("open", sock.index))
        return sock


# ---------------------------------------------------------------------------
# Microphone
# ---------------------------------------------------------------------------


class FakeInputStream:
    """Records the sounddevice.InputStream calls made on it."""

    instances: list["FakeInputStream"] = []

    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self.callback = kwargs["callback"]
        self.started = False
        self.stopped = False
        self.closed = False
        FakeInputStream.instances.append(self)

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True

    def close(self) -> None:
        self.closed = True


class DeniedInputStream(FakeInputStream):
    def start(self) -> None:
        raise OSError("Device unavailable")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def config() -> ChatEngineConfig:
    return ChatEngineConfig()


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def input_streams():
    FakeInputStream.instances = []
    yield FakeInputStream.instances
    FakeInputStream.instances = []


@pytest.fixture
def make_controller(config, connector, input_streams):
    """Build a controller wired to the fakes."""
    built: list[ChatSessionController] = []

    def _make(*, persona_id: Optional[str] = None, stream_factory: Any = FakeInputStream, **overrides: Any):
        recorder = VoiceCaptureDevice(
            config.voice,
            transcriber=PlaceholderTranscriber(config.voice.placeholder_text),
            stream_factory=stream_factory,
        )
        kwargs: dict[str, Any] = {
            "persona_id": persona_id,
            "session_id": f"test-session-{len(built) + 1}",
            "connection_factory": lambda sid: StreamingChatConnection(sid, config.connection, connector=connector),
            "recorder": recorder,
            "dictation_factory": lambda on_draft: LiveDictation(config.dictation, on_draft, api_key=""),
        }
        kwargs.update(overrides)
        controller = ChatSessionController(config, **kwargs)
        built.append(controller)
        return controller

    return _make


async def wait_until(predicate, timeout: float = 1.0) -> None:
    """Yield to the loop until *predicate()* holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.001)
