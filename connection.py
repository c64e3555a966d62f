"""
connection.py — Zen Chat · Streaming Chat Connection
====================================================
Owns the duplex websocket to the remote responder for exactly one turn.

Lifecycle
---------
    IDLE → CONNECTING → OPEN → RECEIVING* → CLOSED
    ERRORED is absorbing and reachable from every non-terminal state.

A connection object is single-use: `send()` opens the socket, transmits the
initiation frame and yields parsed inbound frames until the socket closes.
The controller creates a fresh instance per outgoing turn and closes the
previous one first, so at most one socket is ever live per session.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedError, WebSocketException

from config import ConnectionConfig, PersonaConfig
from protocol import InboundFrame, build_initiation_frame, parse_inbound_frame

log = logging.getLogger("zen_chat.connection")

NORMAL_CLOSURE = 1000
ABNORMAL_CLOSURE = 1006   # no close frame received

Connector = Callable[..., Awaitable[Any]]


class ConnectionState(Enum):
    IDLE       = "IDLE"
    CONNECTING = "CONNECTING"
    OPEN       = "OPEN"
    RECEIVING  = "RECEIVING"
    CLOSED     = "CLOSED"
    ERRORED    = "ERRORED"


_TERMINAL = frozenset({ConnectionState.CLOSED, ConnectionState.ERRORED})


class TransportError(Exception):
    """The responder could not be reached or the socket failed."""


class AbnormalClose(TransportError):
    """The socket closed with a non-normal code after a successful open."""

    def __init__(self, code: int, reason: str = "") -> None:
        super().__init__(f"connection closed with code {code}" + (f" ({reason})" if reason else ""))
        self.code = code
        self.reason = reason


def _close_details(exc: ConnectionClosed) -> tuple[int, str]:
    if exc.rcvd is not None:
        return exc.rcvd.code, exc.rcvd.reason
    return ABNORMAL_CLOSURE, ""


class StreamingChatConnection:
    """One websocket, one turn.

    `connector` defaults to `websockets.connect`; tests inject a coroutine
    function returning a fake socket with `send`, `close`, async iteration
    and an optional `close_code` attribute.
    """

    def __init__(
        self,
        session_id: str,
        cfg: ConnectionConfig,
        *,
        connector: Optional[Connector] = None,
    ) -> None:
        self.session_id = session_id
        self._cfg = cfg
        self._connector = connector or websockets.connect
        self._ws: Any = None
        self._closed_locally = False
        self.state = ConnectionState.IDLE

    @property
    def is_active(self) -> bool:
        return self.state not in _TERMINAL and self.state is not ConnectionState.IDLE

    def _set_state(self, new_state: ConnectionState) -> None:
        prev = self.state
        if prev is new_state:
            return
        self.state = new_state
        log.debug(
            "event=connection_state session=%s from=%s to=%s",
            self.session_id, prev.value, new_state.value,
        )

    async def send(self, turn_text: str, persona: PersonaConfig) -> AsyncIterator[InboundFrame]:
        """Open, transmit the initiation frame, then yield frames until close.

        Raises TransportError if the socket cannot be opened, AbnormalClose
        if it closes with anything but 1000 after opening.
        """
        if self.state is not ConnectionState.IDLE:
            raise RuntimeError(f"connection already used (state={self.state.value})")

        self._set_state(ConnectionState.CONNECTING)
        try:
            self._ws = await self._connector(
                self._cfg.endpoint,
                open_timeout=self._cfg.open_timeout,
                close_timeout=self._cfg.close_timeout,
            )
        except asyncio.CancelledError:
            self._set_state(ConnectionState.CLOSED)
            raise
        except (WebSocketException, OSError, asyncio.TimeoutError) as exc:
            self._set_state(ConnectionState.ERRORED)
            log.warning("event=connection_open_failed session=%s error=%s", self.session_id, exc)
            raise TransportError(f"could not connect to {self._cfg.endpoint}: {exc}") from exc

        self._set_state(ConnectionState.OPEN)
        log.info("event=connection_opened session=%s endpoint=%s", self.session_id, self._cfg.endpoint)

        try:
            await self._ws.send(build_initiation_frame(
                chat_id=self.session_id,
                app_id=self._cfg.app_id,
                system_prompt=persona.system_prompt,
                message=turn_text,
            ))
            log.info("event=turn_sent session=%s message_len=%d", self.session_id, len(turn_text))

            async for raw in self._ws:
                self._set_state(ConnectionState.RECEIVING)
                frame = parse_inbound_frame(raw)
                if frame is not None:
                    yield frame

        except ConnectionClosedError as exc:
            if self._closed_locally:
                return
            code, reason = _close_details(exc)
            self._set_state(ConnectionState.ERRORED)
            log.warning("event=connection_abnormal_close session=%s code=%d reason=%r", self.session_id, code, reason)
            raise AbnormalClose(code, reason) from exc
        except ConnectionClosed as exc:
            # ConnectionClosedOK raised from send(): peer closed before the turn went out
            if self._closed_locally:
                return
            code, reason = _close_details(exc)
            if code != NORMAL_CLOSURE:
                self._set_state(ConnectionState.ERRORED)
                raise AbnormalClose(code, reason) from exc
        except OSError as exc:
            self._set_state(ConnectionState.ERRORED)
            log.warning("event=connection_io_error session=%s error=%s", self.session_id, exc)
            raise TransportError(str(exc)) from exc

        if self._closed_locally:
            return

        code = getattr(self._ws, "close_code", None)
        if code is None:
            code = NORMAL_CLOSURE
        if code != NORMAL_CLOSURE:
            self._set_state(ConnectionState.ERRORED)
            log.warning("event=connection_abnormal_close session=%s code=%d", self.session_id, code)
            raise AbnormalClose(code, getattr(self._ws, "close_reason", "") or "")

        self._set_state(ConnectionState.CLOSED)
        log.info("event=connection_closed session=%s code=%d", self.session_id, code)

    async def close(self) -> None:
        """Close with 1000.  Idempotent; safe before `send()` ever ran."""
        self._closed_locally = True
        if self._ws is not None:
            try:
                await self._ws.close(code=NORMAL_CLOSURE)
            except (WebSocketException, OSError) as exc:
                log.debug("event=connection_close_error session=%s error=%s", self.session_id, exc)
        if self.state is not ConnectionState.ERRORED:
            self._set_state(ConnectionState.CLOSED)
