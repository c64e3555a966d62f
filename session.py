"""
session.py — Zen Chat · Chat Session Controller
===============================================
Orchestrates one conversation: typed/voice/quick-reply input → local
moderation → streaming connection → fragment merge into the message log.

Phase machine
-------------
    AWAITING_INPUT → SENDING → AWAITING_FIRST_FRAGMENT → STREAMING → AWAITING_INPUT
    BLOCKED: moderation short-circuit; canned reply appended, straight back
             to AWAITING_INPUT with no network transition.

Resource discipline
-------------------
At most one StreamingChatConnection and one VoiceCaptureDevice are live.
A new turn cancels the previous turn task and closes its socket *before*
the next socket is opened.  `aclose()` (or leaving `async with`) closes the
socket, releases the microphone and stops dictation on every exit path.
Enforced by ordering on the single event loop, not by locks.

UI contract
-----------
Listeners registered with `add_listener(fn)` receive `(kind, payload)`:
    transcript  {"messages": [...]}          after every log mutation
    typing      {"typing": bool}
    phase       {"phase": str}
    recording   {"recording": bool}
    draft       {"text": str}                 live dictation
    persona     {"persona": str, "name": str, "quick_replies": [...]}
    notice      {"level": str, "message": str}
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import aclosing
from enum import Enum
from typing import Any, Callable, Optional

from config import ChatEngineConfig, PersonaConfig
from connection import AbnormalClose, StreamingChatConnection, TransportError
from dictation import DraftCallback, LiveDictation
from message_log import MessageLog
from moderation import LocalModerationFilter
from protocol import DoneFrame, ErrorFrame, InboundFrame
from voice_capture import PermissionDenied, VoiceCaptureDevice

log = logging.getLogger("zen_chat.session")

Listener = Callable[[str, dict], None]
ConnectionFactory = Callable[[str], StreamingChatConnection]
DictationFactory = Callable[[DraftCallback], LiveDictation]

VOICE_FAILED_NOTICE = "Sorry, your voice message could not be processed. Please try again."
VOICE_EMPTY_NOTICE = "No speech was detected in your voice message."
DICTATION_UNAVAILABLE_NOTICE = "Live dictation is not available. Please type your message."


class ChatPhase(Enum):
    AWAITING_INPUT          = "AWAITING_INPUT"
    SENDING                 = "SENDING"
    AWAITING_FIRST_FRAGMENT = "AWAITING_FIRST_FRAGMENT"
    STREAMING               = "STREAMING"
    BLOCKED                 = "BLOCKED"


class ChatSessionController:
    def __init__(
        self,
        config: ChatEngineConfig,
        *,
        persona_id: Optional[str] = None,
        session_id: Optional[str] = None,
        connection_factory: Optional[ConnectionFactory] = None,
        recorder: Optional[VoiceCaptureDevice] = None,
        dictation_factory: Optional[DictationFactory] = None,
    ) -> None:
        self.config = config
        self.session_id = session_id or str(uuid.uuid4())
        self.persona_id = persona_id or config.default_persona
        config.persona(self.persona_id)  # fail fast on unknown ids

        self.log = MessageLog(merge_fragments=config.transcript.merge_fragments)
        self.filter = LocalModerationFilter.from_config(config.moderation)
        self.recorder = recorder or VoiceCaptureDevice(config.voice)
        self.dictation = (dictation_factory or self._default_dictation)(self._set_draft)
        self._connection_factory = connection_factory or self._default_connection

        self.phase = ChatPhase.AWAITING_INPUT
        self.is_typing = False
        self.draft = ""

        self._connection: Optional[StreamingChatConnection] = None
        self._turn_task: Optional[asyncio.Task] = None
        self._turn_fragments = 0
        self._listeners: list[Listener] = []
        self._closed = False

        self.log.subscribe(lambda message_log: self._emit("transcript", {"messages": message_log.snapshot()}))
        self.log.reset(self.persona.greeting)
        log.info("event=session_created session=%s persona=%s", self.session_id, self.persona_id)

    def _default_connection(self, session_id: str) -> StreamingChatConnection:
        return StreamingChatConnection(session_id, self.config.connection)

    def _default_dictation(self, on_draft: DraftCallback) -> LiveDictation:
        return LiveDictation(self.config.dictation, on_draft)

    # -----------------------------------------------------------------------
    # Read-only views
    # -----------------------------------------------------------------------

    @property
    def persona(self) -> PersonaConfig:
        return self.config.persona(self.persona_id)

    @property
    def quick_replies(self) -> list[str]:
        return list(self.persona.quick_replies)

    @property
    def connection(self) -> Optional[StreamingChatConnection]:
        return self._connection

    @property
    def is_recording(self) -> bool:
        return self.recorder.is_recording

    def state(self) -> dict[str, Any]:
        """Full snapshot for a freshly attached UI."""
        return {
            "session_id": self.session_id,
            "persona": self.persona_id,
            "persona_name": self.persona.name,
            "quick_replies": self.quick_replies,
            "phase": self.phase.value,
            "typing": self.is_typing,
            "recording": self.is_recording,
            "voice_available": self.recorder.available,
            "dictation_available": self.dictation.available,
            "draft": self.draft,
            "messages": self.log.snapshot(),
        }

    # -----------------------------------------------------------------------
    # Listeners
    # -----------------------------------------------------------------------

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _emit(self, kind: str, payload: dict) -> None:
        for listener in list(self._listeners):
            try:
                listener(kind, payload)
            except Exception:
                log.exception("event=listener_error session=%s kind=%s", self.session_id, kind)

    def notify_user(self, message: str, level: str = "warning") -> None:
        self._emit("notice", {"level": level, "message": message})

    def _set_phase(self, new_phase: ChatPhase) -> None:
        prev = self.phase
        if prev is new_phase:
            return
        self.phase = new_phase
        log.info("event=phase_change session=%s from=%s to=%s", self.session_id, prev.value, new_phase.value)
        self._emit("phase", {"phase": new_phase.value})

    def _set_typing(self, typing: bool) -> None:
        if self.is_typing == typing:
            return
        self.is_typing = typing
        self._emit("typing", {"typing": typing})

    def _set_draft(self, text: str) -> None:
        self.draft = text
        self._emit("draft", {"text": text})

    # -----------------------------------------------------------------------
    # Turns
    # -----------------------------------------------------------------------

    async def submit(self, text: str) -> bool:
        """Accept one user utterance.  Returns False for empty input.

        The reply streams in on a background task; `wait_for_turn()` awaits it.
        """
        if self._closed:
            raise RuntimeError("session is closed")

        text = text.strip()
        if not text:
            log.debug("event=submit_rejected reason=empty session=%s", self.session_id)
            return False

        self.log.append_user_message(text)
        if self.draft:
            self._set_draft("")

        # Seal the previous turn: no stale fragment may land after this message
        await self._close_connection()

        canned = self.filter.check(text, self.persona)
        if canned is not None:
            self._set_phase(ChatPhase.BLOCKED)
            self.log.append_assistant_message(canned)
            self._set_phase(ChatPhase.AWAITING_INPUT)
            return True

        self._set_phase(ChatPhase.SENDING)
        self._set_typing(True)

        connection = self._connection_factory(self.session_id)
        self._connection = connection
        self._turn_fragments = 0
        self._turn_task = asyncio.create_task(
            self._run_turn(connection, text, self.persona),
            name=f"chat_turn_{self.session_id}",
        )
        return True

    async def submit_quick_reply(self, index: int) -> bool:
        replies = self.quick_replies
        if not 0 <= index < len(replies):
            raise ValueError(f"quick reply index {index} out of range (0..{len(replies) - 1})")
        return await self.submit(replies[index])

    async def wait_for_turn(self) -> None:
        """Wait until the current turn (if any) has finished or was superseded."""
        task = self._turn_task
        if task is not None:
            await asyncio.wait({task})

    async def _run_turn(self, connection: StreamingChatConnection, text: str, persona: PersonaConfig) -> None:
        self._set_phase(ChatPhase.AWAITING_FIRST_FRAGMENT)
        try:
            async with aclosing(connection.send(text, persona)) as frames:
                async for frame in frames:
                    if not self._on_frame(frame):
                        break
        except AbnormalClose as exc:
            log.warning("event=turn_interrupted session=%s code=%d", self.session_id, exc.code)
            self.log.append_assistant_message(self.config.connection.interrupted_message)
        except TransportError as exc:
            log.warning("event=turn_failed session=%s error=%s", self.session_id, exc)
            self.log.append_assistant_message(self.config.connection.fallback_message)
        finally:
            self._set_typing(False)
            await connection.close()
            if self._connection is connection:
                self._connection = None
                self._set_phase(ChatPhase.AWAITING_INPUT)
            log.info("event=turn_finished session=%s fragments=%d", self.session_id, self._turn_fragments)

    def _on_frame(self, frame: InboundFrame) -> bool:
        """Apply one inbound frame.  Returns False when the turn is over."""
        if isinstance(frame, DoneFrame):
            log.debug("event=turn_done_marker session=%s", self.session_id)
            return True

        if isinstance(frame, ErrorFrame):
            log.warning("event=turn_error_frame session=%s payload=%r", self.session_id, frame.payload)
            self._set_typing(False)
            self.log.append_assistant_message(self.config.connection.fallback_message)
            return False

        if self._turn_fragments == 0:
            self._set_typing(False)
            self._set_phase(ChatPhase.STREAMING)
        self._turn_fragments += 1
        self.log.append_fragment(frame.text)
        return True

    async def _close_connection(self) -> None:
        """Cancel the running turn and close its socket.  No-op when idle."""
        task, self._turn_task = self._turn_task, None
        connection, self._connection = self._connection, None

        try:
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    # Only the turn was cancelled; a cancel aimed at us propagates
                    if asyncio.current_task().cancelling():
                        raise
        finally:
            if connection is not None:
                await connection.close()
                log.info("event=connection_superseded session=%s", self.session_id)

            self._set_typing(False)
            self._set_phase(ChatPhase.AWAITING_INPUT)

    # -----------------------------------------------------------------------
    # Personas
    # -----------------------------------------------------------------------

    async def switch_persona(self, persona_id: str) -> None:
        """Select *persona_id*; the log restarts from its greeting alone."""
        persona = self.config.persona(persona_id)
        await self._close_connection()
        self.persona_id = persona_id
        self.log.reset(persona.greeting)
        log.info("event=persona_switched session=%s persona=%s", self.session_id, persona_id)
        self._emit("persona", {
            "persona": persona_id,
            "name": persona.name,
            "quick_replies": list(persona.quick_replies),
        })

    # -----------------------------------------------------------------------
    # Voice
    # -----------------------------------------------------------------------

    async def toggle_recording(self) -> bool:
        """Start or stop push-to-talk.  Returns True while recording."""
        if self.recorder.is_recording:
            await self._finish_recording()
            return False

        try:
            self.recorder.start()
        except PermissionDenied as exc:
            log.warning("event=mic_permission_denied session=%s error=%s", self.session_id, exc)
            self.notify_user(self.config.voice.permission_notice)
            return False

        self._emit("recording", {"recording": True})
        return True

    async def _finish_recording(self) -> None:
        try:
            transcript = await self.recorder.stop()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.error("event=voice_message_failed session=%s error=%s", self.session_id, exc, exc_info=True)
            self.notify_user(VOICE_FAILED_NOTICE)
            return
        finally:
            self._emit("recording", {"recording": False})

        if not transcript.text.strip():
            self.notify_user(VOICE_EMPTY_NOTICE, level="info")
            return
        await self.submit(transcript.text)

    async def start_dictation(self) -> bool:
        if not self.dictation.available:
            self.notify_user(DICTATION_UNAVAILABLE_NOTICE, level="info")
            return False
        try:
            await self.dictation.start()
        except PermissionDenied as exc:
            log.warning("event=dictation_permission_denied session=%s error=%s", self.session_id, exc)
            self.notify_user(self.config.voice.permission_notice)
            return False
        except TransportError as exc:
            log.warning("event=dictation_unreachable session=%s error=%s", self.session_id, exc)
            self.notify_user(DICTATION_UNAVAILABLE_NOTICE)
            return False
        return True

    async def stop_dictation(self) -> str:
        if not self.dictation.active:
            return self.draft
        return await self.dictation.stop()

    # -----------------------------------------------------------------------
    # Teardown
    # -----------------------------------------------------------------------

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._close_connection()
        finally:
            self.recorder.release()
            if self.dictation.active:
                await self.dictation.stop()
            log.info("event=session_closed session=%s messages=%d", self.session_id, len(self.log))

    async def __aenter__(self) -> "ChatSessionController":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
