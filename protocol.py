"""
protocol.py — Zen Chat · Responder Wire Format
==============================================
Outbound: one JSON initiation frame per turn
    { "chatId": str, "appId": str, "systemPrompt": str, "message": str }

Inbound: every frame is one of
    JSON  { "type": "error", ... }            → ErrorFrame
    JSON  { "message"?: str, "content"?: str } → ContentFrame
    raw text                                  → PlainFrame
    literal "[DONE]"                          → DoneFrame  (end of turn, no content)

Structured decode is always attempted first; anything that does not decode
to a JSON object is plain text.  A malformed frame is content, never an error.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Union

log = logging.getLogger("zen_chat.protocol")

DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class ErrorFrame:
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ContentFrame:
    text: str


@dataclass(frozen=True)
class PlainFrame:
    text: str


@dataclass(frozen=True)
class DoneFrame:
    pass


InboundFrame = Union[ErrorFrame, ContentFrame, PlainFrame, DoneFrame]


def build_initiation_frame(chat_id: str, app_id: str, system_prompt: str, message: str) -> str:
    return json.dumps({
        "chatId": chat_id,
        "appId": app_id,
        "systemPrompt": system_prompt,
        "message": message,
    })


def parse_inbound_frame(raw: str | bytes) -> Optional[InboundFrame]:
    """Classify one inbound frame.  Returns None for frames with nothing to show."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")

    if raw == DONE_SENTINEL:
        return DoneFrame()

    try:
        data = json.loads(raw)
    except ValueError:
        data = None
        log.debug("event=frame_plain len=%d", len(raw))

    if isinstance(data, dict):
        if data.get("type") == "error":
            log.warning("event=frame_error payload=%.200s", raw)
            return ErrorFrame(payload=data)
        text = data.get("message") or data.get("content")
        if isinstance(text, str) and text:
            return ContentFrame(text=text)
        log.debug("event=frame_ignored reason=no_content keys=%s", sorted(data))
        return None

    if isinstance(data, str):
        return PlainFrame(text=data) if data.strip() else None

    # Numbers, arrays and other bare JSON values are shown as received.
    if not raw.strip():
        return None
    return PlainFrame(text=raw)
