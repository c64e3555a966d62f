"""
moderation.py — Zen Chat · Local Moderation Filter
==================================================
Classifies outgoing text before any connection is opened.  A non-None
result is a canned reply that replaces the network round-trip entirely:
matching text is never transmitted to the remote responder.

Rules (strict priority, first match wins):
    Rule 1 — off-topic keyword present  → persona-flavoured redirect
    Rule 2 — distress phrase present    → safety message naming the persona
    Rule 3 — otherwise                  → None (proceed normally)
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, Optional

from config import ModerationConfig, PersonaConfig

log = logging.getLogger("zen_chat.moderation")

_WHITESPACE_RE = re.compile(r"\s+")

# STT and mobile keyboards emit typographic apostrophes ("I’m upset")
_APOSTROPHES = str.maketrans({"’": "'", "‘": "'", "ʼ": "'"})


def normalise(text: str) -> str:
    """Lowercase, unify apostrophes, collapse whitespace."""
    return _WHITESPACE_RE.sub(" ", text.translate(_APOSTROPHES).lower()).strip()


class LocalModerationFilter:
    """Synchronous keyword/phrase filter.  Pure: no I/O, no state."""

    def __init__(
        self,
        off_topic_keywords: Iterable[str],
        distress_phrases: Iterable[str],
        *,
        off_topic_reply: str,
        safety_reply: str,
    ) -> None:
        self._off_topic = tuple(k for k in (normalise(k) for k in off_topic_keywords) if k)
        self._distress = tuple(p for p in (normalise(p) for p in distress_phrases) if p)
        self._off_topic_reply = off_topic_reply
        self._safety_reply = safety_reply

    @classmethod
    def from_config(cls, cfg: ModerationConfig) -> "LocalModerationFilter":
        return cls(
            cfg.off_topic_keywords,
            cfg.distress_phrases,
            off_topic_reply=cfg.off_topic_reply,
            safety_reply=cfg.safety_reply,
        )

    def check(self, text: str, persona: PersonaConfig) -> Optional[str]:
        """Return a canned reply for *text*, or None to let it through."""
        normalised = normalise(text)
        if not normalised:
            return None

        for keyword in self._off_topic:
            if keyword in normalised:
                log.info("event=moderation_blocked rule=off_topic keyword=%r persona=%s", keyword, persona.name)
                return self._off_topic_reply.format(persona=persona.name)

        for phrase in self._distress:
            if phrase in normalised:
                log.info("event=moderation_blocked rule=distress phrase=%r persona=%s", phrase, persona.name)
                return self._safety_reply.format(persona=persona.name)

        return None
