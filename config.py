"""
config.py — Zen Chat · Runtime Configuration
============================================
Pydantic models for every tunable parameter of the chat core.
Serialises to / deserialises from JSON.  Used by:
  • server.py   — GET/PUT /config endpoints, builds one controller per UI socket
  • session.py  — persona table, reply texts, connection + voice settings
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator

log = logging.getLogger("zen_chat.config")

# ---------------------------------------------------------------------------
# Persona table (kept here so config.py is the single source of truth)
# ---------------------------------------------------------------------------


class PersonaConfig(BaseModel):
    """A conversational identity.  `system_prompt` is sent upstream, never shown."""
    name: str = Field(description="Display name")
    greeting: str = Field(description="Sole log entry after a persona reset")
    system_prompt: str = Field(description="Hidden prompt sent with every turn")
    description: str = Field(default="", description="One-line tagline for the picker")
    quick_replies: list[str] = Field(default_factory=list, description="Suggested one-tap prompts")


DEFAULT_PERSONAS: dict[str, PersonaConfig] = {
    "krishna": PersonaConfig(
        name="Lord Krishna",
        greeting="Namaste! I am Krishna, your guide on the path of dharma. How may I assist you today?",
        system_prompt=(
            "You are Lord Krishna, a divine spiritual guide. Respond with wisdom from the "
            "Bhagavad Gita, focusing on dharma, karma yoga, and spiritual growth. Maintain a "
            "compassionate and enlightening tone."
        ),
        description="Wisdom from the Bhagavad Gita",
        quick_replies=[
            "Tell me about karma yoga",
            "Guide me through the Gita",
            "How to find my dharma?",
            "Explain divine consciousness",
        ],
    ),
    "shiva": PersonaConfig(
        name="Lord Shiva",
        greeting="Om Namah Shivaya! I am Shiva, the destroyer of ignorance. What wisdom do you seek?",
        system_prompt=(
            "You are Lord Shiva, the destroyer of ignorance. Share wisdom about meditation, "
            "consciousness, and transformation. Focus on spiritual enlightenment and inner peace."
        ),
        description="Transformation and enlightenment",
        quick_replies=[
            "Teach me meditation",
            "Understanding consciousness",
            "Path to enlightenment",
            "Power of transformation",
        ],
    ),
    "ganesha": PersonaConfig(
        name="Lord Ganesha",
        greeting=(
            "Om Gam Ganapataye Namaha! I am Ganesha, remover of obstacles. "
            "How may I help you on your journey?"
        ),
        system_prompt=(
            "You are Lord Ganesha, the remover of obstacles. Provide guidance on overcoming "
            "challenges, new beginnings, and finding wisdom. Maintain an encouraging and "
            "supportive tone."
        ),
        description="Wisdom and new beginnings",
        quick_replies=[
            "Remove my obstacles",
            "Bless my new beginning",
            "Path to success",
            "Finding inner wisdom",
        ],
    ),
    # Single-persona "Zen Chat" variant
    "guide": PersonaConfig(
        name="Spiritual Guide",
        greeting="Namaste! I am your spiritual guide. How may I assist you on your journey today?",
        system_prompt=(
            "You are a spiritual guide providing wisdom and guidance. Focus on meditation, "
            "mindfulness, and inner peace. Maintain a compassionate and enlightening tone."
        ),
        description="Calm, insightful, and supportive conversations",
        quick_replies=[
            "How can I find inner peace?",
            "What is meditation?",
            "How to handle stress?",
            "Guide me to mindfulness",
        ],
    ),
}


# ---------------------------------------------------------------------------
# Per-component config sections
# ---------------------------------------------------------------------------

class ConnectionConfig(BaseModel):
    """Remote responder endpoint + the fixed texts shown when it misbehaves."""
    endpoint: str = Field(
        default="wss://backend.buildpicoapps.com/api/chatbot/chat",
        description="Streaming websocket endpoint of the remote responder",
    )
    app_id: str = Field(default="quality-among", description="Application identifier sent in every initiation frame")
    open_timeout: Optional[float] = Field(default=10.0, gt=0.0, description="Seconds to wait for the handshake")
    close_timeout: float = Field(default=2.0, gt=0.0, description="Seconds to wait for the closing handshake")
    fallback_message: str = Field(
        default="I apologize, but I'm having trouble connecting. Please try again in a moment.",
        description="Shown on error frames and transport failures",
    )
    interrupted_message: str = Field(
        default="The connection was interrupted. Please try again.",
        description="Shown when the socket closes with a non-normal code",
    )


class ModerationConfig(BaseModel):
    """Local pre-network filter.  Matching is case-insensitive substring."""
    off_topic_keywords: list[str] = Field(
        default_factory=lambda: ["politics", "technology", "finance", "medical"],
        description="Topics redirected back to spiritual guidance",
    )
    distress_phrases: list[str] = Field(
        default_factory=lambda: [
            "i'm upset", "i am upset",
            "i'm distressed", "i am distressed",
            "i'm overwhelmed", "i am overwhelmed",
            "i want to die",
            "i'm suicidal", "i am suicidal",
        ],
        description="Phrases answered with the safety message",
    )
    off_topic_reply: str = Field(
        default=(
            "As {persona}, I focus on spiritual guidance and inner peace. "
            "Let me know if I can support you on your spiritual journey."
        ),
        description="Redirect template; {persona} is the display name",
    )
    safety_reply: str = Field(
        default=(
            "I hear your pain and I'm here to support you. However, as {persona}, I strongly "
            "encourage you to reach out to mental health professionals who can provide the help "
            "you need. Please contact a mental health helpline or counselor immediately. "
            "You are not alone in this journey."
        ),
        description="Safety template; {persona} is the display name",
    )


class TranscriptConfig(BaseModel):
    """Message log behaviour."""
    merge_fragments: bool = Field(default=True, description="Join streamed fragments into one reply")


class VoiceConfig(BaseModel):
    """Microphone recording + transcription of recorded clips."""
    sample_rate: int = Field(default=16000, ge=8000, le=48000, description="Capture rate (Hz)")
    channels: int = Field(default=1, ge=1, le=2, description="Capture channels")
    blocksize: int = Field(default=1280, ge=0, description="Frames per PortAudio callback")
    device: Optional[str] = Field(default=None, description="Input device name or index; None = system default")
    transcriber: Literal["placeholder", "groq"] = Field(
        default="placeholder",
        description="placeholder = fixed notice, groq = Whisper transcription of the clip",
    )
    placeholder_text: str = Field(default="Voice message received", description="Notice submitted by the placeholder transcriber")
    groq_model: str = Field(default="whisper-large-v3-turbo", description="Groq speech-to-text model")
    language: Optional[str] = Field(default="en", description="Transcription language hint")
    permission_notice: str = Field(
        default="Please enable microphone access to use voice input",
        description="Notice shown when the microphone cannot be opened",
    )


class DictationConfig(BaseModel):
    """Live speech-recognition that fills the input box while the user speaks."""
    enabled: bool = Field(default=True, description="Offer dictation when the capability is present")
    url: str = Field(default="wss://api.deepgram.com/v1/listen", description="Deepgram live transcription endpoint (no query)")
    model: str = Field(default="nova-3", description="Deepgram streaming model")
    language: str = Field(default="en-US", description="Dictation language")
    sample_rate: int = Field(default=16000, ge=8000, le=48000, description="Capture rate sent to Deepgram (Hz)")
    blocksize: int = Field(default=1280, ge=0, description="Frames per PortAudio callback")


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class ChatEngineConfig(BaseModel):
    """Complete runtime configuration for the chat core."""
    personas: dict[str, PersonaConfig] = Field(default_factory=lambda: dict(DEFAULT_PERSONAS))
    default_persona: str = Field(default="krishna", description="Persona selected on session start")
    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)
    moderation: ModerationConfig = Field(default_factory=ModerationConfig)
    transcript: TranscriptConfig = Field(default_factory=TranscriptConfig)
    voice: VoiceConfig = Field(default_factory=VoiceConfig)
    dictation: DictationConfig = Field(default_factory=DictationConfig)

    @model_validator(mode="after")
    def _check_default_persona(self) -> "ChatEngineConfig":
        if not self.personas:
            raise ValueError("at least one persona is required")
        if self.default_persona not in self.personas:
            raise ValueError(f"default_persona {self.default_persona!r} is not in personas")
        return self

    # -- Persistence -----------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> "ChatEngineConfig":
        """Load config from a JSON file.  Returns defaults if file doesn't exist."""
        p = Path(path)
        if not p.exists():
            log.info("event=config_load_defaults path=%s", p)
            return cls()
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
            config = cls.model_validate(data)
            log.info("event=config_loaded path=%s personas=%d", p, len(config.personas))
            return config
        except Exception as exc:
            log.warning("event=config_load_error path=%s error=%s fallback=defaults", p, exc)
            return cls()

    def save(self, path: str | Path) -> None:
        """Persist config to a JSON file (pretty-printed)."""
        p = Path(path)
        p.write_text(
            self.model_dump_json(indent=2, exclude_none=True),
            encoding="utf-8",
        )
        log.info("event=config_saved path=%s", p)

    def merge_patch(self, patch: dict) -> "ChatEngineConfig":
        """Return a new config with `patch` merged over `self`.

        Supports nested partial updates, e.g.:
            {"moderation": {"off_topic_keywords": ["crypto"]}}
        only changes that list, leaving everything else intact.  Lists are
        replaced wholesale, dicts (including the persona table) are merged.
        """
        base = self.model_dump()
        _deep_merge(base, patch)
        return ChatEngineConfig.model_validate(base)

    def persona(self, persona_id: str) -> PersonaConfig:
        try:
            return self.personas[persona_id]
        except KeyError:
            raise ValueError(f"unknown persona {persona_id!r}") from None


def _deep_merge(base: dict, patch: dict) -> None:
    """Recursively merge `patch` into `base` in-place."""
    for key, value in patch.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
