"""Tests for the local moderation filter."""

from __future__ import annotations

import pytest

from config import DEFAULT_PERSONAS, ModerationConfig
from moderation import LocalModerationFilter, normalise

KRISHNA = DEFAULT_PERSONAS["krishna"]
SHIVA = DEFAULT_PERSONAS["shiva"]


@pytest.fixture
def moderation() -> LocalModerationFilter:
    return LocalModerationFilter.from_config(ModerationConfig())


class TestNormalise:

    def test_lowercases_and_collapses_whitespace(self):
        assert normalise("  I  AM\tUpset ") == "i am upset"

    def test_unifies_typographic_apostrophes(self):
        assert normalise("I’m upset") == "i'm upset"


class TestCheck:

    def test_neutral_text_passes(self, moderation):
        assert moderation.check("What is meditation?", KRISHNA) is None

    def test_empty_text_passes(self, moderation):
        assert moderation.check("   ", KRISHNA) is None

    @pytest.mark.parametrize("text", ["Tell me about POLITICS", "is technology bad?", "finance tips", "medical advice"])
    def test_off_topic_redirect(self, moderation, text):
        reply = moderation.check(text, SHIVA)
        assert reply is not None
        assert reply.startswith("As Lord Shiva, I focus on spiritual guidance")

    @pytest.mark.parametrize("text", ["I am overwhelmed", "i'm upset today", "Honestly I’m distressed", "I want to die"])
    def test_distress_safety_message(self, moderation, text):
        reply = moderation.check(text, KRISHNA)
        assert reply is not None
        assert "as Lord Krishna" in reply
        assert "mental health" in reply

    def test_off_topic_wins_over_distress(self, moderation):
        reply = moderation.check("Politics makes me feel I am upset", KRISHNA)
        assert reply.startswith("As Lord Krishna, I focus")

    def test_custom_lists(self):
        moderation = LocalModerationFilter(
            ["Crypto"],
            ["I feel lost"],
            off_topic_reply="{persona} redirects",
            safety_reply="{persona} cares",
        )

        assert moderation.check("crypto prices", KRISHNA) == "Lord Krishna redirects"
        assert moderation.check("I FEEL LOST", KRISHNA) == "Lord Krishna cares"
        assert moderation.check("politics", KRISHNA) is None
