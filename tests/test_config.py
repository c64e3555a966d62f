"""Tests for the runtime configuration models."""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from config import ChatEngineConfig


class TestDefaults:

    def test_persona_table(self):
        config = ChatEngineConfig()
        assert set(config.personas) == {"krishna", "shiva", "ganesha", "guide"}
        assert config.default_persona == "krishna"
        assert config.persona("shiva").name == "Lord Shiva"
        assert config.connection.endpoint == "wss://backend.buildpicoapps.com/api/chatbot/chat"
        assert config.voice.transcriber == "placeholder"

    def test_unknown_persona(self):
        with pytest.raises(ValueError, match="unknown persona"):
            ChatEngineConfig().persona("zeus")

    def test_default_persona_must_exist(self):
        with pytest.raises(ValidationError):
            ChatEngineConfig(default_persona="zeus")

    def test_personas_required(self):
        with pytest.raises(ValidationError):
            ChatEngineConfig(personas={})


class TestPersistence:

    def test_missing_file_gives_defaults(self, tmp_path):
        config = ChatEngineConfig.load(tmp_path / "absent.json")
        assert config == ChatEngineConfig()

    def test_corrupt_file_gives_defaults(self, tmp_path):
        path = tmp_path / "chat_config.json"
        path.write_text("{not json", encoding="utf-8")

        assert ChatEngineConfig.load(path) == ChatEngineConfig()

    def test_save_then_load(self, tmp_path):
        path = tmp_path / "chat_config.json"
        config = ChatEngineConfig().merge_patch({"default_persona": "guide"})

        config.save(path)

        assert json.loads(path.read_text(encoding="utf-8"))["default_persona"] == "guide"
        assert ChatEngineConfig.load(path) == config


class TestMergePatch:

    def test_nested_patch_keeps_siblings(self):
        base = ChatEngineConfig()

        updated = base.merge_patch({"moderation": {"off_topic_keywords": ["crypto"]}})

        assert updated.moderation.off_topic_keywords == ["crypto"]
        assert updated.moderation.distress_phrases == base.moderation.distress_phrases
        assert base.moderation.off_topic_keywords == ["politics", "technology", "finance", "medical"]

    def test_persona_table_is_merged(self):
        updated = ChatEngineConfig().merge_patch({
            "personas": {
                "buddha": {
                    "name": "Buddha",
                    "greeting": "Peace be with you.",
                    "system_prompt": "You are the Buddha.",
                },
            },
        })

        assert "krishna" in updated.personas
        assert updated.persona("buddha").quick_replies == []

    def test_invalid_patch_raises(self):
        with pytest.raises(ValidationError):
            ChatEngineConfig().merge_patch({"voice": {"sample_rate": 10}})
