"""Tests for environment configuration."""

from pathlib import Path

import pytest

from agent_dispatch.config import Config, parse_max_slots


class TestMaxSlots:
    def test_parse(self):
        assert parse_max_slots("claude=2, codex=1") == {"claude": 2, "codex": 1}

    def test_ignores_empty_parts(self):
        assert parse_max_slots("claude=3,") == {"claude": 3}

    def test_invalid(self):
        with pytest.raises(ValueError):
            parse_max_slots("claude")


class TestFromEnv:
    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        for name in ("AD_REMOTE", "AD_AUTO_MERGE_TO_MAIN", "AD_REVIEW_PERSONAS", "AD_MAX_SLOTS",
                     "AD_REJECT_STATUS", "AD_PROJECT_NUMBER", "AD_DB_PATH", "AD_EPIC_MODE"):
            monkeypatch.delenv(name, raising=False)

    def test_defaults(self):
        config = Config.from_env()
        assert config.max_slots == {"claude": 1}
        assert config.remote == "origin"
        assert config.integration_branch == "merge_stage"
        assert config.auto_resolve_conflicts is True
        assert config.auto_merge_to_main is False
        assert config.reject_status is None

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("AD_DB_PATH", "/tmp/x.db")
        monkeypatch.setenv("AD_MAX_SLOTS", "claude=3")
        monkeypatch.setenv("AD_AUTO_MERGE_TO_MAIN", "yes")
        monkeypatch.setenv("AD_EPIC_MODE", "0")
        monkeypatch.setenv("AD_REVIEW_PERSONAS", "architect, qa-engineer")
        monkeypatch.setenv("AD_REJECT_STATUS", "Rework")
        monkeypatch.setenv("AD_PROJECT_NUMBER", "7")

        config = Config.from_env()
        assert config.db_path == Path("/tmp/x.db")
        assert config.max_slots == {"claude": 3}
        assert config.auto_merge_to_main is True
        assert config.epic_mode is False
        assert config.review_personas == ["architect", "qa-engineer"]
        assert config.reject_status == "Rework"
        assert config.project_number == 7

    def test_empty_remote_means_local(self, monkeypatch):
        monkeypatch.setenv("AD_REMOTE", "")
        assert Config.from_env().remote is None
