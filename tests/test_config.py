"""Tests for CanopySettings."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from canopy.config import CanopySettings


class TestCanopySettings:
    def test_defaults(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.chdir("/")
        settings = CanopySettings()
        assert settings.database_url == "sqlite+aiosqlite://"
        assert settings.share_token_length == 16
        assert settings.trash_retention_days == 15
        assert settings.closure_strategy == "bfs"

    def test_reads_prefixed_env(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("CANOPY_TRASH_RETENTION_DAYS", "30")
        monkeypatch.setenv("CANOPY_CLOSURE_STRATEGY", "cte")
        settings = CanopySettings()
        assert settings.trash_retention_days == 30
        assert settings.closure_strategy == "cte"

    @pytest.mark.parametrize(
        ("field", "value"),
        [
            ("share_token_length", 4),
            ("statement_timeout", 0),
            ("cache_default_ttl", 0),
            ("closure_strategy", "dfs"),
        ],
    )
    def test_rejects_invalid(self, field: str, value: object):
        with pytest.raises(ValidationError):
            CanopySettings(**{field: value})
