from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from ghmirror.common.settings import DEFAULT_GITHUB_HOSTS, MirrorSettings


def test_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("GHMIRROR_MAX_RETRIES", "GHMIRROR_GITHUB_HOSTS", "GHMIRROR_RETRY_DELAY_MS", "GHMIRROR_MEMORY_CACHE_MAX_BYTES"):
        monkeypatch.delenv(name, raising=False)
    settings = MirrorSettings()

    assert settings.max_retries == 2
    assert settings.retry_delay_ms == 500
    assert settings.request_timeout_seconds == 30.0
    assert settings.github_hosts == DEFAULT_GITHUB_HOSTS
    assert settings.default_host == "github.com"
    assert settings.fallback_mirrors == []
    assert settings.cache_backend == "memory"
    assert settings.memory_cache_max_bytes == 256 * 1024 * 1024


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GHMIRROR_MAX_RETRIES", "4")
    monkeypatch.setenv("GHMIRROR_GITHUB_HOSTS", "GitHub.com, git.example.org")
    monkeypatch.setenv("GHMIRROR_FALLBACK_MIRRORS", "mirror-a.example,mirror-b.example")
    monkeypatch.setenv("GHMIRROR_ENABLE_EARLY_HINTS", "false")
    monkeypatch.setenv("GHMIRROR_METRICS_TOKEN", "scrape")
    monkeypatch.setenv("GHMIRROR_MEMORY_CACHE_MAX_BYTES", "1048576")

    settings = MirrorSettings()

    assert settings.max_retries == 4
    assert settings.github_hosts == ["github.com", "git.example.org"]
    assert settings.fallback_mirrors == ["mirror-a.example", "mirror-b.example"]
    assert settings.enable_early_hints is False
    assert settings.metrics_token is not None
    assert settings.metrics_token.get_secret_value() == "scrape"
    assert settings.memory_cache_max_bytes == 1048576


def test_bare_index_path_becomes_sqlite_url(tmp_path: Path) -> None:
    settings = MirrorSettings(cache_index_url=str(tmp_path / "index.db"))
    assert settings.cache_index_url == f"sqlite+pysqlite:///{(tmp_path / 'index.db').resolve().as_posix()}"


def test_settings_are_frozen() -> None:
    settings = MirrorSettings()
    with pytest.raises(ValidationError):
        settings.max_retries = 9  # type: ignore[misc]


def test_unknown_backend_is_rejected() -> None:
    with pytest.raises(ValidationError):
        MirrorSettings(cache_backend="s3")
