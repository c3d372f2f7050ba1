from __future__ import annotations

import logging
import os

import pytest

from message_analyzer_web.main import create_app


def _set_env(overrides: dict[str, str | None]) -> dict[str, str | None]:
    previous: dict[str, str | None] = {}
    for key, value in overrides.items():
        previous[key] = os.environ.get(key)
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    return previous


def _restore_env(previous: dict[str, str | None]) -> None:
    for key, value in previous.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


def _base_runtime_env() -> dict[str, str | None]:
    return {
        "RUNTIME_CONFIG_GUARD_MODE": "enforce",
        "THREAD_STORE_BACKEND": "inmemory",
        "ANALYSIS_SENDER_TYPE": "stub",
        "ANALYSIS_WEBHOOK_URL": None,
        "ANALYZER_APP_NAME": None,
    }


def test_create_app_starts_with_stub_sender() -> None:
    previous = _set_env(_base_runtime_env())
    try:
        app = create_app()
        assert app.title == "Message Analyzer API"
    finally:
        _restore_env(previous)


def test_create_app_blocks_when_http_sender_has_no_webhook_url() -> None:
    previous = _set_env({**_base_runtime_env(), "ANALYSIS_SENDER_TYPE": "http"})
    try:
        with pytest.raises(RuntimeError) as exc_info:
            create_app()
        message = str(exc_info.value)
        assert "ANALYSIS_WEBHOOK_URL is required" in message
        assert "ANALYSIS_SENDER_TYPE=stub" in message
    finally:
        _restore_env(previous)


def test_create_app_warns_instead_of_blocking(caplog: pytest.LogCaptureFixture) -> None:
    previous = _set_env(
        {
            **_base_runtime_env(),
            "RUNTIME_CONFIG_GUARD_MODE": "warn",
            "ANALYSIS_SENDER_TYPE": "http",
            "ANALYSIS_WEBHOOK_URL": "http://hooks.example.com/score",
        }
    )
    try:
        with caplog.at_level(logging.WARNING, logger="message_analyzer_web.main"):
            app = create_app()
        assert app.title == "Message Analyzer API"
        assert any("must use https" in record.getMessage() for record in caplog.records)
    finally:
        _restore_env(previous)
