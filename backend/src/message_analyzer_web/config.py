from __future__ import annotations

import os
from dataclasses import dataclass
from urllib.parse import urlparse


def _as_csv_tuple(value: str | None) -> tuple[str, ...]:
    if value is None:
        return ()
    items = [item.strip() for item in value.split(",")]
    return tuple(item for item in items if item)


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


_LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Message Analyzer API"
    api_prefix: str = "/api"
    thread_store_backend: str = "inmemory"
    database_url: str = ""
    analysis_sender_type: str = "stub"
    analysis_webhook_url: str = ""
    analysis_webhook_timeout_seconds: float = 30.0
    # "once" latches dispatch per thread; "every_message" re-sends after each new message.
    analysis_dispatch_mode: str = "once"
    analysis_min_incoming: int = 3
    analysis_min_outgoing: int = 3
    chat_view_message_limit: int = 50
    cors_allowed_origins: tuple[str, ...] = ("*",)
    runtime_config_guard_mode: str = "warn"

    @property
    def dispatch_every_message(self) -> bool:
        return self.analysis_dispatch_mode == "every_message"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("ANALYZER_APP_NAME", "Message Analyzer API"),
        api_prefix=os.getenv("ANALYZER_API_PREFIX", "/api"),
        thread_store_backend=os.getenv("THREAD_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        analysis_sender_type=_normalize_mode(
            os.getenv("ANALYSIS_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        analysis_webhook_url=os.getenv("ANALYSIS_WEBHOOK_URL", ""),
        analysis_webhook_timeout_seconds=_as_float(os.getenv("ANALYSIS_WEBHOOK_TIMEOUT_SECONDS"), 30.0),
        analysis_dispatch_mode=_normalize_mode(
            os.getenv("ANALYSIS_DISPATCH_MODE"),
            default="once",
            allowed={"once", "every_message"},
        ),
        analysis_min_incoming=_as_int(os.getenv("ANALYSIS_MIN_INCOMING"), 3),
        analysis_min_outgoing=_as_int(os.getenv("ANALYSIS_MIN_OUTGOING"), 3),
        chat_view_message_limit=_as_int(os.getenv("CHAT_VIEW_MESSAGE_LIMIT"), 50),
        cors_allowed_origins=_as_csv_tuple(os.getenv("CORS_ALLOWED_ORIGINS", "*")) or ("*",),
        runtime_config_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_CONFIG_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_config_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    backend = settings.thread_store_backend.strip().lower()
    if backend not in {"inmemory", "postgres"}:
        issues.append(f"THREAD_STORE_BACKEND must be inmemory or postgres, got {settings.thread_store_backend!r}")
    if backend == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when THREAD_STORE_BACKEND=postgres")

    webhook_url = settings.analysis_webhook_url.strip()
    if settings.analysis_sender_type == "http":
        if not webhook_url:
            issues.append("ANALYSIS_WEBHOOK_URL is required when ANALYSIS_SENDER_TYPE=http")
        else:
            parsed = urlparse(webhook_url)
            if parsed.scheme not in {"http", "https"} or not parsed.netloc:
                issues.append("ANALYSIS_WEBHOOK_URL is not a valid http(s) URL")
            elif parsed.scheme != "https" and parsed.hostname not in _LOCAL_HOSTS:
                issues.append("ANALYSIS_WEBHOOK_URL must use https for non-local hosts")

    if settings.analysis_min_incoming < 1 or settings.analysis_min_outgoing < 1:
        issues.append("ANALYSIS_MIN_INCOMING and ANALYSIS_MIN_OUTGOING must be at least 1")
    if settings.chat_view_message_limit < 1:
        issues.append("CHAT_VIEW_MESSAGE_LIMIT must be at least 1")
    if settings.analysis_webhook_timeout_seconds <= 0:
        issues.append("ANALYSIS_WEBHOOK_TIMEOUT_SECONDS must be positive")
    return tuple(issues)
