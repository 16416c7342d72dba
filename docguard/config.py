from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_CORS_ORIGINS = "http://localhost:3000,http://127.0.0.1:3000"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True)
class Settings:
    data_dir: Path
    persist_manifests: bool
    vision_provider: str
    vision_model: str | None
    vision_timeout_seconds: float
    vision_max_attempts: int
    chat_provider: str
    chat_model: str | None
    anthropic_api_key: str | None
    openai_api_key: str | None
    gemini_api_key: str | None
    max_context_chars: int
    max_history_turns: int
    bulk_file_threshold: int
    max_upload_files: int
    cors_allowed_origins: list[str]
    log_level: str

    @property
    def upload_dir(self) -> Path:
        return self.data_dir / "uploads"

    @property
    def manifest_dir(self) -> Path:
        return self.data_dir / "manifests"

    @property
    def personas_path(self) -> Path:
        return self.data_dir / "personas.json"

    @property
    def analytics_path(self) -> Path:
        return self.data_dir / "analytics" / "usage.jsonl"

    @property
    def transcripts_dir(self) -> Path:
        return self.data_dir / "transcripts"

    def api_key_for(self, provider: str) -> str | None:
        return {
            "anthropic": self.anthropic_api_key,
            "openai": self.openai_api_key,
            "gemini": self.gemini_api_key,
        }.get(provider)


def _env_text(name: str) -> str | None:
    value = (os.getenv(name) or "").strip()
    return value or None


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def load_settings() -> Settings:
    origins = [
        origin.strip()
        for origin in os.getenv("DOCGUARD_CORS_ALLOWED_ORIGINS", DEFAULT_CORS_ORIGINS).split(",")
        if origin.strip()
    ]
    return Settings(
        data_dir=Path(os.getenv("DOCGUARD_DATA_DIR", "data")),
        persist_manifests=_env_bool("DOCGUARD_PERSIST_MANIFESTS", True),
        vision_provider=(os.getenv("DOCGUARD_VISION_PROVIDER") or "").strip().lower(),
        vision_model=_env_text("DOCGUARD_VISION_MODEL"),
        vision_timeout_seconds=_env_float("DOCGUARD_VISION_TIMEOUT_SECONDS", 60.0),
        vision_max_attempts=max(1, _env_int("DOCGUARD_VISION_MAX_ATTEMPTS", 2)),
        chat_provider=(os.getenv("DOCGUARD_CHAT_PROVIDER") or "").strip().lower(),
        chat_model=_env_text("DOCGUARD_CHAT_MODEL"),
        anthropic_api_key=_env_text("ANTHROPIC_API_KEY"),
        openai_api_key=_env_text("OPENAI_API_KEY"),
        gemini_api_key=_env_text("GEMINI_API_KEY"),
        max_context_chars=_env_int("DOCGUARD_MAX_CONTEXT_CHARS", 12000),
        max_history_turns=_env_int("DOCGUARD_MAX_HISTORY_TURNS", 10),
        bulk_file_threshold=_env_int("DOCGUARD_BULK_FILE_THRESHOLD", 5),
        max_upload_files=_env_int("DOCGUARD_MAX_UPLOAD_FILES", 10),
        cors_allowed_origins=origins,
        log_level=(os.getenv("DOCGUARD_LOG_LEVEL") or "INFO").strip().upper(),
    )


def resolve_provider(configured: str, settings: Settings) -> str | None:
    """Map a configured provider name to a usable provider, or None when disabled or keyless."""

    normalized = (configured or "").strip().lower()
    if normalized in {"none", "disabled"}:
        return None
    if normalized == "claude":
        normalized = "anthropic"
    if normalized == "chatgpt":
        normalized = "openai"

    if normalized == "":
        for candidate in ("anthropic", "openai", "gemini"):
            if settings.api_key_for(candidate):
                return candidate
        return None

    if normalized not in {"anthropic", "openai", "gemini"}:
        return None
    return normalized if settings.api_key_for(normalized) else None


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if not any(getattr(handler, "_docguard", False) for handler in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._docguard = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
