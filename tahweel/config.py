"""Runtime configuration for the Tahweel conversion pipeline.

Variables (env names in parentheses):
 - render resolution (TAHWEEL_DPI), clamped to 72-300
 - OCR concurrency (TAHWEEL_OCR_CONCURRENCY), clamped to 1-20
 - output formats (TAHWEEL_FORMATS), comma separated subset of txt,docx,json
 - TXT page separator (TAHWEEL_PAGE_SEPARATOR)
 - output directory override (TAHWEEL_OUTPUT_DIR)
 - cached OAuth token file (TAHWEEL_TOKEN_PATH)
 - OAuth client (GOOGLE_OAUTH_CLIENT_ID / GOOGLE_OAUTH_CLIENT_SECRET)
 - service account (GOOGLE_APPLICATION_CREDENTIALS, DRIVE_IMPERSONATION_USER)
 - retry tuning (TAHWEEL_MAX_ATTEMPTS, TAHWEEL_BACKOFF_BASE, TAHWEEL_BACKOFF_MAX_SECONDS)
"""
from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DPI_MIN = 72
DPI_MAX = 300
CONCURRENCY_MIN = 1
CONCURRENCY_MAX = 20
SUPPORTED_FORMATS = ("txt", "docx", "json")
DEFAULT_FORMATS = ("txt", "docx")
DEFAULT_PAGE_SEPARATOR = "\n\nPAGE_SEPARATOR\n\n"


def clamp(value: int, lower: int, upper: int) -> int:
    return max(lower, min(upper, value))


def default_token_path() -> Path:
    base = os.getenv("XDG_CACHE_HOME") or str(Path.home() / ".cache")
    return Path(base) / "tahweel" / "token.json"


def parse_formats(raw: str | None) -> list[str]:
    """Parse a comma separated format list, preserving order and dropping duplicates."""
    if raw is None:
        return list(DEFAULT_FORMATS)
    formats: list[str] = []
    for token in str(raw).split(","):
        name = token.strip().lower()
        if not name:
            continue
        if name not in SUPPORTED_FORMATS:
            raise ValueError(
                f"Unsupported output format {name!r}; expected one of {', '.join(SUPPORTED_FORMATS)}"
            )
        if name not in formats:
            formats.append(name)
    return formats or list(DEFAULT_FORMATS)


class AppConfig(BaseSettings):
    dpi: int = Field(150, validation_alias=AliasChoices("TAHWEEL_DPI", "DPI"))
    ocr_concurrency: int = Field(12, validation_alias="TAHWEEL_OCR_CONCURRENCY")
    # Raw env capture; `formats` exposes the parsed list.
    formats_raw: str = Field(",".join(DEFAULT_FORMATS), validation_alias="TAHWEEL_FORMATS")
    page_separator: str = Field(DEFAULT_PAGE_SEPARATOR, validation_alias="TAHWEEL_PAGE_SEPARATOR")
    output_directory: str | None = Field(None, validation_alias="TAHWEEL_OUTPUT_DIR")
    token_path: str | None = Field(None, validation_alias="TAHWEEL_TOKEN_PATH")
    oauth_client_id: str | None = Field(None, validation_alias="GOOGLE_OAUTH_CLIENT_ID")
    oauth_client_secret: str | None = Field(None, validation_alias="GOOGLE_OAUTH_CLIENT_SECRET")
    google_application_credentials: str | None = Field(
        None, validation_alias="GOOGLE_APPLICATION_CREDENTIALS"
    )
    drive_impersonation_user: str | None = Field(None, validation_alias="DRIVE_IMPERSONATION_USER")
    max_attempts: int = Field(5, validation_alias="TAHWEEL_MAX_ATTEMPTS")
    backoff_base: float = Field(1.5, validation_alias="TAHWEEL_BACKOFF_BASE")
    backoff_max_seconds: float = Field(15.0, validation_alias="TAHWEEL_BACKOFF_MAX_SECONDS")
    log_level: str = Field("INFO", validation_alias="TAHWEEL_LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
        validate_assignment=True,
        populate_by_name=True,
    )

    @field_validator("dpi")
    @classmethod
    def _clamp_dpi(cls, value: int) -> int:
        return clamp(value, DPI_MIN, DPI_MAX)

    @field_validator("ocr_concurrency")
    @classmethod
    def _clamp_concurrency(cls, value: int) -> int:
        return clamp(value, CONCURRENCY_MIN, CONCURRENCY_MAX)

    @field_validator("formats_raw")
    @classmethod
    def _validate_formats(cls, value: str) -> str:
        return ",".join(parse_formats(value))

    @field_validator("max_attempts")
    @classmethod
    def _validate_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("TAHWEEL_MAX_ATTEMPTS must be at least 1")
        return value

    @property
    def formats(self) -> list[str]:
        return parse_formats(self.formats_raw)

    @property
    def resolved_token_path(self) -> Path:
        if self.token_path:
            return Path(self.token_path).expanduser()
        return default_token_path()

    def toggle_format(self, name: str) -> list[str]:
        """Add the format when absent, remove it when present.

        Removing the last remaining format is a no-op.
        """
        name = name.strip().lower()
        if name not in SUPPORTED_FORMATS:
            raise ValueError(f"Unsupported output format {name!r}")
        current = self.formats
        if name not in current:
            current.append(name)
        elif len(current) > 1:
            current.remove(name)
        self.formats_raw = ",".join(current)
        return self.formats


@lru_cache
def get_config() -> AppConfig:
    return AppConfig()  # type: ignore[call-arg]


__all__ = [
    "AppConfig",
    "get_config",
    "clamp",
    "parse_formats",
    "default_token_path",
    "DPI_MIN",
    "DPI_MAX",
    "CONCURRENCY_MIN",
    "CONCURRENCY_MAX",
    "SUPPORTED_FORMATS",
    "DEFAULT_PAGE_SEPARATOR",
]
