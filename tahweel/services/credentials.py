"""Credential providers supplying bearer tokens for Drive calls.

`StoredTokenProvider` works from the OAuth token cache written after an
interactive sign-in; `ServiceAccountTokenProvider` is for unattended runs.
Both return None instead of raising when no usable credential exists, so the
caller can treat that as an authentication failure for the whole job.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from dataclasses import asdict, dataclass
from datetime import timezone
from pathlib import Path
from typing import Any, Callable

from google.auth.exceptions import GoogleAuthError  # type: ignore
from google.auth.transport.requests import Request  # type: ignore
from google.oauth2 import service_account  # type: ignore
from google.oauth2.credentials import Credentials  # type: ignore

from tahweel.config import AppConfig, default_token_path
from tahweel.errors import ValidationError
from tahweel.utils.logging_utils import structured_log

_LOG = logging.getLogger("credentials")

DRIVE_SCOPES = ["https://www.googleapis.com/auth/drive.file"]
SERVICE_ACCOUNT_SCOPES = ["https://www.googleapis.com/auth/drive"]
TOKEN_URI = "https://oauth2.googleapis.com/token"
REFRESH_WINDOW_SECONDS = 5 * 60


@dataclass(slots=True)
class StoredTokens:
    access_token: str
    refresh_token: str
    expires_at: int

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "StoredTokens":
        return cls(
            access_token=str(payload.get("access_token") or ""),
            refresh_token=str(payload.get("refresh_token") or ""),
            expires_at=int(payload.get("expires_at") or 0),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def load_stored_tokens(path: str | Path | None = None) -> StoredTokens | None:
    token_path = Path(path) if path else default_token_path()
    if not token_path.exists():
        return None
    try:
        payload = json.loads(token_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        structured_log(
            _LOG,
            logging.WARNING,
            "token_cache_unreadable",
            error_type=type(exc).__name__,
            file=str(token_path),
        )
        return None
    if not isinstance(payload, dict):
        return None
    return StoredTokens.from_dict(payload)


def store_tokens(tokens: StoredTokens, path: str | Path | None = None) -> Path:
    token_path = Path(path) if path else default_token_path()
    token_path.parent.mkdir(parents=True, exist_ok=True)
    token_path.write_text(json.dumps(tokens.to_dict(), indent=2), encoding="utf-8")
    try:
        os.chmod(token_path, 0o600)
    except OSError:  # pragma: no cover - platform dependent
        pass
    return token_path


def clear_stored_tokens(path: str | Path | None = None) -> bool:
    """Remove the token cache (sign-out). Returns True when a file was removed."""
    token_path = Path(path) if path else default_token_path()
    if not token_path.exists():
        return False
    token_path.unlink()
    structured_log(_LOG, logging.INFO, "token_cache_cleared", file=str(token_path))
    return True


class StoredTokenProvider:
    """Serves the cached OAuth access token, refreshing it shortly before expiry."""

    def __init__(
        self,
        token_path: str | Path | None = None,
        *,
        client_id: str | None = None,
        client_secret: str | None = None,
        clock: Callable[[], float] = time.time,
        refresher: Callable[[StoredTokens], StoredTokens] | None = None,
    ) -> None:
        self.token_path = Path(token_path) if token_path else default_token_path()
        self.client_id = client_id
        self.client_secret = client_secret
        self._clock = clock
        self._refresher = refresher or self._refresh_with_google
        self._tokens: StoredTokens | None = None
        self._loaded = False
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, cfg: AppConfig) -> "StoredTokenProvider":
        return cls(
            cfg.resolved_token_path,
            client_id=cfg.oauth_client_id,
            client_secret=cfg.oauth_client_secret,
        )

    def _needs_refresh(self, tokens: StoredTokens) -> bool:
        if not tokens.refresh_token or not tokens.expires_at:
            return False
        return self._clock() >= tokens.expires_at - REFRESH_WINDOW_SECONDS

    def _is_usable(self, tokens: StoredTokens) -> bool:
        return bool(tokens.access_token) and self._clock() < tokens.expires_at

    def _refresh_with_google(self, tokens: StoredTokens) -> StoredTokens:
        if not self.client_id or not self.client_secret:
            raise ValidationError(
                "GOOGLE_OAUTH_CLIENT_ID and GOOGLE_OAUTH_CLIENT_SECRET are required to refresh tokens"
            )
        creds = Credentials(
            token=tokens.access_token or None,
            refresh_token=tokens.refresh_token,
            token_uri=TOKEN_URI,
            client_id=self.client_id,
            client_secret=self.client_secret,
            scopes=DRIVE_SCOPES,
        )
        creds.refresh(Request())
        if creds.expiry is not None:
            expires_at = int(creds.expiry.replace(tzinfo=timezone.utc).timestamp())
        else:
            expires_at = int(self._clock()) + 3600
        return StoredTokens(
            access_token=creds.token,
            refresh_token=creds.refresh_token or tokens.refresh_token,
            expires_at=expires_at,
        )

    def _clear(self) -> None:
        self._tokens = None
        clear_stored_tokens(self.token_path)

    async def ensure_valid_token(self) -> str | None:
        async with self._lock:
            if not self._loaded:
                self._tokens = await asyncio.to_thread(load_stored_tokens, self.token_path)
                self._loaded = True
            tokens = self._tokens
            if tokens is None:
                return None
            if not self._is_usable(tokens) and not tokens.refresh_token:
                return None
            if self._needs_refresh(tokens):
                try:
                    refreshed = await asyncio.to_thread(self._refresher, tokens)
                except (GoogleAuthError, ValidationError) as exc:
                    structured_log(
                        _LOG,
                        logging.ERROR,
                        "token_refresh_failed",
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                    self._clear()
                    return None
                await asyncio.to_thread(store_tokens, refreshed, self.token_path)
                self._tokens = refreshed
                structured_log(_LOG, logging.INFO, "token_refreshed", status="ok")
                tokens = refreshed
            return tokens.access_token or None


def _load_service_account(raw_credentials: str, subject: str | None):
    raw_credentials = raw_credentials.strip()
    if raw_credentials.startswith("{"):
        try:
            info = json.loads(raw_credentials)
        except json.JSONDecodeError as exc:
            raise ValidationError("GOOGLE_APPLICATION_CREDENTIALS contains invalid JSON") from exc
        return service_account.Credentials.from_service_account_info(
            info, scopes=SERVICE_ACCOUNT_SCOPES, subject=subject
        )
    if os.path.exists(raw_credentials):
        return service_account.Credentials.from_service_account_file(
            raw_credentials, scopes=SERVICE_ACCOUNT_SCOPES, subject=subject
        )
    raise ValidationError(f"Missing GOOGLE_APPLICATION_CREDENTIALS file at {raw_credentials!r}")


class ServiceAccountTokenProvider:
    """Mints Drive tokens from a service account, optionally impersonating a user."""

    def __init__(self, credentials: Any) -> None:
        self._credentials = credentials
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, cfg: AppConfig) -> "ServiceAccountTokenProvider":
        raw = cfg.google_application_credentials
        if not raw:
            raise ValidationError("GOOGLE_APPLICATION_CREDENTIALS is not configured")
        subject = cfg.drive_impersonation_user or None
        return cls(_load_service_account(str(raw), subject))

    async def ensure_valid_token(self) -> str | None:
        async with self._lock:
            if not self._credentials.valid:
                try:
                    await asyncio.to_thread(self._credentials.refresh, Request())
                except GoogleAuthError as exc:
                    structured_log(
                        _LOG,
                        logging.ERROR,
                        "service_account_refresh_failed",
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                    return None
            return self._credentials.token or None


__all__ = [
    "StoredTokens",
    "StoredTokenProvider",
    "ServiceAccountTokenProvider",
    "load_stored_tokens",
    "store_tokens",
    "clear_stored_tokens",
    "REFRESH_WINDOW_SECONDS",
]
