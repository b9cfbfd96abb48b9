"""Google Drive OCR client.

Drive performs OCR when an image or PDF is uploaded with the Google Docs
target MIME type; exporting that document as `text/plain` yields the text.
Each call builds its own Drive service because the underlying httplib2
transport must not be shared across threads.
"""

# pylint: disable=no-member
from __future__ import annotations

import asyncio
import io
import logging
import re
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Iterable

from google.oauth2.credentials import Credentials  # type: ignore
from googleapiclient.discovery import build  # type: ignore
from googleapiclient.http import MediaIoBaseUpload  # type: ignore

from tahweel.errors import OCRServiceError, ValidationError
from tahweel.services.backoff import BackoffPolicy, http_status_of
from tahweel.services.interfaces import MetricsClient
from tahweel.services.metrics import NullMetrics
from tahweel.utils.logging_utils import mask_drive_id, structured_log

_LOG = logging.getLogger("drive_client")

GOOGLE_DOC_MIME = "application/vnd.google-apps.document"
EXPORT_MIME = "text/plain"

_SOURCE_MIME_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".pdf": "application/pdf",
}
_BOM_UNDERSCORES = re.compile("\ufeff?_+")
_EXCESS_NEWLINES = re.compile(r"\n{3,}")


def source_mime_type(path: str | Path) -> str:
    return _SOURCE_MIME_TYPES.get(Path(path).suffix.lower(), "application/octet-stream")


def clean_exported_text(text: str) -> str:
    """Strip export artefacts (BOM, underline runs, blank-line padding)."""
    cleaned = text.replace("\r\n", "\n")
    cleaned = _BOM_UNDERSCORES.sub("", cleaned)
    cleaned = cleaned.replace("\ufeff", "")
    cleaned = _EXCESS_NEWLINES.sub("\n\n", cleaned)
    return cleaned.strip()


def _drive_service(token: str):
    creds = Credentials(token=token)
    return build("drive", "v3", credentials=creds, cache_discovery=False)


class DriveOcrClient:
    """Upload / export / delete against Drive, each call retried by a BackoffPolicy."""

    def __init__(
        self,
        policy: BackoffPolicy | None = None,
        *,
        metrics: MetricsClient | None = None,
        service_factory: Callable[[str], Any] | None = None,
    ) -> None:
        self.policy = policy or BackoffPolicy()
        self.metrics = metrics or NullMetrics()
        self._service_factory = service_factory or _drive_service

    async def _call(self, operation: str, func: Callable[..., Any], *args: Any) -> Any:
        attempts = 0
        async for attempt in self.policy.async_retrying(operation=operation):
            with attempt:
                attempts += 1
                if attempts > 1:
                    self.metrics.increment("drive_retries_total", stage=operation)
                return await asyncio.to_thread(func, *args)
        raise RuntimeError(f"Drive {operation} exhausted retries")  # pragma: no cover

    def _upload_sync(self, image_path: str, token: str) -> str:
        data = Path(image_path).read_bytes()
        media = MediaIoBaseUpload(
            io.BytesIO(data), mimetype=source_mime_type(image_path), resumable=False
        )
        metadata = {"name": str(uuid.uuid4()), "mimeType": GOOGLE_DOC_MIME}
        service = self._service_factory(token)
        created = service.files().create(body=metadata, media_body=media, fields="id").execute()
        remote_id = (created or {}).get("id")
        if not remote_id:
            raise OCRServiceError(f"Drive upload of {Path(image_path).name} returned no file id")
        return remote_id

    def _export_sync(self, remote_id: str, token: str) -> str:
        service = self._service_factory(token)
        payload = service.files().export(fileId=remote_id, mimeType=EXPORT_MIME).execute()
        if isinstance(payload, (bytes, bytearray)):
            try:
                return bytes(payload).decode("utf-8")
            except UnicodeDecodeError as exc:
                raise OCRServiceError(f"Drive export of {remote_id} is not UTF-8 text") from exc
        return str(payload or "")

    def _delete_sync(self, remote_id: str, token: str) -> None:
        service = self._service_factory(token)
        service.files().delete(fileId=remote_id).execute()

    async def upload(self, image_path: str, token: str) -> str:
        if not Path(image_path).is_file():
            raise ValidationError(f"Image not found: {image_path}")
        started_at = time.perf_counter()
        remote_id = await self._call("drive_upload", self._upload_sync, image_path, token)
        structured_log(
            _LOG,
            logging.DEBUG,
            "drive_upload_complete",
            drive_file_id=mask_drive_id(remote_id),
            duration_ms=int((time.perf_counter() - started_at) * 1000),
        )
        return remote_id

    async def export_text(self, remote_id: str, token: str) -> str:
        raw = await self._call("drive_export", self._export_sync, remote_id, token)
        text = clean_exported_text(raw)
        structured_log(
            _LOG,
            logging.DEBUG,
            "drive_export_complete",
            drive_file_id=mask_drive_id(remote_id),
            text_length=len(text),
        )
        return text

    async def delete(self, remote_id: str, token: str) -> None:
        await self._call("drive_delete", self._delete_sync, remote_id, token)

    async def delete_many(self, remote_ids: Iterable[str], token: str) -> None:
        """Delete artifacts in parallel; failures are logged and otherwise ignored."""
        ids = [remote_id for remote_id in remote_ids if remote_id]
        if not ids:
            return
        results = await asyncio.gather(
            *(self.delete(remote_id, token) for remote_id in ids), return_exceptions=True
        )
        for remote_id, result in zip(ids, results):
            if isinstance(result, BaseException):
                structured_log(
                    _LOG,
                    logging.WARNING,
                    "drive_delete_failed",
                    drive_file_id=mask_drive_id(remote_id),
                    error_type=type(result).__name__,
                    status_code=http_status_of(result),
                    error=str(result),
                )


__all__ = ["DriveOcrClient", "clean_exported_text", "source_mime_type", "GOOGLE_DOC_MIME"]
