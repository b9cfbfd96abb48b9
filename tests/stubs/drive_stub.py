"""Google Drive stubs for offline testing."""

from __future__ import annotations

import asyncio
import json
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httplib2
from googleapiclient.errors import HttpError


def make_http_error(status: int, reason: str | None = None, message: str = "stub error") -> HttpError:
    error: Dict[str, Any] = {"code": status, "message": message}
    if reason:
        error["errors"] = [{"reason": reason, "message": message}]
    content = json.dumps({"error": error}).encode("utf-8")
    return HttpError(httplib2.Response({"status": status}), content)


class _ExecuteWrapper:
    def __init__(self, action: Callable[[], Any]) -> None:
        self._action = action

    def execute(self) -> Any:
        return self._action()


class StubDriveFilesResource:
    def __init__(self, service: "StubDriveService") -> None:
        self._service = service

    def create(self, body: Dict[str, Any], media_body: Any, **_: object) -> _ExecuteWrapper:
        def _create() -> Dict[str, Any]:
            self._service.raise_queued("create")
            data = media_body.getbytes(0, media_body.size())
            with self._service.lock:
                file_id = f"stub-{len(self._service.created) + 1}"
                self._service.created.append(
                    {"id": file_id, "body": dict(body), "mimetype": media_body.mimetype(), "bytes": data}
                )
                self._service.files_store[file_id] = data
            return {"id": file_id}

        return _ExecuteWrapper(_create)

    def export(self, fileId: str, mimeType: str, **_: object) -> _ExecuteWrapper:  # noqa: N803
        def _export() -> bytes:
            self._service.raise_queued("export", fileId)
            with self._service.lock:
                self._service.exported.append((fileId, mimeType))
            return self._service.export_text.get(fileId, f"text for {fileId}").encode("utf-8")

        return _ExecuteWrapper(_export)

    def delete(self, fileId: str, **_: object) -> _ExecuteWrapper:  # noqa: N803
        def _delete() -> str:
            self._service.raise_queued("delete", fileId)
            with self._service.lock:
                self._service.deleted.append(fileId)
                self._service.files_store.pop(fileId, None)
            return ""

        return _ExecuteWrapper(_delete)


class StubDriveService:
    """In-memory stand-in for `build("drive", "v3", ...)`.

    `failures[(operation, file_id)]` holds exceptions raised, in order, by the
    next calls of that operation; `file_id=None` matches any file. `after=N`
    lets N matching calls through before the first queued error fires.
    """

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.files_store: Dict[str, bytes] = {}
        self.export_text: Dict[str, str] = {}
        self.created: List[Dict[str, Any]] = []
        self.exported: List[tuple[str, str]] = []
        self.deleted: List[str] = []
        self.failures: Dict[tuple[str, Optional[str]], List[BaseException]] = {}
        self.pass_through: Dict[tuple[str, Optional[str]], int] = {}

    def fail(
        self, operation: str, *errors: BaseException, file_id: str | None = None, after: int = 0
    ) -> None:
        self.failures.setdefault((operation, file_id), []).extend(errors)
        if after:
            self.pass_through[(operation, file_id)] = after

    def raise_queued(self, operation: str, file_id: str | None = None) -> None:
        with self.lock:
            for key in ((operation, file_id), (operation, None)):
                queue = self.failures.get(key)
                if queue:
                    if self.pass_through.get(key):
                        self.pass_through[key] -= 1
                        return
                    error = queue.pop(0)
                    break
            else:
                return
        raise error

    def files(self) -> StubDriveFilesResource:
        return StubDriveFilesResource(self)


class StaticTokenProvider:
    """CredentialProvider returning a fixed token (or None)."""

    def __init__(self, token: str | None = "stub-token") -> None:
        self.token = token
        self.calls = 0

    async def ensure_valid_token(self) -> str | None:
        self.calls += 1
        return self.token


class FakeOcrClient:
    """Async stand-in for DriveOcrClient with latency and failure injection."""

    def __init__(
        self,
        *,
        latency: Callable[[str], float] | None = None,
        export_failures: Dict[str, BaseException] | None = None,
        on_upload: Callable[["FakeOcrClient", str], None] | None = None,
        on_export: Callable[["FakeOcrClient", str], None] | None = None,
    ) -> None:
        self._latency = latency or (lambda _path: 0.0)
        self._export_failures = dict(export_failures or {})
        self._on_upload = on_upload
        self._on_export = on_export
        self.uploads: List[str] = []
        self.exports: List[str] = []
        self.deletes: List[str] = []
        self.bulk_deleted: List[str] = []
        self.remote_paths: Dict[str, str] = {}
        self.in_flight = 0
        self.max_in_flight = 0

    async def upload(self, image_path: str, token: str) -> str:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self._latency(image_path))
            remote_id = f"remote-{len(self.uploads) + 1}"
            self.uploads.append(image_path)
            self.remote_paths[remote_id] = image_path
        finally:
            self.in_flight -= 1
        if self._on_upload is not None:
            self._on_upload(self, remote_id)
        return remote_id

    async def export_text(self, remote_id: str, token: str) -> str:
        path = self.remote_paths[remote_id]
        await asyncio.sleep(self._latency(path))
        self.exports.append(remote_id)
        if self._on_export is not None:
            self._on_export(self, remote_id)
        failure = self._export_failures.get(Path(path).name)
        if failure is not None:
            raise failure
        return f"text:{Path(path).name}"

    async def delete(self, remote_id: str, token: str) -> None:
        self.deletes.append(remote_id)

    async def delete_many(self, remote_ids, token: str) -> None:
        self.bulk_deleted.extend(remote_ids)
