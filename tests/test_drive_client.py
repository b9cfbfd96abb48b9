import logging
import uuid

import pytest

from tahweel.errors import OCRServiceError, ValidationError
from tahweel.services import drive_client as dc
from tahweel.services.backoff import BackoffPolicy
from tests.stubs.drive_stub import StubDriveService, make_http_error

# pylint: disable=protected-access


async def _no_sleep(_seconds: float) -> None:
    return None


def _client(service: StubDriveService, **policy_kwargs) -> dc.DriveOcrClient:
    policy = BackoffPolicy(jitter=0.0, async_sleep=_no_sleep, **policy_kwargs)
    return dc.DriveOcrClient(policy, service_factory=lambda _token: service)


def test_clean_exported_text_strips_export_artifacts():
    raw = "\ufeff________\r\nمرحبا بالعالم\r\n\r\n\r\n\r\nsecond ___ line  \n\n"
    assert dc.clean_exported_text(raw) == "مرحبا بالعالم\n\nsecond  line"


def test_clean_exported_text_removes_stray_bom():
    assert dc.clean_exported_text("\ufeffhello\ufeff") == "hello"


@pytest.mark.parametrize(
    "name, expected",
    [
        ("scan.PNG", "image/png"),
        ("page.jpg", "image/jpeg"),
        ("page.jpeg", "image/jpeg"),
        ("doc.pdf", "application/pdf"),
        ("notes.tiff", "application/octet-stream"),
    ],
)
def test_source_mime_type(name, expected):
    assert dc.source_mime_type(name) == expected


@pytest.mark.asyncio
async def test_upload_creates_google_doc_with_random_name(make_images):
    service = StubDriveService()
    client = _client(service)
    (image,) = make_images(1)

    remote_id = await client.upload(image, "tok")

    assert remote_id == "stub-1"
    created = service.created[0]
    assert created["body"]["mimeType"] == dc.GOOGLE_DOC_MIME
    assert str(uuid.UUID(created["body"]["name"])) == created["body"]["name"]
    assert created["mimetype"] == "image/jpeg"
    assert created["bytes"].startswith(b"\xff\xd8")


@pytest.mark.asyncio
async def test_upload_missing_file_raises_validation_error(tmp_path):
    client = _client(StubDriveService())
    with pytest.raises(ValidationError):
        await client.upload(str(tmp_path / "missing.png"), "tok")


@pytest.mark.asyncio
async def test_export_cleans_text_and_requests_plain_text():
    service = StubDriveService()
    service.export_text["doc-1"] = "\ufeff___line one\r\n\r\n\r\nline two\n"
    client = _client(service)

    text = await client.export_text("doc-1", "tok")

    assert text == "line one\n\nline two"
    assert service.exported == [("doc-1", "text/plain")]


@pytest.mark.asyncio
async def test_export_retries_rate_limited_calls():
    service = StubDriveService()
    service.fail("export", make_http_error(429), make_http_error(403, reason="userRateLimitExceeded"))
    client = _client(service)

    assert await client.export_text("doc-9", "tok") == "text for doc-9"
    assert len(service.exported) == 1


@pytest.mark.asyncio
async def test_export_gives_up_on_terminal_error():
    service = StubDriveService()
    service.fail("export", make_http_error(404))
    client = _client(service)

    with pytest.raises(Exception) as excinfo:
        await client.export_text("doc-404", "tok")
    assert dc.http_status_of(excinfo.value) == 404
    assert service.exported == []


@pytest.mark.asyncio
async def test_delete_many_swallows_and_logs_failures(caplog):
    service = StubDriveService()
    service.fail("delete", make_http_error(404), file_id="gone-1")
    client = _client(service, max_attempts=1)
    caplog.set_level(logging.WARNING, logger="drive_client")

    await client.delete_many(["gone-1", "ok-2", ""], "tok")

    assert service.deleted == ["ok-2"]
    failures = [r for r in caplog.records if getattr(r, "event", "") == "drive_delete_failed"]
    assert len(failures) == 1
    assert failures[0].status_code == 404
    assert "gone-1" not in failures[0].drive_file_id


def test_default_service_uses_bearer_token(monkeypatch):
    captured = {}

    def fake_build(name, version, **kwargs):
        captured.update(name=name, version=version, **kwargs)
        return StubDriveService()

    monkeypatch.setattr(dc, "build", fake_build)
    service = dc._drive_service("access-123")

    assert isinstance(service, StubDriveService)
    assert (captured["name"], captured["version"]) == ("drive", "v3")
    assert captured["cache_discovery"] is False
    assert captured["credentials"].token == "access-123"


@pytest.mark.asyncio
async def test_export_rejects_non_utf8_payload():
    service = StubDriveService()
    client = _client(service)

    class _Binary:
        def files(self):
            return self

        def export(self, **_kwargs):
            return self

        def execute(self):
            return b"\xff\xfe\x00broken"

    client._service_factory = lambda _token: _Binary()
    with pytest.raises(OCRServiceError):
        await client.export_text("doc-1", "tok")
