from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from tahweel.errors import PageSplitError, ValidationError
from tahweel.models.job import FileStage
from tahweel.services.conversion_controller import (
    ConversionJobController,
    ProcessingContext,
    collect_files,
)
from tahweel.services.ocr_orchestrator import OcrOrchestrator
from tahweel.services.page_splitter import SplitProgress, SplitResult, page_image_name
from tahweel.services.writers import DocumentWriter
from tests.stubs.drive_stub import FakeOcrClient, StaticTokenProvider


class FakeSplitter:
    """Writes `pages` placeholder images into the scratch dir it is given."""

    def __init__(self, pages: int = 2, fail_for: set[str] | None = None) -> None:
        self.pages = pages
        self.fail_for = fail_for or set()
        self.scratch_dirs: list[str] = []
        self.dpis: list[int] = []

    async def split(self, document_path, dpi, *, cancel_token=None, on_progress=None, scratch_dir=None):
        self.scratch_dirs.append(str(scratch_dir))
        self.dpis.append(dpi)
        if Path(document_path).name in self.fail_for:
            raise PageSplitError("Failed to render page 1: broken xref")
        paths = []
        for index in range(self.pages):
            cancel_token.raise_if_cancelled()
            target = Path(scratch_dir) / page_image_name(index)
            target.write_bytes(b"\xff\xd8")
            paths.append(str(target))
            if on_progress is not None:
                on_progress(
                    SplitProgress(index + 1, self.pages, round((index + 1) / self.pages * 100))
                )
            await asyncio.sleep(0)
        return SplitResult(image_paths=paths, scratch_dir=str(scratch_dir), page_count=self.pages)


def _inputs(tmp_path, *names: str) -> list[str]:
    folder = tmp_path / "inputs"
    folder.mkdir(exist_ok=True)
    paths = []
    for name in names:
        path = folder / name
        path.write_bytes(b"%PDF-1.4" if name.endswith(".pdf") else b"\xff\xd8")
        paths.append(str(path))
    return paths


def _controller(
    *,
    client: FakeOcrClient | None = None,
    credentials=None,
    splitter: FakeSplitter | None = None,
    events: list | None = None,
    formats=("txt",),
) -> ConversionJobController:
    credentials = credentials or StaticTokenProvider()
    context = ProcessingContext(
        credentials=credentials,
        concurrency=4,
        formats=list(formats),
        page_separator="\n--\n",
        on_progress=events.append if events is not None else None,
    )
    return ConversionJobController(
        context,
        splitter=splitter or FakeSplitter(),
        orchestrator=OcrOrchestrator(client or FakeOcrClient(), credentials),
        writer=DocumentWriter(page_separator=context.page_separator),
    )


def _stages(events, file_name):
    stages: list[FileStage] = []
    for event in events:
        if event.file_name == file_name and (not stages or stages[-1] is not event.stage):
            stages.append(event.stage)
    return stages


@pytest.mark.asyncio
async def test_converts_pdf_and_image(tmp_path):
    pdf, image = _inputs(tmp_path, "report.pdf", "scan.png")
    splitter = FakeSplitter(pages=2)
    events: list = []
    out_dir = tmp_path / "out"
    controller = _controller(splitter=splitter, events=events)

    summary = await controller.start_job([pdf, image], str(out_dir))

    assert summary.succeeded
    assert (summary.total_files, summary.completed_files) == (2, 2)
    assert (out_dir / "report.txt").read_text(encoding="utf-8") == (
        "text:page-0001.jpg\n--\ntext:page-0002.jpg"
    )
    assert (out_dir / "scan.txt").read_text(encoding="utf-8") == "text:scan.png"
    assert _stages(events, "report.pdf") == [
        FileStage.PREPARING,
        FileStage.SPLITTING,
        FileStage.EXTRACTING,
        FileStage.WRITING,
        FileStage.DONE,
    ]
    assert _stages(events, "scan.png") == [
        FileStage.PREPARING,
        FileStage.EXTRACTING,
        FileStage.WRITING,
        FileStage.DONE,
    ]
    assert events[-1].percentage == 100
    assert splitter.dpis == [150]
    assert all(not Path(d).exists() for d in splitter.scratch_dirs)
    assert Path(splitter.scratch_dirs[0]).name.startswith("tahweel-")
    assert controller.job is not None and not controller.job.is_processing
    assert controller.job.current_file is None


@pytest.mark.asyncio
async def test_outputs_default_to_input_folder(tmp_path):
    (image,) = _inputs(tmp_path, "note.jpg")
    summary = await _controller(formats=("txt", "json")).start_job([image])
    assert summary.succeeded
    assert (tmp_path / "inputs" / "note.txt").exists()
    assert (tmp_path / "inputs" / "note.json").exists()


@pytest.mark.asyncio
async def test_split_failure_is_recorded_and_batch_continues(tmp_path):
    broken, image = _inputs(tmp_path, "broken.pdf", "ok.jpg")
    splitter = FakeSplitter(fail_for={"broken.pdf"})

    summary = await _controller(splitter=splitter).start_job([broken, image], str(tmp_path / "out"))

    assert not summary.succeeded
    assert summary.completed_files == 2
    assert [e.file for e in summary.errors] == [broken]
    assert "broken xref" in summary.errors[0].message
    assert (tmp_path / "out" / "ok.txt").exists()
    assert not (tmp_path / "out" / "broken.txt").exists()
    assert not Path(splitter.scratch_dirs[0]).exists()


@pytest.mark.asyncio
async def test_failed_pages_still_produce_output(tmp_path):
    (pdf,) = _inputs(tmp_path, "partial.pdf")
    client = FakeOcrClient(export_failures={"page-0002.jpg": RuntimeError("ocr failed")})

    summary = await _controller(client=client, splitter=FakeSplitter(pages=3)).start_job(
        [pdf], str(tmp_path / "out")
    )

    assert not summary.succeeded
    assert summary.errors == ()
    assert summary.page_errors == 1
    assert summary.completed_files == 1
    text = (tmp_path / "out" / "partial.txt").read_text(encoding="utf-8")
    assert text == "text:page-0001.jpg\n--\n\n--\ntext:page-0003.jpg"


@pytest.mark.asyncio
async def test_cancel_during_first_file_stops_job(tmp_path):
    files = _inputs(tmp_path, "a.jpg", "b.jpg", "c.jpg")
    holder: dict = {}

    def cancel_on_upload(_client, _remote_id):
        holder["controller"].cancel_job()

    client = FakeOcrClient(on_upload=cancel_on_upload)
    controller = _controller(client=client)
    holder["controller"] = controller

    summary = await controller.start_job(files, str(tmp_path / "out"))

    assert summary.cancelled
    assert summary.errors == ()
    assert summary.completed_files == 0
    assert client.bulk_deleted == ["remote-1"]
    assert not (tmp_path / "out").exists()


@pytest.mark.asyncio
async def test_cancel_mid_pdf_removes_page_images(tmp_path):
    (pdf,) = _inputs(tmp_path, "long.pdf")
    splitter = FakeSplitter(pages=3)
    holder: dict = {}

    def cancel_on_upload(_client, _remote_id):
        holder["controller"].cancel_job()

    client = FakeOcrClient(on_upload=cancel_on_upload)
    controller = _controller(client=client, splitter=splitter)
    holder["controller"] = controller

    summary = await controller.start_job([pdf], str(tmp_path / "out"))

    assert summary.cancelled
    assert summary.errors == ()
    assert client.bulk_deleted
    assert len(splitter.scratch_dirs) == 1
    assert not Path(splitter.scratch_dirs[0]).exists()
    assert not (tmp_path / "out").exists()


@pytest.mark.asyncio
async def test_missing_credentials_fail_the_job(tmp_path):
    files = _inputs(tmp_path, "a.jpg", "b.jpg")
    client = FakeOcrClient()

    summary = await _controller(client=client, credentials=StaticTokenProvider(None)).start_job(files)

    assert summary.authentication_failed
    assert not summary.cancelled
    assert len(summary.errors) == 1
    assert client.uploads == []


@pytest.mark.asyncio
async def test_cancel_without_job_and_repeated_cancel_are_noops(tmp_path):
    controller = _controller()
    controller.cancel_job()
    assert controller.job is None

    (image,) = _inputs(tmp_path, "a.jpg")
    await controller.start_job([image], str(tmp_path / "out"))
    controller.cancel_job()
    controller.cancel_job()
    assert controller.job.cancelled

    controller.reset()
    assert controller.job.total_files == 0
    assert controller.job.files == []


@pytest.mark.asyncio
async def test_start_job_rejects_concurrent_job(tmp_path):
    controller = _controller()
    (image,) = _inputs(tmp_path, "a.jpg")
    first = asyncio.create_task(controller.start_job([image], str(tmp_path / "out")))
    await asyncio.sleep(0)
    with pytest.raises(ValidationError):
        await controller.start_job([image])
    with pytest.raises(ValidationError):
        controller.reset()
    summary = await first
    assert summary.succeeded


def test_processing_context_clamps_values():
    context = ProcessingContext(
        credentials=StaticTokenProvider(),
        concurrency=99,
        dpi=20,
        formats=["DOCX", "txt", "docx"],
        page_separator="",
    )
    assert context.concurrency == 20
    assert context.dpi == 72
    assert context.formats == ["docx", "txt"]
    assert context.page_separator == "\n\nPAGE_SEPARATOR\n\n"


def test_collect_files_scans_folders_recursively(tmp_path):
    root = tmp_path / "docs"
    (root / "nested").mkdir(parents=True)
    for name in ["b.pdf", "a.PNG", "notes.txt", ".hidden", "nested/c.jpeg"]:
        (root / name).write_bytes(b"x")

    found = collect_files([root])

    assert found == sorted(
        [str(root / "a.PNG"), str(root / "b.pdf"), str(root / "nested" / "c.jpeg")]
    )


def test_collect_files_rejects_unsupported_or_missing(tmp_path):
    text = tmp_path / "notes.txt"
    text.write_text("x", encoding="utf-8")
    with pytest.raises(ValidationError):
        collect_files([text])
    with pytest.raises(ValidationError):
        collect_files([tmp_path / "missing.pdf"])
