"""Sequential conversion of a batch of documents into text outputs.

Per file: preparing -> (splitting for PDFs) -> extracting -> writing -> done.
Split, render and write failures are recorded against the file and the batch
moves on. A missing credential aborts the job. Cancellation stops the job
before the next checkpoint and is reported separately from errors.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Sequence

from tahweel.config import (
    CONCURRENCY_MAX,
    CONCURRENCY_MIN,
    DEFAULT_PAGE_SEPARATOR,
    DPI_MAX,
    DPI_MIN,
    AppConfig,
    clamp,
    parse_formats,
)
from tahweel.errors import AuthenticationError, ProcessingCancelled, ValidationError
from tahweel.logging_setup import set_job_id
from tahweel.models.job import (
    ConversionJob,
    FileKind,
    FileProgress,
    FileStage,
    FileTask,
    JobSummary,
    is_supported_file,
)
from tahweel.services.backoff import BackoffPolicy
from tahweel.services.drive_client import DriveOcrClient
from tahweel.services.interfaces import (
    CredentialProvider,
    MetricsClient,
    OutputWriter,
    ProgressSink,
)
from tahweel.services.metrics import NullMetrics
from tahweel.services.ocr_orchestrator import OcrOrchestrator
from tahweel.services.page_splitter import SCRATCH_PREFIX, PageSplitter
from tahweel.services.writers import DocumentWriter
from tahweel.utils.logging_utils import log_stage_skipped, structured_log

_LOG = logging.getLogger("conversion_controller")


def collect_files(paths: Iterable[str | Path]) -> list[str]:
    """Expand folders recursively into supported files; explicit files must be supported."""
    collected: list[str] = []
    for raw in paths:
        path = Path(raw).expanduser()
        if path.is_dir():
            found = [
                str(candidate)
                for candidate in path.rglob("*")
                if candidate.is_file() and is_supported_file(candidate.name)
            ]
            collected.extend(sorted(found))
        elif path.is_file():
            if not is_supported_file(path.name):
                raise ValidationError(f"Unsupported file type: {path}")
            collected.append(str(path))
        else:
            raise ValidationError(f"No such file or folder: {path}")
    return collected


@dataclass
class ProcessingContext:
    """Everything a job needs, passed explicitly instead of read from globals."""

    credentials: CredentialProvider
    concurrency: int = 12
    dpi: int = 150
    formats: list[str] = field(default_factory=lambda: parse_formats(None))
    page_separator: str = DEFAULT_PAGE_SEPARATOR
    metrics: MetricsClient = field(default_factory=NullMetrics)
    on_progress: ProgressSink | None = None
    policy: BackoffPolicy | None = None

    def __post_init__(self) -> None:
        self.concurrency = clamp(int(self.concurrency), CONCURRENCY_MIN, CONCURRENCY_MAX)
        self.dpi = clamp(int(self.dpi), DPI_MIN, DPI_MAX)
        self.formats = parse_formats(",".join(self.formats))
        self.page_separator = self.page_separator or DEFAULT_PAGE_SEPARATOR

    @classmethod
    def from_config(
        cls,
        cfg: AppConfig,
        credentials: CredentialProvider,
        *,
        metrics: MetricsClient | None = None,
        on_progress: ProgressSink | None = None,
    ) -> "ProcessingContext":
        return cls(
            credentials=credentials,
            concurrency=cfg.ocr_concurrency,
            dpi=cfg.dpi,
            formats=cfg.formats,
            page_separator=cfg.page_separator,
            metrics=metrics or NullMetrics(),
            on_progress=on_progress,
            policy=BackoffPolicy.from_config(cfg),
        )


class ConversionJobController:
    def __init__(
        self,
        context: ProcessingContext,
        *,
        splitter: PageSplitter | None = None,
        orchestrator: OcrOrchestrator | None = None,
        writer: OutputWriter | None = None,
    ) -> None:
        self.context = context
        self.splitter = splitter or PageSplitter()
        if orchestrator is None:
            client = DriveOcrClient(context.policy, metrics=context.metrics)
            orchestrator = OcrOrchestrator(client, context.credentials, metrics=context.metrics)
        self.orchestrator = orchestrator
        self.writer = writer or DocumentWriter(page_separator=context.page_separator)
        self.job: ConversionJob | None = None

    def cancel_job(self) -> None:
        """Request cancellation of the running job. Safe to call repeatedly."""
        job = self.job
        if job is None or job.cancelled:
            return
        job.cancel_token.cancel()
        structured_log(_LOG, logging.INFO, "job_cancel_requested", completed=job.completed_files)

    def reset(self) -> None:
        if self.job is not None and self.job.is_processing:
            raise ValidationError("Cannot reset while a job is running")
        if self.job is not None:
            self.job.reset()

    def _emit(self, job: ConversionJob, progress: FileProgress) -> None:
        job.current_file = progress
        if self.context.on_progress is not None:
            self.context.on_progress(progress)

    async def start_job(
        self, files: Sequence[str], output_dir: str | None = None
    ) -> JobSummary:
        """Convert `files` one after another. `output_dir=None` writes beside each input."""
        if self.job is not None and self.job.is_processing:
            raise ValidationError("A conversion job is already running")
        job = ConversionJob(files=list(files), output_dir=output_dir or "")
        job.is_processing = True
        self.job = job
        set_job_id(uuid.uuid4().hex)
        cancelled = False
        auth_failed = False
        structured_log(_LOG, logging.INFO, "job_started", files=job.total_files)
        try:
            if not await self.context.credentials.ensure_valid_token():
                raise AuthenticationError("Not authenticated with Google Drive")
            for path in job.files:
                if job.cancelled:
                    cancelled = True
                    break
                task = FileTask.for_path(path)
                started_at = time.perf_counter()
                try:
                    await self._process_file(job, task, output_dir)
                except ProcessingCancelled:
                    cancelled = True
                    break
                except AuthenticationError:
                    raise
                except Exception as exc:  # noqa: BLE001 - file-local failure
                    job.record_error(path, str(exc) or type(exc).__name__)
                    structured_log(
                        _LOG,
                        logging.ERROR,
                        "file_failed",
                        file=task.name,
                        stage=task.stage.value,
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                    self.context.metrics.increment("files_failed", stage="convert")
                else:
                    self.context.metrics.increment("files_converted", stage="convert")
                finally:
                    self.context.metrics.observe_latency(
                        "file_duration_seconds", time.perf_counter() - started_at, stage="convert"
                    )
                if not cancelled:
                    job.complete_file()
                    structured_log(
                        _LOG,
                        logging.INFO,
                        "job_progress",
                        completed=job.completed_files,
                        total=job.total_files,
                        percentage=job.global_progress,
                    )
        except AuthenticationError as exc:
            auth_failed = True
            current = job.current_file.file_path if job.current_file else ""
            job.record_error(current, str(exc))
            structured_log(_LOG, logging.ERROR, "job_authentication_failed", error=str(exc))
        finally:
            job.finish()
            summary = JobSummary(
                total_files=job.total_files,
                completed_files=job.completed_files,
                errors=tuple(job.errors),
                page_errors=job.page_errors,
                cancelled=cancelled,
                authentication_failed=auth_failed,
            )
            structured_log(
                _LOG,
                logging.INFO,
                "job_finished",
                files=summary.total_files,
                completed=summary.completed_files,
                errors=len(summary.errors),
                page_errors=summary.page_errors,
                status="cancelled" if cancelled else ("failed" if auth_failed else "completed"),
            )
            set_job_id(None)
        return summary

    async def _process_file(
        self, job: ConversionJob, task: FileTask, output_dir: str | None
    ) -> None:
        token = job.cancel_token
        ctx = self.context
        token.raise_if_cancelled()
        self._emit(job, task.advance(FileStage.PREPARING))
        scratch_dir: str | None = None
        try:
            if task.kind is FileKind.MULTI_PAGE:
                token.raise_if_cancelled()
                self._emit(job, task.advance(FileStage.SPLITTING))
                scratch_dir = tempfile.mkdtemp(prefix=SCRATCH_PREFIX)
                split = await self.splitter.split(
                    task.path,
                    ctx.dpi,
                    cancel_token=token,
                    on_progress=lambda p: self._emit(
                        job,
                        task.advance(
                            FileStage.SPLITTING,
                            current_page=p.current_page,
                            total_pages=p.total_pages,
                            percentage=p.percentage,
                        ),
                    ),
                    scratch_dir=scratch_dir,
                )
                images = split.image_paths
            else:
                log_stage_skipped(_LOG, stage="split", reason="single_image", file=task.name)
                images = [task.path]

            token.raise_if_cancelled()
            self._emit(job, task.advance(FileStage.EXTRACTING, total_pages=len(images)))
            result = await self.orchestrator.extract(
                images,
                concurrency=ctx.concurrency,
                cancel_token=token,
                on_progress=lambda p: self._emit(
                    job,
                    task.advance(
                        FileStage.EXTRACTING,
                        current_page=p.completed,
                        total_pages=p.total,
                        percentage=p.percentage,
                    ),
                ),
            )
            if result.errors:
                job.page_errors += len(result.errors)
                structured_log(
                    _LOG,
                    logging.WARNING,
                    "file_pages_failed",
                    file=task.name,
                    errors=[f"page {err.index + 1}: {err.message}" for err in result.errors],
                )

            token.raise_if_cancelled()
            self._emit(job, task.advance(FileStage.WRITING, percentage=90))
            target_dir = Path(output_dir) if output_dir else Path(task.path).parent
            await self.writer.write_outputs(
                result.texts,
                str(target_dir / task.stem),
                ctx.formats,
                {"page_separator": ctx.page_separator},
            )
        finally:
            if scratch_dir is not None:
                await asyncio.to_thread(shutil.rmtree, scratch_dir, True)
        self._emit(
            job,
            task.advance(
                FileStage.DONE,
                current_page=len(images),
                total_pages=len(images),
                percentage=100,
            ),
        )


__all__ = ["ConversionJobController", "ProcessingContext", "collect_files"]
