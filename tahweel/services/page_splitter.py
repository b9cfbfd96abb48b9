"""Render PDF pages to JPEG images for OCR.

Pages are rendered in a process pool. Every render opens its own PyMuPDF
document handle: MuPDF contexts must not be shared between concurrent
renders, so a worker never reuses a handle across pages.
"""
from __future__ import annotations

import asyncio
import logging
import multiprocessing
import os
import shutil
import tempfile
from concurrent.futures import Executor, ProcessPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

import fitz  # PyMuPDF

from tahweel.config import DPI_MAX, DPI_MIN, clamp
from tahweel.errors import PageSplitError
from tahweel.models.job import percentage
from tahweel.utils.cancellation import CancellationToken
from tahweel.utils.logging_utils import stage_marker

_LOG = logging.getLogger("page_splitter")

PAGE_WIDTH_INCHES = 8
PAGE_HEIGHT_INCHES = 12
SCRATCH_PREFIX = "tahweel-"


@dataclass(frozen=True)
class SplitProgress:
    current_page: int
    total_pages: int
    percentage: int


@dataclass
class SplitResult:
    image_paths: List[str]
    scratch_dir: str
    page_count: int


RenderFn = Callable[[str, int, int, str], str]


def page_image_name(page_index: int) -> str:
    return f"page-{page_index + 1:04d}.jpg"


def render_zoom(width_pt: float, height_pt: float, dpi: int) -> float:
    """Scale factor giving a `dpi * 8` px wide image no taller than `dpi * 12` px."""
    if width_pt <= 0 or height_pt <= 0:
        raise PageSplitError("Page has an empty media box")
    zoom = (dpi * PAGE_WIDTH_INCHES) / width_pt
    if height_pt * zoom > dpi * PAGE_HEIGHT_INCHES:
        zoom = (dpi * PAGE_HEIGHT_INCHES) / height_pt
    return zoom


def render_page(document_path: str, page_index: int, dpi: int, output_path: str) -> str:
    """Render one page to a JPEG file. Runs inside a worker process."""
    try:
        with fitz.open(document_path) as doc:
            page = doc.load_page(page_index)
            zoom = render_zoom(page.rect.width, page.rect.height, dpi)
            pix = page.get_pixmap(matrix=fitz.Matrix(zoom, zoom), alpha=False)
            pix.save(output_path)
    except PageSplitError:
        raise
    except Exception as exc:  # noqa: BLE001 - MuPDF raises a wide range of types
        raise PageSplitError(f"Failed to render page {page_index + 1}: {exc}") from exc
    return output_path


def page_count(document_path: str | Path) -> int:
    try:
        with fitz.open(str(document_path)) as doc:
            return doc.page_count
    except (RuntimeError, ValueError, OSError) as exc:
        raise PageSplitError(f"Failed to open document {document_path}: {exc}") from exc


def _default_executor(workers: int) -> Executor:
    return ProcessPoolExecutor(
        max_workers=workers, mp_context=multiprocessing.get_context("spawn")
    )


class PageSplitter:
    def __init__(
        self,
        *,
        max_workers: Optional[int] = None,
        renderer: RenderFn = render_page,
        counter: Callable[[str], int] = page_count,
        executor_factory: Callable[[int], Executor] = _default_executor,
    ) -> None:
        self.max_workers = max(1, max_workers or os.cpu_count() or 1)
        self._renderer = renderer
        self._counter = counter
        self._executor_factory = executor_factory

    async def page_count(self, document_path: str | Path) -> int:
        return await asyncio.to_thread(self._counter, str(document_path))

    async def split(
        self,
        document_path: str | Path,
        dpi: int,
        *,
        cancel_token: CancellationToken | None = None,
        on_progress: Callable[[SplitProgress], None] | None = None,
        scratch_dir: str | Path | None = None,
    ) -> SplitResult:
        """Render every page of `document_path`; all pages or PageSplitError.

        A scratch dir created here is removed again if the split fails.
        """
        token = cancel_token or CancellationToken()
        token.raise_if_cancelled()
        dpi = clamp(int(dpi), DPI_MIN, DPI_MAX)
        source = str(document_path)
        total = await self.page_count(source)

        owns_dir = not scratch_dir
        out_dir = Path(scratch_dir) if scratch_dir else Path(tempfile.mkdtemp(prefix=SCRATCH_PREFIX))
        try:
            out_dir.mkdir(parents=True, exist_ok=True)
            return await self._render_pages(source, dpi, total, out_dir, token, on_progress)
        except BaseException:
            if owns_dir:
                await asyncio.to_thread(shutil.rmtree, out_dir, True)
            raise

    async def _render_pages(
        self,
        source: str,
        dpi: int,
        total: int,
        out_dir: Path,
        token: CancellationToken,
        on_progress: Callable[[SplitProgress], None] | None,
    ) -> SplitResult:
        image_paths = [str(out_dir / page_image_name(index)) for index in range(total)]
        if total == 0:
            return SplitResult(image_paths=[], scratch_dir=str(out_dir), page_count=0)

        workers = min(self.max_workers, total)
        loop = asyncio.get_running_loop()
        executor = self._executor_factory(workers)
        futures: list[asyncio.Future] = []
        with stage_marker(_LOG, stage="split", pages=total, dpi=dpi, workers=workers) as marker:
            try:
                futures = [
                    loop.run_in_executor(executor, self._renderer, source, index, dpi, image_paths[index])
                    for index in range(total)
                ]
                completed = 0
                for next_done in asyncio.as_completed(futures):
                    try:
                        await next_done
                    except PageSplitError:
                        raise
                    except Exception as exc:  # noqa: BLE001 - renderer boundary
                        raise PageSplitError(f"Failed to render {source}: {exc}") from exc
                    completed += 1
                    if on_progress is not None:
                        on_progress(SplitProgress(completed, total, percentage(completed, total)))
                    token.raise_if_cancelled()
            except BaseException:
                for future in futures:
                    future.cancel()
                await asyncio.gather(*futures, return_exceptions=True)
                raise
            finally:
                await asyncio.to_thread(executor.shutdown, True, cancel_futures=True)
            marker.add_completion_fields(completed=completed)
        return SplitResult(image_paths=image_paths, scratch_dir=str(out_dir), page_count=total)


__all__ = [
    "PageSplitter",
    "SplitProgress",
    "SplitResult",
    "page_count",
    "page_image_name",
    "render_page",
    "render_zoom",
]
