"""Concurrent OCR of page images through Google Drive.

Each page goes upload -> export -> delete. Results keep input order and every
page yields either text or an error entry. On cancellation or a lost
credential the batch stops dispatching, waits for in-flight pages, deletes any
artifact still on Drive and raises; partial texts are never returned.

The uploaded-artifact ledger, the error list and the progress counter are
only touched from coroutines on the event loop.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Sequence

from tahweel.config import CONCURRENCY_MAX, CONCURRENCY_MIN, clamp
from tahweel.errors import AuthenticationError, ProcessingCancelled
from tahweel.models.job import (
    OcrPageError,
    OcrProgress,
    OcrResult,
    OcrTask,
    OcrTaskState,
    PageImage,
)
from tahweel.services.drive_client import DriveOcrClient
from tahweel.services.interfaces import CredentialProvider, MetricsClient
from tahweel.services.metrics import NullMetrics
from tahweel.utils.cancellation import CancellationToken
from tahweel.utils.logging_utils import mask_drive_id, stage_marker, structured_log

_LOG = logging.getLogger("ocr_orchestrator")


def _as_page_images(images: Sequence[str | PageImage]) -> list[PageImage]:
    pages: list[PageImage] = []
    for index, item in enumerate(images):
        if isinstance(item, PageImage):
            pages.append(PageImage(index=index, path=item.path, source=item.source))
        else:
            pages.append(PageImage(index=index, path=str(item), source=str(item)))
    return pages


class OcrOrchestrator:
    def __init__(
        self,
        client: DriveOcrClient,
        credentials: CredentialProvider,
        *,
        metrics: MetricsClient | None = None,
    ) -> None:
        self.client = client
        self.credentials = credentials
        self.metrics = metrics or NullMetrics()

    async def _token(self) -> str:
        token = await self.credentials.ensure_valid_token()
        if not token:
            raise AuthenticationError("Not authenticated with Google Drive")
        return token

    async def _delete_quietly(self, task: OcrTask, ledger: dict[int, str]) -> None:
        """Delete one artifact; failure leaves it in the ledger and is only logged."""
        remote_id = task.remote_id
        if remote_id is None:
            return
        try:
            token = await self._token()
            await self.client.delete(remote_id, token)
        except AuthenticationError:
            raise
        except Exception as exc:  # noqa: BLE001 - delete is best effort
            structured_log(
                _LOG,
                logging.WARNING,
                "drive_delete_failed",
                page_index=task.index,
                drive_file_id=mask_drive_id(remote_id),
                error_type=type(exc).__name__,
            )
            return
        ledger.pop(task.index, None)

    async def _process(
        self, task: OcrTask, batch_token: CancellationToken, ledger: dict[int, str]
    ) -> str:
        batch_token.raise_if_cancelled()
        token = await self._token()
        task.transition(OcrTaskState.UPLOADING)
        remote_id = await self.client.upload(task.image.path, token)
        task.remote_id = remote_id
        ledger[task.index] = remote_id
        task.transition(OcrTaskState.UPLOADED)

        try:
            batch_token.raise_if_cancelled()
            token = await self._token()
            task.transition(OcrTaskState.EXPORTING)
            text = await self.client.export_text(remote_id, token)
            task.transition(OcrTaskState.EXPORTED)
        except (ProcessingCancelled, AuthenticationError):
            raise
        except Exception:
            task.transition(OcrTaskState.DELETING)
            await self._delete_quietly(task, ledger)
            raise

        batch_token.raise_if_cancelled()
        task.transition(OcrTaskState.DELETING)
        await self._delete_quietly(task, ledger)
        task.transition(OcrTaskState.DONE)
        return text

    async def _cleanup(self, remote_ids: list[str]) -> None:
        if not remote_ids:
            return
        token = await self.credentials.ensure_valid_token()
        if not token:
            structured_log(
                _LOG,
                logging.WARNING,
                "drive_cleanup_skipped",
                reason="no_credentials",
                remote_ids=len(remote_ids),
            )
            return
        structured_log(_LOG, logging.INFO, "drive_cleanup", remote_ids=len(remote_ids))
        await self.client.delete_many(remote_ids, token)

    async def extract(
        self,
        images: Sequence[str | PageImage],
        *,
        concurrency: int = 12,
        cancel_token: CancellationToken | None = None,
        on_progress: Callable[[OcrProgress], None] | None = None,
    ) -> OcrResult:
        """OCR every image; `texts[i]` belongs to `images[i]`."""
        pages = _as_page_images(images)
        total = len(pages)
        limit = clamp(int(concurrency), CONCURRENCY_MIN, CONCURRENCY_MAX)
        parent = cancel_token or CancellationToken()
        parent.raise_if_cancelled()
        batch_token = parent.child()

        tasks = [OcrTask(image=page) for page in pages]
        texts: list[str] = [""] * total
        errors: list[OcrPageError] = []
        ledger: dict[int, str] = {}
        aborts: list[BaseException] = []
        semaphore = asyncio.Semaphore(limit)
        completed = 0

        async def run(task: OcrTask) -> None:
            nonlocal completed
            try:
                async with semaphore:
                    texts[task.index] = await self._process(task, batch_token, ledger)
                self.metrics.increment("ocr_page_succeeded", stage="ocr")
            except ProcessingCancelled as exc:
                if not task.terminal:
                    task.transition(OcrTaskState.CANCELLED)
                aborts.append(exc)
                batch_token.cancel()
            except AuthenticationError as exc:
                if not task.terminal:
                    task.transition(OcrTaskState.FAILED)
                aborts.append(exc)
                batch_token.cancel()
            except Exception as exc:  # noqa: BLE001 - page-local failure
                if not task.terminal:
                    task.transition(OcrTaskState.FAILED)
                task.error = str(exc) or type(exc).__name__
                texts[task.index] = ""
                errors.append(OcrPageError(index=task.index, message=task.error))
                self.metrics.increment("ocr_page_failed", stage="ocr")
            completed += 1
            if on_progress is not None:
                on_progress(OcrProgress.of(completed, total))

        with stage_marker(_LOG, stage="ocr", pages=total, concurrency=limit) as marker:
            await asyncio.gather(*(run(task) for task in tasks))
            if aborts:
                await self._cleanup(list(ledger.values()))
                auth_failures = [exc for exc in aborts if isinstance(exc, AuthenticationError)]
                if auth_failures:
                    raise auth_failures[0]
                raise ProcessingCancelled()
            marker.add_completion_fields(errors=len(errors))

        if errors:
            structured_log(
                _LOG,
                logging.WARNING,
                "ocr_completed_with_errors",
                errors=len(errors),
                total=total,
            )
        return OcrResult(texts=texts, errors=sorted(errors, key=lambda err: err.index))


__all__ = ["OcrOrchestrator"]
