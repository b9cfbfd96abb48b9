"""Output writers for extracted page texts (TXT, JSON, DOCX)."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Sequence

from docx import Document  # type: ignore
from docx.enum.text import WD_ALIGN_PARAGRAPH, WD_BREAK  # type: ignore
from docx.oxml import OxmlElement  # type: ignore
from docx.shared import Pt  # type: ignore

from tahweel.config import DEFAULT_PAGE_SEPARATOR, SUPPORTED_FORMATS
from tahweel.errors import OutputWriteError
from tahweel.services.text_compactor import compact_text, is_arabic_text, normalize_page_text
from tahweel.utils.logging_utils import structured_log

_LOG = logging.getLogger("writers")

DOCX_FONT_SIZE = Pt(10)


def write_txt(texts: Sequence[str], base_path: str, separator: str = DEFAULT_PAGE_SEPARATOR) -> str:
    target = f"{base_path}.txt"
    content = (separator or DEFAULT_PAGE_SEPARATOR).join(text.strip() for text in texts)
    Path(target).write_text(content, encoding="utf-8")
    return target


def write_json(texts: Sequence[str], base_path: str) -> str:
    target = f"{base_path}.json"
    payload = [{"page": index + 1, "content": text.strip()} for index, text in enumerate(texts)]
    Path(target).write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
    return target


def _mark_bidi(paragraph) -> None:
    p_pr = paragraph._p.get_or_add_pPr()  # pylint: disable=protected-access
    p_pr.append(OxmlElement("w:bidi"))


def write_docx(texts: Sequence[str], base_path: str) -> str:
    """One paragraph per page with a page break between pages.

    Arabic pages are right aligned and flagged bidi so Word lays them out RTL.
    """
    target = f"{base_path}.docx"
    document = Document()
    for index, raw in enumerate(texts):
        text = compact_text(normalize_page_text(raw))
        rtl = is_arabic_text(text)
        lines = text.split("\n")
        paragraph = document.add_paragraph()
        if rtl:
            _mark_bidi(paragraph)
        paragraph.alignment = WD_ALIGN_PARAGRAPH.RIGHT if rtl else WD_ALIGN_PARAGRAPH.LEFT
        for line_index, line in enumerate(lines):
            run = paragraph.add_run(line)
            run.font.size = DOCX_FONT_SIZE
            run.font.rtl = rtl
            if line_index < len(lines) - 1:
                run.add_break(WD_BREAK.LINE)
        if index < len(texts) - 1:
            paragraph.add_run().add_break(WD_BREAK.PAGE)
    document.save(target)
    return target


class DocumentWriter:
    """OutputWriter that writes each requested format concurrently."""

    def __init__(self, *, page_separator: str = DEFAULT_PAGE_SEPARATOR) -> None:
        self.page_separator = page_separator

    def _jobs(
        self, texts: Sequence[str], base_path: str, formats: list[str], options: Mapping[str, Any]
    ) -> list[tuple[str, Callable[[], str]]]:
        separator = options.get("page_separator") or self.page_separator
        builders: dict[str, Callable[[], str]] = {
            "txt": lambda: write_txt(texts, base_path, separator),
            "json": lambda: write_json(texts, base_path),
            "docx": lambda: write_docx(texts, base_path),
        }
        return [(fmt, builders[fmt]) for fmt in formats]

    async def write_outputs(
        self,
        texts: Sequence[str],
        base_path: str,
        formats: Iterable[str],
        options: Mapping[str, Any] | None = None,
    ) -> list[str]:
        requested: list[str] = []
        for fmt in formats:
            name = fmt.strip().lower()
            if name not in SUPPORTED_FORMATS:
                raise OutputWriteError(f"Unsupported output format {fmt!r}")
            if name not in requested:
                requested.append(name)
        try:
            Path(base_path).parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise OutputWriteError(f"Cannot create output directory for {base_path}: {exc}") from exc

        jobs = self._jobs(list(texts), base_path, requested, options or {})
        results = await asyncio.gather(
            *(asyncio.to_thread(job) for _fmt, job in jobs), return_exceptions=True
        )
        written: list[str] = []
        failures: list[str] = []
        for (fmt, _job), result in zip(jobs, results):
            if isinstance(result, BaseException):
                failures.append(f"{fmt}: {result}")
            else:
                written.append(result)
        if failures:
            structured_log(
                _LOG,
                logging.ERROR,
                "output_write_failed",
                file=base_path,
                formats=requested,
                errors=failures,
            )
            raise OutputWriteError(f"Failed to write {base_path}: {'; '.join(failures)}")
        structured_log(_LOG, logging.INFO, "output_written", file=base_path, formats=requested)
        return written


__all__ = ["DocumentWriter", "write_txt", "write_json", "write_docx"]
