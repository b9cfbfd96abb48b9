"""Command line entry point: `tahweel <files or folders>` and `tahweel logout`."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import Iterable, List, Optional, TextIO

from tahweel.config import SUPPORTED_FORMATS, AppConfig, get_config
from tahweel.errors import ValidationError
from tahweel.logging_setup import configure_logging
from tahweel.models.job import FileProgress, JobSummary
from tahweel.services.conversion_controller import (
    ConversionJobController,
    ProcessingContext,
    collect_files,
)
from tahweel.services.credentials import (
    ServiceAccountTokenProvider,
    StoredTokenProvider,
    clear_stored_tokens,
)
from tahweel.services.interfaces import CredentialProvider
from tahweel.services.metrics import PrometheusMetrics

_LOG = logging.getLogger("tahweel.cli")

EXIT_OK = 0
EXIT_FILE_ERRORS = 1
EXIT_AUTH_FAILED = 2
EXIT_CANCELLED = 130


class ConsoleProgress:
    """Prints one line per stage change or percentage step."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream or sys.stderr
        self._last: tuple[str, str, int] | None = None

    def __call__(self, progress: FileProgress) -> None:
        key = (progress.file_path, progress.stage.value, progress.percentage)
        if key == self._last:
            return
        self._last = key
        pages = f" {progress.current_page}/{progress.total_pages}" if progress.total_pages else ""
        print(
            f"[{progress.stage.value:<10}] {progress.file_name}{pages} {progress.percentage}%",
            file=self._stream,
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tahweel",
        description="Convert PDFs and images to text with Google Drive OCR.",
        epilog="Run `tahweel logout` to remove the cached Google sign-in.",
    )
    parser.add_argument("paths", nargs="+", help="Files or folders (folders are scanned recursively).")
    parser.add_argument("--output-dir", help="Write outputs here instead of beside each input.")
    parser.add_argument("--dpi", type=int, help="Render resolution for PDF pages (72-300).")
    parser.add_argument("--concurrency", type=int, help="Concurrent OCR requests (1-20).")
    parser.add_argument(
        "--format",
        action="append",
        choices=SUPPORTED_FORMATS,
        dest="formats",
        help="Output format; repeat for several (default: txt and docx).",
    )
    parser.add_argument("--page-separator", help="Separator placed between pages in TXT output.")
    parser.add_argument(
        "--service-account",
        help="Service account JSON (path or inline) used instead of the cached sign-in.",
    )
    parser.add_argument("--log-level", help="Logging level (DEBUG, INFO, WARNING...).")
    return parser


def _config_from_args(args: argparse.Namespace) -> AppConfig:
    overrides = {
        "dpi": args.dpi,
        "ocr_concurrency": args.concurrency,
        "formats_raw": ",".join(args.formats) if args.formats else None,
        "page_separator": args.page_separator,
        "output_directory": args.output_dir,
        "google_application_credentials": args.service_account,
        "log_level": args.log_level,
    }
    overrides = {key: value for key, value in overrides.items() if value is not None}
    if not overrides:
        return get_config()
    return AppConfig(**overrides)  # type: ignore[arg-type]


def _credentials_for(cfg: AppConfig) -> CredentialProvider:
    if cfg.google_application_credentials:
        return ServiceAccountTokenProvider.from_config(cfg)
    return StoredTokenProvider.from_config(cfg)


def exit_code_for(summary: JobSummary) -> int:
    if summary.cancelled:
        return EXIT_CANCELLED
    if summary.authentication_failed:
        return EXIT_AUTH_FAILED
    if summary.errors or summary.page_errors:
        return EXIT_FILE_ERRORS
    return EXIT_OK


async def _run(controller: ConversionJobController, files: List[str], output_dir: Optional[str]) -> JobSummary:
    loop = asyncio.get_running_loop()
    installed = False
    try:
        loop.add_signal_handler(signal.SIGINT, controller.cancel_job)
        installed = True
    except (NotImplementedError, RuntimeError):  # pragma: no cover - Windows / non-main thread
        signal.signal(signal.SIGINT, lambda *_: loop.call_soon_threadsafe(controller.cancel_job))
    try:
        return await controller.start_job(files, output_dir)
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


def _print_summary(summary: JobSummary, stream: TextIO) -> None:
    print(
        f"Converted {summary.completed_files}/{summary.total_files} file(s)",
        file=stream,
    )
    for error in summary.errors:
        print(f"  {error.file or '<job>'}: {error.message}", file=stream)
    if summary.page_errors:
        print(f"  {summary.page_errors} page(s) failed OCR and were left blank", file=stream)
    if summary.cancelled:
        print("Cancelled.", file=stream)


def run_cli(argv: Optional[Iterable[str]] = None) -> int:
    arg_list = list(argv) if argv is not None else sys.argv[1:]
    if arg_list[:1] == ["logout"]:
        cfg = get_config()
        configure_logging(cfg.log_level)
        removed = clear_stored_tokens(cfg.resolved_token_path)
        print("Signed out." if removed else "No stored sign-in found.", file=sys.stderr)
        return EXIT_OK

    parser = build_parser()
    args = parser.parse_args(arg_list)
    try:
        cfg = _config_from_args(args)
    except ValueError as exc:
        parser.error(str(exc))
    configure_logging(cfg.log_level)

    try:
        files = collect_files(args.paths)
        credentials = _credentials_for(cfg)
    except ValidationError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_FILE_ERRORS
    if not files:
        print("error: no supported files found (.pdf, .jpg, .jpeg, .png)", file=sys.stderr)
        return EXIT_FILE_ERRORS

    context = ProcessingContext.from_config(
        cfg,
        credentials,
        metrics=PrometheusMetrics.default(),
        on_progress=ConsoleProgress(),
    )
    controller = ConversionJobController(context)
    summary = asyncio.run(_run(controller, files, cfg.output_directory))
    _print_summary(summary, sys.stderr)
    return exit_code_for(summary)


def main() -> int:
    return run_cli()


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
