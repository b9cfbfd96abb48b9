"""Job, file and page level state shared across the conversion pipeline."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from tahweel.utils.cancellation import CancellationToken

MULTI_PAGE_EXTENSIONS = frozenset({".pdf"})
SINGLE_PAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png"})
SUPPORTED_EXTENSIONS = MULTI_PAGE_EXTENSIONS | SINGLE_PAGE_EXTENSIONS


def percentage(completed: int, total: int) -> int:
    """Whole-number percentage, rounding halves up."""
    if total <= 0:
        return 0
    return int(math.floor(completed / total * 100 + 0.5))


def file_extension(name: str) -> str | None:
    """Lower-cased extension including the dot, or None for hidden/extensionless names."""
    last_dot = name.rfind(".")
    if last_dot <= 0 or last_dot == len(name) - 1:
        return None
    return name[last_dot:].lower()


def is_supported_file(name: str) -> bool:
    ext = file_extension(name)
    return ext is not None and ext in SUPPORTED_EXTENSIONS


class FileKind(str, Enum):
    MULTI_PAGE = "multi-page"
    SINGLE_PAGE = "single-page"

    @classmethod
    def detect(cls, path: str | Path) -> "FileKind":
        ext = file_extension(Path(path).name)
        if ext in MULTI_PAGE_EXTENSIONS:
            return cls.MULTI_PAGE
        return cls.SINGLE_PAGE


class FileStage(str, Enum):
    """Per-file stages; a file moves left-to-right and never skips PREPARING."""

    PREPARING = "preparing"
    SPLITTING = "splitting"
    EXTRACTING = "extracting"
    WRITING = "writing"
    DONE = "done"

    @property
    def order(self) -> int:
        return _STAGE_ORDER.index(self)


_STAGE_ORDER = [
    FileStage.PREPARING,
    FileStage.SPLITTING,
    FileStage.EXTRACTING,
    FileStage.WRITING,
    FileStage.DONE,
]


@dataclass(slots=True, frozen=True)
class FileProgress:
    file_path: str
    file_name: str
    stage: FileStage
    current_page: int
    total_pages: int
    percentage: int


@dataclass(slots=True)
class FileTask:
    path: str
    kind: FileKind
    stage: FileStage = FileStage.PREPARING
    current_page: int = 0
    total_pages: int = 0
    percentage: int = 0

    @classmethod
    def for_path(cls, path: str) -> "FileTask":
        return cls(path=path, kind=FileKind.detect(path))

    @property
    def name(self) -> str:
        return Path(self.path).name

    @property
    def stem(self) -> str:
        return Path(self.path).stem

    def advance(
        self,
        stage: FileStage,
        *,
        current_page: int = 0,
        total_pages: int = 0,
        percentage: int = 0,
    ) -> FileProgress:
        if stage.order < self.stage.order:
            raise ValueError(
                f"Stage transition {self.stage.value} -> {stage.value} is not allowed"
            )
        self.stage = stage
        self.current_page = current_page
        self.total_pages = total_pages
        self.percentage = percentage
        return self.progress()

    def progress(self) -> FileProgress:
        return FileProgress(
            file_path=self.path,
            file_name=self.name,
            stage=self.stage,
            current_page=self.current_page,
            total_pages=self.total_pages,
            percentage=self.percentage,
        )


@dataclass(slots=True, frozen=True)
class PageImage:
    index: int
    path: str
    source: str


class OcrTaskState(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    EXPORTING = "exporting"
    EXPORTED = "exported"
    DELETING = "deleting"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


_TERMINAL_TASK_STATES = frozenset(
    {OcrTaskState.DONE, OcrTaskState.FAILED, OcrTaskState.CANCELLED}
)

_ALLOWED_TASK_TRANSITIONS: dict[OcrTaskState, frozenset[OcrTaskState]] = {
    OcrTaskState.PENDING: frozenset({OcrTaskState.UPLOADING}),
    OcrTaskState.UPLOADING: frozenset({OcrTaskState.UPLOADED}),
    OcrTaskState.UPLOADED: frozenset({OcrTaskState.EXPORTING, OcrTaskState.DELETING}),
    OcrTaskState.EXPORTING: frozenset({OcrTaskState.EXPORTED, OcrTaskState.DELETING}),
    OcrTaskState.EXPORTED: frozenset({OcrTaskState.DELETING}),
    OcrTaskState.DELETING: frozenset({OcrTaskState.DONE}),
}


@dataclass(slots=True)
class OcrTask:
    image: PageImage
    state: OcrTaskState = OcrTaskState.PENDING
    remote_id: str | None = None
    text: str | None = None
    error: str | None = None

    @property
    def index(self) -> int:
        return self.image.index

    @property
    def terminal(self) -> bool:
        return self.state in _TERMINAL_TASK_STATES

    def transition(self, state: OcrTaskState) -> None:
        if state in (OcrTaskState.FAILED, OcrTaskState.CANCELLED):
            if self.terminal:
                raise ValueError(f"OCR task {self.index} already finished as {self.state.value}")
            self.state = state
            return
        allowed = _ALLOWED_TASK_TRANSITIONS.get(self.state, frozenset())
        if state not in allowed:
            raise ValueError(
                f"OCR task {self.index}: {self.state.value} -> {state.value} is not allowed"
            )
        self.state = state


@dataclass(slots=True, frozen=True)
class OcrPageError:
    index: int
    message: str


@dataclass(slots=True, frozen=True)
class OcrProgress:
    completed: int
    total: int
    percentage: int

    @classmethod
    def of(cls, completed: int, total: int) -> "OcrProgress":
        return cls(completed=completed, total=total, percentage=percentage(completed, total))


@dataclass(slots=True)
class OcrResult:
    texts: list[str]
    errors: list[OcrPageError] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class FileError:
    file: str
    message: str


@dataclass(slots=True)
class ConversionJob:
    files: list[str]
    output_dir: str
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    total_files: int = 0
    completed_files: int = 0
    errors: list[FileError] = field(default_factory=list)
    page_errors: int = 0
    is_processing: bool = False
    last_completed: bool = False
    current_file: FileProgress | None = None

    def __post_init__(self) -> None:
        if not self.total_files:
            self.total_files = len(self.files)

    @property
    def cancelled(self) -> bool:
        return self.cancel_token.cancelled

    @property
    def global_progress(self) -> int:
        return percentage(self.completed_files, self.total_files)

    def record_error(self, file: str, message: str) -> None:
        self.errors.append(FileError(file=file, message=message))

    def complete_file(self) -> None:
        self.completed_files += 1

    def finish(self) -> None:
        self.is_processing = False
        self.current_file = None
        self.last_completed = True

    def reset(self) -> None:
        self.files = []
        self.output_dir = ""
        self.cancel_token = CancellationToken()
        self.total_files = 0
        self.completed_files = 0
        self.errors = []
        self.page_errors = 0
        self.is_processing = False
        self.last_completed = False
        self.current_file = None


@dataclass(slots=True, frozen=True)
class JobSummary:
    total_files: int
    completed_files: int
    errors: tuple[FileError, ...]
    cancelled: bool
    authentication_failed: bool = False
    page_errors: int = 0

    @property
    def succeeded(self) -> bool:
        return not (
            self.errors or self.page_errors or self.cancelled or self.authentication_failed
        )


__all__ = [
    "ConversionJob",
    "FileError",
    "FileKind",
    "FileProgress",
    "FileStage",
    "FileTask",
    "JobSummary",
    "OcrPageError",
    "OcrProgress",
    "OcrResult",
    "OcrTask",
    "OcrTaskState",
    "PageImage",
    "SUPPORTED_EXTENSIONS",
    "file_extension",
    "is_supported_file",
    "percentage",
]
