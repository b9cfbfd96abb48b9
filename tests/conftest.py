from __future__ import annotations

from pathlib import Path
from typing import Callable, List

import pytest

from tahweel.config import get_config

_ENV_KEYS = [
    "TAHWEEL_DPI",
    "DPI",
    "TAHWEEL_OCR_CONCURRENCY",
    "TAHWEEL_FORMATS",
    "TAHWEEL_PAGE_SEPARATOR",
    "TAHWEEL_OUTPUT_DIR",
    "TAHWEEL_TOKEN_PATH",
    "TAHWEEL_MAX_ATTEMPTS",
    "TAHWEEL_BACKOFF_BASE",
    "TAHWEEL_BACKOFF_MAX_SECONDS",
    "TAHWEEL_LOG_LEVEL",
    "GOOGLE_OAUTH_CLIENT_ID",
    "GOOGLE_OAUTH_CLIENT_SECRET",
    "GOOGLE_APPLICATION_CREDENTIALS",
    "DRIVE_IMPERSONATION_USER",
]


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path / "cache"))
    get_config.cache_clear()
    yield
    get_config.cache_clear()


@pytest.fixture
def make_images(tmp_path) -> Callable[[int], List[str]]:
    """Create `count` small JPEG-named files and return their paths in order."""

    def _make(count: int, prefix: str = "page") -> List[str]:
        folder = tmp_path / "images"
        folder.mkdir(exist_ok=True)
        paths: List[str] = []
        for index in range(count):
            path = folder / f"{prefix}-{index + 1:04d}.jpg"
            path.write_bytes(b"\xff\xd8\xff\xe0stub-image-%d" % index)
            paths.append(str(path))
        return paths

    return _make


@pytest.fixture
def sample_pdf(tmp_path) -> Path:
    import fitz

    path = tmp_path / "sample.pdf"
    doc = fitz.open()
    for number in range(2):
        page = doc.new_page(width=612, height=792)
        page.insert_text((72, 72), f"Page {number + 1}")
    doc.save(str(path))
    doc.close()
    return path
