"""Shared interfaces used across the Tahweel pipeline."""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Protocol, Sequence

from tahweel.models.job import FileProgress


class CredentialProvider(Protocol):
    """Supplies a bearer token for Google Drive calls, or None when signed out."""

    async def ensure_valid_token(self) -> str | None: ...


class OutputWriter(Protocol):
    """Persists extracted page texts in the requested formats."""

    async def write_outputs(
        self,
        texts: Sequence[str],
        base_path: str,
        formats: Iterable[str],
        options: Mapping[str, Any] | None = None,
    ) -> list[str]: ...


class ProgressSink(Protocol):
    """Observational progress receiver; must not block."""

    def __call__(self, progress: FileProgress) -> None: ...


class MetricsClient(Protocol):
    """Interface for emitting pipeline metrics."""

    def observe_latency(self, name: str, value: float, **labels: str) -> None: ...

    def increment(self, name: str, amount: int = 1, **labels: str) -> None: ...


__all__ = ["CredentialProvider", "OutputWriter", "ProgressSink", "MetricsClient"]
