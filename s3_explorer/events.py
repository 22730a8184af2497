from __future__ import annotations
"""Typed events emitted by transfer jobs."""
from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class TransferProgress:
    """Bytes moved so far across the whole job."""

    transferred: int
    total: int
    key: str
    index: int
    count: int
    local_path: Optional[str] = None

    @property
    def fraction(self) -> float:
        if self.total <= 0:
            return 1.0
        return min(self.transferred / self.total, 1.0)


@dataclass(frozen=True)
class ConflictDetected:
    """The destination exists and the job waits for a decision."""

    key: str
    local_path: str


@dataclass(frozen=True)
class TransferCompleted:
    transferred: int
    count: int


@dataclass(frozen=True)
class TransferFailed:
    """The job stopped at ``key`` (a remote key or a local path)."""

    key: str
    error: Exception

    @property
    def message(self) -> str:
        return f"{self.key}: {self.error}"


@dataclass(frozen=True)
class TransferCancelled:
    transferred: int
    key: Optional[str] = None


TransferEvent = Union[TransferProgress, ConflictDetected, TransferCompleted, TransferFailed, TransferCancelled]
TERMINAL_EVENTS = (TransferCompleted, TransferFailed, TransferCancelled)
