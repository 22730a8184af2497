from __future__ import annotations
"""Data models representing the virtual S3 namespace and transfer work."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class EntryKind(Enum):
    BUCKET = "bucket"
    FOLDER = "folder"
    FILE = "file"


@dataclass(frozen=True)
class Entry:
    """A node in the virtual namespace built from a listing."""

    key: str
    kind: EntryKind
    size: Optional[int] = None
    etag: Optional[str] = None
    last_modified: Optional[datetime] = None
    storage_class: Optional[str] = None
    full_path: Optional[str] = None

    def __post_init__(self) -> None:
        if (self.size is not None) != (self.kind is EntryKind.FILE):
            raise ValueError(f"size must be set only for file entries ({self.kind.value} '{self.key}')")

    @property
    def is_container(self) -> bool:
        return self.kind is not EntryKind.FILE


@dataclass(frozen=True)
class ObjectRecord:
    """A single object as reported by a listing call."""

    key: str
    size: int = 0
    etag: Optional[str] = None
    last_modified: Optional[datetime] = None
    storage_class: Optional[str] = None


@dataclass
class ObjectPage:
    """Represents a single page of S3 objects."""

    number: int
    objects: list[ObjectRecord] = field(default_factory=list)
    prefixes: list[str] = field(default_factory=list)


@dataclass
class ObjectDetails:
    """Metadata about a single S3 object."""

    bucket: str
    key: str
    size: Optional[int] = None
    last_modified: Optional[datetime] = None
    storage_class: Optional[str] = None
    etag: Optional[str] = None
    content_type: Optional[str] = None
    metadata: dict[str, str] = field(default_factory=dict)
    checksums: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Location:
    """Where the browser currently is: the bucket root list, or a prefix inside a bucket."""

    bucket: Optional[str] = None
    prefix: str = ""

    @property
    def is_root(self) -> bool:
        return self.bucket is None

    def enter(self, name: str) -> "Location":
        if self.bucket is None:
            return Location(bucket=name)
        return Location(bucket=self.bucket, prefix=f"{self.prefix}{name.strip('/')}/")

    def up(self) -> "Location":
        if self.bucket is None:
            return self
        segments = [part for part in self.prefix.split("/") if part]
        if not segments:
            return Location()
        parent = "/".join(segments[:-1])
        return Location(bucket=self.bucket, prefix=f"{parent}/" if parent else "")

    def key_for(self, name: str) -> str:
        return f"{self.prefix}{name}"

    def __str__(self) -> str:
        if self.bucket is None:
            return "(buckets)"
        return f"({self.bucket})/{self.prefix}"


@dataclass(frozen=True)
class TransferTarget:
    """One remote object included in a download job."""

    key: str
    size: int = 0

    @property
    def is_folder_marker(self) -> bool:
        return self.key.endswith("/")


@dataclass(frozen=True)
class UploadTarget:
    """One local file included in an upload job."""

    local_path: str
    remote_key: str
    size: int = 0


class JobState(Enum):
    PENDING = "pending"
    RUNNING = "running"
    CANCELLED = "cancelled"
    FAILED = "failed"
    COMPLETED = "completed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.CANCELLED, JobState.FAILED, JobState.COMPLETED)


class ConflictDecision(Enum):
    OVERWRITE = "overwrite"
    SKIP = "skip"
    OVERWRITE_ALL = "overwrite_all"
    SKIP_ALL = "skip_all"
    CANCEL = "cancel"


@dataclass
class ConnectionProfile:
    """Connection parameters for an S3-compatible endpoint."""

    name: str
    endpoint_url: str
    access_key: str
    secret_key: str
    region: Optional[str] = None
    verify_tls: bool = True
