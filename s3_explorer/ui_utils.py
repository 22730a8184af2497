from __future__ import annotations
"""UI-agnostic helpers for formatting listings and transfer progress."""
from dataclasses import dataclass
from datetime import datetime
from importlib.metadata import PackageNotFoundError, metadata, version
import re

from .events import TransferProgress
from .models import Entry, EntryKind

DIST_NAME = "s3-explorer"
SIZE_UNIT_FACTORS = {
    "B": 1,
    "KB": 1024,
    "MB": 1024 * 1024,
    "GB": 1024 * 1024 * 1024,
}
_SIZE_PATTERN = re.compile(r"^\s*(\d+)\s*([A-Za-z]*)\s*$")


@dataclass(frozen=True)
class PackageInfo:
    name: str
    version: str
    summary: str


def load_package_info(dist_name: str = DIST_NAME) -> PackageInfo:
    try:
        distribution_metadata = metadata(dist_name)
        package_version = version(dist_name)
    except PackageNotFoundError:
        return PackageInfo(
            name="S3 Explorer",
            version="",
            summary="Browse S3-compatible buckets and move objects to and from local disk.",
        )
    return PackageInfo(
        name=distribution_metadata.get("Name"),
        version=package_version,
        summary=distribution_metadata.get("Summary") or "",
    )


def parse_size(value: str) -> int | None:
    """Parse ``"8MB"``, ``"512 KB"`` or a plain byte count."""

    match = _SIZE_PATTERN.match(value or "")
    if not match:
        return None
    amount = int(match.group(1))
    if amount <= 0:
        return None
    factor = SIZE_UNIT_FACTORS.get((match.group(2) or "B").upper())
    if not factor:
        return None
    return amount * factor


def format_size(size: int | None) -> str:
    if size is None:
        return "-"
    suffixes = ["B", "KiB", "MiB", "GiB", "TiB"]
    value = float(max(size, 0))
    for suffix in suffixes:
        if value < 1024 or suffix == suffixes[-1]:
            return f"{value:.1f} {suffix}" if suffix != "B" else f"{int(value)} {suffix}"
        value /= 1024
    return f"{size} B"


def format_last_modified(last_modified: object) -> str:
    if not last_modified:
        return "-"
    if isinstance(last_modified, datetime):
        return last_modified.strftime("%Y-%m-%d %H:%M:%S %Z").strip() or last_modified.isoformat()
    return str(last_modified)


def format_entry(entry: Entry) -> str:
    if entry.kind is EntryKind.FILE:
        return f"{format_last_modified(entry.last_modified):>23}  {format_size(entry.size):>10}  {entry.key}"
    marker = "/" if entry.kind is EntryKind.FOLDER and entry.key != "/" else ""
    label = "BUCKET" if entry.kind is EntryKind.BUCKET else "DIR"
    return f"{label:>23}  {'':>10}  {entry.key}{marker}"


def describe_transfer(action: str, count: int, total_bytes: int, destination: str) -> str:
    """Confirmation text shown before a job starts."""

    return f"{action} {count} object(s), total size {format_size(total_bytes)}\n-> {destination}"


def format_progress(event: TransferProgress) -> str:
    return (
        f"{event.index}/{event.count} {format_size(event.transferred)}/{format_size(event.total)} "
        f"({event.fraction * 100:.1f}%) {event.key}"
    )
