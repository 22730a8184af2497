from __future__ import annotations
"""Hierarchical view over the flat S3 key space and local/remote path mapping."""
import logging
import os
from pathlib import Path
from typing import Optional

from .errors import LocalIOError
from .models import Entry, EntryKind, Location, ObjectRecord, TransferTarget, UploadTarget
from .services import ObjectStore

DELIMITER = "/"

_KIND_ORDER = {EntryKind.BUCKET: 0, EntryKind.FOLDER: 1, EntryKind.FILE: 2}

LOGGER = logging.getLogger(__name__)


class NamespaceMapper:
    """Turns listing pages into sorted :class:`Entry` lists."""

    def __init__(self, store: ObjectStore):
        self._store = store

    @property
    def store(self) -> ObjectStore:
        return self._store

    def list(self, location: Location, delimiter: str = DELIMITER) -> list[Entry]:
        """Return the entries visible at ``location``.

        All pages are consumed before returning. Folders sort before files,
        then entries sort by key.

        Raises:
            StoreError: when the store fails to list buckets or objects.
        """

        if location.is_root:
            return sort_entries(self._store.list_buckets())

        prefix = location.prefix
        entries: dict[tuple[EntryKind, str], Entry] = {}
        for page in self._store.iter_object_pages(location.bucket, prefix, delimiter):
            for common_prefix in page.prefixes:
                entry = folder_entry(common_prefix, delimiter)
                entries[(entry.kind, entry.key)] = entry
            for record in page.objects:
                # an object equal to the prefix is the folder's own marker
                if record.key == prefix:
                    continue
                entry = file_entry(record, delimiter)
                entries[(entry.kind, entry.key)] = entry
        LOGGER.debug("Listed %d entries at %s", len(entries), location)
        return sort_entries(entries.values())

    def resolve_download_targets(
        self,
        bucket: str,
        key: str,
        *,
        is_folder: bool,
        size: Optional[int] = None,
    ) -> tuple[list[TransferTarget], int]:
        return resolve_download_targets(self._store, bucket, key, is_folder=is_folder, size=size)


def sort_entries(entries) -> list[Entry]:
    return sorted(entries, key=lambda entry: (_KIND_ORDER[entry.kind], entry.key))


def last_segment(path: str, delimiter: str = DELIMITER) -> Optional[str]:
    segments = [part for part in path.strip().split(delimiter) if part]
    return segments[-1] if segments else None


def folder_entry(prefix: str, delimiter: str = DELIMITER) -> Entry:
    # A prefix made only of delimiters has no name of its own.
    return Entry(
        key=last_segment(prefix, delimiter) or delimiter,
        kind=EntryKind.FOLDER,
        full_path=prefix,
    )


def file_entry(record: ObjectRecord, delimiter: str = DELIMITER) -> Entry:
    return Entry(
        key=last_segment(record.key, delimiter) or delimiter,
        kind=EntryKind.FILE,
        size=record.size,
        etag=record.etag,
        last_modified=record.last_modified,
        storage_class=record.storage_class,
        full_path=record.key,
    )


def normalize_prefix(prefix: str) -> str:
    """Return ``prefix`` with forward slashes and a trailing ``/`` when non-empty."""

    cleaned = prefix.strip().replace("\\", "/").lstrip("/")
    if cleaned and not cleaned.endswith("/"):
        cleaned += "/"
    return cleaned


def local_download_path(current_prefix: str, dest_root: str | os.PathLike, remote_key: str) -> Path:
    """Map ``remote_key`` to a path under ``dest_root``.

    The part of the key below ``current_prefix`` is kept, so downloading
    ``a/b/c.txt`` while browsing ``a/b/`` produces ``<dest_root>/c.txt``.
    Keys outside the prefix are joined whole.
    """

    key = remote_key.replace("\\", "/")
    prefix = current_prefix.replace("\\", "/")
    if prefix and not prefix.endswith("/"):
        prefix += "/"
    relative = key[len(prefix):] if key.startswith(prefix) else key
    segments = [part for part in relative.split("/") if part and part != "."]
    if ".." in segments:
        raise ValueError(f"Key '{remote_key}' escapes the destination directory")
    return Path(dest_root).joinpath(*segments)


def remote_key_for_local_file(remote_prefix: str, relative_path: str | os.PathLike) -> str:
    relative = os.fspath(relative_path).replace(os.sep, "/").replace("\\", "/").lstrip("/")
    return f"{normalize_prefix(remote_prefix)}{relative}"


def resolve_download_targets(
    store: ObjectStore,
    bucket: str,
    key: str,
    *,
    is_folder: bool,
    size: Optional[int] = None,
) -> tuple[list[TransferTarget], int]:
    """Resolve a selection into download targets and their total size.

    A folder expands to every key under it, in listing order.
    """

    if not is_folder:
        if size is None:
            raise ValueError(f"file size is unknown for object {key}")
        return [TransferTarget(key=key, size=size)], size

    if not key.endswith("/"):
        key += "/"
    targets = [TransferTarget(key=record.key, size=record.size) for record in store.iter_objects(bucket, key)]
    return targets, sum(target.size for target in targets)


def _raise_local_error(error: OSError) -> None:
    raise LocalIOError(error.filename or "", error)


def _walk(root: str):
    for dirpath, dirnames, filenames in os.walk(root, onerror=_raise_local_error):
        dirnames.sort()
        yield dirpath, sorted(filenames)


def resolve_upload_targets(local_path: str | os.PathLike, remote_prefix: str) -> tuple[list[UploadTarget], int]:
    """Enumerate the files to upload from ``local_path``.

    A single file maps to ``<prefix><basename>``. A directory is walked in
    sorted order and each file keeps its path relative to the directory's
    parent, so the directory name itself becomes part of the key.

    Raises:
        LocalIOError: when the source cannot be read.
    """

    source = os.path.abspath(os.fspath(local_path))
    try:
        info = os.stat(source)
    except OSError as exc:
        raise LocalIOError(source, exc) from exc

    if not os.path.isdir(source):
        key = remote_key_for_local_file(remote_prefix, os.path.basename(source))
        return [UploadTarget(local_path=source, remote_key=key, size=info.st_size)], info.st_size

    base = os.path.dirname(source)
    targets: list[UploadTarget] = []
    for dirpath, filenames in _walk(source):
        for filename in filenames:
            path = os.path.join(dirpath, filename)
            try:
                size = os.stat(path).st_size
            except OSError as exc:
                raise LocalIOError(path, exc) from exc
            key = remote_key_for_local_file(remote_prefix, os.path.relpath(path, base))
            targets.append(UploadTarget(local_path=path, remote_key=key, size=size))
    return targets, sum(target.size for target in targets)


def empty_directory_markers(local_path: str | os.PathLike, remote_prefix: str) -> list[str]:
    """Return folder-marker keys for directories without files anywhere below them.

    The root itself is included when it holds no files at all.
    """

    source = os.path.abspath(os.fspath(local_path))
    if not os.path.isdir(source):
        return []

    base = os.path.dirname(source)
    directories: list[str] = []
    non_empty: set[str] = set()
    for dirpath, filenames in _walk(source):
        directories.append(dirpath)
        if not filenames:
            continue
        current = dirpath
        while current not in non_empty:
            non_empty.add(current)
            if current == source:
                break
            parent = os.path.dirname(current)
            if parent == current:
                break
            current = parent

    markers = []
    for directory in directories:
        if directory in non_empty:
            continue
        key = remote_key_for_local_file(remote_prefix, os.path.relpath(directory, base))
        markers.append(key if key.endswith("/") else f"{key}/")
    return markers
