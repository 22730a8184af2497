from __future__ import annotations
"""Session-level entry point used by a presentation layer."""

import logging
import os
from typing import Callable

from .errors import NotConnectedError, StoreError
from .models import ConnectionProfile, Entry, EntryKind, Location, ObjectDetails
from .namespace import NamespaceMapper, normalize_prefix
from .services import S3ObjectStore
from .settings import AppSettings
from .transfers import DownloadJob, JobHandle, UploadJob

StoreFactory = Callable[..., S3ObjectStore]

LOGGER = logging.getLogger(__name__)


class ExplorerController:
    """Coordinates listings, transfers and bucket management for one connection.

    Navigation state is not kept here: every call receives the
    :class:`Location` it applies to.
    """

    def __init__(
        self,
        *,
        settings: AppSettings | None = None,
        store_factory: StoreFactory | None = None,
    ):
        self._settings = settings or AppSettings()
        self._store_factory = store_factory or S3ObjectStore
        self._store: S3ObjectStore | None = None
        self._bucket_stores: dict[str, S3ObjectStore] = {}

    @property
    def is_connected(self) -> bool:
        return self._store is not None

    @property
    def settings(self) -> AppSettings:
        return self._settings

    @property
    def profile(self) -> ConnectionProfile | None:
        return self._store.profile if self._store else None

    def connect(self, profile: ConnectionProfile) -> list[Entry]:
        """Open a connection and return its buckets.

        The connection is kept only when the bucket listing succeeds.
        """

        store = self._store_factory(
            profile,
            part_size=self._settings.part_size,
            bucket_list_timeout=self._settings.bucket_list_timeout,
        )
        buckets = NamespaceMapper(store).list(Location())
        self._store = store
        self._bucket_stores = {}
        LOGGER.debug("Connected to %s (%d buckets)", profile.endpoint_url or "AWS", len(buckets))
        return buckets

    def disconnect(self) -> None:
        self._store = None
        self._bucket_stores = {}

    def refresh_buckets(self) -> list[Entry]:
        return self.list_entries(Location())

    def enter(self, location: Location, name: str) -> Location:
        """Return the location one level below ``location``.

        Entering a bucket re-targets the client at the bucket's region.
        """

        target = location.enter(name)
        if location.is_root:
            self._store_for(target.bucket)
        return target

    def list_entries(self, location: Location) -> list[Entry]:
        return NamespaceMapper(self._store_for(location.bucket)).list(location)

    def get_object_details(self, location: Location, name: str) -> ObjectDetails:
        bucket = self._require_bucket(location)
        return self._store_for(bucket).get_object_details(bucket, location.key_for(name))

    def prepare_download(
        self,
        location: Location,
        entry: Entry,
        destination: str | os.PathLike | None = None,
    ) -> DownloadJob:
        """Resolve every object behind ``entry`` into a pending download job.

        The job's ``targets`` and ``total_bytes`` are ready for confirmation
        before :meth:`start` is called.
        """

        bucket = self._require_bucket(location)
        if entry.kind is EntryKind.BUCKET:
            raise ValueError("select a file or folder to download")
        store = self._store_for(bucket)
        targets, total = NamespaceMapper(store).resolve_download_targets(
            bucket,
            entry.full_path or location.key_for(entry.key),
            is_folder=entry.kind is EntryKind.FOLDER,
            size=entry.size,
        )
        LOGGER.debug("Resolved %d download target(s), %d byte(s)", len(targets), total)
        return DownloadJob(
            store,
            bucket,
            targets,
            current_prefix=location.prefix,
            dest_root=destination or self._settings.download_dir,
            progress_interval=self._settings.progress_interval,
        )

    def prepare_upload(self, location: Location, local_path: str | os.PathLike) -> UploadJob:
        bucket = self._require_bucket(location)
        job = UploadJob(
            self._store_for(bucket),
            bucket,
            local_path,
            remote_prefix=location.prefix,
            progress_interval=self._settings.progress_interval,
        )
        return job.prepare()

    def start(self, job: DownloadJob | UploadJob) -> JobHandle:
        return JobHandle(job).start()

    def delete(self, location: Location, entry: Entry) -> int:
        """Delete a bucket, a single object or everything under a folder.

        Returns:
            The number of objects deleted (0 for buckets).
        """

        if entry.kind is EntryKind.BUCKET:
            self._require_store().delete_bucket(entry.key)
            self._bucket_stores.pop(entry.key, None)
            return 0
        bucket = self._require_bucket(location)
        key = entry.full_path or location.key_for(entry.key)
        if entry.kind is EntryKind.FOLDER:
            key = normalize_prefix(key)
        return self._store_for(bucket).delete_prefix(bucket, key)

    def create(self, location: Location, name: str, *, make_public: bool = False) -> str:
        """Create a bucket at the root, or a folder marker inside a bucket."""

        name = name.strip()
        if not name:
            raise ValueError("empty name not allowed")
        if location.is_root:
            self._require_store().create_bucket(name, make_public=make_public)
            return name
        bucket = self._require_bucket(location)
        return self._store_for(bucket).create_folder_marker(bucket, location.key_for(name.strip("/")))

    def _require_store(self) -> S3ObjectStore:
        if self._store is None:
            raise NotConnectedError("Not connected to S3")
        return self._store

    def _require_bucket(self, location: Location) -> str:
        if location.bucket is None:
            raise ValueError("no bucket selected")
        return location.bucket

    def _store_for(self, bucket: str | None) -> S3ObjectStore:
        store = self._require_store()
        if bucket is None:
            return store
        cached = self._bucket_stores.get(bucket)
        if cached is not None:
            return cached
        try:
            region = store.resolve_bucket_region(bucket)
        except StoreError as exc:
            LOGGER.warning("Could not resolve region for bucket '%s': %s", bucket, exc)
            return store
        cached = store.for_region(region)
        self._bucket_stores[bucket] = cached
        return cached
