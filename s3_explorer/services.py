from __future__ import annotations
"""Object store facade: the capabilities the engine needs from S3."""
from dataclasses import replace
import json
import logging
import threading
from typing import BinaryIO, Callable, Iterable, Iterator, Optional, Protocol

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.client import Config

from .errors import (
    STORE_EXCEPTIONS,
    StoreError,
    TransferCancelledError,
    cause_for_code,
    translate_error,
)
from .models import ConnectionProfile, Entry, EntryKind, ObjectDetails, ObjectPage, ObjectRecord

DEFAULT_PART_SIZE = 5 * 1024 * 1024
MAX_DELETE_BATCH = 1000
BUCKET_LIST_TIMEOUT = 5.0
DEFAULT_REGION = "us-east-1"

ProgressFn = Callable[[int], None]
CancelFn = Callable[[], bool]

LOGGER = logging.getLogger(__name__)


class ObjectStore(Protocol):
    """Minimal object store interface used by the mapper and transfer jobs."""

    def list_buckets(self) -> list[Entry]:
        ...

    def iter_object_pages(
        self, bucket: str, prefix: str = "", delimiter: str | None = "/"
    ) -> Iterator[ObjectPage]:
        ...

    def iter_objects(self, bucket: str, prefix: str = "") -> Iterator[ObjectRecord]:
        ...

    def download_object(
        self,
        bucket: str,
        key: str,
        fileobj: BinaryIO,
        *,
        progress_callback: Optional[ProgressFn] = None,
        cancel_requested: Optional[CancelFn] = None,
    ) -> None:
        ...

    def upload_object(
        self,
        bucket: str,
        key: str,
        fileobj: BinaryIO,
        size: int | None = None,
        *,
        progress_callback: Optional[ProgressFn] = None,
        cancel_requested: Optional[CancelFn] = None,
    ) -> None:
        ...

    def delete_objects(self, bucket: str, keys: Iterable[str]) -> int:
        ...

    def create_folder_marker(self, bucket: str, key: str) -> str:
        ...


class S3ObjectStore:
    """Wraps a boto3 S3 client behind the :class:`ObjectStore` interface.

    A single client is created per store and shared by listing and transfer
    calls; boto3 clients can be used from several threads at once.
    """

    def __init__(
        self,
        profile: ConnectionProfile,
        *,
        client_factory: Callable[..., object] | None = None,
        part_size: int = DEFAULT_PART_SIZE,
        bucket_list_timeout: float = BUCKET_LIST_TIMEOUT,
    ):
        self._profile = profile
        self._client_factory = client_factory or boto3.client
        self._part_size = max(int(part_size), DEFAULT_PART_SIZE)
        self._bucket_list_timeout = bucket_list_timeout
        self._client = self._create_client()
        self._bucket_list_client = None

    @property
    def profile(self) -> ConnectionProfile:
        return self._profile

    @property
    def region(self) -> str | None:
        return self._profile.region

    def for_region(self, region: str) -> "S3ObjectStore":
        """Return a store whose client signs requests for ``region``."""

        if region == self._profile.region:
            return self
        LOGGER.debug("Re-targeting client from region %s to %s", self._profile.region, region)
        return S3ObjectStore(
            replace(self._profile, region=region),
            client_factory=self._client_factory,
            part_size=self._part_size,
            bucket_list_timeout=self._bucket_list_timeout,
        )

    def list_buckets(self) -> list[Entry]:
        """Return the available buckets, bounded by the bucket list timeout."""

        if self._bucket_list_client is None:
            self._bucket_list_client = self._create_client(
                connect_timeout=self._bucket_list_timeout,
                read_timeout=self._bucket_list_timeout,
                retries={"total_max_attempts": 1},
            )
        try:
            response = self._bucket_list_client.list_buckets()
        except STORE_EXCEPTIONS as exc:
            raise translate_error(exc, "ListBuckets") from exc
        return [
            Entry(key=bucket["Name"], kind=EntryKind.BUCKET, last_modified=bucket.get("CreationDate"))
            for bucket in response.get("Buckets", [])
        ]

    def iter_object_pages(
        self, bucket: str, prefix: str = "", delimiter: str | None = "/"
    ) -> Iterator[ObjectPage]:
        """Yield listing pages, following continuation tokens until exhausted."""

        list_params = {"Bucket": bucket}
        if prefix:
            list_params["Prefix"] = prefix
        if delimiter:
            list_params["Delimiter"] = delimiter

        page_number = 1
        while True:
            try:
                response = self._client.list_objects_v2(**list_params)
            except STORE_EXCEPTIONS as exc:
                raise translate_error(exc, "ListObjectsV2", key=f"{bucket}/{prefix}") from exc
            yield ObjectPage(
                number=page_number,
                objects=[self._record(obj) for obj in response.get("Contents", [])],
                prefixes=[common["Prefix"] for common in response.get("CommonPrefixes", []) if common.get("Prefix")],
            )
            token = response.get("NextContinuationToken")
            if not response.get("IsTruncated", False) or not token:
                break
            list_params["ContinuationToken"] = token
            page_number += 1

    def iter_objects(self, bucket: str, prefix: str = "") -> Iterator[ObjectRecord]:
        """Yield every object under ``prefix`` without grouping by delimiter."""

        for page in self.iter_object_pages(bucket, prefix, delimiter=None):
            yield from page.objects

    def get_object_details(self, bucket: str, key: str) -> ObjectDetails:
        """Fetch metadata about a single object."""

        try:
            response = self._client.head_object(Bucket=bucket, Key=key, ChecksumMode="ENABLED")
        except STORE_EXCEPTIONS as exc:
            raise translate_error(exc, "HeadObject", key=key) from exc
        checksums = {
            "CRC32": response.get("ChecksumCRC32"),
            "CRC32C": response.get("ChecksumCRC32C"),
            "SHA1": response.get("ChecksumSHA1"),
            "SHA256": response.get("ChecksumSHA256"),
        }
        checksums = {name: value for name, value in checksums.items() if value}
        return ObjectDetails(
            bucket=bucket,
            key=key,
            size=response.get("ContentLength"),
            last_modified=response.get("LastModified"),
            storage_class=response.get("StorageClass"),
            etag=_strip_etag(response.get("ETag")),
            content_type=response.get("ContentType"),
            metadata=dict(response.get("Metadata") or {}),
            checksums=checksums,
        )

    def download_object(
        self,
        bucket: str,
        key: str,
        fileobj: BinaryIO,
        *,
        progress_callback: Optional[ProgressFn] = None,
        cancel_requested: Optional[CancelFn] = None,
    ) -> None:
        """Stream an object into a seekable binary file object.

        Ranged parts are written at their own offsets, so ``fileobj`` must
        support ``seek``. ``progress_callback`` receives the cumulative byte
        count for this object.

        Raises:
            TransferCancelledError: when ``cancel_requested`` turns true mid-stream.
            StoreError: when the store rejects or fails the transfer.
        """

        callback = self._build_transfer_callback(progress_callback, cancel_requested)
        try:
            self._client.download_fileobj(
                Bucket=bucket,
                Key=key,
                Fileobj=fileobj,
                Callback=callback,
                Config=self._transfer_config(),
            )
        except TransferCancelledError:
            raise
        except STORE_EXCEPTIONS as exc:
            raise translate_error(exc, "GetObject", key=key) from exc

    def upload_object(
        self,
        bucket: str,
        key: str,
        fileobj: BinaryIO,
        size: int | None = None,
        *,
        progress_callback: Optional[ProgressFn] = None,
        cancel_requested: Optional[CancelFn] = None,
    ) -> None:
        """Upload a binary stream; files above the part size go up as multipart.

        A cancellation raised from the progress callback fails the managed
        transfer, which aborts the multipart session for this object.
        """

        callback = self._build_transfer_callback(progress_callback, cancel_requested)
        LOGGER.debug("Uploading %s bytes to %s/%s", size if size is not None else "?", bucket, key)
        try:
            self._client.upload_fileobj(
                Fileobj=fileobj,
                Bucket=bucket,
                Key=key,
                Callback=callback,
                Config=self._transfer_config(),
                ExtraArgs={"Metadata": {"s3_explorer_upload": "true"}},
            )
        except TransferCancelledError:
            raise
        except STORE_EXCEPTIONS as exc:
            raise translate_error(exc, "PutObject", key=key) from exc

    def delete_objects(self, bucket: str, keys: Iterable[str]) -> int:
        """Delete ``keys`` in batches of at most :data:`MAX_DELETE_BATCH`.

        Batches are issued in order. The first object-level error stops the
        loop; batches already issued stay deleted.

        Returns:
            The number of keys deleted.
        """

        pending = list(keys)
        deleted = 0
        for start in range(0, len(pending), MAX_DELETE_BATCH):
            batch = pending[start:start + MAX_DELETE_BATCH]
            try:
                response = self._client.delete_objects(
                    Bucket=bucket,
                    Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
                )
            except STORE_EXCEPTIONS as exc:
                raise translate_error(exc, "DeleteObjects", key=batch[0]) from exc
            errors = (response or {}).get("Errors") or []
            if errors:
                first = errors[0]
                raise StoreError(
                    cause_for_code(str(first.get("Code", ""))),
                    "DeleteObjects",
                    first.get("Message", ""),
                    key=first.get("Key"),
                )
            deleted += len(batch)
        LOGGER.debug("Deleted %d object(s) from bucket '%s'", deleted, bucket)
        return deleted

    def delete_prefix(self, bucket: str, key: str) -> int:
        """Delete one object, or every object under ``key`` when it names a folder."""

        if not key:
            raise ValueError("key is empty")
        if key.endswith("/"):
            keys = [record.key for record in self.iter_objects(bucket, key)]
        else:
            keys = [key]
        if not keys:
            return 0
        return self.delete_objects(bucket, keys)

    def delete_bucket(self, name: str) -> None:
        try:
            self._client.delete_bucket(Bucket=name)
        except STORE_EXCEPTIONS as exc:
            raise translate_error(exc, "DeleteBucket", key=name) from exc

    def create_bucket(self, name: str, region: str | None = None, *, make_public: bool = False) -> None:
        """Create a private bucket, optionally opening it for public reads."""

        if not name:
            raise ValueError("empty bucket name not allowed")
        region = region or self._profile.region
        params: dict[str, object] = {"Bucket": name, "ACL": "private"}
        # us-east-1 does not accept a LocationConstraint
        if region and region != DEFAULT_REGION:
            params["CreateBucketConfiguration"] = {"LocationConstraint": region}
        try:
            self._client.create_bucket(**params)
        except STORE_EXCEPTIONS as exc:
            raise translate_error(exc, "CreateBucket", key=name) from exc
        if make_public:
            try:
                self._client.put_bucket_policy(Bucket=name, Policy=public_read_policy(name))
            except STORE_EXCEPTIONS as exc:
                error = translate_error(exc, "PutBucketPolicy", key=name)
                error.message = f"bucket created, but failed to make it public: {error.message}"
                raise error from exc

    def create_folder_marker(self, bucket: str, key: str) -> str:
        """Put a zero-byte object whose key ends in ``/``."""

        marker = key if key.endswith("/") else f"{key}/"
        try:
            self._client.put_object(Bucket=bucket, Key=marker, Body=b"")
        except STORE_EXCEPTIONS as exc:
            raise translate_error(exc, "PutObject", key=marker) from exc
        return marker

    def resolve_bucket_region(self, bucket: str) -> str:
        """Return the bucket's region; no constraint means us-east-1."""

        try:
            response = self._client.get_bucket_location(Bucket=bucket)
        except STORE_EXCEPTIONS as exc:
            raise translate_error(exc, "GetBucketLocation", key=bucket) from exc
        location = response.get("LocationConstraint") or DEFAULT_REGION
        if location == "EU":
            location = "eu-west-1"
        return location

    def _create_client(self, **config_overrides):
        config = Config(signature_version="s3v4", **config_overrides)
        return self._client_factory(
            "s3",
            endpoint_url=self._profile.endpoint_url or None,
            aws_access_key_id=self._profile.access_key,
            aws_secret_access_key=self._profile.secret_key,
            region_name=self._profile.region,
            verify=self._profile.verify_tls,
            config=config,
        )

    def _transfer_config(self) -> TransferConfig:
        return TransferConfig(
            multipart_threshold=self._part_size,
            multipart_chunksize=self._part_size,
        )

    @staticmethod
    def _record(obj: dict) -> ObjectRecord:
        return ObjectRecord(
            key=obj["Key"],
            size=int(obj.get("Size") or 0),
            etag=_strip_etag(obj.get("ETag")),
            last_modified=obj.get("LastModified"),
            storage_class=obj.get("StorageClass"),
        )

    def _build_transfer_callback(
        self,
        progress_callback: Optional[ProgressFn],
        cancel_requested: Optional[CancelFn],
    ):
        if not progress_callback and not cancel_requested:
            return None

        transferred = 0
        lock = threading.Lock()

        def _callback(bytes_amount: int) -> None:
            nonlocal transferred
            if cancel_requested and cancel_requested():
                raise TransferCancelledError("Transfer cancelled by user")
            with lock:
                transferred += bytes_amount
                current = transferred
            if progress_callback:
                progress_callback(current)
            if cancel_requested and cancel_requested():
                raise TransferCancelledError("Transfer cancelled by user")

        return _callback


def public_read_policy(bucket: str) -> str:
    return json.dumps(
        {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Sid": "PublicReadGetObject",
                    "Effect": "Allow",
                    "Principal": "*",
                    "Action": "s3:GetObject",
                    "Resource": f"arn:aws:s3:::{bucket}/*",
                }
            ],
        }
    )


def _strip_etag(etag: str | None) -> str | None:
    if etag is None:
        return None
    return etag.strip('"')
