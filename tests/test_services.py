import io
import json
import unittest
from datetime import datetime

from botocore.exceptions import ClientError, EndpointConnectionError, ReadTimeoutError
from s3transfer.exceptions import RetriesExceededError, S3UploadFailedError

from s3_explorer.errors import StoreError, StoreErrorCause, TransferCancelledError, translate_error
from s3_explorer.models import ConnectionProfile, EntryKind
from s3_explorer.services import DEFAULT_PART_SIZE, S3ObjectStore


class FakeS3Client:
    def __init__(
        self,
        buckets=None,
        object_responses=None,
        objects=None,
        download_errors=None,
        upload_errors=None,
        delete_responses=None,
        transfer_sequences=None,
        bucket_locations=None,
        policy_error=None,
    ):
        self.buckets = buckets or []
        self.object_responses = {name: iter(responses) for name, responses in (object_responses or {}).items()}
        self.objects = objects or {}
        self.list_objects_kwargs = []
        self.download_calls = []
        self.download_errors = download_errors or {}
        self.upload_calls = []
        self.upload_configs = []
        self.uploaded = {}
        self.upload_errors = upload_errors or {}
        self.delete_calls = []
        self.delete_responses = delete_responses or []
        self.transfer_sequences = transfer_sequences or {}
        self.bucket_locations = bucket_locations or {}
        self.create_bucket_calls = []
        self.policy_calls = []
        self.policy_error = policy_error
        self.put_object_calls = []
        self.head_object_calls = []

    def list_buckets(self):
        return {
            "Buckets": [{"Name": name, "CreationDate": datetime(2024, 1, 1)} for name in self.buckets]
        }

    def list_objects_v2(self, **kwargs):
        self.list_objects_kwargs.append(kwargs)
        response = next(self.object_responses[kwargs["Bucket"]])
        if isinstance(response, Exception):
            raise response
        return response

    def head_object(self, **kwargs):
        self.head_object_calls.append(kwargs)
        return {
            "ContentLength": 3,
            "ETag": '"abc"',
            "ContentType": "text/plain",
            "Metadata": {"owner": "me"},
            "ChecksumSHA256": "sum",
        }

    def download_fileobj(self, Bucket, Key, Fileobj, ExtraArgs=None, Callback=None, Config=None):
        self.download_calls.append((Bucket, Key, Config))
        error = self.download_errors.get((Bucket, Key))
        if isinstance(error, Exception):
            raise error
        data = self.objects.get((Bucket, Key), b"")
        for amount in self.transfer_sequences.get(("download", Bucket, Key), [len(data)]):
            chunk, data = data[:amount], data[amount:]
            Fileobj.write(chunk)
            if Callback:
                Callback(amount)

    def upload_fileobj(self, Fileobj, Bucket, Key, ExtraArgs=None, Callback=None, Config=None):
        self.upload_calls.append((Bucket, Key, ExtraArgs))
        self.upload_configs.append(Config)
        error = self.upload_errors.get((Bucket, Key))
        if isinstance(error, Exception):
            raise error
        data = Fileobj.read()
        for amount in self.transfer_sequences.get(("upload", Bucket, Key), [len(data)]):
            if Callback:
                Callback(amount)
        self.uploaded[(Bucket, Key)] = data

    def delete_objects(self, **kwargs):
        self.delete_calls.append(kwargs)
        index = len(self.delete_calls) - 1
        if index < len(self.delete_responses):
            return self.delete_responses[index]
        return {}

    def delete_bucket(self, **kwargs):
        pass

    def create_bucket(self, **kwargs):
        self.create_bucket_calls.append(kwargs)

    def put_bucket_policy(self, **kwargs):
        self.policy_calls.append(kwargs)
        if self.policy_error:
            raise self.policy_error

    def put_object(self, **kwargs):
        self.put_object_calls.append(kwargs)

    def get_bucket_location(self, **kwargs):
        return {"LocationConstraint": self.bucket_locations.get(kwargs["Bucket"])}


class RecordingFactory:
    def __init__(self, client):
        self.client = client
        self.calls = []

    def __call__(self, service_name, **kwargs):
        self.calls.append((service_name, kwargs))
        return self.client


def make_store(client, **kwargs):
    profile = ConnectionProfile(
        name="test",
        endpoint_url="https://example.com",
        access_key="access",
        secret_key="secret",
        verify_tls=False,
    )
    factory = RecordingFactory(client)
    return S3ObjectStore(profile, client_factory=factory, **kwargs), factory


def access_denied(operation="ListObjectsV2"):
    return ClientError({"Error": {"Code": "AccessDenied", "Message": "Denied"}}, operation)


class S3ObjectStoreTests(unittest.TestCase):
    def test_creates_client_from_profile(self):
        store, factory = make_store(FakeS3Client())

        self.assertEqual(1, len(factory.calls))
        service_name, kwargs = factory.calls[0]
        self.assertEqual("s3", service_name)
        self.assertEqual("https://example.com", kwargs["endpoint_url"])
        self.assertEqual("access", kwargs["aws_access_key_id"])
        self.assertEqual("secret", kwargs["aws_secret_access_key"])
        self.assertFalse(kwargs["verify"])
        self.assertIsNone(kwargs["region_name"])
        self.assertEqual("s3v4", kwargs["config"].signature_version)

    def test_list_buckets_uses_bounded_timeout(self):
        store, factory = make_store(FakeS3Client(buckets=["beta", "alpha"]), bucket_list_timeout=5.0)

        buckets = store.list_buckets()

        self.assertEqual(["beta", "alpha"], [bucket.key for bucket in buckets])
        self.assertTrue(all(bucket.kind is EntryKind.BUCKET for bucket in buckets))
        self.assertIsNone(buckets[0].full_path)
        self.assertEqual(2, len(factory.calls))
        config = factory.calls[1][1]["config"]
        self.assertEqual(5.0, config.connect_timeout)
        self.assertEqual(5.0, config.read_timeout)

    def test_iter_object_pages_follows_continuation_tokens(self):
        client = FakeS3Client(
            object_responses={
                "bucket": [
                    {
                        "Contents": [{"Key": "a/1.txt", "Size": 1, "ETag": '"e1"'}],
                        "CommonPrefixes": [{"Prefix": "a/sub/"}],
                        "IsTruncated": True,
                        "NextContinuationToken": "token-1",
                    },
                    {"Contents": [{"Key": "a/2.txt", "Size": 2}], "IsTruncated": False},
                ]
            }
        )
        store, _ = make_store(client)

        pages = list(store.iter_object_pages("bucket", "a/"))

        self.assertEqual([1, 2], [page.number for page in pages])
        self.assertEqual(["a/sub/"], pages[0].prefixes)
        self.assertEqual("e1", pages[0].objects[0].etag)
        self.assertEqual(["a/2.txt"], [record.key for record in pages[1].objects])
        self.assertNotIn("ContinuationToken", client.list_objects_kwargs[0])
        self.assertEqual("token-1", client.list_objects_kwargs[1]["ContinuationToken"])
        self.assertEqual("/", client.list_objects_kwargs[0]["Delimiter"])
        self.assertEqual("a/", client.list_objects_kwargs[0]["Prefix"])

    def test_iter_objects_lists_without_delimiter(self):
        client = FakeS3Client(
            object_responses={"bucket": [{"Contents": [{"Key": "a/b/c.txt", "Size": 4}], "IsTruncated": False}]}
        )
        store, _ = make_store(client)

        records = list(store.iter_objects("bucket", "a/"))

        self.assertEqual(["a/b/c.txt"], [record.key for record in records])
        self.assertNotIn("Delimiter", client.list_objects_kwargs[0])

    def test_listing_errors_are_translated(self):
        client = FakeS3Client(object_responses={"bucket": [access_denied()]})
        store, _ = make_store(client)

        with self.assertRaises(StoreError) as ctx:
            list(store.iter_object_pages("bucket"))

        self.assertIs(StoreErrorCause.ACCESS_DENIED, ctx.exception.cause)
        self.assertEqual("ListObjectsV2", ctx.exception.operation)

    def test_download_object_writes_stream_and_reports_cumulative_progress(self):
        client = FakeS3Client(
            objects={("bucket", "a.txt"): b"x" * 10},
            transfer_sequences={("download", "bucket", "a.txt"): [4, 4, 2]},
        )
        store, _ = make_store(client)
        buffer = io.BytesIO()
        reported = []

        store.download_object("bucket", "a.txt", buffer, progress_callback=reported.append)

        self.assertEqual(b"x" * 10, buffer.getvalue())
        self.assertEqual([4, 8, 10], reported)
        config = client.download_calls[0][2]
        self.assertEqual(DEFAULT_PART_SIZE, config.multipart_chunksize)

    def test_download_object_supports_cancel(self):
        client = FakeS3Client(
            objects={("bucket", "a.txt"): b"x" * 10},
            transfer_sequences={("download", "bucket", "a.txt"): [4, 4, 2]},
        )
        store, _ = make_store(client)
        reported = []

        with self.assertRaises(TransferCancelledError):
            store.download_object(
                "bucket",
                "a.txt",
                io.BytesIO(),
                progress_callback=reported.append,
                cancel_requested=lambda: len(reported) >= 2,
            )

        self.assertEqual([4, 8], reported)

    def test_download_object_translates_missing_key(self):
        missing = ClientError({"Error": {"Code": "NoSuchKey", "Message": "gone"}}, "GetObject")
        client = FakeS3Client(download_errors={("bucket", "a.txt"): missing})
        store, _ = make_store(client)

        with self.assertRaises(StoreError) as ctx:
            store.download_object("bucket", "a.txt", io.BytesIO())

        self.assertIs(StoreErrorCause.NOT_FOUND, ctx.exception.cause)
        self.assertEqual("a.txt", ctx.exception.key)

    def test_download_object_translates_exhausted_stream_retries(self):
        dropped = RetriesExceededError(ConnectionResetError("connection reset by peer"))
        client = FakeS3Client(download_errors={("bucket", "a.txt"): dropped})
        store, _ = make_store(client)

        with self.assertRaises(StoreError) as ctx:
            store.download_object("bucket", "a.txt", io.BytesIO())

        self.assertIs(StoreErrorCause.NETWORK, ctx.exception.cause)
        self.assertEqual("GetObject", ctx.exception.operation)
        self.assertIs(dropped, ctx.exception.__cause__)

    def test_upload_object_translates_failed_multipart_upload(self):
        client = FakeS3Client(upload_errors={("bucket", "a.txt"): S3UploadFailedError("part 2 failed")})
        store, _ = make_store(client)

        with self.assertRaises(StoreError) as ctx:
            store.upload_object("bucket", "a.txt", io.BytesIO(b"abc"), 3)

        self.assertIs(StoreErrorCause.UNKNOWN, ctx.exception.cause)
        self.assertEqual("a.txt", ctx.exception.key)

    def test_upload_object_uses_part_size_and_reports_progress(self):
        client = FakeS3Client(transfer_sequences={("upload", "bucket", "dir/a.txt"): [3, 3]})
        store, _ = make_store(client, part_size=8 * 1024 * 1024)
        reported = []

        store.upload_object("bucket", "dir/a.txt", io.BytesIO(b"abcdef"), 6, progress_callback=reported.append)

        self.assertEqual(b"abcdef", client.uploaded[("bucket", "dir/a.txt")])
        self.assertEqual([3, 6], reported)
        config = client.upload_configs[0]
        self.assertEqual(8 * 1024 * 1024, config.multipart_threshold)
        self.assertEqual(8 * 1024 * 1024, config.multipart_chunksize)

    def test_part_size_never_drops_below_store_minimum(self):
        client = FakeS3Client()
        store, _ = make_store(client, part_size=1024)

        store.upload_object("bucket", "a.txt", io.BytesIO(b"a"), 1)

        self.assertEqual(DEFAULT_PART_SIZE, client.upload_configs[0].multipart_chunksize)

    def test_upload_object_supports_cancel(self):
        client = FakeS3Client(transfer_sequences={("upload", "bucket", "a.txt"): [1, 1]})
        store, _ = make_store(client)
        cancel_flag = {"value": False}

        def progress(total):
            cancel_flag["value"] = True

        with self.assertRaises(TransferCancelledError):
            store.upload_object(
                "bucket",
                "a.txt",
                io.BytesIO(b"ab"),
                2,
                progress_callback=progress,
                cancel_requested=lambda: cancel_flag["value"],
            )

    def test_delete_objects_issues_batches_of_one_thousand(self):
        client = FakeS3Client()
        store, _ = make_store(client)
        keys = [f"key-{index:04d}" for index in range(2500)]

        deleted = store.delete_objects("bucket", keys)

        self.assertEqual(2500, deleted)
        self.assertEqual([1000, 1000, 500], [len(call["Delete"]["Objects"]) for call in client.delete_calls])
        self.assertTrue(all(call["Delete"]["Quiet"] for call in client.delete_calls))
        self.assertEqual("key-2000", client.delete_calls[2]["Delete"]["Objects"][0]["Key"])

    def test_delete_objects_stops_at_first_object_error(self):
        client = FakeS3Client(
            delete_responses=[
                {},
                {
                    "Errors": [
                        {"Key": "key-1500", "Code": "AccessDenied", "Message": "Denied"},
                        {"Key": "key-1501", "Code": "AccessDenied", "Message": "Denied"},
                    ]
                },
            ]
        )
        store, _ = make_store(client)
        keys = [f"key-{index:04d}" for index in range(2500)]

        with self.assertRaises(StoreError) as ctx:
            store.delete_objects("bucket", keys)

        self.assertEqual(2, len(client.delete_calls))
        self.assertEqual("key-1500", ctx.exception.key)
        self.assertIs(StoreErrorCause.ACCESS_DENIED, ctx.exception.cause)
        self.assertIn("key-1500", str(ctx.exception))

    def test_delete_prefix_resolves_folder_contents(self):
        client = FakeS3Client(
            object_responses={
                "bucket": [
                    {
                        "Contents": [{"Key": "dir/"}, {"Key": "dir/a.txt"}, {"Key": "dir/sub/b.txt"}],
                        "IsTruncated": False,
                    }
                ]
            }
        )
        store, _ = make_store(client)

        deleted = store.delete_prefix("bucket", "dir/")

        self.assertEqual(3, deleted)
        keys = [item["Key"] for item in client.delete_calls[0]["Delete"]["Objects"]]
        self.assertEqual(["dir/", "dir/a.txt", "dir/sub/b.txt"], keys)

    def test_delete_prefix_with_single_key_skips_listing(self):
        client = FakeS3Client()
        store, _ = make_store(client)

        store.delete_prefix("bucket", "file.txt")

        self.assertEqual([], client.list_objects_kwargs)
        self.assertEqual([{"Key": "file.txt"}], client.delete_calls[0]["Delete"]["Objects"])

    def test_create_bucket_omits_location_for_us_east_1(self):
        client = FakeS3Client()
        store, _ = make_store(client)

        store.create_bucket("new-bucket", "us-east-1")
        store.create_bucket("eu-bucket", "eu-central-1")

        self.assertEqual({"Bucket": "new-bucket", "ACL": "private"}, client.create_bucket_calls[0])
        self.assertEqual(
            {"LocationConstraint": "eu-central-1"},
            client.create_bucket_calls[1]["CreateBucketConfiguration"],
        )
        self.assertEqual([], client.policy_calls)

    def test_create_public_bucket_reports_policy_failure(self):
        client = FakeS3Client(policy_error=access_denied("PutBucketPolicy"))
        store, _ = make_store(client)

        with self.assertRaises(StoreError) as ctx:
            store.create_bucket("site", make_public=True)

        self.assertEqual(1, len(client.create_bucket_calls))
        self.assertEqual("PutBucketPolicy", ctx.exception.operation)
        self.assertIn("bucket created", str(ctx.exception))
        policy = json.loads(client.policy_calls[0]["Policy"])
        self.assertEqual("arn:aws:s3:::site/*", policy["Statement"][0]["Resource"])

    def test_create_folder_marker_puts_empty_object(self):
        client = FakeS3Client()
        store, _ = make_store(client)

        key = store.create_folder_marker("bucket", "a/new")

        self.assertEqual("a/new/", key)
        self.assertEqual([{"Bucket": "bucket", "Key": "a/new/", "Body": b""}], client.put_object_calls)

    def test_resolve_bucket_region_defaults_to_us_east_1(self):
        client = FakeS3Client(bucket_locations={"legacy": "EU", "tokyo": "ap-northeast-1"})
        store, _ = make_store(client)

        self.assertEqual("us-east-1", store.resolve_bucket_region("plain"))
        self.assertEqual("eu-west-1", store.resolve_bucket_region("legacy"))
        self.assertEqual("ap-northeast-1", store.resolve_bucket_region("tokyo"))

    def test_for_region_builds_retargeted_client(self):
        store, factory = make_store(FakeS3Client())

        regional = store.for_region("eu-west-2")

        self.assertIsNot(store, regional)
        self.assertEqual("eu-west-2", regional.region)
        self.assertEqual("eu-west-2", factory.calls[-1][1]["region_name"])
        self.assertIs(regional, regional.for_region("eu-west-2"))

    def test_get_object_details_strips_etag(self):
        client = FakeS3Client()
        store, _ = make_store(client)

        details = store.get_object_details("bucket", "a.txt")

        self.assertEqual("abc", details.etag)
        self.assertEqual({"owner": "me"}, details.metadata)
        self.assertEqual({"SHA256": "sum"}, details.checksums)
        self.assertEqual("ENABLED", client.head_object_calls[0]["ChecksumMode"])


class TranslateErrorTests(unittest.TestCase):
    def test_timeouts_and_network_errors(self):
        timeout = translate_error(ReadTimeoutError(endpoint_url="https://example.com"), "ListBuckets")
        network = translate_error(EndpointConnectionError(endpoint_url="https://example.com"), "ListBuckets")

        self.assertIs(StoreErrorCause.TIMEOUT, timeout.cause)
        self.assertIs(StoreErrorCause.NETWORK, network.cause)

    def test_unknown_client_codes(self):
        error = translate_error(
            ClientError({"Error": {"Code": "Weird", "Message": "odd"}}, "GetObject"),
            "GetObject",
            key="a.txt",
        )

        self.assertIs(StoreErrorCause.UNKNOWN, error.cause)
        self.assertEqual("GetObject failed for a.txt (unknown): odd", str(error))


if __name__ == "__main__":
    unittest.main()
