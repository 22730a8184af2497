"""Command line entry point for the S3 explorer."""
import argparse
import logging
import os
import sys

from .controller import ExplorerController
from .errors import LocalIOError, NotConnectedError, StoreError
from .events import ConflictDetected, TransferCancelled, TransferCompleted, TransferFailed, TransferProgress
from .models import ConflictDecision, ConnectionProfile, Entry, EntryKind, Location
from .namespace import normalize_prefix
from .settings import SettingsStorage
from .transfers import JobHandle
from .ui_utils import describe_transfer, format_entry, format_progress, load_package_info, parse_size

LOGGER = logging.getLogger(__name__)

_DECISIONS = {
    "o": ConflictDecision.OVERWRITE,
    "s": ConflictDecision.SKIP,
    "O": ConflictDecision.OVERWRITE_ALL,
    "S": ConflictDecision.SKIP_ALL,
    "c": ConflictDecision.CANCEL,
}


def split_remote(path: str) -> tuple[Location, str]:
    """Split ``bucket/dir/name`` into the containing location and the last name."""

    cleaned = path.strip().lstrip("/")
    if cleaned.startswith("s3://"):
        cleaned = cleaned[len("s3://"):]
    bucket, _, rest = cleaned.partition("/")
    if not bucket:
        raise ValueError("a bucket name is required")
    stripped = rest.rstrip("/")
    parent, _, name = stripped.rpartition("/")
    return Location(bucket=bucket, prefix=normalize_prefix(parent)), name


def remote_location(path: str) -> Location:
    location, name = split_remote(path)
    return location.enter(name) if name else location


def find_entry(controller: ExplorerController, location: Location, name: str, *, folder: bool) -> Entry:
    matches = [entry for entry in controller.list_entries(location) if entry.key == name]
    if folder:
        matches = [entry for entry in matches if entry.kind is EntryKind.FOLDER]
    matches.sort(key=lambda entry: entry.kind is not EntryKind.FILE)
    if not matches:
        raise ValueError(f"'{location.key_for(name)}' not found in bucket '{location.bucket}'")
    return matches[0]


def ask_conflict(event: ConflictDetected) -> ConflictDecision:
    prompt = f"{event.local_path} exists. [o]verwrite, [s]kip, [O]verwrite all, [S]kip all, [c]ancel? "
    while True:
        try:
            answer = input(prompt).strip()
        except (EOFError, KeyboardInterrupt):
            return ConflictDecision.CANCEL
        if answer in _DECISIONS:
            return _DECISIONS[answer]


def follow(handle: JobHandle, *, default_decision: ConflictDecision | None = None) -> int:
    """Print job events until the job ends.

    Ctrl+C cancels the job; events are still read until the job reports how
    it stopped.
    """

    while True:
        try:
            event = handle.next_event()
        except KeyboardInterrupt:
            sys.stderr.write("\nCancelling...\n")
            handle.cancel()
            continue
        if event is None:
            break
        if isinstance(event, TransferProgress):
            sys.stderr.write(f"\r{format_progress(event)}\033[K")
            sys.stderr.flush()
        elif isinstance(event, ConflictDetected):
            sys.stderr.write("\n")
            handle.resolve_conflict(default_decision or ask_conflict(event))
        elif isinstance(event, TransferCompleted):
            sys.stderr.write(f"\nDone: {event.count} item(s)\n")
        elif isinstance(event, TransferCancelled):
            sys.stderr.write("\nCancelled.\n")
            return 130
        elif isinstance(event, TransferFailed):
            sys.stderr.write(f"\nerror: {event.message}\n")
            return 1
    return 0


def _print_entries(entries: list[Entry]) -> None:
    for entry in entries:
        print(format_entry(entry))


def _command_buckets(controller: ExplorerController, args) -> int:
    _print_entries(controller.refresh_buckets())
    return 0


def _command_ls(controller: ExplorerController, args) -> int:
    _print_entries(controller.list_entries(remote_location(args.path)))
    return 0


def _command_stat(controller: ExplorerController, args) -> int:
    location, name = split_remote(args.path)
    details = controller.get_object_details(location, name)
    print(f"Key:           {details.key}")
    print(f"Size:          {details.size}")
    print(f"Last modified: {details.last_modified}")
    print(f"Storage class: {details.storage_class or '-'}")
    print(f"ETag:          {details.etag or '-'}")
    print(f"Content type:  {details.content_type or '-'}")
    for name, value in sorted(details.metadata.items()):
        print(f"Metadata {name}: {value}")
    for name, value in sorted(details.checksums.items()):
        print(f"Checksum {name}: {value}")
    return 0


def _command_get(controller: ExplorerController, args) -> int:
    location, name = split_remote(args.path)
    if not name:
        raise ValueError("select a file or folder to download")
    entry = find_entry(controller, location, name, folder=args.path.endswith("/"))
    job = controller.prepare_download(location, entry, args.destination)
    destination = args.destination or controller.settings.download_dir
    print(describe_transfer("Download", len(job.targets), job.total_bytes, destination), file=sys.stderr)
    if not job.targets:
        return 0
    default = None
    if args.overwrite:
        default = ConflictDecision.OVERWRITE_ALL
    elif args.skip_existing:
        default = ConflictDecision.SKIP_ALL
    return follow(controller.start(job), default_decision=default)


def _command_put(controller: ExplorerController, args) -> int:
    location = remote_location(args.path)
    job = controller.prepare_upload(location, args.source)
    print(
        describe_transfer("Upload", len(job.targets), job.total_bytes, f"{location.bucket}/{location.prefix}"),
        file=sys.stderr,
    )
    return follow(controller.start(job))


def _command_rm(controller: ExplorerController, args) -> int:
    location, name = split_remote(args.path)
    if not name:
        entry = Entry(key=location.bucket, kind=EntryKind.BUCKET)
        location = Location()
    else:
        entry = find_entry(controller, location, name, folder=args.path.endswith("/"))
    deleted = controller.delete(location, entry)
    print(f"Deleted {deleted} object(s)" if entry.kind is not EntryKind.BUCKET else f"Deleted bucket {entry.key}")
    return 0


def _command_mb(controller: ExplorerController, args) -> int:
    print(f"Created bucket {controller.create(Location(), args.bucket, make_public=args.public)}")
    return 0


def _command_mkdir(controller: ExplorerController, args) -> int:
    location, name = split_remote(args.path)
    if not name:
        raise ValueError("a folder name is required")
    print(f"Created {controller.create(location, name)}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    info = load_package_info()
    parser = argparse.ArgumentParser(prog="s3-explorer", description=info.summary)
    parser.add_argument("--version", action="version", version=f"%(prog)s {info.version or 'dev'}")
    parser.add_argument(
        "--endpoint-url",
        default=os.environ.get("S3_EXPLORER_ENDPOINT_URL") or os.environ.get("AWS_ENDPOINT_URL", ""),
    )
    parser.add_argument("--access-key", default=os.environ.get("AWS_ACCESS_KEY_ID", ""))
    parser.add_argument("--secret-key", default=os.environ.get("AWS_SECRET_ACCESS_KEY", ""))
    parser.add_argument("--region", default=os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION"))
    parser.add_argument("--no-verify-tls", action="store_true", help="skip TLS certificate verification")
    parser.add_argument("--part-size", type=parse_size, help="multipart part size, e.g. 8MB")
    parser.add_argument("--settings", help="path to the settings JSON file")
    parser.add_argument("-v", "--verbose", action="store_true")

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("buckets", help="list buckets").set_defaults(handler=_command_buckets)

    ls = commands.add_parser("ls", help="list a bucket or folder")
    ls.add_argument("path", help="bucket[/prefix/]")
    ls.set_defaults(handler=_command_ls)

    stat = commands.add_parser("stat", help="show object properties")
    stat.add_argument("path", help="bucket/key")
    stat.set_defaults(handler=_command_stat)

    get = commands.add_parser("get", help="download a file or folder")
    get.add_argument("path", help="bucket/key or bucket/folder/")
    get.add_argument("destination", nargs="?", help="local directory (defaults to the download dir)")
    existing = get.add_mutually_exclusive_group()
    existing.add_argument("--overwrite", action="store_true", help="overwrite existing files")
    existing.add_argument("--skip-existing", action="store_true", help="keep existing files")
    get.set_defaults(handler=_command_get)

    put = commands.add_parser("put", help="upload a file or directory")
    put.add_argument("source")
    put.add_argument("path", help="bucket[/prefix/]")
    put.set_defaults(handler=_command_put)

    rm = commands.add_parser("rm", help="delete a bucket, object or folder")
    rm.add_argument("path")
    rm.set_defaults(handler=_command_rm)

    mb = commands.add_parser("mb", help="create a bucket")
    mb.add_argument("bucket")
    mb.add_argument("--public", action="store_true", help="allow anonymous reads")
    mb.set_defaults(handler=_command_mb)

    mkdir = commands.add_parser("mkdir", help="create a folder marker")
    mkdir.add_argument("path", help="bucket/prefix/name")
    mkdir.set_defaults(handler=_command_mkdir)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = SettingsStorage(args.settings).load()
    if args.part_size:
        settings.part_size = args.part_size
    profile = ConnectionProfile(
        name="cli",
        endpoint_url=args.endpoint_url,
        access_key=args.access_key,
        secret_key=args.secret_key,
        region=args.region,
        verify_tls=settings.verify_tls and not args.no_verify_tls,
    )
    controller = ExplorerController(settings=settings)
    try:
        controller.connect(profile)
        return args.handler(controller, args)
    except (StoreError, LocalIOError, NotConnectedError, ValueError) as exc:
        LOGGER.debug("Command '%s' failed", args.command, exc_info=True)
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
