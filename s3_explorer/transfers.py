from __future__ import annotations
"""Download and upload jobs with progress, conflicts and cancellation.

A job's :meth:`~TransferJob.run` is a generator. It yields
:mod:`~s3_explorer.events` objects and, on a :class:`ConflictDetected`,
suspends until a :class:`ConflictDecision` is sent back in. The same job can
be driven inline with :func:`iter_events` or on a background thread through
:class:`JobHandle`.
"""
from abc import ABC, abstractmethod
import logging
import os
import queue
import threading
import time
from pathlib import Path
from typing import Callable, Generator, Iterator, Optional

from .conflicts import ConflictAction, ConflictPolicy
from .errors import LocalIOError, StoreError, TransferCancelledError
from .events import (
    ConflictDetected,
    TransferCancelled,
    TransferCompleted,
    TransferEvent,
    TransferFailed,
    TransferProgress,
)
from .models import ConflictDecision, JobState, TransferTarget, UploadTarget
from .namespace import empty_directory_markers, local_download_path, resolve_upload_targets
from .services import ObjectStore

PROGRESS_INTERVAL = 0.1

JobGenerator = Generator[TransferEvent, Optional[ConflictDecision], None]
DecideFn = Callable[[ConflictDetected], ConflictDecision]

LOGGER = logging.getLogger(__name__)


class _Throttle:
    def __init__(self, interval: float, clock: Callable[[], float]):
        self._interval = interval
        self._clock = clock
        self._last: float | None = None

    def ready(self) -> bool:
        now = self._clock()
        if self._last is not None and now - self._last < self._interval:
            return False
        self._last = now
        return True


class TransferJob(ABC):
    """State shared by download and upload jobs.

    Counters and state are written only by the thread running :meth:`run`;
    other threads may read them.
    """

    def __init__(
        self,
        store: ObjectStore,
        bucket: str,
        *,
        progress_interval: float = PROGRESS_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._bucket = bucket
        self._cancel = threading.Event()
        self._throttle = _Throttle(progress_interval, clock)
        self._lock = threading.Lock()
        self.state = JobState.PENDING
        self.total_bytes = 0
        self.transferred_bytes = 0
        self.current_key: str | None = None
        self.progress_sink: Callable[[TransferEvent], None] | None = None

    @property
    def bucket(self) -> str:
        return self._bucket

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        self._cancel.set()

    @abstractmethod
    def run(self) -> JobGenerator:
        """Yield the job's events; a conflict waits for a sent decision."""

    def _start(self) -> None:
        if self.state is not JobState.PENDING:
            raise RuntimeError(f"job already {self.state.value}")
        self.state = JobState.RUNNING

    def _progress_callback(self, start: int, make_event: Callable[[int], TransferProgress]):
        def _on_bytes(written: int) -> None:
            with self._lock:
                # retried parts can report negative amounts; keep the total monotonic
                self.transferred_bytes = max(self.transferred_bytes, start + written)
                if self.progress_sink is None or not self._throttle.ready():
                    return
                # emitted under the lock so events from parallel part workers stay ordered
                self.progress_sink(make_event(self.transferred_bytes))

        return _on_bytes

    def _finish_target(self, start: int, size: int) -> None:
        with self._lock:
            self.transferred_bytes = max(self.transferred_bytes, start + size)

    def _cancelled(self, key: str | None) -> TransferCancelled:
        self.state = JobState.CANCELLED
        LOGGER.warning("Transfer cancelled at %s after %d byte(s)", key or "start", self.transferred_bytes)
        return TransferCancelled(transferred=self.transferred_bytes, key=key)

    def _failed(self, key: str, error: Exception) -> TransferFailed:
        self.state = JobState.FAILED
        LOGGER.error("Transfer failed for %s: %s", key, error)
        return TransferFailed(key=key, error=error)

    def _completed(self, count: int) -> TransferCompleted:
        self.state = JobState.COMPLETED
        LOGGER.debug("Transfer completed: %d item(s), %d byte(s)", count, self.transferred_bytes)
        return TransferCompleted(transferred=self.transferred_bytes, count=count)


class DownloadJob(TransferJob):
    """Downloads resolved targets one at a time below ``dest_root``."""

    def __init__(
        self,
        store: ObjectStore,
        bucket: str,
        targets: list[TransferTarget],
        *,
        current_prefix: str,
        dest_root: str | os.PathLike,
        policy: ConflictPolicy | None = None,
        progress_interval: float = PROGRESS_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(store, bucket, progress_interval=progress_interval, clock=clock)
        self.targets = list(targets)
        self.total_bytes = sum(target.size for target in self.targets)
        self._current_prefix = current_prefix
        self._dest_root = dest_root
        self._policy = policy or ConflictPolicy()

    @property
    def policy(self) -> ConflictPolicy:
        return self._policy

    def run(self) -> JobGenerator:
        self._start()
        count = len(self.targets)
        LOGGER.debug("Downloading %d object(s), %d byte(s) from '%s'", count, self.total_bytes, self._bucket)
        for index, target in enumerate(self.targets, start=1):
            if self.cancel_requested:
                yield self._cancelled(target.key)
                return
            self.current_key = target.key
            try:
                destination = local_download_path(self._current_prefix, self._dest_root, target.key)
            except ValueError as exc:
                yield self._failed(target.key, exc)
                return

            if target.is_folder_marker:
                try:
                    destination.mkdir(parents=True, exist_ok=True)
                except OSError as exc:
                    yield self._failed(target.key, LocalIOError(str(destination), exc))
                    return
                continue

            try:
                destination.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                yield self._failed(target.key, LocalIOError(str(destination.parent), exc))
                return

            handle = None
            while handle is None:
                try:
                    handle = open(destination, "xb")
                except FileExistsError:
                    if self._policy.needs_decision:
                        decision = yield ConflictDetected(key=target.key, local_path=str(destination))
                        if not isinstance(decision, ConflictDecision):
                            yield self._failed(target.key, ValueError("no conflict decision supplied"))
                            return
                        action = self._policy.apply(decision)
                    else:
                        action = self._policy.automatic_action()
                    if action is ConflictAction.CANCEL:
                        yield self._cancelled(target.key)
                        return
                    if action is ConflictAction.SKIP:
                        LOGGER.info("Skipping existing file %s", destination)
                        break
                    try:
                        destination.unlink()
                    except FileNotFoundError:
                        pass
                    except OSError as exc:
                        yield self._failed(target.key, LocalIOError(str(destination), exc))
                        return
                except OSError as exc:
                    yield self._failed(target.key, LocalIOError(str(destination), exc))
                    return
            if handle is None:
                continue

            start = self.transferred_bytes
            callback = self._progress_callback(
                start,
                lambda transferred, key=target.key, index=index: TransferProgress(
                    transferred=transferred,
                    total=self.total_bytes,
                    key=key,
                    index=index,
                    count=count,
                    local_path=str(destination),
                ),
            )
            try:
                with handle:
                    self._store.download_object(
                        self._bucket,
                        target.key,
                        handle,
                        progress_callback=callback,
                        cancel_requested=self._cancel.is_set,
                    )
            except TransferCancelledError:
                _remove_partial(destination)
                yield self._cancelled(target.key)
                return
            except StoreError as exc:
                _remove_partial(destination)
                yield self._failed(target.key, exc)
                return
            except OSError as exc:
                _remove_partial(destination)
                yield self._failed(target.key, LocalIOError(str(destination), exc))
                return

            self._finish_target(start, target.size)
            yield TransferProgress(
                transferred=self.transferred_bytes,
                total=self.total_bytes,
                key=target.key,
                index=index,
                count=count,
                local_path=str(destination),
            )

        yield self._completed(count)


class UploadJob(TransferJob):
    """Uploads a local file or directory tree below ``remote_prefix``."""

    def __init__(
        self,
        store: ObjectStore,
        bucket: str,
        local_path: str | os.PathLike,
        *,
        remote_prefix: str,
        progress_interval: float = PROGRESS_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(store, bucket, progress_interval=progress_interval, clock=clock)
        self.local_path = os.fspath(local_path)
        self.remote_prefix = remote_prefix
        self.targets: list[UploadTarget] = []
        self.folder_markers: list[str] = []
        self._prepared = False

    def prepare(self) -> "UploadJob":
        """Enumerate files, sizes and empty-folder markers before the job starts.

        Raises:
            LocalIOError: when the source cannot be read.
        """

        self.targets, self.total_bytes = resolve_upload_targets(self.local_path, self.remote_prefix)
        self.folder_markers = empty_directory_markers(self.local_path, self.remote_prefix)
        self._prepared = True
        return self

    def run(self) -> JobGenerator:
        self._start()
        if not self._prepared:
            try:
                self.prepare()
            except LocalIOError as exc:
                yield self._failed(exc.path or self.local_path, exc)
                return

        for marker in self.folder_markers:
            if self.cancel_requested:
                yield self._cancelled(marker)
                return
            try:
                self._store.create_folder_marker(self._bucket, marker)
            except StoreError as exc:
                yield self._failed(marker, exc)
                return

        count = len(self.targets)
        LOGGER.debug("Uploading %d file(s), %d byte(s) to '%s'", count, self.total_bytes, self._bucket)
        for index, target in enumerate(self.targets, start=1):
            if self.cancel_requested:
                yield self._cancelled(target.remote_key)
                return
            self.current_key = target.remote_key
            start = self.transferred_bytes
            callback = self._progress_callback(
                start,
                lambda transferred, target=target, index=index: TransferProgress(
                    transferred=transferred,
                    total=self.total_bytes,
                    key=target.remote_key,
                    index=index,
                    count=count,
                    local_path=target.local_path,
                ),
            )
            try:
                with open(target.local_path, "rb") as handle:
                    self._store.upload_object(
                        self._bucket,
                        target.remote_key,
                        handle,
                        target.size,
                        progress_callback=callback,
                        cancel_requested=self._cancel.is_set,
                    )
            except TransferCancelledError:
                yield self._cancelled(target.remote_key)
                return
            except StoreError as exc:
                yield self._failed(target.local_path, exc)
                return
            except OSError as exc:
                yield self._failed(target.local_path, LocalIOError(target.local_path, exc))
                return

            self._finish_target(start, target.size)
            yield TransferProgress(
                transferred=self.transferred_bytes,
                total=self.total_bytes,
                key=target.remote_key,
                index=index,
                count=count,
                local_path=target.local_path,
            )

        yield self._completed(count)


def _remove_partial(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError:
        LOGGER.exception("Could not remove partial download %s", path)


def iter_events(job: TransferJob, decide: DecideFn) -> Iterator[TransferEvent]:
    """Drive ``job`` on the calling thread, answering conflicts with ``decide``.

    Throttled progress reported while an object streams is yielded ahead of
    the event that ends the step.
    """

    streamed: list[TransferEvent] = []
    job.progress_sink = streamed.append
    generator = job.run()
    try:
        event = next(generator)
        while True:
            while streamed:
                yield streamed.pop(0)
            yield event
            if isinstance(event, ConflictDetected):
                event = generator.send(decide(event))
            else:
                event = next(generator)
    except StopIteration:
        return
    finally:
        job.progress_sink = None


_DONE = object()


class JobHandle:
    """Runs a job on a daemon thread and streams its events to the caller."""

    def __init__(self, job: TransferJob, *, decision_poll_interval: float = 0.1):
        self._job = job
        self._events: queue.Queue = queue.Queue()
        self._decisions: queue.Queue = queue.Queue()
        self._poll_interval = decision_poll_interval
        self._finished = False
        self._thread = threading.Thread(target=self._run, name="s3-explorer-transfer", daemon=True)

    @property
    def job(self) -> TransferJob:
        return self._job

    @property
    def state(self) -> JobState:
        return self._job.state

    @property
    def transferred_bytes(self) -> int:
        return self._job.transferred_bytes

    @property
    def total_bytes(self) -> int:
        return self._job.total_bytes

    def start(self) -> "JobHandle":
        self._thread.start()
        return self

    def cancel(self) -> None:
        self._job.cancel()

    def resolve_conflict(self, decision: ConflictDecision) -> None:
        self._decisions.put(decision)

    def wait(self, timeout: float | None = None) -> JobState:
        self._thread.join(timeout)
        return self._job.state

    def next_event(self, timeout: float | None = None) -> TransferEvent | None:
        """Return the next event, or None once the stream has ended.

        An interrupt raised while waiting leaves the stream intact, so the
        caller can cancel and keep reading until the terminal event.

        Raises:
            queue.Empty: when ``timeout`` passes without an event.
        """

        if self._finished:
            return None
        event = self._events.get(timeout=timeout)
        if event is _DONE:
            self._finished = True
            return None
        return event

    def events(self) -> Iterator[TransferEvent]:
        """Yield events until the job reaches a terminal event."""

        while True:
            event = self.next_event()
            if event is None:
                return
            yield event

    def _run(self) -> None:
        self._job.progress_sink = self._events.put
        generator = self._job.run()
        try:
            event = next(generator)
            while True:
                self._events.put(event)
                if isinstance(event, ConflictDetected):
                    event = generator.send(self._wait_for_decision())
                else:
                    event = next(generator)
        except StopIteration:
            pass
        except Exception as exc:
            LOGGER.exception("Unexpected transfer error for %s", self._job.current_key)
            self._job.state = JobState.FAILED
            self._events.put(TransferFailed(key=self._job.current_key or "", error=exc))
        finally:
            self._job.progress_sink = None
            self._events.put(_DONE)

    def _wait_for_decision(self) -> ConflictDecision:
        while True:
            try:
                return self._decisions.get(timeout=self._poll_interval)
            except queue.Empty:
                if self._job.cancel_requested:
                    return ConflictDecision.CANCEL
