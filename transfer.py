"""
Chunked, deadline-bounded transfers between local files and the bucket.

Uploads open a multipart session and push fixed-size chunks through a pool
of worker threads that drain a shared queue. Downloads fetch byte ranges the
same way. A single deadline bounds the whole call; when it fires, or when a
chunk fails for good, outstanding work is cancelled and the multipart
session gets one abort attempt.
"""
from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from queue import Empty, Queue
from typing import Callable, Dict, List, Optional, TypeVar, Union

from errors import DeadlineExceeded, StoreError, ValidationError


logger = logging.getLogger(__name__)

MEGABYTE = 1024 * 1024
KEY_TIMESTAMP_FORMAT = "%Y%m%dT%H%M%S"
PROGRESS_STEPS = 10

# Multipart limits enforced by S3 and most compatible stores.
MIN_PART_SIZE = 5 * MEGABYTE
MAX_PARTS = 10000

ProgressCallback = Callable[[int, int], None]
T = TypeVar("T")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TransferRequest:
    source_path: Union[Path, str]
    destination_key: str
    bucket: str
    bucket_directory: str = ""
    deadline: timedelta = timedelta(seconds=3600)
    worker_count: int = 5
    chunk_size_mb: int = 50
    apply_naming: bool = False

    @property
    def chunk_size_bytes(self) -> int:
        return self.chunk_size_mb * MEGABYTE


@dataclass(frozen=True)
class Chunk:
    part_number: int
    offset: int
    length: int


def plan_chunks(size: int, chunk_size: int) -> List[Chunk]:
    # An empty file still needs one (empty) part to complete a session.
    if size == 0:
        return [Chunk(part_number=1, offset=0, length=0)]
    return [
        Chunk(part_number=index + 1, offset=offset, length=min(chunk_size, size - offset))
        for index, offset in enumerate(range(0, size, chunk_size))
    ]


def part_size_for(size: int, requested: int, *, min_part_size: int = MIN_PART_SIZE) -> int:
    """Grow ``requested`` so an upload of ``size`` bytes fits the multipart limits.

    Every part except the last must be at least ``min_part_size``, and a
    session holds at most ``MAX_PARTS`` parts.
    """
    part_size = requested
    if size > part_size:
        part_size = max(part_size, min_part_size)
    return max(part_size, -(-size // MAX_PARTS))


def validate_request(request: TransferRequest, *, for_download: bool = False) -> None:
    if not request.bucket:
        raise ValidationError("bucket", "a bucket must be specified")
    if not request.destination_key:
        raise ValidationError("destination_key", "an object key must be specified")
    if request.bucket_directory and not request.bucket_directory.endswith("/"):
        raise ValidationError(
            "bucket_directory",
            f"'{request.bucket_directory}' must end with a trailing '/'",
        )
    if request.worker_count < 1:
        raise ValidationError(
            "worker_count", f"worker count must be at least 1, got {request.worker_count}"
        )
    if request.chunk_size_mb < 1:
        raise ValidationError(
            "chunk_size_mb", f"chunk size must be at least 1 MB, got {request.chunk_size_mb}"
        )
    if request.deadline < timedelta(0):
        raise ValidationError("deadline", f"deadline must not be negative, got {request.deadline}")

    if not str(request.source_path or ""):
        raise ValidationError("source_path", "a path to the file must be specified")
    path = Path(request.source_path).expanduser()
    if for_download:
        if not path.parent.is_dir():
            raise ValidationError("source_path", f"directory {path.parent} does not exist")
        return
    if not path.is_file():
        raise ValidationError("source_path", f"{path} does not exist or is not a regular file")
    if not os.access(path, os.R_OK):
        raise ValidationError("source_path", f"{path} is not readable")


def build_key(request: TransferRequest, tier_prefix: str, instant: datetime) -> str:
    name = request.destination_key
    if request.apply_naming:
        name = f"{tier_prefix}{name}_{instant.strftime(KEY_TIMESTAMP_FORMAT)}"
    return f"{request.bucket_directory}{name}"


class _Progress:
    def __init__(
        self, operation: str, key: str, total: int, callback: Optional[ProgressCallback]
    ) -> None:
        self.operation = operation
        self.key = key
        self.total = total
        self.done = 0
        self._reported = 0
        self._callback = callback
        self._lock = threading.Lock()

    def advance(self) -> None:
        with self._lock:
            self.done += 1
            done = self.done
            step = done * PROGRESS_STEPS // self.total
            report = step > self._reported
            if report:
                self._reported = step
        if report:
            logger.info(
                "%s of %s: %d%% (%d/%d chunks)",
                self.operation,
                self.key,
                done * 100 // self.total,
                done,
                self.total,
            )
        if self._callback is not None:
            self._callback(done, self.total)


class TransferPipeline:
    def __init__(
        self,
        store,
        *,
        max_attempts: int = 3,
        retry_backoff: float = 0.5,
        min_part_size: int = MIN_PART_SIZE,
        clock: Callable[[], datetime] = utc_now,
        progress: Optional[ProgressCallback] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")
        self.store = store
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff
        self.min_part_size = min_part_size
        self._clock = clock
        self._progress = progress

    def upload(
        self,
        request: TransferRequest,
        *,
        tier_prefix: str = "",
        dry_run: bool = False,
        instant: Optional[datetime] = None,
    ) -> str:
        """Upload ``request.source_path`` and return the key it was stored under.

        A dry run validates the request and computes the key without touching
        the store. The deadline covers opening the session, every chunk and
        the completion call.
        """
        validate_request(request)
        key = build_key(request, tier_prefix, instant or self._clock())
        bucket = request.bucket

        if dry_run:
            logger.info(
                "Dry run: would upload %s to s3://%s/%s", request.source_path, bucket, key
            )
            return key

        deadline_at = time.monotonic() + request.deadline.total_seconds()
        self._check_deadline(deadline_at, "Upload", request, key)

        source = Path(request.source_path).expanduser()
        size = source.stat().st_size
        part_size = part_size_for(size, request.chunk_size_bytes, min_part_size=self.min_part_size)
        if part_size != request.chunk_size_bytes:
            logger.info(
                "Raising part size from %d to %d bytes to fit multipart limits",
                request.chunk_size_bytes,
                part_size,
            )
        chunks = plan_chunks(size, part_size)
        logger.info(
            "Uploading %s to s3://%s/%s in %d chunk(s) with %d worker(s)",
            source,
            bucket,
            key,
            len(chunks),
            min(request.worker_count, len(chunks)),
        )

        upload_id = self._call_before_deadline(
            lambda: self.store.create_multipart_upload(bucket, key),
            deadline_at,
            "Upload",
            request,
            key,
            late=lambda late_id: self._abort(bucket, key, late_id),
        )
        parts: Dict[int, str] = {}
        parts_lock = threading.Lock()

        def send(chunk: Chunk) -> None:
            with open(source, "rb") as handle:
                handle.seek(chunk.offset)
                body = handle.read(chunk.length)
            etag = self.store.upload_part(bucket, key, upload_id, chunk.part_number, body)
            with parts_lock:
                parts[chunk.part_number] = etag

        try:
            self._check_deadline(deadline_at, "Upload", request, key)
            self._run(chunks, send, "Upload", request, key, deadline_at, threading.Event())
            self._call_before_deadline(
                lambda: self.store.complete_multipart_upload(
                    bucket, key, upload_id, sorted(parts.items())
                ),
                deadline_at,
                "Upload",
                request,
                key,
            )
        except Exception:
            self._abort(bucket, key, upload_id)
            raise

        logger.info("Uploaded %s to s3://%s/%s", source, bucket, key)
        return key

    def download(self, request: TransferRequest, *, dry_run: bool = False) -> None:
        """Fetch ``bucket_directory + destination_key`` into ``request.source_path``.

        A partially written file is left in place when the download fails.
        No chunk is written to it after this call returns.
        """
        validate_request(request, for_download=True)
        key = f"{request.bucket_directory}{request.destination_key}"
        bucket = request.bucket
        destination = Path(request.source_path).expanduser()

        if dry_run:
            logger.info("Dry run: would download s3://%s/%s to %s", bucket, key, destination)
            return

        deadline_at = time.monotonic() + request.deadline.total_seconds()
        self._check_deadline(deadline_at, "Download", request, key)

        size = self.store.object_size(bucket, key)
        chunks = plan_chunks(size, request.chunk_size_bytes)
        logger.info(
            "Downloading s3://%s/%s (%d bytes) to %s in %d chunk(s)",
            bucket,
            key,
            size,
            destination,
            len(chunks),
        )

        with open(destination, "wb") as handle:
            handle.truncate(size)

        cancel = threading.Event()
        write_lock = threading.Lock()

        def fetch(chunk: Chunk) -> None:
            if chunk.length == 0:
                return
            data = self.store.get_range(bucket, key, chunk.offset, chunk.offset + chunk.length - 1)
            with write_lock:
                if cancel.is_set():
                    return
                with open(destination, "r+b") as handle:
                    handle.seek(chunk.offset)
                    handle.write(data)

        try:
            self._run(chunks, fetch, "Download", request, key, deadline_at, cancel)
        finally:
            with write_lock:
                cancel.set()
        logger.info("Downloaded s3://%s/%s to %s", bucket, key, destination)

    def _run(
        self,
        chunks: List[Chunk],
        work: Callable[[Chunk], None],
        operation: str,
        request: TransferRequest,
        key: str,
        deadline_at: float,
        cancel: threading.Event,
    ) -> None:
        queue: "Queue[Chunk]" = Queue()
        for chunk in chunks:
            queue.put(chunk)

        progress = _Progress(operation, key, len(chunks), self._progress)
        worker_count = min(request.worker_count, len(chunks))
        executor = ThreadPoolExecutor(
            max_workers=worker_count, thread_name_prefix="s3backup-transfer"
        )
        futures = [
            executor.submit(self._drain, queue, work, cancel, progress)
            for _ in range(worker_count)
        ]
        try:
            remaining = max(0.0, deadline_at - time.monotonic())
            done, pending = wait(futures, timeout=remaining, return_when=FIRST_EXCEPTION)
            for future in done:
                error = future.exception()
                if error is not None:
                    raise error
            if pending:
                raise DeadlineExceeded(operation, request.bucket, key, request.deadline)
        finally:
            cancel.set()
            # Stalled store calls cannot be interrupted; their workers exit
            # once the call returns and they observe the cancel flag.
            executor.shutdown(wait=False, cancel_futures=True)

    def _drain(
        self,
        queue: "Queue[Chunk]",
        work: Callable[[Chunk], None],
        cancel: threading.Event,
        progress: _Progress,
    ) -> None:
        while not cancel.is_set():
            try:
                chunk = queue.get_nowait()
            except Empty:
                return
            try:
                completed = self._attempt(work, chunk, cancel)
            except Exception:
                cancel.set()
                raise
            if completed:
                progress.advance()

    def _attempt(
        self, work: Callable[[Chunk], None], chunk: Chunk, cancel: threading.Event
    ) -> bool:
        attempt = 1
        while True:
            try:
                work(chunk)
                return True
            except StoreError as error:
                if not error.retryable or attempt >= self.max_attempts:
                    raise
                logger.warning(
                    "Chunk %d failed (attempt %d/%d), retrying: %s",
                    chunk.part_number,
                    attempt,
                    self.max_attempts,
                    error,
                )
            if cancel.wait(self.retry_backoff * attempt):
                return False
            attempt += 1

    def _check_deadline(
        self, deadline_at: float, operation: str, request: TransferRequest, key: str
    ) -> None:
        if time.monotonic() >= deadline_at:
            raise DeadlineExceeded(operation, request.bucket, key, request.deadline)

    def _abort(self, bucket: str, key: str, upload_id: str) -> None:
        logger.warning("Aborting multipart upload %s for s3://%s/%s", upload_id, bucket, key)
        try:
            self.store.abort_multipart_upload(bucket, key, upload_id)
        except StoreError as error:
            # Abandoned sessions are reclaimed by the cleanup action or bucket lifecycle rules.
            logger.warning("Failed to abort multipart upload %s: %s", upload_id, error)

    def _call_before_deadline(
        self,
        call: Callable[[], T],
        deadline_at: float,
        operation: str,
        request: TransferRequest,
        key: str,
        *,
        late: Optional[Callable[[T], None]] = None,
    ) -> T:
        """Run a single store call, giving up on it once the deadline passes.

        ``late`` receives the result of a call that finishes after the
        caller has already given up on it.
        """
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="s3backup-session")
        future = executor.submit(call)
        try:
            remaining = max(0.0, deadline_at - time.monotonic())
            done, _ = wait([future], timeout=remaining)
            if not done:
                if late is not None:

                    def finish_late(finished: "Future[T]") -> None:
                        if finished.exception() is None:
                            late(finished.result())

                    future.add_done_callback(finish_late)
                raise DeadlineExceeded(operation, request.bucket, key, request.deadline)
            return future.result()
        finally:
            executor.shutdown(wait=False)
