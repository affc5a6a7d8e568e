import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

from errors import DeadlineExceeded, StoreError, ValidationError
from fake_store import FakeStore
from transfer import (
    MAX_PARTS,
    MEGABYTE,
    MIN_PART_SIZE,
    TransferPipeline,
    TransferRequest,
    build_key,
    part_size_for,
    plan_chunks,
    validate_request,
)


UPLOAD_INSTANT = datetime(2024, 3, 5, 10, 0, 0, tzinfo=timezone.utc)


def make_file(tmp_path: Path, name: str, content: bytes) -> Path:
    file_path = tmp_path / name
    file_path.write_bytes(content)
    return file_path


def make_request(source: Path, **overrides) -> TransferRequest:
    values = dict(
        source_path=source,
        destination_key="f",
        bucket="backups",
        deadline=timedelta(seconds=30),
        worker_count=3,
        chunk_size_mb=1,
    )
    values.update(overrides)
    return TransferRequest(**values)


def join_threads(prefix: str) -> None:
    for thread in threading.enumerate():
        if thread.name.startswith(prefix):
            thread.join(5)


def make_pipeline(store: FakeStore, **kwargs) -> TransferPipeline:
    kwargs.setdefault("retry_backoff", 0.01)
    kwargs.setdefault("min_part_size", MEGABYTE)
    return TransferPipeline(store, clock=lambda: UPLOAD_INSTANT, **kwargs)


def test_build_key_applies_tier_prefix_and_timestamp(tmp_path: Path) -> None:
    source = make_file(tmp_path, "f", b"data")
    named = make_request(source, apply_naming=True)
    plain = make_request(source, apply_naming=False)

    assert build_key(named, "daily_", datetime(2024, 3, 5, 10, 0, 0)) == "daily_f_20240305T100000"
    assert build_key(plain, "daily_", datetime(2024, 3, 5, 10, 0, 0)) == "f"


def test_build_key_prepends_bucket_directory(tmp_path: Path) -> None:
    source = make_file(tmp_path, "f", b"data")
    request = make_request(source, bucket_directory="testdir/", apply_naming=True)
    assert build_key(request, "weekly_", UPLOAD_INSTANT) == "testdir/weekly_f_20240305T100000"


def test_plan_chunks_covers_file() -> None:
    chunks = plan_chunks(5 * MEGABYTE + 10, 2 * MEGABYTE)
    assert [chunk.part_number for chunk in chunks] == [1, 2, 3]
    assert [chunk.length for chunk in chunks] == [2 * MEGABYTE, 2 * MEGABYTE, MEGABYTE + 10]
    assert plan_chunks(0, MEGABYTE)[0].length == 0


def test_part_size_grows_to_multipart_limits() -> None:
    assert part_size_for(3 * MEGABYTE, MEGABYTE) == MIN_PART_SIZE
    assert part_size_for(MEGABYTE // 2, MEGABYTE) == MEGABYTE
    assert part_size_for(0, MEGABYTE) == MEGABYTE
    assert part_size_for(12 * MEGABYTE, 8 * MEGABYTE) == 8 * MEGABYTE

    huge = 60 * 1024 * MEGABYTE
    part_size = part_size_for(huge, 5 * MEGABYTE)
    assert part_size > 5 * MEGABYTE
    assert len(plan_chunks(huge, part_size)) <= MAX_PARTS


def test_zero_workers_fails_validation_before_store_calls(tmp_path: Path) -> None:
    store = FakeStore()
    source = make_file(tmp_path, "f", b"data")

    with pytest.raises(ValidationError) as excinfo:
        make_pipeline(store).upload(make_request(source, worker_count=0))

    assert excinfo.value.field == "worker_count"
    assert "worker count" in str(excinfo.value)
    assert store.calls == []


@pytest.mark.parametrize(
    "overrides, field",
    [
        ({"bucket": ""}, "bucket"),
        ({"destination_key": ""}, "destination_key"),
        ({"bucket_directory": "badbucketdir"}, "bucket_directory"),
        ({"deadline": timedelta(seconds=-1)}, "deadline"),
        ({"chunk_size_mb": 0}, "chunk_size_mb"),
        ({"source_path": ""}, "source_path"),
    ],
)
def test_invalid_requests_are_rejected(tmp_path: Path, overrides: dict, field: str) -> None:
    store = FakeStore()
    source = make_file(tmp_path, "f", b"data")

    with pytest.raises(ValidationError) as excinfo:
        make_pipeline(store).upload(make_request(source, **overrides))

    assert excinfo.value.field == field
    assert store.calls == []


def test_missing_source_file_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValidationError) as excinfo:
        validate_request(make_request(tmp_path / "missing"))
    assert excinfo.value.field == "source_path"

    with pytest.raises(ValidationError):
        validate_request(make_request(tmp_path))


def test_bucket_directory_with_trailing_separator_is_valid(tmp_path: Path) -> None:
    source = make_file(tmp_path, "f", b"data")
    validate_request(make_request(source, bucket_directory="testdir/"))


def test_dry_run_returns_key_without_store_calls(tmp_path: Path) -> None:
    store = FakeStore()
    store.put("daily_old", b"old", UPLOAD_INSTANT - timedelta(days=1))
    before = dict(store.objects)
    source = make_file(tmp_path, "f", b"data")

    key = make_pipeline(store).upload(
        make_request(source, apply_naming=True), tier_prefix="daily_", dry_run=True
    )

    assert key == "daily_f_20240305T100000"
    assert store.calls == []
    assert store.objects == before


def test_upload_splits_file_into_chunks(tmp_path: Path) -> None:
    store = FakeStore()
    content = bytes(range(256)) * (10 * 1024)  # 2.5 MiB
    source = make_file(tmp_path, "big", content)
    progress: List[int] = []

    pipeline = TransferPipeline(
        store,
        min_part_size=MEGABYTE,
        clock=lambda: UPLOAD_INSTANT,
        progress=lambda done, total: progress.append(total),
    )
    key = pipeline.upload(make_request(source))

    assert key == "f"
    assert store.objects["f"][0] == content
    assert store.calls.count("upload_part") == 3
    assert store.calls[0] == "create_multipart_upload"
    assert store.calls[-1] == "complete_multipart_upload"
    assert progress == [3, 3, 3]
    assert store.sessions == {}


def test_upload_empty_file(tmp_path: Path) -> None:
    store = FakeStore()
    source = make_file(tmp_path, "empty", b"")

    make_pipeline(store).upload(make_request(source))

    assert store.objects["f"][0] == b""


def test_upload_retries_transient_chunk_errors(tmp_path: Path) -> None:
    store = FakeStore()
    failures = {"count": 0}
    lock = threading.Lock()

    def flaky(part_number: int) -> None:
        with lock:
            if part_number == 2 and failures["count"] < 2:
                failures["count"] += 1
                raise StoreError("UploadPart", "backups", "f", code="SlowDown", status=503, retryable=True)

    store.part_hook = flaky
    content = b"x" * (2 * MEGABYTE + 1)
    source = make_file(tmp_path, "f", content)

    make_pipeline(store, max_attempts=3).upload(make_request(source))

    assert failures["count"] == 2
    assert store.objects["f"][0] == content
    assert store.aborted == []


def test_upload_aborts_once_on_permanent_chunk_failure(tmp_path: Path) -> None:
    store = FakeStore()

    def denied(part_number: int) -> None:
        raise StoreError("UploadPart", "backups", "f", code="AccessDenied", status=403)

    store.part_hook = denied
    source = make_file(tmp_path, "f", b"x" * (3 * MEGABYTE))

    with pytest.raises(StoreError) as excinfo:
        make_pipeline(store).upload(make_request(source))

    assert excinfo.value.code == "AccessDenied"
    assert len(store.aborted) == 1
    assert "complete_multipart_upload" not in store.calls
    assert "f" not in store.objects


def test_upload_deadline_cancels_stalled_chunks_and_aborts_once(tmp_path: Path) -> None:
    store = FakeStore()
    release = threading.Event()
    store.part_hook = lambda part_number: release.wait(10)
    source = make_file(tmp_path, "f", b"x" * (4 * MEGABYTE))

    try:
        with pytest.raises(DeadlineExceeded):
            make_pipeline(store).upload(
                make_request(source, deadline=timedelta(milliseconds=300), worker_count=2)
            )
        assert store.calls.count("abort_multipart_upload") == 1
        assert "complete_multipart_upload" not in store.calls
    finally:
        release.set()


def test_small_parts_are_merged_to_the_minimum_part_size(tmp_path: Path) -> None:
    store = FakeStore()
    content = b"x" * (3 * MEGABYTE)
    source = make_file(tmp_path, "f", content)

    TransferPipeline(store, clock=lambda: UPLOAD_INSTANT).upload(make_request(source))

    assert store.calls.count("upload_part") == 1
    assert store.objects["f"][0] == content


def test_upload_deadline_covers_stalled_completion(tmp_path: Path) -> None:
    store = FakeStore()
    release = threading.Event()
    store.complete_hook = lambda: release.wait(10)
    source = make_file(tmp_path, "f", b"data")

    try:
        with pytest.raises(DeadlineExceeded):
            make_pipeline(store).upload(make_request(source, deadline=timedelta(milliseconds=300)))
        assert store.calls.count("abort_multipart_upload") == 1
    finally:
        release.set()


def test_upload_deadline_covers_stalled_session_open(tmp_path: Path) -> None:
    store = FakeStore()
    release = threading.Event()
    store.create_hook = lambda: release.wait(10)
    source = make_file(tmp_path, "f", b"data")

    try:
        with pytest.raises(DeadlineExceeded):
            make_pipeline(store).upload(make_request(source, deadline=timedelta(milliseconds=300)))
        assert "upload_part" not in store.calls
    finally:
        release.set()

    # The session opened after the deadline is aborted once it exists.
    join_threads("s3backup-session")
    assert len(store.aborted) == 1
    assert store.sessions == {}


def test_zero_deadline_expires_before_any_store_call(tmp_path: Path) -> None:
    store = FakeStore()
    source = make_file(tmp_path, "f", b"data")

    with pytest.raises(DeadlineExceeded):
        make_pipeline(store).upload(make_request(source, deadline=timedelta(0)))

    assert store.calls == []


def test_download_reassembles_object(tmp_path: Path) -> None:
    store = FakeStore()
    content = bytes(range(256)) * (9 * 1024)
    store.put("dir/f", content, UPLOAD_INSTANT)
    destination = tmp_path / "restored"

    make_pipeline(store).download(
        make_request(destination, bucket_directory="dir/", worker_count=4)
    )

    assert destination.read_bytes() == content
    assert store.calls.count("get_range") == 3


def test_download_missing_object_raises_store_error(tmp_path: Path) -> None:
    store = FakeStore()

    with pytest.raises(StoreError) as excinfo:
        make_pipeline(store).download(make_request(tmp_path / "restored"))

    assert excinfo.value.status == 404


def test_download_requires_existing_directory(tmp_path: Path) -> None:
    store = FakeStore()

    with pytest.raises(ValidationError):
        make_pipeline(store).download(make_request(tmp_path / "nope" / "restored"))

    assert store.calls == []


def test_download_deadline_leaves_no_late_writes(tmp_path: Path) -> None:
    store = FakeStore()
    store.put("f", b"y" * (2 * MEGABYTE), UPLOAD_INSTANT)
    release = threading.Event()
    get_range = store.get_range

    def stalled_get_range(bucket: str, key: str, start: int, end: int) -> bytes:
        release.wait(10)
        return get_range(bucket, key, start, end)

    store.get_range = stalled_get_range  # type: ignore[assignment]
    destination = tmp_path / "restored"

    try:
        with pytest.raises(DeadlineExceeded):
            make_pipeline(store).download(
                make_request(destination, deadline=timedelta(milliseconds=300))
            )
    finally:
        release.set()

    join_threads("s3backup-transfer")
    assert destination.read_bytes() == b"\0" * (2 * MEGABYTE)
