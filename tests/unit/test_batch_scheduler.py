#!/usr/bin/env python3
"""
Tests for Batch Scheduler
"""

import io
import logging
import tarfile
import threading
import time
from unittest.mock import Mock, patch

import pytest

from batch_pusher.archive_builder import ArchiveWriteError
from batch_pusher.batch_scheduler import _DEADLINE, BatchScheduler
from batch_pusher.cloudwatch_manager import CloudWatchManager
from batch_pusher.models import LocalDataFile, Thresholds
from batch_pusher.upload_manager import UploadError


def as_data_file(path):
    return LocalDataFile(absolute_path=str(path), size=path.stat().st_size)


def member_names(contents: bytes):
    with tarfile.open(fileobj=io.BytesIO(contents), mode="r:gz") as tar:
        return tar.getnames()


@pytest.fixture
def metrics():
    return CloudWatchManager(enabled=False)


@pytest.fixture
def uploader():
    """Uploader that records every payload it is given"""
    mock = Mock()
    mock.payloads = []
    mock.upload.side_effect = lambda contents: mock.payloads.append(contents)
    return mock


def start_scheduler(scheduler):
    thread = threading.Thread(target=scheduler.run, daemon=True)
    thread.start()
    return thread


def test_initial_state(temp_dir, uploader):
    scheduler = BatchScheduler(str(temp_dir), Thresholds(1000, 10), uploader)

    assert scheduler.root_directory == str(temp_dir) + "/"
    assert scheduler.archive.is_empty()
    assert scheduler.archive.deadline is None
    assert scheduler.file_queue.maxsize == 1_000_000


def test_size_threshold_scenario(temp_dir, make_data_file, uploader, metrics):
    """Test no flush below the size threshold, immediate flush once it is exceeded"""
    scheduler = BatchScheduler(str(temp_dir), Thresholds(10000, 60), uploader, metrics)
    a = make_data_file("a.bin", size=4000)
    b = make_data_file("b.bin", size=4000)
    c = make_data_file("c.bin", size=3000)

    scheduler.add(as_data_file(a))
    scheduler.add(as_data_file(b))

    uploader.upload.assert_not_called()
    assert len(scheduler.archive.members) == 2
    assert scheduler.archive.current_size() < 10000

    scheduler.add(as_data_file(c))

    uploader.upload.assert_called_once()
    assert member_names(uploader.payloads[0]) == ["a.bin", "b.bin", "c.bin"]
    assert scheduler.archive.is_empty()
    assert scheduler.archive.deadline is None
    assert not a.exists() and not b.exists() and not c.exists()

    stats = scheduler.get_statistics()
    assert stats["files_added"] == 3
    assert stats["batches_uploaded"] == 1
    assert stats["files_deleted"] == 3
    assert stats["bytes_uploaded"] == len(uploader.payloads[0])
    assert metrics.batches_uploaded == 1
    assert metrics.files_uploaded == 3


def test_oversize_files_flush_one_per_batch(temp_dir, make_data_file, uploader):
    """Test each file exceeding the threshold is flushed before the next is accepted"""
    scheduler = BatchScheduler(str(temp_dir), Thresholds(1000, 60), uploader)

    for name in ["1.bin", "2.bin", "3.bin"]:
        scheduler.submit(as_data_file(make_data_file(name, size=2000)))
    scheduler.close()
    scheduler.run()

    assert [member_names(p) for p in uploader.payloads] == [["1.bin"], ["2.bin"], ["3.bin"]]


def test_age_threshold_scenario(temp_dir, make_data_file, uploader, wait_until):
    """Test a lone small file is flushed by the deadline, not before"""
    scheduler = BatchScheduler(str(temp_dir), Thresholds(1_000_000, 0.5), uploader)
    path = make_data_file("small.bin", size=10)
    thread = start_scheduler(scheduler)

    submitted_at = time.monotonic()
    scheduler.submit(as_data_file(path))

    time.sleep(0.2)
    uploader.upload.assert_not_called()

    assert wait_until(lambda: uploader.upload.called, timeout=5, description="deadline flush")
    assert time.monotonic() - submitted_at >= 0.5
    assert member_names(uploader.payloads[0]) == ["small.bin"]

    assert wait_until(lambda: scheduler.archive.deadline is None, timeout=5, description="archive reset")
    assert not path.exists()
    assert scheduler.archive.is_empty()

    scheduler.close()
    thread.join(timeout=5)
    assert not thread.is_alive()
    assert uploader.upload.call_count == 1


def test_deadline_measured_from_first_file(temp_dir, make_data_file, uploader, wait_until):
    """Test later files do not push the deadline back"""
    scheduler = BatchScheduler(str(temp_dir), Thresholds(1_000_000, 0.6), uploader)
    thread = start_scheduler(scheduler)

    submitted_at = time.monotonic()
    scheduler.submit(as_data_file(make_data_file("first.bin")))
    time.sleep(0.3)
    scheduler.submit(as_data_file(make_data_file("second.bin")))

    assert wait_until(lambda: uploader.upload.called, timeout=5, description="deadline flush")
    elapsed = time.monotonic() - submitted_at
    assert 0.6 <= elapsed < 0.9 + 0.5
    assert member_names(uploader.payloads[0]) == ["first.bin", "second.bin"]

    scheduler.close()
    thread.join(timeout=5)


def test_flush_empty_archive_is_noop(temp_dir, uploader, caplog):
    scheduler = BatchScheduler(str(temp_dir), Thresholds(1000, 10), uploader)
    archive = scheduler.archive

    with caplog.at_level(logging.WARNING):
        scheduler.flush()

    uploader.upload.assert_not_called()
    assert scheduler.archive is archive
    assert "empty archive" in caplog.text


def test_unreadable_file_skipped(temp_dir, uploader):
    scheduler = BatchScheduler(str(temp_dir), Thresholds(1000, 10), uploader)

    scheduler.submit(LocalDataFile(absolute_path=str(temp_dir / "vanished.bin")))
    scheduler.close()
    scheduler.run()

    assert scheduler.get_statistics()["files_skipped"] == 1
    assert scheduler.archive.is_empty()
    assert scheduler.archive.deadline is None
    uploader.upload.assert_not_called()


def test_close_drains_queue_without_uploading(temp_dir, make_data_file, uploader, caplog):
    """Test shutdown processes queued files and leaves the open archive's files on disk"""
    scheduler = BatchScheduler(str(temp_dir), Thresholds(1_000_000, 60), uploader)
    paths = [make_data_file(f"{i}.bin") for i in range(3)]
    for path in paths:
        scheduler.submit(as_data_file(path))
    scheduler.close()

    with caplog.at_level(logging.WARNING):
        scheduler.run()

    assert scheduler.get_statistics()["files_added"] == 3
    uploader.upload.assert_not_called()
    assert all(p.exists() for p in paths)
    assert "unsent archive" in caplog.text


@patch("batch_pusher.upload_retrier.time.sleep")
def test_upload_retried_then_members_deleted(mock_sleep, temp_dir, make_data_file, metrics, caplog):
    """Test uploader failing twice: two retries, no max-backoff, then deletion"""
    uploader = Mock()
    uploader.upload.side_effect = [UploadError("timeout"), UploadError("timeout"), None]
    scheduler = BatchScheduler(str(temp_dir), Thresholds(1, 60), uploader, metrics)
    path = make_data_file("data.bin")

    with caplog.at_level(logging.WARNING):
        scheduler.add(as_data_file(path))

    assert uploader.upload.call_count == 3
    assert mock_sleep.call_count == 2
    assert metrics.retries["upload"] == 2
    assert metrics.max_backoff_hits.get("upload", 0) == 0
    assert len([r for r in caplog.records if "will retry" in r.getMessage()]) == 2
    assert not path.exists()


def test_files_not_deleted_before_upload_succeeds(temp_dir, make_data_file):
    path = make_data_file("data.bin")
    seen_on_disk = []
    uploader = Mock()
    uploader.upload.side_effect = lambda contents: seen_on_disk.append(path.exists())
    scheduler = BatchScheduler(str(temp_dir), Thresholds(1, 60), uploader)

    scheduler.add(as_data_file(path))

    assert seen_on_disk == [True]
    assert not path.exists()


def test_delete_failure_is_not_fatal(temp_dir, make_data_file, metrics, caplog):
    """Test a member that cannot be removed is logged and the rest are deleted"""
    keep = make_data_file("a.bin", size=600)
    gone = make_data_file("b.bin", size=600)
    uploader = Mock()
    uploader.upload.side_effect = lambda contents: gone.unlink()
    scheduler = BatchScheduler(str(temp_dir), Thresholds(1_000_000, 60), uploader, metrics)

    scheduler.add(as_data_file(keep))
    scheduler.add(as_data_file(gone))
    with caplog.at_level(logging.ERROR):
        scheduler.flush()

    assert not keep.exists()
    stats = scheduler.get_statistics()
    assert stats["files_deleted"] == 1
    assert stats["delete_failures"] == 1
    assert metrics.delete_failures == 1
    assert "Failed to remove" in caplog.text
    assert scheduler.archive.is_empty()


def test_archive_write_error_stops_loop(temp_dir, make_data_file, uploader):
    """Test writer failures propagate out of run()"""
    scheduler = BatchScheduler(str(temp_dir), Thresholds(1000, 10), uploader)
    path = make_data_file("a.bin")
    scheduler.submit(as_data_file(path))
    scheduler.submit(as_data_file(make_data_file("b.bin")))
    scheduler.close()

    with patch.object(scheduler.archive, "add", side_effect=ArchiveWriteError("corrupt")):
        with pytest.raises(ArchiveWriteError):
            scheduler.run()

    uploader.upload.assert_not_called()
    assert path.exists()


def test_new_archive_after_flush_has_no_deadline(temp_dir, make_data_file, uploader):
    scheduler = BatchScheduler(str(temp_dir), Thresholds(1_000_000, 60), uploader)
    scheduler.add(as_data_file(make_data_file("a.bin")))
    first_archive = scheduler.archive
    assert first_archive.deadline is not None

    scheduler.flush()

    assert scheduler.archive is not first_archive
    assert scheduler.archive.is_empty()
    assert scheduler.archive.deadline is None

    scheduler.add(as_data_file(make_data_file("b.bin")))
    assert scheduler.archive.deadline is not None


def test_metrics_published_after_each_flush(temp_dir, make_data_file, uploader, mocker):
    metrics = CloudWatchManager(enabled=False)
    publish = mocker.patch.object(metrics, "publish_metrics")
    scheduler = BatchScheduler(str(temp_dir), Thresholds(1_000_000, 60), uploader, metrics)

    scheduler.flush()
    publish.assert_not_called()

    scheduler.add(as_data_file(make_data_file("a.bin")))
    scheduler.flush()
    publish.assert_called_once()


def test_injected_clock_drives_deadline(temp_dir, make_data_file, uploader):
    """Test the archive deadline and the event loop read the same clock"""
    clock = Mock(return_value=100.0)
    scheduler = BatchScheduler(str(temp_dir), Thresholds(1_000_000, 10), uploader, clock=clock)

    scheduler.add(as_data_file(make_data_file("a.bin")))
    assert scheduler.archive.deadline == 110.0

    clock.return_value = 110.0
    assert scheduler._next_event() is _DEADLINE


def test_close_does_not_block_on_full_queue(temp_dir, make_data_file, uploader, caplog):
    """Test shutdown with a full queue returns at once and the loop still drains and stops"""
    with patch("batch_pusher.batch_scheduler.QUEUE_CAPACITY", 2):
        scheduler = BatchScheduler(str(temp_dir), Thresholds(1_000_000, 60), uploader)
    for name in ["1.bin", "2.bin"]:
        scheduler.submit(as_data_file(make_data_file(name)))
    assert scheduler.file_queue.full()

    with caplog.at_level(logging.WARNING):
        scheduler.close()
    assert "queue full" in caplog.text

    thread = start_scheduler(scheduler)
    thread.join(timeout=5)

    assert not thread.is_alive()
    assert scheduler.get_statistics()["files_added"] == 2
    uploader.upload.assert_not_called()
