#!/usr/bin/env python3
"""
Batch Scheduler for Batch Pusher
Single-threaded event loop that accumulates files and flushes batches

All archive mutation, flush decisions, uploads and deletions happen in the
thread that calls run(). Producers only touch the queue. The loop waits for
the earlier of "next file arrives" and "archive deadline passes", so only
one of the two events is ever acted on at a time.
"""

import logging
import os
import queue
import threading
import time
from typing import Callable, Iterable

from batch_pusher.archive_builder import ArchiveBuilder
from batch_pusher.cloudwatch_manager import CloudWatchManager
from batch_pusher.models import LocalDataFile, Thresholds
from batch_pusher.upload_retrier import UploadRetrier
from batch_pusher.utils import format_bytes

logger = logging.getLogger(__name__)

# Large buffer so file discovery is never held up by batch processing
QUEUE_CAPACITY = 1_000_000

_SHUTDOWN = object()
_DEADLINE = object()


class BatchScheduler:
    """
    Owns the live archive and decides when to flush it.

    States:
    - Empty: no members, no deadline. Waits for files only.
    - Accumulating: members present, deadline armed. A flush happens when
      the compressed size exceeds the size threshold (checked after every
      add) or when the deadline passes.

    Flush: seal -> upload until success -> delete member files -> new empty
    archive. Flushing an empty archive is a no-op.

    Example:
        >>> scheduler = BatchScheduler('/var/spool/data', Thresholds(20 * 1024**2, 3600), uploader)
        >>> scheduler.submit(LocalDataFile('/var/spool/data/a.json', 10))
        >>> scheduler.close()
        >>> scheduler.run()  # returns after processing a.json

    Attributes:
        root_directory (str): Root of the watched tree, ends with a separator
        thresholds (Thresholds): Size and age flush triggers
        retrier (UploadRetrier): Upload-until-success wrapper around the uploader
        metrics (CloudWatchManager): Metrics collaborator
        file_queue (queue.Queue): Incoming LocalDataFile items
        archive (ArchiveBuilder): The archive currently being built
        stats (dict): Runtime statistics
    """

    def __init__(self, root_directory: str, thresholds: Thresholds, uploader,
                 metrics: CloudWatchManager = None, retrier: UploadRetrier = None,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize the scheduler with an empty archive.

        Args:
            root_directory: Directory prefix stripped from member names
            thresholds: Size and age flush triggers
            uploader: Object with upload(contents: bytes) that raises on failure
            metrics: Metrics collaborator (default: disabled CloudWatchManager)
            retrier: Custom retrier (default: UploadRetrier around uploader)
            clock: Monotonic clock shared by archive deadlines and the event loop
        """
        if not root_directory.endswith(os.sep):
            root_directory += os.sep

        self.root_directory = root_directory
        self.thresholds = thresholds
        self._clock = clock
        self._closed = threading.Event()
        self.metrics = metrics if metrics is not None else CloudWatchManager(enabled=False)
        self.retrier = retrier if retrier is not None else UploadRetrier(uploader, self.metrics)
        self.file_queue: queue.Queue = queue.Queue(maxsize=QUEUE_CAPACITY)
        self.archive = self._new_archive()

        self.stats = {
            'files_added': 0,
            'files_skipped': 0,
            'batches_uploaded': 0,
            'bytes_uploaded': 0,
            'files_deleted': 0,
            'delete_failures': 0,
        }

        logger.info(f"Root directory: {self.root_directory}")
        logger.info(f"Size threshold: {format_bytes(thresholds.size_threshold)}")
        logger.info(f"Age threshold: {thresholds.age_threshold} seconds")

    def _new_archive(self) -> ArchiveBuilder:
        return ArchiveBuilder(
            self.root_directory,
            self.thresholds.age_threshold,
            clock=self._clock,
            metrics=self.metrics,
        )

    def submit(self, data_file: LocalDataFile):
        """Queue a file for batching. Safe to call from any thread."""
        self.file_queue.put(data_file)

    def close(self):
        """
        Signal shutdown. Never blocks.

        Files submitted before this call are still processed; run() returns
        once they are. If the queue is full the shutdown marker is not
        queued and run() stops as soon as the queue has been drained.
        """
        self._closed.set()
        try:
            self.file_queue.put_nowait(_SHUTDOWN)
        except queue.Full:
            logger.warning("File queue full, stopping once queued files are processed")

    def _next_event(self):
        """Block until a queued item arrives or the archive deadline passes."""
        deadline = self.archive.deadline
        if deadline is not None and deadline <= self._clock():
            return _DEADLINE

        if self._closed.is_set():
            try:
                return self.file_queue.get_nowait()
            except queue.Empty:
                return _SHUTDOWN

        timeout = None if deadline is None else max(0.0, deadline - self._clock())
        try:
            return self.file_queue.get(timeout=timeout)
        except queue.Empty:
            return _DEADLINE

    def run(self):
        """
        Process events until close() is called.

        An archive that is still open at shutdown is discarded without
        uploading. Its source files are left on disk.

        Raises:
            ArchiveWriteError: If the archive writers fail (unrecoverable)
        """
        logger.info("Batch scheduler started")

        while True:
            event = self._next_event()

            if event is _SHUTDOWN:
                break
            elif event is _DEADLINE:
                logger.info(
                    f"Archive age threshold reached "
                    f"({len(self.archive.members)} files, {format_bytes(self.archive.current_size())})"
                )
                self.flush()
            else:
                self.add(event)

        if not self.archive.is_empty():
            logger.warning(
                f"Shutting down with {len(self.archive.members)} files in an unsent archive "
                f"(files remain on disk)"
            )
        logger.info("Batch scheduler stopped")

    def add(self, data_file: LocalDataFile):
        """Add one file to the live archive and flush if it is now too big."""
        if not self.archive.add(data_file):
            self.stats['files_skipped'] += 1
            return

        self.stats['files_added'] += 1

        size = self.archive.current_size()
        if size > self.thresholds.size_threshold:
            logger.info(
                f"Archive size threshold exceeded "
                f"({format_bytes(size)} > {format_bytes(self.thresholds.size_threshold)})"
            )
            self.flush()

    def flush(self):
        """
        Seal, upload and clean up the live archive, then start a new one.

        Blocks until the upload succeeds.
        """
        if self.archive.is_empty():
            logger.warning("flush called on an empty archive, nothing to do")
            return

        sealed = self.archive.seal()
        logger.info(
            f"Uploading batch: {len(sealed.members)} files, {format_bytes(sealed.size)}"
        )

        self.retrier.upload_until_success(sealed.contents)

        self.stats['batches_uploaded'] += 1
        self.stats['bytes_uploaded'] += sealed.size
        self.metrics.record_batch_uploaded(sealed.size, len(sealed.members))
        logger.info(f"Batch uploaded: {len(sealed.members)} files")

        self._delete_members(sealed.members)
        self.archive = self._new_archive()
        self.metrics.publish_metrics()

    def _delete_members(self, members: Iterable[LocalDataFile]):
        """Best-effort removal of uploaded source files."""
        for data_file in members:
            logger.debug(f"Removing {data_file.absolute_path}")
            try:
                os.remove(data_file.absolute_path)
                self.stats['files_deleted'] += 1
            except OSError as e:
                logger.error(f"Failed to remove {data_file.absolute_path} (error: {e})")
                self.stats['delete_failures'] += 1
                self.metrics.record_delete_failure()

    def get_statistics(self) -> dict:
        """Snapshot of runtime statistics."""
        return dict(self.stats)
