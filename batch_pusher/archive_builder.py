#!/usr/bin/env python3
"""
Archive Builder for Batch Pusher
Builds one in-memory tar.gz batch from local data files

Each added file becomes a tar member named by its path relative to the
root directory. The gzip stream is sync-flushed after every member so the
buffer length always equals the compressed size written so far, which the
batch scheduler compares against the size threshold.
"""

import gzip
import io
import logging
import os
import tarfile
import time
import zlib
from typing import Callable, List, Optional

from batch_pusher.models import LocalDataFile, SealedArchive

logger = logging.getLogger(__name__)

MEMBER_MODE = 0o666

# Errors raised by the tar/gzip writer stack
WRITER_ERRORS = (OSError, ValueError, tarfile.TarError, zlib.error)


class ArchiveWriteError(Exception):
    """
    Raised when writing into the archive's tar/gzip stream fails.

    The compressed stream is in an unknown state after such a failure and
    there is no safe way to keep appending to it. This error is not
    recoverable and is meant to terminate the process.
    """
    pass


class ArchiveBuilder:
    """
    One in-progress tar.gz archive held in memory.

    Writer stack: tarfile -> gzip.GzipFile -> io.BytesIO. Members are
    appended in insertion order. The deadline is armed when the first member
    is added and never changes afterwards.

    Example:
        >>> builder = ArchiveBuilder('/var/spool/data', age_threshold=3600)
        >>> builder.add(LocalDataFile('/var/spool/data/a/1.json'))
        True
        >>> builder.current_size() > 0
        True
        >>> sealed = builder.seal()
        >>> [m.absolute_path for m in sealed.members]
        ['/var/spool/data/a/1.json']

    Attributes:
        root_directory (str): Prefix stripped from member names, ends with a separator
        age_threshold (float): Seconds from first member to deadline
        members (List[LocalDataFile]): Files added so far
        deadline (float): Clock value at which the archive must be flushed, None while empty
    """

    def __init__(self, root_directory: str, age_threshold: float,
                 clock: Callable[[], float] = time.monotonic, metrics=None):
        """
        Create an empty archive.

        Args:
            root_directory: Directory whose prefix is stripped from member names
            age_threshold: Seconds between the first add and the deadline
            clock: Monotonic clock used for the deadline
            metrics: Optional metrics collaborator (records skipped files)
        """
        if not root_directory.endswith(os.sep):
            root_directory += os.sep

        self.root_directory = root_directory
        self.age_threshold = age_threshold
        self.metrics = metrics
        self._clock = clock

        self.members: List[LocalDataFile] = []
        self.deadline: Optional[float] = None
        self._sealed = False

        self._buffer = io.BytesIO()
        self._gzip_writer = gzip.GzipFile(fileobj=self._buffer, mode='wb')
        self._tar_writer = tarfile.open(fileobj=self._gzip_writer, mode='w')

    def is_empty(self) -> bool:
        return not self.members

    def current_size(self) -> int:
        """Compressed bytes written so far."""
        return self._buffer.tell()

    def member_name(self, absolute_path: str) -> str:
        """Tar member name: the absolute path with the root directory prefix removed."""
        return absolute_path.removeprefix(self.root_directory)

    def add(self, data_file: LocalDataFile) -> bool:
        """
        Append a file to the archive.

        Reads the whole file first. An unreadable file is logged and skipped:
        the archive is unchanged and the file stays on disk.

        Args:
            data_file: File to add

        Returns:
            bool: True if the file was added, False if it was skipped

        Raises:
            ArchiveWriteError: If the tar/gzip writers fail (unrecoverable)
            RuntimeError: If the archive has already been sealed
        """
        if self._sealed:
            raise RuntimeError("Cannot add to a sealed archive")

        path = data_file.absolute_path
        try:
            with open(path, 'rb') as f:
                contents = f.read()
                mtime = os.fstat(f.fileno()).st_mtime
        except OSError as e:
            logger.warning(f"Could not read {path} (error: {e}), skipping")
            if self.metrics is not None:
                self.metrics.record_file_skipped()
            return False

        tarinfo = tarfile.TarInfo(name=self.member_name(path))
        tarinfo.mode = MEMBER_MODE
        tarinfo.size = len(contents)
        tarinfo.mtime = int(mtime)

        try:
            self._tar_writer.addfile(tarinfo, io.BytesIO(contents))
            self._gzip_writer.flush(zlib.Z_SYNC_FLUSH)
        except WRITER_ERRORS as e:
            logger.critical(f"Could not write {path} into the archive (error: {e})")
            raise ArchiveWriteError(f"Archive writer failed for {path}: {e}") from e

        if not self.members:
            self.deadline = self._clock() + self.age_threshold
        self.members.append(data_file)

        logger.debug(
            f"Added {tarinfo.name} ({tarinfo.size} bytes), "
            f"archive now {self.current_size()} bytes / {len(self.members)} files"
        )
        return True

    def seal(self) -> SealedArchive:
        """
        Close the tar and gzip writers and return the finished payload.

        Raises:
            RuntimeError: If the archive is empty or already sealed
            ArchiveWriteError: If closing the writers fails
        """
        if not self.members:
            raise RuntimeError("Cannot seal an empty archive")
        if self._sealed:
            raise RuntimeError("Archive already sealed")

        try:
            self._tar_writer.close()
            self._gzip_writer.close()
        except WRITER_ERRORS as e:
            logger.critical(f"Could not close the archive writers (error: {e})")
            raise ArchiveWriteError(f"Archive writer failed on close: {e}") from e

        self._sealed = True
        return SealedArchive(contents=self._buffer.getvalue(), members=tuple(self.members))
