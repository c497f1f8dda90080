#!/usr/bin/env python3
"""
File Monitor for Batch Pusher
Watches the root directory tree and reports completed data files

Uses watchdog to receive filesystem events and considers a file complete
once its size has not changed for the configured stability period.
Completed files are handed to a callback as LocalDataFile values.
"""

import logging
import os
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Tuple

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from batch_pusher.models import LocalDataFile

logger = logging.getLogger(__name__)

MAX_CHECK_INTERVAL_SECONDS = 1.0
MIN_CHECK_INTERVAL_SECONDS = 0.1


class FileMonitor:
    """
    Monitors a directory tree for completed data files using watchdog.

    A file is considered "complete" when its size hasn't changed for
    stability_seconds. Files that already exist when the monitor starts are
    scanned and tracked too, so files left behind by a previous run (not yet
    uploaded, or whose deletion failed) are picked up again.

    Architecture:
    - Watchdog Observer: Detects create/modify/move events (recursive)
    - File Tracker: Maps path to (size, time the size was last seen to change)
    - Stability Checker: Background thread that emits stable files

    Example:
        >>> monitor = FileMonitor('/var/spool/data', scheduler.submit, stability_seconds=5)
        >>> monitor.start()
        >>> # ... monitor runs in background ...
        >>> monitor.stop()

    Attributes:
        root_directory (Path): Directory tree being monitored
        callback (Callable): Receives a LocalDataFile for each completed file
        stability_seconds (float): Seconds a file must be unchanged
        scan_existing (bool): Track files already present at start
        file_tracker (dict): Maps Path to (size, timestamp)
    """

    def __init__(self,
                 root_directory: str,
                 callback: Callable[[LocalDataFile], None],
                 stability_seconds: float = 5,
                 scan_existing: bool = True):
        self.root_directory = Path(root_directory)
        self.callback = callback
        self.stability_seconds = stability_seconds
        self.scan_existing = scan_existing

        self.file_tracker: Dict[Path, Tuple[int, float]] = {}
        self._tracker_lock = threading.Lock()

        self.observer = Observer()
        self.handler = DataFileHandler(self._on_file_event)

        self._running = False
        self._stop_event = threading.Event()
        self._checker_thread = None

        logger.info(f"Initialized monitoring of {self.root_directory}")
        logger.info(f"Stability period: {stability_seconds} seconds")

    def start(self):
        """
        Start monitoring.

        Creates the root directory if needed, scans existing files (if
        enabled), then starts the watchdog observer and the stability
        checker thread.

        Note:
            Safe to call multiple times - will not start if already running
        """
        if self._running:
            logger.warning("Already running")
            return

        if not self.root_directory.exists():
            logger.warning(f"Directory does not exist: {self.root_directory}")
            logger.info(f"Creating directory: {self.root_directory}")
            self.root_directory.mkdir(parents=True, exist_ok=True)

        if self.scan_existing:
            self._scan_existing_files()
        else:
            logger.info("Startup scan disabled - only files created after startup will be batched")

        self.observer.schedule(self.handler, str(self.root_directory), recursive=True)
        self.observer.start()

        self._running = True
        self._stop_event.clear()
        self._checker_thread = threading.Thread(target=self._stability_checker, daemon=True)
        self._checker_thread.start()

        logger.info("Started monitoring")

    def stop(self):
        """
        Stop monitoring.

        Stops the observer and waits (max 2 seconds) for the checker thread.
        Files still being tracked are not reported.
        """
        if not self._running:
            return

        self._running = False
        self._stop_event.set()

        self.observer.stop()
        self.observer.join()

        if self._checker_thread:
            self._checker_thread.join(timeout=2)

        logger.info("Stopped monitoring")

    def _scan_existing_files(self):
        logger.info(f"Scanning for existing files under {self.root_directory}...")
        found = 0

        for dirpath, _, filenames in os.walk(self.root_directory):
            for filename in filenames:
                if self._on_file_event(os.path.join(dirpath, filename)):
                    found += 1

        logger.info(f"Startup scan complete: {found} files tracked")

    def _on_file_event(self, file_path: str) -> bool:
        """
        Record the current size of a file.

        Ignores directories, hidden files and files that vanished.
        Runs in watchdog's event thread (or the caller's thread during the
        startup scan).

        Returns:
            bool: True if the file is now tracked
        """
        path = Path(file_path)

        if path.name.startswith('.'):
            return False

        if not path.is_file():
            return False

        try:
            size = path.stat().st_size
        except OSError:
            return False

        with self._tracker_lock:
            previous = self.file_tracker.get(path)
            if previous is None or previous[0] != size:
                self.file_tracker[path] = (size, time.time())

        logger.debug(f"Tracking: {path} ({size} bytes)")
        return True

    def _check_interval(self) -> float:
        return max(MIN_CHECK_INTERVAL_SECONDS, min(self.stability_seconds, MAX_CHECK_INTERVAL_SECONDS))

    def _stability_checker(self):
        """Background thread that periodically checks file stability."""
        logger.info("Stability checker started")

        while self._running:
            self._check_stable_files()
            self._stop_event.wait(self._check_interval())

        logger.info("Stability checker stopped")

    def _check_stable_files(self):
        """
        Emit every tracked file whose size has been unchanged long enough.

        Files that disappeared are dropped. A size change resets the timer.
        """
        current_time = time.time()
        stable_files = []

        with self._tracker_lock:
            for file_path, (tracked_size, last_change) in list(self.file_tracker.items()):
                try:
                    current_size = file_path.stat().st_size
                except OSError:
                    del self.file_tracker[file_path]
                    logger.debug(f"File disappeared, removed from tracker: {file_path}")
                    continue

                if current_size != tracked_size:
                    self.file_tracker[file_path] = (current_size, current_time)
                    continue

                if current_time - last_change >= self.stability_seconds:
                    del self.file_tracker[file_path]
                    stable_files.append(LocalDataFile(
                        absolute_path=str(file_path.absolute()),
                        size=current_size,
                    ))

        for data_file in stable_files:
            logger.debug(f"File stable: {data_file.absolute_path} ({data_file.size} bytes)")
            try:
                self.callback(data_file)
            except Exception as e:
                logger.error(f"Callback failed for {data_file.absolute_path}: {e}")

    def get_tracked_files(self) -> List[str]:
        """Paths currently tracked but not yet stable."""
        with self._tracker_lock:
            return [str(p) for p in self.file_tracker]


class DataFileHandler(FileSystemEventHandler):
    """
    Watchdog event handler for data files.

    Forwards file create, modify and move-destination paths to a callback.
    Ignores directory events.
    """

    def __init__(self, callback: Callable[[str], bool]):
        self.callback = callback

    def on_created(self, event):
        if not event.is_directory:
            self.callback(event.src_path)

    def on_modified(self, event):
        if not event.is_directory:
            self.callback(event.src_path)

    def on_moved(self, event):
        # Files written elsewhere and renamed into place
        if not event.is_directory:
            self.callback(event.dest_path)
