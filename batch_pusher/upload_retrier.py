#!/usr/bin/env python3
"""
Upload Retrier for Batch Pusher
Calls the uploader until it succeeds, with exponential backoff and jitter

Wait sequence: 0.1, 0.2, 0.4, ... seconds, doubling after each failure.
Once the wait would exceed the ceiling (5 minutes) it is redrawn uniformly
from [ceiling, ceiling + 60s) for every further retry. There is no retry
limit and no cancellation.
"""

import logging
import random
import time

from batch_pusher.cloudwatch_manager import CloudWatchManager

logger = logging.getLogger(__name__)

INITIAL_BACKOFF_SECONDS = 0.1
MAX_BACKOFF_SECONDS = 5 * 60
BACKOFF_JITTER_SECONDS = 60


class UploadRetrier:
    """
    Blocks until an upload succeeds.

    The uploader is any object with ``upload(contents: bytes)`` that raises
    on failure. It is called with identical bytes on every attempt.

    Example:
        >>> retrier = UploadRetrier(S3Uploader('bucket', 'us-east-1', 'pusher-01'))
        >>> retrier.upload_until_success(sealed.contents)

    Attributes:
        uploader: Uploader capability
        metrics (CloudWatchManager): Receives retry and max-backoff counts
        initial_backoff (float): First wait in seconds
        max_backoff (float): Backoff ceiling in seconds
        jitter (float): Width of the random range above the ceiling
        label (str): Function label attached to metrics and log lines
    """

    def __init__(self, uploader, metrics: CloudWatchManager = None,
                 initial_backoff: float = INITIAL_BACKOFF_SECONDS,
                 max_backoff: float = MAX_BACKOFF_SECONDS,
                 jitter: float = BACKOFF_JITTER_SECONDS,
                 label: str = 'upload'):
        if initial_backoff <= 0:
            raise ValueError(f"initial_backoff must be > 0, got {initial_backoff}")
        if max_backoff < 2 * initial_backoff:
            raise ValueError("max_backoff must be at least twice initial_backoff")

        self.uploader = uploader
        self.metrics = metrics if metrics is not None else CloudWatchManager(enabled=False)
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.jitter = jitter
        self.label = label

    def _jittered_ceiling(self) -> float:
        return self.max_backoff + random.random() * self.jitter

    def upload_until_success(self, contents: bytes) -> int:
        """
        Upload contents, retrying forever on failure.

        Args:
            contents: Sealed archive payload

        Returns:
            int: Number of retries that were needed (0 if the first call succeeded)
        """
        wait = self.initial_backoff
        retries = 0

        while True:
            try:
                self.uploader.upload(contents)
                break
            except Exception as e:
                if wait > self.max_backoff:
                    wait = self._jittered_ceiling()
                    logger.warning(f"Maximum {self.label} retry backoff has been reached")
                    self.metrics.record_max_backoff(self.label)

                logger.warning(
                    f"Call to {self.label} failed (error: {e}), "
                    f"will retry after {wait:.1f}s"
                )
                self.metrics.record_retry(self.label)
                retries += 1
                time.sleep(wait)
                wait *= 2

        if retries:
            logger.info(f"Call to {self.label} succeeded after {retries} retries")
        return retries
