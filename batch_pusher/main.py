#!/usr/bin/env python3
"""
Batch Pusher - Main Application
Integrates all components for production use

File Monitor discovers completed files under the root directory and hands
them to the Batch Scheduler, which packs them into tar.gz batches, uploads
each batch to S3 until it succeeds, and deletes the uploaded files.
"""

import argparse
import logging
import signal
import sys

from batch_pusher.archive_builder import ArchiveWriteError
from batch_pusher.batch_scheduler import BatchScheduler
from batch_pusher.cloudwatch_manager import CloudWatchManager
from batch_pusher.config_manager import ConfigManager, DEFAULT_FILE_STABLE_SECONDS
from batch_pusher.file_monitor import FileMonitor
from batch_pusher.upload_manager import S3Uploader
from batch_pusher.utils import format_bytes

logger = logging.getLogger(__name__)


class BatchPusherSystem:
    """
    Main system coordinator.

    Coordinates:
    - Configuration management (config_manager)
    - File discovery (file_monitor)
    - Batching, upload retry and cleanup (batch_scheduler)
    - S3 transport (upload_manager)
    - Metrics (cloudwatch_manager)

    The batch scheduler runs in the thread that calls run(); discovery runs
    in watchdog and checker threads and only talks to the scheduler queue.

    Example:
        >>> system = BatchPusherSystem('/etc/batch-pusher/config.yaml')
        >>> system.start()
        >>> system.run()  # blocks until stop()
    """

    def __init__(self, config_path: str):
        """
        Load configuration and initialize all components.

        Does not start monitoring - call start() and run().

        Raises:
            FileNotFoundError: If config file doesn't exist
            ConfigValidationError: If config is invalid
        """
        logger.info("Initializing Batch Pusher...")

        self.config = ConfigManager(config_path)
        node_name = self.config.get('node_name')
        region = self.config.get('s3.region')

        self.metrics = CloudWatchManager(
            region=region,
            node_name=node_name,
            enabled=self.config.get('monitoring.cloudwatch_enabled', False),
            profile_name=self.config.get('s3.profile')
        )

        self.uploader = S3Uploader(
            bucket=self.config.get('s3.bucket'),
            region=region,
            node_name=node_name,
            key_prefix=self.config.get('s3.key_prefix'),
            profile_name=self.config.get('s3.profile')
        )

        self.scheduler = BatchScheduler(
            root_directory=self.config.get_root_directory(),
            thresholds=self.config.get_thresholds(),
            uploader=self.uploader,
            metrics=self.metrics
        )

        self.file_monitor = FileMonitor(
            root_directory=self.config.get_root_directory(),
            callback=self.scheduler.submit,
            stability_seconds=self.config.get('monitor.file_stable_seconds', DEFAULT_FILE_STABLE_SECONDS),
            scan_existing=self.config.get('monitor.scan_existing_files', True)
        )

        self._running = False
        logger.info("Initialization complete")

    def start(self):
        """
        Start file discovery.

        Note:
            Safe to call multiple times - will not start if already running
        """
        if self._running:
            logger.warning("Already running")
            return

        logger.info("Starting Batch Pusher...")
        self.file_monitor.start()
        self._running = True
        logger.info("System started successfully")

    def run(self):
        """
        Run the batch scheduler in the calling thread until stop() is called.

        Raises:
            ArchiveWriteError: If the archive writers fail (unrecoverable)
        """
        self.scheduler.run()
        self._print_statistics()

    def stop(self):
        """
        Stop discovery and signal the scheduler to finish.

        Files already queued are still batched; the open archive is not
        uploaded and its files stay on disk for the next run.
        """
        if not self._running:
            return

        logger.info("Shutting down...")
        self._running = False
        self.file_monitor.stop()
        self.scheduler.close()

    def _print_statistics(self):
        stats = self.scheduler.get_statistics()
        logger.info("=" * 50)
        logger.info("System Statistics")
        logger.info("=" * 50)
        logger.info(f"Files added:        {stats['files_added']}")
        logger.info(f"Files skipped:      {stats['files_skipped']}")
        logger.info(f"Batches uploaded:   {stats['batches_uploaded']}")
        logger.info(f"Data uploaded:      {format_bytes(stats['bytes_uploaded'])}")
        logger.info(f"Files deleted:      {stats['files_deleted']}")
        logger.info(f"Delete failures:    {stats['delete_failures']}")
        logger.info("=" * 50)


system = None


def signal_handler(signum, frame):
    """
    Handle shutdown signals (SIGTERM, SIGINT).

    Stops discovery and exits. An upload that is being retried is abandoned;
    its files are still on disk and will be picked up on restart.
    """
    logger.info(f"Received signal {signum}")
    if system is not None:
        system.stop()
    sys.exit(0)


def main():
    """
    Main entry point for Batch Pusher.

    Command-line arguments:
        --config: Path to configuration file
        --test-config: Test configuration and exit
        --log-level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    global system

    parser = argparse.ArgumentParser(description='Batch Pusher - batch local files into tar.gz and upload to S3')
    parser.add_argument(
        '--config',
        default='/etc/batch-pusher/config.yaml',
        help='Path to configuration file'
    )
    parser.add_argument(
        '--test-config',
        action='store_true',
        help='Test configuration and exit'
    )
    parser.add_argument(
        '--log-level',
        default='INFO',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Logging level'
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format='%(asctime)s [%(name)s] [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    if args.test_config:
        try:
            config = ConfigManager(args.config)
            thresholds = config.get_thresholds()
            logger.info("Configuration valid!")
            logger.info(f"Node name: {config.get('node_name')}")
            logger.info(f"Root directory: {config.get_root_directory()}")
            logger.info(f"S3 bucket: {config.get('s3.bucket')}")
            logger.info(f"Size threshold: {format_bytes(thresholds.size_threshold)}")
            logger.info(f"Age threshold: {thresholds.age_threshold} seconds")
            sys.exit(0)
        except Exception as e:
            logger.error(f"Configuration error: {e}")
            sys.exit(1)

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        system = BatchPusherSystem(args.config)
        system.start()
        logger.info("Running... Press Ctrl+C to stop")
        system.run()

    except ArchiveWriteError as e:
        logger.critical(f"FATAL: archive writer failed, aborting: {e}")
        logger.critical("In-progress archive discarded; its source files remain on disk")
        sys.exit(1)
    except Exception as e:
        logger.exception(f"FATAL ERROR: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
