#!/usr/bin/env python3
"""
CloudWatch Manager for Batch Pusher
Accumulates pipeline counters and publishes them as CloudWatch metrics
"""

import boto3
import logging
import os
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

CLOUDWATCH_NAMESPACE = 'BatchPusher/Upload'
METRIC_RETRIES = 'RetryCount'
METRIC_MAX_BACKOFF = 'MaxBackoffCount'
METRIC_BATCHES_UPLOADED = 'BatchCount'
METRIC_BYTES_UPLOADED = 'BytesUploaded'
METRIC_FILES_UPLOADED = 'FileCount'
METRIC_FILES_SKIPPED = 'SkippedFileCount'
METRIC_DELETE_FAILURES = 'DeleteFailureCount'
METRIC_SERVICE_STARTUP = 'ServiceStartup'


class CloudWatchManager:
    """
    Metrics collaborator for the upload pipeline.

    Components receive one instance at construction and call the record_*
    methods; nothing is registered globally. Counters accumulate in memory
    until publish_metrics() sends them to CloudWatch and resets them. A
    disabled manager only accumulates, which is what tests use.

    Metrics Published (namespace BatchPusher/Upload, dimension NodeName):
    - RetryCount / MaxBackoffCount (additional Function dimension)
    - BatchCount, BytesUploaded, FileCount
    - SkippedFileCount, DeleteFailureCount

    Example:
        >>> cw = CloudWatchManager('us-east-1', 'pusher-01', enabled=False)
        >>> cw.record_retry('upload')
        >>> cw.record_batch_uploaded(size=1024, member_count=3)
        >>> cw.publish_metrics()
    """

    def __init__(self, region: Optional[str] = None, node_name: str = '',
                 enabled: bool = True, profile_name: Optional[str] = None):
        """Initialize CloudWatch manager and verify publish permissions when enabled."""
        self.region = region
        self.node_name = node_name
        self.enabled = enabled
        self.profile_name = profile_name
        self.cw_client = None

        self.retries: Dict[str, int] = defaultdict(int)
        self.max_backoff_hits: Dict[str, int] = defaultdict(int)
        self.batches_uploaded = 0
        self.bytes_uploaded = 0
        self.files_uploaded = 0
        self.files_skipped = 0
        self.delete_failures = 0

        if not self.enabled:
            logger.info("CloudWatch disabled (enabled=False)")
            return

        try:
            endpoint_url = os.getenv('AWS_ENDPOINT_URL')

            if endpoint_url:
                logger.info(f"CloudWatch in TEST mode (endpoint: {endpoint_url})")
                self.cw_client = boto3.client(
                    'cloudwatch',
                    region_name=region,
                    endpoint_url=endpoint_url,
                    aws_access_key_id=os.getenv('AWS_ACCESS_KEY_ID', 'test'),
                    aws_secret_access_key=os.getenv('AWS_SECRET_ACCESS_KEY', 'test'),
                )
            elif profile_name:
                session = boto3.Session(profile_name=profile_name)
                self.cw_client = session.client('cloudwatch', region_name=region)
                logger.info(f"CloudWatch initialized with profile '{profile_name}' for region: {region}")
            else:
                self.cw_client = boto3.client('cloudwatch', region_name=region)
                logger.info(f"CloudWatch initialized for region: {region}")

            self.cw_client.put_metric_data(
                Namespace=CLOUDWATCH_NAMESPACE,
                MetricData=[self._metric(METRIC_SERVICE_STARTUP, 1, 'Count', datetime.now(timezone.utc))]
            )
            logger.info("CloudWatch permissions verified (startup metric published)")

        except Exception as e:
            logger.error(f"CloudWatch initialization failed: {e}")
            logger.error("="*60)
            logger.error("CRITICAL: CloudWatch is enabled but cannot publish metrics")
            logger.error(f"Region: {region}")
            logger.error("Required IAM permission: cloudwatch:PutMetricData")
            logger.error("If monitoring is optional, set monitoring.cloudwatch_enabled: false")
            logger.error("="*60)
            raise RuntimeError(f"CloudWatch initialization failed: {e}")

    def record_retry(self, label: str):
        """Record one failed call that will be retried."""
        self.retries[label] += 1

    def record_max_backoff(self, label: str):
        """Record one retry wait drawn at the jittered backoff ceiling."""
        self.max_backoff_hits[label] += 1

    def record_batch_uploaded(self, size: int, member_count: int):
        """Record a successfully uploaded archive."""
        self.batches_uploaded += 1
        self.bytes_uploaded += size
        self.files_uploaded += member_count
        logger.debug(f"Recorded batch: {member_count} files, {size} bytes")

    def record_file_skipped(self):
        self.files_skipped += 1

    def record_delete_failure(self):
        self.delete_failures += 1

    def _metric(self, name: str, value, unit: str, timestamp: datetime,
                function: Optional[str] = None) -> dict:
        dimensions = [{'Name': 'NodeName', 'Value': self.node_name}]
        if function:
            dimensions.append({'Name': 'Function', 'Value': function})
        return {
            'MetricName': name,
            'Value': value,
            'Unit': unit,
            'Timestamp': timestamp,
            'Dimensions': dimensions,
        }

    def _collect_metrics(self) -> List[dict]:
        timestamp = datetime.now(timezone.utc)
        metrics = []

        for label, count in self.retries.items():
            if count > 0:
                metrics.append(self._metric(METRIC_RETRIES, count, 'Count', timestamp, label))

        for label, count in self.max_backoff_hits.items():
            if count > 0:
                metrics.append(self._metric(METRIC_MAX_BACKOFF, count, 'Count', timestamp, label))

        counters = [
            (METRIC_BATCHES_UPLOADED, self.batches_uploaded, 'Count'),
            (METRIC_BYTES_UPLOADED, self.bytes_uploaded, 'Bytes'),
            (METRIC_FILES_UPLOADED, self.files_uploaded, 'Count'),
            (METRIC_FILES_SKIPPED, self.files_skipped, 'Count'),
            (METRIC_DELETE_FAILURES, self.delete_failures, 'Count'),
        ]
        for name, value, unit in counters:
            if value > 0:
                metrics.append(self._metric(name, value, unit, timestamp))

        return metrics

    def _reset(self):
        self.retries.clear()
        self.max_backoff_hits.clear()
        self.batches_uploaded = 0
        self.bytes_uploaded = 0
        self.files_uploaded = 0
        self.files_skipped = 0
        self.delete_failures = 0

    def publish_metrics(self):
        """Publish accumulated metrics to CloudWatch and reset accumulators."""
        if not self.enabled:
            logger.debug("CloudWatch disabled, skipping publish")
            return

        if self.cw_client is None:
            logger.error("CloudWatch client not initialized, cannot publish metrics")
            return

        try:
            metrics = self._collect_metrics()
            if metrics:
                self.cw_client.put_metric_data(
                    Namespace=CLOUDWATCH_NAMESPACE,
                    MetricData=metrics
                )
                logger.info(f"Published {len(metrics)} metrics to CloudWatch")
                self._reset()

        except Exception as e:
            logger.error(f"Failed to publish CloudWatch metrics: {e}")
