#!/usr/bin/env python3
"""
Upload Manager for Batch Pusher
Uploads sealed tar.gz batches to S3

One call to upload() is one attempt. Failures raise UploadError and the
UploadRetrier decides when to try again. Repeated calls with the same bytes
target the same S3 key, and a payload that is already stored is not sent
again.
"""

import hashlib
import io
import logging
import os
from datetime import datetime, timezone
from typing import Dict, Optional

import boto3.session
from boto3.s3.transfer import TransferConfig
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

# S3 Upload Configuration
MULTIPART_THRESHOLD = 5 * 1024**2  # 5 MB (use multipart for payloads larger than this)
MULTIPART_CHUNK_SIZE = 5 * 1024**2  # 5 MB per chunk for multipart uploads
ARCHIVE_SUFFIX = '.tar.gz'
SHA256_METADATA_KEY = 'sha256'

# Error codes that will not go away by retrying; logged loudly but still retried
CONFIGURATION_ERROR_CODES = {
    'InvalidAccessKeyId': 'Invalid AWS credentials',
    'SignatureDoesNotMatch': 'Invalid AWS credentials',
    'NoSuchBucket': 'Bucket does not exist',
    'AccessDenied': 'Access denied - check IAM permissions and bucket policy',
}


class UploadError(Exception):
    """
    Raised when one upload attempt fails.

    Wraps boto3/botocore errors. Callers are expected to retry.
    """
    pass


class S3Uploader:
    """
    Uploads archive payloads to S3.

    Features:
    - S3 key: {prefix}/{node}/{YYYY-MM-DD}/{node}-{sha256[:16]}.tar.gz
    - Stable key per payload across retries
    - Skips upload when the object already exists with the same SHA-256
    - Multipart upload for payloads >5MB

    Example:
        >>> uploader = S3Uploader(bucket='data-batches', region='us-east-1', node_name='pusher-01')
        >>> uploader.upload(sealed.contents)

    Attributes:
        bucket (str): S3 bucket name
        region (str): AWS region
        node_name (str): Node identifier used in S3 keys
        key_prefix (str): Optional key prefix
        s3_client: Boto3 S3 client
    """

    def __init__(self, bucket: str, region: str, node_name: str,
                 key_prefix: Optional[str] = None, profile_name: Optional[str] = None):
        """
        Initialize uploader and create the S3 client.

        Args:
            bucket: S3 bucket name
            region: AWS region (e.g., 'us-east-1', 'cn-north-1')
            node_name: Node identifier for S3 keys
            key_prefix: Optional prefix prepended to every key
            profile_name: AWS profile name (default: None uses default credentials chain)
        """
        self.bucket = bucket
        self.region = region
        self.node_name = node_name
        self.key_prefix = key_prefix.strip('/') if key_prefix else ''

        # Keys of payloads that have not been uploaded yet, by SHA-256
        self._pending_keys: Dict[str, str] = {}

        client_kwargs = {'region_name': region}

        if profile_name:
            session = boto3.session.Session(profile_name=profile_name)
            logger.info(f"Using AWS profile: {profile_name}")
        else:
            session = boto3.session.Session()

        # Check for LocalStack (testing)
        endpoint_url = os.getenv('AWS_ENDPOINT_URL')

        if endpoint_url:
            logger.info(f"Using custom endpoint: {endpoint_url}")
            client_kwargs['endpoint_url'] = endpoint_url
            client_kwargs['aws_access_key_id'] = os.getenv('AWS_ACCESS_KEY_ID', 'test')
            client_kwargs['aws_secret_access_key'] = os.getenv('AWS_SECRET_ACCESS_KEY', 'test')
        elif region.startswith('cn-'):
            # AWS China uses different endpoints
            logger.info(f"Using AWS China endpoint for region: {region}")
            client_kwargs['endpoint_url'] = f'https://s3.{region}.amazonaws.com.cn'

        self.s3_client = session.client('s3', **client_kwargs)
        self.transfer_config = TransferConfig(
            multipart_threshold=MULTIPART_THRESHOLD,
            multipart_chunksize=MULTIPART_CHUNK_SIZE
        )

        logger.info(f"Initialized for bucket: {bucket}")
        logger.info(f"Node name: {node_name}")

    def build_s3_key(self, digest: str, when: Optional[datetime] = None) -> str:
        """
        Build the S3 key for a payload.

        Args:
            digest: Hex SHA-256 of the payload
            when: Timestamp for the date component (default: now, UTC)

        Returns:
            str: S3 object key

        Example:
            >>> uploader.build_s3_key('ab12...', datetime(2025, 10, 20))
            'batches/pusher-01/2025-10-20/pusher-01-ab12....tar.gz'
        """
        when = when or datetime.now(timezone.utc)
        date_str = when.strftime("%Y-%m-%d")
        name = f"{self.node_name}-{digest[:16]}{ARCHIVE_SUFFIX}"
        parts = [self.key_prefix, self.node_name, date_str, name]
        return '/'.join(part for part in parts if part)

    def upload(self, contents: bytes):
        """
        Upload a payload to S3 (single attempt).

        Args:
            contents: Sealed archive bytes

        Raises:
            UploadError: If S3 rejects the upload or cannot be reached
        """
        digest = hashlib.sha256(contents).hexdigest()
        s3_key = self._pending_keys.setdefault(digest, self.build_s3_key(digest))

        try:
            if self.is_uploaded(s3_key, digest):
                logger.info(f"Batch already in S3, skipping: s3://{self.bucket}/{s3_key}")
            else:
                self.s3_client.upload_fileobj(
                    io.BytesIO(contents),
                    self.bucket,
                    s3_key,
                    ExtraArgs={
                        'ContentType': 'application/gzip',
                        'Metadata': {SHA256_METADATA_KEY: digest},
                    },
                    Config=self.transfer_config
                )
                logger.info(f"SUCCESS: {len(contents)} bytes -> s3://{self.bucket}/{s3_key}")

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', '')
            error_message = e.response.get('Error', {}).get('Message', str(e))

            if error_code in CONFIGURATION_ERROR_CODES:
                logger.error(
                    f"{CONFIGURATION_ERROR_CODES[error_code]} ({error_code}) for bucket "
                    f"'{self.bucket}' - manual intervention required, upload will keep retrying"
                )
            raise UploadError(f"S3 upload failed: {error_code} - {error_message}") from e

        except BotoCoreError as e:
            # Network/connection errors
            raise UploadError(f"Network error: {e}") from e

        self._pending_keys.pop(digest, None)

    def is_uploaded(self, s3_key: str, digest: str) -> bool:
        """
        Check whether the object exists in S3 with the same content hash.

        Any HEAD failure other than a missing object (e.g. 403 when the
        credentials may put but not get) counts as "not uploaded", so the
        upload itself still runs.

        Returns:
            bool: True if the object exists and its sha256 metadata matches
        """
        try:
            response = self.s3_client.head_object(Bucket=self.bucket, Key=s3_key)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', '')
            if error_code not in ('404', 'NoSuchKey', 'NotFound'):
                logger.warning(
                    f"Could not check s3://{self.bucket}/{s3_key} ({error_code}), uploading anyway"
                )
            return False

        stored_digest = response.get('Metadata', {}).get(SHA256_METADATA_KEY)
        if stored_digest == digest:
            return True

        logger.warning(
            f"Object exists with different content: s3://{self.bucket}/{s3_key} "
            f"(stored sha256: {stored_digest}), overwriting"
        )
        return False

