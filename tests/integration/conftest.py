# tests/integration/conftest.py
"""
Fixtures for integration tests (mocked AWS)
These tests verify components work together with mocked external services
"""

import io
from unittest.mock import Mock, patch

import pytest
import yaml
from botocore.exceptions import ClientError


@pytest.fixture
def spool_dir(temp_dir):
    """Root directory watched by the system under test"""
    root = temp_dir / "spool"
    root.mkdir()
    return root


@pytest.fixture
def config_factory(temp_dir, spool_dir):
    """Factory writing a system config file with test-friendly thresholds"""
    def _make(**archive_overrides) -> str:
        archive = {"size_threshold": "10MB", "age_threshold_seconds": 1}
        archive.update(archive_overrides)
        config = {
            "node_name": "test-node",
            "root_directory": str(spool_dir),
            "archive": archive,
            "s3": {"bucket": "test-bucket", "region": "us-east-1", "key_prefix": "batches"},
            "monitor": {"file_stable_seconds": 0.2, "scan_existing_files": True},
            "monitoring": {"cloudwatch_enabled": False},
        }
        config_file = temp_dir / "config.yaml"
        config_file.write_text(yaml.safe_dump(config))
        return str(config_file)

    return _make


@pytest.fixture
def uploaded_payloads():
    """Archive bytes captured from upload_fileobj calls, in order"""
    return []


@pytest.fixture
def mock_s3_client(uploaded_payloads):
    """Mock S3 client that records every uploaded payload"""
    mock = Mock()

    # Simulate object NOT in S3 (new upload)
    mock.head_object.side_effect = ClientError({"Error": {"Code": "NotFound"}}, "head_object")

    def _capture(fileobj: io.BytesIO, bucket, key, **kwargs):
        uploaded_payloads.append(fileobj.getvalue())

    mock.upload_fileobj.side_effect = _capture
    return mock


@pytest.fixture
def mock_aws(mock_s3_client, monkeypatch):
    """Route the uploader's boto3 session to the mock S3 client"""
    monkeypatch.delenv("AWS_ENDPOINT_URL", raising=False)
    with patch("batch_pusher.upload_manager.boto3.session.Session") as mock_session:
        mock_session.return_value.client.return_value = mock_s3_client
        yield mock_s3_client
