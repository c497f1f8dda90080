# tests/conftest.py
"""
Common fixtures for all test types
These are shared across unit and integration tests
"""

import os
import sys
import tempfile
import time
from pathlib import Path

import pytest

# Add project root to Python path so 'batch_pusher' can be imported
# This allows tests to run without installing the package
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))


def _wait_until(condition, timeout=10, interval=0.05, description="condition"):
    """
    Poll until condition is true or timeout expires

    Returns:
        bool: True if condition met, False if timeout
    """
    start = time.time()
    while time.time() - start < timeout:
        if condition():
            return True
        time.sleep(interval)

    elapsed = time.time() - start
    print(f"Timeout after {elapsed:.1f}s waiting for: {description}")
    return False


@pytest.fixture
def wait_until():
    """Polling helper for conditions reached by background threads"""
    return _wait_until


@pytest.fixture
def temp_dir():
    """Create temporary directory for tests (resolved, so prefixes match real paths)"""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir).resolve()


@pytest.fixture
def make_data_file(temp_dir):
    """Factory writing a data file of random (incompressible) bytes under temp_dir"""
    def _make(relative_path: str, size: int = 100, content: bytes = None) -> Path:
        path = temp_dir / relative_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content if content is not None else os.urandom(size))
        return path

    return _make
