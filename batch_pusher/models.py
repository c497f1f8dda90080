#!/usr/bin/env python3
"""
Data model for Batch Pusher
Values passed between file discovery, the batch scheduler and the uploader
"""

import time
from dataclasses import dataclass, field
from typing import Tuple


@dataclass(frozen=True)
class LocalDataFile:
    """
    A data file discovered on disk and handed to the batch scheduler.

    Attributes:
        absolute_path (str): Absolute path of the file
        size (int): Size in bytes when the file was discovered
        discovered_at (float): Unix timestamp of discovery
    """

    absolute_path: str
    size: int = 0
    discovered_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class Thresholds:
    """Flush triggers: compressed archive size in bytes and archive age in seconds."""

    size_threshold: int
    age_threshold: float

    def __post_init__(self):
        if self.size_threshold <= 0:
            raise ValueError(f"size_threshold must be > 0, got {self.size_threshold}")
        if self.age_threshold <= 0:
            raise ValueError(f"age_threshold must be > 0, got {self.age_threshold}")


@dataclass(frozen=True)
class SealedArchive:
    """A closed tar.gz payload and the source files it contains, in member order."""

    contents: bytes
    members: Tuple[LocalDataFile, ...]

    @property
    def size(self) -> int:
        return len(self.contents)
