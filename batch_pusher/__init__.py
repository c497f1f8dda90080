"""Batch Pusher - accumulate local data files into tar.gz batches and ship them to S3."""

__version__ = "1.0.0"
