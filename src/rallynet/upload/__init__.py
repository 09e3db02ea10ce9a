"""Resumable video uploads."""

from rallynet.upload.client import ResumableUploadClient
from rallynet.upload.progress import AggregateProgressTracker, ProgressReporter

__all__ = [
    "AggregateProgressTracker",
    "ProgressReporter",
    "ResumableUploadClient",
]
