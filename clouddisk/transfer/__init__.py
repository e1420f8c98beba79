"""
Transfer Module - Wire Protocol and Parallel Transfers

Handles the TCP protocol and range-parallel uploads/downloads.
"""

from .protocol import Command, DiskProtocol, open_connection
from .pool import (
    FailureKind, RangeResult, RangeWorkerPool, TransferOutcome, TransferRequest,
)
from .downloader import ParallelDownloader
from .uploader import ParallelUploader

__all__ = [
    'Command',
    'DiskProtocol',
    'open_connection',
    'FailureKind',
    'RangeResult',
    'RangeWorkerPool',
    'TransferOutcome',
    'TransferRequest',
    'ParallelDownloader',
    'ParallelUploader',
]
