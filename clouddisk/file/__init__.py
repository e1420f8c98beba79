"""
File Module - Range Planning, Digests, and Storage

This module handles the on-disk side of transfers: splitting files into
byte ranges, computing digests, and reassembling ranges atomically.
"""

from .chunker import ByteRange, plan_ranges
from .digest import compute_file_digest, digest_bytes, verify_file
from .storage import FileEntry, RangeBuffer, ServerStorage, merge_ranges

__all__ = [
    'ByteRange',
    'plan_ranges',
    'compute_file_digest',
    'digest_bytes',
    'verify_file',
    'FileEntry',
    'RangeBuffer',
    'ServerStorage',
    'merge_ranges',
]
