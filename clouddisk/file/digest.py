"""
Content Digests

Every transfer is checked with an MD5 hex digest (32 characters), the
digest both ends of the protocol agree on. MD5 is used here to detect
corruption in transit, not for tamper resistance.
"""

import hashlib
import hmac
import logging
from pathlib import Path

import aiofiles

logger = logging.getLogger(__name__)

DIGEST_ALGORITHM = 'md5'
DIGEST_LENGTH = 32

# Read size while hashing files
HASH_BLOCK_SIZE = 256 * 1024


def new_hasher():
    return hashlib.new(DIGEST_ALGORITHM)


def digest_bytes(data: bytes) -> str:
    """Digest of an in-memory byte string."""
    return hashlib.new(DIGEST_ALGORITHM, data).hexdigest()


async def compute_file_digest(file_path: Path) -> str:
    """Digest of a file's complete contents."""
    hasher = new_hasher()

    async with aiofiles.open(file_path, 'rb') as f:
        while True:
            block = await f.read(HASH_BLOCK_SIZE)
            if not block:
                break
            hasher.update(block)

    return hasher.hexdigest()


def digests_match(actual: str, expected: str) -> bool:
    """Compare two hex digests, ignoring case."""
    return hmac.compare_digest(
        actual.lower().encode('utf-8'), expected.lower().encode('utf-8')
    )


async def verify_file(artifact_path: Path, expected_digest: str) -> bool:
    """
    Recompute the digest of a finished artifact and compare it.

    A mismatch is logged and returned as False; the artifact is left in
    place so it can be inspected.
    """
    actual = await compute_file_digest(artifact_path)
    if digests_match(actual, expected_digest):
        return True

    logger.warning(
        f"Digest mismatch for {artifact_path}: "
        f"expected {expected_digest}, got {actual}"
    )
    return False
