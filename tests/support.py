"""Helpers shared by the network tests."""

import os
from contextlib import asynccontextmanager
from pathlib import Path

from clouddisk.client import DiskClient
from clouddisk.config import Config, TransferPolicy
from clouddisk.server import DiskServer

# Retries, backoff and timeouts small enough for a test run
FAST_POLICY = TransferPolicy(
    worker_count=5,
    concurrency_cap=5,
    retry_limit=3,
    backoff_base=0.01,
    dial_timeout=2.0,
    per_attempt_timeout=5.0,
    global_deadline=20.0,
)


@asynccontextmanager
async def running_server(data_dir: Path, policy: TransferPolicy = FAST_POLICY):
    """Start a DiskServer on a free port and yield (server, client)."""
    server = DiskServer(data_dir, host='127.0.0.1', port=0)
    await server.start()
    try:
        config = Config(
            host='127.0.0.1', port=server.port, data_dir=Path(data_dir),
            list_retries=1, list_retry_delay=0.01,
        )
        yield server, DiskClient(config, policy)
    finally:
        await server.stop()


def write_random(path: Path, size: int) -> bytes:
    """Write `size` random bytes to path and return them."""
    data = os.urandom(size)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return data


def store(server: DiskServer, remote_path: str, data: bytes) -> Path:
    """Place a file directly in the server tree."""
    target = server.storage.files_dir / remote_path
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(data)
    return target
