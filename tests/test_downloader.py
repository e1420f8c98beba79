"""End-to-end tests of the parallel range downloader."""

import asyncio
from dataclasses import replace

from clouddisk.file.chunker import plan_ranges
from clouddisk.file.digest import digest_bytes
from clouddisk.transfer.downloader import ParallelDownloader
from clouddisk.transfer.pool import FailureKind, RangeFailure, TransferRequest
from clouddisk.transfer.protocol import Command

from support import FAST_POLICY, running_server, store


def test_parallel_download_matches_bit_for_bit(data_dir, local_dir):
    data = bytes(range(256)) * 4096  # 1,048,576 bytes
    target = local_dir / "nested" / "copy.bin"
    updates = []

    async def scenario():
        async with running_server(data_dir) as (server, client):
            store(server, "big.bin", data)
            return await client.download_parallel(
                "big.bin", target, lambda p: updates.append(p.phase)
            )

    outcome = asyncio.run(scenario())
    assert outcome.success
    assert outcome.digest_match is True
    assert outcome.artifact == str(target)
    assert [r.range for r in outcome.results] == plan_ranges(len(data), 5)
    assert outcome.bytes_transferred == len(data)
    assert target.read_bytes() == data
    assert not list(target.parent.glob(".copy.bin.part*"))
    assert updates[-1] == 'complete'


def test_empty_file(data_dir, local_dir):
    target = local_dir / "empty"

    async def scenario():
        async with running_server(data_dir) as (server, client):
            store(server, "empty", b"")
            return await client.download_parallel("empty", target)

    outcome = asyncio.run(scenario())
    assert outcome.success
    assert outcome.results == []
    assert target.read_bytes() == b""


def test_missing_remote_file(data_dir, local_dir):
    target = local_dir / "out"

    async def scenario():
        async with running_server(data_dir) as (server, client):
            return await client.download_parallel("missing.bin", target)

    outcome = asyncio.run(scenario())
    assert not outcome.success
    assert outcome.failure is FailureKind.NOT_FOUND
    assert outcome.results == []
    assert not target.exists()


def test_unreachable_server_is_metadata_failure(data_dir, local_dir):
    async def scenario():
        async with running_server(data_dir) as (server, client):
            port = server.port
        downloader = ParallelDownloader('127.0.0.1', port, FAST_POLICY)
        return await downloader.download("any", local_dir / "out")

    outcome = asyncio.run(scenario())
    assert outcome.failure is FailureKind.METADATA


def test_failing_range_fails_transfer(data_dir, local_dir):
    data = bytes(range(256)) * 400
    ranges = plan_ranges(len(data), 5)
    target = local_dir / "out.bin"
    attempts = []

    async def scenario():
        async with running_server(data_dir) as (server, client):
            store(server, "file.bin", data)

            async def flaky(conn):
                remote_path = await conn.read_string()
                start = await conn.read_long()
                length = await conn.read_long()
                if start == ranges[2].start:
                    # Close without sending a byte
                    attempts.append(start)
                    return
                await server.serve_range(remote_path, start, length, conn)

            server.set_handler(Command.RANGE_DOWNLOAD, flaky)
            return await client.download_parallel("file.bin", target)

    outcome = asyncio.run(scenario())
    assert outcome.success is False
    assert outcome.failure is FailureKind.INCOMPLETE
    assert isinstance(outcome.results[2].outcome, RangeFailure)
    assert outcome.results[2].outcome.attempts == 3
    assert len(attempts) == 3
    assert all(r.ok for i, r in enumerate(outcome.results) if i != 2)
    assert outcome.artifact is None
    assert not target.exists()
    assert not list(local_dir.glob(".out.bin.part*"))


def test_transient_range_failure_recovers(data_dir, local_dir):
    data = bytes(range(256)) * 100
    ranges = plan_ranges(len(data), 5)
    target = local_dir / "out.bin"
    failures = []

    async def scenario():
        async with running_server(data_dir) as (server, client):
            store(server, "file.bin", data)

            async def once_broken(conn):
                remote_path = await conn.read_string()
                start = await conn.read_long()
                length = await conn.read_long()
                if start == ranges[1].start and not failures:
                    failures.append(start)
                    # Half the range, then hang up
                    await server.serve_range(remote_path, start, length // 2, conn)
                    return
                await server.serve_range(remote_path, start, length, conn)

            server.set_handler(Command.RANGE_DOWNLOAD, once_broken)
            return await client.download_parallel("file.bin", target)

    outcome = asyncio.run(scenario())
    assert outcome.success
    assert failures == [ranges[1].start]
    assert target.read_bytes() == data


def test_corrupted_digest_keeps_artifact(data_dir, local_dir):
    data = b"the quick brown fox " * 1000
    target = local_dir / "fox.txt"

    async def scenario():
        async with running_server(data_dir) as (server, client):
            store(server, "fox.txt", data)
            downloader = ParallelDownloader('127.0.0.1', server.port, FAST_POLICY)
            request = TransferRequest(
                path="fox.txt", size=len(data), digest=digest_bytes(b"not the fox")
            )
            return await downloader.download_request(request, target)

    outcome = asyncio.run(scenario())
    assert outcome.success is False
    assert outcome.digest_match is False
    assert outcome.failure is FailureKind.INTEGRITY
    assert outcome.artifact == str(target)
    assert target.read_bytes() == data


def test_server_sees_at_most_cap_connections(data_dir, local_dir):
    data = bytes(range(256)) * 200
    target = local_dir / "out.bin"
    active = 0
    peak = 0

    async def scenario():
        async with running_server(data_dir) as (server, client):
            store(server, "file.bin", data)

            async def slow(conn):
                nonlocal active, peak
                active += 1
                peak = max(peak, active)
                try:
                    remote_path = await conn.read_string()
                    start = await conn.read_long()
                    length = await conn.read_long()
                    await asyncio.sleep(0.05)
                finally:
                    active -= 1
                await server.serve_range(remote_path, start, length, conn)

            server.set_handler(Command.RANGE_DOWNLOAD, slow)
            policy = replace(FAST_POLICY, worker_count=8, concurrency_cap=3)
            return await client.download_parallel("file.bin", target, policy=policy)

    outcome = asyncio.run(scenario())
    assert outcome.success
    assert len(outcome.results) == 8
    assert 1 <= peak <= 3


def test_global_deadline_fails_hung_transfer(data_dir, local_dir):
    data = bytes(range(256)) * 40
    ranges = plan_ranges(len(data), 5)
    target = local_dir / "out.bin"

    async def scenario():
        release = asyncio.Event()
        async with running_server(data_dir) as (server, client):
            store(server, "file.bin", data)

            async def hang_on_last(conn):
                remote_path = await conn.read_string()
                start = await conn.read_long()
                length = await conn.read_long()
                if start == ranges[-1].start:
                    await release.wait()
                    return
                await server.serve_range(remote_path, start, length, conn)

            server.set_handler(Command.RANGE_DOWNLOAD, hang_on_last)
            policy = replace(
                FAST_POLICY, per_attempt_timeout=30.0, global_deadline=0.5
            )
            try:
                return await client.download_parallel("file.bin", target, policy=policy)
            finally:
                release.set()

    outcome = asyncio.run(scenario())
    assert outcome.failure is FailureKind.INCOMPLETE
    assert outcome.results[-1].outcome == RangeFailure("timeout", 1)
    assert not target.exists()


def test_stalled_stat_reply_is_metadata_failure(data_dir, local_dir):
    target = local_dir / "out.bin"

    async def scenario():
        release = asyncio.Event()
        async with running_server(data_dir) as (server, client):
            store(server, "file.bin", b"payload")

            async def never_answer(conn):
                await conn.read_string()
                await release.wait()

            server.set_handler(Command.STAT, never_answer)
            policy = replace(
                FAST_POLICY, dial_timeout=0.5, per_attempt_timeout=0.3,
                global_deadline=0.5,
            )
            try:
                return await asyncio.wait_for(
                    client.download_parallel("file.bin", target, policy=policy), 5
                )
            finally:
                release.set()

    outcome = asyncio.run(scenario())
    assert outcome.failure is FailureKind.METADATA
    assert outcome.request is None
    assert "No STAT reply" in outcome.error
    assert not target.exists()


def test_incomplete_download_keeps_existing_file(data_dir, local_dir):
    data = bytes(range(256)) * 400
    ranges = plan_ranges(len(data), 5)
    target = local_dir / "out.bin"
    target.write_bytes(b"old")

    async def scenario():
        async with running_server(data_dir) as (server, client):
            store(server, "file.bin", data)

            async def drop_third(conn):
                remote_path = await conn.read_string()
                start = await conn.read_long()
                length = await conn.read_long()
                if start == ranges[2].start:
                    return
                await server.serve_range(remote_path, start, length, conn)

            server.set_handler(Command.RANGE_DOWNLOAD, drop_third)
            return await client.download_parallel("file.bin", target)

    outcome = asyncio.run(scenario())
    assert outcome.failure is FailureKind.INCOMPLETE
    assert target.read_bytes() == b"old"
    assert not list(local_dir.glob(".out.bin.part*"))
