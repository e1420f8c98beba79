"""
Range Worker Pool

Design Decision: Concurrency Model
===================================

Options Considered:
1. One OS thread per range (thread pool)
   - Blocking sockets are simple
   - Retry sleeps park a pool thread, starving the other ranges
   - A global executor outlives the transfer that created it

2. asyncio task per range + semaphore
   - Sockets, timeouts and sleeps are all suspension points
   - Cancellation at a deadline is cooperative and immediate
   - Pool state lives and dies with one transfer

Decision: asyncio task per range, admission limited by a semaphore
- A RangeWorkerPool is created for one transfer and closed at its end
- The semaphore bounds *active attempts*, not tasks: a range that is
  backing off releases its slot, so sleeping never eats the cap
- Each attempt gets a fresh connection and its own timeout
- asyncio.wait() with the global deadline; stragglers are cancelled

Range Lifecycle:
```
pending -> [acquire slot] -> attempt -> [release slot] -> success
                                  |
                                  +-> failure -> sleep(attempt * base) -> retry
                                       (after retry_limit attempts: failed)
deadline reached while pending/attempting/sleeping -> cancelled -> failed("timeout")
```
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Union

from ..config import TransferPolicy
from ..errors import RETRYABLE_ERRORS
from ..file.chunker import ByteRange

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransferRequest:
    """What is being transferred: path, size and expected digest."""
    path: str
    size: int
    digest: str


@dataclass(frozen=True)
class RangeSuccess:
    bytes_written: int


@dataclass(frozen=True)
class RangeFailure:
    cause: str
    attempts: int


@dataclass(frozen=True)
class RangeResult:
    """Final result for one range, produced once after its retries end."""
    range: ByteRange
    outcome: Union[RangeSuccess, RangeFailure]

    @property
    def ok(self) -> bool:
        return isinstance(self.outcome, RangeSuccess)

    def to_dict(self) -> dict:
        data = {
            'index': self.range.index,
            'start': self.range.start,
            'end': self.range.end,
            'ok': self.ok,
        }
        if self.ok:
            data['bytes_written'] = self.outcome.bytes_written
        else:
            data['cause'] = self.outcome.cause
            data['attempts'] = self.outcome.attempts
        return data


class FailureKind(Enum):
    """Why a transfer did not succeed."""
    NOT_FOUND = 'not_found'        # the source does not exist
    METADATA = 'metadata'          # could not learn size/digest; nothing moved
    INCOMPLETE = 'incomplete'      # some ranges never completed
    REASSEMBLY = 'reassembly'      # ranges arrived but could not be merged
    INTEGRITY = 'integrity'        # bytes arrived but the digest is wrong


@dataclass
class TransferOutcome:
    """
    Terminal result of one parallel transfer.

    Either a complete success (artifact written, digest checked and
    matching) or a failure with a FailureKind. Only INTEGRITY failures
    keep an artifact, so the wrong bytes can be inspected.
    """
    request: Optional[TransferRequest]
    results: List[RangeResult] = field(default_factory=list)
    artifact: Optional[str] = None
    digest_match: Optional[bool] = None
    failure: Optional[FailureKind] = None
    error: str = ''

    @property
    def success(self) -> bool:
        return self.failure is None and self.digest_match is True

    @property
    def failed_ranges(self) -> List[RangeResult]:
        return [r for r in self.results if not r.ok]

    @property
    def bytes_transferred(self) -> int:
        return sum(r.outcome.bytes_written for r in self.results if r.ok)

    def to_dict(self) -> dict:
        return {
            'path': self.request.path if self.request else None,
            'size': self.request.size if self.request else None,
            'success': self.success,
            'artifact': self.artifact,
            'digest_match': self.digest_match,
            'failure': self.failure.value if self.failure else None,
            'error': self.error,
            'ranges': [r.to_dict() for r in self.results],
        }


@dataclass
class TransferProgress:
    """Range-level progress of one transfer, for progress callbacks."""
    total_ranges: int
    total_bytes: int
    completed_ranges: int = 0
    failed_ranges: int = 0
    bytes_transferred: int = 0
    phase: str = 'initializing'  # 'initializing', 'transferring', 'merging', 'verifying', 'complete', 'failed'
    start_time: float = field(default_factory=time.time)

    @property
    def progress(self) -> float:
        """Progress as 0.0 to 1.0."""
        if self.total_ranges == 0:
            return 1.0
        return self.completed_ranges / self.total_ranges

    @property
    def progress_percent(self) -> float:
        return self.progress * 100

    @property
    def elapsed_seconds(self) -> float:
        return time.time() - self.start_time

    def record(self, result: RangeResult):
        if result.ok:
            self.completed_ranges += 1
            self.bytes_transferred += result.outcome.bytes_written
        else:
            self.failed_ranges += 1


# Progress callback type
ProgressCallback = Callable[[TransferProgress], None]

# Performs one attempt for one range; returns the byte count moved
RangeAttempt = Callable[[ByteRange, int], Awaitable[int]]


class RangeWorkerPool:
    """
    Runs one task per range with bounded concurrency, retries and a deadline.

    Scoped to a single transfer:

        async with RangeWorkerPool(policy) as pool:
            results = await pool.run(ranges, attempt)
    """

    def __init__(self, policy: TransferPolicy, label: str = ''):
        self.policy = policy
        self.label = label
        self._slots = asyncio.Semaphore(policy.concurrency_cap)
        self._tasks: List[asyncio.Task] = []
        self._attempts: Dict[int, int] = {}

        # Concurrency accounting
        self.active = 0
        self.peak_active = 0

    async def __aenter__(self) -> 'RangeWorkerPool':
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.shutdown()

    async def shutdown(self):
        """Cancel and await any task still running."""
        leftovers = [t for t in self._tasks if not t.done()]
        for task in leftovers:
            task.cancel()
        if leftovers:
            await asyncio.gather(*leftovers, return_exceptions=True)
        self._tasks.clear()

    async def run(self, ranges: Sequence[ByteRange], attempt: RangeAttempt,
                  on_result: Optional[Callable[[RangeResult], None]] = None
                  ) -> List[RangeResult]:
        """
        Transfer every range and return one result per range, in index order.

        Ranges still running when the global deadline passes are cancelled
        and reported as RangeFailure("timeout", ...).
        """
        if not ranges:
            return []

        by_index: Dict[int, asyncio.Task] = {}
        for rng in ranges:
            task = asyncio.ensure_future(self._run_range(rng, attempt, on_result))
            by_index[rng.index] = task
            self._tasks.append(task)

        _, pending = await asyncio.wait(
            by_index.values(), timeout=self.policy.global_deadline
        )

        if pending:
            logger.warning(
                f"{self.label}: global deadline of {self.policy.global_deadline}s "
                f"reached, cancelling {len(pending)} ranges"
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        # A task may finish between the deadline and cancel(); keep its result
        results = []
        for rng in ranges:
            task = by_index[rng.index]
            if task.done() and not task.cancelled():
                results.append(task.result())
            else:
                result = RangeResult(
                    rng, RangeFailure('timeout', self._attempts.get(rng.index, 0))
                )
                if on_result:
                    on_result(result)
                results.append(result)
        return results

    async def _run_range(self, rng: ByteRange, attempt: RangeAttempt,
                         on_result: Optional[Callable[[RangeResult], None]]
                         ) -> RangeResult:
        """Retry loop for a single range."""
        policy = self.policy
        cause = ''

        for number in range(1, policy.retry_limit + 1):
            self._attempts[rng.index] = number
            try:
                async with self._slots:
                    self.active += 1
                    self.peak_active = max(self.peak_active, self.active)
                    try:
                        written = await asyncio.wait_for(
                            attempt(rng, number),
                            timeout=policy.per_attempt_timeout
                        )
                    finally:
                        self.active -= 1

                logger.debug(f"{self.label}: range {rng} done ({written} bytes)")
                result = RangeResult(rng, RangeSuccess(written))
                if on_result:
                    on_result(result)
                return result

            except asyncio.TimeoutError:
                cause = f"attempt timed out after {policy.per_attempt_timeout}s"
            except RETRYABLE_ERRORS as e:
                cause = str(e) or type(e).__name__

            logger.warning(
                f"{self.label}: range {rng} attempt {number}/{policy.retry_limit} "
                f"failed: {cause}"
            )
            if number < policy.retry_limit:
                # Slot already released; backing off does not count against the cap
                await asyncio.sleep(policy.backoff_delay(number))

        logger.error(
            f"{self.label}: range {rng} failed after {policy.retry_limit} attempts"
        )
        result = RangeResult(rng, RangeFailure(cause, policy.retry_limit))
        if on_result:
            on_result(result)
        return result
