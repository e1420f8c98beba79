"""
Range Planner

Design Decision: How to Split a File
=====================================

Options Considered:
| Strategy          | Pros                              | Cons                          |
|-------------------|-----------------------------------|-------------------------------|
| Fixed chunk size  | Even work per request             | Range count grows with size   |
| Fixed range count | One connection per worker         | Ranges grow with file size    |

Decision: Fixed range count
- The caller picks how many ranges a file is split into (worker_count)
- How many of them run at once is a separate knob (concurrency cap)
- chunk_size = ceil(total_size / worker_count); the last range takes the
  remainder, and ranges that would start at or past the end are dropped

Example (1,048,576 bytes, 5 workers, chunk_size 209,716):
```
[0, 209716) [209716, 419432) [419432, 629148) [629148, 838864) [838864, 1048576)
```
"""

from dataclasses import dataclass
from typing import List


@dataclass(frozen=True)
class ByteRange:
    """A half-open byte interval [start, end) of a file."""
    index: int
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start

    def __str__(self) -> str:
        return f"#{self.index} [{self.start}, {self.end})"


def chunk_size_for(total_size: int, worker_count: int) -> int:
    """Bytes per range: ceil(total_size / worker_count)."""
    return (total_size + worker_count - 1) // worker_count


def plan_ranges(total_size: int, worker_count: int) -> List[ByteRange]:
    """
    Split [0, total_size) into at most `worker_count` ordered ranges.

    Pure and deterministic. The ranges never overlap, leave no gaps, and
    their lengths add up to total_size. An empty file yields no ranges.

    Raises:
        ValueError: if total_size is negative or worker_count < 1
    """
    if total_size < 0:
        raise ValueError(f"total_size must be >= 0, got {total_size}")
    if worker_count < 1:
        raise ValueError(f"worker_count must be >= 1, got {worker_count}")

    chunk_size = chunk_size_for(total_size, worker_count)
    ranges = []
    for index in range(worker_count):
        start = index * chunk_size
        if start >= total_size:
            break
        end = min(start + chunk_size, total_size)
        ranges.append(ByteRange(index=index, start=start, end=end))
    return ranges
