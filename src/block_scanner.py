#!/usr/bin/env python3
"""
Chunked Block Range Scanner

Splits an inclusive block range into sub-ranges small enough for provider
log limits, fetches each sub-range with bounded linear backoff and flattens
the results in block order.

Sub-ranges are fetched sequentially unless ``max_workers`` is raised, in which
case fetches run on a thread pool gated by a shared requests-per-second
limiter. Results are placed by chunk position, so the output order never
depends on arrival order.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_SECONDS = 1.0


class MalformedResponseError(ValueError):
    """An RPC response that cannot be decoded. Retrying it is pointless."""


class ScanError(Exception):
    """A sub-range fetch kept failing after the whole retry budget"""

    def __init__(self, block_range: "BlockRange", attempts: int, last_error: Exception):
        self.block_range = block_range
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Failed to fetch blocks {block_range.from_block}-{block_range.to_block} "
            f"after {attempts} attempts: {last_error}"
        )


@dataclass(frozen=True)
class BlockRange:
    """Inclusive block range. ``from_block > to_block`` is an empty range."""

    from_block: int
    to_block: int

    def __post_init__(self):
        if self.from_block < 0 or self.to_block < 0:
            raise ValueError(f"Block numbers must be non-negative: {self.from_block}-{self.to_block}")

    @property
    def is_empty(self) -> bool:
        return self.from_block > self.to_block

    def __len__(self) -> int:
        if self.is_empty:
            return 0
        return self.to_block - self.from_block + 1


def split_range(block_range: BlockRange, chunk_size: int) -> List[BlockRange]:
    """Split into consecutive sub-ranges of at most ``chunk_size`` blocks"""
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be a positive integer, got {chunk_size}")

    chunks = []
    current_from = block_range.from_block
    while current_from <= block_range.to_block:
        current_to = min(current_from + chunk_size - 1, block_range.to_block)
        chunks.append(BlockRange(current_from, current_to))
        current_from = current_to + 1
    return chunks


class RateLimiter:
    """Spaces calls to at most ``requests_per_second`` across threads"""

    def __init__(
        self,
        requests_per_second: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if requests_per_second <= 0:
            raise ValueError("requests_per_second must be positive")
        self.interval = 1.0 / requests_per_second
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_allowed = 0.0

    def acquire(self) -> None:
        with self._lock:
            now = self._clock()
            wait = max(0.0, self._next_allowed - now)
            self._next_allowed = max(now, self._next_allowed) + self.interval
        if wait > 0:
            self._sleep(wait)


def fetch_with_retry(
    block_range: BlockRange,
    fetch: Callable[[BlockRange], Iterable[T]],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> List[T]:
    """Fetch one sub-range, waiting ``attempt * base_delay`` between failed attempts"""
    last_error: Optional[Exception] = None

    for attempt in range(1, max_attempts + 1):
        try:
            return list(fetch(block_range))
        except MalformedResponseError:
            raise
        except Exception as e:
            last_error = e
            if attempt < max_attempts:
                delay = attempt * base_delay
                logger.warning(
                    f"Fetching blocks {block_range.from_block}-{block_range.to_block} failed "
                    f"(attempt {attempt}/{max_attempts}): {e}. Retrying in {delay}s"
                )
                sleep(delay)

    logger.error(
        f"Failed to fetch blocks {block_range.from_block}-{block_range.to_block} after {max_attempts} attempts"
    )
    raise ScanError(block_range, max_attempts, last_error) from last_error


def scan_range(
    block_range: BlockRange,
    chunk_size: int,
    fetch: Callable[[BlockRange], Iterable[T]],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
    max_workers: int = 1,
    requests_per_second: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> List[T]:
    """Fetch every sub-range of ``block_range`` and return one flat, block-ordered list.

    A range with ``from_block == to_block`` is scanned as a single one-block
    chunk. An empty range returns ``[]`` without calling ``fetch``. Any
    sub-range that exhausts its retries aborts the whole scan with
    ``ScanError``.
    """
    chunks = split_range(block_range, chunk_size)
    if not chunks:
        return []

    limiter = RateLimiter(requests_per_second, sleep=sleep) if requests_per_second else None

    def limited_fetch(chunk: BlockRange) -> Iterable[T]:
        if limiter is not None:
            limiter.acquire()
        return fetch(chunk)

    def fetch_chunk(chunk: BlockRange) -> List[T]:
        logger.debug(f"Scanning blocks {chunk.from_block} → {chunk.to_block}")
        return fetch_with_retry(chunk, limited_fetch, max_attempts, base_delay, sleep)

    if max_workers <= 1 or len(chunks) == 1:
        results = [fetch_chunk(chunk) for chunk in chunks]
    else:
        results = [None] * len(chunks)
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = {executor.submit(fetch_chunk, chunk): index for index, chunk in enumerate(chunks)}
            try:
                for future in as_completed(futures):
                    results[futures[future]] = future.result()
            except BaseException:
                for future in futures:
                    future.cancel()
                raise

    return [item for chunk_result in results for item in chunk_result]
