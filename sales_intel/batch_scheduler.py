"""
Chunked fan-out/fan-in scheduler.

Work items are cut into consecutive chunks of `width`. Every item of a chunk
is launched at once and the chunk is a barrier: the next chunk starts only
after every item of the current one produced a value or a captured failure.
A stop request is honoured only at chunk boundaries, so a chunk is never
abandoned half way.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Generic,
    List,
    Optional,
    Sequence,
    TypeVar,
)

from .errors import TransientServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class ItemOutcome(Generic[T, R]):
    """Exactly one of these per input item: a value or a captured failure."""

    item: T
    value: Optional[R] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ChunkResult(Generic[T, R]):
    """All outcomes of one chunk, plus where it sits in the run."""

    index: int  # 1-based
    total: int
    outcomes: List[ItemOutcome[T, R]]

    @property
    def succeeded(self) -> List[ItemOutcome[T, R]]:
        return [o for o in self.outcomes if o.ok]

    @property
    def failed(self) -> List[ItemOutcome[T, R]]:
        return [o for o in self.outcomes if not o.ok]


class BatchScheduler:
    """Runs an async worker over items, one fixed-width chunk at a time."""

    def __init__(
        self,
        width: int,
        delay: float = 0.0,
        timeout: Optional[float] = None,
        stop_checker: Optional[Callable[[], bool]] = None,
        name: str = "batch",
    ):
        if width < 1:
            raise ValueError(f"Concurrency width must be >= 1, got {width}")
        self.width = width
        self.delay = delay
        self.timeout = timeout
        self.stop_checker = stop_checker
        self.name = name
        self.stopped = False

    def _should_stop(self) -> bool:
        return self.stop_checker is not None and self.stop_checker()

    def chunk(self, items: Sequence[T]) -> List[List[T]]:
        """Consecutive slices of at most `width` items."""
        return [list(items[i:i + self.width]) for i in range(0, len(items), self.width)]

    async def _run_one(self, item: T, worker: Callable[[T], Awaitable[R]]) -> ItemOutcome[T, R]:
        try:
            if self.timeout is not None:
                value = await asyncio.wait_for(worker(item), timeout=self.timeout)
            else:
                value = await worker(item)
            return ItemOutcome(item=item, value=value)
        except asyncio.TimeoutError:
            return ItemOutcome(
                item=item,
                error=TransientServiceError(f"Timed out after {self.timeout}s"),
            )
        except Exception as e:
            return ItemOutcome(item=item, error=e)

    async def run_chunk(
        self,
        items: Sequence[T],
        worker: Callable[[T], Awaitable[R]],
    ) -> List[ItemOutcome[T, R]]:
        """Launch every item concurrently and wait for all of them."""
        return list(await asyncio.gather(*(self._run_one(item, worker) for item in items)))

    async def iter_chunks(
        self,
        items: Sequence[T],
        worker: Callable[[T], Awaitable[R]],
    ) -> AsyncIterator[ChunkResult[T, R]]:
        """Yield each chunk's outcomes as soon as that chunk completes.

        The caller does its per-chunk bookkeeping between yields; nothing is
        shared with the workers, which only return values.
        """
        chunks = self.chunk(items)
        total = len(chunks)

        for index, chunk_items in enumerate(chunks, start=1):
            if self._should_stop():
                self.stopped = True
                logger.info(
                    f"[{self.name}] Stop requested, skipping chunks {index}-{total} "
                    f"({sum(len(c) for c in chunks[index - 1:])} items)"
                )
                break

            logger.debug(f"[{self.name}] Chunk {index}/{total} ({len(chunk_items)} items)")
            outcomes = await self.run_chunk(chunk_items, worker)
            yield ChunkResult(index=index, total=total, outcomes=outcomes)

            if self.delay and index < total:
                await asyncio.sleep(self.delay)

    async def run(
        self,
        items: Sequence[T],
        worker: Callable[[T], Awaitable[R]],
    ) -> List[ItemOutcome[T, R]]:
        """Run every chunk and return all outcomes."""
        outcomes: List[ItemOutcome[Any, Any]] = []
        async for chunk in self.iter_chunks(items, worker):
            outcomes.extend(chunk.outcomes)
        return outcomes
