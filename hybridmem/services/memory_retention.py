"""
Memory retention service: eviction policies, cleanup execution and the cleanup scheduler.
"""

import asyncio
import time
from collections import defaultdict
from typing import Awaitable, Callable, Dict, List, Optional

from ..models.core import MemoryEntry
from ..models.search import CleanupBreakdown, CleanupPreview, CleanupStats
from ..utils.config import EVICTION_STRATEGIES, RetentionConfig
from ..utils.errors import ConfigurationError
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import utc_now

logger = get_logger(__name__)

FetchAll = Callable[[], Awaitable[List[MemoryEntry]]]
DeleteIds = Callable[[List[str]], Awaitable[int]]

# Content bytes are doubled to account for metadata and the vector
SPACE_FACTOR = 2


def eviction_sort_key(strategy: str):
    """Key function ordering entries so that the first ones are evicted first.

    Ties fall back to creation time, then id.
    """
    if strategy == 'lfu':
        return lambda e: (e.access_count, e.created_at, e.id)
    if strategy == 'fifo':
        return lambda e: (e.created_at, e.id)
    if strategy == 'importance':
        return lambda e: (e.metadata.importance, e.created_at, e.id)
    return lambda e: (e.last_accessed_at or e.created_at, e.created_at, e.id)


def apply_eviction_strategy(entries: List[MemoryEntry], keep: int, strategy: str) -> List[MemoryEntry]:
    """Return every entry except the `keep` most valuable ones under the strategy.

    Args:
        entries: Candidate entries
        keep: Number of entries to retain
        strategy: One of lru, lfu, fifo, importance; anything else falls back to lru

    Returns:
        Exactly max(0, len(entries) - keep) entries, in eviction order
    """
    if strategy not in EVICTION_STRATEGIES:
        logger.warning(f'Unknown eviction strategy: {strategy}, using lru')
        strategy = 'lru'

    excess = len(entries) - max(keep, 0)
    if excess <= 0:
        return []
    return sorted(entries, key=eviction_sort_key(strategy))[:excess]


class MemoryRetentionService:
    """Selects memories to evict and runs cleanups, manually or on a schedule."""

    def __init__(self, config: Optional[RetentionConfig] = None):
        self.config = config or RetentionConfig()
        self._stats = CleanupStats()
        self._running: Optional[asyncio.Future] = None
        self.scheduler: Optional['CleanupScheduler'] = None

        logger.info(f'Initialized MemoryRetentionService with {self.config.eviction_strategy} eviction')

    # Candidate selection

    def identify_aged(self, entries: List[MemoryEntry]) -> List[MemoryEntry]:
        if not self.config.max_age_seconds:
            return []
        cutoff = utc_now().timestamp() - self.config.max_age_seconds
        return [e for e in entries if not e.metadata.persistent and e.created_at.timestamp() < cutoff]

    def identify_thread_excess(self, entries: List[MemoryEntry]) -> List[MemoryEntry]:
        cap = self.config.max_per_thread
        if not cap:
            return []

        by_thread: Dict[str, List[MemoryEntry]] = defaultdict(list)
        for entry in entries:
            by_thread[entry.thread_id].append(entry)

        excess = []
        for thread_entries in by_thread.values():
            overflow = len(thread_entries) - cap
            if overflow <= 0:
                continue
            evictable = [e for e in thread_entries if not e.metadata.persistent]
            excess.extend(apply_eviction_strategy(evictable, len(evictable) - overflow, self.config.eviction_strategy))
        return excess

    def identify_total_excess(self, entries: List[MemoryEntry]) -> List[MemoryEntry]:
        cap = self.config.max_total
        if not cap or len(entries) <= cap:
            return []
        overflow = len(entries) - cap
        evictable = [e for e in entries if not e.metadata.persistent]
        return apply_eviction_strategy(evictable, len(evictable) - overflow, self.config.eviction_strategy)

    def select_candidates(self, entries: List[MemoryEntry]):
        """Union of the age, per-thread and global passes, deduplicated, persistent entries excluded.

        Returns:
            Tuple of (candidates, CleanupBreakdown)
        """
        aged = self.identify_aged(entries)
        thread_excess = self.identify_thread_excess(entries)
        total_excess = self.identify_total_excess(entries)

        seen = set()
        candidates = []
        for entry in aged + thread_excess + total_excess:
            if entry.id in seen or entry.metadata.persistent:
                continue
            seen.add(entry.id)
            candidates.append(entry)

        breakdown = CleanupBreakdown(aged=len(aged), per_thread_excess=len(thread_excess), total_excess=len(total_excess))
        return candidates, breakdown

    # Cleanup

    async def execute_cleanup(self, fetch_all: FetchAll, delete: DeleteIds) -> int:
        """Run one cleanup, or join the one already in flight.

        Args:
            fetch_all: Coroutine function returning every stored entry
            delete: Coroutine function deleting entries by id and returning the count

        Returns:
            Number of memories removed
        """
        if self._running is not None and not self._running.done():
            logger.debug('Cleanup already running, waiting for its result')
            return await asyncio.shield(self._running)

        self._running = asyncio.ensure_future(self._cleanup(fetch_all, delete))
        try:
            return await asyncio.shield(self._running)
        finally:
            if self._running is not None and self._running.done():
                self._running = None

    async def _cleanup(self, fetch_all: FetchAll, delete: DeleteIds) -> int:
        started = time.perf_counter()
        logger.debug('Starting memory cleanup')

        try:
            entries = await fetch_all()
            removed = 0
            if entries:
                candidates, breakdown = self.select_candidates(entries)
                logger.debug(f'Evaluated {len(entries)} memories: {breakdown.aged} aged, '
                             f'{breakdown.per_thread_excess} per-thread excess, {breakdown.total_excess} total excess')
                if candidates:
                    removed = await delete([entry.id for entry in candidates])
                    logger.info(f'Memory cleanup removed {removed} memories')
            else:
                logger.debug('No memories found for cleanup')
        except Exception as e:
            logger.error(f'Memory cleanup failed: {e}')
            raise

        self._record_run(removed, (time.perf_counter() - started) * 1000)
        return removed

    def _record_run(self, removed: int, elapsed_ms: float) -> None:
        stats = self._stats
        stats.total_cleanups_run += 1
        stats.total_memories_removed += removed
        stats.average_cleanup_time += (elapsed_ms - stats.average_cleanup_time) / stats.total_cleanups_run
        stats.last_cleanup_time = utc_now()

    async def preview_cleanup(self, fetch_all: FetchAll) -> CleanupPreview:
        """Report what a cleanup would remove without deleting anything."""
        entries = await fetch_all()
        if not entries:
            return CleanupPreview(total_memories=0, memories_to_delete=0, breakdown=CleanupBreakdown(),
                                  estimated_space_saved=0)

        candidates, breakdown = self.select_candidates(entries)
        average_length = sum(len(e.content) for e in entries) / len(entries)
        return CleanupPreview(total_memories=len(entries),
                              memories_to_delete=len(candidates),
                              breakdown=breakdown,
                              estimated_space_saved=int(len(candidates) * average_length * SPACE_FACTOR))

    def get_cleanup_stats(self) -> CleanupStats:
        stats = self._stats
        return CleanupStats(last_cleanup_time=stats.last_cleanup_time,
                            total_cleanups_run=stats.total_cleanups_run,
                            total_memories_removed=stats.total_memories_removed,
                            average_cleanup_time=stats.average_cleanup_time)

    # Scheduling

    def start_scheduler(self, fetch_all: FetchAll, delete: DeleteIds) -> 'CleanupScheduler':
        """Start periodic cleanups on the running event loop. Idempotent."""
        if self.scheduler is not None and self.scheduler.running:
            return self.scheduler
        self.scheduler = CleanupScheduler(self, fetch_all, delete, self.config.cleanup_interval_seconds)
        self.scheduler.start()
        return self.scheduler

    async def stop_scheduler(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.stop()
            self.scheduler = None


class CleanupScheduler:
    """Runs MemoryRetentionService.execute_cleanup every `interval` seconds."""

    def __init__(self, retention: MemoryRetentionService, fetch_all: FetchAll, delete: DeleteIds, interval: float):
        if interval <= 0:
            raise ConfigurationError(f'Cleanup interval must be positive, got {interval}', setting='cleanup_interval_seconds')
        self.retention = retention
        self.fetch_all = fetch_all
        self.delete = delete
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop(), name='memory_cleanup_scheduler')
        logger.info(f'Memory cleanup scheduler started, interval {self.interval}s')

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.retention.execute_cleanup(self.fetch_all, self.delete)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f'Scheduled memory cleanup failed: {e}')

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info('Memory cleanup scheduler stopped')
