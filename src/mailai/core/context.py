"""Application context shared by reference between components."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime

from ..admission.dedup import DeduplicationTracker
from ..admission.limiter import RateLimiter, RateLimitPolicy
from .config import AppSettings
from .datetime_utils import local_now
from .interfaces import CounterStore
from .models import Counters, EmailStats, RunMode

LOGGER = logging.getLogger(__name__)


# pylint: disable=too-many-instance-attributes
@dataclass
class AppContext:
    """Process-wide state: settings, counters, stats and admission helpers.

    One instance is built at startup and handed to every component, so
    several isolated instances can coexist in tests.
    """

    settings: AppSettings
    store: CounterStore
    counters: Counters
    stats: EmailStats
    tracker: DeduplicationTracker
    limiter: RateLimiter
    clock: Callable[[], datetime] = local_now
    _persist_lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False
    )

    @classmethod
    def create(
        cls,
        settings: AppSettings,
        store: CounterStore,
        *,
        clock: Callable[[], datetime] = local_now,
        dedup_max_entries: int | None = None,
    ) -> AppContext:
        """Build a context, restoring counters and stats from ``store``."""
        counters = store.load()
        stats = store.load_stats()
        policy = RateLimitPolicy(
            max_daily_emails=settings.limits.max_emails_per_day,
            cooldown_period_ms=settings.limits.cooldown_period_ms,
            managed_addresses=settings.managed_addresses,
        )
        LOGGER.info(
            "Restored counters: daily_count=%s, senders=%s, processed=%s",
            counters.daily_count,
            len(counters.sender_history),
            stats.processed,
        )
        return cls(
            settings=settings,
            store=store,
            counters=counters,
            stats=stats,
            tracker=DeduplicationTracker(max_entries=dedup_max_entries),
            limiter=RateLimiter(policy, clock=clock, debug=settings.debug),
            clock=clock,
        )

    @property
    def mode(self) -> RunMode:
        return self.settings.mode

    @property
    def dry_run(self) -> bool:
        return self.settings.dry_run

    def snapshot(self) -> tuple[Counters, EmailStats]:
        """Copy counters and stats so they can be written from another thread."""
        counters = Counters(
            daily_count=self.counters.daily_count,
            last_reset=self.counters.last_reset,
            sender_history=dict(self.counters.sender_history),
        )
        return counters, replace(self.stats)

    def persist(self) -> bool:
        """Write counters and stats; failures are logged by the store."""
        if self.dry_run:
            LOGGER.debug("Dry run: not persisting counters")
            return True
        return self._save(*self.snapshot())

    async def persist_async(self) -> bool:
        """Snapshot on the event loop, then write from a worker thread."""
        if self.dry_run:
            LOGGER.debug("Dry run: not persisting counters")
            return True
        counters, stats = self.snapshot()
        return await asyncio.to_thread(self._save, counters, stats)

    def _save(self, counters: Counters, stats: EmailStats) -> bool:
        with self._persist_lock:
            return self.store.save(counters, stats)


__all__ = ["AppContext"]
