"""Per-interval skill tracking.

Each harmony interval (third above, sixth below, ...) carries an
exponentially weighted moving average of the scores achieved with it. Recent
runs weigh more than old ones so the estimate follows a singer's progress,
and intervals averaging below 70 are flagged as *struggling* which lets the
practice loop offer them more often.

The statistics map is the only state mutated from several threads (the
scorer's callback and any caller reading stats), so every interval has its
own lock and updates to one interval never block another.
"""

from __future__ import annotations

import logging
import random
import threading
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .errors import PersistenceError
from .models import IntervalStat, Run

__all__ = [
    "IntervalStatsAggregator",
    "EMA_ALPHA",
    "STRUGGLING_THRESHOLD",
]


logger = logging.getLogger(__name__)

EMA_ALPHA = 0.3
STRUGGLING_THRESHOLD = 70.0


class IntervalStatsAggregator:
    """Maintain :class:`IntervalStat` records from finished runs.

    Parameters
    ----------
    alpha:
        Weight of the newest score in the moving average.
    struggling_threshold:
        Averages strictly below this value mark the interval as struggling.
    initial_score:
        Average assumed before the first attempt. ``None`` seeds the average
        with the first run's own score.
    store:
        Optional store receiving every updated stat via
        ``upsert_interval_stat``.
    """

    def __init__(
        self,
        *,
        alpha: float = EMA_ALPHA,
        struggling_threshold: float = STRUGGLING_THRESHOLD,
        initial_score: Optional[float] = None,
        store: Any = None,
    ) -> None:
        if not 0 < alpha <= 1:
            raise ValueError("alpha must lie in (0, 1]")
        if initial_score is not None and not 0 <= initial_score <= 100:
            raise ValueError("initial_score must lie within 0-100")
        self.alpha = alpha
        self.struggling_threshold = struggling_threshold
        self.initial_score = initial_score
        self.store = store
        self._stats: Dict[int, IntervalStat] = {}
        self._locks: Dict[int, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, interval: int) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(interval)
            if lock is None:
                lock = self._locks[interval] = threading.Lock()
            return lock

    def load(self, stats: Iterable[IntervalStat]) -> None:
        """Seed the aggregator with previously persisted statistics."""

        for stat in stats:
            with self._lock_for(stat.interval_degrees):
                self._stats[stat.interval_degrees] = stat.copy()
        logger.debug("Loaded %d interval statistics", len(self._stats))

    def record(self, run: Run) -> Optional[IntervalStat]:
        """Fold ``run`` into its interval's statistics and return a copy.

        Statistics are kept for diatonic intervals only: a ``fixed`` run's
        interval counts semitones, not scale degrees, so it is skipped and
        ``None`` is returned.

        The in-memory statistics are updated before the optional store write;
        a failing write raises :class:`PersistenceError` with the update
        already applied.
        """

        if run.interval_mode != "diatonic":
            logger.debug("Skipping statistics for %s-mode run %s", run.interval_mode, run.id)
            return None

        interval = run.harmony_interval_degrees
        with self._lock_for(interval):
            stat = self._stats.get(interval)
            if stat is None:
                stat = self._stats[interval] = IntervalStat(interval_degrees=interval)
            if stat.total_attempts == 0:
                previous = self.initial_score if self.initial_score is not None else run.score
            else:
                previous = stat.average_score
            stat.average_score = self.alpha * run.score + (1 - self.alpha) * previous
            stat.total_attempts += 1
            stat.last_attempt_at = run.created_at
            stat.struggling = stat.average_score < self.struggling_threshold
            snapshot = stat.copy()

        logger.debug(
            "Interval %+d: attempts=%d average=%.2f struggling=%s",
            interval,
            snapshot.total_attempts,
            snapshot.average_score,
            snapshot.struggling,
        )
        if self.store is not None:
            try:
                self.store.upsert_interval_stat(snapshot)
            except PersistenceError:
                logger.error("Failed to persist statistics for interval %+d", interval)
                raise
        return snapshot

    def get_stat(self, interval: int) -> IntervalStat:
        """Return a copy of the statistics for ``interval``.

        Unknown intervals yield a zero-attempt record.
        """

        with self._lock_for(interval):
            stat = self._stats.get(interval)
            if stat is None:
                return IntervalStat(interval_degrees=interval)
            return stat.copy()

    def all_stats(self) -> List[IntervalStat]:
        """Copies of every known statistic ordered by interval."""

        with self._registry_lock:
            intervals = sorted(self._stats)
        return [self.get_stat(i) for i in intervals]

    def struggling_intervals(self) -> List[int]:
        return [s.interval_degrees for s in self.all_stats() if s.struggling]

    def recommend_interval(
        self, candidates: Sequence[int], rng: Optional[random.Random] = None
    ) -> int:
        """Pick the interval to practise next from ``candidates``.

        Struggling intervals win (a random one when several are struggling).
        Otherwise the least-attempted candidate is chosen, ties broken at
        random.

        Raises
        ------
        ValueError
            If ``candidates`` is empty.
        """

        if not candidates:
            raise ValueError("candidates must not be empty")
        rng = rng or random.Random()
        stats = [self.get_stat(c) for c in candidates]
        struggling = [s.interval_degrees for s in stats if s.struggling]
        if struggling:
            return rng.choice(struggling)
        fewest = min(s.total_attempts for s in stats)
        return rng.choice([s.interval_degrees for s in stats if s.total_attempts == fewest])
