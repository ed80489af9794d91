# domainscope/cache.py
"""
In-process TTL cache for probe lookups.

Keys are built with make_key(kind, target, **params), e.g.
"dns|example.com" or "http|example.com|scheme=https". The kind prefix picks
the TTL from Settings.cache_ttls when the caller does not pass one.

Concurrency:
    All state sits behind one lock. get_or_fetch() is single-flight: when
    several probes ask for the same cold key at once, only the first runs
    the fetch; the rest wait for it and get the same value (or the same
    exception). Failed fetches are never stored.

Expiry:
    Enforced on every read against the injected Clock. sweep() reclaims
    expired entries, and start_sweeper() runs it on an APScheduler
    background job for long-lived processes.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Union

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from domainscope.config import Settings
from domainscope.errors import ProbeTimeout
from domainscope.utils.clock import SYSTEM_CLOCK, Clock

logger = logging.getLogger(__name__)

TTL = Union[int, float, Callable[[Any], float], None]


def make_key(kind: str, target: Any, **params: Any) -> str:
    """Stable cache key: kind, lowercased target, then params sorted by name."""
    parts = [kind, str(target).lower()]
    parts.extend(f"{k}={params[k]}" for k in sorted(params))
    return "|".join(parts)


@dataclass
class CacheEntry:
    key: str
    value: Any
    created_at: float
    expires_at: float
    hit_count: int = 0

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int
    sets: int
    evictions: int
    expirations: int
    collapsed: int
    entries: int

    @property
    def lookups(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        return round(self.hits / self.lookups, 4) if self.lookups else 0.0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "collapsed": self.collapsed,
            "entries": self.entries,
            "hitRate": self.hit_rate,
        }


class _Flight:
    """One in-progress fetch that followers can wait on."""

    __slots__ = ("done", "value", "error")

    def __init__(self):
        self.done = threading.Event()
        self.value: Any = None
        self.error: Optional[BaseException] = None


class TTLCache:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        max_entries: Optional[int] = None,
    ):
        self.settings = settings or Settings()
        self.clock = clock or SYSTEM_CLOCK
        self.max_entries = max_entries if max_entries is not None else self.settings.cache_max_entries

        self._lock = threading.Lock()
        self._entries: Dict[str, CacheEntry] = {}
        self._in_flight: Dict[str, _Flight] = {}
        self._scheduler: Optional[BackgroundScheduler] = None

        self._hits = 0
        self._misses = 0
        self._sets = 0
        self._evictions = 0
        self._expirations = 0
        self._collapsed = 0

    # -------------------------------------------------------------------
    # Basic operations
    # -------------------------------------------------------------------

    def ttl_for(self, key: str) -> float:
        return float(self.settings.ttl_for(key.split("|", 1)[0]))

    def _lookup_locked(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self.clock.monotonic()):
            del self._entries[key]
            self._expirations += 1
            return None
        return entry

    def get(self, key: str) -> Tuple[Any, bool]:
        """Return (value, True) for a live entry, else (None, False)."""
        with self._lock:
            entry = self._lookup_locked(key)
            if entry is None:
                self._misses += 1
                return None, False
            entry.hit_count += 1
            self._hits += 1
            return entry.value, True

    def set(self, key: str, value: Any, ttl: TTL = None) -> None:
        seconds = self._resolve_ttl(key, value, ttl)
        if seconds <= 0:
            return
        now = self.clock.monotonic()
        with self._lock:
            self._entries.pop(key, None)
            self._make_room_locked(now)
            self._entries[key] = CacheEntry(
                key=key, value=value, created_at=now, expires_at=now + seconds
            )
            self._sets += 1

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _resolve_ttl(self, key: str, value: Any, ttl: TTL) -> float:
        if ttl is None:
            return self.ttl_for(key)
        if callable(ttl):
            return float(ttl(value))
        return float(ttl)

    def _make_room_locked(self, now: float) -> None:
        if self.max_entries <= 0 or len(self._entries) < self.max_entries:
            return
        for key in [k for k, e in self._entries.items() if e.is_expired(now)]:
            del self._entries[key]
            self._expirations += 1
        while len(self._entries) >= self.max_entries:
            # Dicts keep insertion order, so the first key is the oldest write
            oldest = next(iter(self._entries))
            del self._entries[oldest]
            self._evictions += 1

    # -------------------------------------------------------------------
    # Single-flight fetch
    # -------------------------------------------------------------------

    def get_or_fetch(
        self,
        key: str,
        fetch: Callable[[], Any],
        ttl: TTL = None,
        wait_timeout: Optional[float] = None,
    ) -> Tuple[Any, bool]:
        """
        Return (value, hit). On a miss, run `fetch` once across all threads.

        Followers of an in-flight fetch count as hits: they never reach the
        network. `wait_timeout` bounds how long a follower waits for the
        leader before raising ProbeTimeout.
        """
        with self._lock:
            entry = self._lookup_locked(key)
            if entry is not None:
                entry.hit_count += 1
                self._hits += 1
                return entry.value, True

            flight = self._in_flight.get(key)
            leader = flight is None
            if leader:
                flight = _Flight()
                self._in_flight[key] = flight
                self._misses += 1
            else:
                self._collapsed += 1
                self._hits += 1

        if not leader:
            if not flight.done.wait(wait_timeout):
                raise ProbeTimeout(f"Timed out waiting for in-flight fetch of {key}")
            if flight.error is not None:
                raise flight.error
            return flight.value, True

        try:
            value = fetch()
        except BaseException as e:
            flight.error = e
            raise
        else:
            flight.value = value
            self.set(key, value, ttl)
            return value, False
        finally:
            with self._lock:
                self._in_flight.pop(key, None)
            flight.done.set()

    # -------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------

    def sweep(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        now = self.clock.monotonic()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
            self._expirations += len(expired)
        if expired:
            logger.debug(f"Cache sweep removed {len(expired)} expired entries")
        return len(expired)

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                sets=self._sets,
                evictions=self._evictions,
                expirations=self._expirations,
                collapsed=self._collapsed,
                entries=len(self._entries),
            )

    def start_sweeper(self, interval: Optional[int] = None) -> None:
        """Run sweep() periodically on a daemon APScheduler thread."""
        if self._scheduler is not None:
            logger.info("Cache sweeper already running")
            return

        seconds = interval or self.settings.cache_sweep_interval
        self._scheduler = BackgroundScheduler(daemon=True)
        self._scheduler.add_job(
            func=self.sweep,
            trigger=IntervalTrigger(seconds=seconds),
            id="cache_sweep",
            name="Reclaim expired cache entries",
            replace_existing=True,
            max_instances=1,
        )
        self._scheduler.start()
        logger.info(f"Cache sweeper started (every {seconds}s)")

    def stop_sweeper(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Cache sweeper stopped")

    @property
    def sweeper_running(self) -> bool:
        return self._scheduler is not None
