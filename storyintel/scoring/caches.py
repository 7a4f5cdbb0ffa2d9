"""TTL-refreshed snapshots of learned scoring weights.

Topic profiles and analysed exemplars change rarely and are read on every
scored candidate, so each lives in a ``TTLSnapshotCache``: ``get()`` serves
the current snapshot while it is younger than the TTL and otherwise reloads
it in full. There is no incremental invalidation; a weight written elsewhere
becomes visible to scoring within one TTL window (or at the next
``invalidate()``).

The snapshot and its load time are replaced together by one attribute
assignment, so a reader never sees a half-refreshed cache. That relies on
asyncio's cooperative scheduling; no lock is taken. Two callers arriving
while the snapshot is stale may both reload, and the later assignment wins.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Generic, Optional, Tuple, TypeVar

from sqlalchemy.ext.asyncio import async_sessionmaker

from storyintel.core.logging import get_logger
from storyintel.core.time import Clock, ensure_utc, utc_now

logger = get_logger(__name__)

PROFILE_CACHE_TTL = timedelta(minutes=5)
EXEMPLAR_CACHE_TTL = timedelta(minutes=60)

T = TypeVar("T")


@dataclass(frozen=True)
class ProfileSnapshot:
    """Read-only view of a TopicProfile row."""
    id: str
    category: str
    keyword_weights: Dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class ExemplarSnapshot:
    """Read-only fingerprint of an analysed exemplar."""
    category: Optional[str]
    topics: Tuple[str, ...] = ()
    keywords: Dict[str, float] = field(default_factory=dict)
    similar_to_categories: Tuple[str, ...] = ()


class TTLSnapshotCache(Generic[T]):
    """Whole-snapshot cache with an injected async loader and clock."""

    def __init__(self, name: str, loader: Callable[[], Awaitable[T]],
                 ttl: timedelta, clock: Clock = utc_now):
        self.name = name
        self.ttl = ttl
        self._loader = loader
        self._clock = clock
        # (snapshot, loaded_at), swapped as a unit; loaded_at None means expired
        self._state: Optional[Tuple[T, Optional[datetime]]] = None

    @property
    def loaded_at(self) -> Optional[datetime]:
        return self._state[1] if self._state else None

    def is_fresh(self, now: Optional[datetime] = None) -> bool:
        state = self._state
        if state is None or state[1] is None:
            return False
        now = ensure_utc(now) if now is not None else self._clock()
        return now - state[1] < self.ttl

    async def get(self, now: Optional[datetime] = None) -> T:
        """
        Current snapshot, reloading it when older than the TTL.

        If the reload fails and a previous snapshot exists, that snapshot is
        served with a warning and the next call retries the load. With no
        previous snapshot the loader's exception propagates.
        """
        now = ensure_utc(now) if now is not None else self._clock()
        state = self._state
        if self.is_fresh(now):
            return state[0]

        try:
            snapshot = await self._loader()
        except Exception as e:
            if state is None:
                logger.error(f"{self.name} cache load failed with no snapshot to fall back on: {e}")
                raise
            logger.warning(
                f"{self.name} cache reload failed, serving stale snapshot: {e}",
                extra={'cache': self.name}
            )
            return state[0]

        self._state = (snapshot, now)
        logger.debug(f"Reloaded {self.name} cache")
        return snapshot

    def invalidate(self) -> None:
        """Force the next ``get`` to reload; the old snapshot remains the fallback."""
        state = self._state
        if state is not None:
            self._state = (state[0], None)


def topic_profile_cache(session_factory: async_sessionmaker,
                        ttl: timedelta = PROFILE_CACHE_TTL,
                        clock: Clock = utc_now) -> "TTLSnapshotCache[Tuple[ProfileSnapshot, ...]]":
    """Cache of every TopicProfile, loaded through the repository layer."""
    from storyintel.core.repositories import load_profile_snapshots

    async def _load():
        async with session_factory() as session:
            return await load_profile_snapshots(session)

    return TTLSnapshotCache("topic_profiles", _load, ttl, clock)


def exemplar_cache(session_factory: async_sessionmaker,
                   ttl: timedelta = EXEMPLAR_CACHE_TTL,
                   clock: Clock = utc_now) -> "TTLSnapshotCache[Tuple[ExemplarSnapshot, ...]]":
    """Cache of ANALYZED exemplar fingerprints."""
    from storyintel.core.repositories import load_exemplar_snapshots

    async def _load():
        async with session_factory() as session:
            return await load_exemplar_snapshots(session)

    return TTLSnapshotCache("exemplars", _load, ttl, clock)
