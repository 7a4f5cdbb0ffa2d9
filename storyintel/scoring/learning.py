"""Topic profile weights: exemplar learning and seeding.

When an exemplar article has been analysed, its fingerprint nudges the
keyword weights of every topic profile it is similar to. New keywords enter
at a fixed starting weight; known keywords move by half the fingerprint
delta. Weights always stay within [0.5, 10].
"""

from typing import Any, Dict, List, Optional, Tuple

import yaml
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storyintel.core.logging import get_logger
from storyintel.core.models import ArticleExemplar, ExemplarStatus
from storyintel.core.repositories import (
    get_exemplar,
    get_exemplar_by_url,
    get_topic_profiles,
    list_exemplars,
    upsert_exemplar,
    upsert_topic_profile,
)
from storyintel.core.time import utc_now

from .caches import TTLSnapshotCache
from .keywords import MIN_KEYWORD_LENGTH

logger = get_logger(__name__)

NEW_KEYWORD_WEIGHT = 1.5
DELTA_FACTOR = 0.5
MIN_KEYWORD_WEIGHT = 0.5
MAX_KEYWORD_WEIGHT = 10.0


def boosted_weight(current: Optional[float], delta: float) -> float:
    if current is None:
        weight = NEW_KEYWORD_WEIGHT
    else:
        weight = current + delta * DELTA_FACTOR
    return max(MIN_KEYWORD_WEIGHT, min(MAX_KEYWORD_WEIGHT, weight))


async def apply_exemplar_fingerprint(session: AsyncSession,
                                     exemplar: ArticleExemplar,
                                     profile_cache: Optional[TTLSnapshotCache] = None) -> Dict[str, Any]:
    """
    Fold an analysed exemplar's keyword deltas into the similar topic profiles.

    Args:
        session: Database session
        exemplar: Exemplar with a fingerprint; marked ANALYZED if not already
        profile_cache: Invalidated after the write so scoring picks up the change

    Returns:
        Dictionary with the categories updated and the keywords touched
    """
    fingerprint = exemplar.fingerprint or {}
    keyword_deltas = {
        k.lower(): float(v) for k, v in (fingerprint.get('keywords') or {}).items()
    }
    categories = list(fingerprint.get('similar_to_categories') or [])
    if exemplar.category and exemplar.category not in categories:
        categories.append(exemplar.category)

    profiles = await get_topic_profiles(session, categories)

    for profile in profiles:
        weights = dict(profile.keyword_weights or {})
        for keyword, delta in keyword_deltas.items():
            weights[keyword] = boosted_weight(weights.get(keyword), delta)
        # reassign so the JSON column is flagged dirty
        profile.keyword_weights = weights
        profile.article_count = (profile.article_count or 0) + 1

    if exemplar.status != ExemplarStatus.ANALYZED.value:
        exemplar.status = ExemplarStatus.ANALYZED.value
    if exemplar.analyzed_at is None:
        exemplar.analyzed_at = utc_now()

    await session.commit()

    if profile_cache is not None:
        profile_cache.invalidate()

    updated = sorted(p.category for p in profiles)
    logger.info(
        f"Applied exemplar fingerprint to {len(updated)} profiles",
        extra={'exemplar_url': exemplar.url, 'categories': updated, 'keywords': len(keyword_deltas)}
    )
    return {'categories': updated, 'keywords': sorted(keyword_deltas)}


def load_topic_profile_seeds(path: str) -> List[Tuple[str, Dict[str, float]]]:
    """
    Parse the topic profile seed file.

    Keywords shorter than the extractor's minimum length could never match
    a headline and are skipped with a warning.

    Returns:
        List of (category, keyword_weights)
    """
    with open(path, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f) or {}

    default_weight = float(config.get('default_weight', 1.0))
    seeds = []
    for entry in config.get('profiles', []):
        category = entry.get('category')
        if not category:
            logger.warning(f"Skipping topic profile without category in {path}")
            continue

        overrides = {k.lower(): float(v) for k, v in (entry.get('weights') or {}).items()}
        weights: Dict[str, float] = {}
        for keyword in list(entry.get('keywords') or []) + list(overrides):
            keyword = str(keyword).strip().lower()
            if len(keyword) < MIN_KEYWORD_LENGTH:
                logger.warning(f"Skipping unmatchable keyword '{keyword}' in {category}")
                continue
            weight = overrides.get(keyword, default_weight)
            weights[keyword] = max(MIN_KEYWORD_WEIGHT, min(MAX_KEYWORD_WEIGHT, weight))
        seeds.append((category, weights))

    return seeds


async def seed_topic_profiles(session: AsyncSession, path: str) -> int:
    """Upsert every seeded profile. Returns the number of profiles processed."""
    seeds = load_topic_profile_seeds(path)
    for category, weights in seeds:
        await upsert_topic_profile(session, category, weights)
    logger.info(f"Seeded {len(seeds)} topic profiles from {path}")
    return len(seeds)


class ExemplarError(Exception):
    """Base class for exemplar library errors."""


class ExemplarNotFoundError(ExemplarError):
    def __init__(self, exemplar_id: int):
        super().__init__(f"Exemplar not found: {exemplar_id}")
        self.exemplar_id = exemplar_id


class ExemplarConflictError(ExemplarError):
    """Duplicate URL, or an exemplar that was already analysed."""


class ExemplarNotReadyError(ExemplarError):
    """Analysis requested for an exemplar without a fingerprint."""


class ExemplarLibrary:
    """
    Submission and analysis of exemplar articles.

    Analysing an exemplar folds its fingerprint into the topic profiles and
    invalidates the scoring caches, so the next ingestion pass scores with
    the new weights and sees the exemplar.
    """

    def __init__(self, session_factory: async_sessionmaker,
                 profile_cache: Optional[TTLSnapshotCache] = None,
                 exemplar_cache: Optional[TTLSnapshotCache] = None):
        self.session_factory = session_factory
        self.profile_cache = profile_cache
        self.exemplar_cache = exemplar_cache

    async def list_all(self, status: Optional[ExemplarStatus] = None) -> List[ArticleExemplar]:
        async with self.session_factory() as session:
            return await list_exemplars(session, status)

    async def submit(self, url: str, title: Optional[str] = None, category: Optional[str] = None,
                     fingerprint: Optional[Dict[str, Any]] = None) -> ArticleExemplar:
        """Register a new exemplar; PREVIEW_READY when it arrives with a fingerprint."""
        async with self.session_factory() as session:
            existing = await get_exemplar_by_url(session, url)
            if existing is not None:
                raise ExemplarConflictError(f"Exemplar already submitted: {existing.id}")
            status = ExemplarStatus.PREVIEW_READY if fingerprint else ExemplarStatus.PENDING
            exemplar = await upsert_exemplar(session, url, title=title, category=category,
                                             fingerprint=fingerprint, status=status)

        logger.info(f"Exemplar submitted: {url}", extra={'exemplar_id': exemplar.id, 'status': exemplar.status})
        return exemplar

    async def analyze(self, exemplar_id: int,
                      fingerprint: Optional[Dict[str, Any]] = None) -> Tuple[ArticleExemplar, Dict[str, Any]]:
        """
        Apply an exemplar's fingerprint to the topic profiles.

        Raises:
            ExemplarNotFoundError: no such exemplar
            ExemplarConflictError: the exemplar was already analysed
            ExemplarNotReadyError: no fingerprint stored or supplied
        """
        async with self.session_factory() as session:
            exemplar = await get_exemplar(session, exemplar_id)
            if exemplar is None:
                raise ExemplarNotFoundError(exemplar_id)
            if exemplar.status == ExemplarStatus.ANALYZED.value:
                raise ExemplarConflictError(f"Exemplar {exemplar_id} is already analyzed")
            if fingerprint is not None:
                exemplar.fingerprint = fingerprint
            if not exemplar.fingerprint:
                raise ExemplarNotReadyError(f"Exemplar {exemplar_id} has no fingerprint")

            result = await apply_exemplar_fingerprint(session, exemplar, profile_cache=self.profile_cache)

        if self.exemplar_cache is not None:
            self.exemplar_cache.invalidate()
        return exemplar, result
