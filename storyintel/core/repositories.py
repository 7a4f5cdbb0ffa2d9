"""Repository layer for database operations.

Async functions over an ``AsyncSession``. Story rows are deduplicated by
``source_url`` with an insert-or-nothing followed by an in-place update, and
lifecycle transitions are conditional updates so concurrent callers cannot
both win. Stories are never deleted.
"""

from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from storyintel.core.logging import get_logger
from storyintel.core.models import (
    ArticleExemplar,
    DismissalReason,
    ExemplarStatus,
    StoryFeedback,
    StoryIntelligence,
    StoryOutcome,
    TopicProfile,
    VerificationSource,
)
from storyintel.core.time import ensure_utc, utc_now
from storyintel.scoring.caches import ExemplarSnapshot, ProfileSnapshot

logger = get_logger(__name__)

# Columns refreshed when an already-known story is scored again
SCORING_COLUMNS = (
    'headline',
    'sources',
    'category',
    'topic_cluster_id',
    'relevance_score',
    'velocity_score',
    'alert_level',
    'platform_signals',
)

# Externally scored stories also carry verification and angles
REFRESHABLE_COLUMNS = SCORING_COLUMNS + (
    'verification_status',
    'verification_notes',
    'suggested_angles',
)


def clamp_score(value: Optional[float]) -> float:
    """Clamp a score into [0, 100]; None becomes 0."""
    if value is None:
        return 0.0
    return max(0.0, min(100.0, float(value)))


def merge_sources(prior: Optional[Iterable[Dict[str, Any]]],
                  incoming: Optional[Iterable[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    """Union of two source lists by URL, prior entries first."""
    merged: List[Dict[str, Any]] = []
    seen = set()
    for source in list(prior or []) + list(incoming or []):
        url = source.get('url') if isinstance(source, dict) else None
        if not url or url in seen:
            continue
        seen.add(url)
        merged.append({'name': source.get('name') or url, 'url': url})
    return merged


def merge_signals(prior: Optional[Dict[str, Any]],
                  incoming: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Newer signal groups override older ones."""
    if not prior and not incoming:
        return None
    merged = dict(prior or {})
    merged.update(incoming or {})
    return merged


def _insert_for(session: AsyncSession):
    """Dialect-specific INSERT supporting ON CONFLICT."""
    dialect = session.get_bind().dialect.name
    if dialect == 'sqlite':
        return sqlite_insert
    return pg_insert


# ---------------------------------------------------------------------------
# Scoring snapshots
# ---------------------------------------------------------------------------

async def load_profile_snapshots(session: AsyncSession) -> Tuple[ProfileSnapshot, ...]:
    """All topic profiles as immutable snapshots."""
    stmt = select(TopicProfile).order_by(TopicProfile.id)
    result = await session.execute(stmt)
    profiles = tuple(
        ProfileSnapshot(
            id=str(p.id),
            category=p.category,
            keyword_weights={k: float(w) for k, w in (p.keyword_weights or {}).items()},
        )
        for p in result.scalars().all()
    )
    logger.debug(f"Loaded {len(profiles)} topic profiles")
    return profiles


async def load_exemplar_snapshots(session: AsyncSession) -> Tuple[ExemplarSnapshot, ...]:
    """Fingerprints of every ANALYZED exemplar."""
    stmt = (
        select(ArticleExemplar)
        .where(ArticleExemplar.status == ExemplarStatus.ANALYZED.value)
        .where(ArticleExemplar.fingerprint.isnot(None))
        .order_by(ArticleExemplar.id)
    )
    result = await session.execute(stmt)

    snapshots = []
    for exemplar in result.scalars().all():
        fingerprint = exemplar.fingerprint or {}
        snapshots.append(ExemplarSnapshot(
            category=exemplar.category,
            topics=tuple(t.lower() for t in fingerprint.get('topics') or []),
            keywords={k.lower(): float(v) for k, v in (fingerprint.get('keywords') or {}).items()},
            similar_to_categories=tuple(fingerprint.get('similar_to_categories') or []),
        ))

    logger.debug(f"Loaded {len(snapshots)} analyzed exemplars")
    return tuple(snapshots)


# ---------------------------------------------------------------------------
# Stories
# ---------------------------------------------------------------------------

async def get_story(session: AsyncSession, story_id: int) -> Optional[StoryIntelligence]:
    stmt = select(StoryIntelligence).where(StoryIntelligence.id == story_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_story_by_source_url(session: AsyncSession, source_url: str,
                                  for_update: bool = False) -> Optional[StoryIntelligence]:
    stmt = select(StoryIntelligence).where(StoryIntelligence.source_url == source_url)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def insert_story_if_new(session: AsyncSession, values: Dict[str, Any]) -> Optional[int]:
    """
    INSERT ... ON CONFLICT (source_url) DO NOTHING RETURNING id.

    Args:
        session: Database session
        values: Column values; must include ``source_url`` and ``first_seen_at``

    Returns:
        New row id, or None if a row with the same source_url already exists
    """
    insert = _insert_for(session)
    stmt = (
        insert(StoryIntelligence)
        .values(**values)
        .on_conflict_do_nothing(index_elements=['source_url'])
        .returning(StoryIntelligence.id)
    )
    result = await session.execute(stmt)
    row = result.first()
    return row[0] if row else None


async def update_story_in_place(session: AsyncSession, story_id: int, values: Dict[str, Any],
                               columns: Sequence[str] = REFRESHABLE_COLUMNS) -> None:
    """Refresh the given columns of an existing story; lifecycle columns are never touched."""
    refresh = {k: v for k, v in values.items() if k in columns}
    if not refresh:
        return
    stmt = (
        update(StoryIntelligence)
        .where(StoryIntelligence.id == story_id)
        .values(**refresh)
        .execution_options(synchronize_session=False)
    )
    await session.execute(stmt)


def _clamped(values: Dict[str, Any]) -> Dict[str, Any]:
    values = dict(values)
    values['relevance_score'] = clamp_score(values.get('relevance_score'))
    values['velocity_score'] = clamp_score(values.get('velocity_score'))
    if values.get('first_seen_at') is not None:
        values['first_seen_at'] = ensure_utc(values['first_seen_at'])
    return values


async def upsert_story(session: AsyncSession, values: Dict[str, Any],
                       refresh_columns: Sequence[str] = SCORING_COLUMNS,
                       rescore: Optional[Callable[[Dict[str, Any], StoryIntelligence], Dict[str, Any]]] = None
                       ) -> Tuple[bool, int]:
    """
    Insert a story or update the row already holding its source_url.

    On conflict the stored row is locked and its sources and signals are
    merged with the incoming ones, so a concurrent writer that won the insert
    loses nothing. ``rescore(merged_values, stored_row)`` then recomputes the
    score columns from the merged evidence before they are written.

    Returns:
        Tuple of (was_created, story_id)
    """
    values = _clamped(values)

    try:
        story_id = await insert_story_if_new(session, values)
        if story_id is not None:
            await session.commit()
            logger.debug(f"Created story {story_id}", extra={'source_url': values['source_url']})
            return True, story_id

        existing = await get_story_by_source_url(session, values['source_url'], for_update=True)
        if existing is None:
            raise RuntimeError(f"Story vanished during upsert: {values['source_url']}")

        values['sources'] = merge_sources(existing.sources, values.get('sources'))
        values['platform_signals'] = merge_signals(existing.platform_signals, values.get('platform_signals'))
        if rescore is not None:
            values = _clamped(rescore(values, existing))
        await update_story_in_place(session, existing.id, values, refresh_columns)
        await session.commit()
        logger.debug(f"Updated story {existing.id}", extra={'source_url': values['source_url']})
        return False, existing.id

    except Exception:
        await session.rollback()
        raise


async def add_verification_sources(session: AsyncSession, story_id: int,
                                   sources: Sequence[Dict[str, Any]]) -> int:
    """Append verification evidence; existing rows are never rewritten."""
    for source in sources:
        session.add(VerificationSource(
            story_id=story_id,
            source_name=source['source_name'],
            source_url=source['source_url'],
            corroborates=bool(source['corroborates']),
            excerpt=source.get('excerpt'),
        ))
    await session.commit()
    return len(sources)


async def sweep_stale_stories(session: AsyncSession, cutoff: datetime) -> int:
    """
    Auto-dismiss open stories first seen before ``cutoff``.

    Only unclaimed, undismissed rows without an outcome are touched.

    Returns:
        Number of rows dismissed
    """
    stmt = (
        update(StoryIntelligence)
        .where(StoryIntelligence.dismissed == False)  # noqa: E712
        .where(StoryIntelligence.claimed_by_id.is_(None))
        .where(StoryIntelligence.outcome.is_(None))
        .where(StoryIntelligence.first_seen_at < ensure_utc(cutoff))
        .values(
            dismissed=True,
            outcome=StoryOutcome.IGNORED.value,
            dismissed_reason=DismissalReason.STALE.value,
        )
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    await session.commit()
    return result.rowcount or 0


async def list_dashboard_stories(session: AsyncSession, since: datetime, limit: int = 10) -> List[StoryIntelligence]:
    """Non-dismissed stories first seen after ``since``, best first."""
    stmt = (
        select(StoryIntelligence)
        .where(StoryIntelligence.dismissed == False)  # noqa: E712
        .where(StoryIntelligence.first_seen_at >= ensure_utc(since))
        .order_by(StoryIntelligence.relevance_score.desc(), StoryIntelligence.first_seen_at.desc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def mark_surfaced(session: AsyncSession, story_ids: Sequence[int], now: Optional[datetime] = None) -> int:
    """Stamp ``surfaced_at`` on stories shown for the first time."""
    if not story_ids:
        return 0
    now = ensure_utc(now) if now is not None else utc_now()
    stmt = (
        update(StoryIntelligence)
        .where(StoryIntelligence.id.in_(list(story_ids)))
        .where(StoryIntelligence.surfaced_at.is_(None))
        .values(surfaced_at=now)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    await session.commit()
    return result.rowcount or 0


async def claim_story_if_unclaimed(session: AsyncSession, story_id: int, actor_id: str,
                                   article_id: str, now: Optional[datetime] = None) -> bool:
    """
    Record a claim only if the story is still open.

    Returns:
        True if this call claimed the story, False if another claim or a
        dismissal got there first
    """
    now = ensure_utc(now) if now is not None else utc_now()
    stmt = (
        update(StoryIntelligence)
        .where(StoryIntelligence.id == story_id)
        .where(StoryIntelligence.claimed_by_id.is_(None))
        .where(StoryIntelligence.dismissed == False)  # noqa: E712
        .values(
            claimed_by_id=actor_id,
            claimed_at=now,
            article_id=article_id,
            outcome=StoryOutcome.CLAIMED.value,
        )
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    await session.commit()
    return result.rowcount == 1


async def dismiss_story_if_open(session: AsyncSession, story_id: int) -> bool:
    """Manually dismiss an unclaimed, undismissed story. Returns False if nothing changed."""
    stmt = (
        update(StoryIntelligence)
        .where(StoryIntelligence.id == story_id)
        .where(StoryIntelligence.claimed_by_id.is_(None))
        .where(StoryIntelligence.dismissed == False)  # noqa: E712
        .values(
            dismissed=True,
            outcome=StoryOutcome.IGNORED.value,
            dismissed_reason=DismissalReason.MANUAL.value,
        )
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    await session.commit()
    return result.rowcount == 1


# ---------------------------------------------------------------------------
# Feedback
# ---------------------------------------------------------------------------

async def insert_feedback(session: AsyncSession, story_id: int, user_id: str,
                          rating: int, tags: List[str], action: str) -> StoryFeedback:
    feedback = StoryFeedback(
        story_id=story_id,
        user_id=user_id,
        rating=rating,
        tags=list(tags),
        action=action,
    )
    session.add(feedback)
    await session.commit()
    await session.refresh(feedback)
    return feedback


async def summarize_feedback(session: AsyncSession, story_id: int,
                             user_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Aggregate ratings for a story.

    Returns:
        Dictionary with total_ratings, avg_rating, tag_counts and, when
        ``user_id`` is given, that user's latest rating and tags
    """
    stmt = (
        select(StoryFeedback)
        .where(StoryFeedback.story_id == story_id)
        .order_by(StoryFeedback.created_at.desc(), StoryFeedback.id.desc())
    )
    result = await session.execute(stmt)
    rows = list(result.scalars().all())

    tag_counts: Dict[str, int] = {}
    for row in rows:
        for tag in row.tags or []:
            tag_counts[tag] = tag_counts.get(tag, 0) + 1

    avg_rating = round(sum(r.rating for r in rows) / len(rows), 2) if rows else None

    user_rating = None
    user_tags: List[str] = []
    if user_id is not None:
        latest = next((r for r in rows if r.user_id == user_id), None)
        if latest is not None:
            user_rating = latest.rating
            user_tags = list(latest.tags or [])

    return {
        'total_ratings': len(rows),
        'avg_rating': avg_rating,
        'tag_counts': tag_counts,
        'user_rating': user_rating,
        'user_tags': user_tags,
    }


# ---------------------------------------------------------------------------
# Topic profiles and exemplars
# ---------------------------------------------------------------------------

async def get_topic_profiles(session: AsyncSession, categories: Iterable[str]) -> List[TopicProfile]:
    categories = list(categories)
    if not categories:
        return []
    stmt = select(TopicProfile).where(TopicProfile.category.in_(categories))
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def upsert_topic_profile(session: AsyncSession, category: str,
                               keyword_weights: Dict[str, float]) -> TopicProfile:
    """
    Create a topic profile or add missing keywords to an existing one.

    Weights already learned for a keyword are kept.
    """
    stmt = select(TopicProfile).where(TopicProfile.category == category)
    result = await session.execute(stmt)
    profile = result.scalar_one_or_none()

    if profile is None:
        profile = TopicProfile(category=category, keyword_weights=dict(keyword_weights), article_count=0)
        session.add(profile)
        logger.info(f"Created topic profile: {category} ({len(keyword_weights)} keywords)")
    else:
        weights = dict(profile.keyword_weights or {})
        added = 0
        for keyword, weight in keyword_weights.items():
            if keyword not in weights:
                weights[keyword] = weight
                added += 1
        profile.keyword_weights = weights
        logger.info(f"Updated topic profile: {category} (+{added} keywords)")

    await session.commit()
    await session.refresh(profile)
    return profile


async def upsert_exemplar(session: AsyncSession, url: str, title: Optional[str] = None,
                          category: Optional[str] = None,
                          fingerprint: Optional[Dict[str, Any]] = None,
                          status: ExemplarStatus = ExemplarStatus.PENDING) -> ArticleExemplar:
    """Create or update an exemplar by URL."""
    exemplar = await get_exemplar_by_url(session, url)

    if exemplar is None:
        exemplar = ArticleExemplar(url=url)
        session.add(exemplar)

    if title is not None:
        exemplar.title = title
    if category is not None:
        exemplar.category = category
    if fingerprint is not None:
        exemplar.fingerprint = fingerprint
    exemplar.status = ExemplarStatus(status).value
    if exemplar.status == ExemplarStatus.ANALYZED.value and exemplar.analyzed_at is None:
        exemplar.analyzed_at = utc_now()

    await session.commit()
    await session.refresh(exemplar)
    return exemplar


async def get_exemplar(session: AsyncSession, exemplar_id: int) -> Optional[ArticleExemplar]:
    return await session.get(ArticleExemplar, exemplar_id)


async def get_exemplar_by_url(session: AsyncSession, url: str) -> Optional[ArticleExemplar]:
    stmt = select(ArticleExemplar).where(ArticleExemplar.url == url)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_exemplars(session: AsyncSession, status: Optional[ExemplarStatus] = None) -> List[ArticleExemplar]:
    """Exemplars newest first, optionally filtered by status."""
    stmt = select(ArticleExemplar).order_by(ArticleExemplar.id.desc())
    if status is not None:
        stmt = stmt.where(ArticleExemplar.status == ExemplarStatus(status).value)
    result = await session.execute(stmt)
    return list(result.scalars().all())
