"""Story scoring engine.

Scores a candidate for editorial relevance and trending velocity:

- Category (30): best-matching topic profile's summed keyword weights
- Keyword match (25): share of headline keywords known to any profile
- Source corroboration (15): number of independent outlets, saturating at 3
- Recency (15): linear decay over 12 hours
- Editorial stance (-25 / +10 / 0): pluggable classifier
- Exemplar similarity (<= 15): closeness to the best vetted exemplar
- Velocity (15, reported separately): social, aggregator and trend signals

Each term is rounded half up to a whole point before the terms are summed
and before the alert thresholds apply; only the exemplar bonus keeps its
fraction.

``score_story`` is pure: caches are read by the caller (``ScoringService``)
and passed in, so a batch is scored against one consistent snapshot.
"""

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from storyintel.core.logging import get_logger
from storyintel.core.models import AlertLevel
from storyintel.core.schemas import PlatformSignals, StoryCandidate
from storyintel.core.time import Clock, age_hours, utc_now

from .caches import ExemplarSnapshot, ProfileSnapshot, TTLSnapshotCache
from .keywords import extract_keywords
from .stance import PhraseListStance, StanceClassifier

logger = get_logger(__name__)

# Term weights
CATEGORY_WEIGHT = 30.0
KEYWORD_MATCH_WEIGHT = 25.0
SOURCE_WEIGHT = 15.0
RECENCY_WEIGHT = 15.0
VELOCITY_WEIGHT = 15.0
EXEMPLAR_BONUS_CAP = 15.0

# Thresholds and parameters
CATEGORY_SATURATION = 5.0
SOURCE_SATURATION = 3
RECENCY_WINDOW_HOURS = 12.0
EXEMPLAR_CATEGORY_BONUS = 3.0
EXEMPLAR_TOPIC_BONUS = 2.0
EXEMPLAR_TOPIC_CAP = 8.0
EXEMPLAR_KEYWORD_FACTOR = 0.2
EXEMPLAR_KEYWORD_CAP = 4.0

TELEGRAM_THRESHOLD = 85.0
DASHBOARD_THRESHOLD = 40.0


@dataclass(frozen=True)
class VelocityConfig:
    """Hand-tuned saturation points and blend weights for the velocity term."""
    social_heat_weight: float = 0.6
    social_volume_threshold: float = 10_000
    social_volume_weight: float = 0.3
    rising_bonus: float = 0.1
    new_bonus: float = 0.05
    aggregator_score_threshold: float = 5_000
    aggregator_score_weight: float = 0.25
    aggregator_velocity_threshold: float = 10.0
    aggregator_velocity_weight: float = 0.15
    trend_millions_bonus: float = 0.2
    trend_thousands_bonus: float = 0.1
    high_velocity_threshold: float = 0.6


DEFAULT_VELOCITY_CONFIG = VelocityConfig()


@dataclass
class ScoreBreakdown:
    """Every scoring term for one candidate plus the derived totals."""
    relevance_score: float
    velocity_score: float
    total_score: float
    alert_level: AlertLevel
    matched_category: Optional[str]
    topic_cluster_id: Optional[str]
    is_high_velocity: bool
    category_score: float = 0.0
    keyword_match_score: float = 0.0
    source_score: float = 0.0
    recency_score: float = 0.0
    editorial_adjustment: float = 0.0
    exemplar_bonus: float = 0.0
    velocity_raw: float = 0.0
    keywords: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['alert_level'] = self.alert_level.value
        return data


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def round_points(value: float) -> float:
    """Round half up to a whole point (2.5 -> 3, not banker's rounding)."""
    return float(math.floor(value + 0.5))


def _ratio(value: Optional[float], threshold: float) -> float:
    """Signal over its saturation point, clamped to [0, 1]."""
    if not value or threshold <= 0:
        return 0.0
    return clamp(value / threshold, 0.0, 1.0)


def category_score(keywords: Sequence[str],
                   profiles: Sequence[ProfileSnapshot]) -> Tuple[float, Optional[str], Optional[str]]:
    """
    Best profile by summed weight of matched keywords.

    Returns (score, category, profile id). Ties keep the first profile seen.
    """
    if not keywords or not profiles:
        return 0.0, None, None

    best_weight = 0.0
    best: Optional[ProfileSnapshot] = None
    for profile in profiles:
        weight = sum(profile.keyword_weights.get(kw, 0.0) for kw in keywords)
        if weight > best_weight:
            best_weight = weight
            best = profile

    if best is None:
        return 0.0, None, None

    normalized = min(best_weight / CATEGORY_SATURATION, 1.0)
    return round_points(normalized * CATEGORY_WEIGHT), best.category, best.id


def keyword_match_score(keywords: Sequence[str], profiles: Sequence[ProfileSnapshot]) -> float:
    """Fraction of headline keywords present in the union of profile vocabularies."""
    if not keywords or not profiles:
        return 0.0
    vocabulary = set()
    for profile in profiles:
        vocabulary.update(profile.keyword_weights.keys())
    matched = sum(1 for kw in keywords if kw in vocabulary)
    return round_points(matched / len(keywords) * KEYWORD_MATCH_WEIGHT)


def source_score(source_count: int) -> float:
    return round_points(min(max(source_count, 0), SOURCE_SATURATION) / SOURCE_SATURATION * SOURCE_WEIGHT)


def recency_score(first_seen_at: Optional[datetime], now: Optional[datetime] = None) -> float:
    """Linear decay from full weight to zero over twelve hours; unknown age counts as new."""
    if first_seen_at is None:
        return RECENCY_WEIGHT
    decay = max(0.0, 1.0 - age_hours(first_seen_at, now) / RECENCY_WINDOW_HOURS)
    return round_points(decay * RECENCY_WEIGHT)


def exemplar_bonus(keywords: Sequence[str], matched_category: Optional[str],
                   exemplars: Iterable[ExemplarSnapshot]) -> float:
    """Bonus of the single closest exemplar (max, never a sum), capped."""
    keyword_set = set(keywords)
    best = 0.0

    for exemplar in exemplars:
        bonus = 0.0
        if matched_category and matched_category in exemplar.similar_to_categories:
            bonus += EXEMPLAR_CATEGORY_BONUS

        shared_topics = sum(1 for topic in exemplar.topics if topic in keyword_set)
        bonus += min(shared_topics * EXEMPLAR_TOPIC_BONUS, EXEMPLAR_TOPIC_CAP)

        keyword_weight = sum(
            exemplar.keywords[kw] for kw in keywords if kw in exemplar.keywords
        )
        bonus += min(keyword_weight * EXEMPLAR_KEYWORD_FACTOR, EXEMPLAR_KEYWORD_CAP)

        best = max(best, bonus)

    return min(best, EXEMPLAR_BONUS_CAP)


def velocity_blend(signals: Optional[PlatformSignals],
                   config: VelocityConfig = DEFAULT_VELOCITY_CONFIG) -> float:
    """Raw velocity blend in [0, 1]; absent or out-of-range signals are clamped, never rejected."""
    if signals is None:
        return 0.0

    raw = 0.0
    social = signals.social
    if social is not None:
        raw += _ratio(social.heat, 100.0) * config.social_heat_weight
        raw += _ratio(social.volume, config.social_volume_threshold) * config.social_volume_weight
        trend = (social.velocity or '').lower()
        if trend == 'rising':
            raw += config.rising_bonus
        elif trend == 'new':
            raw += config.new_bonus

    aggregator = signals.aggregator
    if aggregator is not None:
        raw += _ratio(aggregator.score, config.aggregator_score_threshold) * config.aggregator_score_weight
        raw += _ratio(aggregator.velocity, config.aggregator_velocity_threshold) * config.aggregator_velocity_weight

    trends = signals.trends
    if trends is not None and trends.traffic_volume:
        magnitude = trends.traffic_volume.upper()
        if 'M' in magnitude:
            raw += config.trend_millions_bonus
        elif 'K' in magnitude:
            raw += config.trend_thousands_bonus

    return min(raw, 1.0)


def velocity_score(signals: Optional[PlatformSignals],
                   config: VelocityConfig = DEFAULT_VELOCITY_CONFIG) -> Tuple[float, bool]:
    """(score out of 15, is_high_velocity)."""
    raw = velocity_blend(signals, config)
    return round_points(raw * VELOCITY_WEIGHT), raw >= config.high_velocity_threshold


def classify_alert(total: float, is_high_velocity: bool) -> AlertLevel:
    """High relevance alone never reaches TELEGRAM without qualifying velocity."""
    if total >= TELEGRAM_THRESHOLD and is_high_velocity:
        return AlertLevel.TELEGRAM
    if total >= DASHBOARD_THRESHOLD:
        return AlertLevel.DASHBOARD
    return AlertLevel.NONE


def score_story(candidate: StoryCandidate,
                profiles: Sequence[ProfileSnapshot],
                exemplars: Sequence[ExemplarSnapshot],
                now: Optional[datetime] = None,
                stance: Optional[StanceClassifier] = None,
                velocity_config: VelocityConfig = DEFAULT_VELOCITY_CONFIG) -> ScoreBreakdown:
    """Score one candidate against the given profile and exemplar snapshots."""
    stance = stance or _DEFAULT_STANCE
    keywords = extract_keywords(candidate.headline)

    category, matched_category, cluster_id = category_score(keywords, profiles)
    keyword_match = keyword_match_score(keywords, profiles)
    sources = source_score(len(candidate.sources))
    recency = recency_score(candidate.first_seen_at, now)
    editorial = stance.adjustment(candidate.headline)
    exemplar = exemplar_bonus(keywords, matched_category, exemplars)
    velocity_raw = velocity_blend(candidate.platform_signals, velocity_config)
    velocity = round_points(velocity_raw * VELOCITY_WEIGHT)
    is_high_velocity = velocity_raw >= velocity_config.high_velocity_threshold

    relevance = round(clamp(category + keyword_match + sources + recency + editorial + exemplar), 2)
    velocity = clamp(velocity)
    total = round(clamp(relevance + velocity), 2)

    return ScoreBreakdown(
        relevance_score=relevance,
        velocity_score=velocity,
        total_score=total,
        alert_level=classify_alert(total, is_high_velocity),
        matched_category=matched_category,
        topic_cluster_id=cluster_id,
        is_high_velocity=is_high_velocity,
        category_score=category,
        keyword_match_score=keyword_match,
        source_score=sources,
        recency_score=recency,
        editorial_adjustment=editorial,
        exemplar_bonus=exemplar,
        velocity_raw=velocity_raw,
        keywords=keywords,
    )


_DEFAULT_STANCE = PhraseListStance()


class ScoringService:
    """Scores candidates against the cached topic profiles and exemplars."""

    def __init__(self,
                 profile_cache: TTLSnapshotCache,
                 exemplar_cache: TTLSnapshotCache,
                 stance: Optional[StanceClassifier] = None,
                 velocity_config: VelocityConfig = DEFAULT_VELOCITY_CONFIG,
                 clock: Clock = utc_now):
        self.profile_cache = profile_cache
        self.exemplar_cache = exemplar_cache
        self.stance = stance or _DEFAULT_STANCE
        self.velocity_config = velocity_config
        self.clock = clock

    @classmethod
    def from_settings(cls, session_factory, settings=None, clock: Clock = utc_now) -> "ScoringService":
        """Service with DB-backed caches and the configured stance lists."""
        from storyintel.core.settings import get_settings

        from .caches import exemplar_cache, topic_profile_cache
        from .stance import load_stance

        settings = settings or get_settings()
        return cls(
            profile_cache=topic_profile_cache(
                session_factory, timedelta(seconds=settings.profile_cache_ttl_seconds), clock
            ),
            exemplar_cache=exemplar_cache(
                session_factory, timedelta(seconds=settings.exemplar_cache_ttl_seconds), clock
            ),
            stance=load_stance(settings.stance_config_path),
            clock=clock,
        )

    async def snapshots(self, now: Optional[datetime] = None):
        """(profiles, exemplars) as currently cached."""
        now = now or self.clock()
        profiles = await self.profile_cache.get(now)
        exemplars = await self.exemplar_cache.get(now)
        return profiles, exemplars

    def score_with(self, candidate: StoryCandidate,
                   profiles: Sequence[ProfileSnapshot],
                   exemplars: Sequence[ExemplarSnapshot],
                   now: Optional[datetime] = None) -> ScoreBreakdown:
        return score_story(candidate, profiles, exemplars, now=now or self.clock(),
                           stance=self.stance, velocity_config=self.velocity_config)

    async def score(self, candidate: StoryCandidate, now: Optional[datetime] = None) -> ScoreBreakdown:
        now = now or self.clock()
        profiles, exemplars = await self.snapshots(now)
        return self.score_with(candidate, profiles, exemplars, now)

    async def score_many(self, candidates: Sequence[StoryCandidate],
                         now: Optional[datetime] = None) -> List[ScoreBreakdown]:
        """Score a batch with one cache read for the whole batch."""
        now = now or self.clock()
        profiles, exemplars = await self.snapshots(now)
        results = [self.score_with(c, profiles, exemplars, now) for c in candidates]
        logger.debug(f"Scored {len(results)} candidates against {len(profiles)} profiles")
        return results


@lru_cache()
def get_scoring_service() -> ScoringService:
    """Process-wide scoring service, so the profile and exemplar caches outlive a single run."""
    from storyintel.core.db import get_session_factory

    return ScoringService.from_settings(get_session_factory())
