"""
Pydantic models shared by the ingestor, the scoring engine and the desk API.

Candidates and platform signals are validated here on their way in from
collectors; the API response models mirror the persisted rows.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    ValidatorFunctionWrapHandler,
    field_validator,
    model_validator,
)

from .logging import get_logger
from .models import AlertLevel, VerificationStatus

logger = get_logger(__name__)


class SourceRef(BaseModel):
    """One outlet reporting a story."""
    name: str = Field(..., min_length=1)
    url: str = Field(..., min_length=1)


class SocialSignals(BaseModel):
    """Social-feed heat, as returned by the secondary signal lookup.

    Out-of-range numbers are kept as reported; the velocity blend clamps them.
    """
    volume: Optional[float] = Field(None, validation_alias=AliasChoices("volume", "tweetVolume"),
                                    description="Post volume")
    heat: Optional[float] = Field(None, description="Heat index 0-100")
    velocity: Optional[str] = Field(None, description="'rising', 'new' or 'steady'")


class AggregatorSignals(BaseModel):
    """Link aggregator metrics (upvotes and upvotes per minute)."""
    score: Optional[float] = None
    velocity: Optional[float] = None
    num_comments: Optional[int] = Field(None, validation_alias=AliasChoices("num_comments", "numComments"))


class TrendSignals(BaseModel):
    """Search trend magnitude such as '200K+' or '2M+'."""
    traffic_volume: Optional[str] = Field(None, validation_alias=AliasChoices("traffic_volume", "trafficVolume"))


# Feed-specific group names accepted on input
GROUP_ALIASES = {
    'x': 'social',
    'twitter': 'social',
    'reddit': 'aggregator',
    'googleTrends': 'trends',
    'google_trends': 'trends',
}
FLAT_SOCIAL_KEYS = ('heat', 'volume', 'velocity', 'tweetVolume')


class PlatformSignals(BaseModel):
    """
    Platform signals grouped as ``social``, ``aggregator`` and ``trends``.

    The flat lookup shape ``{heat, volume, velocity}`` is read as the social
    group, and feed names (``x``, ``reddit``, ``googleTrends``) map onto their
    group. Unknown keys are dropped with a warning. A group that fails
    validation is dropped on its own, so it contributes no velocity while
    the rest of the candidate survives.
    """
    model_config = ConfigDict(extra="ignore")

    social: Optional[SocialSignals] = None
    aggregator: Optional[AggregatorSignals] = None
    trends: Optional[TrendSignals] = None

    @model_validator(mode="before")
    @classmethod
    def normalize_groups(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data

        groups: Dict[str, Any] = {}
        flat_social = {k: data[k] for k in FLAT_SOCIAL_KEYS if k in data}
        if flat_social:
            groups['social'] = flat_social

        for key, value in data.items():
            if key in FLAT_SOCIAL_KEYS:
                continue
            group = GROUP_ALIASES.get(key, key)
            if group not in ('social', 'aggregator', 'trends'):
                logger.warning(f"Ignoring unknown platform signal '{key}'")
                continue
            if group == 'social' and isinstance(value, dict) and isinstance(groups.get('social'), dict):
                groups['social'] = {**groups['social'], **value}
            else:
                groups[group] = value
        return groups

    @field_validator("social", "aggregator", "trends", mode="wrap")
    @classmethod
    def drop_invalid_group(cls, value: Any, handler: ValidatorFunctionWrapHandler,
                           info: ValidationInfo) -> Any:
        try:
            return handler(value)
        except ValidationError as e:
            logger.warning(f"Ignoring invalid {info.field_name} signals: {e.error_count()} errors")
            return None

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)

    def merged_with(self, newer: Optional["PlatformSignals"]) -> "PlatformSignals":
        """Newer signal groups replace older ones; groups absent from ``newer`` survive."""
        if newer is None:
            return self
        merged = self.to_json()
        merged.update(newer.to_json())
        return PlatformSignals.model_validate(merged)


class StoryCandidate(BaseModel):
    """An unpersisted story surfaced by a collector during one ingestion pass."""
    headline: str = Field(..., min_length=1)
    source_url: str = Field(..., min_length=1)
    sources: List[SourceRef] = Field(default_factory=list)
    platform_signals: Optional[PlatformSignals] = None
    first_seen_at: Optional[datetime] = None
    trending: bool = False

    # Set by the orchestrator
    collector: Optional[str] = None
    kind: Optional[str] = None

    @field_validator("headline", "source_url")
    @classmethod
    def strip_text(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("platform_signals", mode="wrap")
    @classmethod
    def tolerate_bad_signals(cls, value: Any, handler: ValidatorFunctionWrapHandler) -> Any:
        """Unreadable signals score as absent instead of rejecting the story."""
        try:
            return handler(value)
        except ValidationError as e:
            logger.warning(f"Ignoring unreadable platform signals: {e.error_count()} errors")
            return None


class VerificationSourceIn(BaseModel):
    source_name: str = Field(..., min_length=1)
    source_url: str = Field(..., min_length=1)
    corroborates: bool
    excerpt: Optional[str] = None


class ScoredStoryIn(BaseModel):
    """A story scored outside the engine, e.g. by an offline batch analyser."""
    headline: str = Field(..., min_length=1)
    source_url: str = Field(..., min_length=1)
    category: Optional[str] = None
    topic_cluster_id: Optional[str] = None
    relevance_score: Optional[float] = None
    velocity_score: Optional[float] = None
    alert_level: Optional[AlertLevel] = None
    verification_status: Optional[VerificationStatus] = None
    verification_notes: Optional[str] = None
    suggested_angles: Optional[List[str]] = None
    sources: Optional[List[SourceRef]] = None
    platform_signals: Optional[Dict[str, Any]] = None
    verification_sources: List[VerificationSourceIn] = Field(default_factory=list)


class VerificationSourceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    source_name: str
    source_url: str
    corroborates: bool
    excerpt: Optional[str] = None


class ClaimSummary(BaseModel):
    claimed_by_id: str
    claimed_at: Optional[datetime] = None
    article_id: str


class StoryOut(BaseModel):
    """Dashboard view of a story."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    headline: str
    source_url: str
    sources: List[Dict[str, Any]] = Field(default_factory=list)
    category: Optional[str] = None
    topic_cluster_id: Optional[str] = None
    relevance_score: float
    velocity_score: float
    alert_level: str
    verification_status: str
    dismissed: bool
    outcome: Optional[str] = None
    state: str
    first_seen_at: datetime
    platform_signals: Optional[Dict[str, Any]] = None
    suggested_angles: Optional[List[str]] = None
    verification_sources: List[VerificationSourceOut] = Field(default_factory=list)
    claim: Optional[ClaimSummary] = None

    @classmethod
    def from_story(cls, story) -> "StoryOut":
        claim = None
        if story.claimed_by_id is not None:
            claim = ClaimSummary(
                claimed_by_id=story.claimed_by_id,
                claimed_at=story.claimed_at,
                article_id=story.article_id,
            )
        return cls(
            id=story.id,
            headline=story.headline,
            source_url=story.source_url,
            sources=story.sources or [],
            category=story.category,
            topic_cluster_id=story.topic_cluster_id,
            relevance_score=story.relevance_score,
            velocity_score=story.velocity_score,
            alert_level=story.alert_level,
            verification_status=story.verification_status,
            dismissed=story.dismissed,
            outcome=story.outcome,
            state=story.state.value,
            first_seen_at=story.first_seen_at,
            platform_signals=story.platform_signals,
            suggested_angles=story.suggested_angles,
            verification_sources=[
                VerificationSourceOut.model_validate(vs) for vs in story.verification_sources
            ],
            claim=claim,
        )


class ExemplarFingerprint(BaseModel):
    """Topics, keyword deltas and similar categories learned from an exemplar."""
    topics: List[str] = Field(default_factory=list)
    keywords: Dict[str, float] = Field(default_factory=dict)
    similar_to_categories: List[str] = Field(
        default_factory=list, validation_alias=AliasChoices("similar_to_categories", "similarToCategories")
    )


class ExemplarIn(BaseModel):
    url: str = Field(..., min_length=1)
    title: Optional[str] = None
    category: Optional[str] = None
    fingerprint: Optional[ExemplarFingerprint] = None

    @field_validator("url")
    @classmethod
    def strip_url(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v


class ExemplarOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    url: str
    title: Optional[str] = None
    category: Optional[str] = None
    status: str
    fingerprint: Optional[Dict[str, Any]] = None
    analyzed_at: Optional[datetime] = None


class FeedbackSummary(BaseModel):
    total_ratings: int
    avg_rating: Optional[float] = None
    tag_counts: Dict[str, int] = Field(default_factory=dict)
    user_rating: Optional[int] = None
    user_tags: List[str] = Field(default_factory=list)


__all__ = [
    "SourceRef",
    "SocialSignals",
    "AggregatorSignals",
    "TrendSignals",
    "PlatformSignals",
    "StoryCandidate",
    "VerificationSourceIn",
    "ScoredStoryIn",
    "VerificationSourceOut",
    "ClaimSummary",
    "StoryOut",
    "ExemplarFingerprint",
    "ExemplarIn",
    "ExemplarOut",
    "FeedbackSummary",
]
