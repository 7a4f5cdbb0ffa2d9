"""Database models for StoryIntel."""
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import mapped_column, relationship
from sqlalchemy.sql import func

from .db import Base


class AlertLevel(str, Enum):
    """How prominently a story is surfaced."""
    NONE = "NONE"
    DASHBOARD = "DASHBOARD"
    TELEGRAM = "TELEGRAM"


class VerificationStatus(str, Enum):
    UNVERIFIED = "UNVERIFIED"
    VERIFIED = "VERIFIED"
    PLAUSIBLE = "PLAUSIBLE"
    DISPUTED = "DISPUTED"
    FLAGGED = "FLAGGED"


class StoryOutcome(str, Enum):
    CLAIMED = "CLAIMED"
    IGNORED = "IGNORED"


class DismissalReason(str, Enum):
    STALE = "STALE"
    MANUAL = "MANUAL"


class LifecycleState(str, Enum):
    """Editorial lifecycle of a story. Everything past SURFACED is terminal."""
    FRESH = "FRESH"
    SURFACED = "SURFACED"
    CLAIMED = "CLAIMED"
    STALE_DISMISSED = "STALE_DISMISSED"
    MANUALLY_DISMISSED = "MANUALLY_DISMISSED"


class ExemplarStatus(str, Enum):
    PENDING = "PENDING"
    PREVIEW_READY = "PREVIEW_READY"
    ANALYZED = "ANALYZED"
    FAILED = "FAILED"


class FeedbackAction(str, Enum):
    QUICK_RATE = "QUICK_RATE"
    CLAIM_FEEDBACK = "CLAIM_FEEDBACK"
    DISMISS_FEEDBACK = "DISMISS_FEEDBACK"


class FeedbackTag(str, Enum):
    GREAT_ANGLE = "GREAT_ANGLE"
    TIMELY = "TIMELY"
    WOULD_GO_VIRAL = "WOULD_GO_VIRAL"
    AUDIENCE_MATCH = "AUDIENCE_MATCH"
    UNDERREPORTED = "UNDERREPORTED"
    WRONG_AUDIENCE = "WRONG_AUDIENCE"
    ALREADY_COVERED = "ALREADY_COVERED"
    TIMING_OFF = "TIMING_OFF"
    LOW_QUALITY_SOURCE = "LOW_QUALITY_SOURCE"
    NOT_NEWSWORTHY = "NOT_NEWSWORTHY"
    CLICKBAIT = "CLICKBAIT"


class StoryIntelligence(Base):
    """Scored story candidates surfaced to editors. Rows are never deleted."""
    __tablename__ = "story_intelligence"

    id = mapped_column(Integer, primary_key=True)
    headline = mapped_column(String(800), nullable=False)
    source_url = mapped_column(String(1500), nullable=False, unique=True)
    sources = mapped_column(JSON, nullable=False, default=list)  # [{name, url}]
    category = mapped_column(String(100), nullable=True, index=True)
    topic_cluster_id = mapped_column(String(64), nullable=True)
    relevance_score = mapped_column(Float, nullable=False, default=0.0)
    velocity_score = mapped_column(Float, nullable=False, default=0.0)
    alert_level = mapped_column(String(16), nullable=False, default=AlertLevel.NONE.value)
    verification_status = mapped_column(
        String(16), nullable=False, default=VerificationStatus.UNVERIFIED.value
    )
    verification_notes = mapped_column(Text, nullable=True)
    dismissed = mapped_column(Boolean, nullable=False, default=False)
    dismissed_reason = mapped_column(String(16), nullable=True)
    claimed_by_id = mapped_column(String(64), nullable=True)
    claimed_at = mapped_column(DateTime(timezone=True), nullable=True)
    article_id = mapped_column(String(64), nullable=True)
    outcome = mapped_column(String(16), nullable=True)
    first_seen_at = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    surfaced_at = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    platform_signals = mapped_column(JSON(none_as_null=True), nullable=True)
    suggested_angles = mapped_column(JSON(none_as_null=True), nullable=True)

    verification_sources = relationship(
        "VerificationSource",
        back_populates="story",
        order_by="VerificationSource.id",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint(
            "(claimed_by_id IS NULL AND article_id IS NULL) OR "
            "(claimed_by_id IS NOT NULL AND article_id IS NOT NULL)",
            name="ck_story_claim_complete",
        ),
        CheckConstraint("relevance_score >= 0 AND relevance_score <= 100", name="ck_story_relevance_range"),
        CheckConstraint("velocity_score >= 0 AND velocity_score <= 100", name="ck_story_velocity_range"),
    )

    @property
    def state(self) -> LifecycleState:
        """Lifecycle state derived from the row."""
        if self.claimed_by_id is not None:
            return LifecycleState.CLAIMED
        if self.dismissed:
            if self.dismissed_reason == DismissalReason.STALE.value:
                return LifecycleState.STALE_DISMISSED
            return LifecycleState.MANUALLY_DISMISSED
        if self.surfaced_at is not None:
            return LifecycleState.SURFACED
        return LifecycleState.FRESH


class VerificationSource(Base):
    """Append-only corroboration evidence for a story."""
    __tablename__ = "verification_sources"

    id = mapped_column(Integer, primary_key=True)
    story_id = mapped_column(ForeignKey("story_intelligence.id"), nullable=False, index=True)
    source_name = mapped_column(String(200), nullable=False)
    source_url = mapped_column(String(1500), nullable=False)
    corroborates = mapped_column(Boolean, nullable=False)
    excerpt = mapped_column(Text, nullable=True)
    created_at = mapped_column(DateTime(timezone=True), server_default=func.now())

    story = relationship("StoryIntelligence", back_populates="verification_sources")


class TopicProfile(Base):
    """Learned keyword weights per editorial category."""
    __tablename__ = "topic_profiles"

    id = mapped_column(Integer, primary_key=True)
    category = mapped_column(String(100), nullable=False, unique=True)
    keyword_weights = mapped_column(JSON, nullable=False, default=dict)
    article_count = mapped_column(Integer, nullable=False, default=0)
    last_updated = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class ArticleExemplar(Base):
    """Vetted reference article biasing scoring toward proven topics."""
    __tablename__ = "article_exemplars"

    id = mapped_column(Integer, primary_key=True)
    url = mapped_column(String(1500), nullable=False, unique=True)
    title = mapped_column(String(800), nullable=True)
    category = mapped_column(String(100), nullable=True)
    # {topics: [...], keywords: {kw: delta}, similar_to_categories: [...]}
    fingerprint = mapped_column(JSON(none_as_null=True), nullable=True)
    status = mapped_column(String(16), nullable=False, default=ExemplarStatus.PENDING.value, index=True)
    created_at = mapped_column(DateTime(timezone=True), server_default=func.now())
    analyzed_at = mapped_column(DateTime(timezone=True), nullable=True)


class StoryFeedback(Base):
    """Append-only editor ratings."""
    __tablename__ = "story_feedback"

    id = mapped_column(Integer, primary_key=True)
    story_id = mapped_column(ForeignKey("story_intelligence.id"), nullable=False, index=True)
    user_id = mapped_column(String(64), nullable=False)
    rating = mapped_column(Integer, nullable=False)
    tags = mapped_column(JSON, nullable=False, default=list)
    action = mapped_column(String(32), nullable=False)
    created_at = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)

    __table_args__ = (
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_feedback_rating_range"),
    )


Index(
    "idx_story_dashboard",
    StoryIntelligence.dismissed,
    StoryIntelligence.first_seen_at,
    StoryIntelligence.relevance_score.desc(),
)
Index("idx_story_feedback_story_created", StoryFeedback.story_id, StoryFeedback.created_at)
