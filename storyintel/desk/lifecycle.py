"""Editorial lifecycle of scored stories.

FRESH -> SURFACED -> CLAIMED | STALE_DISMISSED | MANUALLY_DISMISSED

Stories surface when a dashboard read returns them. Every dashboard read
first runs the staleness sweep, which dismisses open stories older than
the stale threshold. Claims and manual dismissals are conditional updates,
so of two concurrent claims exactly one succeeds.
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import async_sessionmaker

from storyintel.core.logging import get_logger
from storyintel.core.models import FeedbackAction, FeedbackTag, StoryIntelligence
from storyintel.core.repositories import (
    claim_story_if_unclaimed,
    dismiss_story_if_open,
    get_story,
    insert_feedback,
    list_dashboard_stories,
    mark_surfaced,
    summarize_feedback,
    sweep_stale_stories,
)
from storyintel.core.time import Clock, hours_ago, utc_now

from .drafts import DraftCreator

logger = get_logger(__name__)

STALE_AFTER_HOURS = 18.0
DASHBOARD_WINDOW_HOURS = 24.0
DASHBOARD_LIMIT = 10

VALID_TAGS = frozenset(tag.value for tag in FeedbackTag)
VALID_ACTIONS = frozenset(action.value for action in FeedbackAction)


class StoryIntelError(Exception):
    """Base class for desk errors."""


class StoryNotFoundError(StoryIntelError):
    def __init__(self, story_id: int):
        super().__init__(f"Story not found: {story_id}")
        self.story_id = story_id


class StoryConflictError(StoryIntelError):
    """The story is no longer in a state that allows the transition."""


class InvalidFeedbackError(StoryIntelError):
    pass


class StalenessSweeper:
    """Auto-dismisses open stories first seen more than ``stale_after_hours`` ago."""

    def __init__(self, session_factory: async_sessionmaker,
                 stale_after_hours: float = STALE_AFTER_HOURS,
                 clock: Clock = utc_now):
        self.session_factory = session_factory
        self.stale_after_hours = stale_after_hours
        self.clock = clock

    async def sweep(self, now=None) -> int:
        now = now or self.clock()
        cutoff = hours_ago(self.stale_after_hours, now)
        async with self.session_factory() as session:
            dismissed = await sweep_stale_stories(session, cutoff)
        if dismissed:
            logger.info(f"Auto-dismissed {dismissed} stale stories", extra={'cutoff': cutoff.isoformat()})
        return dismissed


class StoryDesk:
    """Dashboard reads and editor actions on stories."""

    def __init__(self,
                 session_factory: async_sessionmaker,
                 draft_creator: Optional[DraftCreator] = None,
                 sweeper: Optional[StalenessSweeper] = None,
                 dashboard_window_hours: float = DASHBOARD_WINDOW_HOURS,
                 dashboard_limit: int = DASHBOARD_LIMIT,
                 clock: Clock = utc_now):
        self.session_factory = session_factory
        self.draft_creator = draft_creator
        self.sweeper = sweeper or StalenessSweeper(session_factory, clock=clock)
        self.dashboard_window_hours = dashboard_window_hours
        self.dashboard_limit = dashboard_limit
        self.clock = clock

    @classmethod
    def from_settings(cls, session_factory, draft_creator=None, settings=None, clock: Clock = utc_now) -> "StoryDesk":
        from storyintel.core.settings import get_settings

        settings = settings or get_settings()
        return cls(
            session_factory,
            draft_creator=draft_creator,
            sweeper=StalenessSweeper(session_factory, settings.stale_after_hours, clock),
            dashboard_window_hours=settings.dashboard_window_hours,
            dashboard_limit=settings.dashboard_limit,
            clock=clock,
        )

    async def sweep(self) -> int:
        return await self.sweeper.sweep(self.clock())

    async def dashboard(self) -> List[StoryIntelligence]:
        """
        Sweep, then return the top stories of the dashboard window.

        Returned stories are stamped as surfaced.
        """
        now = self.clock()
        await self.sweeper.sweep(now)

        async with self.session_factory() as session:
            stories = await list_dashboard_stories(
                session, hours_ago(self.dashboard_window_hours, now), self.dashboard_limit
            )
            fresh_ids = [s.id for s in stories if s.surfaced_at is None]
            await mark_surfaced(session, fresh_ids, now)
            for story in stories:
                if story.id in fresh_ids:
                    story.surfaced_at = now

        logger.debug(f"Dashboard returned {len(stories)} stories ({len(fresh_ids)} newly surfaced)")
        return stories

    async def claim(self, story_id: int, actor_id: str) -> str:
        """
        Claim a story for ``actor_id`` and return the new draft's article id.

        Raises:
            StoryNotFoundError: no such story
            StoryConflictError: already claimed or dismissed, including when
                another claim wins between the check and the update
        """
        if self.draft_creator is None:
            raise StoryIntelError("No draft creator configured")

        async with self.session_factory() as session:
            story = await get_story(session, story_id)
            if story is None:
                raise StoryNotFoundError(story_id)
            if story.claimed_by_id is not None:
                raise StoryConflictError(f"Story {story_id} already claimed")
            if story.dismissed:
                raise StoryConflictError(f"Story {story_id} is dismissed")

            story_data = {
                'id': story.id,
                'headline': story.headline,
                'source_url': story.source_url,
                'suggested_angles': list(story.suggested_angles or []),
            }

        # Draft first; nothing is written to the story if this raises
        article_id = await self.draft_creator.create_draft(story_data, actor_id)

        async with self.session_factory() as session:
            claimed = await claim_story_if_unclaimed(session, story_id, actor_id, article_id, self.clock())

        if not claimed:
            logger.warning(
                f"Claim race lost for story {story_id}",
                extra={'actor_id': actor_id, 'article_id': article_id}
            )
            await self._discard(article_id)
            raise StoryConflictError(f"Story {story_id} already claimed")

        logger.info(f"Story {story_id} claimed", extra={'actor_id': actor_id, 'article_id': article_id})
        return article_id

    async def dismiss(self, story_id: int) -> bool:
        """
        Manually dismiss a story.

        Returns:
            True if this call dismissed it, False if it was already dismissed

        Raises:
            StoryNotFoundError: no such story
            StoryConflictError: the story is claimed
        """
        async with self.session_factory() as session:
            story = await get_story(session, story_id)
            if story is None:
                raise StoryNotFoundError(story_id)
            if story.claimed_by_id is not None:
                raise StoryConflictError(f"Story {story_id} is claimed")
            if story.dismissed:
                return False

            dismissed = await dismiss_story_if_open(session, story_id)

        if dismissed:
            logger.info(f"Story {story_id} dismissed")
            return True

        # Lost to a concurrent transition; re-read to report which
        async with self.session_factory() as session:
            story = await get_story(session, story_id)
        if story is not None and story.claimed_by_id is not None:
            raise StoryConflictError(f"Story {story_id} is claimed")
        return False

    async def submit_feedback(self, story_id: int, user_id: str, rating: Any,
                              tags: Optional[Sequence[Any]], action: str) -> Dict[str, Any]:
        """
        Record a rating and return the updated aggregate.

        Unknown tags are dropped; a bad rating or action raises
        InvalidFeedbackError before anything is written.
        """
        if isinstance(rating, float) and rating.is_integer():
            rating = int(rating)
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise InvalidFeedbackError("Rating must be an integer between 1 and 5")
        if action not in VALID_ACTIONS:
            raise InvalidFeedbackError("Invalid action")

        filtered_tags = [t for t in (tags or []) if isinstance(t, str) and t in VALID_TAGS]

        async with self.session_factory() as session:
            story = await get_story(session, story_id)
            if story is None:
                raise StoryNotFoundError(story_id)
            await insert_feedback(session, story_id, user_id, rating, filtered_tags, action)
            summary = await summarize_feedback(session, story_id, user_id)

        logger.info(
            f"Feedback recorded for story {story_id}",
            extra={'user_id': user_id, 'rating': rating, 'action': action}
        )
        return summary

    async def feedback_summary(self, story_id: int, user_id: Optional[str] = None) -> Dict[str, Any]:
        async with self.session_factory() as session:
            return await summarize_feedback(session, story_id, user_id)

    async def _discard(self, article_id: str) -> None:
        try:
            await self.draft_creator.discard_draft(article_id)
        except Exception as e:
            logger.error(f"Failed to discard orphaned draft {article_id}: {e}")


def run_cli() -> int:
    """Run one staleness sweep against the configured database."""
    from storyintel.core.db import get_session_factory
    from storyintel.core.settings import get_settings

    settings = get_settings()
    sweeper = StalenessSweeper(get_session_factory(), settings.stale_after_hours)
    return asyncio.run(sweeper.sweep())


def main():
    """CLI entry point."""
    import argparse

    from storyintel.core.logging import setup_logging

    parser = argparse.ArgumentParser(description='Dismiss stale story recommendations')
    parser.parse_args()

    setup_logging("desk")
    dismissed = run_cli()
    print(f"Dismissed {dismissed} stale stories")
    return 0


if __name__ == "__main__":
    exit(main())
