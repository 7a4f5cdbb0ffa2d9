"""Shared fixtures: a throwaway SQLite database per test and a controllable clock."""

from datetime import datetime, timedelta, timezone

import pytest

from storyintel.core.db import build_engine, build_session_factory, create_all, drop_all
from storyintel.core.models import StoryIntelligence

NOW = datetime(2026, 3, 10, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    await create_all(engine)
    yield engine
    await drop_all(engine)
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


async def add_story(session_factory, **overrides) -> int:
    """Persist a story row directly and return its id."""
    values = {
        'headline': 'Senate passes border security bill',
        'source_url': 'https://example.com/story',
        'sources': [{'name': 'Example', 'url': 'https://example.com/story'}],
        'relevance_score': 50.0,
        'velocity_score': 0.0,
        'first_seen_at': NOW,
    }
    values.update(overrides)
    async with session_factory() as session:
        story = StoryIntelligence(**values)
        session.add(story)
        await session.commit()
        return story.id


async def fetch_story(session_factory, story_id: int) -> StoryIntelligence:
    async with session_factory() as session:
        return await session.get(StoryIntelligence, story_id)
