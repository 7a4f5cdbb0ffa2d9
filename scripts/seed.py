#!/usr/bin/env python3
"""Database seeding script for StoryIntel.

This script connects to the database, creates all tables, and loads the
topic profiles from config/topic_profiles.yaml using the repository layer.
"""

import asyncio
import sys
from pathlib import Path

from sqlalchemy import select

from storyintel.core.db import create_all, get_session_factory
from storyintel.core.models import TopicProfile
from storyintel.core.settings import get_settings
from storyintel.scoring.learning import seed_topic_profiles

settings = get_settings()
project_root = Path(__file__).parent.parent


async def print_profile_summary(session):
    """Print summary of topic profiles in database."""
    print("\n" + "=" * 60)
    print("📊 TOPIC PROFILE SUMMARY")
    print("=" * 60)

    result = await session.execute(select(TopicProfile).order_by(TopicProfile.category))
    profiles = result.scalars().all()

    if not profiles:
        print("No topic profiles found in database.")
        return 0

    for i, profile in enumerate(profiles, 1):
        weights = profile.keyword_weights or {}
        top = sorted(weights.items(), key=lambda kv: kv[1], reverse=True)[:3]
        top_str = ", ".join(f"{kw}={w:.2f}" for kw, w in top) or "none"
        print(f"  {i:2d}. {profile.category} ({len(weights)} keywords; top: {top_str})")

    return len(profiles)


async def main():
    """Main seeding function."""
    print("🌱 Starting StoryIntel database seeding...")

    config_path = Path(settings.topic_profiles_path)
    if not config_path.is_absolute():
        config_path = project_root / config_path

    if not config_path.exists():
        print(f"❌ Seed file not found: {config_path}")
        return 1

    try:
        print("\n📊 Creating database tables...")
        await create_all()
        print("✅ Database tables ready")

        async with get_session_factory()() as session:
            processed = await seed_topic_profiles(session, str(config_path))
            total = await print_profile_summary(session)

        print("\n" + "=" * 60)
        print("🎉 DATABASE SEEDING COMPLETE!")
        print("=" * 60)
        print(f"🏷️  Profiles processed: {processed}")
        print(f"📈 Total profiles: {total}")
        print("=" * 60)

        return 0 if total else 1

    except Exception as e:
        print(f"❌ Error during seeding: {e}")
        import traceback
        traceback.print_exc()
        return 1


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
