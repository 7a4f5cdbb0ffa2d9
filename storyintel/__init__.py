"""StoryIntel: story scoring, deduplication and editorial lifecycle engine."""

__version__ = "0.1.0"
