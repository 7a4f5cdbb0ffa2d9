"""Story scoring package.

This package contains modules for:
- Headline keyword extraction (keywords.py)
- TTL snapshot caches of topic profiles and exemplars (caches.py)
- Editorial stance classification (stance.py)
- Relevance and velocity scoring (engine.py)
- Exemplar learning and topic profile seeding (learning.py)
"""

from .keywords import extract_keywords

from .caches import (
    ExemplarSnapshot,
    ProfileSnapshot,
    TTLSnapshotCache,
)

from .stance import NeutralStance, PhraseListStance, StanceClassifier

from .engine import (
    ScoreBreakdown,
    ScoringService,
    VelocityConfig,
    classify_alert,
    score_story,
)

__all__ = [
    # Keywords
    'extract_keywords',

    # Caches
    'ExemplarSnapshot',
    'ProfileSnapshot',
    'TTLSnapshotCache',

    # Stance
    'NeutralStance',
    'PhraseListStance',
    'StanceClassifier',

    # Scoring
    'ScoreBreakdown',
    'ScoringService',
    'VelocityConfig',
    'classify_alert',
    'score_story',
]
