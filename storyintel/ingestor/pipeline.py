"""Story Ingestion Pipeline Orchestrator.

Coordinates one ingestion pass:
- Concurrent collection from every registered collector
- Optional secondary social-signal lookup
- Fold duplicates within the pass, then merge with any stored record for the same source_url
- Scoring against one snapshot of the topic profile and exemplar caches
- Upsert by source_url, bounded concurrency, one session per candidate
"""

import asyncio
import json
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import yaml
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import async_sessionmaker

from storyintel.core.logging import get_logger
from storyintel.core.models import AlertLevel, VerificationStatus
from storyintel.core.repositories import (
    REFRESHABLE_COLUMNS,
    add_verification_sources,
    merge_signals,
    merge_sources,
    upsert_story,
)
from storyintel.core.schemas import PlatformSignals, ScoredStoryIn, SourceRef, StoryCandidate
from storyintel.core.time import Clock, ensure_utc, utc_now
from storyintel.ingestor.collectors import (
    ENRICHABLE_KINDS,
    AlertNotifier,
    CandidateLike,
    SignalLookup,
    SourceCollector,
    collect_all,
)
from storyintel.scoring.engine import ScoreBreakdown, ScoringService, get_scoring_service
from storyintel.scoring.keywords import extract_keywords

logger = get_logger(__name__)

# Secondary lookup query size
LOOKUP_MAX_KEYWORDS = 5
LOOKUP_MIN_KEYWORDS = 2
DEFAULT_CONCURRENCY = 8


@dataclass
class IngestResult:
    """Statistics of one ingestion pass."""
    created: int = 0
    updated: int = 0
    failed: int = 0
    skipped: int = 0
    alerts: int = 0
    per_source_counts: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    runtime_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _signals_json(candidate: StoryCandidate) -> Optional[Dict[str, Any]]:
    return candidate.platform_signals.to_json() if candidate.platform_signals else None


def group_by_source_url(candidates: Sequence[StoryCandidate]) -> List[StoryCandidate]:
    """
    Fold candidates with the same source_url into one.

    The first candidate seen supplies headline and labels; sources are
    unioned by URL, later signal groups override earlier ones, and the
    story counts as trending if any report said so.
    """
    grouped: Dict[str, StoryCandidate] = {}
    for candidate in candidates:
        first = grouped.get(candidate.source_url)
        if first is None:
            grouped[candidate.source_url] = candidate
            continue

        sources = merge_sources(
            [s.model_dump() for s in first.sources],
            [s.model_dump() for s in candidate.sources],
        )
        signals = merge_signals(_signals_json(first), _signals_json(candidate))
        seen = [t for t in (first.first_seen_at, candidate.first_seen_at) if t is not None]
        grouped[candidate.source_url] = first.model_copy(update={
            'sources': [SourceRef.model_validate(s) for s in sources],
            'platform_signals': PlatformSignals.model_validate(signals) if signals else None,
            'first_seen_at': min(ensure_utc(t) for t in seen) if seen else None,
            'trending': first.trending or candidate.trending,
        })

    if len(grouped) < len(candidates):
        logger.info(f"Folded {len(candidates) - len(grouped)} duplicate candidates by source_url")
    return list(grouped.values())


def merged_candidate(candidate: StoryCandidate, values: Dict[str, Any], existing) -> StoryCandidate:
    """``candidate`` carrying the merged sources and signals in ``values`` and the stored first sighting."""
    signals = values.get('platform_signals')
    return candidate.model_copy(update={
        'sources': [SourceRef.model_validate(s) for s in values.get('sources') or []],
        'platform_signals': PlatformSignals.model_validate(signals) if signals else None,
        'first_seen_at': ensure_utc(existing.first_seen_at),
    })


class IngestionPipeline:
    """Runs collectors, scores what they return and upserts the results."""

    def __init__(self,
                 session_factory: async_sessionmaker,
                 scoring: ScoringService,
                 collectors: Sequence[SourceCollector] = (),
                 signal_lookup: Optional[SignalLookup] = None,
                 notifier: Optional[AlertNotifier] = None,
                 concurrency: int = DEFAULT_CONCURRENCY,
                 clock: Clock = utc_now):
        self.session_factory = session_factory
        self.scoring = scoring
        self.collectors = list(collectors)
        names = [c.name for c in self.collectors]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Collector names must be unique: {', '.join(duplicates)}")
        self.signal_lookup = signal_lookup
        self.notifier = notifier
        self.concurrency = max(1, concurrency)
        self.clock = clock

    async def run(self) -> IngestResult:
        """
        Run one ingestion pass.

        Collector failures, lookup failures and per-candidate persistence
        failures are recorded in the result; none of them aborts the pass.
        Candidates sharing a source_url within the pass are folded into one
        before scoring, so their outlets count together.
        """
        start_time = time.time()
        result = IngestResult()
        now = self.clock()

        logger.info(f"Starting ingestion pass with {len(self.collectors)} collectors")

        batches = await collect_all(self.collectors)

        candidates: List[StoryCandidate] = []
        for collector, batch in zip(self.collectors, batches):
            accepted = 0
            for raw in batch:
                candidate = self._coerce(raw, collector)
                if candidate is None:
                    result.skipped += 1
                    continue
                candidates.append(candidate)
                accepted += 1
            result.per_source_counts[collector.name] = accepted

        if not candidates:
            logger.warning("No candidates collected")
            result.runtime_seconds = round(time.time() - start_time, 2)
            return result

        candidates = group_by_source_url(candidates)

        # One cache read per pass
        profiles, exemplars = await self.scoring.snapshots(now)

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _bounded(candidate: StoryCandidate) -> None:
            async with semaphore:
                await self._process_candidate(candidate, profiles, exemplars, now, result)

        await asyncio.gather(*(_bounded(c) for c in candidates))

        result.runtime_seconds = round(time.time() - start_time, 2)
        logger.info(
            f"Ingestion completed in {result.runtime_seconds}s: "
            f"{result.created} created, {result.updated} updated, "
            f"{result.failed} failed, {result.skipped} skipped",
            extra={'per_source_counts': result.per_source_counts}
        )
        return result

    def _coerce(self, raw: CandidateLike, collector: SourceCollector) -> Optional[StoryCandidate]:
        """Validate a collector item; items without headline or source_url are dropped."""
        try:
            if isinstance(raw, StoryCandidate):
                candidate = raw.model_copy()
            else:
                candidate = StoryCandidate.model_validate(raw)
        except ValidationError as e:
            logger.debug(f"Skipping invalid candidate from {collector.name}: {e.error_count()} errors")
            return None

        candidate.collector = collector.name
        candidate.kind = collector.kind
        if not candidate.sources:
            candidate.sources = [SourceRef(name=collector.name, url=candidate.source_url)]
        return candidate

    async def _process_candidate(self, candidate: StoryCandidate, profiles, exemplars,
                                 now: datetime, result: IngestResult) -> None:
        try:
            await self._enrich(candidate)

            first_seen = ensure_utc(candidate.first_seen_at) if candidate.first_seen_at else now
            fresh = candidate.model_copy(update={'first_seen_at': first_seen})
            breakdown = self.scoring.score_with(fresh, profiles, exemplars, now)

            def rescore(values: Dict[str, Any], existing) -> Dict[str, Any]:
                # Score again over the stored row's merged evidence and first sighting
                merged = merged_candidate(candidate, values, existing)
                return self._story_values(merged, self.scoring.score_with(merged, profiles, exemplars, now))

            async with self.session_factory() as session:
                created, story_id = await upsert_story(
                    session, self._story_values(fresh, breakdown), rescore=rescore
                )

            if created:
                result.created += 1
                if breakdown.alert_level == AlertLevel.TELEGRAM:
                    result.alerts += 1
                    await self._notify(story_id, fresh, breakdown)
            else:
                result.updated += 1

        except Exception as e:
            result.failed += 1
            error_msg = f"{candidate.collector}: {candidate.source_url}: {e}"
            result.errors.append(error_msg)
            logger.error(f"Failed to persist candidate: {error_msg}")

    async def _enrich(self, candidate: StoryCandidate) -> None:
        """Attach social signals from the secondary lookup; failures leave signals untouched."""
        if self.signal_lookup is None or candidate.kind not in ENRICHABLE_KINDS:
            return
        if candidate.platform_signals is not None and candidate.platform_signals.social is not None:
            return

        keywords = extract_keywords(candidate.headline)[:LOOKUP_MAX_KEYWORDS]
        if len(keywords) < LOOKUP_MIN_KEYWORDS:
            return

        try:
            social = await self.signal_lookup.lookup(keywords)
        except Exception as e:
            logger.warning(
                f"Signal lookup failed: {e}",
                extra={'source_url': candidate.source_url, 'keywords': keywords}
            )
            return

        if social is None:
            return
        signals = candidate.platform_signals or PlatformSignals()
        candidate.platform_signals = signals.merged_with(PlatformSignals(social=social))

    @staticmethod
    def _story_values(candidate: StoryCandidate, breakdown: ScoreBreakdown) -> Dict[str, Any]:
        status = VerificationStatus.PLAUSIBLE if candidate.trending else VerificationStatus.UNVERIFIED
        return {
            'headline': candidate.headline,
            'source_url': candidate.source_url,
            'sources': [s.model_dump() for s in candidate.sources],
            'category': breakdown.matched_category,
            'topic_cluster_id': breakdown.topic_cluster_id,
            'relevance_score': breakdown.relevance_score,
            'velocity_score': breakdown.velocity_score,
            'alert_level': breakdown.alert_level.value,
            'verification_status': status.value,
            'first_seen_at': candidate.first_seen_at,
            'platform_signals': candidate.platform_signals.to_json() if candidate.platform_signals else None,
        }

    async def _notify(self, story_id: int, candidate: StoryCandidate, breakdown: ScoreBreakdown) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.notify({
                'id': story_id,
                'headline': candidate.headline,
                'source_url': candidate.source_url,
                'category': breakdown.matched_category,
                'total_score': breakdown.total_score,
                'relevance_score': breakdown.relevance_score,
                'velocity_score': breakdown.velocity_score,
            })
        except Exception as e:
            logger.warning(f"Alert notifier failed for story {story_id}: {e}")


async def submit_scored_stories(session_factory: async_sessionmaker,
                                stories: Sequence[ScoredStoryIn],
                                clock: Clock = utc_now) -> Dict[str, Any]:
    """
    Upsert stories scored outside the engine.

    Scores are clamped, verification evidence is appended, and a failing
    story is counted without aborting the batch.

    Returns:
        Dictionary with created, updated, failed and errors
    """
    stats = {'created': 0, 'updated': 0, 'failed': 0, 'errors': []}
    now = clock()

    for story in stories:
        values: Dict[str, Any] = {
            'headline': story.headline,
            'source_url': story.source_url,
            'first_seen_at': now,
            'sources': [s.model_dump() for s in story.sources or []],
            'alert_level': (story.alert_level or AlertLevel.NONE).value,
            'verification_status': (story.verification_status or VerificationStatus.UNVERIFIED).value,
            'relevance_score': story.relevance_score,
            'velocity_score': story.velocity_score,
        }
        optional = {
            'category': story.category,
            'topic_cluster_id': story.topic_cluster_id,
            'verification_notes': story.verification_notes,
            'suggested_angles': story.suggested_angles,
            'platform_signals': story.platform_signals,
        }
        values.update({k: v for k, v in optional.items() if v is not None})

        # Omitted fields keep their stored values on update
        provided = {k for k in story.model_fields_set if getattr(story, k) is not None}
        refresh = [c for c in REFRESHABLE_COLUMNS if c in provided]

        try:
            async with session_factory() as session:
                created, story_id = await upsert_story(session, values, refresh)
                if story.verification_sources:
                    await add_verification_sources(
                        session, story_id, [vs.model_dump() for vs in story.verification_sources]
                    )
            stats['created' if created else 'updated'] += 1
        except Exception as e:
            stats['failed'] += 1
            stats['errors'].append(f"{story.source_url}: {e}")
            logger.error(f"Failed to upsert scored story {story.source_url}: {e}")

    logger.info(
        f"Scored story batch: {stats['created']} created, {stats['updated']} updated, {stats['failed']} failed"
    )
    return stats


def load_replay_candidates(path: str) -> List[Dict[str, Any]]:
    """Candidates from a JSON or YAML file holding a list (or ``{candidates: [...]}``)."""
    with open(path, 'r', encoding='utf-8') as f:
        if Path(path).suffix.lower() == '.json':
            data = json.load(f)
        else:
            data = yaml.safe_load(f)
    if isinstance(data, dict):
        data = data.get('candidates', [])
    return list(data or [])


def build_pipeline(collectors: Sequence[SourceCollector], settings=None,
                   session_factory: Optional[async_sessionmaker] = None,
                   scoring: Optional[ScoringService] = None,
                   signal_lookup: Optional[SignalLookup] = None,
                   clock: Clock = utc_now) -> IngestionPipeline:
    """
    Pipeline wired from settings: DB-backed caches, optional HTTP signal lookup.

    Without an explicit session factory the process-wide scoring service is
    used, so its caches carry over from one pass to the next.
    """
    from storyintel.core.db import get_session_factory
    from storyintel.core.settings import get_settings
    from storyintel.ingestor.collectors import HttpSignalLookup, LoggingAlertNotifier

    settings = settings or get_settings()
    if scoring is None:
        if session_factory is None:
            scoring = get_scoring_service()
        else:
            scoring = ScoringService.from_settings(session_factory, settings, clock)
    session_factory = session_factory or get_session_factory()

    if signal_lookup is None and settings.signal_lookup_url:
        signal_lookup = HttpSignalLookup(settings.signal_lookup_url, timeout=settings.http_timeout_seconds)

    return IngestionPipeline(
        session_factory=session_factory,
        scoring=scoring,
        collectors=collectors,
        signal_lookup=signal_lookup,
        notifier=LoggingAlertNotifier(),
        concurrency=settings.ingest_concurrency,
        clock=clock,
    )


async def run_ingest(collectors: Sequence[SourceCollector]) -> IngestResult:
    pipeline = build_pipeline(collectors)
    return await pipeline.run()


def run_cli(replay_path: str, kind: str = 'rss') -> Dict[str, Any]:
    """
    Synchronous CLI wrapper: ingest the candidates stored in a replay file.

    Args:
        replay_path: JSON or YAML file with candidate dictionaries
        kind: Collector kind the candidates are attributed to

    Returns:
        Ingestion statistics dictionary
    """
    from storyintel.ingestor.collectors import StaticCollector

    candidates = load_replay_candidates(replay_path)
    collector = StaticCollector(Path(replay_path).stem, candidates, kind=kind)
    return asyncio.run(run_ingest([collector])).to_dict()


def main():
    """CLI entry point."""
    import argparse

    from storyintel.core.logging import setup_logging

    parser = argparse.ArgumentParser(description='Story Ingestion Pipeline')
    parser.add_argument(
        'replay',
        help='JSON or YAML file of candidates to ingest'
    )
    parser.add_argument(
        '--kind',
        default='rss',
        help='Collector kind of the replayed candidates (default: rss)'
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )

    args = parser.parse_args()

    setup_logging("ingestor")
    if args.verbose:
        import logging
        logging.getLogger('storyintel').setLevel(logging.DEBUG)

    stats = run_cli(args.replay, kind=args.kind)

    print("\n=== Story Ingestion Results ===")
    print(f"Runtime: {stats['runtime_seconds']}s")
    print(f"Created: {stats['created']}")
    print(f"Updated: {stats['updated']}")
    print(f"Failed: {stats['failed']}")
    print(f"Skipped: {stats['skipped']}")
    for name, count in stats['per_source_counts'].items():
        print(f"  {name}: {count}")

    if stats['errors']:
        print(f"\nErrors ({len(stats['errors'])}):")
        for error in stats['errors'][:10]:
            print(f"  - {error}")
        if len(stats['errors']) > 10:
            print(f"  ... and {len(stats['errors']) - 10} more")

    return 0 if not stats['errors'] else 1


if __name__ == "__main__":
    exit(main())
