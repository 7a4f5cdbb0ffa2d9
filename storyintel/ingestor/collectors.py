"""Collector and signal-lookup interfaces for the ingestion pipeline.

Collectors are external: anything with a ``name``, a ``kind`` and an async
``collect()`` returning candidates (models or plain dicts) can be plugged in.
The secondary signal lookup enriches candidates with social heat; the HTTP
adapter here talks to a JSON endpoint returning ``{volume, heat, velocity}``.
"""

import asyncio
from typing import Any, Dict, List, Optional, Protocol, Sequence, Union

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from storyintel.core.logging import get_logger
from storyintel.core.schemas import SocialSignals, StoryCandidate

logger = get_logger(__name__)

# Collector kinds whose candidates may be enriched by the signal lookup
ENRICHABLE_KINDS = frozenset({'rss', 'aggregator', 'social'})

CandidateLike = Union[StoryCandidate, Dict[str, Any]]


class SourceCollector(Protocol):
    name: str
    kind: str

    async def collect(self) -> Sequence[CandidateLike]:
        ...


class SignalLookup(Protocol):
    """Secondary social-signal lookup. May raise; callers swallow failures."""

    async def lookup(self, keywords: Sequence[str]) -> Optional[SocialSignals]:
        ...


class AlertNotifier(Protocol):
    """Receives newly created TELEGRAM-tier stories."""

    async def notify(self, story: Dict[str, Any]) -> None:
        ...


class StaticCollector:
    """Collector returning a fixed batch; handy for replays and tests."""

    def __init__(self, name: str, candidates: Sequence[CandidateLike], kind: str = 'rss'):
        self.name = name
        self.kind = kind
        self._candidates = list(candidates)

    async def collect(self) -> List[CandidateLike]:
        return list(self._candidates)


class LoggingAlertNotifier:
    """Default notifier: records the alert in the log only."""

    async def notify(self, story: Dict[str, Any]) -> None:
        logger.info(
            f"TELEGRAM alert: {story.get('headline', '')[:80]}",
            extra={'story_id': story.get('id'), 'total_score': story.get('total_score')}
        )


class HttpSignalLookup:
    """Social-signal lookup against a JSON search endpoint."""

    def __init__(self, base_url: str, timeout: float = 10.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            headers={"User-Agent": "StoryIntel/1.0 (signal lookup)"},
            follow_redirects=True,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4.0),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
        reraise=True
    )
    async def _get(self, query: str) -> httpx.Response:
        response = await self.client.get(self.base_url, params={'q': query})
        response.raise_for_status()
        return response

    async def lookup(self, keywords: Sequence[str]) -> Optional[SocialSignals]:
        """
        Query the endpoint with the joined keywords.

        Returns:
            SocialSignals, or None when the endpoint reports no match
        """
        query = ' '.join(keywords)
        response = await self._get(query)
        data = response.json() or {}
        if not data:
            return None
        logger.debug(f"Signal lookup for '{query}': heat={data.get('heat')}")
        return SocialSignals.model_validate(data)


async def collect_all(collectors: Sequence[SourceCollector]) -> List[List[CandidateLike]]:
    """
    Run every collector concurrently.

    A collector that raises is logged and yields no candidates; the others
    are unaffected.

    Returns:
        One batch per collector, in the order given
    """
    results = await asyncio.gather(
        *(collector.collect() for collector in collectors),
        return_exceptions=True,
    )

    batches: List[List[CandidateLike]] = []
    for collector, result in zip(collectors, results):
        if isinstance(result, BaseException):
            logger.error(
                f"Collector {collector.name} failed: {result}",
                extra={'collector': collector.name, 'kind': collector.kind}
            )
            batches.append([])
        else:
            batches.append(list(result or []))
            logger.info(f"Collector {collector.name} returned {len(batches[-1])} candidates")
    return batches
