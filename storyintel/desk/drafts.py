"""Draft-creation collaborator used when an editor claims a story.

Writing the draft itself happens elsewhere; the desk only needs an article
id back, and a way to discard that draft if the claim loses a race.
"""

from typing import Any, Dict, List, Optional, Protocol

import httpx

from storyintel.core.logging import get_logger

logger = get_logger(__name__)


class DraftCreator(Protocol):

    async def create_draft(self, story: Dict[str, Any], actor_id: str) -> str:
        """Create a draft article for ``story`` owned by ``actor_id``; return its id."""
        ...

    async def discard_draft(self, article_id: str) -> None:
        ...


def fallback_body(suggested_angles: Optional[List[str]]) -> str:
    """Placeholder body: the first suggested angle, else an empty paragraph."""
    if suggested_angles:
        return f"<p><em>{suggested_angles[0]}</em></p>"
    return "<p></p>"


class HttpDraftCreator:
    """Creates drafts through the article service's JSON API."""

    def __init__(self, base_url: str, timeout: float = 10.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip('/')
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            headers={"User-Agent": "StoryIntel/1.0 (desk)"},
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def create_draft(self, story: Dict[str, Any], actor_id: str) -> str:
        payload = {
            'headline': story['headline'],
            'sub_headline': '',
            'body': fallback_body(story.get('suggested_angles')),
            'source_url': story['source_url'],
            'suggested_angles': story.get('suggested_angles') or [],
            'author_id': actor_id,
            'status': 'DRAFT',
        }
        response = await self.client.post(f"{self.base_url}/articles", json=payload)
        response.raise_for_status()
        article_id = str(response.json()['id'])
        logger.info(
            f"Created draft {article_id} for story {story.get('id')}",
            extra={'actor_id': actor_id}
        )
        return article_id

    async def discard_draft(self, article_id: str) -> None:
        response = await self.client.delete(f"{self.base_url}/articles/{article_id}")
        if response.status_code != 404:
            response.raise_for_status()
        logger.info(f"Discarded orphaned draft {article_id}")
