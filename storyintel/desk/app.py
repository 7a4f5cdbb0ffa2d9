"""Desk service FastAPI application.

Authentication happens upstream; the acting editor arrives in the
``X-User-Id`` header.
"""

from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from storyintel.core.db import get_session_factory
from storyintel.core.logging import get_logger, setup_logging
from storyintel.core.schemas import FeedbackSummary, StoryOut
from storyintel.core.settings import get_settings
from storyintel.desk.drafts import HttpDraftCreator
from storyintel.desk.lifecycle import (
    InvalidFeedbackError,
    StoryConflictError,
    StoryDesk,
    StoryIntelError,
    StoryNotFoundError,
)

# Setup logging
setup_logging("desk")
logger = get_logger(__name__)

app = FastAPI(title="StoryIntel Desk", version="0.1.0", description="Editorial story dashboard API")

_draft_creator: Optional[HttpDraftCreator] = None


class StoriesResponse(BaseModel):
    stories: List[StoryOut]


class ClaimResponse(BaseModel):
    success: bool
    article_id: str


class DismissResponse(BaseModel):
    success: bool


class SweepResponse(BaseModel):
    dismissed: int


def get_desk() -> StoryDesk:
    """Desk wired from settings; overridden in tests."""
    global _draft_creator
    settings = get_settings()
    if _draft_creator is None and settings.draft_service_url:
        _draft_creator = HttpDraftCreator(settings.draft_service_url, timeout=settings.http_timeout_seconds)
    return StoryDesk.from_settings(get_session_factory(), draft_creator=_draft_creator, settings=settings)


def get_user_id(x_user_id: str = Header(..., min_length=1)) -> str:
    return x_user_id


@app.exception_handler(StoryNotFoundError)
async def not_found_handler(request: Request, exc: StoryNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(StoryConflictError)
async def conflict_handler(request: Request, exc: StoryConflictError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(InvalidFeedbackError)
async def invalid_feedback_handler(request: Request, exc: InvalidFeedbackError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.get("/healthz")
async def health_check():
    """Health check endpoint."""
    return {"ok": True, "service": "desk"}


@app.get("/")
async def root():
    """Root endpoint with service information."""
    settings = get_settings()
    return {
        "service": "desk",
        "version": "0.1.0",
        "stale_after_hours": settings.stale_after_hours,
        "dashboard_window_hours": settings.dashboard_window_hours,
        "dashboard_limit": settings.dashboard_limit,
        "endpoints": {
            "health": "/healthz",
            "stories": "/stories",
            "claim": "/stories/{id}/claim (POST)",
            "dismiss": "/stories/{id}/dismiss (POST)",
            "feedback": "/stories/{id}/feedback",
            "sweep": "/sweep (POST)",
        }
    }


@app.get("/stories", response_model=StoriesResponse)
async def list_stories(desk: StoryDesk = Depends(get_desk)):
    """Sweep stale stories, then return the ranked dashboard."""
    stories = await desk.dashboard()
    return StoriesResponse(stories=[StoryOut.from_story(s) for s in stories])


@app.post("/stories/{story_id}/claim", response_model=ClaimResponse)
async def claim_story(story_id: int, desk: StoryDesk = Depends(get_desk),
                      user_id: str = Depends(get_user_id)):
    if desk.draft_creator is None:
        raise HTTPException(status_code=503, detail="Draft service is not configured")
    try:
        article_id = await desk.claim(story_id, user_id)
    except StoryIntelError:
        raise
    except Exception as e:
        logger.error(f"Claim failed for story {story_id}: {e}", extra={"user_id": user_id})
        raise HTTPException(status_code=502, detail=f"Draft creation failed: {str(e)}")
    return ClaimResponse(success=True, article_id=article_id)


@app.post("/stories/{story_id}/dismiss", response_model=DismissResponse)
async def dismiss_story(story_id: int, desk: StoryDesk = Depends(get_desk)):
    await desk.dismiss(story_id)
    return DismissResponse(success=True)


@app.post("/stories/{story_id}/feedback", response_model=FeedbackSummary)
async def submit_feedback(story_id: int, feedback: Dict[str, Any],
                          desk: StoryDesk = Depends(get_desk),
                          user_id: str = Depends(get_user_id)):
    """Record a rating. The raw body is validated by the desk; any invalid rating or action is a 400."""
    summary = await desk.submit_feedback(
        story_id,
        user_id,
        rating=feedback.get("rating"),
        tags=feedback.get("tags") if isinstance(feedback.get("tags"), list) else [],
        action=feedback.get("action"),
    )
    return FeedbackSummary(**summary)


@app.get("/stories/{story_id}/feedback", response_model=FeedbackSummary)
async def get_feedback(story_id: int, desk: StoryDesk = Depends(get_desk),
                       user_id: str = Depends(get_user_id)):
    summary = await desk.feedback_summary(story_id, user_id)
    return FeedbackSummary(**summary)


@app.post("/sweep", response_model=SweepResponse)
async def run_sweep(desk: StoryDesk = Depends(get_desk)):
    dismissed = await desk.sweep()
    return SweepResponse(dismissed=dismissed)


@app.on_event("startup")
async def startup_event():
    """Startup event handler."""
    settings = get_settings()
    logger.info(
        "Starting desk service",
        extra={
            "service": "desk",
            "version": "0.1.0",
            "draft_service": bool(settings.draft_service_url),
        }
    )


def run(port: Optional[int] = None) -> None:
    settings = get_settings()
    logger.info("Starting desk service via uvicorn")
    uvicorn.run(
        "storyintel.desk.app:app",
        host=settings.service_host,
        port=port or settings.service_port or 8002,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
