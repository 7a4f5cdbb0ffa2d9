"""Ingestor service FastAPI application."""

from functools import lru_cache
from typing import Dict, List, Optional

import uvicorn
from fastapi import Body, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from storyintel.core.db import get_session_factory
from storyintel.core.logging import get_logger, setup_logging
from storyintel.core.models import ExemplarStatus
from storyintel.core.schemas import ExemplarFingerprint, ExemplarIn, ExemplarOut, ScoredStoryIn
from storyintel.core.settings import Settings, get_settings
from storyintel.ingestor.collectors import HttpSignalLookup, SourceCollector
from storyintel.ingestor.pipeline import IngestionPipeline, build_pipeline, submit_scored_stories
from storyintel.scoring.engine import ScoringService, get_scoring_service
from storyintel.scoring.learning import (
    ExemplarConflictError,
    ExemplarLibrary,
    ExemplarNotFoundError,
    ExemplarNotReadyError,
)

# Setup logging
setup_logging("ingestor")
logger = get_logger(__name__)

app = FastAPI(title="StoryIntel Ingestor", version="0.1.0")

# Collectors are registered by the deployment at startup
registered_collectors: List[SourceCollector] = []


class RunIngestResponse(BaseModel):
    """Response model for ingestion run."""
    status: str
    message: str
    created: int
    updated: int
    failed: int
    skipped: int = 0
    alerts: int = 0
    per_source_counts: Dict[str, int] = Field(default_factory=dict)
    errors: List[str] = Field(default_factory=list)
    runtime_seconds: float = 0.0


class ScoredStoryBatch(BaseModel):
    stories: List[ScoredStoryIn]


class ScoredStoryBatchResponse(BaseModel):
    created: int
    updated: int
    failed: int
    errors: List[str] = Field(default_factory=list)


class ExemplarsResponse(BaseModel):
    exemplars: List[ExemplarOut]


class AnalyzeRequest(BaseModel):
    fingerprint: Optional[ExemplarFingerprint] = None


class AnalyzeResponse(BaseModel):
    exemplar: ExemplarOut
    categories: List[str]
    keywords: List[str]


def register_collector(collector: SourceCollector) -> None:
    if any(c.name == collector.name for c in registered_collectors):
        raise ValueError(f"Collector already registered: {collector.name}")
    registered_collectors.append(collector)


@lru_cache()
def get_signal_lookup() -> Optional[HttpSignalLookup]:
    """Process-wide lookup client, or None when no lookup URL is configured."""
    settings = get_settings()
    if not settings.signal_lookup_url:
        return None
    return HttpSignalLookup(settings.signal_lookup_url, timeout=settings.http_timeout_seconds)


def get_pipeline(scoring: ScoringService = Depends(get_scoring_service)) -> IngestionPipeline:
    return build_pipeline(list(registered_collectors), scoring=scoring, signal_lookup=get_signal_lookup())


def get_exemplar_library(scoring: ScoringService = Depends(get_scoring_service)) -> ExemplarLibrary:
    """Library sharing the scoring caches, so analysis is visible to the next run."""
    return ExemplarLibrary(get_session_factory(), scoring.profile_cache, scoring.exemplar_cache)


def get_session_maker():
    return get_session_factory()


def check_manual_run_enabled(settings: Settings = Depends(get_settings)):
    """Check if manual runs are enabled via settings."""
    if not settings.allow_manual_run:
        raise HTTPException(
            status_code=403,
            detail="Manual pipeline runs are disabled. Set ALLOW_MANUAL_RUN=true to enable."
        )
    return True


@app.get("/healthz")
async def health_check():
    """Health check endpoint."""
    return {"ok": True, "service": "ingestor"}


@app.get("/")
async def root(settings: Settings = Depends(get_settings)):
    """Root endpoint with service information."""
    return {
        "service": "ingestor",
        "version": "0.1.0",
        "manual_run_enabled": settings.allow_manual_run,
        "collectors": [c.name for c in registered_collectors],
        "endpoints": {
            "health": "/healthz",
            "run_ingestion": "/run (POST)" if settings.allow_manual_run else "/run (disabled)",
            "submit_stories": "/stories (POST)",
            "exemplars": "/exemplars",
            "analyze_exemplar": "/exemplars/{id}/analyze (POST)",
        }
    }


@app.post("/run", response_model=RunIngestResponse)
async def run_ingestion(
    _: bool = Depends(check_manual_run_enabled),
    pipeline: IngestionPipeline = Depends(get_pipeline),
):
    """
    Trigger one ingestion pass over the registered collectors.

    Protected by the ALLOW_MANUAL_RUN setting.
    """
    logger.info(
        "Starting manual ingestion",
        extra={"collectors": len(pipeline.collectors), "endpoint": "/run"}
    )

    try:
        result = await pipeline.run()
    except Exception as e:
        logger.error(f"Manual ingestion failed: {e}", extra={"endpoint": "/run"})
        raise HTTPException(
            status_code=500,
            detail=f"Ingestion pipeline failed: {str(e)}"
        )

    status = "success"
    if result.failed > 0:
        status = "partial_success"
    if result.failed > 0 and result.created + result.updated == 0:
        status = "error"

    message = (
        f"Ingestion completed in {result.runtime_seconds}s: "
        f"{result.created} created, {result.updated} updated"
    )
    if result.errors:
        message += f", {len(result.errors)} errors"

    logger.info(
        "Manual ingestion completed",
        extra={"status": status, "created_count": result.created, "updated_count": result.updated,
               "runtime_seconds": result.runtime_seconds}
    )

    return RunIngestResponse(status=status, message=message, **result.to_dict())


@app.post("/stories", response_model=ScoredStoryBatchResponse)
async def submit_stories(batch: ScoredStoryBatch, session_factory=Depends(get_session_maker)):
    """Upsert externally scored stories with their verification evidence."""
    if not batch.stories:
        raise HTTPException(status_code=400, detail="stories array is required")

    stats = await submit_scored_stories(session_factory, batch.stories)
    return ScoredStoryBatchResponse(**stats)


@app.exception_handler(ExemplarNotFoundError)
async def exemplar_not_found_handler(request: Request, exc: ExemplarNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ExemplarConflictError)
async def exemplar_conflict_handler(request: Request, exc: ExemplarConflictError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(ExemplarNotReadyError)
async def exemplar_not_ready_handler(request: Request, exc: ExemplarNotReadyError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.get("/exemplars", response_model=ExemplarsResponse)
async def list_exemplars(status: Optional[ExemplarStatus] = None,
                         library: ExemplarLibrary = Depends(get_exemplar_library)):
    exemplars = await library.list_all(status)
    return ExemplarsResponse(exemplars=[ExemplarOut.model_validate(e) for e in exemplars])


@app.post("/exemplars", response_model=ExemplarOut, status_code=201)
async def submit_exemplar(exemplar: ExemplarIn, library: ExemplarLibrary = Depends(get_exemplar_library)):
    """Register a vetted exemplar article, optionally with its fingerprint."""
    fingerprint = exemplar.fingerprint.model_dump() if exemplar.fingerprint else None
    created = await library.submit(exemplar.url, title=exemplar.title, category=exemplar.category,
                                   fingerprint=fingerprint)
    return ExemplarOut.model_validate(created)


@app.post("/exemplars/{exemplar_id}/analyze", response_model=AnalyzeResponse)
async def analyze_exemplar(exemplar_id: int,
                           request: Optional[AnalyzeRequest] = Body(None),
                           library: ExemplarLibrary = Depends(get_exemplar_library)):
    """
    Fold the exemplar's fingerprint into the topic profiles.

    A fingerprint in the body replaces the stored one. The scoring caches
    are invalidated, so the next ingestion pass uses the new weights.
    """
    fingerprint = None
    if request is not None and request.fingerprint is not None:
        fingerprint = request.fingerprint.model_dump()
    exemplar, result = await library.analyze(exemplar_id, fingerprint)
    return AnalyzeResponse(exemplar=ExemplarOut.model_validate(exemplar), **result)


@app.on_event("startup")
async def startup_event():
    """Startup event handler."""
    settings = get_settings()
    logger.info(
        "Starting ingestor service",
        extra={
            "service": "ingestor",
            "version": "0.1.0",
            "manual_run_enabled": settings.allow_manual_run,
            "collectors": len(registered_collectors),
        }
    )


def run(port: Optional[int] = None) -> None:
    settings = get_settings()
    logger.info("Starting ingestor service via uvicorn")
    uvicorn.run(
        "storyintel.ingestor.app:app",
        host=settings.service_host,
        port=port or settings.service_port or 8001,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
