"""API tests for the ingestor and desk services."""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from storyintel.core.models import ArticleExemplar, ExemplarStatus, StoryIntelligence
from storyintel.core.settings import Settings, get_settings
from storyintel.desk import app as desk_module
from storyintel.desk.lifecycle import InvalidFeedbackError, StoryConflictError, StoryNotFoundError
from storyintel.ingestor import app as ingestor_module
from storyintel.ingestor.collectors import StaticCollector
from storyintel.ingestor.pipeline import IngestResult
from storyintel.scoring.engine import get_scoring_service
from storyintel.scoring.learning import ExemplarConflictError, ExemplarNotFoundError, ExemplarNotReadyError

from conftest import NOW


@pytest.fixture
def ingestor_client():
    yield TestClient(ingestor_module.app)
    ingestor_module.app.dependency_overrides.clear()


@pytest.fixture
def desk_client():
    yield TestClient(desk_module.app)
    desk_module.app.dependency_overrides.clear()


@pytest.fixture
def mock_desk():
    desk = MagicMock()
    desk.draft_creator = AsyncMock()
    desk_module.app.dependency_overrides[desk_module.get_desk] = lambda: desk
    return desk


def make_pipeline(result=None, error=None):
    pipeline = MagicMock()
    pipeline.collectors = []
    pipeline.run = AsyncMock(return_value=result, side_effect=error)
    return pipeline


def test_ingestor_healthz(ingestor_client):
    """Test ingestor service health check."""
    response = ingestor_client.get("/healthz")

    assert response.status_code == 200
    data = response.json()
    assert data["ok"] is True
    assert data["service"] == "ingestor"


def test_desk_healthz(desk_client):
    """Test desk service health check."""
    response = desk_client.get("/healthz")

    assert response.status_code == 200
    data = response.json()
    assert data["ok"] is True
    assert data["service"] == "desk"


@pytest.mark.parametrize("module", [ingestor_module, desk_module])
def test_root_endpoint(module):
    client = TestClient(module.app)
    response = client.get("/")
    assert response.status_code == 200
    data = response.json()
    assert "service" in data
    assert data["version"] == "0.1.0"


class TestIngestorRun:

    def test_run_disabled_by_default(self, ingestor_client):
        ingestor_module.app.dependency_overrides[get_settings] = lambda: Settings(allow_manual_run=False)

        response = ingestor_client.post("/run")

        assert response.status_code == 403

    def test_run_success(self, ingestor_client):
        result = IngestResult(created=2, updated=1, per_source_counts={"feed-a": 3}, runtime_seconds=0.5)
        pipeline = make_pipeline(result)
        ingestor_module.app.dependency_overrides[get_settings] = lambda: Settings(allow_manual_run=True)
        ingestor_module.app.dependency_overrides[ingestor_module.get_pipeline] = lambda: pipeline

        response = ingestor_client.post("/run")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "success"
        assert data["created"] == 2
        assert data["updated"] == 1
        assert data["per_source_counts"] == {"feed-a": 3}
        pipeline.run.assert_awaited_once()

    def test_run_partial_success_and_error(self, ingestor_client):
        ingestor_module.app.dependency_overrides[get_settings] = lambda: Settings(allow_manual_run=True)

        partial = make_pipeline(IngestResult(created=1, failed=1, errors=["feed-a: boom"]))
        ingestor_module.app.dependency_overrides[ingestor_module.get_pipeline] = lambda: partial
        assert ingestor_client.post("/run").json()["status"] == "partial_success"

        failed = make_pipeline(IngestResult(failed=2, errors=["a", "b"]))
        ingestor_module.app.dependency_overrides[ingestor_module.get_pipeline] = lambda: failed
        data = ingestor_client.post("/run").json()
        assert data["status"] == "error"
        assert "2 errors" in data["message"]

    def test_run_pipeline_exception(self, ingestor_client):
        ingestor_module.app.dependency_overrides[get_settings] = lambda: Settings(allow_manual_run=True)
        ingestor_module.app.dependency_overrides[ingestor_module.get_pipeline] = (
            lambda: make_pipeline(error=RuntimeError("cache unavailable"))
        )

        response = ingestor_client.post("/run")

        assert response.status_code == 500
        assert "cache unavailable" in response.json()["detail"]

    def test_runs_share_scoring_caches(self, ingestor_client):
        ingestor_module.app.dependency_overrides[get_settings] = lambda: Settings(allow_manual_run=True)
        get_scoring_service.cache_clear()
        try:
            with patch('storyintel.core.db.get_session_factory', MagicMock(return_value=MagicMock())), \
                    patch('storyintel.ingestor.app.build_pipeline',
                          return_value=make_pipeline(IngestResult(created=1))) as build:
                ingestor_client.post("/run")
                ingestor_client.post("/run")
        finally:
            get_scoring_service.cache_clear()

        first, second = (c.kwargs["scoring"] for c in build.call_args_list)
        assert first is second


class TestIngestorStories:

    def test_empty_batch_rejected(self, ingestor_client):
        ingestor_module.app.dependency_overrides[ingestor_module.get_session_maker] = lambda: None

        response = ingestor_client.post("/stories", json={"stories": []})

        assert response.status_code == 400

    def test_invalid_story_rejected(self, ingestor_client):
        ingestor_module.app.dependency_overrides[ingestor_module.get_session_maker] = lambda: None

        response = ingestor_client.post("/stories", json={"stories": [{"headline": "No url"}]})

        assert response.status_code == 422

    def test_batch_submitted(self, ingestor_client):
        ingestor_module.app.dependency_overrides[ingestor_module.get_session_maker] = lambda: "factory"
        stats = {'created': 1, 'updated': 0, 'failed': 0, 'errors': []}

        with patch('storyintel.ingestor.app.submit_scored_stories', AsyncMock(return_value=stats)) as submit:
            response = ingestor_client.post("/stories", json={"stories": [
                {"headline": "Border crossings fall", "source_url": "https://news.example.com/border",
                 "relevance_score": 72, "alert_level": "DASHBOARD"},
            ]})

        assert response.status_code == 200
        assert response.json()["created"] == 1
        factory, stories = submit.await_args.args
        assert factory == "factory"
        assert stories[0].relevance_score == 72


class TestDeskStories:

    def test_list_stories(self, desk_client, mock_desk):
        story = StoryIntelligence(
            id=7,
            headline="Senate passes border security bill",
            source_url="https://example.com/story",
            sources=[{"name": "Example", "url": "https://example.com/story"}],
            category="Immigration",
            relevance_score=72.5,
            velocity_score=4.0,
            alert_level="DASHBOARD",
            verification_status="UNVERIFIED",
            dismissed=False,
            first_seen_at=NOW,
            surfaced_at=NOW,
        )
        mock_desk.dashboard = AsyncMock(return_value=[story])

        response = desk_client.get("/stories")

        assert response.status_code == 200
        stories = response.json()["stories"]
        assert len(stories) == 1
        assert stories[0]["id"] == 7
        assert stories[0]["state"] == "SURFACED"
        assert stories[0]["claim"] is None
        assert stories[0]["verification_sources"] == []

    def test_claim_success(self, desk_client, mock_desk):
        mock_desk.claim = AsyncMock(return_value="article-1")

        response = desk_client.post("/stories/7/claim", headers={"X-User-Id": "editor-1"})

        assert response.status_code == 200
        assert response.json() == {"success": True, "article_id": "article-1"}
        mock_desk.claim.assert_awaited_once_with(7, "editor-1")

    def test_claim_requires_user(self, desk_client, mock_desk):
        mock_desk.claim = AsyncMock(return_value="article-1")
        assert desk_client.post("/stories/7/claim").status_code == 422

    @pytest.mark.parametrize("error,status", [
        (StoryNotFoundError(7), 404),
        (StoryConflictError("Story 7 already claimed"), 409),
        (RuntimeError("article service down"), 502),
    ])
    def test_claim_errors(self, desk_client, mock_desk, error, status):
        mock_desk.claim = AsyncMock(side_effect=error)

        response = desk_client.post("/stories/7/claim", headers={"X-User-Id": "editor-1"})

        assert response.status_code == status

    def test_claim_without_draft_service(self, desk_client, mock_desk):
        mock_desk.draft_creator = None
        response = desk_client.post("/stories/7/claim", headers={"X-User-Id": "editor-1"})
        assert response.status_code == 503

    def test_dismiss(self, desk_client, mock_desk):
        mock_desk.dismiss = AsyncMock(return_value=True)
        response = desk_client.post("/stories/7/dismiss")
        assert response.status_code == 200
        assert response.json() == {"success": True}

    def test_dismiss_claimed_story(self, desk_client, mock_desk):
        mock_desk.dismiss = AsyncMock(side_effect=StoryConflictError("Story 7 is claimed"))
        assert desk_client.post("/stories/7/dismiss").status_code == 409

    def test_sweep(self, desk_client, mock_desk):
        mock_desk.sweep = AsyncMock(return_value=3)
        response = desk_client.post("/sweep")
        assert response.json() == {"dismissed": 3}


class TestDeskFeedback:

    SUMMARY = {
        'total_ratings': 1,
        'avg_rating': 4.0,
        'tag_counts': {'TIMELY': 1},
        'user_rating': 4,
        'user_tags': ['TIMELY'],
    }

    def test_submit_feedback(self, desk_client, mock_desk):
        mock_desk.submit_feedback = AsyncMock(return_value=self.SUMMARY)

        response = desk_client.post(
            "/stories/7/feedback",
            json={"rating": 4, "tags": ["TIMELY"], "action": "QUICK_RATE"},
            headers={"X-User-Id": "editor-1"},
        )

        assert response.status_code == 200
        assert response.json()["user_rating"] == 4
        mock_desk.submit_feedback.assert_awaited_once_with(
            7, "editor-1", rating=4, tags=["TIMELY"], action="QUICK_RATE"
        )

    def test_invalid_feedback(self, desk_client, mock_desk):
        mock_desk.submit_feedback = AsyncMock(side_effect=InvalidFeedbackError("Invalid action"))

        response = desk_client.post(
            "/stories/7/feedback",
            json={"rating": 4, "action": "LOVE_IT"},
            headers={"X-User-Id": "editor-1"},
        )

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid action"

    def test_non_list_tags_ignored(self, desk_client, mock_desk):
        mock_desk.submit_feedback = AsyncMock(return_value=self.SUMMARY)

        desk_client.post(
            "/stories/7/feedback",
            json={"rating": 4, "tags": "TIMELY", "action": "QUICK_RATE"},
            headers={"X-User-Id": "editor-1"},
        )

        assert mock_desk.submit_feedback.await_args.kwargs["tags"] == []

    def test_get_feedback(self, desk_client, mock_desk):
        mock_desk.feedback_summary = AsyncMock(return_value=self.SUMMARY)

        response = desk_client.get("/stories/7/feedback", headers={"X-User-Id": "editor-1"})

        assert response.status_code == 200
        assert response.json()["tag_counts"] == {"TIMELY": 1}
        mock_desk.feedback_summary.assert_awaited_once_with(7, "editor-1")


def test_registered_collectors_listed(ingestor_client):
    collector = StaticCollector("replay", [])
    ingestor_module.register_collector(collector)
    try:
        response = ingestor_client.get("/")
        assert response.json()["collectors"] == ["replay"]
    finally:
        ingestor_module.registered_collectors.remove(collector)


def test_duplicate_collector_name_rejected():
    collector = StaticCollector("replay", [])
    ingestor_module.register_collector(collector)
    try:
        with pytest.raises(ValueError):
            ingestor_module.register_collector(StaticCollector("replay", []))
        assert ingestor_module.registered_collectors.count(collector) == 1
    finally:
        ingestor_module.registered_collectors.remove(collector)


class TestIngestorExemplars:

    @pytest.fixture
    def library(self):
        library = MagicMock()
        ingestor_module.app.dependency_overrides[ingestor_module.get_exemplar_library] = lambda: library
        return library

    @staticmethod
    def exemplar(status=ExemplarStatus.PREVIEW_READY, fingerprint=None):
        return ArticleExemplar(
            id=3,
            url="https://example.com/exemplar",
            title="Tariffs hit steel",
            category="Economy",
            status=status.value,
            fingerprint=fingerprint,
        )

    def test_submit(self, ingestor_client, library):
        library.submit = AsyncMock(return_value=self.exemplar())

        response = ingestor_client.post("/exemplars", json={
            "url": " https://example.com/exemplar ",
            "category": "Economy",
            "fingerprint": {"topics": ["tariff"], "keywords": {"steel": 3}, "similarToCategories": ["Energy"]},
        })

        assert response.status_code == 201
        assert response.json()["status"] == "PREVIEW_READY"
        library.submit.assert_awaited_once_with(
            "https://example.com/exemplar", title=None, category="Economy",
            fingerprint={'topics': ['tariff'], 'keywords': {'steel': 3.0}, 'similar_to_categories': ['Energy']},
        )

    def test_submit_duplicate(self, ingestor_client, library):
        library.submit = AsyncMock(side_effect=ExemplarConflictError("Exemplar already submitted: 3"))

        response = ingestor_client.post("/exemplars", json={"url": "https://example.com/exemplar"})

        assert response.status_code == 409

    def test_list_filtered_by_status(self, ingestor_client, library):
        library.list_all = AsyncMock(return_value=[self.exemplar()])

        response = ingestor_client.get("/exemplars", params={"status": "PREVIEW_READY"})

        assert response.status_code == 200
        assert [e["id"] for e in response.json()["exemplars"]] == [3]
        library.list_all.assert_awaited_once_with(ExemplarStatus.PREVIEW_READY)

    def test_analyze(self, ingestor_client, library):
        analyzed = self.exemplar(ExemplarStatus.ANALYZED, fingerprint={'keywords': {'steel': 3.0}})
        library.analyze = AsyncMock(return_value=(analyzed, {'categories': ['Economy'], 'keywords': ['steel']}))

        response = ingestor_client.post("/exemplars/3/analyze")

        assert response.status_code == 200
        data = response.json()
        assert data["exemplar"]["status"] == "ANALYZED"
        assert data["categories"] == ["Economy"]
        library.analyze.assert_awaited_once_with(3, None)

    def test_analyze_with_fingerprint(self, ingestor_client, library):
        analyzed = self.exemplar(ExemplarStatus.ANALYZED)
        library.analyze = AsyncMock(return_value=(analyzed, {'categories': [], 'keywords': ['steel']}))

        ingestor_client.post("/exemplars/3/analyze", json={"fingerprint": {"keywords": {"steel": 2}}})

        assert library.analyze.await_args.args == (
            3, {'topics': [], 'keywords': {'steel': 2.0}, 'similar_to_categories': []}
        )

    @pytest.mark.parametrize("error,status", [
        (ExemplarNotFoundError(3), 404),
        (ExemplarConflictError("Exemplar 3 is already analyzed"), 409),
        (ExemplarNotReadyError("Exemplar 3 has no fingerprint"), 400),
    ])
    def test_analyze_errors(self, ingestor_client, library, error, status):
        library.analyze = AsyncMock(side_effect=error)

        response = ingestor_client.post("/exemplars/3/analyze")

        assert response.status_code == status
        assert response.json()["detail"] == str(error)
