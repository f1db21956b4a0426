"""
Unit tests for the video repository and recommendation provider.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from service_videos.app.adapters import InMemoryVideoRepository, RecommendationProvider, VideoFilter, sample_videos
from shared.errors import ValidationError
from shared.test_helpers import video_data_factory


@pytest.fixture
def repository():
    return InMemoryVideoRepository(sample_videos())


class TestInMemoryVideoRepository:
    """Test cases for InMemoryVideoRepository."""

    @pytest.mark.asyncio
    async def test_find_many_sorts_and_pages(self, repository):
        by_views = await repository.find_many(VideoFilter(), sort="views", limit=2)
        second_page = await repository.find_many(VideoFilter(), sort="views", page=2, limit=2)

        assert [video.id for video in by_views] == ["v2", "v4"]
        assert [video.id for video in second_page] == ["v1", "v3"]

    @pytest.mark.asyncio
    async def test_search_relevance(self, repository):
        videos = await repository.find_many(VideoFilter(search="asyncio python deep"), sort="relevance")

        assert [video.id for video in videos] == ["v3", "v1"]

    @pytest.mark.asyncio
    async def test_moderation_filter(self, repository):
        await repository.update("v5", {"moderation_status": "flagged"})

        assert await repository.count(VideoFilter()) == 4
        assert await repository.count(VideoFilter(moderation_status=None)) == 5

    @pytest.mark.asyncio
    async def test_rejects_unknown_sort(self, repository):
        with pytest.raises(ValidationError):
            await repository.find_many(VideoFilter(), sort="random")

    @pytest.mark.asyncio
    async def test_update_only_editable_fields(self, repository):
        with pytest.raises(ValidationError):
            await repository.update("v1", {"views": 0})

        assert await repository.update("missing", {"title": "x"}) is None

    @pytest.mark.asyncio
    async def test_create_and_delete(self, repository):
        video = await repository.create(video_data_factory.create_video_payload())

        assert (await repository.find(video.id)).title == "Sourdough from scratch"
        assert await repository.delete(video.id) is True
        assert await repository.delete(video.id) is False

    @pytest.mark.asyncio
    async def test_create_requires_title(self, repository):
        with pytest.raises(ValidationError):
            await repository.create(video_data_factory.create_video_payload(title=""))

    @pytest.mark.asyncio
    async def test_feedback_and_similar_users(self, repository):
        for user_id, history in video_data_factory.create_watch_history().items():
            for video_id in history:
                await repository.record_feedback(user_id, video_id, "watch")

        assert await repository.watch_history("u2") == ["v1", "v3", "v4"]
        assert await repository.similar_users("u1") == ["u2"]
        assert await repository.similar_users("nobody") == []
        assert await repository.record_feedback("u1", "missing", "watch") is False

    def test_to_dict(self):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        video = sample_videos(now)[0]
        video.likes.add("u1")

        payload = video.to_dict()

        assert payload["likes_count"] == 1
        assert payload["created_at"] == "2023-12-30T00:00:00.000Z"


class TestRecommendationProvider:
    """Test cases for RecommendationProvider."""

    @pytest.mark.asyncio
    async def test_cold_start_gets_recent_popular_videos(self, repository):
        provider = RecommendationProvider(repository)

        recommendations = await provider.recommend("new-user")

        assert [video["id"] for video in recommendations] == ["v2", "v4", "v1"]

    @pytest.mark.asyncio
    async def test_blends_collaborative_and_content(self, repository):
        for user_id, history in video_data_factory.create_watch_history().items():
            for video_id in history:
                await repository.record_feedback(user_id, video_id, "watch")
        provider = RecommendationProvider(repository)

        recommendations = await provider.recommend("u1", limit=10)
        ids = [video["id"] for video in recommendations]

        assert "v1" not in ids
        assert ids[0] == "v3"
        assert len(ids) == len(set(ids))

    @pytest.mark.asyncio
    async def test_collaborative_picks_come_from_similar_uploaders(self, repository):
        await repository.record_feedback("alice", "v2", "watch")
        await repository.record_feedback("u9", "v2", "watch")
        provider = RecommendationProvider(repository)

        recommendations = await provider.recommend("u9", limit=2)

        assert [video["id"] for video in recommendations] == ["v1", "v3"]

    @pytest.mark.asyncio
    async def test_limit(self, repository):
        provider = RecommendationProvider(repository)

        assert len(await provider.recommend("new-user", limit=2)) == 2

    @pytest.mark.asyncio
    async def test_falls_back_to_popular_on_failure(self, repository):
        repository.watch_history = AsyncMock(side_effect=RuntimeError("history store down"))
        provider = RecommendationProvider(repository)

        recommendations = await provider.recommend("u1", limit=3)

        assert [video["id"] for video in recommendations] == ["v2", "v4", "v1"]

    @pytest.mark.asyncio
    async def test_trending_window(self, repository):
        old = datetime.now(timezone.utc) - timedelta(days=30)
        for video in repository._videos.values():
            video.created_at = old
        provider = RecommendationProvider(repository)

        assert await provider.recommend("new-user") == []
