"""
Video service for VideoHub.

Serves video metadata, listings, search, trending and recommendations through
the read-through cache, and invalidates cached views after every write.
"""

import secrets
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import redis.asyncio as redis
from fastapi import Depends, Header, Query

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import AuthorizationError, NotFoundError
from shared.logging import set_user_context

from .adapters import InMemoryVideoRepository, RecommendationProvider, VideoFilter, VideoRepository, sample_videos
from .caching import (
    CacheInvalidator,
    CacheStore,
    ConnectivityState,
    ReadThroughCache,
    RequestDescriptor,
    ResourceKind,
    ResponseCache,
    TTLPolicy,
)
from .caching.read_through import format_iso
from .models import FeedbackRequest, VideoCreateRequest, VideoUpdateRequest


class VideoService(BaseService):
    """Video service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        *,
        repository: Optional[VideoRepository] = None,
        cache_client: Optional[redis.Redis] = None,
        recommendation_provider: Optional[RecommendationProvider] = None,
    ):
        super().__init__("videos", 8000, config=config)
        self.repository = repository or InMemoryVideoRepository(sample_videos())
        self.recommendation_provider = recommendation_provider or RecommendationProvider(self.repository)

        self.cache_store = CacheStore.from_config(self.config, metrics=self.metrics, client=cache_client)
        self.cache_store.add_listener(self._on_cache_state)
        self.ttl_policy = TTLPolicy(self.config.cache_ttl_overrides)
        self.read_through = ReadThroughCache(
            self.cache_store,
            self.ttl_policy,
            metrics=self.metrics,
            coalesce=self.config.cache_coalesce_misses,
        )
        self.invalidator = CacheInvalidator(self.cache_store, metrics=self.metrics)
        self.response_cache = ResponseCache(self.read_through)

        @self.app.on_event("startup")
        async def _startup():
            await self.cache_store.connect()

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.cache_store.close()

        self._setup_video_routes()
        self._setup_recommendation_routes()
        self._setup_cache_routes()

        self.app.state.video_service = self

    def _on_cache_state(self, state: ConnectivityState) -> None:
        self.metrics.set_gauge("cache_connected", 1 if state.connected else 0)

    async def _require_admin(self, x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key")) -> None:
        expected = self.config.admin_api_key
        if not expected or not x_admin_key or not secrets.compare_digest(x_admin_key, expected):
            raise AuthorizationError("Admin access required")

    @staticmethod
    def _pagination(page: int, limit: int, total: int) -> Dict[str, int]:
        return {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        }

    async def _load_video(self, video_id: str) -> Dict[str, Any]:
        video = await self.repository.find(video_id)
        if video is None:
            raise NotFoundError("video", video_id)
        return video.to_dict()

    def _setup_video_routes(self):
        """Set up video catalogue routes."""
        cache = self.response_cache

        @self.app.get("/api/v1/videos")
        @cache.cached(ResourceKind.VIDEOS_LIST)
        async def list_videos(
            page: int = Query(1, ge=1),
            limit: int = Query(20, ge=1, le=100),
            category: Optional[str] = None,
            search: Optional[str] = None,
        ):
            """List approved videos, newest first."""
            video_filter = VideoFilter(category=category, search=search)
            videos = await self.repository.find_many(video_filter, sort="date", page=page, limit=limit)
            total = await self.repository.count(video_filter)
            return {
                "videos": [video.to_dict() for video in videos],
                "pagination": self._pagination(page, limit, total),
            }

        @self.app.get("/api/v1/videos/trending")
        @cache.cached(ResourceKind.TRENDING)
        async def trending_videos(
            page: int = Query(1, ge=1),
            limit: int = Query(20, ge=1, le=100),
        ):
            """Most viewed approved videos."""
            videos = await self.repository.find_many(VideoFilter(), sort="trending", page=page, limit=limit)
            return {"videos": [video.to_dict() for video in videos], "page": page, "limit": limit}

        @self.app.get("/api/v1/videos/search/{query}")
        @cache.cached(ResourceKind.SEARCH, identity=("query",))
        async def search_videos(
            query: str,
            page: int = Query(1, ge=1),
            limit: int = Query(20, ge=1, le=100),
            category: Optional[str] = None,
            sort_by: str = Query("relevance", pattern="^(relevance|date|views)$"),
        ):
            """Full-text search over titles, descriptions and tags."""
            video_filter = VideoFilter(category=category, search=query)
            videos = await self.repository.find_many(video_filter, sort=sort_by, page=page, limit=limit)
            total = await self.repository.count(video_filter)
            return {
                "videos": [video.to_dict() for video in videos],
                "query": query,
                "pagination": self._pagination(page, limit, total),
            }

        @self.app.get("/api/v1/videos/{video_id}")
        async def get_video(video_id: str):
            """Video metadata; every request counts as a view, cached or not."""
            body = await cache.serve(
                RequestDescriptor(ResourceKind.VIDEO.value, {"video_id": video_id}),
                lambda: self._load_video(video_id),
            )
            await self.repository.record_view(video_id)
            return body

        @self.app.post("/api/v1/videos", status_code=201)
        async def create_video(request: VideoCreateRequest):
            video = await self.repository.create(request.model_dump())
            await self.invalidator.invalidate(ResourceKind.VIDEO, video.id)
            return video.to_dict()

        @self.app.patch("/api/v1/videos/{video_id}")
        async def update_video(video_id: str, request: VideoUpdateRequest):
            video = await self.repository.update(video_id, request.changes())
            if video is None:
                raise NotFoundError("video", video_id)
            await self.invalidator.invalidate(ResourceKind.VIDEO, video_id)
            return video.to_dict()

        @self.app.delete("/api/v1/videos/{video_id}")
        async def delete_video(video_id: str):
            if not await self.repository.delete(video_id):
                raise NotFoundError("video", video_id)
            await self.invalidator.invalidate(ResourceKind.VIDEO, video_id)
            return {"message": "Video deleted", "video_id": video_id}

        @self.app.post("/api/v1/videos/{video_id}/like")
        async def like_video(video_id: str, x_user_id: str = Header(..., alias="X-User-Id")):
            """Toggle the caller's like on a video."""
            set_user_context(x_user_id)
            result = await self.repository.toggle_like(video_id, x_user_id)
            if result is None:
                raise NotFoundError("video", video_id)
            await self.invalidator.invalidate(ResourceKind.VIDEO, video_id)
            liked, likes_count = result
            return {"liked": liked, "likes_count": likes_count}

    def _setup_recommendation_routes(self):
        """Set up recommendation routes."""

        @self.app.get("/api/v1/recommendations")
        @self.response_cache.cached(ResourceKind.RECOMMENDATIONS, identity=("x_user_id",))
        async def get_recommendations(
            x_user_id: str = Header(..., alias="X-User-Id"),
            limit: int = Query(10, ge=1, le=50),
        ):
            set_user_context(x_user_id)
            recommendations = await self.recommendation_provider.recommend(x_user_id, limit)
            return {
                "recommendations": recommendations,
                "count": len(recommendations),
                "personalized": True,
            }

        @self.app.post("/api/v1/recommendations/feedback")
        async def recommendation_feedback(
            request: FeedbackRequest,
            x_user_id: str = Header(..., alias="X-User-Id"),
        ):
            set_user_context(x_user_id)
            if not await self.repository.record_feedback(x_user_id, request.video_id, request.action):
                raise NotFoundError("video", request.video_id)
            await self.invalidator.invalidate_user_recommendations(x_user_id)
            return {"message": "Preferences updated"}

    def _setup_cache_routes(self):
        """Set up cache health and administration routes."""
        require_admin = Depends(self._require_admin)

        @self.app.get("/api/v1/cache/health")
        async def cache_health():
            return self.read_through.cache_health()

        @self.app.get("/api/v1/cache/stats", dependencies=[require_admin])
        async def cache_stats():
            return {
                "store": await self.cache_store.stats(),
                "reads": self.read_through.stats(),
                "ttl_policy": dict(self.ttl_policy.table),
                "timestamp": format_iso(datetime.now(timezone.utc)),
            }

        @self.app.delete("/api/v1/cache/videos/{video_id}", dependencies=[require_admin])
        async def clear_video_cache(video_id: str):
            if not self.cache_store.connected:
                return {"message": "Cache store not available, no cache to clear"}
            report = await self.invalidator.invalidate(ResourceKind.VIDEO, video_id)
            return {"message": "Cache cleared", "report": report.to_dict()}

        @self.app.post("/api/v1/cache/flush", dependencies=[require_admin])
        async def flush_cache():
            flushed = await self.cache_store.flush_all()
            self.logger.warning("Cache flush requested", flushed=flushed)
            return {"flushed": flushed}

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check video service dependencies."""
        # The service keeps serving from the system of record without Redis.
        return {"redis": "ok" if self.cache_store.connected else "unavailable"}


def create_app(**kwargs):
    """Create FastAPI application."""
    service = VideoService(**kwargs)
    return service.app


if __name__ == "__main__":
    service = VideoService()
    service.run()
