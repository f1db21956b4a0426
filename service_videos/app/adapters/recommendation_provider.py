"""
Recommendation provider.

Blends collaborative picks (videos uploaded by users with overlapping watch
history), content-based picks (the user's top categories) and recent trending
videos. Falls back to the most viewed videos when the blend fails.
"""

from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

from shared.logging import get_logger

from .video_repository import Video, VideoFilter, VideoRepository

TRENDING_WINDOW = timedelta(days=7)


class RecommendationProvider:
    """Computes personalized recommendations from the system of record."""

    def __init__(
        self,
        repository: VideoRepository,
        *,
        collaborative_limit: int = 5,
        content_limit: int = 5,
        trending_limit: int = 3,
    ):
        self.repository = repository
        self.collaborative_limit = collaborative_limit
        self.content_limit = content_limit
        self.trending_limit = trending_limit
        self.logger = get_logger("videos.recommendations")

    async def recommend(self, user_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Return up to ``limit`` recommended videos as dictionaries."""
        try:
            videos = await self._blend(user_id, limit)
        except Exception as exc:
            self.logger.warning("Recommendation blend failed, using popular videos", user_id=user_id, error=str(exc))
            videos = await self.repository.find_many(VideoFilter(), sort="views", limit=limit)
        return [video.to_dict() for video in videos]

    async def _blend(self, user_id: str, limit: int) -> List[Video]:
        history = await self.repository.watch_history(user_id)
        watched = frozenset(history)

        categories = Counter()
        for video_id in history:
            video = await self.repository.find(video_id)
            if video is not None:
                categories[video.category] += 1
        top_categories = [category for category, _ in categories.most_common(3)]

        similar = await self.repository.similar_users(user_id)
        collaborative: List[Video] = []
        if similar:
            collaborative = await self.repository.find_many(
                VideoFilter(uploaders=frozenset(similar), exclude_ids=watched),
                sort="views",
                limit=self.collaborative_limit,
            )

        content_based: List[Video] = []
        for category in top_categories:
            content_based.extend(await self.repository.find_many(
                VideoFilter(category=category, exclude_ids=watched),
                sort="views",
                limit=self.content_limit,
            ))
        content_based.sort(key=lambda video: (video.views, video.created_at), reverse=True)

        trending = await self.repository.find_many(
            VideoFilter(
                exclude_ids=watched,
                created_after=datetime.now(timezone.utc) - TRENDING_WINDOW,
            ),
            sort="views",
            limit=self.trending_limit,
        )

        seen = set()
        blended: List[Video] = []
        for video in [*collaborative, *content_based[:self.content_limit], *trending]:
            if video.id in seen:
                continue
            seen.add(video.id)
            blended.append(video)
        return blended[:limit]
