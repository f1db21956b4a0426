"""
System of record for videos.

The cache layer treats every call here as an opaque async loader. Production
deployments plug a document-database implementation behind
:class:`VideoRepository`; :class:`InMemoryVideoRepository` backs local runs
and tests.
"""

from __future__ import annotations

import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from shared.errors import ValidationError
from shared.logging import get_logger

SORT_MODES = ("relevance", "date", "views", "trending")
FEEDBACK_ACTIONS = ("watch", "like", "skip")
MODERATION_STATES = ("pending", "approved", "flagged")


def _format_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class Video:
    """A video document as stored by the system of record."""

    id: str
    title: str
    url: str
    uploader: str
    description: str = ""
    thumbnail: str = ""
    duration: int = 0
    views: int = 0
    likes: Set[str] = field(default_factory=set)
    tags: List[str] = field(default_factory=list)
    category: str = "General"
    moderation_status: str = "approved"
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the video to a JSON-friendly dictionary."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "url": self.url,
            "thumbnail": self.thumbnail,
            "duration": self.duration,
            "views": self.views,
            "likes_count": len(self.likes),
            "tags": list(self.tags),
            "category": self.category,
            "uploader": self.uploader,
            "moderation_status": self.moderation_status,
            "created_at": _format_iso(self.created_at),
            "updated_at": _format_iso(self.updated_at),
        }

    def relevance(self, terms: Iterable[str]) -> int:
        haystack = " ".join([self.title, self.description, *self.tags]).lower()
        return sum(haystack.count(term) for term in terms)


@dataclass(frozen=True)
class VideoFilter:
    """Query filter understood by every repository implementation."""

    category: Optional[str] = None
    search: Optional[str] = None
    moderation_status: Optional[str] = "approved"
    created_after: Optional[datetime] = None
    exclude_ids: frozenset = frozenset()
    uploaders: Optional[frozenset] = None

    def terms(self) -> List[str]:
        return [term for term in (self.search or "").lower().split() if term]


class VideoRepository(ABC):
    """Contract for the persistent video store."""

    @abstractmethod
    async def find(self, video_id: str) -> Optional[Video]:
        """Return the video or None."""

    @abstractmethod
    async def find_many(
        self,
        video_filter: VideoFilter,
        sort: str = "date",
        page: int = 1,
        limit: int = 20,
    ) -> List[Video]:
        """Return one page of matching videos."""

    @abstractmethod
    async def count(self, video_filter: VideoFilter) -> int:
        """Count matching videos."""

    @abstractmethod
    async def create(self, data: Dict[str, Any]) -> Video:
        """Insert a new video."""

    @abstractmethod
    async def update(self, video_id: str, changes: Dict[str, Any]) -> Optional[Video]:
        """Apply editable field changes; None when the video is missing."""

    @abstractmethod
    async def delete(self, video_id: str) -> bool:
        """Remove a video; False when it did not exist."""

    @abstractmethod
    async def toggle_like(self, video_id: str, user_id: str) -> Optional[Tuple[bool, int]]:
        """Like or unlike; returns (liked, likes_count) or None when missing."""

    @abstractmethod
    async def record_view(self, video_id: str) -> None:
        """Increment the view counter."""

    @abstractmethod
    async def record_feedback(self, user_id: str, video_id: str, action: str) -> bool:
        """Record a watch/like/skip interaction; False when the video is missing."""

    @abstractmethod
    async def watch_history(self, user_id: str) -> List[str]:
        """Video ids the user has watched, oldest first."""

    @abstractmethod
    async def similar_users(self, user_id: str, limit: int = 5) -> List[str]:
        """Users whose watch history overlaps the given user's."""


class InMemoryVideoRepository(VideoRepository):
    """Process-local repository."""

    EDITABLE_FIELDS = frozenset({"title", "description", "thumbnail", "tags", "category", "moderation_status"})

    def __init__(self, videos: Optional[Iterable[Video]] = None):
        self._videos: Dict[str, Video] = {video.id: video for video in videos or []}
        self._history: Dict[str, List[str]] = {}
        self._skipped: Dict[str, Set[str]] = {}
        self._lock = asyncio.Lock()
        self.logger = get_logger("videos.repository")

    async def find(self, video_id: str) -> Optional[Video]:
        return self._videos.get(video_id)

    def _matching(self, video_filter: VideoFilter) -> List[Video]:
        terms = video_filter.terms()
        matches = []
        for video in self._videos.values():
            if video_filter.moderation_status and video.moderation_status != video_filter.moderation_status:
                continue
            if video_filter.category and video.category != video_filter.category:
                continue
            if video_filter.created_after and video.created_at < video_filter.created_after:
                continue
            if video.id in video_filter.exclude_ids:
                continue
            if video_filter.uploaders is not None and video.uploader not in video_filter.uploaders:
                continue
            if terms and video.relevance(terms) == 0:
                continue
            matches.append(video)
        return matches

    async def find_many(
        self,
        video_filter: VideoFilter,
        sort: str = "date",
        page: int = 1,
        limit: int = 20,
    ) -> List[Video]:
        if sort not in SORT_MODES:
            raise ValidationError(f"Unsupported sort mode '{sort}'", {"allowed": list(SORT_MODES)})
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")

        videos = self._matching(video_filter)
        if sort == "relevance" and video_filter.terms():
            terms = video_filter.terms()
            videos.sort(key=lambda video: (video.relevance(terms), video.created_at), reverse=True)
        elif sort in ("views", "trending"):
            videos.sort(key=lambda video: (video.views, video.created_at), reverse=True)
        else:
            videos.sort(key=lambda video: video.created_at, reverse=True)

        start = (page - 1) * limit
        return videos[start:start + limit]

    async def count(self, video_filter: VideoFilter) -> int:
        return len(self._matching(video_filter))

    async def create(self, data: Dict[str, Any]) -> Video:
        for required in ("title", "url", "uploader"):
            if not data.get(required):
                raise ValidationError(f"'{required}' is required")

        async with self._lock:
            video = Video(
                id=data.get("id") or uuid.uuid4().hex,
                title=data["title"],
                url=data["url"],
                uploader=data["uploader"],
                description=data.get("description", ""),
                thumbnail=data.get("thumbnail", ""),
                duration=int(data.get("duration", 0)),
                tags=list(data.get("tags", [])),
                category=data.get("category", "General"),
                moderation_status=data.get("moderation_status", "approved"),
            )
            self._videos[video.id] = video
        self.logger.info("Video created", video_id=video.id)
        return video

    async def update(self, video_id: str, changes: Dict[str, Any]) -> Optional[Video]:
        unknown = set(changes) - self.EDITABLE_FIELDS
        if unknown:
            raise ValidationError("Fields are not editable", {"fields": sorted(unknown)})
        if "moderation_status" in changes and changes["moderation_status"] not in MODERATION_STATES:
            raise ValidationError("Unknown moderation status", {"allowed": list(MODERATION_STATES)})

        async with self._lock:
            video = self._videos.get(video_id)
            if video is None:
                return None
            for name, value in changes.items():
                setattr(video, name, list(value) if name == "tags" else value)
            video.updated_at = datetime.now(timezone.utc)
        return video

    async def delete(self, video_id: str) -> bool:
        async with self._lock:
            return self._videos.pop(video_id, None) is not None

    async def toggle_like(self, video_id: str, user_id: str) -> Optional[Tuple[bool, int]]:
        async with self._lock:
            video = self._videos.get(video_id)
            if video is None:
                return None
            if user_id in video.likes:
                video.likes.discard(user_id)
                liked = False
            else:
                video.likes.add(user_id)
                liked = True
            return liked, len(video.likes)

    async def record_view(self, video_id: str) -> None:
        async with self._lock:
            video = self._videos.get(video_id)
            if video is not None:
                video.views += 1

    async def record_feedback(self, user_id: str, video_id: str, action: str) -> bool:
        if action not in FEEDBACK_ACTIONS:
            raise ValidationError(f"Unknown feedback action '{action}'", {"allowed": list(FEEDBACK_ACTIONS)})

        async with self._lock:
            video = self._videos.get(video_id)
            if video is None:
                return False
            history = self._history.setdefault(user_id, [])
            if action == "watch" and video_id not in history:
                history.append(video_id)
            elif action == "like":
                video.likes.add(user_id)
            elif action == "skip":
                self._skipped.setdefault(user_id, set()).add(video_id)
        return True

    async def watch_history(self, user_id: str) -> List[str]:
        return list(self._history.get(user_id, []))

    async def similar_users(self, user_id: str, limit: int = 5) -> List[str]:
        watched = set(self._history.get(user_id, []))
        if not watched:
            return []
        overlap = [
            (len(watched.intersection(history)), other)
            for other, history in self._history.items()
            if other != user_id and watched.intersection(history)
        ]
        overlap.sort(key=lambda item: (-item[0], item[1]))
        return [other for _, other in overlap[:limit]]


def sample_videos(now: Optional[datetime] = None) -> List[Video]:
    """Seed catalogue for local runs."""
    now = now or datetime.now(timezone.utc)
    rows = [
        ("v1", "Intro to Python", "Education", "alice", 1200, ["python", "tutorial"], 2),
        ("v2", "Cat compilation", "Entertainment", "bob", 5400, ["cats", "funny"], 1),
        ("v3", "Async IO deep dive", "Education", "alice", 800, ["python", "asyncio"], 20),
        ("v4", "Street food tour", "Travel", "carol", 3100, ["food", "travel"], 3),
        ("v5", "Guitar basics", "Music", "dave", 450, ["guitar", "tutorial"], 40),
    ]
    return [
        Video(
            id=video_id,
            title=title,
            url=f"https://cdn.videohub.local/{video_id}.mp4",
            uploader=uploader,
            category=category,
            views=views,
            tags=tags,
            created_at=now - timedelta(days=age_days),
            updated_at=now - timedelta(days=age_days),
        )
        for video_id, title, category, uploader, views, tags, age_days in rows
    ]
