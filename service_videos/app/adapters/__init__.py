"""
Adapters package for the Video Service.

Contains the system-of-record contract and the recommendation provider. The
cache layer calls these only as opaque loaders and never interprets their
query semantics.
"""

from .recommendation_provider import RecommendationProvider
from .video_repository import InMemoryVideoRepository, Video, VideoFilter, VideoRepository, sample_videos

__all__ = [
    "InMemoryVideoRepository",
    "RecommendationProvider",
    "Video",
    "VideoFilter",
    "VideoRepository",
    "sample_videos",
]
