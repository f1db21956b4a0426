"""
Request models for the Video Service API.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class VideoCreateRequest(BaseModel):
    """Metadata for a video whose upload has completed."""

    title: str = Field(..., min_length=1, max_length=200)
    url: str = Field(..., min_length=1)
    uploader: str = Field(..., min_length=1)
    description: str = ""
    thumbnail: str = ""
    duration: int = Field(default=0, ge=0)
    tags: List[str] = Field(default_factory=list)
    category: str = "General"
    moderation_status: Literal["pending", "approved", "flagged"] = "approved"


class VideoUpdateRequest(BaseModel):
    """Editable video fields; only the fields sent are changed."""

    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    thumbnail: Optional[str] = None
    tags: Optional[List[str]] = None
    category: Optional[str] = None
    moderation_status: Optional[Literal["pending", "approved", "flagged"]] = None

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class FeedbackRequest(BaseModel):
    """User interaction used to tune recommendations."""

    video_id: str = Field(..., min_length=1)
    action: Literal["watch", "like", "skip"]
