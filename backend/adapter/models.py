"""
Shared data models for feed-source adapters.
"""

from datetime import datetime
from typing import List, Optional, Protocol

from pydantic import BaseModel, Field


class Profile(BaseModel):
    """
    Snapshot of a posting account, fetched at selection time.

    Attributes:
        id: Platform-native identifier (Bluesky DID, X user id); empty when unknown
        handle: Account handle (without @)
        display_name: Display name
        followers_count: Follower count, None when the source does not expose it
        posts_count: Post count, None when the source does not expose it
        created_at: Account creation time, None when the source does not expose it
    """
    id: str = Field(default="", description="Platform-native identifier")
    handle: str = Field(default="", description="Account handle (without @)")
    display_name: Optional[str] = Field(default=None, description="Display name")
    followers_count: Optional[int] = Field(default=None, description="Follower count")
    posts_count: Optional[int] = Field(default=None, description="Post count")
    created_at: Optional[datetime] = Field(default=None, description="Account creation time")

    @property
    def key(self) -> str:
        """De-duplication key: native id when present, else handle."""
        return profile_key(self.id, self.handle)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "handle": self.handle,
            "displayName": self.display_name,
            "followersCount": self.followers_count,
            "postsCount": self.posts_count,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class PostAuthor(BaseModel):
    """Author reference carried on a normalized post."""
    id: str = Field(default="", description="Platform-native author id")
    handle: str = Field(description="Author handle (without @)")
    display_name: Optional[str] = Field(default=None, description="Author display name")


class Post(BaseModel):
    """
    A normalized text post, produced fresh on every fetch.
    """
    id: str = Field(description="Unique post id (URI for Bluesky, tweet id for X)")
    author: PostAuthor = Field(description="Post author")
    text: str = Field(description="Full post text")
    created_at: datetime = Field(description="When the post was created")


class FeedSource(Protocol):
    """Capability each platform adapter provides to the selection and tick pipeline."""

    platform: str

    def resolve_profiles(self, identifiers: List[str]) -> List[Profile]:
        """Resolve identifiers to profiles; unresolvable identifiers are omitted."""
        ...

    def fetch_recent_posts(self, actors: List[str], lookback_minutes: float) -> List[Post]:
        """Fetch text posts (no replies) by the given actors within the lookback window."""
        ...


def profile_key(native_id: Optional[str], handle: Optional[str]) -> str:
    """Build the shared de-duplication key used for excludes, includes and base accounts."""
    if native_id:
        return f"id:{native_id}"
    return f"handle:{(handle or '').lstrip('@').lower()}"


__all__ = ["Profile", "PostAuthor", "Post", "FeedSource", "profile_key"]
