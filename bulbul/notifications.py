# bulbul/notifications.py
"""Change notifications pushed from the hub to observers.

Each notification travels as one server-sent event whose data field is a
JSON object ``{"type": ..., "data": ...}``. Observers react to every post_*
type by dropping their cached posts and stats and reading them again.
"""
import json
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel

from .schemas import Post


class NotificationType(str, Enum):
    CONNECTED = "connected"
    POST_CREATED = "post_created"
    POST_UPDATED = "post_updated"
    POST_DELETED = "post_deleted"
    POST_LIKED = "post_liked"


# cached queries each notification makes stale on the observer side
POSTS_QUERY = "/api/posts"
STATS_QUERY = "/api/stats"

INVALIDATES = {
    NotificationType.POST_CREATED: (POSTS_QUERY, STATS_QUERY),
    NotificationType.POST_UPDATED: (POSTS_QUERY, STATS_QUERY),
    NotificationType.POST_DELETED: (POSTS_QUERY, STATS_QUERY),
    NotificationType.POST_LIKED: (POSTS_QUERY, STATS_QUERY),
}


class Notification(BaseModel):
    type: NotificationType
    data: Optional[Any] = None

    @classmethod
    def connected(cls) -> "Notification":
        return cls(type=NotificationType.CONNECTED)

    @classmethod
    def created(cls, post: Post) -> "Notification":
        return cls(type=NotificationType.POST_CREATED, data=post.to_wire())

    @classmethod
    def updated(cls, post: Post) -> "Notification":
        return cls(type=NotificationType.POST_UPDATED, data=post.to_wire())

    @classmethod
    def liked(cls, post: Post) -> "Notification":
        return cls(type=NotificationType.POST_LIKED, data=post.to_wire())

    @classmethod
    def deleted(cls, post_id: str) -> "Notification":
        return cls(type=NotificationType.POST_DELETED, data={"id": post_id})

    def payload(self) -> dict:
        body = {"type": self.type.value}
        if self.data is not None:
            body["data"] = self.data
        return body

    def encode(self) -> str:
        return f"data: {json.dumps(self.payload())}\n\n"

    @classmethod
    def decode(cls, text: str) -> "Notification":
        """Parse the data field of one event. Raises ValueError on bad input."""
        body = json.loads(text)
        if not isinstance(body, dict):
            raise ValueError(f"Notification must be a JSON object, got {text!r}")
        return cls.model_validate(body)

    def affected_queries(self) -> tuple:
        return INVALIDATES.get(self.type, ())


async def iter_sse_data(lines):
    """Group an async iterator of SSE lines into event data strings."""
    buffer = []
    async for line in lines:
        if not line:
            if buffer:
                yield "\n".join(buffer)
                buffer = []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if field == "data":
            buffer.append(value[1:] if value.startswith(" ") else value)
    if buffer:
        yield "\n".join(buffer)
