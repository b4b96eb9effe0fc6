# bulbul/client.py
import asyncio
import logging
from typing import AsyncIterator, Callable, List, Optional

import httpx

from .errors import NotFound
from .notifications import (
    POSTS_QUERY,
    STATS_QUERY,
    Notification,
    NotificationType,
    iter_sse_data,
)
from .schemas import Post, Stats

logger = logging.getLogger(__name__)


class PostsClient:
    """Async wrapper around the live posts HTTP API."""

    def __init__(self, base_url: str = "http://127.0.0.1:8000", client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 10.0):
        self._owns_client = client is None
        self.http = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self):
        if self._owns_client:
            await self.http.aclose()

    async def _request(self, method: str, url: str, post_id: Optional[str] = None, **kwargs) -> httpx.Response:
        resp = await self.http.request(method, url, **kwargs)
        if resp.status_code == 404 and post_id is not None:
            raise NotFound(post_id)
        resp.raise_for_status()
        return resp

    async def list_posts(self) -> List[Post]:
        resp = await self._request("GET", POSTS_QUERY)
        return [Post.model_validate(item) for item in resp.json()]

    async def get_post(self, post_id: str) -> Post:
        resp = await self._request("GET", f"/api/posts/{post_id}", post_id)
        return Post.model_validate(resp.json())

    async def create_post(self, fields: dict, image: Optional[tuple] = None) -> Post:
        files = {"image": image} if image else None
        resp = await self._request("POST", POSTS_QUERY, data=_form(fields), files=files)
        return Post.model_validate(resp.json())

    async def update_post(self, post_id: str, fields: dict, image: Optional[tuple] = None) -> Post:
        files = {"image": image} if image else None
        resp = await self._request("PUT", f"/api/posts/{post_id}", post_id, data=_form(fields), files=files)
        return Post.model_validate(resp.json())

    async def delete_post(self, post_id: str) -> None:
        await self._request("DELETE", f"/api/posts/{post_id}", post_id)

    async def view(self, post_id: str) -> None:
        await self._request("POST", f"/api/posts/{post_id}/view", post_id)

    async def like(self, post_id: str) -> Post:
        resp = await self._request("POST", f"/api/posts/{post_id}/like", post_id)
        return Post.model_validate(resp.json())

    async def stats(self) -> Stats:
        resp = await self._request("GET", STATS_QUERY)
        return Stats.model_validate(resp.json())

    async def events(self) -> AsyncIterator[Notification]:
        """Yield notifications from the event stream until it closes."""
        async with self.http.stream("GET", "/api/events", timeout=None) as resp:
            resp.raise_for_status()
            async for data in iter_sse_data(resp.aiter_lines()):
                try:
                    yield Notification.decode(data)
                except ValueError as exc:
                    logger.warning("Ignoring malformed event %r: %s", data, exc)


def _form(fields: dict) -> dict:
    form = {}
    for key, value in fields.items():
        if value is None:
            continue
        form[key] = ("true" if value else "false") if isinstance(value, bool) else str(value)
    return form


class LiveFeed:
    """Observer-side cache of posts and stats kept fresh by the event stream.

    The stream is never trusted to have queued anything: every (re)connect
    starts with a full read, and every post_* notification drops the cached
    queries and reads them again.
    """

    def __init__(self, client: PostsClient, retry_seconds: float = 3.0):
        self.client = client
        self.retry_seconds = retry_seconds
        self.posts: List[Post] = []
        self.stats = Stats()
        self.stale = {POSTS_QUERY, STATS_QUERY}
        self.listeners: List[Callable[["LiveFeed"], object]] = []
        self.connected = False
        self._stopping = False

    def invalidate(self, *queries: str) -> None:
        self.stale.update(queries or (POSTS_QUERY, STATS_QUERY))

    async def refresh(self) -> None:
        """Re-read every stale query from the server."""
        stale, self.stale = self.stale, set()
        try:
            if POSTS_QUERY in stale:
                self.posts = await self.client.list_posts()
            if STATS_QUERY in stale:
                self.stats = await self.client.stats()
        except httpx.HTTPError:
            self.stale |= stale
            raise
        for listener in self.listeners:
            listener(self)

    async def resync(self) -> None:
        self.invalidate()
        await self.refresh()

    async def handle(self, notification: Notification) -> None:
        if notification.type is NotificationType.CONNECTED:
            self.connected = True
            await self.resync()
            return
        queries = notification.affected_queries()
        if queries:
            self.invalidate(*queries)
            await self.refresh()

    async def run(self) -> None:
        """Follow the event stream, reconnecting after transport errors."""
        while not self._stopping:
            try:
                async for notification in self.client.events():
                    await self.handle(notification)
                    if self._stopping:
                        break
            except httpx.HTTPError as exc:
                logger.warning("Event stream lost: %s", exc)
            self.connected = False
            if not self._stopping:
                await asyncio.sleep(self.retry_seconds)

    def stop(self) -> None:
        self._stopping = True

    def find(self, post_id: str) -> Optional[Post]:
        for post in self.posts:
            if post.id == post_id:
                return post
        return None
