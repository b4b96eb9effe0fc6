# bulbul/tracker.py
"""Per-session view/like dedup on the client side.

Each (post, kind) pair moves ``untouched -> pending -> confirmed``, falling
back to ``untouched`` when the request fails so the user can retry. Views
are only sent after the post stayed visible for a dwell time; likes go out
immediately. Confirmed ids are persisted locally, which makes the dedup
advisory: wiping the local state or using another client resets it, and
the server counts whatever it receives.
"""
import asyncio
import json
import logging
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional, Set, Tuple

import httpx

from .client import PostsClient
from .errors import DuplicateEngagement, NotFound

logger = logging.getLogger(__name__)

AUTO_VIEW_DWELL = 1.5
READ_VIEW_DWELL = 1.0


class Kind(str, Enum):
    VIEW = "view"
    LIKE = "like"


class Phase(str, Enum):
    UNTOUCHED = "untouched"
    PENDING = "pending"
    CONFIRMED = "confirmed"


class EngagementState:
    """Client-local record of posts already viewed/liked.

    Load it once at start-up; every change is saved straight away.
    """

    KEYS = {Kind.VIEW: "bulbul-viewed-posts", Kind.LIKE: "bulbul-liked-posts"}

    def __init__(self, path=None):
        self.path = Path(path) if path else None
        self._ids: Dict[Kind, Set[str]] = {Kind.VIEW: set(), Kind.LIKE: set()}

    def load(self) -> "EngagementState":
        if self.path is None or not self.path.exists():
            return self
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Failed to read engagement state from %s: %s", self.path, exc)
            return self
        if not isinstance(raw, dict):
            logger.warning("Engagement state in %s is not an object; ignoring it", self.path)
            return self
        for kind, key in self.KEYS.items():
            values = raw.get(key, [])
            if not isinstance(values, list):
                logger.warning("Engagement state key %s in %s is not a list; ignoring it", key, self.path)
                values = []
            self._ids[kind] = {str(v) for v in values}
        return self

    def save(self) -> None:
        if self.path is None:
            return
        body = {key: sorted(self._ids[kind]) for kind, key in self.KEYS.items()}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(body), encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to persist engagement state to %s: %s", self.path, exc)

    def has(self, kind: Kind, post_id: str) -> bool:
        return post_id in self._ids[kind]

    def add(self, kind: Kind, post_id: str) -> None:
        self._ids[kind].add(post_id)
        self.save()

    def ids(self, kind: Kind) -> Set[str]:
        return set(self._ids[kind])

    def clear(self) -> None:
        for ids in self._ids.values():
            ids.clear()
        self.save()


class EngagementTracker:
    def __init__(
        self,
        client: PostsClient,
        state: Optional[EngagementState] = None,
        invalidate: Optional[Callable[[], Awaitable[None]]] = None,
        on_failure: Optional[Callable[[str, Kind, Exception], None]] = None,
        auto_view_dwell: float = AUTO_VIEW_DWELL,
        read_view_dwell: float = READ_VIEW_DWELL,
    ):
        self.client = client
        self.state = state or EngagementState()
        self.invalidate = invalidate
        self.on_failure = on_failure
        self.auto_view_dwell = auto_view_dwell
        self.read_view_dwell = read_view_dwell
        self._pending: Set[Tuple[str, Kind]] = set()
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: Set[asyncio.Task] = set()

    def phase(self, post_id: str, kind: Kind) -> Phase:
        if self.state.has(kind, post_id):
            return Phase.CONFIRMED
        if (post_id, kind) in self._pending:
            return Phase.PENDING
        return Phase.UNTOUCHED

    async def like(self, post_id: str):
        """Send one like; raises DuplicateEngagement if already pending/liked."""
        return await self._submit(post_id, Kind.LIKE, self.client.like)

    async def view(self, post_id: str) -> None:
        await self._submit(post_id, Kind.VIEW, self.client.view)

    async def _submit(self, post_id: str, kind: Kind, send):
        # claimed before the first await so a double trigger sees PENDING
        if self.phase(post_id, kind) is not Phase.UNTOUCHED:
            raise DuplicateEngagement(post_id, kind.value)
        self._pending.add((post_id, kind))
        try:
            result = await send(post_id)
        except asyncio.CancelledError:
            self._pending.discard((post_id, kind))
            raise
        except Exception as exc:
            self._pending.discard((post_id, kind))
            logger.warning("Failed to send %s for post %s: %s", kind.value, post_id, exc)
            if self.on_failure is not None:
                self.on_failure(post_id, kind, exc)
            raise
        self._pending.discard((post_id, kind))
        self.state.add(kind, post_id)

        if self.invalidate is not None:
            try:
                await self.invalidate()
            except httpx.HTTPError as exc:
                logger.warning("Refresh after %s of %s failed: %s", kind.value, post_id, exc)
        return result

    # -- dwell-gated views

    def item_visible(self, post_id: str) -> bool:
        return self._arm(post_id, self.auto_view_dwell)

    def open_item(self, post_id: str) -> bool:
        return self._arm(post_id, self.read_view_dwell)

    def item_hidden(self, post_id: str) -> bool:
        """Cancel a view still waiting out its dwell time."""
        handle = self._timers.pop(post_id, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def view_armed(self, post_id: str) -> bool:
        return post_id in self._timers

    def _arm(self, post_id: str, delay: float) -> bool:
        if post_id in self._timers or self.phase(post_id, Kind.VIEW) is not Phase.UNTOUCHED:
            return False
        loop = asyncio.get_running_loop()
        self._timers[post_id] = loop.call_later(delay, self._fire_view, post_id)
        return True

    def _fire_view(self, post_id: str) -> None:
        self._timers.pop(post_id, None)
        if self.phase(post_id, Kind.VIEW) is not Phase.UNTOUCHED:
            return
        task = asyncio.ensure_future(self._background_view(post_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _background_view(self, post_id: str) -> None:
        try:
            await self.view(post_id)
        except DuplicateEngagement:
            pass
        except (httpx.HTTPError, NotFound):
            # already logged and reported through on_failure
            pass

    async def drain(self) -> None:
        """Wait for views already fired by their timers."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def cancel_all(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
