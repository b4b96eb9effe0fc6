import asyncio
import json
from pathlib import Path

import httpx
import pytest

from bulbul.client import PostsClient
from bulbul.errors import DuplicateEngagement, NotFound
from bulbul.tracker import EngagementState, EngagementTracker, Kind, Phase

POST = {
    "id": "x",
    "title": "A",
    "content": "B",
    "author": "C",
    "views": 0,
    "likes": 1,
    "published": True,
    "createdAt": "2024-05-01T00:00:00Z",
    "updatedAt": "2024-05-01T00:00:00Z",
}


class FakeServer:
    """Records engagement requests and answers them like the API does."""

    def __init__(self, fail: bool = False, delay: float = 0.0):
        self.fail = fail
        self.delay = delay
        self.requests = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            return httpx.Response(500, json={"detail": "boom"})
        if request.url.path.startswith("/api/posts/missing"):
            return httpx.Response(404, json={"detail": "Post not found"})
        if request.url.path.endswith("/view"):
            return httpx.Response(200, json={"message": "View count updated"})
        return httpx.Response(200, json=POST)

    def count(self, suffix: str) -> int:
        return sum(1 for _, path in self.requests if path.endswith(suffix))


def _tracker(server, state=None, **kwargs):
    http = httpx.AsyncClient(transport=httpx.MockTransport(server), base_url="http://test")
    return EngagementTracker(PostsClient(client=http), state or EngagementState(), **kwargs)


def test_like_confirms_and_persists(tmp_path: Path) -> None:
    server = FakeServer()
    refreshed = []

    async def invalidate():
        refreshed.append(True)

    state = EngagementState(tmp_path / "engagement.json")

    async def scenario():
        tracker = _tracker(server, state, invalidate=invalidate)
        post = await tracker.like("x")
        return tracker, post

    tracker, post = asyncio.run(scenario())

    assert post.likes == 1
    assert tracker.phase("x", Kind.LIKE) is Phase.CONFIRMED
    assert refreshed == [True]
    saved = json.loads((tmp_path / "engagement.json").read_text(encoding="utf-8"))
    assert saved == {"bulbul-viewed-posts": [], "bulbul-liked-posts": ["x"]}


def test_second_like_sends_nothing_and_reports_duplicate() -> None:
    server = FakeServer()

    async def scenario():
        tracker = _tracker(server)
        await tracker.like("x")
        with pytest.raises(DuplicateEngagement) as info:
            await tracker.like("x")
        return info.value

    dup = asyncio.run(scenario())

    assert server.count("/like") == 1
    assert dup.kind == "like" and dup.post_id == "x"


def test_double_click_produces_one_request() -> None:
    server = FakeServer(delay=0.05)

    async def scenario():
        tracker = _tracker(server)
        first = asyncio.ensure_future(tracker.like("x"))
        await asyncio.sleep(0)
        assert tracker.phase("x", Kind.LIKE) is Phase.PENDING
        results = await asyncio.gather(first, tracker.like("x"), return_exceptions=True)
        return results

    results = asyncio.run(scenario())

    assert server.count("/like") == 1
    assert isinstance(results[1], DuplicateEngagement)
    assert not isinstance(results[0], Exception)


def test_like_failure_resets_for_retry() -> None:
    server = FakeServer(fail=True)
    failures = []

    async def scenario():
        tracker = _tracker(server, on_failure=lambda pid, kind, exc: failures.append((pid, kind)))
        with pytest.raises(httpx.HTTPStatusError):
            await tracker.like("x")
        assert tracker.phase("x", Kind.LIKE) is Phase.UNTOUCHED
        server.fail = False
        await tracker.like("x")
        return tracker

    tracker = asyncio.run(scenario())

    assert failures == [("x", Kind.LIKE)]
    assert server.count("/like") == 2
    assert tracker.phase("x", Kind.LIKE) is Phase.CONFIRMED


def test_like_of_missing_post_raises_not_found() -> None:
    async def scenario():
        tracker = _tracker(FakeServer())
        with pytest.raises(NotFound):
            await tracker.like("missing")
        return tracker.phase("missing", Kind.LIKE)

    assert asyncio.run(scenario()) is Phase.UNTOUCHED


def test_view_and_like_are_tracked_separately() -> None:
    server = FakeServer()

    async def scenario():
        tracker = _tracker(server)
        await tracker.like("x")
        await tracker.view("x")
        return tracker

    tracker = asyncio.run(scenario())

    assert tracker.phase("x", Kind.VIEW) is Phase.CONFIRMED
    assert server.count("/view") == 1 and server.count("/like") == 1


def test_visible_item_is_viewed_after_dwell() -> None:
    server = FakeServer()

    async def scenario():
        tracker = _tracker(server, auto_view_dwell=0.02)
        assert tracker.item_visible("x") is True
        assert tracker.item_visible("x") is False
        await asyncio.sleep(0.05)
        await tracker.drain()
        return tracker

    tracker = asyncio.run(scenario())

    assert server.count("/view") == 1
    assert tracker.phase("x", Kind.VIEW) is Phase.CONFIRMED
    assert not tracker.view_armed("x")


def test_hiding_before_dwell_cancels_view() -> None:
    server = FakeServer()

    async def scenario():
        tracker = _tracker(server, auto_view_dwell=0.05)
        tracker.item_visible("x")
        await asyncio.sleep(0.01)
        assert tracker.item_hidden("x") is True
        await asyncio.sleep(0.08)
        await tracker.drain()
        return tracker

    tracker = asyncio.run(scenario())

    assert server.requests == []
    assert tracker.phase("x", Kind.VIEW) is Phase.UNTOUCHED


def test_open_item_uses_read_dwell() -> None:
    server = FakeServer()

    async def scenario():
        tracker = _tracker(server, auto_view_dwell=10, read_view_dwell=0.01)
        tracker.open_item("x")
        await asyncio.sleep(0.05)
        await tracker.drain()
        tracker.cancel_all()

    asyncio.run(scenario())

    assert server.count("/view") == 1


def test_confirmed_view_is_not_rearmed() -> None:
    server = FakeServer()

    async def scenario():
        tracker = _tracker(server, auto_view_dwell=0.01)
        await tracker.view("x")
        return tracker.item_visible("x")

    assert asyncio.run(scenario()) is False
    assert server.count("/view") == 1


def test_failed_timed_view_can_fire_again() -> None:
    server = FakeServer(fail=True)
    failures = []

    async def scenario():
        tracker = _tracker(server, auto_view_dwell=0.01,
                           on_failure=lambda pid, kind, exc: failures.append(kind))
        tracker.item_visible("x")
        await asyncio.sleep(0.03)
        await tracker.drain()
        server.fail = False
        assert tracker.item_visible("x") is True
        await asyncio.sleep(0.03)
        await tracker.drain()
        return tracker

    tracker = asyncio.run(scenario())

    assert failures == [Kind.VIEW]
    assert server.count("/view") == 2
    assert tracker.phase("x", Kind.VIEW) is Phase.CONFIRMED


def test_state_survives_reload(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    state = EngagementState(path)
    state.add(Kind.VIEW, "a")
    state.add(Kind.LIKE, "b")

    reloaded = EngagementState(path).load()

    assert reloaded.has(Kind.VIEW, "a")
    assert reloaded.has(Kind.LIKE, "b")
    assert not reloaded.has(Kind.LIKE, "a")


def test_cleared_state_allows_new_engagement(tmp_path: Path) -> None:
    server = FakeServer()
    state = EngagementState(tmp_path / "state.json")

    async def scenario():
        tracker = _tracker(server, state)
        await tracker.like("x")
        state.clear()
        await tracker.like("x")

    asyncio.run(scenario())

    assert server.count("/like") == 2
    assert EngagementState(tmp_path / "state.json").load().ids(Kind.LIKE) == {"x"}


def test_corrupt_state_file_loads_empty(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    path.write_text("{not json", encoding="utf-8")

    state = EngagementState(path).load()

    assert state.ids(Kind.VIEW) == set() and state.ids(Kind.LIKE) == set()


def test_non_list_state_values_load_empty(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    path.write_text(json.dumps({"bulbul-viewed-posts": "abc", "bulbul-liked-posts": ["x"]}), encoding="utf-8")

    state = EngagementState(path).load()

    assert state.ids(Kind.VIEW) == set()
    assert state.ids(Kind.LIKE) == {"x"}


def test_non_object_state_file_loads_empty(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    path.write_text('["x"]', encoding="utf-8")

    state = EngagementState(path).load()

    assert state.ids(Kind.VIEW) == set() and state.ids(Kind.LIKE) == set()
