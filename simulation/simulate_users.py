import asyncio
import random

import httpx

from bulbul.client import LiveFeed, PostsClient
from bulbul.errors import DuplicateEngagement
from bulbul.tracker import EngagementState, EngagementTracker, Kind

API = "http://127.0.0.1:8000"
NUM_USERS = 20


async def submit_initial(client, n=10):
    for i in range(n):
        await client.create_post({
            "title": f"post-{i}",
            "content": "<p>lorem ipsum</p>",
            "author": "simulation",
            "category": random.choice(["news", "notes", None]),
        })


async def user_sim(user_id):
    # every simulated viewer gets its own session state and event stream
    async with httpx.AsyncClient(base_url=API, timeout=60.0) as http:
        client = PostsClient(client=http)
        feed = LiveFeed(client)
        tracker = EngagementTracker(client, EngagementState(), invalidate=feed.resync,
                                    auto_view_dwell=0.3, read_view_dwell=0.2)
        listener = asyncio.create_task(feed.run())
        await feed.resync()

        for _ in range(20):
            if not feed.posts:
                break
            post = random.choice(feed.posts)
            rand_val = random.random()
            if rand_val < 0.3:
                try:
                    await tracker.like(post.id)
                except DuplicateEngagement:
                    pass
            elif rand_val < 0.8:
                tracker.item_visible(post.id)
                await asyncio.sleep(random.uniform(0.1, 0.5))
                tracker.item_hidden(post.id)
            await asyncio.sleep(random.uniform(0.05, 0.2))

        await tracker.drain()
        feed.stop()
        listener.cancel()
        print(f"[User {user_id}] viewed={len(tracker.state.ids(Kind.VIEW))} "
              f"liked={len(tracker.state.ids(Kind.LIKE))} seen_total_likes={feed.stats.total_likes}")


async def main():
    async with PostsClient(API, timeout=60.0) as client:
        await submit_initial(client)
    tasks = [asyncio.create_task(user_sim(uid)) for uid in range(NUM_USERS)]
    await asyncio.gather(*tasks, return_exceptions=True)


if __name__ == "__main__":
    asyncio.run(main())
