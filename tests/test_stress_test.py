import asyncio

import httpx

from bulbul import stress_test


def _counting_client(calls):
    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        await asyncio.sleep(0)
        return httpx.Response(200, json={})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_user_sim_shares_only_the_semaphore_it_is_given() -> None:
    calls = []

    async def burst():
        semaphore = asyncio.Semaphore(2)
        async with _counting_client(calls) as client:
            results = await asyncio.gather(
                *(stress_test.user_sim(client, semaphore, i, "p1") for i in range(10))
            )
        return results

    # two separate event loops, as two asyncio.run calls would create
    first = asyncio.run(burst())
    second = asyncio.run(burst())

    assert all(first) and all(second)
    assert calls.count("/api/posts/p1/like") == 20
    assert not hasattr(stress_test, "semaphore")


def test_user_sim_reports_http_errors() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await stress_test.user_sim(client, asyncio.Semaphore(1), 0, "p1")

    assert asyncio.run(run()) is False
