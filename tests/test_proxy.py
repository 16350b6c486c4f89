import asyncio
import random

import httpx

from proxy import ProxyCache, fetch_webshare_proxies, make_proxy_cache, proxy_url

PROXY = {"username": "u", "password": "p", "proxy_address": "10.0.0.1", "port": 8080}


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def counting_fetch(result):
    calls = []

    async def _fetch():
        calls.append(1)
        if isinstance(result, Exception):
            raise result
        return result

    return _fetch, calls


def test_proxy_url():
    assert proxy_url(PROXY) == "http://u:p@10.0.0.1:8080"


def test_reuses_list_within_ttl():
    clock = FakeClock()
    fetch, calls = counting_fetch([PROXY])
    cache = ProxyCache(fetch, ttl_s=300, clock=clock, rng=random.Random(1))

    assert asyncio.run(cache.pick()) == "http://u:p@10.0.0.1:8080"
    clock.now += 299
    asyncio.run(cache.pick())
    assert len(calls) == 1

    clock.now += 1
    asyncio.run(cache.pick())
    assert len(calls) == 2


def test_fetch_failure_means_direct():
    fetch, calls = counting_fetch(httpx.ConnectError("down"))
    cache = ProxyCache(fetch, clock=FakeClock())
    assert asyncio.run(cache.pick()) is None
    assert calls


def test_empty_list_means_direct_and_refetches():
    fetch, calls = counting_fetch([])
    cache = ProxyCache(fetch, clock=FakeClock())
    assert asyncio.run(cache.pick()) is None
    assert asyncio.run(cache.pick()) is None
    assert len(calls) == 2


def test_malformed_entry_means_direct():
    fetch, _ = counting_fetch([{"proxy_address": "10.0.0.1"}])
    cache = ProxyCache(fetch, clock=FakeClock())
    assert asyncio.run(cache.pick()) is None


def test_no_api_key():
    assert make_proxy_cache(None) is None
    assert make_proxy_cache("") is None
    assert isinstance(make_proxy_cache("secret"), ProxyCache)


def test_fetch_webshare_proxies_sends_token():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers["Authorization"]
        return httpx.Response(200, json={"count": 1, "results": [PROXY]})

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await fetch_webshare_proxies("secret", client)

    assert asyncio.run(run()) == [PROXY]
    assert seen["auth"] == "Token secret"
