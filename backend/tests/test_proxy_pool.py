from datetime import timedelta

import httpx
import pytest
from sqlalchemy import select

from crawlmaster.models import Proxy
from crawlmaster.models.base import utcnow
from crawlmaster.services.proxy_pool import ProxyPool, next_proxy_type

PUBLIC_IP = "198.51.100.1"
PROXY_IP = "203.0.113.50"


def reflecting(ip):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "checkip.amazonaws.com":
            return httpx.Response(200, text=f"{ip}\n")
        return httpx.Response(200, json={"ip": ip})

    return handler


def failing(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("proxy refused", request=request)


FIXTURES = [
    {"proxy": "10.0.0.1:3128", "type": "datacenter", "provider": "dc", "geolocation": {"country": "us"}},
    {"proxy": "10.0.0.2:3128", "type": "datacenter", "provider": "dc", "geolocation": {"country": "de"}},
    {"proxy": "10.0.0.3:3128", "type": "residential", "provider": "resi", "username": "u", "password": "p"},
]


@pytest.mark.asyncio
async def test_load_proxies_skips_known(db):
    pool = ProxyPool(db, public_ip=PUBLIC_IP)

    assert await pool.load_proxies(FIXTURES) == 3
    assert await pool.load_proxies(FIXTURES[:1]) == 0


@pytest.mark.asyncio
async def test_load_proxies_from_file(db, tmp_path):
    path = tmp_path / "proxies.json"
    path.write_text('[{"proxy": "10.0.0.9:80", "type": "mobile"}]')

    assert await ProxyPool(db).load_proxies(path) == 1


@pytest.mark.asyncio
async def test_obtain_prefers_least_used_functional_proxy(db):
    pool = ProxyPool(db, public_ip=PUBLIC_IP)
    await pool.load_proxies(FIXTURES)

    first = await pool.obtain({"type": "datacenter"})
    second = await pool.obtain({"type": "datacenter"})
    third = await pool.obtain({"type": "datacenter"})

    assert {first.proxy, second.proxy} == {"10.0.0.1:3128", "10.0.0.2:3128"}
    # both were used once, the least recently used one comes back
    assert third.proxy == first.proxy
    assert third.obtain_counter == 2


@pytest.mark.asyncio
async def test_obtain_filters(db):
    pool = ProxyPool(db, public_ip=PUBLIC_IP)
    await pool.load_proxies(FIXTURES)

    proxy = await pool.obtain({"type": "datacenter", "geolocation": {"country": "de"}})
    assert proxy.proxy == "10.0.0.2:3128"

    assert await pool.obtain({"type": "mobile"}) is None

    with pytest.raises(ValueError):
        await pool.obtain({"password_hash": "x"})


@pytest.mark.asyncio
async def test_obtain_skips_damaged(db):
    pool = ProxyPool(db, public_ip=PUBLIC_IP)
    await pool.load_proxies(FIXTURES[2:])
    proxy = await pool.obtain()
    await pool.update_proxy(proxy, "damaged")

    assert await pool.obtain() is None


@pytest.mark.asyncio
async def test_obtain_orders_by_fail_counter_first(db):
    pool = ProxyPool(db, public_ip=PUBLIC_IP)
    await pool.load_proxies(FIXTURES[:2])
    result = await db.execute(select(Proxy).where(Proxy.proxy == "10.0.0.1:3128"))
    flaky = result.scalar_one()
    flaky.proxy_fail_counter = 3
    flaky.last_used = utcnow() - timedelta(days=1)
    await db.commit()

    proxy = await pool.obtain()

    assert proxy.proxy == "10.0.0.2:3128"


def test_proxy_url():
    proxy = Proxy(proxy="10.0.0.3:3128", protocol="socks5", username="u", password="p")

    assert proxy.url == "socks5://u:p@10.0.0.3:3128"
    assert Proxy(proxy="10.0.0.1:80", protocol="http").url == "http://10.0.0.1:80"


def test_proxy_waterfall():
    assert next_proxy_type("datacenter") == "residential"
    assert next_proxy_type("residential") == "mobile"
    assert next_proxy_type("mobile") is None
    assert next_proxy_type("unknown") is None


@pytest.mark.asyncio
async def test_check_proxy_works_when_reflected_ip_differs(db):
    pool = ProxyPool(db, public_ip=PUBLIC_IP, transport=httpx.MockTransport(reflecting(PROXY_IP)))

    result = await pool.check_proxy(Proxy(proxy="10.0.0.1:3128", protocol="http"))

    assert result.working
    assert result.ip == PROXY_IP


@pytest.mark.asyncio
async def test_check_proxy_fails_when_our_own_ip_leaks(db):
    pool = ProxyPool(db, public_ip=PUBLIC_IP, transport=httpx.MockTransport(reflecting(PUBLIC_IP)))

    result = await pool.check_proxy(Proxy(proxy="10.0.0.1:3128", protocol="http"))

    assert not result.working


@pytest.mark.asyncio
async def test_check_proxy_gives_up_after_max_failures(db):
    calls = []

    def handler(request):
        calls.append(request.url)
        return failing(request)

    pool = ProxyPool(
        db, public_ip=PUBLIC_IP, max_check_failures=2, transport=httpx.MockTransport(handler)
    )

    result = await pool.check_proxy(Proxy(proxy="10.0.0.1:3128", protocol="http"))

    assert not result.working
    assert result.num_failures == 2
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_check_proxy_tolerates_one_failing_service(db):
    def handler(request):
        if request.url.host == "ipinfo.io":
            return httpx.Response(503)
        return reflecting(PROXY_IP)(request)

    pool = ProxyPool(db, public_ip=PUBLIC_IP, transport=httpx.MockTransport(handler))

    result = await pool.check_proxy(Proxy(proxy="10.0.0.1:3128", protocol="http"))

    assert result.working


@pytest.mark.asyncio
async def test_non_object_json_counts_as_failed_service(db):
    def handler(request):
        if request.url.host == "checkip.amazonaws.com":
            return httpx.Response(503)
        return httpx.Response(200, json=[PROXY_IP])

    pool = ProxyPool(
        db, public_ip=PUBLIC_IP, max_check_failures=4, transport=httpx.MockTransport(handler)
    )

    result = await pool.check_proxy(Proxy(proxy="10.0.0.1:3128", protocol="http"))

    assert not result.working
    assert result.num_failures == 4


@pytest.mark.asyncio
async def test_pool_limits_come_from_config(db, config):
    config = config.model_copy(update={"proxy_check_max_failures": 4, "proxy_max_attempts": 9})

    pool = ProxyPool.from_config(db, config, public_ip=PUBLIC_IP)

    assert pool.max_check_failures == 4
    assert pool.max_attempts == 9
    assert pool.public_ip == PUBLIC_IP


@pytest.mark.asyncio
async def test_get_fresh_proxy_marks_failed_checks(db):
    pool = ProxyPool(
        db, public_ip=PUBLIC_IP, max_attempts=2, transport=httpx.MockTransport(failing)
    )
    await pool.load_proxies(FIXTURES[:1])

    assert await pool.get_fresh_proxy() is None

    result = await db.execute(select(Proxy))
    proxy = result.scalar_one()
    await db.refresh(proxy)
    assert proxy.proxy_fail_counter == 2
    # a failed check is not proof of damage
    assert proxy.status == "functional"


@pytest.mark.asyncio
async def test_get_fresh_proxy_returns_working_proxy(db):
    pool = ProxyPool(db, public_ip=PUBLIC_IP, transport=httpx.MockTransport(reflecting(PROXY_IP)))
    await pool.load_proxies(FIXTURES)

    proxy = await pool.get_fresh_proxy({"type": "residential"})

    assert proxy.proxy == "10.0.0.3:3128"


@pytest.mark.asyncio
async def test_detect_public_ip(db):
    pool = ProxyPool(db, public_ip="", transport=httpx.MockTransport(reflecting(PUBLIC_IP)))

    assert await pool.detect_public_ip() == PUBLIC_IP


@pytest.mark.asyncio
async def test_update_proxy_reasons(db):
    pool = ProxyPool(db, public_ip=PUBLIC_IP)
    await pool.load_proxies(FIXTURES[:1])
    proxy = await pool.obtain()

    await pool.update_proxy(proxy, "blocked")
    await db.refresh(proxy)
    assert proxy.block_counter == 1
    assert proxy.last_blocked is not None
    assert proxy.status == "functional"

    with pytest.raises(ValueError):
        await pool.update_proxy(proxy, "bored")

    await pool.update_proxy(proxy, "damaged")
    await db.refresh(proxy)
    assert proxy.status == "damaged"

    assert await pool.reset_proxies() == 1
    await db.refresh(proxy)
    assert proxy.status == "functional"
    assert proxy.block_counter == 0
