import json
import logging
import random
from pathlib import Path

import httpx
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from crawlmaster.config import settings
from crawlmaster.database import insert_ignoring_conflicts
from crawlmaster.models import Proxy
from crawlmaster.models.base import utcnow
from crawlmaster.models.enums import ProxyChangeReason, ProxyStatus, ProxyType
from crawlmaster.schemas.config import SchedulerConfig
from crawlmaster.schemas.proxy import ProxyCheckResult, ProxyFixture

logger = logging.getLogger(__name__)

ALLOWED_FILTER_KEYS = frozenset(
    {
        "type",
        "provider",
        "subtype",
        "proxy",
        "protocol",
        "whitelisted",
        "rotating",
        "username",
        "password",
        "block_counter",
        "proxy_fail_counter",
        "geolocation",
        "recaptcha_passed",
    }
)

PROXY_WATERFALL = [ProxyType.datacenter, ProxyType.residential, ProxyType.mobile]

# "what is my ip" services, tried in random order
IP_PROVIDERS = [
    "https://ipinfo.io/json",
    "https://freegeoip.app/json/",
    "http://checkip.amazonaws.com/",
    "http://lumtest.com/myip.json",
]
PLAIN_TEXT_PROVIDERS = {"http://checkip.amazonaws.com/"}
# proxies can be slow
CHECK_TIMEOUT_SECONDS = 9.0

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64; rv:125.0) Gecko/20100101 Firefox/125.0",
]


def next_proxy_type(proxy_type: str | None) -> ProxyType | None:
    """The next harder-to-block proxy type, None at the top of the waterfall."""
    try:
        index = PROXY_WATERFALL.index(ProxyType(proxy_type))
    except ValueError:
        return None
    if index + 1 < len(PROXY_WATERFALL):
        return PROXY_WATERFALL[index + 1]
    return None


def _filter_clauses(model, proxy_filter: dict | None) -> list:
    proxy_filter = proxy_filter or {}
    disallowed = set(proxy_filter) - ALLOWED_FILTER_KEYS
    if disallowed:
        raise ValueError(f"Cannot filter proxies by {sorted(disallowed)}")

    clauses = []
    for key, value in proxy_filter.items():
        if key == "geolocation":
            for geo_key, geo_value in (value or {}).items():
                clauses.append(model.geolocation[geo_key].as_string() == str(geo_value))
            continue
        clauses.append(getattr(model, key) == value)
    return clauses


def _reflected_ip(url: str, response: httpx.Response) -> str:
    if url in PLAIN_TEXT_PROVIDERS:
        return response.text.strip()
    data = response.json()
    if not isinstance(data, dict):
        raise ValueError(f"unexpected response from {url}: {data!r}")
    return str(data.get("ip") or "").strip()


class ProxyPool:
    def __init__(
        self,
        db: AsyncSession,
        *,
        public_ip: str | None = None,
        max_check_failures: int = 2,
        max_attempts: int = 5,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.db = db
        self.public_ip = public_ip if public_ip is not None else settings.public_ip
        self.max_check_failures = max_check_failures
        self.max_attempts = max_attempts
        # injected in tests, replaces the proxy transport
        self.transport = transport

    @classmethod
    def from_config(cls, db: AsyncSession, config: SchedulerConfig, **kwargs) -> "ProxyPool":
        return cls(
            db,
            max_check_failures=config.proxy_check_max_failures,
            max_attempts=config.proxy_max_attempts,
            **kwargs,
        )

    def _client(self, proxy: Proxy | None = None) -> httpx.AsyncClient:
        headers = {"User-Agent": random.choice(USER_AGENTS), "Accept-Language": "en-US,en;q=0.9"}
        if self.transport is not None:
            return httpx.AsyncClient(
                transport=self.transport, timeout=CHECK_TIMEOUT_SECONDS, headers=headers
            )
        return httpx.AsyncClient(
            proxy=proxy.url if proxy else None,
            timeout=CHECK_TIMEOUT_SECONDS,
            headers=headers,
        )

    async def load_proxies(self, fixtures: str | Path | list[dict]) -> int:
        """Insert proxies from a fixture file or list, skipping known addresses."""
        if isinstance(fixtures, (str, Path)):
            fixtures = json.loads(Path(fixtures).read_text())
        rows = [
            ProxyFixture.model_validate(entry).model_dump(mode="json")
            for entry in fixtures
        ]
        for row in rows:
            row.update(block_counter=0, proxy_fail_counter=0, obtain_counter=0)
        num_added = await insert_ignoring_conflicts(self.db, Proxy, rows, ["proxy"])
        logger.info("Loaded %s new proxies (%s in fixtures)", num_added, len(rows))
        return num_added

    async def obtain(self, proxy_filter: dict | None = None) -> Proxy | None:
        """Atomically pick the most rested functional proxy and mark it used."""
        candidate = aliased(Proxy)
        next_id = (
            select(candidate.id)
            .where(candidate.status == ProxyStatus.functional.value)
            .where(*_filter_clauses(candidate, proxy_filter))
            .order_by(
                candidate.proxy_fail_counter.asc(),
                candidate.last_used.asc().nulls_first(),
                candidate.obtain_counter.asc(),
            )
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        result = await self.db.execute(
            update(Proxy)
            .where(Proxy.id == next_id)
            .where(Proxy.status == ProxyStatus.functional.value)
            .values(last_used=utcnow(), obtain_counter=Proxy.obtain_counter + 1)
            .returning(Proxy)
            .execution_options(populate_existing=True)
        )
        proxy = result.scalar_one_or_none()
        await self.db.commit()
        if proxy is None:
            logger.info("No functional proxy for filter %s", proxy_filter)
        return proxy

    async def detect_public_ip(self) -> str:
        async with self._client() as client:
            response = await client.get("http://checkip.amazonaws.com/")
            response.raise_for_status()
        self.public_ip = response.text.strip()
        logger.info("Detected public ip %s", self.public_ip)
        return self.public_ip

    async def check_proxy(self, proxy: Proxy) -> ProxyCheckResult:
        """Probe ip reflection services through the proxy.

        The proxy works once a service reports an ip other than our own. A
        single failing service may be an outage on their side, so the proxy
        only fails after ``max_check_failures`` services errored.
        """
        providers = list(IP_PROVIDERS)
        random.shuffle(providers)
        failures = 0

        async with self._client(proxy) as client:
            for url in providers:
                try:
                    response = await client.get(url)
                    response.raise_for_status()
                    ip = _reflected_ip(url, response)
                except (httpx.HTTPError, ValueError) as exc:
                    failures += 1
                    logger.debug(
                        "[failures=%s] Proxy request to %s through %s failed: %s",
                        failures,
                        url,
                        proxy.proxy,
                        exc,
                    )
                    if failures >= self.max_check_failures:
                        break
                    continue

                logger.debug(
                    "Reflected ip %s for proxy %s, public ip %s", ip, proxy.proxy, self.public_ip
                )
                if ip and self.public_ip and ip != self.public_ip:
                    return ProxyCheckResult(
                        working=True, provider=url, ip=ip, num_failures=failures
                    )

        logger.info("Proxy %s is not working properly", proxy.proxy)
        return ProxyCheckResult(working=False, num_failures=failures)

    async def get_fresh_proxy(self, proxy_filter: dict | None = None) -> Proxy | None:
        """A checked, working proxy or None when crawling has to abort."""
        if not self.public_ip:
            await self.detect_public_ip()

        for _ in range(self.max_attempts):
            proxy = await self.obtain(proxy_filter)
            if proxy is None:
                return None
            check = await self.check_proxy(proxy)
            if check.working:
                return proxy
            # the failure might be temporary, do not mark it damaged
            await self.update_proxy(proxy, ProxyChangeReason.check_failed)
        return None

    async def update_proxy(self, proxy: Proxy, reason: str) -> bool:
        now = utcnow()
        if reason == ProxyChangeReason.blocked:
            values = {
                "last_used": now,
                "last_blocked": now,
                "block_counter": Proxy.block_counter + 1,
            }
        elif reason == ProxyChangeReason.damaged:
            values = {"status": ProxyStatus.damaged.value, "last_used": now}
        elif reason == ProxyChangeReason.check_failed:
            values = {"last_used": now, "proxy_fail_counter": Proxy.proxy_fail_counter + 1}
        else:
            raise ValueError(f"Unknown proxy change reason {reason!r}")

        result = await self.db.execute(
            update(Proxy)
            .where(Proxy.id == proxy.id)
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        await self.db.commit()
        logger.info("Updated proxy %s: %s", proxy.proxy, ProxyChangeReason(reason).value)
        return result.rowcount > 0

    async def reset_proxies(self, proxy_filter: dict | None = None) -> int:
        """Operator reset of counters and status."""
        result = await self.db.execute(
            update(Proxy)
            .where(*_filter_clauses(Proxy, proxy_filter))
            .values(
                status=ProxyStatus.functional.value,
                block_counter=0,
                proxy_fail_counter=0,
                obtain_counter=0,
                last_blocked=None,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount
