import asyncio
import logging
import math
import random
from typing import Protocol

import httpx
from botocore.exceptions import BotoCoreError, ClientError
from sqlalchemy.ext.asyncio import AsyncSession

from crawlmaster.config import settings
from crawlmaster.models import CrawlTask
from crawlmaster.models.enums import ExecutionEnv, ResultPolicy, WorkerType
from crawlmaster.schemas.config import Region, SchedulerConfig
from crawlmaster.services.cloud import LambdaInvoker
from crawlmaster.services.queue_store import QueueStats
from crawlmaster.services.task_store import DEFAULT_ITEMS_PER_SECOND
from crawlmaster.services.worker_meta_store import WorkerMetaStore

logger = logging.getLogger(__name__)

INVOCATION_ACCEPTED = (200, 202)
CONTAINER_INVOKE_TIMEOUT_SECONDS = 10.0
# below this many items every item gets its own worker
FEW_ITEMS = 15
SOME_ITEMS = 100


class DispatchBackend(Protocol):
    execution_env: ExecutionEnv

    async def dispatch(self, payload: dict, region: str) -> bool:
        """Start one worker, True when the backend accepted the invocation."""
        ...


class LambdaBackend:
    """Fire-and-forget invocations of the worker function."""

    execution_env = ExecutionEnv.serverless

    def __init__(self, invoker: LambdaInvoker, function_arn: str, task_id: int | None = None):
        self.invoker = invoker
        self.function_arn = function_arn
        self.task_id = task_id

    async def dispatch(self, payload: dict, region: str) -> bool:
        function_name = self.function_arn.replace("{region}", region)
        try:
            result = await self.invoker.invoke(function_name, region, payload, mode="Event")
        except (BotoCoreError, ClientError) as exc:
            logger.error("[%s] Lambda invocation of worker %s failed: %s", self.task_id, payload["worker_id"], exc)
            return False
        if result.status_code in INVOCATION_ACCEPTED:
            return True
        logger.error(
            "[%s] Lambda invocation error with worker=%s: %s",
            self.task_id,
            payload["worker_id"],
            result.status_code,
        )
        return False


class ContainerBackend:
    """Round robin over the swarm endpoints, dropping the ones that fail."""

    execution_env = ExecutionEnv.container

    def __init__(self, endpoints: list[str], client: httpx.AsyncClient, task_id: int | None = None):
        self.endpoints = list(endpoints)
        self.client = client
        self.task_id = task_id
        self._calls = 0

    async def dispatch(self, payload: dict, region: str) -> bool:
        if not self.endpoints:
            return False
        index = self._calls % len(self.endpoints)
        self._calls += 1
        endpoint = self.endpoints[index]
        url = f"{endpoint}/invokeEvent"
        try:
            response = await self.client.post(
                url, json=payload, timeout=CONTAINER_INVOKE_TIMEOUT_SECONDS
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("[%s] Endpoint %s failed, dropping it: %s", self.task_id, url, exc)
            self.endpoints.remove(endpoint)
            return False
        if isinstance(body, dict) and body.get("status") == 200:
            return True
        logger.error("[%s] Crawler service %s refused worker: %s", self.task_id, url, body)
        return False


class CrawlRunner:
    """Builds worker payloads for one task and launches workers on a backend."""

    def __init__(
        self,
        db: AsyncSession,
        task: CrawlTask,
        config: SchedulerConfig,
        stats: QueueStats | None = None,
        *,
        invoker: LambdaInvoker | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.db = db
        self.task = task
        self.config = config
        self.stats = stats
        self.invoker = invoker or LambdaInvoker()
        self.http_transport = http_transport
        self.worker_meta = WorkerMetaStore(db, task.worker_meta)

    @property
    def function_arn(self) -> str:
        if self.task.worker_type == WorkerType.browser:
            return self.config.browser_lambda_arn
        return self.config.http_lambda_arn

    def pick_region(self, regions: list | None = None) -> Region:
        candidates = regions if regions is not None else self.task.regions
        if not candidates:
            candidates = self.config.regions
        candidates = [Region.model_validate(r) for r in candidates]
        if not self.config.random_region:
            return candidates[0]
        return random.choice(candidates)

    def items_per_worker(self) -> int:
        """Items one serverless worker can crawl within its time budget."""
        task = self.task
        browser = task.worker_type == WorkerType.browser
        num_items = self.config.num_items_browser if browser else self.config.num_items_http

        samples = task.avg_items_per_second_worker or []
        if len(samples) >= self.config.min_throughput_samples:
            avg = sum(samples) / len(samples)
            if avg <= 0:
                avg = DEFAULT_ITEMS_PER_SECOND[task.worker_type]
            num_items = math.floor(self.config.max_crawling_time_lambda * avg)

        if task.uses_containers:
            num_items = (
                self.config.num_items_container_browser
                if browser
                else self.config.num_items_container_http
            )

        if task.max_items_per_worker:
            num_items = min(num_items, task.max_items_per_worker)
        return max(1, num_items)

    def items_per_worker_concurrent(self, num_items: int, concurrency: int | None = None) -> int:
        """Split an item list over at most ``api_max_concurrency`` workers."""
        max_concurrency = self.config.api_max_concurrency
        # with few items, dampen the concurrency a bit unless the caller chose it
        few_items_increment = 1
        if concurrency:
            max_concurrency = min(concurrency, max_concurrency)
            few_items_increment = 0

        if num_items <= FEW_ITEMS:
            return 1
        if num_items <= SOME_ITEMS:
            return math.ceil(num_items / max_concurrency) + few_items_increment
        return math.ceil(num_items / max_concurrency)

    def build_payload(self, execution_env: ExecutionEnv, region: Region | None = None) -> dict:
        task = self.task
        region = region or self.pick_region()
        # core fields win over the task's crawl options
        payload = dict(task.crawl_options or {})
        payload.update({
            "task_id": task.id,
            "worker_id": task.worker_id,
            "aws_config": {
                "AWS_ACCESS_KEY": settings.aws_access_key,
                "AWS_SECRET_KEY": settings.aws_secret_key,
                "AWS_REGION": region.region,
                "AWS_BUCKET": region.bucket,
            },
            "database_url": settings.database_url,
            "loglevel": self.config.worker_loglevel,
            "function_code": task.function_code,
            "storage_policy": task.storage_policy,
            "num_items_worker": self.items_per_worker(),
            "compress": True,
            "result_policy": ResultPolicy.store_in_cloud.value,
            "execution_env": ExecutionEnv(execution_env).value,
            "log_ip_address": task.log_ip_address,
            "options": task.options,
        })

        if self.stats is not None and task.num_items and task.worker_type == WorkerType.browser:
            fail_ratio = self.stats.failed / task.num_items
            num_debug = len(task.items_browser_debug or [])
            if fail_ratio >= self.config.debug_info_threshold and num_debug <= self.config.max_debug_info:
                logger.warning(
                    "[%s] %.0f%% of items failed, asking browser workers for debug information",
                    task.id,
                    fail_ratio * 100,
                )
                payload["store_browser_debug"] = True

        if execution_env == ExecutionEnv.container:
            payload["API_KEY"] = settings.api_key
            payload["worker_type"] = task.worker_type
        return payload

    async def _launch(self, backend: DispatchBackend, num_workers: int, concurrency: int) -> int:
        """Create started worker meta, dispatch, and delete the meta of failed dispatches."""
        task = self.task
        launches = []
        for _ in range(num_workers):
            region = self.pick_region()
            payload = self.build_payload(backend.execution_env, region)
            launches.append((payload, region.region))
            # worker ids are never reused
            task.worker_id += 1

        await self.worker_meta.create_records(
            [(payload["worker_id"], region) for payload, region in launches]
        )

        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def launch_one(payload: dict, region: str) -> bool:
            async with semaphore:
                return await backend.dispatch(payload, region)

        results = await asyncio.gather(
            *(launch_one(payload, region) for payload, region in launches)
        )

        failed = [payload["worker_id"] for (payload, _), ok in zip(launches, results) if not ok]
        if failed:
            logger.info("[%s] Removing worker meta of %s failed invocations", task.id, len(failed))
            await self.worker_meta.remove_by_ids(failed)
        else:
            await self.db.commit()

        num_started = len(launches) - len(failed)
        logger.info(
            "[%s] Started %s/%s %s workers",
            task.id,
            num_started,
            num_workers,
            backend.execution_env.value,
        )
        return num_started

    async def run_serverless(self, num_workers: int) -> int:
        logger.info("[%s] Launching %s serverless workers", self.task.id, num_workers)
        backend = LambdaBackend(self.invoker, self.function_arn, self.task.id)
        return await self._launch(backend, num_workers, self.config.dispatch_concurrency)

    async def run_container(self, num_workers: int, endpoints: list[str]) -> int:
        if not endpoints:
            logger.warning("[%s] No container endpoints available", self.task.id)
            return 0
        logger.info(
            "[%s] Launching %s container workers on %s", self.task.id, num_workers, endpoints
        )
        async with httpx.AsyncClient(transport=self.http_transport) as client:
            backend = ContainerBackend(endpoints, client, self.task.id)
            # sequential, a failing endpoint must be dropped before the next call
            return await self._launch(backend, num_workers, concurrency=1)

    async def run_concurrent(self, items: list[str], concurrency: int | None = None) -> list:
        """Crawl ``items`` right away with request/response invocations.

        Returns the results of every worker that answered successfully.
        """
        task = self.task
        items = list(items)
        per_worker = self.items_per_worker_concurrent(len(items), concurrency)
        max_concurrency = min(concurrency or self.config.api_max_concurrency, self.config.api_max_concurrency)
        semaphore = asyncio.Semaphore(max(1, max_concurrency))
        region_calls: dict[str, int] = {}

        calls = []
        for start in range(0, len(items), per_worker):
            region = self.pick_region()
            payload = self.build_payload(ExecutionEnv.serverless, region)
            task.worker_id += 1
            payload.update(
                items=items[start:start + per_worker],
                compress=False,
                result_policy=ResultPolicy.return_.value,
            )
            region_calls[region.region] = region_calls.get(region.region, 0) + 1
            calls.append((payload, region.region))
        await self.db.commit()
        logger.info("[%s] Invocations per region: %s", task.id, region_calls)

        async def invoke(payload: dict, region: str):
            async with semaphore:
                function_name = self.function_arn.replace("{region}", region)
                return await self.invoker.invoke(function_name, region, payload, mode="RequestResponse")

        responses = await asyncio.gather(
            *(invoke(payload, region) for payload, region in calls), return_exceptions=True
        )

        results = []
        for response in responses:
            if isinstance(response, (BotoCoreError, ClientError)):
                logger.error("[%s] Invocation failed: %s", task.id, response)
                continue
            if isinstance(response, BaseException):
                raise response
            if response.status_code in INVOCATION_ACCEPTED and not response.function_error:
                results.append(response.payload)
            else:
                logger.error(
                    "[%s] Invocation error %s: %s", task.id, response.status_code, response.function_error
                )
        logger.info(
            "[%s] Received %s/%s results with %s items per worker",
            task.id,
            len(results),
            len(calls),
            per_worker,
        )
        return results
