import asyncio
import logging
import signal

from crawlmaster.config import settings
from crawlmaster.database import async_session, init_models
from crawlmaster.scheduler import Scheduler
from crawlmaster.services.config_store import create_default_config, seed_elastic_ips
from crawlmaster.services.maintenance import add_purge_job, scheduler
from crawlmaster.services.proxy_pool import ProxyPool

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
for noisy in ("httpx", "httpcore", "botocore", "boto3", "apscheduler"):
    logging.getLogger(noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


async def bootstrap() -> None:
    if settings.create_tables:
        await init_models()
        logger.info("Created missing tables")

    async with async_session() as db:
        config = await create_default_config(db, settings.config_name)
        await seed_elastic_ips(db, config)
        if settings.proxy_fixtures_path:
            await ProxyPool.from_config(db, config).load_proxies(settings.proxy_fixtures_path)


async def main() -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await bootstrap()

    add_purge_job(settings.config_name)
    scheduler.start()

    try:
        await Scheduler().run_forever(stop_event)
    finally:
        if scheduler.running:
            scheduler.shutdown(wait=False)
        logger.info("Daemon shutting down")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
