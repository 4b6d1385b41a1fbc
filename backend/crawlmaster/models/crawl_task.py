from sqlalchemy import Boolean, Float, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from crawlmaster.models.base import Base, TimestampMixin
from crawlmaster.models.enums import CrawlStatus, PriorityPolicy, StoragePolicy, WorkerType


class CrawlTask(Base, TimestampMixin):
    __tablename__ = "crawl_tasks"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str | None] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(20), default=CrawlStatus.started.value, index=True)
    # items arrive from the outside, the task never completes on its own
    longliving: Mapped[bool] = mapped_column(Boolean, default=False)
    worker_type: Mapped[str] = mapped_column(String(20), default=WorkerType.http.value)
    priority: Mapped[int] = mapped_column(Integer, default=1)
    priority_policy: Mapped[str] = mapped_column(String(20), default=PriorityPolicy.absolute.value)

    num_crawl_workers_started: Mapped[int] = mapped_column(Integer, default=0)
    num_workers_running: Mapped[int] = mapped_column(Integer, default=0)
    # incremented on every launch attempt, never reused
    worker_id: Mapped[int] = mapped_column(Integer, default=0)
    num_lost_workers: Mapped[int] = mapped_column(Integer, default=0)
    max_lost_workers: Mapped[int] = mapped_column(Integer, default=10)
    max_workers: Mapped[int | None] = mapped_column(Integer)
    max_items_per_worker: Mapped[int | None] = mapped_column(Integer)
    max_items_per_second: Mapped[float] = mapped_column(Float, default=1.0)
    avg_items_per_second_worker: Mapped[list] = mapped_column(JSON, default=list)
    retry_failed_items: Mapped[int] = mapped_column(Integer, default=3)

    num_items: Mapped[int] = mapped_column(Integer, default=0)
    num_items_crawled: Mapped[int] = mapped_column(Integer, default=0)

    # per-task table names
    queue: Mapped[str | None] = mapped_column(String(255))
    worker_meta: Mapped[str | None] = mapped_column(String(255))

    # container backend with elastic ips instead of serverless functions
    whitelisted_proxies: Mapped[bool] = mapped_column(Boolean, default=False)
    regions: Mapped[list] = mapped_column(JSON, default=list)
    crawl_options: Mapped[dict] = mapped_column(JSON, default=dict)
    options: Mapped[dict | None] = mapped_column(JSON)
    function_code: Mapped[str] = mapped_column(Text, default="")
    storage_policy: Mapped[str] = mapped_column(String(20), default=StoragePolicy.itemwise.value)
    log_ip_address: Mapped[bool] = mapped_column(Boolean, default=False)
    items_browser_debug: Mapped[list] = mapped_column(JSON, default=list)

    @property
    def uses_containers(self) -> bool:
        return bool(self.whitelisted_proxies)
