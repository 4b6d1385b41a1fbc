from crawlmaster.models.base import Base
from crawlmaster.models.config import ElasticIp, SchedulerConfigRecord
from crawlmaster.models.crawl_task import CrawlTask
from crawlmaster.models.machine import Machine
from crawlmaster.models.proxy import Proxy

__all__ = ["Base", "CrawlTask", "ElasticIp", "Machine", "Proxy", "SchedulerConfigRecord"]
