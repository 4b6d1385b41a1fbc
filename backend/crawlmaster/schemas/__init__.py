from crawlmaster.schemas.config import ElasticIpSpec, Region, SchedulerConfig
from crawlmaster.schemas.proxy import ProxyCheckResult, ProxyFixture

__all__ = [
    "ElasticIpSpec", "Region", "SchedulerConfig",
    "ProxyCheckResult", "ProxyFixture",
]
