from datetime import datetime

from pydantic import BaseModel, Field

from crawlmaster.models.enums import ClusterSize, PriorityPolicy


class Region(BaseModel):
    region: str
    bucket: str
    country: str | None = None


class ElasticIpSpec(BaseModel):
    eid: str
    ip: str


DEFAULT_REGIONS = [
    Region(region="us-east-1", bucket="crawling-us-east-1", country="us"),
    Region(region="us-east-2", bucket="crawling-us-east-2", country="us"),
    Region(region="us-west-1", bucket="crawling-us-west-1", country="us"),
    Region(region="us-west-2", bucket="crawling-us-west-2", country="us"),
    Region(region="eu-central-1", bucket="crawling-eu-central-1", country="de"),
    Region(region="eu-west-1", bucket="crawling-eu-west-1", country="ie"),
    Region(region="eu-west-2", bucket="crawling-eu-west-2", country="uk"),
    Region(region="eu-west-3", bucket="crawling-eu-west-3", country="fr"),
    Region(region="ap-northeast-1", bucket="crawling-ap-northeast-1", country="jp"),
    Region(region="ap-southeast-1", bucket="crawling-ap-southeast-1", country="sg"),
]


class SchedulerConfig(BaseModel):
    """Operator-tunable scheduler settings persisted in ``scheduler_config``.

    Instances are frozen: the scheduler swaps in a freshly loaded object
    between cycles instead of editing the one a running cycle holds.
    """

    model_config = {"frozen": True}

    name: str = "prod-config"
    # seconds between two scheduler cycles
    daemon_heartbeat: float = Field(default=10.0, ge=1.0)
    # re-read the config from the store every N cycles
    config_reload_cycles: int = Field(default=7, ge=1)

    browser_lambda_arn: str = "arn:aws:lambda:{region}:000000000000:function:crawler-browser"
    http_lambda_arn: str = "arn:aws:lambda:{region}:000000000000:function:crawler-http"

    # items per serverless invocation before any throughput is known
    num_items_browser: int = 15
    num_items_http: int = 30
    # fixed items per container invocation
    num_items_container_browser: int = 100
    num_items_container_http: int = 200

    max_lost_workers_ratio: float = 0.01
    worker_lost_threshold_minutes: float = 10
    worker_lost_threshold_docker_minutes: float = 20
    heal_queue_grace_minutes: float = 6
    purge_worker_meta_after_minutes: float = 60

    priority_policy: PriorityPolicy = PriorityPolicy.absolute
    random_region: bool = True
    worker_loglevel: str = "info"
    scheduler_loglevel: str = "INFO"

    num_machines_browser: int = 2
    num_machines_http: int = 1
    cluster_size: ClusterSize = ClusterSize.large
    force_remove_machines: bool = False

    retry_failed_items: int = 3
    # seconds a serverless worker may spend crawling
    max_crawling_time_lambda: float = 240
    # samples needed before the serverless item estimate trusts the average
    min_throughput_samples: int = 7
    max_throughput_samples: int = 100
    api_max_concurrency: int = 100
    # concurrent invocations while launching workers for one task
    dispatch_concurrency: int = 10
    max_workers_per_cycle: int = 200

    regions: list[Region] = Field(default_factory=lambda: list(DEFAULT_REGIONS))
    elastic_ips: list[ElasticIpSpec] = Field(default_factory=list)

    debug_info_threshold: float = 0.1
    max_debug_info: int = 50

    proxy_check_max_failures: int = 2
    proxy_max_attempts: int = 5

    scheduler_started: datetime | None = None
