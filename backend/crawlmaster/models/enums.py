from enum import Enum


class CrawlStatus(str, Enum):
    started = "started"
    paused = "paused"
    completed = "completed"
    failed = "failed"


class WorkerType(str, Enum):
    http = "http"
    browser = "browser"


class PriorityPolicy(str, Enum):
    # only tasks sharing the highest priority make progress
    absolute = "absolute"
    # every task makes progress, lower priorities get proportionally fewer workers
    relative = "relative"


class QueueItemStatus(str, Enum):
    initial = "initial"
    running = "running"
    completed = "completed"
    failed = "failed"


class WorkerStatus(str, Enum):
    started = "started"
    completed = "completed"
    lost = "lost"


class ProxyType(str, Enum):
    datacenter = "datacenter"
    dedicated = "dedicated"
    residential = "residential"
    mobile = "mobile"


class ProxyStatus(str, Enum):
    functional = "functional"
    damaged = "damaged"
    expired = "expired"


class ProxyProtocol(str, Enum):
    http = "http"
    https = "https"
    socks4 = "socks4"
    socks5 = "socks5"


class ProxyChangeReason(str, Enum):
    blocked = "blocked"
    damaged = "damaged"
    check_failed = "check_failed"


class MachineStatus(str, Enum):
    initial = "initial"
    running = "running"
    terminated = "terminated"
    failed = "failed"


class ClusterSize(str, Enum):
    small = "small"
    medium = "medium"
    larger = "larger"
    large = "large"
    huge = "huge"


class ExecutionEnv(str, Enum):
    serverless = "serverless"
    container = "container"
    local = "local"


class ResultPolicy(str, Enum):
    # the worker returns results in the invocation response
    return_ = "return"
    store_in_cloud = "store_in_cloud"


class StoragePolicy(str, Enum):
    itemwise = "itemwise"
    merged = "merged"
