from pydantic import BaseModel

from crawlmaster.models.enums import ProxyProtocol, ProxyStatus, ProxyType


class ProxyFixture(BaseModel):
    proxy: str
    type: ProxyType
    public_ip: str | None = None
    status: ProxyStatus = ProxyStatus.functional
    provider: str | None = None
    subtype: str | None = None
    protocol: ProxyProtocol = ProxyProtocol.http
    username: str | None = None
    password: str | None = None
    whitelisted: bool = False
    rotating: bool = False
    geolocation: dict | None = None


class ProxyCheckResult(BaseModel):
    working: bool
    provider: str | None = None
    ip: str | None = None
    num_failures: int = 0
