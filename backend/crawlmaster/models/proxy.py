from datetime import datetime

from sqlalchemy import Boolean, Integer, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from crawlmaster.models.base import Base, TimestampMixin, UTCDateTime
from crawlmaster.models.enums import ProxyProtocol, ProxyStatus


class Proxy(Base, TimestampMixin):
    __tablename__ = "proxies"

    id: Mapped[int] = mapped_column(primary_key=True)
    proxy: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    # the proxy as seen from the internet, None for rotating proxies
    public_ip: Mapped[str | None] = mapped_column(String(64))
    type: Mapped[str] = mapped_column(String(20), index=True)
    status: Mapped[str] = mapped_column(String(20), default=ProxyStatus.functional.value, index=True)
    provider: Mapped[str | None] = mapped_column(String(255))
    subtype: Mapped[str | None] = mapped_column(String(255))
    protocol: Mapped[str] = mapped_column(String(20), default=ProxyProtocol.http.value)
    username: Mapped[str | None] = mapped_column(String(255))
    password: Mapped[str | None] = mapped_column(String(255))
    whitelisted: Mapped[bool] = mapped_column(Boolean, default=False)
    rotating: Mapped[bool] = mapped_column(Boolean, default=False)
    recaptcha_passed: Mapped[bool] = mapped_column(Boolean, default=False)
    geolocation: Mapped[dict | None] = mapped_column(JSON)

    block_counter: Mapped[int] = mapped_column(Integer, default=0)
    proxy_fail_counter: Mapped[int] = mapped_column(Integer, default=0)
    obtain_counter: Mapped[int] = mapped_column(Integer, default=0)
    last_used: Mapped[datetime | None] = mapped_column(UTCDateTime)
    last_blocked: Mapped[datetime | None] = mapped_column(UTCDateTime)

    @property
    def url(self) -> str:
        auth = ""
        if self.username:
            auth = f"{self.username}:{self.password or ''}@"
        return f"{self.protocol}://{auth}{self.proxy}"
