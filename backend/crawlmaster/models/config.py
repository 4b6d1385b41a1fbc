from datetime import datetime

from sqlalchemy import Boolean, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from crawlmaster.models.base import Base, TimestampMixin, UTCDateTime


class SchedulerConfigRecord(Base, TimestampMixin):
    __tablename__ = "scheduler_config"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    data: Mapped[dict] = mapped_column(JSON, default=dict)
    scheduler_started: Mapped[datetime | None] = mapped_column(UTCDateTime)


class ElasticIp(Base, TimestampMixin):
    __tablename__ = "elastic_ips"

    id: Mapped[int] = mapped_column(primary_key=True)
    # allocation id
    eid: Mapped[str] = mapped_column(String(255), unique=True)
    ip: Mapped[str] = mapped_column(String(64))
    used: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
