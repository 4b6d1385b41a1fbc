from datetime import datetime

from sqlalchemy import JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from crawlmaster.models.base import Base, TimestampMixin, UTCDateTime
from crawlmaster.models.enums import MachineStatus


class Machine(Base, TimestampMixin):
    __tablename__ = "machines"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), unique=True)
    type: Mapped[str] = mapped_column(String(20), index=True)
    status: Mapped[str] = mapped_column(String(20), default=MachineStatus.initial.value, index=True)
    size: Mapped[str | None] = mapped_column(String(20))
    region: Mapped[str | None] = mapped_column(String(64))
    # provider metadata, instance id and ip once known
    info: Mapped[dict] = mapped_column(JSON, default=dict)
    # {"eid": ..., "ip": ...} copied from the claimed elastic ip
    eip: Mapped[dict | None] = mapped_column(JSON)
    terminated_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
