"""System: one physical unit, identified by its service tag."""

from datetime import datetime

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.utils.doa import DOA_MAX_LENGTH


class System(Base):
    __tablename__ = "systems"

    service_tag: Mapped[str] = mapped_column(String(50), primary_key=True)
    ppid: Mapped[str | None] = mapped_column(String(100))
    dpn: Mapped[str | None] = mapped_column(String(50))
    config: Mapped[str | None] = mapped_column(String(50))
    dell_customer: Mapped[str | None] = mapped_column(String(100))
    issue: Mapped[str | None] = mapped_column(Text)
    location: Mapped[str | None] = mapped_column(String(100))

    # Dead-on-arrival reference, required before the pallet is released
    doa_number: Mapped[str | None] = mapped_column(String(DOA_MAX_LENGTH))

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )
