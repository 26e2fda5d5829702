from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from roleplay_core.db.base import Base
from roleplay_core.utils.time_utils import utc_now


class KeyValueBlob(Base):
    """One JSON document stored under a string key."""

    __tablename__ = "kv_blobs"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    value_json: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )
