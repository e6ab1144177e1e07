from sqlalchemy import Column, DateTime, Float, String, Text
from sqlalchemy.sql import func

from chiccanto.core.database import Base


class KVEntry(Base):
    __tablename__ = "kv_entries"

    key = Column(String, primary_key=True, index=True)
    value = Column(Text, nullable=False)
    # Epoch seconds; NULL means the entry never expires.
    expires_at = Column(Float, nullable=True, index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
