"""Key/value application state (store version)."""

from sqlalchemy import Column, String, DateTime
from sqlalchemy.sql import func
from driftwatch.db import Base


class AppState(Base):
    __tablename__ = "app_state"

    key = Column(String, primary_key=True, index=True)
    value = Column(String, nullable=False)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self):
        return f"<AppState(key={self.key}, value={self.value})>"
