"""Persisted container documents."""

from sqlalchemy import Column, String, DateTime, JSON
from sqlalchemy.sql import func
from driftwatch.db import Base


class ContainerDocument(Base):
    """Validated container record, stored as its camelCase JSON document."""

    __tablename__ = "containers"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False, index=True)
    watcher = Column(String, nullable=False, index=True)
    data = Column(JSON, nullable=False)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self):
        return f"<ContainerDocument(id={self.id}, watcher={self.watcher}, name={self.name})>"
