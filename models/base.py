"""
SQLAlchemy base configuration for the Identity Reconciliation Engine
Declarative base plus the shared id/timestamp columns of every table
"""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer
from sqlalchemy.orm import DeclarativeBase


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every timestamp column stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models"""
    pass


class BaseModel(Base):
    """
    Abstract model carrying the integer primary key, creation/update
    timestamps and the soft-delete marker
    """
    __abstract__ = True

    id = Column(Integer, primary_key=True, autoincrement=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime, nullable=True)

    def is_deleted(self) -> bool:
        return self.deleted_at is not None
