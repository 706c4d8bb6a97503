"""
Declarative base and the shared surrogate-key mixin.

Timestamps are naive UTC, the same convention as utils/clock.py.
"""
from sqlalchemy import Column, Integer, DateTime
from sqlalchemy.orm import declarative_base

from matchround.utils.clock import utc_now

Base = declarative_base()


class BaseModel(Base):
    """Abstract model: integer id plus bookkeeping timestamps."""
    __abstract__ = True

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)
