import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Text, Index

from docgate.db.base import Base


class Project(Base):
    __tablename__ = "projects"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    code = Column(String(50), nullable=True, unique=True)
    name = Column(String(255), nullable=False)
    status = Column(String(30), nullable=False, default="active")  # draft, active, on_hold, closed
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class PeriodLock(Base):
    """Accounting period closed for edits, globally or for one project."""
    __tablename__ = "period_locks"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    period = Column(String(7), nullable=False)  # YYYY-MM
    scope = Column(String(20), nullable=False, default="global")  # global, project
    project_id = Column(String(36), nullable=True)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_period_locks_period_scope", "period", "scope"),
    )
