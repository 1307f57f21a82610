"""Alert configuration and alert history models."""

import uuid
from datetime import datetime
from enum import Enum
from sqlalchemy import Column, String, DateTime, JSON, ForeignKey, Boolean, Integer, Float, Numeric, Index
from sqlalchemy.orm import relationship

from docgate.db.base import Base


class AlertType(str, Enum):
    """Kinds of alert settings."""
    APPROVAL_ESCALATION = "approval_escalation"
    BUDGET_OVERRUN = "budget_overrun"
    OVERTIME = "overtime"
    DELIVERY_DUE = "delivery_due"


class AlertStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class AlertSetting(Base):
    """
    Configuration for one alert source.

    For ``approval_escalation`` the threshold is the number of hours a
    step may wait at the current step order before it counts as overdue.
    """
    __tablename__ = "alert_settings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    type = Column(String(50), nullable=False, index=True)
    is_enabled = Column(Boolean, nullable=False, default=True)
    threshold = Column(Numeric(12, 2), nullable=True)
    scope_project_id = Column(String(36), nullable=True)

    # Delivery
    recipients = Column(JSON, nullable=True)  # {emails, roles, users, webhook_urls}
    channels = Column(JSON, nullable=True)  # ["email", "webhook", "dashboard"]

    # Reminder policy for alerts that stay open
    remind_after_hours = Column(Integer, nullable=True)
    remind_max_count = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    alerts = relationship("Alert", back_populates="setting")

    def __repr__(self) -> str:
        return f"<AlertSetting {self.type} threshold={self.threshold}>"


class Alert(Base):
    """
    An alert raised for one target under one setting.

    ``target_ref`` is opaque to the alert machinery; escalations use
    ``approval_instance:<instance_id>:step:<step_order>``.
    """
    __tablename__ = "alerts"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    setting_id = Column(String(36), ForeignKey("alert_settings.id", ondelete="CASCADE"), nullable=False)
    target_ref = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default=AlertStatus.OPEN.value)

    metric = Column(Float, nullable=True)
    threshold = Column(Float, nullable=True)

    # Delivery bookkeeping
    sent_channels = Column(JSON, nullable=False, default=list)
    sent_result = Column(JSON, nullable=False, default=list)
    reminder_count = Column(Integer, nullable=False, default=0)

    triggered_at = Column(DateTime, default=datetime.utcnow)
    last_notified_at = Column(DateTime, nullable=True)
    closed_at = Column(DateTime, nullable=True)

    setting = relationship("AlertSetting", back_populates="alerts")

    __table_args__ = (
        Index("ix_alerts_setting_status", "setting_id", "status"),
        Index("ix_alerts_target_ref", "target_ref"),
    )

    def __repr__(self) -> str:
        return f"<Alert {self.target_ref} [{self.status}]>"
