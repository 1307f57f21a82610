"""Database models for docgate."""

from docgate.db.models.policy import ActionPolicy
from docgate.db.models.approval import ApprovalRule, ApprovalInstance, ApprovalStep
from docgate.db.models.alert import AlertSetting, Alert, AlertType, AlertStatus
from docgate.db.models.project import Project, PeriodLock

__all__ = [
    "ActionPolicy",
    "ApprovalRule",
    "ApprovalInstance",
    "ApprovalStep",
    "AlertSetting",
    "Alert",
    "AlertType",
    "AlertStatus",
    "Project",
    "PeriodLock",
]
