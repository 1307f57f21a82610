"""Approval escalation scan.

For each enabled ``approval_escalation`` setting, finds approval steps
that have waited at their instance's current step order longer than the
setting's threshold (hours), keeps one alert open per overdue step order
and closes every other open alert of the setting.

Each pass recomputes the full overdue set and diffs it against the open
alerts, so alerts self-heal once a step is resolved. The scan assumes a
single active scanner at a time.
"""

import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from docgate.core.approval.states import PENDING_STATUS_VALUES
from docgate.db.models import AlertSetting, AlertType, ApprovalInstance, ApprovalStep
from .alerts import AlertService

logger = logging.getLogger(__name__)


def build_target_ref(instance_id: str, step_order: int) -> str:
    return f"approval_instance:{instance_id}:step:{step_order}"


def hours_since(created_at: datetime, now: datetime) -> float:
    """Elapsed hours, rounded to two decimals."""
    return round((now - created_at).total_seconds() / 3600, 2)


def parse_threshold(value: Any) -> Optional[float]:
    """Threshold in hours, or None when it is not a finite number."""
    if value is None or isinstance(value, bool):
        return None
    try:
        threshold = float(value)
    except (TypeError, ValueError):
        return None
    return threshold if math.isfinite(threshold) else None


class EscalationScanner:
    """
    Raises and closes approval escalation alerts.
    """

    def __init__(self, db: Session, alert_service: Optional[AlertService] = None):
        self.db = db
        self.alert_service = alert_service or AlertService(db)

    def load_settings(self) -> List[AlertSetting]:
        return self.db.query(AlertSetting).filter(
            AlertSetting.is_enabled == True,
            AlertSetting.type == AlertType.APPROVAL_ESCALATION.value,
        ).order_by(AlertSetting.created_at, AlertSetting.id).all()

    def find_active_steps(self, scope_project_id: Optional[str] = None) -> Dict[Tuple[str, int], datetime]:
        """
        Pending steps at their instance's current order.

        Returns:
            Mapping of (instance_id, step_order) to the earliest
            ``created_at`` among the parallel steps of that order
        """
        query = self.db.query(
            ApprovalStep.instance_id,
            ApprovalStep.step_order,
            ApprovalStep.created_at,
            ApprovalInstance.current_step,
        ).join(
            ApprovalInstance, ApprovalStep.instance_id == ApprovalInstance.id
        ).filter(
            ApprovalStep.status.in_(PENDING_STATUS_VALUES),
            ApprovalInstance.status.in_(PENDING_STATUS_VALUES),
        )
        if scope_project_id:
            query = query.filter(ApprovalInstance.project_id == scope_project_id)

        grouped: Dict[Tuple[str, int], datetime] = {}
        for instance_id, step_order, created_at, current_step in query.all():
            if not current_step or step_order != current_step or created_at is None:
                continue
            key = (instance_id, step_order)
            if key not in grouped or created_at < grouped[key]:
                grouped[key] = created_at
        return grouped

    def scan_setting(self, setting: AlertSetting, threshold: float, now: datetime) -> Dict[str, int]:
        """
        Run one setting's pass.

        Each triggered alert is committed as soon as its notifications are
        sent. Closing stale alerts is left to the caller's commit.
        """
        overdue: List[str] = []
        for (instance_id, step_order), created_at in self.find_active_steps(setting.scope_project_id).items():
            hours = hours_since(created_at, now)
            if hours <= threshold:
                continue
            target_ref = build_target_ref(instance_id, step_order)
            overdue.append(target_ref)
            self.alert_service.trigger_alert(setting, hours, threshold, target_ref, now=now)
            self.db.commit()

        closed = self.alert_service.close_alerts(setting.id, overdue, now=now)
        return {"overdue": len(overdue), "closed": closed}

    def run(
        self,
        now: Optional[datetime] = None,
        settings: Optional[Sequence[AlertSetting]] = None,
    ) -> Dict[str, int]:
        """
        Scan every enabled escalation setting.

        Settings with a non-numeric threshold are skipped. Each setting
        commits on its own; a failing setting rolls back whatever it had
        not committed yet and the scan moves on.

        Returns:
            Summary counts: settings, skipped, overdue, closed, failed
        """
        now = now or datetime.utcnow()
        if settings is None:
            settings = self.load_settings()

        summary = {"settings": 0, "skipped": 0, "overdue": 0, "closed": 0, "failed": 0}
        for setting in settings:
            summary["settings"] += 1
            threshold = parse_threshold(setting.threshold)
            if threshold is None:
                logger.warning(
                    f"Skipping escalation setting {setting.id}: invalid threshold {setting.threshold!r}"
                )
                summary["skipped"] += 1
                continue

            try:
                result = self.scan_setting(setting, threshold, now)
                self.db.commit()
            except Exception:
                logger.exception(f"Escalation scan failed for setting {setting.id}")
                self.db.rollback()
                summary["failed"] += 1
                continue

            summary["overdue"] += result["overdue"]
            summary["closed"] += result["closed"]

        logger.info(f"Approval escalation scan finished: {summary}")
        return summary


def run_approval_escalations(db: Session, now: Optional[datetime] = None) -> Dict[str, int]:
    """Run one escalation scan over all enabled settings."""
    return EscalationScanner(db).run(now=now)
