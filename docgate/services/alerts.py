"""Alert lifecycle: open, remind, close.

An alert setting keeps at most one open alert per target. Triggering
an already-open alert only re-notifies once the setting's reminder
interval has passed.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import and_
from sqlalchemy.orm import Session

from docgate.db.models import Alert, AlertSetting, AlertStatus
from .notifications import AlertNotifier, normalize_channels

logger = logging.getLogger(__name__)


class AlertService:
    """
    Opens and closes alerts for alert settings.
    """

    def __init__(self, db: Session, notifier: Optional[AlertNotifier] = None):
        """
        Initialize alert service.

        Args:
            db: Database session
            notifier: Delivery backend; created from settings when None
        """
        self.db = db
        self.notifier = notifier or AlertNotifier()

    def get_open_alert(self, setting_id: str, target_ref: str) -> Optional[Alert]:
        return self.db.query(Alert).filter(
            and_(
                Alert.setting_id == setting_id,
                Alert.target_ref == target_ref,
                Alert.status == AlertStatus.OPEN.value,
            )
        ).order_by(Alert.triggered_at.desc()).first()

    def trigger_alert(
        self,
        setting: AlertSetting,
        metric: float,
        threshold: float,
        target_ref: str,
        now: Optional[datetime] = None,
    ) -> Alert:
        """
        Raise an alert for a target, or keep the open one current.

        Args:
            setting: Alert setting with recipients, channels and reminder policy
            metric: Observed value (hours waiting, for escalations)
            threshold: Threshold the metric exceeded
            target_ref: Opaque identifier of the overdue unit
            now: Current time

        Returns:
            The open alert for (setting, target_ref)
        """
        now = now or datetime.utcnow()
        alert = self.get_open_alert(setting.id, target_ref)

        if alert is not None:
            alert.metric = metric
            alert.threshold = threshold
            if self._reminder_due(setting, alert, now):
                alert.reminder_count = (alert.reminder_count or 0) + 1
                results = self._notify(setting, alert, metric, threshold)
                alert.sent_result = list(alert.sent_result or []) + results
                alert.last_notified_at = now
                logger.info(f"Sent reminder {alert.reminder_count} for alert {alert.id} ({target_ref})")
            self.db.flush()
            return alert

        alert = Alert(
            setting_id=setting.id,
            target_ref=target_ref,
            status=AlertStatus.OPEN.value,
            metric=metric,
            threshold=threshold,
            reminder_count=0,
            triggered_at=now,
            last_notified_at=now,
        )
        results = self._notify(setting, alert, metric, threshold)
        alert.sent_channels = [r["channel"] for r in results]
        alert.sent_result = results
        self.db.add(alert)
        self.db.flush()

        logger.info(f"Opened alert {alert.id} for {target_ref} ({metric} > {threshold})")
        return alert

    def close_alerts(
        self,
        setting_id: str,
        keep_target_refs: Iterable[str] = (),
        now: Optional[datetime] = None,
    ) -> int:
        """
        Close the setting's open alerts whose target is not in ``keep_target_refs``.

        Returns:
            Number of alerts closed
        """
        now = now or datetime.utcnow()
        keep = list(keep_target_refs)

        query = self.db.query(Alert).filter(
            Alert.setting_id == setting_id,
            Alert.status == AlertStatus.OPEN.value,
        )
        if keep:
            query = query.filter(Alert.target_ref.notin_(keep))

        closed = query.update(
            {Alert.status: AlertStatus.CLOSED.value, Alert.closed_at: now},
            synchronize_session="fetch",
        )
        if closed:
            logger.info(f"Closed {closed} alerts for setting {setting_id}")
        return closed

    @staticmethod
    def _reminder_due(setting: AlertSetting, alert: Alert, now: datetime) -> bool:
        if not setting.remind_after_hours or setting.remind_after_hours <= 0:
            return False
        if setting.remind_max_count is not None and (alert.reminder_count or 0) >= setting.remind_max_count:
            return False
        last = alert.last_notified_at or alert.triggered_at
        if last is None:
            return True
        return now - last >= timedelta(hours=setting.remind_after_hours)

    def _notify(
        self,
        setting: AlertSetting,
        alert: Alert,
        metric: float,
        threshold: float,
    ) -> List[Dict[str, Any]]:
        return self.notifier.dispatch_sync(
            setting_type=setting.type,
            target_ref=alert.target_ref,
            metric=metric,
            threshold=threshold,
            channels=normalize_channels(setting.channels),
            recipients=setting.recipients,
            reminder_count=alert.reminder_count or 0,
        )
