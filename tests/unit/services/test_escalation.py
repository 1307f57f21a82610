"""Tests for the approval escalation scan."""

from datetime import datetime, timedelta

import pytest

from docgate.db.models import Alert, AlertSetting
from docgate.services.alerts import AlertService
from docgate.services.escalation import (
    EscalationScanner,
    build_target_ref,
    hours_since,
    parse_threshold,
)

from tests.factories import create_alert_setting, create_open_instance, create_project


NOW = datetime(2026, 4, 2, 12, 0)


class RecordingNotifier:
    def __init__(self):
        self.calls = []

    def dispatch_sync(self, **kwargs):
        self.calls.append(kwargs)
        return [{"channel": channel, "status": "sent"} for channel in kwargs["channels"]]


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def scanner(db_session, notifier):
    return EscalationScanner(db_session, AlertService(db_session, notifier=notifier))


def open_alerts(db_session):
    return db_session.query(Alert).filter(Alert.status == "open").all()


class TestHelpers:
    def test_build_target_ref(self):
        assert build_target_ref("abc", 2) == "approval_instance:abc:step:2"

    def test_hours_since_rounds(self):
        assert hours_since(NOW - timedelta(minutes=90, seconds=6), NOW) == 1.5

    @pytest.mark.parametrize("value,expected", [
        (24, 24.0),
        ("12.5", 12.5),
        (None, None),
        (True, None),
        ("soon", None),
        (float("nan"), None),
        (float("inf"), None),
    ])
    def test_parse_threshold(self, value, expected):
        assert parse_threshold(value) == expected


class TestEscalationScan:
    def test_overdue_step_opens_one_alert(self, db_session, scanner):
        """Test a step waiting 30h against a 24h threshold raises one alert."""
        setting = create_alert_setting(db_session, threshold=24)
        instance = create_open_instance(
            db_session,
            steps=[{"step_order": 1, "approver_group_id": "mgmt", "created_at": NOW - timedelta(hours=30)}],
        )

        summary = scanner.run(now=NOW)

        assert summary == {"settings": 1, "skipped": 0, "overdue": 1, "closed": 0, "failed": 0}
        alerts = open_alerts(db_session)
        assert len(alerts) == 1
        assert alerts[0].setting_id == setting.id
        assert alerts[0].target_ref == f"approval_instance:{instance.id}:step:1"
        assert alerts[0].metric == 30.0
        assert alerts[0].threshold == 24.0

    def test_repeated_scans_do_not_duplicate(self, db_session, scanner, notifier):
        create_alert_setting(db_session, threshold=24)
        create_open_instance(
            db_session,
            steps=[{"step_order": 1, "approver_group_id": "mgmt", "created_at": NOW - timedelta(hours=30)}],
        )

        scanner.run(now=NOW)
        scanner.run(now=NOW + timedelta(hours=1))

        alerts = open_alerts(db_session)
        assert len(alerts) == 1
        assert alerts[0].metric == 31.0
        assert len(notifier.calls) == 1

    def test_within_threshold_no_alert(self, db_session, scanner):
        create_alert_setting(db_session, threshold=24)
        create_open_instance(
            db_session,
            steps=[{"step_order": 1, "approver_group_id": "mgmt", "created_at": NOW - timedelta(hours=24)}],
        )

        assert scanner.run(now=NOW)["overdue"] == 0
        assert open_alerts(db_session) == []

    def test_resolved_step_closes_alert(self, db_session, scanner):
        """Test a later scan closes the alert once the step is no longer pending."""
        create_alert_setting(db_session, threshold=24)
        instance = create_open_instance(
            db_session,
            steps=[{"step_order": 1, "approver_group_id": "mgmt", "created_at": NOW - timedelta(hours=30)}],
        )
        scanner.run(now=NOW)

        instance.status = "approved"
        instance.current_step = None
        instance.steps[0].status = "approved"
        db_session.commit()

        summary = scanner.run(now=NOW + timedelta(hours=1))

        assert summary["closed"] == 1
        alert = db_session.query(Alert).one()
        assert alert.status == "closed"
        assert alert.closed_at == NOW + timedelta(hours=1)

    def test_parallel_steps_use_earliest_created_at(self, db_session, scanner):
        create_alert_setting(db_session, threshold=24)
        create_open_instance(
            db_session,
            steps=[
                {"step_order": 1, "approver_group_id": "legal", "created_at": NOW - timedelta(hours=10)},
                {"step_order": 1, "approver_group_id": "finance", "created_at": NOW - timedelta(hours=30)},
            ],
        )

        scanner.run(now=NOW)

        alerts = open_alerts(db_session)
        assert len(alerts) == 1
        assert alerts[0].metric == 30.0

    def test_steps_past_current_order_ignored(self, db_session, scanner):
        create_alert_setting(db_session, threshold=24)
        create_open_instance(
            db_session,
            current_step=1,
            steps=[
                {"step_order": 1, "approver_group_id": "mgmt", "created_at": NOW - timedelta(hours=2)},
                {"step_order": 2, "approver_group_id": "exec", "created_at": NOW - timedelta(hours=50)},
            ],
        )

        assert scanner.run(now=NOW)["overdue"] == 0

    def test_scope_project(self, db_session, scanner):
        project = create_project(db_session)
        other = create_project(db_session)
        create_alert_setting(db_session, threshold=24, scope_project_id=project.id)
        inside = create_open_instance(
            db_session,
            project_id=project.id,
            steps=[{"step_order": 1, "approver_group_id": "mgmt", "created_at": NOW - timedelta(hours=30)}],
        )
        create_open_instance(
            db_session,
            project_id=other.id,
            steps=[{"step_order": 1, "approver_group_id": "mgmt", "created_at": NOW - timedelta(hours=30)}],
        )

        scanner.run(now=NOW)

        assert [a.target_ref for a in open_alerts(db_session)] == [build_target_ref(inside.id, 1)]

    def test_disabled_and_other_settings_ignored(self, db_session, scanner):
        create_alert_setting(db_session, threshold=24, is_enabled=False)
        create_alert_setting(db_session, type="budget_overrun", threshold=1)
        create_open_instance(
            db_session,
            steps=[{"step_order": 1, "approver_group_id": "mgmt", "created_at": NOW - timedelta(hours=30)}],
        )

        assert scanner.run(now=NOW)["settings"] == 0

    def test_invalid_threshold_skipped(self, db_session, scanner):
        create_alert_setting(db_session, threshold=None)
        broken = AlertSetting(id="transient", type="approval_escalation", threshold="soon")

        summary = scanner.run(now=NOW, settings=scanner.load_settings() + [broken])

        assert summary["settings"] == 2
        assert summary["skipped"] == 2


class FailingAlertService(AlertService):
    def __init__(self, db, notifier, failing_setting_id):
        super().__init__(db, notifier=notifier)
        self.failing_setting_id = failing_setting_id

    def trigger_alert(self, setting, *args, **kwargs):
        if setting.id == self.failing_setting_id:
            raise RuntimeError("delivery backend down")
        return super().trigger_alert(setting, *args, **kwargs)


class TestFailureIsolation:
    def test_failing_setting_does_not_stop_scan(self, db_session, notifier):
        """Test one setting failing is rolled back and the next still runs."""
        bad = create_alert_setting(db_session, threshold=24)
        good = create_alert_setting(db_session, threshold=12)
        create_open_instance(
            db_session,
            steps=[{"step_order": 1, "approver_group_id": "mgmt", "created_at": NOW - timedelta(hours=30)}],
        )
        db_session.commit()

        scanner = EscalationScanner(db_session, FailingAlertService(db_session, notifier, bad.id))
        summary = scanner.run(now=NOW, settings=[bad, good])

        assert summary["failed"] == 1
        assert summary["overdue"] == 1
        alerts = open_alerts(db_session)
        assert [a.setting_id for a in alerts] == [good.id]


class CloseFailsOnceAlertService(AlertService):
    def __init__(self, db, notifier):
        super().__init__(db, notifier=notifier)
        self.close_failures = 1

    def close_alerts(self, *args, **kwargs):
        if self.close_failures:
            self.close_failures -= 1
            raise RuntimeError("lost connection while closing")
        return super().close_alerts(*args, **kwargs)


class TestDeliveredAlertsSurviveFailure:
    def test_sent_alert_kept_when_pass_fails_later(self, db_session, notifier):
        """Test an alert already notified is not re-sent after its pass fails."""
        setting = create_alert_setting(db_session, threshold=24)
        create_open_instance(
            db_session,
            steps=[{"step_order": 1, "approver_group_id": "mgmt", "created_at": NOW - timedelta(hours=30)}],
        )
        db_session.commit()
        scanner = EscalationScanner(db_session, CloseFailsOnceAlertService(db_session, notifier))

        first = scanner.run(now=NOW, settings=[setting])

        assert first["failed"] == 1
        assert len(open_alerts(db_session)) == 1
        assert len(notifier.calls) == 1

        second = scanner.run(now=NOW + timedelta(minutes=15), settings=[setting])

        assert second["failed"] == 0
        assert len(open_alerts(db_session)) == 1
        assert len(notifier.calls) == 1
