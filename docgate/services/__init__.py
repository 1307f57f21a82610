"""Services for docgate."""

from docgate.services.notifications import AlertNotifier, normalize_channels
from docgate.services.alerts import AlertService
from docgate.services.escalation import EscalationScanner, run_approval_escalations

__all__ = [
    "AlertNotifier",
    "normalize_channels",
    "AlertService",
    "EscalationScanner",
    "run_approval_escalations",
]
