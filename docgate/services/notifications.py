"""Alert delivery over email, webhooks and the dashboard.

Handles:
- Channel normalization for alert settings
- Email delivery via SMTP
- Webhook delivery to external systems
- Per-channel result bookkeeping (failures are recorded, not raised)
"""

import asyncio
import logging
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, List, Optional

import aiosmtplib
import httpx

from docgate.core.config import Settings, get_settings
from docgate.db.models.alert import AlertType

logger = logging.getLogger(__name__)


class AlertChannel:
    EMAIL = "email"
    WEBHOOK = "webhook"
    DASHBOARD = "dashboard"

    ALL = (EMAIL, WEBHOOK, DASHBOARD)


DEFAULT_CHANNELS = [AlertChannel.DASHBOARD]


EMAIL_TEMPLATES = {
    AlertType.APPROVAL_ESCALATION.value: {
        "subject": "[docgate] Approval overdue: {target_ref}",
        "body": """
An approval step has been waiting longer than allowed:

Target: {target_ref}
Waiting: {metric} hours
Threshold: {threshold} hours
Reminder: {reminder_count}

---
docgate
        """,
    },
}

DEFAULT_EMAIL_TEMPLATE = {
    "subject": "[docgate] Alert {setting_type}: {target_ref}",
    "body": """
Alert {setting_type} for {target_ref}: {metric} exceeds {threshold}.

---
docgate
    """,
}


def normalize_channels(channels: Any) -> List[str]:
    """
    Channels configured on a setting.

    Accepts a list (``["email", "dashboard"]``) or a mapping of
    ``{channel: enabled}``. Unknown channels are dropped; an unset value
    means dashboard only.
    """
    if isinstance(channels, (list, tuple)):
        raw = [str(c).strip().lower() for c in channels if c]
    elif isinstance(channels, dict):
        raw = [str(key).strip().lower() for key, enabled in channels.items() if enabled]
    else:
        return list(DEFAULT_CHANNELS)

    result = []
    for channel in raw:
        if channel not in AlertChannel.ALL:
            logger.warning(f"Ignoring unknown alert channel: {channel}")
            continue
        if channel not in result:
            result.append(channel)
    return result


def resolve_emails(recipients: Optional[Dict[str, Any]]) -> List[str]:
    """Email addresses listed on a setting's recipients."""
    if not isinstance(recipients, dict):
        return []
    emails = recipients.get("emails") or []
    if isinstance(emails, str):
        emails = [emails]
    return [e.strip() for e in emails if isinstance(e, str) and e.strip()]


def resolve_webhook_urls(recipients: Optional[Dict[str, Any]], settings: Settings) -> List[str]:
    """Webhook URLs from recipients, falling back to the global webhook."""
    urls: List[str] = []
    if isinstance(recipients, dict):
        raw = recipients.get("webhook_urls") or recipients.get("webhookUrls") or []
        if isinstance(raw, str):
            raw = [raw]
        urls = [u for u in raw if isinstance(u, str) and u.strip()]
    if not urls and settings.alert_webhook_url:
        urls = [settings.alert_webhook_url]
    return urls


class AlertNotifier:
    """
    Delivers alert notifications through the configured channels.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    async def send(
        self,
        *,
        setting_type: str,
        target_ref: str,
        metric: float,
        threshold: float,
        channels: List[str],
        recipients: Optional[Dict[str, Any]] = None,
        reminder_count: int = 0,
    ) -> List[Dict[str, Any]]:
        """
        Deliver one alert notification.

        Returns:
            One result dict per channel: ``{"channel", "status", ...}``
            with status ``sent``, ``skipped`` or ``failed``
        """
        context = {
            "setting_type": setting_type,
            "target_ref": target_ref,
            "metric": metric,
            "threshold": threshold,
            "reminder_count": reminder_count,
        }
        results = []
        for channel in channels:
            if channel == AlertChannel.EMAIL:
                results.append(await self._send_email(resolve_emails(recipients), context))
            elif channel == AlertChannel.WEBHOOK:
                results.append(await self._send_webhooks(
                    resolve_webhook_urls(recipients, self.settings), context
                ))
            elif channel == AlertChannel.DASHBOARD:
                results.append({"channel": AlertChannel.DASHBOARD, "status": "sent"})
        return results

    def dispatch_sync(self, **kwargs) -> List[Dict[str, Any]]:
        """Synchronous wrapper for callers outside an event loop."""
        return asyncio.run(self.send(**kwargs))

    async def _send_email(self, to_emails: List[str], context: Dict[str, Any]) -> Dict[str, Any]:
        """Send the alert email to all recipients."""
        result: Dict[str, Any] = {"channel": AlertChannel.EMAIL, "recipients": to_emails}
        if not to_emails:
            result["status"] = "skipped"
            result["error"] = "no recipients"
            return result
        if not self.settings.smtp_host:
            logger.warning("SMTP not configured, skipping email delivery")
            result["status"] = "skipped"
            result["error"] = "smtp not configured"
            return result

        template = EMAIL_TEMPLATES.get(context["setting_type"], DEFAULT_EMAIL_TEMPLATE)
        subject = template["subject"].format(**context)
        body = template["body"].format(**context)

        try:
            await self._deliver_email(to_emails, subject, body)
            result["status"] = "sent"
            result["sent_at"] = datetime.utcnow().isoformat()
        except Exception as e:
            logger.exception(f"Failed to send alert email to {', '.join(to_emails)}")
            result["status"] = "failed"
            result["error"] = str(e)
        return result

    async def _deliver_email(self, to_emails: List[str], subject: str, body: str) -> None:
        """Actually deliver the email via SMTP."""
        msg = MIMEMultipart()
        msg["From"] = f"{self.settings.smtp_from_name} <{self.settings.smtp_from_email}>"
        msg["To"] = ", ".join(to_emails)
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain"))

        await aiosmtplib.send(
            msg,
            hostname=self.settings.smtp_host,
            port=self.settings.smtp_port,
            username=self.settings.smtp_user,
            password=self.settings.smtp_password,
            start_tls=self.settings.smtp_use_tls,
        )

    async def _send_webhooks(self, urls: List[str], context: Dict[str, Any]) -> Dict[str, Any]:
        """Post the alert payload to every webhook URL."""
        result: Dict[str, Any] = {"channel": AlertChannel.WEBHOOK, "targets": urls}
        if not urls:
            result["status"] = "skipped"
            result["error"] = "no webhook configured"
            return result

        payload = {
            "event": context["setting_type"],
            "timestamp": datetime.utcnow().isoformat(),
            "data": context,
        }
        errors = []
        async with httpx.AsyncClient(timeout=self.settings.webhook_timeout) as client:
            for url in urls:
                try:
                    response = await client.post(url, json=payload)
                    response.raise_for_status()
                except httpx.HTTPError as e:
                    logger.exception(f"Failed to send alert webhook to {url}")
                    errors.append(f"{url}: {e}")

        if errors:
            result["status"] = "failed"
            result["error"] = "; ".join(errors)
        else:
            result["status"] = "sent"
        return result
