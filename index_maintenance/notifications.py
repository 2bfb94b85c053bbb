"""
Report Delivery Channels
Email (SMTP) and webhook delivery of the maintenance report.
"""

import asyncio
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, List, Optional

import aiohttp

from .config import ReportSettings, SmtpSettings
from .errors import ReportDeliveryError
from .models import ActionResult
from .providers import ReportChannel

logger = logging.getLogger('index_maintenance.notifications')


class EmailReportChannel(ReportChannel):
    """Sends the report as a plain text email."""

    name = "email"

    def __init__(self, recipients: List[str], smtp: SmtpSettings,
                 sender: str = "index-maintenance@localhost", timeout_seconds: float = 60):
        self.recipients = recipients
        self.smtp = smtp
        self.sender = sender
        self.timeout_seconds = timeout_seconds

    def _deliver(self, subject: str, body: str):
        msg = MIMEMultipart()
        msg['From'] = self.smtp.username or self.sender
        msg['To'] = ", ".join(self.recipients)
        msg['Subject'] = subject
        msg.attach(MIMEText(body, 'plain'))

        try:
            server = smtplib.SMTP(self.smtp.host, self.smtp.port, timeout=self.timeout_seconds)
            try:
                if self.smtp.username and self.smtp.password:
                    server.starttls()
                    server.login(self.smtp.username, self.smtp.password)
                server.send_message(msg)
            finally:
                server.quit()
        except (smtplib.SMTPException, OSError) as e:
            raise ReportDeliveryError(f"SMTP delivery to {self.smtp.host}:{self.smtp.port} failed: {e}") from e

    async def send(self, subject: str, body: str, payload: Dict[str, Any]) -> ActionResult:
        if not self.recipients:
            return ActionResult.failure("no email recipients configured")
        try:
            await asyncio.to_thread(self._deliver, subject, body)
        except ReportDeliveryError as e:
            return ActionResult.failure(str(e))
        logger.info(f"Email report sent successfully to: {'; '.join(self.recipients)}")
        return ActionResult.success()


class WebhookReportChannel(ReportChannel):
    """POSTs the report and the structured summary as JSON."""

    name = "webhook"

    def __init__(self, url: str, timeout_seconds: float = 10):
        self.url = url
        self.timeout_seconds = timeout_seconds

    async def send(self, subject: str, body: str, payload: Dict[str, Any]) -> ActionResult:
        data = {"subject": subject, "body": body, "summary": payload}
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.url,
                    json=data,
                    timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)
                ) as response:
                    if 200 <= response.status < 300:
                        logger.info(f"Webhook report sent to {self.url}")
                        return ActionResult.success()
                    return ActionResult.failure(f"webhook returned HTTP {response.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            return ActionResult.failure(f"webhook delivery failed: {e or type(e).__name__}")


def build_channels(settings: ReportSettings) -> List[ReportChannel]:
    """Channels configured for a run; empty when reporting is disabled."""
    if not settings.enabled:
        return []
    channels: List[ReportChannel] = []
    if settings.recipients:
        channels.append(EmailReportChannel(settings.recipients, settings.smtp, settings.sender))
    if settings.webhook_url:
        channels.append(WebhookReportChannel(settings.webhook_url))
    return channels


async def deliver_report(channels: List[ReportChannel], subject: str, body: str,
                         payload: Dict[str, Any]) -> Dict[str, Optional[str]]:
    """Send to every channel; a failing channel is logged and never raised."""
    outcomes: Dict[str, Optional[str]] = {}
    for channel in channels:
        try:
            result = await channel.send(subject, body, payload)
        except Exception as e:
            result = ActionResult.failure(str(e) or type(e).__name__)
        outcomes[channel.name] = None if result.ok else result.reason
        if not result.ok:
            logger.error(f"ERROR: Failed to send {channel.name} report: {result.reason}")
    return outcomes
