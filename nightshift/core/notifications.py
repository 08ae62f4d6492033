"""
Nightshift - Notifications
==========================

Best-effort notification sinks and message templates.

Delivery never takes part in correctness: every caller goes through
notify_safely(), which logs and swallows sink failures.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Protocol

import httpx
import structlog

from nightshift.core.config import Settings, settings as default_settings

logger = structlog.get_logger()


class NotificationChannel(str, Enum):
    """Where a message is routed on the receiving side."""
    APPROVALS = "approvals"
    JOBS = "jobs"
    OVERNIGHT = "overnight"
    BRIEFING = "briefing"
    ALERTS = "alerts"


class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


@dataclass
class Notification:
    """Notification payload."""
    title: str
    body: str
    priority: NotificationPriority = NotificationPriority.NORMAL
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def render(self) -> str:
        return f"{self.title}\n{self.body}"


class NotificationSink(Protocol):
    """Anything that can deliver a message to the user."""

    async def notify(self, channel: str, message: str) -> None: ...


# ==========================================================================
# Sinks
# ==========================================================================

class LoggingNotificationSink:
    """Sink that only writes notifications to the log."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    async def notify(self, channel: str, message: str) -> None:
        self.sent.append((channel, message))
        logger.info("notification_logged", channel=channel, body=message[:200])


class WebhookNotificationSink:
    """
    Posts notifications to an HTTP webhook.

    Falls back to logging-only mode when no URL is configured or
    notifications are disabled.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        token: Optional[str] = None,
        config: Settings = default_settings,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url or config.NOTIFY_WEBHOOK_URL
        self.token = token or config.NOTIFY_WEBHOOK_TOKEN
        self._enabled_flag = config.NOTIFY_ENABLED
        self._client = client or httpx.AsyncClient(timeout=config.NOTIFY_TIMEOUT_SECONDS)

        if self.enabled:
            logger.info("webhook_sink_initialized", mode="live", url=self.url)
        else:
            logger.info("webhook_sink_initialized", mode="logging_only")

    @property
    def enabled(self) -> bool:
        return bool(self.url) and self._enabled_flag

    async def notify(self, channel: str, message: str) -> None:
        if not self.enabled:
            logger.info("notification_logged", channel=channel, body=message[:200], mode="disabled")
            return

        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        response = await self._client.post(
            self.url,
            json={
                "channel": channel,
                "message": message,
                "sent_at": datetime.now(timezone.utc).isoformat(),
            },
            headers=headers,
        )
        response.raise_for_status()
        logger.debug("notification_sent", channel=channel)

    async def close(self) -> None:
        await self._client.aclose()


async def notify_safely(
    sink: Optional[NotificationSink],
    channel: str,
    message: str,
) -> bool:
    """
    Deliver a notification, swallowing any failure.

    Returns:
        True if the sink accepted the message
    """
    if sink is None:
        return False
    try:
        await sink.notify(channel, message)
        return True
    except Exception as e:
        logger.warning("notification_failed", channel=channel, error=str(e))
        return False


# ==========================================================================
# Templates
# ==========================================================================

class NotificationTemplates:
    """Message templates for engine events."""

    @staticmethod
    def approval_required(job_id: str, job_name: str, description: str) -> Notification:
        return Notification(
            title="🔴 Approval Required",
            body=f"{job_name}\n{description[:200]}\nWaiting for approval: {job_id}",
            priority=NotificationPriority.HIGH,
            data={"job_id": job_id},
        )

    @staticmethod
    def yellow_job_executed(job_id: str, job_name: str, success: bool, error: Optional[str] = None) -> Notification:
        status = "✅ done" if success else f"❌ failed: {(error or 'unknown')[:100]}"
        return Notification(
            title="🟡 Job Executed",
            body=f"{job_name}\n{status}",
            priority=NotificationPriority.NORMAL,
            data={"job_id": job_id, "success": success},
        )

    @staticmethod
    def milestone(task_id: str, subject: str, milestone: str, message: str) -> Notification:
        return Notification(
            title=f"🌙 {subject[:40]}",
            body=f"[{milestone}] {message}",
            priority=NotificationPriority.LOW,
            data={"task_id": task_id, "milestone": milestone},
        )

    @staticmethod
    def briefing_ready(path: str, completed: int, failed: int) -> Notification:
        return Notification(
            title="☀️ Morning Briefing Ready",
            body=f"{completed} jobs completed, {failed} failed\n{path}",
            priority=NotificationPriority.NORMAL,
            data={"path": path},
        )

    @staticmethod
    def session_failed(session_id: str, error: str) -> Notification:
        return Notification(
            title="❌ Night Session Failed",
            body=error[:300],
            priority=NotificationPriority.URGENT,
            data={"session_id": session_id},
        )
