"""
Notification Tests
==================

Webhook delivery via httpx.MockTransport and best-effort semantics.
"""

import json

import httpx

from nightshift.core.config import Settings
from nightshift.core.notifications import (
    LoggingNotificationSink,
    NotificationChannel,
    NotificationPriority,
    NotificationTemplates,
    WebhookNotificationSink,
    notify_safely,
)


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class ExplodingSink:
    async def notify(self, channel: str, message: str) -> None:
        raise RuntimeError("network down")


class TestWebhookSink:
    """HTTP delivery."""

    async def test_posts_json_with_token(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"ok": True})

        sink = WebhookNotificationSink(
            url="https://hooks.example.test/night",
            token="t0ken",
            config=Settings(NOTIFY_ENABLED=True),
            client=mock_client(handler),
        )
        await sink.notify(NotificationChannel.JOBS.value, "job done")
        await sink.close()

        assert len(requests) == 1
        body = json.loads(requests[0].content)
        assert body["channel"] == "jobs"
        assert body["message"] == "job done"
        assert requests[0].headers["Authorization"] == "Bearer t0ken"

    async def test_disabled_does_not_post(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("should not be called")

        sink = WebhookNotificationSink(
            url="https://hooks.example.test/night",
            config=Settings(NOTIFY_ENABLED=False),
            client=mock_client(handler),
        )

        assert not sink.enabled
        await sink.notify("jobs", "quiet")
        await sink.close()

    async def test_http_error_swallowed_by_notify_safely(self):
        sink = WebhookNotificationSink(
            url="https://hooks.example.test/night",
            config=Settings(NOTIFY_ENABLED=True),
            client=mock_client(lambda request: httpx.Response(500)),
        )

        assert not await notify_safely(sink, "alerts", "boom")
        await sink.close()


class TestNotifySafely:
    """Failures never propagate."""

    async def test_exception_swallowed(self):
        assert not await notify_safely(ExplodingSink(), "alerts", "x")

    async def test_none_sink(self):
        assert not await notify_safely(None, "alerts", "x")

    async def test_logging_sink_records(self):
        sink = LoggingNotificationSink()

        assert await notify_safely(sink, "briefing", "ready")
        assert sink.sent == [("briefing", "ready")]


class TestTemplates:
    """Rendered messages."""

    def test_approval_required(self):
        note = NotificationTemplates.approval_required("job_1", "Apply patch", "Change the prod config")

        assert note.priority == NotificationPriority.HIGH
        assert "job_1" in note.render()
        assert note.render().startswith("🔴 Approval Required")

    def test_yellow_failure_includes_error(self):
        note = NotificationTemplates.yellow_job_executed("job_2", "Plan", False, "executor timed out")

        assert "executor timed out" in note.body

    def test_session_failed_is_urgent(self):
        note = NotificationTemplates.session_failed("night_abc", "disk full")

        assert note.priority == NotificationPriority.URGENT
        assert note.data == {"session_id": "night_abc"}
