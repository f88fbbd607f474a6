"""
Notification Dispatcher

The core never talks to mail, chat or push systems directly. It emits
`(user, kind, message)` events to whatever sinks the runtime was built with.
"""

from typing import Any, Optional, Protocol

import structlog

logger = structlog.get_logger()

# Notification kinds emitted by the ingestion core
EXPORT_ACTIVE = "export_active"
EXPORT_ACCESS_ERROR = "export_access_error"
EXPORT_UNHEALTHY = "export_unhealthy"
SYNC_RECONNECT_REQUIRED = "sync_reconnect_required"


class NotificationSink(Protocol):
    async def emit(
        self,
        user_id: str,
        kind: str,
        message: str,
        *,
        title: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None: ...


class LoggingNotificationSink:
    """Default sink: records the notification as a structured log event."""

    async def emit(
        self,
        user_id: str,
        kind: str,
        message: str,
        *,
        title: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        logger.info(
            "user_notification",
            user_id=user_id,
            kind=kind,
            title=title,
            message=message,
            details=details or {},
        )


class NotificationDispatcher:
    """Fans a notification out to every configured sink."""

    def __init__(self, sinks: Optional[list[NotificationSink]] = None):
        self.sinks: list[NotificationSink] = (
            sinks if sinks is not None else [LoggingNotificationSink()]
        )

    async def notify(
        self,
        user_id: str,
        kind: str,
        message: str,
        *,
        title: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        for sink in self.sinks:
            try:
                await sink.emit(user_id, kind, message, title=title, details=details)
            except Exception as e:
                # A broken channel must not fail the ingestion unit that triggered it.
                logger.error(
                    "notification_dispatch_failed",
                    user_id=user_id,
                    kind=kind,
                    sink=type(sink).__name__,
                    error=str(e),
                )
