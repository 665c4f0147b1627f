"""
Execution Alerts
================

Explicit notification outbox for execution and risk alerts.

Features:
- Bounded in-memory outbox with subscriber callbacks
- File (JSONL) and webhook channels
- Alert severity levels and categories
- Throttling of repeated alerts
- Acknowledgment tracking for alerts that need a human
"""

from __future__ import annotations

import asyncio
import json
import logging
import urllib.request
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable

logger = logging.getLogger(__name__)


class AlertSeverity(str, Enum):
    """Alert severity levels."""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"
    EMERGENCY = "emergency"  # Requires immediate action


class AlertCategory(str, Enum):
    """Alert categories."""
    RISK = "risk"
    EXECUTION = "execution"
    ROLLBACK = "rollback"
    SYSTEM = "system"


@dataclass
class Alert:
    """Alert notification."""
    alert_id: str
    timestamp: datetime
    severity: AlertSeverity
    category: AlertCategory
    title: str
    message: str
    source: str
    details: dict = field(default_factory=dict)
    requires_acknowledgment: bool = False
    acknowledged: bool = False
    acknowledged_by: str | None = None

    def to_dict(self) -> dict:
        return {
            'alert_id': self.alert_id,
            'timestamp': self.timestamp.isoformat(),
            'severity': self.severity.value,
            'category': self.category.value,
            'title': self.title,
            'message': self.message,
            'source': self.source,
            'details': self.details,
            'requires_acknowledgment': self.requires_acknowledgment,
            'acknowledged': self.acknowledged,
            'acknowledged_by': self.acknowledged_by,
        }


class NotificationChannel(ABC):
    """Abstract base class for notification channels."""

    @abstractmethod
    def send(self, alert: Alert) -> bool:
        """Send notification. Returns True if delivered."""
        pass

    def is_available(self) -> bool:
        return True


class OutboxChannel(NotificationChannel):
    """
    Bounded in-memory outbox.

    Alerts are kept in delivery order. When full, the oldest alert is
    dropped and counted. Subscribers are called synchronously on send.
    """

    def __init__(self, max_size: int = 1000):
        self._queue: deque[Alert] = deque(maxlen=max_size)
        self._subscribers: list[Callable[[Alert], None]] = []
        self.max_size = max_size
        self.dropped = 0

    def subscribe(self, callback: Callable[[Alert], None]) -> None:
        self._subscribers.append(callback)

    def send(self, alert: Alert) -> bool:
        if len(self._queue) == self.max_size:
            self.dropped += 1
            logger.warning(
                f"Alert outbox full ({self.max_size}), dropping oldest alert"
            )
        self._queue.append(alert)
        for callback in self._subscribers:
            try:
                callback(alert)
            except Exception as e:
                logger.error(f"Alert subscriber failed for {alert.alert_id}: {e}")
        return True

    def drain(self) -> list[Alert]:
        """Remove and return every queued alert, oldest first."""
        alerts = list(self._queue)
        self._queue.clear()
        return alerts

    def peek(self) -> list[Alert]:
        return list(self._queue)

    def __len__(self) -> int:
        return len(self._queue)


class FileNotificationChannel(NotificationChannel):
    """Appends alerts to a JSONL file for log aggregation."""

    def __init__(self, filepath: str = "logs/execution_alerts.jsonl"):
        self.filepath = Path(filepath)
        self.filepath.parent.mkdir(parents=True, exist_ok=True)

    def send(self, alert: Alert) -> bool:
        try:
            with open(self.filepath, 'a', encoding='utf-8') as f:
                f.write(json.dumps(alert.to_dict()) + '\n')
            return True
        except OSError as e:
            logger.error(f"Failed to write alert to {self.filepath}: {e}")
            return False


class WebhookNotificationChannel(NotificationChannel):
    """
    Posts alerts to a webhook URL (Slack-compatible payload).

    Only WARNING and above are forwarded. Inside a running event loop the
    POST runs in a worker thread and send() returns once it is scheduled;
    call flush() to wait for posts still in flight.
    """

    def __init__(
        self,
        webhook_url: str,
        timeout_seconds: float = 10.0,
        headers: dict | None = None,
    ):
        self.webhook_url = webhook_url
        self.timeout = timeout_seconds
        self.headers = headers or {'Content-Type': 'application/json'}
        self._in_flight: set[asyncio.Task] = set()

    def send(self, alert: Alert) -> bool:
        if alert.severity == AlertSeverity.INFO:
            return True
        data = json.dumps(self._format_payload(alert)).encode('utf-8')
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return self._post(alert.alert_id, data)

        task = loop.create_task(asyncio.to_thread(self._post, alert.alert_id, data))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return True

    async def flush(self) -> None:
        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def _post(self, alert_id: str, data: bytes) -> bool:
        request = urllib.request.Request(
            self.webhook_url,
            data=data,
            headers=self.headers,
            method='POST',
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                return response.status == 200
        except (OSError, ValueError) as e:
            logger.error(f"Webhook notification failed for {alert_id}: {e}")
            return False

    def _format_payload(self, alert: Alert) -> dict:
        return {
            'text': f"[{alert.severity.value.upper()}] {alert.title}",
            'attachments': [{
                'fields': [
                    {'title': 'Category', 'value': alert.category.value, 'short': True},
                    {'title': 'Source', 'value': alert.source, 'short': True},
                    {'title': 'Message', 'value': alert.message, 'short': False},
                ],
            }],
        }

    def is_available(self) -> bool:
        return bool(self.webhook_url)


class NotificationManager:
    """
    Routes alerts to channels with throttling.

    Emergency alerts are never throttled.
    """

    def __init__(
        self,
        channels: list[NotificationChannel] | None = None,
        throttle_seconds: float = 0.0,
        history_size: int = 1000,
    ):
        self.channels = channels if channels is not None else [OutboxChannel()]
        self.throttle_period = timedelta(seconds=throttle_seconds)

        self._history: deque[Alert] = deque(maxlen=history_size)
        self._alert_counter = 0
        self._last_alert_times: dict[str, datetime] = {}
        self._pending_acknowledgments: dict[str, Alert] = {}
        self._throttled = 0

    def add_channel(self, channel: NotificationChannel) -> None:
        self.channels.append(channel)

    @property
    def outbox(self) -> OutboxChannel | None:
        """First in-memory outbox channel, if any."""
        for channel in self.channels:
            if isinstance(channel, OutboxChannel):
                return channel
        return None

    def send_alert(
        self,
        severity: AlertSeverity,
        category: AlertCategory,
        title: str,
        message: str,
        source: str,
        details: dict[str, Any] | None = None,
        throttle_key: str | None = None,
        requires_acknowledgment: bool = False,
    ) -> Alert | None:
        """
        Send an alert through configured channels.

        Returns:
            The Alert, or None if it was throttled
        """
        now = datetime.now(timezone.utc)
        if throttle_key and not self._should_send(throttle_key, severity, now):
            self._throttled += 1
            logger.debug(f"Alert throttled: {throttle_key}")
            return None

        self._alert_counter += 1
        alert = Alert(
            alert_id=f"ALERT_{now.strftime('%Y%m%d_%H%M%S')}_{self._alert_counter}",
            timestamp=now,
            severity=severity,
            category=category,
            title=title,
            message=message,
            source=source,
            details=details or {},
            requires_acknowledgment=requires_acknowledgment,
        )
        self._history.append(alert)
        if throttle_key:
            self._last_alert_times[throttle_key] = now
        if requires_acknowledgment:
            self._pending_acknowledgments[alert.alert_id] = alert

        delivered = 0
        for channel in self.channels:
            if channel.is_available() and channel.send(alert):
                delivered += 1

        logger.log(
            self._get_log_level(severity),
            f"Alert [{severity.value}] {title}: {message} "
            f"(sent to {delivered}/{len(self.channels)} channels)"
        )
        return alert

    async def flush(self) -> None:
        """Wait for deliveries still in flight on asynchronous channels."""
        for channel in self.channels:
            flush = getattr(channel, "flush", None)
            if flush is not None:
                await flush()

    def acknowledge_alert(self, alert_id: str, acknowledged_by: str) -> bool:
        alert = self._pending_acknowledgments.pop(alert_id, None)
        if alert is None:
            return False
        alert.acknowledged = True
        alert.acknowledged_by = acknowledged_by
        logger.info(f"Alert {alert_id} acknowledged by {acknowledged_by}")
        return True

    def get_pending_acknowledgments(self) -> list[Alert]:
        return list(self._pending_acknowledgments.values())

    def get_recent_alerts(self, limit: int = 50) -> list[Alert]:
        return list(self._history)[-limit:]

    def _should_send(self, throttle_key: str, severity: AlertSeverity, now: datetime) -> bool:
        if severity == AlertSeverity.EMERGENCY:
            return True
        last_time = self._last_alert_times.get(throttle_key)
        if last_time is None:
            return True
        return now - last_time >= self.throttle_period

    def _get_log_level(self, severity: AlertSeverity) -> int:
        levels = {
            AlertSeverity.INFO: logging.INFO,
            AlertSeverity.WARNING: logging.WARNING,
            AlertSeverity.CRITICAL: logging.ERROR,
            AlertSeverity.EMERGENCY: logging.CRITICAL,
        }
        return levels.get(severity, logging.INFO)

    def get_statistics(self) -> dict:
        by_severity: dict[str, int] = defaultdict(int)
        by_category: dict[str, int] = defaultdict(int)
        for alert in self._history:
            by_severity[alert.severity.value] += 1
            by_category[alert.category.value] += 1

        return {
            'total_alerts': self._alert_counter,
            'throttled': self._throttled,
            'pending_acknowledgment': len(self._pending_acknowledgments),
            'by_severity': dict(by_severity),
            'by_category': dict(by_category),
            'channels': len(self.channels),
        }


def create_notification_manager(config: dict[str, Any] | None = None) -> NotificationManager:
    """
    Build a NotificationManager from the `notifications` config section.

    Keys: outbox_size, throttle_seconds, alert_file, webhook_url.
    """
    config = config or {}
    channels: list[NotificationChannel] = [OutboxChannel(config.get("outbox_size", 1000))]
    if config.get("alert_file"):
        channels.append(FileNotificationChannel(config["alert_file"]))
    if config.get("webhook_url"):
        channels.append(WebhookNotificationChannel(
            config["webhook_url"],
            timeout_seconds=config.get("webhook_timeout_seconds", 10.0),
        ))
    return NotificationManager(
        channels=channels,
        throttle_seconds=config.get("throttle_seconds", 0.0),
    )
