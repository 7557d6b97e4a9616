"""
Notification dispatch
=====================
Best-effort buyer notifications after financial state changes.

NotificationDispatcher.dispatch() is a plain (non-async) call that schedules
delivery as a background task and returns None: callers cannot await it, and
a delivery failure is logged and dropped. Nothing here can roll back or fail
an already committed order transition.

pip install aio-pika structlog
"""

import asyncio
import json
import os
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractRobustConnection
import structlog

logger = structlog.get_logger().bind(component="notifications")


class NotificationTemplate:
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_FAILED = "payment_failed"
    CONSULTATION_PRICED = "consultation_priced"


# =============================================================================
# NOTIFIERS
# =============================================================================

class INotifier(ABC):
    """deliver(recipient, template_data); may be slow, may fail"""

    @abstractmethod
    async def deliver(self, recipient: str, template: str, data: Dict[str, Any]) -> None:
        pass


class LogNotifier(INotifier):
    """Writes notifications to the structured log (no delivery channel configured)"""

    async def deliver(self, recipient: str, template: str, data: Dict[str, Any]) -> None:
        logger.info("notification_logged", recipient=recipient, template=template, data=data)


class EventBusSettings:
    def __init__(self):
        self.RABBITMQ_URL = os.getenv("RABBITMQ_URL", "")
        self.EXCHANGE_NAME = os.getenv("NOTIFICATION_EXCHANGE", "facto.notifications")


class EventBusNotifier(INotifier):
    """
    Publishes notifications to a RabbitMQ topic exchange; the delivery
    workers (email/SMS/push) consume from there.

    Routing key: notification.<template>
    """

    def __init__(self, settings: Optional[EventBusSettings] = None):
        self.settings = settings or EventBusSettings()
        self._connection: Optional[AbstractRobustConnection] = None
        self._channel: Optional[AbstractChannel] = None
        self._exchange: Optional[AbstractExchange] = None

    async def connect(self):
        if self._exchange is not None:
            return
        self._connection = await aio_pika.connect_robust(self.settings.RABBITMQ_URL)
        self._channel = await self._connection.channel()
        self._exchange = await self._channel.declare_exchange(
            self.settings.EXCHANGE_NAME,
            aio_pika.ExchangeType.TOPIC,
            durable=True,
        )
        logger.info("event_bus_connected", exchange=self.settings.EXCHANGE_NAME)

    async def close(self):
        if self._connection is not None:
            await self._connection.close()
        self._connection = None
        self._channel = None
        self._exchange = None

    async def deliver(self, recipient: str, template: str, data: Dict[str, Any]) -> None:
        await self.connect()
        body = {
            "event_id": str(uuid.uuid4()),
            "recipient": recipient,
            "template": template,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        await self._exchange.publish(
            aio_pika.Message(
                body=json.dumps(body, default=str).encode(),
                content_type="application/json",
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
                message_id=body["event_id"],
            ),
            routing_key=f"notification.{template}",
        )


# =============================================================================
# DISPATCHER
# =============================================================================

class NotificationDispatcher:
    """Fire-and-forget front for an INotifier"""

    def __init__(self, notifier: Optional[INotifier] = None, timeout_seconds: float = 10.0):
        self.notifier = notifier or LogNotifier()
        self.timeout_seconds = timeout_seconds
        self._tasks: Set[asyncio.Task] = set()

    def dispatch(self, recipient: str, template: str, data: Dict[str, Any]) -> None:
        """Schedule delivery and return immediately. Never raises."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("notification_dropped_no_loop", recipient=recipient, template=template)
            return
        task = loop.create_task(self._deliver(recipient, template, dict(data)))
        # Hold a reference until done so the task is not garbage collected
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, recipient: str, template: str, data: Dict[str, Any]) -> None:
        try:
            await asyncio.wait_for(
                self.notifier.deliver(recipient, template, data),
                timeout=self.timeout_seconds,
            )
        except Exception as e:
            logger.warning(
                "notification_failed",
                recipient=recipient,
                template=template,
                error=str(e),
                error_type=type(e).__name__,
            )

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight deliveries (shutdown, tests)."""
        if not self._tasks:
            return
        await asyncio.wait(set(self._tasks), timeout=timeout)
