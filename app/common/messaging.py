import json
import uuid
from typing import Any, Dict, Optional, Protocol

import aio_pika
import structlog

from app.config.config import settings
from app.common.exception import GeneralDataException
from app.common.site_enums import NotificationType

logger = structlog.get_logger()


class NotificationSink(Protocol):
    """Where outbound notification tasks go. Sending is done by an external worker."""

    async def send(self, task_type: NotificationType, payload: Dict[str, Any]) -> None:
        ...


class RabbitMQConnectionManager:
    def __init__(self, url: str):
        self.url = url
        self.connection: Optional[aio_pika.RobustConnection] = None

    async def connect(self):
        try:
            self.connection = await aio_pika.connect_robust(self.url)
            logger.info("Connected to RabbitMQ")
        except Exception as e:
            logger.error(f"Failed to connect to RabbitMQ: {e}")
            raise

    async def disconnect(self):
        if self.connection and not self.connection.is_closed:
            await self.connection.close()
            logger.info("RabbitMQ connection closed")

    async def get_connection(self) -> aio_pika.RobustConnection:
        if self.connection is None or self.connection.is_closed:
            await self.connect()
        return self.connection


rabbitmq_manager = RabbitMQConnectionManager(url=settings.RABBITMQ_URL)


async def publish_message(message: dict, connection: aio_pika.RobustConnection, queue_name: str):
    try:
        message["mid"] = str(uuid.uuid4())
        task_message = json.dumps(message, default=str)

        async with connection.channel() as channel:
            # Make queue durable
            await channel.declare_queue(queue_name, durable=True)

            await channel.default_exchange.publish(
                aio_pika.Message(
                    body=task_message.encode(),
                    delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
                    content_type='application/json'
                ),
                routing_key=queue_name,
            )
    except aio_pika.exceptions.AMQPError as e:
        logger.error(f"RabbitMQ connection error: {e}")
        raise GeneralDataException(
            f"RabbitMQ connection error: {e}",
            context={"detail": f"RabbitMQ connection error: {e}"}
        ) from e


class RabbitMQNotificationSink:
    """Queues notification tasks as JSON messages on the durable task queue."""

    def __init__(self, manager: RabbitMQConnectionManager, queue_name: str):
        self.manager = manager
        self.queue_name = queue_name

    async def send(self, task_type: NotificationType, payload: Dict[str, Any]) -> None:
        connection = await self.manager.get_connection()
        await publish_message(
            {"task_type": task_type.value, **payload},
            connection,
            self.queue_name,
        )


def get_notification_sink() -> NotificationSink:
    return RabbitMQNotificationSink(rabbitmq_manager, settings.RABBITMQ_QUEUE)


async def notify(sink: NotificationSink, task_type: NotificationType, payload: Dict[str, Any]) -> bool:
    """
    Queue a notification without letting a broker failure reach the caller.
    State changes are already committed when this runs.
    """
    try:
        await sink.send(task_type, payload)
        return True
    except Exception as e:
        logger.error(f"Failed to queue {task_type.value} notification: {e}", payload_keys=list(payload))
        return False
