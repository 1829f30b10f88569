import logging
import os
import aio_pika

RABBIT_URL = os.getenv("RABBIT_URL")

EXCHANGE_NAME = "domain_events"

logger = logging.getLogger(__name__)


async def connect(url: str | None = None) -> aio_pika.abc.AbstractRobustConnection:
    url = url or RABBIT_URL
    if not url:
        raise RuntimeError("RABBIT_URL environment variable is not set")
    return await aio_pika.connect_robust(url)


async def declare_exchange(channel: aio_pika.abc.AbstractChannel) -> aio_pika.abc.AbstractExchange:
    return await channel.declare_exchange(
        EXCHANGE_NAME,
        aio_pika.ExchangeType.TOPIC,
        durable=True,
    )


class RabbitPublisher:
    """
    Fire-and-forget publisher on the domain_events topic exchange.
    Publishing never raises: a lost notification must not undo a committed write.
    """

    def __init__(self, url: str | None = None):
        self.url = url or RABBIT_URL
        self.enabled = bool(self.url)
        self._connection: aio_pika.abc.AbstractRobustConnection | None = None
        self._channel: aio_pika.abc.AbstractChannel | None = None
        self._exchange: aio_pika.abc.AbstractExchange | None = None

    async def connect(self):
        if not self.enabled:
            return

        if self._connection and not self._connection.is_closed:
            return

        try:
            self._connection = await connect(self.url)
            self._channel = await self._connection.channel()
            self._exchange = await declare_exchange(self._channel)
        except Exception as e:
            logger.warning("RabbitMQ connect failed: %s", e)
            self._connection = None
            self._channel = None
            self._exchange = None
            raise

    async def publish(self, routing_key: str, message_body: str):
        if not self.enabled:
            return

        try:
            await self.connect()
        except Exception:
            return

        if not self._exchange:
            return

        try:
            msg = aio_pika.Message(
                body=message_body.encode("utf-8"),
                content_type="application/json",
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            )
            await self._exchange.publish(msg, routing_key=routing_key)
        except Exception as e:
            logger.warning("RabbitMQ publish failed (%s): %s", routing_key, e)

    async def close(self):
        try:
            if self._connection and not self._connection.is_closed:
                await self._connection.close()
        finally:
            self._connection = None
            self._channel = None
            self._exchange = None
