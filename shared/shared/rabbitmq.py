import logging

import aio_pika

EXCHANGE_NAME = "domain_events"

logger = logging.getLogger(__name__)


class RabbitPublisher:
    """
    Topic-exchange publisher that reuses one robust connection.

    Disabled (every publish is a no-op) when no broker URL is configured, so a
    service can run without RabbitMQ in development and tests.
    """

    def __init__(self, url: str | None, exchange_name: str = EXCHANGE_NAME):
        self.url = url
        self.exchange_name = exchange_name
        self.enabled = bool(url)
        self._connection: aio_pika.RobustConnection | None = None
        self._channel: aio_pika.abc.AbstractChannel | None = None
        self._exchange: aio_pika.abc.AbstractExchange | None = None

    async def connect(self):
        if not self.enabled:
            return

        if self._connection and not self._connection.is_closed:
            return

        try:
            self._connection = await aio_pika.connect_robust(self.url)
            self._channel = await self._connection.channel()
            self._exchange = await self._channel.declare_exchange(
                self.exchange_name,
                aio_pika.ExchangeType.TOPIC,
                durable=True,
            )
        except Exception:
            self._connection = None
            self._channel = None
            self._exchange = None
            raise

    async def publish(self, routing_key: str, message_body: str):
        """Publish one message. Raises if the broker is configured but unreachable."""
        if not self.enabled:
            logger.debug("events disabled, dropping %s", routing_key)
            return

        await self.connect()

        msg = aio_pika.Message(
            body=message_body.encode("utf-8"),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )
        await self._exchange.publish(msg, routing_key=routing_key)

    async def close(self):
        try:
            if self._connection and not self._connection.is_closed:
                await self._connection.close()
        finally:
            self._connection = None
            self._channel = None
            self._exchange = None
