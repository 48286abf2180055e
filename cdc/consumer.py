"""
cdc/consumer.py -- Kafka consumer loop for the TiDB change feed.

Lifecycle:
  1. Wait for the broker: an admin client lists topics under the shared
     bounded retry (core.retry). Exhausting it is fatal.
  2. Subscribe to the topic from the earliest offset in the consumer group.
  3. Pull batches with getmany() and hand every record to process_message().
     The short poll timeout lets the loop notice a stop request promptly.
  4. On SIGINT/SIGTERM the stop event is set, the loop drains and the
     consumer leaves the group cleanly.

Delivery is whatever the broker and aiokafka's defaults give (auto-commit,
at-least-once). The consumer only logs, so a redelivered message just
produces a second log line.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Callable

from aiokafka import AIOKafkaConsumer
from aiokafka.admin import AIOKafkaAdminClient
from aiokafka.errors import KafkaError

from cdc.processor import configure_cdc_logging, process_message
from core.config import Settings
from core.retry import ResourceUnavailable, wait_until_ready_async

logger = logging.getLogger("helfy.cdc.consumer")

_POLL_TIMEOUT_MS = 1000


class CdcConsumer:
    """Consume the CDC topic and log each message.

    The Kafka client classes are injectable so the loop can be driven by
    fakes in tests.
    """

    def __init__(
        self,
        settings: Settings,
        consumer_factory: Callable[..., AIOKafkaConsumer] = AIOKafkaConsumer,
        admin_factory: Callable[..., AIOKafkaAdminClient] = AIOKafkaAdminClient,
    ) -> None:
        self.settings = settings
        self._consumer_factory = consumer_factory
        self._admin_factory = admin_factory
        self.processed = 0
        self.failed = 0

    async def _probe_broker(self) -> None:
        admin = self._admin_factory(
            bootstrap_servers=self.settings.kafka_broker,
            client_id=self.settings.kafka_client_id,
        )
        await admin.start()
        try:
            await admin.list_topics()
        finally:
            await admin.close()

    async def wait_for_broker(self) -> None:
        await wait_until_ready_async(
            self._probe_broker,
            name="Kafka",
            attempts=self.settings.kafka_connect_attempts,
            interval=self.settings.kafka_connect_interval,
        )

    def handle_batch(self, batch: dict) -> None:
        for records in batch.values():
            for record in records:
                if process_message(record) is None:
                    self.failed += 1
                else:
                    self.processed += 1

    async def run(self, stop: asyncio.Event) -> None:
        """Wait for the broker, then consume until `stop` is set."""
        await self.wait_for_broker()

        consumer = self._consumer_factory(
            self.settings.kafka_topic,
            bootstrap_servers=self.settings.kafka_broker,
            group_id=self.settings.kafka_group,
            client_id=self.settings.kafka_client_id,
            auto_offset_reset="earliest",
        )
        await consumer.start()
        logger.info("Subscribed to: %s", self.settings.kafka_topic)
        try:
            while not stop.is_set():
                batch = await consumer.getmany(timeout_ms=_POLL_TIMEOUT_MS)
                if batch:
                    self.handle_batch(batch)
        finally:
            await consumer.stop()
            logger.info("Consumer stopped (processed=%d failed=%d)", self.processed, self.failed)


async def _main(settings: Settings) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    await CdcConsumer(settings).run(stop)


def run_consumer(settings: Settings) -> int:
    """Blocking entry point. Returns the process exit code."""
    configure_cdc_logging()
    logger.info("Starting CDC Consumer...")
    logger.info("Broker: %s", settings.kafka_broker)
    logger.info("Topic: %s", settings.kafka_topic)
    try:
        asyncio.run(_main(settings))
    except (ResourceUnavailable, KafkaError) as exc:
        logger.error("Fatal error: %s", exc)
        return 1
    logger.info("Shutting down...")
    return 0
