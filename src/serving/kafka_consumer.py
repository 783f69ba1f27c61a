"""Kafka Consumer for Order Fraud Detection Service.

This module provides a Kafka consumer that listens to the order-created
topic, scores each order and publishes results to the
fraud-evaluation-result topic.

Kafka configuration is provided via environment variables.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
from typing import Optional

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from pydantic import ValidationError
from sqlalchemy.orm import Session, sessionmaker

from schemas.fraud_schemas import FraudEvaluationResult, OrderEvent
from scoring.errors import OrderNotFoundError
from scoring.settings import FraudSettings
from serving.fraud_evaluator import build_evaluator, get_session_factory, get_settings
from storage.database import session_scope

logger = logging.getLogger("fraud-detection-consumer")

# Kafka configuration from environment
KAFKA_BOOTSTRAP_SERVERS = os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")
REQUEST_TOPIC = os.getenv("KAFKA_REQUEST_TOPIC", "order-created")
RESULT_TOPIC = os.getenv("KAFKA_RESULT_TOPIC", "fraud-evaluation-result")
CONSUMER_GROUP = os.getenv("KAFKA_CONSUMER_GROUP", "fraud-detection-service")
POLL_TIMEOUT_MS = 1000


class FraudDetectionKafkaService:
    """Scores every order announced on the order-created topic.

    Each event carries only the order id; the order itself is read from the
    database and its evaluation result is published to the result topic.
    """

    def __init__(
        self,
        bootstrap_servers: str = KAFKA_BOOTSTRAP_SERVERS,
        request_topic: str = REQUEST_TOPIC,
        result_topic: str = RESULT_TOPIC,
        consumer_group: str = CONSUMER_GROUP,
        session_factory: Optional[sessionmaker[Session]] = None,
        settings: Optional[FraudSettings] = None,
    ):
        self.bootstrap_servers = bootstrap_servers
        self.request_topic = request_topic
        self.result_topic = result_topic
        self.consumer_group = consumer_group
        self._session_factory = session_factory
        self._settings = settings
        self._running = False

    @property
    def settings(self) -> FraudSettings:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    @property
    def session_factory(self) -> sessionmaker[Session]:
        """Lazy-load the session factory."""
        if self._session_factory is None:
            self._session_factory = get_session_factory(
                self.settings.database_url, self.settings.seed_default_rules
            )
        return self._session_factory

    def evaluate(self, order_id: int) -> FraudEvaluationResult:
        with session_scope(self.session_factory) as session:
            score = build_evaluator(session, self.settings).analyze_order(order_id)
            return FraudEvaluationResult.from_score(score)

    async def process_message(self, message_value: bytes) -> Optional[str]:
        """Evaluate the order referenced by one order-created event.

        Parameters
        ----------
        message_value : bytes
            Raw event payload, e.g. ``{"orderId": 42}``.

        Returns
        -------
        Optional[str]
            Camel-cased FraudEvaluationResult JSON, or None for malformed
            events, unknown orders and evaluations that raised.
        """
        try:
            data = json.loads(message_value.decode("utf-8"))
            event = OrderEvent.model_validate(data)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.error(f"Invalid JSON message: {exc}")
            return None
        except ValidationError as exc:
            logger.error(f"Invalid order event: {exc}")
            return None

        logger.info(f"Processing order: {event.order_id}")

        try:
            # Evaluation is blocking database work
            result = await asyncio.to_thread(self.evaluate, event.order_id)
        except OrderNotFoundError as exc:
            logger.warning(f"Skipping event: {exc}")
            return None
        except Exception as exc:
            logger.exception(f"Error evaluating order {event.order_id}: {exc}")
            return None

        logger.info(
            f"Order {event.order_id}: "
            f"score={result.total_score}, "
            f"level={result.risk_level}, "
            f"action={result.recommended_action}"
        )

        # Convert to JSON for Kafka
        return result.model_dump_json(by_alias=True)

    async def run(self) -> None:
        """Consume order events until :meth:`stop` is called.

        Offsets are committed only after the result of a batch has been
        published, so an order whose evaluation was interrupted is delivered
        again. Results keep the key of the order event.
        """
        consumer = AIOKafkaConsumer(
            self.request_topic,
            bootstrap_servers=self.bootstrap_servers,
            group_id=self.consumer_group,
            auto_offset_reset="earliest",
            enable_auto_commit=False,
        )
        producer = AIOKafkaProducer(bootstrap_servers=self.bootstrap_servers, acks="all")

        await consumer.start()
        await producer.start()
        logger.info(f"Consuming {self.request_topic} -> {self.result_topic} as {self.consumer_group}")

        self._running = True
        try:
            while self._running:
                batches = await consumer.getmany(timeout_ms=POLL_TIMEOUT_MS)
                for messages in batches.values():
                    for message in messages:
                        result_json = await self.process_message(message.value)
                        if result_json is None:
                            continue
                        await producer.send_and_wait(
                            self.result_topic, result_json.encode("utf-8"), key=message.key
                        )
                if batches:
                    await consumer.commit()
        finally:
            await consumer.stop()
            await producer.stop()
            logger.info("Consumer stopped")

    def stop(self) -> None:
        """Signal the consumer to stop."""
        self._running = False


def main() -> None:
    """Entry point for Kafka consumer service."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    service = FraudDetectionKafkaService()

    # Handle shutdown signals
    def signal_handler(sig, frame):
        logger.info("Shutdown signal received")
        service.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    asyncio.run(service.run())


if __name__ == "__main__":
    main()
