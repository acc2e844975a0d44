from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict

from confluent_kafka import Producer

from .config import get_brokers, get_message_max_bytes
from .core import Event, EventPublisher, NullEventBus

logger = logging.getLogger(__name__)


class KafkaEventBus:
    """Kafka 기반 발행 전용 EventBus 구현.

    원장 변경은 이미 Mongo 에 반영된 뒤 발행되므로, 전송 실패는 로그로만 남기고
    호출 측에 예외를 올리지 않는다.
    """

    def __init__(self, brokers: str) -> None:
        conf: dict[str, object] = {
            "bootstrap.servers": brokers,
            "enable.idempotence": True,
        }
        max_bytes = get_message_max_bytes()
        if max_bytes is not None:
            conf["message.max.bytes"] = max_bytes
        self._producer = Producer(conf)
        self._brokers = brokers

    def close(self) -> None:
        self._producer.flush()

    def publish(self, topic: str, event: Event) -> None:
        payload = json.dumps(asdict(event), ensure_ascii=False, default=str).encode(
            "utf-8"
        )

        def _delivery_callback(err, msg) -> None:  # type: ignore[no-untyped-def]
            if err is not None:
                logger.error("failed to deliver message to %s: %s", msg.topic(), err)

        try:
            self._producer.produce(
                topic=topic,
                value=payload,
                key=event.id.encode("utf-8"),
                callback=_delivery_callback,
            )
            self._producer.poll(0)
        except Exception as exc:  # noqa: BLE001
            logger.error("failed to enqueue event %s to %s: %s", event.id, topic, exc)


_bus: EventPublisher | None = None
_bus_lock = threading.Lock()


def get_event_bus() -> EventPublisher:
    """전역 발행기 싱글톤. 브로커가 없으면 NullEventBus 를 돌려준다."""

    global _bus

    if _bus is not None:
        return _bus

    with _bus_lock:
        if _bus is None:
            brokers = get_brokers()
            if brokers:
                _bus = KafkaEventBus(brokers)
            else:
                logger.info("KAFKA_BOOTSTRAP_SERVERS not set, ledger events disabled")
                _bus = NullEventBus()
    return _bus
