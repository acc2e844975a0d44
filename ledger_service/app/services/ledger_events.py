"""원장 변경 이벤트 발행.

잔액 변경이 Mongo 에 확정된 뒤에만 호출된다. 발행 실패는 원장 결과에 영향을 주지 않는다.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime, timezone
from decimal import Decimal

from common.eventbus.core import EventPublisher
from common.eventbus.helpers import new_json_event
from common.eventbus.kafka import get_event_bus
from common.eventbus.topics import TOPIC_LEDGER_CREDIT, TOPIC_LEDGER_PAYMENT
from common.events.credit import CreditEventType, CreditGrantedEvent, CreditHoldEvent

from ..models.balance import Balance
from ..models.payment import ApplyResult, PaymentKind
from ..models.reservation import Reservation


logger = logging.getLogger(__name__)

EVENT_SOURCE = "ledger-service"
EVENT_VERSION = "1.0"


class LedgerEventPublisher:
    def __init__(self, bus: EventPublisher) -> None:
        self._bus = bus

    def credit_granted(
        self, result: ApplyResult, kind: PaymentKind, identity_key: str, amount: Decimal
    ) -> None:
        if result.is_duplicate:
            return
        event_id = f"{result.external_ref}:granted"
        payload = CreditGrantedEvent(
            id=event_id,
            type=CreditEventType.CREDIT_GRANTED,
            timestamp=datetime.now(timezone.utc).isoformat(),
            source=EVENT_SOURCE,
            version=EVENT_VERSION,
            identity_key=identity_key,
            external_ref=result.external_ref,
            kind=kind.value,
            amount=str(amount),
            credits=result.credited,
            balance=result.balance.credits if result.balance else 0,
        )
        self._publish(TOPIC_LEDGER_PAYMENT.base, event_id, asdict(payload))

    def hold_changed(
        self,
        event_type: str,
        reservation: Reservation,
        balance: Balance | None,
        reason: str = "",
    ) -> None:
        event_id = f"{reservation.correlation_id}:{event_type}"
        payload = CreditHoldEvent(
            id=event_id,
            type=event_type,
            timestamp=datetime.now(timezone.utc).isoformat(),
            source=EVENT_SOURCE,
            version=EVENT_VERSION,
            identity_key=reservation.identity_key,
            correlation_id=reservation.correlation_id,
            amount=reservation.amount,
            balance=balance.credits if balance else 0,
            reason=reason or reservation.reason,
        )
        self._publish(TOPIC_LEDGER_CREDIT.base, event_id, asdict(payload))

    def _publish(self, topic: str, event_id: str, payload: dict) -> None:
        try:
            self._bus.publish(topic, new_json_event(payload, event_id=event_id))
        except Exception as exc:  # noqa: BLE001
            logger.error("failed to publish ledger event %s: %s", event_id, exc)


def get_ledger_event_publisher() -> LedgerEventPublisher:
    return LedgerEventPublisher(get_event_bus())
