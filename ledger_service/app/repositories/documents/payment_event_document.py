from __future__ import annotations

from typing import Any

from common.mongo.types import (
    BaseDocument,
    MongoDateTime,
    MongoDecimal,
    build_document_data_from_domain,
    from_object_id,
)

from ...models.payment import PaymentEvent, PaymentKind


class PaymentEventDocument(BaseDocument):
    """MongoDB payment_events 컬렉션 도큐먼트 모델."""

    external_ref: str
    kind: PaymentKind
    identity_key: str
    amount: MongoDecimal
    currency: str
    credits_granted: int
    applied_at: MongoDateTime
    metadata: dict[str, Any] | None = None

    @classmethod
    def from_domain(cls, event: PaymentEvent) -> "PaymentEventDocument":
        data = build_document_data_from_domain(event)
        if data.get("id") is None:
            data.pop("id", None)
        return cls.model_validate(data)

    def to_domain(self) -> PaymentEvent:
        return PaymentEvent(
            id=from_object_id(self.id),
            external_ref=self.external_ref,
            kind=self.kind,
            identity_key=self.identity_key,
            amount=self.amount,
            currency=self.currency,
            credits_granted=self.credits_granted,
            applied_at=self.applied_at,
            metadata=self.metadata,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )
