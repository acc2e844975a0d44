from __future__ import annotations

from pydantic import BaseModel

from common.types.serializers import DecimalStr, UtcDateTime

from ...models.balance import Balance
from ...models.payment import ApplyResult, PaymentEvent


class BalanceResponse(BaseModel):
    identity_key: str
    credits: int
    total_earned: int
    total_spent: int
    held: int  # 진행 중인 예약으로 잡혀 있는 크레딧 (total_spent 에 포함)
    last_active: UtcDateTime | None = None

    @classmethod
    def from_domain(cls, balance: Balance) -> "BalanceResponse":
        return cls(
            identity_key=balance.identity_key,
            credits=balance.credits,
            total_earned=balance.total_earned,
            total_spent=balance.total_spent,
            held=balance.held,
            last_active=balance.last_active,
        )


class PaymentEventResponse(BaseModel):
    external_ref: str
    kind: str
    amount: DecimalStr
    currency: str
    credits_granted: int
    applied_at: UtcDateTime

    @classmethod
    def from_domain(cls, event: PaymentEvent) -> "PaymentEventResponse":
        return cls(
            external_ref=event.external_ref,
            kind=event.kind.value,
            amount=event.amount,
            currency=event.currency,
            credits_granted=event.credits_granted,
            applied_at=event.applied_at,
        )


class ApplyResultResponse(BaseModel):
    """결제 반영 결과. 이미 처리된 참조도 성공(already_processed=true)으로 응답한다."""

    status: str
    already_processed: bool
    credited: int
    balance: int

    @classmethod
    def from_domain(cls, result: ApplyResult) -> "ApplyResultResponse":
        return cls(
            status=result.status.value,
            already_processed=result.is_duplicate,
            credited=result.credited,
            balance=result.balance.credits if result.balance else 0,
        )
