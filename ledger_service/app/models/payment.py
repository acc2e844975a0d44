"""결제 이벤트 및 체인 전송 관련 도메인 모델."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any

from pydantic import BaseModel

from .balance import Balance


class PaymentKind(StrEnum):
    CHAIN = "chain"
    CARD = "card"
    ADMIN = "admin"
    REFERRAL = "referral"


class PaymentEvent(BaseModel):
    """잔액에 반영된 외부 금전 이벤트. 생성 후 변경하지 않는다."""

    id: str | None = None
    external_ref: str  # 멱등성 가드 키와 동일 (예: "chain:base:0xabc...")
    kind: PaymentKind
    identity_key: str
    amount: Decimal  # 결제 금액 (토큰 또는 법정화폐 단위)
    currency: str
    credits_granted: int
    applied_at: datetime
    metadata: dict[str, Any] | None = None
    created_at: datetime
    updated_at: datetime


class TransferLog(BaseModel):
    """체인 RPC 가 돌려준 토큰 전송 한 건."""

    tx_hash: str
    sender: str
    recipient: str
    amount: Decimal
    block_number: int


class AmountWindow(BaseModel):
    """기대 금액과 허용 오차. 법정화폐/토큰 환산 반올림을 흡수한다."""

    expected: Decimal
    tolerance: Decimal = Decimal("0.01")

    @property
    def lower(self) -> Decimal:
        return self.expected * (Decimal(1) - self.tolerance)

    @property
    def upper(self) -> Decimal:
        return self.expected * (Decimal(1) + self.tolerance)

    def contains(self, amount: Decimal) -> bool:
        return self.lower <= amount <= self.upper


class TransferMatch(BaseModel):
    """스캐너가 찾은 결제 전송."""

    chain: str
    token_symbol: str
    token_address: str
    tx_hash: str
    sender: str
    recipient: str
    amount: Decimal
    block_number: int


class ApplyStatus(StrEnum):
    CREDITED = "credited"
    DUPLICATE = "duplicate"


class ApplyResult(BaseModel):
    status: ApplyStatus
    external_ref: str
    credited: int
    balance: Balance | None = None

    @property
    def is_duplicate(self) -> bool:
        return self.status is ApplyStatus.DUPLICATE


class ChargeStatus(StrEnum):
    SUCCEEDED = "succeeded"
    PENDING = "pending"
    FAILED = "failed"


class ChargeVerification(BaseModel):
    """카드 결제사에서 서버가 직접 확인한 결제 정보."""

    external_id: str
    status: ChargeStatus
    amount: Decimal  # 주 통화 단위 (센트 -> 달러 변환 후)
    currency: str
    metadata: dict[str, str]
