"""원장 크레딧 관련 이벤트 정의."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Self


class CreditEventType:
    """크레딧 이벤트 타입 상수."""

    CREDIT_GRANTED = "credit.granted"
    CREDIT_RESERVED = "credit.reserved"
    CREDIT_COMMITTED = "credit.committed"
    CREDIT_RELEASED = "credit.released"


@dataclass(slots=True)
class CreditGrantedEvent:
    """크레딧 적립 이벤트.

    체인 결제, 카드 결제, 관리자/추천 지급이 잔액에 반영되면 발행된다.
    """

    id: str
    type: str
    timestamp: str
    source: str
    version: str
    identity_key: str
    external_ref: str
    kind: str  # "chain" | "card" | "admin" | "referral"
    amount: str  # Decimal 문자열 (결제 금액)
    credits: int
    balance: int

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Self:
        return cls(
            id=str(data["id"]),
            type=str(data["type"]),
            timestamp=str(data["timestamp"]),
            source=str(data["source"]),
            version=str(data.get("version", "1.0")),
            identity_key=str(data["identity_key"]),
            external_ref=str(data["external_ref"]),
            kind=str(data["kind"]),
            amount=str(data["amount"]),
            credits=int(data["credits"]),
            balance=int(data["balance"]),
        )


@dataclass(slots=True)
class CreditHoldEvent:
    """예약(reserve) / 확정(commit) / 반환(release) 이벤트.

    type 으로 세 상태 전이를 구분하며, 같은 correlation_id 로 묶인다.
    """

    id: str
    type: str
    timestamp: str
    source: str
    version: str
    identity_key: str
    correlation_id: str
    amount: int
    balance: int
    reason: str

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Self:
        return cls(
            id=str(data["id"]),
            type=str(data["type"]),
            timestamp=str(data["timestamp"]),
            source=str(data["source"]),
            version=str(data.get("version", "1.0")),
            identity_key=str(data["identity_key"]),
            correlation_id=str(data["correlation_id"]),
            amount=int(data["amount"]),
            balance=int(data["balance"]),
            reason=str(data.get("reason", "")),
        )
