from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum


class RefKind(StrEnum):
    """외부 참조 종류. 결제 계열은 무기한, request 는 짧은 TTL 로 보관한다."""

    CHAIN = "chain"
    CARD = "card"
    ADMIN = "admin"
    REFERRAL = "referral"
    REQUEST = "request"

    @property
    def is_payment(self) -> bool:
        return self is not RefKind.REQUEST


class ClaimStatus(StrEnum):
    CLAIMED = "claimed"
    APPLIED = "applied"


@dataclass(frozen=True, slots=True)
class ClaimResult:
    key: str
    claimed: bool


@dataclass(slots=True)
class IdempotencyKey:
    key: str
    kind: RefKind
    status: ClaimStatus
    claimed_at: datetime
    expires_at: datetime | None = None
