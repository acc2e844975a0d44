"""예약(reserve) 도메인 모델.

Requested -> Reserved -> {Committed | Released} 상태 전이를 가진다.
결과를 알 수 없는 외부 호출은 ambiguous 로 남겨 하류 상태 확인 후 정산하며,
재확인 한도를 넘기면 escalated 로 수동 검토 대상이 된다.
committing / releasing 은 hold 를 지우기 직전에 잡는 중간 상태다.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel

from .balance import Balance


class ReservationStatus(StrEnum):
    RESERVED = "reserved"
    COMMITTING = "committing"
    RELEASING = "releasing"
    COMMITTED = "committed"
    RELEASED = "released"
    AMBIGUOUS = "ambiguous"
    ESCALATED = "escalated"

    @property
    def is_final(self) -> bool:
        return self in (ReservationStatus.COMMITTED, ReservationStatus.RELEASED)


class Reservation(BaseModel):
    id: str | None = None
    correlation_id: str
    identity_key: str
    amount: int
    status: ReservationStatus
    reason: str
    job_id: str | None = None
    release_reason: str | None = None
    sweep_attempts: int = 0
    expires_at: datetime
    resolved_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class ReleaseResult(BaseModel):
    correlation_id: str
    released: bool  # 이번 호출이 환불을 수행했는지
    refunded: int
    balance: Balance | None = None
