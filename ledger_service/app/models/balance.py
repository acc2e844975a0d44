"""잔액 도메인 모델.

아이덴티티당 하나의 잔액 문서를 가진다.
credits == total_earned - total_spent 가 항상 성립해야 하며 credits 는 음수가 될 수 없다.
진행 중인 예약(hold)은 credits 에서 이미 빠져 있고 total_spent 에 포함되어 있다.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class Balance(BaseModel):
    """아이덴티티별 잔액."""

    id: str | None = None
    identity_key: str
    credits: int = 0
    total_earned: int = 0
    total_spent: int = 0
    holds: dict[str, int] = Field(default_factory=dict)  # correlation_id -> 예약 수량
    last_active: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def held(self) -> int:
        return sum(self.holds.values())

    def is_consistent(self) -> bool:
        return self.credits >= 0 and self.credits == self.total_earned - self.total_spent
