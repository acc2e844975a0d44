from __future__ import annotations

from pydantic import Field

from common.mongo.types import (
    BaseDocument,
    OptionalMongoDateTime,
    from_object_id,
)

from ...models.balance import Balance


class BalanceDocument(BaseDocument):
    """MongoDB balances 컬렉션 도큐먼트 모델."""

    identity_key: str
    credits: int = 0
    total_earned: int = 0
    total_spent: int = 0
    holds: dict[str, int] = Field(default_factory=dict)
    # 최근 반영된 외부 참조 (최대 APPLIED_REFS_LIMIT 개). 재시도된 적립을 무시하는 데 쓴다.
    applied_refs: list[str] = Field(default_factory=list)
    last_active: OptionalMongoDateTime = None

    def to_domain(self) -> Balance:
        return Balance(
            id=from_object_id(self.id),
            identity_key=self.identity_key,
            credits=self.credits,
            total_earned=self.total_earned,
            total_spent=self.total_spent,
            holds=dict(self.holds),
            last_active=self.last_active,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )
