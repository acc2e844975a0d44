from __future__ import annotations

from pydantic import BaseModel, ConfigDict

from common.mongo.types import MongoDateTime, OptionalMongoDateTime

from ...models.idempotency import ClaimStatus, IdempotencyKey, RefKind


class IdempotencyKeyDocument(BaseModel):
    """MongoDB idempotency_keys 컬렉션 도큐먼트 모델.

    expires_at 이 없는 문서(결제 참조)는 TTL 인덱스 대상이 아니므로 영구 보관된다.
    """

    model_config = ConfigDict(extra="ignore")

    key: str
    kind: RefKind
    status: ClaimStatus
    claimed_at: MongoDateTime
    applied_at: OptionalMongoDateTime = None
    expires_at: OptionalMongoDateTime = None

    def to_domain(self) -> IdempotencyKey:
        return IdempotencyKey(
            key=self.key,
            kind=self.kind,
            status=self.status,
            claimed_at=self.claimed_at,
            expires_at=self.expires_at,
        )
