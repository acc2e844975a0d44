from __future__ import annotations

from common.mongo.types import BaseDocument, MongoDateTime, OptionalMongoDateTime

from ...models.abuse import AbuseScope, AbuseSignal


class AbuseSignalDocument(BaseDocument):
    """MongoDB abuse_signals 컬렉션 도큐먼트 모델."""

    scope: AbuseScope
    key: str
    free_uses_count: int = 0
    window_started_at: MongoDateTime
    last_used_at: OptionalMongoDateTime = None
    cooldown_until: OptionalMongoDateTime = None

    def to_domain(self) -> AbuseSignal:
        return AbuseSignal(
            scope=self.scope,
            key=self.key,
            free_uses_count=self.free_uses_count,
            window_started_at=self.window_started_at,
            last_used_at=self.last_used_at,
            cooldown_until=self.cooldown_until,
        )
