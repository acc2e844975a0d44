from __future__ import annotations

from datetime import datetime

from pymongo import ASCENDING, IndexModel
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from .documents.abuse_signal_document import AbuseSignalDocument
from .interfaces import AbuseSignalRepositoryInterface
from ..models.abuse import AbuseScope, AbuseSignal


class AbuseSignalRepository(AbuseSignalRepositoryInterface):
    """abuse_signals 컬렉션에 대한 MongoDB 접근 레이어."""

    def __init__(self, database: Database) -> None:
        self._db = database
        self._col = database["abuse_signals"]
        # 인덱스 생성 (애플리케이션 시작 시 보장되어야 함)
        # scope + key 복합 유니크 인덱스
        self._col.create_indexes(
            [
                IndexModel(
                    [("scope", ASCENDING), ("key", ASCENDING)],
                    unique=True,
                    name="uniq_scope_key",
                )
            ]
        )

    def try_increment(
        self,
        scope: AbuseScope,
        key: str,
        cap: int,
        window_cutoff: datetime,
        now: datetime,
    ) -> bool:
        """윈도우 카운터 증가 시도 (Atomic)."""
        if cap <= 0:
            return False

        for _ in range(2):
            # 1. 윈도우가 열려 있고 cap 미만인 경우에만 증가
            result = self._col.update_one(
                {
                    "scope": scope.value,
                    "key": key,
                    "window_started_at": {"$gt": window_cutoff},
                    "free_uses_count": {"$lt": cap},
                },
                {
                    "$inc": {"free_uses_count": 1},
                    "$set": {"last_used_at": now, "updated_at": now},
                },
            )
            if result.modified_count == 1:
                return True

            # 2. 윈도우가 지났거나 문서가 없으면 새 윈도우를 1 로 시작
            # 윈도우가 열려 있는 문서가 있으면 조건 불일치 -> insert 시도 -> 유니크 인덱스 충돌
            try:
                res_upsert = self._col.update_one(
                    {
                        "scope": scope.value,
                        "key": key,
                        "window_started_at": {"$lte": window_cutoff},
                    },
                    {
                        "$set": {
                            "free_uses_count": 1,
                            "window_started_at": now,
                            "last_used_at": now,
                            "updated_at": now,
                        },
                        "$setOnInsert": {"created_at": now},
                    },
                    upsert=True,
                )
            except DuplicateKeyError:
                # 윈도우가 열려 있는데 1단계에서 막혔다면 cap 도달.
                # 동시 요청이 방금 새 윈도우를 연 경우일 수 있으므로 1단계를 한 번 더 본다.
                continue

            if res_upsert.upserted_id is not None or res_upsert.modified_count > 0:
                return True

        return False

    def decrement(self, scope: AbuseScope, key: str, now: datetime) -> None:
        self._col.update_one(
            {"scope": scope.value, "key": key, "free_uses_count": {"$gt": 0}},
            {"$inc": {"free_uses_count": -1}, "$set": {"updated_at": now}},
        )

    def try_start_cooldown(
        self, scope: AbuseScope, key: str, cooldown_until: datetime, now: datetime
    ) -> bool:
        try:
            result = self._col.update_one(
                {
                    "scope": scope.value,
                    "key": key,
                    "$or": [
                        {"cooldown_until": None},
                        {"cooldown_until": {"$lte": now}},
                    ],
                },
                {
                    "$set": {
                        "cooldown_until": cooldown_until,
                        "last_used_at": now,
                        "updated_at": now,
                    },
                    "$setOnInsert": {
                        "free_uses_count": 0,
                        "window_started_at": now,
                        "created_at": now,
                    },
                },
                upsert=True,
            )
        except DuplicateKeyError:
            # 쿨다운 중인 문서가 이미 있음
            return False
        return result.upserted_id is not None or result.modified_count > 0

    def clear_cooldown(self, scope: AbuseScope, key: str, now: datetime) -> None:
        self._col.update_one(
            {"scope": scope.value, "key": key},
            {"$unset": {"cooldown_until": ""}, "$set": {"updated_at": now}},
        )

    def get(self, scope: AbuseScope, key: str) -> AbuseSignal | None:
        doc = self._col.find_one({"scope": scope.value, "key": key})
        if not doc:
            return None
        return AbuseSignalDocument.model_validate(doc).to_domain()
