from __future__ import annotations

from datetime import datetime

from pymongo import ASCENDING, IndexModel
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from .documents.idempotency_key_document import IdempotencyKeyDocument
from .interfaces import IdempotencyKeyRepositoryInterface
from ..models.idempotency import ClaimStatus, IdempotencyKey, RefKind


class IdempotencyKeyRepository(IdempotencyKeyRepositoryInterface):
    """idempotency_keys 컬렉션에 대한 MongoDB 접근 레이어."""

    def __init__(self, database: Database) -> None:
        self._db = database
        self._col = database["idempotency_keys"]
        self._col.create_indexes(
            [
                IndexModel(
                    [("key", ASCENDING)],
                    name="uniq_idempotency_key",
                    unique=True,
                ),
                # expires_at 이 없는 문서는 TTL 삭제 대상이 아니다.
                IndexModel(
                    [("expires_at", ASCENDING)],
                    name="ttl_expires_at",
                    expireAfterSeconds=0,
                ),
            ]
        )

    def insert_claim(
        self, key: str, kind: RefKind, now: datetime, expires_at: datetime | None
    ) -> bool:
        doc = {
            "key": key,
            "kind": kind.value,
            "status": ClaimStatus.CLAIMED.value,
            "claimed_at": now,
        }
        if expires_at is not None:
            doc["expires_at"] = expires_at
        try:
            self._col.insert_one(doc)
        except DuplicateKeyError:
            return False
        return True

    def reclaim_expired(
        self, key: str, kind: RefKind, now: datetime, expires_at: datetime | None
    ) -> bool:
        # TTL 모니터는 최대 60초 주기로 돌기 때문에 만료 후에도 문서가 잠시 남는다.
        update: dict = {
            "$set": {
                "kind": kind.value,
                "status": ClaimStatus.CLAIMED.value,
                "claimed_at": now,
            },
        }
        if expires_at is None:
            update["$unset"] = {"expires_at": ""}
        else:
            update["$set"]["expires_at"] = expires_at

        result = self._col.update_one(
            {"key": key, "expires_at": {"$lte": now}},
            update,
        )
        return result.modified_count == 1

    def find(self, key: str, now: datetime) -> IdempotencyKey | None:
        doc = self._col.find_one(
            {
                "key": key,
                "$or": [
                    {"expires_at": {"$exists": False}},
                    {"expires_at": {"$gt": now}},
                ],
            }
        )
        if not doc:
            return None
        return IdempotencyKeyDocument.model_validate(doc).to_domain()

    def mark_applied(self, key: str, now: datetime) -> bool:
        result = self._col.update_one(
            {"key": key},
            {"$set": {"status": ClaimStatus.APPLIED.value, "applied_at": now}},
        )
        return result.matched_count == 1

    def delete(self, key: str) -> bool:
        result = self._col.delete_one({"key": key})
        return result.deleted_count == 1
