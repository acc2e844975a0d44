"""잔액 레포지토리 구현체.

잔액 문서 하나에 대한 조건부 find_one_and_update 만으로 모든 변경을 수행한다.
필터 조건이 곧 불변식(credits >= 0, 참조 1회 반영, 예약 1회 환불)이다.
"""

from __future__ import annotations

import logging
from datetime import datetime

from pymongo import ASCENDING, IndexModel, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from .documents.balance_document import BalanceDocument
from .interfaces import BalanceRepositoryInterface
from ..models.balance import Balance


logger = logging.getLogger(__name__)

APPLIED_REFS_LIMIT = 50


class BalanceRepository(BalanceRepositoryInterface):
    """balances 컬렉션에 대한 MongoDB 접근 레이어."""

    def __init__(self, database: Database) -> None:
        self._db = database
        self._col = database["balances"]
        self._col.create_indexes(
            [
                IndexModel(
                    [("identity_key", ASCENDING)],
                    name="uniq_identity_key",
                    unique=True,
                ),
            ]
        )

    def get(self, identity_key: str) -> Balance | None:
        doc = self._col.find_one({"identity_key": identity_key})
        if not doc:
            return None
        return BalanceDocument.model_validate(doc).to_domain()

    def credit(
        self, identity_key: str, credits: int, external_ref: str, now: datetime
    ) -> Balance | None:
        update = {
            "$inc": {"credits": credits, "total_earned": credits},
            "$set": {"last_active": now, "updated_at": now},
            "$push": {
                "applied_refs": {"$each": [external_ref], "$slice": -APPLIED_REFS_LIMIT}
            },
            "$setOnInsert": {
                "total_spent": 0,
                "holds": {},
                "created_at": now,
            },
        }
        query = {"identity_key": identity_key, "applied_refs": {"$ne": external_ref}}

        # 잔액 문서가 없던 두 요청이 동시에 upsert 하면 한쪽이 DuplicateKeyError 를 받는다.
        # 이 경우 문서는 이미 생겼으므로 한 번 더 시도하면 일반 update 가 된다.
        for _ in range(2):
            try:
                doc = self._col.find_one_and_update(
                    query,
                    update,
                    upsert=True,
                    return_document=ReturnDocument.AFTER,
                )
            except DuplicateKeyError:
                already = self._col.find_one(
                    {"identity_key": identity_key, "applied_refs": external_ref},
                    projection={"_id": 1},
                )
                if already:
                    return None
                continue
            return BalanceDocument.model_validate(doc).to_domain()

        logger.warning(
            "balance credit lost upsert race twice",
            extra={"identity_key": identity_key, "external_ref": external_ref},
        )
        return None

    def hold(
        self, identity_key: str, correlation_id: str, amount: int, now: datetime
    ) -> Balance | None:
        hold_path = f"holds.{correlation_id}"
        doc = self._col.find_one_and_update(
            {
                "identity_key": identity_key,
                "credits": {"$gte": amount},
                hold_path: {"$exists": False},
            },
            {
                "$inc": {"credits": -amount, "total_spent": amount},
                "$set": {hold_path: amount, "last_active": now, "updated_at": now},
            },
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            return None
        return BalanceDocument.model_validate(doc).to_domain()

    def release_hold(
        self, identity_key: str, correlation_id: str, amount: int, now: datetime
    ) -> Balance | None:
        hold_path = f"holds.{correlation_id}"
        doc = self._col.find_one_and_update(
            {"identity_key": identity_key, hold_path: amount},
            {
                "$inc": {"credits": amount, "total_spent": -amount},
                "$unset": {hold_path: ""},
                "$set": {"updated_at": now},
            },
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            return None
        return BalanceDocument.model_validate(doc).to_domain()

    def commit_hold(
        self, identity_key: str, correlation_id: str, now: datetime
    ) -> Balance | None:
        hold_path = f"holds.{correlation_id}"
        doc = self._col.find_one_and_update(
            {"identity_key": identity_key, hold_path: {"$exists": True}},
            {"$unset": {hold_path: ""}, "$set": {"updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            return None
        return BalanceDocument.model_validate(doc).to_domain()
