from __future__ import annotations

from datetime import datetime

from pymongo import ASCENDING, IndexModel, ReturnDocument
from pymongo.database import Database

from common.mongo.types import from_object_id

from .documents.reservation_document import ReservationDocument
from .interfaces import ReservationRepositoryInterface
from ..models.reservation import Reservation, ReservationStatus


# 정산이 끝난 예약은 7일 뒤 삭제 (원장 기록은 잔액과 결제 이벤트에 남는다)
RESOLVED_RETENTION_SECONDS = 7 * 24 * 3600


class ReservationRepository(ReservationRepositoryInterface):
    """reservations 컬렉션에 대한 MongoDB 접근 레이어."""

    def __init__(self, database: Database) -> None:
        self._db = database
        self._col = database["reservations"]
        self._col.create_indexes(
            [
                IndexModel(
                    [("correlation_id", ASCENDING)],
                    name="uniq_correlation_id",
                    unique=True,
                ),
                IndexModel(
                    [("status", ASCENDING), ("expires_at", ASCENDING)],
                    name="idx_status_expires_at",
                ),
                IndexModel(
                    [("resolved_at", ASCENDING)],
                    name="ttl_resolved_at",
                    expireAfterSeconds=RESOLVED_RETENTION_SECONDS,
                ),
            ]
        )

    def create(self, reservation: Reservation) -> Reservation:
        doc = ReservationDocument.from_domain(reservation)
        result = self._col.insert_one(doc.to_mongo_record())
        return reservation.model_copy(update={"id": from_object_id(result.inserted_id)})

    def find(self, correlation_id: str) -> Reservation | None:
        doc = self._col.find_one({"correlation_id": correlation_id})
        if not doc:
            return None
        return ReservationDocument.model_validate(doc).to_domain()

    def delete(self, correlation_id: str) -> bool:
        result = self._col.delete_one({"correlation_id": correlation_id})
        return result.deleted_count == 1

    def transition(
        self,
        correlation_id: str,
        from_statuses: tuple[ReservationStatus, ...],
        to_status: ReservationStatus,
        now: datetime,
        *,
        release_reason: str | None = None,
        job_id: str | None = None,
    ) -> Reservation | None:
        fields: dict = {"status": to_status.value, "updated_at": now}
        if to_status.is_final:
            fields["resolved_at"] = now
        if release_reason is not None:
            fields["release_reason"] = release_reason
        if job_id is not None:
            fields["job_id"] = job_id

        doc = self._col.find_one_and_update(
            {
                "correlation_id": correlation_id,
                "status": {"$in": [status.value for status in from_statuses]},
            },
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            return None
        return ReservationDocument.model_validate(doc).to_domain()

    def record_sweep_attempt(
        self, correlation_id: str, expires_at: datetime, now: datetime
    ) -> Reservation | None:
        doc = self._col.find_one_and_update(
            {
                "correlation_id": correlation_id,
                "status": ReservationStatus.AMBIGUOUS.value,
            },
            {
                "$inc": {"sweep_attempts": 1},
                "$set": {"expires_at": expires_at, "updated_at": now},
            },
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            return None
        return ReservationDocument.model_validate(doc).to_domain()

    def list_expired(
        self, statuses: tuple[ReservationStatus, ...], now: datetime, limit: int
    ) -> list[Reservation]:
        cursor = self._col.find(
            {
                "status": {"$in": [status.value for status in statuses]},
                "expires_at": {"$lte": now},
            },
            sort=[("expires_at", 1)],
            limit=limit,
        )
        return [ReservationDocument.model_validate(raw).to_domain() for raw in cursor]
