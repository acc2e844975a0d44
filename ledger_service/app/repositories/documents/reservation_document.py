from __future__ import annotations

from common.mongo.types import (
    BaseDocument,
    MongoDateTime,
    OptionalMongoDateTime,
    build_document_data_from_domain,
    from_object_id,
)

from ...models.reservation import Reservation, ReservationStatus


class ReservationDocument(BaseDocument):
    """MongoDB reservations 컬렉션 도큐먼트 모델."""

    correlation_id: str
    identity_key: str
    amount: int
    status: ReservationStatus
    reason: str
    job_id: str | None = None
    release_reason: str | None = None
    sweep_attempts: int = 0
    expires_at: MongoDateTime
    resolved_at: OptionalMongoDateTime = None

    @classmethod
    def from_domain(cls, reservation: Reservation) -> "ReservationDocument":
        data = build_document_data_from_domain(reservation)
        if data.get("id") is None:
            data.pop("id", None)
        return cls.model_validate(data)

    def to_domain(self) -> Reservation:
        return Reservation(
            id=from_object_id(self.id),
            correlation_id=self.correlation_id,
            identity_key=self.identity_key,
            amount=self.amount,
            status=self.status,
            reason=self.reason,
            job_id=self.job_id,
            release_reason=self.release_reason,
            sweep_attempts=self.sweep_attempts,
            expires_at=self.expires_at,
            resolved_at=self.resolved_at,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )
