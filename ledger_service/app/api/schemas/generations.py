from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from common.types.serializers import UtcDateTime

from ...models.reservation import Reservation


class GenerationRequest(BaseModel):
    model: str = Field(min_length=1, max_length=200)
    input: dict[str, Any] = Field(default_factory=dict)
    cost: int = Field(gt=0)
    correlation_id: str | None = None


class FreeGenerationRequest(BaseModel):
    model: str = Field(min_length=1, max_length=200)
    input: dict[str, Any] = Field(default_factory=dict)


class GenerationResponse(BaseModel):
    correlation_id: str | None = None
    status: str
    job_id: str | None = None
    result: dict[str, Any] | None = None
    balance: int | None = None


class ReserveRequest(BaseModel):
    cost: int = Field(gt=0)
    correlation_id: str | None = None
    reason: str = "generation"


class ReleaseRequest(BaseModel):
    reason: str = "generation_failed"


class ReservationResponse(BaseModel):
    correlation_id: str
    amount: int
    status: str
    expires_at: UtcDateTime
    balance: int | None = None

    @classmethod
    def from_domain(
        cls, reservation: Reservation, balance: int | None = None
    ) -> "ReservationResponse":
        return cls(
            correlation_id=reservation.correlation_id,
            amount=reservation.amount,
            status=reservation.status.value,
            expires_at=reservation.expires_at,
            balance=balance,
        )


class CommitResponse(BaseModel):
    correlation_id: str
    balance: int


class ReleaseResponse(BaseModel):
    correlation_id: str
    released: bool
    refunded: int
    balance: int
