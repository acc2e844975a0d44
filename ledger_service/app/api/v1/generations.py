"""생성 작업 API.

유료 생성은 크레딧 게이트(reserve -> invoke -> commit/release)를 거치고,
무료 생성은 어뷰즈 가드의 허용을 받은 경우에만 수행한다.
외부 작업을 직접 호출하는 클라이언트를 위해 예약 단계별 API 도 제공한다.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ...exceptions import InvalidInputError, UpstreamUnavailableError
from ...generation.provider import GenerationProvider
from ...generation.queue_provider import get_generation_provider
from ...models.generation import GenerationStatus
from ...models.reservation import Reservation
from ...services.abuse_guard import (
    AbuseGuard,
    device_signature,
    extract_client_origin,
    get_abuse_guard,
)
from ...services.credit_gate import CreditGate, get_credit_gate
from ..dependencies import RequestIdentity, get_request_identity
from ..schemas.generations import (
    CommitResponse,
    FreeGenerationRequest,
    GenerationRequest,
    GenerationResponse,
    ReleaseRequest,
    ReleaseResponse,
    ReservationResponse,
    ReserveRequest,
)


logger = logging.getLogger(__name__)

router = APIRouter()


def get_provider() -> GenerationProvider:
    try:
        return get_generation_provider()
    except RuntimeError as exc:
        logger.error("generation provider not configured: %s", exc)
        raise UpstreamUnavailableError("generation is not available") from exc


def _owned_reservation(
    gate: CreditGate, correlation_id: str, identity: RequestIdentity
) -> Reservation:
    reservation = gate.get(correlation_id)
    if reservation.identity_key != identity.identity_key:
        # 다른 아이덴티티의 예약 존재 여부를 드러내지 않는다.
        raise InvalidInputError("unknown reservation")
    return reservation


@router.post("", response_model=GenerationResponse, summary="유료 생성 작업 실행")
def run_generation(
    body: GenerationRequest,
    identity: RequestIdentity = Depends(get_request_identity),
    gate: CreditGate = Depends(get_credit_gate),
    provider: GenerationProvider = Depends(get_provider),
) -> GenerationResponse:
    result = gate.run(
        identity.identity_key,
        body.cost,
        {"model": body.model, "input": body.input},
        provider,
        correlation_id=body.correlation_id,
    )
    if not result.committed:
        raise UpstreamUnavailableError("generation failed; credits were refunded")

    return GenerationResponse(
        correlation_id=result.correlation_id,
        status=result.outcome.status.value,
        job_id=result.outcome.job_id,
        result=result.outcome.result,
        balance=result.balance.credits if result.balance else None,
    )


@router.post("/free", response_model=GenerationResponse, summary="무료 생성 작업 실행")
def run_free_generation(
    body: FreeGenerationRequest,
    request: Request,
    identity: RequestIdentity = Depends(get_request_identity),
    guard: AbuseGuard = Depends(get_abuse_guard),
    provider: GenerationProvider = Depends(get_provider),
) -> GenerationResponse:
    origin = extract_client_origin(
        request.headers, request.client.host if request.client else None
    )
    device = device_signature(request.headers)

    decision = guard.admit(
        origin,
        device,
        email=identity.email,
        account_created_at=identity.account_created_at,
        account_required=not identity.is_guest,
    )
    if not decision.allowed:
        headers = None
        if decision.retry_after_seconds:
            headers = {"Retry-After": str(decision.retry_after_seconds)}
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"code": "free_use_denied", "message": decision.reason},
            headers=headers,
        )

    # 허용된 사용은 작업 결과와 관계없이 카운트된 채로 남는다.
    outcome = provider.invoke({"model": body.model, "input": body.input})

    if outcome.status is GenerationStatus.FAILURE:
        logger.info(
            "free generation failed",
            extra={"identity_key": identity.identity_key},
        )
        raise UpstreamUnavailableError("generation failed")

    return GenerationResponse(
        status=outcome.status.value,
        job_id=outcome.job_id,
        result=outcome.result,
    )


# -------- reservations --------


@router.post(
    "/reservations",
    response_model=ReservationResponse,
    summary="크레딧 예약",
)
def reserve_credits(
    body: ReserveRequest,
    identity: RequestIdentity = Depends(get_request_identity),
    gate: CreditGate = Depends(get_credit_gate),
) -> ReservationResponse:
    reservation, balance = gate.reserve(
        identity.identity_key, body.cost, body.correlation_id, body.reason
    )
    return ReservationResponse.from_domain(reservation, balance.credits)


@router.get(
    "/reservations/{correlation_id}",
    response_model=ReservationResponse,
    summary="예약 상태 조회",
)
def get_reservation(
    correlation_id: str,
    identity: RequestIdentity = Depends(get_request_identity),
    gate: CreditGate = Depends(get_credit_gate),
) -> ReservationResponse:
    return ReservationResponse.from_domain(_owned_reservation(gate, correlation_id, identity))


@router.post(
    "/reservations/{correlation_id}/commit",
    response_model=CommitResponse,
    summary="예약 확정",
)
def commit_reservation(
    correlation_id: str,
    identity: RequestIdentity = Depends(get_request_identity),
    gate: CreditGate = Depends(get_credit_gate),
) -> CommitResponse:
    _owned_reservation(gate, correlation_id, identity)
    balance = gate.commit(correlation_id)
    return CommitResponse(correlation_id=correlation_id, balance=balance.credits)


@router.post(
    "/reservations/{correlation_id}/release",
    response_model=ReleaseResponse,
    summary="예약 반환 (환불)",
)
def release_reservation(
    correlation_id: str,
    body: ReleaseRequest | None = None,
    identity: RequestIdentity = Depends(get_request_identity),
    gate: CreditGate = Depends(get_credit_gate),
) -> ReleaseResponse:
    _owned_reservation(gate, correlation_id, identity)
    result = gate.release(correlation_id, (body or ReleaseRequest()).reason)
    return ReleaseResponse(
        correlation_id=correlation_id,
        released=result.released,
        refunded=result.refunded,
        balance=result.balance.credits if result.balance else 0,
    )
