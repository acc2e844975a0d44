from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from ...services.balance_service import BalanceService, get_balance_service
from ..dependencies import RequestIdentity, get_request_identity
from ..schemas.balances import BalanceResponse, PaymentEventResponse
from ..schemas.common import PaginatedResponse


router = APIRouter()


@router.get("/me", response_model=BalanceResponse, summary="내 크레딧 잔액 조회")
def get_my_balance(
    identity: RequestIdentity = Depends(get_request_identity),
    service: BalanceService = Depends(get_balance_service),
) -> BalanceResponse:
    return BalanceResponse.from_domain(service.get_balance(identity.identity_key))


@router.get(
    "/me/history",
    response_model=PaginatedResponse[PaymentEventResponse],
    summary="내 결제/지급 이력 조회",
)
def get_my_history(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    identity: RequestIdentity = Depends(get_request_identity),
    service: BalanceService = Depends(get_balance_service),
) -> PaginatedResponse[PaymentEventResponse]:
    events, total = service.get_history(identity.identity_key, page, page_size)
    return PaginatedResponse[PaymentEventResponse](
        items=[PaymentEventResponse.from_domain(event) for event in events],
        total=total,
        page=page,
        page_size=page_size,
    )
