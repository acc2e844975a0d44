"""운영자용 내부 API. 게이트웨이 밖으로 노출하지 않는다."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from ...exceptions import DuplicateEventError
from ...models.identity import normalize_identity_key
from ...models.payment import PaymentKind
from ...services.payment_reconciler import PaymentReconciler, get_payment_reconciler
from ..dependencies import require_admin
from ..schemas.admin import GrantRequest
from ..schemas.balances import ApplyResultResponse


router = APIRouter(dependencies=[Depends(require_admin)])


@router.post("/grants", response_model=ApplyResultResponse, summary="크레딧 수동 지급")
def grant_credits(
    body: GrantRequest,
    reconciler: PaymentReconciler = Depends(get_payment_reconciler),
) -> ApplyResultResponse:
    result = reconciler.apply_internal_grant(
        grant_id=body.grant_id,
        identity_key=normalize_identity_key(body.identity_key),
        credits=body.credits,
        kind=PaymentKind(body.kind),
        reason=body.reason,
    )
    if result.is_duplicate:
        raise DuplicateEventError("grant already applied")
    return ApplyResultResponse.from_domain(result)
