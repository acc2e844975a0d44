"""결제 확인 API.

체인 결제는 클라이언트가 제출한 트랜잭션을 확인하거나, 지갑 아이덴티티라면
수신 지갑을 스캔해 그 지갑이 보낸 전송을 찾아 반영한다.
카드 결제는 결제사 웹훅과 클라이언트 확인 요청 중 먼저 도착한 쪽이 반영한다.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Header, Request
from starlette.concurrency import run_in_threadpool

from ...chains.scanner import ChainPaymentScanner, get_chain_scanner
from ...exceptions import InvalidInputError
from ...models.payment import ApplyResult, TransferMatch
from ...services.card_reconciler import CardPaymentReconciler, get_card_reconciler
from ...services.payment_reconciler import (
    PaymentReconciler,
    get_chain_payment_reconciler,
)
from ..dependencies import RequestIdentity, get_request_identity
from ..schemas.balances import ApplyResultResponse
from ..schemas.payments import (
    CardConfirmRequest,
    CardIntentRequest,
    CardIntentResponse,
    CardWebhookResponse,
    ChainTransactionRequest,
    ChainVerifyRequest,
    ChainVerifyResponse,
    ChainWallet,
    ChainWalletsResponse,
)


router = APIRouter()


# -------- chain --------


@router.get(
    "/chain/wallets",
    response_model=ChainWalletsResponse,
    summary="체인별 결제 수신 지갑 조회",
)
def list_chain_wallets(
    scanner: ChainPaymentScanner = Depends(get_chain_scanner),
) -> ChainWalletsResponse:
    return ChainWalletsResponse(
        items=[
            ChainWallet(
                chain=target.name,
                token_symbol=target.config.token_symbol,
                token_address=target.config.token_address,
                recipient=target.recipient,
            )
            for target in scanner.targets
        ]
    )


@router.post(
    "/chain/verify",
    response_model=ChainVerifyResponse,
    summary="체인 결제 확인 및 크레딧 적립",
)
def verify_chain_payment(
    body: ChainVerifyRequest,
    identity: RequestIdentity = Depends(get_request_identity),
    reconciler: PaymentReconciler = Depends(get_chain_payment_reconciler),
) -> ChainVerifyResponse:
    """기대 금액의 전송을 아직 찾지 못했으면 found=false (클라이언트가 잠시 후 재시도).

    지갑 아이덴티티 전용. 그 지갑이 보낸 전송만 매칭한다.
    """

    found = reconciler.verify_and_apply(
        identity.identity_key,
        body.expected_amount,
        chains=body.chains,
        tier=identity.tier,
    )
    return _verify_response(found)


@router.post(
    "/chain/transactions",
    response_model=ChainVerifyResponse,
    summary="제출한 체인 트랜잭션 확인 및 크레딧 적립",
)
def submit_chain_transaction(
    body: ChainTransactionRequest,
    identity: RequestIdentity = Depends(get_request_identity),
    reconciler: PaymentReconciler = Depends(get_chain_payment_reconciler),
) -> ChainVerifyResponse:
    """트랜잭션이 아직 확정되지 않았으면 found=false. 이미 반영된 해시는 duplicate."""

    found = reconciler.verify_transaction(
        identity.identity_key,
        body.chain.strip().lower(),
        body.tx_hash,
        expected_amount=body.expected_amount,
        tier=identity.tier,
    )
    return _verify_response(found)


def _verify_response(
    found: tuple[TransferMatch, ApplyResult] | None,
) -> ChainVerifyResponse:
    if found is None:
        return ChainVerifyResponse(found=False)
    match, result = found
    return ChainVerifyResponse(
        found=True,
        chain=match.chain,
        tx_hash=match.tx_hash,
        result=ApplyResultResponse.from_domain(result),
    )


# -------- card --------


@router.post(
    "/card/intents",
    response_model=CardIntentResponse,
    summary="카드 결제 생성",
)
def create_card_intent(
    body: CardIntentRequest,
    identity: RequestIdentity = Depends(get_request_identity),
    cards: CardPaymentReconciler = Depends(get_card_reconciler),
) -> CardIntentResponse:
    payment_id, client_secret = cards.create_intent(
        identity.identity_key, body.amount, identity.tier
    )
    return CardIntentResponse(payment_id=payment_id, client_secret=client_secret)


@router.post(
    "/card/confirm",
    response_model=ApplyResultResponse,
    summary="카드 결제 확인 및 크레딧 적립",
)
def confirm_card_payment(
    body: CardConfirmRequest,
    identity: RequestIdentity = Depends(get_request_identity),
    cards: CardPaymentReconciler = Depends(get_card_reconciler),
) -> ApplyResultResponse:
    result = cards.confirm(body.payment_id.strip(), identity.identity_key)
    return ApplyResultResponse.from_domain(result)


@router.post(
    "/card/webhook",
    response_model=CardWebhookResponse,
    summary="카드 결제사 웹훅",
)
async def card_webhook(
    request: Request,
    stripe_signature: Annotated[str | None, Header()] = None,
    cards: CardPaymentReconciler = Depends(get_card_reconciler),
) -> CardWebhookResponse:
    # 서명 검증에는 원문 바이트가 필요하다.
    payload = await request.body()
    if not stripe_signature:
        raise InvalidInputError("missing webhook signature")

    result = await run_in_threadpool(cards.handle_webhook, payload, stripe_signature)
    return CardWebhookResponse(credited=result.credited if result else 0)
