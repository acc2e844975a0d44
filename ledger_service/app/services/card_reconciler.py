"""카드 결제 반영 서비스.

서명된 웹훅과 클라이언트 확인 요청 두 경로가 같은 멱등성 키(card:<payment id>)로 수렴한다.
먼저 도착한 쪽이 적립하고, 나중 쪽은 중복으로 처리된다.
"""

from __future__ import annotations

import logging
import os
import threading
from decimal import Decimal

from fastapi import Depends

from ..card.stripe_processor import (
    IDENTITY_METADATA_KEY,
    TIER_METADATA_KEY,
    CardProcessor,
    StripeCardProcessor,
)
from ..exceptions import InvalidInputError
from ..models.identity import IdentityTier, normalize_identity_key
from ..models.payment import ApplyResult, ChargeStatus, ChargeVerification
from .payment_reconciler import PaymentReconciler, get_payment_reconciler


logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "usd"
MIN_CARD_AMOUNT = Decimal("1")


class CardPaymentReconciler:
    def __init__(
        self,
        processor: CardProcessor,
        reconciler: PaymentReconciler,
        *,
        currency: str = DEFAULT_CURRENCY,
    ) -> None:
        self._processor = processor
        self._reconciler = reconciler
        self._currency = currency.lower()

    def create_intent(
        self, identity_key: str, amount: Decimal, tier: IdentityTier
    ) -> tuple[str, str]:
        if not amount.is_finite() or amount < MIN_CARD_AMOUNT:
            raise InvalidInputError("amount below the card minimum")
        return self._processor.create_payment_intent(
            identity_key, amount, self._currency, tier.value
        )

    def handle_webhook(self, payload: bytes, signature: str) -> ApplyResult | None:
        """웹훅 처리. 적립 대상이 아니면 None (웹훅은 항상 수신 확인한다)."""

        charge = self._processor.parse_webhook(payload, signature)
        if charge is None:
            return None
        if charge.status is not ChargeStatus.SUCCEEDED:
            logger.info("card webhook for unsettled payment ignored", extra={"external_ref": charge.external_id})
            return None

        raw_identity = charge.metadata.get(IDENTITY_METADATA_KEY)
        if not raw_identity:
            logger.warning(
                "card webhook without identity metadata ignored",
                extra={"external_ref": charge.external_id},
            )
            return None

        try:
            identity_key = normalize_identity_key(raw_identity)
        except InvalidInputError:
            logger.warning(
                "card webhook with malformed identity ignored",
                extra={"external_ref": charge.external_id},
            )
            return None

        try:
            return self._apply(charge, identity_key)
        except InvalidInputError as exc:
            # 재전송해도 결과가 같으므로 수신 확인하고 로그만 남긴다.
            logger.warning(
                "card webhook not creditable: %s",
                exc,
                extra={"identity_key": identity_key, "external_ref": charge.external_id},
            )
            return None

    def confirm(self, external_id: str, identity_key: str) -> ApplyResult:
        """클라이언트 확인. 결제사에서 상태와 금액을 다시 읽어 온 값만 쓴다."""

        if not external_id or not external_id.strip():
            raise InvalidInputError("payment id is required")

        charge = self._processor.verify_charge(external_id)
        if charge.status is ChargeStatus.PENDING:
            raise InvalidInputError("payment not completed yet")
        if charge.status is ChargeStatus.FAILED:
            raise InvalidInputError("payment failed")

        owner = charge.metadata.get(IDENTITY_METADATA_KEY)
        if not owner or normalize_identity_key(owner) != identity_key:
            logger.warning(
                "card confirmation identity mismatch",
                extra={"identity_key": identity_key, "external_ref": charge.external_id},
            )
            raise InvalidInputError("payment does not belong to this identity")

        return self._apply(charge, identity_key)

    def _apply(self, charge: ChargeVerification, identity_key: str) -> ApplyResult:
        if charge.currency.lower() != self._currency:
            raise InvalidInputError("unsupported currency")
        tier = IdentityTier.from_str(charge.metadata.get(TIER_METADATA_KEY))
        return self._reconciler.apply_card_payment(
            external_id=charge.external_id,
            identity_key=identity_key,
            amount=charge.amount,
            currency=charge.currency,
            tier=tier,
            metadata={"processor": "stripe"},
        )


_processor: StripeCardProcessor | None = None
_processor_lock = threading.Lock()


def get_card_processor() -> CardProcessor:
    global _processor
    if _processor is None:
        with _processor_lock:
            if _processor is None:
                _processor = StripeCardProcessor(
                    api_key=os.getenv("STRIPE_SECRET_KEY", "").strip(),
                    webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", "").strip(),
                )
    return _processor


def get_card_reconciler(
    processor: CardProcessor = Depends(get_card_processor),
    reconciler: PaymentReconciler = Depends(get_payment_reconciler),
) -> CardPaymentReconciler:
    return CardPaymentReconciler(processor, reconciler)
