"""Stripe 카드 결제 어댑터.

웹훅 서명 검증과 결제 상태 재확인만 담당한다. 잔액 반영은 CardPaymentReconciler 가 한다.
Checkout Session 으로 생성된 결제는 PaymentIntent ID 를 외부 참조로 통일해
payment_intent.succeeded 와 checkout.session.completed 가 같은 키로 수렴하게 한다.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Protocol

import stripe

from ..exceptions import InvalidInputError, UpstreamUnavailableError
from ..models.payment import ChargeStatus, ChargeVerification


logger = logging.getLogger(__name__)

IDENTITY_METADATA_KEY = "identity_key"
TIER_METADATA_KEY = "tier"

HANDLED_EVENT_TYPES = ("payment_intent.succeeded", "checkout.session.completed")

# 최소 단위가 주 단위와 같은 통화
ZERO_DECIMAL_CURRENCIES = frozenset(
    {"bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga", "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf"}
)


class CardProcessor(Protocol):
    def verify_charge(
        self, external_id: str
    ) -> ChargeVerification:  # pragma: no cover - Protocol
        ...

    def parse_webhook(
        self, payload: bytes, signature: str
    ) -> ChargeVerification | None:  # pragma: no cover - Protocol
        ...

    def create_payment_intent(
        self, identity_key: str, amount: Decimal, currency: str, tier: str
    ) -> tuple[str, str]:  # pragma: no cover - Protocol
        ...


def from_minor_units(amount: int, currency: str) -> Decimal:
    if currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return Decimal(amount)
    return Decimal(amount).scaleb(-2)


def to_minor_units(amount: Decimal, currency: str) -> int:
    if currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return int(amount)
    return int(amount.scaleb(2))


def _field(obj: Any, name: str) -> Any:
    try:
        return obj[name]
    except (KeyError, TypeError):
        return None


def _metadata(obj: Any) -> dict[str, str]:
    raw = _field(obj, "metadata")
    if not raw:
        return {}
    if isinstance(raw, dict):
        return {str(k): str(v) for k, v in raw.items()}
    return {str(k): str(raw[k]) for k in raw.keys()}


def _intent_status(status: str | None) -> ChargeStatus:
    if status == "succeeded":
        return ChargeStatus.SUCCEEDED
    if status == "canceled":
        return ChargeStatus.FAILED
    return ChargeStatus.PENDING


def _session_status(session: Any) -> ChargeStatus:
    if _field(session, "payment_status") in ("paid", "no_payment_required"):
        return ChargeStatus.SUCCEEDED
    if _field(session, "status") == "expired":
        return ChargeStatus.FAILED
    return ChargeStatus.PENDING


class StripeCardProcessor:
    def __init__(self, api_key: str, webhook_secret: str) -> None:
        if not api_key:
            raise RuntimeError("STRIPE_SECRET_KEY environment variable is required")
        self._api_key = api_key
        self._webhook_secret = webhook_secret

    def _from_intent(self, intent: Any) -> ChargeVerification:
        currency = str(_field(intent, "currency") or "usd")
        received = _field(intent, "amount_received") or _field(intent, "amount") or 0
        return ChargeVerification(
            external_id=str(_field(intent, "id")),
            status=_intent_status(_field(intent, "status")),
            amount=from_minor_units(int(received), currency),
            currency=currency,
            metadata=_metadata(intent),
        )

    def _from_session(self, session: Any) -> ChargeVerification:
        currency = str(_field(session, "currency") or "usd")
        payment_intent = _field(session, "payment_intent")
        if payment_intent is not None and not isinstance(payment_intent, str):
            payment_intent = _field(payment_intent, "id")
        return ChargeVerification(
            external_id=str(payment_intent or _field(session, "id")),
            status=_session_status(session),
            amount=from_minor_units(int(_field(session, "amount_total") or 0), currency),
            currency=currency,
            metadata=_metadata(session),
        )

    def verify_charge(self, external_id: str) -> ChargeVerification:
        """결제사 API 로 결제 상태/금액을 직접 확인한다. 클라이언트가 보낸 값은 믿지 않는다."""

        external_id = external_id.strip()
        try:
            if external_id.startswith("cs_"):
                session = stripe.checkout.Session.retrieve(
                    external_id, api_key=self._api_key
                )
                return self._from_session(session)
            if external_id.startswith("pi_"):
                intent = stripe.PaymentIntent.retrieve(external_id, api_key=self._api_key)
                return self._from_intent(intent)
        except stripe.InvalidRequestError as exc:
            logger.info("card payment lookup rejected: %s", exc, extra={"external_ref": external_id})
            raise InvalidInputError("unknown payment id") from exc
        except stripe.StripeError as exc:
            logger.error(
                "card processor unavailable: %s",
                exc,
                extra={"external_ref": external_id, "error_kind": UpstreamUnavailableError.kind},
            )
            raise UpstreamUnavailableError() from exc

        raise InvalidInputError("unsupported payment id")

    def parse_webhook(self, payload: bytes, signature: str) -> ChargeVerification | None:
        """서명된 웹훅을 검증해 결제 정보로 바꾼다. 처리하지 않는 이벤트는 None."""

        if not self._webhook_secret:
            raise RuntimeError("STRIPE_WEBHOOK_SECRET environment variable is required")
        try:
            event = stripe.Webhook.construct_event(
                payload=payload, sig_header=signature, secret=self._webhook_secret
            )
        except (ValueError, stripe.SignatureVerificationError) as exc:
            logger.warning("invalid card webhook: %s", exc)
            raise InvalidInputError("invalid webhook signature") from exc

        event_type = _field(event, "type")
        if event_type not in HANDLED_EVENT_TYPES:
            logger.debug("card webhook ignored (type=%s)", event_type)
            return None

        obj = _field(_field(event, "data"), "object")
        if event_type == "checkout.session.completed":
            return self._from_session(obj)
        return self._from_intent(obj)

    def create_payment_intent(
        self, identity_key: str, amount: Decimal, currency: str, tier: str
    ) -> tuple[str, str]:
        """결제 의도를 만들고 (payment_intent_id, client_secret) 를 반환한다.

        metadata 에 아이덴티티를 심어 두면 확인 경로에서 소유자를 검증할 수 있다.
        """

        try:
            intent = stripe.PaymentIntent.create(
                amount=to_minor_units(amount, currency),
                currency=currency.lower(),
                metadata={IDENTITY_METADATA_KEY: identity_key, TIER_METADATA_KEY: tier},
                automatic_payment_methods={"enabled": True},
                api_key=self._api_key,
            )
        except stripe.StripeError as exc:
            logger.error(
                "card payment intent creation failed: %s",
                exc,
                extra={"identity_key": identity_key, "error_kind": UpstreamUnavailableError.kind},
            )
            raise UpstreamUnavailableError() from exc
        return str(_field(intent, "id")), str(_field(intent, "client_secret"))
