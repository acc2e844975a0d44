"""결제 반영 서비스.

외부 결제 이벤트(체인 전송, 카드 결제, 관리자/추천 지급)를 잔액 변경으로 바꾼다.
순서는 항상 claim -> 잔액 증가 -> 결제 이벤트 기록 -> claim 완료 표시이며,
잔액 증가가 끝내 실패하면 claim 을 되돌린다. (claim 만 되고 적립 안 된 상태를 남기지 않는다.)
"""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable

from fastapi import Depends
from pymongo.database import Database
from pymongo.errors import PyMongoError

from common.mongo.client import get_database
from common.mongo.retry import with_retry

from ..chains.scanner import ChainPaymentScanner, get_chain_scanner
from ..config import get_config
from ..exceptions import InvalidInputError, PersistenceError
from ..models.identity import IdentityTier, wallet_address_of, wallet_chain_kind
from ..models.idempotency import RefKind
from ..models.payment import (
    AmountWindow,
    ApplyResult,
    ApplyStatus,
    PaymentEvent,
    PaymentKind,
    TransferMatch,
)
from ..repositories.balance_repository import BalanceRepository
from ..repositories.interfaces import (
    BalanceRepositoryInterface,
    PaymentEventRepositoryInterface,
)
from ..repositories.payment_event_repository import PaymentEventRepository
from .idempotency_guard import IdempotencyGuard, get_idempotency_guard
from .ledger_events import LedgerEventPublisher, get_ledger_event_publisher
from .pricing import PricingPolicy, RatePricingPolicy


logger = logging.getLogger(__name__)

DEFAULT_MAX_PAYMENT_AMOUNT = Decimal("100000")
MAX_GRANT_CREDITS = 1_000_000

_REF_KIND_BY_PAYMENT: dict[PaymentKind, RefKind] = {
    PaymentKind.CHAIN: RefKind.CHAIN,
    PaymentKind.CARD: RefKind.CARD,
    PaymentKind.ADMIN: RefKind.ADMIN,
    PaymentKind.REFERRAL: RefKind.REFERRAL,
}


def chain_ref(chain: str, tx_hash: str) -> str:
    """체인 참조 정규화. EVM tx hash 는 대소문자 구분이 없고 Solana 서명은 구분한다."""
    tx_hash = tx_hash.strip()
    if tx_hash.startswith("0x"):
        tx_hash = tx_hash.lower()
    return f"{chain.lower()}:{tx_hash}"


_EVM_TX_HASH = re.compile(r"^0x[0-9a-fA-F]{64}$")
_SOLANA_SIGNATURE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{64,88}$")


def validate_tx_hash(chain_kind: str, tx_hash: str) -> str:
    tx_hash = tx_hash.strip()
    pattern = _SOLANA_SIGNATURE if chain_kind == "solana" else _EVM_TX_HASH
    if not pattern.match(tx_hash):
        raise InvalidInputError("invalid transaction hash")
    return tx_hash


def validate_payment_amount(amount: Decimal, max_amount: Decimal) -> None:
    if not amount.is_finite():
        raise InvalidInputError("amount must be a finite number")
    if amount <= 0:
        raise InvalidInputError("amount must be positive")
    if amount > max_amount:
        raise InvalidInputError("amount exceeds the allowed maximum")


class PaymentReconciler:
    def __init__(
        self,
        balance_repo: BalanceRepositoryInterface,
        event_repo: PaymentEventRepositoryInterface,
        guard: IdempotencyGuard,
        pricing: PricingPolicy,
        *,
        scanner: ChainPaymentScanner | None = None,
        events: LedgerEventPublisher | None = None,
        max_amount: Decimal = DEFAULT_MAX_PAYMENT_AMOUNT,
        retry_attempts: int = 3,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._balances = balance_repo
        self._payment_events = event_repo
        self._guard = guard
        self._pricing = pricing
        self._scanner = scanner
        self._events = events
        self._max_amount = max_amount
        self._retry_attempts = retry_attempts
        self._sleep = sleep

    def apply_chain_payment(
        self,
        match: TransferMatch,
        identity_key: str,
        tier: IdentityTier = IdentityTier.STANDARD,
        now: datetime | None = None,
    ) -> ApplyResult:
        validate_payment_amount(match.amount, self._max_amount)
        credits = self._pricing.quote(match.amount, tier)
        if credits <= 0:
            raise InvalidInputError("amount too small to grant credits")

        return self._apply(
            kind=PaymentKind.CHAIN,
            ref=chain_ref(match.chain, match.tx_hash),
            identity_key=identity_key,
            amount=match.amount,
            currency=match.token_symbol,
            credits=credits,
            metadata={
                "chain": match.chain,
                "tx_hash": match.tx_hash,
                "sender": match.sender,
                "recipient": match.recipient,
                "token_address": match.token_address,
                "block_number": match.block_number,
                "tier": tier.value,
            },
            now=now,
        )

    def apply_card_payment(
        self,
        external_id: str,
        identity_key: str,
        amount: Decimal,
        currency: str,
        tier: IdentityTier = IdentityTier.STANDARD,
        metadata: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> ApplyResult:
        validate_payment_amount(amount, self._max_amount)
        credits = self._pricing.quote(amount, tier)
        if credits <= 0:
            raise InvalidInputError("amount too small to grant credits")

        return self._apply(
            kind=PaymentKind.CARD,
            ref=external_id,
            identity_key=identity_key,
            amount=amount,
            currency=currency.upper(),
            credits=credits,
            metadata={**(metadata or {}), "tier": tier.value},
            now=now,
        )

    def apply_internal_grant(
        self,
        grant_id: str,
        identity_key: str,
        credits: int,
        kind: PaymentKind,
        reason: str,
        now: datetime | None = None,
    ) -> ApplyResult:
        """관리자/추천 지급. 결제와 같은 경로(claim -> 증가 -> 기록)를 탄다."""

        if kind not in (PaymentKind.ADMIN, PaymentKind.REFERRAL):
            raise InvalidInputError("grant kind must be admin or referral")
        if not grant_id.strip():
            raise InvalidInputError("grant id is required")
        if credits <= 0 or credits > MAX_GRANT_CREDITS:
            raise InvalidInputError("credits out of range")

        return self._apply(
            kind=kind,
            ref=grant_id.strip(),
            identity_key=identity_key,
            amount=Decimal(credits),
            currency="CREDITS",
            credits=credits,
            metadata={"reason": reason},
            now=now,
        )

    def verify_and_apply(
        self,
        identity_key: str,
        expected_amount: Decimal,
        chains: list[str] | None = None,
        tier: IdentityTier = IdentityTier.STANDARD,
    ) -> tuple[TransferMatch, ApplyResult] | None:
        """수신 지갑을 스캔해 이 지갑이 보낸 기대 금액의 전송을 찾으면 반영한다. 아직 없으면 None.

        금액만으로는 송금자를 특정할 수 없으므로 지갑 아이덴티티만 쓸 수 있다.
        이메일/게스트 아이덴티티는 verify_transaction 으로 트랜잭션을 직접 제출한다.
        """

        scanner = self._require_scanner()
        validate_payment_amount(expected_amount, self._max_amount)
        sender = wallet_address_of(identity_key)
        if sender is None:
            raise InvalidInputError(
                "payment lookup by amount requires a wallet identity, submit the transaction hash"
            )

        kind = wallet_chain_kind(sender)
        names = [name for name in (chains or scanner.chains) if scanner.kind_of(name) == kind]
        if not names:
            raise InvalidInputError("no supported chain for this wallet")

        match = scanner.scan_all(
            AmountWindow(expected=expected_amount, tolerance=scanner.tolerance),
            chains=names,
            sender=sender,
            skip=lambda chain, tx_hash: self._guard.is_claimed(
                chain_ref(chain, tx_hash), RefKind.CHAIN
            ),
        )
        if match is None:
            return None
        return match, self.apply_chain_payment(match, identity_key, tier)

    def verify_transaction(
        self,
        identity_key: str,
        chain: str,
        tx_hash: str,
        expected_amount: Decimal | None = None,
        tier: IdentityTier = IdentityTier.STANDARD,
    ) -> tuple[TransferMatch, ApplyResult] | None:
        """제출된 트랜잭션 하나를 확인해 반영한다. 확정 전이면 None.

        지갑 아이덴티티는 자기 지갑이 보낸 전송만 인정한다. 같은 해시를 다시 제출하면 duplicate.
        """

        scanner = self._require_scanner()
        kind = scanner.kind_of(chain)
        tx_hash = validate_tx_hash(kind, tx_hash)
        if expected_amount is not None:
            validate_payment_amount(expected_amount, self._max_amount)

        sender = wallet_address_of(identity_key)
        if sender is not None and wallet_chain_kind(sender) != kind:
            raise InvalidInputError("wallet cannot pay on the requested chain")

        window = None
        if expected_amount is not None:
            window = AmountWindow(expected=expected_amount, tolerance=scanner.tolerance)
        match = scanner.find_transaction(
            chain, tx_hash, amount_window=window, sender=sender
        )
        if match is None:
            return None
        return match, self.apply_chain_payment(match, identity_key, tier)

    def _require_scanner(self) -> ChainPaymentScanner:
        if self._scanner is None:
            raise RuntimeError("chain scanner is not configured")
        return self._scanner

    def _apply(
        self,
        *,
        kind: PaymentKind,
        ref: str,
        identity_key: str,
        amount: Decimal,
        currency: str,
        credits: int,
        metadata: dict[str, Any],
        now: datetime | None,
    ) -> ApplyResult:
        now = now or datetime.now(timezone.utc)
        ref_kind = _REF_KIND_BY_PAYMENT[kind]
        log_extra = {"identity_key": identity_key, "external_ref": f"{kind.value}:{ref}"}

        claim = self._guard.try_claim(ref, ref_kind, now)
        if not claim.claimed:
            logger.info("duplicate payment reference ignored", extra=log_extra)
            return ApplyResult(
                status=ApplyStatus.DUPLICATE,
                external_ref=claim.key,
                credited=0,
                balance=self._balances.get(identity_key),
            )

        try:
            balance = with_retry(
                lambda: self._balances.credit(identity_key, credits, claim.key, now),
                operation="balance credit",
                max_attempts=self._retry_attempts,
                sleep=self._sleep,
            )
        except PyMongoError as exc:
            logger.error(
                "balance credit failed, releasing claim: %s",
                exc,
                extra={**log_extra, "error_kind": PersistenceError.kind},
            )
            self._release_claim(ref, ref_kind)
            raise PersistenceError() from exc

        if balance is None:
            # 앞선 시도가 적립까지 끝낸 뒤 응답을 잃은 경우
            logger.warning("payment reference already on balance", extra=log_extra)
            balance = self._balances.get(identity_key)

        event = PaymentEvent(
            external_ref=claim.key,
            kind=kind,
            identity_key=identity_key,
            amount=amount,
            currency=currency,
            credits_granted=credits,
            applied_at=now,
            metadata=metadata,
            created_at=now,
            updated_at=now,
        )
        try:
            with_retry(
                lambda: self._payment_events.create(event),
                operation="payment event append",
                max_attempts=self._retry_attempts,
                sleep=self._sleep,
            )
            self._guard.mark_applied(ref, ref_kind, now)
        except PyMongoError as exc:
            # 잔액은 이미 반영되었다. claim 은 claimed 상태로 남아 재적립을 막고 복구 대상이 된다.
            logger.error(
                "payment recorded on balance but event append failed: %s",
                exc,
                extra={**log_extra, "error_kind": PersistenceError.kind},
            )

        logger.info(
            "payment applied (credits=%d, balance=%s)",
            credits,
            balance.credits if balance else None,
            extra=log_extra,
        )
        result = ApplyResult(
            status=ApplyStatus.CREDITED,
            external_ref=claim.key,
            credited=credits,
            balance=balance,
        )
        if self._events:
            self._events.credit_granted(result, kind, identity_key, amount)
        return result

    def _release_claim(self, ref: str, ref_kind: RefKind) -> None:
        try:
            self._guard.release(ref, ref_kind)
        except PyMongoError as exc:
            logger.error(
                "failed to release idempotency claim: %s",
                exc,
                extra={"external_ref": f"{ref_kind.value}:{ref}"},
            )


def get_balance_repository(db: Database = Depends(get_database)) -> BalanceRepository:
    return BalanceRepository(db)


def get_payment_event_repository(
    db: Database = Depends(get_database),
) -> PaymentEventRepository:
    return PaymentEventRepository(db)


def get_pricing_policy() -> PricingPolicy:
    return RatePricingPolicy.from_config(get_config().pricing)


def get_payment_reconciler(
    balance_repo: BalanceRepositoryInterface = Depends(get_balance_repository),
    event_repo: PaymentEventRepositoryInterface = Depends(get_payment_event_repository),
    guard: IdempotencyGuard = Depends(get_idempotency_guard),
    pricing: PricingPolicy = Depends(get_pricing_policy),
    events: LedgerEventPublisher = Depends(get_ledger_event_publisher),
) -> PaymentReconciler:
    return PaymentReconciler(
        balance_repo=balance_repo,
        event_repo=event_repo,
        guard=guard,
        pricing=pricing,
        events=events,
        max_amount=get_config().pricing.max_payment_amount,
    )


def get_chain_payment_reconciler(
    balance_repo: BalanceRepositoryInterface = Depends(get_balance_repository),
    event_repo: PaymentEventRepositoryInterface = Depends(get_payment_event_repository),
    guard: IdempotencyGuard = Depends(get_idempotency_guard),
    pricing: PricingPolicy = Depends(get_pricing_policy),
    scanner: ChainPaymentScanner = Depends(get_chain_scanner),
    events: LedgerEventPublisher = Depends(get_ledger_event_publisher),
) -> PaymentReconciler:
    """체인 스캔이 필요한 경로용. 수신 지갑/RPC 설정이 없으면 여기서 실패한다."""
    return PaymentReconciler(
        balance_repo=balance_repo,
        event_repo=event_repo,
        guard=guard,
        pricing=pricing,
        scanner=scanner,
        events=events,
        max_amount=get_config().pricing.max_payment_amount,
    )
