from __future__ import annotations

from datetime import datetime
from typing import Protocol

from ..models.abuse import AbuseScope, AbuseSignal
from ..models.balance import Balance
from ..models.idempotency import IdempotencyKey, RefKind
from ..models.payment import PaymentEvent
from ..models.reservation import Reservation, ReservationStatus


class BalanceRepositoryInterface(Protocol):
    """BalanceRepository가 따라야 할 최소한의 계약.

    모든 변경은 잔액 문서 하나에 대한 조건부 원자 연산이어야 한다.
    조건이 맞지 않으면 None 을 반환하고, 부분 적용은 없다.
    """

    def get(self, identity_key: str) -> Balance | None:  # pragma: no cover - Protocol
        ...

    def credit(
        self, identity_key: str, credits: int, external_ref: str, now: datetime
    ) -> Balance | None:  # pragma: no cover - Protocol
        """external_ref 가 아직 반영되지 않았으면 credits/total_earned 를 올린다.

        이미 반영된 ref 면 None. 잔액 문서가 없으면 생성한다.
        """
        ...

    def hold(
        self, identity_key: str, correlation_id: str, amount: int, now: datetime
    ) -> Balance | None:  # pragma: no cover - Protocol
        """credits >= amount 이고 같은 correlation_id 의 hold 가 없을 때만 차감한다."""
        ...

    def release_hold(
        self, identity_key: str, correlation_id: str, amount: int, now: datetime
    ) -> Balance | None:  # pragma: no cover - Protocol
        """hold 가 남아 있을 때만 환불하고 hold 를 지운다."""
        ...

    def commit_hold(
        self, identity_key: str, correlation_id: str, now: datetime
    ) -> Balance | None:  # pragma: no cover - Protocol
        """hold 가 남아 있을 때만 hold 를 지운다 (잔액 변화 없음)."""
        ...


class IdempotencyKeyRepositoryInterface(Protocol):
    """외부 참조 선점(claim) 저장소. key 유니크 인덱스가 유일한 판정 기준이다."""

    def insert_claim(
        self, key: str, kind: RefKind, now: datetime, expires_at: datetime | None
    ) -> bool:  # pragma: no cover - Protocol
        ...

    def reclaim_expired(
        self, key: str, kind: RefKind, now: datetime, expires_at: datetime | None
    ) -> bool:  # pragma: no cover - Protocol
        """만료되었지만 아직 TTL 로 삭제되지 않은 키를 다시 선점한다."""
        ...

    def find(
        self, key: str, now: datetime
    ) -> IdempotencyKey | None:  # pragma: no cover - Protocol
        """만료되지 않은 키만 반환한다."""
        ...

    def mark_applied(self, key: str, now: datetime) -> bool:  # pragma: no cover - Protocol
        ...

    def delete(self, key: str) -> bool:  # pragma: no cover - Protocol
        ...


class PaymentEventRepositoryInterface(Protocol):
    def create(self, event: PaymentEvent) -> PaymentEvent:  # pragma: no cover - Protocol
        """이벤트를 저장한다. 같은 external_ref 가 이미 있으면 기존 이벤트를 반환한다."""
        ...

    def find_by_ref(
        self, external_ref: str
    ) -> PaymentEvent | None:  # pragma: no cover - Protocol
        ...

    def list_by_identity(
        self, identity_key: str, page: int, page_size: int
    ) -> tuple[list[PaymentEvent], int]:  # pragma: no cover - Protocol
        ...


class ReservationRepositoryInterface(Protocol):
    def create(self, reservation: Reservation) -> Reservation:  # pragma: no cover - Protocol
        """correlation_id 가 이미 있으면 DuplicateKeyError 를 올린다."""
        ...

    def find(
        self, correlation_id: str
    ) -> Reservation | None:  # pragma: no cover - Protocol
        ...

    def delete(self, correlation_id: str) -> bool:  # pragma: no cover - Protocol
        ...

    def transition(
        self,
        correlation_id: str,
        from_statuses: tuple[ReservationStatus, ...],
        to_status: ReservationStatus,
        now: datetime,
        *,
        release_reason: str | None = None,
        job_id: str | None = None,
    ) -> Reservation | None:  # pragma: no cover - Protocol
        """현재 상태가 from_statuses 중 하나일 때만 전이한다."""
        ...

    def record_sweep_attempt(
        self, correlation_id: str, expires_at: datetime, now: datetime
    ) -> Reservation | None:  # pragma: no cover - Protocol
        """ambiguous 예약의 재확인 횟수를 올리고 만료 시각을 연장한다."""
        ...

    def list_expired(
        self, statuses: tuple[ReservationStatus, ...], now: datetime, limit: int
    ) -> list[Reservation]:  # pragma: no cover - Protocol
        ...


class AbuseSignalRepositoryInterface(Protocol):
    """무료 사용 남용 신호 저장소. (scope, key) 가 유니크하다."""

    def try_increment(
        self,
        scope: AbuseScope,
        key: str,
        cap: int,
        window_cutoff: datetime,
        now: datetime,
    ) -> bool:  # pragma: no cover - Protocol
        """윈도우 내 사용 횟수가 cap 미만일 때만 1 올린다.

        윈도우가 지났으면 카운터를 1 로 재시작한다.
        """
        ...

    def decrement(
        self, scope: AbuseScope, key: str, now: datetime
    ) -> None:  # pragma: no cover - Protocol
        """같은 admission 안에서 올린 카운터를 되돌린다."""
        ...

    def try_start_cooldown(
        self, scope: AbuseScope, key: str, cooldown_until: datetime, now: datetime
    ) -> bool:  # pragma: no cover - Protocol
        """쿨다운이 끝났을 때만 새 쿨다운을 시작한다."""
        ...

    def clear_cooldown(
        self, scope: AbuseScope, key: str, now: datetime
    ) -> None:  # pragma: no cover - Protocol
        ...

    def get(
        self, scope: AbuseScope, key: str
    ) -> AbuseSignal | None:  # pragma: no cover - Protocol
        ...
