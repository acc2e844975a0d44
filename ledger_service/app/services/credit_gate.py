"""크레딧 게이트: 유료 작업의 예약(reserve) / 확정(commit) / 반환(release).

잔액 문서의 holds.<correlation_id> 가 각 예약의 단일 진실 공급원이다.
확정과 반환은 먼저 예약 문서를 committing / releasing 으로 옮겨 권한을 잡고,
권한을 잡은 쪽만 hold 를 지운다(commit_hold, release_hold).
같은 예약에 대해 확정과 반환 중 정확히 하나만 성공하고, hold 가 이미 없을 때도
그 이유(확정됨 / 잡힌 적 없음)를 예약 상태로 구분할 수 있다.
중간 상태에서 멈춘 예약은 만료 스윕이 이어서 끝낸다.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from fastapi import Depends
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from common.events.credit import CreditEventType
from common.mongo.client import get_database
from common.mongo.retry import with_retry

from ..config import get_config
from ..exceptions import (
    AmbiguousOutcomeError,
    DuplicateEventError,
    InsufficientBalanceError,
    InvalidInputError,
    PersistenceError,
    ReservationExpiredError,
)
from ..generation.provider import GenerationProvider
from ..models.balance import Balance
from ..models.generation import GenerationOutcome, GenerationStatus
from ..models.reservation import ReleaseResult, Reservation, ReservationStatus
from ..repositories.interfaces import (
    BalanceRepositoryInterface,
    ReservationRepositoryInterface,
)
from ..repositories.reservation_repository import ReservationRepository
from .ledger_events import LedgerEventPublisher, get_ledger_event_publisher
from .payment_reconciler import get_balance_repository


logger = logging.getLogger(__name__)

# holds.<correlation_id> 필드 경로로 쓰이므로 '.', '$' 를 허용하지 않는다.
_CORRELATION_ID = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

_OPEN_STATUSES = (
    ReservationStatus.RESERVED,
    ReservationStatus.AMBIGUOUS,
    ReservationStatus.ESCALATED,
)

RELEASE_REASON_EXPIRED = "expired"
RELEASE_REASON_FAILED = "generation_failed"


@dataclass(slots=True)
class RunResult:
    correlation_id: str
    outcome: GenerationOutcome
    balance: Balance | None
    committed: bool


@dataclass(slots=True)
class SweepReport:
    released: int = 0
    committed: int = 0
    extended: int = 0
    escalated: int = 0
    errors: list[str] = field(default_factory=list)


class CreditGate:
    def __init__(
        self,
        balance_repo: BalanceRepositoryInterface,
        reservation_repo: ReservationRepositoryInterface,
        *,
        events: LedgerEventPublisher | None = None,
        ttl_seconds: int = 600,
        max_cost: int = 10000,
        ambiguous_max_attempts: int = 5,
        retry_attempts: int = 3,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._balances = balance_repo
        self._reservations = reservation_repo
        self._events = events
        self._ttl = timedelta(seconds=ttl_seconds)
        self._max_cost = max_cost
        self._ambiguous_max_attempts = ambiguous_max_attempts
        self._retry_attempts = retry_attempts
        self._sleep = sleep

    # -------- reserve / commit / release --------

    def reserve(
        self,
        identity_key: str,
        cost: int,
        correlation_id: str | None = None,
        reason: str = "generation",
        now: datetime | None = None,
    ) -> tuple[Reservation, Balance]:
        now = now or datetime.now(timezone.utc)
        if isinstance(cost, bool) or not isinstance(cost, int):
            raise InvalidInputError("cost must be an integer")
        if cost <= 0 or cost > self._max_cost:
            raise InvalidInputError("cost out of range")

        correlation_id = correlation_id or uuid.uuid4().hex
        if not _CORRELATION_ID.match(correlation_id):
            raise InvalidInputError("invalid correlation id")

        log_extra = {"identity_key": identity_key, "correlation_id": correlation_id}

        current = self._balances.get(identity_key)
        if current is None or current.credits < cost:
            raise InsufficientBalanceError()

        reservation = Reservation(
            correlation_id=correlation_id,
            identity_key=identity_key,
            amount=cost,
            status=ReservationStatus.RESERVED,
            reason=reason,
            expires_at=now + self._ttl,
            created_at=now,
            updated_at=now,
        )
        try:
            reservation = self._reservations.create(reservation)
        except DuplicateKeyError as exc:
            raise DuplicateEventError("correlation id already used") from exc

        try:
            held = self._balances.hold(identity_key, correlation_id, cost, now)
        except PyMongoError as exc:
            # hold 적용 여부를 모른다. 예약 문서를 남겨 두면 만료 스윕이 정리한다.
            logger.error(
                "balance hold failed: %s",
                exc,
                extra={**log_extra, "error_kind": PersistenceError.kind},
            )
            raise PersistenceError() from exc

        if held is None:
            self._discard_reservation(correlation_id)
            raise InsufficientBalanceError()

        logger.info("credits reserved (cost=%d)", cost, extra=log_extra)
        if self._events:
            self._events.hold_changed(CreditEventType.CREDIT_RESERVED, reservation, held)
        return reservation, held

    def commit(self, correlation_id: str, now: datetime | None = None) -> Balance:
        now = now or datetime.now(timezone.utc)
        reservation = self._get(correlation_id)
        log_extra = {
            "identity_key": reservation.identity_key,
            "correlation_id": correlation_id,
        }

        if reservation.status is ReservationStatus.COMMITTED:
            return self._current_balance(reservation.identity_key)
        if reservation.status in (ReservationStatus.RELEASED, ReservationStatus.RELEASING):
            raise ReservationExpiredError()

        claimed = self._reservations.transition(
            correlation_id, _OPEN_STATUSES, ReservationStatus.COMMITTING, now
        )
        if claimed is None:
            latest = self._get(correlation_id)
            if latest.status is ReservationStatus.COMMITTED:
                return self._current_balance(reservation.identity_key)
            if latest.status is not ReservationStatus.COMMITTING:
                raise ReservationExpiredError()
        # claimed 가 None 이면 앞선 확정 호출이 권한을 잡은 채 멈춘 예약을 이어서 끝낸다.
        resumed = claimed is None

        balance = self._with_retry(
            lambda: self._balances.commit_hold(reservation.identity_key, correlation_id, now),
            "balance commit",
            log_extra,
        )
        if balance is None:
            if resumed:
                # 먼저 권한을 잡은 호출이 hold 를 이미 지웠다.
                self._reservations.transition(
                    correlation_id,
                    (ReservationStatus.COMMITTING,),
                    ReservationStatus.COMMITTED,
                    now,
                )
                return self._current_balance(reservation.identity_key)
            # hold 가 한 번도 잡히지 않은 예약 (reserve 도중 중단)
            missing = self._reservations.transition(
                correlation_id,
                (ReservationStatus.COMMITTING,),
                ReservationStatus.RELEASED,
                now,
                release_reason="hold_missing",
            )
            if missing is None and self._get(correlation_id).status is ReservationStatus.COMMITTED:
                return self._current_balance(reservation.identity_key)
            logger.warning("reservation had no hold to commit", extra=log_extra)
            raise ReservationExpiredError()

        committed = self._reservations.transition(
            correlation_id,
            (ReservationStatus.COMMITTING,),
            ReservationStatus.COMMITTED,
            now,
        )
        logger.info("reservation committed", extra=log_extra)
        if self._events:
            self._events.hold_changed(
                CreditEventType.CREDIT_COMMITTED, committed or reservation, balance
            )
        return balance

    def release(
        self,
        correlation_id: str,
        reason: str = RELEASE_REASON_FAILED,
        now: datetime | None = None,
    ) -> ReleaseResult:
        """외부 작업 실패 시 환불. 같은 예약에 대한 두 번째 호출은 released=False."""

        reservation = self._get(correlation_id)
        if reservation.status in (ReservationStatus.AMBIGUOUS, ReservationStatus.ESCALATED):
            # 결과를 모르는 작업은 하류 상태 확인 전까지 환불하지 않는다.
            raise AmbiguousOutcomeError()
        return self._release(reservation, reason, now or datetime.now(timezone.utc))

    def get(self, correlation_id: str) -> Reservation:
        return self._get(correlation_id)

    # -------- orchestration --------

    def run(
        self,
        identity_key: str,
        cost: int,
        job_spec: dict[str, Any],
        provider: GenerationProvider,
        correlation_id: str | None = None,
        reason: str = "generation",
    ) -> RunResult:
        """reserve -> invoke -> commit/release.

        결과를 알 수 없으면 하류 상태를 한 번 더 확인하고, 그래도 모르면 ambiguous 로 남긴다.
        """

        reservation, _ = self.reserve(identity_key, cost, correlation_id, reason)
        cid = reservation.correlation_id

        try:
            outcome = provider.invoke(job_spec)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "generation invoke raised: %s",
                exc,
                extra={"identity_key": identity_key, "correlation_id": cid},
            )
            outcome = GenerationOutcome(status=GenerationStatus.UNKNOWN, error=str(exc))

        if outcome.status is GenerationStatus.UNKNOWN and outcome.job_id:
            outcome = self._check_status(provider, outcome.job_id, fallback=outcome)

        if outcome.status is GenerationStatus.SUCCESS:
            balance = self.commit(cid)
            return RunResult(correlation_id=cid, outcome=outcome, balance=balance, committed=True)

        if outcome.status is GenerationStatus.FAILURE:
            released = self.release(cid, RELEASE_REASON_FAILED)
            return RunResult(
                correlation_id=cid,
                outcome=outcome,
                balance=released.balance,
                committed=False,
            )

        self._reservations.transition(
            cid,
            (ReservationStatus.RESERVED,),
            ReservationStatus.AMBIGUOUS,
            datetime.now(timezone.utc),
            job_id=outcome.job_id,
        )
        logger.warning(
            "generation outcome unknown, reservation held for reconciliation",
            extra={"identity_key": identity_key, "correlation_id": cid},
        )
        raise AmbiguousOutcomeError()

    def sweep_expired(
        self,
        provider: GenerationProvider | None = None,
        now: datetime | None = None,
        limit: int = 100,
    ) -> SweepReport:
        """만료된 예약 정리.

        - reserved: 만료 -> 환불
        - ambiguous: 하류 상태 확인 -> 성공이면 확정, 실패면 환불, 모르면 만료 연장
          (재확인 한도를 넘기면 escalated)
        """

        now = now or datetime.now(timezone.utc)
        report = SweepReport()

        for reservation in self._reservations.list_expired(
            (ReservationStatus.RESERVED,), now, limit
        ):
            try:
                result = self._release(reservation, RELEASE_REASON_EXPIRED, now)
            except (PyMongoError, PersistenceError) as exc:
                report.errors.append(reservation.correlation_id)
                logger.error(
                    "failed to release expired reservation: %s",
                    exc,
                    extra={"correlation_id": reservation.correlation_id},
                )
                continue
            if result.released:
                report.released += 1

        for reservation in self._reservations.list_expired(
            (ReservationStatus.AMBIGUOUS,), now, limit
        ):
            try:
                self._reconcile_ambiguous(reservation, provider, now, report)
            except (PyMongoError, PersistenceError, ReservationExpiredError) as exc:
                report.errors.append(reservation.correlation_id)
                logger.error(
                    "failed to reconcile ambiguous reservation: %s",
                    exc,
                    extra={"correlation_id": reservation.correlation_id},
                )

        for reservation in self._reservations.list_expired(
            (ReservationStatus.COMMITTING, ReservationStatus.RELEASING), now, limit
        ):
            try:
                if reservation.status is ReservationStatus.COMMITTING:
                    self.commit(reservation.correlation_id, now)
                    report.committed += 1
                elif self._release(
                    reservation, reservation.release_reason or RELEASE_REASON_EXPIRED, now
                ).released:
                    report.released += 1
            except (PyMongoError, PersistenceError, ReservationExpiredError) as exc:
                report.errors.append(reservation.correlation_id)
                logger.error(
                    "failed to finish interrupted reservation: %s",
                    exc,
                    extra={"correlation_id": reservation.correlation_id},
                )

        if report.released or report.committed or report.escalated or report.errors:
            logger.info(
                "reservation sweep done (released=%d, committed=%d, extended=%d, escalated=%d, errors=%d)",
                report.released,
                report.committed,
                report.extended,
                report.escalated,
                len(report.errors),
            )
        return report

    # -------- internals --------

    def _reconcile_ambiguous(
        self,
        reservation: Reservation,
        provider: GenerationProvider | None,
        now: datetime,
        report: SweepReport,
    ) -> None:
        unknown = GenerationOutcome(status=GenerationStatus.UNKNOWN, job_id=reservation.job_id)
        outcome = unknown
        if provider is not None and reservation.job_id:
            outcome = self._check_status(provider, reservation.job_id, fallback=unknown)

        cid = reservation.correlation_id
        if outcome.status is GenerationStatus.SUCCESS:
            self.commit(cid, now)
            report.committed += 1
            return
        if outcome.status is GenerationStatus.FAILURE:
            if self._release(reservation, RELEASE_REASON_FAILED, now).released:
                report.released += 1
            return

        if reservation.sweep_attempts + 1 >= self._ambiguous_max_attempts:
            self._reservations.transition(
                cid,
                (ReservationStatus.AMBIGUOUS,),
                ReservationStatus.ESCALATED,
                now,
            )
            report.escalated += 1
            logger.error(
                "ambiguous reservation escalated for manual review",
                extra={"identity_key": reservation.identity_key, "correlation_id": cid},
            )
            return

        self._reservations.record_sweep_attempt(cid, now + self._ttl, now)
        report.extended += 1

    def _release(
        self, reservation: Reservation, reason: str, now: datetime
    ) -> ReleaseResult:
        cid = reservation.correlation_id
        log_extra = {"identity_key": reservation.identity_key, "correlation_id": cid}
        not_released = ReleaseResult(correlation_id=cid, released=False, refunded=0)

        claimed = None
        if reservation.status in _OPEN_STATUSES:
            claimed = self._reservations.transition(
                cid,
                (reservation.status,),
                ReservationStatus.RELEASING,
                now,
                release_reason=reason,
            )
        if claimed is None and self._get(cid).status is not ReservationStatus.RELEASING:
            # 이미 확정/반환되었거나 다른 호출이 확정 중이다.
            not_released.balance = self._balances.get(reservation.identity_key)
            return not_released

        balance = self._with_retry(
            lambda: self._balances.release_hold(
                reservation.identity_key, cid, reservation.amount, now
            ),
            "balance release",
            log_extra,
        )
        released = self._reservations.transition(
            cid,
            (ReservationStatus.RELEASING,),
            ReservationStatus.RELEASED,
            now,
            release_reason=reason,
        )

        if balance is None:
            # hold 가 잡힌 적이 없거나 먼저 권한을 잡은 호출이 이미 돌려줬다.
            not_released.balance = self._balances.get(reservation.identity_key)
            return not_released

        logger.info("reservation released (reason=%s)", reason, extra=log_extra)
        if self._events:
            self._events.hold_changed(
                CreditEventType.CREDIT_RELEASED, released or reservation, balance, reason
            )
        return ReleaseResult(
            correlation_id=cid,
            released=True,
            refunded=reservation.amount,
            balance=balance,
        )

    def _check_status(
        self,
        provider: GenerationProvider,
        job_id: str,
        fallback: GenerationOutcome,
    ) -> GenerationOutcome:
        try:
            return provider.get_status(job_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("generation status check raised: %s (job_id=%s)", exc, job_id)
            return fallback

    def _get(self, correlation_id: str) -> Reservation:
        reservation = self._reservations.find(correlation_id)
        if reservation is None:
            raise InvalidInputError("unknown reservation")
        return reservation

    def _current_balance(self, identity_key: str) -> Balance:
        balance = self._balances.get(identity_key)
        if balance is None:
            raise InvalidInputError("unknown identity")
        return balance

    def _discard_reservation(self, correlation_id: str) -> None:
        try:
            self._reservations.delete(correlation_id)
        except PyMongoError as exc:
            # 남은 문서는 hold 가 없으므로 스윕이 환불 없이 닫는다.
            logger.warning(
                "failed to delete unheld reservation: %s",
                exc,
                extra={"correlation_id": correlation_id},
            )

    def _with_retry(
        self,
        fn: Callable[[], Balance | None],
        operation: str,
        log_extra: dict[str, str],
    ) -> Balance | None:
        try:
            return with_retry(
                fn,
                operation=operation,
                max_attempts=self._retry_attempts,
                sleep=self._sleep,
            )
        except PyMongoError as exc:
            logger.error(
                "%s failed: %s",
                operation,
                exc,
                extra={**log_extra, "error_kind": PersistenceError.kind},
            )
            raise PersistenceError() from exc


def get_reservation_repository(
    db: Database = Depends(get_database),
) -> ReservationRepository:
    return ReservationRepository(db)


def get_credit_gate(
    balance_repo: BalanceRepositoryInterface = Depends(get_balance_repository),
    reservation_repo: ReservationRepositoryInterface = Depends(get_reservation_repository),
    events: LedgerEventPublisher = Depends(get_ledger_event_publisher),
) -> CreditGate:
    cfg = get_config().reservations
    return CreditGate(
        balance_repo,
        reservation_repo,
        events=events,
        ttl_seconds=cfg.ttl_seconds,
        max_cost=cfg.max_cost,
        ambiguous_max_attempts=cfg.ambiguous_max_attempts,
    )
