"""테스트용 인메모리 레포지토리.

각 메서드는 lock 안에서 조건 확인과 변경을 함께 수행해 Mongo 의 조건부 단일 문서 연산과
같은 원자성을 흉내 낸다.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from pymongo.errors import AutoReconnect, DuplicateKeyError

from ledger_service.app.models.abuse import AbuseScope, AbuseSignal
from ledger_service.app.models.balance import Balance
from ledger_service.app.models.generation import GenerationOutcome, GenerationStatus
from ledger_service.app.models.idempotency import ClaimStatus, IdempotencyKey, RefKind
from ledger_service.app.models.payment import PaymentEvent, TransferLog
from ledger_service.app.models.reservation import Reservation, ReservationStatus


NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeBalanceRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._balances: dict[str, Balance] = {}
        self._applied_refs: dict[str, list[str]] = {}
        self.credit_failures = 0  # 남은 횟수만큼 credit 이 일시 오류를 낸다
        self.credit_calls = 0

    def seed(self, identity_key: str, credits: int) -> Balance:
        with self._lock:
            balance = Balance(
                identity_key=identity_key,
                credits=credits,
                total_earned=credits,
                created_at=NOW,
                updated_at=NOW,
            )
            self._balances[identity_key] = balance
            return balance.model_copy(deep=True)

    def get(self, identity_key: str) -> Balance | None:
        with self._lock:
            balance = self._balances.get(identity_key)
            return balance.model_copy(deep=True) if balance else None

    def credit(
        self, identity_key: str, credits: int, external_ref: str, now: datetime
    ) -> Balance | None:
        with self._lock:
            self.credit_calls += 1
            if self.credit_failures > 0:
                self.credit_failures -= 1
                raise AutoReconnect("connection reset")

            refs = self._applied_refs.setdefault(identity_key, [])
            if external_ref in refs:
                return None
            balance = self._balances.get(identity_key)
            if balance is None:
                balance = Balance(identity_key=identity_key, created_at=now, updated_at=now)
                self._balances[identity_key] = balance
            balance.credits += credits
            balance.total_earned += credits
            balance.last_active = now
            balance.updated_at = now
            refs.append(external_ref)
            return balance.model_copy(deep=True)

    def hold(
        self, identity_key: str, correlation_id: str, amount: int, now: datetime
    ) -> Balance | None:
        with self._lock:
            balance = self._balances.get(identity_key)
            if balance is None or balance.credits < amount or correlation_id in balance.holds:
                return None
            balance.credits -= amount
            balance.total_spent += amount
            balance.holds[correlation_id] = amount
            balance.last_active = now
            balance.updated_at = now
            return balance.model_copy(deep=True)

    def release_hold(
        self, identity_key: str, correlation_id: str, amount: int, now: datetime
    ) -> Balance | None:
        with self._lock:
            balance = self._balances.get(identity_key)
            if balance is None or balance.holds.get(correlation_id) != amount:
                return None
            del balance.holds[correlation_id]
            balance.credits += amount
            balance.total_spent -= amount
            balance.updated_at = now
            return balance.model_copy(deep=True)

    def commit_hold(
        self, identity_key: str, correlation_id: str, now: datetime
    ) -> Balance | None:
        with self._lock:
            balance = self._balances.get(identity_key)
            if balance is None or correlation_id not in balance.holds:
                return None
            del balance.holds[correlation_id]
            balance.updated_at = now
            return balance.model_copy(deep=True)


class FakeIdempotencyKeyRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.keys: dict[str, IdempotencyKey] = {}
        self.insert_calls = 0

    def insert_claim(
        self, key: str, kind: RefKind, now: datetime, expires_at: datetime | None
    ) -> bool:
        with self._lock:
            self.insert_calls += 1
            if key in self.keys:
                return False
            self.keys[key] = IdempotencyKey(
                key=key,
                kind=kind,
                status=ClaimStatus.CLAIMED,
                claimed_at=now,
                expires_at=expires_at,
            )
            return True

    def reclaim_expired(
        self, key: str, kind: RefKind, now: datetime, expires_at: datetime | None
    ) -> bool:
        with self._lock:
            current = self.keys.get(key)
            if current is None or current.expires_at is None or current.expires_at > now:
                return False
            self.keys[key] = IdempotencyKey(
                key=key,
                kind=kind,
                status=ClaimStatus.CLAIMED,
                claimed_at=now,
                expires_at=expires_at,
            )
            return True

    def find(self, key: str, now: datetime) -> IdempotencyKey | None:
        with self._lock:
            current = self.keys.get(key)
            if current is None:
                return None
            if current.expires_at is not None and current.expires_at <= now:
                return None
            return replace(current)

    def mark_applied(self, key: str, now: datetime) -> bool:
        with self._lock:
            current = self.keys.get(key)
            if current is None:
                return False
            current.status = ClaimStatus.APPLIED
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self.keys.pop(key, None) is not None


class FakePaymentEventRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: dict[str, PaymentEvent] = {}
        self.create_failures = 0

    def create(self, event: PaymentEvent) -> PaymentEvent:
        with self._lock:
            if self.create_failures > 0:
                self.create_failures -= 1
                raise AutoReconnect("connection reset")
            existing = self.events.get(event.external_ref)
            if existing is not None:
                return existing
            self.events[event.external_ref] = event
            return event

    def find_by_ref(self, external_ref: str) -> PaymentEvent | None:
        with self._lock:
            return self.events.get(external_ref)

    def list_by_identity(
        self, identity_key: str, page: int, page_size: int
    ) -> tuple[list[PaymentEvent], int]:
        with self._lock:
            items = sorted(
                (e for e in self.events.values() if e.identity_key == identity_key),
                key=lambda e: e.applied_at,
                reverse=True,
            )
        start = (page - 1) * page_size
        return items[start : start + page_size], len(items)


class FakeReservationRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.reservations: dict[str, Reservation] = {}

    def create(self, reservation: Reservation) -> Reservation:
        with self._lock:
            if reservation.correlation_id in self.reservations:
                raise DuplicateKeyError("duplicate correlation_id")
            stored = reservation.model_copy(update={"id": f"res-{len(self.reservations) + 1}"})
            self.reservations[reservation.correlation_id] = stored
            return stored.model_copy()

    def find(self, correlation_id: str) -> Reservation | None:
        with self._lock:
            reservation = self.reservations.get(correlation_id)
            return reservation.model_copy() if reservation else None

    def delete(self, correlation_id: str) -> bool:
        with self._lock:
            return self.reservations.pop(correlation_id, None) is not None

    def transition(
        self,
        correlation_id: str,
        from_statuses: tuple[ReservationStatus, ...],
        to_status: ReservationStatus,
        now: datetime,
        *,
        release_reason: str | None = None,
        job_id: str | None = None,
    ) -> Reservation | None:
        with self._lock:
            current = self.reservations.get(correlation_id)
            if current is None or current.status not in from_statuses:
                return None
            update: dict = {"status": to_status, "updated_at": now}
            if release_reason is not None:
                update["release_reason"] = release_reason
            if job_id is not None:
                update["job_id"] = job_id
            if to_status.is_final:
                update["resolved_at"] = now
            updated = current.model_copy(update=update)
            self.reservations[correlation_id] = updated
            return updated.model_copy()

    def record_sweep_attempt(
        self, correlation_id: str, expires_at: datetime, now: datetime
    ) -> Reservation | None:
        with self._lock:
            current = self.reservations.get(correlation_id)
            if current is None or current.status is not ReservationStatus.AMBIGUOUS:
                return None
            updated = current.model_copy(
                update={
                    "sweep_attempts": current.sweep_attempts + 1,
                    "expires_at": expires_at,
                    "updated_at": now,
                }
            )
            self.reservations[correlation_id] = updated
            return updated.model_copy()

    def list_expired(
        self, statuses: tuple[ReservationStatus, ...], now: datetime, limit: int
    ) -> list[Reservation]:
        with self._lock:
            expired = [
                r.model_copy()
                for r in self.reservations.values()
                if r.status in statuses and r.expires_at <= now
            ]
        expired.sort(key=lambda r: r.expires_at)
        return expired[:limit]


class FakeAbuseSignalRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.signals: dict[tuple[AbuseScope, str], AbuseSignal] = {}

    def try_increment(
        self,
        scope: AbuseScope,
        key: str,
        cap: int,
        window_cutoff: datetime,
        now: datetime,
    ) -> bool:
        if cap <= 0:
            return False
        with self._lock:
            signal = self.signals.get((scope, key))
            if signal is None or signal.window_started_at <= window_cutoff:
                cooldown = signal.cooldown_until if signal else None
                self.signals[(scope, key)] = AbuseSignal(
                    scope=scope,
                    key=key,
                    free_uses_count=1,
                    window_started_at=now,
                    last_used_at=now,
                    cooldown_until=cooldown,
                )
                return True
            if signal.free_uses_count >= cap:
                return False
            signal.free_uses_count += 1
            signal.last_used_at = now
            return True

    def decrement(self, scope: AbuseScope, key: str, now: datetime) -> None:
        with self._lock:
            signal = self.signals.get((scope, key))
            if signal is not None and signal.free_uses_count > 0:
                signal.free_uses_count -= 1

    def try_start_cooldown(
        self, scope: AbuseScope, key: str, cooldown_until: datetime, now: datetime
    ) -> bool:
        with self._lock:
            signal = self.signals.get((scope, key))
            if signal is None:
                self.signals[(scope, key)] = AbuseSignal(
                    scope=scope,
                    key=key,
                    free_uses_count=0,
                    window_started_at=now,
                    last_used_at=now,
                    cooldown_until=cooldown_until,
                )
                return True
            if signal.cooldown_until is not None and signal.cooldown_until > now:
                return False
            signal.cooldown_until = cooldown_until
            signal.last_used_at = now
            return True

    def clear_cooldown(self, scope: AbuseScope, key: str, now: datetime) -> None:
        with self._lock:
            signal = self.signals.get((scope, key))
            if signal is not None:
                signal.cooldown_until = None

    def get(self, scope: AbuseScope, key: str) -> AbuseSignal | None:
        with self._lock:
            signal = self.signals.get((scope, key))
            return replace(signal) if signal else None


class FakeEventBus:
    def __init__(self) -> None:
        self.published: list[tuple[str, dict]] = []
        self.fail = False

    def publish(self, topic: str, event) -> None:  # type: ignore[no-untyped-def]
        if self.fail:
            raise RuntimeError("broker down")
        self.published.append((topic, event.payload))

    def close(self) -> None:
        return None


class FakeGenerationProvider:
    """invoke/get_status 결과를 미리 정해 두는 하류 서비스."""

    def __init__(
        self,
        outcome: GenerationOutcome | None = None,
        status: GenerationOutcome | None = None,
    ) -> None:
        self.outcome = outcome or GenerationOutcome(
            status=GenerationStatus.SUCCESS, job_id="model#req-1", result={"ok": True}
        )
        self.status = status
        self.invoke_error: Exception | None = None
        self.invoked: list[dict] = []
        self.status_checks: list[str] = []

    def invoke(self, job_spec: dict) -> GenerationOutcome:
        self.invoked.append(job_spec)
        if self.invoke_error is not None:
            raise self.invoke_error
        return self.outcome

    def get_status(self, job_id: str) -> GenerationOutcome:
        self.status_checks.append(job_id)
        if self.status is None:
            return GenerationOutcome(status=GenerationStatus.UNKNOWN, job_id=job_id)
        return self.status


class FakeChainProvider:
    """get_recent_transfer_logs 결과를 돌려주는 체인 어댑터. delay 로 느린 RPC 를 흉내 낸다.

    transactions 는 tx_hash -> 전송 목록 (None 이면 아직 확정 전).
    """

    def __init__(
        self,
        logs: list[TransferLog] | None = None,
        *,
        transactions: dict[str, list[TransferLog] | None] | None = None,
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self.logs = logs or []
        self.transactions = transactions or {}
        self.error = error
        self.delay = delay
        self.calls: list[tuple[str, str, int]] = []

    def get_recent_transfer_logs(
        self, token: str, recipient: str, block_depth: int
    ) -> list[TransferLog]:
        self.calls.append((token, recipient, block_depth))
        if self.delay:
            threading.Event().wait(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.logs)

    def get_transaction_transfers(
        self, token: str, recipient: str, tx_hash: str
    ) -> list[TransferLog] | None:
        if self.error is not None:
            raise self.error
        transfers = self.transactions.get(tx_hash)
        if transfers is None:
            return None
        return [log for log in transfers if log.recipient.lower() == recipient.lower()]


def transfer_log(
    tx_hash: str,
    amount: str,
    recipient: str,
    *,
    sender: str = "0x" + "1" * 40,
    block_number: int = 100,
) -> TransferLog:
    return TransferLog(
        tx_hash=tx_hash,
        sender=sender,
        recipient=recipient,
        amount=Decimal(amount),
        block_number=block_number,
    )


def later(seconds: float) -> datetime:
    return NOW + timedelta(seconds=seconds)
