from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest

from common.eventbus.topics import TOPIC_LEDGER_CREDIT
from ledger_service.app.exceptions import (
    AmbiguousOutcomeError,
    DuplicateEventError,
    InsufficientBalanceError,
    InvalidInputError,
    ReservationExpiredError,
)
from ledger_service.app.models.generation import GenerationOutcome, GenerationStatus
from ledger_service.app.models.reservation import ReservationStatus
from ledger_service.app.services.credit_gate import CreditGate
from ledger_service.app.services.ledger_events import LedgerEventPublisher

from ledger_service.tests.fakes import (
    NOW,
    FakeBalanceRepository,
    FakeEventBus,
    FakeGenerationProvider,
    FakeReservationRepository,
    later,
)


IDENTITY = "guest:tester-01"


@dataclass
class GateFixture:
    gate: CreditGate
    balances: FakeBalanceRepository
    reservations: FakeReservationRepository
    bus: FakeEventBus


def _build_fixture(credits: int = 10, max_attempts: int = 5) -> GateFixture:
    balances = FakeBalanceRepository()
    reservations = FakeReservationRepository()
    bus = FakeEventBus()
    if credits:
        balances.seed(IDENTITY, credits)
    gate = CreditGate(
        balances,
        reservations,
        events=LedgerEventPublisher(bus),
        ttl_seconds=600,
        max_cost=1000,
        ambiguous_max_attempts=max_attempts,
        sleep=lambda _: None,
    )
    return GateFixture(gate=gate, balances=balances, reservations=reservations, bus=bus)


def _credits(fixture: GateFixture) -> int:
    balance = fixture.balances.get(IDENTITY)
    assert balance is not None
    assert balance.is_consistent()
    return balance.credits


def test_reserve_then_commit_spends_credits() -> None:
    fixture = _build_fixture(credits=10)

    reservation, held = fixture.gate.reserve(IDENTITY, 3, "job-1", now=NOW)
    assert reservation.status is ReservationStatus.RESERVED
    assert reservation.expires_at == later(600)
    assert held.credits == 7
    assert held.holds == {"job-1": 3}

    balance = fixture.gate.commit("job-1", now=NOW)

    assert balance.credits == 7
    assert balance.total_spent == 3
    assert balance.holds == {}
    assert fixture.reservations.find("job-1").status is ReservationStatus.COMMITTED  # type: ignore[union-attr]
    assert [payload["type"] for _, payload in fixture.bus.published] == [
        "credit.reserved",
        "credit.committed",
    ]
    assert fixture.bus.published[0][0] == TOPIC_LEDGER_CREDIT.base


def test_commit_is_idempotent() -> None:
    fixture = _build_fixture(credits=10)
    fixture.gate.reserve(IDENTITY, 3, "job-1", now=NOW)

    fixture.gate.commit("job-1", now=NOW)
    again = fixture.gate.commit("job-1", now=NOW)

    assert again.credits == 7


def test_failed_job_refunds_and_is_immediately_retryable() -> None:
    fixture = _build_fixture(credits=5)

    fixture.gate.reserve(IDENTITY, 5, "job-e", now=NOW)
    result = fixture.gate.release("job-e", now=NOW)

    assert result.released is True
    assert result.refunded == 5
    assert _credits(fixture) == 5
    assert fixture.reservations.find("job-e").release_reason == "generation_failed"  # type: ignore[union-attr]

    reservation, _ = fixture.gate.reserve(IDENTITY, 5, "job-e-retry", now=NOW)
    assert reservation.status is ReservationStatus.RESERVED


def test_double_release_refunds_once() -> None:
    fixture = _build_fixture(credits=5)
    fixture.gate.reserve(IDENTITY, 5, "job-1", now=NOW)

    first = fixture.gate.release("job-1", now=NOW)
    second = fixture.gate.release("job-1", now=NOW)

    assert first.released is True
    assert second.released is False
    assert second.refunded == 0
    assert _credits(fixture) == 5


def test_concurrent_release_refunds_once() -> None:
    fixture = _build_fixture(credits=5)
    fixture.gate.reserve(IDENTITY, 5, "job-1", now=NOW)

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: fixture.gate.release("job-1", now=NOW), range(20)))

    assert sum(1 for r in results if r.released) == 1
    assert _credits(fixture) == 5


def test_release_after_commit_does_not_refund() -> None:
    fixture = _build_fixture(credits=5)
    fixture.gate.reserve(IDENTITY, 2, "job-1", now=NOW)
    fixture.gate.commit("job-1", now=NOW)

    result = fixture.gate.release("job-1", now=NOW)

    assert result.released is False
    assert _credits(fixture) == 3


def test_insufficient_balance_is_rejected_without_side_effects() -> None:
    fixture = _build_fixture(credits=2)

    with pytest.raises(InsufficientBalanceError):
        fixture.gate.reserve(IDENTITY, 3, "job-1", now=NOW)

    assert _credits(fixture) == 2
    assert fixture.reservations.find("job-1") is None


def test_unknown_identity_has_no_balance() -> None:
    fixture = _build_fixture(credits=0)

    with pytest.raises(InsufficientBalanceError):
        fixture.gate.reserve("guest:nobody-00", 1, now=NOW)


@pytest.mark.parametrize("cost", [0, -1, 1001, True, 1.5])
def test_invalid_cost_is_rejected(cost: object) -> None:
    fixture = _build_fixture()

    with pytest.raises(InvalidInputError):
        fixture.gate.reserve(IDENTITY, cost, now=NOW)  # type: ignore[arg-type]


@pytest.mark.parametrize("correlation_id", ["has.dot", "$where", "x" * 65, "with space"])
def test_correlation_id_must_be_safe_field_name(correlation_id: str) -> None:
    fixture = _build_fixture()

    with pytest.raises(InvalidInputError):
        fixture.gate.reserve(IDENTITY, 1, correlation_id, now=NOW)


def test_reused_correlation_id_is_rejected() -> None:
    fixture = _build_fixture()
    fixture.gate.reserve(IDENTITY, 1, "job-1", now=NOW)

    with pytest.raises(DuplicateEventError):
        fixture.gate.reserve(IDENTITY, 1, "job-1", now=NOW)
    assert _credits(fixture) == 9


def test_concurrent_reserves_never_overspend() -> None:
    fixture = _build_fixture(credits=10)
    start = threading.Barrier(50)

    def attempt(i: int) -> bool:
        if i < 50:
            start.wait()
        try:
            fixture.gate.reserve(IDENTITY, 1, f"job-{i}", now=NOW)
        except InsufficientBalanceError:
            return False
        return True

    with ThreadPoolExecutor(max_workers=50) as pool:
        outcomes = list(pool.map(attempt, range(1000)))

    assert outcomes.count(True) == 10
    balance = fixture.balances.get(IDENTITY)
    assert balance is not None
    assert balance.credits == 0
    assert balance.total_spent == 10
    assert len(balance.holds) == 10
    assert balance.is_consistent()


def test_two_concurrent_runs_with_one_credit_commit_exactly_once() -> None:
    fixture = _build_fixture(credits=1)
    provider = FakeGenerationProvider()
    start = threading.Barrier(2)

    def run(i: int) -> str:
        start.wait()
        try:
            result = fixture.gate.run(IDENTITY, 1, {"model": "m"}, provider, f"job-x{i}")
        except InsufficientBalanceError:
            return "insufficient"
        return "committed" if result.committed else "released"

    with ThreadPoolExecutor(max_workers=2) as pool:
        outcomes = sorted(pool.map(run, range(2)))

    assert outcomes == ["committed", "insufficient"]
    assert _credits(fixture) == 0


def test_run_commits_on_success() -> None:
    fixture = _build_fixture(credits=10)
    provider = FakeGenerationProvider()

    result = fixture.gate.run(IDENTITY, 4, {"model": "m", "input": {}}, provider, "job-1")

    assert result.committed is True
    assert result.outcome.result == {"ok": True}
    assert result.balance is not None and result.balance.credits == 6
    assert provider.invoked == [{"model": "m", "input": {}}]


def test_run_releases_on_failure() -> None:
    fixture = _build_fixture(credits=10)
    provider = FakeGenerationProvider(
        GenerationOutcome(status=GenerationStatus.FAILURE, error="bad input")
    )

    result = fixture.gate.run(IDENTITY, 4, {"model": "m"}, provider, "job-1")

    assert result.committed is False
    assert _credits(fixture) == 10
    assert fixture.reservations.find("job-1").status is ReservationStatus.RELEASED  # type: ignore[union-attr]


def test_run_resolves_unknown_outcome_through_status_check() -> None:
    fixture = _build_fixture(credits=10)
    provider = FakeGenerationProvider(
        GenerationOutcome(status=GenerationStatus.UNKNOWN, job_id="m#req-9"),
        status=GenerationOutcome(status=GenerationStatus.SUCCESS, job_id="m#req-9"),
    )

    result = fixture.gate.run(IDENTITY, 4, {"model": "m"}, provider, "job-1")

    assert result.committed is True
    assert provider.status_checks == ["m#req-9"]


def test_run_keeps_hold_when_outcome_stays_unknown() -> None:
    fixture = _build_fixture(credits=10)
    provider = FakeGenerationProvider(
        GenerationOutcome(status=GenerationStatus.UNKNOWN, job_id="m#req-9")
    )

    with pytest.raises(AmbiguousOutcomeError):
        fixture.gate.run(IDENTITY, 4, {"model": "m"}, provider, "job-1")

    reservation = fixture.reservations.find("job-1")
    assert reservation is not None
    assert reservation.status is ReservationStatus.AMBIGUOUS
    assert reservation.job_id == "m#req-9"
    assert _credits(fixture) == 6

    with pytest.raises(AmbiguousOutcomeError):
        fixture.gate.release("job-1")
    assert _credits(fixture) == 6


def test_run_treats_invoke_exception_as_unknown() -> None:
    fixture = _build_fixture(credits=10)
    provider = FakeGenerationProvider()
    provider.invoke_error = TimeoutError("read timeout")

    with pytest.raises(AmbiguousOutcomeError):
        fixture.gate.run(IDENTITY, 4, {"model": "m"}, provider, "job-1")


def test_commit_after_expiry_release_raises() -> None:
    fixture = _build_fixture(credits=10)
    fixture.gate.reserve(IDENTITY, 4, "job-1", now=NOW)

    report = fixture.gate.sweep_expired(now=later(601))
    assert report.released == 1
    assert _credits(fixture) == 10
    assert fixture.reservations.find("job-1").release_reason == "expired"  # type: ignore[union-attr]

    with pytest.raises(ReservationExpiredError):
        fixture.gate.commit("job-1", now=later(602))
    assert _credits(fixture) == 10


def test_sweep_leaves_unexpired_reservations() -> None:
    fixture = _build_fixture(credits=10)
    fixture.gate.reserve(IDENTITY, 4, "job-1", now=NOW)

    report = fixture.gate.sweep_expired(now=later(599))

    assert report.released == 0
    assert _credits(fixture) == 6


def _past_expiry() -> datetime:
    # run() 은 실제 시각으로 예약하므로 스윕 시각도 실제 시각 기준으로 잡는다.
    return datetime.now(timezone.utc) + timedelta(hours=1)


def _ambiguous(fixture: GateFixture, cid: str = "job-1") -> None:
    provider = FakeGenerationProvider(
        GenerationOutcome(status=GenerationStatus.UNKNOWN, job_id=f"m#{cid}")
    )
    with pytest.raises(AmbiguousOutcomeError):
        fixture.gate.run(IDENTITY, 4, {"model": "m"}, provider, cid)


def test_sweep_commits_ambiguous_reservation_that_succeeded() -> None:
    fixture = _build_fixture(credits=10)
    _ambiguous(fixture)
    provider = FakeGenerationProvider(
        status=GenerationOutcome(status=GenerationStatus.SUCCESS, job_id="m#job-1")
    )

    report = fixture.gate.sweep_expired(provider, now=_past_expiry())

    assert report.committed == 1
    assert fixture.reservations.find("job-1").status is ReservationStatus.COMMITTED  # type: ignore[union-attr]
    assert _credits(fixture) == 6


def test_sweep_refunds_ambiguous_reservation_that_failed() -> None:
    fixture = _build_fixture(credits=10)
    _ambiguous(fixture)
    provider = FakeGenerationProvider(
        status=GenerationOutcome(status=GenerationStatus.FAILURE, job_id="m#job-1")
    )

    report = fixture.gate.sweep_expired(provider, now=_past_expiry())

    assert report.released == 1
    assert _credits(fixture) == 10


def test_sweep_extends_then_escalates_unresolved_reservation() -> None:
    fixture = _build_fixture(credits=10, max_attempts=3)
    _ambiguous(fixture)
    provider = FakeGenerationProvider()
    provider.status = None  # 상태 확인 결과가 계속 unknown

    now = _past_expiry()
    for attempt in range(2):
        report = fixture.gate.sweep_expired(provider, now=now)
        assert report.extended == 1
        reservation = fixture.reservations.find("job-1")
        assert reservation is not None
        assert reservation.sweep_attempts == attempt + 1
        assert reservation.expires_at == now + (later(600) - NOW)
        now = reservation.expires_at

    report = fixture.gate.sweep_expired(provider, now=now)

    assert report.escalated == 1
    assert fixture.reservations.find("job-1").status is ReservationStatus.ESCALATED  # type: ignore[union-attr]
    assert _credits(fixture) == 6
    assert fixture.gate.sweep_expired(provider, now=later(10**6)).escalated == 0


def test_commit_unknown_reservation_is_invalid() -> None:
    fixture = _build_fixture()

    with pytest.raises(InvalidInputError):
        fixture.gate.commit("missing")


def _interrupt_commit(fixture: GateFixture, cid: str = "job-1") -> None:
    # 확정 권한을 잡고 hold 를 지운 직후 멈춘 상태
    fixture.reservations.transition(
        cid, (ReservationStatus.RESERVED,), ReservationStatus.COMMITTING, NOW
    )
    fixture.balances.commit_hold(IDENTITY, cid, NOW)


def test_stale_expiry_release_does_not_relabel_commit_in_progress() -> None:
    fixture = _build_fixture(credits=10)
    fixture.gate.reserve(IDENTITY, 4, "job-1", now=NOW)
    stale = fixture.reservations.list_expired((ReservationStatus.RESERVED,), later(601), 10)

    _interrupt_commit(fixture)
    fixture.reservations.list_expired = lambda statuses, now, limit: [  # type: ignore[method-assign]
        r for r in stale if r.status in statuses
    ]
    report = fixture.gate.sweep_expired(now=later(601))

    assert report.released == 0
    assert fixture.reservations.find("job-1").status is ReservationStatus.COMMITTING  # type: ignore[union-attr]
    assert _credits(fixture) == 6

    balance = fixture.gate.commit("job-1", now=later(602))

    assert balance.credits == 6
    assert fixture.reservations.find("job-1").status is ReservationStatus.COMMITTED  # type: ignore[union-attr]


def test_sweep_finishes_interrupted_commit() -> None:
    fixture = _build_fixture(credits=10)
    fixture.gate.reserve(IDENTITY, 4, "job-1", now=NOW)
    _interrupt_commit(fixture)

    report = fixture.gate.sweep_expired(now=later(601))

    assert report.committed == 1
    assert report.released == 0
    assert fixture.reservations.find("job-1").status is ReservationStatus.COMMITTED  # type: ignore[union-attr]
    assert _credits(fixture) == 6
    assert fixture.gate.release("job-1", now=later(602)).released is False


def test_sweep_finishes_interrupted_release() -> None:
    fixture = _build_fixture(credits=10)
    fixture.gate.reserve(IDENTITY, 4, "job-1", now=NOW)
    fixture.reservations.transition(
        "job-1",
        (ReservationStatus.RESERVED,),
        ReservationStatus.RELEASING,
        NOW,
        release_reason="failed",
    )

    with pytest.raises(ReservationExpiredError):
        fixture.gate.commit("job-1", now=later(1))
    report = fixture.gate.sweep_expired(now=later(601))

    assert report.released == 1
    reservation = fixture.reservations.find("job-1")
    assert reservation is not None
    assert reservation.status is ReservationStatus.RELEASED
    assert reservation.release_reason == "failed"
    assert _credits(fixture) == 10


def test_commit_without_hold_is_released_as_missing() -> None:
    fixture = _build_fixture(credits=10)
    fixture.gate.reserve(IDENTITY, 4, "job-1", now=NOW)
    fixture.balances.release_hold(IDENTITY, "job-1", 4, NOW)

    with pytest.raises(ReservationExpiredError):
        fixture.gate.commit("job-1", now=later(1))

    assert fixture.reservations.find("job-1").release_reason == "hold_missing"  # type: ignore[union-attr]
    assert _credits(fixture) == 10
