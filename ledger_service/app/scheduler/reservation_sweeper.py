from __future__ import annotations

import logging
import threading

from common.eventbus.kafka import get_event_bus
from common.mongo.client import get_database

from ..config import get_config
from ..generation.provider import GenerationProvider
from ..generation.queue_provider import get_generation_provider
from ..repositories.balance_repository import BalanceRepository
from ..repositories.reservation_repository import ReservationRepository
from ..services.credit_gate import CreditGate
from ..services.ledger_events import LedgerEventPublisher


logger = logging.getLogger(__name__)


_SWEEPER_THREAD: threading.Thread | None = None
_SWEEPER_STOP_EVENT: threading.Event | None = None


def _resolve_provider() -> GenerationProvider | None:
    try:
        return get_generation_provider()
    except RuntimeError as exc:
        # 하류 상태를 확인할 수 없으면 ambiguous 예약은 재확인 횟수만 쌓이다 escalated 된다.
        logger.warning("generation provider unavailable for sweep: %s", exc)
        return None


def _run_sweeper_loop(stop_event: threading.Event) -> None:
    cfg = get_config().reservations
    interval = float(cfg.sweep_interval_seconds)
    logger.info("reservation sweeper thread started (interval=%.0f seconds)", interval)

    db = get_database()
    gate = CreditGate(
        BalanceRepository(db),
        ReservationRepository(db),
        events=LedgerEventPublisher(get_event_bus()),
        ttl_seconds=cfg.ttl_seconds,
        max_cost=cfg.max_cost,
        ambiguous_max_attempts=cfg.ambiguous_max_attempts,
    )
    provider = _resolve_provider()

    try:
        while not stop_event.wait(interval):
            try:
                gate.sweep_expired(provider, limit=cfg.sweep_batch_size)
            except Exception:  # noqa: BLE001
                logger.exception("reservation sweep failed")
    finally:
        logger.info("reservation sweeper thread stopped")


def start_reservation_sweeper() -> None:
    """만료 예약 정리 스레드를 시작한다.

    FastAPI lifespan 시작 시 호출된다.
    """

    global _SWEEPER_THREAD, _SWEEPER_STOP_EVENT

    if _SWEEPER_THREAD and _SWEEPER_THREAD.is_alive():
        return

    stop_event = threading.Event()
    thread = threading.Thread(
        target=_run_sweeper_loop,
        args=(stop_event,),
        name="reservation-sweeper",
        daemon=True,
    )

    _SWEEPER_STOP_EVENT = stop_event
    _SWEEPER_THREAD = thread

    thread.start()
    logger.info("reservation sweeper thread launched")


def stop_reservation_sweeper() -> None:
    """만료 예약 정리 스레드를 정지한다."""

    global _SWEEPER_THREAD, _SWEEPER_STOP_EVENT

    if _SWEEPER_THREAD is None or _SWEEPER_STOP_EVENT is None:
        return

    _SWEEPER_STOP_EVENT.set()
    _SWEEPER_THREAD.join(timeout=10.0)

    _SWEEPER_THREAD = None
    _SWEEPER_STOP_EVENT = None

    logger.info("reservation sweeper thread stopped by shutdown")
