"""원장 서비스 예외.

각 예외는 kind(클라이언트 노출 코드)와 safe_message(클라이언트 노출 메시지)만 가진다.
스택트레이스나 결제사/RPC 식별자는 로그에만 남긴다.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base exception for all ledger errors."""

    kind: str = "ledger_error"
    status_code: int = 500
    default_message: str = "internal ledger error"

    def __init__(self, safe_message: str | None = None) -> None:
        self.safe_message = safe_message or self.default_message
        super().__init__(self.safe_message)


class InvalidInputError(LedgerError):
    """Malformed identity, amount or reference."""

    kind = "invalid_input"
    status_code = 400
    default_message = "invalid input"


class InsufficientBalanceError(LedgerError):
    """Balance cannot cover the requested cost."""

    kind = "insufficient_balance"
    status_code = 402
    default_message = "insufficient credits"


class DuplicateEventError(LedgerError):
    """External reference or correlation id was already processed."""

    kind = "duplicate_event"
    status_code = 409
    default_message = "already processed"


class UpstreamUnavailableError(LedgerError):
    """Chain RPC, card processor or generation provider unreachable."""

    kind = "upstream_unavailable"
    status_code = 503
    default_message = "upstream service unavailable, retry later"


class ReservationExpiredError(LedgerError):
    """Reservation was already released by expiry."""

    kind = "reservation_expired"
    status_code = 410
    default_message = "reservation expired"


class AmbiguousOutcomeError(LedgerError):
    """External call outcome unknown; credits stay held until reconciled."""

    kind = "ambiguous_outcome"
    status_code = 202
    default_message = "result pending verification"


class PersistenceError(LedgerError):
    """Store write failed after retries."""

    kind = "persistence_error"
    status_code = 500
    default_message = "could not record the change, retry later"
