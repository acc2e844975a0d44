"""잔액 조회 서비스.

잔액 문서가 아직 없는 아이덴티티는 0 잔액으로 보여 준다. (조회로는 문서를 만들지 않는다.)
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import Depends

from ..models.balance import Balance
from ..models.payment import PaymentEvent
from ..repositories.interfaces import (
    BalanceRepositoryInterface,
    PaymentEventRepositoryInterface,
)
from .payment_reconciler import get_balance_repository, get_payment_event_repository


class BalanceService:
    def __init__(
        self,
        balance_repo: BalanceRepositoryInterface,
        event_repo: PaymentEventRepositoryInterface,
    ) -> None:
        self._balance_repo = balance_repo
        self._event_repo = event_repo

    def get_balance(self, identity_key: str) -> Balance:
        balance = self._balance_repo.get(identity_key)
        if balance is not None:
            return balance
        now = datetime.now(timezone.utc)
        return Balance(identity_key=identity_key, created_at=now, updated_at=now)

    def get_history(
        self, identity_key: str, page: int = 1, page_size: int = 20
    ) -> tuple[list[PaymentEvent], int]:
        """결제/지급 이력 조회 (최신순)."""
        return self._event_repo.list_by_identity(identity_key, page, page_size)


def get_balance_service(
    balance_repo: BalanceRepositoryInterface = Depends(get_balance_repository),
    event_repo: PaymentEventRepositoryInterface = Depends(get_payment_event_repository),
) -> BalanceService:
    return BalanceService(balance_repo, event_repo)
