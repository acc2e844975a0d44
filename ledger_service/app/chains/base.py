from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from ..config import ChainConfig
from ..models.payment import TransferLog


class ChainRpcProvider(Protocol):
    """체인별 RPC 어댑터 계약.

    최근 block_depth 범위(Solana 는 최근 서명 개수)에서 recipient 로 들어온
    token 전송 목록을 반환한다. 금액은 토큰 decimals 를 반영한 Decimal 이다.
    """

    def get_recent_transfer_logs(
        self, token: str, recipient: str, block_depth: int
    ) -> list[TransferLog]:  # pragma: no cover - Protocol
        ...

    def get_transaction_transfers(
        self, token: str, recipient: str, tx_hash: str
    ) -> list[TransferLog] | None:  # pragma: no cover - Protocol
        """트랜잭션 하나에서 recipient 로 들어온 token 전송 목록.

        트랜잭션이 없거나 아직 확정되지 않았으면 None, 실패했거나 해당 전송이 없으면 빈 리스트.
        """
        ...


@dataclass(slots=True)
class ChainTarget:
    """스캔 대상 체인 하나 (설정 + 어댑터 + 결제 수신 지갑)."""

    config: ChainConfig
    provider: ChainRpcProvider
    recipient: str
    block_depth: int

    @property
    def name(self) -> str:
        return self.config.name
