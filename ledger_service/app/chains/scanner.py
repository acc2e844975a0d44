"""결제 수신 지갑 스캐너.

여러 체인을 스레드 풀에서 병렬로 조회하고, 기대 금액 허용 범위 안의 첫 전송을 반환한다.
체인 하나의 오류/지연은 로그만 남기고 나머지 체인 결과에 영향을 주지 않는다.
모든 체인이 실패했을 때만 UpstreamUnavailableError 를 올린다.
송금자 지갑이 주어지면 그 지갑이 보낸 전송만 매칭하고,
find_transaction 은 제출된 트랜잭션 하나만 확인한다.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from decimal import Decimal
from typing import Callable

from ..config import AppConfig, ScannerConfig, get_config, get_payment_wallet
from ..exceptions import InvalidInputError, UpstreamUnavailableError
from ..models.payment import AmountWindow, TransferLog, TransferMatch
from .base import ChainRpcProvider, ChainTarget
from .evm import EvmTransferLogProvider
from .solana import SolanaTransferLogProvider


logger = logging.getLogger(__name__)

SkipPredicate = Callable[[str, str], bool]  # (chain, tx_hash) -> 이미 처리됨 여부


def _same_address(chain_kind: str, a: str, b: str) -> bool:
    if chain_kind == "evm":
        return a.lower() == b.lower()
    return a == b


class ChainPaymentScanner:
    def __init__(
        self,
        targets: list[ChainTarget],
        *,
        timeout_seconds: float = 10.0,
        tolerance: Decimal = Decimal("0.01"),
    ) -> None:
        self._targets = {target.name: target for target in targets}
        self._timeout = timeout_seconds
        self._tolerance = tolerance

    @property
    def tolerance(self) -> Decimal:
        return self._tolerance

    @property
    def chains(self) -> list[str]:
        return list(self._targets)

    @property
    def targets(self) -> list[ChainTarget]:
        return list(self._targets.values())

    def _target(self, chain: str) -> ChainTarget:
        target = self._targets.get(chain)
        if target is None:
            raise InvalidInputError(f"unsupported chain: {chain}")
        return target

    def recipient_for(self, chain: str) -> str:
        return self._target(chain).recipient

    def kind_of(self, chain: str) -> str:
        return self._target(chain).config.kind

    def scan(
        self,
        chain: str,
        amount_window: AmountWindow,
        *,
        recipient: str | None = None,
        sender: str | None = None,
        block_depth: int | None = None,
        skip: SkipPredicate | None = None,
    ) -> TransferMatch | None:
        """체인 하나를 동기로 스캔한다. RPC 오류는 그대로 올린다.

        sender 가 주어지면 그 지갑이 보낸 전송만 매칭한다.
        """

        target = self._target(chain)

        recipient = recipient or target.recipient
        logs = target.provider.get_recent_transfer_logs(
            target.config.token_address,
            recipient,
            block_depth or target.block_depth,
        )
        return self._select_match(target, recipient, logs, amount_window, sender, skip)

    def scan_all(
        self,
        amount_window: AmountWindow,
        *,
        chains: list[str] | None = None,
        recipient_by_chain: dict[str, str] | None = None,
        sender: str | None = None,
        skip: SkipPredicate | None = None,
    ) -> TransferMatch | None:
        names = chains or list(self._targets)
        unknown = [name for name in names if name not in self._targets]
        if unknown:
            raise InvalidInputError(f"unsupported chain: {', '.join(unknown)}")
        if not names:
            return None

        recipient_by_chain = recipient_by_chain or {}
        failures = 0
        executor = ThreadPoolExecutor(
            max_workers=len(names), thread_name_prefix="chain-scan"
        )
        try:
            futures: dict[Future[TransferMatch | None], str] = {
                executor.submit(
                    self.scan,
                    name,
                    amount_window,
                    recipient=recipient_by_chain.get(name),
                    sender=sender,
                    skip=skip,
                ): name
                for name in names
            }
            pending = set(futures)
            deadline = time.monotonic() + self._timeout

            while pending:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                done, pending = wait(
                    pending, timeout=remaining, return_when=FIRST_COMPLETED
                )
                for future in done:
                    chain = futures[future]
                    try:
                        match = future.result()
                    except Exception as exc:  # noqa: BLE001
                        failures += 1
                        logger.warning(
                            "chain scan failed: %s", exc, extra={"chain": chain}
                        )
                        continue
                    if match is not None:
                        logger.info(
                            "payment transfer found",
                            extra={"chain": chain, "external_ref": match.tx_hash},
                        )
                        return match

            for future in pending:
                failures += 1
                logger.warning(
                    "chain scan timed out after %.1fs",
                    self._timeout,
                    extra={"chain": futures[future]},
                )
        finally:
            # 타임아웃된 RPC 호출은 중단할 수 없으므로 기다리지 않고 버린다.
            executor.shutdown(wait=False, cancel_futures=True)

        if failures == len(names):
            raise UpstreamUnavailableError("payment networks unavailable, retry later")
        return None

    def find_transaction(
        self,
        chain: str,
        tx_hash: str,
        *,
        amount_window: AmountWindow | None = None,
        sender: str | None = None,
    ) -> TransferMatch | None:
        """제출된 트랜잭션 하나를 확인한다.

        트랜잭션이 아직 없거나 확정 전이면 None (클라이언트가 잠시 후 재시도).
        확정됐지만 수신 지갑으로 가는 조건에 맞는 전송이 없으면 InvalidInputError.
        """

        target = self._target(chain)
        try:
            transfers = target.provider.get_transaction_transfers(
                target.config.token_address, target.recipient, tx_hash
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "transaction lookup failed: %s",
                exc,
                extra={"chain": chain, "external_ref": tx_hash},
            )
            raise UpstreamUnavailableError("payment network unavailable, retry later") from exc
        if transfers is None:
            return None
        if not transfers:
            raise InvalidInputError("transaction does not pay the payment wallet")

        match = self._select_match(
            target, target.recipient, transfers, None, sender, None
        )
        if match is None:
            raise InvalidInputError("transaction was not sent by this wallet")
        if amount_window is not None and not amount_window.contains(match.amount):
            raise InvalidInputError("transaction amount does not match the expected amount")
        return match

    def _select_match(
        self,
        target: ChainTarget,
        recipient: str,
        logs: list[TransferLog],
        window: AmountWindow | None,
        sender: str | None,
        skip: SkipPredicate | None,
    ) -> TransferMatch | None:
        kind = target.config.kind
        # 최근 블록부터 본다
        for log in sorted(logs, key=lambda item: item.block_number, reverse=True):
            if not _same_address(kind, log.recipient, recipient):
                continue
            if sender is not None and not _same_address(kind, log.sender, sender):
                continue
            if window is not None and not window.contains(log.amount):
                continue
            if skip is not None and skip(target.name, log.tx_hash):
                continue
            return TransferMatch(
                chain=target.name,
                token_symbol=target.config.token_symbol,
                token_address=target.config.token_address,
                tx_hash=log.tx_hash,
                sender=log.sender,
                recipient=log.recipient,
                amount=log.amount,
                block_number=log.block_number,
            )
        return None


def build_scanner(config: ScannerConfig) -> ChainPaymentScanner:
    """설정의 체인 목록으로 스캐너를 만든다. RPC URL 이 없는 체인은 건너뛴다."""

    targets: list[ChainTarget] = []
    for chain in config.chains:
        if not chain.rpc_url:
            logger.warning("no RPC URL configured, chain disabled", extra={"chain": chain.name})
            continue

        provider: ChainRpcProvider
        if chain.kind == "solana":
            provider = SolanaTransferLogProvider(
                chain.rpc_url, decimals=chain.decimals, timeout=config.timeout_seconds
            )
            depth = config.solana_signature_limit
        else:
            provider = EvmTransferLogProvider.from_rpc_url(
                chain.rpc_url,
                decimals=chain.decimals,
                chain=chain.name,
                timeout=config.timeout_seconds,
            )
            depth = config.evm_block_depth

        targets.append(
            ChainTarget(
                config=chain,
                provider=provider,
                recipient=get_payment_wallet(chain.kind),
                block_depth=depth,
            )
        )

    return ChainPaymentScanner(
        targets,
        timeout_seconds=config.timeout_seconds,
        tolerance=config.tolerance,
    )


_scanner: ChainPaymentScanner | None = None
_scanner_lock = threading.Lock()


def get_chain_scanner() -> ChainPaymentScanner:
    global _scanner
    if _scanner is None:
        with _scanner_lock:
            if _scanner is None:
                cfg: AppConfig = get_config()
                try:
                    _scanner = build_scanner(cfg.scanner)
                except RuntimeError as exc:
                    # 수신 지갑이 설정되지 않은 배포에서는 체인 결제 경로만 막힌다.
                    logger.error("chain payments not configured: %s", exc)
                    raise UpstreamUnavailableError("chain payments are not available") from exc
    return _scanner
