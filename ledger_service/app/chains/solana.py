"""Solana SPL 토큰 전송 조회 (httpx JSON-RPC).

SPL 전송의 destination 은 지갑이 아니라 토큰 계정이므로,
트랜잭션 메타의 postTokenBalances 로 토큰 계정 -> (owner, mint) 를 복원해 비교한다.
"""

from __future__ import annotations

import itertools
import logging
from decimal import Decimal
from typing import Any

import httpx

from ..models.payment import TransferLog


logger = logging.getLogger(__name__)

_TRANSFER_TYPES = ("transfer", "transferChecked")


class SolanaRpcError(Exception):
    """JSON-RPC error 응답."""


class SolanaTransferLogProvider:
    def __init__(
        self,
        rpc_url: str,
        *,
        decimals: int = 6,
        client: httpx.Client | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._rpc_url = rpc_url
        self._decimals = decimals
        self._client = client or httpx.Client(timeout=timeout)
        self._ids = itertools.count(1)

    def _call(self, method: str, params: list[Any]) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        resp = self._client.post(self._rpc_url, json=payload)
        resp.raise_for_status()
        body = resp.json()
        if body.get("error"):
            raise SolanaRpcError(f"{method} failed: {body['error']}")
        return body.get("result")

    def get_recent_transfer_logs(
        self, token: str, recipient: str, block_depth: int
    ) -> list[TransferLog]:
        signatures = self._call(
            "getSignaturesForAddress",
            [recipient, {"limit": block_depth, "commitment": "finalized"}],
        ) or []

        transfers: list[TransferLog] = []
        for item in signatures:
            if item.get("err") is not None:
                continue
            signature = item.get("signature")
            if not signature:
                continue
            tx = self._get_transaction(signature)
            if not tx:
                continue
            transfers.extend(
                self._extract_transfers(tx, signature, token, recipient)
            )
        return transfers

    def get_transaction_transfers(
        self, token: str, recipient: str, tx_hash: str
    ) -> list[TransferLog] | None:
        tx = self._get_transaction(tx_hash)
        if not tx:
            return None
        return self._extract_transfers(tx, tx_hash, token, recipient)

    def _get_transaction(self, signature: str) -> dict[str, Any] | None:
        return self._call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "commitment": "finalized",
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )

    def _extract_transfers(
        self, tx: dict[str, Any], signature: str, mint: str, recipient: str
    ) -> list[TransferLog]:
        meta = tx.get("meta") or {}
        if meta.get("err") is not None:
            return []

        message = (tx.get("transaction") or {}).get("message") or {}
        account_keys = [
            key.get("pubkey") if isinstance(key, dict) else key
            for key in message.get("accountKeys") or []
        ]

        # 토큰 계정 주소 -> (owner, mint)
        token_accounts: dict[str, tuple[str | None, str | None]] = {}
        for balance in itertools.chain(
            meta.get("preTokenBalances") or [], meta.get("postTokenBalances") or []
        ):
            index = balance.get("accountIndex")
            if index is None or index >= len(account_keys):
                continue
            token_accounts[account_keys[index]] = (balance.get("owner"), balance.get("mint"))

        instructions = list(message.get("instructions") or [])
        for inner in meta.get("innerInstructions") or []:
            instructions.extend(inner.get("instructions") or [])

        transfers: list[TransferLog] = []
        for ix in instructions:
            if ix.get("program") != "spl-token":
                continue
            parsed = ix.get("parsed") or {}
            if not isinstance(parsed, dict) or parsed.get("type") not in _TRANSFER_TYPES:
                continue
            info = parsed.get("info") or {}

            destination = info.get("destination")
            owner, account_mint = token_accounts.get(destination, (None, None))
            ix_mint = info.get("mint") or account_mint
            if ix_mint != mint:
                continue
            if recipient not in (owner, destination):
                continue

            amount = self._parse_amount(info)
            if amount is None:
                continue

            transfers.append(
                TransferLog(
                    tx_hash=signature,
                    sender=info.get("authority") or info.get("source") or "",
                    recipient=recipient,
                    amount=amount,
                    block_number=int(tx.get("slot") or 0),
                )
            )
        return transfers

    def _parse_amount(self, info: dict[str, Any]) -> Decimal | None:
        token_amount = info.get("tokenAmount")
        if isinstance(token_amount, dict) and token_amount.get("amount") is not None:
            decimals = int(token_amount.get("decimals", self._decimals))
            return Decimal(str(token_amount["amount"])).scaleb(-decimals)
        if info.get("amount") is not None:
            return Decimal(str(info["amount"])).scaleb(-self._decimals)
        return None

    def close(self) -> None:
        self._client.close()
