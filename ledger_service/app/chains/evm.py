"""EVM 계열 체인의 ERC-20 Transfer 로그 조회 (web3)."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from web3 import Web3
from web3.exceptions import TransactionNotFound

from ..models.payment import TransferLog


logger = logging.getLogger(__name__)

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


def _to_hex(value: Any) -> str:
    """HexBytes / bytes / str 를 0x 접두어가 붙은 소문자 hex 문자열로."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value).lower()
    return text if text.startswith("0x") else "0x" + text


def address_topic(address: str) -> str:
    """indexed address 파라미터용 32바이트 토픽."""
    return "0x" + address.lower().removeprefix("0x").rjust(64, "0")


def topic_to_address(topic: Any) -> str:
    return "0x" + _to_hex(topic)[-40:]


class EvmTransferLogProvider:
    """eth_getLogs 로 최근 블록의 Transfer(to=recipient) 로그를 읽는다."""

    def __init__(self, web3: Web3, *, decimals: int = 6, chain: str = "") -> None:
        self._web3 = web3
        self._decimals = decimals
        self._chain = chain

    @classmethod
    def from_rpc_url(
        cls, rpc_url: str, *, decimals: int = 6, chain: str = "", timeout: float = 10.0
    ) -> "EvmTransferLogProvider":
        web3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        return cls(web3, decimals=decimals, chain=chain)

    def get_recent_transfer_logs(
        self, token: str, recipient: str, block_depth: int
    ) -> list[TransferLog]:
        latest = int(self._web3.eth.block_number)
        from_block = max(latest - block_depth, 0)

        raw_logs = self._web3.eth.get_logs(
            {
                "fromBlock": from_block,
                "toBlock": latest,
                "address": Web3.to_checksum_address(token),
                "topics": [TRANSFER_TOPIC, None, address_topic(recipient)],
            }
        )

        transfers = [
            transfer
            for transfer in (self._parse_transfer(log) for log in raw_logs)
            if transfer is not None
        ]

        logger.debug(
            "fetched %d transfer logs (blocks %d-%d)",
            len(transfers),
            from_block,
            latest,
            extra={"chain": self._chain},
        )
        return transfers

    def get_transaction_transfers(
        self, token: str, recipient: str, tx_hash: str
    ) -> list[TransferLog] | None:
        """영수증 로그에서 token 컨트랙트의 Transfer(to=recipient) 만 고른다."""

        try:
            receipt = self._web3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        if receipt is None:
            return None
        if int(receipt["status"]) != 1:
            logger.info(
                "transaction reverted", extra={"chain": self._chain, "external_ref": tx_hash}
            )
            return []

        token = token.lower()
        transfers: list[TransferLog] = []
        for log in receipt["logs"]:
            if str(log["address"]).lower() != token:
                continue
            topics = log["topics"]
            if not topics or _to_hex(topics[0]) != TRANSFER_TOPIC:
                continue
            transfer = self._parse_transfer(log)
            if transfer is None or transfer.recipient != recipient.lower():
                continue
            transfers.append(transfer)
        return transfers

    def _parse_transfer(self, log: Any) -> TransferLog | None:
        topics = log["topics"]
        if len(topics) < 3:
            return None
        data = log["data"]
        raw_amount = (
            int.from_bytes(bytes(data), "big")
            if isinstance(data, (bytes, bytearray))
            else int(str(data), 16)
        )
        return TransferLog(
            tx_hash=_to_hex(log["transactionHash"]),
            sender=topic_to_address(topics[1]),
            recipient=topic_to_address(topics[2]),
            amount=Decimal(raw_amount).scaleb(-self._decimals),
            block_number=int(log["blockNumber"]),
        )
