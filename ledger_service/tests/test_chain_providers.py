from __future__ import annotations

import json
from decimal import Decimal
from types import SimpleNamespace
from typing import Any

import httpx
import pytest
from web3.exceptions import TransactionNotFound

from ledger_service.app.chains.evm import (
    TRANSFER_TOPIC,
    EvmTransferLogProvider,
    address_topic,
    topic_to_address,
)
from ledger_service.app.chains.solana import SolanaRpcError, SolanaTransferLogProvider


USDC_BASE = "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"
RECIPIENT = "0x" + "b" * 40
SENDER = "0x" + "1" * 40

USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
SOL_WALLET = "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin"
SOL_TOKEN_ACCOUNT = "7UX2i7SucgLMQcfZ75s3VXmZZY4YRUyJN9X1RgfMoDUi"
SOL_SENDER = "5Q544fKrFoe6tsEbD7S8EmxGTJYAKtTVhAW5Q5pge4j1"


class _FakeEth:
    def __init__(
        self,
        logs: list[dict[str, Any]],
        block_number: int = 5000,
        receipts: dict[str, dict[str, Any]] | None = None,
    ) -> None:
        self.block_number = block_number
        self._logs = logs
        self._receipts = receipts or {}
        self.filters: list[dict[str, Any]] = []

    def get_logs(self, filter_params: dict[str, Any]) -> list[dict[str, Any]]:
        self.filters.append(filter_params)
        return self._logs

    def get_transaction_receipt(self, tx_hash: str) -> dict[str, Any]:
        receipt = self._receipts.get(tx_hash)
        if receipt is None:
            raise TransactionNotFound(f"Transaction with hash: {tx_hash!r} not found.")
        return receipt


def _evm_log(amount_raw: int, *, data_as_bytes: bool = True) -> dict[str, Any]:
    data: Any = amount_raw.to_bytes(32, "big") if data_as_bytes else hex(amount_raw)
    return {
        "topics": [
            bytes.fromhex(TRANSFER_TOPIC[2:]),
            bytes.fromhex(address_topic(SENDER)[2:]),
            bytes.fromhex(address_topic(RECIPIENT)[2:]),
        ],
        "data": data,
        "transactionHash": bytes.fromhex("ab" * 32),
        "blockNumber": 4990,
    }


def test_address_topic_round_trip() -> None:
    topic = address_topic(RECIPIENT.upper().replace("0X", "0x"))

    assert len(topic) == 66
    assert topic_to_address(topic) == RECIPIENT


def test_evm_provider_filters_by_recipient_topic_and_scales_amount() -> None:
    eth = _FakeEth([_evm_log(9_950_000), _evm_log(10_000_000, data_as_bytes=False)])
    provider = EvmTransferLogProvider(SimpleNamespace(eth=eth), decimals=6, chain="base")  # type: ignore[arg-type]

    logs = provider.get_recent_transfer_logs(USDC_BASE, RECIPIENT, 1000)

    params = eth.filters[0]
    assert params["fromBlock"] == 4000
    assert params["toBlock"] == 5000
    assert params["address"].lower() == USDC_BASE
    assert params["topics"] == [TRANSFER_TOPIC, None, address_topic(RECIPIENT)]

    assert [log.amount for log in logs] == [Decimal("9.95"), Decimal("10")]
    assert logs[0].tx_hash == "0x" + "ab" * 32
    assert logs[0].sender == SENDER
    assert logs[0].recipient == RECIPIENT
    assert logs[0].block_number == 4990


def test_evm_provider_skips_logs_without_indexed_recipient() -> None:
    log = _evm_log(1_000_000)
    log["topics"] = log["topics"][:2]
    provider = EvmTransferLogProvider(SimpleNamespace(eth=_FakeEth([log])), decimals=6)  # type: ignore[arg-type]

    assert provider.get_recent_transfer_logs(USDC_BASE, RECIPIENT, 10) == []


def _receipt(status: int, logs: list[dict[str, Any]]) -> dict[str, Any]:
    return {"status": status, "blockNumber": 4990, "logs": logs}


def _receipt_log(address: str, *, recipient: str = RECIPIENT) -> dict[str, Any]:
    log = _evm_log(10_000_000)
    log["address"] = address
    log["topics"][2] = bytes.fromhex(address_topic(recipient)[2:])
    return log


def test_evm_transaction_transfers_keep_only_token_transfers_to_recipient() -> None:
    tx_hash = "0x" + "ab" * 32
    eth = _FakeEth(
        [],
        receipts={
            tx_hash: _receipt(
                1,
                [
                    _receipt_log(USDC_BASE.upper().replace("0X", "0x")),
                    _receipt_log("0x" + "9" * 40),
                    _receipt_log(USDC_BASE, recipient="0x" + "c" * 40),
                ],
            )
        },
    )
    provider = EvmTransferLogProvider(SimpleNamespace(eth=eth), decimals=6)  # type: ignore[arg-type]

    transfers = provider.get_transaction_transfers(USDC_BASE, RECIPIENT, tx_hash)

    assert transfers is not None
    assert [(t.sender, t.recipient, t.amount) for t in transfers] == [
        (SENDER, RECIPIENT, Decimal("10"))
    ]


def test_evm_transaction_transfers_missing_or_reverted() -> None:
    reverted = "0x" + "cd" * 32
    eth = _FakeEth([], receipts={reverted: _receipt(0, [_receipt_log(USDC_BASE)])})
    provider = EvmTransferLogProvider(SimpleNamespace(eth=eth), decimals=6)  # type: ignore[arg-type]

    assert provider.get_transaction_transfers(USDC_BASE, RECIPIENT, "0x" + "ef" * 32) is None
    assert provider.get_transaction_transfers(USDC_BASE, RECIPIENT, reverted) == []


def _solana_transaction(
    *, mint: str = USDC_MINT, amount: str = "10000000", inner: bool = False
) -> dict[str, Any]:
    transfer = {
        "program": "spl-token",
        "parsed": {
            "type": "transferChecked",
            "info": {
                "source": "SrcTokenAccount1111111111111111111111111111",
                "destination": SOL_TOKEN_ACCOUNT,
                "authority": SOL_SENDER,
                "mint": mint,
                "tokenAmount": {"amount": amount, "decimals": 6},
            },
        },
    }
    message_instructions = [] if inner else [transfer]
    inner_instructions = [{"index": 0, "instructions": [transfer]}] if inner else []
    return {
        "slot": 250_000_000,
        "meta": {
            "err": None,
            "preTokenBalances": [],
            "postTokenBalances": [
                {"accountIndex": 1, "owner": SOL_WALLET, "mint": USDC_MINT},
            ],
            "innerInstructions": inner_instructions,
        },
        "transaction": {
            "message": {
                "accountKeys": [
                    {"pubkey": SOL_SENDER},
                    {"pubkey": SOL_TOKEN_ACCOUNT},
                ],
                "instructions": message_instructions,
            }
        },
    }


def _solana_client(transactions: dict[str, dict[str, Any] | None], *, error: bool = False) -> httpx.Client:
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if error:
            return httpx.Response(
                200, json={"jsonrpc": "2.0", "id": body["id"], "error": {"code": -32005}}
            )
        if body["method"] == "getSignaturesForAddress":
            assert body["params"][0] == SOL_WALLET
            result: Any = [
                {"signature": signature, "err": None} for signature in transactions
            ] + [{"signature": "failedSig", "err": {"InstructionError": [0, "Custom"]}}]
        else:
            result = transactions.get(body["params"][0])
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    return httpx.Client(transport=httpx.MockTransport(handler))


def test_solana_provider_resolves_token_account_owner() -> None:
    provider = SolanaTransferLogProvider(
        "https://solana.test",
        client=_solana_client({"sig1": _solana_transaction(amount="9950000")}),
    )

    logs = provider.get_recent_transfer_logs(USDC_MINT, SOL_WALLET, 20)

    assert len(logs) == 1
    assert logs[0].tx_hash == "sig1"
    assert logs[0].amount == Decimal("9.95")
    assert logs[0].recipient == SOL_WALLET
    assert logs[0].sender == SOL_SENDER
    assert logs[0].block_number == 250_000_000


def test_solana_provider_reads_inner_instructions() -> None:
    provider = SolanaTransferLogProvider(
        "https://solana.test",
        client=_solana_client({"sig-inner": _solana_transaction(inner=True)}),
    )

    logs = provider.get_recent_transfer_logs(USDC_MINT, SOL_WALLET, 20)

    assert [log.amount for log in logs] == [Decimal("10")]


def test_solana_provider_ignores_other_mints_and_missing_transactions() -> None:
    provider = SolanaTransferLogProvider(
        "https://solana.test",
        client=_solana_client(
            {
                "sig-other": _solana_transaction(mint="So11111111111111111111111111111111111111112"),
                "sig-missing": None,
            }
        ),
    )

    assert provider.get_recent_transfer_logs(USDC_MINT, SOL_WALLET, 20) == []


def test_solana_rpc_error_is_raised() -> None:
    provider = SolanaTransferLogProvider("https://solana.test", client=_solana_client({}, error=True))

    with pytest.raises(SolanaRpcError):
        provider.get_recent_transfer_logs(USDC_MINT, SOL_WALLET, 20)


def test_solana_transaction_transfers_by_signature() -> None:
    provider = SolanaTransferLogProvider(
        "https://solana.test",
        client=_solana_client({"sig1": _solana_transaction(), "sig-missing": None}),
    )

    transfers = provider.get_transaction_transfers(USDC_MINT, SOL_WALLET, "sig1")

    assert transfers is not None
    assert [(t.tx_hash, t.sender, t.amount) for t in transfers] == [
        ("sig1", SOL_SENDER, Decimal("10"))
    ]
    assert provider.get_transaction_transfers(USDC_MINT, SOL_WALLET, "sig-missing") is None
