from __future__ import annotations

from decimal import Decimal
from pathlib import Path

import pytest

from ledger_service.app.config import get_payment_wallet, load_config


ROOT_CONFIG = Path(__file__).resolve().parents[2] / "config.yaml"


def test_repository_config_loads(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("ALCHEMY_API_KEY", raising=False)
    monkeypatch.delenv("ETHEREUM_RPC_URL", raising=False)
    monkeypatch.setenv("BASE_RPC_URL", "https://base.rpc.test")

    config = load_config(ROOT_CONFIG)

    assert config.pricing.rate == Decimal("6.67")
    assert config.pricing.tier_multipliers["nft_holder"] == Decimal("1.2")
    assert config.abuse.per_device_cap == 2
    assert config.reservations.ttl_seconds == 600
    assert config.idempotency.request_ttl_seconds == 30

    chains = {chain.name: chain for chain in config.scanner.chains}
    assert set(chains) == {"ethereum", "polygon", "arbitrum", "optimism", "base", "solana"}
    assert chains["base"].rpc_url == "https://base.rpc.test"
    assert chains["ethereum"].rpc_url is None
    assert chains["solana"].kind == "solana"
    assert chains["solana"].rpc_url


def test_alchemy_key_builds_evm_rpc_urls(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("ETHEREUM_RPC_URL", raising=False)
    monkeypatch.setenv("ALCHEMY_API_KEY", "abc")

    config = load_config(ROOT_CONFIG)

    ethereum = next(c for c in config.scanner.chains if c.name == "ethereum")
    assert ethereum.rpc_url is not None and ethereum.rpc_url.endswith("/v2/abc")


def test_defaults_apply_to_missing_sections(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("ledger: {}\n", encoding="utf-8")

    config = load_config(path)

    assert config.pricing.rate == Decimal("6.67")
    assert config.reservations.ambiguous_max_attempts == 5
    assert config.scanner.chains == []


@pytest.mark.parametrize(
    "body",
    [
        "ledger:\n  pricing:\n    rate: 0\n",
        "ledger:\n  abuse:\n    per_device_cap: -1\n",
        "ledger:\n  reservations:\n    ttl_seconds: soon\n",
        "ledger:\n  scanner:\n    chains:\n      - {name: x, kind: bitcoin, token_address: t}\n",
    ],
)
def test_invalid_values_fail_fast(tmp_path: Path, body: str) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(body, encoding="utf-8")

    with pytest.raises(RuntimeError):
        load_config(path)


def test_payment_wallet_is_required(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("EVM_PAYMENT_WALLET", raising=False)
    monkeypatch.setenv("SOLANA_PAYMENT_WALLET", "So1anaWallet")

    assert get_payment_wallet("solana") == "So1anaWallet"
    with pytest.raises(RuntimeError):
        get_payment_wallet("evm")
