"""ledger-service 설정.

비밀값과 접속 정보는 환경 변수에서, 구조화된 정책 값은 config.yaml 의 `ledger` 섹션에서 읽는다.
값이 없으면 기본값을 쓰고, 형식이 잘못된 값은 RuntimeError 로 즉시 실패한다.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml


DEFAULT_CONFIG_FILE_NAME = "config.yaml"

ALCHEMY_NETWORKS: dict[str, str] = {
    "ethereum": "eth-mainnet",
    "polygon": "polygon-mainnet",
    "arbitrum": "arb-mainnet",
    "optimism": "opt-mainnet",
    "base": "base-mainnet",
}

DEFAULT_SOLANA_RPC_URL = "https://api.mainnet-beta.solana.com"


@dataclass(slots=True)
class PricingConfig:
    rate: Decimal = Decimal("6.67")  # USD 1 당 크레딧
    tier_multipliers: dict[str, Decimal] = field(
        default_factory=lambda: {"standard": Decimal("1"), "nft_holder": Decimal("1.2")}
    )
    max_payment_amount: Decimal = Decimal("100000")


@dataclass(slots=True)
class AbuseConfig:
    per_origin_cap: int = 5
    per_device_cap: int = 2
    window_hours: int = 24
    cooldown_seconds: int = 300
    min_account_age_seconds: int = 120
    extra_disposable_domains: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ReservationConfig:
    ttl_seconds: int = 600
    sweep_interval_seconds: int = 60
    sweep_batch_size: int = 100
    max_cost: int = 10000
    ambiguous_max_attempts: int = 5


@dataclass(slots=True)
class IdempotencyConfig:
    request_ttl_seconds: int = 30
    cache_size: int = 10000


@dataclass(slots=True)
class ChainConfig:
    name: str
    kind: str  # "evm" | "solana"
    token_symbol: str
    token_address: str  # EVM 컨트랙트 주소 또는 SPL mint
    decimals: int = 6
    chain_id: int | None = None
    rpc_url: str | None = None


@dataclass(slots=True)
class ScannerConfig:
    timeout_seconds: float = 10.0
    tolerance: Decimal = Decimal("0.01")
    evm_block_depth: int = 500
    solana_signature_limit: int = 100
    chains: list[ChainConfig] = field(default_factory=list)


@dataclass(slots=True)
class AppConfig:
    """ledger-service 전체 설정 루트."""

    pricing: PricingConfig = field(default_factory=PricingConfig)
    abuse: AbuseConfig = field(default_factory=AbuseConfig)
    reservations: ReservationConfig = field(default_factory=ReservationConfig)
    idempotency: IdempotencyConfig = field(default_factory=IdempotencyConfig)
    scanner: ScannerConfig = field(default_factory=ScannerConfig)


def _find_config_path() -> Path:
    """현재 작업 디렉토리 기준으로 상위로 올라가며 config.yaml 을 찾는다."""

    current = Path.cwd()
    for directory in (current, *current.parents):
        candidate = directory / DEFAULT_CONFIG_FILE_NAME
        if candidate.is_file():
            return candidate

    raise RuntimeError(
        f"{DEFAULT_CONFIG_FILE_NAME} not found. Place config.yaml in project root.",
    )


def _as_int(section: dict[str, Any], key: str, default: int, *, where: str) -> int:
    raw = section.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:  # noqa: TRY003
        raise RuntimeError(f"invalid {where}.{key}: {raw!r}") from exc
    if value < 0:
        raise RuntimeError(f"invalid {where}.{key}: must not be negative")
    return value


def _as_decimal(
    section: dict[str, Any], key: str, default: Decimal, *, where: str
) -> Decimal:
    raw = section.get(key, default)
    try:
        # yaml 은 6.67 을 float 으로 읽으므로 문자열을 거친다.
        value = Decimal(str(raw))
    except (InvalidOperation, ValueError) as exc:  # noqa: TRY003
        raise RuntimeError(f"invalid {where}.{key}: {raw!r}") from exc
    if not value.is_finite() or value <= 0:
        raise RuntimeError(f"invalid {where}.{key}: must be a positive number")
    return value


def _resolve_rpc_url(name: str, kind: str) -> str | None:
    """체인별 RPC URL.

    `<CHAIN>_RPC_URL` 이 있으면 우선하고, EVM 체인은 ALCHEMY_API_KEY 로 기본 URL 을 만든다.
    """

    explicit = os.getenv(f"{name.upper()}_RPC_URL", "").strip()
    if explicit:
        return explicit

    if kind == "solana":
        return DEFAULT_SOLANA_RPC_URL

    api_key = os.getenv("ALCHEMY_API_KEY", "").strip()
    network = ALCHEMY_NETWORKS.get(name)
    if api_key and network:
        return f"https://{network}.g.alchemy.com/v2/{api_key}"
    return None


def _load_chains(items: list[Any]) -> list[ChainConfig]:
    chains: list[ChainConfig] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        name = str(item.get("name", "")).strip().lower()
        kind = str(item.get("kind") or "evm").strip().lower()
        token_address = str(item.get("token_address", "")).strip()
        if not name or not token_address:
            continue
        if kind not in ("evm", "solana"):
            raise RuntimeError(f"invalid ledger.scanner.chains[{name}].kind: {kind!r}")
        chain_id = item.get("chain_id")
        chains.append(
            ChainConfig(
                name=name,
                kind=kind,
                token_symbol=str(item.get("token_symbol") or "USDC"),
                token_address=token_address,
                decimals=_as_int(item, "decimals", 6, where=f"chains[{name}]"),
                chain_id=int(chain_id) if chain_id is not None else None,
                rpc_url=_resolve_rpc_url(name, kind),
            )
        )
    return chains


def load_config(path: Path | None = None) -> AppConfig:
    """config.yaml 의 ledger 섹션을 읽어 AppConfig 로 반환한다."""

    path = path or _find_config_path()
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    ledger = data.get("ledger") or {}

    pricing_raw = ledger.get("pricing") or {}
    multipliers_raw = pricing_raw.get("tier_multipliers") or {}
    pricing = PricingConfig(
        rate=_as_decimal(pricing_raw, "rate", Decimal("6.67"), where="ledger.pricing"),
        tier_multipliers={
            str(tier): _as_decimal(
                multipliers_raw, tier, Decimal("1"), where="ledger.pricing.tier_multipliers"
            )
            for tier in multipliers_raw
        }
        or PricingConfig().tier_multipliers,
        max_payment_amount=_as_decimal(
            pricing_raw,
            "max_payment_amount",
            Decimal("100000"),
            where="ledger.pricing",
        ),
    )

    abuse_raw = ledger.get("abuse") or {}
    abuse = AbuseConfig(
        per_origin_cap=_as_int(abuse_raw, "per_origin_cap", 5, where="ledger.abuse"),
        per_device_cap=_as_int(abuse_raw, "per_device_cap", 2, where="ledger.abuse"),
        window_hours=_as_int(abuse_raw, "window_hours", 24, where="ledger.abuse"),
        cooldown_seconds=_as_int(
            abuse_raw, "cooldown_seconds", 300, where="ledger.abuse"
        ),
        min_account_age_seconds=_as_int(
            abuse_raw, "min_account_age_seconds", 120, where="ledger.abuse"
        ),
        extra_disposable_domains=[
            str(domain).strip().lower()
            for domain in abuse_raw.get("extra_disposable_domains") or []
            if str(domain).strip()
        ],
    )

    reservations_raw = ledger.get("reservations") or {}
    reservations = ReservationConfig(
        ttl_seconds=_as_int(
            reservations_raw, "ttl_seconds", 600, where="ledger.reservations"
        ),
        sweep_interval_seconds=_as_int(
            reservations_raw, "sweep_interval_seconds", 60, where="ledger.reservations"
        ),
        sweep_batch_size=_as_int(
            reservations_raw, "sweep_batch_size", 100, where="ledger.reservations"
        ),
        max_cost=_as_int(reservations_raw, "max_cost", 10000, where="ledger.reservations"),
        ambiguous_max_attempts=_as_int(
            reservations_raw, "ambiguous_max_attempts", 5, where="ledger.reservations"
        ),
    )

    idempotency_raw = ledger.get("idempotency") or {}
    idempotency = IdempotencyConfig(
        request_ttl_seconds=_as_int(
            idempotency_raw, "request_ttl_seconds", 30, where="ledger.idempotency"
        ),
        cache_size=_as_int(idempotency_raw, "cache_size", 10000, where="ledger.idempotency"),
    )

    scanner_raw = ledger.get("scanner") or {}
    scanner = ScannerConfig(
        timeout_seconds=float(
            _as_decimal(scanner_raw, "timeout_seconds", Decimal("10"), where="ledger.scanner")
        ),
        tolerance=_as_decimal(
            scanner_raw, "tolerance", Decimal("0.01"), where="ledger.scanner"
        ),
        evm_block_depth=_as_int(
            scanner_raw, "evm_block_depth", 500, where="ledger.scanner"
        ),
        solana_signature_limit=_as_int(
            scanner_raw, "solana_signature_limit", 100, where="ledger.scanner"
        ),
        chains=_load_chains(scanner_raw.get("chains") or []),
    )

    return AppConfig(
        pricing=pricing,
        abuse=abuse,
        reservations=reservations,
        idempotency=idempotency,
        scanner=scanner,
    )


_config: AppConfig | None = None


def get_config() -> AppConfig:
    """프로세스 전역 설정 싱글톤."""

    global _config
    if _config is None:
        _config = load_config()
    return _config


def get_payment_wallet(kind: str) -> str:
    """결제 수신 지갑 주소. 설정되지 않았으면 결제 확인을 할 수 없으므로 RuntimeError."""

    env_name = "SOLANA_PAYMENT_WALLET" if kind == "solana" else "EVM_PAYMENT_WALLET"
    value = os.getenv(env_name, "").strip()
    if not value:
        raise RuntimeError(f"{env_name} environment variable is required")
    return value
