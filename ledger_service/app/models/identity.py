"""아이덴티티 키 정규화.

지갑 주소, 이메일 계정, 게스트 ID 를 하나의 잔액 키로 정규화한다.
EVM 주소는 대소문자 구분이 없으므로 소문자로, Solana(base58)는 원문 그대로 둔다.
"""

from __future__ import annotations

import re
from enum import StrEnum

from ..exceptions import InvalidInputError


_EVM_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")
_SOLANA_ADDRESS = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")
_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_GUEST_ID = re.compile(r"^[A-Za-z0-9_-]{6,64}$")


class IdentityTier(StrEnum):
    STANDARD = "standard"
    NFT_HOLDER = "nft_holder"

    @classmethod
    def from_str(cls, value: str | None) -> "IdentityTier":
        if not value:
            return cls.STANDARD
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.STANDARD


def normalize_wallet_address(address: str) -> str:
    address = address.strip()
    if _EVM_ADDRESS.match(address):
        return address.lower()
    if _SOLANA_ADDRESS.match(address):
        return address
    raise InvalidInputError("invalid wallet address")


def normalize_identity_key(raw: str | None) -> str:
    """`wallet:`, `email:`, `guest:` 접두어 키 또는 접두어 없는 주소/이메일을 정규화한다."""

    if not raw or not raw.strip():
        raise InvalidInputError("identity is required")

    value = raw.strip()
    prefix, sep, rest = value.partition(":")
    if not sep:
        if "@" in value:
            prefix, rest = "email", value
        else:
            prefix, rest = "wallet", value

    prefix = prefix.lower()
    if prefix == "wallet":
        return f"wallet:{normalize_wallet_address(rest)}"
    if prefix == "email":
        email = rest.strip().lower()
        if not _EMAIL.match(email):
            raise InvalidInputError("invalid email identity")
        return f"email:{email}"
    if prefix == "guest":
        guest_id = rest.strip()
        if not _GUEST_ID.match(guest_id):
            raise InvalidInputError("invalid guest identity")
        return f"guest:{guest_id}"

    raise InvalidInputError("unsupported identity type")


def wallet_address_of(identity_key: str) -> str | None:
    """정규화된 `wallet:` 키의 주소. 지갑 아이덴티티가 아니면 None."""

    prefix, _, rest = identity_key.partition(":")
    if prefix != "wallet" or not rest:
        return None
    return rest


def wallet_chain_kind(address: str) -> str:
    """주소 형식으로 체인 종류(evm / solana)를 고른다."""

    return "evm" if _EVM_ADDRESS.match(address) else "solana"
