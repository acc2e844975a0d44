from __future__ import annotations

import pytest

from ledger_service.app.exceptions import InvalidInputError
from ledger_service.app.models.identity import IdentityTier, normalize_identity_key


EVM = "0x" + "AbCdEf0123" * 4
SOLANA = "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin"


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (f"wallet:{EVM}", f"wallet:{EVM.lower()}"),
        (EVM, f"wallet:{EVM.lower()}"),
        (f"  {EVM}  ", f"wallet:{EVM.lower()}"),
        (SOLANA, f"wallet:{SOLANA}"),
        ("Email:Buyer@Example.COM", "email:buyer@example.com"),
        ("buyer@example.com", "email:buyer@example.com"),
        ("guest:session_01", "guest:session_01"),
    ],
)
def test_identity_keys_are_normalized(raw: str, expected: str) -> None:
    assert normalize_identity_key(raw) == expected


@pytest.mark.parametrize(
    "raw",
    [None, "", "   ", "0x1234", "wallet:not-a-wallet", "email:nope", "guest:a.b", "phone:010"],
)
def test_malformed_identity_is_rejected(raw: str | None) -> None:
    with pytest.raises(InvalidInputError):
        normalize_identity_key(raw)


def test_tier_parsing_defaults_to_standard() -> None:
    assert IdentityTier.from_str("NFT_HOLDER") is IdentityTier.NFT_HOLDER
    assert IdentityTier.from_str(None) is IdentityTier.STANDARD
    assert IdentityTier.from_str("platinum") is IdentityTier.STANDARD
