from __future__ import annotations

from decimal import Decimal

import pytest

from ledger_service.app.exceptions import InvalidInputError
from ledger_service.app.models.identity import IdentityTier
from ledger_service.app.services.pricing import RatePricingPolicy


def _policy() -> RatePricingPolicy:
    return RatePricingPolicy(
        rate=Decimal("6.67"),
        tier_multipliers={"nft_holder": Decimal("1.2")},
    )


@pytest.mark.parametrize(
    ("amount", "expected"),
    [
        ("10", 66),
        ("9.95", 66),
        ("1", 6),
        ("0.15", 1),
        ("0.1", 0),
        ("1000", 6670),
    ],
)
def test_quote_floors_to_whole_credits(amount: str, expected: int) -> None:
    assert _policy().quote(Decimal(amount)) == expected


def test_nft_holder_multiplier_applies_before_floor() -> None:
    # 10 x 6.67 x 1.2 = 80.04
    assert _policy().quote(Decimal("10"), IdentityTier.NFT_HOLDER) == 80


@pytest.mark.parametrize("amount", ["0", "-5", "NaN", "Infinity"])
def test_quote_rejects_non_positive_or_non_finite(amount: str) -> None:
    with pytest.raises(InvalidInputError):
        _policy().quote(Decimal(amount))


def test_rate_must_be_positive() -> None:
    with pytest.raises(ValueError):
        RatePricingPolicy(rate=Decimal("0"))
