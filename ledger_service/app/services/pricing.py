"""결제 금액 -> 크레딧 환산 정책.

금액 계산은 Decimal 로만 하고, 지급 크레딧은 내림(floor)한다.
10 USDC x 6.67 = 66.7 -> 66 크레딧.
"""

from __future__ import annotations

from decimal import ROUND_FLOOR, Decimal
from typing import Protocol

from ..config import PricingConfig
from ..exceptions import InvalidInputError
from ..models.identity import IdentityTier


class PricingPolicy(Protocol):
    def quote(
        self, amount: Decimal, tier: IdentityTier = IdentityTier.STANDARD
    ) -> int:  # pragma: no cover - Protocol
        ...


class RatePricingPolicy:
    def __init__(
        self,
        rate: Decimal,
        tier_multipliers: dict[str, Decimal] | None = None,
    ) -> None:
        if not rate.is_finite() or rate <= 0:
            raise ValueError("rate must be a positive finite decimal")
        self._rate = rate
        self._tier_multipliers = tier_multipliers or {}

    @classmethod
    def from_config(cls, config: PricingConfig) -> "RatePricingPolicy":
        return cls(rate=config.rate, tier_multipliers=dict(config.tier_multipliers))

    @property
    def rate(self) -> Decimal:
        return self._rate

    def multiplier(self, tier: IdentityTier) -> Decimal:
        return self._tier_multipliers.get(tier.value, Decimal("1"))

    def quote(self, amount: Decimal, tier: IdentityTier = IdentityTier.STANDARD) -> int:
        if not amount.is_finite() or amount <= 0:
            raise InvalidInputError("amount must be positive")
        credits = (amount * self._rate * self.multiplier(tier)).to_integral_value(
            rounding=ROUND_FLOOR
        )
        return int(credits)
