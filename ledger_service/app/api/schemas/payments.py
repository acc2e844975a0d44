from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, Field

from .balances import ApplyResultResponse


class ChainVerifyRequest(BaseModel):
    expected_amount: Decimal = Field(gt=0)  # 토큰 단위 (USDC)
    chains: list[str] | None = None  # 없으면 설정된 모든 체인


class ChainTransactionRequest(BaseModel):
    chain: str = Field(min_length=1, max_length=32)
    tx_hash: str = Field(min_length=1, max_length=128)
    expected_amount: Decimal | None = Field(default=None, gt=0)


class ChainVerifyResponse(BaseModel):
    found: bool
    chain: str | None = None
    tx_hash: str | None = None
    result: ApplyResultResponse | None = None


class ChainWallet(BaseModel):
    chain: str
    token_symbol: str
    token_address: str
    recipient: str


class ChainWalletsResponse(BaseModel):
    items: list[ChainWallet]


class CardIntentRequest(BaseModel):
    amount: Decimal = Field(gt=0)  # USD


class CardIntentResponse(BaseModel):
    payment_id: str
    client_secret: str


class CardConfirmRequest(BaseModel):
    payment_id: str = Field(min_length=1, max_length=255)


class CardWebhookResponse(BaseModel):
    received: bool = True
    credited: int = 0
