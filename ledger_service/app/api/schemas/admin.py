from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class GrantRequest(BaseModel):
    """관리자/추천 크레딧 지급 요청. grant_id 가 멱등성 키다."""

    identity_key: str
    grant_id: str = Field(min_length=1, max_length=128)
    credits: int = Field(gt=0)
    kind: Literal["admin", "referral"] = "admin"
    reason: str = Field(min_length=1, max_length=500)
