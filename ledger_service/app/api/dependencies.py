"""요청 공통 의존성.

아이덴티티는 게이트웨이가 인증을 마친 뒤 헤더로 넘긴다. 이 서비스는 세션을 발급하거나 검증하지 않는다.
"""

from __future__ import annotations

import hmac
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Annotated

from fastapi import Header, HTTPException, status

from common.mongo.types import ensure_utc_datetime

from ..exceptions import InvalidInputError
from ..models.identity import IdentityTier, normalize_identity_key


ADMIN_TOKEN_ENV = "LEDGER_ADMIN_TOKEN"


@dataclass(frozen=True, slots=True)
class RequestIdentity:
    identity_key: str
    tier: IdentityTier
    email: str | None = None
    account_created_at: datetime | None = None

    @property
    def is_guest(self) -> bool:
        return self.identity_key.startswith("guest:")


def get_request_identity(
    x_identity_key: Annotated[str | None, Header()] = None,
    x_identity_tier: Annotated[str | None, Header()] = None,
    x_account_email: Annotated[str | None, Header()] = None,
    x_account_created_at: Annotated[str | None, Header()] = None,
) -> RequestIdentity:
    identity_key = normalize_identity_key(x_identity_key)

    created_at: datetime | None = None
    if x_account_created_at:
        try:
            created_at = ensure_utc_datetime(
                datetime.fromisoformat(x_account_created_at.replace("Z", "+00:00"))
            )
        except ValueError as exc:
            raise InvalidInputError("invalid account creation time") from exc

    return RequestIdentity(
        identity_key=identity_key,
        tier=IdentityTier.from_str(x_identity_tier),
        email=x_account_email.strip().lower() if x_account_email else None,
        account_created_at=created_at,
    )


def require_admin(
    x_admin_token: Annotated[str | None, Header()] = None,
) -> None:
    expected = os.getenv(ADMIN_TOKEN_ENV, "")
    if not expected or not x_admin_token or not hmac.compare_digest(
        x_admin_token.encode("utf-8"), expected.encode("utf-8")
    ):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "forbidden", "message": "admin token required"},
        )
