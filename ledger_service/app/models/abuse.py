from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum


class AbuseScope(StrEnum):
    ORIGIN = "origin"  # 네트워크 출처 (클라이언트 IP)
    DEVICE = "device"  # 헤더 기반 기기 서명
    PAIR = "pair"  # origin|device 조합 (쿨다운 단위)


@dataclass(slots=True)
class AbuseSignal:
    scope: AbuseScope
    key: str
    free_uses_count: int
    window_started_at: datetime
    last_used_at: datetime | None = None
    cooldown_until: datetime | None = None


@dataclass(frozen=True, slots=True)
class AbuseDecision:
    allowed: bool
    reason: str
    retry_after_seconds: int | None = None

    @classmethod
    def allow(cls) -> "AbuseDecision":
        return cls(allowed=True, reason="ok")

    @classmethod
    def deny(cls, reason: str, retry_after_seconds: int | None = None) -> "AbuseDecision":
        return cls(allowed=False, reason=reason, retry_after_seconds=retry_after_seconds)
