"""무료 사용 남용 방지.

무료 생성 요청을 (네트워크 출처, 기기 서명, 계정 나이) 기준으로 제한한다.
카운터는 조건부 원자 연산으로만 올리고, 윈도우가 지났을 때만 리셋된다.
뒤 규칙에서 거절되면 같은 admit 호출에서 올린 앞 규칙의 카운터만 되돌린다.
잔액과 결제 이벤트는 건드리지 않는다.
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Mapping

from fastapi import Depends
from pymongo.database import Database

from common.mongo.client import get_database

from ..config import AbuseConfig, get_config
from ..models.abuse import AbuseDecision, AbuseScope
from ..repositories.abuse_signal_repository import AbuseSignalRepository
from ..repositories.interfaces import AbuseSignalRepositoryInterface


logger = logging.getLogger(__name__)

DISPOSABLE_EMAIL_DOMAINS: frozenset[str] = frozenset(
    {
        "tempmail.com",
        "10minutemail.com",
        "guerrillamail.com",
        "mailinator.com",
        "throwaway.email",
        "temp-mail.org",
        "mohmal.com",
        "yopmail.com",
        "getnada.com",
        "fakeinbox.com",
        "trashmail.com",
        "mintemail.com",
        "sharklasers.com",
        "grr.la",
        "guerrillamailblock.com",
        "pokemail.net",
        "spam4.me",
        "bccto.me",
        "chitthi.in",
        "dispostable.com",
        "emailondeck.com",
        "fakemailgenerator.com",
        "maildrop.cc",
        "meltmail.com",
        "mytemp.email",
        "tempail.com",
        "tempinbox.co.uk",
        "tempinbox.com",
        "tempmail.co",
        "tempmail.de",
        "tempmail.net",
        "tempmailo.com",
        "tmpmail.org",
        "tmpmail.net",
        "tmail.ws",
        "tmailinator.com",
        "trashmailer.com",
        "trashymail.com",
        "tyldd.com",
        "yapped.net",
        "zoemail.org",
    }
)

# 기기 서명에 쓰는 헤더. 요청마다 바뀌지 않는 값만 고른다.
_SIGNATURE_HEADERS = (
    ("userAgent", "user-agent"),
    ("acceptLanguage", "accept-language"),
    ("acceptEncoding", "accept-encoding"),
    ("accept", "accept"),
    ("connection", "connection"),
    ("dnt", "dnt"),
    ("upgradeInsecureRequests", "upgrade-insecure-requests"),
)


def _header(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.title())
    return value


def is_disposable_email(email: str | None, extra_domains: frozenset[str] = frozenset()) -> bool:
    if not email or "@" not in email:
        return False
    domain = email.rsplit("@", 1)[1].strip().lower()
    blocked = DISPOSABLE_EMAIL_DOMAINS | extra_domains
    return any(domain == item or domain.endswith(f".{item}") for item in blocked)


def device_signature(headers: Mapping[str, str]) -> str:
    """안정적인 클라이언트 헤더의 sha256 앞 16자리."""
    fingerprint = {
        key: _header(headers, header) or "unknown" for key, header in _SIGNATURE_HEADERS
    }
    raw = json.dumps(fingerprint, separators=(",", ":"))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


def extract_client_origin(headers: Mapping[str, str], peer: str | None) -> str:
    """프록시 헤더를 고려한 클라이언트 IP.

    X-Forwarded-For 첫 홉 -> X-Real-IP -> CF-Connecting-IP -> 소켓 peer 순.
    """

    forwarded = _header(headers, "x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    for name in ("x-real-ip", "cf-connecting-ip"):
        value = _header(headers, name)
        if value and value.strip():
            return value.strip()
    return peer or "unknown"


def pair_key(origin: str, device: str) -> str:
    return f"{origin}|{device}"


class AbuseGuard:
    def __init__(self, repo: AbuseSignalRepositoryInterface, config: AbuseConfig) -> None:
        self._repo = repo
        self._config = config
        self._extra_domains = frozenset(config.extra_disposable_domains)

    def admit(
        self,
        origin: str,
        device: str,
        email: str | None = None,
        account_created_at: datetime | None = None,
        now: datetime | None = None,
        *,
        account_required: bool = False,
    ) -> AbuseDecision:
        """무료 사용 한 건을 허용하면 카운터를 올린다.

        올린 카운터는 시간이 지나 윈도우가 끝날 때만 리셋되고, 작업 결과와 무관하게 유지된다.
        account_required 이면 (게스트가 아닌 계정) 생성 시각을 모를 때 거절한다.
        """

        now = now or datetime.now(timezone.utc)
        cfg = self._config

        if is_disposable_email(email, self._extra_domains):
            logger.info("free use denied: disposable email")
            return AbuseDecision.deny("disposable_email")

        if account_created_at is None:
            if account_required:
                logger.info("free use denied: account age unknown")
                return AbuseDecision.deny("account_age_unknown")
        else:
            min_age = timedelta(seconds=cfg.min_account_age_seconds)
            age = now - account_created_at
            if age < min_age:
                return AbuseDecision.deny(
                    "account_too_new",
                    retry_after_seconds=max(int((min_age - age).total_seconds()), 1),
                )

        pair = pair_key(origin, device)
        if not self._repo.try_start_cooldown(
            AbuseScope.PAIR, pair, now + timedelta(seconds=cfg.cooldown_seconds), now
        ):
            signal = self._repo.get(AbuseScope.PAIR, pair)
            retry_after = None
            if signal is not None and signal.cooldown_until is not None:
                retry_after = max(int((signal.cooldown_until - now).total_seconds()), 1)
            return AbuseDecision.deny("cooldown", retry_after_seconds=retry_after)

        window_cutoff = now - timedelta(hours=cfg.window_hours)
        if not self._repo.try_increment(
            AbuseScope.DEVICE, device, cfg.per_device_cap, window_cutoff, now
        ):
            self._repo.clear_cooldown(AbuseScope.PAIR, pair, now)
            logger.info("free use denied: device limit")
            return AbuseDecision.deny("device_limit")

        if not self._repo.try_increment(
            AbuseScope.ORIGIN, origin, cfg.per_origin_cap, window_cutoff, now
        ):
            self._repo.decrement(AbuseScope.DEVICE, device, now)
            self._repo.clear_cooldown(AbuseScope.PAIR, pair, now)
            logger.info("free use denied: origin limit")
            return AbuseDecision.deny("origin_limit")

        return AbuseDecision.allow()


def get_abuse_signal_repository(
    db: Database = Depends(get_database),
) -> AbuseSignalRepositoryInterface:
    return AbuseSignalRepository(db)


def get_abuse_guard(
    repo: AbuseSignalRepositoryInterface = Depends(get_abuse_signal_repository),
) -> AbuseGuard:
    return AbuseGuard(repo, get_config().abuse)
