"""외부 참조 멱등성 가드.

같은 참조(체인 tx, 카드 결제 ID, 관리자 지급 ID 등)는 프로세스/인스턴스에 관계없이
정확히 한 번만 claim 된다. 판정 기준은 idempotency_keys 의 유니크 인덱스이고,
메모리 캐시는 반복 중복을 빨리 거르기 위한 보조 수단일 뿐이다.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from datetime import datetime, timedelta, timezone

from fastapi import Depends
from pymongo.database import Database

from common.mongo.client import get_database

from ..config import get_config
from ..models.idempotency import ClaimResult, ClaimStatus, RefKind
from ..repositories.idempotency_key_repository import IdempotencyKeyRepository
from ..repositories.interfaces import IdempotencyKeyRepositoryInterface


logger = logging.getLogger(__name__)


class _ClaimedKeyCache:
    """claim 이 확정된 무기한 키만 담는 LRU 캐시."""

    def __init__(self, max_size: int) -> None:
        self._max_size = max_size
        self._items: OrderedDict[str, None] = OrderedDict()
        self._lock = threading.Lock()

    def __contains__(self, key: str) -> bool:
        with self._lock:
            if key not in self._items:
                return False
            self._items.move_to_end(key)
            return True

    def add(self, key: str) -> None:
        if self._max_size <= 0:
            return
        with self._lock:
            self._items[key] = None
            self._items.move_to_end(key)
            while len(self._items) > self._max_size:
                self._items.popitem(last=False)

    def discard(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)


class IdempotencyGuard:
    def __init__(
        self,
        repo: IdempotencyKeyRepositoryInterface,
        *,
        request_ttl_seconds: int = 30,
        cache_size: int = 10000,
    ) -> None:
        self._repo = repo
        self._request_ttl = timedelta(seconds=request_ttl_seconds)
        self._cache = _ClaimedKeyCache(cache_size)

    @staticmethod
    def key(kind: RefKind, ref: str) -> str:
        """종류별 네임스페이스를 붙인 키. ref 는 호출자가 정규화해서 넘긴다."""
        return f"{kind.value}:{ref}"

    def _expires_at(self, kind: RefKind, now: datetime) -> datetime | None:
        if kind.is_payment:
            return None
        return now + self._request_ttl

    def try_claim(
        self, ref: str, kind: RefKind, now: datetime | None = None
    ) -> ClaimResult:
        now = now or datetime.now(timezone.utc)
        key = self.key(kind, ref)

        if key in self._cache:
            return ClaimResult(key=key, claimed=False)

        expires_at = self._expires_at(kind, now)
        if self._repo.insert_claim(key, kind, now, expires_at):
            logger.debug("idempotency key claimed", extra={"external_ref": key})
            return ClaimResult(key=key, claimed=True)

        if expires_at is not None and self._repo.reclaim_expired(
            key, kind, now, expires_at
        ):
            logger.debug("expired idempotency key reclaimed", extra={"external_ref": key})
            return ClaimResult(key=key, claimed=True)

        if kind.is_payment:
            self._cache.add(key)
        return ClaimResult(key=key, claimed=False)

    def is_claimed(self, ref: str, kind: RefKind, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        key = self.key(kind, ref)
        if key in self._cache:
            return True
        claimed = self._repo.find(key, now) is not None
        if claimed and kind.is_payment:
            self._cache.add(key)
        return claimed

    def is_applied(self, ref: str, kind: RefKind, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        found = self._repo.find(self.key(kind, ref), now)
        return found is not None and found.status is ClaimStatus.APPLIED

    def mark_applied(self, ref: str, kind: RefKind, now: datetime | None = None) -> None:
        now = now or datetime.now(timezone.utc)
        key = self.key(kind, ref)
        if not self._repo.mark_applied(key, now):
            logger.warning(
                "mark_applied on missing idempotency key", extra={"external_ref": key}
            )
        if kind.is_payment:
            self._cache.add(key)

    def release(self, ref: str, kind: RefKind) -> None:
        """적용에 실패한 claim 을 되돌려 같은 참조를 다시 처리할 수 있게 한다."""
        key = self.key(kind, ref)
        self._cache.discard(key)
        self._repo.delete(key)
        logger.info("idempotency claim released", extra={"external_ref": key})


def get_idempotency_key_repository(
    db: Database = Depends(get_database),
) -> IdempotencyKeyRepositoryInterface:
    return IdempotencyKeyRepository(db)


_guard: IdempotencyGuard | None = None
_guard_lock = threading.Lock()


def get_idempotency_guard(
    repo: IdempotencyKeyRepositoryInterface = Depends(get_idempotency_key_repository),
) -> IdempotencyGuard:
    """캐시를 요청 간에 공유하기 위해 프로세스당 하나의 가드를 유지한다."""

    global _guard
    if _guard is None:
        with _guard_lock:
            if _guard is None:
                cfg = get_config().idempotency
                _guard = IdempotencyGuard(
                    repo,
                    request_ttl_seconds=cfg.request_ttl_seconds,
                    cache_size=cfg.cache_size,
                )
    return _guard
