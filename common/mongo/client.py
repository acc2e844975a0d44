from __future__ import annotations

import logging
import threading
from typing import Optional, cast

from pymongo import MongoClient
from pymongo.database import Database

from .config import get_mongo_db_name, get_mongo_uri, get_server_selection_timeout_ms


logger = logging.getLogger(__name__)


_client: Optional[MongoClient] = None
_db: Optional[Database] = None
_lock = threading.Lock()


def get_client() -> MongoClient:
    """전역 MongoClient 싱글톤을 반환한다.

    - MONGO_URI 에서 URI 를 읽어온다.
    - ping 으로 연결을 검증한다.
    - URI 에 기본 데이터베이스가 포함되어 있지 않으면 에러를 발생시킨다.
    - 원장 정합성이 의존하는 유니크 인덱스를 한 번만 생성한다.
    """

    global _client, _db

    if _client is not None:
        return _client

    with _lock:
        if _client is not None:
            return _client

        uri = get_mongo_uri()
        # 원장 쓰기는 과반수 확인 후에만 성공으로 본다.
        client = MongoClient(
            uri,
            serverSelectionTimeoutMS=get_server_selection_timeout_ms(),
            w="majority",
            retryWrites=True,
            tz_aware=True,
        )

        try:
            client.admin.command("ping")
        except Exception as exc:  # noqa: BLE001
            client.close()
            raise RuntimeError(f"failed to connect to MongoDB: {exc}") from exc

        # 사용할 DB 이름 결정: MONGO_DB_NAME 우선, 없으면 URI의 기본 DB 사용
        db_name = get_mongo_db_name()
        try:
            if db_name:
                db = client[db_name]
            else:
                db = client.get_default_database()
        except Exception as exc:  # noqa: BLE001
            client.close()
            raise RuntimeError(
                "MongoDB database name must be specified via MONGO_DB_NAME or in MONGO_URI (mongodb://.../db_name)",
            ) from exc

        _client = client
        _db = db

        try:
            _ensure_indexes(_db)
        except Exception as exc:  # noqa: BLE001
            # 유니크 인덱스 없이 원장을 열면 중복 적립이 가능해지므로 치명적 오류로 본다.
            logger.error("failed to ensure MongoDB indexes: %s", exc)
            raise

        safe_db = cast(Database, _db)
        logger.info("MongoDB connected and indexes ensured (db=%s)", safe_db.name)
        return _client


def get_database() -> Database:
    """전역 기본 Database 객체를 반환한다."""

    global _db

    if _db is None:
        get_client()
    assert (
        _db is not None
    )  # get_client 에서 _db 를 초기화하지 못했다면 예외가 이미 발생했어야 한다.
    return _db


def close_client() -> None:
    """애플리케이션 종료 시 전역 클라이언트를 닫는다."""

    global _client, _db

    with _lock:
        if _client is not None:
            _client.close()
        _client = None
        _db = None


def _ensure_indexes(db: Database) -> None:
    """원장의 단일 진실 공급원이 되는 유니크 인덱스를 생성한다.

    보조 인덱스(TTL, 조회용)는 각 Repository 생성자에서 만든다.
    중복 생성해도 MongoDB 가 처리하므로 idempotent 하다.
    """

    db["balances"].create_index(
        [("identity_key", 1)],
        name="uniq_identity_key",
        unique=True,
    )

    db["idempotency_keys"].create_index(
        [("key", 1)],
        name="uniq_idempotency_key",
        unique=True,
    )

    db["payment_events"].create_index(
        [("external_ref", 1)],
        name="uniq_external_ref",
        unique=True,
    )

    db["reservations"].create_index(
        [("correlation_id", 1)],
        name="uniq_correlation_id",
        unique=True,
    )

    db["abuse_signals"].create_index(
        [("scope", 1), ("key", 1)],
        name="uniq_scope_key",
        unique=True,
    )
