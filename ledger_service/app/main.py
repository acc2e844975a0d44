from __future__ import annotations

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from common.eventbus.kafka import get_event_bus
from common.logger import setup_logger
from common.middleware.request_trace import RequestTraceMiddleware
from common.mongo.client import close_client

from .api.errors import register_exception_handlers
from .api.health import router as health_router
from .api.v1 import api_router
from .scheduler.reservation_sweeper import (
    start_reservation_sweeper,
    stop_reservation_sweeper,
)


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - framework hook
    """애플리케이션 생명주기 동안 예약 만료 스윕 스레드를 관리한다."""

    start_reservation_sweeper()
    try:
        yield
    finally:
        stop_reservation_sweeper()
        get_event_bus().close()
        close_client()


def create_app() -> FastAPI:
    setup_logger(name="ledger-service")
    app = FastAPI(
        title="Ledger Service",
        version="0.1.0",
        lifespan=lifespan,
    )

    # 공통 Request/Span ID 로그 미들웨어
    app.add_middleware(RequestTraceMiddleware)
    register_exception_handlers(app)

    app.include_router(health_router, tags=["health"])
    app.include_router(api_router, prefix="/api/v1")

    return app


app = create_app()


def main() -> None:
    import uvicorn

    port = int(os.getenv("LEDGER_SERVICE_PORT", "8004"))
    uvicorn.run(
        "ledger_service.app.main:app",
        host="0.0.0.0",
        port=port,
        reload=False,
        access_log=False,
    )


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    main()
