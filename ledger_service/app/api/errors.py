"""원장 예외 -> HTTP 응답 변환.

클라이언트에는 {"code", "message"} 만 내려보내고 상세 원인은 로그에만 남긴다.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError

from ..exceptions import InvalidInputError, LedgerError, PersistenceError


logger = logging.getLogger(__name__)


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"code": code, "message": message})


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "ledger error: %s",
        exc.safe_message,
        extra={"path": request.url.path, "error_kind": exc.kind},
    )
    return _error_response(exc.status_code, exc.kind, exc.safe_message)


async def persistence_error_handler(request: Request, exc: PyMongoError) -> JSONResponse:
    logger.error(
        "unhandled store error: %s",
        exc,
        extra={"path": request.url.path, "error_kind": PersistenceError.kind},
    )
    return _error_response(
        PersistenceError.status_code, PersistenceError.kind, PersistenceError.default_message
    )


async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    fields = sorted(
        {
            ".".join(str(part) for part in err.get("loc", ())[1:])
            for err in exc.errors()
        }
        - {""}
    )
    message = InvalidInputError.default_message
    if fields:
        message = f"invalid input: {', '.join(fields)}"
    return _error_response(InvalidInputError.status_code, InvalidInputError.kind, message)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(LedgerError, ledger_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(PyMongoError, persistence_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_error_handler)  # type: ignore[arg-type]
