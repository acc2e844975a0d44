import json
import logging
import time
import uuid
from typing import Any

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response
from urllib.parse import parse_qs


REQUEST_ID_HEADER = "X-Request-Id"
SPAN_ID_HEADER = "X-Span-Id"
IDENTITY_HEADER = "X-Identity-Key"
TIER_HEADER = "X-Identity-Tier"

# 노이즈를 줄이기 위해 로그에서 제외할 엔드포인트 경로 목록
IGNORED_LOG_PATHS: set[str] = {"/health"}

# 웹훅 원문은 서명 검증 대상이라 미들웨어에서 소비하지 않는다.
BODY_EXCLUDED_PATH_SUFFIXES: tuple[str, ...] = ("/webhook",)

# 바디 로그에서 값을 가리는 키
REDACTED_BODY_KEYS: frozenset[str] = frozenset(
    {"client_secret", "payment_method", "card", "email", "input"}
)

MAX_BODY_LOG_LENGTH = 1024


class RequestTraceMiddleware(BaseHTTPMiddleware):
    """원장 API 요청 추적 미들웨어.

    - X-Request-Id / X-Span-Id 를 읽고, 없으면 request_id 를 새로 만든다.
    - request.state 와 응답 헤더에 같은 값을 남긴다.
    - 완료 로그는 상태 코드에 따라 레벨을 나눈다. (5xx error, 4xx warning)
    - 게이트웨이가 넘긴 identity/tier 헤더를 로그 extra 로 붙인다.
    - JSON 바디는 민감 키를 가린 뒤 잘라서 남기고, 웹훅 바디는 읽지 않는다.
    """

    def __init__(self, app, logger: logging.Logger | None = None) -> None:  # type: ignore[override]
        super().__init__(app)
        self._logger = logger or logging.getLogger("request_trace")

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        span_id = request.headers.get(SPAN_ID_HEADER) or "0"

        request.state.request_id = request_id
        request.state.span_id = span_id
        request.state.request_body = await self._read_body_snippet(request)

        should_log = request.url.path not in IGNORED_LOG_PATHS
        start = time.monotonic()

        try:
            response = await call_next(request)
        except Exception:
            if should_log:
                self._logger.exception(
                    "request failed",
                    extra=self._build_log_extra(
                        request, duration=time.monotonic() - start
                    ),
                )
            raise

        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        response.headers.setdefault(SPAN_ID_HEADER, span_id)

        if should_log:
            status = response.status_code
            if status >= 500:
                level = logging.ERROR
            elif status >= 400:
                level = logging.WARNING
            else:
                level = logging.INFO
            self._logger.log(
                level,
                "completed request",
                extra=self._build_log_extra(
                    request, status=status, duration=time.monotonic() - start
                ),
            )

        return response

    async def _read_body_snippet(self, request: Request) -> str | None:
        if request.method not in {"POST", "PUT", "PATCH", "DELETE"}:
            return None
        if request.url.path.endswith(BODY_EXCLUDED_PATH_SUFFIXES):
            return None

        body_bytes = await request.body()
        if not body_bytes:
            return None

        text = body_bytes.decode("utf-8", errors="replace")
        try:
            parsed = json.loads(text)
        except ValueError:
            return text[:MAX_BODY_LOG_LENGTH]
        return json.dumps(_redact(parsed), ensure_ascii=False)[:MAX_BODY_LOG_LENGTH]

    def _build_log_extra(
        self,
        request: Request,
        status: int | None = None,
        duration: float | None = None,
    ) -> dict[str, object]:
        extra: dict[str, object] = {
            "request_id": request.state.request_id,
            "span_id": request.state.span_id,
            "method": request.method,
            "path": request.url.path,
        }

        identity_key = request.headers.get(IDENTITY_HEADER)
        if identity_key:
            extra["identity_key"] = identity_key
        tier = request.headers.get(TIER_HEADER)
        if tier:
            extra["tier"] = tier

        query = request.url.query
        if query:
            parsed = parse_qs(query, keep_blank_values=True)
            if parsed:
                extra["query_params"] = {
                    key: values[0] if len(values) == 1 else values
                    for key, values in parsed.items()
                }

        body = getattr(request.state, "request_body", None)
        if body:
            extra["body"] = body

        if status is not None:
            extra["status"] = status

        if duration is not None:
            extra["duration"] = f"{duration * 1000:.3f}ms"

        return extra


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: "***" if key in REDACTED_BODY_KEYS else _redact(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_redact(item) for item in value]
    return value
