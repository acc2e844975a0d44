"""큐 방식 생성 API 클라이언트 (httpx).

submit -> status 폴링 -> 결과 조회 순서로 동작한다.
작업 ID 는 "<model>#<request_id>" 형태로 만들어 get_status 가 모델 경로를 복원할 수 있게 한다.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Any, Callable

import httpx

from ..models.generation import GenerationOutcome, GenerationStatus


logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://queue.fal.run"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_POLL_INTERVAL_SECONDS = 2.0
DEFAULT_MAX_WAIT_SECONDS = 120.0

_PENDING_STATUSES = ("IN_QUEUE", "IN_PROGRESS")
_JOB_ID_SEPARATOR = "#"


def build_job_id(model: str, request_id: str) -> str:
    return f"{model}{_JOB_ID_SEPARATOR}{request_id}"


def parse_job_id(job_id: str) -> tuple[str, str]:
    model, sep, request_id = job_id.rpartition(_JOB_ID_SEPARATOR)
    if not sep or not model or not request_id:
        raise ValueError(f"malformed job id: {job_id!r}")
    return model, request_id


class QueueGenerationProvider:
    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        client: httpx.Client | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_wait: float = DEFAULT_MAX_WAIT_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(
            timeout=DEFAULT_TIMEOUT_SECONDS,
            headers={"Authorization": f"Key {api_key}"},
        )
        self._poll_interval = poll_interval
        self._max_wait = max_wait
        self._sleep = sleep

    def invoke(self, job_spec: dict[str, Any]) -> GenerationOutcome:
        model = str(job_spec.get("model") or "").strip("/")
        if not model:
            return GenerationOutcome(status=GenerationStatus.FAILURE, error="model is required")

        try:
            resp = self._client.post(
                f"{self._base_url}/{model}", json=job_spec.get("input") or {}
            )
        except httpx.TimeoutException as exc:
            # 요청이 접수됐는지 알 수 없다
            logger.warning("generation submit timed out: %s", exc)
            return GenerationOutcome(status=GenerationStatus.UNKNOWN, error="submit timed out")
        except httpx.RequestError as exc:
            logger.warning("generation submit failed: %s", exc)
            return GenerationOutcome(status=GenerationStatus.FAILURE, error="submit failed")

        if resp.status_code >= 500:
            return GenerationOutcome(
                status=GenerationStatus.UNKNOWN,
                error=f"submit returned {resp.status_code}",
            )
        if resp.status_code >= 400:
            return GenerationOutcome(
                status=GenerationStatus.FAILURE,
                error=f"submit rejected with {resp.status_code}",
            )

        request_id = resp.json().get("request_id")
        if not request_id:
            return GenerationOutcome(status=GenerationStatus.UNKNOWN, error="no request id")
        job_id = build_job_id(model, str(request_id))

        deadline = time.monotonic() + self._max_wait
        while True:
            outcome = self.get_status(job_id)
            if outcome.status is not GenerationStatus.UNKNOWN:
                return outcome
            if time.monotonic() >= deadline:
                logger.warning("generation still pending at deadline (job_id=%s)", job_id)
                return outcome
            self._sleep(self._poll_interval)

    def get_status(self, job_id: str) -> GenerationOutcome:
        try:
            model, request_id = parse_job_id(job_id)
        except ValueError:
            return GenerationOutcome(
                status=GenerationStatus.FAILURE, job_id=job_id, error="malformed job id"
            )

        request_url = f"{self._base_url}/{model}/requests/{request_id}"
        try:
            resp = self._client.get(f"{request_url}/status")
            if resp.status_code == 404:
                return GenerationOutcome(
                    status=GenerationStatus.FAILURE, job_id=job_id, error="job not found"
                )
            resp.raise_for_status()
            body = resp.json()

            status = str(body.get("status") or "").upper()
            if status in _PENDING_STATUSES:
                return GenerationOutcome(status=GenerationStatus.UNKNOWN, job_id=job_id)
            if status != "COMPLETED":
                return GenerationOutcome(
                    status=GenerationStatus.UNKNOWN, job_id=job_id, error=f"status {status}"
                )
            if body.get("error"):
                return GenerationOutcome(
                    status=GenerationStatus.FAILURE, job_id=job_id, error=str(body["error"])
                )

            result_resp = self._client.get(request_url)
            if result_resp.status_code >= 400:
                # 작업은 끝났으므로 실패로 보지 않는다
                return GenerationOutcome(
                    status=GenerationStatus.UNKNOWN,
                    job_id=job_id,
                    error=f"result returned {result_resp.status_code}",
                )
            return GenerationOutcome(
                status=GenerationStatus.SUCCESS, job_id=job_id, result=result_resp.json()
            )
        except (httpx.RequestError, httpx.HTTPStatusError) as exc:
            logger.warning("generation status check failed: %s (job_id=%s)", exc, job_id)
            return GenerationOutcome(
                status=GenerationStatus.UNKNOWN, job_id=job_id, error="status unavailable"
            )

    def close(self) -> None:
        self._client.close()


_provider: QueueGenerationProvider | None = None
_provider_lock = threading.Lock()


def get_generation_provider() -> QueueGenerationProvider:
    global _provider
    if _provider is None:
        with _provider_lock:
            if _provider is None:
                api_key = os.getenv("GENERATION_PROVIDER_API_KEY", "").strip()
                if not api_key:
                    raise RuntimeError(
                        "GENERATION_PROVIDER_API_KEY environment variable is required"
                    )
                _provider = QueueGenerationProvider(
                    api_key,
                    base_url=os.getenv("GENERATION_PROVIDER_URL", DEFAULT_BASE_URL),
                )
    return _provider
