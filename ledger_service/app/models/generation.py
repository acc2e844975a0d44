from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel


class GenerationStatus(StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"
    UNKNOWN = "unknown"  # 타임아웃 등으로 하류 작업의 실제 결과를 모르는 상태


class GenerationOutcome(BaseModel):
    status: GenerationStatus
    job_id: str | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
