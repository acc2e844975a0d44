from __future__ import annotations

from typing import Any, Protocol

from ..models.generation import GenerationOutcome


class GenerationProvider(Protocol):
    """유료 작업을 실제로 수행하는 하류 서비스 계약.

    invoke 는 결과를 확정할 수 없으면 예외 대신 status=unknown 을 반환해야 하고,
    get_status 로 나중에 같은 작업의 결과를 다시 물을 수 있어야 한다.
    """

    def invoke(
        self, job_spec: dict[str, Any]
    ) -> GenerationOutcome:  # pragma: no cover - Protocol
        ...

    def get_status(self, job_id: str) -> GenerationOutcome:  # pragma: no cover - Protocol
        ...
