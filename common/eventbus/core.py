from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol


# 다운스트림 컨슈머의 재시도 토픽 개수와 맞춘다. (retry.1 ~ retry.5)
DEFAULT_MAX_RETRY = 5


@dataclass(slots=True)
class Event:
    """Kafka 메시지의 메타데이터와 페이로드를 표현하는 이벤트.

    payload는 직렬화 직전 형태(dict)를 저장하고, 실제 Kafka I/O 레이어에서
    JSON 인코딩을 담당한다. retry/max_retry 는 컨슈머 쪽 재시도 규약을 위한 필드다.
    """

    id: str
    payload: Any
    retry: int = 0
    max_retry: int = 0
    last_error: str | None = None

    def __post_init__(self) -> None:
        if self.max_retry <= 0 or self.max_retry > DEFAULT_MAX_RETRY:
            self.max_retry = DEFAULT_MAX_RETRY


@dataclass(frozen=True, slots=True)
class Topic:
    base: str


class EventPublisher(Protocol):
    """원장 서비스가 의존하는 최소한의 발행 계약."""

    def publish(
        self, topic: str, event: Event
    ) -> None:  # pragma: no cover - Protocol
        ...

    def close(self) -> None:  # pragma: no cover - Protocol
        ...


class NullEventBus:
    """Kafka 가 설정되지 않은 환경(로컬, 테스트)에서 쓰는 발행기. 아무것도 보내지 않는다."""

    def publish(self, topic: str, event: Event) -> None:
        return None

    def close(self) -> None:
        return None
