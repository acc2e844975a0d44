from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated

from pydantic.functional_serializers import PlainSerializer


def serialize_datetime_to_utc_iso8601(value: datetime) -> str:
    """모든 datetime을 UTC 기준 ISO8601(+타임존) 문자열로 직렬화한다."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.isoformat()


def serialize_decimal_to_str(value: Decimal) -> str:
    """금액은 float 로 내보내지 않고 정규화된 문자열로 직렬화한다.

    예: Decimal("10.000000") -> "10", Decimal("9.950") -> "9.95"
    """
    normalized = value.normalize()
    # normalize() 는 100 -> 1E+2 로 바꾸므로 지수 표기를 풀어준다.
    return format(normalized, "f")


UtcDateTime = Annotated[
    datetime,
    PlainSerializer(
        serialize_datetime_to_utc_iso8601,
        return_type=str,
        when_used="json",
    ),
]

DecimalStr = Annotated[
    Decimal,
    PlainSerializer(
        serialize_decimal_to_str,
        return_type=str,
        when_used="json",
    ),
]
