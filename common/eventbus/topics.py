from __future__ import annotations

from .core import Topic


TOPIC_LEDGER_CREDIT = Topic("ledger.credit")
TOPIC_LEDGER_PAYMENT = Topic("ledger.payment")
