from __future__ import annotations

import logging

from pymongo import ASCENDING, DESCENDING, IndexModel
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from common.mongo.types import from_object_id

from .documents.payment_event_document import PaymentEventDocument
from .interfaces import PaymentEventRepositoryInterface
from ..models.payment import PaymentEvent


logger = logging.getLogger(__name__)


class PaymentEventRepository(PaymentEventRepositoryInterface):
    """payment_events 컬렉션에 대한 MongoDB 접근 레이어. 이벤트는 만료되지 않는다."""

    def __init__(self, database: Database) -> None:
        self._db = database
        self._col = database["payment_events"]
        self._col.create_indexes(
            [
                IndexModel(
                    [("external_ref", ASCENDING)],
                    name="uniq_external_ref",
                    unique=True,
                ),
                IndexModel(
                    [("identity_key", ASCENDING), ("applied_at", DESCENDING)],
                    name="idx_identity_applied_at",
                ),
            ]
        )

    def create(self, event: PaymentEvent) -> PaymentEvent:
        doc = PaymentEventDocument.from_domain(event)
        payload = doc.to_mongo_record()
        try:
            result = self._col.insert_one(payload)
        except DuplicateKeyError:
            existing = self.find_by_ref(event.external_ref)
            logger.info(
                "payment event already recorded",
                extra={"external_ref": event.external_ref},
            )
            if existing is not None:
                return existing
            raise
        return event.model_copy(update={"id": from_object_id(result.inserted_id)})

    def find_by_ref(self, external_ref: str) -> PaymentEvent | None:
        doc = self._col.find_one({"external_ref": external_ref})
        if not doc:
            return None
        return PaymentEventDocument.model_validate(doc).to_domain()

    def list_by_identity(
        self, identity_key: str, page: int, page_size: int
    ) -> tuple[list[PaymentEvent], int]:
        if page <= 0:
            page = 1
        if page_size <= 0 or page_size > 100:
            page_size = 20

        skip = (page - 1) * page_size

        total = self._col.count_documents({"identity_key": identity_key})
        cursor = self._col.find(
            {"identity_key": identity_key},
            sort=[("applied_at", -1), ("_id", -1)],
            skip=skip,
            limit=page_size,
        )

        items: list[PaymentEvent] = []
        for raw in cursor:
            items.append(PaymentEventDocument.model_validate(raw).to_domain())

        return items, total
