"""Idempotency record data access."""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import delete

from evmarket.database.models.idempotency import IdempotencyRecord
from evmarket.database.repository import BaseRepository


class IdempotencyRepository(BaseRepository):
    """
    Write-once store of replayable responses.

    ``create`` raises ``DuplicateRecordError`` when the key already exists,
    which is how a request that lost a race learns about the winner.
    """

    model = IdempotencyRecord
    pk_column = "key"

    async def get(self, key: str) -> Optional[IdempotencyRecord]:
        return await self.get_by_id(key)

    async def create(
        self,
        key: str,
        user_id: uuid.UUID,
        scope: str,
        response: dict[str, Any],
        created_at: datetime,
    ) -> IdempotencyRecord:
        record = IdempotencyRecord(
            key=key,
            user_id=user_id,
            scope=scope,
            response=response,
            created_at=created_at,
        )
        return await self._add(record, "store_idempotency_record", scope=scope)

    async def delete(self, key: str) -> bool:
        deleted = await self._execute_write(
            delete(IdempotencyRecord).where(IdempotencyRecord.key == key),
            "delete_idempotency_record",
        )
        return deleted > 0

    async def delete_older_than(self, cutoff: datetime) -> int:
        return await self._execute_write(
            delete(IdempotencyRecord).where(IdempotencyRecord.created_at < cutoff),
            "purge_idempotency_records",
        )
