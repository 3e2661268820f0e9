"""
Idempotency guard for side-effecting requests.

A request's key is the SHA-256 of the user id plus the request fields that
define "the same request". ``check`` replays a stored success response;
``store`` persists one after the operation has fully succeeded, so a failed
attempt never poisons its key. Responses are canonicalised (sorted keys,
JSON-native values) before they are returned or stored, so a replay is
byte-for-byte what the first caller received.
"""

import hashlib
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Optional

from evmarket.core.logging import get_logger
from evmarket.database.base import to_json_value, utc_now
from evmarket.database.repository import DuplicateRecordError
from evmarket.services.idempotency.repository import IdempotencyRepository

logger = get_logger(__name__)

# Fields that differ between retries of the same logical request.
VOLATILE_FIELDS = frozenset({"timestamp", "request_id", "nonce", "client_time"})


def _json_default(value: Any) -> Any:
    converted = to_json_value(value)
    if converted is value:
        return str(value)
    return converted


def canonical_json(value: Any) -> str:
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_default,
    )


def canonicalize(response: Mapping[str, Any]) -> dict[str, Any]:
    """Round-trip through canonical JSON: sorted keys, JSON-native values."""
    return json.loads(canonical_json(response))


def derive_key(user_id: uuid.UUID, fields: Mapping[str, Any]) -> str:
    """
    Deterministic key for a logical request.

    Field order never matters and volatile fields are ignored, so two
    submissions of the same booking always hash identically.
    """
    relevant = {k: v for k, v in fields.items() if k not in VOLATILE_FIELDS}
    material = canonical_json({"user_id": str(user_id), "fields": relevant})
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class IdempotencyCheck:
    is_duplicate: bool
    prior_response: Optional[dict[str, Any]] = None


class IdempotencyGuard:
    """
    Store/check of prior responses keyed by ``derive_key``.

    Attributes:
        repository: Write-once record store
        window: How long a stored response is replayed
    """

    def __init__(
        self,
        repository: IdempotencyRepository,
        window_hours: int = 24,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.window = timedelta(hours=window_hours)
        self._clock = clock

    derive_key = staticmethod(derive_key)

    async def check(self, key: str) -> IdempotencyCheck:
        record = await self.repository.get(key)
        if record is None:
            return IdempotencyCheck(is_duplicate=False)

        if record.created_at <= self._clock() - self.window:
            # Stale: the next success stores a fresh record under the same key.
            await self.repository.delete(key)
            logger.info("Expired idempotency record discarded", scope=record.scope)
            return IdempotencyCheck(is_duplicate=False)

        logger.info(
            "Duplicate request detected, replaying stored response",
            scope=record.scope,
            user_id=str(record.user_id),
        )
        return IdempotencyCheck(
            is_duplicate=True,
            prior_response=canonicalize(record.response),
        )

    async def store(
        self,
        key: str,
        user_id: uuid.UUID,
        scope: str,
        response: Mapping[str, Any],
    ) -> dict[str, Any]:
        """
        Persist a success response.

        Returns:
            The response every caller with this key must see: ours, or the
            winner's when another request stored first.
        """
        canonical = canonicalize(response)
        try:
            await self.repository.create(
                key=key,
                user_id=user_id,
                scope=scope,
                response=canonical,
                created_at=self._clock(),
            )
        except DuplicateRecordError:
            winner = await self.repository.get(key)
            if winner is None:
                raise
            logger.info(
                "Idempotency race lost, returning stored response",
                scope=scope,
                user_id=str(user_id),
            )
            return canonicalize(winner.response)
        return canonical

    async def purge(self, retention_days: int) -> int:
        cutoff = self._clock() - timedelta(days=retention_days)
        purged = await self.repository.delete_older_than(cutoff)
        logger.info("Idempotency records purged", purged=purged, cutoff=cutoff.isoformat())
        return purged
