"""
Pending operation tracker.

One slot per (entity, kind), kept in the entity's metadata under the reserved
``private:`` namespaces. A new request of the same kind supersedes the old one.
"""
import time
from typing import Callable, Optional

from registry_guard import config
from registry_guard.models.domain import Entity
from registry_guard.models.enums import PendingKind
from registry_guard.services.challenge import ChallengeService
from registry_guard.services.errors import Conflict, InvalidKey, NotPending
from registry_guard.services.storage import PENDING_RECORD_TYPES, EntityStore, RecordAdapter


class PendingOperationTracker:
    def __init__(
        self,
        store: EntityStore,
        challenges: ChallengeService,
        ttl_seconds: int = config.PENDING_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.challenges = challenges
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def _adapter(self, entity: Entity) -> RecordAdapter:
        return RecordAdapter(self.store.metadata(entity))

    def _load(self, entity: Entity, kind: PendingKind):
        record = self._adapter(entity).load_pending(kind)
        if record is None:
            return None
        if self.ttl_seconds > 0 and record.timestamp + self.ttl_seconds < self.clock():
            return None
        return record

    def begin(self, entity: Entity, kind: PendingKind, payload: Optional[str] = None,
              replace: bool = True) -> str:
        """
        Start a pending operation and return its verification key.

        With ``replace`` (the default for every kind) an outstanding operation
        of the same kind is silently superseded; otherwise it is a Conflict.
        """
        adapter = self._adapter(entity)
        if not replace and self._load(entity, kind) is not None:
            raise Conflict(f"{entity.name} already has a pending {kind.value} operation.")

        key = self.challenges.generate_key()
        record = PENDING_RECORD_TYPES[kind].build(key, int(self.clock()), payload)
        adapter.delete_pending(kind)
        adapter.save(record)
        return key

    def peek(self, entity: Entity, kind: PendingKind) -> bool:
        return self._load(entity, kind) is not None

    def redeem(self, entity: Entity, kind: PendingKind, supplied: str) -> Optional[str]:
        """
        Consume the pending operation if ``supplied`` matches its key.

        A wrong key leaves the record in place so the owner can retry. A match
        deletes it before the payload is handed back, so whatever the caller
        does next the record cannot be redeemed twice.
        """
        record = self._load(entity, kind)
        if record is None:
            raise NotPending(f"{entity.name} is not awaiting authorization.")

        if not self.challenges.verify(record.key, supplied):
            raise InvalidKey(f"Verification failed. Invalid key for {entity.name}.")

        self._adapter(entity).delete_pending(kind)
        return record.payload

    def take(self, entity: Entity, kind: PendingKind) -> Optional[str]:
        """Consume the pending operation without a key (administrative bypass)."""
        record = self._load(entity, kind)
        if record is None:
            raise NotPending(f"{entity.name} is not awaiting authorization.")
        self._adapter(entity).delete_pending(kind)
        return record.payload

    def discard(self, entity: Entity, kind: PendingKind) -> None:
        self._adapter(entity).delete_pending(kind)
