"""
Confirmable operations.

Two strategies behind one interface. The drop challenge persists nothing and
is re-derived on every call; a verification key lives in a pending record
until redeemed.
"""
from abc import ABC, abstractmethod
from typing import Optional

from registry_guard.models.domain import Entity, fold_name
from registry_guard.models.enums import PendingKind
from registry_guard.services.challenge import ChallengeService, FailureLimiter
from registry_guard.services.collaborators import Actor
from registry_guard.services.errors import Forbidden, InvalidKey
from registry_guard.services.pending import PendingOperationTracker


class ConfirmableOperation(ABC):
    @abstractmethod
    def issue(self, actor: Actor, entity: Entity, payload: Optional[str] = None) -> str:
        """Return the key the actor has to send back."""

    @abstractmethod
    def confirm(self, actor: Actor, entity: Entity, key: str) -> Optional[str]:
        """Check ``key`` and return the payload, or raise InvalidKey / NotPending."""


class DerivedChallengeConfirmation(ConfirmableOperation):
    """
    Stateless challenge for DROP.

    Wrong keys consume nothing, so the actor can retry; the optional limiter
    caps how many wrong keys one actor may send for one name per window.
    """

    def __init__(self, challenges: ChallengeService, limiter: Optional[FailureLimiter] = None,
                 command: str = "DROP"):
        self.challenges = challenges
        self.limiter = limiter
        self.command = command

    def _limit_key(self, actor: Actor, entity: Entity) -> str:
        return f"{actor.name}\0{fold_name(entity.name)}"

    def issue(self, actor, entity, payload=None):
        return self.challenges.derive_drop_challenge(actor, entity.name)

    def confirm(self, actor, entity, key):
        limit_key = self._limit_key(actor, entity)
        if self.limiter is not None and self.limiter.is_blocked(limit_key):
            raise Forbidden(f"Too many invalid keys for {self.command}. Request a new challenge later.")

        if not self.challenges.verify_drop_challenge(actor, entity.name, key):
            if self.limiter is not None:
                self.limiter.record_failure(limit_key)
            raise InvalidKey(f"Invalid key for {self.command}.")

        if self.limiter is not None:
            self.limiter.reset(limit_key)
        return None


class PendingRecordConfirmation(ConfirmableOperation):
    """Verification key stored in a pending record of one kind."""

    def __init__(self, tracker: PendingOperationTracker, kind: PendingKind):
        self.tracker = tracker
        self.kind = kind

    def issue(self, actor, entity, payload=None):
        return self.tracker.begin(entity, self.kind, payload)

    def confirm(self, actor, entity, key):
        return self.tracker.redeem(entity, self.kind, key)
