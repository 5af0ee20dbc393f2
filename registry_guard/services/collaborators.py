"""
Collaborators the engine consumes: the acting identity, the session layer,
notification hooks and the e-mail quota policy.
"""
import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional

from registry_guard.models.domain import Entity
from registry_guard.models.enums import EntityKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    """
    Whoever issued the command.

    ``name`` is the audit identity (nick or operator name), ``account`` the name
    of the account the session is logged in as, ``source`` the connection the
    command came from.
    """
    name: str
    account: Optional[str] = None
    privileges: FrozenSet[str] = field(default_factory=frozenset)
    source: str = ""

    def has_priv(self, privilege: str) -> bool:
        return privilege in self.privileges


class SessionDirectory(ABC):
    """Who an actor is logged in as, and which sessions are logged in to an account."""

    @abstractmethod
    def current_account(self, actor: Actor) -> Optional[Entity]:
        ...

    @abstractmethod
    def logins(self, entity: Entity) -> List[str]:
        ...


class LoginRegistry:
    """
    Process-wide record of which sessions are logged in to which account.

    The session layer keeps it current through the /api/logins routes.

    Keyed by entity id so entries survive a rename.
    """

    def __init__(self):
        self._logins: Dict[int, List[str]] = defaultdict(list)
        self._lock = threading.Lock()

    def connect(self, entity: Entity, session_name: str) -> None:
        with self._lock:
            sessions = self._logins[entity.id]
            if session_name not in sessions:
                sessions.append(session_name)

    def disconnect(self, entity: Entity, session_name: str) -> None:
        with self._lock:
            sessions = self._logins.get(entity.id, [])
            if session_name in sessions:
                sessions.remove(session_name)
            if not sessions:
                self._logins.pop(entity.id, None)

    def logins(self, entity: Entity) -> List[str]:
        with self._lock:
            return list(self._logins.get(entity.id, []))


class StoreSessionDirectory(SessionDirectory):
    """Resolves ``actor.account`` through the entity store of the current request."""

    def __init__(self, store, registry: LoginRegistry):
        self.store = store
        self.registry = registry

    def current_account(self, actor):
        if not actor.account:
            return None
        return self.store.find_by_name(actor.account, EntityKind.ACCOUNT)

    def logins(self, entity):
        return self.registry.logins(entity)


class EmailQuota(ABC):
    @abstractmethod
    def within_limit(self, email: str) -> bool:
        ...


class Hooks:
    """
    Notifications fired after state changes.

    The default implementation only logs; deployments subclass it to reach the
    network layer.
    """

    def on_entity_dropped(self, entity: Entity) -> None:
        logger.info("entity dropped: %s", entity.name)

    def on_registration_verified(self, entity: Entity, actor: Actor) -> None:
        logger.info("registration verified: %s by %s", entity.name, actor.name)

    def on_login(self, session_name: str, entity: Entity) -> None:
        logger.info("login refreshed: %s as %s", session_name, entity.name)

    def hold_name(self, name: str) -> None:
        logger.info("name held after drop: %s", name)

    def wallops(self, text: str) -> None:
        logger.warning("wallops: %s", text)

    def on_bad_password(self, actor: Actor, entity: Entity) -> None:
        logger.warning("bad password from %s for %s", actor.name, entity.name)
