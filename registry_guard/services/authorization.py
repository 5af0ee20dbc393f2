"""
Authorization evaluator.

Decides ALLOW / DENY / OVERRIDE for an actor acting on an entity. Pure: it
reads the store and the session layer but never writes, and never audits.
Callers log using the returned reason.

Rules, checked in order; the first DENY wins:
1. Operator-owned targets can never be dropped.
2. HELD targets can never be dropped.
2b. Operator-owned targets need an extra privilege where the requirement names one.
3. A mark blocks mark-guarded operations unless the actor holds user:mark,
   in which case the result is OVERRIDE naming the setter.
4. Self-service needs the actor's session to be logged in as the target.
4b. Ownership needs the target itself (accounts) or founder access (groups).
5. A named privilege must be held by the actor.
6. Otherwise ALLOW, or the OVERRIDE recorded at rule 3.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from registry_guard.models.domain import Entity
from registry_guard.models.enums import GROUP_FOUNDER_FLAG, EntityFlag, EntityKind, Privilege
from registry_guard.services.collaborators import Actor, SessionDirectory
from registry_guard.services.storage import EntityStore, RecordAdapter


class DecisionKind(str, Enum):
    ALLOW = "ALLOW"
    DENY = "DENY"
    OVERRIDE = "OVERRIDE"


class DenyRule(str, Enum):
    """Which rule produced a DENY."""
    OPERATOR = "operator"
    HELD = "held"
    OPERATOR_PRIVILEGE = "operator_privilege"
    MARK = "mark"
    SESSION = "session"
    OWNERSHIP = "ownership"
    PRIVILEGE = "privilege"


@dataclass(frozen=True)
class Decision:
    kind: DecisionKind
    reason: Optional[str] = None
    rule: Optional[DenyRule] = None
    mark_setter: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.kind != DecisionKind.DENY

    @property
    def overridden(self) -> bool:
        return self.kind == DecisionKind.OVERRIDE


@dataclass(frozen=True)
class Requirement:
    """What a command needs from the actor."""
    destructive: bool = False
    self_service: bool = False
    ownership: bool = False
    privilege: Optional[str] = None
    mark_guarded: bool = False
    operator_privilege: Optional[str] = None


SELF_DROP = Requirement(destructive=True, self_service=True)
FORCED_DROP = Requirement(destructive=True, privilege=Privilege.USER_ADMIN)
RESET_PASSWORD = Requirement(
    privilege=Privilege.USER_ADMIN,
    mark_guarded=True,
    operator_privilege=Privilege.GENERAL_ADMIN
)
RENAME = Requirement(ownership=True)
SELF_VERIFY = Requirement(self_service=True)
FORCED_VERIFY = Requirement(privilege=Privilege.USER_ADMIN)


def _deny(rule: DenyRule, reason: str, mark_setter: Optional[str] = None) -> Decision:
    return Decision(DecisionKind.DENY, reason=reason, rule=rule, mark_setter=mark_setter)


class AuthorizationEvaluator:
    def __init__(self, store: EntityStore, sessions: SessionDirectory):
        self.store = store
        self.sessions = sessions

    def evaluate(self, actor: Actor, target: Entity, requirement: Requirement) -> Decision:
        name = target.name
        is_operator = self.store.is_operator(target)

        if requirement.destructive and is_operator:
            return _deny(
                DenyRule.OPERATOR,
                f"The nickname {name} belongs to a services operator; it cannot be dropped."
            )

        if requirement.destructive and self.store.has_flag(target, EntityFlag.HELD):
            return _deny(DenyRule.HELD, f"The account {name} is held; it cannot be dropped.")

        if requirement.operator_privilege and is_operator and not actor.has_priv(requirement.operator_privilege):
            return _deny(
                DenyRule.OPERATOR_PRIVILEGE,
                f"{name} belongs to a services operator; you need {requirement.operator_privilege} "
                f"privilege for this operation."
            )

        override = None
        if requirement.mark_guarded:
            mark = RecordAdapter(self.store.metadata(target)).load_mark()
            if mark is not None:
                if not actor.has_priv(Privilege.MARK):
                    return _deny(
                        DenyRule.MARK,
                        f"This operation cannot be performed on {name}, because the account "
                        f"has been marked by {mark.setter}.",
                        mark_setter=mark.setter
                    )
                override = Decision(
                    DecisionKind.OVERRIDE,
                    reason=f"Overriding MARK placed by {mark.setter} on the account {name}.",
                    mark_setter=mark.setter
                )

        if requirement.self_service and not self._logged_in_as(actor, target):
            return _deny(DenyRule.SESSION, f"You must authenticate as {name} first.")

        if requirement.ownership and not self._owns(actor, target):
            return _deny(DenyRule.OWNERSHIP, "You are not authorized to execute this command.")

        if requirement.privilege and not actor.has_priv(requirement.privilege):
            return _deny(
                DenyRule.PRIVILEGE,
                f"You need the {requirement.privilege} privilege for this operation."
            )

        return override or Decision(DecisionKind.ALLOW)

    def _logged_in_as(self, actor: Actor, target: Entity) -> bool:
        session = self.sessions.current_account(actor)
        return session is not None and session.id == target.id

    def _owns(self, actor: Actor, target: Entity) -> bool:
        if target.kind == EntityKind.ACCOUNT:
            return self._logged_in_as(actor, target)
        session = self.sessions.current_account(actor)
        if session is None:
            return False
        return self.store.has_group_flag(target, session, GROUP_FOUNDER_FLAG)
