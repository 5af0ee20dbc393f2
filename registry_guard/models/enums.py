"""Enums for the registry - the valid values for kinds, faults and audit categories."""
from enum import Enum


class EntityKind(str, Enum):
    """What an Entity row represents."""
    ACCOUNT = "account"
    GROUP = "group"


class EntityFlag(str, Enum):
    """Protective flags on an entity."""
    HELD = "HOLD"
    FROZEN = "FROZEN"
    WAITAUTH = "WAITAUTH"
    NOPASSWORD = "NOPASSWORD"


class PendingKind(str, Enum):
    """Operations that wait for a verification key."""
    REGISTER = "REGISTER"
    EMAILCHG = "EMAILCHG"
    SETPASS = "SETPASS"


# Operations an actor may name in VERIFY / FVERIFY
VERIFIABLE_KINDS = (PendingKind.REGISTER, PendingKind.EMAILCHG)


class Fault(str, Enum):
    """Failure kinds reported back to the actor."""
    MISSING_PARAMETERS = "missing_parameters"
    INVALID_PARAMETERS = "invalid_parameters"
    NOT_FOUND = "not_found"
    AUTHENTICATION_FAILED = "authentication_failed"
    FORBIDDEN = "forbidden"
    CONFLICT = "conflict"
    NOT_PENDING = "not_pending"
    INVALID_KEY = "invalid_key"
    QUOTA_EXCEEDED = "quota_exceeded"
    INTERNAL = "internal"


class AuditCategory(str, Enum):
    """Log categories, mirroring the command log classes of the registry."""
    REGISTER = "register"
    SET = "set"
    ADMIN = "admin"


class Privilege:
    """Privilege names held by operators."""
    USER_ADMIN = "user:admin"
    GENERAL_ADMIN = "general:admin"
    MARK = "user:mark"


# Group access flag carried by founders
GROUP_FOUNDER_FLAG = "F"
