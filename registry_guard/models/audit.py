"""
Internal audit logging model - NOT a user-facing domain object.

Append-only trail of registry changes, administrative actions and refusals
worth keeping (failed authentication, failed verification, blocked overrides).
"""
from sqlalchemy import Column, String, Integer, DateTime, Enum as SQLEnum

from registry_guard.database import Base
from registry_guard.models.domain import utcnow
from registry_guard.models.enums import AuditCategory


class AuditEvent(Base):
    """
    Immutable audit event.

    Invariants:
    - Once written, never edited or deleted
    - entity_name is a snapshot; the entity may since have been renamed or dropped
    """
    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    category = Column(SQLEnum(AuditCategory), nullable=False, index=True)
    event_type = Column(String, nullable=False, index=True)
    actor = Column(String, nullable=False)
    entity_name = Column(String, nullable=True, index=True)
    summary = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)


class AuditEventType:
    """Enumeration of audit event types."""
    GROUP_RENAMED = "group_renamed"
    ACCOUNT_RENAMED = "account_renamed"

    ACCOUNT_DROPPED = "account_dropped"
    ACCOUNT_FORCE_DROPPED = "account_force_dropped"
    DROP_AUTH_FAILED = "drop_authentication_failed"

    PASSWORD_RESET = "password_reset"
    PASSWORD_RESET_REFUSED = "password_reset_refused"

    REGISTRATION_VERIFIED = "registration_verified"
    EMAIL_CHANGE_VERIFIED = "email_change_verified"
    VERIFICATION_FAILED = "verification_failed"
