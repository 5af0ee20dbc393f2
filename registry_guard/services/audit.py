"""Audit sink: persisted AuditEvent rows mirrored to the audit logger."""
import logging
from abc import ABC, abstractmethod
from typing import Optional

from sqlalchemy.orm import Session

from registry_guard.models.audit import AuditEvent
from registry_guard.models.enums import AuditCategory

audit_logger = logging.getLogger("registry_guard.audit")


class AuditSink(ABC):
    @abstractmethod
    def record(self, category: AuditCategory, event_type: str, actor: str, summary: str,
               entity_name: Optional[str] = None) -> None:
        ...


class SqlAuditSink(AuditSink):
    """Appends to the audit_events table. Rows are committed with the command."""

    def __init__(self, db: Session):
        self.db = db

    def record(self, category, event_type, actor, summary, entity_name=None):
        self.db.add(AuditEvent(
            category=category,
            event_type=event_type,
            actor=actor,
            entity_name=entity_name,
            summary=summary
        ))
        self.db.flush()
        audit_logger.info(
            "%s %s: %s",
            actor,
            category.value,
            summary,
            extra={"extra_fields": {
                "event_type": event_type,
                "category": category.value,
                "actor": actor,
                "entity": entity_name,
            }}
        )
