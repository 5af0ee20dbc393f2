"""Registry models - entities, their aliases, metadata and group access edges."""
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from registry_guard.database import Base
from registry_guard.models.enums import EntityKind


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def fold_name(name: str) -> str:
    """Case-insensitive lookup key for names."""
    return name.casefold()


class Entity(Base):
    """
    An account or a group.

    Invariants enforced here:
    - name_key is unique, so no two entities share a name regardless of case
    - Rename keeps the id, so relationships survive it
    """
    __tablename__ = "entities"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    kind = Column(SQLEnum(EntityKind), nullable=False, default=EntityKind.ACCOUNT)
    name = Column(String, nullable=False)
    name_key = Column(String, nullable=False, unique=True, index=True)

    # Accounts only
    email = Column(String, nullable=True, index=True)
    password_hash = Column(String, nullable=True)

    # Protective flags
    held = Column(Boolean, nullable=False, default=False)
    frozen = Column(Boolean, nullable=False, default=False)
    waitauth = Column(Boolean, nullable=False, default=False)
    nopassword = Column(Boolean, nullable=False, default=False)
    is_operator = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    aliases = relationship("Alias", back_populates="entity", cascade="all, delete-orphan")
    metadata_entries = relationship("MetadataEntry", back_populates="entity", cascade="all, delete-orphan")
    group_access = relationship(
        "GroupAccess",
        back_populates="group",
        cascade="all, delete-orphan",
        foreign_keys="GroupAccess.group_id",
    )
    memberships = relationship(
        "GroupAccess",
        back_populates="account",
        cascade="all, delete-orphan",
        foreign_keys="GroupAccess.account_id",
    )

    def __repr__(self) -> str:
        return f"<Entity {self.kind.value} {self.name!r}>"


class Alias(Base):
    """A secondary name grouped to an account."""
    __tablename__ = "aliases"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    entity_id = Column(Integer, ForeignKey("entities.id"), nullable=False)
    name = Column(String, nullable=False)
    name_key = Column(String, nullable=False, unique=True, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    entity = relationship("Entity", back_populates="aliases")


class MetadataEntry(Base):
    """
    One string key/value pair on an entity.

    Keys are unique within an entity. Reserved ``private:`` keys carry marks and
    pending operations.
    """
    __tablename__ = "entity_metadata"
    __table_args__ = (UniqueConstraint("entity_id", "key", name="uq_entity_metadata_key"),)

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    entity_id = Column(Integer, ForeignKey("entities.id"), nullable=False)
    key = Column(String, nullable=False)
    value = Column(String, nullable=False)

    entity = relationship("Entity", back_populates="metadata_entries")


class GroupAccess(Base):
    """Access edge from a group to an account. Flags are single letters, F = founder."""
    __tablename__ = "group_access"
    __table_args__ = (UniqueConstraint("group_id", "account_id", name="uq_group_access_member"),)

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    group_id = Column(Integer, ForeignKey("entities.id"), nullable=False)
    account_id = Column(Integer, ForeignKey("entities.id"), nullable=False)
    flags = Column(String, nullable=False, default="")

    group = relationship("Entity", back_populates="group_access", foreign_keys=[group_id])
    account = relationship("Entity", back_populates="memberships", foreign_keys=[account_id])
