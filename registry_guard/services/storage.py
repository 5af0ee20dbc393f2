"""
Storage collaborators.

The engine only sees the abstract EntityStore / MetadataStore interfaces and the
typed metadata records. The SQLAlchemy implementations below are what the web
app and the tests wire in.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Type

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError
from sqlalchemy import func
from sqlalchemy.orm import Session

from registry_guard.models.domain import Alias, Entity, GroupAccess, MetadataEntry, fold_name, utcnow
from registry_guard.models.enums import GROUP_FOUNDER_FLAG, EntityFlag, EntityKind, PendingKind
from registry_guard.services.collaborators import EmailQuota


class MetadataStore(ABC):
    """String key/value mapping attached to one entity."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    def exists(self, key: str) -> bool:
        return self.get(key) is not None


class EntityStore(ABC):
    """Lookup and mutation of accounts and groups."""

    @abstractmethod
    def find_by_name(self, name: str, kind: Optional[EntityKind] = None) -> Optional[Entity]:
        ...

    @abstractmethod
    def find_by_alias(self, alias: str) -> Optional[Entity]:
        ...

    def find_by_name_or_alias(self, name: str) -> Optional[Entity]:
        return self.find_by_name(name, EntityKind.ACCOUNT) or self.find_by_alias(name)

    @abstractmethod
    def aliases(self, entity: Entity) -> List[str]:
        """Secondary names grouped to the entity, primary name excluded."""

    @abstractmethod
    def rename(self, entity: Entity, new_name: str) -> None:
        ...

    @abstractmethod
    def destroy(self, entity: Entity) -> None:
        ...

    @abstractmethod
    def has_flag(self, entity: Entity, flag: EntityFlag) -> bool:
        ...

    @abstractmethod
    def set_flag(self, entity: Entity, flag: EntityFlag, value: bool) -> None:
        ...

    @abstractmethod
    def is_operator(self, entity: Entity) -> bool:
        ...

    @abstractmethod
    def set_email(self, entity: Entity, email: str) -> None:
        ...

    @abstractmethod
    def set_credential(self, entity: Entity, secret: str) -> None:
        ...

    @abstractmethod
    def verify_credential(self, entity: Entity, secret: str) -> bool:
        ...

    @abstractmethod
    def has_group_flag(self, group: Entity, account: Entity, flag: str) -> bool:
        ...

    @abstractmethod
    def metadata(self, entity: Entity) -> MetadataStore:
        ...

    @abstractmethod
    def commit(self) -> None:
        ...

    @abstractmethod
    def rollback(self) -> None:
        ...


# ---------------------------------------------------------------------------
# Typed metadata records
# ---------------------------------------------------------------------------

def _to_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


@dataclass(frozen=True)
class MarkRecord:
    """Administrative mark blocking guarded operations."""
    setter: str
    reason: Optional[str] = None
    timestamp: Optional[int] = None

    PREFIX = "private:mark"

    def to_metadata(self) -> Dict[str, str]:
        data = {f"{self.PREFIX}:setter": self.setter}
        if self.reason is not None:
            data[f"{self.PREFIX}:reason"] = self.reason
        if self.timestamp is not None:
            data[f"{self.PREFIX}:timestamp"] = str(self.timestamp)
        return data

    @classmethod
    def from_metadata(cls, get: Callable[[str], Optional[str]]) -> Optional["MarkRecord"]:
        setter = get(f"{cls.PREFIX}:setter")
        if setter is None:
            return None
        return cls(
            setter=setter,
            reason=get(f"{cls.PREFIX}:reason"),
            timestamp=_to_int(get(f"{cls.PREFIX}:timestamp")),
        )

    @classmethod
    def keys(cls) -> List[str]:
        return [f"{cls.PREFIX}:setter", f"{cls.PREFIX}:reason", f"{cls.PREFIX}:timestamp"]


@dataclass(frozen=True)
class PendingRegisterRecord:
    key: str
    timestamp: int

    PREFIX = "private:verify:register"

    @property
    def payload(self) -> Optional[str]:
        return None

    def to_metadata(self) -> Dict[str, str]:
        return {f"{self.PREFIX}:key": self.key, f"{self.PREFIX}:timestamp": str(self.timestamp)}

    @classmethod
    def from_metadata(cls, get):
        key = get(f"{cls.PREFIX}:key")
        if key is None:
            return None
        return cls(key=key, timestamp=_to_int(get(f"{cls.PREFIX}:timestamp")) or 0)

    @classmethod
    def build(cls, key: str, timestamp: int, payload: Optional[str]) -> "PendingRegisterRecord":
        return cls(key=key, timestamp=timestamp)

    @classmethod
    def keys(cls) -> List[str]:
        return [f"{cls.PREFIX}:key", f"{cls.PREFIX}:timestamp"]


@dataclass(frozen=True)
class PendingEmailChangeRecord:
    key: str
    timestamp: int
    new_email: str

    PREFIX = "private:verify:emailchg"

    @property
    def payload(self) -> str:
        return self.new_email

    def to_metadata(self) -> Dict[str, str]:
        return {
            f"{self.PREFIX}:key": self.key,
            f"{self.PREFIX}:newemail": self.new_email,
            f"{self.PREFIX}:timestamp": str(self.timestamp),
        }

    @classmethod
    def from_metadata(cls, get):
        key = get(f"{cls.PREFIX}:key")
        new_email = get(f"{cls.PREFIX}:newemail")
        # A key without an address cannot be applied
        if key is None or new_email is None:
            return None
        return cls(key=key, timestamp=_to_int(get(f"{cls.PREFIX}:timestamp")) or 0, new_email=new_email)

    @classmethod
    def build(cls, key: str, timestamp: int, payload: Optional[str]) -> "PendingEmailChangeRecord":
        if not payload:
            raise ValueError("an e-mail change needs the new address")
        return cls(key=key, timestamp=timestamp, new_email=payload)

    @classmethod
    def keys(cls) -> List[str]:
        return [f"{cls.PREFIX}:key", f"{cls.PREFIX}:newemail", f"{cls.PREFIX}:timestamp"]


@dataclass(frozen=True)
class PendingSetPassRecord:
    key: str
    timestamp: int

    PREFIX = "private:setpass"

    @property
    def payload(self) -> Optional[str]:
        return None

    def to_metadata(self) -> Dict[str, str]:
        return {f"{self.PREFIX}:key": self.key, f"{self.PREFIX}:timestamp": str(self.timestamp)}

    @classmethod
    def from_metadata(cls, get):
        key = get(f"{cls.PREFIX}:key")
        if key is None:
            return None
        return cls(key=key, timestamp=_to_int(get(f"{cls.PREFIX}:timestamp")) or 0)

    @classmethod
    def build(cls, key: str, timestamp: int, payload: Optional[str]) -> "PendingSetPassRecord":
        return cls(key=key, timestamp=timestamp)

    @classmethod
    def keys(cls) -> List[str]:
        return [f"{cls.PREFIX}:key", f"{cls.PREFIX}:timestamp"]


@dataclass(frozen=True)
class SendPassRecord:
    """Who last had a password generated for the account, and when."""
    sender: str
    timestamp: int

    PREFIX = "private:sendpass"

    def to_metadata(self) -> Dict[str, str]:
        return {f"{self.PREFIX}:sender": self.sender, f"{self.PREFIX}:timestamp": str(self.timestamp)}

    @classmethod
    def from_metadata(cls, get):
        sender = get(f"{cls.PREFIX}:sender")
        if sender is None:
            return None
        return cls(sender=sender, timestamp=_to_int(get(f"{cls.PREFIX}:timestamp")) or 0)


PENDING_RECORD_TYPES: Dict[PendingKind, Type] = {
    PendingKind.REGISTER: PendingRegisterRecord,
    PendingKind.EMAILCHG: PendingEmailChangeRecord,
    PendingKind.SETPASS: PendingSetPassRecord,
}

missing = set(PendingKind) - set(PENDING_RECORD_TYPES)
if missing:
    raise RuntimeError(f"no metadata record type for pending kinds: {sorted(k.value for k in missing)}")
del missing


class RecordAdapter:
    """Reads and writes typed records through an entity's MetadataStore."""

    def __init__(self, metadata: MetadataStore):
        self.metadata = metadata

    def save(self, record) -> None:
        for key, value in record.to_metadata().items():
            self.metadata.set(key, value)

    def load_mark(self) -> Optional[MarkRecord]:
        return MarkRecord.from_metadata(self.metadata.get)

    def load_pending(self, kind: PendingKind):
        return PENDING_RECORD_TYPES[kind].from_metadata(self.metadata.get)

    def delete_pending(self, kind: PendingKind) -> None:
        for key in PENDING_RECORD_TYPES[kind].keys():
            self.metadata.delete(key)

    def pending_exists(self, kind: PendingKind) -> bool:
        return self.metadata.exists(f"{PENDING_RECORD_TYPES[kind].PREFIX}:key")


# ---------------------------------------------------------------------------
# SQLAlchemy implementations
# ---------------------------------------------------------------------------

_FLAG_COLUMNS = {
    EntityFlag.HELD: "held",
    EntityFlag.FROZEN: "frozen",
    EntityFlag.WAITAUTH: "waitauth",
    EntityFlag.NOPASSWORD: "nopassword",
}

_hasher = PasswordHasher(time_cost=3, memory_cost=65536, parallelism=4, hash_len=32, salt_len=16)


def hash_credential(secret: str) -> str:
    """Argon2id; salt and parameters are embedded in the encoded hash."""
    return _hasher.hash(secret)


def check_credential(secret: str, stored_hash: Optional[str]) -> bool:
    if not stored_hash or not secret:
        return False
    try:
        return _hasher.verify(stored_hash, secret)
    except (VerificationError, InvalidHashError):
        # Mismatch and unreadable hashes both mean "not this credential"
        return False


class SqlMetadataStore(MetadataStore):
    def __init__(self, db: Session, entity: Entity):
        self.db = db
        self.entity = entity

    def _entry(self, key: str) -> Optional[MetadataEntry]:
        return self.db.query(MetadataEntry).filter(
            MetadataEntry.entity_id == self.entity.id,
            MetadataEntry.key == key
        ).first()

    def get(self, key: str) -> Optional[str]:
        entry = self._entry(key)
        return entry.value if entry else None

    def set(self, key: str, value: str) -> None:
        entry = self._entry(key)
        if entry:
            entry.value = value
        else:
            self.db.add(MetadataEntry(entity_id=self.entity.id, key=key, value=value))
        self.db.flush()

    def delete(self, key: str) -> None:
        entry = self._entry(key)
        if entry:
            self.db.delete(entry)
            self.db.flush()


class SqlEntityStore(EntityStore):
    """EntityStore over a SQLAlchemy session. Changes are flushed, the caller commits."""

    def __init__(self, db: Session):
        self.db = db

    def find_by_name(self, name, kind=None):
        query = self.db.query(Entity).filter(Entity.name_key == fold_name(name))
        if kind is not None:
            query = query.filter(Entity.kind == kind)
        return query.first()

    def find_by_alias(self, alias):
        row = self.db.query(Alias).filter(Alias.name_key == fold_name(alias)).first()
        return row.entity if row else None

    def aliases(self, entity):
        return [a.name for a in entity.aliases]

    def rename(self, entity, new_name):
        entity.name = new_name
        entity.name_key = fold_name(new_name)
        entity.updated_at = utcnow()
        self.db.flush()

    def destroy(self, entity):
        self.db.delete(entity)
        self.db.flush()

    def has_flag(self, entity, flag):
        return bool(getattr(entity, _FLAG_COLUMNS[flag]))

    def set_flag(self, entity, flag, value):
        setattr(entity, _FLAG_COLUMNS[flag], value)
        entity.updated_at = utcnow()
        self.db.flush()

    def is_operator(self, entity):
        return bool(entity.is_operator)

    def set_email(self, entity, email):
        entity.email = email
        entity.updated_at = utcnow()
        self.db.flush()

    def set_credential(self, entity, secret):
        entity.password_hash = hash_credential(secret)
        entity.updated_at = utcnow()
        self.db.flush()

    def verify_credential(self, entity, secret):
        return check_credential(secret, entity.password_hash)

    def has_group_flag(self, group, account, flag):
        edge = self.db.query(GroupAccess).filter(
            GroupAccess.group_id == group.id,
            GroupAccess.account_id == account.id
        ).first()
        return bool(edge and flag in edge.flags)

    def metadata(self, entity):
        return SqlMetadataStore(self.db, entity)

    def commit(self):
        self.db.commit()

    def rollback(self):
        self.db.rollback()

    # Registration helpers. Registration itself lives outside the engine; these
    # seed the registry for the web app and tests.

    def create_account(self, name: str, email: Optional[str] = None, password: Optional[str] = None,
                       **flags) -> Entity:
        flags.setdefault("nopassword", password is None)
        entity = Entity(
            kind=EntityKind.ACCOUNT,
            name=name,
            name_key=fold_name(name),
            email=email,
            password_hash=hash_credential(password) if password else None,
            **flags
        )
        self.db.add(entity)
        self.db.flush()
        return entity

    def create_group(self, name: str, founder: Optional[Entity] = None, **flags) -> Entity:
        group = Entity(kind=EntityKind.GROUP, name=name, name_key=fold_name(name), **flags)
        self.db.add(group)
        self.db.flush()
        if founder is not None:
            self.grant_group_access(group, founder, GROUP_FOUNDER_FLAG)
        return group

    def grant_group_access(self, group: Entity, account: Entity, flags: str) -> GroupAccess:
        edge = GroupAccess(group_id=group.id, account_id=account.id, flags=flags)
        self.db.add(edge)
        self.db.flush()
        return edge

    def add_alias(self, entity: Entity, name: str) -> Alias:
        alias = Alias(entity_id=entity.id, name=name, name_key=fold_name(name))
        self.db.add(alias)
        self.db.flush()
        return alias


class SqlEmailQuota(EmailQuota):
    """Caps how many accounts may share one e-mail address."""

    def __init__(self, db: Session, limit: int):
        self.db = db
        self.limit = limit

    def within_limit(self, email: str) -> bool:
        if self.limit <= 0:
            return True
        count = self.db.query(func.count(Entity.id)).filter(
            Entity.kind == EntityKind.ACCOUNT,
            func.lower(Entity.email) == email.lower()
        ).scalar()
        return count < self.limit
