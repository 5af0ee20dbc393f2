"""Pydantic schemas for request/response validation."""
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from registry_guard.models.enums import EntityKind, Fault
from registry_guard.services.collaborators import Actor


class ActorSchema(BaseModel):
    """The acting identity, as established by the session layer in front of this service."""
    name: str = Field(..., min_length=1, max_length=64)
    account: Optional[str] = None
    privileges: List[str] = []
    source: str = ""

    def to_actor(self) -> Actor:
        return Actor(
            name=self.name,
            account=self.account,
            privileges=frozenset(self.privileges),
            source=self.source
        )


class CommandRequest(BaseModel):
    actor: ActorSchema
    args: List[Optional[str]] = Field(default_factory=list, max_length=3)


class CommandResponse(BaseModel):
    command: str
    success: bool
    messages: List[str]
    data: Dict[str, str] = {}


class EntityResponse(BaseModel):
    """
    Public view of an account or group.

    Only that the name is registered. Flags stay private: WAITAUTH in particular
    would tell anyone which accounts have a verification pending.
    """
    model_config = ConfigDict(from_attributes=True)

    name: str
    kind: EntityKind
    created_at: datetime


# Error response
class RefusalResponse(BaseModel):
    """Response when a command is refused."""
    command: str
    fault: Fault
    messages: List[str] = []
