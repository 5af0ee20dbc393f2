"""
Command dispatcher.

Maps command names to workflow handlers, checks arity and command-level
access, serializes commands per target entity, and is the single place where
refusals and storage faults become failure reports.
"""
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from registry_guard import config
from registry_guard.models.domain import fold_name
from registry_guard.models.enums import Fault, Privilege
from registry_guard.services.audit import SqlAuditSink
from registry_guard.services.challenge import ChallengeService, FailureLimiter
from registry_guard.services.collaborators import Actor, Hooks, LoginRegistry, StoreSessionDirectory
from registry_guard.services.confirmation import DerivedChallengeConfirmation
from registry_guard.services.errors import CommandError, Forbidden, InvalidParameters
from registry_guard.services.storage import EntityStore, SqlEmailQuota, SqlEntityStore
from registry_guard.services.workflow import CommandResult, RegistryWorkflow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandSpec:
    name: str
    handler: str
    max_args: int
    syntax: str
    target_arg: int = 0
    access: Optional[str] = None


COMMANDS: Dict[str, CommandSpec] = {
    cmd.name: cmd for cmd in (
        CommandSpec("GROUPNAME", "rename_group", 2, "SET GROUPNAME <oldname> <newname>"),
        CommandSpec("ACCOUNTNAME", "rename_account", 2, "SET ACCOUNTNAME <oldname> <newname>"),
        CommandSpec("DROP", "drop", 3, "DROP <account> <password>"),
        CommandSpec("FDROP", "force_drop", 1, "FDROP <account>", access=Privilege.USER_ADMIN),
        CommandSpec("RESETPASS", "reset_password", 1, "RESETPASS <account>", access=Privilege.USER_ADMIN),
        CommandSpec("VERIFY", "verify", 3, "VERIFY <operation> <account> <key>", target_arg=1),
        CommandSpec("FVERIFY", "force_verify", 2, "FVERIFY <operation> <account>", target_arg=1,
                    access=Privilege.USER_ADMIN),
    )
}


class KeyedLocks:
    """One lock per key, dropped again once nobody holds or waits for it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._users: Dict[str, int] = {}

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] = self._users.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[key] -= 1
                if self._users[key] == 0:
                    del self._users[key]
                    del self._locks[key]


class CommandDispatcher:
    def __init__(self, workflow: RegistryWorkflow, store: EntityStore, locks: Optional[KeyedLocks] = None):
        self.workflow = workflow
        self.store = store
        self.locks = locks or KeyedLocks()

    def dispatch(self, actor: Actor, command: str, args: Sequence[Optional[str]]) -> CommandResult:
        name = (command or "").upper()
        cmd = COMMANDS.get(name)
        if cmd is None:
            return CommandResult(
                command=name,
                success=False,
                fault=Fault.INVALID_PARAMETERS,
                messages=[f"Invalid command. Known commands: {', '.join(sorted(COMMANDS))}."]
            )

        params: List[Optional[str]] = [a if a else None for a in args]
        params += [None] * (cmd.max_args - len(params))
        try:
            with self._holding(params[cmd.target_arg]):
                return self._run(actor, cmd, params)
        except SQLAlchemyError:
            logger.exception("storage failure in %s", cmd.name)
            self.store.rollback()
            return CommandResult(
                command=cmd.name,
                success=False,
                fault=Fault.INTERNAL,
                messages=["An internal error occurred; the command was not applied."]
            )

    def lock_key(self, target: Optional[str]) -> str:
        """The resolved entity when the name or a grouped nick is registered, else the folded name."""
        if not target:
            return ""
        entity = self.store.find_by_name(target) or self.store.find_by_alias(target)
        if entity is not None:
            return f"entity:{entity.id}"
        return f"name:{fold_name(target)}"

    @contextmanager
    def _holding(self, target: Optional[str]):
        key = self.lock_key(target)
        while True:
            with self.locks.hold(key):
                # A rename or drop may have moved the name while we waited
                current = self.lock_key(target)
                if current == key:
                    yield
                    return
            key = current

    def _run(self, actor: Actor, cmd: CommandSpec, params: List[Optional[str]]) -> CommandResult:
        try:
            if len(params) > cmd.max_args:
                raise InvalidParameters(f"Too many parameters for {cmd.name}.", [f"Syntax: {cmd.syntax}"])
            if cmd.access and not actor.has_priv(cmd.access):
                raise Forbidden(f"You do not have the {cmd.access} privilege.")

            result = getattr(self.workflow, cmd.handler)(actor, *params)
        except CommandError as e:
            # Refusals keep their audit events and consumed pending records
            self.store.commit()
            logger.info(
                "%s refused for %s: %s",
                cmd.name,
                actor.name,
                e.message,
                extra={"extra_fields": {"command": cmd.name, "fault": e.fault.value}}
            )
            return CommandResult(command=cmd.name, success=False, fault=e.fault, messages=e.messages)

        self.store.commit()
        logger.info("%s succeeded for %s", cmd.name, actor.name,
                    extra={"extra_fields": {"command": cmd.name}})
        return result


def build_dispatcher(
    db: Session,
    logins: Optional[LoginRegistry] = None,
    hooks: Optional[Hooks] = None,
    challenges: Optional[ChallengeService] = None,
    limiter: Optional[FailureLimiter] = None,
    locks: Optional[KeyedLocks] = None,
) -> CommandDispatcher:
    """Wire the SQLAlchemy collaborators around one database session."""
    store = SqlEntityStore(db)
    challenges = challenges or ChallengeService()
    workflow = RegistryWorkflow(
        store=store,
        sessions=StoreSessionDirectory(store, logins or LoginRegistry()),
        hooks=hooks or Hooks(),
        audit=SqlAuditSink(db),
        quota=SqlEmailQuota(db, config.MAX_ACCOUNTS_PER_EMAIL),
        challenges=challenges,
        drop_confirmation=DerivedChallengeConfirmation(challenges, limiter),
        clock=challenges.clock,
    )
    return CommandDispatcher(workflow, store, locks)
