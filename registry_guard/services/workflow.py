"""
Command workflow enforcing the registry's authorization invariants.

Every state-changing command goes through here:
VALIDATE -> RESOLVE_TARGET -> AUTHORIZE -> (EXECUTE | ISSUE_CHALLENGE | REDEEM_CHALLENGE)
-> AUDIT_AND_NOTIFY.

Refusals are raised as CommandError subclasses; the dispatcher turns them
into failure reports.
"""
import re
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from registry_guard import config
from registry_guard.models.audit import AuditEventType
from registry_guard.models.domain import Entity
from registry_guard.models.enums import (
    VERIFIABLE_KINDS,
    AuditCategory,
    EntityFlag,
    EntityKind,
    Fault,
    PendingKind,
)
from registry_guard.services.audit import AuditSink
from registry_guard.services.authorization import (
    FORCED_DROP,
    FORCED_VERIFY,
    RENAME,
    RESET_PASSWORD,
    SELF_DROP,
    SELF_VERIFY,
    AuthorizationEvaluator,
    Decision,
    DenyRule,
    Requirement,
)
from registry_guard.services.challenge import ChallengeService
from registry_guard.services.collaborators import Actor, EmailQuota, Hooks, SessionDirectory
from registry_guard.services.confirmation import (
    ConfirmableOperation,
    DerivedChallengeConfirmation,
    PendingRecordConfirmation,
)
from registry_guard.services.errors import (
    AuthenticationFailed,
    Conflict,
    Forbidden,
    InvalidKey,
    InvalidParameters,
    MissingParameters,
    NotFound,
    NotPending,
    QuotaExceeded,
)
from registry_guard.services.pending import PendingOperationTracker
from registry_guard.services.storage import EntityStore, RecordAdapter, SendPassRecord

ACCOUNT_NAME_RE = re.compile(r"^[^\s!#][^\s]*$")
GROUP_NAME_RE = re.compile(r"^![^\s]+$")


@dataclass
class CommandResult:
    """Exactly one of these is produced per command invocation."""
    command: str
    success: bool
    messages: List[str] = field(default_factory=list)
    fault: Optional[Fault] = None
    data: Dict[str, str] = field(default_factory=dict)


def _missing(*values) -> bool:
    return any(not v for v in values)


class RegistryWorkflow:
    """Rename, drop, password reset and verification commands."""

    def __init__(
        self,
        store: EntityStore,
        sessions: SessionDirectory,
        hooks: Hooks,
        audit: AuditSink,
        quota: EmailQuota,
        challenges: Optional[ChallengeService] = None,
        tracker: Optional[PendingOperationTracker] = None,
        drop_confirmation: Optional[ConfirmableOperation] = None,
        service_name: str = config.SERVICE_NAME,
        nick_ownership: bool = config.NICK_OWNERSHIP,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.sessions = sessions
        self.hooks = hooks
        self.audit = audit
        self.quota = quota
        self.challenges = challenges or ChallengeService(clock=clock)
        self.tracker = tracker or PendingOperationTracker(store, self.challenges, clock=clock)
        self.drop_confirmation = drop_confirmation or DerivedChallengeConfirmation(self.challenges)
        self.evaluator = AuthorizationEvaluator(store, sessions)
        self.service_name = service_name
        self.nick_ownership = nick_ownership
        self.clock = clock

        self.verifications: Dict[PendingKind, ConfirmableOperation] = {
            kind: PendingRecordConfirmation(self.tracker, kind) for kind in VERIFIABLE_KINDS
        }
        self._verify_handlers = {
            PendingKind.REGISTER: self._verify_register,
            PendingKind.EMAILCHG: self._verify_email_change,
        }
        unhandled = set(VERIFIABLE_KINDS) - set(self._verify_handlers)
        if unhandled:
            raise RuntimeError(f"no verify handler for: {sorted(k.value for k in unhandled)}")

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    def _authorize(self, actor: Actor, target: Entity, requirement: Requirement,
                   denied_message: Optional[str] = None) -> Decision:
        decision = self.evaluator.evaluate(actor, target, requirement)
        if not decision.allowed:
            message = denied_message if decision.rule == DenyRule.SESSION and denied_message else decision.reason
            raise Forbidden(message)
        return decision

    def _find_account(self, name: str, ungroup_command: Optional[str] = None) -> Entity:
        account = self.store.find_by_name(name, EntityKind.ACCOUNT)
        if account is not None:
            return account
        if ungroup_command and self.nick_ownership and self.store.find_by_alias(name) is not None:
            raise NotFound(f"{name} is a grouped nick, use {ungroup_command} to remove it.")
        raise NotFound(f"{name} is not registered.")

    def _parse_operation(self, op: str, command: str, guidance: str) -> PendingKind:
        for kind in VERIFIABLE_KINDS:
            if op.upper() == kind.value:
                return kind
        raise InvalidParameters(f"Invalid operation specified for {command}.", [guidance])

    def _drop_notify(self, entity: Entity, held_names: List[str]) -> None:
        self.hooks.on_entity_dropped(entity)
        if self.nick_ownership:
            for held in held_names:
                self.hooks.hold_name(held)

    # ------------------------------------------------------------------
    # Rename
    # ------------------------------------------------------------------

    def rename_group(self, actor: Actor, old_name: Optional[str], new_name: Optional[str]) -> CommandResult:
        """SET GROUPNAME !old !new"""
        return self._rename(actor, EntityKind.GROUP, old_name, new_name)

    def rename_account(self, actor: Actor, old_name: Optional[str], new_name: Optional[str]) -> CommandResult:
        """SET ACCOUNTNAME old new"""
        return self._rename(actor, EntityKind.ACCOUNT, old_name, new_name)

    def _rename(self, actor, kind, old_name, new_name) -> CommandResult:
        if kind == EntityKind.GROUP:
            command, pattern, noun = "GROUPNAME", GROUP_NAME_RE, "group"
        else:
            command, pattern, noun = "ACCOUNTNAME", ACCOUNT_NAME_RE, "account"
        syntax = f"Syntax: SET {command} <oldname> <newname>"

        if _missing(old_name, new_name):
            raise MissingParameters(f"Insufficient parameters for {command}.", [syntax])

        if not pattern.match(old_name) or not pattern.match(new_name):
            raise InvalidParameters(f"Invalid parameters for {command}.", [syntax])

        entity = self.store.find_by_name(old_name, kind)
        if entity is None:
            raise NotFound(f"The {noun} {old_name} does not exist.")

        self._authorize(actor, entity, RENAME)

        if entity.name == new_name:
            raise Conflict(f"The {noun} name is already set to {new_name}.")

        # Case-only renames resolve back to the same entity and are allowed
        existing = self.store.find_by_name(new_name)
        if existing is not None and existing.id != entity.id:
            raise Conflict(f"The {noun} {new_name} already exists.")
        if kind == EntityKind.ACCOUNT:
            owner = self.store.find_by_alias(new_name)
            if owner is not None and owner.id != entity.id:
                raise Conflict(f"The nick {new_name} is grouped to another account.")

        previous = entity.name
        self.store.rename(entity, new_name)

        event_type = AuditEventType.GROUP_RENAMED if kind == EntityKind.GROUP else AuditEventType.ACCOUNT_RENAMED
        self.audit.record(
            AuditCategory.REGISTER,
            event_type,
            actor.name,
            f"SET:{command}: {previous} to {new_name}",
            entity_name=new_name
        )
        return CommandResult(
            command=command,
            success=True,
            messages=[f"The {noun} {previous} has been renamed to {new_name}."]
        )

    # ------------------------------------------------------------------
    # Drop
    # ------------------------------------------------------------------

    def drop(self, actor: Actor, name: Optional[str], password: Optional[str],
             key: Optional[str] = None) -> CommandResult:
        """
        DROP <account> <password> [key]

        Without a key the actor gets the exact confirmation command back; with
        a key the account is destroyed if the key matches.
        """
        if _missing(name, password):
            raise MissingParameters("Insufficient parameters for DROP.", ["Syntax: DROP <account> <password>"])

        account = self._find_account(name, ungroup_command="UNGROUP")

        if self.store.has_flag(account, EntityFlag.FROZEN):
            raise Forbidden(f"You cannot identify to {account.name} because the nickname has been frozen.")

        self._authorize(actor, account, SELF_DROP)

        if not self.store.verify_credential(account, password):
            self.audit.record(
                AuditCategory.REGISTER,
                AuditEventType.DROP_AUTH_FAILED,
                actor.name,
                f"failed DROP {account.name} (invalid password)",
                entity_name=account.name
            )
            self.hooks.on_bad_password(actor, account)
            raise AuthenticationFailed(f"Authentication failed. Invalid password for {account.name}.")

        aliases = self.store.aliases(account) if self.nick_ownership else []
        if aliases:
            raise Conflict(
                f"Account {account.name} has {len(aliases)} other nick(s) grouped to it, remove those first."
            )

        if not key:
            challenge = self.drop_confirmation.issue(actor, account)
            full_command = f"/msg {self.service_name} DROP {account.name} {password} {challenge}"
            return CommandResult(
                command="DROP",
                success=True,
                messages=[
                    f"This is a friendly reminder that you are about to destroy the account {account.name}.",
                    "To avoid accidental use of this command, this operation has to be confirmed. "
                    f"Please confirm by replying with {full_command}",
                ],
                data={"challenge": challenge, "confirmation_command": full_command}
            )

        self.drop_confirmation.confirm(actor, account, key)

        dropped_name = account.name
        self.audit.record(
            AuditCategory.REGISTER,
            AuditEventType.ACCOUNT_DROPPED,
            actor.name,
            f"DROP: {dropped_name}",
            entity_name=dropped_name
        )
        self.store.destroy(account)
        self._drop_notify(account, [dropped_name])

        return CommandResult(
            command="DROP",
            success=True,
            messages=[f"The account {dropped_name} has been dropped."]
        )

    def force_drop(self, actor: Actor, name: Optional[str]) -> CommandResult:
        """FDROP <account>"""
        if _missing(name):
            raise MissingParameters("Insufficient parameters for FDROP.", ["Syntax: FDROP <account>"])

        account = self._find_account(name, ungroup_command="FUNGROUP")
        self._authorize(actor, account, FORCED_DROP)

        dropped_name = account.name
        held_names = [dropped_name] + self.store.aliases(account)

        self.hooks.wallops(f"{actor.name} dropped the account {dropped_name}")
        self.audit.record(
            AuditCategory.ADMIN,
            AuditEventType.ACCOUNT_FORCE_DROPPED,
            actor.name,
            f"FDROP: {dropped_name}",
            entity_name=dropped_name
        )
        self.store.destroy(account)
        self._drop_notify(account, held_names)

        return CommandResult(
            command="FDROP",
            success=True,
            messages=[f"The account {dropped_name} has been dropped."]
        )

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def reset_password(self, actor: Actor, name: Optional[str]) -> CommandResult:
        """
        RESETPASS <account>

        The new password is only ever shown in this reply.
        """
        if _missing(name):
            raise MissingParameters("Insufficient parameters for RESETPASS.", ["Syntax: RESETPASS <account>"])

        account = self.store.find_by_name_or_alias(name)
        if account is None:
            raise NotFound(f"{name} is not registered.")

        decision = self.evaluator.evaluate(actor, account, RESET_PASSWORD)
        if not decision.allowed:
            if decision.rule == DenyRule.MARK:
                self.audit.record(
                    AuditCategory.ADMIN,
                    AuditEventType.PASSWORD_RESET_REFUSED,
                    actor.name,
                    f"failed RESETPASS {account.name} (marked by {decision.mark_setter})",
                    entity_name=account.name
                )
            elif decision.rule == DenyRule.OPERATOR_PRIVILEGE:
                self.audit.record(
                    AuditCategory.ADMIN,
                    AuditEventType.PASSWORD_RESET_REFUSED,
                    actor.name,
                    f"failed RESETPASS {account.name} (is SOPER)",
                    entity_name=account.name
                )
            raise Forbidden(decision.reason)

        new_password = self.challenges.generate_password()
        messages = []

        if decision.overridden:
            self.hooks.wallops(
                f"{actor.name} reset the password for the MARKED account {account.name}."
            )
            summary = f"RESETPASS: {account.name} (overriding mark by {decision.mark_setter})"
            messages.append(decision.reason)
        else:
            self.hooks.wallops(f"{actor.name} reset the password for the account {account.name}")
            summary = f"RESETPASS: {account.name}"
        self.audit.record(
            AuditCategory.ADMIN,
            AuditEventType.PASSWORD_RESET,
            actor.name,
            summary,
            entity_name=account.name
        )

        # A self-service reset started earlier must not complete on the old context
        self.tracker.discard(account, PendingKind.SETPASS)
        RecordAdapter(self.store.metadata(account)).save(
            SendPassRecord(sender=actor.name, timestamp=int(self.clock()))
        )
        self.store.set_credential(account, new_password)
        messages.append(f"The password for {account.name} has been changed to {new_password}.")

        if self.store.has_flag(account, EntityFlag.NOPASSWORD):
            self.store.set_flag(account, EntityFlag.NOPASSWORD, False)
            messages.append(f"The NOPASSWORD flag has been removed for account {account.name}.")

        return CommandResult(
            command="RESETPASS",
            success=True,
            messages=messages,
            data={"password": new_password}
        )

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(self, actor: Actor, op: Optional[str], name: Optional[str],
               key: Optional[str]) -> CommandResult:
        """VERIFY <operation> <account> <key>"""
        if _missing(op, name, key):
            raise MissingParameters(
                "Insufficient parameters for VERIFY.",
                ["Syntax: VERIFY <operation> <account> <key>"]
            )

        kind = self._parse_operation(op, "VERIFY", "Please double-check your verification e-mail.")
        account = self._find_account(name)

        # Logging in first keeps others from probing pending verifications
        self._authorize(
            actor, account, SELF_VERIFY,
            denied_message="Please log in before attempting to verify your registration."
        )
        return self._verify_handlers[kind](actor, account, key)

    def force_verify(self, actor: Actor, op: Optional[str], name: Optional[str]) -> CommandResult:
        """FVERIFY <operation> <account>"""
        if _missing(op, name):
            raise MissingParameters(
                "Insufficient parameters for FVERIFY.",
                ["Syntax: FVERIFY <operation> <account>"]
            )

        kind = self._parse_operation(op, "FVERIFY", "Valid operations are REGISTER and EMAILCHG.")
        account = self.store.find_by_name_or_alias(name)
        if account is None:
            raise NotFound(f"{name} is not registered.")

        self._authorize(actor, account, FORCED_VERIFY)
        return self._verify_handlers[kind](actor, account, None)

    def _redeem(self, actor: Actor, account: Entity, kind: PendingKind, key: Optional[str]) -> Optional[str]:
        """Consume the pending record; ``key`` None means a forced verification."""
        if key is None:
            return self.tracker.take(account, kind)
        try:
            return self.verifications[kind].confirm(actor, account, key)
        except InvalidKey:
            self.audit.record(
                AuditCategory.SET,
                AuditEventType.VERIFICATION_FAILED,
                actor.name,
                f"failed VERIFY {kind.value} {actor.name}, {account.email} (invalid key)",
                entity_name=account.name
            )
            raise

    def _verify_register(self, actor: Actor, account: Entity, key: Optional[str]) -> CommandResult:
        forced = key is None
        if not self.store.has_flag(account, EntityFlag.WAITAUTH) or not self.tracker.peek(account, PendingKind.REGISTER):
            raise NotPending(f"{account.name} is not awaiting authorization.")

        self._redeem(actor, account, PendingKind.REGISTER, key)
        self.store.set_flag(account, EntityFlag.WAITAUTH, False)

        if forced:
            self.audit.record(
                AuditCategory.REGISTER,
                AuditEventType.REGISTRATION_VERIFIED,
                actor.name,
                f"FVERIFY:REGISTER: {account.name} (email: {account.email})",
                entity_name=account.name
            )
        else:
            self.audit.record(
                AuditCategory.SET,
                AuditEventType.REGISTRATION_VERIFIED,
                actor.name,
                f"VERIFY:REGISTER: {actor.name} (email: {account.email})",
                entity_name=account.name
            )

        for session_name in self.sessions.logins(account):
            self.hooks.on_login(session_name, account)
        self.hooks.on_registration_verified(account, actor)

        messages = [f"{account.name} has now been verified."]
        if not forced:
            messages.append(
                "Thank you for verifying your e-mail address! You have taken steps in "
                "ensuring that your registrations are not exploited."
            )
        return CommandResult(command="FVERIFY" if forced else "VERIFY", success=True, messages=messages)

    def _verify_email_change(self, actor: Actor, account: Entity, key: Optional[str]) -> CommandResult:
        forced = key is None
        new_email = self._redeem(actor, account, PendingKind.EMAILCHG, key)

        # Checked at redemption so that several unverified changes to one
        # address cannot all be verified afterwards. The record stays consumed.
        if not forced and not self.quota.within_limit(new_email):
            raise QuotaExceeded(f"{new_email} has too many accounts registered.")

        self.store.set_email(account, new_email)
        self.audit.record(
            AuditCategory.REGISTER if forced else AuditCategory.SET,
            AuditEventType.EMAIL_CHANGE_VERIFIED,
            actor.name,
            f"{'FVERIFY' if forced else 'VERIFY'}:EMAILCHG: "
            f"{account.name if forced else actor.name} (email: {new_email})",
            entity_name=account.name
        )
        return CommandResult(
            command="FVERIFY" if forced else "VERIFY",
            success=True,
            messages=[f"{new_email} has now been verified."]
        )
