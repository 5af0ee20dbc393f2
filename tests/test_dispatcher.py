"""
Tests for the command dispatcher: arity, access, transactions and locking.
"""
from sqlalchemy.exc import OperationalError

from conftest import ALICE_PASSWORD
from registry_guard.models.audit import AuditEvent, AuditEventType
from registry_guard.models.enums import Fault, PendingKind
from registry_guard.services.collaborators import Actor
from registry_guard.services.dispatcher import COMMANDS, KeyedLocks
from registry_guard.services.storage import check_credential, hash_credential


class TestDispatch:
    """Test exactly-one-result reporting."""

    def test_unknown_command(self, dispatcher, alice_actor):
        result = dispatcher.dispatch(alice_actor, "SHOUT", ["alice"])

        assert not result.success
        assert result.fault == Fault.INVALID_PARAMETERS
        assert len(result.messages) == 1

    def test_command_names_are_case_insensitive(self, dispatcher, alice, alice_actor):
        result = dispatcher.dispatch(alice_actor, "drop", ["alice", ALICE_PASSWORD])

        assert result.success
        assert result.command == "DROP"
        assert "challenge" in result.data

    def test_missing_parameters_include_syntax(self, dispatcher, alice_actor):
        result = dispatcher.dispatch(alice_actor, "DROP", ["alice"])

        assert result.fault == Fault.MISSING_PARAMETERS
        assert result.messages == ["Insufficient parameters for DROP.", "Syntax: DROP <account> <password>"]

    def test_empty_argument_counts_as_missing(self, dispatcher, alice_actor):
        result = dispatcher.dispatch(alice_actor, "DROP", ["alice", ""])

        assert result.fault == Fault.MISSING_PARAMETERS

    def test_too_many_parameters(self, dispatcher, admin_actor):
        result = dispatcher.dispatch(admin_actor, "FDROP", ["alice", "extra"])

        assert result.fault == Fault.INVALID_PARAMETERS

    def test_command_level_privilege(self, dispatcher, alice, alice_actor):
        for command, args in (("FDROP", ["alice"]), ("RESETPASS", ["alice"]), ("FVERIFY", ["REGISTER", "alice"])):
            result = dispatcher.dispatch(alice_actor, command, args)
            assert result.fault == Fault.FORBIDDEN, command

    def test_full_drop_round_trip(self, dispatcher, store, alice, alice_actor):
        first = dispatcher.dispatch(alice_actor, "DROP", ["alice", ALICE_PASSWORD])
        second = dispatcher.dispatch(alice_actor, "DROP", ["alice", ALICE_PASSWORD, first.data["challenge"]])

        assert second.success
        assert store.find_by_name("alice") is None

    def test_every_command_has_a_handler(self, workflow):
        for cmd in COMMANDS.values():
            assert callable(getattr(workflow, cmd.handler)), cmd.name


class TestTransactions:
    """Test what is kept on refusal and on storage failure."""

    def test_refusal_keeps_audit_event(self, dispatcher, db_session, alice, alice_actor):
        result = dispatcher.dispatch(alice_actor, "DROP", ["alice", "wrong"])
        db_session.rollback()

        assert result.fault == Fault.AUTHENTICATION_FAILED
        assert db_session.query(AuditEvent).filter(
            AuditEvent.event_type == AuditEventType.DROP_AUTH_FAILED
        ).count() == 1

    def test_quota_refusal_keeps_record_consumed(self, dispatcher, workflow, store, db_session, alice,
                                                 alice_actor):
        key = workflow.tracker.begin(alice, PendingKind.EMAILCHG, "shared@example.org")
        store.create_account("one", email="shared@example.org", password="pw")
        store.create_account("two", email="shared@example.org", password="pw")
        db_session.commit()

        result = dispatcher.dispatch(alice_actor, "VERIFY", ["EMAILCHG", "alice", key])
        db_session.rollback()

        assert result.fault == Fault.QUOTA_EXCEEDED
        assert not workflow.tracker.peek(alice, PendingKind.EMAILCHG)

    def test_storage_failure_rolls_back(self, dispatcher, store, db_session, alice, alice_actor, monkeypatch):
        def broken_audit(*args, **kwargs):
            raise OperationalError("INSERT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(dispatcher.workflow.audit, "record", broken_audit)

        result = dispatcher.dispatch(alice_actor, "ACCOUNTNAME", ["alice", "alicia"])

        assert not result.success
        assert result.fault == Fault.INTERNAL
        assert store.find_by_name("alice") is not None
        assert store.find_by_name("alicia") is None


class TestKeyedLocks:

    def test_lock_released_and_forgotten(self):
        locks = KeyedLocks()

        with locks.hold("alice"):
            with locks.hold("bob"):
                assert set(locks._locks) == {"alice", "bob"}

        assert locks._locks == {}
        assert locks._users == {}

    def test_lock_released_on_error(self):
        locks = KeyedLocks()

        try:
            with locks.hold("alice"):
                raise RuntimeError("boom")
        except RuntimeError:
            pass

        assert locks._locks == {}

    def test_dispatch_leaves_no_locks(self, dispatcher, alice):
        dispatcher.dispatch(Actor(name="nobody"), "DROP", ["alice", "pw"])

        assert dispatcher.locks._locks == {}


class RecordingLocks(KeyedLocks):
    def __init__(self):
        super().__init__()
        self.keys = []

    def hold(self, key):
        self.keys.append(key)
        return super().hold(key)


class TestEntityLocking:
    """Test that every spelling of an entity serializes on the same lock."""

    def test_alias_and_name_share_a_lock(self, dispatcher, store, db_session, alice, alice_actor, admin_actor):
        store.add_alias(alice, "alice_alt")
        db_session.commit()
        dispatcher.locks = RecordingLocks()

        dispatcher.dispatch(admin_actor, "RESETPASS", ["alice_alt"])
        dispatcher.dispatch(alice_actor, "DROP", ["ALICE", ALICE_PASSWORD])

        assert dispatcher.locks.keys == [f"entity:{alice.id}", f"entity:{alice.id}"]

    def test_lock_follows_entity_across_rename(self, dispatcher, store, alice, alice_actor):
        before = dispatcher.lock_key("alice")

        result = dispatcher.dispatch(alice_actor, "ACCOUNTNAME", ["alice", "alicia"])

        assert result.success
        assert dispatcher.lock_key("alicia") == before
        assert dispatcher.lock_key("alice") == "name:alice"

    def test_unregistered_name_locks_on_folded_name(self, dispatcher):
        assert dispatcher.lock_key("NoBody") == "name:nobody"

    def test_missing_target_has_no_lock_key(self, dispatcher):
        assert dispatcher.lock_key(None) == ""


class TestCredentialHashing:
    """Test stored credential format and unreadable hashes."""

    def test_hash_is_argon2id(self):
        stored = hash_credential("hunter2")

        assert stored.startswith("$argon2id$")
        assert check_credential("hunter2", stored)
        assert not check_credential("hunter3", stored)

    def test_unreadable_hash_never_matches(self):
        assert not check_credential("x", "garbage")
        assert not check_credential("x", "00ff:00ff")
        assert not check_credential("x", None)
        assert not check_credential("", hash_credential("x"))

    def test_malformed_stored_hash_refuses_drop(self, dispatcher, db_session, alice, alice_actor):
        alice.password_hash = "not-a-hash"
        db_session.commit()

        result = dispatcher.dispatch(alice_actor, "DROP", ["alice", "whatever"])

        assert not result.success
        assert result.fault == Fault.AUTHENTICATION_FAILED
