"""
Tests for RESETPASS, including the mark override path.
"""
import pytest

from registry_guard.models.audit import AuditEvent, AuditEventType
from registry_guard.models.enums import AuditCategory, EntityFlag, PendingKind, Privilege
from registry_guard.services.collaborators import Actor
from registry_guard.services.errors import Forbidden, MissingParameters, NotFound
from registry_guard.services.storage import MarkRecord, RecordAdapter, SendPassRecord

MARK_ADMIN = Actor(name="oper", privileges=frozenset({Privilege.USER_ADMIN, Privilege.MARK}))


@pytest.fixture
def bob(store, db_session):
    account = store.create_account("bob", email="bob@example.org", password="old-bob-pass")
    db_session.commit()
    return account


def _mark(store, entity, setter="carol"):
    RecordAdapter(store.metadata(entity)).save(MarkRecord(setter=setter, reason="abuse", timestamp=1))


def _admin_events(db_session):
    return db_session.query(AuditEvent).filter(AuditEvent.category == AuditCategory.ADMIN).all()


class TestResetPassword:
    """Test the ordinary reset."""

    def test_reset_sets_new_password(self, workflow, store, hooks, db_session, bob, admin_actor):
        result = workflow.reset_password(admin_actor, "bob")

        new_password = result.data["password"]
        assert result.success
        assert len(new_password) == 12
        assert store.verify_credential(bob, new_password)
        assert not store.verify_credential(bob, "old-bob-pass")
        assert f"The password for bob has been changed to {new_password}." in result.messages
        assert hooks.of("wallops") == [("wallops", "oper reset the password for the account bob")]

        events = _admin_events(db_session)
        assert len(events) == 1
        assert events[0].summary == "RESETPASS: bob"

    def test_reset_records_sender(self, workflow, store, clock, bob, admin_actor):
        workflow.reset_password(admin_actor, "bob")

        record = SendPassRecord.from_metadata(store.metadata(bob).get)
        assert record.sender == "oper"
        assert record.timestamp == int(clock())

    def test_reset_discards_pending_setpass(self, workflow, bob, admin_actor):
        workflow.tracker.begin(bob, PendingKind.SETPASS)

        workflow.reset_password(admin_actor, "bob")

        assert not workflow.tracker.peek(bob, PendingKind.SETPASS)

    def test_reset_clears_nopassword(self, workflow, store, admin_actor):
        target = store.create_account("nopw", email="nopw@example.org")
        assert store.has_flag(target, EntityFlag.NOPASSWORD)

        result = workflow.reset_password(admin_actor, "nopw")

        assert not store.has_flag(target, EntityFlag.NOPASSWORD)
        assert result.messages[-1] == "The NOPASSWORD flag has been removed for account nopw."

    def test_reset_resolves_grouped_nick(self, workflow, store, bob, admin_actor):
        store.add_alias(bob, "bobby")

        result = workflow.reset_password(admin_actor, "bobby")

        assert store.verify_credential(bob, result.data["password"])

    def test_requires_user_admin(self, workflow, bob):
        with pytest.raises(Forbidden):
            workflow.reset_password(Actor(name="bob", account="bob"), "bob")

    def test_operator_target_needs_general_admin(self, workflow, store, db_session, admin_actor):
        store.create_account("staff", password="pw", is_operator=True)

        with pytest.raises(Forbidden):
            workflow.reset_password(admin_actor, "staff")

        events = _admin_events(db_session)
        assert [e.summary for e in events] == ["failed RESETPASS staff (is SOPER)"]

    def test_missing_and_unknown(self, workflow, admin_actor):
        with pytest.raises(MissingParameters):
            workflow.reset_password(admin_actor, None)
        with pytest.raises(NotFound):
            workflow.reset_password(admin_actor, "nobody")


class TestMarkedReset:
    """Test RESETPASS against a marked account."""

    def test_mark_blocks_reset_without_mark_privilege(self, workflow, store, db_session, bob, admin_actor):
        """
        INVARIANT: A marked account cannot be reset without user:mark; the setter is named.
        """
        _mark(store, bob)

        with pytest.raises(Forbidden) as exc:
            workflow.reset_password(admin_actor, "bob")

        assert "marked by carol" in exc.value.message
        assert store.verify_credential(bob, "old-bob-pass")

        events = _admin_events(db_session)
        assert len(events) == 1
        assert events[0].event_type == AuditEventType.PASSWORD_RESET_REFUSED
        assert events[0].summary == "failed RESETPASS bob (marked by carol)"

    def test_mark_privilege_overrides_with_one_audit_event(self, workflow, store, hooks, db_session, bob):
        """
        INVARIANT: An override succeeds, says so to the actor, and leaves exactly one admin audit event.
        """
        _mark(store, bob)

        result = workflow.reset_password(MARK_ADMIN, "bob")

        assert result.success
        assert result.messages[0] == "Overriding MARK placed by carol on the account bob."
        assert store.verify_credential(bob, result.data["password"])

        events = _admin_events(db_session)
        assert len(events) == 1
        assert events[0].event_type == AuditEventType.PASSWORD_RESET
        assert "overriding mark by carol" in events[0].summary

        wallops = hooks.of("wallops")
        assert len(wallops) == 1
        assert "MARKED" in wallops[0][1]

    def test_override_does_not_bypass_operator_rule(self, workflow, store):
        target = store.create_account("staff", password="pw", is_operator=True)
        _mark(store, target)

        with pytest.raises(Forbidden):
            workflow.reset_password(MARK_ADMIN, "staff")

    def test_mark_survives_reset(self, workflow, store, bob):
        _mark(store, bob)

        workflow.reset_password(MARK_ADMIN, "bob")

        assert RecordAdapter(store.metadata(bob)).load_mark().setter == "carol"
