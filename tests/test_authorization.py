"""
Tests for the authorization evaluator rules and their order.
"""
from registry_guard.models.enums import Privilege
from registry_guard.services.authorization import (
    FORCED_DROP,
    RENAME,
    RESET_PASSWORD,
    SELF_DROP,
    SELF_VERIFY,
    AuthorizationEvaluator,
    DecisionKind,
    DenyRule,
)
from registry_guard.services.collaborators import Actor
from registry_guard.services.storage import MarkRecord, RecordAdapter


def _evaluator(store, sessions):
    return AuthorizationEvaluator(store, sessions)


class TestProtectiveFlags:

    def test_operator_target_can_never_be_dropped(self, store, sessions, admin_actor):
        """
        INVARIANT: An operator-owned entity cannot be dropped, even by an administrator.
        """
        target = store.create_account("staff", password="pw", is_operator=True)
        decision = _evaluator(store, sessions).evaluate(admin_actor, target, FORCED_DROP)

        assert decision.kind == DecisionKind.DENY
        assert decision.rule == DenyRule.OPERATOR
        assert "services operator" in decision.reason

    def test_operator_rule_is_checked_before_session(self, store, sessions):
        """Rule 1 fires even when the actor is logged in as the target."""
        target = store.create_account("staff", password="pw", is_operator=True)
        actor = Actor(name="staff", account="staff")

        decision = _evaluator(store, sessions).evaluate(actor, target, SELF_DROP)

        assert decision.rule == DenyRule.OPERATOR

    def test_held_target_cannot_be_dropped(self, store, sessions, admin_actor):
        """
        INVARIANT: A HELD entity is never the target of a drop.
        """
        target = store.create_account("keeper", password="pw", held=True)
        actor = Actor(name="keeper", account="keeper")

        evaluator = _evaluator(store, sessions)
        assert evaluator.evaluate(actor, target, SELF_DROP).rule == DenyRule.HELD
        assert evaluator.evaluate(admin_actor, target, FORCED_DROP).rule == DenyRule.HELD

    def test_held_does_not_block_non_destructive_requirements(self, store, sessions):
        target = store.create_account("keeper", password="pw", held=True)
        actor = Actor(name="keeper", account="keeper")

        decision = _evaluator(store, sessions).evaluate(actor, target, SELF_VERIFY)

        assert decision.kind == DecisionKind.ALLOW


class TestMarkOverride:

    def test_mark_denies_and_names_setter(self, store, sessions, admin_actor):
        target = store.create_account("bob", password="pw")
        RecordAdapter(store.metadata(target)).save(MarkRecord(setter="carol"))

        decision = _evaluator(store, sessions).evaluate(admin_actor, target, RESET_PASSWORD)

        assert decision.kind == DecisionKind.DENY
        assert decision.rule == DenyRule.MARK
        assert decision.mark_setter == "carol"
        assert "marked by carol" in decision.reason

    def test_mark_privilege_overrides(self, store, sessions):
        target = store.create_account("bob", password="pw")
        RecordAdapter(store.metadata(target)).save(MarkRecord(setter="carol"))
        actor = Actor(name="oper", privileges=frozenset({Privilege.USER_ADMIN, Privilege.MARK}))

        decision = _evaluator(store, sessions).evaluate(actor, target, RESET_PASSWORD)

        assert decision.kind == DecisionKind.OVERRIDE
        assert decision.allowed
        assert "carol" in decision.reason

    def test_override_still_requires_the_named_privilege(self, store, sessions):
        """Holding user:mark alone does not grant the administrative operation."""
        target = store.create_account("bob", password="pw")
        RecordAdapter(store.metadata(target)).save(MarkRecord(setter="carol"))
        actor = Actor(name="marker", privileges=frozenset({Privilege.MARK}))

        decision = _evaluator(store, sessions).evaluate(actor, target, RESET_PASSWORD)

        assert decision.kind == DecisionKind.DENY
        assert decision.rule == DenyRule.PRIVILEGE

    def test_unmarked_target_is_plain_allow(self, store, sessions, admin_actor):
        target = store.create_account("bob", password="pw")

        decision = _evaluator(store, sessions).evaluate(admin_actor, target, RESET_PASSWORD)

        assert decision.kind == DecisionKind.ALLOW

    def test_operator_target_needs_general_admin_for_reset(self, store, sessions, admin_actor):
        target = store.create_account("staff", password="pw", is_operator=True)
        evaluator = _evaluator(store, sessions)

        assert evaluator.evaluate(admin_actor, target, RESET_PASSWORD).rule == DenyRule.OPERATOR_PRIVILEGE

        full_admin = Actor(
            name="root",
            privileges=frozenset({Privilege.USER_ADMIN, Privilege.GENERAL_ADMIN})
        )
        assert evaluator.evaluate(full_admin, target, RESET_PASSWORD).kind == DecisionKind.ALLOW


class TestSelfServiceAndOwnership:

    def test_self_service_requires_session_on_target(self, store, sessions, alice):
        """
        INVARIANT: Self-service needs the actor to be logged in as the target.
        """
        stranger = Actor(name="mallory", account=None)

        decision = _evaluator(store, sessions).evaluate(stranger, alice, SELF_DROP)

        assert decision.rule == DenyRule.SESSION
        assert "authenticate as alice" in decision.reason

    def test_session_on_another_account_is_not_enough(self, store, sessions, alice):
        store.create_account("mallory", password="pw")
        actor = Actor(name="mallory", account="mallory")

        decision = _evaluator(store, sessions).evaluate(actor, alice, SELF_VERIFY)

        assert decision.rule == DenyRule.SESSION

    def test_logged_in_owner_is_allowed(self, store, sessions, alice, alice_actor):
        assert _evaluator(store, sessions).evaluate(alice_actor, alice, SELF_DROP).kind == DecisionKind.ALLOW

    def test_group_ownership_requires_founder_flag(self, store, sessions, alice):
        member = store.create_account("member", password="pw")
        group = store.create_group("!devs", founder=alice)
        store.grant_group_access(group, member, "V")
        evaluator = _evaluator(store, sessions)

        assert evaluator.evaluate(Actor(name="alice", account="alice"), group, RENAME).allowed
        decision = evaluator.evaluate(Actor(name="member", account="member"), group, RENAME)
        assert decision.rule == DenyRule.OWNERSHIP

    def test_named_privilege_required(self, store, sessions, alice):
        decision = _evaluator(store, sessions).evaluate(Actor(name="nobody"), alice, FORCED_DROP)

        assert decision.rule == DenyRule.PRIVILEGE
        assert Privilege.USER_ADMIN in decision.reason
