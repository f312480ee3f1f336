"""Tests for per-wallet spend caps and allow/deny lists."""

import pytest
from eth_account import Account

from custodian.audit import AuditLog
from custodian.errors import NotFoundError, StorageError, ValidationError
from custodian.money import native_to_wei
from custodian.security import SecuritySettings


@pytest.fixture
def security(audit, engine, clock):
    return SecuritySettings(audit, policy=engine, clock=clock)


@pytest.fixture
def wallet():
    return Account.create().address


class TestSpendCaps:
    def test_add_and_list(self, security, wallet):
        cap = security.add_spend_cap(wallet, "daily", "1.5")
        assert cap.limit == native_to_wei("1.5")
        assert cap.current == 0
        assert cap.to_dict()["limit"] == "1.5"
        assert security.list_spend_caps(wallet.lower()) == [cap]

    def test_invalid_cap_type(self, security, wallet):
        with pytest.raises(ValidationError):
            security.add_spend_cap(wallet, "hourly", "1")

    def test_non_positive_limit(self, security, wallet):
        with pytest.raises(ValidationError):
            security.add_spend_cap(wallet, "daily", "0")

    def test_invalid_wallet(self, security):
        with pytest.raises(ValidationError):
            security.add_spend_cap("wallet-1", "daily", "1")

    def test_remove(self, security, wallet):
        cap = security.add_spend_cap(wallet, "weekly", "1")
        assert security.remove_spend_cap(wallet, cap.id) == cap
        assert security.list_spend_caps(wallet) == []
        with pytest.raises(NotFoundError):
            security.remove_spend_cap(wallet, cap.id)

    def test_record_spend_skips_per_transaction_caps(self, security, wallet):
        security.add_spend_cap(wallet, "per_transaction", "0.5")
        security.add_spend_cap(wallet, "daily", "1")
        caps = security.record_spend(wallet, native_to_wei("0.3"))
        assert [c.current for c in caps] == [0, native_to_wei("0.3")]


class TestLists:
    def test_add_entry_is_audited(self, security, audit, wallet, recipient):
        entry = security.add_list_entry(wallet, recipient, "deny", reason="scam", user_id="alice")
        assert entry.address == recipient.lower()
        logged = audit.get_audit_trail(user_id="alice", action_type="ADDRESS_BLOCK")
        assert logged[0].details["changes"]["action"] == "add"
        assert logged[0].details["changes"]["reason"] == "scam"

    def test_duplicate_entry_rejected(self, security, wallet, recipient):
        security.add_list_entry(wallet, recipient, "allow")
        with pytest.raises(ValidationError):
            security.add_list_entry(wallet, recipient.lower(), "allow")

    def test_invalid_entries(self, security, wallet, recipient):
        with pytest.raises(ValidationError):
            security.add_list_entry(wallet, recipient, "maybe")
        with pytest.raises(ValidationError):
            security.add_list_entry(wallet, "0x123", "allow")

    def test_list_filter_and_remove(self, security, audit, wallet, recipient):
        allow = security.add_list_entry(wallet, recipient, "allow")
        security.add_list_entry(wallet, Account.create().address, "deny")
        assert security.list_entries(wallet, "allow") == [allow]
        assert len(security.list_entries(wallet)) == 2

        security.remove_list_entry(wallet, allow.id, user_id="alice")
        assert security.list_entries(wallet, "allow") == []
        removed = audit.get_audit_trail(user_id="alice", action_type="ADDRESS_ALLOW")
        assert removed[0].details["changes"]["action"] == "remove"
        with pytest.raises(NotFoundError):
            security.remove_list_entry(wallet, allow.id)

    def test_unaudited_add_is_undone(self, flaky, clock, wallet, recipient):
        security = SecuritySettings(AuditLog(flaky, clock=clock), clock=clock)
        flaky.failing = True
        with pytest.raises(StorageError):
            security.add_list_entry(wallet, recipient, "deny")
        assert security.list_entries(wallet) == []
        assert security.verify_transaction(wallet, recipient, "0.1")["allowed"] is True

    def test_unaudited_remove_is_undone(self, flaky, clock, wallet, recipient):
        security = SecuritySettings(AuditLog(flaky, clock=clock), clock=clock)
        first = security.add_list_entry(wallet, recipient, "deny")
        second = security.add_list_entry(wallet, Account.create().address, "deny")
        flaky.failing = True
        with pytest.raises(StorageError):
            security.remove_list_entry(wallet, first.id)
        assert security.list_entries(wallet) == [first, second]


class TestVerifyTransaction:
    def test_clean(self, security, wallet, recipient):
        assert security.verify_transaction(wallet, recipient, "0.1") == {
            "allowed": True,
            "warnings": [],
            "risk_score": 0,
        }

    def test_denied_recipient_blocks(self, security, wallet, recipient):
        security.add_list_entry(wallet, recipient, "deny")
        result = security.verify_transaction(wallet, recipient, "0.1")
        assert result["allowed"] is False
        assert result["risk_score"] == 100
        assert result["warnings"][0]["severity"] == "critical"

    def test_not_allowlisted_warns(self, security, wallet, recipient):
        security.add_list_entry(wallet, Account.create().address, "allow")
        result = security.verify_transaction(wallet, recipient, "0.1")
        assert result["allowed"] is True
        assert result["risk_score"] == 10
        assert result["warnings"][0]["type"] == "not_allowlisted"

    def test_cap_exceeded_warns(self, security, wallet, recipient):
        security.add_spend_cap(wallet, "per_transaction", "0.5")
        security.add_spend_cap(wallet, "daily", "1")
        security.record_spend(wallet, native_to_wei("0.8"))
        result = security.verify_transaction(wallet, recipient, "0.6")
        assert result["allowed"] is True
        assert result["risk_score"] == 40
        assert {w["type"] for w in result["warnings"]} == {"spend_cap_exceeded"}
        assert len(result["warnings"]) == 2


def test_apply_lists_to_policy(security, engine, wallet, recipient):
    blocked = Account.create().address
    security.add_list_entry(wallet, recipient, "allow")
    security.add_list_entry(wallet, blocked, "deny")

    policy = security.apply_lists_to_policy(wallet, "alice")

    assert policy.allowed_addresses == (recipient.lower(),)
    assert policy.denied_addresses == (blocked.lower(),)
    assert engine.get_policy("alice") == policy


def test_apply_lists_requires_policy_engine(audit, clock, wallet):
    security = SecuritySettings(audit, clock=clock)
    with pytest.raises(ValidationError):
        security.apply_lists_to_policy(wallet, "alice")
