"""Tests for the append-only audit log."""

import csv
import io
import json

import pytest

from custodian.audit import (
    AUDIT_COLLECTION,
    CSV_DISPLAY_HEADERS,
    CSV_FIELDS,
    ActionType,
    AuditEntry,
    AuditLog,
    entries_to_display_csv,
)
from custodian.errors import StorageError, ValidationError

from conftest import FailingMemory


def _transfer(audit, tx_hash="0xabc", user_id="alice", status="success", amount="1000"):
    return audit.log_transaction(
        tx_hash,
        {"action": "transfer", "from": "0xfrom", "to": "0xto", "amount": amount, "status": status},
        user_id,
    )


class TestLogAction:
    def test_entry_shape(self, audit, memory):
        entry = audit.log_action(
            "POLICY_CHANGE",
            "max_single_tx",
            "alice",
            {"field": "max_single_tx", "old_value": "1", "new_value": "2"},
            {"agent_id": "agent-1", "ip_address": "10.0.0.1", "change_type": "policy_update"},
        )
        assert entry.entity_type == "POLICY"
        assert entry.status == "SUCCESS"
        assert entry.agent_id == "agent-1"
        assert entry.ip_address == "10.0.0.1"
        assert entry.user_agent == "unknown"
        assert entry.timestamp == "2024-06-15T12:00:00.000Z"
        assert entry.details == {
            "schema_version": 1,
            "kind": "policy_change",
            "changes": {"field": "max_single_tx", "old_value": "1", "new_value": "2"},
            "context": {"change_type": "policy_update"},
        }
        stored = memory.query_memory(AUDIT_COLLECTION)
        assert stored == [entry.to_dict()]

    @pytest.mark.parametrize("args", [
        ("", "e", "alice"),
        ("AUTH", "", "alice"),
        ("AUTH", "e", ""),
    ])
    def test_required_arguments(self, audit, args):
        with pytest.raises(ValidationError):
            audit.log_action(*args, {"event_type": "login"})

    def test_missing_required_detail(self, audit):
        with pytest.raises(ValidationError, match="old_value"):
            audit.log_action("POLICY_CHANGE", "p", "alice", {"field": "x", "new_value": 1})

    def test_unknown_detail_rejected(self, audit):
        with pytest.raises(ValidationError, match="unknown field"):
            audit.log_action("AUTH", "alice", "alice", {"event_type": "login", "password": "x"})

    def test_unlisted_action_type_accepts_any_details(self, audit):
        entry = audit.log_action("CUSTOM_EVENT", "thing", "alice", {"anything": 1})
        assert entry.entity_type == "UNKNOWN"
        assert entry.details["kind"] == "generic"

    def test_invalid_status(self, audit):
        with pytest.raises(ValidationError):
            audit.log_action("CUSTOM_EVENT", "thing", "alice", {}, {"status": "MAYBE"})

    def test_store_failure_is_fatal(self, clock):
        audit = AuditLog(FailingMemory(), clock=clock)
        with pytest.raises(StorageError):
            _transfer(audit)
        assert audit.get_audit_trail() == []

    def test_default_agent_id(self, memory, clock):
        audit = AuditLog(memory, clock=clock, default_agent_id="agent-7")
        entry = audit.log_auth_event("alice", "login")
        assert entry.agent_id == "agent-7"


class TestTypedWrappers:
    def test_log_transaction(self, audit):
        entry = _transfer(audit)
        assert entry.action_type == "TRANSFER"
        assert entry.entity_type == "TRANSACTION"
        assert entry.entity_id == "0xabc"
        assert entry.details["changes"]["token"] == "BNB"

    def test_failed_transaction(self, audit):
        assert _transfer(audit, status="failed").status == "FAILED"

    def test_contract_call_maps_to_contract_entity(self, audit):
        entry = audit.log_transaction(
            "0xdef", {"action": "call", "from": "0x1", "to": "0x2", "amount": "0", "status": "success"}, "alice"
        )
        assert entry.action_type == "CALL"
        assert entry.entity_type == "CONTRACT"

    def test_log_auth_event(self, audit):
        ok = audit.log_auth_event("alice", "login")
        failed = audit.log_auth_event("alice", "failed", {"error_message": "bad signature"})
        assert ok.status == "SUCCESS"
        assert failed.status == "FAILED"
        assert failed.error_message == "bad signature"
        assert ok.entity_type == "USER"

    def test_log_address_list_change(self, audit):
        allow = audit.log_address_list_change("alice", "allow", "0x1", "add")
        block = audit.log_address_list_change("alice", "deny", "0x2", "add", reason="scam")
        assert allow.action_type == "ADDRESS_ALLOW"
        assert block.action_type == "ADDRESS_BLOCK"
        assert block.details["changes"]["reason"] == "scam"


class TestQueries:
    def test_trail_filters_and_orders_newest_first(self, audit, clock):
        first = _transfer(audit, "0x1")
        clock.advance(60)
        audit.log_auth_event("bob", "login")
        clock.advance(60)
        second = _transfer(audit, "0x2")

        trail = audit.get_audit_trail(user_id="alice")
        assert [e.id for e in trail] == [second.id, first.id]
        assert len(audit.get_audit_trail(action_type=ActionType.AUTH.value)) == 1
        assert len(audit.get_audit_trail(limit=1)) == 1

    def test_trail_date_range_is_inclusive(self, audit, clock):
        _transfer(audit, "0x1")
        clock.advance(3600)
        middle = _transfer(audit, "0x2")
        clock.advance(3600)
        _transfer(audit, "0x3")

        trail = audit.get_audit_trail(start_date=middle.timestamp, end_date=middle.timestamp)
        assert [e.entity_id for e in trail] == ["0x2"]

    def test_bad_date_is_validation_error(self, audit):
        with pytest.raises(ValidationError):
            audit.get_audit_trail(start_date="yesterday")

    def test_transaction_audit(self, audit):
        _transfer(audit, "0xabc")
        assert audit.get_transaction_audit("0xabc").entity_id == "0xabc"
        assert audit.get_transaction_audit("0xmissing") is None

    def test_entry_lookup_uses_cache_then_memory(self, memory, clock):
        audit = AuditLog(memory, clock=clock, cache_size=2)
        entries = [_transfer(audit, f"0x{i}") for i in range(3)]

        assert audit.get_cached_entry(entries[0].id) is None
        assert audit.get_cached_entry(entries[2].id) == entries[2]
        assert audit.get_entry(entries[0].id) == entries[0]
        assert audit.get_entry("missing") is None

    def test_entry_lookup_wraps_memory_errors(self, clock):
        class BrokenReads(FailingMemory):
            def query_memory(self, collection, filters=None, limit=100):
                raise RuntimeError("memory service unavailable")

        audit = AuditLog(BrokenReads(), clock=clock)
        with pytest.raises(StorageError):
            audit.get_entry("missing")

    def test_entry_roundtrip(self, audit):
        entry = _transfer(audit)
        assert AuditEntry.from_dict(json.loads(json.dumps(entry.to_dict()))) == entry


class TestReporting:
    def test_empty_report(self, audit):
        report = audit.generate_compliance_report()
        assert report["total_entries"] == 0
        assert report["summary"]["success_rate"] == "N/A"
        assert report["summary"]["most_common_action"] == "N/A"
        assert report["period"]["days"] == 30
        assert report["anomalies"] == []

    def test_report_contents(self, audit, clock):
        for i in range(3):
            _transfer(audit, f"0x{i}")
        audit.log_auth_event("bob", "failed")
        clock.advance(60)

        report = audit.generate_compliance_report()

        assert report["total_entries"] == 4
        assert report["summary"]["success_rate"] == "75.0%"
        assert report["summary"]["most_common_action"] == "TRANSFER"
        assert report["summary"]["busiest_day"] == "2024-06-15"
        assert report["statistics"]["unique_users"] == 2
        assert report["statistics"]["failed_actions"] == 1
        assert len(report["action_breakdown"]["TRANSFER"]) == 3
        assert report["user_activity"]["alice"]["total_actions"] == 3
        assert report["anomalies"][0]["type"] == "high_failure_rate"

    def test_report_window(self, audit, clock):
        _transfer(audit, "0xold")
        clock.advance(31 * 86_400)
        _transfer(audit, "0xnew")
        report = audit.generate_compliance_report()
        assert report["total_entries"] == 1

    def test_explicit_report_range(self, audit):
        _transfer(audit)
        report = audit.generate_compliance_report("2024-06-01T00:00:00Z", "2024-06-30T00:00:00Z")
        assert report["total_entries"] == 1
        assert report["period"]["days"] == 29

    def test_high_activity_anomaly(self, audit):
        for i in range(101):
            _transfer(audit, f"0x{i}")
        anomalies = audit.identify_anomalies(audit.get_audit_trail(limit=1000))
        assert [a["type"] for a in anomalies] == ["high_activity"]
        assert anomalies[0]["user_id"] == "alice"


class TestExport:
    def test_json_export(self, audit, clock):
        for i in range(3):
            _transfer(audit, f"0x{i}", status="failed" if i == 1 else "success")
            clock.advance(60)
        audit.log_auth_event("alice", "login")
        audit.log_auth_event("bob", "login")

        export = audit.export_audit_log("json", user_id="alice")

        trail = audit.get_audit_trail(user_id="alice")
        assert export.count == 4
        assert json.loads(export.data) == [e.to_dict() for e in trail]

    def test_csv_export(self, audit, clock):
        for i in range(3):
            _transfer(audit, f"0x{i}")
            clock.advance(60)
        audit.log_auth_event("bob", "failed", {"error_message": 'bad "quoted", value'})

        export = audit.export_audit_log("CSV")

        lines = export.data.split("\n")
        assert lines[0] == ",".join(CSV_FIELDS)
        assert lines[1].startswith('"')
        rows = list(csv.reader(io.StringIO("\n".join(lines[1:]))))
        assert export.count == len(rows) == 4
        assert [r[2] for r in rows] == ["AUTH", "TRANSFER", "TRANSFER", "TRANSFER"]
        assert [r[5] for r in rows[1:]] == ["0x2", "0x1", "0x0"]

    def test_display_csv_headers(self, audit):
        entry = _transfer(audit)
        text = entries_to_display_csv([entry])
        header, row = text.split("\n")
        assert header.split(",") == CSV_DISPLAY_HEADERS
        assert next(csv.reader(io.StringIO(row)))[:2] == [entry.id, entry.timestamp]

    def test_unknown_format(self, audit):
        with pytest.raises(ValidationError):
            audit.export_audit_log("xml")
