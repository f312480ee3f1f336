"""Tests for the HTTP API."""

import pytest
from eth_account import Account
from fastapi.testclient import TestClient

from custodian.money import native_to_wei
from custodian.risk import ZERO_ADDRESS
from custodian.server import create_app


@pytest.fixture
def client(services):
    return TestClient(create_app(services))


def _init(client, agent, user_id="alice"):
    resp = client.post(
        "/api/payment/session/init",
        json={"user_id": user_id, "agent_address": agent.address},
    )
    assert resp.status_code == 200
    return resp.json()


def test_health(client, agent):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["agent"] == agent.address


class TestPaymentRoutes:
    def test_full_flow(self, client, agent, recipient):
        session = _init(client, agent)
        assert session["success"] is True
        assert session["session_id"].startswith("ps-")

        prepared = client.post("/api/payment/prepare", json={
            "session_id": session["session_id"],
            "amount": "0.05",
            "recipient": recipient,
        })
        assert prepared.status_code == 200
        body = prepared.json()
        assert body["prepared"] is True
        assert body["payload"]["nonce"] == session["nonce"]

        verified = client.post("/api/payment/verify", json={
            "session_id": session["session_id"],
            "signature": body["signature"],
            "amount": "0.05",
            "recipient": recipient,
        })
        assert verified.json() == {"valid": True}

        wallet = Account.create().address
        client.post("/api/security/spend-caps", json={"wallet": wallet, "type": "daily", "limit": "1"})
        recorded = client.post("/api/payment/record", json={
            "user_id": "alice",
            "session_id": session["session_id"],
            "tx_hash": "0xabc",
            "wallet": wallet,
        })
        assert recorded.status_code == 200
        caps = client.get("/api/security/spend-caps", params={"wallet": wallet}).json()["caps"]
        assert caps[0]["current_wei"] == str(native_to_wei("0.05"))

        history = client.get("/api/payment/history", params={"user_id": "alice"}).json()
        assert [p["tx_hash"] for p in history["payments"]] == ["0xabc"]

        replay = client.post("/api/payment/record", json={
            "user_id": "alice",
            "session_id": session["session_id"],
            "tx_hash": "0xabc",
        })
        assert replay.status_code == 409
        assert replay.json()["success"] is False

    def test_unknown_session(self, client, recipient):
        resp = client.post("/api/payment/prepare", json={
            "session_id": "ps-unknown", "amount": "0.01", "recipient": recipient,
        })
        assert resp.status_code == 401
        assert resp.json() == {"success": False, "error": "invalid session"}

    def test_consumed_session(self, client, agent, recipient):
        session = _init(client, agent)
        payload = {"session_id": session["session_id"], "amount": "0.01", "recipient": recipient}
        assert client.post("/api/payment/prepare", json=payload).status_code == 200
        assert client.post("/api/payment/prepare", json=payload).status_code == 409

    def test_policy_violation(self, client, agent, recipient):
        session = _init(client, agent)
        resp = client.post("/api/payment/prepare", json={
            "session_id": session["session_id"], "amount": "2.0", "recipient": recipient,
        })
        assert resp.status_code == 403
        body = resp.json()
        assert body["error"].startswith("Policy violation")
        assert any("single transaction limit" in v for v in body["violations"])

    def test_risk_rejection(self, client, agent):
        session = _init(client, agent)
        resp = client.post("/api/payment/prepare", json={
            "session_id": session["session_id"], "amount": "0.01", "recipient": ZERO_ADDRESS,
        })
        assert resp.status_code == 403
        assert resp.json()["assessment"]["risk_level"] == "CRITICAL"

    def test_missing_fields(self, client):
        resp = client.post("/api/payment/prepare", json={"amount": "0.01"})
        assert resp.status_code == 400
        assert resp.json()["success"] is False

    def test_invalid_agent_address(self, client):
        resp = client.post("/api/payment/session/init", json={"user_id": "alice", "agent_address": "bob"})
        assert resp.status_code == 400

    def test_preview_and_risk(self, client, recipient):
        preview = client.post("/api/payment/preview", json={"to": recipient, "amount": "0.05"})
        assert preview.status_code == 200
        assert preview.json()["preview"]["estimated_fee_wei"] == str(21_000 * 5 * 10**9)

        risk = client.post("/api/payment/risk", json={"recipient": ZERO_ADDRESS, "amount": "1"})
        assert risk.json()["assessment"]["can_execute"] is False


class TestPolicyRoutes:
    def test_set_limit(self, client):
        resp = client.post("/api/policy/set-limit", json={"userId": "alice", "limitBNB": "2.5"})
        assert resp.status_code == 200
        assert resp.json() == {"success": True, "max_daily_spend_bnb": "2.5"}

        policy = client.get("/api/policy/alice").json()["policy"]
        assert policy["max_daily_spend_bnb"] == "2.5"

    @pytest.mark.parametrize("body", [
        {"userId": "alice", "limitBNB": "0"},
        {"userId": "", "limitBNB": "1"},
        {"limitBNB": "1"},
    ])
    def test_set_limit_invalid(self, client, body):
        assert client.post("/api/policy/set-limit", json=body).status_code == 400


class TestSecurityRoutes:
    def test_lists_and_apply(self, client, recipient):
        wallet = Account.create().address
        added = client.post("/api/security/allow-deny-lists", json={
            "wallet": wallet, "address": recipient, "type": "deny", "userId": "alice",
        })
        assert added.status_code == 200
        entry_id = added.json()["entry"]["id"]

        lists = client.get("/api/security/allow-deny-lists", params={"wallet": wallet}).json()["lists"]
        assert [e["id"] for e in lists] == [entry_id]

        check = client.post("/api/security/verify-transaction", json={
            "wallet": wallet, "to": recipient, "amount": "0.1",
        }).json()
        assert check["success"] is True
        assert check["allowed"] is False
        assert check["riskScore"] == 100

        applied = client.post("/api/security/apply-to-policy", json={"wallet": wallet, "userId": "alice"})
        assert applied.json()["policy"]["denied_addresses"] == [recipient.lower()]

        removed = client.delete(f"/api/security/allow-deny-lists/{entry_id}", params={"wallet": wallet})
        assert removed.json() == {"success": True}
        missing = client.delete(f"/api/security/allow-deny-lists/{entry_id}", params={"wallet": wallet})
        assert missing.status_code == 404

    def test_spend_cap_crud(self, client):
        wallet = Account.create().address
        cap = client.post("/api/security/spend-caps", json={
            "wallet": wallet, "type": "monthly", "limit": "3",
        }).json()["cap"]
        assert cap["limit"] == "3"
        caps = client.get("/api/security/spend-caps", params={"wallet": wallet}).json()["caps"]
        assert [c["id"] for c in caps] == [cap["id"]]
        resp = client.delete(f"/api/security/spend-caps/{cap['id']}", params={"wallet": wallet})
        assert resp.json() == {"success": True}

    def test_bad_cap_type(self, client):
        resp = client.post("/api/security/spend-caps", json={
            "wallet": Account.create().address, "type": "hourly", "limit": "3",
        })
        assert resp.status_code == 400


class TestAuditRoutes:
    def test_log_action_captures_request_metadata(self, client):
        resp = client.post(
            "/api/audit/log-action",
            json={"actionType": "CUSTOM_EVENT", "entityId": "x", "userId": "alice"},
            headers={"user-agent": "agent-sdk/1.0"},
        )
        body = resp.json()
        assert body["success"] is True
        assert body["timestamp"] == "2024-06-15T12:00:00.000Z"
        entry = body["data"]
        assert entry["user_agent"] == "agent-sdk/1.0"
        assert entry["ip_address"] == "testclient"

        fetched = client.get(f"/api/audit/entry/{entry['id']}").json()["data"]
        assert fetched == entry
        assert client.get("/api/audit/entry/nope").status_code == 404

    def test_snake_case_bodies_still_accepted(self, client):
        resp = client.post("/api/audit/log-action", json={
            "action_type": "CUSTOM_EVENT", "entity_id": "x", "user_id": "alice",
        })
        assert resp.status_code == 200
        assert resp.json()["data"]["action_type"] == "CUSTOM_EVENT"

    @pytest.mark.parametrize("path,body", [
        ("/api/audit/log-action", {"actionType": "AUTH", "userId": "alice"}),
        ("/api/audit/log-transaction", {"txHash": "0xabc", "userId": "alice"}),
        ("/api/audit/log-policy-change", {"oldValue": 1, "newValue": 2, "userId": "alice"}),
        ("/api/audit/log-auth", {"userId": "alice"}),
    ])
    def test_missing_required_fields(self, client, path, body):
        resp = client.post(path, json=body)
        assert resp.status_code == 400
        assert resp.json()["success"] is False

    def test_transaction_lookup(self, client):
        client.post("/api/audit/log-transaction", json={
            "txHash": "0xabc",
            "userId": "alice",
            "details": {"from": "0x1", "to": "0x2", "amount": "5", "status": "success"},
        })
        assert client.get("/api/audit/transaction/0xabc").json()["data"]["action_type"] == "TRANSFER"
        missing = client.get("/api/audit/transaction/0xmissing")
        assert missing.status_code == 404
        assert missing.json() == {"success": False, "error": "Transaction audit entry not found"}

    def test_trail_and_reports(self, client):
        client.post("/api/audit/log-auth", json={"userId": "alice", "eventType": "login"})
        client.post("/api/audit/log-auth", json={"userId": "bob", "eventType": "failed"})
        client.post("/api/audit/log-policy-change", json={
            "policyId": "max_single_tx", "oldValue": "1", "newValue": "2", "userId": "alice",
        })

        trail = client.get("/api/audit/log", params={"user_id": "alice"}).json()["data"]
        assert trail["filters"] == {"user_id": "alice", "limit": 100}
        assert trail["count"] == len(trail["entries"]) == 2
        user = client.get("/api/audit/user/bob").json()["data"]
        assert (user["user_id"], user["count"]) == ("bob", 1)

        report = client.get("/api/audit/report").json()["data"]
        assert report["total_entries"] == 3

        stats = client.get("/api/audit/statistics").json()["data"]
        assert stats["failed_actions"] == 1

        breakdown = client.get("/api/audit/action-types").json()["data"]
        assert breakdown["total_types"] == 2
        by_type = {b["action_type"]: b for b in breakdown["breakdown"]}
        assert by_type["AUTH"] == {"action_type": "AUTH", "count": 2, "success_count": 1, "failed_count": 1}
        assert by_type["POLICY_CHANGE"]["count"] == 1

        activity = client.get("/api/audit/user-activity").json()["data"]
        assert activity["total_users"] == 2
        assert [u["user_id"] for u in activity["users"]] == ["alice", "bob"]

        anomalies = client.get("/api/audit/anomalies").json()["data"]
        assert anomalies["count"] == len(anomalies["anomalies"]) >= 1
        assert anomalies["anomalies"][0]["type"] == "high_failure_rate"

    def test_export(self, client):
        client.post("/api/audit/log-auth", json={"userId": "alice", "eventType": "login"})
        client.post("/api/audit/log-auth", json={"userId": "bob", "eventType": "login"})

        as_json = client.get("/api/audit/export").json()["data"]
        assert as_json["count"] == 2
        assert [e["user_id"] for e in as_json["logs"]] == ["bob", "alice"]

        as_csv = client.get("/api/audit/export", params={"format": "csv"})
        assert as_csv.headers["content-type"].startswith("text/csv")
        lines = as_csv.text.splitlines()
        assert lines[0].startswith("ID,Timestamp,Action Type")
        assert len(lines) == 3

    def test_bad_schema_is_400(self, client):
        resp = client.post("/api/audit/log-action", json={
            "actionType": "POLICY_CHANGE", "entityId": "x", "userId": "alice", "changes": {},
        })
        assert resp.status_code == 400

    def test_bad_date_is_400(self, client):
        assert client.get("/api/audit/log", params={"start_date": "soon"}).status_code == 400
