"""
HTTP API for the payment authorization pipeline.

All routes live under ``/api``. Errors from the core render as
``{"success": false, "error": ...}`` with the status code carried by the
exception class; policy and risk rejections add their details.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Literal, Optional

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field

from . import __version__
from .audit import REPORT_MAX_ENTRIES, AuditEntry, entries_to_display_csv
from .clock import iso_timestamp
from .errors import CustodianError, NotFoundError, PolicyViolation, RiskError
from .orchestrator import PaymentRequest
from .services import Services
from .transaction import PendingTransaction

logger = logging.getLogger(__name__)


# ── Request bodies ────────────────────────────────────────────────

class SessionInitBody(BaseModel):
    user_id: str = Field(min_length=1)
    agent_address: str


class PrepareBody(BaseModel):
    session_id: str
    amount: Decimal = Field(gt=0)
    recipient: str
    action: str = "transfer"
    sender: Optional[str] = None
    gas_price_wei: Optional[int] = None


class VerifyBody(BaseModel):
    session_id: str
    signature: str
    amount: Decimal
    recipient: str
    action: str = "transfer"


class RecordBody(BaseModel):
    user_id: str
    session_id: str
    tx_hash: str
    status: Literal["success", "failed"] = "success"
    wallet: Optional[str] = None


class TransactionBody(BaseModel):
    recipient: Optional[str] = None
    to: Optional[str] = None
    amount: Decimal = Field(ge=0)
    user_id: Optional[str] = None
    sender: Optional[str] = None
    action: str = "transfer"
    gas_price_wei: Optional[int] = None


class SetLimitBody(BaseModel):
    userId: str = Field(min_length=1)
    limitBNB: Decimal = Field(gt=0)


class SpendCapBody(BaseModel):
    wallet: str
    type: str
    limit: Decimal = Field(gt=0)


class CamelBody(BaseModel):
    """Body read by its camelCase wire names; snake_case names are accepted too."""

    model_config = ConfigDict(populate_by_name=True)


class ListEntryBody(CamelBody):
    wallet: str
    address: str
    type: Literal["allow", "deny"]
    reason: Optional[str] = None
    user_id: Optional[str] = Field(None, alias="userId")


class VerifyTransactionBody(BaseModel):
    wallet: str
    to: str
    amount: Decimal = Field(Decimal(0), ge=0)


class ApplyListsBody(CamelBody):
    wallet: str
    user_id: str = Field(alias="userId", min_length=1)


class LogActionBody(CamelBody):
    action_type: str = Field(alias="actionType", min_length=1)
    entity_id: str = Field(alias="entityId", min_length=1)
    user_id: str = Field(alias="userId", min_length=1)
    changes: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)


class LogTransactionBody(CamelBody):
    tx_hash: str = Field(alias="txHash", min_length=1)
    details: dict[str, Any] = Field(min_length=1)
    user_id: str = Field(alias="userId", min_length=1)


class LogPolicyChangeBody(CamelBody):
    policy_id: str = Field(alias="policyId", min_length=1)
    old_value: Any = Field(None, alias="oldValue")
    new_value: Any = Field(None, alias="newValue")
    user_id: str = Field(alias="userId", min_length=1)


class LogAuthBody(CamelBody):
    user_id: str = Field(alias="userId", min_length=1)
    event_type: str = Field(alias="eventType", min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)


# ── Helpers ───────────────────────────────────────────────────────

def _error_body(exc: CustodianError) -> dict:
    body: dict[str, Any] = {"success": False, "error": str(exc)}
    if isinstance(exc, PolicyViolation):
        body["violations"] = exc.violations
    if isinstance(exc, RiskError):
        body["assessment"] = exc.assessment.to_dict()
    return body


def _request_metadata(request: Request, metadata: dict[str, Any]) -> dict[str, Any]:
    meta = dict(metadata)
    if not meta.get("ip_address") and request.client is not None:
        meta["ip_address"] = request.client.host
    if not meta.get("user_agent"):
        meta["user_agent"] = request.headers.get("user-agent", "unknown")
    return meta


def _to_transaction(body: TransactionBody) -> PendingTransaction:
    return PendingTransaction.from_request(body.model_dump(), user_id=body.user_id)


def create_app(services: Services) -> FastAPI:
    app = FastAPI(title="Custodian", version=__version__)
    app.state.services = services
    api = APIRouter(prefix="/api")

    orchestrator = services.orchestrator
    audit = services.audit
    security = services.security

    @app.exception_handler(CustodianError)
    async def custodian_error_handler(request: Request, exc: CustodianError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        else:
            logger.warning("%s %s rejected: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=exc.status_code, content=_error_body(exc))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        messages = [
            f"{'.'.join(str(p) for p in err.get('loc', ()) if p != 'body')}: {err.get('msg')}"
            for err in exc.errors()
        ]
        return JSONResponse(status_code=400, content={"success": False, "error": "; ".join(messages)})

    @app.get("/health")
    def health():
        return {"status": "ok", "version": __version__, "agent": services.signer.address}

    # ── Payments ──────────────────────────────────────────────────

    @api.post("/payment/session/init")
    def init_session(body: SessionInitBody):
        session = orchestrator.initialize_session(body.user_id, body.agent_address)
        return {
            "success": True,
            "session_id": session.session_id,
            "nonce": session.nonce,
            "expires_at": session.expires_at,
        }

    @api.post("/payment/prepare")
    def prepare_payment(body: PrepareBody):
        prepared = orchestrator.prepare_payment(PaymentRequest.from_dict(body.model_dump()))
        return prepared.to_dict()

    @api.post("/payment/verify")
    def verify_payment(body: VerifyBody):
        return orchestrator.verify_payment(
            body.session_id, body.signature, body.amount, body.recipient, body.action
        )

    @api.post("/payment/record")
    def record_payment(body: RecordBody):
        result = orchestrator.record_payment(body.user_id, body.session_id, body.tx_hash, body.status)
        if body.wallet and body.status == "success":
            security.record_spend(body.wallet, int(result["payment"]["amount_wei"]))
        return result

    @api.get("/payment/history")
    def payment_history(user_id: str, limit: int = Query(50, ge=1, le=1000)):
        return {"success": True, **orchestrator.get_payment_history(user_id, limit)}

    @api.post("/payment/preview")
    def payment_preview(body: TransactionBody):
        return {"success": True, "preview": orchestrator.generate_payment_preview(_to_transaction(body))}

    @api.post("/payment/risk")
    def payment_risk(body: TransactionBody):
        return {"success": True, "assessment": orchestrator.assess_risk(_to_transaction(body)).to_dict()}

    # ── Policy ────────────────────────────────────────────────────

    @api.post("/policy/set-limit")
    def set_limit(body: SetLimitBody):
        result = services.policy.set_spending_limit(body.userId, body.limitBNB)
        return {"success": True, "max_daily_spend_bnb": result["max_daily_spend_bnb"]}

    @api.get("/policy/{user_id}")
    def get_policy(user_id: str):
        return {"success": True, "policy": services.policy.get_policy(user_id).to_display()}

    # ── Security settings ─────────────────────────────────────────

    @api.get("/security/spend-caps")
    def list_spend_caps(wallet: str):
        return {"success": True, "caps": [c.to_dict() for c in security.list_spend_caps(wallet)]}

    @api.post("/security/spend-caps")
    def add_spend_cap(body: SpendCapBody):
        cap = security.add_spend_cap(body.wallet, body.type, body.limit)
        return {"success": True, "cap": cap.to_dict()}

    @api.delete("/security/spend-caps/{cap_id}")
    def remove_spend_cap(cap_id: str, wallet: str):
        security.remove_spend_cap(wallet, cap_id)
        return {"success": True}

    @api.get("/security/allow-deny-lists")
    def list_entries(wallet: str, type: Optional[Literal["allow", "deny"]] = None):
        return {"success": True, "lists": [e.to_dict() for e in security.list_entries(wallet, type)]}

    @api.post("/security/allow-deny-lists")
    def add_entry(body: ListEntryBody):
        entry = security.add_list_entry(body.wallet, body.address, body.type, body.reason, body.user_id)
        return {"success": True, "entry": entry.to_dict()}

    @api.delete("/security/allow-deny-lists/{entry_id}")
    def remove_entry(entry_id: str, wallet: str, user_id: Optional[str] = Query(None, alias="userId")):
        security.remove_list_entry(wallet, entry_id, user_id)
        return {"success": True}

    @api.post("/security/verify-transaction")
    def verify_transaction(body: VerifyTransactionBody):
        result = security.verify_transaction(body.wallet, body.to, body.amount)
        return {
            "success": True,
            "allowed": result["allowed"],
            "warnings": result["warnings"],
            "riskScore": result["risk_score"],
        }

    @api.post("/security/apply-to-policy")
    def apply_to_policy(body: ApplyListsBody):
        policy = security.apply_lists_to_policy(body.wallet, body.user_id)
        return {"success": True, "policy": policy.to_display()}

    # ── Audit ─────────────────────────────────────────────────────

    def _ok(data: Any) -> dict:
        return {"success": True, "data": data, "timestamp": iso_timestamp(audit.clock)}

    def _entries(logs: list[AuditEntry]) -> list[dict]:
        return [e.to_dict() for e in logs]

    def _trail(
        user_id: Optional[str] = None,
        action_type: Optional[str] = None,
        entity_type: Optional[str] = None,
        status: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        limit: int = REPORT_MAX_ENTRIES,
    ) -> list[AuditEntry]:
        return audit.get_audit_trail(
            user_id=user_id,
            action_type=action_type,
            entity_type=entity_type,
            status=status,
            start_date=start_date,
            end_date=end_date,
            limit=limit,
        )

    @api.get("/audit/log")
    def audit_log(
        user_id: Optional[str] = None,
        action_type: Optional[str] = None,
        entity_type: Optional[str] = None,
        status: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        limit: int = Query(100, ge=1, le=REPORT_MAX_ENTRIES),
    ):
        filters = {
            "user_id": user_id,
            "action_type": action_type,
            "entity_type": entity_type,
            "start_date": start_date,
            "end_date": end_date,
            "status": status,
        }
        filters = {k: v for k, v in filters.items() if v is not None}
        filters["limit"] = limit
        logs = _trail(**filters)
        return _ok({"filters": filters, "count": len(logs), "entries": _entries(logs)})

    @api.get("/audit/report")
    def audit_report(start_date: Optional[str] = None, end_date: Optional[str] = None):
        return _ok(audit.generate_compliance_report(start_date, end_date))

    @api.get("/audit/user/{user_id}")
    def audit_user(user_id: str, limit: int = Query(100, ge=1, le=REPORT_MAX_ENTRIES)):
        logs = audit.get_user_audit_trail(user_id, limit)
        return _ok({"user_id": user_id, "count": len(logs), "entries": _entries(logs)})

    @api.get("/audit/transaction/{tx_hash}")
    def audit_transaction(tx_hash: str):
        entry = audit.get_transaction_audit(tx_hash)
        if entry is None:
            raise NotFoundError("Transaction audit entry not found")
        return _ok(entry.to_dict())

    @api.get("/audit/statistics")
    def audit_statistics(start_date: Optional[str] = None, end_date: Optional[str] = None):
        logs = _trail(start_date=start_date, end_date=end_date)
        return _ok(audit.generate_statistics(logs))

    @api.get("/audit/action-types")
    def audit_action_types(start_date: Optional[str] = None, end_date: Optional[str] = None):
        logs = _trail(start_date=start_date, end_date=end_date)
        breakdown = [
            {
                "action_type": action_type,
                "count": len(entries),
                "success_count": sum(1 for e in entries if e.status == "SUCCESS"),
                "failed_count": sum(1 for e in entries if e.status == "FAILED"),
            }
            for action_type, entries in audit.group_by_action_type(logs).items()
        ]
        return _ok({"total_types": len(breakdown), "breakdown": breakdown})

    @api.get("/audit/user-activity")
    def audit_user_activity(
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        limit: int = Query(100, ge=1, le=1000),
    ):
        logs = _trail(start_date=start_date, end_date=end_date, limit=limit * 10)
        activity = audit.group_by_user(logs)
        users = sorted(activity.values(), key=lambda u: u["total_actions"], reverse=True)
        return _ok({"total_users": len(activity), "users": users[:limit]})

    @api.get("/audit/anomalies")
    def audit_anomalies(start_date: Optional[str] = None, end_date: Optional[str] = None):
        anomalies = audit.identify_anomalies(_trail(start_date=start_date, end_date=end_date))
        return _ok({"count": len(anomalies), "anomalies": anomalies})

    @api.get("/audit/export")
    def audit_export(
        format: Literal["json", "csv"] = "json",
        user_id: Optional[str] = None,
        action_type: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ):
        logs = _trail(user_id, action_type, start_date=start_date, end_date=end_date)
        if format == "csv":
            return Response(
                content=entries_to_display_csv(logs),
                media_type="text/csv",
                headers={"Content-Disposition": "attachment; filename=audit_logs.csv"},
            )
        return _ok({"count": len(logs), "logs": _entries(logs)})

    @api.get("/audit/entry/{entry_id}")
    def audit_entry(entry_id: str):
        entry = audit.get_entry(entry_id)
        if entry is None:
            raise NotFoundError("Audit entry not found")
        return _ok(entry.to_dict())

    @api.post("/audit/log-action")
    def log_action(body: LogActionBody, request: Request):
        entry = audit.log_action(
            body.action_type, body.entity_id, body.user_id, body.changes,
            _request_metadata(request, body.metadata),
        )
        return _ok(entry.to_dict())

    @api.post("/audit/log-transaction")
    def log_transaction(body: LogTransactionBody):
        return _ok(audit.log_transaction(body.tx_hash, body.details, body.user_id).to_dict())

    @api.post("/audit/log-policy-change")
    def log_policy_change(body: LogPolicyChangeBody):
        entry = audit.log_policy_change(body.policy_id, body.old_value, body.new_value, body.user_id)
        return _ok(entry.to_dict())

    @api.post("/audit/log-auth")
    def log_auth(body: LogAuthBody, request: Request):
        entry = audit.log_auth_event(body.user_id, body.event_type, _request_metadata(request, body.metadata))
        return _ok(entry.to_dict())

    app.include_router(api)
    return app
