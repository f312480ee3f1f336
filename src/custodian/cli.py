"""
Custodian CLI — payment authorization for AI agents.

Commands:
    custodian serve         Run the HTTP API
    custodian set-limit     Set a user's daily spending limit
    custodian policy        Show a user's payment policy
    custodian audit trail   View the audit trail
    custodian audit report  Generate a compliance report
    custodian audit export  Export the audit log as JSON or CSV
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Optional

import click

from . import __version__
from .audit import AuditLog
from .config import LOG_LEVEL_ENV, Settings
from .errors import CustodianError
from .services import build_memory, build_policy_engine, build_services

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _settings(ctx: click.Context) -> Settings:
    return ctx.obj["settings"]


def _fail(message: str) -> None:
    click.echo(f"❌ {message}", err=True)
    sys.exit(1)


def _audit_log(settings: Settings) -> AuditLog:
    return AuditLog(build_memory(settings), cache_size=settings.audit_cache_size)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--log-level",
    envvar=LOG_LEVEL_ENV,
    default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging verbosity",
)
@click.pass_context
def main(ctx: click.Context, log_level: str):
    """Custodian — policy, risk and signing gate for agent payments."""
    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)
    ctx.ensure_object(dict)
    try:
        ctx.obj["settings"] = Settings.from_env()
    except CustodianError as e:
        _fail(f"Invalid configuration: {e}")


@main.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", type=int, default=8402, help="Bind port")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int):
    """Run the HTTP API."""
    import uvicorn

    from .server import create_app

    try:
        services = build_services(_settings(ctx))
    except CustodianError as e:
        _fail(str(e))
    click.echo(f"🛡️  Custodian API on http://{host}:{port} (agent {services.signer.address})")
    uvicorn.run(create_app(services), host=host, port=port)


@main.command("set-limit")
@click.argument("user_id")
@click.argument("limit_bnb")
@click.pass_context
def set_limit(ctx: click.Context, user_id: str, limit_bnb: str):
    """Set USER_ID's daily spending limit to LIMIT_BNB."""
    engine = build_policy_engine(_settings(ctx))
    try:
        result = engine.set_spending_limit(user_id, limit_bnb)
    except CustodianError as e:
        _fail(str(e))
    click.echo(f"✅ Daily limit for {user_id}: {result['max_daily_spend_bnb']} BNB")


@main.command()
@click.argument("user_id")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
@click.pass_context
def policy(ctx: click.Context, user_id: str, as_json: bool):
    """Show USER_ID's payment policy."""
    engine = build_policy_engine(_settings(ctx))
    try:
        current = engine.get_policy(user_id).to_display()
    except CustodianError as e:
        _fail(str(e))

    if as_json:
        click.echo(json.dumps(current, indent=2))
        return
    click.echo(f"📋 Policy for {user_id}")
    click.echo(f"   Max per tx:     {current['max_single_tx_bnb']} BNB")
    click.echo(f"   Max per day:    {current['max_daily_spend_bnb']} BNB")
    click.echo(f"   Max tx per day: {current['daily_tx_limit']}")
    click.echo(f"   Allowlist:      {', '.join(current['allowed_addresses']) or '(any)'}")
    click.echo(f"   Denylist:       {', '.join(current['denied_addresses']) or '(none)'}")


@main.group("audit")
def audit_group():
    """Inspect the audit log."""
    pass


@audit_group.command("trail")
@click.option("--user-id", default=None, help="Filter by user ID")
@click.option("--action-type", default=None, help="Filter by action type (e.g. TRANSFER)")
@click.option("--limit", type=int, default=20, help="Number of entries")
@click.pass_context
def audit_trail(ctx: click.Context, user_id: Optional[str], action_type: Optional[str], limit: int):
    """View the audit trail, newest first."""
    try:
        entries = _audit_log(_settings(ctx)).get_audit_trail(
            user_id=user_id, action_type=action_type, limit=limit
        )
    except CustodianError as e:
        _fail(str(e))

    if not entries:
        click.echo("No audit entries found.")
        return

    for entry in entries:
        status = "✅" if entry.status == "SUCCESS" else "❌"
        error = f" ({entry.error_message})" if entry.error_message else ""
        click.echo(
            f"  {entry.timestamp} {status} {entry.action_type} "
            f"{entry.entity_id} user={entry.user_id}{error}"
        )


@audit_group.command("report")
@click.option("--start", "start_date", default=None, help="Start date (YYYY-MM-DD or ISO-8601)")
@click.option("--end", "end_date", default=None, help="End date (YYYY-MM-DD or ISO-8601)")
@click.option("--json", "as_json", is_flag=True, help="Print the full report as JSON")
@click.pass_context
def audit_report(ctx: click.Context, start_date: Optional[str], end_date: Optional[str], as_json: bool):
    """Generate a compliance report (default: last 30 days)."""
    try:
        report = _audit_log(_settings(ctx)).generate_compliance_report(start_date, end_date)
    except CustodianError as e:
        _fail(str(e))

    if as_json:
        click.echo(json.dumps(report, indent=2))
        return

    summary = report["summary"]
    click.echo(f"📊 Compliance report {report['period']['start']} → {report['period']['end']}")
    click.echo(f"   Actions:      {summary['total_actions']}")
    click.echo(f"   Success rate: {summary['success_rate']}")
    click.echo(f"   Users:        {summary['unique_users']}")
    click.echo(f"   Most common:  {summary['most_common_action']}")
    click.echo(f"   Busiest day:  {summary['busiest_day']}")
    for anomaly in report["anomalies"]:
        click.echo(f"   ⚠️  {anomaly['message']}")


@audit_group.command("export")
@click.option("--format", "fmt", type=click.Choice(["json", "csv"]), default="json", help="Output format")
@click.option("--user-id", default=None, help="Filter by user ID")
@click.option("--output", "-o", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Write to file instead of stdout")
@click.pass_context
def audit_export(ctx: click.Context, fmt: str, user_id: Optional[str], output: Optional[Path]):
    """Export the audit log."""
    try:
        export = _audit_log(_settings(ctx)).export_audit_log(fmt, user_id=user_id)
    except CustodianError as e:
        _fail(str(e))

    if output is None:
        click.echo(export.data)
        return
    output.write_text(export.data)
    click.echo(f"✅ Exported {export.count} entries to {output}")


if __name__ == "__main__":
    main()
