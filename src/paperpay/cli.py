"""
PaperPay CLI.

Commands:
    paperpay serve             Run the HTTP API
    paperpay grants list       List customer grants
    paperpay grants sweep      Expire grants past their expiry
    paperpay grants suspend    Suspend a grant
    paperpay qr issue          Print a signed QR bundle for a customer
    paperpay qr verify         Check a bundle's signature
    paperpay hash              Compute an interaction hash
    paperpay audit             View the audit trail
"""

from __future__ import annotations

import logging
import sys
import time
from typing import Optional

import click

from . import interaction
from .accounts import AccountRegistry
from .audit import AuditChainError, AuditTrail
from .config import PaperPayConfig, load_config
from .errors import PaperPayError
from .kvstore import SQLiteKeyValueStore
from .ledger import CustomerGrantStatus, GrantLedger
from .qr import QRBundle, QRBundler


def _local_components(config: PaperPayConfig) -> tuple[GrantLedger, AccountRegistry, AuditTrail]:
    """Ledger and registry on the configured store; no Open Payments credentials needed."""
    store = SQLiteKeyValueStore(config.store_path)
    audit = AuditTrail(config.audit_path)
    return GrantLedger(store, audit=audit), AccountRegistry(store), audit


def _fail(message: str) -> None:
    click.echo(f"❌ {message}", err=True)
    sys.exit(1)


@click.group()
@click.version_option(version="0.1.0")
def main():
    """PaperPay - Open Payments grants for paper-based checkout."""
    pass


@main.command()
@click.option("--host", default="0.0.0.0", help="Bind address")
@click.option("--port", type=int, default=None, help="Port (default: $PORT or 3001)")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"]),
    default="info",
    help="Log level",
)
def serve(host: str, port: Optional[int], log_level: str):
    """Run the PaperPay HTTP API."""
    import uvicorn

    from .api import create_app
    from .service import build_service

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = load_config()
    try:
        service = build_service(config)
    except ValueError as e:
        _fail(str(e))

    click.echo(f"🚀 PaperPay listening on {host}:{port or config.port}")
    uvicorn.run(create_app(service), host=host, port=port or config.port, log_level=log_level)


# ── Grants ────────────────────────────────────────────────────────


@main.group("grants")
def grants_group():
    """Inspect and manage customer grants."""
    pass


@grants_group.command("list")
@click.option("--customer", "customer_id", default=None, help="Filter by customer ID")
@click.option(
    "--status",
    type=click.Choice([s.value for s in CustomerGrantStatus]),
    default=None,
    help="Filter by status",
)
def grants_list(customer_id: Optional[str], status: Optional[str]):
    """List customer grants."""
    ledger, _, _ = _local_components(load_config())
    wanted = CustomerGrantStatus(status) if status else None
    if customer_id:
        records = ledger.list_for_customer(customer_id, status=wanted)
    else:
        records = [r for r in ledger.list_all() if wanted is None or r.status == wanted]

    if not records:
        click.echo("No grants found.")
        return

    for r in records:
        icon = {"active": "✅", "expired": "⌛", "suspended": "⏸️"}[r.status.value]
        approved = "" if r.interaction_completed else " (awaiting approval)"
        expires = time.strftime("%Y-%m-%d", time.localtime(r.expires_at))
        click.echo(f"  {icon} {r.id} {r.customer_id} → {r.vendor_name or r.vendor_id}{approved}")
        click.echo(
            f"     {r.spent_today}/{r.daily_limit} {r.asset_code} today, "
            f"{r.remaining} left, expires {expires}"
        )


@grants_group.command("sweep")
def grants_sweep():
    """Mark grants past their expiry as expired."""
    ledger, _, _ = _local_components(load_config())
    count = ledger.expire_sweep()
    click.echo(f"⌛ Expired {count} grant(s)")


@grants_group.command("suspend")
@click.argument("grant_id")
def grants_suspend(grant_id: str):
    """Suspend a grant so no further spends are accepted."""
    ledger, _, _ = _local_components(load_config())
    try:
        record = ledger.suspend(grant_id)
    except PaperPayError as e:
        _fail(str(e))
    click.echo(f"⏸️  Grant {record.id} suspended")


# ── QR bundles ────────────────────────────────────────────────────


@main.group("qr")
def qr_group():
    """Issue and verify signed QR bundles."""
    pass


@qr_group.command("issue")
@click.argument("customer_id")
def qr_issue(customer_id: str):
    """Print the signed bundle JSON for CUSTOMER_ID."""
    config = load_config()
    ledger, accounts, audit = _local_components(config)
    bundler = QRBundler(ledger, config.qr_signing_secret, audit=audit)
    try:
        accounts.get_customer(customer_id)
        bundle = bundler.build_bundle(customer_id)
    except PaperPayError as e:
        _fail(str(e))
    click.echo(bundle.to_json())


@qr_group.command("verify")
@click.argument("source", type=click.File("r"), default="-")
def qr_verify(source):
    """Verify a bundle read from SOURCE (a file, or - for stdin)."""
    config = load_config()
    ledger, accounts, audit = _local_components(config)
    bundler = QRBundler(ledger, config.qr_signing_secret, audit=audit)
    try:
        bundle = QRBundle.from_json(source.read())
    except PaperPayError as e:
        _fail(str(e))

    if not bundler.verify_bundle(bundle):
        _fail(f"Invalid signature for customer {bundle.customer_id}")

    click.echo(f"✅ Bundle valid for customer {bundle.customer_id}")
    for g in bundle.grants:
        expires = time.strftime("%Y-%m-%d", time.localtime(g.expires_at))
        click.echo(f"   {g.vendor_name} ({g.vendor_id}): {g.daily_limit}/day until {expires}")


# ── Debugging ─────────────────────────────────────────────────────


@main.command("hash")
@click.option("--client-nonce", required=True, help="Nonce sent in the grant request")
@click.option("--interact-nonce", required=True, help="Nonce returned by the authorization server")
@click.option("--interact-ref", required=True, help="interact_ref from the redirect")
@click.option("--auth-server", required=True, help="Authorization server URL")
@click.option("--expect", default=None, help="Hash from the redirect to compare against")
def hash_command(
    client_nonce: str,
    interact_nonce: str,
    interact_ref: str,
    auth_server: str,
    expect: Optional[str],
):
    """Compute the interaction hash for a grant redirect."""
    computed = interaction.compute_hash(client_nonce, interact_nonce, interact_ref, auth_server)
    click.echo(computed)
    if expect is not None:
        if not interaction.verify(expect, client_nonce, interact_nonce, interact_ref, auth_server):
            _fail("Hash does not match")
        click.echo("✅ Hash matches")


@main.command()
@click.option("--grant-id", default=None, help="Filter by grant ID")
@click.option("--limit", type=int, default=20, help="Number of events")
@click.option("--verify", is_flag=True, help="Check the whole hash chain and exit")
def audit(grant_id: Optional[str], limit: int, verify: bool):
    """View the audit trail."""
    trail = AuditTrail(load_config().audit_path)
    try:
        if verify:
            count = trail.verify_chain()
            click.echo(f"✅ Audit chain intact ({count} events)")
            return
        events = trail.read_events(grant_id=grant_id, limit=limit)
    except AuditChainError as e:
        _fail(str(e))

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        amount = f" {event.amount}" if event.amount else ""
        grant = f" [{event.grant_id}]" if event.grant_id else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"  {ts} {status} {event.event_type}{amount}{grant}{reason}")


if __name__ == "__main__":
    main()
