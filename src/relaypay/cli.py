"""
RelayPay CLI: smart-account sessions and subscription payments.

Commands:
    relaypay derive-address   Show the deterministic account for an owner
    relaypay approvals        Show on-chain trading approvals of an account
    relaypay init             Set up (or resume) a trading session
    relaypay logout           Forget the cached credential of an owner
    relaypay verify-payment   Check a settlement transaction
    relaypay credit           Verify a transaction and credit a subscription
    relaypay purchase         Pay for a tier through the relay and credit it
    relaypay subscription     Show an owner's subscription
    relaypay tiers            List subscription tiers
    relaypay audit            View the audit trail
"""

from __future__ import annotations

import logging
import sys
import time
from contextlib import contextmanager
from typing import Iterator, Optional

import click
from click.core import ParameterSource

from .address import FactoryConfig, derive_account_address, normalize_address
from .approvals import ApprovalChecker
from .audit import AuditTrail, EventType
from .config import BuilderCredentials, ChainConfig
from .credentials import CredentialIssuer, FileCredentialStore
from .errors import RelayPayError
from .ledger import SubscriptionLedger
from .money import format_usd
from .payment import PaymentVerifier
from .purchase import PurchaseFlow
from .rpc import RpcClient
from .session import SessionManager, SessionStep
from .signer import LocalAccountSigner
from .tiers import TIERS

from . import __version__


def _config() -> ChainConfig:
    return ChainConfig.from_env()


def _rpc(config: ChainConfig) -> RpcClient:
    return RpcClient(config.rpc_url, timeout_seconds=config.http_timeout_seconds)


def _ledger(config: ChainConfig) -> SubscriptionLedger:
    return SubscriptionLedger(renewal_period=config.renewal_period)


def _fail(error: Exception) -> None:
    code = getattr(error, "code", type(error).__name__)
    click.echo(f"❌ {code}: {error}", err=True)
    sys.exit(1)


def _resolve_private_key(key_input: str) -> str:
    candidate = key_input.strip()
    if candidate.startswith("0x"):
        candidate = candidate[2:]
    if len(candidate) != 64:
        raise click.BadParameter("Private key must be a 32-byte hex string")
    try:
        int(candidate, 16)
    except ValueError as e:
        raise click.BadParameter("Private key must be hex") from e
    return "0x" + candidate


def _refuse_key_from_argv(param: str, unsafe_allow_key_arg: bool) -> None:
    ctx = click.get_current_context(silent=True)
    key_from_argv = ctx is not None and ctx.get_parameter_source(param) == ParameterSource.COMMANDLINE
    if key_from_argv and not unsafe_allow_key_arg:
        click.echo(
            f"❌ Refusing --{param.replace('_', '-')} from argv. Re-run with prompt input or pass "
            "--unsafe-allow-key-arg to acknowledge the risk.",
            err=True,
        )
        sys.exit(1)


def _confirm_signature(primary_type: str, message: dict) -> bool:
    click.echo(f"✍️  Signature requested: {primary_type}")
    for key, value in message.items():
        shown = value if len(str(value)) <= 80 else f"{str(value)[:77]}..."
        click.echo(f"   {key}: {shown}")
    return click.confirm("   Sign?", default=True)


@contextmanager
def _session_manager(owner_key: str, yes: bool, config: ChainConfig, audit: AuditTrail) -> Iterator[SessionManager]:
    signer = LocalAccountSigner.from_private_key(
        _resolve_private_key(owner_key),
        chain_id=config.chain_id,
        confirm=None if yes else _confirm_signature,
    )
    issuer = CredentialIssuer(config.clob_url, config.chain_id, timeout_seconds=config.http_timeout_seconds)
    with _rpc(config) as rpc, issuer:
        manager = SessionManager(
            signer=signer,
            config=config,
            approvals=ApprovalChecker(rpc, config),
            issuer=issuer,
            store=FileCredentialStore(),
            builder=BuilderCredentials.from_env(),
            audit=audit,
            on_transition=lambda snap: click.echo(f"   … {snap.step.value}"),
        )
        try:
            yield manager
        finally:
            manager.close()


def _start_session(manager: SessionManager):
    snapshot = manager.restore()
    if snapshot.step != SessionStep.COMPLETE:
        snapshot = manager.initialize()
    if snapshot.step != SessionStep.COMPLETE:
        if snapshot.instruction:
            click.echo(f"⚠️  {snapshot.instruction}", err=True)
            sys.exit(1)
        _fail(snapshot.error or RelayPayError("Session setup did not complete"))
    return manager.session


def _key_options(fn):
    fn = click.option(
        "--unsafe-allow-key-arg",
        is_flag=True,
        default=False,
        help="Allow passing --owner-key via argv (unsafe; can leak in shell/process history).",
    )(fn)
    fn = click.option("--owner-key", prompt=True, hide_input=True, help="Owner's Ethereum private key (hex)")(fn)
    fn = click.option("--yes", is_flag=True, default=False, help="Sign every request without asking")(fn)
    return fn


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log progress to stderr")
def main(verbose: bool):
    """RelayPay: smart-account trading sessions and subscription payments."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@main.command("derive-address")
@click.argument("owner")
def derive_address(owner: str):
    """Show the smart account address of OWNER."""
    config = _config()
    try:
        account = derive_account_address(owner, FactoryConfig.from_chain_config(config))
    except RelayPayError as e:
        _fail(e)
    click.echo(account)


@main.command()
@click.argument("owner")
def approvals(owner: str):
    """Show trading approvals of OWNER's account."""
    config = _config()
    try:
        account = derive_account_address(owner, FactoryConfig.from_chain_config(config))
        with _rpc(config) as rpc:
            status = ApprovalChecker(rpc, config).read_status(account)
    except RelayPayError as e:
        _fail(e)

    click.echo(f"🔐 Approvals for {account}")
    for spender in config.spenders:
        allowance = status.allowances[spender]
        ok = "✅" if allowance >= status.threshold else "❌"
        shown = "max" if allowance >= 2**255 else str(allowance)
        click.echo(f"   {ok} allowance {spender}: {shown}")
    for spender in config.spenders:
        ok = "✅" if status.operator_flags[spender] else "❌"
        click.echo(f"   {ok} operator  {spender}")
    click.echo(f"   Sufficient: {'yes' if status.sufficient else 'no'}")


@main.command()
@_key_options
def init(owner_key: str, unsafe_allow_key_arg: bool, yes: bool):
    """Set up or resume the trading session of an owner key."""
    _refuse_key_from_argv("owner_key", unsafe_allow_key_arg)
    config = _config()
    with _session_manager(owner_key, yes, config, AuditTrail()) as manager:
        session = _start_session(manager)
        click.echo(f"✅ Session ready for {session.owner}")
        click.echo(f"   Account:    {session.account_address}")
        click.echo(f"   Credential: {session.credential.key}")


@main.command()
@click.argument("owner")
def logout(owner: str):
    """Forget the cached credential of OWNER."""
    try:
        owner = normalize_address(owner)
    except RelayPayError as e:
        _fail(e)
    FileCredentialStore().clear(owner)
    AuditTrail().log(EventType.CREDENTIAL_CLEARED, owner=owner)
    click.echo(f"👋 Cleared cached credential for {owner}")


@main.command("verify-payment")
@click.argument("tx_id")
@click.option("--amount", required=True, help="Expected amount in USD")
@click.option("--recipient", default=None, help="Expected recipient (default: treasury)")
def verify_payment(tx_id: str, amount: str, recipient: Optional[str]):
    """Check that TX_ID paid AMOUNT to the treasury."""
    config = _config()
    try:
        with _rpc(config) as rpc:
            payment = PaymentVerifier(rpc, config).verify(tx_id, amount, recipient)
    except RelayPayError as e:
        _fail(e)
    click.echo(f"✅ Payment verified: {format_usd(payment.amount)} → {payment.recipient}")
    if payment.payer:
        click.echo(f"   From: {payment.payer}")


@main.command()
@click.argument("tx_id")
@click.option("--owner", required=True, help="Owner address to credit")
@click.option("--tier", required=True, type=click.Choice(sorted(TIERS), case_sensitive=False))
def credit(tx_id: str, owner: str, tier: str):
    """Verify TX_ID and credit it to OWNER's subscription."""
    config = _config()
    audit = AuditTrail()
    try:
        with _rpc(config) as rpc:
            flow = PurchaseFlow(PaymentVerifier(rpc, config), _ledger(config), config, audit=audit)
            subscription = flow.credit(owner, tier, tx_id)
    except RelayPayError as e:
        _fail(e)
    click.echo(f"✅ {subscription.tier} active until {subscription.end_date:%Y-%m-%d %H:%M} UTC")


@main.command()
@click.option("--tier", required=True, type=click.Choice(sorted(TIERS), case_sensitive=False))
@_key_options
def purchase(tier: str, owner_key: str, unsafe_allow_key_arg: bool, yes: bool):
    """Pay for TIER from the owner's account and credit it."""
    _refuse_key_from_argv("owner_key", unsafe_allow_key_arg)
    config = _config()
    audit = AuditTrail()
    with _session_manager(owner_key, yes, config, audit) as manager:
        session = _start_session(manager)
        click.echo(f"💸 Paying {format_usd(TIERS[tier.lower()].price)} for {tier.lower()} from {session.account_address}")
        try:
            with _rpc(config) as rpc:
                flow = PurchaseFlow(PaymentVerifier(rpc, config), _ledger(config), config, audit=audit)
                subscription = flow.purchase(session, tier)
        except RelayPayError as e:
            _fail(e)
    click.echo(f"✅ {subscription.tier} active until {subscription.end_date:%Y-%m-%d %H:%M} UTC")


@main.command()
@click.argument("owner")
def subscription(owner: str):
    """Show OWNER's subscription and remaining quota."""
    config = _config()
    ledger = _ledger(config)
    try:
        current = ledger.get_subscription(owner)
    except RelayPayError as e:
        _fail(e)
    if current is None:
        click.echo(f"No subscription for {owner}")
        return
    state = "active" if current.is_active() else "expired"
    click.echo(f"📊 Subscription for {current.owner}")
    click.echo(f"   Tier:      {current.tier} ({state})")
    click.echo(f"   Ends:      {current.end_date:%Y-%m-%d %H:%M} UTC")
    click.echo(f"   Usage:     {current.usage_count} of {current.quota}")
    click.echo(f"   Remaining: {ledger.remaining_quota(owner)}")


@main.command()
def tiers():
    """List subscription tiers."""
    for tier in TIERS.values():
        click.echo(f"   {tier.name:<6} {format_usd(tier.price):>7}  {tier.quota} generations / period")


@main.command()
@click.option("--owner", default=None, help="Filter by owner address")
@click.option("--limit", type=int, default=20, help="Number of events")
def audit(owner: Optional[str], limit: int):
    """View the audit trail."""
    trail = AuditTrail()
    events = trail.read_events(owner=owner, limit=limit)

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        amount = f" ${event.amount}" if event.amount else ""
        tier = f" [{event.tier}]" if event.tier else ""
        tx = f" {event.tx_id[:10]}…" if event.tx_id else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"  {ts} {status} {event.event_type}{tier}{amount}{tx}{reason}")


if __name__ == "__main__":
    main()
