"""
nestmint CLI: payment-gated, supply-capped nested minting.

Commands:
    nestmint create      Create a collection
    nestmint mint        Mint top-level tokens
    nestmint nest-mint   Mint tokens as children of an existing token
    nestmint withdraw    Withdraw mint proceeds
    nestmint status      Show supply and proceeds for a collection
    nestmint audit       View the audit trail
    nestmint registry    Inspect or seed the local asset registry
    nestmint demo        Run a full demo flow
"""

from __future__ import annotations

import sys
import tempfile
import time
from pathlib import Path
from typing import Optional

import click

from . import __version__, config
from .audit import AuditTrail
from .collection import Collection
from .config import CollectionConfig
from .errors import NestmintError
from .money import ether_to_wei, format_wei
from .registry import AssetRef, LocalAssetRegistry
from .transfer import LocalPayoutBook


# ── Wiring ────────────────────────────────────────────────────────

def _audit() -> AuditTrail:
    return AuditTrail(
        path=config.audit_path(),
        key_path=config.secrets_dir() / "audit_hmac.key",
    )


def _registry() -> LocalAssetRegistry:
    return LocalAssetRegistry(config.registry_path())


def _payouts() -> LocalPayoutBook:
    return LocalPayoutBook(config.payouts_path())


def _open_collection(name: str) -> Collection:
    try:
        directory = config.collection_dir(name)
        return Collection.open(
            directory,
            registry=_registry(),
            transfer=_payouts(),
            audit=_audit(),
            secrets_dir=config.secrets_dir(),
        )
    except (FileNotFoundError, ValueError) as e:
        click.echo(f"❌ Cannot open collection {name}: {e}", err=True)
        sys.exit(1)


def _resolve_wei(ether: Optional[str], wei: Optional[int], label: str) -> int:
    if (ether is None) == (wei is None):
        click.echo(f"❌ Pass exactly one of --{label} or --{label}-wei", err=True)
        sys.exit(1)
    if wei is not None:
        return wei
    try:
        return ether_to_wei(ether)
    except (ValueError, ArithmeticError) as e:
        click.echo(f"❌ Invalid --{label}: {e}", err=True)
        sys.exit(1)


def _fail(action: str, error: Exception) -> None:
    click.echo(f"❌ {action} failed ({type(error).__name__}): {error}", err=True)
    sys.exit(1)


# ── Commands ──────────────────────────────────────────────────────

@click.group()
@click.version_option(version=__version__)
def main():
    """nestmint — payment-gated, supply-capped nested minting."""
    pass


@main.command()
@click.argument("name")
@click.option("--symbol", required=True, help="Collection symbol")
@click.option("--max-supply", type=int, required=True, help="Fixed supply cap")
@click.option("--price", default=None, help="Price per mint (ETH)")
@click.option("--price-wei", type=int, default=None, help="Price per mint (wei)")
@click.option("--owner", required=True, help="Authorized principal address")
def create(
    name: str,
    symbol: str,
    max_supply: int,
    price: Optional[str],
    price_wei: Optional[int],
    owner: str,
):
    """Create a new collection."""
    price_per_mint = _resolve_wei(price, price_wei, "price")
    try:
        collection_config = CollectionConfig(
            name=name,
            symbol=symbol,
            max_supply=max_supply,
            price_per_mint_wei=price_per_mint,
            owner=owner,
        )
        directory = config.collection_dir(name)
        collection = Collection.create(
            collection_config,
            directory,
            registry=_registry(),
            transfer=_payouts(),
            audit=_audit(),
            secrets_dir=config.secrets_dir(),
        )
    except ValueError as e:
        _fail("Create", e)

    click.echo(f"✅ Collection created: {collection.config.name} ({collection.config.symbol})")
    click.echo(f"   Supply:    {collection.max_supply}")
    click.echo(f"   Price:     {format_wei(collection.price_per_mint)} per mint")
    click.echo(f"   Principal: {collection.authorized_principal}")
    click.echo(f"   Saved to:  {directory}")


@main.command()
@click.argument("name")
@click.option("--caller", required=True, help="Address submitting the mint")
@click.option("--to", "recipient", required=True, help="Owner of the new tokens")
@click.option("--count", type=int, required=True, help="Number of tokens")
@click.option("--value", default=None, help="Attached value (ETH)")
@click.option("--value-wei", type=int, default=None, help="Attached value (wei)")
def mint(
    name: str,
    caller: str,
    recipient: str,
    count: int,
    value: Optional[str],
    value_wei: Optional[int],
):
    """Mint top-level tokens."""
    amount = _resolve_wei(value, value_wei, "value")
    collection = _open_collection(name)
    try:
        first_id = collection.mint(caller, recipient, count, amount)
    except (NestmintError, ValueError, OverflowError) as e:
        _fail("Mint", e)

    click.echo(f"✅ Minted {count} × {name}: #{first_id}–#{first_id + count - 1}")
    click.echo(f"   Supply: {collection.total_minted} of {collection.max_supply}")


@main.command("nest-mint")
@click.argument("name")
@click.option("--caller", required=True, help="Address submitting the mint")
@click.option("--to", "recipient", required=True, help="Owner of the new tokens")
@click.option("--count", type=int, required=True, help="Number of tokens")
@click.option("--parent", required=True, help="Destination parent (collection:token_id)")
@click.option("--value", default=None, help="Attached value (ETH)")
@click.option("--value-wei", type=int, default=None, help="Attached value (wei)")
def nest_mint(
    name: str,
    caller: str,
    recipient: str,
    count: int,
    parent: str,
    value: Optional[str],
    value_wei: Optional[int],
):
    """Mint tokens as children of an existing token."""
    amount = _resolve_wei(value, value_wei, "value")
    try:
        destination = AssetRef.parse(parent)
    except ValueError as e:
        _fail("Nest mint", e)
    collection = _open_collection(name)
    try:
        first_id = collection.nest_mint(caller, recipient, count, destination, amount)
    except (NestmintError, ValueError, OverflowError) as e:
        _fail("Nest mint", e)

    click.echo(f"✅ Minted {count} × {name} into {destination}: #{first_id}–#{first_id + count - 1}")
    click.echo(f"   Supply: {collection.total_minted} of {collection.max_supply}")


@main.command()
@click.argument("name")
@click.option("--caller", required=True, help="Address requesting the withdrawal")
@click.option("--to", "recipient", required=True, help="Payee address")
@click.option("--amount", default=None, help="Amount (ETH)")
@click.option("--amount-wei", type=int, default=None, help="Amount (wei)")
def withdraw(
    name: str,
    caller: str,
    recipient: str,
    amount: Optional[str],
    amount_wei: Optional[int],
):
    """Withdraw accumulated mint proceeds."""
    wei = _resolve_wei(amount, amount_wei, "amount")
    collection = _open_collection(name)
    try:
        record = collection.withdraw(caller, recipient, wei)
    except (NestmintError, ValueError) as e:
        _fail("Withdrawal", e)

    click.echo(f"✅ Withdrew {format_wei(record.amount_wei)} to {record.recipient}")
    click.echo(f"   Withdrawal: {record.withdrawal_id}")
    click.echo(f"   Remaining:  {format_wei(collection.proceeds_balance)}")


@main.command()
@click.argument("name")
def status(name: str):
    """Show supply and proceeds for a collection."""
    collection = _open_collection(name)
    summary = collection.summary()

    click.echo(f"📊 {summary['name']} ({summary['symbol']}) — {summary['status']}")
    click.echo(f"   Minted:    {summary['total_minted']} of {summary['max_supply']}")
    click.echo(f"   Remaining: {summary['remaining']}")
    click.echo(f"   Price:     {summary['price_per_mint']}")
    click.echo(f"   Proceeds:  {summary['proceeds']}")
    click.echo(f"   Principal: {summary['principal']}")


@main.command()
@click.option("--collection", default=None, help="Filter by collection")
@click.option("--limit", type=int, default=20, help="Number of events")
def audit(collection: Optional[str], limit: int):
    """View the audit trail."""
    trail = _audit()
    events = trail.read_events(collection=collection, limit=limit)

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        mark = "✅" if event.success else "❌"
        amount = f" {format_wei(event.amount_wei)}" if event.amount_wei else ""
        ids = f" #{event.first_id}+{event.count}" if event.first_id else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"  {ts} {mark} {event.event_type} {event.collection or ''}{ids}{amount}{reason}")


@main.group("registry")
def registry_group():
    """Inspect or seed the local asset registry."""
    pass


@registry_group.command("add-root")
@click.argument("asset")
@click.option("--owner", required=True, help="Owner address")
def registry_add_root(asset: str, owner: str):
    """Register an existing top-level token (collection:token_id)."""
    try:
        ref = AssetRef.parse(asset)
        _registry().register_root(ref, owner)
    except (NestmintError, ValueError) as e:
        _fail("Register", e)
    click.echo(f"✅ Registered {ref}")


@registry_group.command("show")
@click.argument("asset")
def registry_show(asset: str):
    """Show a token's owner, parent and children."""
    try:
        ref = AssetRef.parse(asset)
    except ValueError as e:
        _fail("Lookup", e)
    record = _registry().get(ref)
    if record is None:
        click.echo(f"❌ Asset not found: {ref}", err=True)
        sys.exit(1)
    click.echo(f"🔗 {record.asset}")
    click.echo(f"   Owner:    {record.owner}")
    click.echo(f"   Parent:   {record.parent or '—'}")
    click.echo(f"   Children: {', '.join(str(c) for c in record.children) or '—'}")


@main.command()
def demo():
    """Run a full demo in a throwaway directory."""
    from eth_account import Account

    click.echo("🎬 nestmint demo — nested mint with exact payment")
    click.echo("=" * 50)

    with tempfile.TemporaryDirectory() as tmp:
        base = Path(tmp)
        owner = Account.create()
        collector = Account.create()
        click.echo("\n1️⃣  Generating accounts...")
        click.echo(f"   Principal: {owner.address}")
        click.echo(f"   Collector: {collector.address}")

        registry = LocalAssetRegistry(base / "registry.json")
        payouts = LocalPayoutBook(base / "payouts.json")
        trail = AuditTrail(path=base / "audit.jsonl")
        parent = AssetRef("kingdoms", 1)
        registry.register_root(parent, collector.address)

        click.echo("\n2️⃣  Creating collection (5 max, 0.01 ETH each)...")
        collection = Collection.create(
            CollectionConfig(
                name="heroes",
                symbol="HERO",
                max_supply=5,
                price_per_mint_wei=ether_to_wei("0.01"),
                owner=owner.address,
            ),
            base / "collections" / "heroes",
            registry=registry,
            transfer=payouts,
            audit=trail,
        )

        click.echo(f"\n3️⃣  Minting into {parent}...")
        attempts = [
            ("exact payment", owner.address, 3, collection.mint_cost(3)),
            ("underpaid", owner.address, 1, ether_to_wei("0.005")),
            ("not the principal", collector.address, 1, collection.mint_cost(1)),
            ("over the cap", owner.address, 3, collection.mint_cost(3)),
        ]
        for label, caller, count, value in attempts:
            try:
                first_id = collection.nest_mint(caller, collector.address, count, parent, value)
                click.echo(f"   ✅ {label}: #{first_id}–#{first_id + count - 1}")
            except NestmintError as e:
                click.echo(f"   ❌ {label}: {type(e).__name__}")

        click.echo(f"   Children of {parent}: {', '.join(str(c) for c in registry.children_of(parent))}")

        click.echo("\n4️⃣  Withdrawing proceeds...")
        record = collection.withdraw(owner.address, owner.address, collection.proceeds_balance)
        click.echo(f"   ✅ {format_wei(record.amount_wei)} → {record.recipient}")

        click.echo("\n5️⃣  Audit trail...")
        for event in trail.read_events(collection="heroes", limit=20):
            mark = "✅" if event.success else "❌"
            click.echo(f"   {mark} {event.event_type}")

    click.echo("\n" + "=" * 50)
    click.echo("🎉 Demo complete! Pay → Reserve → Nest → Withdraw → Audit")


if __name__ == "__main__":
    main()
