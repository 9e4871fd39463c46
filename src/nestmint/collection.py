"""
A collection: supply, payment, nesting and treasury wired together.

Components are held side by side rather than inherited:

    Collection
      ├── PaymentGate
      ├── SupplyAllocator ─┐
      ├── Treasury ────────┼── CollectionLedger (SQLite)
      ├── NestedMinter ────┘
      ├── AssetRegistry   (external)
      └── ValueTransfer   (external)
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .access import OperationGuard
from .audit import AuditTrail, EventType
from .config import CollectionConfig
from .ledger import CollectionLedger, CollectionState, CollectionStatus, MintRecord, WithdrawalRecord
from .minter import NestedMinter
from .money import format_wei
from .payment_gate import PaymentGate
from .registry import AssetRef, AssetRegistry
from .supply import SupplyAllocator
from .transfer import ValueTransfer
from .treasury import Treasury

logger = logging.getLogger(__name__)


class Collection:
    """Public surface of one supply-capped, payment-gated collection."""

    def __init__(
        self,
        config: CollectionConfig,
        directory: Path,
        registry: AssetRegistry,
        transfer: ValueTransfer,
        audit: AuditTrail,
        secrets_dir: Optional[Path] = None,
    ):
        self.config = config
        self.directory = directory
        self.audit = audit
        self.registry = registry
        self.ledger = CollectionLedger(directory, config, secrets_dir=secrets_dir)
        self.guard = OperationGuard(directory / "operation.lock")
        self.gate = PaymentGate()
        self.allocator = SupplyAllocator(self.ledger)
        self.treasury = Treasury(self.ledger, transfer, self.guard, audit)
        self.minter = NestedMinter(
            ledger=self.ledger,
            gate=self.gate,
            allocator=self.allocator,
            treasury=self.treasury,
            registry=registry,
            guard=self.guard,
            audit=audit,
        )
        self.recover()

    @classmethod
    def create(
        cls,
        config: CollectionConfig,
        directory: Path,
        registry: AssetRegistry,
        transfer: ValueTransfer,
        audit: AuditTrail,
        secrets_dir: Optional[Path] = None,
    ) -> "Collection":
        """Create a new collection; fails if one already exists in ``directory``."""
        if (directory / "config.json").exists():
            raise ValueError(f"Collection already exists: {config.name}")
        # config.json marks the collection as existing; written after the ledger
        collection = cls(config, directory, registry, transfer, audit, secrets_dir=secrets_dir)
        config.save(directory)
        audit.log(
            EventType.COLLECTION_CREATED,
            collection=config.name,
            caller=config.owner,
            details={
                "symbol": config.symbol,
                "max_supply": config.max_supply,
                "price_per_mint_wei": str(config.price_per_mint_wei),
            },
        )
        logger.info(
            "Created collection %s (%s): %d max, %s each",
            config.name, config.symbol, config.max_supply, format_wei(config.price_per_mint_wei),
        )
        return collection

    @classmethod
    def open(
        cls,
        directory: Path,
        registry: AssetRegistry,
        transfer: ValueTransfer,
        audit: AuditTrail,
        secrets_dir: Optional[Path] = None,
    ) -> "Collection":
        if not (directory / "config.json").exists():
            raise FileNotFoundError(f"No collection at {directory}")
        config = CollectionConfig.load(directory)
        return cls(config, directory, registry, transfer, audit, secrets_dir=secrets_dir)

    # ── Operations ────────────────────────────────────────────────

    def nest_mint(
        self,
        caller: str,
        recipient: str,
        count: int,
        destination_parent: AssetRef,
        value_wei: int,
    ) -> int:
        return self.minter.mint(caller, recipient, count, destination_parent, value_wei)

    def mint(self, caller: str, recipient: str, count: int, value_wei: int) -> int:
        return self.minter.mint_direct(caller, recipient, count, value_wei)

    def withdraw(self, caller: str, to: str, amount_wei: int) -> WithdrawalRecord:
        return self.treasury.withdraw(caller, to, amount_wei)

    def recover(self) -> tuple[list[MintRecord], list[WithdrawalRecord]]:
        """Resolve operations a previous process left pending."""
        with self.guard.enter("recover"):
            mints = self.minter.recover_pending()
            withdrawals = self.treasury.recover_pending()
        return mints, withdrawals

    # ── Inspection ────────────────────────────────────────────────

    @property
    def state(self) -> CollectionState:
        with self.guard.observe():
            return self.ledger.get_state()

    @property
    def price_per_mint(self) -> int:
        return self.config.price_per_mint_wei

    @property
    def max_supply(self) -> int:
        return self.config.max_supply

    @property
    def authorized_principal(self) -> str:
        return self.config.owner

    @property
    def total_minted(self) -> int:
        return self.state.total_minted

    @property
    def proceeds_balance(self) -> int:
        return self.state.proceeds_wei

    @property
    def status(self) -> CollectionStatus:
        return self.state.status

    def mint_cost(self, count: int) -> int:
        return self.gate.expected_value(count, self.config.price_per_mint_wei)

    def mint_records(self, status: Optional[str] = None) -> list[MintRecord]:
        with self.guard.observe():
            return self.ledger.list_mints(status=status)

    def withdrawal_records(self, status: Optional[str] = None) -> list[WithdrawalRecord]:
        with self.guard.observe():
            return self.ledger.list_withdrawals(status=status)

    def summary(self) -> dict:
        state = self.state
        return {
            "name": state.name,
            "symbol": state.symbol,
            "status": state.status.value,
            "total_minted": state.total_minted,
            "max_supply": state.max_supply,
            "remaining": state.remaining_supply,
            "price_per_mint": format_wei(state.price_per_mint_wei),
            "proceeds": format_wei(state.proceeds_wei),
            "principal": state.principal,
        }
