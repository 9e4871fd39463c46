"""
Mint orchestration.

Flow:
1. Check the caller is the authorized principal
2. Validate exact payment
3. Reserve ids and credit proceeds in one ledger transaction (pending record)
4. Register every new id in one registry transaction
5. Complete the record, or revert it and restore counter and proceeds

Counter and proceeds are committed before the registry is called, and the
operation guard stays held until step 5, so a registry that calls back into
the collection hits ReentrancyError instead of stale state.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from .access import OperationGuard, normalize_address, require_principal
from .audit import AuditTrail, EventType
from .errors import MintError, NestmintError, RegistryError, UnauthorizedError
from .ledger import CollectionLedger, MintRecord, new_record_id
from .money import format_wei
from .payment_gate import PaymentGate
from .registry import AssetRef, AssetRegistry
from .supply import SupplyAllocator, TokenRange
from .treasury import Treasury

logger = logging.getLogger(__name__)


class NestedMinter:
    """Issues tokens under payment and supply constraints."""

    def __init__(
        self,
        ledger: CollectionLedger,
        gate: PaymentGate,
        allocator: SupplyAllocator,
        treasury: Treasury,
        registry: AssetRegistry,
        guard: OperationGuard,
        audit: AuditTrail,
    ):
        self.ledger = ledger
        self.gate = gate
        self.allocator = allocator
        self.treasury = treasury
        self.registry = registry
        self.guard = guard
        self.audit = audit

    @property
    def collection(self) -> str:
        return self.ledger.config.name

    def mint(
        self,
        caller: str,
        recipient: str,
        count: int,
        destination_parent: AssetRef,
        value_wei: int,
    ) -> int:
        """Mint ``count`` tokens as children of ``destination_parent``; return the first id."""
        return self._mint(caller, recipient, count, destination_parent, value_wei)

    def mint_direct(self, caller: str, recipient: str, count: int, value_wei: int) -> int:
        """Mint ``count`` top-level tokens owned by ``recipient``; return the first id."""
        return self._mint(caller, recipient, count, None, value_wei)

    def _mint(
        self,
        caller: str,
        recipient: str,
        count: int,
        destination_parent: Optional[AssetRef],
        value_wei: int,
    ) -> int:
        parent_label = str(destination_parent) if destination_parent is not None else None
        try:
            normalized_caller = require_principal(caller, self.ledger.config.owner)
        except UnauthorizedError as e:
            self._deny(caller, None, count, value_wei, parent_label, e)
            raise
        try:
            owner = normalize_address(recipient)
        except ValueError as e:
            self._deny(normalized_caller, recipient, count, value_wei, parent_label, e)
            raise

        with self.guard.enter("mint"):
            self.audit.log(
                EventType.MINT_REQUESTED,
                collection=self.collection,
                caller=normalized_caller,
                recipient=owner,
                amount_wei=value_wei,
                count=count,
                details={"destination_parent": parent_label},
            )
            try:
                amount = self.gate.validate(count, self.ledger.config.price_per_mint_wei, value_wei)
                record = self._reserve(owner, count, amount, parent_label)
            except (MintError, OverflowError) as e:
                self._deny(normalized_caller, owner, count, value_wei, parent_label, e)
                raise

            token_range = TokenRange(record.first_id, record.count)
            try:
                self._register(token_range, owner, destination_parent)
            except Exception as exc:
                reason = f"{type(exc).__name__}: {exc}"
                self._revert(record, reason)
                if isinstance(exc, NestmintError):
                    raise
                logger.exception("Registry raised an unexpected error")
                raise RegistryError(f"Registry failure: {reason}") from exc

            self._complete(record.mint_id)

        logger.info(
            "Minted %s #%d-#%d to %s for %s",
            self.collection, token_range.first_id, token_range.last_id, owner, format_wei(amount),
        )
        self.audit.log(
            EventType.MINT_COMPLETED,
            collection=self.collection,
            caller=normalized_caller,
            recipient=owner,
            amount_wei=amount,
            first_id=token_range.first_id,
            count=count,
            details={"mint_id": record.mint_id, "destination_parent": parent_label},
        )
        return token_range.first_id

    def _deny(
        self,
        caller: str,
        recipient: Optional[str],
        count: int,
        value_wei: int,
        parent_label: Optional[str],
        error: Exception,
    ) -> None:
        self.audit.log(
            EventType.MINT_DENIED,
            collection=self.collection,
            caller=caller,
            recipient=recipient,
            amount_wei=value_wei,
            count=count,
            success=False,
            reason=str(error),
            details={"error": type(error).__name__, "destination_parent": parent_label},
        )

    def _reserve(
        self,
        owner: str,
        count: int,
        amount_wei: int,
        parent_label: Optional[str],
    ) -> MintRecord:
        with self.ledger.transaction() as conn:
            token_range = self.allocator.reserve(conn, count)
            self.treasury.credit(conn, amount_wei)
            record = MintRecord(
                mint_id=new_record_id("mint"),
                first_id=token_range.first_id,
                count=token_range.count,
                recipient=owner,
                destination_parent=parent_label,
                amount_wei=amount_wei,
                timestamp=int(time.time()),
            )
            self.ledger.insert_mint(conn, record)
        return record

    def _register(
        self,
        token_range: TokenRange,
        owner: str,
        destination_parent: Optional[AssetRef],
    ) -> None:
        with self.registry.transaction() as reg:
            for token_id in token_range:
                child = AssetRef(self.collection, token_id)
                if destination_parent is None:
                    reg.register_root(child, owner)
                else:
                    reg.attach_child(destination_parent, child, owner, b"")

    def _complete(self, mint_id: str) -> None:
        with self.ledger.transaction() as conn:
            self.ledger.set_mint_status(conn, mint_id, "completed")

    def _revert(self, record: MintRecord, reason: str) -> None:
        with self.ledger.transaction() as conn:
            current = self.ledger.get_mint(conn, record.mint_id)
            if current.status != "pending":
                return
            self.allocator.release(conn, TokenRange(current.first_id, current.count))
            self.treasury.debit_back(conn, current.amount_wei)
            self.ledger.set_mint_status(conn, record.mint_id, "reverted", reason)
        logger.warning(
            "Reverted mint %s (#%d-#%d): %s",
            record.mint_id, record.first_id, record.first_id + record.count - 1, reason,
        )
        self.audit.log(
            EventType.MINT_REVERTED,
            collection=self.collection,
            recipient=record.recipient,
            amount_wei=record.amount_wei,
            first_id=record.first_id,
            count=record.count,
            success=False,
            reason=reason,
            details={"mint_id": record.mint_id, "destination_parent": record.destination_parent},
        )

    def recover_pending(self) -> list[MintRecord]:
        """Resolve mints interrupted between reservation and finalize."""
        resolved = []
        # newest first: release() only accepts the most recent reservation
        for record in reversed(self.ledger.list_mints(status="pending")):
            registered = all(
                self.registry.exists(AssetRef(self.collection, token_id))
                for token_id in record.token_ids
            )
            if registered:
                self._complete(record.mint_id)
            else:
                self._revert(record, "Interrupted before registration")
            finalized = self.ledger.find_mint(record.mint_id)
            self.audit.log(
                EventType.RECOVERY,
                collection=self.collection,
                recipient=record.recipient,
                first_id=record.first_id,
                count=record.count,
                success=registered,
                details={"mint_id": record.mint_id, "status": finalized.status},
            )
            resolved.append(finalized)
        return resolved
