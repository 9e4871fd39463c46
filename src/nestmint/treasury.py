"""
Custody of mint proceeds.

Flow for a withdrawal:
1. Check the caller is the authorized principal
2. Debit proceeds and record a pending withdrawal (one ledger transaction)
3. Transfer value out
4. Complete the record, or mark it failed and restore the balance
"""

from __future__ import annotations

import logging
import sqlite3
import time

from .access import OperationGuard, normalize_address, require_principal
from .audit import AuditTrail, EventType
from .errors import TransferFailedError, UnauthorizedError
from .ledger import CollectionLedger, WithdrawalRecord, new_record_id
from .money import MAX_UINT256, format_wei
from .transfer import ValueTransfer

logger = logging.getLogger(__name__)


class Treasury:
    """Holds ProceedsBalance; the only component that changes it."""

    def __init__(
        self,
        ledger: CollectionLedger,
        transfer: ValueTransfer,
        guard: OperationGuard,
        audit: AuditTrail,
    ):
        self.ledger = ledger
        self.transfer = transfer
        self.guard = guard
        self.audit = audit

    @property
    def collection(self) -> str:
        return self.ledger.config.name

    def balance(self) -> int:
        return self.ledger.get_state().proceeds_wei

    def credit(self, conn: sqlite3.Connection, amount_wei: int) -> int:
        """Add a validated mint payment on the caller's open transaction."""
        state = self.ledger.load_state(conn)
        new_balance = state.proceeds_wei + amount_wei
        if new_balance > MAX_UINT256:
            raise OverflowError("Proceeds balance overflows uint256")
        self.ledger.set_proceeds(conn, new_balance)
        return new_balance

    def debit_back(self, conn: sqlite3.Connection, amount_wei: int) -> None:
        """Remove a credit whose mint is being reverted."""
        state = self.ledger.load_state(conn)
        if amount_wei > state.proceeds_wei:
            raise RuntimeError("Cannot revert a credit larger than the held balance")
        self.ledger.set_proceeds(conn, state.proceeds_wei - amount_wei)

    def withdraw(self, caller: str, to: str, amount_wei: int) -> WithdrawalRecord:
        try:
            normalized_caller = require_principal(caller, self.ledger.config.owner)
        except UnauthorizedError as e:
            self._deny(caller, to, amount_wei, e)
            raise
        try:
            recipient = normalize_address(to)
            if amount_wei < 0:
                raise ValueError("Withdrawal amount must not be negative")
        except ValueError as e:
            self._deny(normalized_caller, to, amount_wei, e)
            raise

        with self.guard.enter("withdraw"):
            self.audit.log(
                EventType.WITHDRAWAL_REQUESTED,
                collection=self.collection,
                caller=normalized_caller,
                recipient=recipient,
                amount_wei=amount_wei,
            )
            record = self._reserve(recipient, amount_wei)

            try:
                self.transfer.send(recipient, amount_wei, record.withdrawal_id)
            except Exception as exc:
                reason = f"{type(exc).__name__}: {exc}"
                self._finalize(record.withdrawal_id, success=False, reason=reason)
                logger.warning(
                    "Withdrawal %s of %s to %s failed: %s",
                    record.withdrawal_id, format_wei(amount_wei), recipient, reason,
                )
                self.audit.log(
                    EventType.WITHDRAWAL_FAILED,
                    collection=self.collection,
                    caller=normalized_caller,
                    recipient=recipient,
                    amount_wei=amount_wei,
                    success=False,
                    reason=reason,
                    details={"withdrawal_id": record.withdrawal_id},
                )
                if isinstance(exc, TransferFailedError):
                    raise
                raise TransferFailedError(f"Transfer failed: {reason}") from exc

            completed = self._finalize(record.withdrawal_id, success=True)

        logger.info(
            "Withdrew %s from %s to %s", format_wei(amount_wei), self.collection, recipient
        )
        self.audit.log(
            EventType.WITHDRAWAL_COMPLETED,
            collection=self.collection,
            caller=normalized_caller,
            recipient=recipient,
            amount_wei=amount_wei,
            details={"withdrawal_id": completed.withdrawal_id},
        )
        return completed

    def _deny(self, caller: str, recipient: str, amount_wei: int, error: Exception) -> None:
        self.audit.log(
            EventType.WITHDRAWAL_DENIED,
            collection=self.collection,
            caller=caller,
            recipient=recipient,
            amount_wei=amount_wei,
            success=False,
            reason=str(error),
            details={"error": type(error).__name__},
        )

    def _reserve(self, recipient: str, amount_wei: int) -> WithdrawalRecord:
        with self.ledger.transaction() as conn:
            state = self.ledger.load_state(conn)
            if amount_wei > state.proceeds_wei:
                reason = (
                    f"Insufficient balance: requested {format_wei(amount_wei)}, "
                    f"held {format_wei(state.proceeds_wei)}"
                )
                self.audit.log(
                    EventType.WITHDRAWAL_FAILED,
                    collection=self.collection,
                    recipient=recipient,
                    amount_wei=amount_wei,
                    success=False,
                    reason=reason,
                )
                raise TransferFailedError(reason)
            record = WithdrawalRecord(
                withdrawal_id=new_record_id("wd"),
                recipient=recipient,
                amount_wei=amount_wei,
                timestamp=int(time.time()),
            )
            self.ledger.insert_withdrawal(conn, record)
            self.ledger.set_proceeds(conn, state.proceeds_wei - amount_wei)
        return record

    def _finalize(self, withdrawal_id: str, success: bool, reason: str | None = None) -> WithdrawalRecord:
        with self.ledger.transaction() as conn:
            record = self.ledger.get_withdrawal(conn, withdrawal_id)
            if record.status != "pending":
                return record
            if success:
                self.ledger.set_withdrawal_status(conn, withdrawal_id, "completed")
            else:
                state = self.ledger.load_state(conn)
                self.ledger.set_proceeds(conn, state.proceeds_wei + record.amount_wei)
                self.ledger.set_withdrawal_status(conn, withdrawal_id, "failed", reason)
            return self.ledger.get_withdrawal(conn, withdrawal_id)

    def recover_pending(self) -> list[WithdrawalRecord]:
        """Resolve withdrawals interrupted between debit and finalize."""
        resolved = []
        for record in self.ledger.list_withdrawals(status="pending"):
            sent = self.transfer.was_sent(record.withdrawal_id)
            reason = None if sent else "Interrupted before transfer"
            finalized = self._finalize(record.withdrawal_id, success=sent, reason=reason)
            logger.warning(
                "Recovered withdrawal %s as %s", record.withdrawal_id, finalized.status
            )
            self.audit.log(
                EventType.RECOVERY,
                collection=self.collection,
                recipient=record.recipient,
                amount_wei=record.amount_wei,
                success=sent,
                reason=reason,
                details={"withdrawal_id": record.withdrawal_id, "status": finalized.status},
            )
            resolved.append(finalized)
        return resolved
