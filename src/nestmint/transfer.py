"""Outbound value transfer used by treasury withdrawals."""

from __future__ import annotations

import fcntl
import json
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Optional, Protocol

from .access import normalize_address
from .errors import TransferFailedError
from .storage import atomic_write_json, ensure_private_dir, ensure_private_file


class ValueTransfer(Protocol):
    def send(self, to: str, amount_wei: int, reference: str) -> None: ...

    def was_sent(self, reference: str) -> bool: ...


class LocalPayoutBook:
    """File-backed stand-in for a native-currency transfer.

    Credits recipients in a JSON book. Addresses marked as rejecting behave
    like contracts that refuse incoming value, so the failure path can be
    exercised locally. Each transfer carries a reference so an interrupted
    withdrawal can later be matched against what was actually paid out.
    """

    def __init__(self, path: Path, rejecting: Optional[list[str]] = None):
        self.path = path
        ensure_private_dir(self.path.parent)
        self._lock_path = self.path.parent / ".payouts.lock"
        ensure_private_file(self._lock_path)
        if not self.path.exists():
            atomic_write_json(self.path, {"balances": {}, "rejecting": [], "sent": {}})
        for address in rejecting or []:
            self.set_rejecting(address, True)

    @contextmanager
    def _lock(self):
        with open(self._lock_path, "r+") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    def _load_state(self) -> dict:
        with open(self.path, encoding="utf-8") as f:
            return json.load(f)

    def set_rejecting(self, address: str, rejecting: bool) -> None:
        normalized = normalize_address(address)
        with self._lock():
            state = self._load_state()
            current = set(state.get("rejecting", []))
            if rejecting:
                current.add(normalized)
            else:
                current.discard(normalized)
            state["rejecting"] = sorted(current)
            atomic_write_json(self.path, state)

    def send(self, to: str, amount_wei: int, reference: str) -> None:
        normalized = normalize_address(to)
        if amount_wei < 0:
            raise TransferFailedError("Transfer amount must not be negative")

        with self._lock():
            state = self._load_state()
            if normalized in set(state.get("rejecting", [])):
                raise TransferFailedError(f"Recipient {normalized} rejected the transfer")
            sent = state.setdefault("sent", {})
            if reference in sent:
                raise TransferFailedError(f"Transfer reference already used: {reference}")
            balances = state.setdefault("balances", {})
            balances[normalized] = str(int(balances.get(normalized, "0")) + amount_wei)
            sent[reference] = {
                "to": normalized,
                "amount_wei": str(amount_wei),
                "timestamp": int(time.time()),
            }
            atomic_write_json(self.path, state)

    def was_sent(self, reference: str) -> bool:
        with self._lock():
            return reference in self._load_state().get("sent", {})

    def balance_of(self, address: str) -> int:
        normalized = normalize_address(address)
        with self._lock():
            return int(self._load_state().get("balances", {}).get(normalized, "0"))
