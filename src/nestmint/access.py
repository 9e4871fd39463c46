"""
Access control for privileged collection operations.

Two pieces:
- an explicit principal check run as the first step of mint/withdraw
- an operation guard that serializes operations and rejects re-entry
"""

from __future__ import annotations

import fcntl
import re
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from .errors import ReentrancyError, UnauthorizedError
from .storage import ensure_private_file


_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def normalize_address(address: str) -> str:
    """Normalize Ethereum addresses to lower-case hex."""
    candidate = address.strip()
    if candidate.startswith(("0X", "0x")):
        candidate = "0x" + candidate[2:]
    if not _ADDRESS_RE.match(candidate):
        raise ValueError(f"Invalid Ethereum address: {address}")
    return "0x" + candidate[2:].lower()


def require_principal(caller: str, principal: str) -> str:
    """Return the normalized caller, or raise UnauthorizedError."""
    try:
        normalized = normalize_address(caller)
    except ValueError:
        raise UnauthorizedError(caller) from None
    if normalized != normalize_address(principal):
        raise UnauthorizedError(normalized)
    return normalized


class OperationGuard:
    """
    Serializes state-changing operations on one collection.

    Threads wait on an in-process lock, processes on an flock'd file.
    Entering again from the thread that already holds the guard raises
    ReentrancyError instead of deadlocking.
    """

    def __init__(self, lock_path: Path):
        self.lock_path = lock_path
        ensure_private_file(self.lock_path)
        self._lock = threading.Lock()
        self._owner: Optional[int] = None
        self._operation: Optional[str] = None

    @property
    def active_operation(self) -> Optional[str]:
        return self._operation

    @contextmanager
    def enter(self, operation: str) -> Iterator[None]:
        if self._owner == threading.get_ident():
            raise ReentrancyError(
                f"Cannot start {operation} while {self._operation} is in progress"
            )
        with self._lock:
            self._owner = threading.get_ident()
            self._operation = operation
            try:
                with open(self.lock_path, "r+") as lockf:
                    fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
                    try:
                        yield
                    finally:
                        fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)
            finally:
                self._owner = None
                self._operation = None

    @contextmanager
    def observe(self) -> Iterator[None]:
        """Wait until no operation is in progress; the holding thread passes straight through."""
        if self._owner == threading.get_ident():
            yield
            return
        with self._lock:
            with open(self.lock_path, "r+") as lockf:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_SH)
                try:
                    yield
                finally:
                    fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)
