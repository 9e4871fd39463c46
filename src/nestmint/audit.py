"""
Audit trail for mint and withdrawal attempts.

Events are append-only JSONL entries with an HMAC hash chain so
tampering is detected during reads.
"""

from __future__ import annotations

import fcntl
import hashlib
import hmac
import json
import os
import secrets
import time
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from .storage import ensure_private_dir, ensure_private_file


DEFAULT_AUDIT_PATH = Path.home() / ".nestmint" / "audit.jsonl"
DEFAULT_AUDIT_KEY_PATH = Path.home() / ".nestmint-secrets" / "audit_hmac.key"
_TAIL_BLOCK = 4096


class EventType(str, Enum):
    COLLECTION_CREATED = "collection_created"
    MINT_REQUESTED = "mint_requested"
    MINT_DENIED = "mint_denied"
    MINT_COMPLETED = "mint_completed"
    MINT_REVERTED = "mint_reverted"
    WITHDRAWAL_REQUESTED = "withdrawal_requested"
    WITHDRAWAL_DENIED = "withdrawal_denied"
    WITHDRAWAL_COMPLETED = "withdrawal_completed"
    WITHDRAWAL_FAILED = "withdrawal_failed"
    RECOVERY = "recovery"


@dataclass
class AuditEvent:
    """A single audit trail entry."""

    event_type: str
    timestamp: float
    collection: Optional[str] = None
    caller: Optional[str] = None
    recipient: Optional[str] = None
    amount_wei: Optional[int] = None
    first_id: Optional[int] = None
    count: Optional[int] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    def to_json(self) -> str:
        d = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(d, separators=(",", ":"))


class AuditTrail:
    """Tamper-evident append-only audit log."""

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
    ):
        self.path = path or DEFAULT_AUDIT_PATH
        if key_path is None:
            key_path = DEFAULT_AUDIT_KEY_PATH if path is None else self.path.parent / ".audit_hmac.key"
        self.key_path = key_path

        ensure_private_dir(self.path.parent)
        ensure_private_dir(self.key_path.parent)
        ensure_private_file(self.path)

        self._hmac_key = self._load_or_create_key()

    def _load_or_create_key(self) -> bytes:
        env_key = os.getenv("NESTMINT_AUDIT_HMAC_KEY")
        if env_key:
            return env_key.encode()
        if self.key_path.exists() and self.key_path.stat().st_size > 0:
            return self.key_path.read_bytes().strip()
        key = secrets.token_hex(32).encode()
        self.key_path.write_bytes(key)
        ensure_private_file(self.key_path)
        return key

    def _read_last_hash(self) -> str:
        if not self.path.exists():
            return ""
        with open(self.path, "rb") as f:
            pos = f.seek(0, os.SEEK_END)
            tail = b""
            # walk back until the last non-empty line is complete
            while pos > 0:
                step = min(_TAIL_BLOCK, pos)
                pos -= step
                f.seek(pos)
                tail = f.read(step) + tail
                if b"\n" in tail.rstrip():
                    break
        last_line = tail.rstrip().rsplit(b"\n", 1)[-1].strip()
        if not last_line:
            return ""
        return json.loads(last_line).get("event_hash", "")

    def _event_hash(self, event_payload: dict, prev_hash: str) -> str:
        canonical = json.dumps(event_payload, sort_keys=True, separators=(",", ":"))
        digest = hmac.new(self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256)
        return digest.hexdigest()

    def log(
        self,
        event_type: EventType,
        collection: Optional[str] = None,
        caller: Optional[str] = None,
        recipient: Optional[str] = None,
        amount_wei: Optional[int] = None,
        first_id: Optional[int] = None,
        count: Optional[int] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        base_payload = {
            "event_type": event_type.value,
            "timestamp": time.time(),
            "collection": collection,
            "caller": caller,
            "recipient": recipient,
            "amount_wei": amount_wei,
            "first_id": first_id,
            "count": count,
            "success": success,
            "reason": reason,
            "details": details,
        }
        payload = {k: v for k, v in base_payload.items() if v is not None}

        with open(self.path, "a") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                # other processes append too, so read the tail under the lock
                prev_hash = self._read_last_hash()
                current_hash = self._event_hash(payload, prev_hash)
                event = AuditEvent(
                    **payload,
                    prev_hash=prev_hash or None,
                    event_hash=current_hash,
                )
                f.write(event.to_json() + "\n")
                f.flush()
                os.fsync(f.fileno())
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        ensure_private_file(self.path)

        return event

    def read_events(
        self,
        collection: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        if not self.path.exists():
            return []

        events: list[AuditEvent] = []
        expected_prev = ""
        with open(self.path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                raw = json.loads(line)

                payload = {
                    k: v
                    for k, v in raw.items()
                    if k not in {"prev_hash", "event_hash"}
                }
                prev_hash = raw.get("prev_hash", "") or ""
                event_hash = raw.get("event_hash", "") or ""
                if prev_hash != expected_prev:
                    raise RuntimeError("Audit chain broken: previous hash mismatch")
                expected_hash = self._event_hash(payload, prev_hash)
                if not hmac.compare_digest(expected_hash, event_hash):
                    raise RuntimeError("Audit chain broken: event hash mismatch")
                expected_prev = event_hash

                if collection and raw.get("collection") != collection:
                    continue
                if event_type and raw.get("event_type") != event_type.value:
                    continue

                events.append(
                    AuditEvent(
                        **{
                            k: v
                            for k, v in raw.items()
                            if k in AuditEvent.__dataclass_fields__
                        }
                    )
                )

        return events[-limit:]

    def summary(self, collection: Optional[str] = None) -> dict:
        events = self.read_events(collection=collection, limit=10000)
        by_type: dict[str, int] = {}
        for e in events:
            by_type[e.event_type] = by_type.get(e.event_type, 0) + 1
        failures = [e for e in events if not e.success]
        return {
            "total_events": len(events),
            "by_type": by_type,
            "failures": len(failures),
            "last_event": events[-1].to_json() if events else None,
        }
