"""
Collection configuration and storage locations.

All state lives under the nestmint home directory (``~/.nestmint`` unless
``NESTMINT_HOME`` is set):

    <home>/collections/<name>/ledger.sqlite3
    <home>/collections/<name>/config.json
    <home>/registry.json          (NESTMINT_REGISTRY_PATH)
    <home>/payouts.json           (NESTMINT_PAYOUTS_PATH)
    <home>/audit.jsonl
"""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .access import normalize_address
from .money import MAX_UINT256
from .storage import atomic_write_json, ensure_private_dir, safe_child_path


_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9_-]{0,62}$")
# counters live in SQLite INTEGER columns
MAX_SUPPLY_LIMIT = 2**63 - 1


def nestmint_home() -> Path:
    override = os.getenv("NESTMINT_HOME")
    return Path(override) if override else Path.home() / ".nestmint"


def registry_path() -> Path:
    override = os.getenv("NESTMINT_REGISTRY_PATH")
    return Path(override) if override else nestmint_home() / "registry.json"


def payouts_path() -> Path:
    override = os.getenv("NESTMINT_PAYOUTS_PATH")
    return Path(override) if override else nestmint_home() / "payouts.json"


def audit_path() -> Path:
    return nestmint_home() / "audit.jsonl"


def secrets_dir() -> Path:
    return nestmint_home().parent / ".nestmint-secrets"


def collections_dir() -> Path:
    return nestmint_home() / "collections"


def collection_dir(name: str, base_dir: Optional[Path] = None) -> Path:
    base = base_dir or collections_dir()
    ensure_private_dir(base)
    return safe_child_path(base, name)


@dataclass(frozen=True)
class CollectionConfig:
    """Immutable parameters fixed when a collection is created."""

    name: str
    symbol: str
    max_supply: int
    price_per_mint_wei: int
    owner: str

    def __post_init__(self):
        if not _NAME_RE.match(self.name):
            raise ValueError(
                f"Invalid collection name: {self.name!r} "
                "(lower-case letters, digits, '-' and '_')"
            )
        if not self.symbol.strip():
            raise ValueError("Collection symbol must not be empty")
        if not 0 < self.max_supply <= MAX_SUPPLY_LIMIT:
            raise ValueError(f"max_supply must be between 1 and {MAX_SUPPLY_LIMIT}")
        if not 0 <= self.price_per_mint_wei <= MAX_UINT256:
            raise ValueError("price_per_mint_wei must be a uint256")
        object.__setattr__(self, "owner", normalize_address(self.owner))

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "symbol": self.symbol,
            "max_supply": self.max_supply,
            "price_per_mint_wei": str(self.price_per_mint_wei),
            "owner": self.owner,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CollectionConfig":
        return cls(
            name=str(data["name"]),
            symbol=str(data["symbol"]),
            max_supply=int(data["max_supply"]),
            price_per_mint_wei=int(data["price_per_mint_wei"]),
            owner=str(data["owner"]),
        )

    def save(self, directory: Path) -> Path:
        ensure_private_dir(directory)
        path = directory / "config.json"
        atomic_write_json(path, self.to_dict())
        return path

    @classmethod
    def load(cls, directory: Path) -> "CollectionConfig":
        with open(directory / "config.json", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))
