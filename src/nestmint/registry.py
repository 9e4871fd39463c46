"""Asset registry abstractions for token existence and nesting."""

from __future__ import annotations

import fcntl
import json
import re
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import ContextManager, Iterator, NamedTuple, Optional, Protocol

from .access import normalize_address
from .errors import RegistryError
from .storage import atomic_write_json, ensure_private_dir, ensure_private_file


DEFAULT_REGISTRY_PATH = Path.home() / ".nestmint" / "registry.json"

_REF_RE = re.compile(r"^([a-z0-9][a-z0-9_-]{0,62}):([0-9]+)$")


class AssetRef(NamedTuple):
    """A token in the registry, addressed by collection and id."""

    collection: str
    token_id: int

    @classmethod
    def parse(cls, value: str) -> "AssetRef":
        match = _REF_RE.match(value.strip())
        if match is None:
            raise ValueError(f"Invalid asset reference: {value!r} (expected collection:token_id)")
        return cls(match.group(1), int(match.group(2)))

    def __str__(self) -> str:
        return f"{self.collection}:{self.token_id}"


@dataclass
class AssetRecord:
    asset: AssetRef
    owner: str
    parent: Optional[AssetRef]
    children: list[AssetRef]


class RegistryWriter(Protocol):
    def attach_child(
        self,
        parent: AssetRef,
        child: AssetRef,
        owner: str,
        payload: bytes = b"",
    ) -> None: ...

    def register_root(self, asset: AssetRef, owner: str) -> None: ...


class AssetRegistry(Protocol):
    def transaction(self) -> ContextManager[RegistryWriter]: ...

    def exists(self, asset: AssetRef) -> bool: ...


class _StagedRegistry:
    """Writes against an in-memory copy of the registry state."""

    def __init__(self, state: dict):
        self._state = state

    def _assets(self) -> dict:
        return self._state.setdefault("assets", {})

    def _create(self, asset: AssetRef, owner: str, parent: Optional[AssetRef], payload: bytes) -> None:
        key = str(asset)
        assets = self._assets()
        if key in assets:
            raise RegistryError(f"Asset already exists: {key}")
        assets[key] = {
            "owner": normalize_address(owner),
            "parent": str(parent) if parent is not None else None,
            "children": [],
            "payload": payload.hex(),
        }

    def register_root(self, asset: AssetRef, owner: str) -> None:
        self._create(asset, owner, None, b"")

    def attach_child(
        self,
        parent: AssetRef,
        child: AssetRef,
        owner: str,
        payload: bytes = b"",
    ) -> None:
        parent_record = self._assets().get(str(parent))
        if parent_record is None:
            raise RegistryError(f"Parent asset does not exist: {parent}")
        if parent == child:
            raise RegistryError(f"Asset cannot be its own parent: {child}")
        self._create(child, owner, parent, payload)
        parent_record["children"].append(str(child))


class LocalAssetRegistry:
    """File-backed stand-in for the on-chain asset registry.

    Writes happen inside transaction(): every change is staged on a copy of
    the state and persisted only when the block finishes without an error,
    so a failed nested mint leaves no child attached.
    """

    def __init__(self, path: Path | None = None):
        self.path = path or DEFAULT_REGISTRY_PATH
        ensure_private_dir(self.path.parent)
        self._lock_path = self.path.parent / ".registry.lock"
        ensure_private_file(self._lock_path)
        if not self.path.exists():
            atomic_write_json(self.path, {"assets": {}})

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

    @contextmanager
    def transaction(self) -> Iterator[_StagedRegistry]:
        with self._lock():
            state = self._load_state()
            yield _StagedRegistry(state)
            atomic_write_json(self.path, state)

    def register_root(self, asset: AssetRef, owner: str) -> None:
        with self.transaction() as reg:
            reg.register_root(asset, owner)

    def exists(self, asset: AssetRef) -> bool:
        with self._lock():
            return str(asset) in self._load_state().get("assets", {})

    def get(self, asset: AssetRef) -> Optional[AssetRecord]:
        with self._lock():
            record = self._load_state().get("assets", {}).get(str(asset))
        if record is None:
            return None
        return AssetRecord(
            asset=asset,
            owner=record["owner"],
            parent=AssetRef.parse(record["parent"]) if record.get("parent") else None,
            children=[AssetRef.parse(c) for c in record.get("children", [])],
        )

    def children_of(self, parent: AssetRef) -> list[AssetRef]:
        record = self.get(parent)
        return record.children if record is not None else []

    def count(self, collection: Optional[str] = None) -> int:
        with self._lock():
            assets = self._load_state().get("assets", {})
        if collection is None:
            return len(assets)
        return sum(1 for key in assets if AssetRef.parse(key).collection == collection)
