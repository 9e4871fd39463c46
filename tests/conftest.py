"""Shared fixtures: a registry, payout book and audit trail per test."""

import pytest
from eth_account import Account

from nestmint.audit import AuditTrail
from nestmint.collection import Collection
from nestmint.config import CollectionConfig
from nestmint.registry import AssetRef, LocalAssetRegistry
from nestmint.transfer import LocalPayoutBook


@pytest.fixture
def owner():
    return Account.create()


@pytest.fixture
def collector():
    return Account.create()


@pytest.fixture
def registry(tmp_path):
    return LocalAssetRegistry(tmp_path / "registry.json")


@pytest.fixture
def payouts(tmp_path):
    return LocalPayoutBook(tmp_path / "payouts.json")


@pytest.fixture
def audit(tmp_path):
    return AuditTrail(path=tmp_path / "audit.jsonl")


@pytest.fixture
def parent(registry, collector):
    ref = AssetRef("kingdoms", 1)
    registry.register_root(ref, collector.address)
    return ref


@pytest.fixture
def make_collection(tmp_path, owner, registry, payouts, audit):
    def _make(max_supply=100, price_per_mint_wei=10, name="heroes", registry_override=None):
        config = CollectionConfig(
            name=name,
            symbol="HERO",
            max_supply=max_supply,
            price_per_mint_wei=price_per_mint_wei,
            owner=owner.address,
        )
        return Collection.create(
            config,
            tmp_path / "collections" / name,
            registry=registry_override or registry,
            transfer=payouts,
            audit=audit,
        )

    return _make
