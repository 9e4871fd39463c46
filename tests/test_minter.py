"""Tests for nested mint orchestration."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager

import pytest
from eth_account import Account

from nestmint.audit import EventType
from nestmint.collection import Collection
from nestmint.errors import (
    MintZeroError,
    ReentrancyError,
    RegistryError,
    SupplyExceededError,
    UnauthorizedError,
    WrongPaymentAmountError,
)
from nestmint.ledger import CollectionStatus, MintRecord, new_record_id
from nestmint.registry import AssetRef


class HookedRegistry:
    """Wraps a registry and runs a callback inside its transaction."""

    def __init__(self, inner, hook=None, fail_on_attach=None):
        self.inner = inner
        self.hook = hook
        self.fail_on_attach = fail_on_attach

    @contextmanager
    def transaction(self):
        with self.inner.transaction() as reg:
            if self.hook is not None:
                self.hook()
            yield _FlakyWriter(reg, self.fail_on_attach)

    def exists(self, asset):
        return self.inner.exists(asset)


class _FlakyWriter:
    def __init__(self, inner, fail_on_attach):
        self.inner = inner
        self.fail_on_attach = fail_on_attach
        self.attached = 0

    def attach_child(self, parent, child, owner, payload=b""):
        self.attached += 1
        if self.fail_on_attach == self.attached:
            raise ConnectionError("registry node unreachable")
        self.inner.attach_child(parent, child, owner, payload)

    def register_root(self, asset, owner):
        self.inner.register_root(asset, owner)


class TestNestMint:
    def test_exact_payment_mints_first_range(self, make_collection, owner, collector, parent, registry):
        collection = make_collection(max_supply=100, price_per_mint_wei=10)

        first_id = collection.nest_mint(owner.address, collector.address, 5, parent, 50)

        assert first_id == 1
        assert collection.total_minted == 5
        assert collection.proceeds_balance == 50
        assert registry.children_of(parent) == [AssetRef("heroes", i) for i in range(1, 6)]
        child = registry.get(AssetRef("heroes", 3))
        assert child.parent == parent
        assert child.owner == collector.address.lower()

    def test_underpayment_rejected_without_state_change(self, make_collection, owner, collector, parent):
        collection = make_collection(max_supply=100, price_per_mint_wei=10)

        with pytest.raises(WrongPaymentAmountError):
            collection.nest_mint(owner.address, collector.address, 5, parent, 49)

        assert collection.total_minted == 0
        assert collection.proceeds_balance == 0
        assert collection.mint_records() == []

    def test_overpayment_rejected(self, make_collection, owner, collector, parent):
        collection = make_collection(max_supply=100, price_per_mint_wei=10)

        with pytest.raises(WrongPaymentAmountError):
            collection.nest_mint(owner.address, collector.address, 5, parent, 51)

        assert collection.total_minted == 0
        assert collection.proceeds_balance == 0

    def test_supply_exceeded_near_cap(self, make_collection, owner, collector, parent):
        collection = make_collection(max_supply=100, price_per_mint_wei=10)
        collection.nest_mint(owner.address, collector.address, 98, parent, 980)

        with pytest.raises(SupplyExceededError):
            collection.nest_mint(owner.address, collector.address, 5, parent, 50)

        assert collection.total_minted == 98
        assert collection.proceeds_balance == 980

    def test_zero_count_rejected(self, make_collection, owner, collector, parent):
        collection = make_collection()
        with pytest.raises(MintZeroError):
            collection.nest_mint(owner.address, collector.address, 0, parent, 0)
        assert collection.total_minted == 0

    def test_non_principal_rejected_even_with_exact_payment(self, make_collection, collector, parent):
        collection = make_collection(price_per_mint_wei=10)
        stranger = Account.create()

        with pytest.raises(UnauthorizedError):
            collection.nest_mint(stranger.address, collector.address, 1, parent, 10)

        assert collection.total_minted == 0
        assert collection.proceeds_balance == 0

    @pytest.mark.parametrize(
        "count, value_wei",
        [
            (2, 19),  # wrong payment
            (2, 0),  # no payment
            (11, 110),  # over the cap, exact payment
            (11, 7),  # over the cap, wrong payment
        ],
    )
    def test_non_principal_rejected_before_payment_and_supply(
        self, make_collection, owner, collector, parent, count, value_wei
    ):
        collection = make_collection(max_supply=10, price_per_mint_wei=10)
        collection.nest_mint(owner.address, collector.address, 1, parent, 10)

        with pytest.raises(UnauthorizedError):
            collection.nest_mint(collector.address, collector.address, count, parent, value_wei)

        assert collection.total_minted == 1
        assert collection.proceeds_balance == 10
        assert len(collection.mint_records()) == 1

    def test_principal_address_case_insensitive(self, make_collection, owner, collector, parent):
        collection = make_collection(price_per_mint_wei=10)
        first_id = collection.nest_mint(owner.address.lower(), collector.address, 1, parent, 10)
        assert first_id == 1

    def test_successive_ranges_are_contiguous(self, make_collection, owner, collector, parent):
        collection = make_collection(max_supply=20, price_per_mint_wei=3)
        firsts = []
        counts = [2, 5, 1, 4]
        for count in counts:
            firsts.append(
                collection.nest_mint(owner.address, collector.address, count, parent, count * 3)
            )

        assert firsts == [1, 3, 8, 9]
        for k in range(len(counts) - 1):
            assert firsts[k + 1] == firsts[k] + counts[k]
        assert collection.total_minted == sum(counts)

    def test_sold_out_is_terminal(self, make_collection, owner, collector, parent):
        collection = make_collection(max_supply=3, price_per_mint_wei=1)
        assert collection.status == CollectionStatus.ACTIVE

        collection.nest_mint(owner.address, collector.address, 3, parent, 3)
        assert collection.status == CollectionStatus.SOLD_OUT

        with pytest.raises(SupplyExceededError):
            collection.nest_mint(owner.address, collector.address, 1, parent, 1)
        assert collection.status == CollectionStatus.SOLD_OUT

    def test_direct_mint_registers_roots(self, make_collection, owner, collector, registry):
        collection = make_collection(price_per_mint_wei=10)

        first_id = collection.mint(owner.address, collector.address, 2, 20)

        assert first_id == 1
        record = registry.get(AssetRef("heroes", 2))
        assert record.parent is None
        assert record.owner == collector.address.lower()


class TestAtomicity:
    def test_missing_parent_rolls_back(self, make_collection, owner, collector, registry):
        collection = make_collection(price_per_mint_wei=10)

        with pytest.raises(RegistryError, match="Parent"):
            collection.nest_mint(owner.address, collector.address, 3, AssetRef("kingdoms", 404), 30)

        assert collection.total_minted == 0
        assert collection.proceeds_balance == 0
        assert registry.count("heroes") == 0
        reverted = collection.mint_records(status="reverted")
        assert len(reverted) == 1
        assert "Parent asset does not exist" in reverted[0].reason

    def test_failure_partway_leaves_no_children(self, make_collection, owner, collector, parent, registry):
        collection = make_collection(price_per_mint_wei=10)
        # id 3 is already taken, so attaching the third child fails
        registry.register_root(AssetRef("heroes", 3), collector.address)

        with pytest.raises(RegistryError, match="already exists"):
            collection.nest_mint(owner.address, collector.address, 5, parent, 50)

        assert collection.total_minted == 0
        assert collection.proceeds_balance == 0
        assert registry.children_of(parent) == []
        assert not registry.exists(AssetRef("heroes", 1))

    def test_unexpected_registry_error_is_wrapped(self, make_collection, owner, collector, parent, registry):
        flaky = HookedRegistry(registry, fail_on_attach=2)
        collection = make_collection(price_per_mint_wei=10, registry_override=flaky)

        with pytest.raises(RegistryError) as exc:
            collection.nest_mint(owner.address, collector.address, 4, parent, 40)

        assert isinstance(exc.value.__cause__, ConnectionError)
        assert collection.total_minted == 0
        assert collection.proceeds_balance == 0
        assert registry.children_of(parent) == []

    def test_next_mint_reuses_reverted_ids(self, make_collection, owner, collector, parent):
        collection = make_collection(price_per_mint_wei=10)
        with pytest.raises(RegistryError):
            collection.nest_mint(owner.address, collector.address, 2, AssetRef("kingdoms", 404), 20)

        assert collection.nest_mint(owner.address, collector.address, 2, parent, 20) == 1


class TestReentrancy:
    def test_reentrant_mint_blocked_and_rolled_back(self, make_collection, owner, collector, parent, registry):
        holder = {}

        def reenter():
            holder["collection"].nest_mint(owner.address, collector.address, 1, parent, 10)

        hooked = HookedRegistry(registry, hook=reenter)
        collection = make_collection(price_per_mint_wei=10, registry_override=hooked)
        holder["collection"] = collection

        with pytest.raises(ReentrancyError):
            collection.nest_mint(owner.address, collector.address, 2, parent, 20)

        assert collection.total_minted == 0
        assert collection.proceeds_balance == 0
        assert registry.children_of(parent) == []

    def test_reentrant_withdraw_blocked(self, make_collection, owner, collector, parent, registry, payouts):
        holder = {"armed": False}

        def reenter():
            if holder["armed"]:
                holder["collection"].withdraw(owner.address, owner.address, 10)

        hooked = HookedRegistry(registry, hook=reenter)
        collection = make_collection(price_per_mint_wei=10, registry_override=hooked)
        holder["collection"] = collection
        collection.nest_mint(owner.address, collector.address, 1, parent, 10)

        holder["armed"] = True
        with pytest.raises(ReentrancyError):
            collection.nest_mint(owner.address, collector.address, 1, parent, 10)

        assert collection.total_minted == 1
        assert collection.proceeds_balance == 10
        assert payouts.balance_of(owner.address) == 0


class TestConcurrency:
    def test_concurrent_mints_never_exceed_cap(self, make_collection, owner, collector, parent):
        collection = make_collection(max_supply=20, price_per_mint_wei=1)

        def attempt(_: int):
            try:
                return collection.nest_mint(owner.address, collector.address, 3, parent, 3)
            except SupplyExceededError:
                return None

        with ThreadPoolExecutor(max_workers=8) as ex:
            results = list(ex.map(attempt, range(12)))

        firsts = sorted(r for r in results if r is not None)
        assert len(firsts) == 6
        assert firsts == [1, 4, 7, 10, 13, 16]
        assert collection.total_minted == 18
        assert collection.proceeds_balance == 18


class TestRecovery:
    def _leave_pending_mint(self, collection, collector, count, amount):
        with collection.ledger.transaction() as conn:
            token_range = collection.allocator.reserve(conn, count)
            collection.treasury.credit(conn, amount)
            collection.ledger.insert_mint(
                conn,
                MintRecord(
                    mint_id=new_record_id("mint"),
                    first_id=token_range.first_id,
                    count=count,
                    recipient=collector.address.lower(),
                    destination_parent="kingdoms:1",
                    amount_wei=amount,
                    timestamp=int(time.time()),
                ),
            )
        return token_range

    def test_unregistered_pending_mint_reverted_on_open(
        self, make_collection, collector, registry, payouts, audit
    ):
        collection = make_collection(price_per_mint_wei=10)
        self._leave_pending_mint(collection, collector, 2, 20)
        assert collection.total_minted == 2

        reopened = Collection.open(collection.directory, registry, payouts, audit)

        assert reopened.total_minted == 0
        assert reopened.proceeds_balance == 0
        assert reopened.mint_records(status="reverted")[0].reason == "Interrupted before registration"

    def test_registered_pending_mint_completed_on_open(
        self, make_collection, collector, parent, registry, payouts, audit
    ):
        collection = make_collection(price_per_mint_wei=10)
        token_range = self._leave_pending_mint(collection, collector, 2, 20)
        with registry.transaction() as reg:
            for token_id in token_range:
                reg.attach_child(parent, AssetRef("heroes", token_id), collector.address)

        reopened = Collection.open(collection.directory, registry, payouts, audit)

        assert reopened.total_minted == 2
        assert reopened.proceeds_balance == 20
        assert len(reopened.mint_records(status="completed")) == 1
        assert audit.read_events(collection="heroes", event_type=EventType.RECOVERY)


class TestIsolation:
    def test_reader_waits_for_failed_mint_to_roll_back(
        self, make_collection, owner, collector, parent, registry
    ):
        holder = {}
        seen = []
        reading = threading.Event()

        def read_state():
            reading.set()
            state = holder["collection"].state
            seen.append((state.total_minted, state.proceeds_wei))

        def start_reader():
            holder["reader"] = threading.Thread(target=read_state)
            holder["reader"].start()
            reading.wait(timeout=5)
            time.sleep(0.05)

        hooked = HookedRegistry(registry, hook=start_reader, fail_on_attach=1)
        collection = make_collection(price_per_mint_wei=10, registry_override=hooked)
        holder["collection"] = collection

        with pytest.raises(RegistryError):
            collection.nest_mint(owner.address, collector.address, 5, parent, 50)
        holder["reader"].join(timeout=5)

        assert seen == [(0, 0)]

    def test_callback_on_minting_thread_can_still_inspect(
        self, make_collection, owner, collector, parent, registry
    ):
        holder = {}
        seen = []

        def inspect():
            seen.append(holder["collection"].total_minted)

        hooked = HookedRegistry(registry, hook=inspect)
        collection = make_collection(price_per_mint_wei=10, registry_override=hooked)
        holder["collection"] = collection

        collection.nest_mint(owner.address, collector.address, 2, parent, 20)

        assert seen == [2]
        assert collection.total_minted == 2
