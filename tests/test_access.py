"""Tests for principal checks and the operation guard."""

import threading
import time

import pytest
from eth_account import Account

from nestmint.access import OperationGuard, normalize_address, require_principal
from nestmint.errors import ReentrancyError, UnauthorizedError


PRINCIPAL = Account.create()


class TestRequirePrincipal:
    def test_matching_caller_returns_normalized(self):
        assert require_principal(PRINCIPAL.address, PRINCIPAL.address.lower()) == PRINCIPAL.address.lower()

    def test_other_caller_rejected(self):
        with pytest.raises(UnauthorizedError):
            require_principal(Account.create().address, PRINCIPAL.address)

    def test_malformed_caller_is_unauthorized(self):
        with pytest.raises(UnauthorizedError):
            require_principal("0x1234", PRINCIPAL.address)

    def test_normalize_address_rejects_garbage(self):
        with pytest.raises(ValueError):
            normalize_address("0xZZ")


class TestOperationGuard:
    def test_reentry_on_same_thread_rejected(self, tmp_path):
        guard = OperationGuard(tmp_path / "op.lock")
        with guard.enter("mint"):
            assert guard.active_operation == "mint"
            with pytest.raises(ReentrancyError, match="mint is in progress"):
                with guard.enter("withdraw"):
                    pass
        assert guard.active_operation is None

    def test_other_threads_wait(self, tmp_path):
        guard = OperationGuard(tmp_path / "op.lock")
        order = []

        def worker():
            with guard.enter("withdraw"):
                order.append("worker")

        with guard.enter("mint"):
            thread = threading.Thread(target=worker)
            thread.start()
            time.sleep(0.05)
            order.append("main")
        thread.join()

        assert order == ["main", "worker"]

    def test_released_after_error(self, tmp_path):
        guard = OperationGuard(tmp_path / "op.lock")
        with pytest.raises(KeyError):
            with guard.enter("mint"):
                raise KeyError("boom")
        with guard.enter("mint"):
            pass

    def test_observe_waits_for_operation(self, tmp_path):
        guard = OperationGuard(tmp_path / "op.lock")
        order = []

        def reader():
            with guard.observe():
                order.append("read")

        with guard.enter("mint"):
            thread = threading.Thread(target=reader)
            thread.start()
            time.sleep(0.05)
            order.append("mint done")
        thread.join()

        assert order == ["mint done", "read"]

    def test_observe_inside_own_operation_does_not_block(self, tmp_path):
        guard = OperationGuard(tmp_path / "op.lock")
        with guard.enter("mint"):
            with guard.observe():
                assert guard.active_operation == "mint"
