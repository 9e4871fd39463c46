"""
nestmint — payment-gated, supply-capped nested minting.

Exact payment in → contiguous ids out → children attached under a parent
→ proceeds held for the authorized principal.
"""

__version__ = "0.1.0"

from .access import OperationGuard, normalize_address, require_principal
from .audit import AuditTrail, EventType
from .collection import Collection
from .config import CollectionConfig
from .errors import (
    MintZeroError,
    NestmintError,
    ReentrancyError,
    RegistryError,
    SupplyExceededError,
    TransferFailedError,
    UnauthorizedError,
    WrongPaymentAmountError,
)
from .ledger import CollectionLedger, CollectionState, CollectionStatus, MintRecord, WithdrawalRecord
from .minter import NestedMinter
from .payment_gate import PaymentGate
from .registry import AssetRef, AssetRegistry, LocalAssetRegistry
from .supply import SupplyAllocator, TokenRange
from .transfer import LocalPayoutBook, ValueTransfer
from .treasury import Treasury

__all__ = [
    "Collection", "CollectionConfig", "CollectionLedger", "CollectionState", "CollectionStatus",
    "MintRecord", "WithdrawalRecord",
    "NestedMinter", "PaymentGate", "SupplyAllocator", "TokenRange", "Treasury",
    "AssetRef", "AssetRegistry", "LocalAssetRegistry", "LocalPayoutBook", "ValueTransfer",
    "OperationGuard", "normalize_address", "require_principal",
    "AuditTrail", "EventType",
    "NestmintError", "WrongPaymentAmountError", "SupplyExceededError", "MintZeroError",
    "UnauthorizedError", "ReentrancyError", "TransferFailedError", "RegistryError",
]
