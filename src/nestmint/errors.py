"""
nestmint error types.

Each failure mode gets its own exception so callers can tell
"pay more/less", "sold out", "not allowed" and "transfer rejected" apart.
"""


class NestmintError(Exception):
    """Base error for all nestmint operations."""
    pass


# Mint errors
class MintError(NestmintError):
    """Base error for rejected mint requests."""
    pass


class WrongPaymentAmountError(MintError):
    """Supplied value is not exactly count * price_per_mint."""
    def __init__(self, expected: int, supplied: int):
        self.expected = expected
        self.supplied = supplied
        super().__init__(f"Wrong payment amount: expected {expected} wei, got {supplied} wei")


class SupplyExceededError(MintError):
    """Request would push total_minted past max_supply."""
    def __init__(self, requested: int, remaining: int):
        self.requested = requested
        self.remaining = remaining
        super().__init__(f"Cannot mint {requested}: only {remaining} left of the supply cap")


class MintZeroError(MintError):
    """Mint count must be at least one."""
    pass


# Access errors
class UnauthorizedError(NestmintError):
    """Caller is not the collection's authorized principal."""
    def __init__(self, caller: str):
        self.caller = caller
        super().__init__(f"Caller {caller} is not authorized")


class ReentrancyError(NestmintError):
    """Operation re-entered while another one is in progress."""
    pass


# Treasury errors
class TreasuryError(NestmintError):
    """Base error for proceeds custody."""
    pass


class TransferFailedError(TreasuryError):
    """Outbound value transfer was rejected."""
    pass


# Collaborator errors
class RegistryError(NestmintError):
    """Asset registry refused or failed a nested attachment."""
    pass
