"""Error taxonomy for the SubWallet SDK.

Every error raised by the SDK derives from SubWalletError and carries a stable
``error_code`` string, so callers can branch on the code instead of the message.

Propagation rules:
- Session lifecycle and ledger mutations raise to the caller and leave state unchanged.
- Reconciliation never raises for remote failures; affected values degrade to None.
- Provisional and authoritative bookkeeping only logs persistence failures.
"""

from typing import Any, Dict, Optional


class SubWalletError(Exception):
    """Base exception for all SubWallet SDK errors.

    Attributes:
        message (str): Human-readable description
        error_code (str): Stable machine-readable code
        details (Dict[str, Any]): Extra context (wallet id, key, address...)
    """

    error_code = "SUBWALLET_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class NotConnectedError(SubWalletError):
    """Raised when an operation needs an active session and none exists."""

    error_code = "NOT_CONNECTED"

    def __init__(self, message: str = "Master wallet connection is not active"):
        super().__init__(message)


class SubWalletNotFoundError(SubWalletError):
    """Raised when a sub-wallet ID is unknown to the ledger."""

    error_code = "NOT_FOUND"

    def __init__(self, wallet_id: str):
        self.wallet_id = wallet_id
        super().__init__(f"Sub-wallet {wallet_id} not found", {"wallet_id": wallet_id})


class WalletConnectionError(SubWalletError):
    """Raised when the initial connect validation fails (bad descriptor, unreachable wallet)."""

    error_code = "CONNECTION_FAILED"


class NetworkError(SubWalletError):
    """Raised when a remote call fails after a session was established."""

    error_code = "NETWORK_ERROR"


class ProtocolError(SubWalletError):
    """Raised when the remote wallet answered with an error payload."""

    error_code = "PROTOCOL_ERROR"


class ResolutionError(SubWalletError):
    """Raised when address resolution or payment-request fetch fails."""

    error_code = "RESOLUTION_FAILED"


class StorageError(SubWalletError):
    """Raised by key-value stores when a read or write cannot be completed."""

    error_code = "STORAGE_ERROR"


class InsufficientFundsError(SubWalletError):
    """Raised when funding a sub-wallet would allocate more than the wallet holds."""

    error_code = "INSUFFICIENT_FUNDS"

    def __init__(self, requested_msat: int, available_msat: int):
        self.requested_msat = requested_msat
        self.available_msat = available_msat
        super().__init__(
            f"Insufficient unallocated funds: requested {requested_msat} msat, "
            f"available {available_msat} msat",
            {"requested_msat": requested_msat, "available_msat": available_msat},
        )
