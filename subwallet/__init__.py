"""SubWallet SDK - Named sub-wallets over one shared wallet-connect balance."""

__version__ = "0.1.0"

# Main SDK interface
from subwallet.sdk import SubWalletSDK
from subwallet.config import Settings

# Core models (for advanced usage)
from subwallet.models import (
    ConnectionDescriptor,
    Permission,
    SubWallet,
    SubWalletStatus,
    Transaction,
    TransactionDirection,
    TransactionIdKind,
    TransactionStatus,
    WalletConfig,
)

# Components (for advanced usage)
from subwallet.address_resolver import AddressResolver, LightningAddressResolver, PayRequestMetadata
from subwallet.ledger_manager import SubWalletLedger
from subwallet.payment_engine import InvoiceResult, PaymentEngine, PaymentResult
from subwallet.reconciliation import ReconciliationEngine, ReconciliationReport, WalletReconciliation
from subwallet.remote import InMemoryWalletSession, LocalWalletFactory, RemoteWalletSession
from subwallet.session_manager import SessionManager
from subwallet.storage import InMemoryKeyValueStore, JsonFileStore, KeyValueStore, WalletStorage

# Errors
from subwallet.exceptions import (
    InsufficientFundsError,
    NetworkError,
    NotConnectedError,
    ProtocolError,
    ResolutionError,
    StorageError,
    SubWalletError,
    SubWalletNotFoundError,
    WalletConnectionError,
)

__all__ = [
    # Main SDK
    "SubWalletSDK",
    "Settings",
    # Models
    "ConnectionDescriptor",
    "Permission",
    "SubWallet",
    "SubWalletStatus",
    "Transaction",
    "TransactionDirection",
    "TransactionIdKind",
    "TransactionStatus",
    "WalletConfig",
    # Components
    "AddressResolver",
    "LightningAddressResolver",
    "PayRequestMetadata",
    "SubWalletLedger",
    "InvoiceResult",
    "PaymentEngine",
    "PaymentResult",
    "ReconciliationEngine",
    "ReconciliationReport",
    "WalletReconciliation",
    "InMemoryWalletSession",
    "LocalWalletFactory",
    "RemoteWalletSession",
    "SessionManager",
    "InMemoryKeyValueStore",
    "JsonFileStore",
    "KeyValueStore",
    "WalletStorage",
    # Errors
    "InsufficientFundsError",
    "NetworkError",
    "NotConnectedError",
    "ProtocolError",
    "ResolutionError",
    "StorageError",
    "SubWalletError",
    "SubWalletNotFoundError",
    "WalletConnectionError",
]
