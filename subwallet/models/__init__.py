"""Core data models for the SubWallet SDK."""

from subwallet.models.sub_wallet import (
    Permission,
    SubWallet,
    SubWalletStatus,
    WalletConfig,
    generate_sub_wallet_id,
)
from subwallet.models.transaction import (
    Transaction,
    TransactionDirection,
    TransactionIdKind,
    TransactionStatus,
)
from subwallet.models.descriptor import ConnectionDescriptor, derive_account_identity

__all__ = [
    "Permission",
    "SubWallet",
    "SubWalletStatus",
    "WalletConfig",
    "generate_sub_wallet_id",
    "Transaction",
    "TransactionDirection",
    "TransactionIdKind",
    "TransactionStatus",
    "ConnectionDescriptor",
    "derive_account_identity",
]
