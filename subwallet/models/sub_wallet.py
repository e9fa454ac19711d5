"""Sub-wallet model - a budget-scoped slice of one shared wallet balance.

A SubWallet is an accounting entity only. All sub-wallets of an account spend
from the same remote balance; the SDK keeps per-wallet running totals so each
slice can show its own balance and history.
"""

import secrets
import time
from datetime import datetime, UTC
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class Permission(str, Enum):
    """Capability tags declared on a sub-wallet.

    These mirror the wallet-connect method names. They are informational: the
    remote wallet does not enforce them because sub-wallets share the master
    connection.
    """
    GET_INFO = "get_info"
    GET_BALANCE = "get_balance"
    MAKE_INVOICE = "make_invoice"
    PAY_INVOICE = "pay_invoice"
    LIST_TRANSACTIONS = "list_transactions"


class SubWalletStatus(str, Enum):
    """Lifecycle status of a sub-wallet."""
    ACTIVE = "active"
    DELETED = "deleted"


def generate_sub_wallet_id() -> str:
    """Generate a sub-wallet ID of the form ``sub_<epoch-ms>_<random>``."""
    return f"sub_{int(time.time() * 1000)}_{secrets.token_hex(6)}"


class WalletConfig(BaseModel):
    """User input for creating a sub-wallet.

    Attributes:
        name (str): Display label, must not be empty
        permissions (List[Permission]): Declared capabilities
        budget_msat (Optional[int]): Optional soft spending cap in millisatoshi
    """

    name: str = Field(min_length=1, description="Sub-wallet label")
    permissions: List[Permission] = Field(
        default_factory=list,
        description="Declared capability tags"
    )
    budget_msat: Optional[int] = Field(
        default=None,
        ge=0,
        description="Informational spending cap in msat"
    )


class SubWallet(BaseModel):
    """A named, budget-scoped accounting slice of the master wallet.

    Balance Model:
        The displayable balance is derived, never fetched::

            balance = max(0, funding_msat + received_msat - spent_msat)

        The signed value (``net_msat``) is kept as-is so that a later
        reconciliation pass can correct an over-spend without losing track of it.

    Totals:
        - **funding_msat** only grows, through explicit funding.
        - **spent_msat** / **received_msat** are running totals. Payment
          operations bump them provisionally; reconciliation overwrites them
          with the sums of the attributed remote transactions.
        - **tx_ids** lists the remote transaction IDs attributed to this
          wallet. An ID belongs to at most one sub-wallet of an account.

    Usage Example:
        ```python
        wallet = SubWallet(
            name="Groceries",
            connection_descriptor=master_uri,
            permissions=[Permission.PAY_INVOICE],
        )
        wallet.funding_msat = 100_000
        wallet.spent_msat = 30_000
        print(wallet.display_balance_msat)  # 70000
        ```

    Attributes:
        id (str): Unique, immutable identifier (``sub_<ms>_<hex>``)
        name (str): User label
        connection_descriptor (str): Descriptor used to reach the remote wallet.
            Equal to the master descriptor for logical sub-wallets.
        permissions (List[Permission]): Informational capability tags
        budget_msat (Optional[int]): Informational soft cap
        funding_msat (int): Cumulative allocation from the shared balance
        spent_msat (int): Attributed outgoing total
        received_msat (int): Attributed incoming total
        tx_ids (List[str]): Attributed remote transaction IDs, in attribution order
        created_at (datetime): UTC creation time
        status (SubWalletStatus): Lifecycle status
    """

    id: str = Field(
        default_factory=generate_sub_wallet_id,
        description="Unique sub-wallet ID"
    )
    name: str = Field(min_length=1, description="User-assigned label")
    connection_descriptor: str = Field(
        description="Descriptor used to reach the remote session"
    )
    permissions: List[Permission] = Field(default_factory=list)
    budget_msat: Optional[int] = Field(default=None, ge=0)
    funding_msat: int = Field(default=0, ge=0, description="Allocated funds in msat")
    spent_msat: int = Field(default=0, description="Attributed outgoing total in msat")
    received_msat: int = Field(default=0, description="Attributed incoming total in msat")
    tx_ids: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    status: SubWalletStatus = Field(default=SubWalletStatus.ACTIVE)

    @field_validator("status", mode="before")
    @classmethod
    def _map_legacy_status(cls, value):
        # Older records stored revoked wallets as "revoked"
        if value == "revoked":
            return SubWalletStatus.DELETED
        return value

    @property
    def net_msat(self) -> int:
        """Signed balance: funding + received - spent. May be negative."""
        return self.funding_msat + self.received_msat - self.spent_msat

    @property
    def display_balance_msat(self) -> int:
        """Balance clamped at zero for display.

        Example:
            ```python
            wallet = SubWallet(name="w", connection_descriptor=uri,
                               funding_msat=1000, spent_msat=5000)
            wallet.net_msat              # -4000
            wallet.display_balance_msat  # 0
            ```
        """
        return max(0, self.net_msat)

    @property
    def budget_remaining_msat(self) -> Optional[int]:
        """Remaining soft budget, or None when no budget was set."""
        if self.budget_msat is None:
            return None
        return max(0, self.budget_msat - self.spent_msat)

    def has_permission(self, permission: Permission) -> bool:
        return permission in self.permissions

    def tracks(self, tx_id: str) -> bool:
        """Check whether a remote transaction ID is attributed to this wallet."""
        return tx_id in self.tx_ids
