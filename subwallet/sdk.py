"""SubWallet SDK - High-level API for sub-wallets over one shared wallet.

This module provides the main SDK interface that wires the session manager,
ledger, reconciliation engine and payment engine into a single object.
"""

from typing import List, Optional

from subwallet.address_resolver import AddressResolver, LightningAddressResolver
from subwallet.config import Settings
from subwallet.exceptions import (
    InsufficientFundsError,
    NetworkError,
    SubWalletError,
    SubWalletNotFoundError,
)
from subwallet.ledger_manager import SubWalletLedger
from subwallet.logger import configure_logging, get_logger
from subwallet.models import Permission, SubWallet, Transaction, WalletConfig
from subwallet.payment_engine import InvoiceResult, PaymentEngine, PaymentResult
from subwallet.reconciliation import ReconciliationEngine, ReconciliationReport, WalletReconciliation
from subwallet.remote import LocalWalletFactory, SessionFactory, balance_msat_from
from subwallet.session_manager import SessionManager
from subwallet.storage import InMemoryKeyValueStore, JsonFileStore, KeyValueStore, WalletStorage


logger = get_logger(__name__)


class SubWalletSDK:
    """High-level SDK for sub-wallet accounting.

    The SubWalletSDK splits one wallet-connect balance into named sub-wallets.
    Sub-wallets are an accounting layer: every payment still moves funds of
    the single shared wallet, and the SDK attributes each remote transaction
    to the sub-wallet that caused it.

    Key Features:
    - **Connection**: Connect, disconnect and restore the master wallet
    - **Sub-wallets**: Create, fund, delete and list sub-wallets
    - **Payments**: Invoices, invoice payments and Lightning address payments
      scoped to a sub-wallet
    - **Reconciliation**: Correct sub-wallet totals from remote history

    Usage Example:
        ```python
        # Local Mode (in-memory wallet, for testing)
        sdk = SubWalletSDK()

        # Real wallet (session factory from your transport library)
        sdk = SubWalletSDK(
            settings=Settings.from_env(),
            session_factory=RelayWalletSession,
        )

        sdk.connect("nostr+walletconnect://<pubkey>?relay=wss://relay.example&secret=...")

        groceries = sdk.create_sub_wallet("Groceries", budget_msat=500_000)
        sdk.fund_sub_wallet(groceries.id, 200_000)

        sdk.pay_address(groceries.id, "shop@example.com", 21_000)

        report = sdk.reconcile()
        print(report.wallets[groceries.id].balance_msat)
        ```

    Attributes:
        mode (str): 'local' (in-memory wallet) or 'remote' (custom session factory)
        settings (Settings): Runtime settings
        storage (WalletStorage): Persistence adapter
        ledger (SubWalletLedger): Sub-wallet ledger for the connected account
        session_manager (SessionManager): Owner of the master session
        reconciliation (ReconciliationEngine): History reconciliation
        payment_engine (PaymentEngine): Sub-wallet scoped payments
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Optional[SessionFactory] = None,
        store: Optional[KeyValueStore] = None,
        resolver: Optional[AddressResolver] = None
    ):
        """Initialize the SubWallet SDK.

        Args:
            settings: Runtime settings (defaults apply when None)
            session_factory: Callable building a RemoteWalletSession from a
                descriptor. If None, the SDK runs in local mode with an
                in-memory wallet per descriptor.
            store: Key-value store for persistence. Defaults to a JSON file
                store under ``settings.storage_dir``, or memory when unset.
            resolver: Lightning address resolver (HTTP resolver by default)

        Examples:
            # Local mode (for testing)
            sdk = SubWalletSDK()

            # Persist to disk
            sdk = SubWalletSDK(settings=Settings(storage_dir="~/.subwallet"))
        """
        self.settings = settings or Settings()

        if session_factory is None:
            self.mode = 'local'
            session_factory = LocalWalletFactory()
        else:
            self.mode = 'remote'
        self.session_factory = session_factory

        if store is None:
            if self.settings.storage_dir:
                store = JsonFileStore(self.settings.storage_dir)
            else:
                store = InMemoryKeyValueStore()

        self.resolver = resolver or LightningAddressResolver(timeout=self.settings.resolver_timeout)
        self.storage = WalletStorage(store)
        self.ledger = SubWalletLedger(self.storage)
        self.session_manager = SessionManager(self.storage, self.ledger, session_factory)
        self.reconciliation = ReconciliationEngine(
            self.session_manager,
            self.ledger,
            history_limit=self.settings.history_limit,
            session_factory=session_factory,
        )
        self.payment_engine = PaymentEngine(self.session_manager, self.ledger, self.resolver)

    @classmethod
    def from_env(cls, env_file: Optional[str] = None,
                 session_factory: Optional[SessionFactory] = None) -> "SubWalletSDK":
        """Build an SDK from environment settings and configure console logging."""
        settings = Settings.from_env(env_file)
        configure_logging(settings.log_level)
        return cls(settings=settings, session_factory=session_factory)

    # ========== Connection ==========

    def connect(self, descriptor: str) -> str:
        """Connect the master wallet and load its sub-wallets.

        Args:
            descriptor (str): Wallet-connect descriptor

        Returns:
            str: The account identity (wallet pubkey)

        Raises:
            WalletConnectionError: If the descriptor is malformed or the wallet
                cannot be reached (the previous connection stays active)
            StorageError: If persisted state cannot be read or written
        """
        identity = self.session_manager.connect(descriptor)
        self.reconciliation.clear_account_balance()
        self.reconciliation.refresh_account_balance()
        return identity

    def disconnect(self) -> None:
        """Disconnect the master wallet. Sub-wallets stay stored for the account."""
        self.session_manager.disconnect()
        self.reconciliation.clear_account_balance()

    def restore(self) -> Optional[str]:
        """Reconnect with the saved descriptor; None when nothing is saved."""
        identity = self.session_manager.restore()
        if identity is not None:
            self.reconciliation.clear_account_balance()
            self.reconciliation.refresh_account_balance()
        return identity

    def is_connected(self) -> bool:
        return self.session_manager.is_connected()

    # ========== Sub-Wallet Management ==========

    def create_sub_wallet(
        self,
        name: str,
        permissions: Optional[List[Permission]] = None,
        budget_msat: Optional[int] = None
    ) -> SubWallet:
        """Create a sub-wallet for the connected account.

        Args:
            name (str): Display name (non-empty)
            permissions (Optional[List[Permission]]): Informational capability
                list (all capabilities when None)
            budget_msat (Optional[int]): Informational spending budget

        Returns:
            SubWallet: The new sub-wallet with zero funding and totals

        Raises:
            NotConnectedError: If no wallet is connected
            ValidationError: If the name is empty or the budget negative

        Example:
            ```python
            coffee = sdk.create_sub_wallet(
                "Coffee",
                permissions=[Permission.PAY_INVOICE, Permission.GET_BALANCE],
                budget_msat=50_000,
            )
            ```
        """
        config = WalletConfig(
            name=name,
            permissions=list(Permission) if permissions is None else permissions,
            budget_msat=budget_msat,
        )
        return self.ledger.create(config)

    def fund_sub_wallet(self, wallet_id: str, amount_msat: int) -> SubWallet:
        """Allocate part of the shared balance to a sub-wallet.

        With ``settings.enforce_funding_cap`` the amount may not exceed the
        unallocated balance (remote balance minus what sub-wallets still hold).

        Raises:
            SubWalletNotFoundError: If the sub-wallet does not exist
            ValueError: If amount_msat <= 0
            InsufficientFundsError: If the funding cap would be exceeded
            NetworkError: If the cap is enforced and the balance cannot be fetched
        """
        if amount_msat <= 0:
            raise ValueError("Funding amount must be positive")
        if not self.ledger.exists(wallet_id):
            raise SubWalletNotFoundError(wallet_id)

        if self.settings.enforce_funding_cap:
            available = self.unallocated_msat()
            if amount_msat > available:
                logger.warning("Funding %s with %d msat rejected: %d msat unallocated",
                               wallet_id, amount_msat, available)
                raise InsufficientFundsError(amount_msat, max(0, available))

        return self.ledger.fund(wallet_id, amount_msat)

    def delete_sub_wallet(self, wallet_id: str) -> None:
        """Delete a sub-wallet. Its transactions become unattributed."""
        self.ledger.delete(wallet_id)

    def get_sub_wallet(self, wallet_id: str) -> Optional[SubWallet]:
        return self.ledger.get(wallet_id)

    def list_sub_wallets(self) -> List[SubWallet]:
        """List sub-wallets in creation order."""
        return self.ledger.list()

    # ========== Balances & History ==========

    def get_balance(self) -> Optional[int]:
        """Raw remote account balance in msat.

        Returns the last known value if the fetch fails, or None if it has
        never succeeded.
        """
        return self.reconciliation.refresh_account_balance()

    def get_wallet_balance(self, wallet_id: str) -> Optional[int]:
        """Displayable balance of a sub-wallet; None when unknown.

        Example:
            ```python
            balance = sdk.get_wallet_balance(wallet.id)
            print("unknown" if balance is None else f"{balance // 1000} sats")
            ```
        """
        return self.reconciliation.resolve_balance(wallet_id)

    def get_wallet_transactions(self, wallet_id: str) -> List[Transaction]:
        """Remote transactions attributed to a sub-wallet, newest first.

        Raises:
            SubWalletNotFoundError: If the sub-wallet does not exist
            NetworkError / ProtocolError: If the history fetch fails
        """
        if not self.ledger.exists(wallet_id):
            raise SubWalletNotFoundError(wallet_id)
        return self.reconciliation.wallet_transactions(wallet_id)

    def unallocated_msat(self) -> int:
        """Remote balance not held by any sub-wallet (may be negative).

        Raises:
            NotConnectedError: If no wallet is connected
            NetworkError / ProtocolError: If the balance cannot be fetched
        """
        session = self.session_manager.session
        try:
            remote_balance = balance_msat_from(session.get_balance())
        except SubWalletError:
            raise
        except Exception as e:
            raise NetworkError(f"Failed to fetch balance: {e}") from e
        return remote_balance - self.ledger.total_allocated_msat()

    # ========== Reconciliation ==========

    def reconcile(self) -> ReconciliationReport:
        """Reconcile every sub-wallet against remote history."""
        return self.reconciliation.reconcile()

    def reconcile_wallet(self, wallet_id: str) -> Optional[WalletReconciliation]:
        return self.reconciliation.reconcile_wallet(wallet_id)

    # ========== Payment Operations ==========

    def receive(self, wallet_id: str, amount_msat: int,
                description: Optional[str] = None) -> InvoiceResult:
        """Create an invoice that will count toward a sub-wallet once paid.

        Example:
            ```python
            invoice = sdk.receive(wallet.id, 100_000)
            show_qr(invoice.invoice)
            ```
        """
        return self.payment_engine.receive(wallet_id, amount_msat, description)

    def pay_invoice(self, wallet_id: str, invoice: str,
                    amount_msat: Optional[int] = None) -> PaymentResult:
        """Pay an invoice from a sub-wallet."""
        return self.payment_engine.pay_invoice(wallet_id, invoice, amount_msat)

    def pay_address(self, wallet_id: str, address: str, amount_msat: int) -> PaymentResult:
        """Pay a Lightning address (``user@domain``) from a sub-wallet."""
        return self.payment_engine.pay_address(wallet_id, address, amount_msat)

    def close(self) -> None:
        """Release the address resolver's HTTP resources."""
        close = getattr(self.resolver, "close", None)
        if close is not None:
            close()
