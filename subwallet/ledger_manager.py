"""Sub-Wallet Ledger - in-memory authoritative map of an account's sub-wallets.

The SubWalletLedger is responsible for:
- Creating, funding and deleting sub-wallets
- Applying provisional deltas right after a payment or invoice succeeds
- Applying authoritative totals computed by reconciliation
- Keeping every remote transaction ID attributed to at most one sub-wallet
- Writing the account's sub-wallets through to storage after every mutation

Key Principle: authoritative totals always win. A provisional delta is only a
display hint that stands until the next reconciliation pass replaces it.
"""

from typing import Dict, List, Optional

from subwallet.exceptions import NotConnectedError, StorageError, SubWalletNotFoundError
from subwallet.logger import get_logger
from subwallet.models import SubWallet, WalletConfig, generate_sub_wallet_id
from subwallet.storage import WalletStorage


logger = get_logger(__name__)

SPENT = "spent"
RECEIVED = "received"


class SubWalletLedger:
    """Ledger of sub-wallets for the currently loaded account.

    The ledger holds one ordered map of sub-wallets for a single account
    identity. The Session Manager loads it on connect and unloads it on
    disconnect; while unloaded, mutations raise NotConnectedError.

    Write-through Persistence:
        Every mutation saves the full list of the account's sub-wallets.
        - **create / fund / delete** are user actions: if the write fails the
          in-memory change is rolled back and StorageError is raised.
        - **apply_provisional / attribute / apply_authoritative** are internal
          bookkeeping: a failed write is logged and the in-memory state stays
          authoritative until the next successful write.

    Thread Safety:
        Not thread-safe. Ledger operations for one account must be issued by a
        single logical actor; callers serialize concurrent access.

    Usage Example:
        ```python
        ledger = SubWalletLedger(WalletStorage(InMemoryKeyValueStore()))
        ledger.load("abcd...", master_descriptor=uri)

        wallet = ledger.create(WalletConfig(name="Groceries"))
        ledger.fund(wallet.id, 100_000)
        ledger.record_delta(wallet.id, 30_000, "spent", tx_id="tx1")

        print(ledger.get(wallet.id).display_balance_msat)  # 70000
        ```
    """

    def __init__(self, storage: WalletStorage):
        """Initialize an unloaded ledger.

        Args:
            storage (WalletStorage): Persistence adapter for sub-wallet lists
        """
        self.storage = storage
        self._wallets: Dict[str, SubWallet] = {}
        self._account_identity: Optional[str] = None
        self._master_descriptor: Optional[str] = None

    # ========== Lifecycle ==========

    @property
    def account_identity(self) -> Optional[str]:
        return self._account_identity

    @property
    def is_loaded(self) -> bool:
        return self._account_identity is not None

    def load(self, account_identity: str, master_descriptor: str,
             wallets: Optional[List[SubWallet]] = None) -> List[SubWallet]:
        """Load an account's sub-wallets, replacing whatever was loaded before.

        Args:
            account_identity (str): Identity whose records to load
            master_descriptor (str): Descriptor new sub-wallets will carry
            wallets (Optional[List[SubWallet]]): Already-read records; read
                from storage when omitted

        Returns:
            List[SubWallet]: The loaded sub-wallets in insertion order

        Raises:
            StorageError: If stored records cannot be read
        """
        if wallets is None:
            wallets = self.storage.load_sub_wallets(account_identity)

        self._wallets = {w.id: w for w in wallets}
        self._account_identity = account_identity
        self._master_descriptor = master_descriptor
        logger.debug("Loaded %d sub-wallets for %s", len(self._wallets), account_identity)
        return self.list()

    def unload(self) -> None:
        """Drop the in-memory sub-wallets. Persisted records are kept."""
        self._wallets = {}
        self._account_identity = None
        self._master_descriptor = None

    # ========== Queries ==========

    def get(self, wallet_id: str) -> Optional[SubWallet]:
        """Get a sub-wallet by ID, or None if absent."""
        return self._wallets.get(wallet_id)

    def list(self) -> List[SubWallet]:
        """List sub-wallets in insertion order.

        Returns a new list; modifying it does not affect the ledger.
        """
        return list(self._wallets.values())

    def exists(self, wallet_id: str) -> bool:
        return wallet_id in self._wallets

    def count(self) -> int:
        return len(self._wallets)

    def owner_of(self, tx_id: str) -> Optional[str]:
        """Return the ID of the sub-wallet a transaction is attributed to."""
        for wallet in self._wallets.values():
            if wallet.tracks(tx_id):
                return wallet.id
        return None

    def tracked_tx_ids(self) -> Dict[str, str]:
        """Map every attributed transaction ID to its owning sub-wallet.

        If corrupted data lists an ID under several sub-wallets, the earliest
        sub-wallet (insertion order) is reported as the owner.
        """
        owners: Dict[str, str] = {}
        for wallet in self._wallets.values():
            for tx_id in wallet.tx_ids:
                owners.setdefault(tx_id, wallet.id)
        return owners

    def total_allocated_msat(self) -> int:
        """Sum of displayable balances across all sub-wallets."""
        return sum(w.display_balance_msat for w in self._wallets.values())

    # ========== User mutations ==========

    def create(self, config: WalletConfig) -> SubWallet:
        """Create a sub-wallet for the loaded account.

        Args:
            config (WalletConfig): Name, permissions and optional budget

        Returns:
            SubWallet: The new sub-wallet, already persisted

        Raises:
            NotConnectedError: If no account is loaded
            StorageError: If the write fails (the wallet is not kept)

        Example:
            ```python
            wallet = ledger.create(WalletConfig(
                name="Coffee",
                permissions=[Permission.PAY_INVOICE],
                budget_msat=50_000,
            ))
            assert wallet.funding_msat == 0 and wallet.tx_ids == []
            ```
        """
        self._require_loaded()

        wallet = SubWallet(
            name=config.name,
            connection_descriptor=self._master_descriptor,
            permissions=list(config.permissions),
            budget_msat=config.budget_msat,
        )
        while wallet.id in self._wallets:
            wallet = wallet.model_copy(update={"id": generate_sub_wallet_id()})

        self._wallets[wallet.id] = wallet
        try:
            self._persist()
        except StorageError:
            del self._wallets[wallet.id]
            raise

        logger.info("Created sub-wallet %s (%s)", wallet.id, wallet.name)
        return wallet

    def fund(self, wallet_id: str, amount_msat: int) -> SubWallet:
        """Allocate part of the shared balance to a sub-wallet.

        The ledger does not check the remote balance; affordability checks are
        the caller's job and happen before this call.

        Args:
            wallet_id (str): Sub-wallet to fund
            amount_msat (int): Amount to add to ``funding_msat`` (must be > 0)

        Returns:
            SubWallet: The updated sub-wallet

        Raises:
            SubWalletNotFoundError: If the sub-wallet does not exist
            ValueError: If amount_msat <= 0
            StorageError: If the write fails (funding is not changed)
        """
        if amount_msat <= 0:
            raise ValueError("Funding amount must be positive")

        wallet = self._require_wallet(wallet_id)
        previous = wallet.funding_msat
        wallet.funding_msat = previous + amount_msat
        try:
            self._persist()
        except StorageError:
            wallet.funding_msat = previous
            raise

        logger.info("Funded sub-wallet %s with %d msat", wallet_id, amount_msat)
        return wallet

    def delete(self, wallet_id: str) -> None:
        """Remove a sub-wallet entirely.

        Its attributed transactions become unattributed on the next
        reconciliation pass.

        Raises:
            SubWalletNotFoundError: If the sub-wallet does not exist
            StorageError: If the write fails (the wallet is restored)
        """
        self._require_wallet(wallet_id)

        snapshot = dict(self._wallets)
        del self._wallets[wallet_id]
        try:
            self._persist()
        except StorageError:
            self._wallets = snapshot
            raise

        logger.info("Deleted sub-wallet %s", wallet_id)

    # ========== Bookkeeping ==========

    def apply_provisional(self, wallet_id: str, amount_msat: int, direction: str,
                          tx_id: Optional[str] = None) -> bool:
        """Apply a provisional delta after a payment or invoice succeeded.

        Adds ``amount_msat`` to ``spent_msat`` (direction "spent") or
        ``received_msat`` (direction "received") and attributes ``tx_id``.
        The delta is counted once per transaction ID:

        - ``tx_id`` already tracked by this wallet: nothing changes
        - ``tx_id`` tracked by another wallet: skipped and logged
        - no ``tx_id``: the delta is applied; only reconciliation can correct it

        Never raises: unknown wallets, unknown directions, negative amounts
        and storage failures are logged and ignored.

        Args:
            wallet_id (str): Sub-wallet the operation belongs to
            amount_msat (int): Provisional amount (0 when not yet known)
            direction (str): "spent" or "received"
            tx_id (Optional[str]): Remote transaction ID, when reported

        Returns:
            bool: True if the wallet changed
        """
        if direction not in (SPENT, RECEIVED):
            logger.warning("Provisional delta with unknown direction %r ignored", direction)
            return False
        if amount_msat < 0:
            logger.warning("Negative provisional delta %d for %s ignored", amount_msat, wallet_id)
            return False

        wallet = self._wallets.get(wallet_id)
        if wallet is None:
            logger.warning("Provisional delta for unknown sub-wallet %s ignored", wallet_id)
            return False

        if tx_id is not None:
            if wallet.tracks(tx_id):
                return False
            owner = self.owner_of(tx_id)
            if owner is not None:
                logger.warning(
                    "Transaction %s already attributed to %s; not attributing to %s",
                    tx_id, owner, wallet_id,
                )
                return False
            wallet.tx_ids.append(tx_id)

        if direction == SPENT:
            wallet.spent_msat += amount_msat
        else:
            wallet.received_msat += amount_msat

        logger.debug("Provisional %s of %d msat on %s (tx %s)", direction, amount_msat,
                     wallet_id, tx_id)
        self._persist_best_effort()
        return True

    def attribute(self, wallet_id: str, tx_id: str) -> bool:
        """Attribute a remote transaction to a sub-wallet without changing totals.

        Used for invoices, whose amount only counts once the remote reports
        them settled.

        Returns:
            bool: True if the ID was newly attributed
        """
        wallet = self._wallets.get(wallet_id)
        if wallet is None or wallet.tracks(tx_id):
            return False

        owner = self.owner_of(tx_id)
        if owner is not None:
            logger.warning(
                "Transaction %s already attributed to %s; not attributing to %s",
                tx_id, owner, wallet_id,
            )
            return False

        wallet.tx_ids.append(tx_id)
        self._persist_best_effort()
        return True

    def apply_authoritative(self, wallet_id: str, spent_msat: int, received_msat: int,
                            tx_ids: Optional[List[str]] = None) -> bool:
        """Replace a sub-wallet's totals with values derived from remote history.

        A no-op for unknown IDs: the wallet may have been deleted while a
        reconciliation pass was running, and must not be resurrected.

        Args:
            wallet_id (str): Sub-wallet to correct
            spent_msat (int): Authoritative outgoing total
            received_msat (int): Authoritative incoming total
            tx_ids (Optional[List[str]]): Replacement attribution list, only
                passed when reconciliation removes IDs owned by another wallet

        Returns:
            bool: True if the wallet changed
        """
        wallet = self._wallets.get(wallet_id)
        if wallet is None:
            return False

        changed = (wallet.spent_msat, wallet.received_msat) != (spent_msat, received_msat)
        wallet.spent_msat = spent_msat
        wallet.received_msat = received_msat
        if tx_ids is not None and tx_ids != wallet.tx_ids:
            wallet.tx_ids = list(tx_ids)
            changed = True

        if changed:
            logger.debug("Authoritative totals for %s: spent=%d received=%d",
                         wallet_id, spent_msat, received_msat)
            self._persist_best_effort()
        return changed

    # Names used by the payment and reconciliation paths
    record_delta = apply_provisional
    overwrite_totals = apply_authoritative

    # ========== Internals ==========

    def _require_loaded(self) -> None:
        if not self.is_loaded:
            raise NotConnectedError()

    def _require_wallet(self, wallet_id: str) -> SubWallet:
        self._require_loaded()
        wallet = self._wallets.get(wallet_id)
        if wallet is None:
            raise SubWalletNotFoundError(wallet_id)
        return wallet

    def _persist(self) -> None:
        self.storage.save_sub_wallets(self._account_identity, self.list())

    def _persist_best_effort(self) -> None:
        if not self.is_loaded:
            return
        try:
            self._persist()
        except StorageError as e:
            logger.error("Failed to persist sub-wallets for %s: %s", self._account_identity, e)
