"""Reconciliation Engine - derives sub-wallet totals from remote history.

The ReconciliationEngine is responsible for:
- Fetching the most recent remote transactions and normalizing them
- Partitioning them into attributed (per sub-wallet) and unattributed sets
- Overwriting provisional totals with the sums of attributed transactions
- Resolving a displayable balance per sub-wallet
- Caching the raw remote account balance for display

Failure Model:
    Reconciliation runs opportunistically and never raises for remote
    failures. History and account balance are fetched independently; if one
    fails the other still completes, and affected values degrade to None
    ("unknown") while already-known data stays in place.

Known Limitation:
    Only the last ``history_limit`` transactions are fetched. Attributed
    transactions outside that window no longer count toward their sub-wallet's
    totals; the report lists them under ``missing_tx_ids``.
"""

from datetime import datetime, UTC
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from subwallet.exceptions import (
    NetworkError,
    NotConnectedError,
    ProtocolError,
    SubWalletError,
    WalletConnectionError,
)
from subwallet.ledger_manager import SubWalletLedger
from subwallet.logger import get_logger
from subwallet.models import SubWallet, Transaction, derive_account_identity
from subwallet.remote import SessionFactory, balance_msat_from
from subwallet.session_manager import SessionManager


logger = get_logger(__name__)

DEFAULT_HISTORY_LIMIT = 50


class WalletReconciliation(BaseModel):
    """Outcome of reconciling one sub-wallet.

    Attributes:
        wallet_id (str): The sub-wallet
        history_known (bool): False when remote history could not be used
        balance_msat (Optional[int]): Displayable balance, None when unknown
        spent_msat (int): Spent total after the pass
        received_msat (int): Received total after the pass
        corrected (bool): True if provisional values were overwritten
        transactions (List[Transaction]): Attributed transactions, newest first
        missing_tx_ids (List[str]): Attributed IDs not present in the fetch window
        error (Optional[str]): Why this wallet degraded, if it did
    """

    wallet_id: str
    history_known: bool = True
    balance_msat: Optional[int] = None
    spent_msat: int = 0
    received_msat: int = 0
    corrected: bool = False
    transactions: List[Transaction] = Field(default_factory=list)
    missing_tx_ids: List[str] = Field(default_factory=list)
    error: Optional[str] = None


class ReconciliationReport(BaseModel):
    """Outcome of a full reconciliation pass over an account.

    Attributes:
        account_balance_msat (Optional[int]): Raw remote balance (last known value)
        account_balance_stale (bool): True if this pass failed to refresh the balance
        history_known (bool): False if the transaction fetch failed
        wallets (Dict[str, WalletReconciliation]): Per sub-wallet outcome
        unattributed (List[Transaction]): Fetched transactions owned by no sub-wallet
        reconciled_at (datetime): When the pass finished
    """

    account_balance_msat: Optional[int] = None
    account_balance_stale: bool = False
    history_known: bool = True
    wallets: Dict[str, WalletReconciliation] = Field(default_factory=dict)
    unattributed: List[Transaction] = Field(default_factory=list)
    reconciled_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


def derive_totals(transactions: List[Transaction]) -> Tuple[int, int]:
    """Sum settled outgoing and incoming amounts.

    Pending and failed transactions do not count. A transaction ID that
    appears more than once is counted once.

    Returns:
        Tuple[int, int]: (spent_msat, received_msat)
    """
    spent = 0
    received = 0
    seen = set()
    for tx in transactions:
        if tx.id in seen or not tx.is_settled:
            continue
        seen.add(tx.id)
        if tx.is_incoming:
            received += tx.amount_msat
        else:
            spent += tx.amount_msat
    return spent, received


class ReconciliationEngine:
    """Keeps sub-wallet totals consistent with the remote transaction list.

    Attribution:
        A remote transaction belongs to the sub-wallet whose ``tx_ids``
        contain its ID. Transactions with synthetic IDs (the remote reported
        no identifier) are always unattributed, since their IDs are not
        stable between fetches.

    Usage Example:
        ```python
        engine = ReconciliationEngine(session_manager, ledger, history_limit=50)
        report = engine.reconcile()

        for wallet_id, outcome in report.wallets.items():
            if outcome.balance_msat is None:
                print(f"{wallet_id}: balance unknown")
            else:
                print(f"{wallet_id}: {outcome.balance_msat // 1000} sats")
        ```

    Attributes:
        session_manager (SessionManager): Source of the live session
        ledger (SubWalletLedger): Ledger whose totals are corrected
        history_limit (int): Number of transactions fetched per pass
    """

    def __init__(self, session_manager: SessionManager, ledger: SubWalletLedger,
                 history_limit: int = DEFAULT_HISTORY_LIMIT,
                 session_factory: Optional[SessionFactory] = None):
        if history_limit <= 0:
            raise ValueError("history_limit must be positive")
        self.session_manager = session_manager
        self.ledger = ledger
        self.history_limit = history_limit
        self.session_factory = session_factory or session_manager.session_factory
        self._account_balance_msat: Optional[int] = None
        self._balance_stale = False

    # ========== History ==========

    @staticmethod
    def normalize(records: Any, now: Optional[datetime] = None) -> List[Transaction]:
        """Normalize a raw ``list_transactions`` result.

        Accepts either a bare list or a ``{"transactions": [...]}`` envelope.
        Records that are not mappings are skipped.

        Raises:
            ProtocolError: If a record has fields that cannot be normalized
                (e.g. a non-numeric amount or a non-epoch ``created_at``)
        """
        if isinstance(records, dict):
            records = records.get("transactions") or []
        if not isinstance(records, list):
            return []

        now = now or datetime.now(UTC)
        transactions = []
        for index, record in enumerate(records):
            if not isinstance(record, dict):
                continue
            try:
                transactions.append(Transaction.from_remote(record, index, now))
            except (TypeError, ValueError, OverflowError, OSError) as e:
                raise ProtocolError(
                    f"Malformed transaction record at position {index}: {e}",
                    {"index": index},
                ) from e
        return transactions

    def fetch_transactions(self) -> List[Transaction]:
        """Fetch and normalize the most recent remote transactions.

        Raises:
            NotConnectedError: If there is no active session
            NetworkError: If the remote call fails
            ProtocolError: If the wallet answers with an error payload or a
                malformed transaction record
        """
        session = self.session_manager.session
        try:
            records = session.list_transactions(self.history_limit)
        except SubWalletError:
            raise
        except Exception as e:
            raise NetworkError(f"Failed to list transactions: {e}") from e
        return self.normalize(records)

    def partition(self, transactions: List[Transaction]
                  ) -> Tuple[Dict[str, List[Transaction]], List[Transaction]]:
        """Split transactions into per-wallet attributed lists and the rest.

        Returns:
            Tuple: ({wallet_id: [attributed transactions]}, [unattributed transactions])
        """
        owners = self.ledger.tracked_tx_ids()
        attributed: Dict[str, List[Transaction]] = {w.id: [] for w in self.ledger.list()}
        unattributed: List[Transaction] = []

        for tx in transactions:
            owner = owners.get(tx.id) if tx.is_stable_id else None
            if owner is None:
                unattributed.append(tx)
            else:
                attributed[owner].append(tx)
        return attributed, unattributed

    def wallet_transactions(self, wallet_id: str,
                            transactions: Optional[List[Transaction]] = None) -> List[Transaction]:
        """Transactions attributed to one sub-wallet, newest first.

        Fetches history when ``transactions`` is not supplied.

        Raises:
            NetworkError: If history has to be fetched and the fetch fails
        """
        if transactions is None:
            transactions = self.fetch_transactions()
        attributed, _ = self.partition(transactions)
        return attributed.get(wallet_id, [])

    # ========== Balances ==========

    @property
    def account_balance_msat(self) -> Optional[int]:
        """Last successfully fetched remote balance."""
        return self._account_balance_msat

    def clear_account_balance(self) -> None:
        """Forget the cached balance (the account changed or went away)."""
        self._account_balance_msat = None
        self._balance_stale = False

    def refresh_account_balance(self) -> Optional[int]:
        """Fetch the raw remote balance.

        On failure the previous cached value is kept and returned.
        """
        try:
            response = self.session_manager.session.get_balance()
            self._account_balance_msat = balance_msat_from(response)
            self._balance_stale = False
        except Exception as e:
            self._balance_stale = True
            logger.warning("Account balance refresh failed, keeping last value: %s", e)
        return self._account_balance_msat

    def resolve_balance(self, wallet_id: str) -> Optional[int]:
        """Displayable balance of a sub-wallet, or None when unknown.

        Logical sub-wallets (whose descriptor belongs to the connected account)
        use the derived formula ``max(0, funding + received - spent)``. A
        sub-wallet with a descriptor for another account has its balance
        fetched from a session for that descriptor; a failure there yields None.
        """
        wallet = self.ledger.get(wallet_id)
        if wallet is None:
            return None

        if self._is_scoped(wallet):
            return self._fetch_scoped_balance(wallet)

        return wallet.display_balance_msat

    def _is_scoped(self, wallet: SubWallet) -> bool:
        # Descriptors differing only in relays, secret or pubkey case are the same account
        if wallet.connection_descriptor == self.session_manager.master_descriptor:
            return False
        try:
            identity = derive_account_identity(wallet.connection_descriptor)
        except WalletConnectionError:
            return True
        return identity != self.session_manager.account_identity

    def _fetch_scoped_balance(self, wallet: SubWallet) -> Optional[int]:
        session = None
        try:
            session = self.session_factory(wallet.connection_descriptor)
            return balance_msat_from(session.get_balance())
        except Exception as e:
            logger.warning("Balance fetch for sub-wallet %s failed: %s", wallet.id, e)
            return None
        finally:
            if session is not None and session is not self.session_manager.session:
                try:
                    session.close()
                except Exception as e:
                    logger.debug("Closing scoped session for %s failed: %s", wallet.id, e)

    # ========== Reconciliation ==========

    def reconcile(self) -> ReconciliationReport:
        """Run a full reconciliation pass for the connected account.

        Steps:
        1. Fetch the last ``history_limit`` transactions and normalize them
        2. Repair attribution so each transaction ID has a single owner
        3. Partition transactions by attribution
        4. Overwrite each sub-wallet's totals where they drifted
        5. Refresh the raw account balance independently

        Returns:
            ReconciliationReport: Per-wallet outcomes and the account balance

        Raises:
            NotConnectedError: If there is no active session
        """
        if not self.session_manager.is_connected():
            raise NotConnectedError()

        report = ReconciliationReport()

        try:
            transactions = self.fetch_transactions()
        except SubWalletError as e:
            logger.warning("Transaction history unavailable, totals left as-is: %s", e)
            transactions = None
            report.history_known = False

        repaired = self._repair_attribution()

        if transactions is not None:
            attributed, report.unattributed = self.partition(transactions)
        else:
            attributed = {}

        for wallet in self.ledger.list():
            report.wallets[wallet.id] = self._reconcile_one(
                wallet,
                attributed.get(wallet.id, []) if transactions is not None else None,
                repaired.get(wallet.id),
            )

        report.account_balance_msat = self.refresh_account_balance()
        report.account_balance_stale = self._balance_stale
        report.reconciled_at = datetime.now(UTC)

        logger.debug("Reconciled %d sub-wallets (history_known=%s)",
                     len(report.wallets), report.history_known)
        return report

    def reconcile_wallet(self, wallet_id: str) -> Optional[WalletReconciliation]:
        """Reconcile a single sub-wallet. Returns None for unknown IDs."""
        wallet = self.ledger.get(wallet_id)
        if wallet is None:
            return None

        try:
            transactions = self.fetch_transactions()
        except SubWalletError as e:
            logger.warning("Transaction history unavailable for %s: %s", wallet_id, e)
            return self._reconcile_one(wallet, None, None)

        repaired = self._repair_attribution()
        attributed, _ = self.partition(transactions)
        return self._reconcile_one(wallet, attributed.get(wallet_id, []), repaired.get(wallet_id))

    def _repair_attribution(self) -> Dict[str, List[str]]:
        """Find tx_ids lists that include IDs owned by an earlier sub-wallet.

        Returns:
            Dict[str, List[str]]: Corrected tx_ids list per affected wallet
        """
        owners = self.ledger.tracked_tx_ids()
        repaired: Dict[str, List[str]] = {}
        for wallet in self.ledger.list():
            kept = []
            for tx_id in wallet.tx_ids:
                if owners.get(tx_id) == wallet.id and tx_id not in kept:
                    kept.append(tx_id)
            if kept != wallet.tx_ids:
                logger.warning("Removing %d shared transaction IDs from %s",
                               len(wallet.tx_ids) - len(kept), wallet.id)
                repaired[wallet.id] = kept
        return repaired

    def _reconcile_one(self, wallet: SubWallet, transactions: Optional[List[Transaction]],
                       repaired_tx_ids: Optional[List[str]]) -> WalletReconciliation:
        outcome = WalletReconciliation(wallet_id=wallet.id)
        try:
            if transactions is None:
                outcome.history_known = False
                if repaired_tx_ids is not None:
                    self.ledger.apply_authoritative(
                        wallet.id, wallet.spent_msat, wallet.received_msat, repaired_tx_ids
                    )
            else:
                new_spent, new_received = derive_totals(transactions)
                drifted = (new_spent, new_received) != (wallet.spent_msat, wallet.received_msat)
                if drifted or repaired_tx_ids is not None:
                    self.ledger.apply_authoritative(
                        wallet.id, new_spent, new_received, repaired_tx_ids
                    )
                outcome.corrected = drifted
                outcome.transactions = transactions

            current = self.ledger.get(wallet.id) or wallet
            if transactions is not None:
                seen = {tx.id for tx in transactions}
                outcome.missing_tx_ids = [t for t in current.tx_ids if t not in seen]
            outcome.spent_msat = current.spent_msat
            outcome.received_msat = current.received_msat
            outcome.balance_msat = self.resolve_balance(wallet.id)
        except Exception as e:
            logger.warning("Reconciliation of sub-wallet %s degraded: %s", wallet.id, e)
            outcome.error = str(e)
            outcome.balance_msat = None
        return outcome
