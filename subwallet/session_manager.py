"""Session Manager - owns the single active remote wallet session.

The SessionManager is responsible for:
- Validating a connection descriptor and reaching the remote wallet
- Deriving the account identity that scopes all sub-wallet persistence
- Loading the ledger for that identity on connect, unloading it on disconnect
- Remembering the last descriptor so the session can be restored at start-up
"""

from typing import Optional

from subwallet.exceptions import NotConnectedError, StorageError, WalletConnectionError
from subwallet.ledger_manager import SubWalletLedger
from subwallet.logger import get_logger
from subwallet.models import ConnectionDescriptor
from subwallet.remote import RemoteWalletSession, SessionFactory
from subwallet.storage import WalletStorage


logger = get_logger(__name__)


class SessionManager:
    """Lifecycle owner of the master wallet connection.

    Only one account is active at a time. Switching accounts is an explicit
    connect to another descriptor (or disconnect then connect); the previous
    account's sub-wallets stay persisted under its own identity.

    Usage Example:
        ```python
        storage = WalletStorage(InMemoryKeyValueStore())
        ledger = SubWalletLedger(storage)
        manager = SessionManager(storage, ledger, session_factory=LocalWalletFactory())

        identity = manager.connect("nostr+walletconnect://<pubkey>?relay=...")
        assert manager.is_connected()

        manager.disconnect()
        manager.restore()  # None - descriptor was cleared
        ```

    Attributes:
        storage (WalletStorage): Persistence adapter
        ledger (SubWalletLedger): Ledger loaded for the active identity
        session_factory (SessionFactory): Builds a RemoteWalletSession for a descriptor
    """

    def __init__(self, storage: WalletStorage, ledger: SubWalletLedger,
                 session_factory: SessionFactory):
        self.storage = storage
        self.ledger = ledger
        self.session_factory = session_factory
        self._session: Optional[RemoteWalletSession] = None
        self._descriptor: Optional[str] = None
        self._account_identity: Optional[str] = None

    @property
    def session(self) -> RemoteWalletSession:
        """The live session.

        Raises:
            NotConnectedError: If no session is active
        """
        if self._session is None:
            raise NotConnectedError()
        return self._session

    @property
    def master_descriptor(self) -> Optional[str]:
        return self._descriptor

    @property
    def account_identity(self) -> Optional[str]:
        return self._account_identity

    def is_connected(self) -> bool:
        """True iff both a descriptor and a live session are present."""
        return self._descriptor is not None and self._session is not None

    def connect(self, descriptor: str) -> str:
        """Connect to a remote wallet and load its account's sub-wallets.

        Steps:
        1. Parse the descriptor and derive the account identity (no network)
        2. Build a session and call ``get_info`` to check it is reachable
        3. Read the identity's persisted sub-wallets
        4. Persist the descriptor, swap in the new session, load the ledger

        If any step fails, the previous connection (if any) stays active.

        Args:
            descriptor (str): Wallet-connect descriptor

        Returns:
            str: The account identity

        Raises:
            WalletConnectionError: If the descriptor is malformed, the session
                cannot be built, or ``get_info`` fails or returns nothing
            StorageError: If persisted state cannot be read or written
        """
        parsed = ConnectionDescriptor.parse(descriptor)
        identity = parsed.account_identity

        try:
            session = self.session_factory(descriptor)
            info = session.get_info()
        except WalletConnectionError:
            raise
        except Exception as e:
            logger.warning("Connection to %s failed: %s", identity, e)
            raise WalletConnectionError(f"Failed to connect to wallet: {e}") from e

        if not info:
            raise WalletConnectionError("Failed to connect to wallet: empty info response")

        try:
            wallets = self.storage.load_sub_wallets(identity)
            self.storage.save_descriptor(descriptor)
        except StorageError:
            if session is not self._session:
                self._close_session(session)
            raise

        if self._session is not None and self._session is not session:
            self._close_session(self._session)

        self._session = session
        self._descriptor = descriptor
        self._account_identity = identity
        self.ledger.load(identity, descriptor, wallets)

        logger.info("Connected to %s (%d sub-wallets)", identity, len(wallets))
        return identity

    def disconnect(self) -> None:
        """Drop the session and forget the descriptor.

        Sub-wallets remain stored under the account identity, so connecting
        the same account again restores them.
        """
        if self._session is not None:
            self._close_session(self._session)

        identity = self._account_identity
        self._session = None
        self._descriptor = None
        self._account_identity = None
        self.ledger.unload()

        self.storage.clear_descriptor()
        logger.info("Disconnected from %s", identity)

    def restore(self) -> Optional[str]:
        """Reconnect with the persisted descriptor, if one exists.

        Returns:
            Optional[str]: The account identity, or None when nothing is stored

        Raises:
            WalletConnectionError: If the stored descriptor no longer connects
        """
        try:
            descriptor = self.storage.load_descriptor()
        except StorageError as e:
            logger.error("Could not read the saved connection: %s", e)
            raise

        if not descriptor:
            return None

        logger.info("Restoring saved wallet connection")
        return self.connect(descriptor)

    def _close_session(self, session: RemoteWalletSession) -> None:
        try:
            session.close()
        except Exception as e:
            logger.warning("Error while closing wallet session: %s", e)
