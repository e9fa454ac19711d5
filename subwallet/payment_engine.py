"""Payment Engine - sub-wallet scoped payments and invoices.

The PaymentEngine provides the operations a sub-wallet performs against the
shared master session. It:
- Checks the sub-wallet exists before touching the network
- Creates invoices and attributes them to the requesting sub-wallet
- Pays invoices and Lightning addresses on behalf of a sub-wallet
- Records a provisional delta only after the remote call succeeded

A failed remote call leaves the ledger untouched; the error propagates.
"""

from typing import Any, Callable, Dict, Optional

from subwallet.address_resolver import AddressResolver
from subwallet.exceptions import (
    NetworkError,
    NotConnectedError,
    ProtocolError,
    SubWalletError,
    SubWalletNotFoundError,
)
from subwallet.ledger_manager import SPENT, SubWalletLedger
from subwallet.logger import get_logger
from subwallet.models import SubWallet
from subwallet.remote import remote_id_from
from subwallet.session_manager import SessionManager


logger = get_logger(__name__)


class InvoiceResult:
    """Result of creating an invoice for a sub-wallet.

    Attributes:
        wallet_id (str): Sub-wallet the invoice belongs to
        invoice (str): Payment request to hand to the payer
        amount_msat (int): Requested amount
        remote_id (Optional[str]): Payment hash / ID; None if the wallet did not
            report one, in which case the payment cannot be attributed later
        raw (Dict[str, Any]): The remote response
    """

    def __init__(self, wallet_id: str, invoice: str, amount_msat: int,
                 remote_id: Optional[str], raw: Dict[str, Any]):
        self.wallet_id = wallet_id
        self.invoice = invoice
        self.amount_msat = amount_msat
        self.remote_id = remote_id
        self.raw = raw

    @property
    def trackable(self) -> bool:
        return self.remote_id is not None

    def __repr__(self) -> str:
        return f"InvoiceResult(wallet_id={self.wallet_id}, amount_msat={self.amount_msat})"


class PaymentResult:
    """Result of a successful payment from a sub-wallet.

    Attributes:
        wallet_id (str): Paying sub-wallet
        payment_request (str): The invoice that was paid
        amount_msat (Optional[int]): Amount, if known when paying
        remote_id (Optional[str]): Payment hash / ID reported by the wallet
        preimage (Optional[str]): Proof of payment
        provisional_recorded (bool): True if the spend was recorded on the ledger
        raw (Dict[str, Any]): The remote response
    """

    def __init__(self, wallet_id: str, payment_request: str, amount_msat: Optional[int],
                 remote_id: Optional[str], preimage: Optional[str],
                 provisional_recorded: bool, raw: Dict[str, Any]):
        self.wallet_id = wallet_id
        self.payment_request = payment_request
        self.amount_msat = amount_msat
        self.remote_id = remote_id
        self.preimage = preimage
        self.provisional_recorded = provisional_recorded
        self.raw = raw

    def __repr__(self) -> str:
        return (f"PaymentResult(wallet_id={self.wallet_id}, amount_msat={self.amount_msat}, "
                f"remote_id={self.remote_id})")


class PaymentEngine:
    """Engine for payments and invoices scoped to sub-wallets.

    Workflow (pay):
    1. Validate the sub-wallet exists
    2. Call ``pay_invoice`` on the master session
    3. On success, record a provisional spend with the remote ID
    4. On failure, raise and leave the ledger unchanged

    When the amount is unknown at payment time the provisional spend is 0;
    the next reconciliation pass replaces it with the settled amount.

    Usage Example:
        ```python
        engine = PaymentEngine(session_manager, ledger, LightningAddressResolver())

        invoice = engine.receive(wallet.id, 50_000, "Top-up")
        print(invoice.invoice)

        result = engine.pay_address(wallet.id, "bob@example.com", 21_000)
        print(result.remote_id)
        ```
    """

    def __init__(self, session_manager: SessionManager, ledger: SubWalletLedger,
                 resolver: Optional[AddressResolver] = None):
        """Initialize the payment engine.

        Args:
            session_manager (SessionManager): Provides the master session
            ledger (SubWalletLedger): Ledger receiving provisional deltas
            resolver (Optional[AddressResolver]): Needed only for pay_address
        """
        self.session_manager = session_manager
        self.ledger = ledger
        self.resolver = resolver

    def receive(self, wallet_id: str, amount_msat: int,
                description: Optional[str] = None) -> InvoiceResult:
        """Create an invoice whose payment will count toward a sub-wallet.

        The invoice's remote ID is attributed to the sub-wallet right away;
        the received amount only counts once reconciliation sees it settled.

        Args:
            wallet_id (str): Receiving sub-wallet
            amount_msat (int): Invoice amount (must be > 0)
            description (Optional[str]): Defaults to "Funding <wallet name>"

        Returns:
            InvoiceResult: The invoice and its remote ID

        Raises:
            NotConnectedError: If no session is active
            SubWalletNotFoundError: If the sub-wallet does not exist
            ProtocolError / NetworkError: If the remote call fails
        """
        if amount_msat <= 0:
            raise ValueError("Invoice amount must be positive")

        wallet = self._require_wallet(wallet_id)
        description = description or f"Funding {wallet.name}"

        session = self.session_manager.session
        response = self._call_remote("make_invoice", session.make_invoice, amount_msat, description)

        invoice = response.get("invoice") if isinstance(response, dict) else None
        if not invoice:
            raise ProtocolError("Wallet did not return an invoice")

        remote_id = remote_id_from(response)
        if remote_id:
            self.ledger.attribute(wallet_id, remote_id)
        else:
            logger.warning("Invoice for %s has no remote ID; it cannot be attributed", wallet_id)

        return InvoiceResult(wallet_id, invoice, amount_msat, remote_id, response)

    def pay_invoice(self, wallet_id: str, invoice: str,
                    amount_msat: Optional[int] = None) -> PaymentResult:
        """Pay an invoice on behalf of a sub-wallet.

        Args:
            wallet_id (str): Paying sub-wallet
            invoice (str): Payment request
            amount_msat (Optional[int]): Amount if known; 0 is recorded otherwise

        Returns:
            PaymentResult: Details of the completed payment

        Raises:
            NotConnectedError: If no session is active
            SubWalletNotFoundError: If the sub-wallet does not exist
            ProtocolError / NetworkError: If the payment fails (ledger unchanged)
        """
        if not invoice or not invoice.strip():
            raise ValueError("Invoice is required")
        if amount_msat is not None and amount_msat < 0:
            raise ValueError("Payment amount must not be negative")

        self._require_wallet(wallet_id)
        session = self.session_manager.session
        response = self._call_remote("pay_invoice", session.pay_invoice, invoice.strip())
        response = response if isinstance(response, dict) else {}

        remote_id = remote_id_from(response)
        recorded = self.ledger.record_delta(wallet_id, amount_msat or 0, SPENT, remote_id)

        logger.info("Sub-wallet %s paid %s msat (tx %s)", wallet_id,
                    amount_msat if amount_msat is not None else "unknown", remote_id)
        return PaymentResult(
            wallet_id=wallet_id,
            payment_request=invoice.strip(),
            amount_msat=amount_msat,
            remote_id=remote_id,
            preimage=response.get("preimage"),
            provisional_recorded=recorded,
            raw=response,
        )

    def pay_address(self, wallet_id: str, address: str, amount_msat: int) -> PaymentResult:
        """Pay a Lightning address on behalf of a sub-wallet.

        Raises:
            ValueError: If no resolver is configured or the amount is not positive
            ResolutionError: If the address cannot be turned into an invoice
            ProtocolError / NetworkError: If the payment fails (ledger unchanged)
        """
        if self.resolver is None:
            raise ValueError("No address resolver configured")
        if amount_msat <= 0:
            raise ValueError("Payment amount must be positive")

        self._require_wallet(wallet_id)
        payment_request = self.resolver.payment_request_for(address, amount_msat)
        return self.pay_invoice(wallet_id, payment_request, amount_msat)

    def _require_wallet(self, wallet_id: str) -> SubWallet:
        if not self.session_manager.is_connected():
            raise NotConnectedError()
        wallet = self.ledger.get(wallet_id)
        if wallet is None:
            raise SubWalletNotFoundError(wallet_id)
        return wallet

    @staticmethod
    def _call_remote(method: str, call: Callable[..., Any], *args: Any) -> Any:
        try:
            return call(*args)
        except SubWalletError:
            raise
        except Exception as e:
            logger.warning("Remote %s failed: %s", method, e)
            raise NetworkError(f"Remote {method} failed: {e}") from e
