"""Remote wallet session interface and the in-memory local wallet.

The SDK does not speak the wallet-connect protocol itself. Anything that can
talk to a real wallet (a relay client, an SDK binding, an HTTP bridge) plugs
in by subclassing RemoteWalletSession. Responses are plain dictionaries shaped
like wallet-connect results, because real wallets differ in which optional
fields they fill in.

InMemoryWalletSession is a complete wallet simulation used for local mode and
tests.
"""

import hashlib
import re
import secrets
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Union

from subwallet.exceptions import ProtocolError
from subwallet.models import ConnectionDescriptor


RemoteResponse = Dict[str, Any]
SessionFactory = Callable[[str], "RemoteWalletSession"]

ALL_METHODS = ["get_info", "get_balance", "make_invoice", "pay_invoice", "list_transactions"]


class RemoteWalletSession(ABC):
    """Abstract handle to the real wallet connection.

    All methods are blocking calls. Implementations raise:
    - NetworkError when the remote cannot be reached
    - ProtocolError when the wallet answers with an error payload

    Usage Example:
        ```python
        class RelayWalletSession(RemoteWalletSession):
            def __init__(self, descriptor):
                self.client = RelayClient(descriptor)

            def get_info(self):
                return self.client.call("get_info", {})
            ...
        ```
    """

    @abstractmethod
    def get_info(self) -> RemoteResponse:
        """Return wallet info (alias, pubkey, supported methods)."""
        pass

    @abstractmethod
    def get_balance(self) -> RemoteResponse:
        """Return ``{"balance": <msat>}``."""
        pass

    @abstractmethod
    def make_invoice(self, amount_msat: int, description: Optional[str] = None) -> RemoteResponse:
        """Create an invoice; returns at least ``{"invoice": ...}`` and usually ``payment_hash``."""
        pass

    @abstractmethod
    def pay_invoice(self, invoice: str) -> RemoteResponse:
        """Pay an invoice; returns ``{"preimage": ...}`` and possibly ``payment_hash``."""
        pass

    @abstractmethod
    def list_transactions(self, limit: int) -> Union[List[RemoteResponse], RemoteResponse]:
        """Return up to ``limit`` most recent transactions, newest first.

        Either a bare list or ``{"transactions": [...]}``.
        """
        pass

    def close(self) -> None:
        """Release any transport resources. Default: nothing to release."""
        pass

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"


def balance_msat_from(response: Optional[RemoteResponse]) -> int:
    """Extract the balance in msat from a ``get_balance`` response.

    Raises:
        ProtocolError: If the response carries no numeric balance
    """
    if not isinstance(response, dict) or response.get("balance") is None:
        raise ProtocolError("Balance response did not include a balance")
    try:
        return int(response["balance"])
    except (TypeError, ValueError):
        raise ProtocolError(f"Balance response is not numeric: {response['balance']!r}")


def remote_id_from(response: Optional[RemoteResponse]) -> Optional[str]:
    """Return the stable remote identifier of a payment/invoice response, if any."""
    if not isinstance(response, dict):
        return None
    remote_id = response.get("payment_hash") or response.get("id")
    return str(remote_id) if remote_id else None


_INVOICE_PATTERN = re.compile(r"^lnmock(?P<amount>\d+)n1(?P<hash>[0-9a-f]{64})$")


class InMemoryWalletSession(RemoteWalletSession):
    """A self-contained wallet kept in memory.

    Invoices are strings of the form ``lnmock<amount_msat>n1<payment_hash>``.
    Paying one created by another InMemoryWalletSession of the same
    LocalWalletFactory credits that wallet.

    Failure injection for tests:
        ```python
        session.fail("list_transactions", NetworkError("relay down"))
        session.recover("list_transactions")
        ```

    Attributes:
        pubkey (str): Wallet pubkey (account identity)
        balance_msat (int): Current balance
        report_ids (bool): If False, history records omit ``payment_hash``/``id``,
            like wallets that do not report stable identifiers
    """

    def __init__(self, pubkey: str, balance_msat: int = 0, alias: str = "local-wallet",
                 report_ids: bool = True, network: Optional["LocalWalletFactory"] = None):
        self.pubkey = pubkey
        self.balance_msat = balance_msat
        self.alias = alias
        self.report_ids = report_ids
        self.network = network
        self._transactions: List[Dict[str, Any]] = []
        self._invoices: Dict[str, Dict[str, Any]] = {}
        self._failures: Dict[str, Exception] = {}
        self.calls: List[str] = []

    def fail(self, method: str, error: Exception) -> None:
        """Make every call to ``method`` raise ``error`` until recovered."""
        self._failures[method] = error

    def recover(self, method: Optional[str] = None) -> None:
        """Clear injected failures (all of them when ``method`` is None)."""
        if method is None:
            self._failures.clear()
        else:
            self._failures.pop(method, None)

    def _enter(self, method: str) -> None:
        self.calls.append(method)
        if method in self._failures:
            raise self._failures[method]

    def get_info(self) -> RemoteResponse:
        self._enter("get_info")
        return {"alias": self.alias, "pubkey": self.pubkey, "methods": list(ALL_METHODS)}

    def get_balance(self) -> RemoteResponse:
        self._enter("get_balance")
        return {"balance": self.balance_msat}

    def make_invoice(self, amount_msat: int, description: Optional[str] = None) -> RemoteResponse:
        self._enter("make_invoice")
        if amount_msat <= 0:
            raise ProtocolError("Invoice amount must be positive")

        payment_hash = hashlib.sha256(secrets.token_bytes(32)).hexdigest()
        invoice = f"lnmock{amount_msat}n1{payment_hash}"
        record = {
            "type": "incoming",
            "invoice": invoice,
            "description": description,
            "payment_hash": payment_hash,
            "amount": amount_msat,
            "created_at": int(time.time()),
            "state": "pending",
        }
        self._invoices[payment_hash] = record
        self._transactions.append(record)
        if self.network is not None:
            self.network.register_invoice(payment_hash, self)
        return {"invoice": invoice, "payment_hash": payment_hash, "amount": amount_msat}

    def settle_invoice(self, payment_hash: str) -> None:
        """Mark one of this wallet's invoices as paid and credit the balance."""
        record = self._invoices.get(payment_hash)
        if record is None:
            raise ProtocolError(f"Unknown invoice {payment_hash}")
        if record["state"] == "settled":
            return
        record["state"] = "settled"
        record["settled_at"] = int(time.time())
        self.balance_msat += record["amount"]

    def pay_invoice(self, invoice: str) -> RemoteResponse:
        self._enter("pay_invoice")
        match = _INVOICE_PATTERN.match(invoice.strip().lower()) if invoice else None
        if match is None:
            raise ProtocolError("Invalid invoice")

        amount = int(match.group("amount"))
        payment_hash = match.group("hash")
        if payment_hash in self._invoices:
            raise ProtocolError("Cannot pay own invoice")
        if amount > self.balance_msat:
            raise ProtocolError(
                f"Insufficient balance: have {self.balance_msat} msat, need {amount} msat"
            )

        self.balance_msat -= amount
        self._transactions.append({
            "type": "outgoing",
            "invoice": invoice,
            "payment_hash": payment_hash,
            "amount": amount,
            "created_at": int(time.time()),
            "state": "settled",
        })
        if self.network is not None:
            self.network.settle(payment_hash)

        return {"preimage": secrets.token_hex(32), "payment_hash": payment_hash}

    def receive_external(self, amount_msat: int, description: Optional[str] = None) -> str:
        """Record an incoming payment that no invoice of ours requested."""
        payment_hash = hashlib.sha256(secrets.token_bytes(32)).hexdigest()
        self.balance_msat += amount_msat
        self._transactions.append({
            "type": "incoming",
            "payment_hash": payment_hash,
            "amount": amount_msat,
            "description": description,
            "created_at": int(time.time()),
            "state": "settled",
        })
        return payment_hash

    def list_transactions(self, limit: int) -> RemoteResponse:
        self._enter("list_transactions")
        newest_first = list(reversed(self._transactions))[:limit]
        if self.report_ids:
            records = [dict(r) for r in newest_first]
        else:
            records = [
                {k: v for k, v in r.items() if k not in ("payment_hash", "id")}
                for r in newest_first
            ]
        return {"transactions": records}

    def __repr__(self) -> str:
        return f"<InMemoryWalletSession(pubkey={self.pubkey[:8]}..., balance={self.balance_msat})>"


class LocalWalletFactory:
    """Session factory for local mode.

    Returns one InMemoryWalletSession per account identity and reuses it on
    reconnect, so balances and history survive a disconnect/connect cycle.
    Sessions created by the same factory can pay each other's invoices.

    Usage Example:
        ```python
        factory = LocalWalletFactory(initial_balance_msat=1_000_000)
        session = factory(descriptor)
        ```
    """

    def __init__(self, initial_balance_msat: int = 0):
        self.initial_balance_msat = initial_balance_msat
        self.sessions: Dict[str, InMemoryWalletSession] = {}
        self._invoice_owners: Dict[str, InMemoryWalletSession] = {}

    def __call__(self, descriptor: str) -> InMemoryWalletSession:
        pubkey = ConnectionDescriptor.parse(descriptor).pubkey
        if pubkey not in self.sessions:
            self.sessions[pubkey] = InMemoryWalletSession(
                pubkey=pubkey,
                balance_msat=self.initial_balance_msat,
                network=self,
            )
        return self.sessions[pubkey]

    def register_invoice(self, payment_hash: str, owner: InMemoryWalletSession) -> None:
        self._invoice_owners[payment_hash] = owner

    def settle(self, payment_hash: str) -> None:
        owner = self._invoice_owners.get(payment_hash)
        if owner is not None:
            owner.settle_invoice(payment_hash)
