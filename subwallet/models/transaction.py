"""Transaction models - read-only mirror of the remote wallet's history.

Transactions are never created or modified locally. They are fetched from the
remote session as a snapshot and normalized into the Transaction shape on
every reconciliation pass.
"""

from datetime import datetime, UTC
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class TransactionDirection(str, Enum):
    """Direction of a remote transaction relative to the master wallet."""
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class TransactionStatus(str, Enum):
    """Settlement state of a remote transaction."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class TransactionIdKind(str, Enum):
    """Where a transaction's ID came from.

    - **REMOTE**: the wallet reported a payment hash or ID. Stable across
      fetches and safe to use for attribution.
    - **SYNTHETIC**: no identifier was reported, so one was built from the
      timestamp and list position. It can change between fetches if the
      remote reorders or drops entries, so it is never used for attribution.
    """
    REMOTE = "remote"
    SYNTHETIC = "synthetic"


_STATUS_ALIASES = {
    "settled": TransactionStatus.COMPLETED,
    "completed": TransactionStatus.COMPLETED,
    "success": TransactionStatus.COMPLETED,
    "pending": TransactionStatus.PENDING,
    "failed": TransactionStatus.FAILED,
    "expired": TransactionStatus.FAILED,
}


class Transaction(BaseModel):
    """A normalized remote transaction.

    Attributes:
        id (str): Remote payment hash / ID, or a synthetic ``tx-<ts>-<index>`` ID
        id_kind (TransactionIdKind): Tag telling whether ``id`` is stable
        direction (TransactionDirection): incoming or outgoing
        amount_msat (int): Amount in millisatoshi
        description (str): Remote description, or "Received"/"Sent"
        timestamp (datetime): UTC creation time reported by the remote
        status (TransactionStatus): Settlement state
        invoice (Optional[str]): Payment request, when reported
        preimage (Optional[str]): Payment preimage, when reported
    """

    id: str
    id_kind: TransactionIdKind = Field(default=TransactionIdKind.REMOTE)
    direction: TransactionDirection
    amount_msat: int = Field(ge=0)
    description: str = ""
    timestamp: datetime
    status: TransactionStatus = Field(default=TransactionStatus.COMPLETED)
    invoice: Optional[str] = None
    preimage: Optional[str] = None

    @property
    def is_stable_id(self) -> bool:
        return self.id_kind == TransactionIdKind.REMOTE

    @property
    def is_incoming(self) -> bool:
        return self.direction == TransactionDirection.INCOMING

    @property
    def is_settled(self) -> bool:
        return self.status == TransactionStatus.COMPLETED

    @classmethod
    def from_remote(cls, record: Dict[str, Any], index: int,
                    now: Optional[datetime] = None) -> "Transaction":
        """Normalize one remote history record.

        Remote records are loosely shaped: ``payment_hash`` and ``id`` may both
        be missing, ``created_at`` is epoch seconds and may be absent, and the
        state field may be called ``state`` or ``status``.

        Args:
            record (Dict[str, Any]): Raw record from ``list_transactions``
            index (int): Position of the record in the fetched list
            now (Optional[datetime]): Fallback timestamp (defaults to current UTC time)

        Returns:
            Transaction: The normalized transaction

        Example:
            ```python
            tx = Transaction.from_remote(
                {"type": "outgoing", "amount": 30000, "payment_hash": "ab12"}, 0
            )
            tx.id          # "ab12"
            tx.id_kind     # TransactionIdKind.REMOTE
            ```
        """
        now = now or datetime.now(UTC)

        created_at = record.get("created_at") or record.get("settled_at")
        timestamp = datetime.fromtimestamp(created_at, UTC) if created_at else now

        remote_id = record.get("payment_hash") or record.get("id")
        if remote_id:
            tx_id = str(remote_id)
            id_kind = TransactionIdKind.REMOTE
        else:
            tx_id = f"tx-{int(timestamp.timestamp())}-{index}"
            id_kind = TransactionIdKind.SYNTHETIC

        direction = (
            TransactionDirection.INCOMING
            if record.get("type") == "incoming"
            else TransactionDirection.OUTGOING
        )

        raw_status = str(record.get("state") or record.get("status") or "").lower()
        status = _STATUS_ALIASES.get(raw_status, TransactionStatus.COMPLETED)

        description = record.get("description") or (
            "Received" if direction == TransactionDirection.INCOMING else "Sent"
        )

        return cls(
            id=tx_id,
            id_kind=id_kind,
            direction=direction,
            amount_msat=abs(int(record.get("amount") or 0)),
            description=description,
            timestamp=timestamp,
            status=status,
            invoice=record.get("invoice"),
            preimage=record.get("preimage"),
        )
