"""Connection descriptor parsing and account identity derivation.

A wallet-connect descriptor looks like::

    nostr+walletconnect://<wallet-pubkey>?relay=wss://relay.example&secret=<hex>

The account identity is the wallet pubkey, lowercased. It scopes every
persisted sub-wallet record, so deriving it must be a pure function of the
descriptor string: no network access, and no silent fallback value when the
descriptor cannot be parsed.
"""

import re
from typing import List, Optional
from urllib.parse import parse_qs, urlsplit

from pydantic import BaseModel, Field

from subwallet.exceptions import WalletConnectionError


DESCRIPTOR_SCHEMES = ("nostr+walletconnect", "nostrwalletconnect", "nwc")

_PUBKEY_PATTERN = re.compile(r"^[0-9a-f]{64}$")


class ConnectionDescriptor(BaseModel):
    """Parsed form of a wallet-connect descriptor.

    Attributes:
        raw (str): The original descriptor string, as supplied
        pubkey (str): Lowercased wallet service pubkey (the account identity)
        relays (List[str]): Relay URLs listed in the descriptor
        secret (Optional[str]): Client secret; never logged
        lud16 (Optional[str]): Lightning address advertised by the wallet, if any
    """

    raw: str = Field(repr=False)
    pubkey: str
    relays: List[str] = Field(default_factory=list)
    secret: Optional[str] = Field(default=None, repr=False)
    lud16: Optional[str] = None

    @property
    def account_identity(self) -> str:
        return self.pubkey

    @classmethod
    def parse(cls, descriptor: str) -> "ConnectionDescriptor":
        """Parse a descriptor string.

        Args:
            descriptor (str): Wallet-connect URI

        Returns:
            ConnectionDescriptor: Parsed descriptor

        Raises:
            WalletConnectionError: If the scheme is unknown or the pubkey is
                missing or not 64 hex characters
        """
        if not descriptor or not descriptor.strip():
            raise WalletConnectionError("Connection descriptor is empty")

        parts = urlsplit(descriptor.strip())
        if parts.scheme.lower() not in DESCRIPTOR_SCHEMES:
            raise WalletConnectionError(
                f"Unsupported connection descriptor scheme: {parts.scheme or '<none>'}"
            )

        # Some wallets emit "scheme:pubkey?..." without the double slash
        host = parts.netloc or parts.path.lstrip("/")
        pubkey = host.split("@")[-1].lower()
        if not _PUBKEY_PATTERN.match(pubkey):
            raise WalletConnectionError("Connection descriptor has no valid wallet pubkey")

        query = parse_qs(parts.query)
        return cls(
            raw=descriptor,
            pubkey=pubkey,
            relays=query.get("relay", []),
            secret=(query.get("secret") or [None])[0],
            lud16=(query.get("lud16") or [None])[0],
        )


def derive_account_identity(descriptor: str) -> str:
    """Derive the account identity for a descriptor.

    Two descriptors that differ only in relays, secret or pubkey case map to
    the same identity.

    Example:
        ```python
        derive_account_identity(
            "nostr+walletconnect://ABCD...?relay=wss://r&secret=s"
        )  # "abcd..."
        ```
    """
    return ConnectionDescriptor.parse(descriptor).account_identity
