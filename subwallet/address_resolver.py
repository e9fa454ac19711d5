"""
Address resolution for paying human-readable Lightning addresses.

Turns ``user@domain`` into a payment request in two HTTP steps:
1. ``GET https://<domain>/.well-known/lnurlp/<user>`` returns pay metadata
2. ``GET <callback>?amount=<msat>`` returns the payment request (``pr``)
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import requests
from pydantic import BaseModel, Field, ValidationError

from subwallet.exceptions import ResolutionError
from subwallet.logger import get_logger


logger = get_logger(__name__)


class PayRequestMetadata(BaseModel):
    """Pay metadata returned by a Lightning address server.

    Attributes:
        callback (str): URL that issues payment requests
        min_sendable (int): Smallest payable amount in msat
        max_sendable (Optional[int]): Largest payable amount in msat
        metadata (Optional[str]): Server-provided metadata string
        comment_allowed (int): Max comment length accepted by the server
    """

    callback: str
    min_sendable: int = Field(default=1, alias="minSendable")
    max_sendable: Optional[int] = Field(default=None, alias="maxSendable")
    metadata: Optional[str] = None
    comment_allowed: int = Field(default=0, alias="commentAllowed")

    model_config = {"populate_by_name": True}

    def accepts(self, amount_msat: int) -> bool:
        if amount_msat < self.min_sendable:
            return False
        return self.max_sendable is None or amount_msat <= self.max_sendable


class AddressResolver(ABC):
    """Interface for resolving payment addresses to payment requests."""

    @abstractmethod
    def resolve(self, address: str) -> PayRequestMetadata:
        """Resolve an address to its pay metadata.

        Raises:
            ResolutionError: If the address is invalid or cannot be resolved
        """
        pass

    @abstractmethod
    def fetch_payment_request(self, callback: str, amount_msat: int) -> str:
        """Ask a callback for a payment request of ``amount_msat``.

        Raises:
            ResolutionError: If no payment request is returned
        """
        pass

    def payment_request_for(self, address: str, amount_msat: int) -> str:
        """Resolve ``address`` and fetch a payment request for ``amount_msat``."""
        metadata = self.resolve(address)
        if not metadata.accepts(amount_msat):
            raise ResolutionError(
                f"Amount {amount_msat} msat outside accepted range "
                f"{metadata.min_sendable}..{metadata.max_sendable}",
                {"address": address},
            )
        return self.fetch_payment_request(metadata.callback, amount_msat)


class LightningAddressResolver(AddressResolver):
    """
    Resolver for ``user@domain`` Lightning addresses over HTTPS.

    Example:
        ```python
        with LightningAddressResolver(timeout=10) as resolver:
            invoice = resolver.payment_request_for("alice@example.com", 21_000)
        ```
    """

    def __init__(self, timeout: float = 30, session: Optional[requests.Session] = None):
        """
        Args:
            timeout: Seconds to wait for each HTTP call
            session: Optional requests session (a new one is created otherwise)
        """
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            'Accept': 'application/json',
            'User-Agent': 'SubWallet-SDK/0.1'
        })

    @staticmethod
    def well_known_url(address: str) -> str:
        """Build the well-known pay URL for an address.

        Raises:
            ResolutionError: If the address is not ``user@domain``
        """
        user, sep, domain = (address or "").strip().partition("@")
        if not sep or not user or not domain or "@" in domain:
            raise ResolutionError(f"Invalid Lightning address: {address!r}")
        return f"https://{domain.lower()}/.well-known/lnurlp/{user.lower()}"

    def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.Timeout:
            raise ResolutionError(f"Request to {url} timed out")
        except requests.exceptions.ConnectionError:
            raise ResolutionError(f"Failed to connect to {url}")
        except requests.exceptions.HTTPError as e:
            raise ResolutionError(f"{url} returned HTTP {e.response.status_code}")
        except ValueError:
            raise ResolutionError(f"{url} did not return JSON")
        except requests.exceptions.RequestException as e:
            raise ResolutionError(f"Request to {url} failed: {e}")

        if not isinstance(data, dict):
            raise ResolutionError(f"{url} returned an unexpected payload")
        if str(data.get("status", "")).upper() == "ERROR":
            raise ResolutionError(data.get("reason") or f"{url} returned an error")
        return data

    def resolve(self, address: str) -> PayRequestMetadata:
        url = self.well_known_url(address)
        data = self._get_json(url)
        if not data.get("callback"):
            raise ResolutionError(f"No callback in pay metadata for {address}")

        logger.debug("Resolved %s to %s", address, data["callback"])
        try:
            return PayRequestMetadata.model_validate(data)
        except ValidationError as e:
            raise ResolutionError(f"Malformed pay metadata for {address}: {e}")

    def fetch_payment_request(self, callback: str, amount_msat: int) -> str:
        if amount_msat <= 0:
            raise ResolutionError("Payment amount must be positive")

        # Callbacks may already carry query parameters
        parts = urlsplit(callback)
        query = parse_qsl(parts.query, keep_blank_values=True)
        query.append(("amount", str(amount_msat)))
        url = urlunsplit(parts._replace(query=urlencode(query)))

        data = self._get_json(url)
        payment_request = data.get("pr")
        if not payment_request:
            raise ResolutionError("Callback did not return a payment request")
        return payment_request

    def close(self):
        """Close the HTTP session."""
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
