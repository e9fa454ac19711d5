"""Persistence adapter - keyed storage for the descriptor and sub-wallet records.

The SDK persists exactly two kinds of values:

- ``master_connection_descriptor``: the last connected descriptor string,
  deleted on disconnect
- ``sub_wallets_<account identity>``: the ordered list of that account's
  sub-wallets, kept across disconnects so reconnecting restores the ledger

The underlying store only deals in string blobs. ``KeyValueStore`` is the
interface an application implements over its secure storage (OS keychain,
encrypted preferences, ...). Two implementations ship with the SDK: an
in-memory store for local mode and tests, and a JSON file store.
"""

import json
import os
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Union

from pydantic import TypeAdapter, ValidationError

from subwallet.exceptions import StorageError
from subwallet.logger import get_logger
from subwallet.models import SubWallet


logger = get_logger(__name__)

MASTER_DESCRIPTOR_KEY = "master_connection_descriptor"
SUB_WALLETS_KEY_PREFIX = "sub_wallets_"

_sub_wallet_list = TypeAdapter(List[SubWallet])


def sub_wallets_key(account_identity: str) -> str:
    """Storage key holding the sub-wallets of an account."""
    return f"{SUB_WALLETS_KEY_PREFIX}{account_identity}"


class KeyValueStore(ABC):
    """Interface for secure key-value storage of string blobs.

    Implementations raise StorageError when a read or write cannot complete.
    """

    @abstractmethod
    def save(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""
        pass

    @abstractmethod
    def load(self, key: str) -> Optional[str]:
        """Return the value under ``key``, or None when absent."""
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove ``key``. Deleting an absent key is not an error."""
        pass


class InMemoryKeyValueStore(KeyValueStore):
    """Dictionary-backed store. Contents are lost with the process."""

    def __init__(self):
        self._data: Dict[str, str] = {}

    def save(self, key: str, value: str) -> None:
        self._data[key] = value

    def load(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore(KeyValueStore):
    """Store each key as a small file under a directory.

    Writes go to a temporary file that is renamed over the target, so a crash
    mid-write leaves the previous value intact.

    Args:
        directory (Union[str, Path]): Directory holding one file per key.
            Created if missing.
    """

    _SAFE_KEY = re.compile(r"[^A-Za-z0-9_.-]")

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory).expanduser()
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create storage directory {self.directory}: {e}")

    def _path(self, key: str) -> Path:
        return self.directory / f"{self._SAFE_KEY.sub('_', key)}.json"

    def save(self, key: str, value: str) -> None:
        path = self._path(key)
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=".tmp-")
        except OSError as e:
            raise StorageError(f"Failed to write key {key}: {e}", {"key": key})
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as tmp:
                json.dump({"key": key, "value": value}, tmp)
            os.replace(tmp_name, path)
        except (OSError, TypeError, ValueError) as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise StorageError(f"Failed to write key {key}: {e}", {"key": key})

    def load(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with path.open(encoding="utf-8") as f:
                return json.load(f)["value"]
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise StorageError(f"Failed to read key {key}: {e}", {"key": key})

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to delete key {key}: {e}", {"key": key})


class WalletStorage:
    """Typed access to the SDK's persisted state on top of a KeyValueStore.

    Usage Example:
        ```python
        storage = WalletStorage(InMemoryKeyValueStore())
        storage.save_descriptor(uri)
        storage.save_sub_wallets("abcd...", [wallet])
        wallets = storage.load_sub_wallets("abcd...")
        ```
    """

    def __init__(self, store: KeyValueStore):
        self.store = store

    def save_descriptor(self, descriptor: str) -> None:
        self.store.save(MASTER_DESCRIPTOR_KEY, descriptor)

    def load_descriptor(self) -> Optional[str]:
        return self.store.load(MASTER_DESCRIPTOR_KEY)

    def clear_descriptor(self) -> None:
        self.store.delete(MASTER_DESCRIPTOR_KEY)

    def save_sub_wallets(self, account_identity: str, wallets: List[SubWallet]) -> None:
        """Persist an account's sub-wallets in order.

        Raises:
            StorageError: If the underlying store fails
        """
        payload = _sub_wallet_list.dump_json(wallets).decode("utf-8")
        self.store.save(sub_wallets_key(account_identity), payload)

    def load_sub_wallets(self, account_identity: str) -> List[SubWallet]:
        """Load an account's sub-wallets, in their persisted order.

        Records written by older versions may lack ``tx_ids`` or the running
        totals; those fields load with empty / zero defaults.

        Returns:
            List[SubWallet]: Persisted sub-wallets (empty if none stored)

        Raises:
            StorageError: If the store fails or the stored data is unreadable
        """
        key = sub_wallets_key(account_identity)
        raw = self.store.load(key)
        if not raw:
            return []
        try:
            return _sub_wallet_list.validate_json(raw)
        except ValidationError as e:
            logger.error("Stored sub-wallets for %s are unreadable: %s", account_identity, e)
            raise StorageError(f"Stored sub-wallet data under {key} is corrupt", {"key": key})
