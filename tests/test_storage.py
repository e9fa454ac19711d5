"""Tests for the persistence adapter."""

import os

import pytest

from subwallet.exceptions import StorageError
from subwallet.models import SubWallet
from subwallet.storage import (
    MASTER_DESCRIPTOR_KEY,
    InMemoryKeyValueStore,
    JsonFileStore,
    WalletStorage,
    sub_wallets_key,
)


PUBKEY = "ab" * 32
URI = f"nostr+walletconnect://{PUBKEY}?relay=wss://relay.example"


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path):
    """Each store implementation."""
    if request.param == "memory":
        return InMemoryKeyValueStore()
    return JsonFileStore(tmp_path / "store")


@pytest.fixture
def storage(store):
    return WalletStorage(store)


class TestKeyValueStore:
    """Tests shared by every store implementation."""

    def test_save_and_load(self, store):
        store.save("key", "value")
        assert store.load("key") == "value"

    def test_overwrite(self, store):
        store.save("key", "one")
        store.save("key", "two")
        assert store.load("key") == "two"

    def test_missing_key(self, store):
        assert store.load("nope") is None

    def test_delete(self, store):
        store.save("key", "value")
        store.delete("key")
        assert store.load("key") is None

        # Deleting again is not an error
        store.delete("key")


class TestJsonFileStore:
    """Tests specific to the file store."""

    def test_survives_new_instance(self, tmp_path):
        JsonFileStore(tmp_path).save("key", "value")
        assert JsonFileStore(tmp_path).load("key") == "value"

    def test_corrupt_file_raises(self, tmp_path):
        store = JsonFileStore(tmp_path)
        store.save("key", "value")
        store._path("key").write_text("{not json", encoding="utf-8")

        with pytest.raises(StorageError):
            store.load("key")

    def test_failed_write_leaves_no_temp_file(self, tmp_path, monkeypatch):
        store = JsonFileStore(tmp_path)
        store.save("key", "old")

        def refuse(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", refuse)
        with pytest.raises(StorageError):
            store.save("key", "new")
        monkeypatch.undo()

        assert [p.name for p in tmp_path.iterdir()] == [store._path("key").name]
        assert store.load("key") == "old"


class TestWalletStorage:
    """Tests for typed descriptor / sub-wallet persistence."""

    def test_descriptor_round_trip(self, storage):
        assert storage.load_descriptor() is None

        storage.save_descriptor(URI)
        assert storage.load_descriptor() == URI
        assert storage.store.load(MASTER_DESCRIPTOR_KEY) == URI

        storage.clear_descriptor()
        assert storage.load_descriptor() is None

    def test_sub_wallets_keep_order(self, storage):
        """Test sub-wallets load in the order they were saved."""
        wallets = [
            SubWallet(name=f"w{i}", connection_descriptor=URI, funding_msat=i * 1000, tx_ids=[f"tx{i}"])
            for i in range(5)
        ]
        storage.save_sub_wallets(PUBKEY, wallets)

        loaded = storage.load_sub_wallets(PUBKEY)
        assert [w.id for w in loaded] == [w.id for w in wallets]
        assert loaded[3].funding_msat == 3000
        assert loaded[3].tx_ids == ["tx3"]

    def test_sub_wallets_scoped_by_identity(self, storage):
        storage.save_sub_wallets(PUBKEY, [SubWallet(name="a", connection_descriptor=URI)])

        assert storage.load_sub_wallets("cd" * 32) == []
        assert storage.store.load(sub_wallets_key(PUBKEY)) is not None

    def test_legacy_payload_loads(self, storage):
        """Test records written before tx_ids existed."""
        storage.store.save(
            sub_wallets_key(PUBKEY),
            '[{"id": "sub_1_a", "name": "Old", "connection_descriptor": "%s",'
            ' "permissions": [], "created_at": "2024-01-01T00:00:00Z", "status": "active"}]' % URI,
        )

        loaded = storage.load_sub_wallets(PUBKEY)
        assert len(loaded) == 1
        assert loaded[0].tx_ids == []
        assert loaded[0].spent_msat == 0

    def test_corrupt_payload_raises(self, storage):
        """Test unreadable data is reported, not replaced with an empty list."""
        storage.store.save(sub_wallets_key(PUBKEY), '[{"name": 5}]')

        with pytest.raises(StorageError):
            storage.load_sub_wallets(PUBKEY)
