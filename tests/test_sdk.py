"""Tests for the high-level SubWalletSDK."""

import logging
import os

import pytest
from pydantic import ValidationError
from rich.logging import RichHandler

from subwallet import (
    InsufficientFundsError,
    JsonFileStore,
    NotConnectedError,
    Permission,
    Settings,
    SubWalletNotFoundError,
    SubWalletSDK,
    WalletConnectionError,
)
from subwallet.logger import configure_logging, get_logger


PUBKEY_A = "aa" * 32
PUBKEY_B = "bb" * 32
URI_A = f"nostr+walletconnect://{PUBKEY_A}?relay=wss://relay.example&secret=01"
URI_B = f"nostr+walletconnect://{PUBKEY_B}?relay=wss://relay.example&secret=02"


@pytest.fixture
def sdk():
    """A local-mode SDK connected to a wallet holding 1,000,000 msat."""
    sdk = SubWalletSDK()
    sdk.connect(URI_A)
    sdk.session_manager.session.receive_external(1_000_000, "deposit")
    return sdk


@pytest.fixture
def peer(sdk):
    """A second local wallet that can exchange payments with the SDK's wallet."""
    peer = sdk.session_factory(URI_B)
    peer.receive_external(500_000)
    return peer


class TestConnection:
    """Tests for connect / disconnect / restore."""

    def test_local_mode(self):
        sdk = SubWalletSDK()

        assert sdk.mode == "local"
        assert not sdk.is_connected()
        assert sdk.connect(URI_A) == PUBKEY_A
        assert sdk.is_connected()

    def test_bad_descriptor(self):
        sdk = SubWalletSDK()

        with pytest.raises(WalletConnectionError):
            sdk.connect("not a descriptor")

    def test_operations_require_connection(self):
        sdk = SubWalletSDK()

        with pytest.raises(NotConnectedError):
            sdk.create_sub_wallet("w")
        with pytest.raises(NotConnectedError):
            sdk.reconcile()

    def test_switching_accounts(self, sdk):
        """Test connect A, create, connect B, connect A shows A's wallets again."""
        groceries = sdk.create_sub_wallet("Groceries")
        rent = sdk.create_sub_wallet("Rent")

        sdk.connect(URI_B)
        assert sdk.list_sub_wallets() == []

        sdk.connect(URI_A)
        assert [w.id for w in sdk.list_sub_wallets()] == [groceries.id, rent.id]

    def test_restore_from_disk(self, tmp_path):
        settings = Settings(storage_dir=str(tmp_path), enforce_funding_cap=False)
        first = SubWalletSDK(settings=settings)
        first.connect(URI_A)
        wallet = first.create_sub_wallet("Savings")
        first.fund_sub_wallet(wallet.id, 10_000)

        second = SubWalletSDK(settings=settings)
        assert isinstance(second.storage.store, JsonFileStore)
        assert second.restore() == PUBKEY_A
        assert second.get_sub_wallet(wallet.id).funding_msat == 10_000

    def test_disconnect_then_restore(self, sdk):
        sdk.create_sub_wallet("w")
        sdk.disconnect()

        assert not sdk.is_connected()
        assert sdk.restore() is None
        assert sdk.get_balance() is None


class TestSubWallets:
    """Tests for sub-wallet management through the SDK."""

    def test_create_defaults(self, sdk):
        wallet = sdk.create_sub_wallet("Coffee", budget_msat=50_000)

        assert set(wallet.permissions) == set(Permission)
        assert wallet.budget_msat == 50_000
        assert sdk.get_wallet_balance(wallet.id) == 0

    def test_create_empty_name(self, sdk):
        with pytest.raises(ValidationError):
            sdk.create_sub_wallet("")

    def test_fund_accumulates(self, sdk):
        wallet = sdk.create_sub_wallet("w")
        for _ in range(4):
            sdk.fund_sub_wallet(wallet.id, 25_000)

        assert sdk.get_sub_wallet(wallet.id).funding_msat == 100_000
        assert sdk.get_wallet_balance(wallet.id) == 100_000

    def test_fund_unknown(self, sdk):
        with pytest.raises(SubWalletNotFoundError):
            sdk.fund_sub_wallet("sub_missing", 1_000)

    def test_delete(self, sdk):
        wallet = sdk.create_sub_wallet("w")
        sdk.delete_sub_wallet(wallet.id)

        assert sdk.get_sub_wallet(wallet.id) is None
        with pytest.raises(SubWalletNotFoundError):
            sdk.delete_sub_wallet(wallet.id)


class TestFundingCap:
    """Tests for the unallocated-balance funding check."""

    def test_rejects_overdraw(self, sdk):
        wallet = sdk.create_sub_wallet("w")

        with pytest.raises(InsufficientFundsError) as exc_info:
            sdk.fund_sub_wallet(wallet.id, 1_000_001)
        assert exc_info.value.available_msat == 1_000_000
        assert sdk.get_sub_wallet(wallet.id).funding_msat == 0

    def test_counts_other_wallets(self, sdk):
        first = sdk.create_sub_wallet("first")
        second = sdk.create_sub_wallet("second")
        sdk.fund_sub_wallet(first.id, 600_000)

        assert sdk.unallocated_msat() == 400_000
        with pytest.raises(InsufficientFundsError):
            sdk.fund_sub_wallet(second.id, 500_000)
        sdk.fund_sub_wallet(second.id, 400_000)

    def test_cap_disabled(self):
        sdk = SubWalletSDK(settings=Settings(enforce_funding_cap=False))
        sdk.connect(URI_A)
        wallet = sdk.create_sub_wallet("w")

        sdk.fund_sub_wallet(wallet.id, 10**9)
        assert sdk.get_wallet_balance(wallet.id) == 10**9


class TestPaymentsAndReconciliation:
    """End-to-end flows over the local wallet network."""

    def test_spend_scenario(self, sdk, peer):
        """Test fund 100000, pay 30000, reconcile without drift."""
        wallet = sdk.create_sub_wallet("W", budget_msat=0)
        sdk.fund_sub_wallet(wallet.id, 100_000)
        invoice = peer.make_invoice(30_000)["invoice"]

        sdk.pay_invoice(wallet.id, invoice, 30_000)
        assert sdk.get_wallet_balance(wallet.id) == 70_000

        report = sdk.reconcile()
        assert report.wallets[wallet.id].corrected is False
        assert sdk.get_sub_wallet(wallet.id).spent_msat == 30_000
        assert sdk.get_wallet_balance(wallet.id) == 70_000
        assert report.account_balance_msat == 970_000

    def test_receive_and_history(self, sdk, peer):
        wallet = sdk.create_sub_wallet("Tips")
        other = sdk.create_sub_wallet("Other")
        invoice = sdk.receive(wallet.id, 40_000)
        peer.pay_invoice(invoice.invoice)

        sdk.reconcile()

        assert sdk.get_sub_wallet(wallet.id).received_msat == 40_000
        assert sdk.get_wallet_balance(wallet.id) == 40_000
        assert [t.id for t in sdk.get_wallet_transactions(wallet.id)] == [invoice.remote_id]
        assert sdk.get_wallet_transactions(other.id) == []
        assert sdk.get_balance() == 1_040_000

    def test_unattributed_deposit_not_counted(self, sdk):
        wallet = sdk.create_sub_wallet("w")
        report = sdk.reconcile()

        assert report.wallets[wallet.id].received_msat == 0
        assert len(report.unattributed) == 1

    def test_overspend_clamped(self, sdk, peer):
        wallet = sdk.create_sub_wallet("w")
        sdk.fund_sub_wallet(wallet.id, 1_000)
        sdk.pay_invoice(wallet.id, peer.make_invoice(5_000)["invoice"], 5_000)

        sdk.reconcile()
        assert sdk.get_sub_wallet(wallet.id).net_msat == -4_000
        assert sdk.get_wallet_balance(wallet.id) == 0

    def test_history_failure_does_not_block_balances(self, sdk):
        wallet = sdk.create_sub_wallet("w")
        sdk.fund_sub_wallet(wallet.id, 5_000)
        sdk.session_manager.session.fail("list_transactions", RuntimeError("relay down"))

        report = sdk.reconcile()

        assert report.history_known is False
        assert report.wallets[wallet.id].balance_msat == 5_000
        assert report.account_balance_msat == 1_000_000

    def test_wallet_transactions_unknown(self, sdk):
        with pytest.raises(SubWalletNotFoundError):
            sdk.get_wallet_transactions("sub_missing")

    def test_reconcile_wallet(self, sdk, peer):
        wallet = sdk.create_sub_wallet("w")
        sdk.pay_invoice(wallet.id, peer.make_invoice(2_000)["invoice"])

        outcome = sdk.reconcile_wallet(wallet.id)
        assert outcome.spent_msat == 2_000
        assert sdk.reconcile_wallet("sub_missing") is None


class TestSettings:
    """Tests for environment configuration."""

    def test_defaults(self):
        settings = Settings()

        assert settings.history_limit == 50
        assert settings.storage_dir is None
        assert settings.enforce_funding_cap is True

    def test_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SUBWALLET_HISTORY_LIMIT", "10")
        monkeypatch.setenv("SUBWALLET_STORAGE_DIR", str(tmp_path))
        monkeypatch.setenv("SUBWALLET_RESOLVER_TIMEOUT", "2.5")
        monkeypatch.setenv("SUBWALLET_ENFORCE_FUNDING_CAP", "false")
        monkeypatch.setenv("SUBWALLET_LOG_LEVEL", "debug")

        settings = Settings.from_env(str(tmp_path / "missing.env"))

        assert settings.history_limit == 10
        assert settings.storage_dir == str(tmp_path)
        assert settings.resolver_timeout == 2.5
        assert settings.enforce_funding_cap is False
        assert settings.log_level == "debug"

    def test_env_file(self, monkeypatch, tmp_path):
        monkeypatch.delenv("SUBWALLET_HISTORY_LIMIT", raising=False)
        env_file = tmp_path / ".env"
        env_file.write_text("SUBWALLET_HISTORY_LIMIT=7\n", encoding="utf-8")

        try:
            assert Settings.from_env(str(env_file)).history_limit == 7
        finally:
            os.environ.pop("SUBWALLET_HISTORY_LIMIT", None)

    def test_invalid_history_limit(self):
        with pytest.raises(ValidationError):
            Settings(history_limit=0)

    def test_sdk_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SUBWALLET_HISTORY_LIMIT", "5")
        monkeypatch.delenv("SUBWALLET_STORAGE_DIR", raising=False)

        sdk = SubWalletSDK.from_env(str(tmp_path / "missing.env"))
        assert sdk.reconciliation.history_limit == 5


class TestLogging:
    """Tests for logger helpers."""

    def test_namespaced(self):
        assert get_logger("subwallet.sdk").name == "subwallet.sdk"
        assert get_logger("custom").name == "subwallet.custom"
        assert get_logger().name == "subwallet"

    def test_configure_once(self):
        configure_logging("DEBUG")
        logger = configure_logging("WARNING")

        handlers = [h for h in logger.handlers if isinstance(h, RichHandler)]
        assert len(handlers) == 1
        assert logger.level == logging.WARNING
