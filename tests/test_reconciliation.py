"""Tests for the reconciliation engine."""

import pytest

from subwallet.exceptions import NetworkError, NotConnectedError, ProtocolError
from subwallet.ledger_manager import SPENT, SubWalletLedger
from subwallet.models import SubWallet, TransactionStatus, WalletConfig
from subwallet.reconciliation import ReconciliationEngine, derive_totals
from subwallet.remote import RemoteWalletSession
from subwallet.session_manager import SessionManager
from subwallet.storage import InMemoryKeyValueStore, WalletStorage


PUBKEY = "ab" * 32
URI = f"nostr+walletconnect://{PUBKEY}?relay=wss://relay.example"
SCOPED_URI = f"nostr+walletconnect://{'cd' * 32}?relay=wss://relay.example"


class ScriptedSession(RemoteWalletSession):
    """Remote session returning a fixed history and balance."""

    def __init__(self, balance=0, history=None):
        self.balance = balance
        self.history = list(history or [])
        self.errors = {}
        self.limits = []

    def _check(self, method):
        if method in self.errors:
            raise self.errors[method]

    def get_info(self):
        self._check("get_info")
        return {"alias": "scripted"}

    def get_balance(self):
        self._check("get_balance")
        return {"balance": self.balance}

    def make_invoice(self, amount_msat, description=None):
        raise ProtocolError("not supported")

    def pay_invoice(self, invoice):
        raise ProtocolError("not supported")

    def list_transactions(self, limit):
        self._check("list_transactions")
        self.limits.append(limit)
        return {"transactions": self.history[:limit]}


def outgoing(tx_id, amount, state="settled"):
    return {"type": "outgoing", "payment_hash": tx_id, "amount": amount,
            "created_at": 1_700_000_000, "state": state}


def incoming(tx_id, amount, state="settled"):
    return {"type": "incoming", "payment_hash": tx_id, "amount": amount,
            "created_at": 1_700_000_000, "state": state}


@pytest.fixture
def session():
    return ScriptedSession(balance=500_000)


@pytest.fixture
def scoped_session():
    return ScriptedSession(balance=42_000)


@pytest.fixture
def storage():
    return WalletStorage(InMemoryKeyValueStore())


@pytest.fixture
def manager(storage, session, scoped_session):
    sessions = {URI: session, SCOPED_URI: scoped_session}
    manager = SessionManager(storage, SubWalletLedger(storage), lambda d: sessions[d])
    manager.connect(URI)
    return manager


@pytest.fixture
def ledger(manager):
    return manager.ledger


@pytest.fixture
def engine(manager, ledger):
    return ReconciliationEngine(manager, ledger, history_limit=50)


class TestNormalizeAndPartition:
    """Tests for normalize / partition / derive_totals."""

    def test_normalize_envelope_and_list(self):
        records = [outgoing("h1", 10), incoming("h2", 20)]

        assert [t.id for t in ReconciliationEngine.normalize({"transactions": records})] == ["h1", "h2"]
        assert [t.id for t in ReconciliationEngine.normalize(records)] == ["h1", "h2"]
        assert ReconciliationEngine.normalize(None) == []
        assert ReconciliationEngine.normalize([outgoing("h1", 1), "junk"])[0].id == "h1"

    def test_partition(self, engine, ledger):
        wallet = ledger.create(WalletConfig(name="w"))
        ledger.attribute(wallet.id, "h1")

        attributed, unattributed = engine.partition(
            ReconciliationEngine.normalize([outgoing("h1", 10), outgoing("h2", 20)])
        )
        assert [t.id for t in attributed[wallet.id]] == ["h1"]
        assert [t.id for t in unattributed] == ["h2"]

    def test_synthetic_ids_never_attributed(self, engine, ledger):
        """Test transactions without a remote ID stay unattributed."""
        records = [{"type": "outgoing", "amount": 10, "created_at": 1_700_000_000}]
        synthetic_id = ReconciliationEngine.normalize(records)[0].id

        wallet = ledger.create(WalletConfig(name="w"))
        ledger.attribute(wallet.id, synthetic_id)

        attributed, unattributed = engine.partition(ReconciliationEngine.normalize(records))
        assert attributed[wallet.id] == []
        assert len(unattributed) == 1

    def test_derive_totals_counts_settled_once(self):
        txs = ReconciliationEngine.normalize([
            outgoing("a", 100),
            outgoing("a", 100),
            incoming("b", 50),
            outgoing("c", 999, state="pending"),
            incoming("d", 999, state="failed"),
        ])

        assert derive_totals(txs) == (100, 50)

    def test_history_limit_used(self, engine, session):
        engine.fetch_transactions()
        assert session.limits == [50]

    def test_invalid_history_limit(self, manager, ledger):
        with pytest.raises(ValueError):
            ReconciliationEngine(manager, ledger, history_limit=0)


class TestReconcile:
    """Tests for full reconciliation passes."""

    def test_scenario_no_drift(self, engine, ledger, session):
        """Test fund 100000, spend 30000, reconcile against the same spend."""
        wallet = ledger.create(WalletConfig(name="W", budget_msat=0))
        ledger.fund(wallet.id, 100_000)
        ledger.record_delta(wallet.id, 30_000, SPENT, "tx1")
        assert ledger.get(wallet.id).display_balance_msat == 70_000

        session.history = [outgoing("tx1", 30_000)]
        report = engine.reconcile()

        outcome = report.wallets[wallet.id]
        assert outcome.corrected is False
        assert outcome.spent_msat == 30_000
        assert outcome.balance_msat == 70_000
        assert ledger.get(wallet.id).spent_msat == 30_000

    def test_totals_derived_from_history(self, engine, ledger, session):
        """Test reconciliation replaces provisional totals with attributed sums."""
        wallet = ledger.create(WalletConfig(name="W"))
        ledger.fund(wallet.id, 100_000)
        ledger.record_delta(wallet.id, 0, SPENT, "p1")
        ledger.attribute(wallet.id, "r1")
        ledger.attribute(wallet.id, "r2")

        session.history = [
            outgoing("p1", 12_000),
            incoming("r1", 3_000),
            incoming("r2", 4_000, state="pending"),
            outgoing("other", 77_000),
        ]
        report = engine.reconcile()

        updated = ledger.get(wallet.id)
        assert updated.spent_msat == 12_000
        assert updated.received_msat == 3_000
        assert report.wallets[wallet.id].corrected is True
        assert report.wallets[wallet.id].balance_msat == 91_000
        assert [t.id for t in report.unattributed] == ["other"]

    def test_repeated_passes_do_not_double_count(self, engine, ledger, session):
        wallet = ledger.create(WalletConfig(name="W"))
        ledger.record_delta(wallet.id, 5_000, SPENT, "tx1")
        session.history = [outgoing("tx1", 5_000)]

        for _ in range(3):
            engine.reconcile()

        assert ledger.get(wallet.id).spent_msat == 5_000

    def test_deleted_wallet_transactions_become_unattributed(self, engine, ledger, session):
        wallet = ledger.create(WalletConfig(name="W"))
        ledger.record_delta(wallet.id, 5_000, SPENT, "tx1")
        ledger.delete(wallet.id)
        session.history = [outgoing("tx1", 5_000)]

        report = engine.reconcile()

        assert report.wallets == {}
        assert [t.id for t in report.unattributed] == ["tx1"]

    def test_shared_tx_id_repaired(self, storage, session):
        """Test an ID listed by two wallets stays with the first one."""
        first = SubWallet(name="first", connection_descriptor=URI, tx_ids=["tx1"])
        second = SubWallet(name="second", connection_descriptor=URI, tx_ids=["tx1", "tx2"])
        storage.save_sub_wallets(PUBKEY, [first, second])

        manager = SessionManager(storage, SubWalletLedger(storage), lambda d: session)
        manager.connect(URI)
        engine = ReconciliationEngine(manager, manager.ledger)
        session.history = [outgoing("tx1", 1_000), outgoing("tx2", 2_000)]

        engine.reconcile()

        ledger = manager.ledger
        assert ledger.get(first.id).tx_ids == ["tx1"]
        assert ledger.get(first.id).spent_msat == 1_000
        assert ledger.get(second.id).tx_ids == ["tx2"]
        assert ledger.get(second.id).spent_msat == 2_000
        assert storage.load_sub_wallets(PUBKEY)[1].tx_ids == ["tx2"]

    def test_missing_tx_ids_reported(self, engine, ledger, session):
        """Test attributed IDs outside the fetch window are listed."""
        wallet = ledger.create(WalletConfig(name="W"))
        ledger.record_delta(wallet.id, 1_000, SPENT, "old")
        ledger.record_delta(wallet.id, 2_000, SPENT, "new")
        session.history = [outgoing("new", 2_000)]

        outcome = engine.reconcile().wallets[wallet.id]

        assert outcome.missing_tx_ids == ["old"]
        assert outcome.spent_msat == 2_000

    def test_requires_connection(self, engine, manager):
        manager.disconnect()

        with pytest.raises(NotConnectedError):
            engine.reconcile()


class TestPartialFailures:
    """Tests for decoupled history / balance failures."""

    def test_history_failure_keeps_totals(self, engine, ledger, session):
        wallet = ledger.create(WalletConfig(name="W"))
        ledger.fund(wallet.id, 10_000)
        ledger.record_delta(wallet.id, 4_000, SPENT, "tx1")
        session.errors["list_transactions"] = NetworkError("relay down")

        report = engine.reconcile()

        assert report.history_known is False
        outcome = report.wallets[wallet.id]
        assert outcome.history_known is False
        assert outcome.balance_msat == 6_000
        assert ledger.get(wallet.id).spent_msat == 4_000
        assert report.account_balance_msat == 500_000

    def test_protocol_error_in_history_is_contained(self, engine, ledger, session):
        ledger.create(WalletConfig(name="W"))
        session.errors["list_transactions"] = ProtocolError("bad request")

        assert engine.reconcile().history_known is False

    def test_unexpected_history_error_is_contained(self, engine, ledger, session):
        ledger.create(WalletConfig(name="W"))
        session.errors["list_transactions"] = RuntimeError("socket closed")

        assert engine.reconcile().history_known is False

    @pytest.mark.parametrize("record", [
        {"payment_hash": "a", "amount": 10, "created_at": "2024-01-01T00:00:00Z"},
        {"payment_hash": "b", "amount": "ten", "created_at": 1_700_000_000},
        {"payment_hash": "c", "amount": 10, "created_at": 10**20},
    ])
    def test_malformed_record_is_contained(self, engine, ledger, session, record):
        """Test one unreadable history record degrades the pass instead of raising."""
        wallet = ledger.create(WalletConfig(name="W"))
        ledger.fund(wallet.id, 10_000)
        ledger.record_delta(wallet.id, 4_000, SPENT, "tx1")
        session.history = [outgoing("tx1", 4_000), record]

        report = engine.reconcile()

        assert report.history_known is False
        assert report.wallets[wallet.id].balance_msat == 6_000
        assert ledger.get(wallet.id).spent_msat == 4_000
        assert report.account_balance_msat == 500_000

    def test_malformed_record_raises_protocol_error(self, engine, session):
        session.history = [{"payment_hash": "a", "amount": "ten"}]

        with pytest.raises(ProtocolError, match="position 0"):
            engine.fetch_transactions()

    def test_balance_failure_keeps_last_value(self, engine, ledger, session):
        wallet = ledger.create(WalletConfig(name="W"))
        ledger.record_delta(wallet.id, 0, SPENT, "tx1")
        session.history = [outgoing("tx1", 1_500)]

        first = engine.reconcile()
        assert first.account_balance_msat == 500_000
        assert first.account_balance_stale is False

        session.errors["get_balance"] = NetworkError("timeout")
        session.balance = 1
        second = engine.reconcile()

        assert second.account_balance_msat == 500_000
        assert second.account_balance_stale is True
        assert ledger.get(wallet.id).spent_msat == 1_500

    def test_balance_unknown_before_first_fetch(self, engine, ledger, session):
        session.errors["get_balance"] = NetworkError("timeout")
        report = engine.reconcile()

        assert report.account_balance_msat is None
        assert report.account_balance_stale is True


class TestResolveBalance:
    """Tests for per-wallet balance resolution."""

    def test_logical_wallet_uses_formula(self, engine, ledger):
        wallet = ledger.create(WalletConfig(name="W"))
        ledger.fund(wallet.id, 1_000)
        ledger.record_delta(wallet.id, 5_000, SPENT)

        assert engine.resolve_balance(wallet.id) == 0

    def test_unknown_wallet(self, engine):
        assert engine.resolve_balance("sub_missing") is None

    def test_scoped_wallet_fetches_its_own_balance(self, engine, ledger):
        wallet = ledger.create(WalletConfig(name="Scoped"))
        wallet.connection_descriptor = SCOPED_URI

        assert engine.resolve_balance(wallet.id) == 42_000

    def test_same_account_descriptor_is_not_scoped(self, engine, ledger):
        """Test a descriptor for the connected account with another relay and secret."""
        wallet = ledger.create(WalletConfig(name="W"))
        ledger.fund(wallet.id, 9_000)
        wallet.connection_descriptor = (
            f"nostr+walletconnect://{PUBKEY.upper()}?relay=wss://other.example&secret=07"
        )

        assert engine.resolve_balance(wallet.id) == 9_000

    def test_unparseable_descriptor_is_unknown(self, engine, ledger):
        wallet = ledger.create(WalletConfig(name="W"))
        wallet.connection_descriptor = "garbage"

        assert engine.resolve_balance(wallet.id) is None

    def test_scoped_wallet_failure_is_unknown(self, engine, ledger, session, scoped_session):
        """Test one wallet's remote failure does not affect the others."""
        logical = ledger.create(WalletConfig(name="Logical"))
        ledger.fund(logical.id, 7_000)
        scoped = ledger.create(WalletConfig(name="Scoped"))
        scoped.connection_descriptor = SCOPED_URI
        scoped_session.errors["get_balance"] = NetworkError("offline")

        report = engine.reconcile()

        assert report.wallets[scoped.id].balance_msat is None
        assert report.wallets[logical.id].balance_msat == 7_000

    def test_wallet_transactions(self, engine, ledger, session):
        wallet = ledger.create(WalletConfig(name="W"))
        ledger.attribute(wallet.id, "inv")
        session.history = [incoming("inv", 10, state="pending"), outgoing("x", 5)]

        txs = engine.wallet_transactions(wallet.id)
        assert [t.id for t in txs] == ["inv"]
        assert txs[0].status == TransactionStatus.PENDING
