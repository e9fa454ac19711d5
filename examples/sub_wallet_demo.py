"""
Walkthrough of sub-wallets over one shared wallet, in local mode.

Settings are read from the environment / a .env file (SUBWALLET_* variables),
so the same script can persist to disk by setting SUBWALLET_STORAGE_DIR.
"""
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from subwallet import SubWalletSDK, InsufficientFundsError


MASTER_URI = "nostr+walletconnect://" + "a1" * 32 + "?relay=wss://relay.example&secret=" + "0f" * 32
FRIEND_URI = "nostr+walletconnect://" + "b2" * 32 + "?relay=wss://relay.example&secret=" + "1e" * 32


def print_header(title):
    """Print a formatted header."""
    print(f"\n{'='*70}")
    print(f"{title:^70}")
    print(f"{'='*70}\n")


def print_section(title):
    """Print a section divider."""
    print(f"\n{'-'*70}")
    print(f"  {title}")
    print(f"{'-'*70}\n")


def sats(msat):
    return "unknown" if msat is None else f"{msat // 1000:,} sats"


def main():
    print_header("SUB-WALLET DEMO")

    sdk = SubWalletSDK.from_env()

    # ========== CONNECT ==========
    print_section("1. CONNECT: Master wallet")
    identity = sdk.connect(MASTER_URI)
    print(f"Connected to account {identity[:16]}...")

    # Simulate an on-chain deposit into the shared wallet
    sdk.session_manager.session.receive_external(1_000_000, "Salary")
    friend = sdk.session_factory(FRIEND_URI)
    friend.receive_external(500_000, "Friend's savings")
    print(f"Master balance: {sats(sdk.get_balance())}")

    # ========== SUB-WALLETS ==========
    print_section("2. SUB-WALLETS: Split the balance")
    groceries = sdk.create_sub_wallet("Groceries", budget_msat=400_000)
    fun = sdk.create_sub_wallet("Fun")
    sdk.fund_sub_wallet(groceries.id, 400_000)
    sdk.fund_sub_wallet(fun.id, 100_000)
    for wallet in sdk.list_sub_wallets():
        print(f"  {wallet.name:<12} {sats(sdk.get_wallet_balance(wallet.id))}")
    print(f"Unallocated: {sats(sdk.unallocated_msat())}")

    try:
        sdk.fund_sub_wallet(fun.id, 900_000)
    except InsufficientFundsError as e:
        print(f"Rejected: {e.message}")

    # ========== PAYMENTS ==========
    print_section("3. PAYMENTS: Spend and receive per sub-wallet")
    bill = friend.make_invoice(120_000, "Weekly shop")
    sdk.pay_invoice(groceries.id, bill["invoice"], 120_000)
    print(f"Groceries paid 120 sats -> {sats(sdk.get_wallet_balance(groceries.id))}")

    invoice = sdk.receive(fun.id, 50_000, "Movie night refund")
    friend.pay_invoice(invoice.invoice)
    print(f"Fun invoice paid by friend (tx {invoice.remote_id[:12]}...)")

    # ========== RECONCILE ==========
    print_section("4. RECONCILE: Attribute remote history")
    report = sdk.reconcile()
    for wallet_id, outcome in report.wallets.items():
        wallet = sdk.get_sub_wallet(wallet_id)
        print(f"  {wallet.name:<12} spent={outcome.spent_msat:>8} received={outcome.received_msat:>8} "
              f"balance={sats(outcome.balance_msat)}")
    print(f"Unattributed transactions: {len(report.unattributed)}")
    print(f"Account balance: {sats(report.account_balance_msat)}")

    sdk.close()
    print_header("DONE")


if __name__ == "__main__":
    main()
