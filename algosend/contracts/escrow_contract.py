"""
AlgoSend Escrow Smart Contract - one instance per transfer

Each escrow is its own application, compiled with two literals:
- the capsule address: the only account that may call `claim`
- the asset id: the only asset the instance will ever hold

Flow:
1. Create (creator)          -> creator/claimed/authorized_claimer stored
2. Funding group (creator)   -> opt_in_asset, set_amount + asset deposit
3. Claim (capsule)           -> asset sent to the recipient, spare ALGO to the creator
   OR
3. Reclaim (creator)         -> asset, asset holding and spare ALGO back to the creator
4. Delete (creator)          -> only once claimed/reclaimed, or if never funded;
                                closes the app account back to the creator

Global state (2 uints, 2 byte slices):
    creator             bytes   creator address
    authorized_claimer  bytes   capsule address (set once, at creation)
    claimed             uint    0/1, set by claim or reclaim
    amount              uint    asset amount, absent until set_amount
"""

import argparse

from pyteal import *

from algosend.state import (
    KEY_AMOUNT,
    KEY_AUTHORIZED_CLAIMER,
    KEY_CLAIMED,
    KEY_CREATOR,
    SELECTOR_CLAIM,
    SELECTOR_OPT_IN_ASSET,
    SELECTOR_RECLAIM,
    SELECTOR_SET_AMOUNT,
)

TEAL_VERSION = 8

# ============================================================================
# Global State Keys
# ============================================================================
CREATOR = Bytes(KEY_CREATOR.decode())
AMOUNT = Bytes(KEY_AMOUNT.decode())
CLAIMED = Bytes(KEY_CLAIMED.decode())
AUTHORIZED_CLAIMER = Bytes(KEY_AUTHORIZED_CLAIMER.decode())

APP_ADDRESS = Global.current_application_address()

# ============================================================================
# Helper Functions
# ============================================================================

def is_creator() -> Expr:
    return Txn.sender() == App.globalGet(CREATOR)


def references_asset(asset: Expr) -> Expr:
    """Txn.assets[0] must be the compiled asset"""
    return Seq([
        Assert(Txn.assets.length() >= Int(1)),
        Assert(Txn.assets[0] == asset),
    ])


def spendable_balance() -> Expr:
    """ALGO held above the app account's minimum balance"""
    return Balance(APP_ADDRESS) - MinBalance(APP_ADDRESS)


def send_asset(asset: Expr, receiver: Expr, amount: Expr) -> Expr:
    return Seq([
        InnerTxnBuilder.Begin(),
        InnerTxnBuilder.SetFields({
            TxnField.type_enum: TxnType.AssetTransfer,
            TxnField.xfer_asset: asset,
            TxnField.asset_amount: amount,
            TxnField.asset_receiver: receiver,
            TxnField.fee: Int(0),  # pooled from the outer transaction
        }),
        InnerTxnBuilder.Submit(),
    ])


def close_asset(asset: Expr, close_to: Expr) -> Expr:
    return Seq([
        InnerTxnBuilder.Begin(),
        InnerTxnBuilder.SetFields({
            TxnField.type_enum: TxnType.AssetTransfer,
            TxnField.xfer_asset: asset,
            TxnField.asset_amount: Int(0),
            TxnField.asset_receiver: close_to,
            TxnField.asset_close_to: close_to,
            TxnField.fee: Int(0),
        }),
        InnerTxnBuilder.Submit(),
    ])


def pay(receiver: Expr, amount: Expr) -> Expr:
    return Seq([
        InnerTxnBuilder.Begin(),
        InnerTxnBuilder.SetFields({
            TxnField.type_enum: TxnType.Payment,
            TxnField.receiver: receiver,
            TxnField.amount: amount,
            TxnField.fee: Int(0),
        }),
        InnerTxnBuilder.Submit(),
    ])


def refund_spare_algo() -> Expr:
    refund = ScratchVar(TealType.uint64)
    return Seq([
        refund.store(spendable_balance()),
        If(refund.load() > Int(0)).Then(pay(App.globalGet(CREATOR), refund.load())),
    ])


def close_account(close_to: Expr) -> Expr:
    return Seq([
        InnerTxnBuilder.Begin(),
        InnerTxnBuilder.SetFields({
            TxnField.type_enum: TxnType.Payment,
            TxnField.receiver: close_to,
            TxnField.amount: Int(0),
            TxnField.close_remainder_to: close_to,
            TxnField.fee: Int(0),
        }),
        InnerTxnBuilder.Submit(),
    ])

# ============================================================================
# Main Approval Program
# ============================================================================

def approval_program(capsule_address: str, asset_id: int) -> Expr:
    """Approval program for one escrow instance"""
    asset = Int(asset_id)
    return Cond(
        [Txn.application_id() == Int(0), handle_creation(capsule_address)],
        [Txn.on_completion() == OnComplete.DeleteApplication, handle_deletion(asset)],
        [Txn.on_completion() == OnComplete.UpdateApplication, Reject()],  # Immutable
        [Txn.on_completion() == OnComplete.CloseOut, Reject()],
        [Txn.on_completion() == OnComplete.OptIn, Reject()],  # No local state
        [Txn.on_completion() == OnComplete.NoOp, handle_noop(asset)],
    )


def handle_creation(capsule_address: str) -> Expr:
    """Store creator, claimed=0 and the capsule address (set once)"""
    return Seq([
        App.globalPut(CREATOR, Txn.sender()),
        App.globalPut(CLAIMED, Int(0)),
        App.globalPut(AUTHORIZED_CLAIMER, Addr(capsule_address)),
        Approve(),
    ])


def handle_noop(asset: Expr) -> Expr:
    method = Txn.application_args[0]
    return Seq([
        Assert(Txn.application_args.length() > Int(0)),
        Cond(
            [method == Bytes(SELECTOR_OPT_IN_ASSET.decode()), opt_in_asset(asset)],
            [method == Bytes(SELECTOR_CLAIM.decode()), claim(asset)],
            [method == Bytes(SELECTOR_SET_AMOUNT.decode()), set_amount(asset)],
            [method == Bytes(SELECTOR_RECLAIM.decode()), reclaim(asset)],
        ),
    ])

# ============================================================================
# Escrow Operations
# ============================================================================

def opt_in_asset(asset: Expr) -> Expr:
    """Creator only. Zero-amount self transfer so the app can hold the asset."""
    return Seq([
        Assert(is_creator()),
        references_asset(asset),
        send_asset(asset, APP_ADDRESS, Int(0)),
        Approve(),
    ])


def set_amount(asset: Expr) -> Expr:
    """
    Creator only, once. Args: [method, uint64 amount]
    The next transaction in the group must deposit exactly that amount of the
    asset from the creator into the app.
    """
    amount_ex = App.globalGetEx(Int(0), AMOUNT)
    deposit = Gtxn[Txn.group_index() + Int(1)]
    return Seq([
        Assert(is_creator()),
        Assert(Txn.application_args.length() == Int(2)),
        Assert(Len(Txn.application_args[1]) == Int(8)),
        amount_ex,
        Assert(Not(amount_ex.hasValue())),
        Assert(Btoi(Txn.application_args[1]) > Int(0)),

        # Validate the deposit that follows
        Assert(Txn.group_index() + Int(1) < Global.group_size()),
        Assert(deposit.type_enum() == TxnType.AssetTransfer),
        Assert(deposit.xfer_asset() == asset),
        Assert(deposit.sender() == Txn.sender()),
        Assert(deposit.asset_receiver() == APP_ADDRESS),
        Assert(deposit.asset_close_to() == Global.zero_address()),
        Assert(deposit.asset_amount() == Btoi(Txn.application_args[1])),

        App.globalPut(AMOUNT, Btoi(Txn.application_args[1])),
        Approve(),
    ])


def claim(asset: Expr) -> Expr:
    """
    Capsule only, once. Accounts: [recipient, creator]
    Sends the stored amount to the recipient and spare ALGO to the creator.
    """
    amount_ex = App.globalGetEx(Int(0), AMOUNT)
    return Seq([
        Assert(App.globalGet(CLAIMED) == Int(0)),
        Assert(Txn.sender() == App.globalGet(AUTHORIZED_CLAIMER)),
        Assert(Txn.accounts.length() >= Int(1)),
        amount_ex,
        Assert(amount_ex.hasValue()),
        references_asset(asset),

        App.globalPut(CLAIMED, Int(1)),
        send_asset(asset, Txn.accounts[1], amount_ex.value()),
        refund_spare_algo(),
        Approve(),
    ])


def reclaim(asset: Expr) -> Expr:
    """Creator only, while unclaimed. Returns the asset, its holding reserve and spare ALGO."""
    holding = AssetHolding.balance(APP_ADDRESS, asset)
    return Seq([
        Assert(is_creator()),
        Assert(App.globalGet(CLAIMED) == Int(0)),
        references_asset(asset),

        App.globalPut(CLAIMED, Int(1)),
        holding,
        Assert(holding.hasValue()),
        Assert(holding.value() > Int(0)),
        send_asset(asset, App.globalGet(CREATOR), holding.value()),
        close_asset(asset, App.globalGet(CREATOR)),
        refund_spare_algo(),
        Approve(),
    ])


def handle_deletion(asset: Expr) -> Expr:
    """
    Creator only. Allowed once claimed/reclaimed, or when the escrow was never
    funded. Closes any asset holding and the app account to the creator.
    """
    amount_ex = App.globalGetEx(Int(0), AMOUNT)
    holding = AssetHolding.balance(APP_ADDRESS, Txn.assets[0])
    return Seq([
        Assert(is_creator()),
        amount_ex,
        Assert(Or(App.globalGet(CLAIMED) == Int(1), Not(amount_ex.hasValue()))),

        If(Txn.assets.length() > Int(0)).Then(Seq([
            Assert(Txn.assets[0] == asset),
            holding,
            If(holding.hasValue()).Then(close_asset(asset, App.globalGet(CREATOR))),
        ])),
        close_account(App.globalGet(CREATOR)),
        Approve(),
    ])

# ============================================================================
# Clear State Program
# ============================================================================

def clear_state_program() -> Expr:
    return Approve()

# ============================================================================
# Compilation
# ============================================================================

def compile_escrow_programs(capsule_address: str, asset_id: int, version: int = TEAL_VERSION):
    """Return (approval_teal, clear_teal) for one escrow instance"""
    approval_teal = compileTeal(
        approval_program(capsule_address, asset_id), mode=Mode.Application, version=version
    )
    clear_teal = compileTeal(clear_state_program(), mode=Mode.Application, version=version)
    return approval_teal, clear_teal


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Compile an AlgoSend escrow instance to TEAL")
    parser.add_argument("--capsule", required=True, help="Capsule (authorized claimer) address")
    parser.add_argument("--asset", required=True, type=int, help="Asset ID the escrow holds")
    args = parser.parse_args()

    approval_teal, clear_teal = compile_escrow_programs(args.capsule, args.asset)

    with open("algosend_escrow_approval.teal", "w") as f:
        f.write(approval_teal)

    with open("algosend_escrow_clear.teal", "w") as f:
        f.write(clear_teal)

    print("Smart contracts compiled successfully!")
    print("Files created:")
    print("  - algosend_escrow_approval.teal")
    print("  - algosend_escrow_clear.teal")
