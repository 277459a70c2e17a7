import pytest
from algosdk import account, encoding, logic, transaction

from algosend.config import EscrowConfig
from algosend.errors import ValidationError
from algosend.groups import (
    GroupKind,
    SignerRole,
    build_claim_group,
    build_cleanup,
    build_cleanup_unfunded,
    build_funding_group,
    build_opt_in_claim_group,
    build_reclaim,
    claim_surplus,
    decode_signed_group,
    require_complete_group,
)
from algosend.state import SELECTOR_CLAIM, SELECTOR_OPT_IN_ASSET, SELECTOR_SET_AMOUNT

ASSET = 31566704
APP_ID = 5150


def wallet():
    return account.generate_account()


@pytest.fixture
def keys():
    return {name: wallet() for name in ("creator", "capsule", "recipient", "platform")}


@pytest.fixture
def sp():
    return transaction.SuggestedParams(
        fee=0, first=1000, last=2000, gh="SGO1GKSzyE7IEPItTxCByw9x8FmnrCDexi9/cOUJOiI=", gen="test-v1"
    )


@pytest.fixture
def config():
    return EscrowConfig()


def addr(keys, name):
    return keys[name][1]


def opt_in_plan(keys, sp, config, fee_coverage=0):
    return build_opt_in_claim_group(
        addr(keys, "capsule"), APP_ID, addr(keys, "recipient"), addr(keys, "creator"), ASSET,
        addr(keys, "platform"), sp, config, fee_coverage=fee_coverage,
    )


class TestFundingGroup:

    def test_leg_order_and_fees(self, keys, sp, config):
        plan = build_funding_group(addr(keys, "creator"), APP_ID, addr(keys, "capsule"), ASSET, 25_000_000, False, sp, config)
        txns = plan.transactions
        assert plan.kind is GroupKind.FUNDING
        assert len(plan) == 5
        assert [t.fee for t in txns] == [1_000, 1_000, 2_000, 1_000, 1_000]
        assert txns[0].receiver == logic.get_application_address(APP_ID)
        assert txns[0].amt == 210_000
        assert txns[1].receiver == addr(keys, "capsule")
        assert txns[1].amt == 104_000
        assert txns[2].app_args == [SELECTOR_OPT_IN_ASSET]
        assert txns[3].app_args == [SELECTOR_SET_AMOUNT, (25_000_000).to_bytes(8, "big")]
        assert isinstance(txns[4], transaction.AssetTransferTxn)
        assert txns[4].amount == 25_000_000
        assert txns[4].index == ASSET

    def test_coverage_leg_goes_to_capsule(self, keys, sp, config):
        plan = build_funding_group(addr(keys, "creator"), APP_ID, addr(keys, "capsule"), ASSET, 1, True, sp, config)
        assert len(plan) == 6
        cover = plan.transactions[2]
        assert cover.receiver == addr(keys, "capsule")
        assert cover.amt == 210_000
        assert plan.total_fee == config.fees.funding_total(True)

    def test_all_legs_share_one_group_id(self, keys, sp, config):
        plan = build_funding_group(addr(keys, "creator"), APP_ID, addr(keys, "capsule"), ASSET, 1, False, sp, config)
        assert plan.group_id is not None
        assert {t.group for t in plan.transactions} == {plan.group_id}
        assert plan.slots_for(SignerRole.CREATOR) == list(range(5))


class TestClaimGroups:

    def test_optimized_claim_has_two_capsule_legs(self, keys, sp, config):
        plan = build_claim_group(
            addr(keys, "capsule"), APP_ID, addr(keys, "recipient"), addr(keys, "creator"), ASSET,
            addr(keys, "platform"), sp, config,
        )
        claim, close = plan.transactions
        assert len(plan) == 2
        assert plan.recipient_index is None
        assert claim.app_args == [SELECTOR_CLAIM]
        assert claim.accounts == [addr(keys, "recipient"), addr(keys, "creator")]
        assert claim.fee == 3_000
        assert close.close_remainder_to == addr(keys, "platform")
        assert close.amt == 0

    def test_surplus_refund_sits_between_claim_and_close(self, keys, sp, config):
        plan = build_claim_group(
            addr(keys, "capsule"), APP_ID, addr(keys, "recipient"), addr(keys, "creator"), ASSET,
            addr(keys, "platform"), sp, config, creator_refund=209_000,
        )
        assert len(plan) == 3
        refund = plan.transactions[1]
        assert refund.receiver == addr(keys, "creator")
        assert refund.amt == 209_000

    def test_recipient_slot_without_coverage(self, keys, sp, config):
        plan = opt_in_plan(keys, sp, config)
        assert len(plan) == 3
        assert plan.recipient_index == 0
        opt_in = plan.transactions[0]
        assert opt_in.sender == opt_in.receiver == addr(keys, "recipient")
        assert plan.slots_for(SignerRole.RECIPIENT) == [0]

    def test_recipient_slot_with_coverage(self, keys, sp, config):
        plan = opt_in_plan(keys, sp, config, fee_coverage=209_000)
        assert len(plan) == 4
        assert plan.recipient_index == 1
        assert plan.slots_for(SignerRole.RECIPIENT) == [1]
        assert plan.transactions[0].receiver == addr(keys, "recipient")

    def test_capsule_surplus(self, config):
        assert claim_surplus(104_000, config, 1_000) == 0
        assert claim_surplus(314_000, config, 1_000) == 209_000


class TestSigning:

    def test_unsigned_recipient_slot_blocks_assembly(self, keys, sp, config):
        plan = opt_in_plan(keys, sp, config).sign(SignerRole.CAPSULE, keys["capsule"][0])
        assert plan.unsigned_slots() == [0]
        with pytest.raises(ValidationError, match="not fully signed"):
            plan.assemble()

    def test_attach_completes_the_group(self, keys, sp, config):
        plan = opt_in_plan(keys, sp, config).sign(SignerRole.CAPSULE, keys["capsule"][0])
        signed = plan.transactions[plan.recipient_index].sign(keys["recipient"][0])
        group = plan.attach(plan.recipient_index, signed).assemble()
        assert [s.get_txid() for s in group] == plan.txids

    def test_attach_rejects_signature_for_other_slot(self, keys, sp, config):
        plan = opt_in_plan(keys, sp, config)
        wrong = plan.transactions[1].sign(keys["capsule"][0])
        with pytest.raises(ValidationError, match="does not match"):
            plan.attach(plan.recipient_index, wrong)

    def test_wire_format_round_trip(self, keys, sp, config):
        plan = opt_in_plan(keys, sp, config).sign(SignerRole.CAPSULE, keys["capsule"][0])
        wire = plan.to_wire()
        assert wire[0]["signed"] is None
        assert wire[0]["signer"] == "recipient"
        assert encoding.msgpack_decode(wire[0]["txn"]).get_txid() == plan.txids[0]

        recipient_signed = encoding.msgpack_decode(wire[0]["txn"]).sign(keys["recipient"][0])
        blobs = [encoding.msgpack_encode(recipient_signed)] + [w["signed"] for w in wire[1:]]
        decoded = decode_signed_group(blobs)
        assert [s.get_txid() for s in decoded] == plan.txids

    def test_decode_rejects_unsigned_and_garbage(self, keys, sp, config):
        plan = opt_in_plan(keys, sp, config)
        with pytest.raises(ValidationError):
            decode_signed_group([encoding.msgpack_encode(plan.transactions[0])])
        with pytest.raises(ValidationError, match="Malformed"):
            decode_signed_group(["not-base64!!"])
        with pytest.raises(ValidationError, match="Missing"):
            decode_signed_group([])

    def test_dropped_leg_is_refused(self, keys, sp, config):
        plan = build_funding_group(addr(keys, "creator"), APP_ID, addr(keys, "capsule"), ASSET, 25_000_000, False, sp, config)
        signed = plan.sign(SignerRole.CREATOR, keys["creator"][0]).assemble()
        with pytest.raises(ValidationError, match="incomplete"):
            require_complete_group(signed[:-1])
        with pytest.raises(ValidationError, match="incomplete"):
            decode_signed_group([encoding.msgpack_encode(s) for s in signed[1:]])

    def test_reordered_group_is_refused(self, keys, sp, config):
        plan = build_funding_group(addr(keys, "creator"), APP_ID, addr(keys, "capsule"), ASSET, 25_000_000, False, sp, config)
        signed = plan.sign(SignerRole.CREATOR, keys["creator"][0]).assemble()
        with pytest.raises(ValidationError, match="reordered"):
            require_complete_group([signed[1], signed[0]] + signed[2:])

    def test_leg_from_another_group_is_refused(self, keys, sp, config):
        creator = addr(keys, "creator")
        first = build_funding_group(creator, APP_ID, addr(keys, "capsule"), ASSET, 25_000_000, False, sp, config)
        second = build_funding_group(creator, APP_ID, addr(keys, "capsule"), ASSET, 1_000_000, False, sp, config)
        signed_first = first.sign(SignerRole.CREATOR, keys["creator"][0]).assemble()
        signed_second = second.sign(SignerRole.CREATOR, keys["creator"][0]).assemble()
        with pytest.raises(ValidationError):
            require_complete_group(signed_first[:-1] + signed_second[-1:])

    def test_single_ungrouped_transaction_is_complete(self, keys, sp, config):
        plan = build_reclaim(addr(keys, "creator"), APP_ID, ASSET, sp, config)
        signed = plan.sign(SignerRole.CREATOR, keys["creator"][0]).assemble()
        require_complete_group(signed)
        assert decode_signed_group(signed)[0].get_txid() == plan.primary_txid


class TestCreatorGroups:

    def test_reclaim_is_single_call(self, keys, sp, config):
        plan = build_reclaim(addr(keys, "creator"), APP_ID, ASSET, sp, config)
        assert len(plan) == 1
        assert plan.group_id is None
        assert plan.transactions[0].fee == 4_000

    def test_cleanup_references_asset(self, keys, sp, config):
        txn = build_cleanup(addr(keys, "creator"), APP_ID, ASSET, sp, config).transactions[0]
        assert txn.on_complete == transaction.OnComplete.DeleteApplicationOC
        assert txn.foreign_assets == [ASSET]
        assert txn.fee == 3_000

    def test_unfunded_cleanup_has_no_assets(self, keys, sp, config):
        txn = build_cleanup_unfunded(addr(keys, "creator"), APP_ID, sp, config).transactions[0]
        assert not txn.foreign_assets
        assert txn.fee == 2_000
