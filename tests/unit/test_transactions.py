"""Unit tests for transaction assembly."""

import base64

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.transaction import Transaction

from src.errors import MissingArgumentError
from src.ledger import instructions
from src.ledger.transactions import (
    assemble,
    build_client_transaction,
    serialize_unsigned,
    sign_and_submit,
    transfer_with_reference,
)

BLOCKHASH = Hash(bytes(range(32)))


@pytest.mark.unit
class TestAssembly:
    def test_reference_is_readonly_non_signer(self):
        payer, recipient, reference = Keypair().pubkey(), Keypair().pubkey(), Keypair().pubkey()

        ix = transfer_with_reference(payer, recipient, 1_000, reference)

        assert ix.program_id == SYSTEM_PROGRAM_ID
        assert [meta.pubkey for meta in ix.accounts] == [payer, recipient, reference]
        assert not ix.accounts[2].is_signer
        assert not ix.accounts[2].is_writable

    def test_unsigned_transaction_round_trip(self):
        payer = Keypair().pubkey()
        ix = transfer_with_reference(payer, Keypair().pubkey(), 5, Keypair().pubkey())

        tx = assemble([ix], payer, BLOCKHASH)
        decoded = Transaction.from_bytes(base64.b64decode(serialize_unsigned(tx)))

        assert decoded.message.account_keys[0] == payer
        assert decoded.message.recent_blockhash == BLOCKHASH
        assert decoded.message.header.num_required_signatures == 1

    def test_empty_instruction_list_rejected(self):
        with pytest.raises(ValueError):
            assemble([], Keypair().pubkey(), BLOCKHASH)

    @pytest.mark.asyncio
    async def test_client_transaction_uses_fee_payer(self, ledger):
        payer = Keypair().pubkey()
        ix = transfer_with_reference(payer, Keypair().pubkey(), 5, Keypair().pubkey())

        encoded = await build_client_transaction(ledger, [ix], payer)

        decoded = Transaction.from_bytes(base64.b64decode(encoded))
        assert decoded.message.account_keys[0] == payer

    @pytest.mark.asyncio
    async def test_sign_and_submit_signs_with_fee_payer(self, ledger):
        signer = Keypair()
        ix = transfer_with_reference(signer.pubkey(), Keypair().pubkey(), 5, Keypair().pubkey())

        signature = await sign_and_submit(ledger, [ix], [signer], "transfer")

        assert signature
        sent = ledger.sent[0]
        assert sent.message.account_keys[0] == signer.pubkey()
        sent.verify()


@pytest.mark.unit
class TestProgramInstructions:
    def test_mint_coupon_account_flags(self, program):
        campaign, merchant, recipient, treasury = (Keypair().pubkey() for _ in range(4))

        built = instructions.mint_coupon(program, campaign, merchant, recipient, treasury, 7, 3)

        metas = built.instruction.accounts
        assert metas[0].pubkey == campaign and metas[0].is_writable
        assert metas[2].pubkey == built.coupon
        assert metas[3].pubkey == merchant and metas[3].is_signer
        assert metas[4].pubkey == recipient and not metas[4].is_writable
        assert metas[-1].pubkey == Pubkey.from_string("11111111111111111111111111111111")

    def test_missing_account_reported(self, program):
        with pytest.raises(MissingArgumentError) as exc_info:
            program.instruction(("redeem", "coupon"), accounts={}, args={"purchase_amount": 1, "product_code": 1})
        assert exc_info.value.details["missing"] == "campaign"
