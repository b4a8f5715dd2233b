"""Transaction assembly for server-signed and client-signed flows."""

import base64
from typing import Sequence

from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from src.ledger.rpc import LedgerRpc
from src.logging_utils import get_logger

logger = get_logger(__name__)


def assemble(instructions: Sequence[Instruction], fee_payer: Pubkey, recent_blockhash: Hash) -> Transaction:
    """Compose instructions into an unsigned transaction.

    Args:
        instructions: Instructions in execution order.
        fee_payer: Account paying fees; always the first signer.
        recent_blockhash: Fresh blockhash fetched right before assembly.

    Returns:
        A transaction with empty signature slots for every required signer.
    """
    if not instructions:
        raise ValueError("Cannot assemble a transaction without instructions")
    message = Message.new_with_blockhash(list(instructions), fee_payer, recent_blockhash)
    return Transaction.new_unsigned(message)


def serialize_unsigned(tx: Transaction) -> str:
    """Base64 wire encoding of a transaction that still needs client signatures."""
    return base64.b64encode(bytes(tx)).decode("ascii")


def transfer_with_reference(payer: Pubkey, recipient: Pubkey, lamports: int, reference: Pubkey) -> Instruction:
    """System transfer tagged with a read-only, non-signing reference key."""
    ix = transfer(TransferParams(from_pubkey=payer, to_pubkey=recipient, lamports=lamports))
    accounts = list(ix.accounts) + [AccountMeta(pubkey=reference, is_signer=False, is_writable=False)]
    return Instruction(program_id=ix.program_id, data=ix.data, accounts=accounts)


async def sign_and_submit(
    rpc: LedgerRpc, instructions: Sequence[Instruction], signers: Sequence[Keypair], label: str
) -> str:
    """Assemble with a fresh blockhash, sign locally, submit and confirm.

    The first signer pays fees.

    Returns:
        The confirmed transaction signature.
    """
    blockhash = await rpc.get_latest_blockhash()
    message = Message.new_with_blockhash(list(instructions), signers[0].pubkey(), blockhash)
    tx = Transaction(list(signers), message, blockhash)
    logger.info(f"{label}: submitting transaction with {len(instructions)} instruction(s)")
    return await rpc.send_and_confirm(tx)


async def build_client_transaction(
    rpc: LedgerRpc, instructions: Sequence[Instruction], fee_payer: Pubkey
) -> str:
    """Assemble an unsigned transaction for the client to sign and broadcast.

    Uses a ``finalized`` blockhash so the wallet has the full validity window.
    """
    blockhash = await rpc.get_latest_blockhash("finalized")
    return serialize_unsigned(assemble(instructions, fee_payer, blockhash))
