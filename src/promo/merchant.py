"""Merchant signing key, platform treasury and devnet funding."""

import json
from pathlib import Path
from typing import Optional

import httpx
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID

from src.config import config
from src.errors import PromoError
from src.ledger.rpc import LedgerRpc
from src.logging_utils import get_logger

logger = get_logger(__name__)


def load_or_create_keypair(path: str) -> Keypair:
    """Load a keypair stored as a JSON array of secret-key bytes.

    A new keypair is generated and written when the file does not exist.
    """
    keypair_path = Path(path)
    if keypair_path.is_file():
        secret = json.loads(keypair_path.read_text())
        return Keypair.from_bytes(bytes(secret))

    keypair = Keypair()
    keypair_path.parent.mkdir(parents=True, exist_ok=True)
    keypair_path.write_text(json.dumps(list(bytes(keypair))))
    logger.warning(f"Merchant keypair not found; generated {keypair.pubkey()} at {keypair_path}")
    return keypair


class MerchantWallet:
    """Lazily loaded merchant keypair plus the resolved treasury address."""

    def __init__(self, keypair_path: str, treasury_address: str = ""):
        self.keypair_path = keypair_path
        self.treasury_address = treasury_address
        self._keypair: Optional[Keypair] = None
        self._treasury: Optional[Pubkey] = None

    @property
    def keypair(self) -> Keypair:
        if self._keypair is None:
            self._keypair = load_or_create_keypair(self.keypair_path)
            logger.info(f"Merchant wallet: {self._keypair.pubkey()}")
        return self._keypair

    @property
    def pubkey(self) -> Pubkey:
        return self.keypair.pubkey()

    async def resolve_treasury(self, rpc: LedgerRpc) -> Pubkey:
        """Resolve the platform treasury to a system-owned wallet.

        Falls back to the merchant when the configured address is missing,
        invalid, absent on-chain, not system-owned, or cannot be checked.
        """
        if self._treasury is not None:
            return self._treasury

        treasury = self.pubkey
        if not self.treasury_address:
            logger.info("PLATFORM_TREASURY_ADDRESS not set; using merchant as treasury")
        else:
            try:
                candidate = Pubkey.from_string(self.treasury_address)
            except ValueError:
                candidate = None
                logger.warning(f"Invalid PLATFORM_TREASURY_ADDRESS ({self.treasury_address}); using merchant")
            if candidate is not None:
                try:
                    account = await rpc.get_account_info(candidate, label=f"getAccountInfo(platform_treasury:{candidate})")
                except (PromoError, httpx.HTTPError) as e:
                    account = None
                    logger.warning(f"Could not check PLATFORM_TREASURY_ADDRESS ({candidate}): {e}; using merchant")
                else:
                    if account is None:
                        logger.warning(f"PLATFORM_TREASURY_ADDRESS ({candidate}) not found on-chain; using merchant")
                    elif account.owner != str(SYSTEM_PROGRAM_ID):
                        logger.warning(
                            f"PLATFORM_TREASURY_ADDRESS ({candidate}) is not system-owned "
                            f"(owner: {account.owner}); using merchant"
                        )
                    else:
                        treasury = candidate

        self._treasury = treasury
        return treasury

    async def ensure_funded(self, rpc: LedgerRpc, min_lamports: int, max_airdrop_lamports: int) -> int:
        """Top the merchant up by airdrop when below ``min_lamports``.

        Returns:
            The balance after any airdrop.
        """
        balance = await rpc.get_balance(self.pubkey)
        if balance >= min_lamports:
            return balance
        amount = min(min_lamports - balance, max_airdrop_lamports)
        logger.info(f"Merchant balance {balance} lamports below {min_lamports}; requesting airdrop of {amount}")
        await rpc.request_airdrop(self.pubkey, amount)
        return await rpc.get_balance(self.pubkey)


# Global merchant wallet instance
merchant_wallet = MerchantWallet(config.merchant_keypair_path, config.platform_treasury_address)
