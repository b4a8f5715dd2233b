"""Global config initialization script.

Run this once per deployment to create (or upgrade) the promo program's
global config account, signed by the merchant keypair.
"""

import asyncio
import sys
from pathlib import Path

from solders.pubkey import Pubkey

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.config import config, validate_config_for_service
from src.errors import PromoError
from src.ledger.addresses import config_address
from src.ledger.program import ProgramClient
from src.ledger.rpc import LedgerRpc, ResilientRpc
from src.ledger.schema import load_schema
from src.logging_utils import RequestIdContext, get_logger, setup_logging
from src.promo.campaigns import CampaignService
from src.promo.merchant import merchant_wallet
from src.promo.validation import CouponValidator

validate_config_for_service("scripts")
setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)


async def main():
    """Ensure the global config exists in its current layout."""
    program_id = Pubkey.from_string(config.program_id)
    rpc = LedgerRpc(
        config.solana_rpc_url,
        ResilientRpc(config.rpc_max_retries, config.rpc_retry_delay_ms, config.rpc_retry_cap_multiplier),
        commitment=config.rpc_commitment,
        timeout=config.rpc_timeout_seconds,
        confirm_timeout=config.confirm_timeout_seconds,
    )
    program = ProgramClient(program_id, rpc, load_schema(config.promo_idl_path), schema_path=config.promo_idl_path)
    service = CampaignService(program, merchant_wallet, CouponValidator(program))

    logger.info(f"Initializing global config for program {program_id} on {config.solana_rpc_url}")
    logger.info(f"Config address: {config_address(program_id)}")

    try:
        with RequestIdContext():
            await service.fund_merchant()
            global_config = await service.ensure_global_config()
    except PromoError as e:
        logger.error(f"Global config initialization failed: {e.message} {e.details or ''}")
        sys.exit(1)
    finally:
        await rpc.aclose()

    logger.info(
        f"Global config ready: admin {global_config.admin}, max resale {global_config.max_resale_bps} bps, "
        f"service fee {global_config.service_fee_bps} bps, legacy layout: {global_config.legacy}"
    )


if __name__ == "__main__":
    asyncio.run(main())
