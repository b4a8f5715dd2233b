"""Typed, read-only projections of promo program accounts.

Decoded records are turned into views through ``first_present`` so field
renames between IDL revisions (``used`` vs ``is_used``, snake vs camel) stay at
this boundary.
"""

from typing import Mapping, Optional

from solders.pubkey import Pubkey

from src.config import config
from src.ledger.addresses import config_address
from src.ledger.codec import first_present
from src.ledger.program import ProgramClient
from src.ledger.rpc import memcmp
from src.logging_utils import get_logger
from src.models import CampaignView, CouponView, GlobalConfigView, VaultView

logger = get_logger(__name__)

CAMPAIGN_RECORD = ("campaign",)
COUPON_RECORD = ("coupon",)
VAULT_RECORD = ("vault",)
GLOBAL_CONFIG_RECORD = ("global", "config")

# Coupon layout: discriminator(8) | campaign(32) | coupon_index(8) | owner(32) | ...
COUPON_CAMPAIGN_OFFSET = 8
COUPON_OWNER_OFFSET = 8 + 32 + 8

# GlobalConfig before service_fee_bps was added: discriminator | admin | max_resale_bps
LEGACY_GLOBAL_CONFIG_LEN = 8 + 32 + 2

USED_KEYS = ("used", "is_used", "isUsed", "redeemed")
LISTED_KEYS = ("listed", "is_listed", "isListed")


def _pick(decoded: Mapping, *keys, default=None):
    return first_present(decoded, keys, default=default)


def _key(value) -> str:
    return str(value) if value is not None else ""


def campaign_view(address: str, decoded: Mapping) -> CampaignView:
    return CampaignView(
        address=address,
        merchant=_key(_pick(decoded, "merchant")),
        campaign_id=_pick(decoded, "campaign_id", "campaignId", default=0),
        discount_bps=_pick(decoded, "discount_bps", "discountBps", default=0),
        service_fee_bps=_pick(decoded, "service_fee_bps", "serviceFeeBps", default=0),
        resale_bps=_pick(decoded, "resale_bps", "resaleBps", default=0),
        expiration_timestamp=_pick(decoded, "expiration_timestamp", "expirationTimestamp", default=0),
        total_coupons=_pick(decoded, "total_coupons", "totalCoupons", default=0),
        used_coupons=_pick(decoded, "used_coupons", "usedCoupons", default=0),
        minted_coupons=_pick(decoded, "minted_coupons", "mintedCoupons", default=0),
        mint_cost_lamports=_pick(decoded, "mint_cost_lamports", "mintCostLamports", default=0),
        max_discount_lamports=_pick(decoded, "max_discount_lamports", "maxDiscountLamports", default=0),
        category_code=_pick(decoded, "category_code", "categoryCode", default=0),
        product_code=_pick(decoded, "product_code", "productCode", default=0),
        campaign_name=_pick(decoded, "campaign_name", "campaignName", default=""),
        requires_wallet=_pick(decoded, "requires_wallet", "requiresWallet", default=False),
        target_wallet=_key(_pick(decoded, "target_wallet", "targetWallet")),
        total_purchase_amount=_pick(decoded, "total_purchase_amount", "totalPurchaseAmount", default=0),
        total_discount_lamports=_pick(decoded, "total_discount_lamports", "totalDiscountLamports", default=0),
        last_redeem_timestamp=_pick(decoded, "last_redeem_timestamp", "lastRedeemTimestamp", default=0),
    )


def coupon_view(address: str, decoded: Mapping) -> CouponView:
    return CouponView(
        address=address,
        campaign=_key(_pick(decoded, "campaign")),
        coupon_index=_pick(decoded, "coupon_index", "couponIndex", default=0),
        owner=_key(_pick(decoded, "owner")),
        used=bool(_pick(decoded, *USED_KEYS, default=False)),
        listed=bool(_pick(decoded, *LISTED_KEYS, default=False)),
        sale_price_lamports=_pick(decoded, "sale_price_lamports", "salePriceLamports", default=0),
    )


def vault_view(address: str, decoded: Mapping) -> VaultView:
    return VaultView(
        address=address,
        campaign=_key(_pick(decoded, "campaign")),
        merchant=_key(_pick(decoded, "merchant")),
        bump=_pick(decoded, "bump", default=0),
        total_deposit=_pick(decoded, "total_deposit", "totalDeposit", default=0),
        total_mint_spent=_pick(decoded, "total_mint_spent", "totalMintSpent", default=0),
        total_service_spent=_pick(decoded, "total_service_spent", "totalServiceSpent", default=0),
    )


async def fetch_campaign(program: ProgramClient, address: Pubkey) -> Optional[CampaignView]:
    decoded = await program.fetch_record(address, *CAMPAIGN_RECORD)
    return campaign_view(str(address), decoded) if decoded is not None else None


async def fetch_coupon(program: ProgramClient, address: Pubkey) -> Optional[CouponView]:
    decoded = await program.fetch_record(address, *COUPON_RECORD)
    return coupon_view(str(address), decoded) if decoded is not None else None


async def fetch_vault(program: ProgramClient, address: Pubkey) -> Optional[VaultView]:
    decoded = await program.fetch_record(address, *VAULT_RECORD)
    return vault_view(str(address), decoded) if decoded is not None else None


async def fetch_global_config(program: ProgramClient) -> Optional[GlobalConfigView]:
    """Fetch the global config, decoding the legacy layout by hand.

    Returns:
        The config view, or None if the account has not been initialized.
    """
    address = config_address(program.program_id)
    account = await program.fetch_account(address, label=f"getAccountInfo(config:{address})")
    if account is None:
        return None

    if len(account.data) <= LEGACY_GLOBAL_CONFIG_LEN:
        admin = Pubkey.from_bytes(account.data[8:40])
        max_resale_bps = int.from_bytes(account.data[40:42], "little")
        logger.info(f"Global config {address} uses the legacy layout (no service fee field)")
        return GlobalConfigView(
            address=str(address),
            admin=str(admin),
            max_resale_bps=max_resale_bps,
            service_fee_bps=config.default_service_fee_bps,
            legacy=True,
        )

    decoded = program.decode(program.record_type(*GLOBAL_CONFIG_RECORD), account)
    return GlobalConfigView(
        address=str(address),
        admin=_key(_pick(decoded, "admin")),
        max_resale_bps=_pick(decoded, "max_resale_bps", "maxResaleBps", default=config.default_max_resale_bps),
        service_fee_bps=_pick(decoded, "service_fee_bps", "serviceFeeBps", default=config.default_service_fee_bps),
    )


async def list_campaigns(program: ProgramClient, merchant: Optional[Pubkey] = None) -> list[CampaignView]:
    filters = [memcmp(8, bytes(merchant))] if merchant is not None else []
    records = await program.list_records(CAMPAIGN_RECORD, filters)
    return [campaign_view(address, decoded) for address, decoded in records]


async def list_coupons(
    program: ProgramClient, campaign: Optional[Pubkey] = None, owner: Optional[Pubkey] = None
) -> list[CouponView]:
    """List coupons, optionally filtered by campaign and/or owner on the node."""
    filters = []
    if campaign is not None:
        filters.append(memcmp(COUPON_CAMPAIGN_OFFSET, bytes(campaign)))
    if owner is not None:
        filters.append(memcmp(COUPON_OWNER_OFFSET, bytes(owner)))
    records = await program.list_records(COUPON_RECORD, filters)
    return [coupon_view(address, decoded) for address, decoded in records]
