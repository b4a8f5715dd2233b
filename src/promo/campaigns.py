"""Merchant-side campaign flows.

Campaign creation and coupon minting are signed by the merchant key held by
this service and submitted directly. Redemption is signed by the shopper: the
service only returns an unsigned transaction.
"""

import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Optional

import httpx
from solders.pubkey import Pubkey

from src.catalog import price_lamports_for_code
from src.config import config
from src.errors import NotFoundError, PartialSuccessError, PromoError, ValidationError
from src.ledger import instructions
from src.ledger.addresses import parse_address
from src.ledger.program import ProgramClient
from src.ledger.records import fetch_campaign, fetch_global_config, list_coupons
from src.ledger.transactions import build_client_transaction, sign_and_submit
from src.logging_utils import get_logger
from src.models import AbandonedCartRequest, CreateCampaignRequest, GlobalConfigView, RedeemCouponRequest
from src.promo.merchant import MerchantWallet
from src.promo.validation import (
    BPS_DENOMINATOR,
    CouponValidator,
    apply_bps,
    discount_for_purchase,
    service_fee_for_discount,
)

logger = get_logger(__name__)

MAX_CAMPAIGN_NAME_BYTES = 64
DEFAULT_CAMPAIGN_DURATION = 7 * 24 * 60 * 60

DEFAULT_DISCOUNT_BPS = 2500
DEFAULT_RESALE_BPS = 5000
DEFAULT_TOTAL_COUPONS = 100
DEFAULT_MAX_DISCOUNT_LAMPORTS = 10_000_000
DEFAULT_MINT_COST_LAMPORTS = 1_000_000
DEFAULT_CAMPAIGN_NAME = "AI Demo Campaign"

ABANDONED_CART_DISCOUNT_BPS = 1000
ABANDONED_CART_MAX_DISCOUNT_LAMPORTS = 100_000_000
ABANDONED_CART_MINT_COST_LAMPORTS = 1_000_000


def _int(source: Optional[Mapping], keys, default: int) -> int:
    """First numeric value among ``keys``, or ``default``."""
    for key in keys:
        value = (source or {}).get(key)
        if value is None or isinstance(value, bool):
            continue
        try:
            return int(value)
        except (TypeError, ValueError):
            continue
    return default


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(value, high))


def _truncate_name(name: str) -> str:
    return name.encode("utf-8")[:MAX_CAMPAIGN_NAME_BYTES].decode("utf-8", errors="ignore")


def end_of_utc_day(now: int) -> int:
    day = datetime.fromtimestamp(now, tz=timezone.utc).date()
    end = datetime(day.year, day.month, day.day, tzinfo=timezone.utc) + timedelta(days=1) - timedelta(seconds=1)
    return int(end.timestamp())


def _first_address(*candidates) -> Optional[Pubkey]:
    for candidate in candidates:
        if not candidate:
            continue
        try:
            return parse_address(candidate, "target wallet")
        except ValidationError:
            logger.warning(f"Ignoring invalid target wallet candidate: {candidate}")
    return None


def normalize_campaign_params(
    proposal: Mapping[str, Any],
    shopper_context: Optional[Mapping[str, Any]],
    wallet_address: Optional[str],
    merchant: Pubkey,
    global_config: GlobalConfigView,
    now: int,
) -> instructions.CampaignParams:
    """Turn an untrusted campaign proposal into valid ``create_campaign`` args.

    Missing or out-of-range values fall back to demo defaults; the resale rate
    is clamped to the global maximum and the deposit is computed to cover every
    mint plus the protocol fee on each coupon's maximum discount.
    """
    discount_bps = _clamp(_int(proposal, ("discount_bps", "discountBps"), DEFAULT_DISCOUNT_BPS), 0, BPS_DENOMINATOR)
    resale_bps = _clamp(
        _int(proposal, ("resale_bps", "resaleBps"), DEFAULT_RESALE_BPS), 0, global_config.max_resale_bps
    )

    expiration = _int(proposal, ("expiration_timestamp", "expirationTimestamp"), 0)
    if expiration <= now:
        expiration = now + DEFAULT_CAMPAIGN_DURATION

    total_coupons = _int(proposal, ("total_coupons", "totalCoupons"), DEFAULT_TOTAL_COUPONS)
    if total_coupons <= 0:
        total_coupons = DEFAULT_TOTAL_COUPONS

    category_code = _int(proposal, ("category_code", "categoryCode"), 1)
    product_code = _int(proposal, ("product_code", "productCode"), 1)
    product_code = _int(shopper_context, ("productId", "product_id", "productCode"), product_code)

    max_discount = _int(proposal, ("max_discount_lamports", "maxDiscountLamports"), DEFAULT_MAX_DISCOUNT_LAMPORTS)
    if max_discount <= 0:
        max_discount = DEFAULT_MAX_DISCOUNT_LAMPORTS
    price = price_lamports_for_code(product_code)
    if price is not None and apply_bps(price, discount_bps) > 0:
        max_discount = apply_bps(price, discount_bps)

    mint_cost = _int(proposal, ("mint_cost_lamports", "mintCostLamports"), DEFAULT_MINT_COST_LAMPORTS)
    if mint_cost <= 0:
        mint_cost = DEFAULT_MINT_COST_LAMPORTS
    mint_cost = min(mint_cost, max_discount)

    name = proposal.get("name") or proposal.get("campaign_name") or proposal.get("campaignName")
    requires_wallet = bool(proposal.get("requires_wallet", proposal.get("requiresWallet", False)))

    target_wallet = _first_address(
        proposal.get("target_wallet") or proposal.get("targetWallet"),
        (shopper_context or {}).get("walletAddress"),
        wallet_address,
    ) or merchant

    fee_per_coupon = apply_bps(max_discount, global_config.service_fee_bps)
    deposit = (mint_cost + fee_per_coupon) * total_coupons + config.min_vault_reserve_lamports

    return instructions.CampaignParams(
        campaign_id=now,
        discount_bps=discount_bps,
        resale_bps=resale_bps,
        expiration_timestamp=expiration,
        total_coupons=total_coupons,
        mint_cost_lamports=mint_cost,
        max_discount_lamports=max_discount,
        category_code=category_code,
        product_code=product_code,
        campaign_name=_truncate_name(str(name or DEFAULT_CAMPAIGN_NAME)),
        deposit_amount=deposit,
        requires_wallet=requires_wallet,
        target_wallet=target_wallet,
    )


class CampaignService:
    """Campaign creation, coupon minting and redemption transactions."""

    def __init__(
        self,
        program: ProgramClient,
        merchant: MerchantWallet,
        validator: CouponValidator,
        clock: Callable[[], float] = time.time,
    ):
        self.program = program
        self.merchant = merchant
        self.validator = validator
        self.clock = clock

    @property
    def rpc(self):
        return self.program.rpc

    async def ensure_global_config(self) -> GlobalConfigView:
        """Make sure the global config exists in its current layout.

        Initializes it when absent and upgrades a legacy account in place.
        """
        self.program.require_schema()
        current = await fetch_global_config(self.program)
        admin = self.merchant.keypair

        if current is not None and not current.legacy:
            return current

        if current is None:
            logger.info("Global config not found; initializing")
            ix = instructions.initialize_config(
                self.program, admin.pubkey(), config.default_max_resale_bps, config.default_service_fee_bps
            )
            await sign_and_submit(self.rpc, [ix], [admin], "initialize_config")
        elif current.admin != str(admin.pubkey()):
            logger.warning(f"Global config uses the legacy layout but admin is {current.admin}; not upgrading")
            return current
        else:
            logger.info("Global config uses the legacy layout; upgrading")
            ix = instructions.upgrade_config(
                self.program, admin.pubkey(), current.max_resale_bps, config.default_service_fee_bps
            )
            await sign_and_submit(self.rpc, [ix], [admin], "upgrade_config")

        refreshed = await fetch_global_config(self.program)
        if refreshed is None:
            raise PromoError("Global config account is still missing after initialization.")
        return refreshed

    async def fund_merchant(self) -> None:
        """Best-effort devnet top-up; a failed airdrop does not block the flow."""
        try:
            await self.merchant.ensure_funded(
                self.rpc, config.min_merchant_balance_lamports, config.max_airdrop_lamports
            )
        except (PromoError, httpx.HTTPError) as e:
            logger.warning(f"Could not fund merchant wallet {self.merchant.pubkey}; continuing: {e}")

    async def _submit_campaign(self, params: instructions.CampaignParams) -> dict:
        built = instructions.create_campaign(self.program, self.merchant.pubkey, params)
        signature = await sign_and_submit(self.rpc, [built.instruction], [self.merchant.keypair], "create_campaign")
        logger.info(f"Campaign {built.campaign} created (id {params.campaign_id}): {signature}")
        return {
            "signature": signature,
            "campaignAddress": str(built.campaign),
            "vaultAddress": str(built.vault),
            "campaignId": params.campaign_id,
            "params": {
                **params._asdict(),
                "target_wallet": str(params.target_wallet),
            },
        }

    async def _submit_mint(self, campaign: Pubkey, campaign_id: int, coupon_index: int, recipient: Pubkey) -> dict:
        treasury = await self.merchant.resolve_treasury(self.rpc)
        built = instructions.mint_coupon(
            self.program, campaign, self.merchant.pubkey, recipient, treasury, campaign_id, coupon_index
        )
        signature = await sign_and_submit(self.rpc, [built.instruction], [self.merchant.keypair], "mint_coupon")
        logger.info(f"Coupon {built.coupon} (#{coupon_index}) minted to {recipient}: {signature}")
        return {
            "signature": signature,
            "couponAddress": str(built.coupon),
            "campaignAddress": str(campaign),
            "couponIndex": coupon_index,
            "recipient": str(recipient),
            "platformTreasury": str(treasury),
        }

    async def create_campaign(self, request: CreateCampaignRequest) -> dict:
        """Create a campaign from a (possibly AI-generated) proposal."""
        global_config = await self.ensure_global_config()
        params = normalize_campaign_params(
            request.proposal,
            request.shopper_context,
            request.wallet_address,
            self.merchant.pubkey,
            global_config,
            int(self.clock()),
        )
        await self.fund_merchant()
        result = await self._submit_campaign(params)
        return {"success": True, **result}

    async def mint_coupon(self, campaign_address: str, recipient_address: str) -> dict:
        """Mint the campaign's next coupon to ``recipient_address``."""
        self.program.require_schema()
        campaign_key = parse_address(campaign_address, "campaignAddress")
        recipient = parse_address(recipient_address, "customerWallet")

        campaign = await fetch_campaign(self.program, campaign_key)
        if campaign is None:
            raise NotFoundError("Campaign account not found on-chain.", details={"campaignAddress": campaign_address})
        if campaign.merchant != str(self.merchant.pubkey):
            raise ValidationError("Campaign does not belong to this merchant wallet.")
        if campaign.sold_out:
            raise ValidationError(
                "All coupons for this campaign have already been minted.",
                details={"mintedCoupons": campaign.minted_coupons, "totalCoupons": campaign.total_coupons},
            )
        if campaign.requires_wallet and campaign.target_wallet != str(recipient):
            raise ValidationError("This campaign is targeted to a different wallet.")

        existing = await list_coupons(self.program, campaign=campaign_key, owner=recipient)
        if existing:
            raise ValidationError(
                "This wallet already has a coupon for this campaign.",
                details={"couponAddress": existing[0].address},
            )

        result = await self._submit_mint(campaign_key, campaign.campaign_id, campaign.minted_coupons, recipient)
        return {"success": True, **result}

    async def abandoned_cart_coupon(self, request: AbandonedCartRequest) -> dict:
        """Create a one-coupon campaign targeted at a shopper and mint it to them.

        If the mint fails after the campaign landed, the error reports the
        created campaign so the caller can finish with ``/mint-coupon``.
        """
        self.program.require_schema()
        shopper = parse_address(request.wallet_address, "walletAddress")
        global_config = await self.ensure_global_config()
        now = int(self.clock())

        expiration = end_of_utc_day(now)
        if expiration <= now:
            expiration = now + 3600
        discount_bps = request.discount_bps if request.discount_bps and request.discount_bps > 0 else ABANDONED_CART_DISCOUNT_BPS

        params = instructions.CampaignParams(
            campaign_id=now,
            discount_bps=min(discount_bps, BPS_DENOMINATOR),
            resale_bps=0,
            expiration_timestamp=expiration,
            total_coupons=1,
            mint_cost_lamports=ABANDONED_CART_MINT_COST_LAMPORTS,
            max_discount_lamports=ABANDONED_CART_MAX_DISCOUNT_LAMPORTS,
            category_code=1,
            product_code=request.product_code,
            campaign_name=_truncate_name(f"Abandoned Cart - Product {request.product_id or request.product_code}"),
            deposit_amount=ABANDONED_CART_MAX_DISCOUNT_LAMPORTS,
            requires_wallet=True,
            target_wallet=shopper,
        )
        logger.info(
            f"Abandoned-cart campaign for {shopper}: {params.discount_bps} bps, "
            f"service fee {global_config.service_fee_bps} bps, expires {expiration}"
        )

        await self.fund_merchant()
        campaign = await self._submit_campaign(params)

        try:
            coupon = await self._submit_mint(
                Pubkey.from_string(campaign["campaignAddress"]), params.campaign_id, 0, shopper
            )
        except (PromoError, httpx.HTTPError) as e:
            logger.error(f"Abandoned-cart campaign {campaign['campaignAddress']} created but mint failed: {e}")
            raise PartialSuccessError(
                "Campaign was created but minting the coupon failed.",
                completed={"create_campaign": campaign},
                failed_step="mint_coupon",
                cause=e,
            ) from e

        return {"success": True, "campaign": campaign, "coupon": coupon}

    async def build_redeem_transaction(self, request: RedeemCouponRequest) -> dict:
        """Build an unsigned ``redeem_coupon`` transaction for the shopper to sign."""
        user = parse_address(request.user_wallet, "userWallet")
        validated = await self.validator.validate_for_order(
            request.coupon_address, request.user_wallet, request.order_items
        )
        coupon, campaign = validated
        product_code = request.product_code or campaign.product_code

        treasury = await self.merchant.resolve_treasury(self.rpc)
        ix = instructions.redeem_coupon(
            self.program,
            coupon=Pubkey.from_string(coupon.address),
            campaign=Pubkey.from_string(campaign.address),
            user=user,
            platform_treasury=treasury,
            purchase_amount=request.purchase_amount_lamports,
            product_code=product_code,
        )
        transaction = await build_client_transaction(self.rpc, [ix], user)

        discount = discount_for_purchase(
            request.purchase_amount_lamports, campaign.discount_bps, campaign.max_discount_lamports
        )
        return {
            "success": True,
            "message": "Unsigned redeem_coupon transaction created. Sign and send it with the user wallet.",
            "transactionBase64": transaction,
            "couponAddress": coupon.address,
            "campaignAddress": campaign.address,
            "userWallet": str(user),
            "purchaseAmountLamports": request.purchase_amount_lamports,
            "productCode": product_code,
            "discountLamports": discount,
            "serviceFeeLamports": service_fee_for_discount(discount, campaign.service_fee_bps),
            "coupon": validated.normalized.to_api(),
        }
