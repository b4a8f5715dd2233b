"""Off-chain checks that mirror the promo program's own rules.

These run before anything is signed or submitted so a doomed redemption or
listing fails fast with a readable reason. The program still enforces the
same rules on-chain.
"""

import time
from typing import Callable, NamedTuple, Optional, Sequence

from src.catalog import price_lamports_for_code, product_id_for_code
from src.errors import CouponValidationError
from src.ledger.addresses import parse_address
from src.ledger.program import ProgramClient
from src.ledger.records import fetch_campaign, fetch_coupon
from src.logging_utils import get_logger
from src.models import CampaignView, CouponView, NormalizedCoupon, OrderItem
from src.promo.coupon_flags import CouponFlags, coupon_flags

logger = get_logger(__name__)

BPS_DENOMINATOR = 10_000


def apply_bps(amount: int, bps: int) -> int:
    return amount * bps // BPS_DENOMINATOR


def discount_for_purchase(purchase_amount: int, discount_bps: int, max_discount_lamports: int) -> int:
    """Discount the program grants on a purchase: a bps share, capped."""
    return min(apply_bps(purchase_amount, discount_bps), max_discount_lamports)


def service_fee_for_discount(discount_lamports: int, service_fee_bps: int) -> int:
    return apply_bps(discount_lamports, service_fee_bps)


def effective_discount_lamports(campaign: CampaignView, catalog_price_lamports: Optional[int]) -> int:
    """Largest discount a coupon can realistically yield.

    Bounded by the campaign cap, and by the product's catalog price when known.
    """
    if catalog_price_lamports is None:
        return campaign.max_discount_lamports
    return min(campaign.max_discount_lamports, apply_bps(catalog_price_lamports, campaign.discount_bps))


def max_resale_lamports(campaign: CampaignView, catalog_price_lamports: Optional[int] = None) -> int:
    """Highest secondary-market price allowed for a coupon of this campaign."""
    return apply_bps(effective_discount_lamports(campaign, catalog_price_lamports), campaign.resale_bps)


def max_resale_for_campaign(campaign: CampaignView) -> int:
    return max_resale_lamports(campaign, price_lamports_for_code(campaign.product_code))


class ValidatedCoupon(NamedTuple):
    """A coupon and its campaign, as read when validation passed."""

    coupon: CouponView
    campaign: CampaignView

    @property
    def normalized(self) -> NormalizedCoupon:
        return NormalizedCoupon(
            coupon_address=self.coupon.address,
            owner=self.coupon.owner,
            campaign_address=self.coupon.campaign,
            product_code=self.campaign.product_code,
            expiration_timestamp=self.campaign.expiration_timestamp,
        )


class CouponValidator:
    """Validates coupons against live ledger state."""

    def __init__(
        self,
        program: ProgramClient,
        flags: CouponFlags = coupon_flags,
        clock: Callable[[], float] = time.time,
    ):
        self.program = program
        self.flags = flags
        self.clock = clock

    async def validate_for_order(
        self,
        coupon_address: str,
        payer_wallet: Optional[str] = None,
        order_items: Optional[Sequence[OrderItem]] = None,
    ) -> ValidatedCoupon:
        """Check that a coupon can be applied to an order.

        Args:
            coupon_address: Coupon account address.
            payer_wallet: Wallet paying for the order; must own the coupon.
            order_items: Cart lines; one must match the campaign's product.

        Returns:
            The coupon and campaign views.

        Raises:
            CouponValidationError: With status 400 (bad request or coupon state),
                404 (coupon not found) or 500 (schema or campaign missing).
        """
        self.program.require_schema()
        coupon_key = parse_address(coupon_address, "couponAddress")

        coupon = await fetch_coupon(self.program, coupon_key)
        if coupon is None:
            raise CouponValidationError("Coupon account not found on-chain.", status_code=404)
        if not coupon.owner or not coupon.campaign:
            raise CouponValidationError("Failed to read coupon owner/campaign from on-chain account.", status_code=500)

        if payer_wallet:
            payer = parse_address(payer_wallet, "payer wallet")
            if str(payer) != coupon.owner:
                raise CouponValidationError(
                    "Coupon does not belong to this wallet.",
                    details={"onChainOwner": coupon.owner, "providedWallet": str(payer)},
                )

        if coupon.used or self.flags.is_used(coupon.address):
            raise CouponValidationError("Coupon is already used (unusable).")
        if coupon.listed:
            raise CouponValidationError("Coupon is listed for sale and cannot be used at checkout.")

        campaign = await fetch_campaign(self.program, parse_address(coupon.campaign, "campaign"))
        if campaign is None:
            raise CouponValidationError("Campaign account not found for this coupon.", status_code=500)

        if campaign.is_expired(int(self.clock())):
            raise CouponValidationError("Coupon is expired.")

        if order_items and campaign.product_code > 0:
            expected = product_id_for_code(campaign.product_code)
            if expected is not None and expected not in {str(item.id) for item in order_items}:
                raise CouponValidationError("Coupon does not apply to any product in this order.")

        logger.info(f"Coupon {coupon.address} validated for order (campaign {campaign.address})")
        return ValidatedCoupon(coupon, campaign)
