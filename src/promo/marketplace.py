"""In-memory secondary market for coupons.

Listings are price-capped by the campaign's resale rate. Buying only flips the
listing to ``sold``: no value or ownership moves on the ledger yet.
"""

import asyncio
import math
import uuid
from typing import Optional

from src.catalog import LAMPORTS_PER_SOL, lamports_to_sol, sol_to_lamports
from src.errors import NotFoundError, SettlementNotImplementedError, ValidationError
from src.ledger.addresses import parse_address
from src.ledger.program import ProgramClient
from src.ledger.records import fetch_campaign, fetch_coupon
from src.logging_utils import get_logger
from src.models import BuyListingRequest, ListCouponRequest, Listing, utcnow
from src.promo.coupon_flags import CouponFlags, coupon_flags
from src.promo.validation import max_resale_for_campaign

logger = get_logger(__name__)

SUPPORTED_CURRENCIES = ("SOL",)


class Marketplace:
    """Listing store with at most one active listing per coupon."""

    def __init__(self, program: ProgramClient, flags: CouponFlags = coupon_flags):
        self.program = program
        self.flags = flags
        self._listings: dict[str, Listing] = {}
        self._lock = asyncio.Lock()

    def list_listings(self, status: Optional[str] = None) -> list[Listing]:
        listings = list(self._listings.values())
        if status:
            listings = [listing for listing in listings if listing.status == status]
        return listings

    def _active_for_coupon(self, coupon_address: str) -> Optional[Listing]:
        for listing in self._listings.values():
            if listing.coupon_address == coupon_address and listing.status == "active":
                return listing
        return None

    async def create_listing(self, request: ListCouponRequest) -> Listing:
        """List a coupon for sale.

        Raises:
            ValidationError: Bad price or currency, a coupon that is used, listed
                on-chain or from another campaign, a price above the resale cap,
                or an existing active listing.
            NotFoundError: The coupon or campaign account does not exist.
        """
        if not math.isfinite(request.price) or request.price <= 0:
            raise ValidationError("price must be a positive number.")
        currency = request.currency.upper()
        if currency not in SUPPORTED_CURRENCIES:
            raise ValidationError("Only SOL listings are supported at the moment.")

        campaign_key = parse_address(request.campaign_address, "campaignAddress")
        coupon_key = parse_address(request.coupon_address, "couponAddress")
        seller = parse_address(request.seller_wallet, "sellerWallet")

        self.program.require_schema()
        coupon = await fetch_coupon(self.program, coupon_key)
        if coupon is None:
            raise NotFoundError("Coupon account not found on-chain.", details={"couponAddress": str(coupon_key)})
        if coupon.campaign != str(campaign_key):
            raise ValidationError(
                "Coupon does not belong to this campaign.",
                details={"couponCampaign": coupon.campaign, "campaignAddress": str(campaign_key)},
            )
        if coupon.used or self.flags.is_used(coupon.address):
            raise ValidationError("Coupon is already used and cannot be listed.")
        if coupon.listed:
            raise ValidationError("Coupon is already listed on-chain.")

        campaign = await fetch_campaign(self.program, campaign_key)
        if campaign is None:
            raise NotFoundError("Campaign account not found for this listing.")

        price_lamports = sol_to_lamports(request.price)
        cap = max_resale_for_campaign(campaign)
        if price_lamports > cap:
            raise ValidationError(
                f"Listing price exceeds the resale cap ({lamports_to_sol(cap)} SOL).",
                details={"maxAllowedPriceSol": cap / LAMPORTS_PER_SOL, "maxAllowedPriceLamports": cap},
            )

        async with self._lock:
            existing = self._active_for_coupon(str(coupon_key))
            if existing is not None:
                raise ValidationError(
                    "This coupon already has an active listing.", details={"listingId": existing.id}
                )
            listing = Listing(
                id=f"lst_{uuid.uuid4().hex[:12]}",
                campaign_address=str(campaign_key),
                coupon_address=str(coupon_key),
                seller_wallet=str(seller),
                price=request.price,
                price_lamports=price_lamports,
                currency=currency,
            )
            self._listings[listing.id] = listing

        await self.flags.mark_listed(listing.coupon_address)
        logger.info(f"Listing {listing.id}: coupon {listing.coupon_address} for {listing.price} {currency}")
        return listing

    async def buy(self, request: BuyListingRequest) -> Listing:
        """Mark a listing sold to ``buyer_wallet``.

        Raises:
            SettlementNotImplementedError: On-ledger settlement was requested.
        """
        if not request.listing_id or not request.buyer_wallet:
            raise ValidationError("listingId and buyerWallet are required.")
        if request.settle:
            raise SettlementNotImplementedError(
                "On-ledger settlement of marketplace purchases is not implemented.",
                details={"listingId": request.listing_id},
            )
        buyer = parse_address(request.buyer_wallet, "buyerWallet")

        async with self._lock:
            listing = self._listings.get(request.listing_id)
            if listing is None:
                raise NotFoundError("Listing not found.", details={"listingId": request.listing_id})
            if listing.status != "active":
                raise ValidationError("Listing is not active.", details={"status": listing.status})
            listing = listing.model_copy(update={"status": "sold", "buyer_wallet": str(buyer), "sold_at": utcnow()})
            self._listings[listing.id] = listing

        await self.flags.clear_listed(listing.coupon_address)
        logger.info(f"Listing {listing.id} sold to {buyer} (no on-chain settlement)")
        return listing
