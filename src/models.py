"""Shared data models for the promo bridge service.

Request and response bodies use camelCase on the wire (the storefront and
dashboard speak camelCase) while Python code uses snake_case; both spellings
are accepted on input.
"""

from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ApiModel(BaseModel):
    """Base model: camelCase aliases, populate by either name."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_api(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


# Ledger record views


class CampaignView(ApiModel):
    """Decoded Campaign account."""

    address: str
    merchant: str
    campaign_id: int
    discount_bps: int
    service_fee_bps: int
    resale_bps: int
    expiration_timestamp: int = Field(description="Unix seconds; 0 means no expiry")
    total_coupons: int
    used_coupons: int
    minted_coupons: int
    mint_cost_lamports: int
    max_discount_lamports: int
    category_code: int
    product_code: int
    campaign_name: str
    requires_wallet: bool
    target_wallet: str
    total_purchase_amount: int = 0
    total_discount_lamports: int = 0
    last_redeem_timestamp: int = 0

    def is_expired(self, now: int) -> bool:
        return self.expiration_timestamp > 0 and self.expiration_timestamp < now

    @property
    def sold_out(self) -> bool:
        return self.minted_coupons >= self.total_coupons


class CouponView(ApiModel):
    """Decoded Coupon account."""

    address: str
    campaign: str
    coupon_index: int
    owner: str
    used: bool
    listed: bool
    sale_price_lamports: int = 0


class VaultView(ApiModel):
    """Decoded Vault account."""

    address: str
    campaign: str
    merchant: str
    bump: int
    total_deposit: int
    total_mint_spent: int
    total_service_spent: int


class GlobalConfigView(ApiModel):
    """Decoded GlobalConfig account (current or legacy layout)."""

    address: str
    admin: str
    max_resale_bps: int
    service_fee_bps: int
    legacy: bool = Field(default=False, description="Account predates the service fee field")


class WalletCoupon(ApiModel):
    """A coupon held by a wallet, enriched with its campaign."""

    coupon: CouponView
    campaign_name: Optional[str] = None
    discount_bps: Optional[int] = None
    product_code: Optional[int] = None
    category_code: Optional[int] = None
    expiration_timestamp: Optional[int] = None
    max_discount_lamports: Optional[int] = None
    expired: bool = False
    used: bool = False


# Requests


class OrderItem(ApiModel):
    """One cart line."""

    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: str = Field(validation_alias=AliasChoices("id", "productId", "product_id"))
    quantity: int = 1
    price_sol: Optional[float] = None


class NormalizedCoupon(ApiModel):
    """A coupon that passed order validation."""

    coupon_address: str
    owner: str
    campaign_address: str
    product_code: int
    expiration_timestamp: int


class CreateCampaignRequest(ApiModel):
    wallet_address: Optional[str] = None
    proposal: dict[str, Any] = Field(default_factory=dict)
    shopper_context: Optional[dict[str, Any]] = Field(
        default=None, validation_alias=AliasChoices("shopper_context", "shopperContext")
    )


class MintCouponRequest(ApiModel):
    campaign_address: str
    customer_wallet: str = Field(validation_alias=AliasChoices("customerWallet", "customer_wallet", "recipient"))


class AbandonedCartRequest(ApiModel):
    wallet_address: str
    product_code: int = Field(gt=0)
    product_id: Optional[str] = None
    discount_bps: Optional[int] = None


class RedeemCouponRequest(ApiModel):
    coupon_address: str
    user_wallet: str
    purchase_amount_lamports: int = Field(gt=0)
    product_code: Optional[int] = None
    order_items: Optional[list[OrderItem]] = None


class MarkCouponUsedRequest(ApiModel):
    coupon_address: str


class CreateSessionRequest(ApiModel):
    amount_sol: float = Field(gt=0)
    payer_wallet: Optional[str] = None
    order_items: Optional[list[OrderItem]] = None
    coupon_address: Optional[str] = None
    mode: Literal["transfer-request", "transaction-request"] = "transfer-request"


class ListCouponRequest(ApiModel):
    campaign_address: str
    coupon_address: str
    seller_wallet: str
    price: float
    currency: str = "SOL"


class BuyListingRequest(ApiModel):
    listing_id: str
    buyer_wallet: str
    settle: bool = Field(default=False, description="Request on-ledger settlement (not implemented)")


class AdvisorRequest(ApiModel):
    message: str
    metrics: Optional[dict[str, Any]] = None
    merchant_profile: Optional[dict[str, Any]] = Field(
        default=None, validation_alias=AliasChoices("merchantProfile", "merchant_profile", "profile")
    )
    campaigns: Optional[list[dict[str, Any]]] = None
    shopper_context: Optional[dict[str, Any]] = Field(
        default=None, validation_alias=AliasChoices("shopper_context", "shopperContext")
    )


# In-memory state


class PaymentSession(ApiModel):
    """Solana Pay session correlated by a single-use reference key."""

    reference: str = Field(description="Base58 reference public key")
    recipient: str
    amount_sol: float
    payer_wallet: Optional[str] = None
    coupon_address: Optional[str] = None
    mode: Literal["transfer-request", "transaction-request"] = "transfer-request"
    status: Literal["pending", "confirming", "confirmed", "error"] = "pending"
    signature: Optional[str] = None
    last_error: Optional[str] = None
    payment_url: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class Listing(ApiModel):
    """Secondary-market listing for a coupon."""

    id: str
    campaign_address: str
    coupon_address: str
    seller_wallet: str
    price: float
    price_lamports: int
    currency: str = "SOL"
    status: Literal["active", "sold"] = "active"
    buyer_wallet: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    sold_at: Optional[datetime] = None
