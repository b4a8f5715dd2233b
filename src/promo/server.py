"""Promo Bridge Service.

Main FastAPI application integrating:
- On-chain campaign and coupon management for the promo targeting program
- Coupon validation and redemption transactions
- Solana Pay checkout sessions
- In-memory coupon marketplace
- AI campaign advisor
"""

import sys
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from solders.pubkey import Pubkey

# Add parent to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from src.config import config, validate_config_for_service
from src.errors import NotFoundError, PromoError
from src.ledger.addresses import parse_address, vault_address
from src.ledger.program import ProgramClient
from src.ledger.records import fetch_campaign, fetch_vault, list_campaigns, list_coupons
from src.ledger.rpc import LedgerRpc, ResilientRpc
from src.ledger.schema import load_schema
from src.logging_utils import (
    REQUEST_ID_HEADER,
    generate_request_id,
    get_logger,
    request_id_var,
    setup_logging,
)
from src.models import (
    AbandonedCartRequest,
    AdvisorRequest,
    BuyListingRequest,
    CreateCampaignRequest,
    CreateSessionRequest,
    ListCouponRequest,
    MarkCouponUsedRequest,
    MintCouponRequest,
    RedeemCouponRequest,
    WalletCoupon,
)
from src.promo.advisor import campaign_advisor
from src.promo.campaigns import CampaignService
from src.promo.coupon_flags import coupon_flags
from src.promo.marketplace import Marketplace
from src.promo.merchant import merchant_wallet
from src.promo.payments import PaymentSessionManager
from src.promo.validation import CouponValidator

# Validate configuration
validate_config_for_service("promo")

# Setup logging
setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)

# Ledger access
rpc = LedgerRpc(
    config.solana_rpc_url,
    ResilientRpc(config.rpc_max_retries, config.rpc_retry_delay_ms, config.rpc_retry_cap_multiplier),
    commitment=config.rpc_commitment,
    timeout=config.rpc_timeout_seconds,
    confirm_timeout=config.confirm_timeout_seconds,
)
program = ProgramClient(
    Pubkey.from_string(config.program_id),
    rpc,
    load_schema(config.promo_idl_path),
    schema_path=config.promo_idl_path,
)

# Services
validator = CouponValidator(program)
campaigns = CampaignService(program, merchant_wallet, validator)
payments = PaymentSessionManager(program, merchant_wallet, validator)
marketplace = Marketplace(program)

# Create FastAPI app
app = FastAPI(
    title="Promo Bridge",
    description="Solana coupon campaigns, Solana Pay checkout and coupon marketplace",
)


@app.on_event("startup")
async def startup():
    """Report ledger settings and load the merchant key."""
    logger.info("Initializing promo service...")
    logger.info(f"RPC: {config.solana_rpc_url} ({config.cluster}), program: {config.program_id}")
    if program.schema_loaded:
        logger.info(f"Interface description loaded from {config.promo_idl_path}")
    else:
        logger.error(f"Interface description not loaded ({config.promo_idl_path}); ledger endpoints will fail")
    logger.info(f"Merchant wallet: {merchant_wallet.pubkey}")
    logger.info("Promo service initialized")


@app.on_event("shutdown")
async def shutdown():
    await rpc.aclose()


@app.middleware("http")
async def bind_request_id(request: Request, call_next):
    """Bind a request ID for log correlation and echo it back."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or generate_request_id()
    token = request_id_var.set(request_id)
    try:
        response = await call_next(request)
    finally:
        request_id_var.reset(token)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


@app.exception_handler(PromoError)
async def promo_error_handler(request: Request, exc: PromoError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}", exc_info=exc)
    else:
        logger.info(f"{request.method} {request.url.path} rejected ({exc.status_code}): {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in exc.errors()]
    return JSONResponse(status_code=400, content={"error": "Invalid request.", "details": details})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error(f"Unexpected error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error.", "details": str(exc)})


@app.get("/health")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "ok", "service": "promo", "schema_loaded": program.schema_loaded}


# Campaigns and coupons


@app.get("/campaigns")
async def get_campaigns() -> dict:
    """All campaign accounts of the program."""
    program.require_schema()
    views = await list_campaigns(program)
    return {"campaigns": [view.to_api() for view in views]}


@app.get("/campaign/{address}")
async def get_campaign(address: str) -> dict:
    program.require_schema()
    campaign_key = parse_address(address, "address")
    campaign = await fetch_campaign(program, campaign_key)
    if campaign is None:
        raise NotFoundError("Campaign account not found on-chain.", details={"address": address})
    vault = await fetch_vault(program, vault_address(campaign_key, program.program_id))
    return {"campaign": campaign.to_api(), "vault": vault.to_api() if vault else None}


@app.get("/coupons/{wallet}")
async def get_wallet_coupons(wallet: str) -> dict:
    """Coupons held by a wallet, excluding ones listed for sale.

    Each coupon is enriched with its campaign's terms.
    """
    program.require_schema()
    owner = parse_address(wallet, "wallet")
    coupons = await list_coupons(program, owner=owner)

    campaign_cache = {}
    now = int(campaigns.clock())
    results = []
    for coupon in coupons:
        if coupon.listed or coupon_flags.is_listed(coupon.address):
            continue
        if coupon.campaign not in campaign_cache:
            campaign_cache[coupon.campaign] = await fetch_campaign(program, Pubkey.from_string(coupon.campaign))
        campaign = campaign_cache[coupon.campaign]

        used = coupon.used or coupon_flags.is_used(coupon.address)
        if campaign is None:
            results.append(WalletCoupon(coupon=coupon, used=used))
            continue
        results.append(
            WalletCoupon(
                coupon=coupon,
                campaign_name=campaign.campaign_name,
                discount_bps=campaign.discount_bps,
                product_code=campaign.product_code,
                category_code=campaign.category_code,
                expiration_timestamp=campaign.expiration_timestamp,
                max_discount_lamports=campaign.max_discount_lamports,
                expired=campaign.is_expired(now),
                used=used,
            )
        )

    logger.info(f"Wallet {owner}: {len(results)} usable coupon(s) of {len(coupons)}")
    return {"wallet": str(owner), "coupons": [item.to_api() for item in results]}


@app.post("/create-campaign")
async def create_campaign(request: CreateCampaignRequest) -> dict:
    return await campaigns.create_campaign(request)


@app.post("/mint-coupon")
async def mint_coupon(request: MintCouponRequest) -> dict:
    return await campaigns.mint_coupon(request.campaign_address, request.customer_wallet)


@app.post("/abandoned-cart-coupon")
async def abandoned_cart_coupon(request: AbandonedCartRequest) -> dict:
    return await campaigns.abandoned_cart_coupon(request)


@app.post("/redeem-coupon")
async def redeem_coupon(request: RedeemCouponRequest) -> dict:
    return await campaigns.build_redeem_transaction(request)


@app.post("/mark-coupon-used")
async def mark_coupon_used(request: MarkCouponUsedRequest) -> dict:
    """Flag a coupon as used in this process only; nothing is written on-chain."""
    address = str(parse_address(request.coupon_address, "couponAddress"))
    await coupon_flags.mark_used(address)
    return {"success": True, "couponAddress": address}


# Solana Pay


@app.post("/solana-pay/create-session")
async def create_payment_session(request: CreateSessionRequest) -> dict:
    session = await payments.create_session(request)
    return {
        "url": session.payment_url,
        "reference": session.reference,
        "recipient": session.recipient,
        "amountSol": session.amount_sol,
        "mode": session.mode,
    }


@app.get("/solana-pay/tx-request")
async def transaction_request_metadata() -> dict:
    return payments.transaction_request_metadata()


@app.post("/solana-pay/tx-request")
async def transaction_request(
    request: Request,
    reference: Optional[str] = None,
    account: Optional[str] = None,
    x_payer_account: Optional[str] = Header(None),
) -> dict:
    """Return an unsigned transaction for the wallet named in ``account``.

    The account may come from the JSON body, the query string or the
    ``X-Payer-Account`` header.
    """
    body_account = None
    try:
        body = await request.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        body_account = body.get("account")
    return await payments.build_transaction(reference, body_account or account or x_payer_account)


@app.get("/solana-pay/status/{reference}")
async def payment_status(reference: str):
    try:
        result = await payments.poll(reference)
    except NotFoundError as e:
        return JSONResponse(status_code=404, content={"status": "not_found", "error": e.message})

    if result.status == "error":
        return JSONResponse(status_code=500, content={"status": "error", "error": result.error})
    if result.status == "confirmed":
        return {"status": "confirmed", "signature": result.signature}
    return {"status": result.status}


# Marketplace


@app.get("/marketplace/listings")
async def get_listings(status: Optional[str] = None) -> dict:
    return {"listings": [listing.to_api() for listing in marketplace.list_listings(status)]}


@app.post("/marketplace/list", status_code=201)
async def list_coupon(request: ListCouponRequest) -> dict:
    listing = await marketplace.create_listing(request)
    return {"success": True, "listing": listing.to_api()}


@app.post("/marketplace/buy")
async def buy_listing(request: BuyListingRequest) -> dict:
    listing = await marketplace.buy(request)
    return {
        "success": True,
        "listing": listing.to_api(),
        "settled": False,
        "message": "Listing marked as sold. No on-chain transfer was performed.",
    }


# Advisor


@app.post("/ai-campaign-advisor")
async def ai_campaign_advisor(request: AdvisorRequest) -> dict:
    return await campaign_advisor.advise(request)


if __name__ == "__main__":
    import uvicorn

    logger.info(f"Starting promo service on {config.promo_host}:{config.promo_port}")
    uvicorn.run(
        app,
        host=config.promo_host,
        port=config.promo_port,
        log_level=config.log_level.lower(),
    )
