"""Builders for the promo program's instructions.

Each builder derives the record addresses the instruction touches and maps
accounts and arguments by name; order and flags come from the schema.
"""

from typing import NamedTuple

from solders.instruction import Instruction
from solders.pubkey import Pubkey

from src.ledger.addresses import campaign_address, config_address, coupon_address, vault_address
from src.ledger.program import ProgramClient


class CampaignParams(NamedTuple):
    """Arguments of ``create_campaign`` after normalization."""

    campaign_id: int
    discount_bps: int
    resale_bps: int
    expiration_timestamp: int
    total_coupons: int
    mint_cost_lamports: int
    max_discount_lamports: int
    category_code: int
    product_code: int
    campaign_name: str
    deposit_amount: int
    requires_wallet: bool
    target_wallet: Pubkey


class CreateCampaignIx(NamedTuple):
    instruction: Instruction
    campaign: Pubkey
    vault: Pubkey


class MintCouponIx(NamedTuple):
    instruction: Instruction
    coupon: Pubkey


def initialize_config(program: ProgramClient, admin: Pubkey, max_resale_bps: int, service_fee_bps: int) -> Instruction:
    return program.instruction(
        ("initialize", "config"),
        accounts={"config": config_address(program.program_id), "admin": admin},
        args={"max_resale_bps": max_resale_bps, "service_fee_bps": service_fee_bps},
    )


def upgrade_config(program: ProgramClient, admin: Pubkey, max_resale_bps: int, service_fee_bps: int) -> Instruction:
    return program.instruction(
        ("upgrade", "config"),
        accounts={"config": config_address(program.program_id), "admin": admin},
        args={"max_resale_bps": max_resale_bps, "service_fee_bps": service_fee_bps},
    )


def create_campaign(program: ProgramClient, merchant: Pubkey, params: CampaignParams) -> CreateCampaignIx:
    campaign = campaign_address(merchant, params.campaign_id, program.program_id)
    vault = vault_address(campaign, program.program_id)
    instruction = program.instruction(
        ("create", "campaign"),
        accounts={
            "config": config_address(program.program_id),
            "campaign": campaign,
            "vault": vault,
            "merchant": merchant,
        },
        args=params._asdict(),
    )
    return CreateCampaignIx(instruction, campaign, vault)


def mint_coupon(
    program: ProgramClient,
    campaign: Pubkey,
    merchant: Pubkey,
    recipient: Pubkey,
    platform_treasury: Pubkey,
    campaign_id: int,
    coupon_index: int,
) -> MintCouponIx:
    coupon = coupon_address(campaign, coupon_index, program.program_id)
    instruction = program.instruction(
        ("mint", "coupon"),
        accounts={
            "campaign": campaign,
            "vault": vault_address(campaign, program.program_id),
            "coupon": coupon,
            "merchant": merchant,
            "recipient": recipient,
            "platform_treasury": platform_treasury,
        },
        args={"campaign_id": campaign_id, "coupon_index": coupon_index},
    )
    return MintCouponIx(instruction, coupon)


def redeem_coupon(
    program: ProgramClient,
    coupon: Pubkey,
    campaign: Pubkey,
    user: Pubkey,
    platform_treasury: Pubkey,
    purchase_amount: int,
    product_code: int,
) -> Instruction:
    """Client-signed redemption: ``user`` signs and pays."""
    return program.instruction(
        ("redeem", "coupon"),
        accounts={
            "campaign": campaign,
            "vault": vault_address(campaign, program.program_id),
            "coupon": coupon,
            "user": user,
            "platform_treasury": platform_treasury,
        },
        args={"purchase_amount": purchase_amount, "product_code": product_code},
    )
