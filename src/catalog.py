"""Storefront product catalog as seen by the promo program.

Campaigns reference products by a numeric ``product_code``; the storefront
uses string product ids and prices in SOL.
"""

from typing import Optional

LAMPORTS_PER_SOL = 1_000_000_000

PRODUCT_CODE_TO_PRODUCT_ID = {
    1: "1",
    2: "2",
    3: "3",
}

PRODUCT_PRICE_SOL = {
    "1": 0.24,
    "2": 0.12,
    "3": 0.34,
}


def sol_to_lamports(amount_sol: float) -> int:
    return int(round(amount_sol * LAMPORTS_PER_SOL))


def lamports_to_sol(lamports: int) -> float:
    return lamports / LAMPORTS_PER_SOL


def product_id_for_code(product_code: Optional[int]) -> Optional[str]:
    """Map an on-chain product code to the storefront product id, if known."""
    if product_code is None:
        return None
    return PRODUCT_CODE_TO_PRODUCT_ID.get(int(product_code))


def price_lamports_for_code(product_code: Optional[int]) -> Optional[int]:
    """Catalog price in lamports for a product code, or None when unknown."""
    product_id = product_id_for_code(product_code)
    if product_id is None or product_id not in PRODUCT_PRICE_SOL:
        return None
    return sol_to_lamports(PRODUCT_PRICE_SOL[product_id])
