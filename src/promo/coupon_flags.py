"""Process-local coupon flags.

``used`` is set by the storefront after a checkout it saw succeed, before the
redemption is visible on-chain. ``listed`` tracks coupons with an active
marketplace listing. Neither is written to the ledger; both are lost on
restart.
"""

import asyncio

from src.logging_utils import get_logger

logger = get_logger(__name__)


class CouponFlags:
    """Locally marked used/listed coupon addresses."""

    def __init__(self):
        self._used: set[str] = set()
        self._listed: set[str] = set()
        self._lock = asyncio.Lock()

    async def mark_used(self, coupon_address: str) -> None:
        async with self._lock:
            self._used.add(coupon_address)
        logger.info(f"Coupon {coupon_address} marked as used (local only)")

    async def mark_listed(self, coupon_address: str) -> None:
        async with self._lock:
            self._listed.add(coupon_address)

    async def clear_listed(self, coupon_address: str) -> None:
        async with self._lock:
            self._listed.discard(coupon_address)

    def is_used(self, coupon_address: str) -> bool:
        return coupon_address in self._used

    def is_listed(self, coupon_address: str) -> bool:
        return coupon_address in self._listed


# Global flags instance
coupon_flags = CouponFlags()
