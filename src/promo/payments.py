"""Solana Pay payment sessions.

Each checkout gets a fresh, single-use reference key. The key is embedded in
the payment (as a read-only account of the transfer instruction) so the
payment can later be found on-chain by scanning for transactions that mention
it. Two modes are supported:

- ``transfer-request``: a precomputed ``solana:<recipient>?amount=...`` URI.
- ``transaction-request``: ``solana:<url>``; the wallet POSTs its account to
  ``/solana-pay/tx-request`` and receives an unsigned transaction that may
  also redeem a coupon.

Confirmation is only ever derived from observing such a transaction; sessions
live in process memory and are lost on restart.
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Optional
from urllib.parse import quote, urlencode

import httpx
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from src.catalog import sol_to_lamports
from src.config import config
from src.errors import NotFoundError, PromoError, ValidationError
from src.ledger import instructions
from src.ledger.addresses import parse_address
from src.ledger.program import ProgramClient
from src.ledger.transactions import build_client_transaction, transfer_with_reference
from src.logging_utils import get_logger
from src.models import ApiModel, CreateSessionRequest, PaymentSession
from src.promo.merchant import MerchantWallet
from src.promo.validation import CouponValidator

logger = get_logger(__name__)

TRANSACTION_REQUEST_PATH = "/solana-pay/tx-request"


class PollResult(ApiModel):
    """Outcome of one status check."""

    status: str
    signature: Optional[str] = None
    error: Optional[str] = None


def _format_amount(amount_sol: float) -> str:
    # Solana Pay amounts are plain decimals, never scientific notation
    return format(Decimal(str(amount_sol)).normalize(), "f")


def transfer_request_url(
    recipient: str, amount_sol: float, reference: str, label: str, message: str, memo: str
) -> str:
    params = {
        "amount": _format_amount(amount_sol),
        "reference": reference,
        "label": label,
        "message": message,
        "memo": memo,
    }
    return f"solana:{recipient}?{urlencode(params, quote_via=quote)}"


def transaction_request_url(base_url: str, reference: str, cluster: str) -> str:
    link = f"{base_url.rstrip('/')}{TRANSACTION_REQUEST_PATH}?{urlencode({'reference': reference, 'cluster': cluster})}"
    return f"solana:{quote(link, safe='')}"


class PaymentSessionManager:
    """Creates, serves and confirms Solana Pay sessions."""

    def __init__(
        self,
        program: ProgramClient,
        merchant: MerchantWallet,
        validator: CouponValidator,
        base_url: str = config.solana_pay_base_url,
        cluster: str = config.cluster,
        ttl_seconds: int = config.payment_session_ttl_seconds,
        max_sessions: int = config.payment_session_max,
        clock: Callable[[], float] = time.time,
    ):
        self.program = program
        self.merchant = merchant
        self.validator = validator
        self.base_url = base_url
        self.cluster = cluster
        self.ttl_seconds = ttl_seconds
        self.max_sessions = max_sessions
        self.clock = clock
        self._sessions: dict[str, PaymentSession] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    def _evict(self) -> None:
        """Drop expired sessions, then the oldest ones beyond the cap. Caller holds the lock."""
        cutoff = self._now() - timedelta(seconds=self.ttl_seconds)
        expired = [ref for ref, s in self._sessions.items() if s.created_at < cutoff]
        for ref in expired:
            del self._sessions[ref]
        while len(self._sessions) >= self.max_sessions:
            oldest = next(iter(self._sessions))
            del self._sessions[oldest]
            expired.append(oldest)
        if expired:
            logger.info(f"Evicted {len(expired)} payment session(s)")

    async def _update(self, reference: str, **changes) -> Optional[PaymentSession]:
        """Apply ``changes`` to a stored session; None if it was evicted meanwhile."""
        async with self._lock:
            current = self._sessions.get(reference)
            if current is None:
                logger.warning(f"Payment session {reference} was evicted before it could be updated")
                return None
            session = current.model_copy(update=changes)
            self._sessions[reference] = session
            return session

    def get(self, reference: str) -> PaymentSession:
        session = self._sessions.get(reference)
        if session is None:
            raise NotFoundError("Payment session not found for this reference.", details={"reference": reference})
        return session

    async def create_session(self, request: CreateSessionRequest) -> PaymentSession:
        """Start a checkout session.

        A coupon, when given, is validated against the payer and cart before the
        session is stored.
        """
        if request.payer_wallet:
            parse_address(request.payer_wallet, "payerWallet")
        if request.coupon_address:
            await self.validator.validate_for_order(request.coupon_address, request.payer_wallet, request.order_items)

        reference = str(Keypair().pubkey())
        recipient = str(self.merchant.pubkey)

        if request.mode == "transaction-request":
            payment_url = transaction_request_url(self.base_url, reference, self.cluster)
        else:
            payment_url = transfer_request_url(
                recipient,
                request.amount_sol,
                reference,
                config.solana_pay_label,
                config.solana_pay_message,
                config.solana_pay_memo,
            )

        session = PaymentSession(
            reference=reference,
            recipient=recipient,
            amount_sol=request.amount_sol,
            payer_wallet=request.payer_wallet,
            coupon_address=request.coupon_address,
            mode=request.mode,
            payment_url=payment_url,
            created_at=self._now(),
        )
        async with self._lock:
            self._evict()
            self._sessions[reference] = session

        logger.info(f"Payment session {reference} created ({request.mode}, {request.amount_sol} SOL)")
        return session

    def transaction_request_metadata(self) -> dict:
        """What a wallet shows before asking for the transaction."""
        return {"label": config.solana_pay_label, "icon": config.solana_pay_icon_url}

    async def build_transaction(self, reference: Optional[str], account: Optional[str]) -> dict:
        """Answer a wallet's transaction request for a session.

        Args:
            reference: Session reference from the request URL.
            account: The wallet's public key.

        Returns:
            ``{"transaction": <base64 unsigned tx>, "message": ...}``.
        """
        if not reference:
            raise ValidationError("Missing 'reference' query parameter.")
        if not account:
            raise ValidationError("Missing payer account in request body (field 'account').")

        session = self.get(reference)
        if session.mode != "transaction-request":
            raise ValidationError("This payment session is not in 'transaction-request' mode.")

        payer = parse_address(account, "account")
        lamports = sol_to_lamports(session.amount_sol)
        if lamports <= 0:
            raise ValidationError("Invalid purchase amount stored in session.")

        ixs = []
        if session.coupon_address:
            # Re-read ledger state: the coupon may have changed since the session began
            coupon, campaign = await self.validator.validate_for_order(session.coupon_address, str(payer))
            treasury = await self.merchant.resolve_treasury(self.program.rpc)
            ixs.append(
                instructions.redeem_coupon(
                    self.program,
                    coupon=Pubkey.from_string(coupon.address),
                    campaign=Pubkey.from_string(campaign.address),
                    user=payer,
                    platform_treasury=treasury,
                    purchase_amount=lamports,
                    product_code=campaign.product_code,
                )
            )
        ixs.append(
            transfer_with_reference(payer, Pubkey.from_string(session.recipient), lamports, Pubkey.from_string(reference))
        )

        transaction = await build_client_transaction(self.program.rpc, ixs, payer)
        logger.info(
            f"Transaction request for {reference}: payer {payer}, {lamports} lamports, "
            f"coupon instruction: {bool(session.coupon_address)}"
        )
        return {"transaction": transaction, "message": config.solana_pay_message}

    async def poll(self, reference: str) -> PollResult:
        """Check whether a session's payment has landed.

        Idempotent once confirmed: the stored signature is returned without
        touching the ledger. Lookup failures are recorded on the session but
        leave its status unchanged.
        """
        session = self.get(reference)
        if session.status == "confirmed" and session.signature:
            return PollResult(status="confirmed", signature=session.signature)

        try:
            signature = await self.program.rpc.find_reference(parse_address(reference, "reference"))
        except (PromoError, httpx.HTTPError) as e:
            logger.warning(f"Status check for {reference} failed: {e}")
            await self._update(reference, last_error=str(e))
            return PollResult(status="error", error=str(e))

        if signature is None:
            return PollResult(status="pending")

        await self._update(reference, status="confirmed", signature=signature, last_error=None)
        logger.info(f"Payment session {reference} confirmed: {signature}")
        return PollResult(status="confirmed", signature=signature)
