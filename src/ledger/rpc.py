"""Resilient Solana JSON-RPC access.

``ResilientRpc.call`` is the only place that talks to the RPC node. It retries
rate limiting (HTTP 429) and connect timeouts with a linear, capped backoff and
re-raises everything else immediately; non-transient failures of a submitted
transaction are never retried, since resending an ambiguous write can land it
twice.

``LedgerRpc`` exposes the typed calls the service needs on top of a shared
``httpx.AsyncClient``.
"""

import asyncio
import base64
import itertools
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

import base58
import httpx
from pydantic import BaseModel, Field
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from src.errors import RpcResponseError, RpcRetryExhaustedError, TransactionFailedError
from src.logging_utils import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

RATE_LIMIT_MARKERS = ("too many requests", "429", "rate limit")


class LedgerAccount(BaseModel):
    """Raw account state as returned by the RPC node."""

    address: str
    lamports: int
    owner: str
    data: bytes = Field(default=b"", repr=False)
    executable: bool = False


def is_transient(error: BaseException) -> bool:
    """Whether an error (or anything in its cause chain) is safe to retry.

    Only rate limiting and connect timeouts qualify: in both cases the node
    did not act on the request.
    """
    if isinstance(error, RpcRetryExhaustedError):
        return False
    seen = set()
    current: Optional[BaseException] = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, httpx.ConnectTimeout):
            return True
        if isinstance(current, httpx.HTTPStatusError) and current.response.status_code == 429:
            return True
        if isinstance(current, RpcResponseError):
            if current.code == 429 or any(m in current.rpc_message.lower() for m in RATE_LIMIT_MARKERS):
                return True
        current = current.__cause__ or current.__context__
    return False


class ResilientRpc:
    """Bounded retry wrapper for remote calls."""

    def __init__(
        self,
        max_retries: int = 5,
        retry_delay_ms: int = 1000,
        cap_multiplier: int = 5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms
        self.cap_multiplier = cap_multiplier
        self._sleep = sleep

    def backoff_seconds(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        return self.retry_delay_ms * min(attempt, self.cap_multiplier) / 1000

    async def call(self, label: str, op: Callable[[], Awaitable[T]]) -> T:
        """Run ``op``, retrying transient failures up to ``max_retries`` attempts.

        Args:
            label: Short description used in logs and in the final error.
            op: Zero-argument coroutine factory; called once per attempt.

        Returns:
            Whatever ``op`` returns.

        Raises:
            RpcRetryExhaustedError: If every attempt failed transiently.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await op()
            except Exception as e:
                if not is_transient(e):
                    raise
                if attempt >= self.max_retries:
                    logger.error(f"{label}: giving up after {attempt} attempts: {e}")
                    raise RpcRetryExhaustedError(label, attempt, e) from e
                delay = self.backoff_seconds(attempt)
                logger.warning(
                    f"{label}: transient RPC failure (attempt {attempt}/{self.max_retries}), "
                    f"retrying in {delay:.2f}s: {e}"
                )
                await self._sleep(delay)


def memcmp(offset: int, raw: bytes) -> dict:
    """A getProgramAccounts memcmp filter matching ``raw`` at ``offset``."""
    return {"memcmp": {"offset": offset, "bytes": base58.b58encode(raw).decode("ascii")}}


class LedgerRpc:
    """Typed Solana JSON-RPC client; every request goes through ``ResilientRpc``."""

    def __init__(
        self,
        url: str,
        retry: ResilientRpc,
        commitment: str = "confirmed",
        timeout: float = 30.0,
        confirm_timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.retry = retry
        self.commitment = commitment
        self.confirm_timeout = confirm_timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, params: list) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        resp = await self._client.post(self.url, json=payload)
        resp.raise_for_status()
        body = resp.json()
        if body.get("error"):
            error = body["error"]
            raise RpcResponseError(method, error.get("code"), error.get("message", ""), error.get("data"))
        return body.get("result")

    async def request(self, method: str, params: list, label: Optional[str] = None) -> Any:
        """Send one JSON-RPC request with retry on transient failures."""
        return await self.retry.call(label or method, lambda: self._request(method, params))

    # Reads

    @staticmethod
    def _account(address: str, value: dict) -> LedgerAccount:
        data_field = value.get("data") or ["", "base64"]
        return LedgerAccount(
            address=address,
            lamports=value.get("lamports", 0),
            owner=value.get("owner", ""),
            data=base64.b64decode(data_field[0]) if data_field[0] else b"",
            executable=value.get("executable", False),
        )

    async def get_account_info(self, address: Pubkey, label: Optional[str] = None) -> Optional[LedgerAccount]:
        """Fetch one account, or None if it does not exist."""
        result = await self.request(
            "getAccountInfo",
            [str(address), {"encoding": "base64", "commitment": self.commitment}],
            label=label or f"getAccountInfo({address})",
        )
        value = (result or {}).get("value")
        if value is None:
            return None
        return self._account(str(address), value)

    async def get_program_accounts(
        self, program_id: Pubkey, filters: Optional[list] = None, label: Optional[str] = None
    ) -> list[LedgerAccount]:
        """Fetch all accounts owned by a program, optionally filtered server-side."""
        options = {"encoding": "base64", "commitment": self.commitment}
        if filters:
            options["filters"] = filters
        result = await self.request(
            "getProgramAccounts",
            [str(program_id), options],
            label=label or f"getProgramAccounts({program_id})",
        )
        return [self._account(entry["pubkey"], entry["account"]) for entry in result or []]

    async def get_balance(self, address: Pubkey) -> int:
        result = await self.request(
            "getBalance", [str(address), {"commitment": self.commitment}], label=f"getBalance({address})"
        )
        return int(result["value"])

    async def get_latest_blockhash(self, commitment: Optional[str] = None) -> Hash:
        """Fetch a fresh blockhash; never cache the result across transactions."""
        result = await self.request(
            "getLatestBlockhash",
            [{"commitment": commitment or self.commitment}],
            label="getLatestBlockhash",
        )
        return Hash.from_string(result["value"]["blockhash"])

    async def get_signatures_for_address(
        self, address: Pubkey, limit: int = 1000, before: Optional[str] = None
    ) -> list[dict]:
        options = {"limit": limit, "commitment": self.commitment}
        if before:
            options["before"] = before
        return await self.request(
            "getSignaturesForAddress",
            [str(address), options],
            label=f"getSignaturesForAddress({address})",
        ) or []

    async def find_reference(self, reference: Pubkey, page_size: int = 1000) -> Optional[str]:
        """Find the oldest successful transaction that lists ``reference``.

        Args:
            reference: The single-use reference key of a payment session.
            page_size: Signatures requested per page.

        Returns:
            The transaction signature, or None when nothing references the key yet.
        """
        oldest = None
        before = None
        while True:
            page = await self.get_signatures_for_address(reference, limit=page_size, before=before)
            if not page:
                break
            successful = [entry for entry in page if entry.get("err") is None]
            if successful:
                oldest = successful[-1]["signature"]
            if len(page) < page_size:
                break
            before = page[-1]["signature"]
        return oldest

    # Writes

    async def send_transaction(self, tx: Transaction) -> str:
        """Submit a fully signed transaction; returns its signature."""
        encoded = base64.b64encode(bytes(tx)).decode("ascii")
        return await self.request(
            "sendTransaction",
            [encoded, {"encoding": "base64", "preflightCommitment": self.commitment}],
            label="sendTransaction",
        )

    async def confirm_signature(self, signature: str, poll_interval: float = 1.0) -> None:
        """Wait until a signature reaches the configured commitment.

        Raises:
            TransactionFailedError: If the transaction failed on-chain or did not
                confirm within ``confirm_timeout`` seconds.
        """
        wanted = ("confirmed", "finalized") if self.commitment != "finalized" else ("finalized",)
        deadline = time.monotonic() + self.confirm_timeout
        while True:
            result = await self.request(
                "getSignatureStatuses",
                [[signature], {"searchTransactionHistory": False}],
                label=f"getSignatureStatuses({signature[:12]})",
            )
            status = (result or {}).get("value", [None])[0]
            if status is not None:
                if status.get("err") is not None:
                    raise TransactionFailedError(
                        f"Transaction {signature} failed", details={"signature": signature, "err": status["err"]}
                    )
                if status.get("confirmationStatus") in wanted:
                    return
            if time.monotonic() >= deadline:
                raise TransactionFailedError(
                    f"Transaction {signature} was not confirmed within {self.confirm_timeout:.0f}s",
                    details={"signature": signature},
                )
            await asyncio.sleep(poll_interval)

    async def send_and_confirm(self, tx: Transaction) -> str:
        signature = await self.send_transaction(tx)
        logger.info(f"Submitted transaction {signature}")
        await self.confirm_signature(signature)
        logger.info(f"Transaction {signature} confirmed")
        return signature

    async def request_airdrop(self, address: Pubkey, lamports: int) -> str:
        """Request devnet/testnet funds and wait for them to land."""
        signature = await self.request(
            "requestAirdrop",
            [str(address), lamports, {"commitment": self.commitment}],
            label=f"requestAirdrop({address})",
        )
        await self.confirm_signature(signature)
        return signature
