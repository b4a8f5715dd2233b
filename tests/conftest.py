import os
import tempfile
from pathlib import Path
from typing import Optional

import base58
import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import ID as SYSTEM_PROGRAM_ID

# Set dummy environment variables for testing
# This must run before src.config is imported by any test
_TEST_DIR = Path(tempfile.mkdtemp(prefix="promo-tests-"))
os.environ.setdefault("MERCHANT_KEYPAIR_PATH", str(_TEST_DIR / "merchant-keypair.json"))
os.environ.setdefault("PLATFORM_TREASURY_ADDRESS", "")
os.environ.setdefault("OPENAI_API_KEY", "")
os.environ.setdefault("SOLANA_RPC_URL", "http://127.0.0.1:8899")
os.environ.setdefault("SOLANA_CLUSTER", "devnet")
os.environ.setdefault("LOG_FORMAT", "text")

from src.config import DEFAULT_IDL_PATH  # noqa: E402
from src.ledger.program import ProgramClient  # noqa: E402
from src.ledger.records import CAMPAIGN_RECORD, COUPON_RECORD  # noqa: E402
from src.ledger.rpc import LedgerAccount  # noqa: E402
from src.ledger.schema import InterfaceSchema  # noqa: E402

PROGRAM_ID = Pubkey.from_string("41eti7CsZBWD1QYdor2RnxmqzsaNGpRQCkJQZqX2JEKr")
BLOCKHASH = Hash(bytes(range(32)))


class FakeLedger:
    """In-memory stand-in for ``LedgerRpc``.

    Applies getProgramAccounts memcmp filters the way the node does and
    records every submitted transaction.
    """

    def __init__(self):
        self.accounts: dict[str, LedgerAccount] = {}
        self.references: dict[str, str] = {}
        self.sent = []
        self.find_reference_calls = 0
        self.find_reference_error: Optional[Exception] = None
        self.send_error: Optional[Exception] = None
        self.balance = 10 * 10**9

    def put(self, address: Pubkey, data: bytes, owner: Pubkey = PROGRAM_ID, lamports: int = 1_000_000) -> None:
        self.accounts[str(address)] = LedgerAccount(
            address=str(address), lamports=lamports, owner=str(owner), data=data
        )

    async def get_account_info(self, address, label=None):
        return self.accounts.get(str(address))

    async def get_program_accounts(self, program_id, filters=None, label=None):
        matches = []
        for account in self.accounts.values():
            if account.owner != str(program_id):
                continue
            ok = True
            for f in filters or []:
                offset = f["memcmp"]["offset"]
                raw = base58.b58decode(f["memcmp"]["bytes"])
                if account.data[offset : offset + len(raw)] != raw:
                    ok = False
                    break
            if ok:
                matches.append(account)
        return matches

    async def get_balance(self, address):
        return self.balance

    async def get_latest_blockhash(self, commitment=None):
        return BLOCKHASH

    async def find_reference(self, reference, page_size=1000):
        self.find_reference_calls += 1
        if self.find_reference_error is not None:
            raise self.find_reference_error
        return self.references.get(str(reference))

    async def send_and_confirm(self, tx):
        if self.send_error is not None:
            error, self.send_error = self.send_error, None
            raise error
        self.sent.append(tx)
        return str(Signature.new_unique())

    async def request_airdrop(self, address, lamports):
        self.balance += lamports
        return str(Signature.new_unique())

    async def aclose(self):
        pass


@pytest.fixture(scope="session")
def schema():
    """The bundled interface description."""
    return InterfaceSchema.from_file(DEFAULT_IDL_PATH)


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def program(schema, ledger):
    return ProgramClient(PROGRAM_ID, ledger, schema, schema_path=DEFAULT_IDL_PATH)


@pytest.fixture
def shopper():
    return Keypair().pubkey()


def campaign_values(merchant: Pubkey, **overrides) -> dict:
    """Campaign record fields with sensible defaults."""
    values = {
        "merchant": merchant,
        "campaign_id": 1_700_000_000,
        "discount_bps": 2000,
        "service_fee_bps": 1000,
        "resale_bps": 5000,
        "expiration_timestamp": 0,
        "total_coupons": 10,
        "used_coupons": 0,
        "minted_coupons": 0,
        "mint_cost_lamports": 1_000_000,
        "max_discount_lamports": 10_000_000,
        "category_code": 1,
        "product_code": 1,
        "campaign_name": "Test Campaign",
        "requires_wallet": False,
        "target_wallet": merchant,
        "total_purchase_amount": 0,
        "total_discount_lamports": 0,
        "last_redeem_timestamp": 0,
    }
    values.update(overrides)
    return values


def put_campaign(ledger: FakeLedger, program: ProgramClient, merchant: Pubkey, **overrides) -> Pubkey:
    """Store an encoded Campaign account; returns its (random) address."""
    address = Keypair().pubkey()
    record = program.record_type(*CAMPAIGN_RECORD)
    ledger.put(address, program.codec.encode_record(record, campaign_values(merchant, **overrides)))
    return address


def put_coupon(
    ledger: FakeLedger,
    program: ProgramClient,
    campaign: Pubkey,
    owner: Pubkey,
    used: bool = False,
    listed: bool = False,
    coupon_index: int = 0,
) -> Pubkey:
    """Store an encoded Coupon account; returns its (random) address."""
    address = Keypair().pubkey()
    record = program.record_type(*COUPON_RECORD)
    values = {
        "campaign": campaign,
        "coupon_index": coupon_index,
        "owner": owner,
        "used": used,
        "listed": listed,
        "sale_price_lamports": 0,
    }
    ledger.put(address, program.codec.encode_record(record, values))
    return address


def put_wallet(ledger: FakeLedger, address: Pubkey) -> None:
    """Store a plain system-owned wallet account."""
    ledger.put(address, b"", owner=SYSTEM_PROGRAM_ID, lamports=10**9)


class LedgerBuilder:
    """Seeds a ``FakeLedger`` with encoded program records."""

    def __init__(self, ledger: FakeLedger, program: ProgramClient):
        self.ledger = ledger
        self.program = program

    def campaign(self, merchant: Pubkey, **overrides) -> Pubkey:
        return put_campaign(self.ledger, self.program, merchant, **overrides)

    def coupon(self, campaign: Pubkey, owner: Pubkey, **kwargs) -> Pubkey:
        return put_coupon(self.ledger, self.program, campaign, owner, **kwargs)

    def wallet(self, address: Pubkey) -> None:
        put_wallet(self.ledger, address)


@pytest.fixture
def chain(ledger, program):
    """Record builder bound to the test's ledger."""
    return LedgerBuilder(ledger, program)


@pytest.fixture
def merchant(tmp_path):
    """Merchant wallet with a throwaway keypair and no configured treasury."""
    from src.promo.merchant import MerchantWallet

    return MerchantWallet(str(tmp_path / "merchant-keypair.json"))


@pytest.fixture
def flags():
    from src.promo.coupon_flags import CouponFlags

    return CouponFlags()
