"""Unit tests for the interface description resolver."""

import hashlib
import json

import pytest

from src.ledger.schema import InterfaceSchema, load_schema

LEGACY_IDL = {
    "name": "promo_targeting",
    "instructions": [
        {
            "name": "redeemCoupon",
            "accounts": [
                {"name": "campaign", "isMut": True, "isSigner": False},
                {"name": "user", "isMut": True, "isSigner": True},
                {"name": "extra", "accounts": [{"name": "systemProgram", "isMut": False, "isSigner": False}]},
            ],
            "args": [{"name": "purchaseAmount", "type": "u64"}],
        }
    ],
    "accounts": [
        {
            "name": "Coupon",
            "type": {
                "kind": "struct",
                "fields": [
                    {"name": "campaign", "type": "publicKey"},
                    {"name": "isUsed", "type": "bool"},
                ],
            },
        }
    ],
    "errors": [{"code": 6000, "name": "CouponExpired", "msg": "Coupon has expired"}],
}


@pytest.mark.unit
class TestResolution:
    """Fuzzy name lookup over the bundled IDL."""

    def test_resolves_by_fragments(self, schema):
        assert schema.resolve_operation("mint", "coupon").name == "mint_coupon"
        assert schema.resolve_operation("redeem", "coupon").name == "redeem_coupon"
        assert schema.resolve_operation("create", "campaign").name == "create_campaign"

    def test_fragment_case_and_separators_ignored(self, schema):
        assert schema.resolve_operation("MintCoupon").name == "mint_coupon"
        assert schema.resolve_record_type("global-config").name == "GlobalConfig"

    def test_exact_match_preferred(self, schema):
        assert schema.resolve_record_type("coupon").name == "Coupon"

    def test_ambiguous_fragment_is_deterministic(self, schema):
        first = schema.resolve_operation("coupon")
        assert first is not None
        assert all(schema.resolve_operation("coupon").name == first.name for _ in range(5))

    def test_no_match_returns_none(self, schema):
        assert schema.resolve_operation("burn", "everything") is None
        assert schema.resolve_record_type("ticket") is None
        assert schema.resolve_operation() is None

    def test_account_flags(self, schema):
        mint = schema.resolve_operation("mint", "coupon")
        flags = {a.name: (a.writable, a.signer) for a in mint.accounts}
        assert flags["merchant"] == (True, True)
        assert flags["recipient"] == (False, False)
        assert flags["platform_treasury"] == (True, False)
        system = [a for a in mint.accounts if a.name == "system_program"][0]
        assert system.address == "11111111111111111111111111111111"

    def test_record_discriminator(self, schema):
        coupon = schema.resolve_record_type("coupon")
        assert coupon.discriminator == hashlib.sha256(b"account:Coupon").digest()[:8]


@pytest.mark.unit
class TestLegacyFormat:
    """Older IDL revisions still load."""

    def test_legacy_document(self):
        schema = InterfaceSchema.from_dict(LEGACY_IDL)
        redeem = schema.resolve_operation("redeem", "coupon")

        assert redeem.discriminator == hashlib.sha256(b"global:redeem_coupon").digest()[:8]
        assert [a.name for a in redeem.accounts] == ["campaign", "user", "systemProgram"]
        assert redeem.accounts[1].signer and redeem.accounts[1].writable

        coupon = schema.resolve_record_type("coupon")
        assert [f.name for f in coupon.fields] == ["campaign", "isUsed"]
        assert schema.error_message(6000) == "Coupon has expired"

    def test_document_without_instructions_rejected(self):
        with pytest.raises(ValueError):
            InterfaceSchema.from_dict({"accounts": []})


@pytest.mark.unit
class TestLoadSchema:
    def test_missing_file_returns_none(self, tmp_path):
        assert load_schema(str(tmp_path / "missing.json")) is None

    def test_malformed_file_returns_none(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{not json")
        assert load_schema(str(path)) is None

    def test_valid_file(self, tmp_path):
        path = tmp_path / "idl.json"
        path.write_text(json.dumps(LEGACY_IDL))
        schema = load_schema(str(path))
        assert schema is not None
        assert schema.name == "promo_targeting"
