"""Unit tests for instruction encoding and record decoding."""

import struct

import pytest
from solders.keypair import Keypair

from src.errors import MissingArgumentError, ValidationError
from src.ledger.codec import InstructionCodec, aliases, first_present


@pytest.fixture
def codec(schema):
    return InstructionCodec(schema)


@pytest.mark.unit
class TestEncoding:
    def test_redeem_coupon_bytes(self, schema, codec):
        """Discriminator followed by little-endian u64 then u16."""
        op = schema.resolve_operation("redeem", "coupon")
        data = codec.encode(op, {"purchase_amount": 240_000_000, "product_code": 1})

        assert data[:8] == op.discriminator
        assert data[8:] == struct.pack("<QH", 240_000_000, 1)

    def test_camel_case_keys_accepted(self, schema, codec):
        op = schema.resolve_operation("redeem", "coupon")
        snake = codec.encode(op, {"purchase_amount": 5, "product_code": 2})
        camel = codec.encode(op, {"purchaseAmount": 5, "productCode": 2})
        assert snake == camel

    def test_round_trip_create_campaign(self, schema, codec):
        op = schema.resolve_operation("create", "campaign")
        target = Keypair().pubkey()
        args = {
            "campaign_id": 1_700_000_000,
            "discount_bps": 2500,
            "resale_bps": 5000,
            "expiration_timestamp": 1_800_000_000,
            "total_coupons": 100,
            "mint_cost_lamports": 1_000_000,
            "max_discount_lamports": 60_000_000,
            "category_code": 1,
            "product_code": 1,
            "campaign_name": "Black Friday",
            "deposit_amount": 705_000_000,
            "requires_wallet": True,
            "target_wallet": target,
        }

        decoded_op, decoded = codec.decode_instruction(codec.encode(op, args))

        assert decoded_op.name == "create_campaign"
        assert decoded == args

    def test_missing_argument_names_field(self, schema, codec):
        op = schema.resolve_operation("redeem", "coupon")
        with pytest.raises(MissingArgumentError) as exc_info:
            codec.encode(op, {"purchase_amount": 5})

        assert "product_code" in exc_info.value.message
        assert exc_info.value.details["missing"] == "product_code"
        assert exc_info.value.details["available_keys"] == ["purchase_amount"]
        assert exc_info.value.status_code == 400

    def test_out_of_range_integer(self, schema, codec):
        op = schema.resolve_operation("redeem", "coupon")
        with pytest.raises(ValidationError, match="out of range"):
            codec.encode(op, {"purchase_amount": 5, "product_code": 70_000})

    def test_invalid_pubkey_argument(self, schema, codec):
        op = schema.resolve_operation("create", "campaign")
        args = {name: 1 for name in (a.name for a in op.args)}
        args.update({"campaign_name": "x", "requires_wallet": False, "target_wallet": "nope"})
        with pytest.raises(ValidationError, match="target_wallet"):
            codec.encode(op, args)

    def test_unknown_discriminator(self, codec):
        with pytest.raises(ValueError, match="Unknown instruction"):
            codec.decode_instruction(b"\x00" * 16)


@pytest.mark.unit
class TestRecords:
    def test_coupon_record_round_trip(self, schema, codec):
        record = schema.resolve_record_type("coupon")
        campaign, owner = Keypair().pubkey(), Keypair().pubkey()
        values = {
            "campaign": campaign,
            "coupon_index": 3,
            "owner": owner,
            "used": False,
            "listed": True,
            "sale_price_lamports": 1_000,
        }

        data = codec.encode_record(record, values)

        assert data[8:40] == bytes(campaign)
        assert data[48:80] == bytes(owner)
        assert codec.decode_record(record, data) == values

    def test_wrong_record_type_rejected(self, schema, codec):
        coupon = schema.resolve_record_type("coupon")
        vault = schema.resolve_record_type("vault")
        data = codec.encode_record(
            coupon,
            {
                "campaign": Keypair().pubkey(),
                "coupon_index": 0,
                "owner": Keypair().pubkey(),
                "used": False,
                "listed": False,
                "sale_price_lamports": 0,
            },
        )
        with pytest.raises(ValueError):
            codec.decode_record(vault, data)

    def test_truncated_record_rejected(self, schema, codec):
        record = schema.resolve_record_type("coupon")
        with pytest.raises(ValueError):
            codec.decode_record(record, record.discriminator + b"\x01\x02")


@pytest.mark.unit
class TestAliases:
    def test_aliases(self):
        assert aliases("purchase_amount") == ("purchase_amount", "purchaseAmount")
        assert aliases("purchaseAmount") == ("purchaseAmount", "purchase_amount")

    def test_first_present_skips_none(self):
        assert first_present({"a": None, "b": 0}, ("a", "b")) == 0
        assert first_present(None, ("a",), default=7) == 7
