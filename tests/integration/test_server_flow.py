"""End-to-end HTTP tests for the promo service against an in-memory ledger."""

import pytest
from fastapi.testclient import TestClient
from solders.keypair import Keypair

from src.errors import RpcRetryExhaustedError
from src.promo import server
from src.promo.merchant import merchant_wallet


@pytest.fixture
def client(ledger, monkeypatch):
    monkeypatch.setattr(server.program, "rpc", ledger)
    return TestClient(server.app)


@pytest.mark.integration
class TestServiceBasics:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": "promo", "schema_loaded": True}

    def test_request_id_echoed(self, client):
        response = client.get("/health", headers={"X-Request-Id": "req-test123"})
        assert response.headers["X-Request-Id"] == "req-test123"
        assert client.get("/health").headers["X-Request-Id"].startswith("req-")

    def test_invalid_body_is_400(self, client):
        response = client.post("/solana-pay/create-session", json={"amountSol": -1})
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid request."

    def test_invalid_address_is_400(self, client):
        response = client.get("/campaign/not-an-address")
        assert response.status_code == 400
        assert "error" in response.json()


@pytest.mark.integration
class TestCampaignRoutes:
    def test_campaign_detail_and_list(self, client, chain):
        campaign = chain.campaign(Keypair().pubkey(), campaign_name="Spring Sale")

        detail = client.get(f"/campaign/{campaign}")
        listing = client.get("/campaigns")

        assert detail.status_code == 200
        assert detail.json()["campaign"]["campaignName"] == "Spring Sale"
        assert detail.json()["vault"] is None
        assert [c["address"] for c in listing.json()["campaigns"]] == [str(campaign)]

    def test_unknown_campaign_is_404(self, client):
        response = client.get(f"/campaign/{Keypair().pubkey()}")
        assert response.status_code == 404
        assert response.json()["error"] == "Campaign account not found on-chain."

    def test_wallet_coupons_skip_listed(self, client, chain, shopper):
        campaign = chain.campaign(Keypair().pubkey(), discount_bps=1500, product_code=2)
        usable = chain.coupon(campaign, shopper)
        chain.coupon(campaign, shopper, listed=True, coupon_index=1)
        chain.coupon(campaign, Keypair().pubkey(), coupon_index=2)

        response = client.get(f"/coupons/{shopper}")

        coupons = response.json()["coupons"]
        assert len(coupons) == 1
        assert coupons[0]["coupon"]["address"] == str(usable)
        assert coupons[0]["discountBps"] == 1500
        assert coupons[0]["productCode"] == 2
        assert coupons[0]["used"] is False

    def test_mark_used_blocks_redeem(self, client, chain, shopper):
        coupon = chain.coupon(chain.campaign(Keypair().pubkey()), shopper)

        marked = client.post("/mark-coupon-used", json={"couponAddress": str(coupon)})
        redeem = client.post(
            "/redeem-coupon",
            json={"couponAddress": str(coupon), "userWallet": str(shopper), "purchaseAmountLamports": 100_000_000},
        )

        assert marked.json() == {"success": True, "couponAddress": str(coupon)}
        assert redeem.status_code == 400
        assert redeem.json()["error"] == "Coupon is already used (unusable)."

    def test_redeem_returns_unsigned_transaction(self, client, chain, shopper):
        coupon = chain.coupon(chain.campaign(Keypair().pubkey()), shopper)

        response = client.post(
            "/redeem-coupon",
            json={"couponAddress": str(coupon), "userWallet": str(shopper), "purchaseAmountLamports": 100_000_000},
        )

        body = response.json()
        assert response.status_code == 200
        assert body["transactionBase64"]
        assert body["discountLamports"] == 10_000_000
        assert body["serviceFeeLamports"] == 1_000_000

    def test_redeem_accepts_numeric_cart_ids(self, client, chain, shopper):
        coupon = chain.coupon(chain.campaign(Keypair().pubkey()), shopper)

        response = client.post(
            "/redeem-coupon",
            json={
                "couponAddress": str(coupon),
                "userWallet": str(shopper),
                "purchaseAmountLamports": 100_000_000,
                "orderItems": [{"id": 1, "quantity": 2}],
            },
        )

        assert response.status_code == 200

    def test_mint_coupon_for_other_merchant_rejected(self, client, chain, shopper):
        campaign = chain.campaign(Keypair().pubkey())
        response = client.post("/mint-coupon", json={"campaignAddress": str(campaign), "customerWallet": str(shopper)})
        assert response.status_code == 400

    def test_mint_coupon(self, client, chain, ledger, shopper):
        campaign = chain.campaign(merchant_wallet.pubkey)
        response = client.post("/mint-coupon", json={"campaignAddress": str(campaign), "recipient": str(shopper)})

        assert response.status_code == 200
        assert response.json()["recipient"] == str(shopper)
        assert len(ledger.sent) == 1


@pytest.mark.integration
class TestSolanaPayRoutes:
    def test_session_lifecycle(self, client, ledger):
        created = client.post("/solana-pay/create-session", json={"amountSol": 0.12})
        reference = created.json()["reference"]

        pending = client.get(f"/solana-pay/status/{reference}")
        ledger.references[reference] = "sig-confirmed"
        confirmed = client.get(f"/solana-pay/status/{reference}")
        again = client.get(f"/solana-pay/status/{reference}")

        assert created.status_code == 200
        assert created.json()["url"].startswith("solana:")
        assert created.json()["mode"] == "transfer-request"
        assert pending.json() == {"status": "pending"}
        assert confirmed.json() == {"status": "confirmed", "signature": "sig-confirmed"}
        assert again.json() == confirmed.json()
        assert ledger.find_reference_calls == 2

    def test_unknown_reference(self, client):
        response = client.get(f"/solana-pay/status/{Keypair().pubkey()}")
        assert response.status_code == 404
        assert response.json()["status"] == "not_found"

    def test_lookup_failure(self, client, ledger):
        reference = client.post("/solana-pay/create-session", json={"amountSol": 0.12}).json()["reference"]
        ledger.find_reference_error = RpcRetryExhaustedError("getSignaturesForAddress", 5, RuntimeError("429"))

        response = client.get(f"/solana-pay/status/{reference}")

        assert response.status_code == 500
        assert response.json()["status"] == "error"

    def test_transaction_request(self, client):
        created = client.post("/solana-pay/create-session", json={"amountSol": 0.24, "mode": "transaction-request"})
        reference = created.json()["reference"]
        payer = Keypair().pubkey()

        metadata = client.get("/solana-pay/tx-request", params={"reference": reference})
        from_body = client.post("/solana-pay/tx-request", params={"reference": reference}, json={"account": str(payer)})
        from_header = client.post(
            "/solana-pay/tx-request", params={"reference": reference}, headers={"X-Payer-Account": str(payer)}
        )
        missing = client.post("/solana-pay/tx-request", params={"reference": reference}, json={})

        assert set(metadata.json()) == {"label", "icon"}
        assert from_body.status_code == 200
        assert set(from_body.json()) == {"transaction", "message"}
        assert from_header.status_code == 200
        assert missing.status_code == 400


@pytest.mark.integration
class TestMarketplaceRoutes:
    def test_list_buy_flow(self, client, chain, shopper):
        campaign = chain.campaign(Keypair().pubkey(), max_discount_lamports=50_000_000)
        coupon = chain.coupon(campaign, shopper)
        body = {
            "campaignAddress": str(campaign),
            "couponAddress": str(coupon),
            "sellerWallet": str(shopper),
            "price": 0.01,
        }

        listed = client.post("/marketplace/list", json=body)
        duplicate = client.post("/marketplace/list", json=body)
        listing_id = listed.json()["listing"]["id"]
        settle = client.post(
            "/marketplace/buy", json={"listingId": listing_id, "buyerWallet": str(Keypair().pubkey()), "settle": True}
        )
        bought = client.post("/marketplace/buy", json={"listingId": listing_id, "buyerWallet": str(Keypair().pubkey())})
        listings = client.get("/marketplace/listings").json()["listings"]

        assert listed.status_code == 201
        assert duplicate.status_code == 400
        assert duplicate.json()["error"] == "This coupon already has an active listing."
        assert settle.status_code == 501
        assert bought.status_code == 200
        assert bought.json()["listing"]["status"] == "sold"
        assert bought.json()["settled"] is False
        assert any(item["id"] == listing_id and item["status"] == "sold" for item in listings)

    def test_listing_above_cap(self, client, chain, shopper):
        campaign = chain.campaign(Keypair().pubkey())
        coupon = chain.coupon(campaign, shopper)

        response = client.post(
            "/marketplace/list",
            json={"campaignAddress": str(campaign), "couponAddress": str(coupon), "sellerWallet": str(shopper), "price": 5},
        )

        assert response.status_code == 400
        assert "maxAllowedPriceSol" in response.json()["details"]


@pytest.mark.integration
class TestAdvisorRoute:
    def test_advisor_without_key_degrades(self, client):
        response = client.post("/ai-campaign-advisor", json={"message": "Plan a Black Friday campaign"})
        assert response.status_code == 200
        assert response.json()["proposal"] is None
