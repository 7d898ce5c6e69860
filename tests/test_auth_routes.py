"""Tests for the partner install link and the OAuth install flow."""

from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

from sqlalchemy import select

from merchant_app.models.database import InstallationLog, MerchantReferral, OAuthSession, PendingReferral, Shop
from merchant_app.services.exceptions import ShopifyAPIError
from tests.helpers import signed_query

SHOP = "demo.myshopify.com"
TOKEN = {"access_token": "shpat_new", "scope": "read_products"}


def _callback(client, state="nonce-1", cookie_state="nonce-1", ref=None, **extra):
    params = dict({"shop": SHOP, "code": "auth-code", "state": state, "timestamp": "1700000000"}, **extra)
    client.cookies.set("shopify_oauth_state", cookie_state)
    if ref:
        client.cookies.set("partner_ref", ref)
    return client.get(f"/auth/callback?{signed_query(params)}", follow_redirects=False)


class TestInstallLanding:

    def test_landing_without_shop(self, client, make_agency):
        make_agency(name="Acme Growth", referral_code="ACME-111111")

        data = client.get("/install", params={"ref": "ACME-111111"}).json()

        assert data["has_valid_referral"] is True
        assert data["agency_name"] == "Acme Growth"
        assert data["app_name"] == "Jarvis 2.0"

    def test_landing_with_shop_stashes_and_redirects(self, client, db, make_agency):
        make_agency(referral_code="ACME-111111")

        response = client.get("/install", params={"ref": "ACME-111111", "shop": SHOP}, follow_redirects=False)

        assert response.status_code == 302
        query = parse_qs(urlparse(response.headers["location"]).query)
        assert query == {"shop": [SHOP], "ref": ["ACME-111111"]}
        assert db.execute(select(PendingReferral)).scalar_one().shop_domain == SHOP

    def test_invalid_code_not_forwarded(self, client, db):
        response = client.get("/install", params={"ref": "NOPE-000000", "shop": SHOP}, follow_redirects=False)

        assert parse_qs(urlparse(response.headers["location"]).query) == {"shop": [SHOP]}
        assert db.execute(select(PendingReferral)).scalars().all() == []

    def test_bad_shop_domain(self, client):
        response = client.get("/install", params={"shop": "evil.example.com"}, follow_redirects=False)
        assert response.status_code == 400

    def test_bad_query_hmac(self, client):
        response = client.get("/install", params={"shop": SHOP, "hmac": "deadbeef"}, follow_redirects=False)
        assert response.status_code == 401


class TestBeginOAuth:

    def test_redirects_to_shopify(self, client):
        response = client.get("/auth", params={"shop": SHOP}, follow_redirects=False)

        assert response.status_code == 302
        location = urlparse(response.headers["location"])
        assert location.netloc == SHOP
        assert location.path == "/admin/oauth/authorize"
        query = parse_qs(location.query)
        assert query["redirect_uri"] == ["https://app.example.com/auth/callback"]
        assert query["state"][0] == response.cookies["shopify_oauth_state"]


class TestOAuthCallback:

    def test_install_saves_shop_and_attributes(self, client, db, make_agency):
        agency = make_agency(referral_code="ACME-111111")
        db.add(PendingReferral(shop_domain=SHOP, referral_code="ACME-111111", agency_id=agency.id))
        db.commit()

        with patch("merchant_app.services.shopify_client.ShopifyClient.exchange_code", return_value=TOKEN):
            response = _callback(client, host="YWRtaW4")

        assert response.status_code == 302
        assert response.headers["location"] == f"/app?shop={SHOP}&host=YWRtaW4"

        db.expire_all()
        shop = db.execute(select(Shop)).scalar_one()
        assert shop.access_token == "shpat_new"
        assert shop.token_version == 1
        assert db.get(OAuthSession, f"offline_{SHOP}").access_token == "shpat_new"
        assert db.execute(select(MerchantReferral)).scalar_one().agency_id == agency.id
        assert db.execute(select(PendingReferral)).scalars().all() == []
        assert db.execute(select(InstallationLog.action)).scalars().all() == ["INSTALLED"]

    def test_reinstall_bumps_token_version(self, client, db, make_shop):
        make_shop(SHOP, uninstalled_at=None)

        with patch("merchant_app.services.shopify_client.ShopifyClient.exchange_code", return_value=TOKEN):
            _callback(client)

        db.expire_all()
        shop = db.execute(select(Shop)).scalar_one()
        assert shop.token_version == 2
        assert shop.is_active is True

    def test_referral_cookie_used(self, client, db, make_agency):
        agency = make_agency(referral_code="ACME-222222")

        with patch("merchant_app.services.shopify_client.ShopifyClient.exchange_code", return_value=TOKEN):
            _callback(client, ref="ACME-222222")

        db.expire_all()
        assert db.execute(select(MerchantReferral)).scalar_one().agency_id == agency.id

    def test_state_mismatch(self, client):
        response = _callback(client, state="nonce-1", cookie_state="nonce-2")
        assert response.status_code == 403

    def test_bad_hmac(self, client):
        client.cookies.set("shopify_oauth_state", "nonce-1")
        response = client.get("/auth/callback",
                              params={"shop": SHOP, "code": "c", "state": "nonce-1", "hmac": "00"},
                              follow_redirects=False)
        assert response.status_code == 401

    def test_token_exchange_failure(self, client):
        with patch("merchant_app.services.shopify_client.ShopifyClient.exchange_code",
                   side_effect=ShopifyAPIError("HTTP 400")):
            response = _callback(client)
        assert response.status_code == 502

    def test_database_error_does_not_block_redirect(self, client):
        with patch("merchant_app.services.shopify_client.ShopifyClient.exchange_code", return_value=TOKEN), \
                patch("merchant_app.services.shops.ShopService.save_installation",
                      side_effect=RuntimeError("db down")):
            response = _callback(client)

        assert response.status_code == 302
        assert response.headers["location"].startswith("/app?")
