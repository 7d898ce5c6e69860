"""Shared fixtures for the merchant app test suite."""

import os
from datetime import timedelta
from decimal import Decimal

# Must be set before merchant_app is imported: the engine is built at import
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SHOPIFY_WEBHOOK_SECRET"] = "webhook-test-secret"
os.environ["SHOPIFY_API_SECRET"] = "api-test-secret"
os.environ["SHOPIFY_API_KEY"] = "api-test-key"
os.environ["API_KEY"] = ""
os.environ["APP_URL"] = "https://app.example.com"

import pytest
from fastapi.testclient import TestClient

from merchant_app.main import app
from merchant_app.models.database import (
    Agency, MerchantReferral, SessionLocal, Shop, create_tables, drop_tables
)
from merchant_app.services.subscriptions import seed_plans
from merchant_app.utils.helpers import utcnow


@pytest.fixture(autouse=True)
def tables():
    create_tables()
    yield
    drop_tables()


@pytest.fixture()
def db():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture()
def client():
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def plans(db):
    seed_plans(db)
    return db


@pytest.fixture()
def make_agency(db):
    """Create agencies with unique emails and codes."""
    counter = {"n": 0}

    def _make(name="Acme Growth", threshold="25.00", active=True, **kwargs):
        counter["n"] += 1
        agency = Agency(
            name=name,
            email=kwargs.pop("email", f"agency{counter['n']}@example.com"),
            referral_code=kwargs.pop("referral_code", f"ACME-{counter['n']:06d}"),
            minimum_payout_threshold=Decimal(threshold),
            active=active,
            **kwargs,
        )
        db.add(agency)
        db.commit()
        db.refresh(agency)
        return agency

    return _make


@pytest.fixture()
def make_referral(db):
    def _make(shop_domain, agency, active=True):
        referral = MerchantReferral(shop_domain=shop_domain, agency_id=agency.id,
                                    lifetime_revenue=Decimal("0"), active=active)
        db.add(referral)
        db.commit()
        db.refresh(referral)
        return referral

    return _make


@pytest.fixture()
def make_shop(db):
    def _make(shop_domain="demo.myshopify.com", installed_days_ago=0, **kwargs):
        shop = Shop(
            shop_domain=shop_domain,
            access_token=kwargs.pop("access_token", "shpat_test"),
            installed_at=utcnow() - timedelta(days=installed_days_ago),
            is_active=True,
            token_version=1,
            **kwargs,
        )
        db.add(shop)
        db.commit()
        db.refresh(shop)
        return shop

    return _make
