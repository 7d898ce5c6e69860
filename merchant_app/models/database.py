from sqlalchemy import (
    create_engine, Column, Integer, String, Text, Boolean, DECIMAL, Date, DateTime,
    ForeignKey, JSON, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, sessionmaker, relationship
from sqlalchemy.pool import StaticPool

from ..config import settings
from ..utils.helpers import utcnow


def build_engine(database_url: str):
    """Create the engine; SQLite (local runs and tests) gets a single shared connection"""
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            echo=settings.DEBUG,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool
        )

    return create_engine(
        database_url,
        echo=settings.DEBUG,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_pre_ping=True,
        pool_recycle=300
    )


# Create engine
engine = build_engine(settings.DATABASE_URL)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for all models
Base = declarative_base()


class Shop(Base):
    """Installed shops and their offline access token"""
    __tablename__ = "shops"

    id = Column(Integer, primary_key=True, index=True)
    shop_domain = Column(String(255), nullable=False, unique=True, index=True)
    access_token = Column(String(255))
    scope = Column(Text)
    installed_at = Column(DateTime, default=utcnow, nullable=False)
    uninstalled_at = Column(DateTime)
    is_active = Column(Boolean, default=True)
    token_version = Column(Integer, default=1)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<Shop(id={self.id}, shop_domain='{self.shop_domain}', is_active={self.is_active})>"


class OAuthSession(Base):
    """Shopify OAuth session storage"""
    __tablename__ = "sessions"

    id = Column(String(255), primary_key=True)
    shop = Column(String(255), nullable=False, index=True)
    state = Column(String(255))
    is_online = Column(Boolean, default=False)
    scope = Column(Text)
    access_token = Column(String(255))
    expires = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)

    def __repr__(self):
        return f"<OAuthSession(id='{self.id}', shop='{self.shop}')>"


class InstallationLog(Base):
    """Install, uninstall and redact history"""
    __tablename__ = "installation_logs"

    id = Column(Integer, primary_key=True, index=True)
    shop_domain = Column(String(255), nullable=False, index=True)
    action = Column(String(50), nullable=False)
    details = Column(JSON)
    created_at = Column(DateTime, default=utcnow)


class Plan(Base):
    """Billing plans offered to merchants"""
    __tablename__ = "plans"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False, unique=True)
    price = Column(DECIMAL(10, 2), nullable=False)
    interval = Column(String(50), default="EVERY_30_DAYS")
    messages_limit = Column(Integer, default=-1)
    trial_days = Column(Integer, default=14)
    features = Column(JSON)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)

    subscriptions = relationship("Subscription", back_populates="plan")

    def __repr__(self):
        return f"<Plan(id={self.id}, name='{self.name}', price={self.price})>"


class Subscription(Base):
    """A shop's billing plan, usage counters and period bounds"""
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    shop_domain = Column(String(255), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False)
    status = Column(String(50), default="ACTIVE", index=True)
    shopify_subscription_id = Column(String(255), index=True)
    billing_cycle = Column(String(50), default="monthly")
    price = Column(DECIMAL(10, 2))
    current_period_start = Column(DateTime)
    current_period_end = Column(DateTime)
    messages_used = Column(Integer, default=0)
    messages_limit = Column(Integer, default=-1)
    trial_ends_at = Column(DateTime)
    cancelled_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    plan = relationship("Plan", back_populates="subscriptions")

    def __repr__(self):
        return f"<Subscription(id={self.id}, shop_domain='{self.shop_domain}', status='{self.status}')>"


class Agency(Base):
    """Referral partners"""
    __tablename__ = "agencies"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    referral_code = Column(String(64), nullable=False, unique=True, index=True)
    payment_method = Column(String(50))
    payment_email = Column(String(255))
    bank_account_encrypted = Column(Text)
    minimum_payout_threshold = Column(DECIMAL(12, 2), default=settings.DEFAULT_PAYOUT_THRESHOLD, nullable=False)
    payment_verified = Column(Boolean, default=False)
    active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    merchant_referrals = relationship("MerchantReferral", back_populates="agency")
    partner_payouts = relationship("PartnerPayout", back_populates="agency",
                                   order_by="PartnerPayout.month_for.desc()")

    def __repr__(self):
        return f"<Agency(id={self.id}, name='{self.name}', referral_code='{self.referral_code}')>"


class MerchantReferral(Base):
    """Shop to agency attribution"""
    __tablename__ = "merchant_referrals"

    id = Column(Integer, primary_key=True, index=True)
    shop_domain = Column(String(255), nullable=False, unique=True, index=True)
    agency_id = Column(Integer, ForeignKey("agencies.id"), nullable=False, index=True)
    referred_at = Column(DateTime, default=utcnow)
    lifetime_revenue = Column(DECIMAL(12, 2), default=0, nullable=False)
    last_billed_amount = Column(DECIMAL(12, 2))
    last_billed_at = Column(DateTime)
    active = Column(Boolean, default=True)

    agency = relationship("Agency", back_populates="merchant_referrals")

    def __repr__(self):
        return f"<MerchantReferral(shop_domain='{self.shop_domain}', agency_id={self.agency_id})>"


class PendingReferral(Base):
    """Referral captured on the install page, waiting for the OAuth callback"""
    __tablename__ = "pending_referrals"

    id = Column(Integer, primary_key=True, index=True)
    shop_domain = Column(String(255), nullable=False, unique=True, index=True)
    referral_code = Column(String(64), nullable=False)
    agency_id = Column(Integer, ForeignKey("agencies.id"), nullable=False)
    created_at = Column(DateTime, default=utcnow)


class PartnerPayout(Base):
    """Monthly commission ledger row per agency"""
    __tablename__ = "partner_payouts"
    __table_args__ = (
        UniqueConstraint("agency_id", "month_for", name="uq_partner_payouts_agency_month"),
    )

    id = Column(Integer, primary_key=True, index=True)
    agency_id = Column(Integer, ForeignKey("agencies.id"), nullable=False, index=True)
    month_for = Column(Date, nullable=False, index=True)
    gross_amount = Column(DECIMAL(12, 2), default=0, nullable=False)
    commission_amount = Column(DECIMAL(12, 2), default=0, nullable=False)
    commission_rate = Column(DECIMAL(5, 4), default=settings.COMMISSION_RATE, nullable=False)
    paid = Column(Boolean, default=False, nullable=False, index=True)
    paid_at = Column(DateTime)
    payment_reference = Column(String(255))
    payment_method = Column(String(50))
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    agency = relationship("Agency", back_populates="partner_payouts")

    def __repr__(self):
        return (f"<PartnerPayout(id={self.id}, agency_id={self.agency_id}, month_for={self.month_for}, "
                f"commission={self.commission_amount}, paid={self.paid})>")


class WidgetConfig(Base):
    """Storefront chat widget customization"""
    __tablename__ = "widget_configs"

    id = Column(Integer, primary_key=True, index=True)
    shop_domain = Column(String(255), nullable=False, unique=True, index=True)
    options = Column(JSON, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class ChatConversation(Base):
    """One storefront chat conversation"""
    __tablename__ = "chat_conversations"

    id = Column(Integer, primary_key=True, index=True)
    shop_domain = Column(String(255), nullable=False, index=True)
    session_id = Column(String(255), nullable=False, index=True)
    customer_id = Column(String(255), index=True)
    started_at = Column(DateTime, default=utcnow, index=True)
    last_message_at = Column(DateTime, default=utcnow)
    message_count = Column(Integer, default=0)


class AnalyticsEvent(Base):
    """Widget analytics events"""
    __tablename__ = "analytics_events"

    id = Column(Integer, primary_key=True, index=True)
    shop_domain = Column(String(255), nullable=False, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    session_id = Column(String(255))
    payload = Column(JSON)
    created_at = Column(DateTime, default=utcnow, index=True)


# Database utility functions
def get_db():
    """Dependency to get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables():
    """Create all database tables"""
    Base.metadata.create_all(bind=engine)


def drop_tables():
    """Drop all database tables (use with caution)"""
    Base.metadata.drop_all(bind=engine)
