from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


PRICING_FREE = "FREE"
PRICING_SUBSCRIPTION = "SUBSCRIPTION"
PRICING_USAGE = "USAGE"
PRICING_HYBRID = "HYBRID"

PRICING_MODELS = [PRICING_FREE, PRICING_SUBSCRIPTION, PRICING_USAGE, PRICING_HYBRID]

# Pricing models that carry a recurring monthly fee
RECURRING_PRICING_MODELS = {PRICING_SUBSCRIPTION, PRICING_HYBRID}


class MarketplaceApp(db.Model):
    """
    Installable marketplace app, as far as billing is concerned.

    The catalog UI (descriptions, icons, reviews) lives in the host platform;
    this row only carries the price list and activation rules.
    """
    __tablename__ = "marketplace_apps"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    slug = db.Column(db.String(64), nullable=False, unique=True, index=True)
    name = db.Column(db.String(255), nullable=False)

    pricing_model = db.Column(db.String(16), nullable=False, default=PRICING_SUBSCRIPTION)
    monthly_price_cents = db.Column(db.Integer, nullable=False, default=0)
    trial_days = db.Column(db.Integer, nullable=True)  # None -> BILLING_DEFAULT_TRIAL_DAYS

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    @property
    def recurring_fee_cents(self) -> int:
        if self.pricing_model in RECURRING_PRICING_MODELS:
            return self.monthly_price_cents
        return 0

    @property
    def required_slugs(self) -> list[str]:
        return sorted(req.required_app.slug for req in self.requirements)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "slug": self.slug,
            "name": self.name,
            "pricing_model": self.pricing_model,
            "monthly_price_cents": self.monthly_price_cents,
            "trial_days": self.trial_days,
            "required_apps": self.required_slugs,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class MarketplaceAppRequirement(db.Model):
    """An app that must be TRIAL/ACTIVE before another app can be activated."""
    __tablename__ = "marketplace_app_requirements"
    __table_args__ = (
        db.UniqueConstraint("app_id", "required_app_id", name="uq_app_requirements_pair"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    app_id = db.Column(db.Integer, db.ForeignKey("marketplace_apps.id"), nullable=False, index=True)
    required_app_id = db.Column(db.Integer, db.ForeignKey("marketplace_apps.id"), nullable=False)

    app = db.relationship(
        "MarketplaceApp",
        foreign_keys=[app_id],
        backref=db.backref("requirements", lazy=True, cascade="all, delete-orphan"),
    )
    required_app = db.relationship("MarketplaceApp", foreign_keys=[required_app_id])


class AppBundle(db.Model):
    """
    A set of apps sold together for one monthly price.

    The bundle is billed as a single charge of (monthly_price - discount),
    never as the sum of its members' individual prices.
    """
    __tablename__ = "app_bundles"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    slug = db.Column(db.String(64), nullable=False, unique=True, index=True)
    name = db.Column(db.String(255), nullable=False)

    monthly_price_cents = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    @property
    def apps(self) -> list:
        return [item.app for item in self.items]

    @property
    def charge_cents(self) -> int:
        return max(self.monthly_price_cents - self.discount_cents, 0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "slug": self.slug,
            "name": self.name,
            "monthly_price_cents": self.monthly_price_cents,
            "discount_cents": self.discount_cents,
            "charge_cents": self.charge_cents,
            "apps": [app.slug for app in self.apps],
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class AppBundleItem(db.Model):
    __tablename__ = "app_bundle_items"
    __table_args__ = (
        db.UniqueConstraint("bundle_id", "app_id", name="uq_bundle_items_pair"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    bundle_id = db.Column(db.Integer, db.ForeignKey("app_bundles.id"), nullable=False, index=True)
    app_id = db.Column(db.Integer, db.ForeignKey("marketplace_apps.id"), nullable=False, index=True)

    bundle = db.relationship(
        "AppBundle",
        backref=db.backref("items", lazy=True, order_by="AppBundleItem.id", cascade="all, delete-orphan"),
    )
    app = db.relationship("MarketplaceApp")
