# Overview: Service-layer operations for the billing view of the marketplace catalog.

from __future__ import annotations

from ..errors import NotFoundError, ValidationError
from ..extensions import db
from ..models import AppBundle, AppBundleItem, MarketplaceApp, MarketplaceAppRequirement
from ..models.catalog import PRICING_MODELS
from ..money import require_cents


def _clean_slug(slug: str) -> str:
    slug = (slug or "").strip().lower()
    if not slug:
        raise ValidationError("slug is required")
    if len(slug) > 64:
        raise ValidationError("slug must be 64 characters or fewer")
    return slug


def _resolve_apps(slugs: list[str]) -> list[MarketplaceApp]:
    apps = []
    for slug in slugs:
        app = db.session.query(MarketplaceApp).filter_by(slug=slug).first()
        if not app:
            raise NotFoundError(f"App {slug} not found")
        apps.append(app)
    return apps


def create_app_listing(
    slug: str,
    name: str,
    pricing_model: str,
    monthly_price_cents: int = 0,
    *,
    trial_days: int | None = None,
    required_slugs: list[str] | None = None,
) -> MarketplaceApp:
    """
    Register an app's price list and activation rules.

    required_slugs must name apps that already exist.
    """
    slug = _clean_slug(slug)
    if pricing_model not in PRICING_MODELS:
        raise ValidationError(f"Invalid pricing_model: {pricing_model}. Must be one of {PRICING_MODELS}")
    require_cents(monthly_price_cents, "monthly_price_cents", positive=False)
    if monthly_price_cents < 0:
        raise ValidationError("monthly_price_cents must not be negative")
    if trial_days is not None:
        require_cents(trial_days, "trial_days", positive=False)
        if trial_days < 0:
            raise ValidationError("trial_days must not be negative")

    if db.session.query(MarketplaceApp).filter_by(slug=slug).first():
        raise ValidationError(f"App {slug} already exists")

    required = _resolve_apps(required_slugs or [])

    app = MarketplaceApp(
        slug=slug,
        name=(name or slug).strip()[:255],
        pricing_model=pricing_model,
        monthly_price_cents=monthly_price_cents,
        trial_days=trial_days,
        is_active=True,
    )
    db.session.add(app)
    db.session.flush()
    for req in required:
        db.session.add(MarketplaceAppRequirement(app_id=app.id, required_app_id=req.id))
    db.session.commit()
    return app


def create_bundle(
    slug: str,
    name: str,
    app_slugs: list[str],
    monthly_price_cents: int,
    discount_cents: int = 0,
) -> AppBundle:
    """Create a bundle of existing apps sold at price - discount per month."""
    slug = _clean_slug(slug)
    require_cents(monthly_price_cents, "monthly_price_cents", positive=False)
    require_cents(discount_cents, "discount_cents", positive=False)
    if monthly_price_cents < 0 or discount_cents < 0:
        raise ValidationError("Bundle price and discount must not be negative")
    if discount_cents > monthly_price_cents:
        raise ValidationError("Bundle discount cannot exceed its price")
    if not app_slugs:
        raise ValidationError("A bundle needs at least one app")
    if len(set(app_slugs)) != len(app_slugs):
        raise ValidationError("A bundle cannot list the same app twice")

    if db.session.query(AppBundle).filter_by(slug=slug).first():
        raise ValidationError(f"Bundle {slug} already exists")

    apps = _resolve_apps(app_slugs)

    bundle = AppBundle(
        slug=slug,
        name=(name or slug).strip()[:255],
        monthly_price_cents=monthly_price_cents,
        discount_cents=discount_cents,
        is_active=True,
    )
    db.session.add(bundle)
    db.session.flush()
    for app in apps:
        db.session.add(AppBundleItem(bundle_id=bundle.id, app_id=app.id))
    db.session.commit()
    return bundle


def list_apps(include_inactive: bool = False) -> list[MarketplaceApp]:
    query = db.session.query(MarketplaceApp)
    if not include_inactive:
        query = query.filter(MarketplaceApp.is_active.is_(True))
    return query.order_by(MarketplaceApp.slug.asc()).all()
