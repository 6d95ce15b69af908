import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.plan import Plan

logger = logging.getLogger(__name__)


class Plans:
    @staticmethod
    def get_by_price_id(db: Session, price_id: str | None) -> Plan | None:
        if not price_id:
            return None
        stmt = select(Plan).where(
            Plan.stripe_price_id == price_id, Plan.is_active.is_(True)
        )
        return db.scalars(stmt).first()

    @staticmethod
    def get_by_slug(db: Session, slug: str) -> Plan | None:
        return db.scalars(select(Plan).where(Plan.slug == slug)).first()


plans = Plans()


DEFAULT_PLANS = (
    {
        "name": "Starter",
        "slug": "starter",
        "description": "Perfect for individuals getting started",
        "price": 999,
        "trial_days": 7,
        "tier_level": 1,
        "stripe_price_id": "price_starter_monthly",
        "stripe_product_id": "prod_starter",
    },
    {
        "name": "Pro",
        "slug": "pro",
        "description": "For professionals who need more",
        "price": 2499,
        "trial_days": 14,
        "tier_level": 2,
        "stripe_price_id": "price_pro_monthly",
        "stripe_product_id": "prod_pro",
    },
    {
        "name": "Enterprise",
        "slug": "enterprise",
        "description": "For teams and organizations",
        "price": 9999,
        "trial_days": 30,
        "tier_level": 3,
        "stripe_price_id": "price_enterprise_monthly",
        "stripe_product_id": "prod_enterprise",
    },
)


def seed_plans(db: Session, catalog=DEFAULT_PLANS) -> list[Plan]:
    """Create any catalog plans missing by slug. Existing plans are left alone."""
    created: list[Plan] = []
    for data in catalog:
        if plans.get_by_slug(db, data["slug"]) is not None:
            logger.info("Plan already exists: %s", data["slug"])
            continue
        plan = Plan(**data)
        db.add(plan)
        created.append(plan)
        logger.info("Created plan: %s", data["slug"])
    db.commit()
    return created
