import logging

from errors import ValidationError
from models import ShopPlan, db
from shops import get_or_create_shop, get_shop

logger = logging.getLogger(__name__)

# maxProducts None = no cap
PLANS = [
    {"key": "free", "name": "Free", "maxProducts": 5},
    {"key": "starter", "name": "Starter", "maxProducts": 300},
    {"key": "growth", "name": "Growth", "maxProducts": 1000},
    {"key": "scale", "name": "Scale", "maxProducts": 10000},
    {"key": "unlimited", "name": "Unlimited", "maxProducts": None},
]


def find_plan(plan_key):
    return next((plan for plan in PLANS if plan["key"] == plan_key), None)


def is_eligible(plan, products_count):
    return plan["maxProducts"] is None or products_count <= plan["maxProducts"]


def recommend_plan(products_count):
    """Smallest plan that fits the catalog."""
    for plan in PLANS:
        if is_eligible(plan, products_count):
            return plan
    return PLANS[-1]


def select_plan(shop_domain, plan_key, products_count):
    plan = find_plan(plan_key)
    if plan is None:
        raise ValidationError("Invalid plan selected.")
    products_count = int(products_count or 0)
    if not is_eligible(plan, products_count):
        raise ValidationError(
            "This plan is not eligible for your store size.",
            details={"productsCount": products_count, "maxProducts": plan["maxProducts"]},
        )

    try:
        shop = get_or_create_shop(shop_domain)
        shop_plan = ShopPlan.query.filter_by(shop_id=shop.id).first()
        if shop_plan is None:
            shop_plan = ShopPlan(shop_id=shop.id)
            db.session.add(shop_plan)
        shop_plan.plan_key = plan["key"]
        shop_plan.products_count_at_selection = products_count
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("Shop %s selected plan %s (%d products)", shop_domain, plan["key"], products_count)
    return shop_plan


def get_shop_plan(shop_domain):
    shop = get_shop(shop_domain)
    if shop is None:
        return None
    return ShopPlan.query.filter_by(shop_id=shop.id).first()


def serialize_shop_plan(shop_plan):
    if shop_plan is None:
        return None
    return {
        "planKey": shop_plan.plan_key,
        "plan": find_plan(shop_plan.plan_key),
        "productsCountAtSelection": shop_plan.products_count_at_selection,
        "selectedAt": shop_plan.selected_at.isoformat() if shop_plan.selected_at else None,
    }
