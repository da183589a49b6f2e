"""
catalog.py
==========
Structural validation of promotion definitions and conversion of stored rows
into the definitions the engine evaluates.

Validation happens when staff create or edit a promotion. The engine runs the
same checks again at evaluation time and leaves out any entry that fails,
reporting it as a diagnostic instead of raising.
"""

from typing import Iterable, List

from errors import ConfigurationError
from schemas import DiscountType, PromotionDefinition, PromotionType

DELEGATING_TYPES = (PromotionType.time_based, PromotionType.coupon)
BUNDLE_TYPES = (PromotionType.fixed_price, PromotionType.combo_deal)


def _is_negative(value) -> bool:
    return value is not None and value < 0


def _item_problems(items) -> List[str]:
    problems = []
    for n, item in enumerate(items, start=1):
        if item.menu_item_id and item.category_id:
            problems.append(f"Item {n} must target a menu item or a category, not both")
        if item.required_quantity < 1:
            problems.append(f"Item {n} required_quantity must be at least 1")
        if item.free_quantity < 0:
            problems.append(f"Item {n} free_quantity cannot be negative")
        if item.max_quantity is not None and item.max_quantity < 1:
            problems.append(f"Item {n} max_quantity must be at least 1")
        if _is_negative(item.discounted_price):
            problems.append(f"Item {n} discounted_price cannot be negative")
    return problems


def _discount_problems(promotion) -> List[str]:
    problems = []
    ptype, dtype = promotion.type, promotion.discount_type
    value = promotion.discount_value

    if dtype == DiscountType.percentage:
        if value is None:
            problems.append("Percentage discounts need a discount_value")
        elif not 0 <= value <= 100:
            problems.append("Percentage discount_value must be between 0 and 100")
    elif dtype == DiscountType.fixed_amount:
        if value is None:
            problems.append("Fixed amount discounts need a discount_value")
        elif value < 0:
            problems.append("discount_value cannot be negative")
    elif dtype == DiscountType.fixed_price:
        priced_items = promotion.items and all(i.discounted_price is not None for i in promotion.items)
        if promotion.fixed_price is None and not (ptype == PromotionType.item_discount and priced_items):
            problems.append("Fixed price promotions need a fixed_price")
        elif _is_negative(promotion.fixed_price):
            problems.append("fixed_price cannot be negative")
    elif dtype == DiscountType.free_item:
        if ptype == PromotionType.cart_discount:
            problems.append("Cart discounts cannot use the FREE_ITEM discount type")
        elif ptype in BUNDLE_TYPES:
            problems.append("Bundle promotions cannot use the FREE_ITEM discount type")

    is_bogo = ptype == PromotionType.bogo or (ptype in DELEGATING_TYPES and dtype == DiscountType.free_item)
    if is_bogo and not any(i.free_quantity > 0 for i in promotion.items):
        problems.append("BOGO promotions need at least one item with free_quantity > 0")
    return problems


def _schedule_problems(promotion) -> List[str]:
    problems = []
    start, end = promotion.time_range_start, promotion.time_range_end
    if (start is None) != (end is None):
        problems.append("time_range_start and time_range_end must be set together")
    elif start is not None and end <= start:
        problems.append("time_range_end must be later than time_range_start; windows crossing midnight are not supported")

    if promotion.start_date and promotion.end_date and promotion.end_date < promotion.start_date:
        problems.append("end_date cannot be before start_date")

    bad_days = [d for d in promotion.days_of_week if not 1 <= d <= 7]
    if bad_days:
        problems.append(f"days_of_week must be ISO weekdays 1-7, got {bad_days}")
    return problems


def _limit_problems(promotion) -> List[str]:
    problems = []
    for field in ("min_cart_value", "max_discount_amount", "min_items", "max_items",
                  "usage_limit", "per_customer_limit"):
        if _is_negative(getattr(promotion, field)):
            problems.append(f"{field} cannot be negative")
    if (promotion.min_items is not None and promotion.max_items is not None
            and promotion.min_items > promotion.max_items):
        problems.append("min_items cannot exceed max_items")

    usage_count = getattr(promotion, "usage_count", 0) or 0
    if promotion.usage_limit is not None and usage_count > promotion.usage_limit:
        problems.append("usage_count exceeds usage_limit")
    return problems


def find_problems(promotion) -> List[str]:
    """Every structural problem with a promotion definition; empty when valid."""
    problems = _discount_problems(promotion)
    problems += _item_problems(promotion.items)
    problems += _schedule_problems(promotion)
    problems += _limit_problems(promotion)

    if promotion.requires_code and not promotion.promo_code:
        problems.append("requires_code is set but promo_code is empty")
    elif not promotion.auto_apply and not promotion.promo_code:
        problems.append("Promotions that are not auto-applied need a promo_code")
    return problems


def validate_promotion(promotion) -> None:
    problems = find_problems(promotion)
    if problems:
        raise ConfigurationError(problems, promotion_id=getattr(promotion, "id", None))


def load_catalog(rows: Iterable) -> List[PromotionDefinition]:
    """Convert stored promotion rows (with their items) into engine definitions."""
    return [PromotionDefinition.model_validate(row) for row in rows]
