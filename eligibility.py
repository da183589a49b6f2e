"""
eligibility.py
==============
Decides whether a promotion may be considered for a cart at all.

Checks run in a fixed order and stop at the first failure:

   1. active flag
   2. calendar date range (inclusive on both ends)
   3. day of week (ISO numbering, 1 = Monday ... 7 = Sunday)
   4. daily time window (start inclusive, end exclusive; start >= end never matches)
   5. cart minimums / maximums and required items
   6. aggregate and per-customer usage counters
   7. promo code
   8. customer segment and order type

A failed check is a normal outcome carrying a reason code, not an error.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from schemas import (
    Cart,
    EvaluationContext,
    IneligibilityReason,
    PromotionDefinition,
)
from targeting import descriptor_for, matches, usable_lines

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EligibilityResult:
    eligible: bool
    reason: Optional[IneligibilityReason] = None
    detail: Optional[str] = None

    @classmethod
    def ok(cls) -> "EligibilityResult":
        return cls(eligible=True)

    @classmethod
    def fail(cls, reason: IneligibilityReason, detail: Optional[str] = None) -> "EligibilityResult":
        return cls(eligible=False, reason=reason, detail=detail)


# ─────────────────────────── Individual checks ───────────────────────────

def _check_active(promotion, context, cart):
    if not promotion.is_active:
        return EligibilityResult.fail(IneligibilityReason.inactive)
    return None


def _check_date_range(promotion, context, cart):
    today = context.now.date()
    if promotion.start_date and today < promotion.start_date:
        return EligibilityResult.fail(
            IneligibilityReason.out_of_date_range, f"Starts on {promotion.start_date.isoformat()}"
        )
    if promotion.end_date and today > promotion.end_date:
        return EligibilityResult.fail(
            IneligibilityReason.out_of_date_range, f"Ended on {promotion.end_date.isoformat()}"
        )
    return None


def _check_day_of_week(promotion, context, cart):
    if promotion.days_of_week and context.now.isoweekday() not in promotion.days_of_week:
        return EligibilityResult.fail(IneligibilityReason.wrong_day)
    return None


def _check_time_window(promotion, context, cart):
    start, end = promotion.time_range_start, promotion.time_range_end
    if start is None and end is None:
        return None

    current = context.now.time()
    if start is not None and end is not None and start >= end:
        # Windows crossing midnight are rejected at creation; never match here.
        return EligibilityResult.fail(
            IneligibilityReason.outside_time_window, "Time window crosses midnight"
        )
    if start is not None and current < start:
        return EligibilityResult.fail(
            IneligibilityReason.outside_time_window, f"Valid from {start.strftime('%H:%M')}"
        )
    if end is not None and current >= end:
        return EligibilityResult.fail(
            IneligibilityReason.outside_time_window, f"Valid until {end.strftime('%H:%M')}"
        )
    return None


def _check_cart(promotion, context, cart):
    subtotal = cart.subtotal
    if promotion.min_cart_value is not None and subtotal < promotion.min_cart_value:
        return EligibilityResult.fail(
            IneligibilityReason.below_min_cart_value,
            f"Minimum order value of {promotion.min_cart_value} required",
        )

    lines = usable_lines(cart.items)
    if promotion.min_items is not None and len(lines) < promotion.min_items:
        return EligibilityResult.fail(
            IneligibilityReason.below_min_items, f"At least {promotion.min_items} items required"
        )
    if promotion.max_items is not None and len(lines) > promotion.max_items:
        return EligibilityResult.fail(
            IneligibilityReason.above_max_items, f"At most {promotion.max_items} items allowed"
        )

    for required in (i for i in promotion.items if i.is_required):
        descriptor = descriptor_for(required)
        if not any(matches(descriptor, line) and line.quantity >= required.required_quantity for line in lines):
            return EligibilityResult.fail(IneligibilityReason.required_items_missing)
    return None


def _check_counters(promotion, context, cart):
    if promotion.usage_limit is not None and promotion.usage_count >= promotion.usage_limit:
        return EligibilityResult.fail(IneligibilityReason.usage_limit_reached)

    if promotion.per_customer_limit is not None and context.customer.key:
        used = context.customer_usage.get(promotion.id, 0)
        if used >= promotion.per_customer_limit:
            return EligibilityResult.fail(IneligibilityReason.customer_limit_reached)
    return None


def _check_code(promotion, context, cart):
    # auto_apply=False behaves like requires_code: only a matching code selects it.
    if not promotion.requires_code and promotion.auto_apply:
        return None

    codes = context.codes
    if not codes:
        return EligibilityResult.fail(IneligibilityReason.code_required_not_supplied)
    if promotion.promo_code is None or promotion.promo_code not in codes:
        return EligibilityResult.fail(IneligibilityReason.code_mismatch)
    return None


def _check_audience(promotion, context, cart):
    if promotion.customer_segments and not set(promotion.customer_segments) & set(context.customer_segments):
        return EligibilityResult.fail(IneligibilityReason.segment_mismatch)
    if promotion.customer_types and context.order_type not in promotion.customer_types:
        return EligibilityResult.fail(IneligibilityReason.order_type_mismatch)
    return None


CHECKS = (
    _check_active,
    _check_date_range,
    _check_day_of_week,
    _check_time_window,
    _check_cart,
    _check_counters,
    _check_code,
    _check_audience,
)


# ─────────────────────────── Entry point ───────────────────────────

def check_eligibility(
    promotion: PromotionDefinition, context: EvaluationContext, cart: Cart
) -> EligibilityResult:
    for check in CHECKS:
        result = check(promotion, context, cart)
        if result is not None:
            logger.debug(
                "Promotion %s not eligible: %s (%s)",
                promotion.id, result.reason.value, result.detail or "-",
            )
            return result
    return EligibilityResult.ok()
