"""
usage_recorder.py
=================
Turns the promotions applied to a finalized order into usage drafts.

For every applied promotion the drafts hold:
  - one OrderPromotion row
  - one PromotionUsage record
  - one +1 on the promotion's aggregate usage counter
  - one +1 on the customer's counter, when the customer is known

Nothing is written here. The usage store applies the drafts in a single
transaction and is responsible for never recording an (order, promotion)
pair twice.
"""

from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from schemas import (
    AppliedPromotion,
    CustomerIdentity,
    CustomerUsageIncrement,
    OrderPromotionDraft,
    PromotionCounterIncrement,
    PromotionUsageDraft,
    UsageDrafts,
    ZERO,
)


def record_usage(
    applied_promotions: Iterable[AppliedPromotion],
    order_id: str,
    customer: Optional[CustomerIdentity] = None,
    *,
    tenant_id: str,
    original_amount: Decimal,
    applied_at: Optional[datetime] = None,
) -> UsageDrafts:
    customer = customer or CustomerIdentity()
    applied_at = applied_at or datetime.now()

    unique = {}
    for promotion in applied_promotions:
        unique.setdefault(promotion.promotion_id, promotion)

    total_discount = sum((p.discount_amount for p in unique.values()), start=ZERO)
    final_amount = max(ZERO, original_amount - total_discount)

    drafts = UsageDrafts(order_id=order_id, tenant_id=tenant_id)
    for promotion in unique.values():
        drafts.order_promotions.append(OrderPromotionDraft(
            order_id=order_id,
            promotion_id=promotion.promotion_id,
            discount_amount=promotion.discount_amount,
            promo_code=promotion.promo_code,
            applied_at=applied_at,
        ))
        drafts.usages.append(PromotionUsageDraft(
            promotion_id=promotion.promotion_id,
            tenant_id=tenant_id,
            order_id=order_id,
            customer_id=customer.customer_id,
            customer_phone=customer.phone,
            discount_amount=promotion.discount_amount,
            original_amount=original_amount,
            final_amount=final_amount,
            promo_code=promotion.promo_code,
            affected_items=promotion.affected_items,
            applied_at=applied_at,
        ))
        drafts.promotion_increments.append(
            PromotionCounterIncrement(promotion_id=promotion.promotion_id)
        )
        if customer.key:
            drafts.customer_increments.append(CustomerUsageIncrement(
                promotion_id=promotion.promotion_id,
                tenant_id=tenant_id,
                customer_key=customer.key,
                customer_id=customer.customer_id,
                customer_phone=customer.phone,
                last_used=applied_at,
            ))
    return drafts
