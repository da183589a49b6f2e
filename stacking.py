"""
stacking.py
===========
Picks the final set of promotions from the eligible candidates.

Candidates are walked by priority (highest first, ties by ascending promotion
id). The first one is always accepted. A non-combinable first pick wins
alone; after that, a candidate is accepted only when it and everything
already accepted can combine. The running total never exceeds the cart
subtotal: the candidate that would overshoot is scaled down to what is left,
and the unit prices it reports are scaled with it.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import List

from schemas import (
    AffectedItem,
    AppliedPromotion,
    CandidateDiscount,
    SkippedPromotion,
    StackingSkipReason,
    ZERO,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


@dataclass
class StackingResult:
    applied: List[AppliedPromotion] = field(default_factory=list)
    total_discount: Decimal = ZERO
    skipped: List[SkippedPromotion] = field(default_factory=list)


def _skip(candidate: CandidateDiscount, reason: StackingSkipReason) -> SkippedPromotion:
    logger.debug("Promotion %s dropped while stacking: %s", candidate.promotion_id, reason.value)
    return SkippedPromotion(promotion_id=candidate.promotion_id, reason=reason.value)


def _scaled_items(candidate: CandidateDiscount, amount: Decimal) -> List[AffectedItem]:
    """Affected items with each unit saving scaled down to the capped amount."""
    ratio = amount / candidate.discount_amount
    scaled = []
    for item in candidate.affected_items:
        saving = (item.original_price - item.discounted_price) * ratio
        scaled.append(item.model_copy(update={
            "discounted_price": (item.original_price - saving).quantize(CENT, rounding=ROUND_HALF_UP),
        }))
    return scaled


def resolve_conflicts(candidates: List[CandidateDiscount], subtotal: Decimal) -> StackingResult:
    result = StackingResult()
    ordered = sorted(candidates, key=lambda c: (-c.priority, c.promotion_id))

    accepted: List[CandidateDiscount] = []
    for index, candidate in enumerate(ordered):
        if candidate.discount_amount <= 0:
            result.skipped.append(_skip(candidate, StackingSkipReason.no_discount))
            continue

        if accepted:
            combinable = candidate.can_combine_with_others and all(
                a.can_combine_with_others for a in accepted
            )
            if not combinable:
                result.skipped.append(_skip(candidate, StackingSkipReason.not_combinable))
                continue

        headroom = subtotal - result.total_discount
        if headroom <= 0:
            result.skipped.append(_skip(candidate, StackingSkipReason.no_headroom))
            continue

        amount, capped = candidate.discount_amount, candidate.capped_by_max
        affected_items = candidate.affected_items
        if amount > headroom:
            amount, capped = headroom, True
            affected_items = _scaled_items(candidate, amount)

        accepted.append(candidate)
        result.total_discount += amount
        result.applied.append(AppliedPromotion(
            promotion_id=candidate.promotion_id,
            promotion_name=candidate.promotion_name,
            discount_amount=amount,
            affected_items=affected_items,
            capped_by_max=capped,
            promo_code=candidate.promo_code,
        ))

        if not candidate.can_combine_with_others:
            # A non-combinable winner ends the walk.
            for rest in ordered[index + 1:]:
                result.skipped.append(_skip(rest, StackingSkipReason.not_combinable))
            break

    return result
