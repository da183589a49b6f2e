"""
promotion_engine.py
===================
Core business logic for computing promotion discounts.

Each promotion is dispatched on its type tag to one calculation function:

1. CART_DISCOUNT:
   - Percentage of the cart subtotal, a fixed amount (never more than the
     subtotal) or the whole cart at a fixed price.

2. ITEM_DISCOUNT:
   - Percentage, fixed amount, price override or free units on every line
     matched by the promotion items, up to each item's max_quantity units.

3. FIXED_PRICE / COMBO_DEAL:
   - A bundle takes required_quantity units of every promotion item, cheapest
     units first, and repeats while all components can be filled.
   - Fixed price: discount = bundle price - fixed_price, never negative.
   - Percentage / fixed amount: reduction on the bundled units.

4. BOGO:
   - free units = floor(buy quantity / required_quantity) * free_quantity,
     capped by max_quantity and the units available on the "get" side.
   - When buy and get sides share lines, one qualifying set stays paid.
   - The cheapest "get" units are made free first.

5. TIME_BASED / COUPON:
   - Delegate on discount_type; the type only gates eligibility.

Amounts are rounded half-up to cents once per promotion, then clamped to
max_discount_amount and to the subtotal of the affected units.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional, Tuple

import catalog as catalog_rules
from eligibility import check_eligibility
from schemas import (
    AffectedItem,
    CandidateDiscount,
    Cart,
    Diagnostic,
    DiscountType,
    EvaluationContext,
    EvaluationResult,
    LineItem,
    PromotionDefinition,
    PromotionItem,
    PromotionType,
    SkippedPromotion,
    TargetDescriptor,
    TargetType,
    ValidateCodeResponse,
    ZERO,
)
from stacking import resolve_conflicts
from targeting import descriptor_for, first_matching, matches, usable_lines

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def round_money(value) -> Decimal:
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class _Outcome:
    """Unrounded result of one calculation function."""
    discount: Decimal = ZERO
    affected_subtotal: Decimal = ZERO
    # (line, units, discounted unit price); None means "share the discount pro rata"
    effects: List[Tuple[LineItem, int, Optional[Decimal]]] = field(default_factory=list)


def _lines_total(lines: Iterable[LineItem]) -> Decimal:
    return sum((line.line_total for line in lines), start=ZERO)


def _reduce(promotion: PromotionDefinition, amount: Decimal) -> Decimal:
    """Percentage / fixed amount / fixed price reduction on a block of units."""
    dtype = promotion.discount_type
    if dtype == DiscountType.percentage:
        return amount * (promotion.discount_value or ZERO) / HUNDRED
    if dtype == DiscountType.fixed_amount:
        return min(promotion.discount_value or ZERO, amount)
    if dtype == DiscountType.fixed_price and promotion.fixed_price is not None:
        return max(ZERO, amount - promotion.fixed_price)
    return ZERO


# ─────────────────────────── Cart-wise ───────────────────────────

def compute_cart_discount(promotion: PromotionDefinition, lines: List[LineItem]) -> _Outcome:
    subtotal = _lines_total(lines)
    return _Outcome(
        discount=_reduce(promotion, subtotal),
        affected_subtotal=subtotal,
        effects=[(line, line.quantity, None) for line in lines],
    )


# ─────────────────────────── Item-wise ───────────────────────────

def _reduced_unit_price(promotion: PromotionDefinition, promotion_item: PromotionItem, price: Decimal) -> Decimal:
    dtype = promotion.discount_type
    if dtype == DiscountType.percentage:
        return max(ZERO, price * (HUNDRED - (promotion.discount_value or ZERO)) / HUNDRED)
    if dtype == DiscountType.fixed_amount:
        return max(ZERO, price - (promotion.discount_value or ZERO))
    if dtype == DiscountType.fixed_price:
        override = promotion_item.discounted_price
        if override is None:
            override = promotion.fixed_price
        return price if override is None else min(price, override)
    if dtype == DiscountType.free_item:
        return ZERO
    return price


def compute_item_discount(promotion: PromotionDefinition, lines: List[LineItem]) -> _Outcome:
    targets = promotion.items or [PromotionItem()]
    outcome = _Outcome()

    for line in lines:
        promotion_item = first_matching(targets, line)
        if promotion_item is None:
            continue
        units = line.quantity
        if promotion_item.max_quantity is not None:
            units = min(units, promotion_item.max_quantity)

        new_price = _reduced_unit_price(promotion, promotion_item, line.unit_price)
        saving = line.unit_price - new_price
        if saving <= 0 or units <= 0:
            continue

        outcome.discount += saving * units
        outcome.affected_subtotal += line.unit_price * units
        outcome.effects.append((line, units, new_price))

    return outcome


# ─────────────────────────── Bundles ───────────────────────────

_SPECIFICITY = {TargetType.products: 0, TargetType.category: 1, TargetType.all: 2}

# A run is (line index, units) taken from one cart line.
Run = Tuple[int, int]


def _cheapest_first(lines: List[LineItem]) -> List[int]:
    """Line indexes ordered by unit price, ties by cart order."""
    return sorted(range(len(lines)), key=lambda i: (lines[i].unit_price, i))


def _take(order, lines, remaining, descriptor, wanted) -> Tuple[List[Run], int]:
    """Take up to `wanted` units from the cheapest matching lines; returns the runs and the shortfall."""
    runs = []
    for index in order:
        if wanted <= 0:
            break
        if remaining[index] <= 0 or not matches(descriptor, lines[index]):
            continue
        units = min(wanted, remaining[index])
        remaining[index] -= units
        wanted -= units
        runs.append((index, units))
    return runs, wanted


def _allocate_bundles(components, lines, order, bundles) -> Optional[List[List[Run]]]:
    """Units for `bundles` bundles, component by component, or None when they do not fit."""
    remaining = [line.quantity for line in lines]
    allocation = []
    for component in components:
        runs, short = _take(order, lines, remaining, descriptor_for(component),
                            component.required_quantity * bundles)
        if short:
            return None
        allocation.append(runs)
    return allocation


def _slice_total(lines: List[LineItem], runs: List[Run], start: int, end: int) -> Decimal:
    """Price of units [start, end) of a component's cheapest-first runs."""
    total = ZERO
    position = 0
    for index, units in runs:
        lo, hi = max(start, position), min(end, position + units)
        if lo < hi:
            total += lines[index].unit_price * (hi - lo)
        position += units
        if position >= end:
            break
    return total


def compute_bundle_discount(promotion: PromotionDefinition, lines: List[LineItem]) -> _Outcome:
    """
    Bundle i takes the i-th `required_quantity` slice of each component's
    cheapest matching units. Specific components pick first so a broad one
    cannot starve them. Work is proportional to the number of lines, not units.
    """
    if not promotion.items:
        # No components: the whole cart is the bundle.
        return compute_cart_discount(promotion, lines)

    components = sorted(promotion.items, key=lambda i: _SPECIFICITY[descriptor_for(i).type])
    order = _cheapest_first(lines)

    limits = [
        sum(line.quantity for line in lines if matches(descriptor_for(c), line)) // c.required_quantity
        for c in components
    ]
    limits += [c.max_quantity for c in components if c.max_quantity is not None]
    low, high = 0, min(limits)
    while low < high:
        middle = (low + high + 1) // 2
        if _allocate_bundles(components, lines, order, middle) is not None:
            low = middle
        else:
            high = middle - 1
    bundles = low
    if bundles == 0:
        return _Outcome()
    allocation = _allocate_bundles(components, lines, order, bundles)

    # Bundles between two cuts hold the same prices; a slice that straddles
    # two lines gets a segment of its own.
    cuts = {0, bundles}
    for component, runs in zip(components, allocation):
        position = 0
        for _, units in runs:
            position += units
            cuts.update((position // component.required_quantity, position // component.required_quantity + 1))
    cuts = sorted(c for c in cuts if c <= bundles)

    outcome = _Outcome()
    for first, stop in zip(cuts, cuts[1:]):
        bundle_price = sum(
            (_slice_total(lines, runs, first * c.required_quantity, (first + 1) * c.required_quantity)
             for c, runs in zip(components, allocation)),
            start=ZERO,
        )
        outcome.discount += _reduce(promotion, bundle_price) * (stop - first)
        outcome.affected_subtotal += bundle_price * (stop - first)

    counts: Dict[int, int] = {}
    for runs in allocation:
        for index, units in runs:
            counts[index] = counts.get(index, 0) + units
    outcome.effects = [(lines[index], counts[index], None) for index in sorted(counts)]
    return outcome


# ─────────────────────────── BOGO ───────────────────────────

def compute_bogo_discount(promotion: PromotionDefinition, lines: List[LineItem]) -> _Outcome:
    """
    Algorithm:
    1. "Get" side = items with free_quantity > 0; "buy" side = the rest, or the
       get side itself when every item carries a free quantity.
    2. Earned free units = floor(buy units / required) * free, capped by the
       get item's max_quantity.
    3. If the sides share lines, keep `required` units paid: buy-only units
       count first, then the most expensive shared units.
    4. Grant the cheapest remaining get units (ties by cart order).

    With a shared buy/get set only one qualifying set stays paid, so without
    max_quantity a buy-1-get-1 on n units of one category frees n - 1 of them.
    Set max_quantity to bound the giveaway.
    """
    get_items = [i for i in promotion.items if i.free_quantity > 0]
    if not get_items:
        return _Outcome()
    buy_items = [i for i in promotion.items if i.free_quantity <= 0] or get_items

    required = max(1, buy_items[0].required_quantity)
    free = get_items[0].free_quantity
    max_quantity = get_items[0].max_quantity

    buy_descriptors = [descriptor_for(i) for i in buy_items]
    get_descriptors = [descriptor_for(i) for i in get_items]
    in_buy = [any(matches(d, line) for d in buy_descriptors) for line in lines]
    in_get = [any(matches(d, line) for d in get_descriptors) for line in lines]

    buy_units = sum(line.quantity for line, b in zip(lines, in_buy) if b)
    earned = (buy_units // required) * free
    if max_quantity is not None:
        earned = min(earned, max_quantity)
    if earned <= 0:
        return _Outcome()

    available = [line.quantity if g else 0 for line, g in zip(lines, in_get)]
    shared = [i for i in range(len(lines)) if in_buy[i] and in_get[i]]
    if shared:
        buy_only = sum(line.quantity for line, b, g in zip(lines, in_buy, in_get) if b and not g)
        still_needed = max(0, required - buy_only)
        for index in sorted(shared, key=lambda i: (-lines[i].unit_price, i)):
            if still_needed <= 0:
                break
            kept = min(still_needed, available[index])
            available[index] -= kept
            still_needed -= kept

    granted, _ = _take(_cheapest_first(lines), lines, available, TargetDescriptor(), earned)
    granted_value = sum((lines[index].unit_price * units for index, units in granted), start=ZERO)
    return _Outcome(
        discount=granted_value,
        affected_subtotal=granted_value,
        effects=[(lines[index], units, ZERO) for index, units in sorted(granted)],
    )


# ─────────────────────────── Dispatch ───────────────────────────

CALCULATORS = {
    PromotionType.cart_discount: compute_cart_discount,
    PromotionType.item_discount: compute_item_discount,
    PromotionType.fixed_price: compute_bundle_discount,
    PromotionType.combo_deal: compute_bundle_discount,
    PromotionType.bogo: compute_bogo_discount,
}

DELEGATES = {
    DiscountType.fixed_price: compute_bundle_discount,
    DiscountType.free_item: compute_bogo_discount,
}


def calculator_for(promotion: PromotionDefinition):
    if promotion.type in (PromotionType.time_based, PromotionType.coupon):
        if promotion.discount_type in DELEGATES:
            return DELEGATES[promotion.discount_type]
        return compute_item_discount if promotion.items else compute_cart_discount
    return CALCULATORS[promotion.type]


def _affected_items(outcome: _Outcome, amount: Decimal) -> List[AffectedItem]:
    ratio = amount / outcome.affected_subtotal if outcome.affected_subtotal else ZERO
    affected = []
    for line, units, new_price in outcome.effects:
        if new_price is None:
            new_price = line.unit_price * (1 - ratio)
        affected.append(AffectedItem(
            menu_item_id=line.menu_item_id,
            quantity=units,
            original_price=round_money(line.unit_price),
            discounted_price=round_money(new_price),
        ))
    return affected


def calculate_discount(
    promotion: PromotionDefinition, cart: Cart, code_used: Optional[str] = None
) -> CandidateDiscount:
    """Candidate discount for one eligible promotion on the cart."""
    lines = usable_lines(cart.items)
    outcome = calculator_for(promotion)(promotion, lines)

    amount = round_money(outcome.discount)
    capped = False
    if promotion.max_discount_amount is not None and amount > promotion.max_discount_amount:
        amount = round_money(promotion.max_discount_amount)
        capped = True
    amount = max(ZERO, min(amount, round_money(outcome.affected_subtotal)))

    return CandidateDiscount(
        promotion_id=promotion.id,
        promotion_name=promotion.name,
        priority=promotion.priority,
        can_combine_with_others=promotion.can_combine_with_others,
        discount_amount=amount,
        affected_items=_affected_items(outcome, amount) if amount > 0 else [],
        capped_by_max=capped,
        promo_code=code_used,
    )


# ─────────────────────────── Evaluation ───────────────────────────

def _code_used(promotion: PromotionDefinition, context: EvaluationContext) -> Optional[str]:
    if promotion.promo_code and promotion.promo_code in context.codes:
        return promotion.promo_code
    return None


def evaluate(
    catalog: Iterable[PromotionDefinition], cart: Cart, context: EvaluationContext
) -> EvaluationResult:
    """
    Decide which promotions apply to the cart and how much each one gives.

    Invalid catalog entries are reported under `diagnostics`, ineligible or
    losing promotions under `skipped`. Nothing here raises for cart content.
    """
    catalog = list(catalog)
    subtotal = round_money(cart.subtotal)
    diagnostics: List[Diagnostic] = []
    skipped: List[SkippedPromotion] = []
    candidates: List[CandidateDiscount] = []

    for promotion in catalog:
        problems = catalog_rules.find_problems(promotion)
        if context.tenant_id and promotion.tenant_id and promotion.tenant_id != context.tenant_id:
            problems.append(f"Belongs to tenant {promotion.tenant_id}")
        if problems:
            logger.warning("Excluding promotion %s from evaluation: %s", promotion.id, "; ".join(problems))
            diagnostics.append(Diagnostic(promotion_id=promotion.id, problems=problems))
            continue

        eligibility = check_eligibility(promotion, context, cart)
        if not eligibility.eligible:
            skipped.append(SkippedPromotion(
                promotion_id=promotion.id,
                reason=eligibility.reason.value,
                detail=eligibility.detail,
            ))
            continue

        candidates.append(calculate_discount(promotion, cart, _code_used(promotion, context)))

    stacked = resolve_conflicts(candidates, subtotal)
    skipped.extend(stacked.skipped)

    logger.info(
        "Evaluated %d promotions for tenant %s: subtotal=%s applied=%d discount=%s",
        len(catalog),
        context.tenant_id or "-", subtotal, len(stacked.applied), stacked.total_discount,
    )

    return EvaluationResult(
        applied_promotions=stacked.applied,
        subtotal=subtotal,
        total_discount=stacked.total_discount,
        final_amount=subtotal - stacked.total_discount,
        skipped=skipped,
        diagnostics=diagnostics,
    )


def check_promo_code(
    code: str, catalog: Iterable[PromotionDefinition], cart: Cart, context: EvaluationContext
) -> ValidateCodeResponse:
    """Validate one promo code on its own and estimate the discount it would give."""
    promotion = next((p for p in catalog if p.promo_code == code), None)
    if promotion is None:
        return ValidateCodeResponse(valid=False, reason="INVALID_CODE")

    problems = catalog_rules.find_problems(promotion)
    if problems:
        logger.warning("Promo code %s points at an invalid promotion %s", code, promotion.id)
        return ValidateCodeResponse(
            valid=False, promotion_id=promotion.id, promotion_name=promotion.name,
            reason="INVALID_DEFINITION",
        )

    context = context.model_copy(update={"supplied_code": code})
    eligibility = check_eligibility(promotion, context, cart)
    if not eligibility.eligible:
        return ValidateCodeResponse(
            valid=False, promotion_id=promotion.id, promotion_name=promotion.name,
            reason=eligibility.reason.value,
        )

    candidate = calculate_discount(promotion, cart, code)
    return ValidateCodeResponse(
        valid=True,
        promotion_id=promotion.id,
        promotion_name=promotion.name,
        estimated_discount=candidate.discount_amount,
    )
