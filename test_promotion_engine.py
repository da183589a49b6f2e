"""
test_promotion_engine.py
========================
Unit tests for discount calculation and the full evaluation pipeline.

Covers:
- Cart discounts: percentage, fixed amount, fixed price, max_discount_amount cap
- Item discounts: percentage with max_quantity, fixed amount, price overrides
- Bundles (FIXED_PRICE / COMBO_DEAL): cheapest units first, repetition
- BOGO: same-category buy/get, separate buy and get sides, max_quantity
- Happy hour (TIME_BASED) and coupon (COUPON) promotions
- Half-up rounding to cents
- evaluate(): stacking, diagnostics, tenant isolation, malformed cart lines
- check_promo_code()
"""

from datetime import datetime, time
from decimal import Decimal

from promotion_engine import calculate_discount, check_promo_code, evaluate, round_money
from schemas import Cart, EvaluationContext, LineItem, PromotionDefinition

# Wednesday 5 June 2024, 17:00 (ISO weekday 3)
NOW = datetime(2024, 6, 5, 17, 0)


# ══════════════════════════════════════════════
#  Helper functions
# ══════════════════════════════════════════════

def promo(id="p1", **overrides):
    data = dict(
        id=id, tenant_id="t1", name=id,
        type="CART_DISCOUNT", discount_type="PERCENTAGE", discount_value=10,
    )
    data.update(overrides)
    return PromotionDefinition(**data)


def line(menu_item_id, price, qty=1, category="cat_food"):
    return LineItem(menu_item_id=menu_item_id, category_id=category, unit_price=price, quantity=qty)


def cart(*lines):
    return Cart(items=list(lines))


def ctx(**overrides):
    overrides.setdefault("now", NOW)
    overrides.setdefault("tenant_id", "t1")
    return EvaluationContext(**overrides)


def discount(promotion, basket):
    return calculate_discount(promotion, basket).discount_amount


def bogo(items, **overrides):
    return promo(id="bogo", type="BOGO", discount_type="FREE_ITEM", discount_value=None, items=items, **overrides)


# ══════════════════════════════════════════════
#  Rounding
# ══════════════════════════════════════════════

class TestRounding:

    def test_half_up(self):
        assert round_money(Decimal("0.025")) == Decimal("0.03")
        assert round_money(Decimal("0.0249")) == Decimal("0.02")

    def test_floats_round_from_their_decimal_text(self):
        assert round_money(2.675) == Decimal("2.68")

    def test_percentage_rounds_once_per_promotion(self):
        # 10% of 0.25 = 0.025 -> 0.03
        assert discount(promo(), cart(line("mint", "0.25"))) == Decimal("0.03")


# ══════════════════════════════════════════════
#  Cart discounts
# ══════════════════════════════════════════════

class TestCartDiscount:

    def test_percentage(self):
        assert discount(promo(), cart(line("burger", 12), line("cola", 3, 2))) == Decimal("1.80")

    def test_fixed_amount_never_exceeds_subtotal(self):
        p = promo(discount_type="FIXED_AMOUNT", discount_value=50)
        assert discount(p, cart(line("burger", 10, 3))) == Decimal("30.00")

    def test_fixed_price_for_whole_cart(self):
        p = promo(discount_type="FIXED_PRICE", discount_value=None, fixed_price=25)
        assert discount(p, cart(line("burger", 10, 3))) == Decimal("5.00")

    def test_max_discount_amount_caps(self):
        p = promo(discount_value=50, max_discount_amount=200)
        candidate = calculate_discount(p, cart(line("platter", 1000)))
        assert candidate.discount_amount == Decimal("200")
        assert candidate.capped_by_max is True

    def test_under_cap_is_not_flagged(self):
        p = promo(max_discount_amount=200)
        candidate = calculate_discount(p, cart(line("platter", 1000)))
        assert candidate.discount_amount == Decimal("100")
        assert candidate.capped_by_max is False

    def test_empty_cart(self):
        assert discount(promo(), cart()) == Decimal("0")


# ══════════════════════════════════════════════
#  Item discounts
# ══════════════════════════════════════════════

class TestItemDiscount:

    def test_percentage_respects_max_quantity(self):
        p = promo(type="ITEM_DISCOUNT", discount_value=25,
                  items=[{"category_id": "cat_bev", "max_quantity": 2}])
        basket = cart(line("cola", 4, 5, "cat_bev"), line("burger", 12))
        assert discount(p, basket) == Decimal("2.00")

    def test_fixed_amount_floors_unit_price_at_zero(self):
        p = promo(type="ITEM_DISCOUNT", discount_type="FIXED_AMOUNT", discount_value=5,
                  items=[{"menu_item_id": "cola"}])
        assert discount(p, cart(line("cola", 3, 2, "cat_bev"))) == Decimal("6.00")

    def test_price_override(self):
        p = promo(type="ITEM_DISCOUNT", discount_type="FIXED_PRICE", discount_value=None,
                  items=[{"menu_item_id": "burger", "discounted_price": 9}])
        assert discount(p, cart(line("burger", 12, 2), line("fries", 4))) == Decimal("6.00")

    def test_untargeted_lines_are_untouched(self):
        p = promo(type="ITEM_DISCOUNT", items=[{"menu_item_id": "salad"}])
        candidate = calculate_discount(p, cart(line("burger", 12)))
        assert candidate.discount_amount == Decimal("0")
        assert candidate.affected_items == []

    def test_affected_items_show_new_unit_price(self):
        p = promo(type="ITEM_DISCOUNT", discount_value=30, items=[{"category_id": "cat_bev"}])
        candidate = calculate_discount(p, cart(line("cola", 10, 2, "cat_bev"), line("burger", 12)))
        assert len(candidate.affected_items) == 1
        affected = candidate.affected_items[0]
        assert affected.menu_item_id == "cola"
        assert affected.quantity == 2
        assert affected.original_price == Decimal("10")
        assert affected.discounted_price == Decimal("7")


# ══════════════════════════════════════════════
#  Bundles
# ══════════════════════════════════════════════

MEAL_ITEMS = [
    {"menu_item_id": "burger"},
    {"menu_item_id": "fries"},
    {"category_id": "cat_bev"},
]


class TestBundles:

    def test_fixed_price_meal_takes_cheapest_drink(self):
        p = promo(type="FIXED_PRICE", discount_type="FIXED_PRICE", discount_value=None,
                  fixed_price=15, items=MEAL_ITEMS)
        basket = cart(
            line("burger", 10), line("fries", 4, 1, "cat_sides"),
            line("juice", 5, 1, "cat_bev"), line("cola", 3, 1, "cat_bev"),
        )
        # 10 + 4 + 3 = 17 -> 15
        assert discount(p, basket) == Decimal("2.00")

    def test_bundle_repeats_while_components_fill(self):
        p = promo(type="FIXED_PRICE", discount_type="FIXED_PRICE", discount_value=None,
                  fixed_price=15, items=MEAL_ITEMS)
        basket = cart(
            line("burger", 10, 2), line("fries", 4, 2, "cat_sides"),
            line("cola", 3, 1, "cat_bev"), line("juice", 5, 1, "cat_bev"),
        )
        # (17 - 15) + (19 - 15)
        assert discount(p, basket) == Decimal("6.00")

    def test_bundle_max_quantity_limits_repetitions(self):
        items = [{"menu_item_id": "burger", "max_quantity": 1}, {"menu_item_id": "fries"}]
        p = promo(type="FIXED_PRICE", discount_type="FIXED_PRICE", discount_value=None,
                  fixed_price=12, items=items)
        basket = cart(line("burger", 10, 3), line("fries", 4, 3, "cat_sides"))
        assert discount(p, basket) == Decimal("2.00")

    def test_incomplete_bundle_gives_nothing(self):
        p = promo(type="FIXED_PRICE", discount_type="FIXED_PRICE", discount_value=None,
                  fixed_price=15, items=MEAL_ITEMS)
        assert discount(p, cart(line("burger", 10), line("fries", 4, 1, "cat_sides"))) == Decimal("0")

    def test_combo_percentage(self):
        p = promo(type="COMBO_DEAL", discount_value=20,
                  items=[{"menu_item_id": "burger"}, {"menu_item_id": "fries"}])
        assert discount(p, cart(line("burger", 10), line("fries", 5, 1, "cat_sides"))) == Decimal("3.00")

    def test_bundle_cheaper_than_fixed_price_gives_nothing(self):
        p = promo(type="FIXED_PRICE", discount_type="FIXED_PRICE", discount_value=None,
                  fixed_price=20, items=[{"menu_item_id": "burger"}, {"menu_item_id": "fries"}])
        assert discount(p, cart(line("burger", 10), line("fries", 4, 1, "cat_sides"))) == Decimal("0")


    def test_bundle_slice_spanning_two_lines(self):
        items = [{"menu_item_id": "burger"}, {"category_id": "cat_bev", "required_quantity": 2}]
        p = promo(type="FIXED_PRICE", discount_type="FIXED_PRICE", discount_value=None,
                  fixed_price=15, items=items)
        basket = cart(line("burger", 10, 2), line("cola", 3, 3, "cat_bev"), line("juice", 5, 1, "cat_bev"))
        # (10 + 3 + 3 - 15) + (10 + 3 + 5 - 15)
        assert discount(p, basket) == Decimal("4.00")

    def test_large_quantities(self):
        p = promo(type="FIXED_PRICE", discount_type="FIXED_PRICE", discount_value=None,
                  fixed_price=12, items=[{"menu_item_id": "burger"}, {"menu_item_id": "fries"}])
        basket = cart(line("burger", 10, 5000), line("fries", 4, 5000, "cat_sides"))
        assert discount(p, basket) == Decimal("10000.00")

# ══════════════════════════════════════════════
#  BOGO
# ══════════════════════════════════════════════

class TestBogo:

    BEVERAGES = cart(
        line("juice", 5, 1, "cat_bev"),
        line("cola", 3, 1, "cat_bev"),
        line("shake", 7, 1, "cat_bev"),
    )

    def test_buy_one_get_one_same_category(self):
        p = bogo([{"category_id": "cat_bev", "required_quantity": 1, "free_quantity": 1}])
        # The 7 stays paid, 3 + 5 are free
        assert discount(p, self.BEVERAGES) == Decimal("8.00")

    def test_max_quantity_caps_free_units(self):
        p = bogo([{"category_id": "cat_bev", "required_quantity": 1, "free_quantity": 1, "max_quantity": 1}])
        assert discount(p, self.BEVERAGES) == Decimal("3.00")

    def test_single_unit_earns_nothing_when_it_must_stay_paid(self):
        p = bogo([{"category_id": "cat_bev", "required_quantity": 1, "free_quantity": 1}])
        assert discount(p, cart(line("cola", 3, 1, "cat_bev"))) == Decimal("0")

    def test_buy_two_get_one_side(self):
        p = bogo([
            {"menu_item_id": "burger", "required_quantity": 2},
            {"category_id": "cat_sides", "free_quantity": 1},
        ])
        basket = cart(
            line("burger", 10, 2),
            line("fries", 4, 1, "cat_sides"),
            line("rings", 3, 1, "cat_sides"),
        )
        assert discount(p, basket) == Decimal("3.00")

    def test_free_units_limited_by_get_side(self):
        p = bogo([
            {"menu_item_id": "burger", "required_quantity": 1},
            {"menu_item_id": "fries", "free_quantity": 1},
        ])
        basket = cart(line("burger", 10, 4), line("fries", 4, 1, "cat_sides"))
        assert discount(p, basket) == Decimal("4.00")

    def test_not_enough_buy_units(self):
        p = bogo([
            {"menu_item_id": "burger", "required_quantity": 2},
            {"menu_item_id": "fries", "free_quantity": 1},
        ])
        assert discount(p, cart(line("burger", 10), line("fries", 4, 1, "cat_sides"))) == Decimal("0")

    def test_large_quantity_on_shared_line(self):
        p = bogo([{"category_id": "cat_bev", "required_quantity": 1, "free_quantity": 1}])
        # One unit stays paid
        assert discount(p, cart(line("cola", 3, 2_000_000, "cat_bev"))) == Decimal("5999997.00")

    def test_large_quantity_with_max_quantity(self):
        p = bogo([{"category_id": "cat_bev", "required_quantity": 1, "free_quantity": 1, "max_quantity": 2}])
        assert discount(p, cart(line("cola", 3, 2_000_000, "cat_bev"))) == Decimal("6.00")

    def test_free_units_priced_at_zero(self):
        p = bogo([
            {"menu_item_id": "burger", "required_quantity": 1},
            {"menu_item_id": "fries", "free_quantity": 1},
        ])
        candidate = calculate_discount(p, cart(line("burger", 10), line("fries", 4, 2, "cat_sides")))
        assert [(a.menu_item_id, a.quantity, a.discounted_price) for a in candidate.affected_items] == [
            ("fries", 1, Decimal("0")),
        ]


# ══════════════════════════════════════════════
#  Time-based and coupon promotions
# ══════════════════════════════════════════════

def happy_hour():
    return promo(
        id="happy_hour", type="TIME_BASED", discount_value=30,
        items=[{"category_id": "cat_bev"}],
        time_range_start=time(16, 0), time_range_end=time(18, 0),
        days_of_week=[1, 2, 3, 4, 5],
    )


class TestTimeBasedAndCoupon:

    def test_happy_hour_applies_inside_window(self):
        result = evaluate([happy_hour()], cart(line("cola", 10, 2, "cat_bev"), line("burger", 12)), ctx())
        assert result.total_discount == Decimal("6.00")
        assert result.final_amount == Decimal("26.00")

    def test_happy_hour_skipped_at_closing_time(self):
        result = evaluate(
            [happy_hour()], cart(line("cola", 10, 2, "cat_bev")), ctx(now=datetime(2024, 6, 5, 18, 0))
        )
        assert result.applied_promotions == []
        assert result.skipped[0].reason == "OUTSIDE_TIME_WINDOW"

    def test_coupon_with_fixed_amount(self):
        p = promo(id="welcome", type="COUPON", discount_type="FIXED_AMOUNT", discount_value=5,
                  requires_code=True, promo_code="WELCOME5")
        result = evaluate([p], cart(line("burger", 12)), ctx(supplied_code="WELCOME5"))
        assert result.total_discount == Decimal("5.00")
        assert result.applied_promotions[0].promo_code == "WELCOME5"

    def test_coupon_with_free_item(self):
        p = promo(id="free_fries", type="COUPON", discount_type="FREE_ITEM", discount_value=None,
                  requires_code=True, promo_code="FRIES",
                  items=[{"menu_item_id": "burger"}, {"menu_item_id": "fries", "free_quantity": 1}])
        result = evaluate([p], cart(line("burger", 10), line("fries", 4, 1, "cat_sides")),
                          ctx(supplied_code="FRIES"))
        assert result.total_discount == Decimal("4.00")


# ══════════════════════════════════════════════
#  Evaluation pipeline
# ══════════════════════════════════════════════

class TestEvaluate:

    def test_min_cart_value_met(self):
        p = promo(min_cart_value=1000, max_discount_amount=200)
        result = evaluate([p], cart(line("catering", 1000)), ctx())
        assert result.total_discount == Decimal("100")
        assert result.final_amount == Decimal("900")
        assert [a.promotion_id for a in result.applied_promotions] == ["p1"]

    def test_min_cart_value_not_met(self):
        p = promo(min_cart_value=1000, max_discount_amount=200)
        result = evaluate([p], cart(line("catering", 900)), ctx())
        assert result.total_discount == Decimal("0")
        assert result.applied_promotions == []
        assert result.skipped[0].reason == "BELOW_MIN_CART_VALUE"

    def test_non_combinable_higher_priority_wins_alone(self):
        catalog = [
            promo("a", priority=5, can_combine_with_others=True),
            promo("b", priority=5, can_combine_with_others=True, discount_type="FIXED_AMOUNT", discount_value=5),
            promo("c", priority=10, discount_value=20),
        ]
        result = evaluate(catalog, cart(line("burger", 50)), ctx())
        assert [a.promotion_id for a in result.applied_promotions] == ["c"]
        assert {s.promotion_id: s.reason for s in result.skipped} == {
            "a": "NOT_COMBINABLE", "b": "NOT_COMBINABLE",
        }

    def test_combinable_promotions_never_exceed_subtotal(self):
        catalog = [
            promo("a", discount_value=60, can_combine_with_others=True),
            promo("b", discount_value=60, can_combine_with_others=True),
        ]
        result = evaluate(catalog, cart(line("platter", 100)), ctx())
        assert [a.discount_amount for a in result.applied_promotions] == [Decimal("60"), Decimal("40")]
        assert result.applied_promotions[1].capped_by_max is True
        assert result.total_discount == Decimal("100")
        assert result.final_amount == Decimal("0")

    def test_invalid_definition_goes_to_diagnostics(self):
        broken = bogo([{"menu_item_id": "burger"}])
        result = evaluate([broken, promo()], cart(line("burger", 10)), ctx())
        assert [d.promotion_id for d in result.diagnostics] == ["bogo"]
        assert "bogo" not in [s.promotion_id for s in result.skipped]
        assert result.total_discount == Decimal("1.00")

    def test_other_tenant_promotion_is_excluded(self):
        result = evaluate([promo(tenant_id="t2")], cart(line("burger", 10)), ctx())
        assert result.applied_promotions == []
        assert result.diagnostics[0].promotion_id == "p1"

    def test_malformed_lines_are_ignored(self):
        basket = cart(line("burger", 10), line("ghost", 100, 0), line("refund", -5))
        result = evaluate([promo()], basket, ctx())
        assert result.subtotal == Decimal("10")
        assert result.total_discount == Decimal("1.00")

    def test_zero_discount_candidate_is_skipped(self):
        p = promo(type="ITEM_DISCOUNT", items=[{"menu_item_id": "salad"}])
        result = evaluate([p], cart(line("burger", 10)), ctx())
        assert result.skipped[0].reason == "NO_DISCOUNT"

    def test_empty_catalog(self):
        result = evaluate([], cart(line("burger", 10)), ctx())
        assert result.subtotal == Decimal("10")
        assert result.final_amount == Decimal("10")
        assert result.applied_promotions == []


# ══════════════════════════════════════════════
#  Promo code validation
# ══════════════════════════════════════════════

class TestCheckPromoCode:

    def coupon(self, **overrides):
        return promo(id="welcome", requires_code=True, promo_code="WELCOME10", **overrides)

    def test_valid_code(self):
        response = check_promo_code("WELCOME10", [self.coupon()], cart(line("burger", 12)), ctx())
        assert response.valid is True
        assert response.promotion_id == "welcome"
        assert response.estimated_discount == Decimal("1.20")

    def test_unknown_code(self):
        response = check_promo_code("NOPE", [self.coupon()], cart(line("burger", 12)), ctx())
        assert response.valid is False
        assert response.reason == "INVALID_CODE"

    def test_ineligible_code_reports_reason(self):
        response = check_promo_code(
            "WELCOME10", [self.coupon(min_cart_value=20)], cart(line("burger", 12)), ctx()
        )
        assert response.valid is False
        assert response.reason == "BELOW_MIN_CART_VALUE"

    def test_code_on_invalid_definition(self):
        response = check_promo_code(
            "WELCOME10", [self.coupon(discount_value=150)], cart(line("burger", 12)), ctx()
        )
        assert response.valid is False
        assert response.reason == "INVALID_DEFINITION"
