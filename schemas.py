from pydantic import BaseModel, Field, PlainSerializer, field_validator
from typing import Optional, List, Dict, Annotated
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum


# Money is held as Decimal and written to JSON as a plain number.
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]

ZERO = Decimal("0.00")


# ─────────────── Enums ───────────────

class PromotionType(str, Enum):
    item_discount = "ITEM_DISCOUNT"
    combo_deal = "COMBO_DEAL"
    cart_discount = "CART_DISCOUNT"
    bogo = "BOGO"
    fixed_price = "FIXED_PRICE"
    time_based = "TIME_BASED"
    coupon = "COUPON"


class DiscountType(str, Enum):
    percentage = "PERCENTAGE"
    fixed_amount = "FIXED_AMOUNT"
    free_item = "FREE_ITEM"
    fixed_price = "FIXED_PRICE"


class TargetType(str, Enum):
    all = "ALL"
    category = "CATEGORY"
    products = "PRODUCTS"


class IneligibilityReason(str, Enum):
    inactive = "INACTIVE"
    out_of_date_range = "OUT_OF_DATE_RANGE"
    wrong_day = "WRONG_DAY"
    outside_time_window = "OUTSIDE_TIME_WINDOW"
    below_min_cart_value = "BELOW_MIN_CART_VALUE"
    below_min_items = "BELOW_MIN_ITEMS"
    above_max_items = "ABOVE_MAX_ITEMS"
    required_items_missing = "REQUIRED_ITEMS_MISSING"
    usage_limit_reached = "USAGE_LIMIT_REACHED"
    customer_limit_reached = "CUSTOMER_LIMIT_REACHED"
    code_required_not_supplied = "CODE_REQUIRED_NOT_SUPPLIED"
    code_mismatch = "CODE_MISMATCH"
    segment_mismatch = "SEGMENT_MISMATCH"
    order_type_mismatch = "ORDER_TYPE_MISMATCH"


class StackingSkipReason(str, Enum):
    no_discount = "NO_DISCOUNT"
    not_combinable = "NOT_COMBINABLE"
    no_headroom = "NO_HEADROOM"


# ─────────────── Targeting ───────────────

class TargetDescriptor(BaseModel):
    type: TargetType = TargetType.all
    category_id: Optional[str] = None
    product_ids: List[str] = []


# ─────────────── Cart schemas ───────────────

class LineItem(BaseModel):
    menu_item_id: str
    category_id: Optional[str] = None
    unit_price: Money
    quantity: int
    name: Optional[str] = None

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class Cart(BaseModel):
    items: List[LineItem] = []

    @property
    def subtotal(self) -> Decimal:
        # Lines the engine cannot use (non-positive quantity or price) do not count.
        return sum(
            (item.line_total for item in self.items if item.quantity > 0 and item.unit_price >= 0),
            start=ZERO,
        )


class CustomerIdentity(BaseModel):
    customer_id: Optional[str] = None
    phone: Optional[str] = None

    @property
    def key(self) -> Optional[str]:
        return self.customer_id or self.phone


class EvaluationContext(BaseModel):
    tenant_id: Optional[str] = None
    customer_id: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_segments: List[str] = []
    order_type: Optional[str] = None  # DINE_IN | DELIVERY | TAKEAWAY ...
    now: datetime = Field(default_factory=datetime.now)
    supplied_code: Optional[str] = None
    supplied_codes: List[str] = []
    # promotion id -> times this customer has already used it
    customer_usage: Dict[str, int] = {}

    @property
    def codes(self) -> List[str]:
        codes = list(self.supplied_codes)
        if self.supplied_code and self.supplied_code not in codes:
            codes.append(self.supplied_code)
        return codes

    @property
    def customer(self) -> CustomerIdentity:
        return CustomerIdentity(customer_id=self.customer_id, phone=self.customer_phone)


# ─────────────── Promotion catalog ───────────────

class PromotionItem(BaseModel):
    id: Optional[int] = None
    menu_item_id: Optional[str] = None
    category_id: Optional[str] = None
    required_quantity: int = 1
    free_quantity: int = 0
    discounted_price: Optional[Money] = None
    is_required: bool = False
    max_quantity: Optional[int] = None

    model_config = {"from_attributes": True}


class PromotionBase(BaseModel):
    name: str
    description: Optional[str] = None
    type: PromotionType
    discount_type: DiscountType
    discount_value: Optional[Money] = None
    fixed_price: Optional[Money] = None

    min_cart_value: Optional[Money] = None
    max_discount_amount: Optional[Money] = None
    min_items: Optional[int] = None
    max_items: Optional[int] = None
    usage_limit: Optional[int] = None
    per_customer_limit: Optional[int] = None

    start_date: Optional[date] = None
    end_date: Optional[date] = None
    time_range_start: Optional[time] = None
    time_range_end: Optional[time] = None
    days_of_week: List[int] = []

    requires_code: bool = False
    promo_code: Optional[str] = None
    auto_apply: bool = True

    customer_segments: List[str] = []
    customer_types: List[str] = []

    priority: int = 0
    can_combine_with_others: bool = False
    is_active: bool = True

    @field_validator("days_of_week", "customer_segments", "customer_types", mode="before")
    @classmethod
    def none_as_empty(cls, v):
        return v or []


class PromotionCreate(PromotionBase):
    id: Optional[str] = None  # generated when omitted
    items: List[PromotionItem] = []


class PromotionUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    type: Optional[PromotionType] = None
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[Money] = None
    fixed_price: Optional[Money] = None
    min_cart_value: Optional[Money] = None
    max_discount_amount: Optional[Money] = None
    min_items: Optional[int] = None
    max_items: Optional[int] = None
    usage_limit: Optional[int] = None
    per_customer_limit: Optional[int] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    time_range_start: Optional[time] = None
    time_range_end: Optional[time] = None
    days_of_week: Optional[List[int]] = None
    requires_code: Optional[bool] = None
    promo_code: Optional[str] = None
    auto_apply: Optional[bool] = None
    customer_segments: Optional[List[str]] = None
    customer_types: Optional[List[str]] = None
    priority: Optional[int] = None
    can_combine_with_others: Optional[bool] = None
    is_active: Optional[bool] = None
    items: Optional[List[PromotionItem]] = None


class PromotionDefinition(PromotionBase):
    """A catalog entry as the engine sees it."""
    id: str
    tenant_id: str = ""
    usage_count: int = 0
    items: List[PromotionItem] = []

    model_config = {"from_attributes": True}


class PromotionResponse(PromotionDefinition):
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ─────────────── Evaluation results ───────────────

class AffectedItem(BaseModel):
    menu_item_id: str
    quantity: int
    original_price: Money
    discounted_price: Money


class CandidateDiscount(BaseModel):
    promotion_id: str
    promotion_name: str = ""
    priority: int = 0
    can_combine_with_others: bool = False
    discount_amount: Money = ZERO
    affected_items: List[AffectedItem] = []
    capped_by_max: bool = False
    promo_code: Optional[str] = None


class AppliedPromotion(BaseModel):
    promotion_id: str
    promotion_name: str = ""
    discount_amount: Money
    affected_items: List[AffectedItem] = []
    capped_by_max: bool = False
    promo_code: Optional[str] = None


class SkippedPromotion(BaseModel):
    promotion_id: str
    reason: str
    detail: Optional[str] = None


class Diagnostic(BaseModel):
    promotion_id: Optional[str] = None
    problems: List[str]


class EvaluationResult(BaseModel):
    applied_promotions: List[AppliedPromotion] = []
    subtotal: Money = ZERO
    total_discount: Money = ZERO
    final_amount: Money = ZERO
    skipped: List[SkippedPromotion] = []
    diagnostics: List[Diagnostic] = []


# ─────────────── Usage drafts ───────────────

class OrderPromotionDraft(BaseModel):
    order_id: str
    promotion_id: str
    discount_amount: Money
    promo_code: Optional[str] = None
    applied_at: datetime


class PromotionUsageDraft(BaseModel):
    promotion_id: str
    tenant_id: str
    order_id: str
    customer_id: Optional[str] = None
    customer_phone: Optional[str] = None
    discount_amount: Money
    original_amount: Money
    final_amount: Money
    promo_code: Optional[str] = None
    affected_items: List[AffectedItem] = []
    applied_at: datetime


class PromotionCounterIncrement(BaseModel):
    promotion_id: str
    increment: int = 1


class CustomerUsageIncrement(BaseModel):
    promotion_id: str
    tenant_id: str
    customer_key: str
    customer_id: Optional[str] = None
    customer_phone: Optional[str] = None
    increment: int = 1
    last_used: datetime


class UsageDrafts(BaseModel):
    order_id: str
    tenant_id: str
    order_promotions: List[OrderPromotionDraft] = []
    usages: List[PromotionUsageDraft] = []
    promotion_increments: List[PromotionCounterIncrement] = []
    customer_increments: List[CustomerUsageIncrement] = []


# ─────────────── Request / Response bodies ───────────────

class EvaluateRequest(BaseModel):
    cart: Cart
    context: EvaluationContext = Field(default_factory=EvaluationContext)


class ValidateCodeRequest(BaseModel):
    code: str
    cart: Cart
    context: EvaluationContext = Field(default_factory=EvaluationContext)


class ValidateCodeResponse(BaseModel):
    valid: bool
    promotion_id: Optional[str] = None
    promotion_name: Optional[str] = None
    reason: Optional[str] = None
    estimated_discount: Money = ZERO


class RecordUsageRequest(BaseModel):
    applied_promotions: List[AppliedPromotion]
    original_amount: Money
    customer_id: Optional[str] = None
    customer_phone: Optional[str] = None
    applied_at: Optional[datetime] = None


class RecordUsageResponse(BaseModel):
    order_id: str
    recorded: List[str]
    already_recorded: List[str]


class PromotionAnalytics(BaseModel):
    promotion_id: str
    name: str
    type: str
    discount_type: str
    total_uses: int
    total_discount_given: Money
    total_original_amount: Money
    avg_discount_per_use: Money


class PromotionAnalyticsResponse(BaseModel):
    start: datetime
    end: datetime
    analytics: List[PromotionAnalytics]
