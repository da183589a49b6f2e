from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    Time,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from database import Base


class Promotion(Base):
    """
    Database model for a tenant's promotion rule.

    type:          ITEM_DISCOUNT | COMBO_DEAL | CART_DISCOUNT | BOGO | FIXED_PRICE | TIME_BASED | COUPON
    discount_type: PERCENTAGE | FIXED_AMOUNT | FREE_ITEM | FIXED_PRICE
    days_of_week:  JSON list of ISO weekdays, 1 = Monday ... 7 = Sunday
    customer_segments / customer_types: JSON lists, empty means "everyone"
    """
    __tablename__ = "promotions"
    __table_args__ = (
        UniqueConstraint("tenant_id", "promo_code", name="uq_promotions_tenant_code"),
    )

    id = Column(String(50), primary_key=True)
    tenant_id = Column(String(50), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    type = Column(String(32), nullable=False)
    discount_type = Column(String(20), nullable=False)
    discount_value = Column(Numeric(10, 2), nullable=True)
    fixed_price = Column(Numeric(10, 2), nullable=True)

    min_cart_value = Column(Numeric(10, 2), nullable=True)
    max_discount_amount = Column(Numeric(10, 2), nullable=True)
    min_items = Column(Integer, nullable=True)
    max_items = Column(Integer, nullable=True)
    usage_limit = Column(Integer, nullable=True)
    usage_count = Column(Integer, default=0, nullable=False)
    per_customer_limit = Column(Integer, nullable=True)

    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    time_range_start = Column(Time, nullable=True)
    time_range_end = Column(Time, nullable=True)
    days_of_week = Column(JSON, nullable=True)

    requires_code = Column(Boolean, default=False, nullable=False)
    promo_code = Column(String(50), nullable=True, index=True)
    auto_apply = Column(Boolean, default=True, nullable=False)

    customer_segments = Column(JSON, nullable=True)
    customer_types = Column(JSON, nullable=True)

    priority = Column(Integer, default=0, nullable=False)
    can_combine_with_others = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    items = relationship(
        "PromotionItem",
        back_populates="promotion",
        cascade="all, delete-orphan",
        order_by="PromotionItem.id",
    )


class PromotionItem(Base):
    """
    Scopes the line items a promotion targets.

    menu_item_id set -> that menu item; category_id set -> that category;
    neither -> every line item. free_quantity > 0 marks the "get" side of a BOGO.
    """
    __tablename__ = "promotion_items"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    promotion_id = Column(String(50), ForeignKey("promotions.id", ondelete="CASCADE"), nullable=False, index=True)
    menu_item_id = Column(String(50), nullable=True, index=True)
    category_id = Column(String(50), nullable=True, index=True)
    required_quantity = Column(Integer, default=1, nullable=False)
    free_quantity = Column(Integer, default=0, nullable=False)
    discounted_price = Column(Numeric(10, 2), nullable=True)
    is_required = Column(Boolean, default=False, nullable=False)
    max_quantity = Column(Integer, nullable=True)

    promotion = relationship("Promotion", back_populates="items")


class PromotionUsage(Base):
    """Append-only record of a promotion applied to a finalized order."""
    __tablename__ = "promotion_usage"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    promotion_id = Column(String(50), ForeignKey("promotions.id", ondelete="CASCADE"), nullable=False, index=True)
    tenant_id = Column(String(50), nullable=False, index=True)
    order_id = Column(String(50), nullable=False, index=True)
    customer_id = Column(String(50), nullable=True, index=True)
    customer_phone = Column(String(20), nullable=True)
    discount_amount = Column(Numeric(10, 2), nullable=False)
    original_amount = Column(Numeric(10, 2), nullable=False)
    final_amount = Column(Numeric(10, 2), nullable=False)
    promo_code = Column(String(50), nullable=True)
    # [{menu_item_id, quantity, original_price, discounted_price}]
    affected_items = Column(JSON, nullable=False, default=list)
    applied_at = Column(DateTime(timezone=True), nullable=False)


class OrderPromotion(Base):
    """One row per (order, promotion) actually applied."""
    __tablename__ = "order_promotions"
    __table_args__ = (
        UniqueConstraint("order_id", "promotion_id", name="uq_order_promotions_order_promotion"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(String(50), nullable=False, index=True)
    promotion_id = Column(String(50), ForeignKey("promotions.id"), nullable=False)
    discount_amount = Column(Numeric(10, 2), nullable=False)
    promo_code = Column(String(50), nullable=True)
    applied_at = Column(DateTime(timezone=True), nullable=False)


class CustomerPromotionUsage(Base):
    """
    Rolling per-customer counter used to enforce per_customer_limit.

    customer_key is the customer id when known, otherwise the phone number.
    """
    __tablename__ = "customer_promotion_usage"
    __table_args__ = (
        UniqueConstraint("tenant_id", "promotion_id", "customer_key", name="uq_customer_promotion_usage"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    tenant_id = Column(String(50), nullable=False)
    promotion_id = Column(String(50), ForeignKey("promotions.id", ondelete="CASCADE"), nullable=False)
    customer_key = Column(String(50), nullable=False)
    customer_id = Column(String(50), nullable=True)
    customer_phone = Column(String(20), nullable=True)
    usage_count = Column(Integer, default=0, nullable=False)
    last_used = Column(DateTime(timezone=True), nullable=True)
